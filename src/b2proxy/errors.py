"""Error definitions for the b2proxy upload chain."""

import json
import traceback
from typing import Any


class ProxyError(Exception):
    """An error that maps to an HTTP response.

    Attributes:
        code: Short machine-readable error code (e.g. "MissingChecksum").
        message: Human-readable error description.
        http_status: The HTTP status code to return.
    """

    def __init__(self, code: str, message: str, http_status: int = 500) -> None:
        """Initialize the proxy error.

        Args:
            code: Error code.
            message: Error description.
            http_status: HTTP status code (default 500).
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status

    def describe(self) -> str:
        """Return the plain-text body sent to the caller."""
        return self.message


# -- Client input errors (400) -------------------------------------------------


class ClientInputError(ProxyError):
    """The inbound request is missing something required."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(code=code, message=message, http_status=400)


class MissingChecksum(ClientInputError):
    """The ``sha1`` query parameter was not supplied."""

    def __init__(self, message: str = "SHA-1 required") -> None:
        super().__init__(code="MissingChecksum", message=message)


class MissingBucket(ClientInputError):
    """The request path does not name a bucket."""

    def __init__(self, message: str = "Bucket name required") -> None:
        super().__init__(code="MissingBucket", message=message)


class InvalidPathEncoding(ClientInputError):
    """A path segment is not valid form-style percent-encoded UTF-8."""

    def __init__(self, segment: str, reason: str) -> None:
        self.segment = segment
        super().__init__(
            code="InvalidPathEncoding",
            message=f"Invalid encoding in path segment '{segment}': {reason}",
        )


# -- Upstream errors (500) -----------------------------------------------------


class UpstreamError(ProxyError):
    """A B2 API call failed.

    Attributes:
        step: Name of the upload step that failed (e.g. "list_buckets").
        status: HTTP status code returned by B2.
        payload: Parsed JSON error body, or raw text when it was not JSON.
    """

    def __init__(
        self,
        step: str,
        status: int,
        payload: Any = None,
        message: str | None = None,
        code: str = "UpstreamError",
    ) -> None:
        self.step = step
        self.status = status
        self.payload = payload
        if message is None:
            message = f"Network request failed with status {status}"
        super().__init__(code=code, message=message, http_status=500)

    def describe(self) -> str:
        """Render step, status, message and the upstream payload."""
        if isinstance(self.payload, (dict, list)):
            body = json.dumps(self.payload, indent=2)
        else:
            body = str(self.payload or "")
        lines = [
            f"Upload failed at step {self.step}: {self.message}",
            f"Upstream status: {self.status}",
        ]
        if body:
            lines.append(body)
        return "\n".join(lines)


class BucketNotFound(UpstreamError):
    """b2_list_buckets returned no bucket with the requested name."""

    def __init__(self, bucket: str, status: int = 200, payload: Any = None) -> None:
        super().__init__(
            step="list_buckets",
            status=status,
            payload=payload,
            message=f"No bucket named '{bucket}' is visible to this account",
            code="BucketNotFound",
        )


class AmbiguousBucket(UpstreamError):
    """b2_list_buckets returned more than one bucket for a single name."""

    def __init__(self, bucket: str, count: int, status: int = 200, payload: Any = None) -> None:
        super().__init__(
            step="list_buckets",
            status=status,
            payload=payload,
            message=f"Expected exactly one bucket named '{bucket}', found {count}",
            code="AmbiguousBucket",
        )


class MalformedResponse(UpstreamError):
    """B2 answered with success but the body had an unexpected shape."""

    def __init__(self, step: str, status: int, payload: Any = None, detail: str = "") -> None:
        message = "Unexpected response shape"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(
            step=step,
            status=status,
            payload=payload,
            message=message,
            code="MalformedResponse",
        )


# -- Unexpected errors (500) ---------------------------------------------------


class UnexpectedError(ProxyError):
    """Any other failure; rendered with the full traceback of its cause."""

    def __init__(self, message: str = "Internal Error", code: str = "UnexpectedError") -> None:
        super().__init__(code=code, message=message, http_status=500)

    def describe(self) -> str:
        cause = self.__cause__
        if cause is None:
            return self.message
        trace = "".join(traceback.format_exception(type(cause), cause, cause.__traceback__))
        return f"{self.message}\n{trace}"


class UpstreamUnavailable(UnexpectedError):
    """A B2 call failed at the transport level (connect error, timeout)."""

    def __init__(self, step: str, message: str = "") -> None:
        self.step = step
        super().__init__(
            message=f"Network error during {step}: {message}" if message else f"Network error during {step}",
            code="UpstreamUnavailable",
        )


class ClientDisconnected(ProxyError):
    """The caller went away before the upload chain finished."""

    def __init__(self, message: str = "Client closed request") -> None:
        super().__init__(code="ClientDisconnected", message=message, http_status=499)
