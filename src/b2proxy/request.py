"""Inbound request parsing for b2proxy.

Turns an HTTP request of the form ``POST /{bucket}/{key...}?sha1=...`` into
an immutable :class:`UploadRequest`.
"""

from __future__ import annotations

import logging
import re
import urllib.parse
from dataclasses import dataclass

from fastapi import Request

from b2proxy.errors import InvalidPathEncoding, MissingBucket, MissingChecksum

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "b2/x-auto"


@dataclass(frozen=True)
class UploadRequest:
    """One inbound upload call.

    Attributes:
        bucket: The B2 bucket name.
        key: The object key (path segments after the bucket, joined by '/').
        content_type: MIME type forwarded to B2.
        sha1: Caller-supplied SHA-1 hex digest of the body.
        body: The full request body.
        authorization: The caller's ``Authorization`` header, forwarded as-is.
    """

    bucket: str
    key: str
    content_type: str
    sha1: str
    body: bytes
    authorization: str | None = None


_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def decode_path_segment(segment: str) -> str:
    """Decode one path segment form-style: ``+`` to space, then ``%xx``.

    Decoding is strict so a file name is never stored under anything other
    than what the caller sent.

    Raises:
        InvalidPathEncoding: If a ``%`` is not followed by two hex digits or
            the escaped bytes are not valid UTF-8.
    """
    if _BAD_ESCAPE.search(segment):
        raise InvalidPathEncoding(segment, "malformed percent-escape")
    try:
        return urllib.parse.unquote(segment.replace("+", " "), errors="strict")
    except UnicodeDecodeError as exc:
        raise InvalidPathEncoding(segment, "escaped bytes are not valid UTF-8") from exc


def split_upload_path(raw_path: str) -> tuple[str | None, str]:
    """Split a raw request path into bucket and key.

    Empty segments are dropped and each segment is decoded with
    :func:`decode_path_segment`, so ``/b/a%20b+c`` gives ``("b", "a b c")``
    and ``%2F`` stays inside its segment.

    Args:
        raw_path: The undecoded URL path.

    Returns:
        ``(bucket, key)``; bucket is None when the path has no segments.

    Raises:
        InvalidPathEncoding: If any segment does not decode cleanly.
    """
    segments = [decode_path_segment(segment) for segment in raw_path.split("/") if segment]
    if not segments:
        return None, ""
    return segments[0], "/".join(segments[1:])


def _raw_path(request: Request) -> str:
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    # Some ASGI clients include the query string in raw_path.
    return raw.decode("latin-1").split("?", 1)[0]


async def parse_upload_request(
    request: Request, default_content_type: str = DEFAULT_CONTENT_TYPE
) -> UploadRequest:
    """Build an UploadRequest from an inbound FastAPI request.

    The checksum is checked before the body is read.

    Raises:
        MissingChecksum: If the ``sha1`` query parameter is absent or empty.
        MissingBucket: If the path does not contain a bucket segment.
        InvalidPathEncoding: If the bucket or key is not cleanly encoded.
    """
    sha1 = request.query_params.get("sha1")
    if not sha1:
        raise MissingChecksum()

    bucket, key = split_upload_path(_raw_path(request))
    if bucket is None:
        raise MissingBucket()

    content_type = request.headers.get("content-type") or default_content_type
    body = await request.body()

    logger.debug(
        "Received request: bucket=%s key=%s content_type=%s sha1=%s content_length=%d",
        bucket,
        key,
        content_type,
        sha1,
        len(body),
        extra={"bucket": bucket, "key": key},
    )
    return UploadRequest(
        bucket=bucket,
        key=key,
        content_type=content_type,
        sha1=sha1,
        body=body,
        authorization=request.headers.get("authorization"),
    )
