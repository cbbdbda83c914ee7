"""The B2 upload chain.

Uploading one file to B2 takes four dependent calls, each consuming what the
previous one returned:

    b2_authorize_account -> b2_list_buckets -> b2_get_upload_url -> upload URL

:class:`B2Uploader` runs them strictly in order and aborts at the first
failure. Nothing is retried and nothing is cleaned up on failure; an upload
URL that was issued but never used is simply abandoned.

Cancellation propagates: if the task running :meth:`B2Uploader.upload` is
cancelled, the pending httpx request is aborted and the remaining steps are
never started.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, TypeVar

import httpx

import b2proxy.metrics as _metrics
from b2proxy.encoding import encode_b2_path_component
from b2proxy.errors import (
    AmbiguousBucket,
    BucketNotFound,
    MalformedResponse,
    UpstreamError,
    UpstreamUnavailable,
)
from b2proxy.logging_config import upload_context
from b2proxy.request import UploadRequest

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.backblazeb2.com"
DEFAULT_API_VERSION = "v2"

T = TypeVar("T")


class UploadStep(str, enum.Enum):
    """The four calls of the upload chain, in order."""

    AUTHORIZE_ACCOUNT = "authorize_account"
    LIST_BUCKETS = "list_buckets"
    GET_UPLOAD_URL = "get_upload_url"
    UPLOAD_FILE = "upload_file"


@dataclass(frozen=True)
class AccountSession:
    """Result of b2_authorize_account."""

    account_id: str
    api_url: str
    authorization_token: str


@dataclass(frozen=True)
class BucketRef:
    """The bucket resolved from its name."""

    bucket_id: str
    bucket_name: str


@dataclass(frozen=True)
class UploadGrant:
    """Single-use upload URL and token from b2_get_upload_url."""

    upload_url: str
    authorization_token: str


def _payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


def _require(step: UploadStep, response: httpx.Response, data: Any, *fields: str) -> dict:
    """Check that a successful response body is an object holding ``fields``."""
    if not isinstance(data, dict):
        raise MalformedResponse(step.value, response.status_code, data, "expected a JSON object")
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise MalformedResponse(
            step.value,
            response.status_code,
            data,
            "missing " + ", ".join(missing),
        )
    return data


def _record_step(step: UploadStep, outcome: str) -> None:
    if _metrics.upload_steps_total is not None:
        _metrics.upload_steps_total.labels(step=step.value, outcome=outcome).inc()


class B2Uploader:
    """Runs the four-step B2 upload chain over a shared httpx client.

    The client may be shared across concurrent uploads; every other value
    lives only for the duration of one :meth:`upload` call.

    Attributes:
        client: The httpx client used for every call.
        api_url: Base URL of the account authorization endpoint.
        api_version: B2 API version segment (e.g. "v2").
        timeout: Timeout applied to each individual call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_url: str = DEFAULT_API_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout: httpx.Timeout | float | None = None,
    ) -> None:
        self.client = client
        self.api_url = api_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout if timeout is not None else httpx.Timeout(60.0, connect=10.0)

    def _endpoint(self, base_url: str, operation: str) -> str:
        return f"{base_url.rstrip('/')}/b2api/{self.api_version}/{operation}"

    async def _call(self, step: UploadStep, method: str, url: str, **kwargs: Any) -> tuple[httpx.Response, Any]:
        """Issue one upstream call and return the response with its parsed body.

        Raises:
            UpstreamError: If B2 answers with a non-success status.
            UpstreamUnavailable: If the request fails at the transport level.
        """
        try:
            response = await self.client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(step.value, str(exc) or type(exc).__name__) from exc

        data = _payload(response)
        if not response.is_success:
            raise UpstreamError(step.value, response.status_code, data)
        return response, data

    async def authorize_account(self, credential: str | None) -> AccountSession:
        """Exchange the caller's credential for an account session."""
        step = UploadStep.AUTHORIZE_ACCOUNT
        headers = {"Authorization": credential} if credential is not None else {}
        response, data = await self._call(
            step, "GET", self._endpoint(self.api_url, "b2_authorize_account"), headers=headers
        )
        data = _require(step, response, data, "accountId", "apiUrl", "authorizationToken")
        session = AccountSession(
            account_id=data["accountId"],
            api_url=data["apiUrl"],
            authorization_token=data["authorizationToken"],
        )
        logger.debug("Authorised with B2: account_id=%s api_url=%s", session.account_id, session.api_url)
        return session

    async def resolve_bucket(self, session: AccountSession, bucket_name: str) -> BucketRef:
        """Look up the id of ``bucket_name``.

        Raises:
            BucketNotFound: If no bucket matches.
            AmbiguousBucket: If more than one bucket matches.
        """
        step = UploadStep.LIST_BUCKETS
        response, data = await self._call(
            step,
            "POST",
            self._endpoint(session.api_url, "b2_list_buckets"),
            headers={"Authorization": session.authorization_token},
            json={"accountId": session.account_id, "bucketName": bucket_name},
        )
        data = _require(step, response, data)
        buckets = data.get("buckets")
        if not isinstance(buckets, list):
            raise MalformedResponse(step.value, response.status_code, data, "missing buckets")
        if not buckets:
            raise BucketNotFound(bucket_name, response.status_code, data)
        if len(buckets) > 1:
            raise AmbiguousBucket(bucket_name, len(buckets), response.status_code, data)

        entry = buckets[0]
        if not isinstance(entry, dict) or not entry.get("bucketId"):
            raise MalformedResponse(step.value, response.status_code, data, "missing bucketId")
        bucket = BucketRef(bucket_id=entry["bucketId"], bucket_name=bucket_name)
        logger.debug("Found bucket: bucket_id=%s", bucket.bucket_id)
        return bucket

    async def get_upload_url(self, session: AccountSession, bucket: BucketRef) -> UploadGrant:
        """Ask B2 for a single-use upload URL for ``bucket``."""
        step = UploadStep.GET_UPLOAD_URL
        response, data = await self._call(
            step,
            "POST",
            self._endpoint(session.api_url, "b2_get_upload_url"),
            headers={"Authorization": session.authorization_token},
            json={"bucketId": bucket.bucket_id},
        )
        data = _require(step, response, data, "uploadUrl", "authorizationToken")
        grant = UploadGrant(
            upload_url=data["uploadUrl"],
            authorization_token=data["authorizationToken"],
        )
        logger.debug("Registered upload: upload_url=%s", grant.upload_url)
        return grant

    async def upload_file(self, grant: UploadGrant, request: UploadRequest) -> dict:
        """POST the buffered body to the upload URL and return B2's JSON result."""
        step = UploadStep.UPLOAD_FILE
        response, data = await self._call(
            step,
            "POST",
            grant.upload_url,
            headers={
                "Authorization": grant.authorization_token,
                "Content-Type": request.content_type,
                "X-Bz-Content-Sha1": request.sha1,
                "X-Bz-File-Name": encode_b2_path_component(request.key),
            },
            content=request.body,
        )
        data = _require(step, response, data)
        if _metrics.bytes_uploaded_total is not None:
            _metrics.bytes_uploaded_total.inc(len(request.body))
        return data

    async def _run_step(self, step: UploadStep, work: Awaitable[T]) -> T:
        """Await one step and count its outcome once the result has been checked."""
        with upload_context(step=step.value):
            try:
                result = await work
            except UpstreamUnavailable:
                _record_step(step, "unavailable")
                raise
            except MalformedResponse:
                _record_step(step, "malformed")
                raise
            except UpstreamError:
                _record_step(step, "error")
                raise
        _record_step(step, "ok")
        return result

    async def upload(self, request: UploadRequest) -> dict:
        """Run the whole chain for one request.

        Returns:
            B2's upload result, untouched.

        Raises:
            UpstreamError: If any B2 call fails or answers unexpectedly.
            UpstreamUnavailable: On connection errors and timeouts.
        """
        try:
            session = await self._run_step(
                UploadStep.AUTHORIZE_ACCOUNT, self.authorize_account(request.authorization)
            )
            bucket = await self._run_step(
                UploadStep.LIST_BUCKETS, self.resolve_bucket(session, request.bucket)
            )
            grant = await self._run_step(
                UploadStep.GET_UPLOAD_URL, self.get_upload_url(session, bucket)
            )
            result = await self._run_step(UploadStep.UPLOAD_FILE, self.upload_file(grant, request))
        except Exception:
            if _metrics.uploads_total is not None:
                _metrics.uploads_total.labels(outcome="error").inc()
            raise
        if _metrics.uploads_total is not None:
            _metrics.uploads_total.labels(outcome="ok").inc()
        logger.info(
            "Uploaded %s/%s (%d bytes)",
            request.bucket,
            request.key,
            len(request.body),
            extra={"bucket": request.bucket, "key": request.key},
        )
        return result
