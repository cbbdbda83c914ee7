"""Shared pytest fixtures for b2proxy tests.

A single FastAPI app is created per test session to avoid duplicate
Prometheus metric registration errors (the instrumentator registers
collectors in the global prometheus_client registry).

B2 itself is replaced by :class:`FakeB2`, an ``httpx.MockTransport`` handler
that records every request and answers from a per-operation table. The
shared httpx client is set on ``app.state`` directly because the lifespan
does not run under ``ASGITransport``.
"""

import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from b2proxy.config import (
    B2Config,
    ObservabilityConfig,
    ProxyConfig,
    ServerConfig,
    UpstreamConfig,
)
from b2proxy.server import create_app

API_URL = "https://api.backblazeb2.com"
ACCOUNT_API_URL = "https://api001.backblazeb2.com"
UPLOAD_URL = "https://pod-000-1001-05.backblaze.com/b2api/v2/b2_upload_file/4a48fe8875c6214145260818/c001_v0001005_t0001"

AUTHORIZE_RESPONSE = {
    "accountId": "e2ab6cb7b19a",
    "apiUrl": ACCOUNT_API_URL,
    "authorizationToken": "4_002e2ab6cb7b19a_session",
    "downloadUrl": "https://f001.backblazeb2.com",
}
LIST_BUCKETS_RESPONSE = {
    "buckets": [
        {
            "accountId": "e2ab6cb7b19a",
            "bucketId": "4a48fe8875c6214145260818",
            "bucketName": "my-bucket",
            "bucketType": "allPrivate",
        }
    ]
}
GET_UPLOAD_URL_RESPONSE = {
    "bucketId": "4a48fe8875c6214145260818",
    "uploadUrl": UPLOAD_URL,
    "authorizationToken": "4_002e2ab6cb7b19a_upload",
}
UPLOAD_FILE_RESPONSE = {
    "accountId": "e2ab6cb7b19a",
    "action": "upload",
    "bucketId": "4a48fe8875c6214145260818",
    "contentLength": 11,
    "contentSha1": "2aae6c35c94fcfb415dbe95f408b9ce91ee846ed",
    "contentType": "text/plain",
    "fileId": "4_z4a48fe8875c6214145260818_f1_upload",
    "fileName": "a b.txt",
    "uploadTimestamp": 1700000000000,
}


def _operation(request: httpx.Request) -> str:
    if str(request.url).startswith(UPLOAD_URL):
        return "b2_upload_file"
    return request.url.path.rsplit("/", 1)[-1]


class FakeB2:
    """A scripted B2 API for httpx.MockTransport.

    ``responses`` maps each operation name to ``(status, body)``; dict and
    list bodies are sent as JSON, strings as plain text.
    """

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self.responses: dict[str, tuple[int, object]] = {
            "b2_authorize_account": (200, AUTHORIZE_RESPONSE),
            "b2_list_buckets": (200, LIST_BUCKETS_RESPONSE),
            "b2_get_upload_url": (200, GET_UPLOAD_URL_RESPONSE),
            "b2_upload_file": (200, UPLOAD_FILE_RESPONSE),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        status, body = self.responses[_operation(request)]
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body)

    @property
    def operations(self) -> list[str]:
        return [_operation(r) for r in self.calls]

    def json_body(self, index: int) -> dict:
        return json.loads(self.calls[index].content)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture(scope="session")
def config() -> ProxyConfig:
    """Create a test ProxyConfig with metrics enabled."""
    return ProxyConfig(
        server=ServerConfig(host="127.0.0.1", port=8788),
        b2=B2Config(api_url=API_URL),
        upstream=UpstreamConfig(connect_timeout=1.0, timeout=5.0, disconnect_poll_seconds=0.05),
        observability=ObservabilityConfig(metrics=True, health_check=True),
    )


@pytest.fixture(scope="session")
def app(config: ProxyConfig):
    """Create a single test FastAPI application for the whole session."""
    return create_app(config)


@pytest.fixture
def fake_b2() -> FakeB2:
    return FakeB2()


@pytest.fixture
async def client(app, fake_b2):
    """Create an async test client whose upstream calls go to ``fake_b2``."""
    upstream = fake_b2.http_client()
    app.state.http_client = upstream

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.state.http_client = None
    await upstream.aclose()
