"""FastAPI application factory and route setup for b2proxy."""

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse

from b2proxy.config import ProxyConfig
from b2proxy.errors import ClientDisconnected, ProxyError, UnexpectedError
from b2proxy.logging_config import upload_context
from b2proxy.orchestrator import B2Uploader
from b2proxy.request import parse_upload_request
from b2proxy.responses import error_response, traceback_response, upload_response

logger = logging.getLogger(__name__)

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus collectors in the global registry.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics"],
        )
    return _instrumentator


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config: ProxyConfig) -> FastAPI:
    """Create and configure the b2proxy FastAPI application.

    The lifespan context manager opens the shared httpx client used for
    every B2 call and closes it on shutdown.

    Args:
        config: The loaded b2proxy configuration.

    Returns:
        A configured FastAPI application ready to run.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.http_client = _new_http_client(config)
        logger.info("HTTP client initialized (b2 api=%s)", config.b2.api_url)

        yield

        await app.state.http_client.aclose()
        app.state.http_client = None
        logger.info("HTTP client closed")

    app = FastAPI(
        title="b2proxy",
        version="0.1.0",
        lifespan=lifespan,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.http_client = None

    _register_exception_handlers(app)
    _register_middleware(app)

    # /metrics must be registered before the catch-all upload route.
    if config.observability.metrics:
        import b2proxy.metrics as _metrics

        _metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="b2proxy").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app, config)

    return app


def _new_http_client(config: ProxyConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=config.upstream.httpx_timeout())


def _http_client(app: FastAPI) -> httpx.AsyncClient:
    """Return the client opened by the lifespan.

    Raises:
        UnexpectedError: If the lifespan has not run or has already closed it.
    """
    client = getattr(app.state, "http_client", None)
    if client is None:
        raise UnexpectedError("HTTP client not initialized")
    return client


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> Response:
        """Render ProxyError subclasses as plain-text diagnostics."""
        request_id = getattr(request.state, "request_id", "")
        if exc.http_status >= 500:
            logger.error(
                "%s: %s",
                exc.code,
                exc.message,
                exc_info=exc if exc.__cause__ is not None else None,
                extra={"request_id": request_id, "step": getattr(exc, "step", None)},
            )
        elif isinstance(exc, ClientDisconnected):
            logger.warning("Client disconnected, upload aborted", extra={"request_id": request_id})
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        """Map FastAPI validation errors to a plain-text 400."""
        messages = []
        for err in exc.errors():
            loc = " -> ".join(str(p) for p in err.get("loc", []))
            msg = err.get("msg", "Invalid value")
            messages.append(f"{loc}: {msg}" if loc else msg)
        combined = "; ".join(messages) or "Invalid request parameters"
        return PlainTextResponse(combined, status_code=400)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return their traceback."""
        logger.exception("Unhandled exception in request handler")
        return traceback_response(exc)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _register_middleware(app: FastAPI) -> None:
    """Register the request-id and access-log middleware."""

    _QUIET_PATHS = {"/metrics", "/health", "/healthz"}

    @app.middleware("http")
    async def common_headers_middleware(request: Request, call_next) -> Response:
        """Tag every response with a request id and log it.

        The request id (16-char uppercase hex) is stored on request.state so
        exception handlers can log it.
        """
        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        response.headers["x-request-id"] = request_id
        response.headers["Server"] = "b2proxy"

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "%s %s %d %.2fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                },
            )

        return response


# ---------------------------------------------------------------------------
# Disconnect handling
# ---------------------------------------------------------------------------


async def _wait_for_disconnect(request: Request, poll_interval: float) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(poll_interval)


async def run_until_disconnect(
    request: Request, work: Awaitable[Any], poll_interval: float = 0.5
) -> Any:
    """Await ``work`` unless the caller disconnects first.

    If the caller goes away, or the handler itself is cancelled, the task
    running ``work`` is cancelled so any pending upstream call is aborted.

    Raises:
        ClientDisconnected: If the caller disconnected before ``work`` finished.
    """
    task = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request, poll_interval))
    try:
        done, _ = await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        watcher.cancel()

    if task not in done:
        task.cancel()
        await asyncio.wait({task})
        raise ClientDisconnected() from watcher.exception()
    return task.result()


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _setup_routes(app: FastAPI, config: ProxyConfig) -> None:
    """Register health routes and the catch-all upload route.

    Args:
        app: The FastAPI application to attach routes to.
        config: The b2proxy configuration.
    """
    if config.observability.health_check:

        @app.get("/health")
        async def health_check() -> Response:
            """Return static health status."""
            return Response(content='{"status":"ok"}', media_type="application/json")

        @app.get("/healthz")
        async def healthz() -> Response:
            """Liveness check. Returns 200 with empty body."""
            return Response(status_code=200)

    # Must come after fixed routes so /health and /metrics are not shadowed.
    @app.api_route("/{path:path}", methods=["POST", "PUT"])
    async def handle_upload(path: str, request: Request) -> Response:
        """Handle POST|PUT /{bucket}/{key...}?sha1=... -- upload one file to B2."""
        upload_request = await parse_upload_request(
            request, default_content_type=config.b2.default_content_type
        )
        uploader = B2Uploader(
            _http_client(app),
            api_url=config.b2.api_url,
            api_version=config.b2.api_version,
            timeout=config.upstream.httpx_timeout(),
        )
        try:
            # The upload task copies the context when it is created.
            with upload_context(
                request_id=getattr(request.state, "request_id", None),
                bucket=upload_request.bucket,
                key=upload_request.key,
            ):
                result = await run_until_disconnect(
                    request,
                    uploader.upload(upload_request),
                    poll_interval=config.upstream.disconnect_poll_seconds,
                )
        except ProxyError:
            raise
        except Exception as exc:
            raise UnexpectedError(
                f"Upload of {upload_request.bucket}/{upload_request.key} failed"
            ) from exc
        return upload_response(result)
