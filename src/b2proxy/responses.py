"""HTTP responses returned to the caller."""

import json
import traceback
from typing import Any

from fastapi import Response
from fastapi.responses import PlainTextResponse

from b2proxy.errors import ProxyError


def upload_response(result: Any) -> Response:
    """Return B2's upload result as pretty-printed JSON with status 200."""
    return Response(
        content=json.dumps(result, indent=2),
        status_code=200,
        media_type="application/json",
    )


def error_response(exc: ProxyError) -> Response:
    """Render a ProxyError as a plain-text diagnostic."""
    return PlainTextResponse(exc.describe(), status_code=exc.http_status)


def traceback_response(exc: BaseException) -> Response:
    """Render an unhandled exception as a 500 with its full traceback."""
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return PlainTextResponse(trace, status_code=500)
