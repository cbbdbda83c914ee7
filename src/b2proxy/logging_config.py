"""Logging setup for b2proxy.

Every record emitted while an upload is in flight carries that upload's
context (request id, bucket, key and current B2 step). The context lives in
a :class:`contextvars.ContextVar`, so it follows the upload task and any task
it spawns, and :class:`UploadContextFilter` copies it onto each record.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator

CONTEXT_FIELDS = ("request_id", "bucket", "key", "step")
_ACCESS_FIELDS = ("method", "path", "status", "duration_ms")

# Loggers of the HTTP client; at INFO they log every B2 call with its URL.
UPSTREAM_LOGGERS = ("httpx", "httpcore")

_upload_context: ContextVar[dict[str, str]] = ContextVar("b2proxy_upload_context", default={})


@contextmanager
def upload_context(**fields: str | None) -> Iterator[dict[str, str]]:
    """Add fields to the logging context for the duration of the block.

    Fields set to None are ignored; nested blocks extend the outer context.
    """
    current = dict(_upload_context.get())
    current.update({k: v for k, v in fields.items() if v is not None})
    token = _upload_context.set(current)
    try:
        yield current
    finally:
        _upload_context.reset(token)


def current_context() -> dict[str, str]:
    """Return a copy of the active upload context."""
    return dict(_upload_context.get())


class UploadContextFilter(logging.Filter):
    """Copy the active upload context onto log records.

    Values passed explicitly through ``extra=`` win over the context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _upload_context.get().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class TextFormatter(logging.Formatter):
    """Human-readable lines with the upload context appended, e.g.

    ``... INFO b2proxy.orchestrator: Found bucket [request_id=AB12 bucket=photos step=list_buckets]``
    """

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        ]
        if not context:
            return line
        # Keep a trailing traceback after the context.
        head, sep, tail = line.partition("\n")
        return f"{head} [{' '.join(context)}]{sep}{tail}"


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Fields: timestamp, level, logger, message, the upload context and, for
    access-log records, method, path, status and duration_ms.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in CONTEXT_FIELDS + _ACCESS_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        return json.dumps(entry, default=str)


def configure_logging(
    level: str = "INFO", fmt: str = "text", upstream_level: str = "WARNING"
) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level: Log level name for b2proxy (DEBUG, INFO, WARNING, ...).
        fmt: 'text' for human-readable, 'json' for structured.
        upstream_level: Level for the httpx/httpcore loggers. Their INFO
            lines include upload URLs, so they are quieter by default.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.addFilter(UploadContextFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    root.addHandler(handler)

    upstream_numeric = getattr(logging, upstream_level.upper(), logging.WARNING)
    for name in UPSTREAM_LOGGERS:
        logging.getLogger(name).setLevel(upstream_numeric)
