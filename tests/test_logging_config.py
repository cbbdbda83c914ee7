"""Tests for structured logging configuration."""

import json
import logging
import sys

import pytest

from b2proxy.logging_config import (
    UPSTREAM_LOGGERS,
    JSONFormatter,
    TextFormatter,
    UploadContextFilter,
    configure_logging,
    current_context,
    upload_context,
)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="b2proxy.orchestrator",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Uploaded %s",
        args=("my-bucket/a.txt",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_basic_fields(self):
        entry = json.loads(JSONFormatter().format(_record()))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "b2proxy.orchestrator"
        assert entry["message"] == "Uploaded my-bucket/a.txt"
        assert "timestamp" in entry

    def test_extra_fields(self):
        entry = json.loads(
            JSONFormatter().format(_record(bucket="my-bucket", key="a.txt", request_id="ABC"))
        )
        assert entry["bucket"] == "my-bucket"
        assert entry["key"] == "a.txt"
        assert entry["request_id"] == "ABC"
        assert "step" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]


class TestConfigureLogging:
    """Tests for configure_logging()."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        upstream = {name: logging.getLogger(name).level for name in UPSTREAM_LOGGERS}
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        for name, upstream_level in upstream.items():
            logging.getLogger(name).setLevel(upstream_level)

    def test_json_format_installs_formatter(self):
        configure_logging(level="DEBUG", fmt="json")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_text_format(self):
        configure_logging(level="warning", fmt="text")
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_upstream_loggers_quiet_by_default(self):
        configure_logging(level="DEBUG")
        for name in UPSTREAM_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_upstream_level_configurable(self):
        configure_logging(level="INFO", upstream_level="debug")
        assert logging.getLogger("httpx").level == logging.DEBUG

    def test_handler_carries_context_filter(self):
        configure_logging()
        handler = logging.getLogger().handlers[0]
        assert any(isinstance(f, UploadContextFilter) for f in handler.filters)


class TestUploadContext:
    """Tests for upload_context() and UploadContextFilter."""

    def test_nested_blocks_extend_and_restore(self):
        assert current_context() == {}
        with upload_context(request_id="AB12", bucket="photos"):
            with upload_context(step="list_buckets", key=None):
                assert current_context() == {
                    "request_id": "AB12",
                    "bucket": "photos",
                    "step": "list_buckets",
                }
            assert current_context() == {"request_id": "AB12", "bucket": "photos"}
        assert current_context() == {}

    def test_filter_copies_context_onto_record(self):
        record = _record()
        with upload_context(bucket="photos", step="upload_file"):
            assert UploadContextFilter().filter(record)
        assert record.bucket == "photos"
        assert record.step == "upload_file"

    def test_explicit_extra_wins(self):
        record = _record(bucket="explicit")
        with upload_context(bucket="photos"):
            UploadContextFilter().filter(record)
        assert record.bucket == "explicit"


class TestTextFormatter:
    """Tests for TextFormatter."""

    def test_no_context_no_suffix(self):
        line = TextFormatter().format(_record())
        assert line.endswith("b2proxy.orchestrator: Uploaded my-bucket/a.txt")

    def test_context_appended(self):
        line = TextFormatter().format(_record(request_id="AB12", step="list_buckets"))
        assert line.endswith("Uploaded my-bucket/a.txt [request_id=AB12 step=list_buckets]")

    def test_context_stays_on_first_line_with_traceback(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record(step="upload_file")
            record.exc_info = sys.exc_info()
        first, _, rest = TextFormatter().format(record).partition("\n")
        assert first.endswith("[step=upload_file]")
        assert "RuntimeError: boom" in rest
