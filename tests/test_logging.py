"""Tests for the structured logging system (capital_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from capital_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    """Parse all JSON log lines from a stream."""
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "capital_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("event_appended", extra={"item_count": 3, "event_type": "COMPLETED"})

        record = _parse_log(stream)
        assert record["item_count"] == 3
        assert record["event_type"] == "COMPLETED"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        LogContext.set(correlation_id="abc-123", user_id="user-456")
        logger.info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["user_id"] == "user-456"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_code_extracted(self):
        """Capital kernel exceptions carry .code and structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from capital_kernel.exceptions import PipelineStateError

        try:
            raise PipelineStateError("run-1", "STARTED", "COMPUTED")
        except PipelineStateError:
            logger.error("stage_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "PIPELINE_STATE_VIOLATION"
        assert record["exc_type"] == "PipelineStateError"
        assert record["exc_current"] == "STARTED"
        assert record["exc_attempted"] == "COMPUTED"

    def test_context_wins_over_extra(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        with LogContext.bind(correlation_id="bound"):
            logger.info("collision", extra={"correlation_id": "extra"})

        assert _parse_log(stream)["correlation_id"] == "bound"

    def test_persistence_error_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from capital_kernel.exceptions import PersistenceError

        try:
            raise PersistenceError("append", "disk full", "run-9")
        except PersistenceError:
            logger.error("store_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "PERSISTENCE_ERROR"
        assert record["exc_operation"] == "append"
        assert record["exc_correlation_id"] == "run-9"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "user_id" not in record

    def test_uuid_and_decimal_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        uid = uuid4()
        logger.info("with_values", extra={"run_id": uid, "amount": Decimal("632.9114")})

        record = _parse_log(stream)
        assert record["run_id"] == str(uid)
        assert record["amount"] == "632.9114"

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # default level is INFO, so the debug line is dropped
        assert len(logs) == 2
        for record in logs:
            assert "ts" in record
            assert "level" in record
            assert "logger" in record
            assert "message" in record


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", user_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "user_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner"):
            assert LogContext.get_all()["correlation_id"] == "inner"
        assert LogContext.get_all()["correlation_id"] == "outer"

    def test_bind_restores_none(self):
        """bind() restores to None if there was no previous value."""
        assert "correlation_id" not in LogContext.get_all()
        with LogContext.bind(correlation_id="temp"):
            assert LogContext.get_all()["correlation_id"] == "temp"
        assert "correlation_id" not in LogContext.get_all()

    def test_bind_stringifies_uuid(self):
        run_id = uuid4()
        with LogContext.bind(correlation_id=run_id):
            assert LogContext.get_all()["correlation_id"] == str(run_id)

    def test_additive_set(self):
        LogContext.set(correlation_id="a")
        LogContext.set(calculation="capital_allocation")
        ctx = LogContext.get_all()
        assert ctx["correlation_id"] == "a"
        assert ctx["calculation"] == "capital_allocation"

    def test_all_fields_in_declaration_order(self):
        LogContext.set(job="replay_verification", user_id="u", correlation_id="c", calculation="x")
        assert list(LogContext.get_all().items()) == [
            ("correlation_id", "c"),
            ("user_id", "u"),
            ("calculation", "x"),
            ("job", "replay_verification"),
        ]

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError, match="portfolio_id"):
            LogContext.set(portfolio_id="p-1")
        with pytest.raises(ValueError):
            with LogContext.bind(portfolio_id="p-1"):
                pass

    def test_bind_restores_on_error(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(correlation_id="run-1", job="audit"):
                raise RuntimeError("boom")
        assert LogContext.get_all() == {}

    def test_bind_skips_none(self):
        LogContext.set(user_id="kept")
        with LogContext.bind(user_id=None, correlation_id="c"):
            assert LogContext.get_all() == {"correlation_id": "c", "user_id": "kept"}

# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for logger setup."""

    def test_idempotent(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=handler)
        root = logging.getLogger("capital_kernel")
        assert len(root.handlers) == 1

    def test_get_logger_returns_child(self):
        logger = get_logger("services.event_store")
        assert logger.name == "capital_kernel.services.event_store"

    def test_level_respected(self):
        handler, stream = _make_handler()
        configure_logging(level=logging.WARNING, handler=handler)
        logger = get_logger("test")
        logger.info("dropped")
        logger.warning("kept")

        logs = _parse_all_logs(stream)
        assert [r["message"] for r in logs] == ["kept"]
