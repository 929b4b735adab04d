"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from scheduling_engine.core.logging import (
    _NOISE_LOGGERS,
    _engine_context,
    add_engine_context,
    add_otel_context,
    configure_logging,
    get_engine_context,
    get_negotiation_context,
    negotiation_context,
    set_engine_context,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and engine context between tests."""
    token = _engine_context.set(None)
    yield
    _engine_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        for handler in logging.getLogger(name).handlers:
            handler.close()
        logging.getLogger(name).handlers.clear()


# ---------------------------------------------------------------------------
# ContextVar accessors
# ---------------------------------------------------------------------------


class TestEngineContext:
    def test_set_and_get(self):
        set_engine_context("front-desk")
        assert get_engine_context() == "front-desk"

    def test_default_is_none(self):
        assert get_engine_context() is None


class TestNegotiationContext:
    def test_bound_only_inside_block(self):
        assert get_negotiation_context() is None
        with negotiation_context("neg-1"):
            assert get_negotiation_context() == "neg-1"
            with negotiation_context("neg-2"):
                assert get_negotiation_context() == "neg-2"
            assert get_negotiation_context() == "neg-1"
        assert get_negotiation_context() is None

    def test_reset_after_exception(self):
        with pytest.raises(RuntimeError):
            with negotiation_context("neg-1"):
                raise RuntimeError("boom")
        assert get_negotiation_context() is None


# ---------------------------------------------------------------------------
# add_engine_context processor
# ---------------------------------------------------------------------------


class TestAddEngineContext:
    def test_injects_engine_and_negotiation(self):
        set_engine_context("front-desk")
        with negotiation_context("neg-7"):
            result = add_engine_context(None, "info", {"event": "test"})
        assert result["engine"] == "front-desk"
        assert result["negotiation_id"] == "neg-7"

    def test_handles_unset_context(self):
        """ContextVars not set: engine=None and no negotiation key."""
        result = add_engine_context(None, "info", {"event": "test"})
        assert result["engine"] is None
        assert "negotiation_id" not in result


# ---------------------------------------------------------------------------
# add_otel_context processor
# ---------------------------------------------------------------------------


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("detect"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["trace_id"]) == 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_sets_engine_context(self):
        configure_logging(engine_name="front-desk")
        assert get_engine_context() == "front-desk"

    def test_noise_loggers_suppressed(self):
        configure_logging()
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG


# ---------------------------------------------------------------------------
# Log directory structure
# ---------------------------------------------------------------------------


class TestLogDirectoryStructure:
    def test_creates_engine_directory_only(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, engine_name="front-desk")
        assert [p.name for p in tmp_path.iterdir()] == ["engine"]

    def test_default_file_name_without_engine_name(self, tmp_path: Path):
        configure_logging(log_root=tmp_path)
        assert (tmp_path / "engine" / "scheduling-engine.log").exists()

    def test_engine_log_is_json_with_context(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, engine_name="front-desk")

        with negotiation_context("neg-42"):
            logging.getLogger("scheduling_engine.engine").info("Committed %s", "P")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "engine" / "front-desk.log").read_text().strip().splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "Committed P"
        assert record["engine"] == "front-desk"
        assert record["negotiation_id"] == "neg-42"
        assert record["logger"] == "scheduling_engine.engine"

    def test_http_client_records_reach_the_engine_file_at_warning(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, engine_name="front-desk")

        logging.getLogger("httpx").info("GET /events 200")
        logging.getLogger("httpx").warning("GET /events 503")
        for handler in logging.getLogger().handlers:
            handler.flush()

        text = (tmp_path / "engine" / "front-desk.log").read_text()
        assert "GET /events 503" in text
        assert "GET /events 200" not in text
        assert not logging.getLogger("httpx").handlers
