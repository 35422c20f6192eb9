"""
Tests for relay logging setup.

Covers:
1. record_extras — only caller-supplied fields are picked up
2. JSONFormatter — one parseable object per record, extras at the top level
3. DevFormatter — level color, logger name, inline relay fields
4. Request id — set/clear, request_context nesting, per-task isolation
5. configure_logging — env switching, level, stream, handler replacement
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import sys

import pytest

from relay.observability.logging_config import (
    ENV_VAR,
    LEVEL_ENV_VAR,
    ContextFilter,
    DevFormatter,
    JSONFormatter,
    clear_request_id,
    configure_logging,
    get_request_id,
    record_extras,
    request_context,
    set_request_id,
)


@pytest.fixture(autouse=True)
def _isolate_logging(monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    monkeypatch.delenv(LEVEL_ENV_VAR, raising=False)
    clear_request_id()
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    clear_request_id()


def _record(message="event", level=logging.INFO, name="relay.test", **extra) -> logging.LogRecord:
    record = logging.getLogger(name).makeRecord(
        name, level, "test.py", 1, message, (), None, extra=extra or None,
    )
    return record


# ===========================================================================
# 1. record_extras
# ===========================================================================

class TestRecordExtras:

    def test_only_extras_returned(self):
        record = _record(provider="claude", attempt=2)
        assert record_extras(record) == {"provider": "claude", "attempt": 2}

    def test_plain_record_has_none(self):
        assert record_extras(_record()) == {}


# ===========================================================================
# 2. JSONFormatter
# ===========================================================================

class TestJSONFormatter:
    """Production output."""

    def test_base_fields(self):
        parsed = json.loads(JSONFormatter().format(
            _record("provider_fallback", logging.WARNING, "relay.llm.manager")
        ))
        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "relay.llm.manager"
        assert parsed["message"] == "provider_fallback"
        assert parsed["timestamp"].endswith("+00:00")

    def test_extras_at_top_level(self):
        parsed = json.loads(JSONFormatter().format(
            _record("provider_retry", provider="gemini", delay_ms=1200, status_code=503)
        ))
        assert parsed["provider"] == "gemini"
        assert parsed["delay_ms"] == 1200
        assert parsed["status_code"] == 503

    def test_unserializable_extra_is_repr(self):
        parsed = json.loads(JSONFormatter().format(_record(client=object())))
        assert parsed["client"].startswith("<object object")

    def test_exception_included(self):
        try:
            raise ConnectionResetError("peer went away")
        except ConnectionResetError:
            record = _record("providers_exhausted")
            record.exc_info = sys.exc_info()

        parsed = json.loads(JSONFormatter().format(record))
        assert "ConnectionResetError" in parsed["exception"]
        assert "peer went away" in parsed["exception"]


# ===========================================================================
# 3. DevFormatter
# ===========================================================================

class TestDevFormatter:
    """Local terminal output."""

    def test_layout(self):
        line = DevFormatter().format(_record("stream_started", name="relay.llm.manager"))
        assert "relay.llm.manager | stream_started" in line
        assert "INFO" in line

    def test_relay_fields_inline(self):
        line = DevFormatter().format(
            _record("provider_fallback", provider="gemini", status_code=503, request_id="req-9")
        )
        assert "provider=gemini" in line
        assert "status_code=503" in line
        assert "request_id=req-9" in line

    def test_other_fields_hidden(self):
        line = DevFormatter().format(_record(payload_preview="secret-ish"))
        assert "payload_preview" not in line

    def test_none_fields_hidden(self):
        assert "status_code" not in DevFormatter().format(_record(status_code=None))

    def test_error_is_red(self):
        assert "\033[31m" in DevFormatter().format(_record(level=logging.ERROR))


# ===========================================================================
# 4. Request id
# ===========================================================================

class TestRequestId:

    def test_set_get_clear(self):
        set_request_id("req-1")
        assert get_request_id() == "req-1"
        clear_request_id()
        assert get_request_id() is None

    def test_context_restores_previous(self):
        set_request_id("outer")
        with request_context("inner") as current:
            assert current == "inner"
            assert get_request_id() == "inner"
        assert get_request_id() == "outer"

    def test_context_none_keeps_current(self):
        set_request_id("outer")
        with request_context(None) as current:
            assert current == "outer"
        assert get_request_id() == "outer"

    def test_context_restored_on_error(self):
        with pytest.raises(RuntimeError):
            with request_context("req-err"):
                raise RuntimeError("boom")
        assert get_request_id() is None

    def test_filter_tags_record(self):
        record = _record()
        with request_context("req-7"):
            assert ContextFilter().filter(record) is True
        assert record.request_id == "req-7"  # type: ignore[attr-defined]

    def test_filter_leaves_record_alone_without_id(self):
        record = _record()
        ContextFilter().filter(record)
        assert not hasattr(record, "request_id")

    @pytest.mark.asyncio
    async def test_isolated_between_tasks(self):
        seen: dict[str, str | None] = {}

        async def handle(request_id: str) -> None:
            with request_context(request_id):
                await asyncio.sleep(0)
                seen[request_id] = get_request_id()

        await asyncio.gather(handle("a"), handle("b"))
        assert seen == {"a": "a", "b": "b"}
        assert get_request_id() is None


# ===========================================================================
# 5. configure_logging
# ===========================================================================

class TestConfigureLogging:

    def test_production_json(self):
        handler = configure_logging(env="production")
        assert isinstance(handler.formatter, JSONFormatter)
        assert handler.stream is sys.stdout

    def test_development_by_default(self):
        handler = configure_logging()
        assert isinstance(handler.formatter, DevFormatter)
        assert handler.stream is sys.stderr

    def test_env_var(self, monkeypatch):
        monkeypatch.setenv(ENV_VAR, " Production ")
        assert isinstance(configure_logging().formatter, JSONFormatter)

    def test_level_from_env(self, monkeypatch):
        monkeypatch.setenv(LEVEL_ENV_VAR, "debug")
        configure_logging()
        assert logging.getLogger().level == logging.DEBUG

    def test_explicit_level(self):
        configure_logging(level=logging.ERROR)
        assert logging.getLogger().level == logging.ERROR

    def test_replaces_existing_handlers(self):
        logging.getLogger().addHandler(logging.NullHandler())
        handler = configure_logging()
        assert logging.getLogger().handlers == [handler]

    def test_writes_tagged_json_to_stream(self):
        stream = io.StringIO()
        configure_logging(env="production", stream=stream)

        with request_context("req-42"):
            logging.getLogger("relay.test").warning("provider_retry", extra={"attempt": 1})

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["message"] == "provider_retry"
        assert parsed["request_id"] == "req-42"
        assert parsed["attempt"] == 1

    def test_transport_loggers_quieted(self):
        configure_logging(level=logging.DEBUG)
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("openai").level == logging.WARNING
