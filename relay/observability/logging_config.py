"""
Logging setup for the provider relay.

Every module logs through `logging.getLogger(__name__)` with a snake_case
event name as the message and structured fields in `extra={}`. This module
decides how those records are rendered:

- RELAY_ENV=production: one JSON object per line on stdout
- anything else: short colored lines on stderr

A request id set with `request_context()` (or `set_request_id()`) is attached
to every record emitted from the current asyncio task, so the retry,
fallback and exhaustion lines of one request can be grouped.

Usage:
    from relay.observability.logging_config import configure_logging, request_context

    configure_logging()

    with request_context("req-42"):
        result = await manager.chat(options)
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import IO, Any, Iterator, Optional

ENV_VAR = "RELAY_ENV"
LEVEL_ENV_VAR = "RELAY_LOG_LEVEL"

QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "openai")

_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "relay_request_id", default=None,
)


# ---------------------------------------------------------------------------
# Request id
# ---------------------------------------------------------------------------

def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def clear_request_id() -> None:
    _request_id.set(None)


@contextmanager
def request_context(request_id: Optional[str]) -> Iterator[Optional[str]]:
    """
    Tag records emitted inside the block with `request_id`.

    The previous value is restored on exit. Passing None leaves the current
    id untouched.
    """
    if request_id is None:
        yield get_request_id()
        return
    token = _request_id.set(request_id)
    try:
        yield request_id
    finally:
        _request_id.reset(token)


class ContextFilter(logging.Filter):
    """Copies the current request id onto each record that passes through."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = _request_id.get()
        if request_id:
            record.request_id = request_id  # type: ignore[attr-defined]
        return True


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

_BUILTIN_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Fields a caller attached through `extra={}`, in insertion order."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _BUILTIN_ATTRS and not key.startswith("_")
    }


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

        {"timestamp": "2026-01-01T12:00:00+00:00", "level": "WARNING",
         "logger": "relay.llm.manager", "message": "provider_fallback",
         "provider": "gemini", "status_code": 503}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, _json_safe(value)) for key, value in record_extras(record).items()
        )
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class DevFormatter(logging.Formatter):
    """
    Terminal output for local work:

        12:00:01 WARNING  relay.llm.manager | provider_fallback  provider=gemini status_code=503

    Only the fields relay code logs routinely are shown inline.
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    INLINE_FIELDS = frozenset({
        "request_id", "provider", "model", "operation", "attempt", "max_attempts",
        "delay_ms", "status_code", "error", "primary_error", "chunks_delivered",
        "tokens", "cost", "latency_ms",
    })

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        fields = " ".join(
            f"{key}={value}"
            for key, value in record_extras(record).items()
            if key in self.INLINE_FIELDS and value is not None
        )
        line = (
            f"{self.formatTime(record, '%H:%M:%S')} "
            f"{color}{record.levelname:<8}{self.RESET} "
            f"{record.name} | {record.getMessage()}"
        )
        if fields:
            line = f"{line}  {fields}"
        if record.exc_info and record.exc_info[1] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

def configure_logging(
    env: Optional[str] = None,
    level: Optional[int | str] = None,
    stream: Optional[IO[str]] = None,
) -> logging.Handler:
    """
    Replace the root logger's handlers with a single relay handler.

    Args:
        env: "production" for JSON, anything else for dev output.
            Read from RELAY_ENV when omitted (default "development").
        level: Root level. Read from RELAY_LOG_LEVEL when omitted (default INFO).
        stream: Output stream. Defaults to stdout for JSON, stderr otherwise.

    Returns:
        The installed handler.
    """
    env = (env or os.environ.get(ENV_VAR) or "development").strip().lower()
    if level is None:
        level = os.environ.get(LEVEL_ENV_VAR, "INFO").strip().upper()

    if env == "production":
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(DevFormatter())
    handler.addFilter(ContextFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler
