"""
Single place where a raw provider failure gets its category.

Adapters call `classify_error` at the point of failure and raise what it
returns. The manager then acts on the class alone:

    TransientProviderError  -> retry in the adapter, then fall back
    FatalProviderError      -> raise immediately
    PartialStreamError      -> terminal, never falls back

Transient signals: HTTP 429/502/503/504/529, transport timeouts,
connection resets/refusals, and "overloaded" responses.
"""

from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import anthropic
import httpx
import openai

from relay.exceptions import (
    AuthenticationError,
    FatalProviderError,
    InvalidRequestError,
    ProviderError,
    RelayError,
    TransientProviderError,
)

FALLBACKABLE_STATUS_CODES = frozenset({429, 502, 503, 504, 529})
AUTH_STATUS_CODES = frozenset({401, 403})

_TRANSIENT_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "socket hang up",
    "server disconnected",
    "overloaded",
)

_NETWORK_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    anthropic.APIConnectionError,
    openai.APIConnectionError,
    asyncio.TimeoutError,
    ConnectionError,
    TimeoutError,
)

_TRANSIENT_ERROR_TYPES = frozenset({"overloaded_error", "rate_limit_error"})

_RETRY_DELAY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _response_of(exc: BaseException) -> Optional[Any]:
    return getattr(exc, "response", None)


def extract_status(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an SDK/httpx exception, if any."""
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = _response_of(exc)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _parse_retry_after_header(value: str) -> Optional[float]:
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _retry_delay_from_body(response: Any) -> Optional[float]:
    # Gemini reports RetryInfo in the error body: {"retryDelay": "30s"}
    try:
        body = response.json()
    except (ValueError, json.JSONDecodeError, httpx.ResponseNotRead, AttributeError):
        return None
    details = (body.get("error") or {}).get("details") if isinstance(body, dict) else None
    for detail in details or []:
        delay = detail.get("retryDelay") if isinstance(detail, dict) else None
        match = _RETRY_DELAY_PATTERN.match(delay) if isinstance(delay, str) else None
        if match:
            return float(match.group(1))
    return None


def extract_retry_after(exc: BaseException) -> Optional[float]:
    """
    Seconds the vendor asked us to wait, from `retry-after-ms`,
    `retry-after` (seconds or HTTP date), or a Gemini RetryInfo body.
    """
    response = _response_of(exc)
    headers = getattr(response, "headers", None)
    if headers is not None:
        millis = headers.get("retry-after-ms")
        if millis:
            try:
                return max(float(millis) / 1000.0, 0.0)
            except ValueError:
                pass
        header = headers.get("retry-after")
        if header:
            parsed = _parse_retry_after_header(header)
            if parsed is not None:
                return parsed
    if response is not None:
        return _retry_delay_from_body(response)
    return None


def _body_error_type(exc: BaseException) -> Optional[str]:
    # Anthropic error bodies: {"type": "error", "error": {"type": "overloaded_error", ...}}
    body = getattr(exc, "body", None)
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict) and isinstance(error.get("type"), str):
        return error["type"]
    return body.get("type") if isinstance(body.get("type"), str) else None


def is_fallbackable(exc: BaseException) -> bool:
    """True when a raw or classified error may move on to another provider."""
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, RelayError):
        return False
    status = extract_status(exc)
    if status in FALLBACKABLE_STATUS_CODES:
        return True
    if status is not None and status >= 300:
        return False
    # No status, or the 2xx of a stream that was already open (Anthropic
    # reports mid-stream overload as an SSE error event on a 200 response)
    if isinstance(exc, _NETWORK_EXCEPTIONS):
        return True
    if _body_error_type(exc) in _TRANSIENT_ERROR_TYPES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_error(exc: BaseException, provider: Optional[str] = None) -> ProviderError:
    """
    Map any exception to exactly one ProviderError category.

    Already-classified errors come back unchanged (with `provider` filled
    in when it was missing). Callers should `raise result from exc` when
    the result is a new object.
    """
    if isinstance(exc, ProviderError):
        if exc.provider is None:
            exc.provider = provider
        return exc
    if isinstance(exc, RelayError):
        return FatalProviderError(str(exc), provider=provider, details=exc.details)

    status = extract_status(exc)
    if status is not None and status < 400:
        status = None
    retry_after = extract_retry_after(exc)
    summary = f"{type(exc).__name__}: {exc}"

    if is_fallbackable(exc):
        return TransientProviderError(
            summary, provider=provider, status_code=status, retry_after=retry_after,
        )
    if status in AUTH_STATUS_CODES:
        return AuthenticationError(summary, provider=provider, status_code=status)
    if status is not None and 400 <= status < 500:
        return InvalidRequestError(summary, provider=provider, status_code=status)
    return FatalProviderError(summary, provider=provider, status_code=status)


def error_summary(exc: BaseException) -> str:
    """Short one-line description for log fields."""
    text = str(exc).splitlines()[0] if str(exc) else type(exc).__name__
    return text[:300]
