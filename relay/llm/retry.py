"""
Retry with exponential backoff for transient provider failures.

Each adapter wraps its network calls in `retry_async`. Only errors that
classify as TransientProviderError are retried; everything else is raised
on the first attempt. A vendor "retry-after" hint replaces the computed
delay (clamped to the policy's bounds).

Usage:
    from relay.llm.retry import BACKOFF_POLICIES, retry_async

    response = await retry_async(
        lambda: client.messages.create(**params),
        BACKOFF_POLICIES["llm"],
        provider="claude",
        label="chat",
    )
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from relay.exceptions import TransientProviderError
from relay.llm.errors import classify_error, error_summary

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff. Delays are in seconds."""

    attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    factor: float = 2.0
    jitter: float = 0.3


BACKOFF_POLICIES: dict[str, RetryPolicy] = {
    "aggressive": RetryPolicy(attempts=3, initial_delay=0.1, max_delay=5.0, factor=2.0, jitter=0.1),
    "api": RetryPolicy(attempts=3, initial_delay=0.5, max_delay=30.0, factor=2.0, jitter=0.25),
    "llm": RetryPolicy(attempts=3, initial_delay=1.0, max_delay=60.0, factor=2.0, jitter=0.3),
}


def compute_backoff(
    policy: RetryPolicy,
    attempt: int,
    retry_after: Optional[float] = None,
) -> float:
    """
    Delay before the retry that follows failed `attempt` (1-based).

    With a retry-after hint the hint wins, bounded by max_delay.
    """
    if retry_after is not None:
        return min(max(retry_after, 0.0), policy.max_delay)
    base = policy.initial_delay * policy.factor ** max(attempt - 1, 0)
    jitter = base * policy.jitter * random.random()
    return min(policy.max_delay, base + jitter)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    provider: str,
    label: str = "call",
) -> T:
    """
    Await `operation()` until it succeeds or the policy is exhausted.

    Raises the classified error of the final attempt, chained from the raw
    exception. Cancellation is never retried.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            error = classify_error(exc, provider)
            retryable = isinstance(error, TransientProviderError)
            if not retryable or attempt >= policy.attempts:
                if error is exc:
                    raise
                raise error from exc

            delay = compute_backoff(policy, attempt, error.retry_after)
            logger.warning(
                "provider_retry",
                extra={
                    "provider": provider,
                    "label": label,
                    "attempt": attempt,
                    "max_attempts": policy.attempts,
                    "delay_ms": round(delay * 1000),
                    "status_code": error.status_code,
                    "error": error_summary(exc),
                },
            )
            await asyncio.sleep(delay)
