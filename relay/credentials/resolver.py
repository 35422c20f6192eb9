"""
Credential resolution with a short-lived in-memory cache.

Order: cached value (until its TTL expires) -> credential store -> env var.
The cached entry is an immutable snapshot replaced wholesale, so
concurrent readers always see a complete (value, expiry) pair.
"""

from __future__ import annotations

import inspect
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30.0


class CredentialSource(Protocol):
    """Read-only secret lookup. `get` may be sync or async."""

    def get(self, key: str) -> Any:
        ...


@dataclass(frozen=True)
class _CachedCredential:
    value: Optional[str]
    expires_at: float


class CredentialResolver:
    """Resolves one provider's API key."""

    def __init__(
        self,
        env_var: str,
        *,
        store: Optional[CredentialSource] = None,
        store_key: Optional[str] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ):
        self.env_var = env_var
        self._store = store
        self._store_key = store_key
        self._ttl = ttl_seconds
        self._cached: Optional[_CachedCredential] = None

    async def _read_store(self) -> Optional[str]:
        if self._store is None or not self._store_key:
            return None
        try:
            value = self._store.get(self._store_key)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            logger.warning(
                "credential_store_read_failed",
                extra={"credential": self._store_key, "error": str(e)},
            )
            return None
        return value.strip() if isinstance(value, str) and value.strip() else None

    async def resolve(self) -> Optional[str]:
        """Current API key, or None when no tier has one."""
        cached = self._cached
        now = time.monotonic()
        if cached is not None and cached.expires_at > now:
            return cached.value

        value = await self._read_store()
        if value is None:
            value = os.environ.get(self.env_var, "").strip() or None

        self._cached = _CachedCredential(value=value, expires_at=now + self._ttl)
        return value

    def invalidate(self) -> None:
        """Forget the cached value; the next resolve reads the sources again."""
        self._cached = None
