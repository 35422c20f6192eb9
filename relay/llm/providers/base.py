"""
Provider Adapter contract.

Every backend implements the same operation set:

    chat(options)          -> ChatResult
    chat_stream(options)   -> ProviderStream  (iterate, then get_usage())
    think(prompt, ...)     -> str
    is_available()         -> bool  (cheap, no network)
    get_models()           -> {tier: model_id}

BaseProvider implements these as template methods. A concrete adapter
supplies the vendor pieces: how to build its transport client, how to
shape a request, how to send it, and how to read a stream.

Transient transport errors are retried here with the adapter's
RetryPolicy before anything reaches the manager. Streams are opened under
the same retry; once open, a failure before the first chunk is raised as
its classified error and a failure after it becomes PartialStreamError.
"""

from __future__ import annotations

import inspect
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from relay.credentials.resolver import CredentialResolver, CredentialSource
from relay.exceptions import AuthenticationError, PartialStreamError
from relay.llm.errors import classify_error, error_summary
from relay.llm.retry import BACKOFF_POLICIES, RetryPolicy, retry_async
from relay.llm.streaming import ProviderStream, StreamChunk, StreamUsage
from relay.llm.types import (
    ChatOptions,
    ChatResult,
    ModelTier,
    ProviderInfo,
    ProviderKind,
    ProviderMessage,
    Role,
)

logger = logging.getLogger(__name__)

DEFAULT_THINK_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_REQUEST_TIMEOUT = 120.0


@dataclass(eq=False)
class _ClientSnapshot:
    """
    A transport client bound to the credential it was built with.

    `leases` counts calls and open streams still using the client. A
    snapshot replaced after a key rotation is `retired` and gets closed
    when its last lease is returned.
    """

    api_key: str
    client: Any
    leases: int = 0
    retired: bool = False
    closed: bool = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        closer = getattr(self.client, "aclose", None) or getattr(self.client, "close", None)
        if closer is not None:
            result = closer()
            if inspect.isawaitable(result):
                await result


class BaseProvider(ABC):
    """Common adapter machinery. Subclasses set the class attributes."""

    id: str = ""
    kind: ProviderKind = ProviderKind.OPENAI
    supports_vision: bool = False
    supports_tool_calling: bool = False
    strict_alternation: bool = False

    api_key_env: str = ""
    default_store_key: str = ""
    default_models: dict[str, str] = {}
    default_tier: ModelTier = ModelTier.SONNET
    default_think_tier: ModelTier = ModelTier.FLASH
    default_max_output_tokens: int = 4096

    def __init__(
        self,
        *,
        models: Optional[dict[str, str]] = None,
        priority: int = 100,
        max_output_tokens: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        credentials: Optional[CredentialResolver] = None,
        credential_store: Optional[CredentialSource] = None,
        store_key: Optional[str] = None,
        api_key_env: Optional[str] = None,
        credential_ttl: float = 30.0,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        base_url: Optional[str] = None,
        client_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.priority = priority
        self.max_output_tokens = max_output_tokens or self.default_max_output_tokens
        self.retry_policy = retry_policy or BACKOFF_POLICIES["llm"]
        self.request_timeout = request_timeout
        self.base_url = base_url
        self._client_factory = client_factory
        self._credentials = credentials or CredentialResolver(
            api_key_env or self.api_key_env,
            store=credential_store,
            store_key=store_key or self.default_store_key,
            ttl_seconds=credential_ttl,
        )
        self._snapshot: Optional[_ClientSnapshot] = None
        self._models: dict[str, str] = dict(self.default_models)
        if models:
            self.set_models(models)

    # --- Registration ---

    @property
    def info(self) -> ProviderInfo:
        return ProviderInfo(
            id=self.id,
            supports_vision=self.supports_vision,
            supports_tool_calling=self.supports_tool_calling,
            priority=self.priority,
        )

    def get_models(self) -> dict[str, str]:
        return dict(self._models)

    def set_models(self, models: dict[str, str]) -> None:
        """Replace the tier table. Unlisted tiers keep their defaults."""
        table = dict(self.default_models)
        for tier, model in models.items():
            table[ModelTier(tier).value] = model
        self._models = table

    def resolve_model(self, tier: Optional[ModelTier]) -> str:
        table = self._models
        tier = ModelTier(tier) if tier else self.default_tier
        return table.get(tier.value) or table[self.default_tier.value]

    # --- Credentials and Client ---

    async def is_available(self) -> bool:
        """True when an API key resolves. Never touches the network API."""
        return bool(await self._credentials.resolve())

    async def _acquire_client(self) -> _ClientSnapshot:
        """Lease the client for the current key, rebuilding it after a rotation."""
        api_key = await self._credentials.resolve()
        if not api_key:
            raise AuthenticationError(
                f"No API key configured for {self.id} "
                f"(set {self._credentials.env_var} or store it in the credential store)",
                provider=self.id,
            )

        snapshot = self._snapshot
        if snapshot is None or snapshot.api_key != api_key:
            factory = self._client_factory or self._build_client
            previous = snapshot
            snapshot = _ClientSnapshot(api_key=api_key, client=factory(api_key))
            self._snapshot = snapshot
            logger.info("provider_client_rebuilt", extra={"provider": self.id})
            if previous is not None:
                previous.retired = True
                if previous.leases == 0:
                    await previous.close()
        snapshot.leases += 1
        return snapshot

    async def _release_client(self, snapshot: _ClientSnapshot) -> None:
        snapshot.leases -= 1
        if snapshot.retired and snapshot.leases == 0:
            await snapshot.close()

    async def aclose(self) -> None:
        """Close the current transport client, if any."""
        snapshot, self._snapshot = self._snapshot, None
        if snapshot is None:
            return
        snapshot.retired = True
        await snapshot.close()

    # --- Vendor Hooks ---

    @abstractmethod
    def _build_client(self, api_key: str) -> Any:
        """Construct the vendor transport client for `api_key`."""

    @abstractmethod
    def _build_request(self, options: ChatOptions, model: str, max_tokens: int) -> dict[str, Any]:
        """
        Shape the request payload. Runs before any network call, so
        validation errors (alternation, tool schema) surface here.
        """

    @abstractmethod
    async def _send(self, client: Any, request: dict[str, Any], model: str) -> ChatResult:
        """One buffered request/response round trip."""

    @abstractmethod
    async def _open_stream(self, client: Any, request: dict[str, Any], model: str) -> Any:
        """Open a streaming response and return the raw handle."""

    @abstractmethod
    def _read_stream(self, handle: Any, usage: StreamUsage) -> AsyncIterator[StreamChunk]:
        """Yield chunks from an open handle, ending with one done chunk."""

    @abstractmethod
    async def _close_stream(self, handle: Any) -> None:
        """Release the transport behind a stream handle."""

    # --- Operations ---

    async def chat(self, options: ChatOptions) -> ChatResult:
        model = self.resolve_model(options.tier)
        max_tokens = options.max_output_tokens or self.max_output_tokens
        request = self._build_request(options, model, max_tokens)
        snapshot = await self._acquire_client()
        started = time.monotonic()
        try:
            result = await retry_async(
                lambda: self._send(snapshot.client, request, model),
                self.retry_policy,
                provider=self.id,
                label="chat",
            )
        finally:
            await self._release_client(snapshot)
        return replace(result, latency_ms=(time.monotonic() - started) * 1000)

    async def chat_stream(self, options: ChatOptions) -> ProviderStream:
        model = self.resolve_model(options.tier)
        max_tokens = options.max_output_tokens or self.max_output_tokens
        request = self._build_request(options, model, max_tokens)
        snapshot = await self._acquire_client()
        try:
            handle = await retry_async(
                lambda: self._open_stream(snapshot.client, request, model),
                self.retry_policy,
                provider=self.id,
                label="stream_open",
            )
        except BaseException:
            await self._release_client(snapshot)
            raise
        usage = StreamUsage()
        release = self._release_once(handle, snapshot)
        return ProviderStream(
            self._guard_stream(self._read_stream(handle, usage), release),
            provider=self.id,
            model=model,
            usage=usage.snapshot,
            on_close=release,
        )

    def _release_once(self, handle: Any, snapshot: _ClientSnapshot) -> Callable[[], Awaitable[None]]:
        released = False

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            try:
                await self._close_stream(handle)
            finally:
                await self._release_client(snapshot)

        return release

    async def think(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        tier: Optional[ModelTier] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        result = await self._think_result(prompt, system_prompt, tier, max_tokens)
        return result.text

    async def _think_result(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        tier: Optional[ModelTier] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatResult:
        """The full result behind `think`, with usage and model."""
        return await self.chat(ChatOptions(
            system_prompt=system_prompt or DEFAULT_THINK_SYSTEM_PROMPT,
            messages=[ProviderMessage(role=Role.USER, content=prompt)],
            tier=tier or self.default_think_tier,
            max_output_tokens=max_tokens,
        ))

    async def _guard_stream(
        self,
        chunks: AsyncIterator[StreamChunk],
        release: Callable[[], Awaitable[None]],
    ) -> AsyncIterator[StreamChunk]:
        """
        Classify read failures; after the first chunk they become terminal.

        The transport is released when this generator finishes, including
        when an abandoned stream is finalized by the event loop.
        """
        delivered = 0
        try:
            async for chunk in chunks:
                if not chunk.done:
                    delivered += 1
                yield chunk
        except PartialStreamError:
            raise
        except Exception as exc:
            error = classify_error(exc, self.id)
            if delivered:
                logger.error(
                    "stream_partial_failure",
                    extra={
                        "provider": self.id,
                        "chunks_delivered": delivered,
                        "error": error_summary(exc),
                    },
                )
                raise PartialStreamError(
                    f"{self.id} stream failed after {delivered} chunk(s): {error}",
                    provider=self.id,
                    chunks_delivered=delivered,
                    cause=error,
                ) from error
            if error is exc:
                raise
            raise error from exc
        finally:
            try:
                aclose = getattr(chunks, "aclose", None)
                if aclose is not None:
                    await aclose()
            finally:
                await release()

    # --- Shared Request Helpers ---

    @staticmethod
    def _merge_provider_options(request: dict[str, Any], options: ChatOptions) -> dict[str, Any]:
        for key, value in (options.provider_options or {}).items():
            if isinstance(value, dict) and isinstance(request.get(key), dict):
                request[key] = {**request[key], **value}
            else:
                request[key] = value
        return request

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, priority={self.priority})"
