"""
Provider Manager — ordered fallback across provider adapters.

Per request:
1. Select: walk the fallback order, skipping providers that are not
   available or that lack a capability the request needs (tools, images).
2. Dispatch: call the adapter. Transient failures move on to the next
   provider; fatal failures are raised immediately.
3. Streaming: fallback is only allowed before the first chunk reaches the
   caller. After that the manager is committed to that provider and any
   failure ends the stream with PartialStreamError.
4. Accounting: results say which provider/model served them, and usage
   and estimated cost are tracked per provider.

Usage:
    from relay.llm.manager import ProviderManager

    manager = ProviderManager.from_settings()

    result = await manager.chat(ChatOptions(
        system_prompt="You are a helpful assistant.",
        messages=[{"role": "user", "content": "Summarize this log."}],
        tier=ModelTier.FLASH,
    ))
    print(result.text, result.provider, result.model)

    stream = await manager.chat_stream(options)
    async with stream:
        async for chunk in stream:
            print(chunk.text, end="", flush=True)
    print(stream.provider, stream.get_usage())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, NoReturn, Optional, TypeVar

from relay.config.loader import load_settings
from relay.config.schema import RelaySettings
from relay.credentials.resolver import CredentialSource
from relay.exceptions import (
    ConfigurationError,
    NoProvidersAvailableError,
    PartialStreamError,
    ProviderError,
    ProvidersExhaustedError,
    TransientProviderError,
)
from relay.llm.errors import classify_error, error_summary
from relay.llm.normalize import normalize_messages
from relay.llm.providers import PROVIDER_CLASSES, BaseProvider
from relay.llm.streaming import ProviderStream, StreamChunk
from relay.llm.types import ChatOptions, ChatResult, ModelTier, TokenCost, Usage
from relay.observability.logging_config import request_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class _ProviderUsage:
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


# ---------------------------------------------------------------------------
# Provider Manager
# ---------------------------------------------------------------------------

class ProviderManager:
    """
    Owns the fallback order and dispatches requests to provider adapters.

    Safe to share across concurrent asyncio tasks: each request iterates a
    snapshot of the order, and reconfiguration replaces state wholesale.
    """

    def __init__(
        self,
        providers: list[BaseProvider],
        *,
        fallback_order: Optional[list[str]] = None,
        costs: Optional[dict[str, dict[str, TokenCost]]] = None,
    ):
        self._providers: dict[str, BaseProvider] = {}
        for provider in providers:
            if provider.id in self._providers:
                raise ConfigurationError(f"Provider '{provider.id}' registered twice")
            self._providers[provider.id] = provider

        if fallback_order is None:
            fallback_order = [p.id for p in sorted(providers, key=lambda p: p.priority)]
        self._fallback_order: list[str] = []
        self.set_fallback_order(fallback_order)

        self._costs: dict[str, dict[str, TokenCost]] = dict(costs or {})
        self._usage: dict[str, _ProviderUsage] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Optional[RelaySettings] = None,
        *,
        credential_store: Optional[CredentialSource] = None,
        client_factories: Optional[dict[str, Callable[[str], Any]]] = None,
    ) -> ProviderManager:
        """Build adapters for every enabled provider in `settings`."""
        settings = settings or load_settings()
        factories = client_factories or {}
        policy = settings.retry.to_policy()

        providers = []
        for entry in settings.enabled_providers():
            provider_cls = PROVIDER_CLASSES.get(entry.id)
            if provider_cls is None:
                raise ConfigurationError(f"No adapter for provider '{entry.id}'")
            providers.append(provider_cls(
                models=entry.models,
                priority=entry.priority,
                max_output_tokens=entry.default_max_output_tokens,
                retry_policy=policy,
                credential_store=credential_store,
                store_key=entry.store_key,
                api_key_env=entry.api_key_env,
                credential_ttl=settings.credential_cache_ttl,
                request_timeout=settings.request_timeout,
                base_url=entry.base_url,
                client_factory=factories.get(entry.id),
            ))

        return cls(
            providers,
            fallback_order=settings.resolved_fallback_order(),
            costs={entry.id: entry.token_costs() for entry in settings.enabled_providers()},
        )

    # --- Management Helpers ---

    @property
    def fallback_order(self) -> list[str]:
        return list(self._fallback_order)

    def get_provider(self, provider_id: str) -> Optional[BaseProvider]:
        return self._providers.get(provider_id)

    def set_fallback_order(self, provider_ids: list[str]) -> None:
        """Replace the order. Unknown ids are dropped silently."""
        order: list[str] = []
        for provider_id in provider_ids:
            if provider_id in self._providers and provider_id not in order:
                order.append(provider_id)
        self._fallback_order = order
        logger.info("fallback_order_updated", extra={"fallback_order": order})

    async def list_providers(self) -> list[dict[str, Any]]:
        """Every registered provider with its current availability."""
        listing = []
        for provider in self._providers.values():
            info = provider.info
            listing.append({
                "id": info.id,
                "available": await provider.is_available(),
                "supports_vision": info.supports_vision,
                "supports_tool_calling": info.supports_tool_calling,
                "priority": info.priority,
            })
        return listing

    async def get_active_provider_id(self) -> Optional[str]:
        """First available provider in fallback order. No network call."""
        for provider_id in list(self._fallback_order):
            provider = self._providers.get(provider_id)
            if provider is not None and await provider.is_available():
                return provider_id
        return None

    def apply_settings(self, settings: RelaySettings) -> None:
        """
        Swap fallback order, model tables, prices and retry policy.

        Requests already running keep the order they started with.
        """
        policy = settings.retry.to_policy()
        costs = dict(self._costs)
        for entry in settings.providers:
            provider = self._providers.get(entry.id)
            if provider is None:
                continue
            provider.set_models(entry.models)
            provider.retry_policy = policy
            if entry.default_max_output_tokens:
                provider.max_output_tokens = entry.default_max_output_tokens
            costs[entry.id] = entry.token_costs()
        self._costs = costs
        self.set_fallback_order(settings.resolved_fallback_order())

    async def aclose(self) -> None:
        """Close every adapter's transport client."""
        for provider in self._providers.values():
            await provider.aclose()

    # --- Selection and Dispatch ---

    def _ordered_providers(self, options: Optional[ChatOptions]) -> list[BaseProvider]:
        needs_tools = bool(options and options.tools)
        needs_vision = bool(options and options.has_images)

        selected = []
        for provider_id in list(self._fallback_order):
            provider = self._providers.get(provider_id)
            if provider is None:
                continue
            if needs_tools and not provider.supports_tool_calling:
                logger.debug("provider_skipped", extra={"provider": provider_id, "reason": "no_tool_calling"})
                continue
            if needs_vision and not provider.supports_vision:
                logger.debug("provider_skipped", extra={"provider": provider_id, "reason": "no_vision"})
                continue
            selected.append(provider)
        return selected

    async def _is_available(self, provider: BaseProvider) -> bool:
        if await provider.is_available():
            return True
        logger.debug("provider_skipped", extra={"provider": provider.id, "reason": "unavailable"})
        return False

    def _record_fallback(self, error: ProviderError, operation: str) -> None:
        logger.warning(
            "provider_fallback",
            extra={
                "provider": error.provider,
                "operation": operation,
                "status_code": error.status_code,
                "error": error_summary(error),
            },
        )

    def _raise_exhausted(self, errors: list[ProviderError], operation: str) -> NoReturn:
        if not errors:
            raise NoProvidersAvailableError(
                "No AI providers available",
                details={"operation": operation, "fallback_order": self.fallback_order},
            )
        logger.error(
            "providers_exhausted",
            extra={
                "operation": operation,
                "attempted": [e.provider for e in errors],
                "error": error_summary(errors[-1]),
            },
        )
        raise ProvidersExhaustedError(
            f"All providers failed for {operation}: "
            + "; ".join(f"{e.provider}: {error_summary(e)}" for e in errors),
            errors=errors,
        ) from errors[-1]

    async def _dispatch(
        self,
        operation: str,
        call: Callable[[BaseProvider], Awaitable[T]],
        options: Optional[ChatOptions],
    ) -> tuple[T, BaseProvider, list[ProviderError]]:
        errors: list[ProviderError] = []

        for provider in self._ordered_providers(options):
            if not await self._is_available(provider):
                continue
            try:
                result = await call(provider)
            except Exception as exc:
                error = classify_error(exc, provider.id)
                if not isinstance(error, TransientProviderError):
                    if error is exc:
                        raise
                    raise error from exc
                errors.append(error)
                self._record_fallback(error, operation)
                continue

            if errors:
                logger.info(
                    "llm_fallback_used",
                    extra={
                        "operation": operation,
                        "provider": provider.id,
                        "primary_error": error_summary(errors[0]),
                    },
                )
            return result, provider, errors

        self._raise_exhausted(errors, operation)

    @staticmethod
    def _prepare(options: ChatOptions) -> ChatOptions:
        return replace(options, messages=normalize_messages(options.messages))

    # --- Operations ---

    async def chat(self, options: ChatOptions) -> ChatResult:
        """Buffered chat with fallback. The result names the serving provider."""
        options = self._prepare(options)
        with request_context(options.request_id):
            result, provider, errors = await self._dispatch(
                "chat", lambda p: p.chat(options), options,
            )

            result = replace(result, provider=provider.id, is_fallback=bool(errors))
            cost = self._track_usage(provider, options.tier, result.usage)
            logger.info(
                "llm_call_completed",
                extra={
                    "provider": result.provider,
                    "model": result.model,
                    "tokens": result.total_tokens,
                    "cost": f"${cost:.4f}",
                    "latency_ms": round(result.latency_ms, 1),
                },
            )
        return result

    async def chat_stream(self, options: ChatOptions) -> ProviderStream:
        """
        Streaming chat with fallback before the first chunk only.

        Provider selection happens when iteration starts; `provider` and
        `model` on the returned stream are filled in at that point.
        """
        return _FallbackStream(self, self._prepare(options))

    async def think(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        tier: Optional[ModelTier] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Single-turn convenience call with the same fallback rules as chat."""
        result, provider, _ = await self._dispatch(
            "think",
            lambda p: p._think_result(prompt, system_prompt=system_prompt, tier=tier, max_tokens=max_tokens),
            None,
        )
        self._track_usage(provider, tier or provider.default_think_tier, result.usage)
        return result.text

    # --- Usage Accounting ---

    def _track_usage(
        self,
        provider: BaseProvider,
        tier: Optional[ModelTier],
        usage: Optional[Usage],
    ) -> float:
        tier_name = ModelTier(tier).value if tier else provider.default_tier.value
        stats = self._usage.setdefault(provider.id, _ProviderUsage())
        stats.calls += 1
        if usage is None:
            return 0.0
        price = self._costs.get(provider.id, {}).get(tier_name)
        cost = price.estimate(usage.input_tokens, usage.output_tokens) if price else 0.0
        stats.input_tokens += usage.input_tokens
        stats.output_tokens += usage.output_tokens
        stats.cost += cost
        return cost

    def get_usage_stats(self) -> dict[str, Any]:
        """Cumulative usage, in total and per provider."""
        by_provider = {
            provider_id: {
                "calls": stats.calls,
                "input_tokens": stats.input_tokens,
                "output_tokens": stats.output_tokens,
                "cost_usd": round(stats.cost, 4),
            }
            for provider_id, stats in self._usage.items()
        }
        total_in = sum(s.input_tokens for s in self._usage.values())
        total_out = sum(s.output_tokens for s in self._usage.values())
        return {
            "total_calls": sum(s.calls for s in self._usage.values()),
            "total_cost_usd": round(sum(s.cost for s in self._usage.values()), 4),
            "total_input_tokens": total_in,
            "total_output_tokens": total_out,
            "total_tokens": total_in + total_out,
            "by_provider": by_provider,
        }

    def reset_usage(self) -> None:
        """Reset usage counters (e.g., start of a billing period)."""
        self._usage = {}


# ---------------------------------------------------------------------------
# Fallback Stream
# ---------------------------------------------------------------------------

class _FallbackStream(ProviderStream):
    """A ProviderStream that picks its provider on first iteration."""

    def __init__(self, manager: ProviderManager, options: ChatOptions):
        super().__init__(self._run(manager, options), usage=self._inner_usage)
        self._inner: Optional[ProviderStream] = None
        self.is_fallback = False

    def _inner_usage(self) -> Usage:
        return self._inner.get_usage() if self._inner is not None else Usage()

    async def _run(self, manager: ProviderManager, options: ChatOptions) -> AsyncIterator[StreamChunk]:
        errors: list[ProviderError] = []

        for provider in manager._ordered_providers(options):
            if not await manager._is_available(provider):
                continue

            inner: Optional[ProviderStream] = None
            delivered = 0
            try:
                inner = await provider.chat_stream(options)
                self._inner = inner
                self.provider = inner.provider
                self.model = inner.model
                self.is_fallback = bool(errors)

                async for chunk in inner:
                    if chunk.done:
                        manager._track_usage(provider, options.tier, inner.get_usage())
                    else:
                        delivered += 1
                    yield chunk
                return
            except PartialStreamError:
                raise
            except Exception as exc:
                error = classify_error(exc, provider.id)
                if delivered:
                    logger.error(
                        "stream_partial_failure",
                        extra={
                            "provider": provider.id,
                            "chunks_delivered": delivered,
                            "error": error_summary(exc),
                        },
                    )
                    raise PartialStreamError(
                        f"{provider.id} stream failed after {delivered} chunk(s): {error}",
                        provider=provider.id,
                        chunks_delivered=delivered,
                        cause=error,
                    ) from error
                if not isinstance(error, TransientProviderError):
                    if error is exc:
                        raise
                    raise error from exc
                errors.append(error)
                manager._record_fallback(error, "chat_stream")
            finally:
                if inner is not None:
                    await inner.aclose()

        manager._raise_exhausted(errors, "chat_stream")
