"""
OpenAI adapter — Chat Completions via the official async SDK.

Tolerant provider with vision and native tool calling. The system prompt
is sent as the leading "system" message. Streamed tool calls arrive as
`delta.tool_calls` fragments keyed by index; the first fragment for an
index carries the call id and function name. Calls are completed when
the choice reports a finish_reason.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

import openai

from relay.llm.normalize import prepare_for_provider
from relay.llm.providers.base import BaseProvider
from relay.llm.streaming import StreamChunk, StreamUsage
from relay.llm.tools import ToolCallAccumulator, parse_tool_use, to_provider_schema
from relay.llm.types import ChatOptions, ChatResult, ModelTier, ProviderKind

logger = logging.getLogger(__name__)

OPENAI_MODELS: dict[str, str] = {
    "flash": "gpt-4o-mini",
    "haiku": "gpt-4o-mini",
    "sonnet": "gpt-4o",
    "opus": "gpt-4.1",
}


class OpenAIProvider(BaseProvider):
    id = "openai"
    kind = ProviderKind.OPENAI
    supports_vision = True
    supports_tool_calling = True
    strict_alternation = False

    api_key_env = "OPENAI_API_KEY"
    default_store_key = "openai_api_key"
    default_models = OPENAI_MODELS
    default_tier = ModelTier.SONNET
    default_think_tier = ModelTier.FLASH
    default_max_output_tokens = 4096

    def _build_client(self, api_key: str) -> Any:
        kwargs: dict[str, Any] = {
            "api_key": api_key,
            "max_retries": 0,
            "timeout": self.request_timeout,
        }
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return openai.AsyncOpenAI(**kwargs)

    def _build_request(self, options: ChatOptions, model: str, max_tokens: int) -> dict[str, Any]:
        request: dict[str, Any] = {"model": model, "max_tokens": max_tokens}
        request.update(prepare_for_provider(
            options.messages,
            self.kind,
            system_prompt=options.system_prompt,
            strict=self.strict_alternation,
            provider=self.id,
        ))
        if options.tools:
            request["tools"] = to_provider_schema(options.tools, self.kind)
        return self._merge_provider_options(request, options)

    async def _send(self, client: Any, request: dict[str, Any], model: str) -> ChatResult:
        response = await client.chat.completions.create(**request)

        choice = response.choices[0] if response.choices else None
        usage = response.usage
        return ChatResult(
            text=(choice.message.content if choice else None) or "",
            provider=self.id,
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            tool_calls=tuple(parse_tool_use(response, self.kind)),
            stop_reason=choice.finish_reason if choice else None,
        )

    async def _open_stream(self, client: Any, request: dict[str, Any], model: str) -> Any:
        return await client.chat.completions.create(
            **request,
            stream=True,
            stream_options={"include_usage": True},
        )

    async def _read_stream(self, handle: Any, usage: StreamUsage) -> AsyncIterator[StreamChunk]:
        tools = ToolCallAccumulator()
        index_ids: dict[int, str] = {}
        stop_reason: Optional[str] = None

        async for chunk in handle:
            if chunk.usage is not None:
                usage.input_tokens = chunk.usage.prompt_tokens or 0
                usage.output_tokens = chunk.usage.completion_tokens or 0

            for choice in chunk.choices or []:
                delta = choice.delta
                if delta is not None and delta.content:
                    yield StreamChunk(text=delta.content)

                for fragment in (delta.tool_calls if delta is not None else None) or []:
                    if fragment.id:
                        index_ids[fragment.index] = fragment.id
                        name = fragment.function.name if fragment.function else ""
                        tools.start(fragment.id, name or "")
                    call_id = index_ids.get(fragment.index)
                    arguments = fragment.function.arguments if fragment.function else None
                    if call_id is not None and arguments:
                        tools.append(call_id, arguments)

                if choice.finish_reason:
                    stop_reason = choice.finish_reason
                    for block in tools.finish_all():
                        yield StreamChunk(tool_use=block)
                    index_ids.clear()

        for block in tools.finish_all():
            yield StreamChunk(tool_use=block)
        yield StreamChunk(done=True, stop_reason=stop_reason)

    async def _close_stream(self, handle: Any) -> None:
        await handle.close()
