"""
Claude adapter — Anthropic Messages API via the official async SDK.

Strict provider: history must alternate user/assistant starting with user,
checked before any request is sent. Supports vision and native tool calls.
The SDK's own retries are disabled (max_retries=0); retrying is owned by
the adapter's RetryPolicy so it is logged and classified in one place.

Streaming reads raw Messages events:
    message_start        -> input token count
    content_block_start  -> a tool_use block begins (id, name)
    content_block_delta  -> text_delta (emitted) / input_json_delta (buffered)
    content_block_stop   -> completed tool_use block emitted
    message_delta        -> stop_reason, output token count
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import anthropic

from relay.llm.normalize import prepare_for_provider
from relay.llm.providers.base import BaseProvider
from relay.llm.streaming import StreamChunk, StreamUsage
from relay.llm.tools import ToolCallAccumulator, parse_tool_use, to_provider_schema
from relay.llm.types import ChatOptions, ChatResult, ModelTier, ProviderKind

logger = logging.getLogger(__name__)

CLAUDE_MODELS: dict[str, str] = {
    "flash": "claude-haiku-4-5",
    "haiku": "claude-haiku-4-5",
    "sonnet": "claude-sonnet-4-5",
    "opus": "claude-opus-4-1",
}


class ClaudeProvider(BaseProvider):
    id = "claude"
    kind = ProviderKind.ANTHROPIC
    supports_vision = True
    supports_tool_calling = True
    strict_alternation = True

    api_key_env = "ANTHROPIC_API_KEY"
    default_store_key = "anthropic_api_key"
    default_models = CLAUDE_MODELS
    default_tier = ModelTier.SONNET
    default_think_tier = ModelTier.SONNET
    default_max_output_tokens = 4096

    def _build_client(self, api_key: str) -> Any:
        kwargs: dict[str, Any] = {
            "api_key": api_key,
            "max_retries": 0,
            "timeout": self.request_timeout,
        }
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return anthropic.AsyncAnthropic(**kwargs)

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
        response = await client.messages.create(**request)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return ChatResult(
            text=text,
            provider=self.id,
            model=model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            tool_calls=tuple(parse_tool_use(response, self.kind)),
            stop_reason=response.stop_reason,
        )

    async def _open_stream(self, client: Any, request: dict[str, Any], model: str) -> Any:
        return await client.messages.create(**request, stream=True)

    async def _read_stream(self, handle: Any, usage: StreamUsage) -> AsyncIterator[StreamChunk]:
        tools = ToolCallAccumulator()
        block_ids: dict[int, str] = {}
        stop_reason = None

        async for event in handle:
            event_type = event.type

            if event_type == "message_start":
                message_usage = getattr(event.message, "usage", None)
                if message_usage is not None:
                    usage.input_tokens = message_usage.input_tokens or 0
                    usage.output_tokens = getattr(message_usage, "output_tokens", 0) or 0

            elif event_type == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    block_ids[event.index] = block.id
                    tools.start(block.id, block.name)

            elif event_type == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    if delta.text:
                        yield StreamChunk(text=delta.text)
                elif delta.type == "input_json_delta":
                    call_id = block_ids.get(event.index)
                    if call_id is not None:
                        tools.append(call_id, delta.partial_json)

            elif event_type == "content_block_stop":
                call_id = block_ids.pop(event.index, None)
                if call_id is not None:
                    block = tools.finish(call_id)
                    if block is not None:
                        yield StreamChunk(tool_use=block)

            elif event_type == "message_delta":
                stop_reason = event.delta.stop_reason or stop_reason
                delta_usage = getattr(event, "usage", None)
                if delta_usage is not None and delta_usage.output_tokens is not None:
                    usage.output_tokens = delta_usage.output_tokens

        yield StreamChunk(done=True, stop_reason=stop_reason)

    async def _close_stream(self, handle: Any) -> None:
        await handle.close()
