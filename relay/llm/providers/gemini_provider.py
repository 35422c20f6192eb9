"""
Gemini adapter — Google Generative Language REST API over httpx.

Tolerant provider: no alternation check, the system prompt travels as
`systemInstruction`, and the assistant role is sent as "model". Supports
vision but not native tool calling; tool traffic already in history is
folded into plain text by the normalizer.

Endpoints:
    POST /models/{model}:generateContent
    POST /models/{model}:streamGenerateContent?alt=sse
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx

from relay.exceptions import InvalidRequestError
from relay.llm.normalize import prepare_for_provider
from relay.llm.providers.base import BaseProvider
from relay.llm.streaming import StreamChunk, StreamUsage
from relay.llm.types import ChatOptions, ChatResult, ModelTier, ProviderKind

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

GEMINI_MODELS: dict[str, str] = {
    "flash": "gemini-2.5-flash",
    "haiku": "gemini-2.5-flash",
    "sonnet": "gemini-2.5-flash",
    "opus": "gemini-2.5-pro",
}


def _candidate_text(candidate: dict[str, Any]) -> str:
    parts = (candidate.get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if not part.get("thought"))


class GeminiProvider(BaseProvider):
    id = "gemini"
    kind = ProviderKind.GEMINI
    supports_vision = True
    supports_tool_calling = False
    strict_alternation = False

    api_key_env = "GEMINI_API_KEY"
    default_store_key = "gemini_api_key"
    default_models = GEMINI_MODELS
    default_tier = ModelTier.SONNET
    default_think_tier = ModelTier.FLASH
    default_max_output_tokens = 2048

    def _build_client(self, api_key: str) -> Any:
        return httpx.AsyncClient(
            base_url=self.base_url or GEMINI_BASE_URL,
            headers={"x-goog-api-key": api_key},
            timeout=self.request_timeout,
        )

    def _build_request(self, options: ChatOptions, model: str, max_tokens: int) -> dict[str, Any]:
        if options.tools:
            raise InvalidRequestError(
                "Gemini adapter does not support native tool calling",
                provider=self.id,
            )
        request = prepare_for_provider(
            options.messages,
            self.kind,
            system_prompt=options.system_prompt,
            strict=self.strict_alternation,
            provider=self.id,
        )
        request["generationConfig"] = {"maxOutputTokens": max_tokens}
        return self._merge_provider_options(request, options)

    def _check_blocked(self, data: dict[str, Any]) -> None:
        reason = (data.get("promptFeedback") or {}).get("blockReason")
        if reason and not data.get("candidates"):
            raise InvalidRequestError(
                f"Gemini blocked the prompt: {reason}",
                provider=self.id,
                details={"block_reason": reason},
            )

    async def _send(self, client: Any, request: dict[str, Any], model: str) -> ChatResult:
        response = await client.post(f"/models/{model}:generateContent", json=request)
        response.raise_for_status()
        data = response.json()
        self._check_blocked(data)

        candidates = data.get("candidates") or []
        first: dict[str, Any] = candidates[0] if candidates else {}
        usage = data.get("usageMetadata") or {}
        return ChatResult(
            text=_candidate_text(first),
            provider=self.id,
            model=model,
            input_tokens=usage.get("promptTokenCount", 0),
            output_tokens=usage.get("candidatesTokenCount", 0),
            stop_reason=first.get("finishReason"),
        )

    async def _open_stream(self, client: Any, request: dict[str, Any], model: str) -> Any:
        http_request = client.build_request(
            "POST",
            f"/models/{model}:streamGenerateContent",
            params={"alt": "sse"},
            json=request,
        )
        response = await client.send(http_request, stream=True)
        if response.status_code >= 400:
            # Read the body first so the error (and any RetryInfo) is available
            await response.aread()
            await response.aclose()
            response.raise_for_status()
        return response

    async def _read_stream(self, handle: Any, usage: StreamUsage) -> AsyncIterator[StreamChunk]:
        stop_reason: Optional[str] = None

        async for line in handle.aiter_lines():
            if not line.startswith("data:"):
                continue
            payload = line[len("data:"):].strip()
            if not payload:
                continue
            data = json.loads(payload)
            self._check_blocked(data)

            metadata = data.get("usageMetadata") or {}
            if metadata:
                usage.input_tokens = metadata.get("promptTokenCount", usage.input_tokens)
                usage.output_tokens = metadata.get("candidatesTokenCount", usage.output_tokens)

            for candidate in data.get("candidates") or []:
                text = _candidate_text(candidate)
                if text:
                    yield StreamChunk(text=text)
                stop_reason = candidate.get("finishReason") or stop_reason

        yield StreamChunk(done=True, stop_reason=stop_reason)

    async def _close_stream(self, handle: Any) -> None:
        await handle.aclose()
