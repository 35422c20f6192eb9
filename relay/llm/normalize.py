"""
Message Normalizer — canonical conversation history and per-provider wire shapes.

Upstream callers emit loosely-typed history: dicts with "text" or "content",
the Gemini role name "model", empty fragments, several same-role turns in a
row. This module turns that into a canonical ProviderMessage list and then
into the payload each provider dialect expects.

Strict providers (Anthropic) reject anything that does not alternate
user/assistant starting with user. Tolerant providers (Gemini, OpenAI) skip
that check.

Usage:
    from relay.llm.normalize import normalize_messages, prepare_for_provider
    from relay.llm.types import ProviderKind

    messages = normalize_messages([
        {"role": "user", "text": "hi"},
        {"role": "user", "text": "there"},
        {"role": "model", "text": "hello"},
    ])
    payload = prepare_for_provider(
        messages, ProviderKind.ANTHROPIC, system_prompt="Be brief.", strict=True,
    )
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable, Optional

from relay.exceptions import AlternationError, InvalidRequestError
from relay.llm.types import (
    ImageAttachment,
    ProviderKind,
    ProviderMessage,
    Role,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

_ROLE_ALIASES = {
    "user": Role.USER,
    "human": Role.USER,
    "assistant": Role.ASSISTANT,
    "model": Role.ASSISTANT,
}

MESSAGE_SEPARATOR = "\n\n"


# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------

def _coerce_image(raw: Any) -> ImageAttachment:
    if isinstance(raw, ImageAttachment):
        return raw
    if isinstance(raw, dict):
        mime_type = raw.get("mime_type") or raw.get("mimeType") or "image/png"
        if raw.get("data") is not None and isinstance(raw["data"], (bytes, bytearray)):
            return ImageAttachment(data=bytes(raw["data"]), mime_type=mime_type)
        encoded = raw.get("base64") or raw.get("data")
        if isinstance(encoded, str):
            return ImageAttachment.from_base64(encoded, mime_type)
    raise InvalidRequestError(f"Unrecognized image attachment: {type(raw).__name__}")


def _coerce_tool_call(raw: Any, index: int) -> ToolUseBlock:
    if isinstance(raw, ToolUseBlock):
        return raw
    if isinstance(raw, dict) and raw.get("id") and raw.get("name"):
        arguments = raw.get("input", raw.get("arguments"))
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as exc:
                raise InvalidRequestError(
                    f"Messages[{index}]: tool call '{raw['id']}' has malformed arguments"
                ) from exc
        if arguments is None:
            arguments = {}
        if isinstance(arguments, dict):
            return ToolUseBlock(id=str(raw["id"]), name=str(raw["name"]), input=arguments)
    raise InvalidRequestError(
        f"Messages[{index}]: unrecognized tool call {raw!r:.100}"
    )


def _coerce_tool_result(raw: Any, index: int) -> ToolResultBlock:
    if isinstance(raw, ToolResultBlock):
        return raw
    if isinstance(raw, dict):
        tool_use_id = raw.get("tool_use_id") or raw.get("tool_call_id")
        if tool_use_id:
            content = raw.get("content", "")
            if not isinstance(content, str):
                content = json.dumps(content)
            return ToolResultBlock(
                tool_use_id=str(tool_use_id),
                content=content,
                is_error=bool(raw.get("is_error", False)),
            )
    raise InvalidRequestError(
        f"Messages[{index}]: unrecognized tool result {raw!r:.100}"
    )


def _coerce_message(raw: Any, index: int) -> ProviderMessage:
    if isinstance(raw, ProviderMessage):
        return replace(
            raw,
            tool_calls=[_coerce_tool_call(call, index) for call in raw.tool_calls],
            tool_results=[_coerce_tool_result(result, index) for result in raw.tool_results],
        )
    if not isinstance(raw, dict):
        raise InvalidRequestError(
            f"Messages[{index}]: expected a mapping, got {type(raw).__name__}"
        )

    role_name = str(raw.get("role", "")).lower()
    role = _ROLE_ALIASES.get(role_name)
    if role is None:
        raise InvalidRequestError(f"Messages[{index}]: unsupported role '{role_name}'")

    content = raw.get("content")
    if content is None:
        content = raw.get("text", "")

    return ProviderMessage(
        role=role,
        content=str(content or ""),
        images=[_coerce_image(img) for img in raw.get("images") or []],
        tool_calls=[_coerce_tool_call(call, index) for call in raw.get("tool_calls") or []],
        tool_results=[
            _coerce_tool_result(result, index) for result in raw.get("tool_results") or []
        ],
    )


def merge_consecutive_roles(messages: Iterable[ProviderMessage]) -> list[ProviderMessage]:
    """
    Merge runs of same-role messages into one message per run.

    Text is joined with a blank line; images and tool blocks are
    concatenated in order. Input messages are never mutated.
    """
    merged: list[ProviderMessage] = []

    for index, current in enumerate(messages):
        if merged and merged[-1].role == current.role:
            prev = merged[-1]
            if prev.content and current.content:
                content = f"{prev.content}{MESSAGE_SEPARATOR}{current.content}"
            else:
                content = prev.content or current.content
            merged[-1] = replace(
                prev,
                content=content,
                images=prev.images + current.images,
                tool_calls=prev.tool_calls + current.tool_calls,
                tool_results=prev.tool_results + current.tool_results,
            )
            logger.debug(
                "messages_merged",
                extra={"role": current.role.value, "index": index},
            )
        else:
            merged.append(
                replace(
                    current,
                    images=list(current.images),
                    tool_calls=list(current.tool_calls),
                    tool_results=list(current.tool_results),
                )
            )

    return merged


def normalize_messages(raw_messages: Iterable[Any]) -> list[ProviderMessage]:
    """
    Canonicalize raw history.

    Maps role aliases ("model" -> assistant), accepts "text" or "content",
    drops empty messages, then merges consecutive same-role turns.
    Normalizing an already-normalized list returns an equal list.
    """
    kept = []
    for index, raw in enumerate(raw_messages):
        message = _coerce_message(raw, index)
        if message.is_empty:
            continue
        kept.append(message)
    return merge_consecutive_roles(kept)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AlternationResult:
    valid: bool
    error: Optional[str] = None
    index: Optional[int] = None

    def __bool__(self) -> bool:
        return self.valid


def validate_alternation(messages: list[ProviderMessage]) -> AlternationResult:
    """Check that roles alternate, starting with user."""
    expected = Role.USER
    for index, message in enumerate(messages):
        if message.role != expected:
            return AlternationResult(
                valid=False,
                error=(
                    f"Messages[{index}]: expected '{expected.value}' "
                    f"but got '{message.role.value}'"
                ),
                index=index,
            )
        expected = Role.ASSISTANT if expected == Role.USER else Role.USER
    return AlternationResult(valid=True)


# ---------------------------------------------------------------------------
# Wire Formats
# ---------------------------------------------------------------------------

def _anthropic_message(message: ProviderMessage) -> dict[str, Any]:
    if not (message.images or message.tool_calls or message.tool_results):
        return {"role": message.role.value, "content": message.content}

    blocks: list[dict[str, Any]] = [result.to_anthropic() for result in message.tool_results]
    for image in message.images:
        blocks.append({
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image.mime_type,
                "data": image.to_base64(),
            },
        })
    if message.content:
        blocks.append({"type": "text", "text": message.content})
    for call in message.tool_calls:
        blocks.append({
            "type": "tool_use",
            "id": call.id,
            "name": call.name,
            "input": call.input,
        })
    return {"role": message.role.value, "content": blocks}


def _gemini_message(message: ProviderMessage) -> dict[str, Any]:
    parts: list[dict[str, Any]] = []
    text = message.content
    # No native tool calling: fold tool traffic into plain text
    for call in message.tool_calls:
        text += f"{MESSAGE_SEPARATOR}[Called tool {call.name} with {json.dumps(call.input)}]"
    for result in message.tool_results:
        label = "failed" if result.is_error else "returned"
        text += f"{MESSAGE_SEPARATOR}[Tool call {result.tool_use_id} {label}: {result.content}]"
    text = text.strip()
    if text:
        parts.append({"text": text})
    for image in message.images:
        parts.append({
            "inlineData": {"mimeType": image.mime_type, "data": image.to_base64()},
        })
    return {
        "role": "model" if message.role == Role.ASSISTANT else "user",
        "parts": parts,
    }


def _openai_messages(message: ProviderMessage) -> list[dict[str, Any]]:
    wire: list[dict[str, Any]] = [result.to_openai() for result in message.tool_results]

    if message.role == Role.ASSISTANT:
        entry: dict[str, Any] = {"role": "assistant", "content": message.content or None}
        if message.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.input)},
                }
                for call in message.tool_calls
            ]
        wire.append(entry)
        return wire

    if message.images:
        content: list[dict[str, Any]] = []
        if message.content:
            content.append({"type": "text", "text": message.content})
        for image in message.images:
            content.append({"type": "image_url", "image_url": {"url": image.to_data_url()}})
        wire.append({"role": "user", "content": content})
    elif message.content:
        wire.append({"role": "user", "content": message.content})
    return wire


def to_wire_format(
    messages: list[ProviderMessage],
    kind: ProviderKind,
    system_prompt: str = "",
) -> dict[str, Any]:
    """
    Build the conversation part of a provider request payload.

    Returns:
        anthropic: {"messages": [...], "system": "..."}  (system out-of-band)
        gemini:    {"contents": [...], "systemInstruction": {...}}
        openai:    {"messages": [{"role": "system", ...}, ...]}
    """
    kind = ProviderKind(kind)

    if kind == ProviderKind.ANTHROPIC:
        payload: dict[str, Any] = {"messages": [_anthropic_message(m) for m in messages]}
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    if kind == ProviderKind.GEMINI:
        payload = {"contents": [_gemini_message(m) for m in messages]}
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    wire: list[dict[str, Any]] = []
    if system_prompt:
        wire.append({"role": "system", "content": system_prompt})
    for message in messages:
        wire.extend(_openai_messages(message))
    return {"messages": wire}


def prepare_for_provider(
    messages: Iterable[Any],
    kind: ProviderKind,
    *,
    system_prompt: str = "",
    strict: bool = False,
    provider: Optional[str] = None,
) -> dict[str, Any]:
    """
    Normalize, validate (strict providers only) and convert in one step.

    Raises:
        AlternationError: strict provider and roles do not alternate.
    """
    normalized = normalize_messages(messages)
    if strict:
        result = validate_alternation(normalized)
        if not result.valid:
            raise AlternationError(
                f"Message alternation error: {result.error}",
                index=result.index,
                provider=provider,
            )
    return to_wire_format(normalized, kind, system_prompt)
