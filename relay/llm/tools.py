"""
Tool-Schema Bridge — vendor-neutral tool definitions in, tool-use blocks out.

Translates a ToolDefinition into Anthropic's `tools` entry or OpenAI's
`function` entry, and parses tool invocations back out of provider
responses. Parameter types are checked at translation time: a type the
target dialect cannot express raises UnsupportedToolParameterError before
any request is sent.

Streamed tool arguments arrive as raw JSON fragments. ToolCallAccumulator
buffers them per call id and emits one ToolUseBlock when the provider
signals the end of that block. Malformed JSON does not break the stream:
the block is emitted with empty arguments and a decoding warning is logged.

Usage:
    from relay.llm.tools import ToolDefinition, ToolParameter, to_provider_schema

    lookup = ToolDefinition(
        name="get_weather",
        description="Current weather for a city",
        parameters=[
            ToolParameter("city", "string", "City name", required=True),
            ToolParameter("unit", "string", enum=["celsius", "fahrenheit"]),
        ],
    )
    schema = to_provider_schema([lookup], ProviderKind.ANTHROPIC)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from relay.exceptions import InvalidRequestError, UnsupportedToolParameterError
from relay.llm.types import (
    ProviderKind,
    ToolOutcome,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ToolParameter",
    "ToolDefinition",
    "ToolUseBlock",
    "ToolResultBlock",
    "ToolOutcome",
    "ToolExecutor",
    "ToolCallAccumulator",
    "to_provider_schema",
    "parse_tool_use",
]


# ---------------------------------------------------------------------------
# Schema Dialects
# ---------------------------------------------------------------------------

# Neutral type name -> JSON schema type, per dialect
_TYPE_MAPS: dict[ProviderKind, dict[str, str]] = {
    ProviderKind.ANTHROPIC: {
        "string": "string",
        "number": "number",
        "integer": "integer",
        "boolean": "boolean",
        "array": "array",
        "object": "object",
    },
    ProviderKind.OPENAI: {
        "string": "string",
        "number": "number",
        "integer": "integer",
        "boolean": "boolean",
        "array": "array",
        "object": "object",
    },
}


# ---------------------------------------------------------------------------
# Tool Definition
# ---------------------------------------------------------------------------

@dataclass
class ToolParameter:
    """One typed tool argument. `enum` restricts a string to fixed values."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    enum: Optional[list[str]] = None
    default: Any = None
    items: Optional[dict[str, Any]] = None


@dataclass
class ToolDefinition:
    """Provider-agnostic tool definition."""

    name: str
    description: str
    parameters: list[ToolParameter] = field(default_factory=list)

    @property
    def required(self) -> list[str]:
        return [p.name for p in self.parameters if p.required]

    def input_schema(self, dialect: ProviderKind) -> dict[str, Any]:
        """
        JSON schema for this tool's arguments in `dialect`.

        Raises:
            UnsupportedToolParameterError: a parameter type (or an enum on a
                non-string type) has no mapping in the dialect.
        """
        type_map = _TYPE_MAPS.get(ProviderKind(dialect))
        if type_map is None:
            raise InvalidRequestError(f"No tool schema dialect for provider kind '{dialect}'")

        properties: dict[str, Any] = {}
        for param in self.parameters:
            mapped = type_map.get(param.type)
            if mapped is None:
                raise UnsupportedToolParameterError(
                    f"Tool '{self.name}' parameter '{param.name}' has type "
                    f"'{param.type}' with no {dialect.value} mapping",
                    tool_name=self.name,
                    parameter=param.name,
                    param_type=param.type,
                    dialect=dialect.value,
                )
            if param.enum is not None and param.type != "string":
                raise UnsupportedToolParameterError(
                    f"Tool '{self.name}' parameter '{param.name}': enums are "
                    f"only supported on string parameters",
                    tool_name=self.name,
                    parameter=param.name,
                    param_type=param.type,
                    dialect=dialect.value,
                )

            prop: dict[str, Any] = {"type": mapped}
            if param.description:
                prop["description"] = param.description
            if param.enum is not None:
                prop["enum"] = list(param.enum)
            if param.default is not None:
                prop["default"] = param.default
            if param.type == "array":
                prop["items"] = param.items or {"type": "string"}
            properties[param.name] = prop

        return {
            "type": "object",
            "properties": properties,
            "required": self.required,
        }

    def to_anthropic(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema(ProviderKind.ANTHROPIC),
        }

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema(ProviderKind.OPENAI),
            },
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> list[str]:
        """Check required params and enum membership."""
        errors = []
        for param in self.parameters:
            if param.name not in arguments:
                if param.required:
                    errors.append(f"Missing required parameter: {param.name}")
                continue
            if param.enum is not None and arguments[param.name] not in param.enum:
                errors.append(
                    f"Invalid value for {param.name}: {arguments[param.name]!r}"
                )
        return errors


class ToolExecutor(Protocol):
    """External registry that runs tools. Nothing in this package implements it."""

    async def execute(self, tool_use: ToolUseBlock) -> ToolOutcome:
        ...


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------

def to_provider_schema(
    tools: list[ToolDefinition],
    dialect: ProviderKind,
) -> list[dict[str, Any]]:
    """Translate tool definitions into the dialect's native `tools` list."""
    dialect = ProviderKind(dialect)
    if dialect == ProviderKind.ANTHROPIC:
        return [tool.to_anthropic() for tool in tools]
    if dialect == ProviderKind.OPENAI:
        return [tool.to_openai() for tool in tools]
    raise InvalidRequestError(f"Provider kind '{dialect.value}' has no native tool calling")


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _decode_arguments(raw: str, *, call_id: str, name: str) -> tuple[dict[str, Any], Optional[str]]:
    if not raw or not raw.strip():
        return {}, None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        error = f"invalid JSON: {exc}"
    else:
        if isinstance(decoded, dict):
            return decoded, None
        error = f"expected a JSON object, got {type(decoded).__name__}"

    logger.warning(
        "tool_arguments_decode_failed",
        extra={"tool_name": name, "tool_call_id": call_id, "error": error},
    )
    return {}, error


def parse_tool_use(response: Any, dialect: ProviderKind) -> list[ToolUseBlock]:
    """
    Extract tool-use blocks from a buffered provider response.

    Accepts SDK response objects or their dict form.
    """
    dialect = ProviderKind(dialect)
    blocks: list[ToolUseBlock] = []

    if dialect == ProviderKind.ANTHROPIC:
        for block in _field(response, "content", None) or []:
            if _field(block, "type") != "tool_use":
                continue
            arguments = _field(block, "input", None) or {}
            blocks.append(ToolUseBlock(
                id=_field(block, "id", ""),
                name=_field(block, "name", ""),
                input=dict(arguments),
            ))
        return blocks

    if dialect == ProviderKind.OPENAI:
        choices = _field(response, "choices", None) or []
        if not choices:
            return blocks
        message = _field(choices[0], "message", None)
        for call in _field(message, "tool_calls", None) or []:
            function = _field(call, "function", None)
            call_id = _field(call, "id", "")
            name = _field(function, "name", "")
            arguments, error = _decode_arguments(
                _field(function, "arguments", "") or "", call_id=call_id, name=name,
            )
            blocks.append(ToolUseBlock(id=call_id, name=name, input=arguments, decode_error=error))
        return blocks

    return blocks


# ---------------------------------------------------------------------------
# Streaming Accumulation
# ---------------------------------------------------------------------------

@dataclass
class _PendingCall:
    name: str
    fragments: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """
    Buffers streamed tool-call argument fragments per call id.

    Calls are finished in the order they were started when flushed together.
    """

    def __init__(self) -> None:
        self._pending: dict[str, _PendingCall] = {}

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def start(self, call_id: str, name: str) -> None:
        self._pending[call_id] = _PendingCall(name=name)

    def append(self, call_id: str, fragment: str) -> None:
        pending = self._pending.get(call_id)
        if pending is None:
            logger.warning(
                "tool_fragment_without_start",
                extra={"tool_call_id": call_id},
            )
            pending = self._pending[call_id] = _PendingCall(name="")
        if fragment:
            pending.fragments.append(fragment)

    def finish(self, call_id: str) -> Optional[ToolUseBlock]:
        """Emit the completed block for `call_id`, or None if it was never started."""
        pending = self._pending.pop(call_id, None)
        if pending is None:
            return None
        arguments, error = _decode_arguments(
            "".join(pending.fragments), call_id=call_id, name=pending.name,
        )
        return ToolUseBlock(id=call_id, name=pending.name, input=arguments, decode_error=error)

    def finish_all(self) -> list[ToolUseBlock]:
        blocks = []
        for call_id in list(self._pending):
            block = self.finish(call_id)
            if block is not None:
                blocks.append(block)
        return blocks
