"""
Shared data types for the provider relay.

Everything a caller hands to (or gets back from) a provider lives here:
messages, request options, results, usage, and the tool-use halves that
travel inside conversation history.

Usage:
    from relay.llm.types import ChatOptions, ProviderMessage, ModelTier

    options = ChatOptions(
        system_prompt="You are terse.",
        messages=[ProviderMessage(role="user", content="hi")],
        tier=ModelTier.FLASH,
    )
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ModelTier(str, Enum):
    """Logical quality/cost level, resolved per provider to a model id."""

    FLASH = "flash"
    HAIKU = "haiku"
    SONNET = "sonnet"
    OPUS = "opus"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ProviderKind(str, Enum):
    """Wire dialect a provider speaks."""

    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OPENAI = "openai"


# ---------------------------------------------------------------------------
# Message Content
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImageAttachment:
    """Binary image plus its mime type (e.g. image/png)."""

    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_base64(cls, encoded: str, mime_type: str = "image/png") -> ImageAttachment:
        return cls(data=base64.b64decode(encoded), mime_type=mime_type)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


@dataclass(frozen=True)
class ToolUseBlock:
    """
    A provider asking for a tool to be invoked.

    `id` is the provider-issued correlation id and must be echoed back in
    the matching ToolResultBlock. `decode_error` is set when the streamed
    arguments were not valid JSON; `input` is then empty.
    """

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    decode_error: Optional[str] = None


@dataclass(frozen=True)
class ToolOutcome:
    """What an external tool executor returns for one ToolUseBlock."""

    success: bool
    output: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class ToolResultBlock:
    """The caller's answer to a ToolUseBlock."""

    tool_use_id: str
    content: str
    is_error: bool = False

    @classmethod
    def from_outcome(cls, tool_use: ToolUseBlock, outcome: ToolOutcome) -> ToolResultBlock:
        """Shape an executor outcome into a result block for `tool_use`."""
        if outcome.success:
            return cls(tool_use_id=tool_use.id, content=outcome.output)
        return cls(
            tool_use_id=tool_use.id,
            content=f"Error: {outcome.error or outcome.output or 'tool failed'}",
            is_error=True,
        )

    def to_anthropic(self) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block

    def to_openai(self) -> dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.tool_use_id,
            "content": self.content,
        }


@dataclass
class ProviderMessage:
    """
    One conversation turn.

    After normalization a message is never empty: it has text, at least one
    image, or tool blocks.
    """

    role: Role
    content: str = ""
    images: list[ImageAttachment] = field(default_factory=list)
    tool_calls: list[ToolUseBlock] = field(default_factory=list)
    tool_results: list[ToolResultBlock] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            self.role = Role(self.role)

    @property
    def is_empty(self) -> bool:
        return (
            not self.content.strip()
            and not self.images
            and not self.tool_calls
            and not self.tool_results
        )


# ---------------------------------------------------------------------------
# Requests and Results
# ---------------------------------------------------------------------------

@dataclass
class ChatOptions:
    """
    A provider-neutral chat request.

    `tier` and `max_output_tokens` fall back to the serving provider's
    defaults when unset. `provider_options` is merged into the request
    payload as-is. `request_id` tags the log records of the call.
    """

    messages: list[Any] = field(default_factory=list)
    system_prompt: str = ""
    tier: Optional[ModelTier] = None
    max_output_tokens: Optional[int] = None
    tools: Optional[list[Any]] = None
    provider_options: Optional[dict[str, Any]] = None
    request_id: Optional[str] = None

    @property
    def has_images(self) -> bool:
        for message in self.messages:
            if isinstance(message, ProviderMessage) and message.images:
                return True
            if isinstance(message, dict) and message.get("images"):
                return True
        return False


@dataclass(frozen=True)
class Usage:
    """Token usage for one exchange."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ChatResult:
    """Immutable record of a completed buffered exchange."""

    text: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    tool_calls: tuple[ToolUseBlock, ...] = ()
    stop_reason: Optional[str] = None
    is_fallback: bool = False
    latency_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def usage(self) -> Usage:
        return Usage(self.input_tokens, self.output_tokens)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderInfo:
    """Static registration entry: identity, capabilities, fallback priority."""

    id: str
    supports_vision: bool = False
    supports_tool_calling: bool = False
    priority: int = 100


@dataclass(frozen=True)
class TokenCost:
    """USD per million tokens."""

    input: float = 0.0
    output: float = 0.0

    def estimate(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens * self.input + output_tokens * self.output) / 1_000_000
