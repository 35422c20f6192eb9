"""
Single-consumer, finite, non-restartable response streams.

Every `chat_stream` call (adapter or manager) returns a ProviderStream:

- chunks arrive in wire order
- the sequence ends with exactly one chunk where `done=True`
- `get_usage()` is only valid once that terminal chunk has been seen
- the underlying transport is closed on the terminal chunk, on error,
  and on `aclose()` / leaving an `async with` block early

Usage:
    stream = await provider.chat_stream(options)
    async with stream:
        async for chunk in stream:
            print(chunk.text, end="", flush=True)
    print(stream.get_usage().total_tokens)
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from relay.exceptions import StreamStateError
from relay.llm.types import ToolUseBlock, Usage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stream Chunk
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamChunk:
    """One element of a stream. Usage is not carried inline."""

    text: str = ""
    done: bool = False
    tool_use: Optional[ToolUseBlock] = None
    stop_reason: Optional[str] = None


@dataclass
class StreamUsage:
    """Mutable usage counters an adapter fills in while reading events."""

    input_tokens: int = 0
    output_tokens: int = 0

    def snapshot(self) -> Usage:
        return Usage(self.input_tokens, self.output_tokens)


# ---------------------------------------------------------------------------
# Provider Stream
# ---------------------------------------------------------------------------

async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class ProviderStream:
    """
    Wraps an async generator of StreamChunk with the stream contract.

    `provider` and `model` say who is serving the stream. `on_close` is
    called once to release the transport (sync or async callable).
    """

    def __init__(
        self,
        chunks: AsyncIterator[StreamChunk],
        *,
        provider: str = "",
        model: str = "",
        usage: Optional[Callable[[], Usage]] = None,
        on_close: Optional[Callable[[], Any]] = None,
    ):
        self._chunks = chunks
        self.provider = provider
        self.model = model
        self._usage = usage
        self._on_close = on_close
        self._started = False
        self._finished = False
        self._closed = False
        self.chunk_count = 0
        self.text_length = 0

    @property
    def finished(self) -> bool:
        """True once the terminal chunk has been delivered."""
        return self._finished

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> ProviderStream:
        if self._started:
            raise StreamStateError("A stream can only be consumed once")
        self._started = True
        return self

    async def __anext__(self) -> StreamChunk:
        if self._finished or self._closed:
            raise StopAsyncIteration
        self._started = True

        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise StreamStateError(
                f"Stream from {self.provider or 'provider'} ended without a terminal chunk"
            ) from None
        except BaseException:
            await self.aclose()
            raise

        if chunk.done:
            self._finished = True
            await self.aclose()
        else:
            self.chunk_count += 1
            self.text_length += len(chunk.text)
        return chunk

    def get_usage(self) -> Usage:
        """Aggregate usage. Raises StreamStateError before the terminal chunk."""
        if not self._finished:
            raise StreamStateError("Usage is only available after the stream has finished")
        return self._usage() if self._usage is not None else Usage()

    async def aclose(self) -> None:
        """Stop the stream and release the transport. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._chunks, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await _maybe_await(self._on_close())

    async def __aenter__(self) -> ProviderStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@dataclass
class CollectedStream:
    """Everything a drained stream produced."""

    text: str
    provider: str = ""
    model: str = ""
    tool_calls: list[ToolUseBlock] = field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Usage = field(default_factory=Usage)


async def collect_stream(stream: ProviderStream) -> CollectedStream:
    """
    Drain a stream into a single value.

    Useful when you want streaming internally but need the full text:

        stream = await manager.chat_stream(options)
        collected = await collect_stream(stream)
    """
    pieces = []
    tool_calls = []
    stop_reason = None

    async with stream:
        async for chunk in stream:
            if chunk.text:
                pieces.append(chunk.text)
            if chunk.tool_use is not None:
                tool_calls.append(chunk.tool_use)
            if chunk.stop_reason:
                stop_reason = chunk.stop_reason

    return CollectedStream(
        text="".join(pieces),
        provider=stream.provider,
        model=stream.model,
        tool_calls=tool_calls,
        stop_reason=stop_reason,
        usage=stream.get_usage(),
    )
