"""
Tests for the ProviderStream contract.

Covers:
1. Wire-order delivery ending in exactly one terminal chunk
2. Single consumer: a second iteration raises StreamStateError
3. get_usage only after the terminal chunk
4. Transport release on terminal chunk, error, early break and aclose()
5. collect_stream
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from relay.exceptions import StreamStateError, TransientProviderError
from relay.llm.streaming import ProviderStream, StreamChunk, StreamUsage, collect_stream
from relay.llm.types import ToolUseBlock, Usage


async def _chunks(*texts: str, done: bool = True, stop_reason: str = "end_turn"):
    for text in texts:
        yield StreamChunk(text=text)
    if done:
        yield StreamChunk(done=True, stop_reason=stop_reason)


async def _failing(*texts: str):
    for text in texts:
        yield StreamChunk(text=text)
    raise TransientProviderError("connection reset", provider="claude")


# ===========================================================================
# Iteration Contract
# ===========================================================================

class TestProviderStreamIteration:
    """Chunk order and the terminal chunk."""

    @pytest.mark.asyncio
    async def test_yields_in_order_and_ends_with_done(self):
        stream = ProviderStream(_chunks("Hel", "lo", "!"), provider="claude", model="m")
        received = [chunk async for chunk in stream]

        assert [c.text for c in received[:-1]] == ["Hel", "lo", "!"]
        assert received[-1].done is True
        assert sum(1 for c in received if c.done) == 1
        assert stream.finished
        assert stream.chunk_count == 3
        assert stream.text_length == 6

    @pytest.mark.asyncio
    async def test_second_iteration_rejected(self):
        stream = ProviderStream(_chunks("a"))
        _ = [chunk async for chunk in stream]
        with pytest.raises(StreamStateError):
            async for _chunk in stream:
                pass

    @pytest.mark.asyncio
    async def test_second_iteration_rejected_mid_stream(self):
        stream = ProviderStream(_chunks("a", "b"))
        iterator = stream.__aiter__()
        await iterator.__anext__()
        with pytest.raises(StreamStateError):
            stream.__aiter__()

    @pytest.mark.asyncio
    async def test_missing_terminal_chunk_is_error(self):
        stream = ProviderStream(_chunks("a", done=False), provider="gemini")
        with pytest.raises(StreamStateError, match="without a terminal chunk"):
            async for _chunk in stream:
                pass
        assert stream.closed

    @pytest.mark.asyncio
    async def test_error_propagates_after_chunks(self):
        stream = ProviderStream(_failing("partial"))
        received = []
        with pytest.raises(TransientProviderError):
            async for chunk in stream:
                received.append(chunk.text)
        assert received == ["partial"]
        assert stream.closed
        assert not stream.finished


# ===========================================================================
# Usage
# ===========================================================================

class TestProviderStreamUsage:
    """get_usage() availability."""

    @pytest.mark.asyncio
    async def test_usage_before_done_raises(self):
        stream = ProviderStream(_chunks("a"), usage=lambda: Usage(1, 2))
        with pytest.raises(StreamStateError):
            stream.get_usage()

    @pytest.mark.asyncio
    async def test_usage_after_done(self):
        counters = StreamUsage()

        async def events():
            counters.input_tokens = 12
            yield StreamChunk(text="x")
            counters.output_tokens = 7
            yield StreamChunk(done=True)

        stream = ProviderStream(events(), usage=counters.snapshot)
        async for _chunk in stream:
            pass

        usage = stream.get_usage()
        assert usage == Usage(12, 7)
        assert usage.total_tokens == 19

    @pytest.mark.asyncio
    async def test_usage_defaults_to_zero(self):
        stream = ProviderStream(_chunks())
        async for _chunk in stream:
            pass
        assert stream.get_usage() == Usage()


# ===========================================================================
# Transport Release
# ===========================================================================

class TestProviderStreamClose:
    """on_close is called once on every exit path."""

    @pytest.mark.asyncio
    async def test_closed_on_terminal_chunk(self):
        on_close = AsyncMock()
        stream = ProviderStream(_chunks("a"), on_close=on_close)
        async for _chunk in stream:
            pass
        on_close.assert_awaited_once()
        assert stream.closed

    @pytest.mark.asyncio
    async def test_closed_on_error(self):
        on_close = MagicMock()
        stream = ProviderStream(_failing(), on_close=on_close)
        with pytest.raises(TransientProviderError):
            async for _chunk in stream:
                pass
        on_close.assert_called_once()

    @pytest.mark.asyncio
    async def test_closed_when_context_exits_early(self):
        on_close = AsyncMock()
        stream = ProviderStream(_chunks("a", "b", "c"), on_close=on_close)
        async with stream:
            async for _chunk in stream:
                break
        on_close.assert_awaited_once()
        assert stream.closed
        assert not stream.finished

    @pytest.mark.asyncio
    async def test_aclose_idempotent(self):
        on_close = AsyncMock()
        stream = ProviderStream(_chunks("a"), on_close=on_close)
        await stream.aclose()
        await stream.aclose()
        on_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_chunks_after_close(self):
        stream = ProviderStream(_chunks("a", "b"))
        await stream.aclose()
        assert [chunk async for chunk in stream] == []


# ===========================================================================
# collect_stream
# ===========================================================================

class TestCollectStream:
    """Draining a stream into one value."""

    @pytest.mark.asyncio
    async def test_collects_text_tools_and_usage(self):
        call = ToolUseBlock(id="toolu_1", name="lookup", input={"q": "x"})

        async def events():
            yield StreamChunk(text="Let me ")
            yield StreamChunk(text="check.")
            yield StreamChunk(tool_use=call)
            yield StreamChunk(done=True, stop_reason="tool_use")

        stream = ProviderStream(events(), provider="claude", model="claude-sonnet", usage=lambda: Usage(5, 3))
        collected = await collect_stream(stream)

        assert collected.text == "Let me check."
        assert collected.tool_calls == [call]
        assert collected.stop_reason == "tool_use"
        assert collected.provider == "claude"
        assert collected.model == "claude-sonnet"
        assert collected.usage == Usage(5, 3)
        assert stream.closed
