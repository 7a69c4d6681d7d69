"""Tests for streaming utilities (iter_stream, consume_stream and StreamTimeoutError)."""

import asyncio
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Any

import httpx
import pytest

from src.utils.streaming import (
    StreamChunk,
    StreamTimeoutError,
    consume_stream,
    iter_stream,
)

# ---------------------------------------------------------------------------
# Mock helpers
# ---------------------------------------------------------------------------


@dataclass
class MockMessage:
    """Mimics an Ollama ChatResponse message."""

    content: str = ""
    thinking: str | None = None


@dataclass
class MockChunk:
    """Mimics an Ollama ChatResponse chunk from a streaming iterator."""

    message: Any = None
    done: bool = False
    prompt_eval_count: int | None = None
    eval_count: int | None = None


def _make_chunks(
    texts: list[str],
    *,
    prompt_eval_count: int | None = None,
    eval_count: int | None = None,
) -> list[MockChunk]:
    """Build a list of mock stream chunks, ending with a done=True chunk."""
    chunks = [MockChunk(message=MockMessage(content=text)) for text in texts]
    # Final done chunk carries token counts
    chunks.append(
        MockChunk(
            message=MockMessage(content=""),
            done=True,
            prompt_eval_count=prompt_eval_count,
            eval_count=eval_count,
        )
    )
    return chunks


async def _astream(chunks: Iterable[Any], delay: float = 0.0) -> AsyncIterator[Any]:
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestConsumeStreamBasic:
    """Tests for normal (non-timeout) stream consumption."""

    @pytest.mark.asyncio
    async def test_consume_stream_basic(self):
        """Normal stream with multiple content chunks returns joined content."""
        chunks = _make_chunks(["Hello, ", "world", "!"], prompt_eval_count=10, eval_count=5)

        result = await consume_stream(_astream(chunks))

        assert result["message"]["content"] == "Hello, world!"
        assert result["prompt_eval_count"] == 10
        assert result["eval_count"] == 5

    @pytest.mark.asyncio
    async def test_consume_stream_none_message(self):
        """Chunks with message=None are handled gracefully."""
        chunks = [
            MockChunk(message=None),
            MockChunk(message=MockMessage(content="data")),
            MockChunk(message=None, done=True),
        ]

        result = await consume_stream(_astream(chunks))

        assert result["message"]["content"] == "data"

    @pytest.mark.asyncio
    async def test_consume_stream_token_counts_none_when_missing(self):
        """Token counts are None when not provided on the final chunk."""
        chunks = [MockChunk(message=MockMessage(content="text")), MockChunk(done=True)]

        result = await consume_stream(_astream(chunks))

        assert result["prompt_eval_count"] is None
        assert result["eval_count"] is None

    @pytest.mark.asyncio
    async def test_dict_chunks_are_supported(self):
        """Raw dict chunks from older clients are normalized too."""
        chunks = [
            {"message": {"content": "Hi"}, "done": False},
            {"message": {"content": ""}, "done": True, "eval_count": 3},
        ]

        result = await consume_stream(_astream(chunks))

        assert result["message"]["content"] == "Hi"
        assert result["eval_count"] == 3


class TestIterStream:
    """Tests for chunk normalization in iter_stream."""

    @pytest.mark.asyncio
    async def test_yields_normalized_chunks(self):
        """Content, thinking and done flags map onto StreamChunk."""
        chunks = [
            MockChunk(message=MockMessage(thinking="hmm")),
            MockChunk(message=MockMessage(content="Answer"), done=True, eval_count=7),
        ]

        result = [chunk async for chunk in iter_stream(_astream(chunks))]

        assert result == [
            StreamChunk(content="", reasoning="hmm"),
            StreamChunk(content="Answer", done=True, eval_count=7),
        ]

    @pytest.mark.asyncio
    async def test_stops_at_done_chunk(self):
        """Chunks after the done chunk are never read."""
        chunks = [
            MockChunk(message=MockMessage(content="a"), done=True),
            MockChunk(message=MockMessage(content="b")),
        ]

        result = [chunk async for chunk in iter_stream(_astream(chunks))]

        assert [chunk.content for chunk in result] == ["a"]

    @pytest.mark.asyncio
    async def test_token_counts_only_on_done_chunk(self):
        """Counts on intermediate chunks are ignored."""
        chunks = [MockChunk(message=MockMessage(content="a"), eval_count=1), MockChunk(done=True)]

        result = [chunk async for chunk in iter_stream(_astream(chunks))]

        assert result[0].eval_count is None


class TestStreamTimeouts:
    """Tests for inter-chunk and wall-clock timeout behaviour."""

    @pytest.mark.asyncio
    async def test_inter_chunk_timeout(self):
        """A gap longer than inter_chunk_timeout raises StreamTimeoutError."""
        chunks = _make_chunks(["a", "b"])

        with pytest.raises(StreamTimeoutError) as exc_info:
            await consume_stream(_astream(chunks, delay=0.2), inter_chunk_timeout=0.05)

        assert exc_info.value.timeout_type == "inter_chunk"
        assert exc_info.value.partial_content_length == 0

    @pytest.mark.asyncio
    async def test_wall_clock_timeout(self):
        """Exceeding wall_clock_timeout raises StreamTimeoutError with type='wall_clock'."""
        chunks = _make_chunks(["a"] * 20)

        with pytest.raises(StreamTimeoutError) as exc_info:
            await consume_stream(
                _astream(chunks, delay=0.02), inter_chunk_timeout=1, wall_clock_timeout=0.1
            )

        assert exc_info.value.timeout_type == "wall_clock"
        assert exc_info.value.partial_content_length > 0

    def test_stream_timeout_error_is_timeout_error(self):
        """StreamTimeoutError is caught by handlers for TimeoutError."""
        error = StreamTimeoutError("slow")

        assert isinstance(error, TimeoutError)
        assert error.timeout_type == "inter_chunk"
        assert error.elapsed_seconds == 0.0


class TestStreamNetworkErrors:
    """Network failures mid-stream become ConnectionError."""

    @pytest.mark.parametrize(
        "error_cls", [httpx.RemoteProtocolError, httpx.ReadError, httpx.NetworkError]
    )
    @pytest.mark.asyncio
    async def test_network_error_wrapped(self, error_cls):
        """httpx transport errors are re-raised as ConnectionError."""

        async def broken():
            yield MockChunk(message=MockMessage(content="a"))
            raise error_cls("peer closed connection")

        with pytest.raises(ConnectionError, match="Ollama stream interrupted"):
            await consume_stream(broken())

    @pytest.mark.asyncio
    async def test_unrelated_exception_propagates(self):
        """Other exceptions pass through untouched."""

        async def broken():
            yield MockChunk(message=MockMessage(content="a"))
            raise ValueError("bad chunk")

        with pytest.raises(ValueError, match="bad chunk"):
            await consume_stream(broken())
