"""Streaming utilities for Ollama API responses.

Provides helpers for consuming streaming chat responses from the async
Ollama client. Using stream=True prevents HTTP read-timeouts on long-running
generations (thinking models can produce thousands of internal tokens before
output).

Includes inter-chunk and wall-clock watchdog timeouts so a stalled inference
fails instead of blocking a generation forever.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Default timeouts (overridden by settings when available)
_DEFAULT_INTER_CHUNK_TIMEOUT = 120  # seconds between chunks
_DEFAULT_WALL_CLOCK_TIMEOUT = 600  # 10 minutes absolute max


class StreamTimeoutError(TimeoutError):
    """Raised when a streaming response exceeds the configured timeout.

    Attributes:
        partial_content_length: Number of characters received before timeout.
        elapsed_seconds: Wall-clock time elapsed before timeout.
        timeout_type: Either "inter_chunk" or "wall_clock".
    """

    def __init__(
        self,
        message: str,
        *,
        partial_content_length: int = 0,
        elapsed_seconds: float = 0.0,
        timeout_type: str = "inter_chunk",
    ):
        super().__init__(message)
        self.partial_content_length = partial_content_length
        self.elapsed_seconds = elapsed_seconds
        self.timeout_type = timeout_type


@dataclass(frozen=True)
class StreamChunk:
    """One piece of a streamed chat response."""

    content: str = ""
    reasoning: str | None = None
    done: bool = False
    prompt_eval_count: int | None = None
    eval_count: int | None = None


def _to_chunk(raw: Any) -> StreamChunk:
    """Normalize an Ollama ChatResponse chunk (object or dict) into a StreamChunk."""
    if isinstance(raw, dict):
        message = raw.get("message") or {}
        content = message.get("content") or ""
        reasoning = message.get("thinking")
        done = bool(raw.get("done", False))
        prompt_eval_count = raw.get("prompt_eval_count")
        eval_count = raw.get("eval_count")
    else:
        message = getattr(raw, "message", None)
        content = (getattr(message, "content", None) or "") if message else ""
        reasoning = getattr(message, "thinking", None) if message else None
        done = bool(getattr(raw, "done", False))
        prompt_eval_count = getattr(raw, "prompt_eval_count", None)
        eval_count = getattr(raw, "eval_count", None)
    return StreamChunk(
        content=content,
        reasoning=reasoning or None,
        done=done,
        prompt_eval_count=prompt_eval_count if done else None,
        eval_count=eval_count if done else None,
    )


async def iter_stream(
    stream: AsyncIterator[Any],
    *,
    inter_chunk_timeout: float | None = None,
    wall_clock_timeout: float | None = None,
) -> AsyncIterator[StreamChunk]:
    """Yield normalized chunks from an async Ollama chat stream with watchdogs.

    Args:
        stream: Async iterator from ``AsyncClient.chat(stream=True)``.
        inter_chunk_timeout: Max seconds between chunks (None = default 120s).
        wall_clock_timeout: Max total seconds for the stream (None = default 600s).

    Yields:
        StreamChunk for every received chunk, including the final done chunk.

    Raises:
        StreamTimeoutError: If inter-chunk or wall-clock timeout is exceeded.
        ConnectionError: If the stream is interrupted by a network error.
    """
    inter_chunk = (
        inter_chunk_timeout if inter_chunk_timeout is not None else _DEFAULT_INTER_CHUNK_TIMEOUT
    )
    wall_clock = (
        wall_clock_timeout if wall_clock_timeout is not None else _DEFAULT_WALL_CLOCK_TIMEOUT
    )

    iterator = aiter(stream)
    start_time = time.monotonic()
    received_chars = 0

    while True:
        elapsed = time.monotonic() - start_time
        remaining = wall_clock - elapsed
        if remaining <= 0:
            logger.error(
                "Stream wall-clock timeout after %.1fs (limit=%ss, partial_content=%d chars)",
                elapsed,
                wall_clock,
                received_chars,
            )
            raise StreamTimeoutError(
                f"Stream exceeded wall-clock timeout of {wall_clock}s "
                f"(elapsed={elapsed:.1f}s, partial_content={received_chars} chars)",
                partial_content_length=received_chars,
                elapsed_seconds=elapsed,
                timeout_type="wall_clock",
            )

        wait = min(inter_chunk, remaining)
        try:
            raw = await asyncio.wait_for(anext(iterator), timeout=wait)
        except StopAsyncIteration:
            break
        except TimeoutError as e:
            elapsed = time.monotonic() - start_time
            timeout_type = "inter_chunk" if wait == inter_chunk else "wall_clock"
            logger.error(
                "Stream %s timeout: no chunk received for %.0fs "
                "(partial_content=%d chars, elapsed=%.1fs)",
                timeout_type,
                wait,
                received_chars,
                elapsed,
            )
            raise StreamTimeoutError(
                f"No stream chunk received for {wait:.0f}s "
                f"(partial_content={received_chars} chars)",
                partial_content_length=received_chars,
                elapsed_seconds=elapsed,
                timeout_type=timeout_type,
            ) from e
        except (httpx.RemoteProtocolError, httpx.ReadError, httpx.NetworkError) as e:
            logger.error("Ollama stream interrupted mid-response: %s", e)
            raise ConnectionError(f"Ollama stream interrupted: {e}") from e

        chunk = _to_chunk(raw)
        received_chars += len(chunk.content)
        yield chunk
        if chunk.done:
            break

    logger.debug(
        "Stream consumed: %d chars, %.2fs", received_chars, time.monotonic() - start_time
    )


async def consume_stream(
    stream: AsyncIterator[Any],
    *,
    inter_chunk_timeout: float | None = None,
    wall_clock_timeout: float | None = None,
) -> dict[str, Any]:
    """Consume a streaming chat response into a non-streaming-compatible dict.

    Returns:
        Dict with 'message.content', 'prompt_eval_count', and 'eval_count',
        compatible with the non-streaming response access patterns.
    """
    content_parts: list[str] = []
    prompt_eval_count: int | None = None
    eval_count: int | None = None

    async for chunk in iter_stream(
        stream,
        inter_chunk_timeout=inter_chunk_timeout,
        wall_clock_timeout=wall_clock_timeout,
    ):
        if chunk.content:
            content_parts.append(chunk.content)
        if chunk.done:
            prompt_eval_count = chunk.prompt_eval_count
            eval_count = chunk.eval_count

    return {
        "message": {"content": "".join(content_parts)},
        "prompt_eval_count": prompt_eval_count,
        "eval_count": eval_count,
    }
