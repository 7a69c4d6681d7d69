"""Shared async LLM client utilities for the generation services.

Uses ``ollama.AsyncClient.chat()``; structured calls pass ``format=`` set to
the pydantic model's JSON schema for grammar-constrained JSON output.
All calls use stream=True to prevent HTTP read-timeouts on long-running
generations (e.g. qwen3 thinking mode can produce thousands of internal
tokens before output), with watchdog timeouts from settings.
"""

import asyncio
import logging
import time
import weakref
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import httpx
import ollama
from pydantic import BaseModel, ValidationError

from src.settings import Settings
from src.utils.exceptions import LLMConnectionError, LLMError, LLMGenerationError
from src.utils.streaming import StreamChunk, consume_stream, iter_stream

logger = logging.getLogger(__name__)

# Clients and request slots are bound to the event loop that created them
_ollama_clients: weakref.WeakKeyDictionary[
    asyncio.AbstractEventLoop, dict[tuple[str, float], ollama.AsyncClient]
] = weakref.WeakKeyDictionary()
_request_slots: weakref.WeakKeyDictionary[
    asyncio.AbstractEventLoop, dict[int, asyncio.Semaphore]
] = weakref.WeakKeyDictionary()

_TRANSIENT_ERRORS = (ConnectionError, TimeoutError, httpx.TimeoutException, httpx.TransportError)

type ChatMessage = dict[str, str]


def estimate_token_count(text: str) -> int:
    """Estimate token count for a text string.

    Uses the rough heuristic of ~4 characters per token, which is a reasonable
    approximation for English text with most tokenizers.
    """
    return len(text) // 4


def warn_if_prompt_too_large(prompt: str, model: str, context_size: int, max_tokens: int) -> None:
    """Log a warning if the prompt + max_tokens may exceed the context window.

    Uses a 90% threshold to account for system prompt overhead and formatting
    tokens that are not included in the prompt text.
    """
    estimated_prompt_tokens = estimate_token_count(prompt)
    total_estimated = estimated_prompt_tokens + max_tokens
    threshold = int(context_size * 0.9)

    if total_estimated > threshold:
        logger.warning(
            "Prompt (~%d tokens) + max_tokens (%d) may exceed context_size (%d) "
            "for model %s. Output may be truncated.",
            estimated_prompt_tokens,
            max_tokens,
            context_size,
            model,
        )


def build_messages(prompt: str, system_prompt: str | None = None) -> list[ChatMessage]:
    """Build a chat message list from an optional system prompt and a user prompt."""
    messages: list[ChatMessage] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


def get_ollama_client(settings: Settings) -> ollama.AsyncClient:
    """Get or create an async Ollama client for the given settings.

    Clients are cached per running event loop, keyed by URL and timeout.

    Returns:
        AsyncClient configured for the given settings.
    """
    loop = asyncio.get_running_loop()
    timeout = float(settings.ollama_timeout)
    cache_key = (settings.ollama_url, timeout)

    clients = _ollama_clients.setdefault(loop, {})
    if cache_key not in clients:
        clients[cache_key] = ollama.AsyncClient(host=settings.ollama_url, timeout=timeout)
        logger.debug("Created Ollama client for %s (timeout=%.0fs)", settings.ollama_url, timeout)
    return clients[cache_key]


def _semaphore(settings: Settings) -> asyncio.Semaphore:
    loop = asyncio.get_running_loop()
    limit = settings.llm_max_concurrent_requests
    slots = _request_slots.setdefault(loop, {})
    if limit not in slots:
        slots[limit] = asyncio.Semaphore(limit)
    return slots[limit]


@asynccontextmanager
async def request_slot(settings: Settings, model: str) -> AsyncIterator[None]:
    """Hold one of the ``llm_max_concurrent_requests`` slots for a call."""
    semaphore = _semaphore(settings)
    if semaphore.locked():
        logger.debug("Waiting for a free LLM request slot (model=%s)", model)
    async with semaphore:
        yield


def _chat_options(settings: Settings, temperature: float) -> dict[str, Any]:
    return {
        "temperature": temperature,
        "num_ctx": settings.context_size,
        "num_predict": settings.max_tokens,
    }


async def _backoff(settings: Settings, attempt: int) -> None:
    backoff = min(2**attempt, settings.llm_retry_backoff_cap)
    logger.debug("Backing off %.1fs before retry", backoff)
    await asyncio.sleep(backoff)


async def generate_structured[T: BaseModel](
    settings: Settings,
    model: str,
    prompt: str,
    response_model: type[T],
    system_prompt: str | None = None,
    temperature: float = 0.1,
    max_retries: int | None = None,
) -> T:
    """Generate structured output using the native Ollama format parameter.

    Args:
        settings: Application settings.
        model: The Ollama model to use.
        prompt: The user prompt to send.
        response_model: Pydantic model class defining the expected output structure.
        system_prompt: Optional system prompt.
        temperature: Temperature for generation (default 0.1 for structured output).
        max_retries: Attempts on validation or transient failure
            (None = settings.llm_max_retries).

    Returns:
        Instance of response_model with validated data.

    Raises:
        LLMGenerationError: If output never validated after all attempts.
        LLMConnectionError: If Ollama stayed unreachable after all attempts.
        LLMError: On non-retryable Ollama errors.
        ValueError: If max_retries < 1.
    """
    attempts = settings.llm_max_retries if max_retries is None else max_retries
    if attempts < 1:
        raise ValueError(f"max_retries must be >= 1, got {attempts}")

    client = get_ollama_client(settings)
    messages = build_messages(prompt, system_prompt)
    json_schema = response_model.model_json_schema()
    warn_if_prompt_too_large(prompt, model, settings.context_size, settings.max_tokens)

    logger.debug(
        "Generating structured output: model=%s, response_model=%s, temperature=%s, attempts=%d",
        model,
        response_model.__name__,
        temperature,
        attempts,
    )

    last_error: Exception | None = None
    transient = False

    for attempt in range(attempts):
        try:
            start_time = time.perf_counter()
            async with request_slot(settings, model):
                stream = await client.chat(
                    model=model,
                    messages=messages,
                    format=json_schema,
                    options=_chat_options(settings, temperature),
                    stream=True,
                )
                response = await consume_stream(
                    stream,
                    inter_chunk_timeout=settings.stream_inter_chunk_timeout,
                    wall_clock_timeout=settings.stream_wall_clock_timeout,
                )
            duration = time.perf_counter() - start_time

            prompt_tokens = response.get("prompt_eval_count")
            completion_tokens = response.get("eval_count")
            result = response_model.model_validate_json(response["message"]["content"])

            logger.info(
                "LLM call complete: model=%s, schema=%s, %.2fs, tokens: %s+%s=%s",
                model,
                response_model.__name__,
                duration,
                prompt_tokens,
                completion_tokens,
                (prompt_tokens or 0) + (completion_tokens or 0),
            )
            return result

        except (ValidationError, KeyError, TypeError) as e:
            last_error = e
            transient = False
            logger.warning(
                "Structured output validation/parsing failed (attempt %d/%d): %s",
                attempt + 1,
                attempts,
                e,
            )

        except _TRANSIENT_ERRORS as e:
            last_error = e
            transient = True
            logger.warning(
                "Transient error in structured output (attempt %d/%d): %s",
                attempt + 1,
                attempts,
                e,
            )
            if attempt < attempts - 1:
                await _backoff(settings, attempt)

        except ollama.ResponseError as e:
            logger.error("Ollama response error during structured generation: %s", e)
            raise LLMError(
                f"Structured generation failed for {response_model.__name__}: {e}"
            ) from e

    logger.error("Structured output generation failed after %d attempts", attempts)
    error_cls = LLMConnectionError if transient else LLMGenerationError
    raise error_cls(
        f"Structured generation failed for {response_model.__name__} "
        f"after {attempts} attempts: {last_error}"
    ) from last_error


async def generate_text(
    settings: Settings,
    model: str,
    prompt: str,
    system_prompt: str | None = None,
    temperature: float = 0.7,
    max_retries: int | None = None,
) -> str:
    """Generate free-form text.

    Transient failures are retried with capped backoff; an empty response
    is returned as-is.

    Raises:
        LLMConnectionError: If Ollama stayed unreachable after all attempts.
        LLMError: On non-retryable Ollama errors.
    """
    attempts = settings.llm_max_retries if max_retries is None else max_retries
    if attempts < 1:
        raise ValueError(f"max_retries must be >= 1, got {attempts}")

    client = get_ollama_client(settings)
    messages = build_messages(prompt, system_prompt)
    last_error: Exception | None = None

    for attempt in range(attempts):
        try:
            async with request_slot(settings, model):
                stream = await client.chat(
                    model=model,
                    messages=messages,
                    options=_chat_options(settings, temperature),
                    stream=True,
                )
                response = await consume_stream(
                    stream,
                    inter_chunk_timeout=settings.stream_inter_chunk_timeout,
                    wall_clock_timeout=settings.stream_wall_clock_timeout,
                )
            content: str = response["message"]["content"]
            logger.debug("Text generation complete: model=%s, %d chars", model, len(content))
            return content
        except _TRANSIENT_ERRORS as e:
            last_error = e
            logger.warning(
                "Transient error in text generation (attempt %d/%d): %s",
                attempt + 1,
                attempts,
                e,
            )
            if attempt < attempts - 1:
                await _backoff(settings, attempt)
        except ollama.ResponseError as e:
            logger.error("Ollama response error during text generation: %s", e)
            raise LLMError(f"Text generation failed: {e}") from e

    raise LLMConnectionError(
        f"Text generation failed after {attempts} attempts: {last_error}"
    ) from last_error


async def stream_chat(
    settings: Settings,
    model: str,
    messages: Sequence[ChatMessage],
    temperature: float = 0.8,
) -> AsyncIterator[StreamChunk]:
    """Stream a chat completion chunk by chunk.

    Streams are not retried: once chunks have been forwarded to the user a
    retry would duplicate text. The request slot is held until the stream
    ends or the consumer closes it.

    Raises:
        LLMConnectionError: If Ollama cannot be reached.
        LLMError: On Ollama response errors.
        StreamTimeoutError: If the stream stalls past the watchdog limits.
    """
    client = get_ollama_client(settings)
    async with request_slot(settings, model):
        try:
            stream = await client.chat(
                model=model,
                messages=list(messages),
                options=_chat_options(settings, temperature),
                stream=True,
            )
        except ollama.ResponseError as e:
            raise LLMError(f"Chat stream failed to start: {e}") from e
        except (ConnectionError, httpx.ConnectError) as e:
            raise LLMConnectionError(f"Cannot reach Ollama at {settings.ollama_url}: {e}") from e

        try:
            async for chunk in iter_stream(
                stream,
                inter_chunk_timeout=settings.stream_inter_chunk_timeout,
                wall_clock_timeout=settings.stream_wall_clock_timeout,
            ):
                yield chunk
        except ollama.ResponseError as e:
            raise LLMError(f"Chat stream failed: {e}") from e
