"""Tests for the shared async LLM client helpers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import ollama
import pytest
from pydantic import BaseModel

from src.services import llm_client
from src.services.llm_client import (
    build_messages,
    estimate_token_count,
    generate_structured,
    generate_text,
    get_ollama_client,
    request_slot,
    stream_chat,
    warn_if_prompt_too_large,
)
from src.utils.exceptions import LLMConnectionError, LLMError, LLMGenerationError
from src.utils.streaming import StreamChunk


class Verdict(BaseModel):
    """Small schema used as a structured response."""

    ok: bool
    reason: str = ""


def _response(*contents: str) -> list[dict]:
    chunks = [{"message": {"content": text}, "done": False} for text in contents]
    chunks.append(
        {"message": {"content": ""}, "done": True, "prompt_eval_count": 12, "eval_count": 4}
    )
    return chunks


async def _astream(chunks):
    for chunk in chunks:
        yield chunk


def _client(*outcomes) -> MagicMock:
    """A fake AsyncClient whose chat() returns each outcome in turn.

    An outcome is either a list of raw chunks or an exception to raise.
    """
    queue = list(outcomes)

    async def chat(**_kwargs):
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return _astream(outcome)

    client = MagicMock()
    client.chat = AsyncMock(side_effect=chat)
    return client


@pytest.fixture
def no_backoff():
    with patch.object(llm_client, "_backoff", new=AsyncMock()) as backoff:
        yield backoff


class TestHelpers:
    """Tests for the small pure helpers."""

    def test_build_messages_with_system_prompt(self):
        """The system prompt comes first."""
        assert build_messages("Hi", "Be brief") == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hi"},
        ]

    def test_build_messages_without_system_prompt(self):
        """Only the user message is sent when there is no system prompt."""
        assert build_messages("Hi") == [{"role": "user", "content": "Hi"}]

    def test_estimate_token_count(self):
        """Roughly four characters per token."""
        assert estimate_token_count("a" * 400) == 100

    def test_warn_if_prompt_too_large(self, caplog):
        """Prompts close to the context window are logged."""
        with caplog.at_level("WARNING"):
            warn_if_prompt_too_large("a" * 40000, "qwen3:8b", context_size=8192, max_tokens=2048)

        assert "may exceed context_size" in caplog.text

    def test_small_prompt_not_warned(self, caplog):
        """Small prompts are not logged."""
        with caplog.at_level("WARNING"):
            warn_if_prompt_too_large("hello", "qwen3:8b", context_size=8192, max_tokens=2048)

        assert caplog.text == ""


class TestClientCache:
    """Tests for per-loop client and slot caching."""

    @pytest.mark.asyncio
    async def test_client_reused_for_same_settings(self, settings):
        """The same URL and timeout share one client within a loop."""
        first = get_ollama_client(settings)
        second = get_ollama_client(settings)

        assert first is second

    @pytest.mark.asyncio
    async def test_request_slot_limits_concurrency(self, settings):
        """No more than llm_max_concurrent_requests calls hold a slot at once."""
        settings.llm_max_concurrent_requests = 1
        active = 0
        peak = 0

        async def call():
            nonlocal active, peak
            async with request_slot(settings, "qwen3:8b"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(call(), call(), call())

        assert peak == 1


class TestGenerateStructured:
    """Tests for generate_structured."""

    @pytest.mark.asyncio
    async def test_returns_validated_model(self, settings):
        """Streamed JSON is joined and validated against the schema."""
        client = _client(_response('{"ok": true, ', '"reason": "fine"}'))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            result = await generate_structured(
                settings, "qwen3:8b", "Judge this", Verdict, system_prompt="You judge."
            )

        assert result == Verdict(ok=True, reason="fine")
        kwargs = client.chat.await_args.kwargs
        assert kwargs["format"] == Verdict.model_json_schema()
        assert kwargs["stream"] is True
        assert kwargs["options"]["num_ctx"] == settings.context_size
        assert kwargs["messages"][0] == {"role": "system", "content": "You judge."}

    @pytest.mark.asyncio
    async def test_logs_completion(self, settings, caplog):
        """A successful call logs the model, schema and token counts."""
        client = _client(_response('{"ok": false}'))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            with caplog.at_level("INFO"):
                await generate_structured(settings, "qwen3:8b", "p", Verdict)

        assert "LLM call complete: model=qwen3:8b, schema=Verdict" in caplog.text
        assert "tokens: 12+4=16" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_json_is_retried(self, settings, no_backoff):
        """A response that fails validation is asked again without backoff."""
        client = _client(_response("not json"), _response('{"ok": true}'))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            result = await generate_structured(settings, "qwen3:8b", "p", Verdict)

        assert result.ok is True
        assert client.chat.await_count == 2
        no_backoff.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_validation_exhaustion_raises_generation_error(self, settings):
        """Never-valid output raises LLMGenerationError."""
        client = _client(_response('{"reason": "missing ok"}'))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            with pytest.raises(LLMGenerationError, match="after 2 attempts"):
                await generate_structured(settings, "qwen3:8b", "p", Verdict, max_retries=2)

        assert client.chat.await_count == 2

    @pytest.mark.asyncio
    async def test_transient_errors_back_off_then_raise(self, settings, no_backoff):
        """Connection failures are retried with backoff, then raise LLMConnectionError."""
        client = _client(ConnectionError("refused"))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            with pytest.raises(LLMConnectionError):
                await generate_structured(settings, "qwen3:8b", "p", Verdict, max_retries=3)

        assert client.chat.await_count == 3
        assert no_backoff.await_count == 2

    @pytest.mark.asyncio
    async def test_response_error_is_not_retried(self, settings):
        """Ollama response errors (e.g. unknown model) fail immediately."""
        client = _client(ollama.ResponseError("model 'nope' not found", 404))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            with pytest.raises(LLMError, match="Verdict"):
                await generate_structured(settings, "nope", "p", Verdict)

        assert client.chat.await_count == 1

    @pytest.mark.asyncio
    async def test_max_retries_must_be_positive(self, settings):
        """Zero attempts is a programming error."""
        with pytest.raises(ValueError, match="max_retries must be >= 1"):
            await generate_structured(settings, "qwen3:8b", "p", Verdict, max_retries=0)


class TestGenerateText:
    """Tests for generate_text."""

    @pytest.mark.asyncio
    async def test_returns_joined_text(self, settings):
        """Streamed text is concatenated."""
        client = _client(_response("Bram ", "is a ferryman."))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            text = await generate_text(settings, "qwen3:8b", "Who is Bram?")

        assert text == "Bram is a ferryman."
        assert "format" not in client.chat.await_args.kwargs

    @pytest.mark.asyncio
    async def test_transient_error_then_success(self, settings, no_backoff):
        """A timeout is retried once before succeeding."""
        client = _client(TimeoutError("slow"), _response("ok"))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            text = await generate_text(settings, "qwen3:8b", "p")

        assert text == "ok"
        no_backoff.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exhausted_raises_connection_error(self, settings, no_backoff):
        """Persistent transient failures raise LLMConnectionError."""
        client = _client(ConnectionError("refused"))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            with pytest.raises(LLMConnectionError, match="after 2 attempts"):
                await generate_text(settings, "qwen3:8b", "p", max_retries=2)


class TestStreamChat:
    """Tests for stream_chat."""

    @pytest.mark.asyncio
    async def test_yields_chunks(self, settings):
        """Chunks are normalized and yielded as they arrive."""
        client = _client(_response("The gate ", "opens."))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            chunks = [
                chunk
                async for chunk in stream_chat(
                    settings, "qwen3:8b", [{"role": "user", "content": "go"}]
                )
            ]

        assert [c.content for c in chunks] == ["The gate ", "opens.", ""]
        assert chunks[-1] == StreamChunk(content="", done=True, prompt_eval_count=12, eval_count=4)
        assert client.chat.await_args.kwargs["options"]["temperature"] == 0.8

    @pytest.mark.asyncio
    async def test_response_error_on_start(self, settings):
        """A rejected request raises LLMError."""
        client = _client(ollama.ResponseError("model not found", 404))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            with pytest.raises(LLMError, match="failed to start"):
                async for _ in stream_chat(settings, "nope", []):
                    pass

    @pytest.mark.asyncio
    async def test_connection_error_on_start(self, settings):
        """An unreachable server raises LLMConnectionError."""
        client = _client(ConnectionError("refused"))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            with pytest.raises(LLMConnectionError, match="Cannot reach Ollama"):
                async for _ in stream_chat(settings, "qwen3:8b", []):
                    pass

    @pytest.mark.asyncio
    async def test_slot_released_when_consumer_stops_early(self, settings):
        """Closing the stream early frees its request slot."""
        settings.llm_max_concurrent_requests = 1
        client = _client(_response("a", "b", "c"))

        with patch.object(llm_client, "get_ollama_client", return_value=client):
            stream = stream_chat(settings, "qwen3:8b", [])
            await anext(stream)
            await stream.aclose()

            async with asyncio.timeout(1):
                async with request_slot(settings, "qwen3:8b"):
                    pass
