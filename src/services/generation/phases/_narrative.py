"""Narrative phase - streams the narration for this turn.

Unlike the enrichment phases, a narrative failure invalidates the whole
generation, so its errors are fatal.
"""

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass

from src.memory.story_state import Story, StoryEntry, StyleReview, WorldState
from src.services.generation._dependencies import NarrativeDependencies
from src.services.generation._events import (
    GenerationEvent,
    GenerationPhase,
    NarrativeChunkEvent,
)
from src.services.generation._results import NarrativeResult, RetrievalResult
from src.services.generation.phases._base import Phase
from src.utils.cancellation import CancellationToken
from src.utils.exceptions import GenerationCancelledError, LLMGenerationError
from src.utils.streaming import StreamChunk

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class NarrativeInput:
    visible_entries: tuple[StoryEntry, ...]
    world_state: WorldState
    story: Story
    retrieval: RetrievalResult
    style_review: StyleReview | None
    cancel_token: CancellationToken


class NarrativePhase(Phase[NarrativeInput, NarrativeResult]):
    """Stream narration, re-asking when the model answers with nothing."""

    phase = GenerationPhase.NARRATIVE
    _deps: NarrativeDependencies

    def __init__(
        self, dependencies: NarrativeDependencies, max_attempts: int = DEFAULT_MAX_ATTEMPTS
    ) -> None:
        """Create the phase.

        Args:
            dependencies: Provides the narration stream.
            max_attempts: How many times to ask again after an empty response.
        """
        super().__init__(dependencies)
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts

    async def _run(self, phase_input: NarrativeInput) -> AsyncGenerator[GenerationEvent]:
        yield self._start()

        token = phase_input.cancel_token
        content = ""
        reasoning = ""
        chunk_count = 0

        for attempt in range(1, self.max_attempts + 1):
            if token.cancelled:
                yield self._aborted()
                return

            content_parts: list[str] = []
            reasoning_parts: list[str] = []
            chunk_count = 0
            stream: AsyncIterator[StreamChunk] | None = None
            try:
                stream = self._open_stream(phase_input)
                while True:
                    chunk = await self._call(anext(stream, None), token, "stream_narrative")
                    if chunk is None:
                        break
                    chunk_count += 1
                    if chunk.content:
                        content_parts.append(chunk.content)
                    if chunk.reasoning:
                        reasoning_parts.append(chunk.reasoning)
                    if chunk.content or chunk.reasoning:
                        yield NarrativeChunkEvent(content=chunk.content, reasoning=chunk.reasoning)
                    if chunk.done:
                        break
            except GenerationCancelledError:
                yield self._aborted()
                return
            except Exception as e:
                yield self._error(e, fatal=True)
                return
            finally:
                if stream is not None:
                    await _close(stream)

            content = "".join(content_parts)
            reasoning = "".join(reasoning_parts)
            if content.strip():
                break
            logger.warning(
                "Narrator returned an empty response (attempt %d/%d)", attempt, self.max_attempts
            )

        if token.cancelled:
            yield self._aborted()
            return

        if not content.strip():
            yield self._error(
                LLMGenerationError(f"Empty response after {self.max_attempts} attempts"),
                fatal=True,
            )
            return

        logger.info("Narration complete: %d chars in %d chunks", len(content), chunk_count)
        yield self._complete(
            NarrativeResult(content=content, reasoning=reasoning, chunk_count=chunk_count)
        )

    def _open_stream(self, phase_input: NarrativeInput) -> AsyncIterator[StreamChunk]:
        retrieval = phase_input.retrieval
        return aiter(
            self._deps.stream_narrative(
                phase_input.visible_entries,
                phase_input.world_state,
                phase_input.story,
                use_tiered_context=True,
                style_review=phase_input.style_review,
                retrieved_context=retrieval.combined_context,
                timeline_fill=retrieval.timeline_fill,
            )
        )


async def _close(stream: AsyncIterator[StreamChunk]) -> None:
    """Close the narration stream if it supports it (async generators do)."""
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        try:
            await aclose()
        except RuntimeError as e:
            # Raised when the generator is still running in a cancelled task
            logger.debug("Could not close narration stream: %s", e)
