"""Retrieval phase - pulls chapter memories and lorebook entries into context.

Memory retrieval (agentic or timeline fill) and lorebook retrieval run
concurrently inside the phase. Either one failing only loses its own
context; the phase still completes.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from src.memory.generation_schemas import TimelineFillResult
from src.memory.story_state import POV, StoryEntry, StoryMode, Tense, UserAction, WorldState
from src.services.generation._dependencies import RetrievalDependencies
from src.services.generation._events import GenerationEvent, GenerationPhase
from src.services.generation._results import RetrievalResult
from src.services.generation.phases._base import Phase
from src.utils.cancellation import CancellationToken
from src.utils.exceptions import GenerationCancelledError, summarize_llm_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalInput:
    visible_entries: tuple[StoryEntry, ...]
    world_state: WorldState
    user_action: UserAction
    timeline_fill_enabled: bool
    story_mode: StoryMode
    pov: POV
    tense: Tense
    cancel_token: CancellationToken
    recent_entry_count: int = 10


@dataclass
class _MemoryContext:
    chapter_context: str | None = None
    timeline_fill: TimelineFillResult | None = None


class RetrievalPhase(Phase[RetrievalInput, RetrievalResult]):
    """Gather retrieved context for the narrator."""

    phase = GenerationPhase.RETRIEVAL
    _deps: RetrievalDependencies

    def __init__(self, dependencies: RetrievalDependencies) -> None:
        """Create the phase with the memory and lorebook retrieval operations."""
        super().__init__(dependencies)

    def fallback_result(self, phase_input: RetrievalInput) -> RetrievalResult:
        return RetrievalResult.fallback()

    async def _run(self, phase_input: RetrievalInput) -> AsyncGenerator[GenerationEvent]:
        yield self._start()

        token = phase_input.cancel_token
        world = phase_input.world_state
        memory_config = world.memory_config

        if token.cancelled:
            yield self._aborted()
            return

        use_memory = bool(
            world.chapters and phase_input.timeline_fill_enabled and memory_config.enable_retrieval
        )
        # Agentic retrieval already looks at the lorebook
        use_agentic = self._deps.should_use_agentic_retrieval(len(world.chapters), memory_config)
        use_lorebook = world.has_lore_content and not use_agentic

        if not use_memory and not use_lorebook:
            logger.debug("Nothing to retrieve for this turn")
            yield self._complete(RetrievalResult())
            return

        memory_task = self._memory_retrieval(phase_input) if use_memory else _none()
        lorebook_task = self._lorebook_retrieval(phase_input) if use_lorebook else _none()

        try:
            memory, lorebook_context = await self._call(
                asyncio.gather(memory_task, lorebook_task), token, "retrieve"
            )
        except GenerationCancelledError:
            yield self._aborted()
            return

        memory = memory or _MemoryContext()
        combined = "\n".join(c for c in (memory.chapter_context, lorebook_context) if c) or None
        yield self._complete(
            RetrievalResult(
                chapter_context=memory.chapter_context,
                lorebook_context=lorebook_context,
                timeline_fill=memory.timeline_fill,
                combined_context=combined,
            )
        )

    async def _memory_retrieval(self, phase_input: RetrievalInput) -> _MemoryContext | None:
        """Run agentic retrieval or timeline fill. Failures are logged and absorbed."""
        world = phase_input.world_state
        try:
            if self._deps.should_use_agentic_retrieval(len(world.chapters), world.memory_config):
                agentic = await self._deps.run_agentic_retrieval(
                    phase_input.user_action.content,
                    phase_input.visible_entries,
                    world.chapters,
                    world.lorebook_entries,
                    mode=phase_input.story_mode,
                    pov=phase_input.pov,
                    tense=phase_input.tense,
                )
                context = self._deps.format_agentic_retrieval(agentic) or None
                return _MemoryContext(chapter_context=context)

            timeline_fill = await self._deps.run_timeline_fill(
                phase_input.visible_entries, world.chapters
            )
            return _MemoryContext(timeline_fill=timeline_fill)
        except GenerationCancelledError:
            return None
        except Exception as e:
            logger.warning("Memory retrieval failed (non-fatal): %s", summarize_llm_error(e))
            return None

    async def _lorebook_retrieval(self, phase_input: RetrievalInput) -> str | None:
        """Select lorebook entries for this turn. Failures are logged and absorbed."""
        world = phase_input.world_state
        try:
            result = await self._deps.get_relevant_lorebook_entries(
                world.lorebook_entries,
                phase_input.user_action.content,
                phase_input.visible_entries[-phase_input.recent_entry_count :],
                world,
            )
        except GenerationCancelledError:
            return None
        except Exception as e:
            logger.warning("Lorebook retrieval failed (non-fatal): %s", summarize_llm_error(e))
            return None
        return result.context_block


async def _none() -> None:
    return None
