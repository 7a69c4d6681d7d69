"""Post-generation phase - suggestions for authors, action choices for players."""

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from dataclasses import dataclass

from src.memory.generation_schemas import ActionChoice, Suggestion
from src.memory.generation_settings import PromptContext, TranslationSettings
from src.memory.story_state import POV, LorebookEntry, StoryBeat, StoryEntry, WorldState
from src.services.generation._dependencies import PostGenerationDependencies
from src.services.generation._events import GenerationEvent, GenerationPhase
from src.services.generation._results import PostGenerationResult
from src.services.generation.phases._base import Phase
from src.utils.cancellation import CancellationToken
from src.utils.exceptions import GenerationCancelledError, summarize_llm_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostGenerationInput:
    is_creative_mode: bool
    disable_suggestions: bool
    entries: tuple[StoryEntry, ...]
    active_threads: tuple[StoryBeat, ...]
    lorebook_entries: tuple[LorebookEntry, ...]
    prompt_context: PromptContext
    world_state: WorldState
    narrative_response: str
    pov: POV
    translation_settings: TranslationSettings
    cancel_token: CancellationToken


class PostGenerationPhase(Phase[PostGenerationInput, PostGenerationResult]):
    """Offer the next moves: suggestions in creative mode, choices in adventure mode."""

    phase = GenerationPhase.POST
    _deps: PostGenerationDependencies

    def __init__(self, dependencies: PostGenerationDependencies) -> None:
        """Create the phase with the suggestion and translation operations."""
        super().__init__(dependencies)

    def fallback_result(self, phase_input: PostGenerationInput) -> PostGenerationResult:
        return PostGenerationResult.fallback()

    async def _run(self, phase_input: PostGenerationInput) -> AsyncGenerator[GenerationEvent]:
        yield self._start()

        token = phase_input.cancel_token

        if phase_input.disable_suggestions:
            yield self._complete(PostGenerationResult())
            return

        if token.cancelled:
            yield self._aborted()
            return

        try:
            if phase_input.is_creative_mode:
                suggestions = await self._call(
                    self._suggestions(phase_input), token, "generate_suggestions"
                )
                result = PostGenerationResult(suggestions=tuple(suggestions))
            else:
                choices = await self._call(
                    self._action_choices(phase_input), token, "generate_action_choices"
                )
                result = PostGenerationResult(action_choices=tuple(choices))
        except GenerationCancelledError:
            yield self._aborted()
            return
        except Exception as e:
            yield self._error(e)
            yield self._complete(PostGenerationResult.fallback())
            return

        yield self._complete(result)

    async def _suggestions(self, phase_input: PostGenerationInput) -> list[Suggestion]:
        suggestions = await self._deps.generate_suggestions(
            phase_input.entries,
            phase_input.active_threads,
            phase_input.lorebook_entries,
            phase_input.prompt_context,
        )
        return await _translated(
            suggestions, phase_input.translation_settings, self._deps.translate_suggestions
        )

    async def _action_choices(self, phase_input: PostGenerationInput) -> list[ActionChoice]:
        choices = await self._deps.generate_action_choices(
            phase_input.entries,
            phase_input.world_state,
            phase_input.narrative_response,
            phase_input.lorebook_entries,
            phase_input.prompt_context,
            phase_input.pov,
        )
        return await _translated(
            choices, phase_input.translation_settings, self._deps.translate_action_choices
        )


async def _translated[T](
    items: list[T],
    settings: TranslationSettings,
    translate: Callable[[Sequence[T], str], Awaitable[list[T]]],
) -> list[T]:
    """Translate *items* when translation is on, keeping the originals on failure."""
    if not settings.should_translate() or not items:
        return items
    try:
        return await translate(items, settings.target_language)
    except GenerationCancelledError:
        raise
    except Exception as e:
        logger.warning(
            "Translation of %d post-generation items failed, keeping originals: %s",
            len(items),
            summarize_llm_error(e),
        )
        return items
