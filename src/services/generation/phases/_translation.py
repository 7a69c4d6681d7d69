"""Translation phase - translates the finished narration into the reader's language.

When world-state translation is on, the entities the classifier found new in
this narration are translated too. Translation is an enrichment: a failure
leaves the original-language text in place and the pipeline carries on.
"""

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from src.memory.generation_schemas import EntityTranslation, EntryUpdates
from src.memory.generation_settings import TranslationSettings
from src.services.generation._dependencies import TranslationDependencies
from src.services.generation._events import GenerationEvent, GenerationPhase
from src.services.generation._results import TranslationPhaseResult
from src.services.generation.phases._base import Phase
from src.utils.cancellation import CancellationToken
from src.utils.exceptions import GenerationCancelledError, summarize_llm_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranslationInput:
    narrative_content: str
    narrative_entry_id: str
    is_visual_prose: bool
    translation_settings: TranslationSettings
    cancel_token: CancellationToken
    entry_updates: EntryUpdates | None = None


class TranslationPhase(Phase[TranslationInput, TranslationPhaseResult]):
    """Translate narration and new world-state entities as the story's settings ask."""

    phase = GenerationPhase.TRANSLATION
    _deps: TranslationDependencies

    def __init__(self, dependencies: TranslationDependencies) -> None:
        """Create the phase with the translation operations."""
        super().__init__(dependencies)

    def fallback_result(self, phase_input: TranslationInput) -> TranslationPhaseResult:
        return TranslationPhaseResult.fallback()

    async def _run(self, phase_input: TranslationInput) -> AsyncGenerator[GenerationEvent]:
        yield self._start()

        settings = phase_input.translation_settings
        token = phase_input.cancel_token

        translate_narration = settings.should_translate_narration()
        entry_updates = (
            phase_input.entry_updates
            if settings.should_translate_world_state() and _has_new_entities(phase_input)
            else None
        )
        if not translate_narration and entry_updates is None:
            logger.debug("Translation disabled, skipping")
            yield self._complete(TranslationPhaseResult.fallback())
            return

        if token.cancelled:
            yield self._aborted()
            return

        target_language = settings.target_language
        translated_content: str | None = None
        if translate_narration:
            try:
                translated = await self._call(
                    self._deps.translate_narration(
                        phase_input.narrative_content,
                        target_language,
                        phase_input.is_visual_prose,
                    ),
                    token,
                    "translate_narration",
                )
            except GenerationCancelledError:
                yield self._aborted()
                return
            except Exception as e:
                yield self._error(e)
                yield self._complete(TranslationPhaseResult.fallback())
                return

            translated_content = translated.translated_content
            logger.info(
                "Translated narration %s to %s (%d chars)",
                phase_input.narrative_entry_id,
                target_language,
                len(translated_content),
            )

        entities: tuple[EntityTranslation, ...] = ()
        if entry_updates is not None:
            try:
                entities = tuple(
                    await self._call(
                        self._deps.translate_world_state(entry_updates, target_language),
                        token,
                        "translate_world_state",
                    )
                )
            except GenerationCancelledError:
                yield self._aborted()
                return
            except Exception as e:
                # World-state names stay untranslated; the narration result is kept.
                logger.warning(
                    "World-state translation failed for %s: %s",
                    phase_input.narrative_entry_id,
                    summarize_llm_error(e),
                )

        yield self._complete(
            TranslationPhaseResult(
                translated=translated_content is not None,
                translated_content=translated_content,
                target_language=target_language,
                world_state_translations=entities,
            )
        )


def _has_new_entities(phase_input: TranslationInput) -> bool:
    updates = phase_input.entry_updates
    return updates is not None and bool(
        updates.new_characters
        or updates.new_locations
        or updates.new_items
        or updates.new_story_beats
    )
