"""Background image phase - refreshes the scene backdrop when the setting changes."""

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from src.memory.generation_settings import ImageSettings
from src.memory.story_state import StoryEntry
from src.services.generation._dependencies import BackgroundImageDependencies
from src.services.generation._events import GenerationEvent, GenerationPhase
from src.services.generation._results import BackgroundImageResult
from src.services.generation.phases._base import Phase
from src.utils.cancellation import CancellationToken
from src.utils.exceptions import GenerationCancelledError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackgroundImageInput:
    story_id: str
    visible_entries: tuple[StoryEntry, ...]
    image_settings: ImageSettings
    cancel_token: CancellationToken


class BackgroundImagePhase(Phase[BackgroundImageInput, BackgroundImageResult]):
    """Ask the image service whether the background should change, and draw it."""

    phase = GenerationPhase.BACKGROUND
    _deps: BackgroundImageDependencies

    def __init__(self, dependencies: BackgroundImageDependencies) -> None:
        """Create the phase with the background analysis operation."""
        super().__init__(dependencies)

    def fallback_result(self, phase_input: BackgroundImageInput) -> BackgroundImageResult:
        return BackgroundImageResult(started=False, skipped_reason="aborted")

    async def _run(self, phase_input: BackgroundImageInput) -> AsyncGenerator[GenerationEvent]:
        yield self._start()

        settings = phase_input.image_settings
        token = phase_input.cancel_token

        if not settings.background_images_enabled:
            yield self._complete(BackgroundImageResult(started=False, skipped_reason="disabled"))
            return

        if not self._deps.is_image_generation_enabled(settings, "background"):
            yield self._complete(
                BackgroundImageResult(started=False, skipped_reason="not_configured")
            )
            return

        if token.cancelled:
            yield self._aborted()
            return

        try:
            await self._call(
                self._deps.analyze_background_change_and_generate_image(
                    phase_input.story_id, phase_input.visible_entries
                ),
                token,
                "analyze_background",
            )
        except GenerationCancelledError:
            yield self._aborted()
            return
        except Exception as e:
            yield self._error(e)
            yield self._complete(BackgroundImageResult.fallback())
            return

        yield self._complete(BackgroundImageResult(started=True))
