"""Image phase - illustrates the narration when agentic image generation is on.

Inline images are produced while the narration streams, so this phase only
handles the agentic mode, where an LLM picks the scenes worth drawing.
"""

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from src.memory.generation_settings import ImageSettings
from src.services.generation._dependencies import ImageDependencies, ImageGenerationContext
from src.services.generation._events import GenerationEvent, GenerationPhase
from src.services.generation._results import ImageResult, ImageSkipReason
from src.services.generation.phases._base import Phase
from src.utils.cancellation import CancellationToken
from src.utils.exceptions import GenerationCancelledError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageInput:
    context: ImageGenerationContext
    image_settings: ImageSettings
    cancel_token: CancellationToken


class ImagePhase(Phase[ImageInput, ImageResult]):
    """Start image generation for the narration. Errors are non-fatal."""

    phase = GenerationPhase.IMAGE
    _deps: ImageDependencies

    def __init__(self, dependencies: ImageDependencies) -> None:
        """Create the phase with the image generation operation."""
        super().__init__(dependencies)

    def fallback_result(self, phase_input: ImageInput) -> ImageResult:
        return ImageResult(started=False, skipped_reason="aborted")

    def _skip_reason(self, settings: ImageSettings) -> ImageSkipReason | None:
        mode = settings.image_generation_mode
        if mode == "inline":
            return "inline_mode"
        if mode == "none":
            return "disabled"
        if not settings.auto_generate:
            return "agentic_generate_off"
        if not self._deps.is_image_generation_enabled(settings, "standard"):
            return "not_configured"
        if settings.reference_mode and not self._deps.is_image_generation_enabled(
            settings, "reference"
        ):
            return "not_configured"
        return None

    async def _run(self, phase_input: ImageInput) -> AsyncGenerator[GenerationEvent]:
        yield self._start()

        token = phase_input.cancel_token
        reason = self._skip_reason(phase_input.image_settings)
        if reason is not None:
            logger.debug("Image generation skipped: %s", reason)
            yield self._complete(ImageResult(started=False, skipped_reason=reason))
            return

        if token.cancelled:
            yield self._aborted()
            return

        try:
            await self._call(
                self._deps.generate_images_for_narrative(phase_input.context),
                token,
                "generate_images",
            )
        except GenerationCancelledError:
            yield self._aborted()
            return
        except Exception as e:
            yield self._error(e)
            yield self._complete(ImageResult.fallback())
            return

        yield self._complete(ImageResult(started=True))
