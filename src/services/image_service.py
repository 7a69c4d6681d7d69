"""Image service - scene illustrations and background images.

An LLM picks the moments worth illustrating and writes their prompts; the
configured provider renders them over HTTP. Images are written under
``image_output_dir/<story_id>/``.
"""

import asyncio
import logging
import re
from collections.abc import Sequence
from pathlib import Path
from typing import get_args
from urllib.parse import quote

import httpx

from src.memory.generation_schemas import (
    BackgroundAnalysisResult,
    ImageableScene,
    SceneAnalysisResult,
)
from src.memory.generation_settings import ImageSettings
from src.memory.story_state import StoryEntry
from src.services.generation import ImageGenerationContext, ImageKind
from src.services.llm_client import generate_structured
from src.settings import Settings
from src.utils.exceptions import ImageGenerationError
from src.utils.validation import (
    validate_in_range,
    validate_not_empty,
    validate_string_in_choices,
)

logger = logging.getLogger(__name__)

_ROLE = "image_prompt"

# Providers that accept a reference image alongside the prompt
_REFERENCE_PROVIDERS = frozenset({"pollinations"})

_SCENE_SYSTEM_PROMPT = """You pick moments from a story passage to illustrate. For \
each moment, quote 3-15 words of the passage exactly and write a detailed image \
prompt (subject, setting, lighting, composition, art style) under 500 characters. \
Describe characters by appearance, never by name alone. Rate each moment's priority \
from 1 to 10 and return at most {max_scenes} moments, best first."""

_BACKGROUND_SYSTEM_PROMPT = """You decide whether the scenery behind a story has \
changed. Compare the previous and current passages. If the characters moved to a \
new place, or the time of day or weather changed noticeably, set change_necessary and \
write a prompt for a wide, atmospheric background with no people in it."""


def _slug(text: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length] or "image"


def _write_image(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


class ImageService:
    """Prompts, renders and stores story images."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        """Create the service.

        Args:
            settings: Application settings (provider, size, output directory).
            http_client: Client for provider requests. A short-lived client is
                opened per request when omitted.
        """
        self.settings = settings
        self._http_client = http_client

    def is_image_generation_enabled(
        self, image_settings: ImageSettings, kind: ImageKind = "standard"
    ) -> bool:
        """True if a provider is configured for this kind of image."""
        validate_string_in_choices(kind, "kind", list(get_args(ImageKind)))
        settings = self.settings
        if settings.image_provider == "none" or not settings.image_provider_url:
            return False
        if kind == "reference":
            return image_settings.reference_mode and settings.image_provider in _REFERENCE_PROVIDERS
        return True

    # ------------------------------------------------------------------
    # Scene images
    # ------------------------------------------------------------------

    async def generate_images_for_narrative(self, context: ImageGenerationContext) -> None:
        """Illustrate the most important moments of one narration.

        Individual images that fail are logged and skipped.

        Raises:
            ImageGenerationError: If every image for the narration failed.
        """
        scenes = await self.analyze_scenes(context)
        if not scenes:
            logger.info("No imageable scenes in entry %s", context.entry_id)
            return

        failures = 0
        for index, scene in enumerate(scenes, start=1):
            path = self._output_dir(context.story_id) / (
                f"{context.entry_id}-{index}-{_slug(scene.source_text)}.png"
            )
            try:
                await self.render(scene.prompt, path)
            except ImageGenerationError as e:
                failures += 1
                logger.warning(
                    "Image %d/%d for entry %s failed: %s",
                    index,
                    len(scenes),
                    context.entry_id,
                    e,
                )

        if failures == len(scenes):
            raise ImageGenerationError(f"All {failures} images failed for entry {context.entry_id}")
        logger.info(
            "Generated %d/%d images for entry %s",
            len(scenes) - failures,
            len(scenes),
            context.entry_id,
        )

    async def analyze_scenes(self, context: ImageGenerationContext) -> list[ImageableScene]:
        """Ask the model for the moments worth illustrating, best first."""
        max_scenes = self.settings.image_max_per_narration
        sections = [f"## Passage\n{context.narrative_response}"]
        if context.translated_narrative:
            # Source text must match the text shown to the reader.
            language = context.translation_language or "translated"
            sections.append(
                f"## Displayed passage ({language})\n{context.translated_narrative}\n"
                "Quote each moment's source text from this version."
            )
        if context.user_action:
            sections.append(f"## Preceding input\n{context.user_action}")
        if context.current_location:
            sections.append(f"## Location\n{context.current_location}")
        described = [
            f"- {c.name}: {c.visual_descriptors.describe() or c.description}"
            if c.visual_descriptors
            else f"- {c.name}: {c.description}"
            for c in context.present_characters
        ]
        if described:
            sections.append("## Characters present\n" + "\n".join(described))
        if context.lorebook_context:
            sections.append(context.lorebook_context)

        result = await generate_structured(
            self.settings,
            self.settings.get_model_for_role(_ROLE),
            "\n\n".join(sections),
            SceneAnalysisResult,
            system_prompt=_SCENE_SYSTEM_PROMPT.format(max_scenes=max_scenes),
            temperature=self.settings.get_temperature_for_role(_ROLE),
        )
        scenes = sorted(result.scenes, key=lambda s: s.priority, reverse=True)
        return scenes[:max_scenes]

    # ------------------------------------------------------------------
    # Background images
    # ------------------------------------------------------------------

    async def analyze_background_change_and_generate_image(
        self, story_id: str, visible_entries: Sequence[StoryEntry]
    ) -> None:
        """Render a new background when the latest narration moved the scene."""
        analysis = await self.analyze_background_change(visible_entries)
        if not analysis.change_necessary or not analysis.prompt.strip():
            logger.debug("Background unchanged for story %s", story_id)
            return
        path = self._output_dir(story_id) / "background.png"
        await self.render(
            analysis.prompt,
            path,
            width=max(self.settings.image_width, self.settings.image_height),
            height=min(self.settings.image_width, self.settings.image_height),
        )
        logger.info("Background image updated for story %s", story_id)

    async def analyze_background_change(
        self, visible_entries: Sequence[StoryEntry]
    ) -> BackgroundAnalysisResult:
        """Compare the last two narrations and decide whether the background changed."""
        narrations = [e.content for e in visible_entries if e.type == "narration" and e.content]
        if not narrations:
            return BackgroundAnalysisResult(change_necessary=False)

        previous = narrations[-2] if len(narrations) > 1 else "(story start)"
        prompt = f"## Previous passage\n{previous}\n\n## Current passage\n{narrations[-1]}"
        return await generate_structured(
            self.settings,
            self.settings.get_model_for_role(_ROLE),
            prompt,
            BackgroundAnalysisResult,
            system_prompt=_BACKGROUND_SYSTEM_PROMPT,
            temperature=self.settings.get_temperature_for_role(_ROLE),
        )

    # ------------------------------------------------------------------
    # Provider
    # ------------------------------------------------------------------

    async def render(
        self,
        prompt: str,
        path: Path,
        width: int | None = None,
        height: int | None = None,
    ) -> Path:
        """Render *prompt* with the configured provider and write it to *path*.

        Raises:
            ImageGenerationError: On HTTP errors, timeouts or an empty image.
        """
        validate_not_empty(prompt, "prompt")
        if width is not None:
            validate_in_range(width, "width", 64, 4096)
        if height is not None:
            validate_in_range(height, "height", 64, 4096)
        settings = self.settings
        url = f"{settings.image_provider_url.rstrip('/')}/{quote(prompt, safe='')}"
        params = {
            "width": width or settings.image_width,
            "height": height or settings.image_height,
            "nologo": "true",
        }
        logger.debug(
            "Requesting image from %s (%d prompt chars)", settings.image_provider, len(prompt)
        )

        try:
            if self._http_client is not None:
                response = await self._http_client.get(
                    url, params=params, timeout=settings.image_timeout
                )
            else:
                async with httpx.AsyncClient(timeout=settings.image_timeout) as client:
                    response = await client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ImageGenerationError(
                f"Image provider returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ImageGenerationError(f"Image request failed: {e}") from e

        if not response.content:
            raise ImageGenerationError("Image provider returned no data")

        await asyncio.to_thread(_write_image, path, response.content)
        logger.debug("Saved image to %s (%d bytes)", path, len(response.content))
        return path

    def _output_dir(self, story_id: str) -> Path:
        return Path(self.settings.image_output_dir) / _slug(story_id, max_length=80)
