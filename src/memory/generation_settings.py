"""Per-request feature settings for generation."""

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from src.memory.story_state import POV, StoryMode, Tense

logger = logging.getLogger(__name__)

ImageGenerationMode = Literal["none", "agentic", "inline"]


class TranslationSettings(BaseModel):
    """Which parts of a generation get translated, and into what."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    target_language: str = "en"
    translate_narration: bool = True
    translate_world_state: bool = False

    def should_translate(self) -> bool:
        """True if any translation into a non-English language is on."""
        return self.enabled and self.target_language != "en"

    def should_translate_narration(self) -> bool:
        """True if narration output should be translated."""
        return self.should_translate() and self.translate_narration

    def should_translate_world_state(self) -> bool:
        """True if newly extracted world-state entities should be translated."""
        return self.should_translate() and self.translate_world_state


class ImageSettings(BaseModel):
    """Image generation switches for one story."""

    model_config = ConfigDict(frozen=True)

    image_generation_mode: ImageGenerationMode = "none"
    reference_mode: bool = False
    # Agentic mode with auto_generate off only stores prompts for manual use
    auto_generate: bool = True
    background_images_enabled: bool = False


class PromptContext(BaseModel):
    """Values substituted into prompt templates."""

    model_config = ConfigDict(frozen=True)

    mode: StoryMode = "adventure"
    pov: POV = "second"
    tense: Tense = "present"
    protagonist_name: str = "the protagonist"
    genre: str | None = None
    setting_description: str | None = None
    tone: str | None = None
    themes: list[str] = Field(default_factory=list)

    @property
    def input_label(self) -> str:
        """How the user's turn is labelled in prompts."""
        return "Author Direction" if self.mode == "creative-writing" else "Player Action"
