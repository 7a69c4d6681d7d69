"""GenerationRequest - the immutable input of one pipeline run."""

import logging

from pydantic import BaseModel, ConfigDict, Field

from src.memory.generation_settings import ImageSettings, PromptContext, TranslationSettings
from src.memory.story_state import (
    POV,
    ActionInputType,
    EmbeddedImage,
    Story,
    StoryBeat,
    StoryEntry,
    StoryMode,
    StyleReview,
    Tense,
    UserAction,
    WorldState,
)
from src.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class GenerationRequest(BaseModel):
    """Everything the pipeline needs to generate one turn.

    Created by the caller per user action and never mutated by the pipeline.
    The caller keeps the ``CancellationSource`` behind ``cancel_token``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    story: Story
    visible_entries: list[StoryEntry] = Field(default_factory=list)
    all_entries: list[StoryEntry] = Field(default_factory=list)
    world_state: WorldState = Field(default_factory=WorldState)
    user_action: UserAction
    narration_entry_id: str | None = None

    # Pre-generation
    embedded_images: list[EmbeddedImage] = Field(default_factory=list)
    action_type: ActionInputType = "do"
    was_raw_action_choice: bool = False

    # Retrieval and narration
    timeline_fill_enabled: bool = True
    story_mode: StoryMode = "adventure"
    pov: POV = "second"
    tense: Tense = "present"
    style_review: StyleReview | None = None

    # Enrichment
    translation_settings: TranslationSettings = Field(default_factory=TranslationSettings)
    image_settings: ImageSettings = Field(default_factory=ImageSettings)
    prompt_context: PromptContext = Field(default_factory=PromptContext)
    disable_suggestions: bool = False
    active_threads: list[StoryBeat] = Field(default_factory=list)

    cancel_token: CancellationToken = Field(default_factory=CancellationToken.none, exclude=True)

    @property
    def is_creative_mode(self) -> bool:
        """True for creative-writing stories (suggestions instead of action choices)."""
        return self.story_mode == "creative-writing"
