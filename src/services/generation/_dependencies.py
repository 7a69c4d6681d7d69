"""Dependency bundles - the external operations each phase is allowed to call.

Phases receive one of these protocols at construction time and never look
services up themselves. Implementations take plain data, return typed
results or raise, enforce their own timeouts, and must not mutate their
arguments. They are shared between concurrent requests, so they must not
keep per-call state on ``self``.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Literal, Protocol

from src.memory.generation_schemas import (
    ActionChoice,
    AgenticRetrievalResult,
    ClassificationResult,
    EntityTranslation,
    EntryUpdates,
    LorebookRetrievalResult,
    Suggestion,
    TimelineFillResult,
    TranslatedText,
)
from src.memory.generation_settings import ImageSettings, PromptContext
from src.memory.story_state import (
    POV,
    Chapter,
    Character,
    LorebookEntry,
    MemoryConfig,
    Story,
    StoryBeat,
    StoryEntry,
    StoryMode,
    StyleReview,
    Tense,
    TimeTracker,
    WorldState,
)
from src.utils.streaming import StreamChunk

logger = logging.getLogger(__name__)

ImageKind = Literal["standard", "background", "portrait", "reference"]


@dataclass(frozen=True)
class ImageGenerationContext:
    """What the image step needs to illustrate one narration."""

    story_id: str
    entry_id: str
    narrative_response: str
    user_action: str
    present_characters: tuple[Character, ...] = ()
    current_location: str | None = None
    translated_narrative: str | None = None
    translation_language: str | None = None
    reference_mode: bool = False
    lorebook_context: str | None = None


class TranslationDependencies(Protocol):
    async def translate_narration(
        self, content: str, target_language: str, is_visual_prose: bool
    ) -> TranslatedText: ...

    async def translate_world_state(
        self, entry_updates: EntryUpdates, target_language: str
    ) -> list[EntityTranslation]: ...


class NarrativeDependencies(Protocol):
    def stream_narrative(
        self,
        entries: Sequence[StoryEntry],
        world_state: WorldState,
        story: Story,
        *,
        use_tiered_context: bool,
        style_review: StyleReview | None,
        retrieved_context: str | None,
        timeline_fill: TimelineFillResult | None,
    ) -> AsyncIterator[StreamChunk]: ...


class RetrievalDependencies(Protocol):
    def should_use_agentic_retrieval(
        self, chapter_count: int, memory_config: MemoryConfig
    ) -> bool: ...

    async def run_agentic_retrieval(
        self,
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        chapters: Sequence[Chapter],
        lorebook_entries: Sequence[LorebookEntry],
        *,
        mode: StoryMode,
        pov: POV,
        tense: Tense,
    ) -> AgenticRetrievalResult: ...

    def format_agentic_retrieval(self, result: AgenticRetrievalResult) -> str: ...

    async def run_timeline_fill(
        self, visible_entries: Sequence[StoryEntry], chapters: Sequence[Chapter]
    ) -> TimelineFillResult: ...

    async def get_relevant_lorebook_entries(
        self,
        lorebook_entries: Sequence[LorebookEntry],
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        world_state: WorldState,
    ) -> LorebookRetrievalResult: ...


class ImageAvailability(Protocol):
    def is_image_generation_enabled(
        self, image_settings: ImageSettings, kind: ImageKind = "standard"
    ) -> bool: ...


class BackgroundImageDependencies(ImageAvailability, Protocol):
    async def analyze_background_change_and_generate_image(
        self, story_id: str, visible_entries: Sequence[StoryEntry]
    ) -> None: ...


class ClassificationDependencies(Protocol):
    async def classify_response(
        self,
        narrative_response: str,
        user_action: str,
        world_state: WorldState,
        story: Story,
        chat_history: Sequence[StoryEntry],
        time_tracker: TimeTracker | None,
    ) -> ClassificationResult: ...


class ImageDependencies(ImageAvailability, Protocol):
    async def generate_images_for_narrative(self, context: ImageGenerationContext) -> None: ...


class PostGenerationDependencies(Protocol):
    async def generate_suggestions(
        self,
        entries: Sequence[StoryEntry],
        active_threads: Sequence[StoryBeat],
        lorebook_entries: Sequence[LorebookEntry],
        prompt_context: PromptContext,
    ) -> list[Suggestion]: ...

    async def translate_suggestions(
        self, suggestions: Sequence[Suggestion], target_language: str
    ) -> list[Suggestion]: ...

    async def generate_action_choices(
        self,
        entries: Sequence[StoryEntry],
        world_state: WorldState,
        narrative_response: str,
        lorebook_entries: Sequence[LorebookEntry],
        prompt_context: PromptContext,
        pov: POV,
    ) -> list[ActionChoice]: ...

    async def translate_action_choices(
        self, choices: Sequence[ActionChoice], target_language: str
    ) -> list[ActionChoice]: ...


class PipelineDependencies(
    RetrievalDependencies,
    NarrativeDependencies,
    BackgroundImageDependencies,
    ClassificationDependencies,
    TranslationDependencies,
    ImageDependencies,
    PostGenerationDependencies,
    Protocol,
):
    """Every operation the full pipeline needs, as one bundle."""
