"""Ollama-backed implementation of the pipeline's dependency bundles.

Each operation forwards to the service that owns it. The object holds only
service references, so one instance can serve concurrent requests.
"""

import logging
from collections.abc import AsyncIterator, Sequence

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
from src.services.classifier_service import ClassifierService
from src.services.generation import ImageGenerationContext, ImageKind
from src.services.image_service import ImageService
from src.services.narration_service import NarrationService
from src.services.retrieval_service import RetrievalService
from src.services.suggestion_service import SuggestionService
from src.services.translation_service import TranslationService
from src.utils.streaming import StreamChunk

logger = logging.getLogger(__name__)


class OllamaPipelineDependencies:
    """Every pipeline operation, delegated to the generation services."""

    def __init__(
        self,
        narration: NarrationService,
        retrieval: RetrievalService,
        classifier: ClassifierService,
        translation: TranslationService,
        suggestion: SuggestionService,
        image: ImageService,
    ) -> None:
        """Bundle the services the pipeline calls into."""
        self.narration = narration
        self.retrieval = retrieval
        self.classifier = classifier
        self.translation = translation
        self.suggestion = suggestion
        self.image = image

    # Retrieval
    def should_use_agentic_retrieval(self, chapter_count: int, memory_config: MemoryConfig) -> bool:
        return self.retrieval.should_use_agentic_retrieval(chapter_count, memory_config)

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
    ) -> AgenticRetrievalResult:
        return await self.retrieval.run_agentic_retrieval(
            user_input,
            recent_entries,
            chapters,
            lorebook_entries,
            mode=mode,
            pov=pov,
            tense=tense,
        )

    def format_agentic_retrieval(self, result: AgenticRetrievalResult) -> str:
        return self.retrieval.format_agentic_retrieval(result)

    async def run_timeline_fill(
        self, visible_entries: Sequence[StoryEntry], chapters: Sequence[Chapter]
    ) -> TimelineFillResult:
        return await self.retrieval.run_timeline_fill(visible_entries, chapters)

    async def get_relevant_lorebook_entries(
        self,
        lorebook_entries: Sequence[LorebookEntry],
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        world_state: WorldState,
    ) -> LorebookRetrievalResult:
        return await self.retrieval.get_relevant_lorebook_entries(
            lorebook_entries, user_input, recent_entries, world_state
        )

    # Narrative
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
    ) -> AsyncIterator[StreamChunk]:
        return self.narration.stream_narrative(
            entries,
            world_state,
            story,
            use_tiered_context=use_tiered_context,
            style_review=style_review,
            retrieved_context=retrieved_context,
            timeline_fill=timeline_fill,
        )

    # Images
    def is_image_generation_enabled(
        self, image_settings: ImageSettings, kind: ImageKind = "standard"
    ) -> bool:
        return self.image.is_image_generation_enabled(image_settings, kind)

    async def analyze_background_change_and_generate_image(
        self, story_id: str, visible_entries: Sequence[StoryEntry]
    ) -> None:
        await self.image.analyze_background_change_and_generate_image(story_id, visible_entries)

    async def generate_images_for_narrative(self, context: ImageGenerationContext) -> None:
        await self.image.generate_images_for_narrative(context)

    # Classification
    async def classify_response(
        self,
        narrative_response: str,
        user_action: str,
        world_state: WorldState,
        story: Story,
        chat_history: Sequence[StoryEntry],
        time_tracker: TimeTracker | None,
    ) -> ClassificationResult:
        return await self.classifier.classify_response(
            narrative_response, user_action, world_state, story, chat_history, time_tracker
        )

    # Translation
    async def translate_narration(
        self, content: str, target_language: str, is_visual_prose: bool
    ) -> TranslatedText:
        return await self.translation.translate_narration(
            content, target_language, is_visual_prose
        )

    async def translate_world_state(
        self, entry_updates: EntryUpdates, target_language: str
    ) -> list[EntityTranslation]:
        return await self.translation.translate_world_state(entry_updates, target_language)

    async def translate_suggestions(
        self, suggestions: Sequence[Suggestion], target_language: str
    ) -> list[Suggestion]:
        return await self.translation.translate_suggestions(suggestions, target_language)

    async def translate_action_choices(
        self, choices: Sequence[ActionChoice], target_language: str
    ) -> list[ActionChoice]:
        return await self.translation.translate_action_choices(choices, target_language)

    # Suggestions
    async def generate_suggestions(
        self,
        entries: Sequence[StoryEntry],
        active_threads: Sequence[StoryBeat],
        lorebook_entries: Sequence[LorebookEntry],
        prompt_context: PromptContext,
    ) -> list[Suggestion]:
        return await self.suggestion.generate_suggestions(
            entries, active_threads, lorebook_entries, prompt_context
        )

    async def generate_action_choices(
        self,
        entries: Sequence[StoryEntry],
        world_state: WorldState,
        narrative_response: str,
        lorebook_entries: Sequence[LorebookEntry],
        prompt_context: PromptContext,
        pov: POV,
    ) -> list[ActionChoice]:
        return await self.suggestion.generate_action_choices(
            entries, world_state, narrative_response, lorebook_entries, prompt_context, pov
        )
