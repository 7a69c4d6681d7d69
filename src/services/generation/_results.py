"""Typed phase results.

Results are immutable. A phase that short-circuits, is cancelled, or fails
non-fatally returns its ``fallback()`` result; only the event kind tells
those outcomes apart.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from src.memory.generation_schemas import (
    ActionChoice,
    ClassificationResult,
    EntityTranslation,
    Suggestion,
    TimelineFillResult,
)
from src.memory.story_state import (
    Character,
    EmbeddedImage,
    Item,
    Location,
    StoryBeat,
    StoryEntry,
    TimeTracker,
    WorldState,
)

logger = logging.getLogger(__name__)

ImageSkipReason = Literal[
    "disabled", "agentic_generate_off", "not_configured", "aborted", "inline_mode"
]


@dataclass(frozen=True)
class RetryBackupData:
    """Snapshot the caller stores so the turn can be retried."""

    story_id: str
    entries: tuple[StoryEntry, ...]
    characters: tuple[Character, ...]
    locations: tuple[Location, ...]
    items: tuple[Item, ...]
    story_beats: tuple[StoryBeat, ...]
    embedded_images: tuple[EmbeddedImage, ...]
    user_action_content: str
    raw_input: str
    action_type: str
    was_raw_action_choice: bool
    time_tracker: TimeTracker | None


@dataclass(frozen=True)
class PreGenerationResult:
    retry_backup: RetryBackupData
    world_state: WorldState
    visual_prose_mode: bool
    streaming_entry_id: str


@dataclass(frozen=True)
class RetrievalResult:
    """Context gathered from chapters and the lorebook."""

    chapter_context: str | None = None
    lorebook_context: str | None = None
    timeline_fill: TimelineFillResult | None = None
    combined_context: str | None = None

    @classmethod
    def fallback(cls) -> RetrievalResult:
        return cls()


@dataclass(frozen=True)
class NarrativeResult:
    content: str
    reasoning: str
    chunk_count: int


@dataclass(frozen=True)
class BackgroundImageResult:
    started: bool
    skipped_reason: Literal["disabled", "not_configured", "aborted"] | None = None

    @classmethod
    def fallback(cls) -> BackgroundImageResult:
        return cls(started=False)


@dataclass(frozen=True)
class ClassificationPhaseResult:
    """Classifier output, or None when classification did not happen."""

    classification: ClassificationResult | None
    narrative_entry_id: str

    @classmethod
    def fallback(cls, narrative_entry_id: str) -> ClassificationPhaseResult:
        return cls(classification=None, narrative_entry_id=narrative_entry_id)


@dataclass(frozen=True)
class TranslationPhaseResult:
    """Outcome of narration and world-state translation.

    ``translated`` is True only when the narration was translated; otherwise
    ``translated_content`` is None. ``target_language`` is set whenever
    anything was translated. ``world_state_translations`` holds the translated
    fields of entities the classifier found new in this narration.
    """

    translated: bool
    translated_content: str | None = None
    target_language: str | None = None
    world_state_translations: tuple[EntityTranslation, ...] = ()

    @classmethod
    def fallback(cls) -> TranslationPhaseResult:
        return cls(translated=False, translated_content=None, target_language=None)


@dataclass(frozen=True)
class ImageResult:
    started: bool
    skipped_reason: ImageSkipReason | None = None

    @classmethod
    def fallback(cls) -> ImageResult:
        return cls(started=False)


@dataclass(frozen=True)
class PostGenerationResult:
    suggestions: tuple[Suggestion, ...] | None = None
    action_choices: tuple[ActionChoice, ...] | None = None

    @classmethod
    def fallback(cls) -> PostGenerationResult:
        return cls()


__all__ = [
    "BackgroundImageResult",
    "ClassificationPhaseResult",
    "ImageResult",
    "ImageSkipReason",
    "NarrativeResult",
    "PostGenerationResult",
    "PreGenerationResult",
    "RetrievalResult",
    "RetryBackupData",
    "TranslationPhaseResult",
]
