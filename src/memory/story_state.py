"""Story state - the stories, entries and world facts a generation request reads."""

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

StoryMode = Literal["adventure", "creative-writing"]
POV = Literal["first", "second", "third"]
Tense = Literal["past", "present"]
EntryType = Literal["user_action", "narration", "system", "retry"]
ActionInputType = Literal["do", "say", "think", "story", "free"]


class TimeTracker(BaseModel):
    """In-story clock advanced by the classifier's time progression."""

    years: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0

    def describe(self) -> str:
        """Human-readable story time, e.g. 'Year 1, Day 3, 08:05'."""
        return f"Year {self.years}, Day {self.days}, {self.hours:02d}:{self.minutes:02d}"


class StorySettings(BaseModel):
    """Per-story presentation settings."""

    pov: POV = "second"
    tense: Tense = "present"
    visual_prose_mode: bool = False


class Story(BaseModel):
    """A story being written."""

    id: str
    title: str = ""
    mode: StoryMode = "adventure"
    genre: str | None = None
    settings: StorySettings = Field(default_factory=StorySettings)
    time_tracker: TimeTracker | None = None


class StoryEntry(BaseModel):
    """One turn of the story: a user action, a narration, or a system note."""

    id: str
    story_id: str
    type: EntryType
    content: str
    position: int = 0

    @field_validator("content", mode="before")
    @classmethod
    def coerce_content(cls, v: object) -> str:
        """Treat a missing body as empty text."""
        if v is None:
            return ""
        return str(v)


class VisualDescriptors(BaseModel):
    """Appearance details used for image prompts."""

    face: str | None = None
    hair: str | None = None
    eyes: str | None = None
    build: str | None = None
    clothing: str | None = None
    accessories: str | None = None
    distinguishing: str | None = None

    def describe(self) -> str:
        """Join the filled-in descriptors into one line."""
        parts = [
            f"{name.capitalize()}: {value}"
            for name, value in self.model_dump().items()
            if value
        ]
        return "; ".join(parts)


class Character(BaseModel):
    """A character in the story world."""

    name: str
    description: str = ""
    relationship: str | None = None  # "self" marks the protagonist
    traits: list[str] = Field(default_factory=list)
    status: Literal["active", "inactive", "deceased"] = "active"
    visual_descriptors: VisualDescriptors | None = None


class Location(BaseModel):
    """A place in the story world."""

    name: str
    description: str = ""
    visited: bool = False
    current: bool = False


class Item(BaseModel):
    """An object the protagonist may carry."""

    name: str
    description: str = ""
    quantity: int = 1
    location: str = "inventory"
    equipped: bool = False


class StoryBeat(BaseModel):
    """A plot thread or milestone."""

    title: str
    description: str = ""
    type: Literal["milestone", "quest", "revelation", "event", "plot_point"] = "event"
    status: Literal["pending", "active", "completed", "failed"] = "pending"


class Chapter(BaseModel):
    """A summarized span of earlier entries."""

    number: int
    title: str = ""
    summary: str
    start_position: int = 0
    end_position: int = 0
    keywords: list[str] = Field(default_factory=list)


class LorebookEntry(BaseModel):
    """A lorebook entry injected into prompts when its keywords match."""

    name: str
    type: str = "concept"
    description: str
    keywords: list[str] = Field(default_factory=list)
    always_active: bool = False


class MemoryConfig(BaseModel):
    """How much of the story history retrieval is allowed to pull in."""

    enable_retrieval: bool = True
    agentic_retrieval_chapter_threshold: int = Field(
        default=8, ge=1, description="Chapter count above which agentic retrieval is used"
    )
    max_chapters_per_retrieval: int = Field(default=3, ge=1)


class WorldState(BaseModel):
    """The world facts visible to the pipeline for one request."""

    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)
    story_beats: list[StoryBeat] = Field(default_factory=list)
    current_location: Location | None = None
    chapters: list[Chapter] = Field(default_factory=list)
    memory_config: MemoryConfig = Field(default_factory=MemoryConfig)
    lorebook_entries: list[LorebookEntry] = Field(default_factory=list)

    @property
    def has_lore_content(self) -> bool:
        """True if there is anything for lorebook retrieval to match against."""
        return bool(self.lorebook_entries or self.characters or self.locations or self.items)

    @property
    def protagonist(self) -> Character | None:
        """The character whose relationship is 'self', if any."""
        for character in self.characters:
            if character.relationship == "self":
                return character
        return None


class EmbeddedImage(BaseModel):
    """An image attached to a story entry."""

    id: str
    entry_id: str
    prompt: str
    file_path: str | None = None
    status: Literal["pending", "generating", "complete", "failed"] = "pending"


class UserAction(BaseModel):
    """The user's input for this turn."""

    model_config = ConfigDict(frozen=True)

    entry_id: str
    content: str
    raw_input: str = ""


class StyleReview(BaseModel):
    """Style notes from a previous review pass, fed back to the narrator."""

    issues: list[str] = Field(default_factory=list)
    guidance: str = ""

    def to_prompt(self) -> str:
        """Render the review as a short block for the narrator's system prompt."""
        if not self.issues and not self.guidance:
            return ""
        lines = ["Style notes:"]
        lines.extend(f"- {issue}" for issue in self.issues)
        if self.guidance:
            lines.append(self.guidance)
        return "\n".join(lines)
