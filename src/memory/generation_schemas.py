"""Structured LLM output schemas used by the generation services.

Each model is passed to Ollama as a JSON schema (``format=``) and the
response is validated back into it. Field descriptions are part of the
schema the model sees, so keep them short and concrete.
"""

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.memory.story_state import VisualDescriptors

logger = logging.getLogger(__name__)

EntityStatus = Literal["active", "inactive", "deceased"]
BeatStatus = Literal["pending", "active", "completed", "failed"]
BeatType = Literal["milestone", "quest", "revelation", "event", "plot_point"]


# =========================================================================
# Classification
# =========================================================================


class CharacterChanges(BaseModel):
    """Changes to an existing character."""

    status: EntityStatus | None = Field(default=None, description="active, inactive or deceased")
    relationship: str | None = Field(default=None, description="New relationship to protagonist")
    new_traits: list[str] = Field(default_factory=list, description="Traits to add")
    remove_traits: list[str] = Field(default_factory=list, description="Traits to remove")
    visual_descriptors: VisualDescriptors | None = None


class CharacterUpdate(BaseModel):
    """An update to a character that already exists."""

    name: str = Field(description="Exact name of existing character")
    changes: CharacterChanges = Field(default_factory=CharacterChanges)


class NewCharacter(BaseModel):
    """A character introduced by the narration."""

    name: str = Field(description="Character's proper name")
    description: str = ""
    relationship: str | None = None
    traits: list[str] = Field(default_factory=list)
    visual_descriptors: VisualDescriptors | None = None
    status: EntityStatus = "active"


class LocationChanges(BaseModel):
    """Changes to an existing location."""

    visited: bool | None = None
    current: bool | None = Field(default=None, description="True if this is the current scene")
    description: str | None = None
    description_addition: str | None = Field(
        default=None, description="New details learned about the location"
    )


class LocationUpdate(BaseModel):
    """An update to a location that already exists."""

    name: str
    changes: LocationChanges = Field(default_factory=LocationChanges)


class NewLocation(BaseModel):
    """A location introduced by the narration."""

    name: str
    description: str = ""
    visited: bool = False
    current: bool = False


class ItemChanges(BaseModel):
    """Changes to an existing item."""

    quantity: int | None = None
    location: str | None = Field(default=None, description="inventory, worn, or location name")
    equipped: bool | None = None


class ItemUpdate(BaseModel):
    """An update to an item that already exists."""

    name: str
    changes: ItemChanges = Field(default_factory=ItemChanges)


class NewItem(BaseModel):
    """An item introduced by the narration."""

    name: str
    description: str = ""
    quantity: int = 1
    location: str = "inventory"
    equipped: bool = False


class StoryBeatChanges(BaseModel):
    """Changes to an existing story beat."""

    status: BeatStatus | None = None
    description: str | None = None


class StoryBeatUpdate(BaseModel):
    """An update to a story beat that already exists."""

    title: str = Field(description="Exact title of existing beat")
    changes: StoryBeatChanges = Field(default_factory=StoryBeatChanges)


class NewStoryBeat(BaseModel):
    """A story beat introduced by the narration."""

    title: str = Field(description="Short title (3-6 words)")
    description: str = ""
    type: BeatType = "event"
    status: BeatStatus = "pending"


class EntryUpdates(BaseModel):
    """All world-state changes found in one narration."""

    character_updates: list[CharacterUpdate] = Field(default_factory=list)
    location_updates: list[LocationUpdate] = Field(default_factory=list)
    item_updates: list[ItemUpdate] = Field(default_factory=list)
    story_beat_updates: list[StoryBeatUpdate] = Field(default_factory=list)
    new_characters: list[NewCharacter] = Field(default_factory=list)
    new_locations: list[NewLocation] = Field(default_factory=list)
    new_items: list[NewItem] = Field(default_factory=list)
    new_story_beats: list[NewStoryBeat] = Field(default_factory=list)


class Scene(BaseModel):
    """Where the narration leaves the protagonist."""

    current_location_name: str | None = Field(
        default=None, description="Name of current scene location, or null"
    )
    present_character_names: list[str] = Field(
        default_factory=list, description="Names of characters physically present"
    )
    time_progression: Literal["none", "minutes", "hours", "days"] = Field(
        default="none",
        description="none=instant, minutes=conversations, hours=travel, days=sleep",
    )


class ClassificationResult(BaseModel):
    """World-state extraction for one narration."""

    entry_updates: EntryUpdates = Field(default_factory=EntryUpdates)
    scene: Scene = Field(default_factory=Scene)


# =========================================================================
# Suggestions and action choices
# =========================================================================


class Suggestion(BaseModel):
    """A story direction offered to the author in creative-writing mode."""

    text: str = Field(description="The suggestion text")
    type: Literal["action", "dialogue", "revelation", "twist"] = "action"


class SuggestionsResult(BaseModel):
    """Up to three suggestions."""

    suggestions: list[Suggestion] = Field(default_factory=list, max_length=3)


class ActionChoice(BaseModel):
    """An action offered to the player in adventure mode."""

    text: str = Field(description="The action text for the player")
    type: Literal["action", "dialogue", "examine", "move"] = "action"


class ActionChoicesResult(BaseModel):
    """One to four action choices."""

    choices: list[ActionChoice] = Field(min_length=1, max_length=4)


# =========================================================================
# Translation
# =========================================================================


class TranslatedText(BaseModel):
    """A translated block of prose."""

    translated_content: str = Field(description="The translated text, formatting preserved")


class TranslatedItem(BaseModel):
    """One translated suggestion or action choice."""

    text: str
    type: str | None = Field(default=None, description="Original type, unchanged")


class TranslatedItemsResult(BaseModel):
    """A translated list, same order and length as the input."""

    items: list[TranslatedItem]


EntityType = Literal["character", "location", "item", "story_beat"]
EntityField = Literal[
    "name", "title", "description", "relationship", "traits", "visual_descriptors"
]


class EntityTranslation(BaseModel):
    """A translated field of a newly introduced world-state entity.

    ``entity_name`` is the untranslated name (or beat title) the entity is
    stored under. Traits are translated as one comma-separated string.
    """

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_name: str
    field: EntityField
    text: str

    @property
    def values(self) -> list[str]:
        """The translated text split into list items, for list fields like traits."""
        return [part.strip() for part in self.text.split(",") if part.strip()]


# =========================================================================
# Retrieval
# =========================================================================


class TimelineQuery(BaseModel):
    """A question to ask about earlier chapters."""

    query: str = Field(description="The question to ask about the timeline")
    chapters: list[int] = Field(default_factory=list, description="Specific chapter numbers")
    start_chapter: int | None = None
    end_chapter: int | None = None

    @field_validator("chapters", mode="before")
    @classmethod
    def drop_null_chapters(cls, v: object) -> object:
        """Models sometimes send null instead of an empty list."""
        return [] if v is None else v


class TimelineQueriesResult(BaseModel):
    """Questions the timeline fill step wants answered."""

    queries: list[TimelineQuery] = Field(default_factory=list, max_length=5)


class TimelineAnswer(BaseModel):
    """An answered timeline question."""

    query: str
    answer: str
    chapter_numbers: list[int] = Field(default_factory=list)


class TimelineFillResult(BaseModel):
    """Answers gathered from earlier chapters for this turn."""

    responses: list[TimelineAnswer] = Field(default_factory=list)

    def to_prompt(self) -> str:
        """Render the answers as a context block for the narrator."""
        if not self.responses:
            return ""
        lines = ["<story_history>"]
        for response in self.responses:
            chapters = ", ".join(str(n) for n in response.chapter_numbers) or "?"
            lines.append(f"Q (chapters {chapters}): {response.query}")
            lines.append(f"A: {response.answer}")
        lines.append("</story_history>")
        return "\n".join(lines)


class AgenticRetrievalPlan(BaseModel):
    """What the retrieval model decided to look up."""

    queries: list[TimelineQuery] = Field(default_factory=list, max_length=5)
    relevant_entry_names: list[str] = Field(
        default_factory=list, description="Names of lorebook entries relevant to this turn"
    )
    reasoning: str = ""


class AgenticRetrievalResult(BaseModel):
    """Context gathered by agentic retrieval."""

    context: str = ""
    answers: list[TimelineAnswer] = Field(default_factory=list)
    entry_names: list[str] = Field(default_factory=list)


class LorebookRetrievalResult(BaseModel):
    """Lorebook entries selected for this turn and their prompt block."""

    entry_names: list[str] = Field(default_factory=list)
    context_block: str | None = None


# =========================================================================
# Images
# =========================================================================


class ImageableScene(BaseModel):
    """A moment in the narration worth illustrating."""

    prompt: str = Field(description="Detailed image generation prompt, under 500 characters")
    source_text: str = Field(description="Exact quote from the narration (3-15 words)")
    scene_type: Literal["action", "item", "character", "environment"] = "environment"
    priority: int = Field(default=5, ge=1, le=10)
    characters: list[str] = Field(default_factory=list)


class SceneAnalysisResult(BaseModel):
    """Imageable scenes found in one narration."""

    scenes: list[ImageableScene] = Field(default_factory=list)


class BackgroundAnalysisResult(BaseModel):
    """Whether the scene background changed, and how to draw it."""

    change_necessary: bool = Field(description="Whether the background image needs to change")
    prompt: str = Field(default="", description="Prompt for generating the background image")
