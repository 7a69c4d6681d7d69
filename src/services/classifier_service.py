"""Classifier service - extracts world state changes from a narration."""

import logging
from collections.abc import Sequence

from src.memory.generation_schemas import ClassificationResult
from src.memory.story_state import Story, StoryEntry, TimeTracker, WorldState
from src.services.llm_client import generate_structured
from src.settings import Settings

logger = logging.getLogger(__name__)

_ROLE = "classifier"

_SYSTEM_PROMPT = """You track the world state of a {mode} story told in {pov} person, \
{tense} tense. The protagonist is {protagonist}.

Read the latest passage and report only what it changes:
- updates to existing characters, locations, items and story beats, using their exact names
- characters, locations, items and story beats that appear for the first time
- the current scene: location, characters physically present, and how much time passed

Do not invent details the passage does not state. Use empty lists when nothing changed."""


class ClassifierService:
    """World state extraction."""

    def __init__(self, settings: Settings, chat_history_truncation: int = 100) -> None:
        """Create the service.

        Args:
            settings: Application settings (classifier model and temperature).
            chat_history_truncation: Characters kept from each history entry.
        """
        self.settings = settings
        self.chat_history_truncation = chat_history_truncation

    async def classify_response(
        self,
        narrative_response: str,
        user_action: str,
        world_state: WorldState,
        story: Story,
        chat_history: Sequence[StoryEntry],
        time_tracker: TimeTracker | None,
    ) -> ClassificationResult:
        """Classify *narrative_response* against the known world state.

        Raises:
            LLMError: If the model call fails or never returns a valid result.
        """
        logger.debug(
            "Classifying narration: %d chars, %d characters, %d locations, %d items, %d beats",
            len(narrative_response),
            len(world_state.characters),
            len(world_state.locations),
            len(world_state.items),
            len(world_state.story_beats),
        )
        protagonist = world_state.protagonist
        system_prompt = _SYSTEM_PROMPT.format(
            mode=story.mode,
            pov=story.settings.pov,
            tense=story.settings.tense,
            protagonist=protagonist.name if protagonist else "the protagonist",
        )
        prompt = self._build_prompt(
            narrative_response, user_action, world_state, chat_history, time_tracker
        )

        result = await generate_structured(
            self.settings,
            self.settings.get_model_for_role(_ROLE),
            prompt,
            ClassificationResult,
            system_prompt=system_prompt,
            temperature=self.settings.get_temperature_for_role(_ROLE),
        )
        updates = result.entry_updates
        logger.info(
            "Classification: +%d characters, +%d locations, +%d items, +%d beats, "
            "%d updates, time=%s",
            len(updates.new_characters),
            len(updates.new_locations),
            len(updates.new_items),
            len(updates.new_story_beats),
            len(updates.character_updates)
            + len(updates.location_updates)
            + len(updates.item_updates)
            + len(updates.story_beat_updates),
            result.scene.time_progression,
        )
        return result

    def _build_prompt(
        self,
        narrative_response: str,
        user_action: str,
        world_state: WorldState,
        chat_history: Sequence[StoryEntry],
        time_tracker: TimeTracker | None,
    ) -> str:
        sections = []

        known = [
            ("Characters", [f"{c.name} ({c.status})" for c in world_state.characters]),
            ("Locations", [loc.name for loc in world_state.locations]),
            ("Items", [f"{i.name} x{i.quantity} ({i.location})" for i in world_state.items]),
            ("Story beats", [f"{b.title} ({b.status})" for b in world_state.story_beats]),
        ]
        lines = [f"{title}: {', '.join(names) or '(none)'}" for title, names in known]
        sections.append("## Known world\n" + "\n".join(lines))

        if time_tracker is not None:
            sections.append(f"## Story time\n{time_tracker.describe()}")

        if chat_history:
            limit = self.chat_history_truncation
            history = "\n".join(
                f"- {entry.content[:limit]}{'...' if len(entry.content) > limit else ''}"
                for entry in chat_history
                if entry.content
            )
            sections.append(f"## Earlier passages\n{history}")

        sections.append(f"## Latest input\n{user_action}")
        sections.append(f"## Passage to classify\n{narrative_response}")
        return "\n\n".join(sections)
