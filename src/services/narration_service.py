"""Narration service - streams the story text for a turn.

The system prompt is assembled from the story's mode, point of view and
tense, the tracked world state, any retrieved memory and lore, and the
latest style review. Recent entries are replayed as chat turns.
"""

import logging
from collections.abc import AsyncIterator, Sequence

from src.memory.generation_schemas import TimelineFillResult
from src.memory.story_state import POV, Story, StoryEntry, StyleReview, Tense, WorldState
from src.services.llm_client import ChatMessage, stream_chat
from src.settings import Settings
from src.utils.streaming import StreamChunk

logger = logging.getLogger(__name__)

_ROLE = "narrator"

_MODE_INSTRUCTIONS: dict[str, str] = {
    "adventure": (
        "You are the narrator of an interactive text adventure. The player describes "
        "what their character does; you describe what happens next. Never act, speak "
        "or decide for the player character beyond what the player wrote. End at a "
        "moment that invites the player's next move."
    ),
    "creative-writing": (
        "You are a co-author. The author gives direction for the next passage; write "
        "that passage as polished prose, following the direction closely while keeping "
        "the established voice and continuity."
    ),
}

_POV_INSTRUCTIONS: dict[POV, str] = {
    "first": "Write in first person from the protagonist's perspective.",
    "second": "Write in second person, addressing the protagonist as 'you'.",
    "third": "Write in third person, following the protagonist.",
}

_TENSE_INSTRUCTIONS: dict[Tense, str] = {
    "past": "Use past tense.",
    "present": "Use present tense.",
}

_VISUAL_PROSE_INSTRUCTIONS = (
    "You may format the passage with simple HTML and inline CSS to create visual "
    "effects. Keep the markup well-formed."
)

_ROLE_BY_ENTRY_TYPE: dict[str, str] = {
    "user_action": "user",
    "narration": "assistant",
}


class NarrationService:
    """Builds narrator prompts and streams the model's response."""

    def __init__(self, settings: Settings) -> None:
        """Create the service with the narrator model from *settings*."""
        self.settings = settings

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
        """Stream the narration continuing *entries*.

        With ``use_tiered_context`` the lorebook is represented only by what
        retrieval selected; otherwise every lorebook entry is included.
        """
        system_prompt = self.build_system_prompt(
            world_state,
            story,
            use_tiered_context=use_tiered_context,
            style_review=style_review,
            retrieved_context=retrieved_context,
            timeline_fill=timeline_fill,
        )
        messages = self.build_messages(system_prompt, entries)
        model = self.settings.get_model_for_role(_ROLE)
        logger.debug(
            "Streaming narration: model=%s, %d messages, system prompt %d chars",
            model,
            len(messages),
            len(system_prompt),
        )
        return stream_chat(
            self.settings,
            model,
            messages,
            temperature=self.settings.get_temperature_for_role(_ROLE),
        )

    def build_system_prompt(
        self,
        world_state: WorldState,
        story: Story,
        *,
        use_tiered_context: bool = True,
        style_review: StyleReview | None = None,
        retrieved_context: str | None = None,
        timeline_fill: TimelineFillResult | None = None,
    ) -> str:
        """Assemble the narrator's system prompt."""
        story_settings = story.settings
        sections = [
            " ".join(
                [
                    _MODE_INSTRUCTIONS[story.mode],
                    _POV_INSTRUCTIONS[story_settings.pov],
                    _TENSE_INSTRUCTIONS[story_settings.tense],
                ]
            )
        ]
        if story.genre:
            sections.append(f"Genre: {story.genre}")
        if story_settings.visual_prose_mode:
            sections.append(_VISUAL_PROSE_INSTRUCTIONS)

        world = self._describe_world(world_state, include_lorebook=not use_tiered_context)
        if world:
            sections.append(world)
        if story.time_tracker is not None:
            sections.append(f"Current story time: {story.time_tracker.describe()}")
        if timeline_fill is not None:
            history = timeline_fill.to_prompt()
            if history:
                sections.append(history)
        if retrieved_context:
            sections.append(retrieved_context)
        if style_review is not None:
            notes = style_review.to_prompt()
            if notes:
                sections.append(notes)
        return "\n\n".join(sections)

    def build_messages(
        self, system_prompt: str, entries: Sequence[StoryEntry]
    ) -> list[ChatMessage]:
        """Replay the most recent entries as chat turns after the system prompt."""
        messages: list[ChatMessage] = [{"role": "system", "content": system_prompt}]
        for entry in entries[-self.settings.narrative_history_entries :]:
            role = _ROLE_BY_ENTRY_TYPE.get(entry.type)
            if role is None or not entry.content:
                continue
            messages.append({"role": role, "content": entry.content})
        return messages

    @staticmethod
    def _describe_world(world_state: WorldState, include_lorebook: bool) -> str:
        lines: list[str] = []
        protagonist = world_state.protagonist
        if protagonist is not None:
            lines.append(f"Protagonist: {protagonist.name}. {protagonist.description}".strip())
            if protagonist.visual_descriptors is not None:
                appearance = protagonist.visual_descriptors.describe()
                if appearance:
                    lines.append(f"Appearance: {appearance}")
        if world_state.current_location is not None:
            location = world_state.current_location
            lines.append(f"Current location: {location.name}. {location.description}".strip())

        others = [
            c for c in world_state.characters if c.relationship != "self" and c.status == "active"
        ]
        if others:
            lines.append("Characters:")
            lines.extend(
                f"- {c.name}" + (f" ({c.relationship})" if c.relationship else "")
                + (f": {c.description}" if c.description else "")
                for c in others
            )

        carried = [i for i in world_state.items if i.location in ("inventory", "worn")]
        if carried:
            lines.append(
                "Inventory: "
                + ", ".join(
                    f"{i.name}{' x' + str(i.quantity) if i.quantity > 1 else ''}"
                    + (" (equipped)" if i.equipped else "")
                    for i in carried
                )
            )

        active = [b for b in world_state.story_beats if b.status == "active"]
        if active:
            lines.append("Active threads:")
            lines.extend(f"- {b.title}: {b.description}".rstrip(": ") for b in active)

        if include_lorebook and world_state.lorebook_entries:
            lines.append("Lore:")
            lines.extend(f"- {e.name}: {e.description}" for e in world_state.lorebook_entries)

        if not lines:
            return ""
        return "[WORLD STATE]\n" + "\n".join(lines)
