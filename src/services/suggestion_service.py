"""Suggestion service - what could happen next.

Creative-writing stories get story directions for the author; adventure
stories get actions the player can pick.
"""

import logging
from collections.abc import Sequence

from src.memory.generation_schemas import (
    ActionChoice,
    ActionChoicesResult,
    Suggestion,
    SuggestionsResult,
)
from src.memory.generation_settings import PromptContext
from src.memory.story_state import POV, LorebookEntry, StoryBeat, StoryEntry, WorldState
from src.services.llm_client import generate_structured
from src.settings import Settings

logger = logging.getLogger(__name__)

_ROLE = "suggestion"

_POV_SUBJECT: dict[str, str] = {
    "first": "I",
    "second": "You",
    "third": "{protagonist}",
}

_SUGGESTIONS_SYSTEM_PROMPT = """You help an author continue a {genre} story. Offer \
distinct directions the next passage could take: an action, a line of dialogue, a \
revelation or a twist. Keep each to one sentence and stay consistent with the \
established threads."""

_CHOICES_SYSTEM_PROMPT = """You offer the player of a text adventure their next moves. \
Write short, concrete actions that make sense right after the latest passage. Start \
each with "{subject}" and vary them between acting, talking, examining and moving."""


def _recent_text(entries: Sequence[StoryEntry], label: str) -> str:
    lines = []
    for entry in entries:
        if not entry.content:
            continue
        prefix = f"[{label}]" if entry.type == "user_action" else "[STORY]"
        lines.append(f"{prefix} {entry.content}")
    return "\n\n".join(lines)


def _lore_lines(lorebook_entries: Sequence[LorebookEntry]) -> str:
    return "\n".join(f"- {e.name}: {e.description}" for e in lorebook_entries)


class SuggestionService:
    """Story direction suggestions and adventure action choices."""

    def __init__(self, settings: Settings) -> None:
        """Create the service with the suggestion model from *settings*."""
        self.settings = settings

    async def generate_suggestions(
        self,
        entries: Sequence[StoryEntry],
        active_threads: Sequence[StoryBeat],
        lorebook_entries: Sequence[LorebookEntry],
        prompt_context: PromptContext,
    ) -> list[Suggestion]:
        """Suggest directions for the next passage of a creative-writing story."""
        recent = entries[-self.settings.suggestion_history_entries :]
        sections = [f"## Recent story\n{_recent_text(recent, prompt_context.input_label)}"]
        if active_threads:
            threads = "\n".join(
                f"- {beat.title}: {beat.description}" if beat.description else f"- {beat.title}"
                for beat in active_threads
            )
            sections.append(f"## Open threads\n{threads}")
        if lorebook_entries:
            sections.append(f"## Lore\n{_lore_lines(lorebook_entries)}")
        if prompt_context.themes:
            sections.append(f"## Themes\n{', '.join(prompt_context.themes)}")

        result = await generate_structured(
            self.settings,
            self.settings.get_model_for_role(_ROLE),
            "\n\n".join(sections),
            SuggestionsResult,
            system_prompt=_SUGGESTIONS_SYSTEM_PROMPT.format(
                genre=prompt_context.genre or "fiction"
            ),
            temperature=self.settings.get_temperature_for_role(_ROLE),
        )
        suggestions = [s for s in result.suggestions if s.text.strip()]
        suggestions = suggestions[: self.settings.suggestion_max_count]
        logger.info("Generated %d suggestions", len(suggestions))
        return suggestions

    async def generate_action_choices(
        self,
        entries: Sequence[StoryEntry],
        world_state: WorldState,
        narrative_response: str,
        lorebook_entries: Sequence[LorebookEntry],
        prompt_context: PromptContext,
        pov: POV,
    ) -> list[ActionChoice]:
        """Offer actions the player could take after *narrative_response*."""
        recent = entries[-self.settings.suggestion_history_entries :]
        sections = [
            f"## Recent story\n{_recent_text(recent, prompt_context.input_label)}",
            f"## Latest passage\n{narrative_response}",
        ]
        if world_state.current_location is not None:
            sections.append(f"## Location\n{world_state.current_location.name}")
        carried = [i.name for i in world_state.items if i.location in ("inventory", "worn")]
        if carried:
            sections.append(f"## Inventory\n{', '.join(carried)}")
        active = [b.title for b in world_state.story_beats if b.status == "active"]
        if active:
            sections.append(f"## Active quests\n{', '.join(active)}")
        if lorebook_entries:
            sections.append(f"## Lore\n{_lore_lines(lorebook_entries)}")

        subject = _POV_SUBJECT[pov].format(protagonist=prompt_context.protagonist_name)
        result = await generate_structured(
            self.settings,
            self.settings.get_model_for_role(_ROLE),
            "\n\n".join(sections),
            ActionChoicesResult,
            system_prompt=_CHOICES_SYSTEM_PROMPT.format(subject=subject),
            temperature=self.settings.get_temperature_for_role(_ROLE),
        )
        choices = [c for c in result.choices if c.text.strip()]
        choices = choices[: self.settings.action_choice_max_count]
        logger.info("Generated %d action choices", len(choices))
        return choices
