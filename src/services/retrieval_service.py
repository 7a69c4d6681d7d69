"""Retrieval service - pulls earlier chapters and lorebook entries into a turn.

Three kinds of retrieval feed the narrator:

- Timeline fill: the model asks questions about earlier chapters and each
  question is answered from the chapter summaries and entries.
- Agentic retrieval: for long stories, the model plans which chapters and
  lorebook entries matter for the current input.
- Lorebook retrieval: entries are selected by tier (always active, current
  scene state) and by keyword match against recent text, without an LLM call.
"""

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from src.memory.generation_schemas import (
    AgenticRetrievalPlan,
    AgenticRetrievalResult,
    LorebookRetrievalResult,
    TimelineAnswer,
    TimelineFillResult,
    TimelineQueriesResult,
    TimelineQuery,
)
from src.memory.story_state import (
    POV,
    Chapter,
    LorebookEntry,
    MemoryConfig,
    StoryEntry,
    StoryMode,
    Tense,
    WorldState,
)
from src.services.llm_client import generate_structured, generate_text
from src.settings import Settings

logger = logging.getLogger(__name__)

_ROLE = "retrieval"

# Section titles for the lorebook block, in output order
_LORE_SECTIONS: dict[str, str] = {
    "character": "Characters",
    "location": "Locations",
    "item": "Items",
    "faction": "Factions",
    "concept": "Lore",
    "event": "Events",
}

_TIMELINE_SYSTEM_PROMPT = """You check a story's earlier chapters for facts the next \
passage may need. Ask at most five short, specific questions, and only about things \
that the recent passages refer to but do not explain. Reference chapters by number. \
Return an empty list when nothing needs looking up."""

_AGENTIC_SYSTEM_PROMPT = """You are the memory of a long {mode} story told in \
{pov} person, {tense} tense. Decide what the narrator must remember to continue from \
the user's latest input: ask questions about specific earlier chapters and name the \
lorebook entries that matter for this scene. Be selective."""

_ANSWER_SYSTEM_PROMPT = """Answer the question using only the chapter material given. \
Answer in two or three sentences. If the material does not contain the answer, \
say so plainly."""


@dataclass(frozen=True)
class _RankedEntry:
    entry: LorebookEntry
    priority: int
    reason: str


def _format_entries(entries: Sequence[StoryEntry]) -> str:
    return "\n\n".join(
        f"[{'USER' if entry.type == 'user_action' else 'STORY'}] {entry.content}"
        for entry in entries
        if entry.content
    )


def _format_chapter_list(chapters: Sequence[Chapter]) -> str:
    lines = []
    for chapter in chapters:
        title = f" - {chapter.title}" if chapter.title else ""
        keywords = f" [Keywords: {', '.join(chapter.keywords)}]" if chapter.keywords else ""
        lines.append(f"Chapter {chapter.number}{title}: {chapter.summary}{keywords}")
    return "\n".join(lines)


def _text_matches(needle: str, haystack: str) -> bool:
    """Case-insensitive whole-word match of *needle* in *haystack*."""
    needle = needle.strip()
    if len(needle) < 2:
        return False
    return re.search(rf"\b{re.escape(needle)}\b", haystack, re.IGNORECASE) is not None


class RetrievalService:
    """Chapter memory and lorebook retrieval."""

    def __init__(self, settings: Settings, max_chapters_per_question: int = 3) -> None:
        """Create the service.

        Args:
            settings: Application settings (retrieval model, limits).
            max_chapters_per_question: Most chapters sent with one question.
        """
        self.settings = settings
        self.max_chapters_per_question = max_chapters_per_question
        logger.debug("RetrievalService initialized")

    @property
    def _model(self) -> str:
        return self.settings.get_model_for_role(_ROLE)

    @property
    def _temperature(self) -> float:
        return self.settings.get_temperature_for_role(_ROLE)

    # ------------------------------------------------------------------
    # Chapter questions
    # ------------------------------------------------------------------

    async def answer_chapter_question(
        self,
        query: str,
        chapters: Sequence[Chapter],
        chapter_numbers: Sequence[int],
        entries: Sequence[StoryEntry] = (),
    ) -> TimelineAnswer:
        """Answer *query* from the given chapters.

        Chapter numbers that do not exist are ignored. With no matching
        chapter the answer says so without calling the model.
        """
        wanted = set(chapter_numbers)
        selected = [c for c in chapters if c.number in wanted]
        selected = selected[: self.max_chapters_per_question]
        if not selected:
            logger.debug("No chapters match %s for question %r", sorted(wanted), query)
            return TimelineAnswer(query=query, answer="No matching chapters.", chapter_numbers=[])

        prompt = f"{self._chapter_material(selected, entries)}\n\nQuestion: {query}"
        answer = await generate_text(
            self.settings,
            self._model,
            prompt,
            system_prompt=_ANSWER_SYSTEM_PROMPT,
            temperature=self._temperature,
        )
        return TimelineAnswer(
            query=query,
            answer=answer.strip(),
            chapter_numbers=[c.number for c in selected],
        )

    async def answer_chapter_range_question(
        self,
        query: str,
        chapters: Sequence[Chapter],
        start_chapter: int,
        end_chapter: int,
        entries: Sequence[StoryEntry] = (),
    ) -> TimelineAnswer:
        """Answer *query* from every chapter between start and end, inclusive."""
        if start_chapter > end_chapter:
            start_chapter, end_chapter = end_chapter, start_chapter
        numbers = [c.number for c in chapters if start_chapter <= c.number <= end_chapter]
        return await self.answer_chapter_question(query, chapters, numbers, entries)

    async def _answer(
        self,
        query: TimelineQuery,
        chapters: Sequence[Chapter],
        entries: Sequence[StoryEntry],
    ) -> TimelineAnswer:
        if query.start_chapter is not None and query.end_chapter is not None:
            return await self.answer_chapter_range_question(
                query.query, chapters, query.start_chapter, query.end_chapter, entries
            )
        numbers = query.chapters or [c.number for c in chapters[-self.max_chapters_per_question :]]
        return await self.answer_chapter_question(query.query, chapters, numbers, entries)

    async def _answer_all(
        self,
        queries: Sequence[TimelineQuery],
        chapters: Sequence[Chapter],
        entries: Sequence[StoryEntry],
    ) -> list[TimelineAnswer]:
        return list(
            await asyncio.gather(*(self._answer(query, chapters, entries) for query in queries))
        )

    def _chapter_material(self, chapters: Sequence[Chapter], entries: Sequence[StoryEntry]) -> str:
        parts = []
        for chapter in chapters:
            parts.append(f"--- Chapter {chapter.number} ---\n{chapter.summary}")
            chapter_entries = [
                e for e in entries if chapter.start_position <= e.position <= chapter.end_position
            ]
            if chapter_entries:
                parts.append(_format_entries(chapter_entries))
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Timeline fill
    # ------------------------------------------------------------------

    async def run_timeline_fill(
        self, visible_entries: Sequence[StoryEntry], chapters: Sequence[Chapter]
    ) -> TimelineFillResult:
        """Ask and answer questions about earlier chapters for the next passage."""
        if not chapters:
            return TimelineFillResult()

        recent = visible_entries[-self.settings.retrieval_recent_entries :]
        prompt = (
            f"## Chapters\n{_format_chapter_list(chapters)}\n\n"
            f"## Recent passages\n{_format_entries(recent)}\n\n"
            "Which facts from earlier chapters should the narrator recall?"
        )
        plan = await generate_structured(
            self.settings,
            self._model,
            prompt,
            TimelineQueriesResult,
            system_prompt=_TIMELINE_SYSTEM_PROMPT,
            temperature=self._temperature,
        )
        logger.debug("Timeline fill asked %d questions", len(plan.queries))
        if not plan.queries:
            return TimelineFillResult()

        answers = await self._answer_all(plan.queries, chapters, visible_entries)
        logger.info(
            "Timeline fill answered %d questions from %d chapters", len(answers), len(chapters)
        )
        return TimelineFillResult(responses=answers)

    # ------------------------------------------------------------------
    # Agentic retrieval
    # ------------------------------------------------------------------

    def should_use_agentic_retrieval(self, chapter_count: int, memory_config: MemoryConfig) -> bool:
        """Agentic retrieval takes over once a story has more chapters than the threshold."""
        return (
            memory_config.enable_retrieval
            and chapter_count > memory_config.agentic_retrieval_chapter_threshold
        )

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
        """Plan and run retrieval over chapters and lorebook for one turn.

        Returns:
            The answered questions, the lorebook entry names the plan picked
            (unknown names dropped), and a rendered context block.
        """
        lore_names = "\n".join(f"- {e.name} ({e.type})" for e in lorebook_entries) or "(none)"
        prompt = (
            f"## Chapters\n{_format_chapter_list(chapters)}\n\n"
            f"## Lorebook entries\n{lore_names}\n\n"
            f"## Recent passages\n{_format_entries(recent_entries)}\n\n"
            f"## Latest input\n{user_input}"
        )
        system_prompt = _AGENTIC_SYSTEM_PROMPT.format(mode=mode, pov=pov, tense=tense)
        plan = await generate_structured(
            self.settings,
            self._model,
            prompt,
            AgenticRetrievalPlan,
            system_prompt=system_prompt,
            temperature=self._temperature,
        )

        known = {entry.name.lower(): entry.name for entry in lorebook_entries}
        entry_names = [known[n.lower()] for n in plan.relevant_entry_names if n.lower() in known]
        dropped = len(plan.relevant_entry_names) - len(entry_names)
        if dropped:
            logger.debug("Agentic retrieval named %d unknown lorebook entries", dropped)

        answers = await self._answer_all(plan.queries, chapters, recent_entries)
        selected = [e for e in lorebook_entries if e.name in set(entry_names)]
        result = AgenticRetrievalResult(
            context=self._build_lore_block(selected),
            answers=answers,
            entry_names=entry_names,
        )
        logger.info(
            "Agentic retrieval: %d answers, %d lorebook entries", len(answers), len(entry_names)
        )
        return result

    def format_agentic_retrieval(self, result: AgenticRetrievalResult) -> str:
        """Render an agentic retrieval result as one context block."""
        parts = []
        if result.answers:
            parts.append(TimelineFillResult(responses=result.answers).to_prompt())
        if result.context:
            parts.append(result.context)
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Lorebook
    # ------------------------------------------------------------------

    async def get_relevant_lorebook_entries(
        self,
        lorebook_entries: Sequence[LorebookEntry],
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        world_state: WorldState,
    ) -> LorebookRetrievalResult:
        """Select lorebook entries for this turn.

        Entries marked always active, the current location and carried items
        come first; the rest are matched by name or keyword against the user
        input and the recent passages. At most ``lorebook_max_entries`` are
        returned, highest priority first.
        """
        candidates = [*lorebook_entries, *self._world_entries(world_state)]
        recent = recent_entries[-self.settings.retrieval_recent_entries :]
        search_content = "\n".join([user_input, *(e.content for e in recent)])
        current_location = (
            world_state.current_location.name.lower() if world_state.current_location else None
        )
        carried = {
            item.name.lower()
            for item in world_state.items
            if item.location in ("inventory", "worn")
        }

        ranked: dict[str, _RankedEntry] = {}
        for entry in candidates:
            key = entry.name.lower()
            if key in ranked:
                continue
            match = self._rank(entry, search_content, current_location, carried)
            if match is not None:
                ranked[key] = match

        selected = sorted(ranked.values(), key=lambda r: r.priority, reverse=True)
        selected = selected[: self.settings.lorebook_max_entries]
        for item in selected:
            logger.debug("Lorebook entry %s included (%s)", item.entry.name, item.reason)

        if not selected:
            return LorebookRetrievalResult()
        entries = [item.entry for item in selected]
        return LorebookRetrievalResult(
            entry_names=[e.name for e in entries],
            context_block=self._build_lore_block(entries),
        )

    @staticmethod
    def _rank(
        entry: LorebookEntry,
        search_content: str,
        current_location: str | None,
        carried: set[str],
    ) -> _RankedEntry | None:
        name = entry.name.lower()
        if entry.always_active:
            return _RankedEntry(entry, 100, "always active")
        if entry.type == "location" and name == current_location:
            return _RankedEntry(entry, 100, "current location")
        if entry.type == "item" and name in carried:
            return _RankedEntry(entry, 80, "in inventory")

        matched = [k for k in (entry.name, *entry.keywords) if _text_matches(k, search_content)]
        if matched:
            return _RankedEntry(entry, 70, f"matched: {', '.join(dict.fromkeys(matched))}")
        return None

    @staticmethod
    def _world_entries(world_state: WorldState) -> list[LorebookEntry]:
        """Expose tracked characters, locations and items as lorebook candidates."""
        entries = [
            LorebookEntry(name=c.name, type="character", description=c.description)
            for c in world_state.characters
            if c.description and c.status != "deceased"
        ]
        entries.extend(
            LorebookEntry(name=loc.name, type="location", description=loc.description)
            for loc in world_state.locations
            if loc.description
        )
        entries.extend(
            LorebookEntry(name=item.name, type="item", description=item.description)
            for item in world_state.items
            if item.description
        )
        return entries

    @staticmethod
    def _build_lore_block(entries: Sequence[LorebookEntry]) -> str:
        if not entries:
            return ""
        lines = [
            "[LOREBOOK CONTEXT]",
            "(Established lore. Do not contradict these facts.)",
        ]
        by_type: dict[str, list[LorebookEntry]] = {}
        for entry in entries:
            section = entry.type if entry.type in _LORE_SECTIONS else "concept"
            by_type.setdefault(section, []).append(entry)
        for section, title in _LORE_SECTIONS.items():
            if section not in by_type:
                continue
            lines.append(f"\n{title}:")
            lines.extend(f"  - {e.name}: {e.description}" for e in by_type[section])
        return "\n".join(lines)
