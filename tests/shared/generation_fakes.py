"""Shared fakes for generation phase and pipeline tests.

Usage:
    from tests.shared.generation_fakes import FakeDependencies, collect
"""

import asyncio
from collections.abc import AsyncIterator, Sequence
from unittest.mock import AsyncMock, MagicMock

from src.memory.generation_schemas import (
    ActionChoice,
    AgenticRetrievalResult,
    ClassificationResult,
    LorebookRetrievalResult,
    Scene,
    Suggestion,
    TimelineFillResult,
    TranslatedText,
)
from src.services.generation import GenerationEvent
from src.services.generation.phases import PhaseExecution
from src.utils.streaming import StreamChunk

type StreamStep = StreamChunk | BaseException


async def _stream(steps: Sequence[StreamStep]) -> AsyncIterator[StreamChunk]:
    for step in steps:
        await asyncio.sleep(0)
        if isinstance(step, BaseException):
            raise step
        yield step


class FakeDependencies:
    """In-memory implementation of every pipeline dependency protocol.

    Each operation is a mock so tests can change its behavior and assert on
    calls. ``narrative_attempts`` holds the chunks streamed on each
    successive call to ``stream_narrative``; the last entry repeats.
    """

    def __init__(self) -> None:
        self.should_use_agentic_retrieval = MagicMock(return_value=False)
        self.run_agentic_retrieval = AsyncMock(return_value=AgenticRetrievalResult())
        self.format_agentic_retrieval = MagicMock(return_value="")
        self.run_timeline_fill = AsyncMock(return_value=TimelineFillResult())
        self.get_relevant_lorebook_entries = AsyncMock(return_value=LorebookRetrievalResult())

        self.narrative_attempts: list[list[StreamStep]] = [
            [
                StreamChunk(content="The gate groans "),
                StreamChunk(content="and swings inward.", done=True),
            ]
        ]
        self.stream_calls: list[dict] = []

        self.is_image_generation_enabled = MagicMock(return_value=True)
        self.analyze_background_change_and_generate_image = AsyncMock(return_value=None)
        self.classify_response = AsyncMock(
            return_value=ClassificationResult(
                scene=Scene(current_location_name="Keep Gate", present_character_names=["Bram"])
            )
        )
        self.translate_narration = AsyncMock(
            return_value=TranslatedText(translated_content="La porte s'ouvre.")
        )
        self.translate_world_state = AsyncMock(return_value=[])
        self.generate_images_for_narrative = AsyncMock(return_value=None)
        self.generate_suggestions = AsyncMock(
            return_value=[Suggestion(text="A stranger arrives", type="twist")]
        )
        self.translate_suggestions = AsyncMock(side_effect=lambda items, language: list(items))
        self.generate_action_choices = AsyncMock(
            return_value=[
                ActionChoice(text="You step inside", type="move"),
                ActionChoice(text="You call out to Bram", type="dialogue"),
            ]
        )
        self.translate_action_choices = AsyncMock(side_effect=lambda items, language: list(items))

    def stream_narrative(self, entries, world_state, story, **kwargs) -> AsyncIterator[StreamChunk]:
        self.stream_calls.append({"entries": entries, "story": story, **kwargs})
        index = min(len(self.stream_calls), len(self.narrative_attempts)) - 1
        return _stream(self.narrative_attempts[index])


async def collect(execution: PhaseExecution | AsyncIterator) -> list[GenerationEvent]:
    """Drain an event stream into a list."""
    return [event async for event in execution]


def event_types(events: Sequence[GenerationEvent]) -> list[str]:
    """The event_type of each event, in order."""
    return [event.event_type for event in events]


async def block_until_cancelled(*_args, **_kwargs) -> None:
    """A dependency call that never finishes on its own."""
    await asyncio.Event().wait()
