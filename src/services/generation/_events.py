"""Generation events - the progress stream a pipeline run produces.

Every variant is its own frozen dataclass carrying only the fields that
belong to it. Consumers dispatch on ``event_type`` (or ``isinstance``)::

    async for event in run:
        match event:
            case PhaseStartEvent(phase=phase):
                ...
            case ErrorEvent(fatal=True):
                ...
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

from src.memory.generation_schemas import ClassificationResult

logger = logging.getLogger(__name__)


class GenerationPhase(StrEnum):
    """Pipeline phases in execution order."""

    PRE = "pre"
    RETRIEVAL = "retrieval"
    NARRATIVE = "narrative"
    BACKGROUND = "background"
    CLASSIFICATION = "classification"
    TRANSLATION = "translation"
    IMAGE = "image"
    POST = "post"


@dataclass(frozen=True)
class PhaseStartEvent:
    """A phase began. Always the first event of a phase."""

    phase: GenerationPhase
    event_type: Literal["phase_start"] = field(default="phase_start", init=False)


@dataclass(frozen=True)
class PhaseCompleteEvent:
    """A phase finished, successfully or with its fallback result."""

    phase: GenerationPhase
    result: Any
    event_type: Literal["phase_complete"] = field(default="phase_complete", init=False)


@dataclass(frozen=True)
class AbortedEvent:
    """A phase stopped because the request was cancelled."""

    phase: GenerationPhase
    event_type: Literal["aborted"] = field(default="aborted", init=False)


@dataclass(frozen=True)
class ErrorEvent:
    """A phase's operation failed.

    Non-fatal errors are followed by a ``PhaseCompleteEvent`` carrying the
    phase's fallback result. Fatal errors end the phase and the pipeline.
    """

    phase: GenerationPhase
    error: BaseException
    fatal: bool
    event_type: Literal["error"] = field(default="error", init=False)


@dataclass(frozen=True)
class NarrativeChunkEvent:
    """A piece of streamed narration."""

    content: str
    reasoning: str | None = None
    event_type: Literal["narrative_chunk"] = field(default="narrative_chunk", init=False)


@dataclass(frozen=True)
class ClassificationCompleteEvent:
    """World-state extraction is ready to apply."""

    result: ClassificationResult
    event_type: Literal["classification_complete"] = field(
        default="classification_complete", init=False
    )


type GenerationEvent = (
    PhaseStartEvent
    | PhaseCompleteEvent
    | AbortedEvent
    | ErrorEvent
    | NarrativeChunkEvent
    | ClassificationCompleteEvent
)

type TerminalEvent = PhaseCompleteEvent | AbortedEvent | ErrorEvent


def is_terminal(event: GenerationEvent) -> bool:
    """True if *event* ends the phase that emitted it.

    A non-fatal error is not terminal; the phase still completes.
    """
    if isinstance(event, (PhaseCompleteEvent, AbortedEvent)):
        return True
    return isinstance(event, ErrorEvent) and event.fatal
