"""Classification phase - extracts world-state changes from the narration."""

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from src.memory.story_state import Story, StoryEntry, WorldState
from src.services.generation._dependencies import ClassificationDependencies
from src.services.generation._events import (
    ClassificationCompleteEvent,
    GenerationEvent,
    GenerationPhase,
)
from src.services.generation._results import ClassificationPhaseResult
from src.services.generation.phases._base import Phase
from src.utils.cancellation import CancellationToken
from src.utils.exceptions import GenerationCancelledError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationInput:
    narrative_content: str
    narrative_entry_id: str
    user_action_content: str
    world_state: WorldState
    story: Story
    visible_entries: tuple[StoryEntry, ...]
    cancel_token: CancellationToken


class ClassificationPhase(Phase[ClassificationInput, ClassificationPhaseResult]):
    """Run the classifier over the new narration.

    A failed classification only means the world state is not updated this
    turn, so errors are non-fatal.
    """

    phase = GenerationPhase.CLASSIFICATION
    _deps: ClassificationDependencies

    def __init__(self, dependencies: ClassificationDependencies) -> None:
        """Create the phase with the classifier operation."""
        super().__init__(dependencies)

    def fallback_result(self, phase_input: ClassificationInput) -> ClassificationPhaseResult:
        return ClassificationPhaseResult.fallback(phase_input.narrative_entry_id)

    async def _run(self, phase_input: ClassificationInput) -> AsyncGenerator[GenerationEvent]:
        yield self._start()

        token = phase_input.cancel_token
        if token.cancelled:
            yield self._aborted()
            return

        # The narration is passed separately; keep it out of the history
        chat_history = tuple(
            e for e in phase_input.visible_entries if e.id != phase_input.narrative_entry_id
        )

        try:
            classification = await self._call(
                self._deps.classify_response(
                    phase_input.narrative_content,
                    phase_input.user_action_content,
                    phase_input.world_state,
                    phase_input.story,
                    chat_history,
                    phase_input.story.time_tracker,
                ),
                token,
                "classify_response",
            )
        except GenerationCancelledError:
            yield self._aborted()
            return
        except Exception as e:
            yield self._error(e)
            yield self._complete(self.fallback_result(phase_input))
            return

        yield ClassificationCompleteEvent(result=classification)
        yield self._complete(
            ClassificationPhaseResult(
                classification=classification,
                narrative_entry_id=phase_input.narrative_entry_id,
            )
        )
