"""Pre-generation phase - prepares retry data before anything is generated."""

import logging
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from src.memory.story_state import EmbeddedImage, Story, StoryEntry, UserAction, WorldState
from src.services.generation._events import GenerationEvent, GenerationPhase
from src.services.generation._results import PreGenerationResult, RetryBackupData
from src.services.generation.phases._base import Phase
from src.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreGenerationInput:
    story: Story
    all_entries: tuple[StoryEntry, ...]
    world_state: WorldState
    user_action: UserAction
    embedded_images: tuple[EmbeddedImage, ...]
    action_type: str
    was_raw_action_choice: bool
    cancel_token: CancellationToken


class PreGenerationPhase(Phase[PreGenerationInput, PreGenerationResult]):
    """Snapshot the story so the caller can offer a retry of this turn.

    Performs no I/O; applying the backup is left to the caller.
    """

    phase = GenerationPhase.PRE

    async def _run(self, phase_input: PreGenerationInput) -> AsyncGenerator[GenerationEvent]:
        yield self._start()

        if phase_input.cancel_token.cancelled:
            yield self._aborted()
            return

        story = phase_input.story
        world = phase_input.world_state
        user_action = phase_input.user_action

        backup = RetryBackupData(
            story_id=story.id,
            entries=tuple(phase_input.all_entries),
            characters=tuple(c.model_copy(deep=True) for c in world.characters),
            locations=tuple(loc.model_copy(deep=True) for loc in world.locations),
            items=tuple(i.model_copy(deep=True) for i in world.items),
            story_beats=tuple(b.model_copy(deep=True) for b in world.story_beats),
            embedded_images=tuple(phase_input.embedded_images),
            user_action_content=user_action.content,
            raw_input=user_action.raw_input,
            action_type=phase_input.action_type,
            was_raw_action_choice=phase_input.was_raw_action_choice,
            time_tracker=story.time_tracker.model_copy() if story.time_tracker else None,
        )

        result = PreGenerationResult(
            retry_backup=backup,
            world_state=world,
            visual_prose_mode=story.settings.visual_prose_mode,
            # Temporary id used to scope visual prose styling while streaming
            streaming_entry_id=str(uuid.uuid4()),
        )
        logger.debug(
            "Prepared retry backup for story %s: %d entries, %d characters",
            story.id,
            len(backup.entries),
            len(backup.characters),
        )
        yield self._complete(result)
