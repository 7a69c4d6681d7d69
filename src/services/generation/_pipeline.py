"""GenerationPipeline - runs the generation phases for one request.

Phases run strictly in order:

    pre -> retrieval -> narrative -> background -> classification
        -> translation -> image -> post

Every phase event is forwarded to the caller unchanged, in the order it was
produced. After each phase the pipeline looks only at the phase's terminal
event:

- ``phase_complete`` (including the fallback after a non-fatal error):
  keep the result and continue;
- ``aborted``: stop, the run is aborted;
- fatal ``error``: stop, the run is incomplete.

The pipeline also stops when the cancellation token is signaled between
phases. It never raises on a phase's behalf: an exception escaping a phase
is reported as a fatal ``error`` event for that phase.

Usage:
    pipeline = GenerationPipeline(services.pipeline_dependencies())
    run = pipeline.run(request)
    async for event in run:
        ui.render(event)
    result = run.result
"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Callable, Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from src.services.generation._dependencies import ImageGenerationContext, PipelineDependencies
from src.services.generation._events import (
    AbortedEvent,
    ErrorEvent,
    GenerationEvent,
    GenerationPhase,
    PhaseCompleteEvent,
    is_terminal,
)
from src.services.generation._request import GenerationRequest
from src.services.generation._results import (
    BackgroundImageResult,
    ClassificationPhaseResult,
    ImageResult,
    NarrativeResult,
    PostGenerationResult,
    PreGenerationResult,
    RetrievalResult,
    TranslationPhaseResult,
)
from src.services.generation.phases import (
    BackgroundImageInput,
    BackgroundImagePhase,
    ClassificationInput,
    ClassificationPhase,
    ImageInput,
    ImagePhase,
    NarrativeInput,
    NarrativePhase,
    Phase,
    PostGenerationInput,
    PostGenerationPhase,
    PreGenerationInput,
    PreGenerationPhase,
    RetrievalInput,
    RetrievalPhase,
    TranslationInput,
    TranslationPhase,
)
from src.services.generation.phases._narrative import DEFAULT_MAX_ATTEMPTS
from src.utils.exceptions import GenerationCancelledError, PipelineError

logger = logging.getLogger(__name__)

type PriorResults = Mapping[GenerationPhase, Any]
type InputBuilder = Callable[[GenerationRequest, PriorResults], Any]


@dataclass(frozen=True)
class PipelineStep:
    """A phase plus the function that builds its input.

    The builder receives the request and a read-only view of the results of
    the phases that already ran.
    """

    phase: Phase[Any, Any]
    build_input: InputBuilder


@dataclass(frozen=True)
class PipelineResult:
    """Aggregate outcome of one pipeline run.

    A phase field is None when the phase never started. ``executed_phases``
    lists every phase that started, in order. An aborted or fatally failed
    phase contributes its fallback, so a phase without one (pre, narrative)
    can still leave its field None.

    When a phase's input cannot be built the phase never starts: the run ends
    with a fatal ``error`` event for that phase with no ``phase_start`` before
    it, and the phase is absent from ``executed_phases``.
    """

    pre_generation: PreGenerationResult | None = None
    retrieval: RetrievalResult | None = None
    narrative: NarrativeResult | None = None
    background: BackgroundImageResult | None = None
    classification: ClassificationPhaseResult | None = None
    translation: TranslationPhaseResult | None = None
    image: ImageResult | None = None
    post_generation: PostGenerationResult | None = None
    executed_phases: tuple[GenerationPhase, ...] = ()
    aborted: bool = False
    fatal_error: BaseException | None = None

    @property
    def incomplete(self) -> bool:
        """True if the run stopped before every phase completed."""
        return self.aborted or self.fatal_error is not None

    def ran(self, phase: GenerationPhase) -> bool:
        """True if *phase* started during this run."""
        return phase in self.executed_phases


_RESULT_FIELDS: dict[GenerationPhase, str] = {
    GenerationPhase.PRE: "pre_generation",
    GenerationPhase.RETRIEVAL: "retrieval",
    GenerationPhase.NARRATIVE: "narrative",
    GenerationPhase.BACKGROUND: "background",
    GenerationPhase.CLASSIFICATION: "classification",
    GenerationPhase.TRANSLATION: "translation",
    GenerationPhase.IMAGE: "image",
    GenerationPhase.POST: "post_generation",
}


@dataclass
class _RunState:
    results: dict[GenerationPhase, Any] = field(default_factory=dict)
    executed: list[GenerationPhase] = field(default_factory=list)
    aborted: bool = False
    fatal_error: BaseException | None = None

    def to_result(self) -> PipelineResult:
        fields = {_RESULT_FIELDS[phase]: value for phase, value in self.results.items()}
        return PipelineResult(
            **fields,
            executed_phases=tuple(self.executed),
            aborted=self.aborted,
            fatal_error=self.fatal_error,
        )


class PipelineRun:
    """The event stream of one pipeline run, plus its aggregate result.

    Iterate to completion, then read ``result``.
    """

    def __init__(self, events: AsyncGenerator[GenerationEvent], state: _RunState) -> None:
        self._events = events
        self._state = state
        self._finished = False

    def __aiter__(self) -> AsyncIterator[GenerationEvent]:
        return self

    async def __anext__(self) -> GenerationEvent:
        if self._finished:
            raise StopAsyncIteration
        try:
            return await anext(self._events)
        except StopAsyncIteration:
            self._finished = True
            raise

    async def aclose(self) -> None:
        """Stop the run early. The result then reflects the phases seen so far."""
        if not self._finished:
            self._finished = True
            self._state.aborted = self._state.aborted or self._state.fatal_error is None
            await self._events.aclose()

    @property
    def result(self) -> PipelineResult:
        """Aggregate result.

        Raises:
            PipelineError: If the event stream has not been consumed yet.
        """
        if not self._finished:
            raise PipelineError("Pipeline result read before its events finished")
        return self._state.to_result()


class GenerationPipeline:
    """Sequences the generation phases for a request.

    Holds no per-request state; one pipeline may run many requests
    concurrently.
    """

    def __init__(
        self,
        dependencies: PipelineDependencies,
        *,
        narrative_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        recent_entry_count: int = 10,
        steps: Sequence[PipelineStep] | None = None,
    ) -> None:
        """Create the pipeline.

        Args:
            dependencies: Bundle implementing every phase's operations.
            narrative_max_attempts: Attempts when the narrator answers empty.
            recent_entry_count: Recent entries used for lorebook matching.
            steps: Replace the default phase sequence (mainly for tests).
        """
        self._recent_entry_count = recent_entry_count
        self.steps: tuple[PipelineStep, ...] = (
            tuple(steps)
            if steps is not None
            else self._default_steps(dependencies, narrative_max_attempts)
        )

    def run(self, request: GenerationRequest) -> PipelineRun:
        """Run every phase over *request*.

        Nothing executes until the returned run is iterated.
        """
        state = _RunState()
        return PipelineRun(self._execute(request, state), state)

    async def _execute(
        self, request: GenerationRequest, state: _RunState
    ) -> AsyncGenerator[GenerationEvent]:
        token = request.cancel_token
        started_at = time.perf_counter()
        logger.info(
            "Generation started: story=%s, action=%s",
            request.story.id,
            request.user_action.entry_id,
        )

        for step in self.steps:
            phase = step.phase.phase
            if state.executed and token.cancelled:
                logger.info("Cancelled before phase %s, stopping pipeline", phase)
                state.aborted = True
                break

            prior = MappingProxyType(dict(state.results))
            try:
                phase_input = step.build_input(request, prior)
            except Exception as e:
                logger.exception("Could not build input for phase %s", phase)
                state.fatal_error = e
                yield ErrorEvent(phase=phase, error=e, fatal=True)
                break

            state.executed.append(phase)
            phase_started = time.perf_counter()
            async with aclosing(self._run_phase(step.phase, phase_input, state)) as events:
                async for event in events:
                    yield event
            logger.debug("Phase %s took %.2fs", phase, time.perf_counter() - phase_started)

            if state.aborted or state.fatal_error is not None:
                break

        logger.info(
            "Generation finished in %.2fs: phases=%s, aborted=%s, fatal=%s",
            time.perf_counter() - started_at,
            [str(p) for p in state.executed],
            state.aborted,
            state.fatal_error is not None,
        )

    async def _run_phase(
        self, phase: Phase[Any, Any], phase_input: Any, state: _RunState
    ) -> AsyncGenerator[GenerationEvent]:
        """Forward one phase's events and fold its outcome into *state*."""
        name = phase.phase
        execution = phase.execute(phase_input)
        terminal: GenerationEvent | None = None
        try:
            async for event in execution:
                yield event
                if is_terminal(event):
                    terminal = event
                    break
        except GenerationCancelledError:
            logger.info("Phase %s raised cancellation, treating as aborted", name)
            terminal = AbortedEvent(phase=name)
            yield terminal
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.info("Phase %s was cancelled internally, treating as aborted", name)
            terminal = AbortedEvent(phase=name)
            yield terminal
        except Exception as e:
            logger.exception("Unexpected error escaped phase %s", name)
            terminal = ErrorEvent(phase=name, error=e, fatal=True)
            yield terminal
        finally:
            await execution.aclose()

        if terminal is None:
            logger.warning("Phase %s ended without a terminal event, using fallback", name)
            terminal = PhaseCompleteEvent(phase=name, result=phase.fallback_result(phase_input))
            yield terminal

        if isinstance(terminal, PhaseCompleteEvent):
            state.results[name] = terminal.result
        elif isinstance(terminal, AbortedEvent):
            state.results[name] = phase.fallback_result(phase_input)
            state.aborted = True
        else:
            state.results[name] = phase.fallback_result(phase_input)
            state.fatal_error = terminal.error

    # ------------------------------------------------------------------
    # Phase inputs
    # ------------------------------------------------------------------

    def _default_steps(
        self, deps: PipelineDependencies, narrative_max_attempts: int
    ) -> tuple[PipelineStep, ...]:
        return (
            PipelineStep(PreGenerationPhase(), self._pre_input),
            PipelineStep(RetrievalPhase(deps), self._retrieval_input),
            PipelineStep(NarrativePhase(deps, narrative_max_attempts), self._narrative_input),
            PipelineStep(BackgroundImagePhase(deps), self._background_input),
            PipelineStep(ClassificationPhase(deps), self._classification_input),
            PipelineStep(TranslationPhase(deps), self._translation_input),
            PipelineStep(ImagePhase(deps), self._image_input),
            PipelineStep(PostGenerationPhase(deps), self._post_input),
        )

    @staticmethod
    def _narrative_of(prior: PriorResults) -> NarrativeResult:
        narrative = prior.get(GenerationPhase.NARRATIVE)
        if narrative is None:
            raise PipelineError("Narrative result missing for a phase that needs it")
        return narrative

    def _pre_input(self, request: GenerationRequest, prior: PriorResults) -> PreGenerationInput:
        return PreGenerationInput(
            story=request.story,
            all_entries=tuple(request.all_entries),
            world_state=request.world_state,
            user_action=request.user_action,
            embedded_images=tuple(request.embedded_images),
            action_type=request.action_type,
            was_raw_action_choice=request.was_raw_action_choice,
            cancel_token=request.cancel_token,
        )

    def _retrieval_input(self, request: GenerationRequest, prior: PriorResults) -> RetrievalInput:
        return RetrievalInput(
            visible_entries=tuple(request.visible_entries),
            world_state=request.world_state,
            user_action=request.user_action,
            timeline_fill_enabled=request.timeline_fill_enabled,
            story_mode=request.story_mode,
            pov=request.pov,
            tense=request.tense,
            cancel_token=request.cancel_token,
            recent_entry_count=self._recent_entry_count,
        )

    def _narrative_input(self, request: GenerationRequest, prior: PriorResults) -> NarrativeInput:
        return NarrativeInput(
            visible_entries=tuple(request.visible_entries),
            world_state=request.world_state,
            story=request.story,
            retrieval=prior.get(GenerationPhase.RETRIEVAL) or RetrievalResult(),
            style_review=request.style_review,
            cancel_token=request.cancel_token,
        )

    def _background_input(
        self, request: GenerationRequest, prior: PriorResults
    ) -> BackgroundImageInput:
        return BackgroundImageInput(
            story_id=request.story.id,
            visible_entries=tuple(request.visible_entries),
            image_settings=request.image_settings,
            cancel_token=request.cancel_token,
        )

    def _classification_input(
        self, request: GenerationRequest, prior: PriorResults
    ) -> ClassificationInput:
        return ClassificationInput(
            narrative_content=self._narrative_of(prior).content,
            narrative_entry_id=_narration_entry_id(request),
            user_action_content=request.user_action.content,
            world_state=request.world_state,
            story=request.story,
            visible_entries=tuple(request.visible_entries),
            cancel_token=request.cancel_token,
        )

    def _translation_input(
        self, request: GenerationRequest, prior: PriorResults
    ) -> TranslationInput:
        pre: PreGenerationResult | None = prior.get(GenerationPhase.PRE)
        classification: ClassificationPhaseResult | None = prior.get(
            GenerationPhase.CLASSIFICATION
        )
        classified = classification.classification if classification else None
        return TranslationInput(
            narrative_content=self._narrative_of(prior).content,
            narrative_entry_id=_narration_entry_id(request),
            is_visual_prose=pre.visual_prose_mode if pre else False,
            translation_settings=request.translation_settings,
            cancel_token=request.cancel_token,
            entry_updates=classified.entry_updates if classified else None,
        )

    def _image_input(self, request: GenerationRequest, prior: PriorResults) -> ImageInput:
        classification: ClassificationPhaseResult | None = prior.get(
            GenerationPhase.CLASSIFICATION
        )
        translation: TranslationPhaseResult | None = prior.get(GenerationPhase.TRANSLATION)
        retrieval: RetrievalResult | None = prior.get(GenerationPhase.RETRIEVAL)

        present_names: set[str] = set()
        if classification is not None and classification.classification is not None:
            present_names = set(classification.classification.scene.present_character_names)
        world = request.world_state

        context = ImageGenerationContext(
            story_id=request.story.id,
            entry_id=_narration_entry_id(request),
            narrative_response=self._narrative_of(prior).content,
            user_action=request.user_action.content,
            present_characters=tuple(c for c in world.characters if c.name in present_names),
            current_location=world.current_location.name if world.current_location else None,
            translated_narrative=translation.translated_content if translation else None,
            translation_language=translation.target_language if translation else None,
            reference_mode=request.image_settings.reference_mode,
            lorebook_context=retrieval.lorebook_context if retrieval else None,
        )
        return ImageInput(
            context=context,
            image_settings=request.image_settings,
            cancel_token=request.cancel_token,
        )

    def _post_input(self, request: GenerationRequest, prior: PriorResults) -> PostGenerationInput:
        return PostGenerationInput(
            is_creative_mode=request.is_creative_mode,
            disable_suggestions=request.disable_suggestions,
            entries=tuple(request.visible_entries),
            active_threads=tuple(request.active_threads),
            lorebook_entries=tuple(request.world_state.lorebook_entries),
            prompt_context=request.prompt_context,
            world_state=request.world_state,
            narrative_response=self._narrative_of(prior).content,
            pov=request.pov,
            translation_settings=request.translation_settings,
            cancel_token=request.cancel_token,
        )


def _narration_entry_id(request: GenerationRequest) -> str:
    """Id of the narration entry this run produces, falling back to the action's id."""
    return request.narration_entry_id or request.user_action.entry_id
