"""Tests for GenerationPipeline."""

import asyncio
from collections.abc import AsyncGenerator

import pytest

from src.memory.generation_schemas import (
    ClassificationResult,
    EntryUpdates,
    NewLocation,
    Scene,
)
from src.memory.generation_settings import ImageSettings, TranslationSettings
from src.services.generation import (
    ClassificationPhaseResult,
    ErrorEvent,
    GenerationEvent,
    GenerationPhase,
    GenerationPipeline,
    PipelineResult,
    PipelineStep,
    TranslationPhaseResult,
)
from src.services.generation.phases import Phase
from src.utils.exceptions import PipelineError
from src.utils.streaming import StreamChunk
from tests.shared.generation_fakes import block_until_cancelled, collect, event_types

ALL_PHASES = tuple(GenerationPhase)

HAPPY_PATH = [
    "phase_start",  # pre
    "phase_complete",
    "phase_start",  # retrieval
    "phase_complete",
    "phase_start",  # narrative
    "narrative_chunk",
    "narrative_chunk",
    "phase_complete",
    "phase_start",  # background
    "phase_complete",
    "phase_start",  # classification
    "classification_complete",
    "phase_complete",
    "phase_start",  # translation
    "phase_complete",
    "phase_start",  # image
    "phase_complete",
    "phase_start",  # post
    "phase_complete",
]


def _phases_with_events(events: list[GenerationEvent]) -> list[GenerationPhase]:
    seen: list[GenerationPhase] = []
    for event in events:
        phase = getattr(event, "phase", None)
        if phase is not None and phase not in seen:
            seen.append(phase)
    return seen


class _ScriptedPhase(Phase[None, str]):
    """A phase whose behavior is set per test."""

    phase = GenerationPhase.PRE

    def __init__(self, phase: GenerationPhase, behavior: str, on_run=None) -> None:
        super().__init__()
        self.phase = phase
        self.behavior = behavior
        self.on_run = on_run

    def fallback_result(self, phase_input: None) -> str:
        return "fallback"

    async def _run(self, phase_input: None) -> AsyncGenerator[GenerationEvent]:
        yield self._start()
        if self.on_run is not None:
            self.on_run()
        if self.behavior == "raise":
            raise RuntimeError("kaboom")
        if self.behavior == "cancel":
            raise asyncio.CancelledError
        if self.behavior == "silent":
            return
        yield self._complete(f"{self.phase}-done")


def _step(phase: GenerationPhase, behavior: str = "complete", on_run=None) -> PipelineStep:
    return PipelineStep(_ScriptedPhase(phase, behavior, on_run), lambda request, prior: None)


class TestPipelineHappyPath:
    """A full run with every dependency working."""

    @pytest.mark.asyncio
    async def test_runs_every_phase_in_order(self, deps, make_request):
        """All eight phases run in the declared order."""
        run = GenerationPipeline(deps).run(make_request())

        events = await collect(run)

        assert event_types(events) == HAPPY_PATH
        assert _phases_with_events(events) == list(ALL_PHASES)

    @pytest.mark.asyncio
    async def test_aggregate_result(self, deps, make_request):
        """Every phase contributes its result to the aggregate."""
        run = GenerationPipeline(deps).run(make_request())
        await collect(run)

        result = run.result
        assert isinstance(result, PipelineResult)
        assert result.executed_phases == ALL_PHASES
        assert result.incomplete is False
        assert result.narrative.content == "The gate groans and swings inward."
        assert result.translation == TranslationPhaseResult.fallback()
        assert result.image.skipped_reason == "disabled"
        assert result.background.skipped_reason == "disabled"
        assert result.classification.classification.scene.present_character_names == ["Bram"]
        assert len(result.post_generation.action_choices) == 2
        assert result.pre_generation.retry_backup.story_id == "story-1"

    @pytest.mark.asyncio
    async def test_creative_mode_gets_suggestions(self, deps, make_request):
        """Creative-writing requests end with suggestions instead of choices."""
        run = GenerationPipeline(deps).run(make_request(story_mode="creative-writing"))
        await collect(run)

        assert run.result.post_generation.suggestions[0].text == "A stranger arrives"
        assert run.result.post_generation.action_choices is None

    @pytest.mark.asyncio
    async def test_later_phases_see_earlier_results(self, deps, make_request):
        """Translation and classification feed into the image context."""
        request = make_request(
            narration_entry_id="n1",
            translation_settings=TranslationSettings(enabled=True, target_language="fr"),
            image_settings=ImageSettings(image_generation_mode="agentic"),
        )
        run = GenerationPipeline(deps).run(request)
        await collect(run)

        context = deps.generate_images_for_narrative.await_args.args[0]
        assert context.entry_id == "n1"
        assert context.narrative_response == "The gate groans and swings inward."
        assert context.translated_narrative == "La porte s'ouvre."
        assert context.translation_language == "fr"
        assert [c.name for c in context.present_characters] == ["Bram"]
        assert context.current_location == "Keep Gate"
        deps.translate_narration.assert_awaited_once_with(
            "The gate groans and swings inward.", "fr", False
        )

    @pytest.mark.asyncio
    async def test_new_entities_reach_translation(self, deps, make_request):
        """The classifier's new entities are handed to world-state translation."""
        updates = EntryUpdates(new_locations=[NewLocation(name="Drowned Chapel")])
        deps.classify_response.return_value = ClassificationResult(entry_updates=updates)
        request = make_request(
            translation_settings=TranslationSettings(
                enabled=True, target_language="fr", translate_world_state=True
            ),
        )
        run = GenerationPipeline(deps).run(request)
        await collect(run)

        deps.translate_world_state.assert_awaited_once_with(updates, "fr")
        assert run.result.translation.translated is True

    @pytest.mark.asyncio
    async def test_same_request_reproduces_event_types(self, deps, make_request):
        """Running the same request twice yields the same event type sequence."""
        pipeline = GenerationPipeline(deps)
        request = make_request()

        first = await collect(pipeline.run(request))
        second = await collect(pipeline.run(request))

        assert event_types(first) == event_types(second)

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_independent(self, deps, make_request, cancel_source):
        """Cancelling one request leaves another running on the same pipeline."""
        from src.utils.cancellation import CancellationSource

        pipeline = GenerationPipeline(deps)
        other = CancellationSource()
        cancel_source.cancel()

        cancelled_run = pipeline.run(make_request())
        live_run = pipeline.run(make_request(cancel_token=other.token))
        await asyncio.gather(collect(cancelled_run), collect(live_run))

        assert cancelled_run.result.aborted is True
        assert live_run.result.incomplete is False


class TestPipelineHalting:
    """Fatal errors and cancellation stop the run."""

    @pytest.mark.asyncio
    async def test_non_fatal_error_continues(self, deps, make_request):
        """A failing enrichment phase does not stop later phases."""
        deps.classify_response.side_effect = RuntimeError("classifier down")
        run = GenerationPipeline(deps).run(make_request())

        events = await collect(run)

        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert [(e.phase, e.fatal) for e in errors] == [(GenerationPhase.CLASSIFICATION, False)]
        assert run.result.classification == ClassificationPhaseResult.fallback("e2")
        assert run.result.post_generation is not None
        assert run.result.incomplete is False

    @pytest.mark.asyncio
    async def test_fatal_error_halts(self, deps, make_request):
        """A fatal narrative error stops the run; later phases emit nothing."""
        deps.narrative_attempts = [[RuntimeError("model crashed")]]
        run = GenerationPipeline(deps).run(make_request())

        events = await collect(run)

        assert events[-1].event_type == "error"
        assert events[-1].fatal is True
        assert _phases_with_events(events) == [
            GenerationPhase.PRE,
            GenerationPhase.RETRIEVAL,
            GenerationPhase.NARRATIVE,
        ]
        result = run.result
        assert result.incomplete is True
        assert str(result.fatal_error) == "model crashed"
        assert result.aborted is False
        deps.classify_response.assert_not_called()

    @pytest.mark.asyncio
    async def test_absent_phase_differs_from_noop(self, deps, make_request):
        """Phases that never started are None; started no-op phases are not."""
        deps.narrative_attempts = [[RuntimeError("model crashed")]]
        run = GenerationPipeline(deps).run(make_request())
        await collect(run)

        result = run.result
        assert result.ran(GenerationPhase.RETRIEVAL)
        assert result.retrieval is not None
        assert result.ran(GenerationPhase.NARRATIVE)
        assert result.narrative is None
        assert not result.ran(GenerationPhase.TRANSLATION)
        assert result.translation is None
        assert result.post_generation is None

    @pytest.mark.asyncio
    async def test_cancelled_before_run(self, deps, make_request, cancel_source):
        """A pre-cancelled request aborts in the first phase."""
        cancel_source.cancel()
        run = GenerationPipeline(deps).run(make_request())

        events = await collect(run)

        assert event_types(events) == ["phase_start", "aborted"]
        assert run.result.executed_phases == (GenerationPhase.PRE,)
        assert run.result.aborted is True
        assert run.result.pre_generation is None

    @pytest.mark.asyncio
    async def test_cancelled_mid_phase_halts(self, deps, make_request, cancel_source):
        """Cancelling during classification stops the run with its fallback kept."""
        async def block_and_cancel(*_args):
            asyncio.get_running_loop().call_later(0.01, cancel_source.cancel)
            await block_until_cancelled()

        deps.classify_response.side_effect = block_and_cancel
        run = GenerationPipeline(deps).run(make_request())

        events = await asyncio.wait_for(collect(run), timeout=5)

        assert events[-1].event_type == "aborted"
        assert events[-1].phase == GenerationPhase.CLASSIFICATION
        assert run.result.aborted is True
        assert run.result.classification == ClassificationPhaseResult.fallback("e2")
        assert run.result.translation is None
        deps.translate_narration.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_between_phases(self, deps, make_request, cancel_source):
        """A cancel observed between phases prevents the next phase from starting."""
        steps = [
            _step(GenerationPhase.PRE, on_run=cancel_source.cancel),
            _step(GenerationPhase.RETRIEVAL),
        ]
        run = GenerationPipeline(deps, steps=steps).run(make_request())

        events = await collect(run)

        assert event_types(events) == ["phase_start", "phase_complete"]
        assert run.result.executed_phases == (GenerationPhase.PRE,)
        assert run.result.aborted is True

    @pytest.mark.asyncio
    async def test_result_after_cancellation_is_discarded(self, deps, make_request, cancel_source):
        """A result arriving after cancellation is discarded, not applied."""

        async def classify_then_cancel(*_args):
            cancel_source.cancel()
            return ClassificationResult(scene=Scene(current_location_name="Throne Room"))

        deps.classify_response.side_effect = classify_then_cancel
        run = GenerationPipeline(deps).run(make_request())

        events = await collect(run)

        assert "classification_complete" not in event_types(events)
        assert run.result.classification.classification is None


class TestPipelineRobustness:
    """The pipeline never raises on a phase's behalf."""

    @pytest.mark.asyncio
    async def test_escaped_exception_becomes_fatal_error(self, deps, make_request):
        """An exception leaking out of a phase is reported as a fatal error."""
        steps = [_step(GenerationPhase.PRE, "raise"), _step(GenerationPhase.RETRIEVAL)]
        run = GenerationPipeline(deps, steps=steps).run(make_request())

        events = await collect(run)

        assert event_types(events) == ["phase_start", "error"]
        assert events[-1].fatal is True
        assert str(events[-1].error) == "kaboom"
        assert run.result.executed_phases == (GenerationPhase.PRE,)
        assert run.result.pre_generation == "fallback"

    @pytest.mark.asyncio
    async def test_fatal_phase_keeps_fallback(self, deps, make_request):
        """A later phase that fails fatally still contributes its fallback."""
        steps = [_step(GenerationPhase.PRE), _step(GenerationPhase.TRANSLATION, "raise")]
        run = GenerationPipeline(deps, steps=steps).run(make_request())

        await collect(run)

        result = run.result
        assert result.pre_generation == "pre-done"
        assert result.translation == "fallback"
        assert str(result.fatal_error) == "kaboom"

    @pytest.mark.asyncio
    async def test_internal_cancellation_becomes_aborted(self, deps, make_request):
        """A phase ending in asyncio cancellation aborts the run instead of raising."""
        steps = [_step(GenerationPhase.PRE, "cancel"), _step(GenerationPhase.RETRIEVAL)]
        run = GenerationPipeline(deps, steps=steps).run(make_request())

        events = await collect(run)

        assert event_types(events) == ["phase_start", "aborted"]
        assert run.result.aborted is True
        assert run.result.pre_generation == "fallback"
        assert run.result.executed_phases == (GenerationPhase.PRE,)

    @pytest.mark.asyncio
    async def test_missing_terminal_event_is_synthesized(self, deps, make_request, caplog):
        """A phase that ends without completing gets its fallback result."""
        steps = [_step(GenerationPhase.PRE, "silent"), _step(GenerationPhase.RETRIEVAL)]
        run = GenerationPipeline(deps, steps=steps).run(make_request())

        with caplog.at_level("WARNING"):
            events = await collect(run)

        assert event_types(events) == [
            "phase_start",
            "phase_complete",
            "phase_start",
            "phase_complete",
        ]
        assert events[1].result == "fallback"
        assert run.result.pre_generation == "fallback"
        assert run.result.retrieval == "retrieval-done"
        assert "ended without a terminal event" in caplog.text

    @pytest.mark.asyncio
    async def test_input_builder_failure_is_fatal(self, deps, make_request):
        """A phase whose input cannot be built never starts."""

        def broken(request, prior):
            raise KeyError("narrative")

        steps = [PipelineStep(_ScriptedPhase(GenerationPhase.PRE, "complete"), broken)]
        run = GenerationPipeline(deps, steps=steps).run(make_request())

        events = await collect(run)

        assert event_types(events) == ["error"]
        assert events[0].fatal is True
        assert run.result.executed_phases == ()
        assert run.result.pre_generation is None
        assert run.result.fatal_error is events[0].error

    @pytest.mark.asyncio
    async def test_prior_results_are_read_only(self, deps, make_request):
        """Input builders receive an immutable view of earlier results."""
        seen = {}

        def capture(request, prior):
            seen["prior"] = prior
            with pytest.raises(TypeError):
                prior[GenerationPhase.POST] = "tampered"

        steps = [
            _step(GenerationPhase.PRE),
            PipelineStep(_ScriptedPhase(GenerationPhase.RETRIEVAL, "complete"), capture),
        ]
        run = GenerationPipeline(deps, steps=steps).run(make_request())
        await collect(run)

        assert dict(seen["prior"]) == {GenerationPhase.PRE: "pre-done"}


class TestPipelineRun:
    """Tests for the PipelineRun wrapper."""

    @pytest.mark.asyncio
    async def test_result_before_completion_raises(self, deps, make_request):
        """Reading the result before the stream ends is an error."""
        run = GenerationPipeline(deps).run(make_request())

        with pytest.raises(PipelineError, match="before its events finished"):
            _ = run.result

        await anext(run)
        with pytest.raises(PipelineError):
            _ = run.result
        await run.aclose()

    @pytest.mark.asyncio
    async def test_aclose_marks_run_aborted(self, deps, make_request):
        """Closing a run early keeps the phases seen so far and marks it aborted."""
        run = GenerationPipeline(deps).run(make_request())
        events = [await anext(run) for _ in range(3)]

        await run.aclose()

        assert event_types(events) == ["phase_start", "phase_complete", "phase_start"]
        assert run.result.executed_phases == (GenerationPhase.PRE, GenerationPhase.RETRIEVAL)
        assert run.result.aborted is True
        assert run.result.pre_generation is not None
        assert run.result.retrieval is None
        with pytest.raises(StopAsyncIteration):
            await anext(run)

    @pytest.mark.asyncio
    async def test_exhausted_run_stays_exhausted(self, deps, make_request):
        """A finished run cannot be iterated again."""
        run = GenerationPipeline(deps).run(make_request())
        await collect(run)

        assert await collect(run) == []

    @pytest.mark.asyncio
    async def test_empty_narration_fails_run(self, deps, make_request):
        """Empty narration on every attempt ends the run with a fatal error."""
        deps.narrative_attempts = [[StreamChunk(content="", done=True)]]
        run = GenerationPipeline(deps, narrative_max_attempts=2).run(make_request())

        await collect(run)

        assert len(deps.stream_calls) == 2
        assert run.result.fatal_error is not None
        assert run.result.background is None
