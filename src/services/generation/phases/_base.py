"""Base class and helpers shared by all generation phases."""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from typing import ClassVar

from src.services.generation._events import (
    AbortedEvent,
    ErrorEvent,
    GenerationEvent,
    GenerationPhase,
    PhaseCompleteEvent,
    PhaseStartEvent,
)
from src.utils.cancellation import CancellationToken, await_or_cancel
from src.utils.exceptions import PipelineError, summarize_llm_error

logger = logging.getLogger(__name__)


class PhaseExecution[R]:
    """One invocation of a phase: an async iterator of events plus a result.

    Iterate it to completion, then read ``result``. A fresh execution is
    created for every ``Phase.execute()`` call; it cannot be restarted.

    ``result`` is the ``PhaseCompleteEvent`` payload when the phase completed,
    the phase's fallback when it was aborted, and None after a fatal error.
    """

    def __init__(
        self,
        phase: GenerationPhase,
        events: AsyncGenerator[GenerationEvent],
        fallback: Callable[[], R | None],
    ) -> None:
        """Wrap a phase's event generator.

        Args:
            phase: Phase this execution belongs to.
            events: The phase's running event generator.
            fallback: Builds the result to report when the phase is aborted.
        """
        self.phase = phase
        self._events = events
        self._fallback = fallback
        self._terminal: GenerationEvent | None = None
        self._result: R | None = None
        self._finished = False

    def __aiter__(self) -> AsyncIterator[GenerationEvent]:
        return self

    async def __anext__(self) -> GenerationEvent:
        if self._finished:
            raise StopAsyncIteration
        try:
            event = await anext(self._events)
        except StopAsyncIteration:
            self._finished = True
            raise

        if isinstance(event, PhaseCompleteEvent):
            self._terminal = event
            self._result = event.result
        elif isinstance(event, AbortedEvent):
            self._terminal = event
            self._result = self._fallback()
        elif isinstance(event, ErrorEvent) and event.fatal:
            self._terminal = event
            self._result = None
        return event

    async def aclose(self) -> None:
        """Stop the phase early and release its generator."""
        self._finished = True
        await self._events.aclose()

    @property
    def finished(self) -> bool:
        """True once the event stream is exhausted or closed."""
        return self._finished

    @property
    def terminal_event(self) -> GenerationEvent | None:
        """The event that ended the phase, if any was emitted."""
        return self._terminal

    @property
    def result(self) -> R | None:
        """Typed result of the phase.

        Raises:
            PipelineError: If the event stream has not been consumed yet.
        """
        if not self._finished:
            raise PipelineError(f"Phase '{self.phase}' result read before its events finished")
        return self._result


class Phase[InputT, ResultT](ABC):
    """A self-contained generation step.

    Subclasses set ``phase`` and implement ``_run`` as an async generator
    following the phase contract:

    1. yield ``self._start()`` before anything that can suspend;
    2. short-circuit with ``self._complete(no_op_result)`` when disabled;
    3. yield ``self._aborted()`` if the token is already signaled;
    4. call dependencies through ``self._call()`` so the token is raced
       and re-checked after the call settles;
    5. yield ``self._complete(result)`` on success;
    6. on ``GenerationCancelledError`` yield ``self._aborted()``, on any
       other failure yield ``self._error(e)`` then the fallback result.

    Phases hold no per-request state, so one instance may serve many
    concurrent requests.
    """

    phase: ClassVar[GenerationPhase]

    def __init__(self, dependencies: object | None = None) -> None:
        """Create the phase with its dependency bundle.

        Args:
            dependencies: Operations the phase calls. Phases without I/O
                take none.
        """
        self._deps = dependencies

    @property
    def name(self) -> str:
        """Phase name as it appears in events."""
        return str(self.phase)

    def execute(self, phase_input: InputT) -> PhaseExecution[ResultT]:
        """Start the phase over *phase_input*.

        Nothing runs until the returned execution is iterated.
        """
        return PhaseExecution(
            self.phase,
            self._run(phase_input),
            lambda: self.fallback_result(phase_input),
        )

    @abstractmethod
    def _run(self, phase_input: InputT) -> AsyncGenerator[GenerationEvent]:
        """Yield the phase's events. Implemented as an async generator."""

    def fallback_result(self, phase_input: InputT) -> ResultT | None:
        """Result used for the aborted and degraded outcomes.

        Phases whose failures are fatal keep the default of None.
        """
        return None

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _start(self) -> PhaseStartEvent:
        logger.debug("Phase %s started", self.phase)
        return PhaseStartEvent(phase=self.phase)

    def _complete(self, result: ResultT) -> PhaseCompleteEvent:
        return PhaseCompleteEvent(phase=self.phase, result=result)

    def _aborted(self) -> AbortedEvent:
        logger.info("Phase %s aborted", self.phase)
        return AbortedEvent(phase=self.phase)

    def _error(self, error: BaseException, *, fatal: bool = False) -> ErrorEvent:
        if fatal:
            logger.error("Phase %s failed: %s", self.phase, summarize_llm_error(error))
        else:
            logger.warning(
                "Phase %s failed (non-fatal): %s", self.phase, summarize_llm_error(error)
            )
        return ErrorEvent(phase=self.phase, error=error, fatal=fatal)

    async def _call[T](
        self, awaitable: Awaitable[T], token: CancellationToken, operation: str
    ) -> T:
        """Await a dependency call, honoring the cancellation token.

        Raises GenerationCancelledError if the token is signaled before the
        call, while it is in flight, or by the time it settles. In the last
        case the call's output is discarded.
        """
        label = f"{self.phase}.{operation}"
        result = await await_or_cancel(awaitable, token, label)
        token.raise_if_cancelled(label)
        return result
