"""Cooperative cancellation for generation requests.

A ``CancellationSource`` is owned by whoever starts a generation (usually
the UI). It hands out a read-only ``CancellationToken`` that phases and
services poll at their suspension points. Cancelling is thread-safe: the UI
thread may cancel while the pipeline runs on an asyncio event loop.

Usage:
    source = CancellationSource()
    request = GenerationRequest(..., cancel_token=source.token)
    ...
    source.cancel("user pressed stop")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable

from src.utils.exceptions import GenerationCancelledError

logger = logging.getLogger(__name__)


class CancellationSource:
    """Owner side of a cancellation signal.

    Only the source can signal; tokens derived from it can only observe.
    """

    def __init__(self) -> None:
        """Create an unsignaled source."""
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []
        self._reason: str | None = None
        self._token = CancellationToken(self)

    @property
    def token(self) -> CancellationToken:
        """The read-only token observing this source."""
        return self._token

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation. Idempotent; the first reason wins.

        Args:
            reason: Optional human-readable reason, kept for logging.
        """
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            waiters = list(self._waiters)

        logger.info("Cancellation requested%s", f": {reason}" if reason else "")
        for loop, event in waiters:
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError:
                # Loop already closed; nothing is waiting on it anymore
                logger.debug("Skipping cancellation wake-up for closed event loop")

    def _register(self, loop: asyncio.AbstractEventLoop, event: asyncio.Event) -> bool:
        """Register an asyncio waiter. Returns False if already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._waiters.append((loop, event))
            return True

    def _unregister(self, loop: asyncio.AbstractEventLoop, event: asyncio.Event) -> None:
        with self._lock:
            try:
                self._waiters.remove((loop, event))
            except ValueError:
                pass


class CancellationToken:
    """Read-only view of a CancellationSource.

    Phases never mutate a token; they only check ``cancelled`` or await
    ``wait()``.
    """

    __slots__ = ("_source",)

    def __init__(self, source: CancellationSource) -> None:
        """Bind the token to its source. Use ``CancellationSource().token``."""
        self._source = source

    @classmethod
    def none(cls) -> CancellationToken:
        """Return a token that is never signaled."""
        return CancellationSource().token

    @property
    def cancelled(self) -> bool:
        """Whether the owning source has been cancelled."""
        return self._source._event.is_set()

    @property
    def reason(self) -> str | None:
        """Reason passed to cancel(), if any."""
        return self._source._reason

    def raise_if_cancelled(self, operation: str | None = None) -> None:
        """Raise GenerationCancelledError if the token is signaled.

        Args:
            operation: Name of the operation being interrupted (for the error).
        """
        if self.cancelled:
            raise GenerationCancelledError(
                f"{operation or 'Operation'} cancelled", operation=operation
            )

    async def wait(self) -> None:
        """Suspend until the token is signaled."""
        if self.cancelled:
            return
        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        if not self._source._register(loop, event):
            return
        try:
            await event.wait()
        finally:
            self._source._unregister(loop, event)

    def __repr__(self) -> str:
        """Show signal state for debugging."""
        return f"CancellationToken(cancelled={self.cancelled})"


async def await_or_cancel[T](
    awaitable: Awaitable[T],
    token: CancellationToken,
    operation: str | None = None,
) -> T:
    """Await an operation, giving up as soon as the token is signaled.

    The operation runs as its own task and is raced against ``token.wait()``.
    If the token wins, the task is cancelled (best effort; the underlying
    I/O may keep running until it notices) and GenerationCancelledError is
    raised. If the operation finishes first its result or exception is
    returned as-is, even when the token was signaled in the same loop
    iteration; callers must re-check the token afterwards. An operation that
    ends cancelled on its own is reported as GenerationCancelledError.

    Args:
        awaitable: Coroutine or future to run.
        token: Cancellation token for the request.
        operation: Name used in logs and in the raised error.

    Returns:
        The operation's result.

    Raises:
        GenerationCancelledError: If the token was signaled first, or the
            operation was cancelled without the caller being cancelled.
    """
    if token.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled(operation)

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        if task.cancelled() and not _cancelling():
            # The operation cancelled itself; only our own cancellation propagates.
            logger.debug("Operation %s was cancelled internally", operation or "unnamed")
            raise GenerationCancelledError(
                f"{operation or 'Operation'} cancelled", operation=operation
            )
        return task.result()

    logger.debug("Cancelling in-flight operation: %s", operation or "unnamed")
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug("Cancelled operation %s raised while stopping: %s", operation, e)
    raise GenerationCancelledError(f"{operation or 'Operation'} cancelled", operation=operation)


def _cancelling() -> bool:
    """True if the running task has a pending cancellation request."""
    current = asyncio.current_task()
    return current is not None and current.cancelling() > 0
