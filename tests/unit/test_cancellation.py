"""Tests for utils/cancellation.py."""

import asyncio
import threading

import pytest

from src.utils.cancellation import CancellationSource, CancellationToken, await_or_cancel
from src.utils.exceptions import GenerationCancelledError


class TestCancellationSource:
    """Tests for the owner side of the signal."""

    def test_starts_unsignaled(self):
        """A fresh source and its token are not cancelled."""
        source = CancellationSource()

        assert source.cancelled is False
        assert source.token.cancelled is False
        assert source.token.reason is None

    def test_cancel_is_visible_through_token(self):
        """Cancelling the source signals its token with the reason."""
        source = CancellationSource()

        source.cancel("user pressed stop")

        assert source.token.cancelled is True
        assert source.token.reason == "user pressed stop"

    def test_cancel_is_idempotent(self):
        """The first reason wins."""
        source = CancellationSource()

        source.cancel("first")
        source.cancel("second")

        assert source.token.reason == "first"

    def test_token_is_shared(self):
        """The same token object is handed out every time."""
        source = CancellationSource()

        assert source.token is source.token

    def test_none_token_never_cancels(self):
        """CancellationToken.none() is a standalone unsignaled token."""
        token = CancellationToken.none()

        assert token.cancelled is False
        token.raise_if_cancelled("noop")

    def test_token_has_no_cancel_method(self):
        """Tokens are read-only."""
        assert not hasattr(CancellationSource().token, "cancel")


class TestRaiseIfCancelled:
    """Tests for CancellationToken.raise_if_cancelled."""

    def test_raises_with_operation(self):
        """A signaled token raises GenerationCancelledError naming the operation."""
        source = CancellationSource()
        source.cancel()

        with pytest.raises(GenerationCancelledError, match="translate cancelled") as exc_info:
            source.token.raise_if_cancelled("translate")

        assert exc_info.value.operation == "translate"


class TestTokenWait:
    """Tests for awaiting a token."""

    @pytest.mark.asyncio
    async def test_wait_returns_when_cancelled(self):
        """wait() resumes once the source is cancelled."""
        source = CancellationSource()
        asyncio.get_running_loop().call_later(0.01, source.cancel)

        await asyncio.wait_for(source.token.wait(), timeout=5)

        assert source.token.cancelled

    @pytest.mark.asyncio
    async def test_wait_on_cancelled_token_returns_immediately(self):
        """An already-cancelled token does not suspend."""
        source = CancellationSource()
        source.cancel()

        await asyncio.wait_for(source.token.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_cancel_from_another_thread(self):
        """A cancel issued from another thread wakes the event loop."""
        source = CancellationSource()
        timer = threading.Timer(0.02, source.cancel, args=("from ui thread",))
        timer.start()
        try:
            await asyncio.wait_for(source.token.wait(), timeout=5)
        finally:
            timer.cancel()

        assert source.token.reason == "from ui thread"

    @pytest.mark.asyncio
    async def test_waiter_unregistered_after_wait(self):
        """Finished waits do not leave registrations behind."""
        source = CancellationSource()
        waiter = asyncio.ensure_future(source.token.wait())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert source._waiters == []


class TestAwaitOrCancel:
    """Tests for racing an operation against the token."""

    @pytest.mark.asyncio
    async def test_returns_result_when_not_cancelled(self):
        """A normal operation's result is passed through."""

        async def work() -> str:
            await asyncio.sleep(0)
            return "done"

        assert await await_or_cancel(work(), CancellationToken.none(), "work") == "done"

    @pytest.mark.asyncio
    async def test_propagates_operation_error(self):
        """Failures of the operation are raised unchanged."""

        async def work():
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            await await_or_cancel(work(), CancellationToken.none())

    @pytest.mark.asyncio
    async def test_operation_cancelled_internally(self):
        """An operation that cancels itself is reported as a cancelled generation."""

        async def work():
            raise asyncio.CancelledError

        with pytest.raises(GenerationCancelledError) as exc_info:
            await await_or_cancel(work(), CancellationToken.none(), "work")

        assert exc_info.value.operation == "work"

    @pytest.mark.asyncio
    async def test_already_cancelled_never_starts_operation(self):
        """A signaled token raises before the coroutine runs."""
        source = CancellationSource()
        source.cancel()
        started = False

        async def work():
            nonlocal started
            started = True

        with pytest.raises(GenerationCancelledError):
            await await_or_cancel(work(), source.token, "work")

        assert started is False

    @pytest.mark.asyncio
    async def test_cancel_during_slow_operation(self):
        """Cancelling mid-flight stops waiting and cancels the operation's task."""
        source = CancellationSource()
        stopped = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                stopped.set()
                raise

        asyncio.get_running_loop().call_later(0.01, source.cancel, "stop")

        with pytest.raises(GenerationCancelledError) as exc_info:
            await asyncio.wait_for(await_or_cancel(slow(), source.token, "slow"), timeout=5)

        assert exc_info.value.operation == "slow"
        assert stopped.is_set()

    @pytest.mark.asyncio
    async def test_outer_cancellation_cancels_operation(self):
        """Cancelling the awaiting task also cancels the operation."""
        stopped = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                stopped.set()
                raise

        task = asyncio.ensure_future(await_or_cancel(slow(), CancellationToken.none()))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.01)
        assert stopped.is_set()
