"""
Tests for cancellation tokens and run_cancellable.
"""

import asyncio

import pytest

from notebook_engine.cancellation import CancellationToken, CancellationTokenSource, run_cancellable
from notebook_engine.exceptions import Cancelled, TimedOut


class TestTokens:

    def test_none_token_never_fires(self):
        token = CancellationToken.none()
        token._cancel()
        assert not token.is_cancelled
        assert not token.can_be_cancelled

    def test_callbacks_run_once_on_cancel(self):
        source = CancellationTokenSource()
        calls = []
        source.token.add_callback(lambda: calls.append(1))

        source.cancel()
        source.cancel()

        assert calls == [1]
        with pytest.raises(Cancelled):
            source.token.raise_if_cancelled()

    def test_callback_added_after_cancel_runs_immediately(self):
        source = CancellationTokenSource()
        source.cancel()
        calls = []
        source.token.add_callback(lambda: calls.append(1))
        assert calls == [1]

    def test_removed_callback_does_not_run(self):
        source = CancellationTokenSource()
        calls = []
        remove = source.token.add_callback(lambda: calls.append(1))
        remove()
        source.cancel()
        assert calls == []

    def test_linked_source_follows_parent(self):
        """Cancelling the parent short-circuits descendants."""
        parent = CancellationTokenSource()
        child = CancellationTokenSource(parent=parent.token)

        parent.cancel()

        assert child.token.is_cancelled

    def test_disposed_child_is_unlinked(self):
        parent = CancellationTokenSource()
        child = CancellationTokenSource(parent=parent.token)
        child.dispose()

        parent.cancel()

        assert not child.token.is_cancelled

    async def test_cancel_after(self):
        source = CancellationTokenSource()
        source.cancel_after(0.01)
        await asyncio.wait_for(source.token.wait(), 1)
        assert source.token.is_cancelled


class TestRunCancellable:

    async def test_result_wins(self):
        async def work():
            return 42

        assert await run_cancellable(work(), CancellationTokenSource().token, timeout=1) == 42

    async def test_without_token_or_timeout_just_awaits(self):
        async def work():
            await asyncio.sleep(0)
            return "done"

        assert await run_cancellable(work()) == "done"

    async def test_already_cancelled_token_never_starts_work(self):
        started = []

        async def work():
            started.append(True)

        source = CancellationTokenSource()
        source.cancel()

        with pytest.raises(Cancelled):
            await run_cancellable(work(), source.token)
        assert started == []

    async def test_cancellation_settles_early_and_cancels_work(self):
        source = CancellationTokenSource()
        cancelled = asyncio.Event()

        async def work():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        asyncio.get_running_loop().call_later(0.01, source.cancel)
        with pytest.raises(Cancelled) as exc_info:
            await run_cancellable(work(), source.token)

        assert not isinstance(exc_info.value, TimedOut)
        await asyncio.wait_for(cancelled.wait(), 1)

    async def test_timeout_raises_timed_out(self):
        async def work():
            await asyncio.sleep(10)

        with pytest.raises(TimedOut) as exc_info:
            await run_cancellable(work(), timeout=0.01)
        assert exc_info.value.timeout == 0.01

    async def test_timed_out_is_a_cancellation(self):
        assert issubclass(TimedOut, Cancelled)

    async def test_late_result_is_released(self):
        """Work that finishes despite being abandoned hands its result to on_abandoned."""
        source = CancellationTokenSource()
        released = asyncio.Event()
        results = []

        async def stubborn():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                pass
            return "resource"

        async def release(value):
            results.append(value)
            released.set()

        asyncio.get_running_loop().call_later(0.01, source.cancel)
        with pytest.raises(Cancelled):
            await run_cancellable(stubborn(), source.token, on_abandoned=release)

        await asyncio.wait_for(released.wait(), 1)
        assert results == ["resource"]

    async def test_outer_task_cancellation_propagates(self):
        async def work():
            await asyncio.sleep(10)

        task = asyncio.create_task(run_cancellable(work(), CancellationTokenSource().token))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
