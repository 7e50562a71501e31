"""
Cancellation / Timeout Fabric
=============================

Cooperative cancellation shared by every suspension point of the engine.

A token never kills in-flight work by itself. ``run_cancellable`` makes the
*awaiting* call settle early with ``Cancelled`` (or ``TimedOut``) while the
abandoned work is cancelled in the background and any result it still
produces is released through ``on_abandoned``.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Set, TypeVar

from .exceptions import Cancelled, TimedOut
from .observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Strong references to cleanup tasks spawned for abandoned work
_background_tasks: Set[asyncio.Future] = set()


class CancellationToken:
    """Read side of a cancellation signal."""

    def __init__(self, can_be_cancelled: bool = True):
        self._can_be_cancelled = can_be_cancelled
        self._cancelled = False
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], Any]] = []

    @classmethod
    def none(cls) -> "CancellationToken":
        """A token that never fires."""
        return cls(can_be_cancelled=False)

    @property
    def can_be_cancelled(self) -> bool:
        return self._can_be_cancelled

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled()

    async def wait(self) -> None:
        await self._event.wait()

    def add_callback(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (now, if already cancelled). Returns a remover."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def _cancel(self) -> None:
        if self._cancelled or not self._can_be_cancelled:
            return
        self._cancelled = True
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")


class CancellationTokenSource:
    """
    Write side of a cancellation signal.

    Args:
        parent: Optional token; when it fires this source fires too, so every
            descendant operation short-circuits.
    """

    def __init__(self, parent: Optional[CancellationToken] = None):
        self.token = CancellationToken()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._unlink = parent.add_callback(self.cancel) if parent is not None else None

    def cancel(self) -> None:
        self.token._cancel()

    def cancel_after(self, delay: float) -> None:
        """Cancel once ``delay`` seconds have elapsed on the running loop."""
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(delay, self.cancel)

    def dispose(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._unlink is not None:
            self._unlink()
            self._unlink = None


def _close_unstarted(awaitable: Awaitable) -> None:
    # Avoid "coroutine was never awaited" for work we refuse to start
    if asyncio.iscoroutine(awaitable):
        awaitable.close()


def _abandon(task: asyncio.Future, on_abandoned: Optional[Callable[[Any], Any]]) -> None:
    """Cancel abandoned work and release whatever it still manages to produce."""

    def _release(done: asyncio.Future):
        if done.cancelled():
            return
        exc = done.exception()
        if exc is not None:
            logger.debug(f"Abandoned operation failed during cleanup: {exc!r}")
            return
        if on_abandoned is None:
            return
        try:
            cleanup = on_abandoned(done.result())
        except Exception as e:
            logger.warning(f"Releasing abandoned result failed: {e}")
            return
        if asyncio.iscoroutine(cleanup):
            cleanup_task = asyncio.ensure_future(cleanup)
            _background_tasks.add(cleanup_task)
            cleanup_task.add_done_callback(_background_tasks.discard)

    task.add_done_callback(_release)
    task.cancel()


async def run_cancellable(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
    on_abandoned: Optional[Callable[[T], Any]] = None,
) -> T:
    """
    Await ``awaitable`` racing it against ``token`` and ``timeout``.

    The first of {result, cancellation, timeout} settles the call and the
    others become no-ops.

    Args:
        awaitable: The work to run
        token: Optional cooperative cancellation token
        timeout: Optional hard limit in seconds
        on_abandoned: Called with the work's result if it completes after the
            call already settled as cancelled/timed out (may return a coroutine)

    Raises:
        Cancelled: The token fired first
        TimedOut: The timeout elapsed first
    """
    if token is not None and token.is_cancelled:
        _close_unstarted(awaitable)
        raise Cancelled()

    task = asyncio.ensure_future(awaitable)
    cancellable = token is not None and token.can_be_cancelled
    if not cancellable and timeout is None:
        return await task

    waiter = asyncio.ensure_future(token.wait()) if cancellable else None
    pending = [task] if waiter is None else [task, waiter]
    try:
        done, _ = await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        _abandon(task, on_abandoned)
        raise
    finally:
        if waiter is not None:
            waiter.cancel()

    if task in done:
        return task.result()

    _abandon(task, on_abandoned)
    if waiter is not None and waiter in done:
        raise Cancelled()
    raise TimedOut(timeout)
