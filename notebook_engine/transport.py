"""
Session Transport
=================

Routes messages between one ``AsyncKernelClient`` and the requests that
produced them.

Every request gets its own unbounded queue, registered *before* the request
is sent, so push messages are never buffered for an unknown parent and never
delivered to another request's subscriber. Messages whose parent is not a
live request (stale outputs from a previous kernel incarnation, or from a
request whose subscriber already left) are dropped.

Two listener tasks run per transport:
- iopub: status changes and outputs, fanned out by ``parent_header.msg_id``
- shell: replies, resolved onto the matching request's reply future
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from .exceptions import Disconnected, TransportError
from .observability import get_logger

logger = get_logger(__name__)

_END = object()


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: Exception):
        self.error = error


def _parent_id(msg: Dict[str, Any]) -> Optional[str]:
    parent = msg.get("parent_header") or {}
    return parent.get("msg_id")


def _consume_exception(future: asyncio.Future) -> None:
    # Mark a failed reply as retrieved when nobody ends up awaiting it
    if not future.cancelled():
        future.exception()


class Subscription:
    """
    Push messages and the reply for one request id.

    Iterating yields iopub messages in kernel emission order. Iteration ends
    after ``close()`` or raises the error passed to ``terminate()`` once the
    messages queued before it have been drained.
    """

    def __init__(self, transport: "KernelTransport", msg_id: str):
        self.msg_id = msg_id
        self._transport = transport
        self._queue: asyncio.Queue = asyncio.Queue()
        self._reply: asyncio.Future = asyncio.get_running_loop().create_future()
        self._reply.add_done_callback(_consume_exception)
        # Set once the reply resolves or fails; independent of iteration
        self.settled = asyncio.Event()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def _push(self, msg: Dict[str, Any]) -> None:
        if not self._finished:
            self._queue.put_nowait(msg)

    def _resolve(self, msg: Dict[str, Any]) -> None:
        if not self._reply.done():
            self._reply.set_result(msg)
        self.settled.set()

    def _fail_reply(self, error: Exception) -> None:
        if not self._reply.done():
            self._reply.set_exception(error)
        self.settled.set()

    def terminate(self, error: Exception) -> None:
        """End the stream with ``error``; a pending reply fails with it too."""
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(_Failure(error))
        self._fail_reply(error)

    def close(self) -> None:
        """Stop routing to this subscription and end its iteration."""
        self._transport._unregister(self.msg_id)
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(_END)
        self._fail_reply(Disconnected("Subscription closed before the reply arrived"))

    async def reply(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """The shell reply for this request."""
        if timeout is None:
            return await asyncio.shield(self._reply)
        return await asyncio.wait_for(asyncio.shield(self._reply), timeout)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        item = await self._queue.get()
        if item is _END:
            # Keep ending on repeated iteration
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._queue.put_nowait(item)
            raise item.error
        return item


class KernelTransport:
    """
    Request/reply plus push-message demultiplexing over one kernel client.

    Args:
        client: A started-or-startable ``AsyncKernelClient``
        max_errors: Consecutive listener failures before the transport
            gives up and closes itself
        backoff_base: Seconds of the first listener retry delay; doubles per
            consecutive failure
    """

    def __init__(self, client, max_errors: int = 5, backoff_base: float = 1.0):
        self.client = client
        self.max_errors = max_errors
        self.backoff_base = backoff_base
        self._subscriptions: Dict[str, Subscription] = {}
        self._status_callbacks: List[Callable[[Dict[str, Any]], Any]] = []
        self._close_callbacks: List[Callable[[Exception], Any]] = []
        self._tasks: List[asyncio.Task] = []
        self._closed = False
        self._error: Optional[Exception] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._subscriptions)

    def start(self) -> None:
        """Start the iopub and shell listener tasks."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._listen("iopub", self.client.get_iopub_msg, self._route_iopub)),
            asyncio.create_task(self._listen("shell", self.client.get_shell_msg, self._route_shell)),
        ]

    def on_status(self, callback: Callable[[Dict[str, Any]], Any]) -> Callable[[], None]:
        """Deliver every iopub ``status`` message to ``callback``. Returns a remover."""
        self._status_callbacks.append(callback)

        def remove():
            if callback in self._status_callbacks:
                self._status_callbacks.remove(callback)

        return remove

    def on_closed(self, callback: Callable[[Exception], Any]) -> None:
        """Called once with the closing error when the transport shuts down."""
        self._close_callbacks.append(callback)

    def _ensure_open(self) -> None:
        if self._closed:
            if isinstance(self._error, Disconnected):
                raise Disconnected()
            raise Disconnected(f"Kernel transport is closed: {self._error}")

    def submit(self, msg_type: str, content: Dict[str, Any]) -> Subscription:
        """
        Send a shell request and return its subscription.

        Raises:
            Disconnected: The transport is closed
            TransportError: The message could not be sent
        """
        self._ensure_open()
        msg = self.client.session.msg(msg_type, content)
        msg_id = msg["header"]["msg_id"]
        subscription = Subscription(self, msg_id)
        self._subscriptions[msg_id] = subscription
        try:
            self.client.shell_channel.send(msg)
        except Exception as e:
            subscription.terminate(TransportError(f"Failed to send {msg_type}: {e}"))
            self._unregister(msg_id)
            raise TransportError(f"Failed to send {msg_type}: {e}") from e
        logger.debug(f"Sent {msg_type}", msg_id=msg_id)
        return subscription

    async def send(
        self, msg_type: str, content: Dict[str, Any], timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Request/reply round trip.

        Raises:
            Disconnected: The transport closed before the reply arrived
            TransportError: The reply was malformed or did not arrive in time
        """
        subscription = self.submit(msg_type, content)
        try:
            return await subscription.reply(timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"No reply to {msg_type} within {timeout} seconds") from e
        finally:
            subscription.close()

    def _unregister(self, msg_id: str) -> None:
        self._subscriptions.pop(msg_id, None)

    async def _listen(self, channel: str, receive, route) -> None:
        consecutive_errors = 0
        while True:
            try:
                msg = await receive()
                route(msg)
                consecutive_errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Circuit breaker: prevent CPU spin on errors
                consecutive_errors += 1
                logger.error(f"{channel} listener error: {e} (consecutive errors: {consecutive_errors})")
                if consecutive_errors >= self.max_errors:
                    logger.critical(
                        f"[CIRCUIT BREAKER] {channel} listener hit {consecutive_errors} consecutive errors"
                    )
                    await self.close(TransportError(f"{channel} channel failed: {e}"))
                    return
                backoff_seconds = min(self.backoff_base * 2 ** (consecutive_errors - 1), 16)
                await asyncio.sleep(backoff_seconds)

    def _route_iopub(self, msg: Dict[str, Any]) -> None:
        if msg.get("msg_type") == "status":
            for callback in list(self._status_callbacks):
                try:
                    callback(msg)
                except Exception as e:
                    logger.warning(f"Status callback failed: {e}")

        parent_id = _parent_id(msg)
        subscription = self._subscriptions.get(parent_id) if parent_id else None
        if subscription is None:
            logger.debug(f"Dropping iopub {msg.get('msg_type')} for unknown parent {parent_id}")
            return
        subscription._push(msg)

    def _route_shell(self, msg: Dict[str, Any]) -> None:
        parent_id = _parent_id(msg)
        subscription = self._subscriptions.get(parent_id) if parent_id else None
        if subscription is None:
            logger.debug(f"Dropping shell {msg.get('msg_type')} for unknown parent {parent_id}")
            return
        if not isinstance(msg.get("content"), dict) or "msg_type" not in msg:
            subscription._fail_reply(TransportError(f"Malformed reply to {parent_id}"))
            return
        subscription._resolve(msg)

    async def close(self, error: Optional[Exception] = None) -> None:
        """
        Stop listening and release the channels. Idempotent.

        Pending replies and subscriptions fail with ``error`` (``Disconnected``
        when not given).
        """
        if self._closed:
            return
        self._closed = True
        self._error = error or Disconnected()

        for subscription in list(self._subscriptions.values()):
            subscription.terminate(error or Disconnected())
        self._subscriptions.clear()

        current = asyncio.current_task()
        others = [task for task in self._tasks if task is not current]
        for task in others:
            task.cancel()
        if others:
            await asyncio.gather(*others, return_exceptions=True)

        try:
            self.client.stop_channels()
        except Exception as e:
            logger.warning(f"Stopping kernel channels failed: {e}")

        for callback in self._close_callbacks:
            try:
                callback(self._error)
            except Exception as e:
                logger.warning(f"Transport close callback failed: {e}")
        self._close_callbacks.clear()
        logger.debug("Kernel transport closed", error=str(error) if error else None)
