"""
Kernel Session
==============

One live connection to one kernel process: execute, interrupt, restart,
wait-for-idle and status notifications on top of a ``KernelTransport``.

State machine::

    created -> connected(idle <-> busy) -> disposed
                  ^      |
                  +------+  restart_kernel (same session handle)

Executions are submitted one at a time. ``execute`` yields the full
accumulated cell on every change; the last element is always terminal.
"""

import asyncio
import uuid
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

import nbformat

from .cell_markers import is_markdown, markdown_text
from .config import EngineSettings, get_settings
from .exceptions import ConnectionFailed, Disconnected, ExecutionError, TimedOut
from .kernel_launcher import KernelHandle, KernelLauncher
from .models import Cell, CellKind, CellState, EnvironmentDescriptor, KernelConfig, KernelStatus, SessionLifecycle
from .observability import get_logger, get_tracer
from .transport import KernelTransport, Subscription

logger = get_logger(__name__)
tracer = get_tracer(__name__)

_KERNEL_STATES = {
    "starting": KernelStatus.STARTING,
    "busy": KernelStatus.BUSY,
    "idle": KernelStatus.IDLE,
}


def _create_output(msg_type: str, content: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Convert an iopub output message to an nbformat output node."""
    if msg_type == "stream":
        return nbformat.v4.new_output("stream", name=content["name"], text=content["text"])
    elif msg_type == "display_data":
        return nbformat.v4.new_output(
            "display_data", data=content.get("data", {}), metadata=content.get("metadata", {})
        )
    elif msg_type == "execute_result":
        return nbformat.v4.new_output(
            "execute_result",
            data=content.get("data", {}),
            metadata=content.get("metadata", {}),
            execution_count=content.get("execution_count"),
        )
    elif msg_type == "error":
        return nbformat.v4.new_output(
            "error",
            ename=content.get("ename", "Error"),
            evalue=content.get("evalue", ""),
            traceback=content.get("traceback", []),
        )
    return None


class _ActiveExecution:
    """Book-keeping for the one execution currently on the wire."""

    def __init__(self, cell: Cell, subscription: Subscription):
        self.cell = cell
        self.subscription = subscription
        self.interrupt_requested = False
        self.pending_clear = False
        self.display_ids: Dict[str, List[int]] = {}

    def force(self, error: ExecutionError) -> None:
        """Make the execution finish in Error with ``error``."""
        self.subscription.terminate(error)

    def apply(self, msg: Dict[str, Any]) -> bool:
        """Fold one iopub message into the cell; True when the cell changed."""
        msg_type = msg.get("msg_type")
        content = msg.get("content") or {}
        cell = self.cell

        if msg_type == "clear_output":
            if content.get("wait"):
                self.pending_clear = True
                return False
            cell.clear_outputs()
            self.display_ids.clear()
            return True

        if msg_type == "execute_input":
            count = content.get("execution_count")
            if count is not None:
                cell.execution_count = count
            return False

        if msg_type == "update_display_data":
            display_id = (content.get("transient") or {}).get("display_id")
            indices = self.display_ids.get(display_id, [])
            for index in indices:
                cell.outputs[index]["data"] = content.get("data", {})
                cell.outputs[index]["metadata"] = content.get("metadata", {})
            return bool(indices)

        output = _create_output(msg_type, content)
        if output is None:
            return False

        if self.pending_clear:
            cell.clear_outputs()
            self.display_ids.clear()
            self.pending_clear = False
        cell.append_output(output)

        display_id = (content.get("transient") or {}).get("display_id")
        if msg_type in ("display_data", "execute_result") and display_id:
            self.display_ids.setdefault(display_id, []).append(len(cell.outputs) - 1)
        if msg_type == "execute_result" and content.get("execution_count") is not None:
            cell.execution_count = content["execution_count"]
        return True


class KernelSession:
    """
    A live kernel connection.

    Create through ``JupyterExecution.connect_to_notebook_server`` (or call
    ``connect()`` directly); release with ``dispose()`` or ``async with``.

    Args:
        launcher: Starts the kernel process
        environment: Interpreter the kernel runs in
        env: Complete environment map for the kernel process
        cwd: Kernel working directory
        config: Runtime overrides, honored when ``use_default_config`` is False
        use_default_config: Isolate the kernel from user configuration
        settings: Engine settings; the process-wide settings by default
    """

    def __init__(
        self,
        launcher: KernelLauncher,
        environment: EnvironmentDescriptor,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        config: Optional[KernelConfig] = None,
        use_default_config: bool = True,
        settings: Optional[EngineSettings] = None,
    ):
        self.id = uuid.uuid4().hex
        self.environment = environment
        self.lifecycle = SessionLifecycle.CREATED
        self._launcher = launcher
        self._env = dict(env or {})
        self._cwd = cwd
        self._config = config
        self._use_default_config = use_default_config
        self._settings = settings or get_settings()

        self._handle: Optional[KernelHandle] = None
        self._transport: Optional[KernelTransport] = None
        self._status = KernelStatus.STARTING
        self._listeners: List[Callable[[KernelStatus], Any]] = []
        self._lock = asyncio.Lock()
        self._restart_lock = asyncio.Lock()
        # Cleared while the kernel is (re)starting; executions wait on it
        self._ready = asyncio.Event()
        self._active: Optional[_ActiveExecution] = None
        self._log = logger.bind(session_id=self.id)

    # ------------------------------------------------------------------ state

    @property
    def status(self) -> KernelStatus:
        return self._status

    @property
    def handle(self) -> Optional[KernelHandle]:
        return self._handle

    @property
    def is_connected(self) -> bool:
        return self.lifecycle is SessionLifecycle.CONNECTED and self._status is not KernelStatus.DISCONNECTED

    def on_status_changed(self, listener: Callable[[KernelStatus], Any]) -> Callable[[], None]:
        """Register ``listener`` for every status change. Returns a remover."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_status(self, status: KernelStatus) -> None:
        if status is self._status:
            return
        self._status = status
        self._log.debug(f"Kernel status -> {status.value}")
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                self._log.warning(f"Status listener failed: {e}")

    def _on_kernel_status(self, msg: Dict[str, Any]) -> None:
        state = _KERNEL_STATES.get((msg.get("content") or {}).get("execution_state"))
        if state is not None and self._status is not KernelStatus.DISCONNECTED:
            self._set_status(state)

    def _on_transport_closed(self, transport: KernelTransport, error: Exception) -> None:
        # Only an unexpected close of the current transport disconnects the session
        if transport is self._transport and self.lifecycle is SessionLifecycle.CONNECTED:
            self._log.error(f"Kernel transport failed: {error}")
            self._transport = None
            self._set_status(KernelStatus.DISCONNECTED)

    # -------------------------------------------------------------- lifecycle

    async def _open_transport(self) -> None:
        client = self._handle.client()
        client.start_channels()
        try:
            await client.wait_for_ready(timeout=self._settings.startup_timeout)
        except BaseException:
            client.stop_channels()
            raise

        transport = KernelTransport(
            client,
            max_errors=self._settings.listener_max_errors,
            backoff_base=self._settings.listener_backoff,
        )
        transport.on_status(self._on_kernel_status)
        transport.on_closed(lambda error: self._on_transport_closed(transport, error))
        transport.start()
        self._transport = transport

    async def connect(self) -> "KernelSession":
        """
        Start the kernel and wait until it answers.

        Raises:
            ConnectionFailed: The kernel could not be started or never became ready
        """
        if self.lifecycle is not SessionLifecycle.CREATED:
            raise ConnectionFailed(f"Session {self.id} is already {self.lifecycle.value}")

        with tracer.start_as_current_span("kernel_session.connect") as span:
            span.set_attribute("session_id", self.id)
            span.set_attribute("python", self.environment.path)
            try:
                self._handle = await self._launcher.launch(
                    self.environment,
                    cwd=self._cwd,
                    env=self._env,
                    config=self._config,
                    use_default_config=self._use_default_config,
                )
                await self._open_transport()
            except BaseException as e:
                await self._teardown()
                self.lifecycle = SessionLifecycle.DISPOSED
                self._set_status(KernelStatus.DISCONNECTED)
                if isinstance(e, ConnectionFailed):
                    raise
                if isinstance(e, Exception):
                    raise ConnectionFailed(f"Kernel for {self.environment.path} did not become ready: {e}") from e
                raise

        self.lifecycle = SessionLifecycle.CONNECTED
        self._set_status(KernelStatus.IDLE)
        self._ready.set()
        self._log.info(f"Connected kernel session {self.id}", python=self.environment.path)
        return self

    async def _teardown(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()
        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                await handle.shutdown()
            except Exception as e:
                self._log.warning(f"Kernel shutdown failed: {e}")

    async def dispose(self) -> None:
        """Release the transport and kernel. Idempotent; pending executions end with ``Disconnected``."""
        if self.lifecycle is SessionLifecycle.DISPOSED:
            return
        self.lifecycle = SessionLifecycle.DISPOSED
        # Wake executions parked on a restart; they observe the disposal
        self._ready.set()
        # A restart in progress finishes first so the kernel it starts is shut down here
        async with self._restart_lock:
            await self._teardown()
        self._set_status(KernelStatus.DISCONNECTED)
        self._listeners.clear()
        self._log.info(f"Disposed kernel session {self.id}")

    async def __aenter__(self) -> "KernelSession":
        if self.lifecycle is SessionLifecycle.CREATED:
            await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    # -------------------------------------------------------------- execution

    async def _acquire_slot(self) -> KernelTransport:
        """Wait out any restart, then take the execution lock."""
        while True:
            await self._ready.wait()
            await self._lock.acquire()
            if self._ready.is_set():
                break
            # A restart began while we queued for the lock
            self._lock.release()

        transport = self._transport
        if self.lifecycle is not SessionLifecycle.CONNECTED or transport is None:
            self._lock.release()
            raise Disconnected(f"Kernel session {self.id} is not connected")
        return transport

    async def execute(self, code: str, file_path: str = "", line_offset: int = 0) -> AsyncIterator[Cell]:
        """
        Run ``code`` and yield a snapshot of the cell after every change.

        The first snapshot is ``init``, the second ``executing`` and the last
        one ``finished`` or ``error``. Kernel-reported errors are carried on
        the cell, not raised.

        Raises:
            Disconnected: The session was disposed before the cell reached a
                terminal state
            TransportError: The kernel channels failed mid-execution
        """
        kind = CellKind.MARKDOWN if is_markdown(code) else CellKind.CODE
        cell = Cell(source=code, file=file_path, line=line_offset, kind=kind)

        if self.lifecycle is not SessionLifecycle.CONNECTED:
            raise Disconnected(f"Kernel session {self.id} is not connected")

        cell.set_state(CellState.INIT)
        yield cell.snapshot()

        if kind is CellKind.MARKDOWN:
            # Rendered locally; no kernel round trip
            cell.source = markdown_text(code)
            cell.finish()
            yield cell.snapshot()
            return

        transport = await self._acquire_slot()
        active = None
        try:
            subscription = transport.submit(
                "execute_request",
                {
                    "code": code,
                    "silent": False,
                    "store_history": True,
                    "user_expressions": {},
                    "allow_stdin": False,
                    "stop_on_error": False,
                },
            )
            active = _ActiveExecution(cell, subscription)
            self._active = active
            cell.set_state(CellState.EXECUTING)
            yield cell.snapshot()

            reply = None
            try:
                async for msg in subscription:
                    content = msg.get("content") or {}
                    if msg.get("msg_type") == "status":
                        if content.get("execution_state") == "idle":
                            break
                        continue
                    if active.apply(msg):
                        yield cell.snapshot()
                reply = await subscription.reply()
            except ExecutionError as forced:
                cell.fail(forced)
                self._log.info(f"Execution of cell {cell.id} forced to error: {forced}")
                yield cell.snapshot()
                return

            self._complete(active, reply)
            yield cell.snapshot()
        finally:
            if active is not None:
                active.subscription.close()
                if self._active is active:
                    self._active = None
            self._lock.release()

    def _complete(self, active: _ActiveExecution, reply: Dict[str, Any]) -> None:
        cell = active.cell
        content = reply.get("content") or {}
        status = content.get("status")
        execution_count = content.get("execution_count")

        if active.interrupt_requested:
            if cell.error is None:
                cell.fail(ExecutionError("KeyboardInterrupt", "Execution interrupted"), execution_count)
            else:
                cell.fail(execution_count=execution_count)
        elif cell.error is not None:
            cell.fail(execution_count=execution_count)
        elif status == "error":
            cell.fail(
                ExecutionError(content.get("ename", "Error"), content.get("evalue", ""), content.get("traceback")),
                execution_count,
            )
        elif status == "aborted":
            cell.fail(ExecutionError("ExecutionAborted", "The kernel aborted the execution"), execution_count)
        else:
            cell.finish(execution_count)

    async def run_cell(self, code: str, file_path: str = "", line_offset: int = 0) -> Cell:
        """Execute ``code`` to completion and return the terminal cell."""
        cell = None
        async for cell in self.execute(code, file_path, line_offset):
            pass
        return cell

    def execute_observable(self, code: str, file_path: str = "", line_offset: int = 0) -> "CellObservable":
        """Push-style view of ``execute``. Each subscription runs the cell once."""
        return CellObservable(lambda: self.execute(code, file_path, line_offset))

    # ------------------------------------------------------- interrupt/restart

    async def interrupt_kernel(self, timeout: Optional[float] = None) -> bool:
        """
        Interrupt the in-flight execution, if any.

        Args:
            timeout: When given, wait this long for the execution to reach a
                terminal state; past it the execution is forced to ``error``

        Returns:
            True when nothing was running or the interrupt took effect.
        """
        active = self._active
        if active is None or active.cell.is_terminal:
            return True

        active.interrupt_requested = True
        try:
            await self._handle.interrupt()
        except Exception as e:
            self._log.error(f"Interrupt failed: {e}")
            return False
        self._log.info(f"Interrupt sent for cell {active.cell.id}")

        if timeout is None:
            return True
        try:
            # The kernel's reply settles the request even while the consumer is not iterating
            await asyncio.wait_for(active.subscription.settled.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            self._log.warning(f"Cell {active.cell.id} did not stop within {timeout}s of the interrupt")
            active.force(ExecutionError("KeyboardInterrupt", f"interrupt timed out after {timeout} seconds"))
            return False

    async def restart_kernel(self) -> bool:
        """
        Restart the kernel process behind this session.

        Any in-flight execution ends in ``error``; executions submitted after
        this call start only once the new kernel is ready.

        Returns:
            True when the kernel is back to idle.
        """
        async with self._restart_lock:
            if self.lifecycle is not SessionLifecycle.CONNECTED or self._handle is None:
                return False

            with tracer.start_as_current_span("kernel_session.restart") as span:
                span.set_attribute("session_id", self.id)
                self._ready.clear()
                self._set_status(KernelStatus.STARTING)

                active = self._active
                if active is not None:
                    active.force(ExecutionError("KernelRestarted", "The kernel was restarted during execution"))

                transport, self._transport = self._transport, None
                try:
                    if transport is not None:
                        await transport.close()
                    await self._handle.restart()
                    await self._open_transport()
                except Exception as e:
                    self._log.error(f"Kernel restart failed: {e}")
                    self._set_status(KernelStatus.DISCONNECTED)
                    return False
                finally:
                    self._ready.set()

            if self.lifecycle is not SessionLifecycle.CONNECTED:
                self._log.info(f"Session {self.id} was disposed during restart")
                return False
            self._set_status(KernelStatus.IDLE)

        self._log.info(f"Restarted kernel for session {self.id}")
        return True

    async def wait_for_idle(self, timeout: Optional[float] = None) -> None:
        """
        Resolve once the kernel reports idle (immediately if it already is).

        Raises:
            Disconnected: The session is, or becomes, disconnected
            TimedOut: ``timeout`` elapsed first
        """
        if self._status is KernelStatus.IDLE:
            return
        if self._status is KernelStatus.DISCONNECTED:
            raise Disconnected(f"Kernel session {self.id} is disconnected")

        idle = asyncio.get_running_loop().create_future()

        def listener(status: KernelStatus):
            if idle.done():
                return
            if status is KernelStatus.IDLE:
                idle.set_result(None)
            elif status is KernelStatus.DISCONNECTED:
                idle.set_exception(Disconnected(f"Kernel session {self.id} disconnected"))

        remove = self.on_status_changed(listener)
        try:
            await asyncio.wait_for(idle, timeout)
        except asyncio.TimeoutError:
            raise TimedOut(timeout) from None
        finally:
            remove()


def _notify(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        logger.warning(f"Observer callback failed: {e}")


class ObservableSubscription:
    """Handle returned by ``CellObservable.subscribe``."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    @property
    def closed(self) -> bool:
        return self._task.done()

    def dispose(self) -> None:
        """Stop delivery; no further callbacks fire."""
        if not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait until delivery has ended for any reason."""
        await asyncio.gather(self._task, return_exceptions=True)


class CellObservable:
    """
    Push-based stream of cell snapshots.

    ``on_next`` receives every snapshot. Exactly one of ``on_complete`` (after
    the terminal snapshot) or ``on_error`` (when the stream fails first) fires.
    """

    def __init__(self, factory: Callable[[], AsyncIterator[Cell]]):
        self._factory = factory

    def subscribe(
        self,
        on_next: Optional[Callable[[Cell], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
        on_complete: Optional[Callable[[], Any]] = None,
    ) -> ObservableSubscription:
        task = asyncio.ensure_future(self._pump(on_next, on_error, on_complete))
        return ObservableSubscription(task)

    async def _pump(self, on_next, on_error, on_complete) -> None:
        cells = self._factory()
        try:
            async for cell in cells:
                _notify(on_next, cell)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _notify(on_error, e)
            return
        finally:
            await cells.aclose()
        _notify(on_complete)
