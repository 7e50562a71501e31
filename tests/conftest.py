"""
Pytest configuration and fixtures for notebook_engine tests.

Unit tests talk to ``FakeKernelClient``, an in-memory stand-in for
``jupyter_client.AsyncKernelClient`` that answers execute requests from a
script. Integration tests (marked ``integration``) run a real ipykernel.
"""

import asyncio
import sys
import uuid
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from notebook_engine.config import load_settings
from notebook_engine.models import EnvironmentDescriptor
from notebook_engine.session import KernelSession

Step = Tuple[str, Dict[str, Any]]


def stream(text: str, name: str = "stdout") -> Step:
    return ("stream", {"name": name, "text": text})


def result(text: str) -> Step:
    return ("execute_result", {"data": {"text/plain": text}, "metadata": {}, "execution_count": None})


def display(data: Dict[str, Any], display_id: Optional[str] = None) -> Step:
    content = {"data": data, "metadata": {}}
    if display_id:
        content["transient"] = {"display_id": display_id}
    return ("display_data", content)


def error(ename: str, evalue: str) -> Step:
    return ("error", {"ename": ename, "evalue": evalue, "traceback": [f"{ename}: {evalue}"]})


class FakeSession:
    """Builds protocol messages the way ``jupyter_client.Session.msg`` does."""

    def msg(self, msg_type: str, content: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        msg_id = uuid.uuid4().hex
        header = {"msg_id": msg_id, "msg_type": msg_type}
        return {
            "header": header,
            "msg_id": msg_id,
            "msg_type": msg_type,
            "parent_header": {},
            "metadata": {},
            "content": content or {},
        }


class FakeKernelClient:
    """
    Scripted kernel client.

    ``scripts[code] = ([steps...], reply_status)`` controls what an
    execute_request produces. Codes in ``hanging`` never finish on their own;
    ``interrupt()`` ends them with a KeyboardInterrupt unless
    ``ignore_interrupt`` is set.
    """

    def __init__(self):
        self.session = FakeSession()
        self.shell_channel = MagicMock()
        self.shell_channel.send.side_effect = self._on_send
        self.sent: List[Dict[str, Any]] = []
        self.iopub: asyncio.Queue = asyncio.Queue()
        self.shell: asyncio.Queue = asyncio.Queue()
        self.scripts: Dict[str, Tuple[List[Step], str]] = {}
        self.hanging = set()
        self.pending: List[Dict[str, Any]] = []
        self.ignore_interrupt = False
        self.execution_count = 0
        self.channels_running = False
        self.ready_error: Optional[Exception] = None

    def start_channels(self):
        self.channels_running = True

    def stop_channels(self):
        self.channels_running = False

    async def wait_for_ready(self, timeout=None):
        if self.ready_error is not None:
            raise self.ready_error

    async def get_iopub_msg(self, timeout=None):
        item = await self.iopub.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def get_shell_msg(self, timeout=None):
        item = await self.shell.get()
        if isinstance(item, Exception):
            raise item
        return item

    def message(self, parent: Dict[str, Any], msg_type: str, content: Dict[str, Any]) -> Dict[str, Any]:
        msg = self.session.msg(msg_type, content)
        msg["parent_header"] = parent["header"]
        return msg

    def emit(self, parent: Dict[str, Any], msg_type: str, content: Dict[str, Any]) -> None:
        self.iopub.put_nowait(self.message(parent, msg_type, content))

    def reply(self, parent: Dict[str, Any], content: Dict[str, Any], msg_type: str = "execute_reply") -> None:
        self.shell.put_nowait(self.message(parent, msg_type, content))

    def finish(self, parent: Dict[str, Any], status: str = "ok", **extra) -> None:
        self.emit(parent, "status", {"execution_state": "idle"})
        self.reply(parent, {"status": status, "execution_count": self.execution_count, **extra})

    def _on_send(self, msg: Dict[str, Any]) -> None:
        self.sent.append(msg)
        if msg["msg_type"] != "execute_request":
            self.reply(msg, {"status": "ok"}, msg_type=msg["msg_type"].replace("_request", "_reply"))
            return

        code = msg["content"]["code"]
        self.execution_count += 1
        self.emit(msg, "status", {"execution_state": "busy"})
        self.emit(msg, "execute_input", {"code": code, "execution_count": self.execution_count})
        if code in self.hanging:
            self.pending.append(msg)
            return

        steps, status = self.scripts.get(code, ([], "ok"))
        for msg_type, content in steps:
            if msg_type == "execute_result":
                content = dict(content, execution_count=self.execution_count)
            self.emit(msg, msg_type, content)
        self.finish(msg, status)

    def interrupt(self) -> None:
        if self.ignore_interrupt:
            return
        pending, self.pending = self.pending, []
        for msg in pending:
            self.emit(msg, *error("KeyboardInterrupt", ""))
            self.finish(msg, "error", ename="KeyboardInterrupt", evalue="")


class FakeHandle:
    """Stands in for ``KernelHandle``; every (re)start hands out a new client."""

    def __init__(self, environment: EnvironmentDescriptor):
        self.environment = environment
        self.clients: List[FakeKernelClient] = [FakeKernelClient()]
        self.restarts = 0
        self.interrupts = 0
        self.shutdowns = 0
        self.interrupt_error: Optional[Exception] = None
        self.restart_error: Optional[Exception] = None
        self.restart_delay = 0.0
        self.events: List[str] = []

    @property
    def current(self) -> FakeKernelClient:
        return self.clients[-1]

    def client(self) -> FakeKernelClient:
        return self.current

    async def interrupt(self) -> None:
        self.interrupts += 1
        if self.interrupt_error is not None:
            raise self.interrupt_error
        self.current.interrupt()

    async def restart(self) -> None:
        if self.restart_delay:
            await asyncio.sleep(self.restart_delay)
        if self.restart_error is not None:
            raise self.restart_error
        self.restarts += 1
        self.clients.append(FakeKernelClient())
        self.events.append("restart")

    async def shutdown(self) -> None:
        self.shutdowns += 1
        self.events.append("shutdown")


class FakeLauncher:
    """Records launches; ``error`` fails the launch, ``ready_error`` the handshake."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.error: Optional[Exception] = None
        self.ready_error: Optional[Exception] = None
        self.handles: List[FakeHandle] = []
        self.calls: List[Dict[str, Any]] = []

    async def launch(self, environment, cwd=None, env=None, config=None, use_default_config=True):
        self.calls.append(
            {"environment": environment, "cwd": cwd, "env": env, "config": config, "use_default_config": use_default_config}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        handle = FakeHandle(environment)
        handle.current.ready_error = self.ready_error
        self.handles.append(handle)
        return handle


@pytest.fixture
def settings():
    return load_settings(startup_timeout=5, listener_max_errors=3, listener_backoff=0)


@pytest.fixture
def environment():
    return EnvironmentDescriptor(path=sys.executable, version="3.11.4", env_name="test")


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
async def session(launcher, environment, settings):
    session = KernelSession(launcher, environment, env={"PATH": "/usr/bin"}, settings=settings)
    await session.connect()
    yield session
    await session.dispose()


@pytest.fixture
def kernel(session) -> FakeKernelClient:
    """The fake client behind the connected session."""
    return session.handle.current


