"""
Typed records shared by the engine, the session and the translation facade.

Outputs are stored as nbformat v4 output nodes so that a cell can be written
into a notebook document without conversion.
"""

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

import nbformat
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import CellStateError, ExecutionError


class CellState(str, Enum):
    UNKNOWN = "unknown"
    INIT = "init"
    EXECUTING = "executing"
    FINISHED = "finished"
    ERROR = "error"


TERMINAL_STATES = frozenset({CellState.FINISHED, CellState.ERROR})


class CellKind(str, Enum):
    CODE = "code"
    MARKDOWN = "markdown"


class KernelStatus(str, Enum):
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DISCONNECTED = "disconnected"


class SessionLifecycle(str, Enum):
    CREATED = "created"
    CONNECTED = "connected"
    DISPOSED = "disposed"


class Cell(BaseModel):
    """One unit of submitted source plus its accumulated result."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source: str = ""
    file: str = ""
    line: int = 0
    kind: CellKind = CellKind.CODE
    state: CellState = CellState.UNKNOWN
    outputs: List[Dict[str, Any]] = Field(default_factory=list)
    execution_count: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise CellStateError(f"Cell {self.id} is {self.state.value} and can no longer change")

    def set_state(self, state: CellState) -> None:
        self._ensure_mutable()
        self.state = state

    def append_output(self, output: Dict[str, Any]) -> None:
        """
        Append an nbformat output, merging consecutive stream text.

        Arrival order is preserved: a stream chunk is only merged into the
        previous output when that output is the same stream.
        """
        self._ensure_mutable()
        if output.get("output_type") == "stream" and self.outputs:
            last = self.outputs[-1]
            if last.get("output_type") == "stream" and last.get("name") == output.get("name"):
                last["text"] = last.get("text", "") + output.get("text", "")
                return
        self.outputs.append(output)

    def clear_outputs(self) -> None:
        self._ensure_mutable()
        self.outputs = []

    def finish(self, execution_count: Optional[int] = None) -> None:
        self._ensure_mutable()
        if execution_count is not None:
            self.execution_count = execution_count
        self.state = CellState.FINISHED

    def fail(self, error: Optional[ExecutionError] = None, execution_count: Optional[int] = None) -> None:
        """Move to the Error state, attaching ``error`` as an output when given."""
        self._ensure_mutable()
        if error is not None:
            self.outputs.append(
                nbformat.v4.new_output(
                    "error", ename=error.ename, evalue=error.evalue, traceback=error.traceback
                )
            )
        if execution_count is not None:
            self.execution_count = execution_count
        self.state = CellState.ERROR

    @property
    def error(self) -> Optional[ExecutionError]:
        for output in self.outputs:
            if output.get("output_type") == "error":
                return ExecutionError.from_output(output)
        return None

    def text(self) -> str:
        parts = []
        for output in self.outputs:
            if output.get("output_type") == "stream":
                parts.append(output.get("text", ""))
            elif "data" in output:
                plain = output["data"].get("text/plain")
                if plain:
                    parts.append(plain)
        return "".join(parts)

    def snapshot(self) -> "Cell":
        """Deep copy handed to consumers; later mutations never leak into it."""
        return self.model_copy(deep=True)


class EnvironmentDescriptor(BaseModel):
    """A candidate interpreter, looked up from an external discovery service."""

    model_config = ConfigDict(frozen=True)

    path: str
    version: str = "unknown"
    env_type: str = "system"
    env_name: str = "system"
    display_name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or f"Python {self.version} ({self.env_name})"


class ExecutionCapabilities(BaseModel):
    notebook: bool = False
    kernel_create: bool = False
    import_supported: bool = False


class KernelConfig(BaseModel):
    """Caller-side runtime overrides, honored as-is when default config is off."""

    model_config = ConfigDict(extra="forbid")

    env: Dict[str, str] = Field(default_factory=dict)
    extra_arguments: List[str] = Field(default_factory=list)
    config_dir: Optional[str] = None
