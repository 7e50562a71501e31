"""
Error taxonomy for the notebook execution engine.

Capability and connection failures are raised to the immediate caller.
Cell-level failures are carried as data on the cell (see ``Cell.error``) so a
caller running many cells can continue past one that fails.
"""

from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base class for every error raised by notebook_engine."""


class Cancelled(EngineError):
    """The awaiting call was abandoned because its cancellation token fired."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)


class TimedOut(Cancelled):
    """The awaiting call was abandoned because its timeout elapsed."""

    def __init__(self, timeout: float, message: Optional[str] = None):
        self.timeout = timeout
        super().__init__(message or f"Operation timed out after {timeout} seconds")


class EnvironmentNotFound(EngineError):
    """No supplied interpreter passed the notebook capability probe."""


class ConnectionFailed(EngineError):
    """A kernel process or its channels could not be established."""


class TransportError(EngineError):
    """The kernel channel is unreachable or replied with a malformed message."""


class Disconnected(TransportError):
    """The transport was closed underneath an in-flight operation."""

    def __init__(self, message: str = "Kernel transport is closed"):
        super().__init__(message)


class CellStateError(EngineError):
    """Raised when a cell in a terminal state is asked to mutate."""


class ExecutionError(EngineError):
    """
    Error reported by the kernel for one cell.

    Attached to the cell's outputs as an nbformat ``error`` output; only
    constructed as an exception object so callers can raise it themselves.
    """

    def __init__(self, ename: str, evalue: str, traceback: Optional[List[str]] = None):
        self.ename = ename
        self.evalue = evalue
        self.traceback = list(traceback or [])
        super().__init__(f"{ename}: {evalue}" if evalue else ename)

    @classmethod
    def from_output(cls, output: Dict[str, Any]) -> "ExecutionError":
        return cls(
            ename=output.get("ename", "Error"),
            evalue=output.get("evalue", ""),
            traceback=output.get("traceback", []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"ename": self.ename, "evalue": self.evalue, "traceback": self.traceback}
