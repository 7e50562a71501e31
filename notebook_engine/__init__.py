import importlib.metadata

try:
    __version__ = importlib.metadata.version("notebook-engine")
except importlib.metadata.PackageNotFoundError:
    __version__ = "unknown"

from .cancellation import CancellationToken, CancellationTokenSource, run_cancellable
from .engine import JupyterExecution, NotebookExecution, UnsupportedExecution
from .environment import (
    Capability,
    CapabilityChecker,
    InterpreterService,
    JupyterCapabilityChecker,
    LocalInterpreterService,
    StaticInterpreterService,
)
from .exceptions import (
    Cancelled,
    CellStateError,
    ConnectionFailed,
    Disconnected,
    EngineError,
    EnvironmentNotFound,
    ExecutionError,
    TimedOut,
    TransportError,
)
from .models import (
    Cell,
    CellKind,
    CellState,
    EnvironmentDescriptor,
    ExecutionCapabilities,
    KernelConfig,
    KernelStatus,
    SessionLifecycle,
)
from .session import CellObservable, KernelSession, ObservableSubscription
from .translation import NotebookExporter, NotebookImporter

__all__ = [
    "__version__",
    "Cancelled",
    "CancellationToken",
    "CancellationTokenSource",
    "Capability",
    "CapabilityChecker",
    "Cell",
    "CellKind",
    "CellObservable",
    "CellState",
    "CellStateError",
    "ConnectionFailed",
    "Disconnected",
    "EngineError",
    "EnvironmentDescriptor",
    "EnvironmentNotFound",
    "ExecutionCapabilities",
    "ExecutionError",
    "InterpreterService",
    "JupyterCapabilityChecker",
    "JupyterExecution",
    "KernelConfig",
    "KernelSession",
    "KernelStatus",
    "LocalInterpreterService",
    "NotebookExecution",
    "NotebookExporter",
    "NotebookImporter",
    "ObservableSubscription",
    "SessionLifecycle",
    "StaticInterpreterService",
    "TimedOut",
    "TransportError",
    "UnsupportedExecution",
    "run_cancellable",
]
