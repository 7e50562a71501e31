"""
Environment detection and capability probes.

Interpreters are looked up through an ``InterpreterService``; whether one of
them can host a kernel is answered by a ``CapabilityChecker`` that runs the
interpreter through the process collaborator and inspects exit code and
stderr.
"""

import os
import sys
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .exceptions import TimedOut
from .models import EnvironmentDescriptor
from .observability import get_logger
from .process import ProcessService

logger = get_logger(__name__)


class Capability(str, Enum):
    NOTEBOOK = "notebook"
    KERNEL_CREATE = "kernel_create"
    IMPORT = "import"


DEFAULT_PROBE_ARGS: Dict[Capability, List[str]] = {
    Capability.NOTEBOOK: ["-m", "jupyter", "notebook", "--version"],
    Capability.KERNEL_CREATE: ["-m", "ipykernel", "--version"],
    Capability.IMPORT: ["-m", "jupyter", "nbconvert", "--version"],
}


def detect_environment_type(python_path: str) -> Tuple[str, str]:
    """
    Detects the type of Python environment.

    Returns:
        Tuple of (env_type, env_name)
        env_type: 'venv', 'virtualenv', 'conda', 'pyenv', 'poetry', 'pipenv', 'system'
    """
    resolved = Path(python_path).resolve()
    lowered = str(resolved).lower()

    if "conda" in lowered or "anaconda" in lowered or "miniconda" in lowered:
        parts = resolved.parts
        for i, part in enumerate(parts):
            if part == "envs" and i + 1 < len(parts):
                return ("conda", parts[i + 1])
        return ("conda", "base")

    for parent in (resolved.parent.parent, resolved.parent.parent.parent):
        if (parent / "pyvenv.cfg").exists():
            return ("venv", parent.name)
        if (parent / "bin" / "activate").exists() or (parent / "Scripts" / "activate").exists():
            return ("virtualenv", parent.name)

    if "pyenv" in lowered:
        return ("pyenv", resolved.parent.name)
    if "poetry" in lowered or "pypoetry" in lowered:
        return ("poetry", resolved.parent.parent.name)
    if "pipenv" in lowered or ".virtualenvs" in lowered:
        return ("pipenv", resolved.parent.parent.name)

    return ("system", "system")


def parse_python_version(output: str) -> Optional[str]:
    """``"Python 3.10.5"`` -> ``"3.10.5"``; None when the text is not a version banner."""
    text = output.strip()
    if not text.startswith("Python "):
        return None
    version = text[len("Python "):].split()[0]
    return version or None


class InterpreterService(ABC):
    """Supplies candidate interpreters in preference order."""

    @abstractmethod
    async def get_interpreters(self) -> List[EnvironmentDescriptor]:
        ...


class StaticInterpreterService(InterpreterService):
    """A fixed list of descriptors; an empty list models 'nothing installed'."""

    def __init__(self, descriptors: Iterable[EnvironmentDescriptor] = ()):
        self._descriptors = list(descriptors)

    async def get_interpreters(self) -> List[EnvironmentDescriptor]:
        return list(self._descriptors)


class LocalInterpreterService(InterpreterService):
    """
    Discovers the running interpreter and the python executables on PATH.

    Args:
        process_service: Used to ask each candidate for its version
        env: Environment map passed to every spawned probe; its PATH is scanned
        timeout: Seconds allowed for each version query
    """

    EXECUTABLE_NAMES = ("python", "python3", "python.exe", "python3.exe")

    def __init__(self, process_service: ProcessService, env: Mapping[str, str], timeout: float = 5.0):
        self._process_service = process_service
        self._env = dict(env)
        self._timeout = timeout

    def _candidates(self) -> List[str]:
        seen = set()
        candidates = []
        for path in [sys.executable] + self._path_executables():
            real_path = os.path.realpath(path)
            if real_path in seen:
                continue
            seen.add(real_path)
            candidates.append(path)
        return candidates

    def _path_executables(self) -> List[str]:
        found = []
        for path_dir in self._env.get("PATH", "").split(os.pathsep):
            if not path_dir or not os.path.isdir(path_dir):
                continue
            for name in self.EXECUTABLE_NAMES:
                exe_path = os.path.join(path_dir, name)
                if os.path.isfile(exe_path) and os.access(exe_path, os.X_OK):
                    found.append(exe_path)
        return found

    async def describe(self, python_path: str) -> Optional[EnvironmentDescriptor]:
        """Query one executable; None when it does not answer like a python."""
        try:
            result = await self._process_service.exec(
                python_path, ["--version"], env=self._env, timeout=self._timeout
            )
        except (OSError, TimedOut) as e:
            logger.debug(f"Skipping interpreter {python_path}: {e}")
            return None

        version = parse_python_version(result.stdout) or parse_python_version(result.stderr)
        if result.returncode != 0 or version is None:
            return None

        env_type, env_name = detect_environment_type(python_path)
        return EnvironmentDescriptor(path=python_path, version=version, env_type=env_type, env_name=env_name)

    async def get_interpreters(self) -> List[EnvironmentDescriptor]:
        interpreters = []
        for path in self._candidates():
            descriptor = await self.describe(path)
            if descriptor is not None:
                interpreters.append(descriptor)
        logger.debug(f"Discovered {len(interpreters)} interpreter(s)")
        return interpreters


class CapabilityChecker(ABC):
    """Answers whether one interpreter supports one capability."""

    @abstractmethod
    async def check(self, environment: EnvironmentDescriptor, capability: Capability) -> bool:
        ...


class JupyterCapabilityChecker(CapabilityChecker):
    """
    Runs ``<python> <probe args>`` and reports support when the probe exits 0
    with nothing on stderr.

    A probe that cannot be spawned, or that exceeds ``timeout``, is a negative
    answer. Task cancellation is never converted into an answer.
    """

    def __init__(
        self,
        process_service: ProcessService,
        env: Mapping[str, str],
        timeout: Optional[float] = None,
        probe_args: Optional[Mapping[Capability, List[str]]] = None,
    ):
        self._process_service = process_service
        self._env = dict(env)
        self._timeout = timeout
        self._probe_args = dict(DEFAULT_PROBE_ARGS)
        if probe_args:
            self._probe_args.update(probe_args)

    async def check(self, environment: EnvironmentDescriptor, capability: Capability) -> bool:
        args = self._probe_args[capability]
        try:
            result = await self._process_service.exec(
                environment.path, args, env=self._env, timeout=self._timeout
            )
        except (OSError, TimedOut) as e:
            logger.info(f"{capability.value} probe could not run for {environment.path}: {e}")
            return False

        supported = result.returncode == 0 and not result.stderr.strip()
        if not supported:
            logger.debug(
                f"{capability.value} probe failed for {environment.path}",
                returncode=result.returncode,
                stderr=result.stderr.strip()[:500],
            )
        return supported
