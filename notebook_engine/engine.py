"""
Execution Engine
================

Entry point of the package: capability probing, environment selection and
session creation, with cancellation and timeouts layered over all of them.

Two variants are chosen at construction:
- ``JupyterExecution`` probes real interpreters and launches ipykernel
- ``UnsupportedExecution`` reports nothing as supported and refuses to
  connect, for hosts where notebook execution is known to be unavailable
"""

from abc import ABC, abstractmethod
from typing import List, Mapping, Optional

from .cancellation import CancellationToken, run_cancellable
from .config import EngineSettings, get_settings
from .environment import Capability, CapabilityChecker, InterpreterService, JupyterCapabilityChecker
from .exceptions import ConnectionFailed, EnvironmentNotFound
from .kernel_launcher import KernelLauncher
from .models import EnvironmentDescriptor, ExecutionCapabilities, KernelConfig, SessionLifecycle
from .observability import get_logger, get_tracer
from .process import AsyncioProcessService, ProcessService
from .session import KernelSession

logger = get_logger(__name__)
tracer = get_tracer(__name__)


class NotebookExecution(ABC):
    """What a caller can ask of a notebook execution backend."""

    @abstractmethod
    async def is_notebook_supported(self, token: Optional[CancellationToken] = None) -> bool:
        ...

    @abstractmethod
    async def is_kernel_create_supported(self, token: Optional[CancellationToken] = None) -> bool:
        ...

    @abstractmethod
    async def is_import_supported(self, token: Optional[CancellationToken] = None) -> bool:
        ...

    @abstractmethod
    async def get_usable_environment(self, token: Optional[CancellationToken] = None) -> EnvironmentDescriptor:
        ...

    @abstractmethod
    async def connect_to_notebook_server(
        self,
        environment: Optional[EnvironmentDescriptor] = None,
        use_default_config: bool = True,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        config: Optional[KernelConfig] = None,
        cwd: Optional[str] = None,
    ) -> KernelSession:
        ...

    async def get_capabilities(self, token: Optional[CancellationToken] = None) -> ExecutionCapabilities:
        """All three capability answers, each freshly probed."""
        return ExecutionCapabilities(
            notebook=await self.is_notebook_supported(token),
            kernel_create=await self.is_kernel_create_supported(token),
            import_supported=await self.is_import_supported(token),
        )

    async def dispose(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.dispose()


class UnsupportedExecution(NotebookExecution):
    """Backend for hosts without a usable notebook runtime."""

    def __init__(self, reason: str = "Notebook execution is not supported"):
        self.reason = reason

    async def _unsupported(self, token: Optional[CancellationToken]) -> bool:
        if token is not None:
            token.raise_if_cancelled()
        return False

    async def is_notebook_supported(self, token: Optional[CancellationToken] = None) -> bool:
        return await self._unsupported(token)

    async def is_kernel_create_supported(self, token: Optional[CancellationToken] = None) -> bool:
        return await self._unsupported(token)

    async def is_import_supported(self, token: Optional[CancellationToken] = None) -> bool:
        return await self._unsupported(token)

    async def get_usable_environment(self, token: Optional[CancellationToken] = None) -> EnvironmentDescriptor:
        await self._unsupported(token)
        raise EnvironmentNotFound(self.reason)

    async def connect_to_notebook_server(
        self,
        environment: Optional[EnvironmentDescriptor] = None,
        use_default_config: bool = True,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        config: Optional[KernelConfig] = None,
        cwd: Optional[str] = None,
    ) -> KernelSession:
        await self._unsupported(token)
        raise ConnectionFailed(self.reason)


class JupyterExecution(NotebookExecution):
    """
    Notebook execution on local interpreters through ipykernel.

    Args:
        interpreter_service: Supplies candidate interpreters in preference order
        env: Environment map handed to probes and kernels; nothing else is
            inherited from this process, so it must carry PATH, HOME and the like
        capability_checker: Answers capability questions per interpreter;
            ``JupyterCapabilityChecker`` by default
        process_service: Used by the default capability checker
        launcher: Starts kernel processes
        settings: Engine settings; the process-wide settings by default
    """

    def __init__(
        self,
        interpreter_service: InterpreterService,
        env: Mapping[str, str],
        capability_checker: Optional[CapabilityChecker] = None,
        process_service: Optional[ProcessService] = None,
        launcher: Optional[KernelLauncher] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or get_settings()
        self._interpreters = interpreter_service
        self._env = dict(env)
        self._checker = capability_checker or JupyterCapabilityChecker(
            process_service or AsyncioProcessService(),
            self._env,
            timeout=self.settings.probe_timeout,
        )
        self._launcher = launcher or KernelLauncher(
            kernel_name=self.settings.kernel_name,
            shutdown_timeout=self.settings.shutdown_timeout,
        )
        self._sessions: List[KernelSession] = []
        self._disposed = False

    @property
    def sessions(self) -> List[KernelSession]:
        return [s for s in self._sessions if s.lifecycle is not SessionLifecycle.DISPOSED]

    async def _probe(
        self, environment: EnvironmentDescriptor, capability: Capability, token: Optional[CancellationToken]
    ) -> bool:
        supported = await run_cancellable(self._checker.check(environment, capability), token)
        logger.debug(f"{capability.value} probe for {environment.path}: {supported}")
        return supported

    async def get_usable_environment(self, token: Optional[CancellationToken] = None) -> EnvironmentDescriptor:
        """
        First interpreter, in supplied order, whose notebook probe passes.

        Raises:
            EnvironmentNotFound: No interpreter qualifies
            Cancelled: ``token`` fired; remaining probes are abandoned
        """
        with tracer.start_as_current_span("engine.get_usable_environment") as span:
            interpreters = await run_cancellable(self._interpreters.get_interpreters(), token)
            span.set_attribute("candidates", len(interpreters))
            for environment in interpreters:
                if await self._probe(environment, Capability.NOTEBOOK, token):
                    span.set_attribute("selected", environment.path)
                    return environment
        raise EnvironmentNotFound(f"None of {len(interpreters)} interpreter(s) can run notebooks")

    async def is_notebook_supported(self, token: Optional[CancellationToken] = None) -> bool:
        try:
            await self.get_usable_environment(token)
        except EnvironmentNotFound:
            return False
        return True

    async def _usable_supports(self, capability: Capability, token: Optional[CancellationToken]) -> bool:
        try:
            environment = await self.get_usable_environment(token)
        except EnvironmentNotFound:
            return False
        return await self._probe(environment, capability, token)

    async def is_kernel_create_supported(self, token: Optional[CancellationToken] = None) -> bool:
        return await self._usable_supports(Capability.KERNEL_CREATE, token)

    async def is_import_supported(self, token: Optional[CancellationToken] = None) -> bool:
        return await self._usable_supports(Capability.IMPORT, token)

    async def _connect(
        self,
        environment: Optional[EnvironmentDescriptor],
        use_default_config: bool,
        config: Optional[KernelConfig],
        cwd: Optional[str],
    ) -> KernelSession:
        if environment is None:
            try:
                environment = await self.get_usable_environment()
            except EnvironmentNotFound as e:
                raise ConnectionFailed(f"Notebook execution is not supported: {e}") from e
        elif not await self._checker.check(environment, Capability.NOTEBOOK):
            raise ConnectionFailed(f"Notebook execution is not supported by {environment.path}")

        session = KernelSession(
            self._launcher,
            environment,
            env=self._env,
            cwd=cwd,
            config=config,
            use_default_config=use_default_config,
            settings=self.settings,
        )
        # connect() tears down whatever it started before raising
        return await session.connect()

    async def connect_to_notebook_server(
        self,
        environment: Optional[EnvironmentDescriptor] = None,
        use_default_config: bool = True,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        config: Optional[KernelConfig] = None,
        cwd: Optional[str] = None,
    ) -> KernelSession:
        """
        Start a kernel session, ready and idle.

        Args:
            environment: Interpreter to use; the usable environment when omitted
            use_default_config: Ignore ``config`` and user configuration
            token: Cancels the wait
            timeout: Hard limit in seconds on the whole operation
            config: Runtime overrides, honored as-is when ``use_default_config`` is False
            cwd: Kernel working directory

        Raises:
            ConnectionFailed: The target is unsupported or the kernel failed to start
            Cancelled: ``token`` fired first (``TimedOut`` when ``timeout`` did)
        """
        if self._disposed:
            raise ConnectionFailed("Execution engine has been disposed")

        with tracer.start_as_current_span("engine.connect_to_notebook_server") as span:
            span.set_attribute("use_default_config", use_default_config)
            if timeout is not None:
                span.set_attribute("timeout", timeout)
            session = await run_cancellable(
                self._connect(environment, use_default_config, config, cwd),
                token,
                timeout=timeout,
                on_abandoned=lambda late: late.dispose(),
            )
            span.set_attribute("session_id", session.id)

        if self._disposed:
            # dispose() ran while the kernel was starting
            await session.dispose()
            raise ConnectionFailed("Execution engine has been disposed")

        self._sessions = self.sessions + [session]
        logger.info(f"Kernel session {session.id} ready", python=session.environment.path)
        return session

    async def dispose(self) -> None:
        """Dispose every session this engine created. Idempotent."""
        self._disposed = True
        sessions, self._sessions = self._sessions, []
        for session in sessions:
            await session.dispose()
