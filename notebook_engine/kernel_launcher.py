"""
Kernel Launcher
===============

Starts, restarts and stops one ipykernel process for a selected interpreter.

The kernelspec is built in memory for the interpreter path, so the kernel
always runs in the environment that passed the capability probes rather than
whatever kernelspec happens to be installed under the same name.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from jupyter_client.asynchronous import AsyncKernelClient
from jupyter_client.kernelspec import KernelSpec, KernelSpecManager, NoSuchKernel
from jupyter_client.manager import AsyncKernelManager

from .exceptions import ConnectionFailed
from .models import EnvironmentDescriptor, KernelConfig
from .observability import get_logger

logger = get_logger(__name__)


def build_kernel_spec(environment: EnvironmentDescriptor) -> KernelSpec:
    """Kernelspec that launches ipykernel with the given interpreter."""
    return KernelSpec(
        argv=[environment.path, "-m", "ipykernel_launcher", "-f", "{connection_file}"],
        display_name=environment.label,
        language="python",
        interrupt_mode="signal",
        metadata={"debugger": False},
    )


class InterpreterKernelSpecManager(KernelSpecManager):
    """Serves exactly one in-memory kernelspec under ``kernel_name``."""

    def __init__(self, kernel_name: str, spec: KernelSpec, **kwargs):
        super().__init__(**kwargs)
        self._kernel_name = kernel_name
        self._spec = spec

    def find_kernel_specs(self) -> Dict[str, str]:
        return {self._kernel_name: ""}

    def get_kernel_spec(self, kernel_name: str) -> KernelSpec:
        if kernel_name != self._kernel_name:
            raise NoSuchKernel(kernel_name)
        return self._spec


class KernelHandle:
    """
    One running kernel process.

    Exclusively owned by a session; ``shutdown`` releases the process, its
    connection file and any private configuration directory.
    """

    def __init__(
        self,
        manager: AsyncKernelManager,
        environment: EnvironmentDescriptor,
        private_dir: Optional[str] = None,
        shutdown_timeout: float = 5.0,
    ):
        self.manager = manager
        self.environment = environment
        self._private_dir = private_dir
        self._shutdown_timeout = shutdown_timeout
        self._shut_down = False

    @property
    def kernel_id(self) -> Optional[str]:
        return self.manager.kernel_id

    def client(self) -> AsyncKernelClient:
        """A fresh client bound to the kernel's current connection info."""
        return self.manager.client()

    async def is_alive(self) -> bool:
        return await self.manager.is_alive()

    async def interrupt(self) -> None:
        await self.manager.interrupt_kernel()

    async def restart(self) -> None:
        # Same launch arguments and environment as the original start
        await self.manager.restart_kernel(now=True)

    async def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        try:
            if self.manager.has_kernel:
                await self.manager.shutdown_kernel(now=True)
        finally:
            if self._private_dir:
                shutil.rmtree(self._private_dir, ignore_errors=True)
                self._private_dir = None
        logger.info(f"[KERNEL] Stopped kernel {self.kernel_id}")


class KernelLauncher:
    """
    Launches kernels for supplied interpreters.

    Args:
        kernel_name: Name the in-memory kernelspec is registered under
        shutdown_timeout: Grace period handed to ``AsyncKernelManager``
    """

    def __init__(self, kernel_name: str = "python3", shutdown_timeout: float = 5.0):
        self.kernel_name = kernel_name
        self.shutdown_timeout = shutdown_timeout

    def _prepare(
        self,
        env: Mapping[str, str],
        config: Optional[KernelConfig],
        use_default_config: bool,
    ):
        kernel_env: Dict[str, str] = dict(env)
        extra_arguments: List[str] = []
        private_dir = None

        if use_default_config:
            # Isolate the kernel from any user-level Jupyter/IPython configuration
            private_dir = tempfile.mkdtemp(prefix="nbengine-")
            kernel_env["JUPYTER_CONFIG_DIR"] = str(Path(private_dir) / "jupyter")
            kernel_env["IPYTHONDIR"] = str(Path(private_dir) / "ipython")
        elif config is not None:
            kernel_env.update(config.env)
            extra_arguments = list(config.extra_arguments)
            if config.config_dir:
                kernel_env["JUPYTER_CONFIG_DIR"] = config.config_dir
                kernel_env["IPYTHONDIR"] = config.config_dir

        return kernel_env, extra_arguments, private_dir

    async def launch(
        self,
        environment: EnvironmentDescriptor,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        config: Optional[KernelConfig] = None,
        use_default_config: bool = True,
    ) -> KernelHandle:
        """
        Start a kernel process running ``environment``.

        Args:
            environment: Interpreter the kernel runs in
            cwd: Working directory of the kernel
            env: Complete environment map for the kernel process
            config: Runtime overrides, honored only when ``use_default_config`` is False
            use_default_config: Run with a private, empty configuration

        Raises:
            ConnectionFailed: The process could not be started
        """
        kernel_env, extra_arguments, private_dir = self._prepare(env or {}, config, use_default_config)

        spec_manager = InterpreterKernelSpecManager(self.kernel_name, build_kernel_spec(environment))
        km = AsyncKernelManager(
            kernel_name=self.kernel_name,
            kernel_spec_manager=spec_manager,
            shutdown_wait_time=self.shutdown_timeout,
        )
        handle = KernelHandle(km, environment, private_dir=private_dir, shutdown_timeout=self.shutdown_timeout)

        try:
            await km.start_kernel(env=kernel_env, extra_arguments=extra_arguments, cwd=cwd)
        except BaseException as e:
            await self._discard(handle)
            if isinstance(e, Exception):
                raise ConnectionFailed(f"Failed to start kernel for {environment.path}: {e}") from e
            raise

        logger.info(
            f"[KERNEL] Started {km.kernel_id}",
            python=environment.path,
            env=environment.env_name,
            default_config=use_default_config,
            cwd=cwd,
        )
        return handle

    @staticmethod
    async def _discard(handle: KernelHandle) -> None:
        try:
            await handle.shutdown()
        except Exception as e:
            logger.warning(f"[KERNEL] Cleanup after failed start raised: {e}")
