"""
Process collaborator: spawn a program and capture stdout/stderr/exit code.

The environment is always passed explicitly; nothing is inherited from the
engine's own ``os.environ`` unless the caller put it in the map.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Mapping, Optional

from pydantic import BaseModel

from .exceptions import TimedOut
from .observability import get_logger

logger = get_logger(__name__)


class ProcessResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0


class ProcessService(ABC):
    @abstractmethod
    async def exec(
        self,
        file: str,
        args: List[str],
        env: Mapping[str, str],
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ProcessResult:
        """Run ``file`` with ``args`` to completion and capture its output."""


class AsyncioProcessService(ProcessService):
    """ProcessService backed by ``asyncio.create_subprocess_exec``."""

    async def exec(
        self,
        file: str,
        args: List[str],
        env: Mapping[str, str],
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ProcessResult:
        proc = await asyncio.create_subprocess_exec(
            file,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env),
            cwd=cwd,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise TimedOut(timeout) from None
        except asyncio.CancelledError:
            await self._kill(proc)
            raise
        return ProcessResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            returncode=proc.returncode if proc.returncode is not None else -1,
        )

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
        logger.debug(f"Killed abandoned process {proc.pid}")
