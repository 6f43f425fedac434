"""
Lifecycle management for stdio MCP server subprocesses.

All spawning, signalling and reaping of child processes happens here; the
transports only read and write the pipes of a `SubprocessHandle`.
"""
import asyncio
import os
import shutil
import signal
import sys
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

import structlog

from ..utils.env import build_child_env
from .exceptions import MCPSpawnError

logger = structlog.get_logger(__name__)

STDERR_TAIL_LINES = 20
DEFAULT_GRACE_PERIOD_SECONDS = 5.0


@dataclass
class SubprocessHandle:
    pid: int
    command: str
    process: asyncio.subprocess.Process
    stderr_tail: deque = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    terminate_requested: bool = False
    stderr_task: asyncio.Task | None = None
    watch_task: asyncio.Task | None = None

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    def stderr_lines(self) -> list[str]:
        return list(self.stderr_tail)


class ProcessSupervisor:
    """Spawns, watches and terminates MCP server processes."""

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD_SECONDS):
        self.grace_period = grace_period
        self.logger = logger.bind(component="supervisor")

    async def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> SubprocessHandle:
        """Starts `command` with piped stdio.

        The child gets the host environment plus `env` (with ``${env:VAR}``
        references expanded) and runs in its own process session so the whole
        group can be signalled on shutdown.

        Raises:
            MCPSpawnError: the executable cannot be found or started.
        """
        executable = shutil.which(command)
        if executable is None:
            raise MCPSpawnError(f"Executable not found: {command}", command=command)

        kwargs = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = 0x00000200  # CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_child_env(env or {}),
                cwd=cwd,
                **kwargs,
            )
        except OSError as e:
            raise MCPSpawnError(f"Failed to start {command}: {e}", command=command) from e

        handle = SubprocessHandle(pid=process.pid, command=command, process=process)
        handle.stderr_task = asyncio.create_task(self._drain_stderr(handle))
        self.logger.debug("Spawned MCP server process.", command=command, args=list(args), pid=process.pid)
        return handle

    async def _drain_stderr(self, handle: SubprocessHandle) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except (OSError, ValueError) as e:
                self.logger.debug("Stderr reader stopped.", pid=handle.pid, error=str(e))
                return
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if text:
                handle.stderr_tail.append(text)
                self.logger.debug("Server stderr.", pid=handle.pid, line=text)

    def watch(self, handle: SubprocessHandle, on_exit: Callable[[int | None], None]) -> asyncio.Task:
        """Invokes `on_exit(returncode)` if the process dies without `terminate` being asked for."""

        async def _wait() -> None:
            returncode = await handle.process.wait()
            if handle.terminate_requested:
                return
            # Let the stderr drain catch the last words of the process.
            if handle.stderr_task is not None and not handle.stderr_task.done():
                await asyncio.wait({handle.stderr_task}, timeout=0.5)
            self.logger.warning(
                "MCP server process exited unexpectedly.",
                pid=handle.pid,
                returncode=returncode,
                stderr_tail=handle.stderr_lines(),
            )
            on_exit(returncode)

        handle.watch_task = asyncio.create_task(_wait())
        return handle.watch_task

    async def terminate(self, handle: SubprocessHandle, grace_period: float | None = None) -> int | None:
        """Stops the process: close stdin, SIGTERM, wait, then SIGKILL. Always reaps."""
        handle.terminate_requested = True
        grace = self.grace_period if grace_period is None else grace_period
        process = handle.process

        if process.stdin is not None and not process.stdin.is_closing():
            try:
                process.stdin.close()
            except OSError as e:
                self.logger.debug("Stdin close error during shutdown.", pid=handle.pid, error=str(e))

        if process.returncode is None:
            self._signal(handle, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except TimeoutError:
                self.logger.warning("Process ignored SIGTERM, killing.", pid=handle.pid, grace_period=grace)
                self._signal(handle, getattr(signal, "SIGKILL", signal.SIGTERM))
                await process.wait()
        else:
            await process.wait()

        for task in (handle.watch_task, handle.stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self.logger.debug("MCP server process reaped.", pid=handle.pid, returncode=process.returncode)
        return process.returncode

    def _signal(self, handle: SubprocessHandle, sig: int) -> None:
        try:
            if sys.platform == "win32":
                if sig == signal.SIGTERM:
                    handle.process.terminate()
                else:
                    handle.process.kill()
            else:
                os.killpg(handle.pid, sig)
        except ProcessLookupError:
            self.logger.debug("Process already gone.", pid=handle.pid, signal=int(sig))
