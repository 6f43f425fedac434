"""
MCP transport over the stdin/stdout pipes of a spawned server process.
"""
import asyncio
from typing import Any

import structlog

from ...models.common import FramingType
from ...models.mcp import ServerDescriptor
from ..exceptions import MCPPeerCrashedError, MCPTransportError
from ..framing import FrameBuffer, encode_frame
from ..supervisor import ProcessSupervisor, SubprocessHandle

logger = structlog.get_logger(__name__)

READ_CHUNK_BYTES = 65536
# How long to wait for the exit status after stdout hits EOF.
EXIT_STATUS_WAIT_SECONDS = 1.0


class StdioTransport:
    """
    Speaks framed JSON-RPC to a subprocess. The process itself is owned by the
    ProcessSupervisor; this class only starts it, talks to it and asks the
    supervisor to stop it.
    """

    def __init__(
        self,
        descriptor: ServerDescriptor,
        supervisor: ProcessSupervisor | None = None,
        max_frame_bytes: int = 10 * 1024 * 1024,
        grace_period: float | None = None,
    ):
        self.descriptor = descriptor
        self.supervisor = supervisor or ProcessSupervisor()
        self.grace_period = grace_period
        self.framing = FramingType(descriptor.framing)
        self._frames = FrameBuffer(self.framing, max_frame_bytes=max_frame_bytes)
        self._handle: SubprocessHandle | None = None
        self._write_lock = asyncio.Lock()
        self._closing = False
        self._closed = False
        self.logger = logger.bind(server_name=descriptor.name, transport="stdio")

    @property
    def handle(self) -> SubprocessHandle | None:
        return self._handle

    @property
    def is_connected(self) -> bool:
        return self._handle is not None and self._handle.is_running and not self._closing

    async def start(self) -> None:
        """Spawns the server process. Raises MCPSpawnError."""
        if self._handle is not None:
            return
        self._handle = await self.supervisor.spawn(
            self.descriptor.command or "",
            self.descriptor.args,
            env=self.descriptor.env,
            cwd=self.descriptor.cwd,
        )
        self.supervisor.watch(self._handle, self._on_process_exit)
        self.logger = self.logger.bind(pid=self._handle.pid)

    def _on_process_exit(self, returncode: int | None) -> None:
        # Wake a reader blocked on a pipe a grandchild may still hold open.
        if self._handle is not None and self._handle.process.stdout is not None:
            self._handle.process.stdout.feed_eof()

    async def send(self, message: dict[str, Any]) -> None:
        if self._handle is None or self._closing:
            raise MCPTransportError("Transport not connected", kind=MCPTransportError.CONNECTION_LOST)
        if not self._handle.is_running:
            raise self._crash_error()
        stdin = self._handle.process.stdin
        if stdin is None or stdin.is_closing():
            raise MCPTransportError("Server stdin is closed", kind=MCPTransportError.CONNECTION_LOST)

        data = encode_frame(message, self.framing)
        async with self._write_lock:
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise MCPTransportError(
                    f"Server closed its input: {e}", kind=MCPTransportError.CONNECTION_LOST
                ) from e
            except OSError as e:
                raise MCPTransportError(f"Failed to send message: {e}", kind=MCPTransportError.IO_FAILURE) from e

    async def receive(self) -> dict[str, Any]:
        if self._handle is None:
            raise MCPTransportError("Transport not connected", kind=MCPTransportError.CONNECTION_LOST)
        stdout = self._handle.process.stdout
        if stdout is None:
            raise MCPTransportError("Server stdout is not piped", kind=MCPTransportError.IO_FAILURE)

        while True:
            message = self._frames.pop()
            if message is not None:
                return message
            try:
                chunk = await stdout.read(READ_CHUNK_BYTES)
            except OSError as e:
                raise MCPTransportError(f"Failed to read from server: {e}", kind=MCPTransportError.IO_FAILURE) from e
            if not chunk:
                raise await self._eof_error()
            self._frames.feed(chunk)

    async def _eof_error(self) -> MCPTransportError:
        if self._closing:
            return MCPTransportError("Transport closed", kind=MCPTransportError.CONNECTION_LOST)
        process = self._handle.process
        try:
            await asyncio.wait_for(process.wait(), timeout=EXIT_STATUS_WAIT_SECONDS)
        except TimeoutError:
            return MCPTransportError("Server closed its output", kind=MCPTransportError.CONNECTION_LOST)
        if self._closing:
            return MCPTransportError("Transport closed", kind=MCPTransportError.CONNECTION_LOST)
        stderr_task = self._handle.stderr_task
        if stderr_task is not None and not stderr_task.done():
            await asyncio.wait({stderr_task}, timeout=EXIT_STATUS_WAIT_SECONDS)
        return self._crash_error()

    def _crash_error(self) -> MCPPeerCrashedError:
        handle = self._handle
        tail = handle.stderr_lines()
        message = f"Server process {handle.command} exited with code {handle.returncode}"
        if tail:
            message += f": {tail[-1]}"
        return MCPPeerCrashedError(message, returncode=handle.returncode, stderr_tail=tail)

    async def close(self) -> None:
        if self._closed:
            return
        self._closing = True
        self._closed = True
        if self._handle is not None:
            await self.supervisor.terminate(self._handle, grace_period=self.grace_period)
            self.logger.debug("Stdio transport closed.", returncode=self._handle.returncode)
