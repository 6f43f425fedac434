"""
Routes user operations to per-server protocol sessions.
"""
import asyncio
import json
from typing import Any

import structlog

from ..config import Config
from ..models.mcp import PingResult, ServerDescriptor, ToolCallResult, ToolDescriptor
from ..registry import ServerRegistry
from ..schema.flags import parse_args, parse_schema, validate_arguments
from .catalog import ToolCatalog
from .exceptions import MCPArgumentError, MCPClientError, MCPMalformedResponseError
from .session import ProtocolSession, SessionState, TransportFactory

logger = structlog.get_logger(__name__)


class Dispatcher:
    """
    Owns one ProtocolSession per server for the lifetime of an invocation.

    A session is created and connected on first use. Once a session has failed
    it stays failed: further operations on it raise MCPSessionClosedError until
    `reconnect(name)` is called explicitly, so a crashed server is never
    restarted behind the caller's back.
    """

    def __init__(
        self,
        registry: ServerRegistry,
        config: Config | None = None,
        credentials: Any | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        self.registry = registry
        self.config = config or Config()
        self.credentials = credentials
        self.transport_factory = transport_factory
        self.catalog = ToolCatalog()
        self._sessions: dict[str, ProtocolSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.logger = logger.bind(component="dispatcher")

    @property
    def sessions(self) -> dict[str, ProtocolSession]:
        return dict(self._sessions)

    def _resolve(self, server: str | None) -> ServerDescriptor:
        return self.registry.resolve(server)

    async def session_for(self, server: str | None = None) -> ProtocolSession:
        """Live session for `server` (or the default server), connecting on first use."""
        descriptor = self._resolve(server)
        name = descriptor.name
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            session = self._sessions.get(name)
            if session is None:
                session = ProtocolSession(
                    descriptor,
                    config=self.config,
                    transport_factory=self.transport_factory,
                    credentials=self.credentials,
                )
                self.catalog.attach(session)
                self._sessions[name] = session
                try:
                    await session.connect()
                except MCPClientError as e:
                    raise e.with_server(name)
            return session

    async def reconnect(self, server: str | None = None) -> ProtocolSession:
        """Replaces the session for `server` with a freshly connected one."""
        descriptor = self._resolve(server)
        name = descriptor.name
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            old = self._sessions.pop(name, None)
            if old is not None:
                await old.close()
        self.logger.info("Reconnecting to server.", server_name=name)
        return await self.session_for(name)

    async def ping(self, server: str | None = None) -> PingResult:
        session = await self.session_for(server)
        try:
            return await session.ping()
        except MCPClientError as e:
            raise e.with_server(session.name)

    async def list_tools(self, server: str | None = None) -> list[ToolDescriptor]:
        session = await self.session_for(server)
        try:
            return await self.catalog.list(session)
        except MCPClientError as e:
            raise e.with_server(session.name)

    async def describe_tool(self, tool_name: str, server: str | None = None) -> ToolDescriptor:
        session = await self.session_for(server)
        try:
            return await self.catalog.describe(session, tool_name)
        except MCPClientError as e:
            raise e.with_server(session.name)

    async def run_tool(
        self,
        tool_name: str,
        server: str | None = None,
        arguments: dict[str, Any] | None = None,
        flag_args: list[str] | None = None,
        input_json: str | None = None,
        timeout: float | None = None,
    ) -> ToolCallResult:
        """Coerces arguments against the tool's input schema and invokes it.

        Arguments come from exactly one of `arguments` (already typed),
        `input_json` (a JSON object string) or `flag_args` (``--flag value``).
        """
        session = await self.session_for(server)
        try:
            tool = await self.catalog.describe(session, tool_name)
            call_arguments = self._coerce_arguments(tool, arguments, flag_args, input_json)
            result = await session.call(
                "tools/call",
                {"name": tool.name, "arguments": call_arguments},
                timeout=timeout if timeout is not None else self.config.session.tool_timeout_seconds,
            )
            try:
                return ToolCallResult.model_validate(result)
            except ValueError as e:
                raise MCPMalformedResponseError(f"Malformed tools/call result: {e}") from e
        except MCPClientError as e:
            raise e.with_server(session.name)

    @staticmethod
    def _coerce_arguments(
        tool: ToolDescriptor,
        arguments: dict[str, Any] | None,
        flag_args: list[str] | None,
        input_json: str | None,
    ) -> dict[str, Any]:
        if input_json is not None:
            if flag_args:
                raise MCPArgumentError("Use either --input-json or tool flags, not both")
            try:
                arguments = json.loads(input_json)
            except json.JSONDecodeError as e:
                raise MCPArgumentError(f"Invalid --input-json: {e}") from e
        if arguments is None:
            arguments = parse_args(flag_args or [], parse_schema(tool.input_schema))
        validate_arguments(tool.input_schema, arguments)
        return arguments

    async def close(self) -> None:
        """Closes every session, whether it connected or not."""
        sessions, self._sessions = list(self._sessions.values()), {}
        results = await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)
        for session, outcome in zip(sessions, results):
            if isinstance(outcome, BaseException):
                self.logger.warning("Error while closing session.", server_name=session.name, error=str(outcome))

    async def __aenter__(self) -> "Dispatcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def session_states(self) -> dict[str, SessionState]:
        return {name: session.state for name, session in self._sessions.items()}
