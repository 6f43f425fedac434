"""
Protocol session: handshake, request/response correlation and lifecycle for
one MCP server.

A session owns exactly one transport and runs exactly one read loop, the only
reader of that transport. Callers suspend on a future registered in the
pending-request table; the read loop completes it when the matching response
arrives, or the session fails every pending future at once when the transport
dies or the session is closed.
"""
import asyncio
import inspect
import itertools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from pydantic import ValidationError

from .. import __version__
from ..config import Config
from ..models.common import TransportType
from ..models.jsonrpc import (
    METHOD_NOT_FOUND,
    is_notification,
    is_request,
    is_response,
    make_error,
    make_notification,
    make_request,
    make_result,
)
from ..models.mcp import InitializeResult, PingResult, ServerDescriptor
from .exceptions import (
    MCPAuthError,
    MCPClientError,
    MCPHandshakeError,
    MCPHandshakeTimeoutError,
    MCPMalformedMessageError,
    MCPMalformedResponseError,
    MCPProtocolError,
    MCPSessionClosedError,
    MCPTimeoutError,
    MCPToolInvocationError,
    MCPTransportError,
)
from .transport.base import Transport

logger = structlog.get_logger(__name__)

SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

TransportFactory = Callable[[ServerDescriptor], Awaitable[Transport]]
NotificationHandler = Callable[[dict[str, Any]], Any]
StateListener = Callable[["SessionState", "SessionState"], None]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class PendingRequest:
    request_id: int
    method: str
    message: dict[str, Any]
    future: asyncio.Future = field(repr=False)
    sent_at: float = field(default_factory=time.monotonic)


class PendingRequests:
    """
    In-flight requests keyed by id. All methods are synchronous so every
    mutation is atomic with respect to the event loop, and completion is
    guarded by `future.done()` so an entry is fulfilled at most once.
    """

    def __init__(self):
        self._entries: dict[int | str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def register(self, request_id: int, method: str, message: dict[str, Any]) -> PendingRequest:
        if request_id in self._entries:
            raise ValueError(f"Request id {request_id} is already pending")
        future = asyncio.get_running_loop().create_future()
        entry = PendingRequest(request_id=request_id, method=method, message=message, future=future)
        self._entries[request_id] = entry
        return entry

    def complete(self, request_id: Any, response: dict[str, Any]) -> bool:
        """Hands `response` to the waiter. Returns False for unknown or already settled ids."""
        entry = self._entries.pop(request_id, None)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(response)
        return True

    def discard(self, request_id: Any) -> PendingRequest | None:
        return self._entries.pop(request_id, None)

    def fail_all(self, error: BaseException) -> int:
        entries, self._entries = self._entries, {}
        failed = 0
        for entry in entries.values():
            if not entry.future.done():
                entry.future.set_exception(error)
                # The waiter may already be gone (timed out or cancelled).
                entry.future.exception()
                failed += 1
        return failed


class ProtocolSession:
    """
    One live conversation with one MCP server.

    States: UNINITIALIZED -> HANDSHAKING -> READY -> CLOSED, with FAILED
    reachable from any non-terminal state when the transport dies. A session
    never reconnects by itself; `connect()` on a CLOSED or FAILED session
    builds a fresh transport.
    """

    def __init__(
        self,
        descriptor: ServerDescriptor,
        config: Config | None = None,
        transport_factory: TransportFactory | None = None,
        credentials: Any | None = None,
    ):
        self.descriptor = descriptor
        self.config = config or Config()
        self._transport_factory = transport_factory
        self._credentials = credentials
        self._state = SessionState.UNINITIALIZED
        self._transport: Transport | None = None
        self._reader_task: asyncio.Task | None = None
        self._pending = PendingRequests()
        self._ids = itertools.count(1)
        self._connect_lock = asyncio.Lock()
        self._server_request_tasks: set[asyncio.Task] = set()
        self._notification_handlers: dict[str, list[NotificationHandler]] = {}
        self._catch_all_handlers: list[NotificationHandler] = []
        self._state_listeners: list[StateListener] = []
        self.initialize_result: InitializeResult | None = None
        self.failure: MCPClientError | None = None
        self.logger = logger.bind(server_name=descriptor.name, transport=descriptor.transport)

    # -- introspection ---------------------------------------------------

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def protocol_version(self) -> str | None:
        return self.initialize_result.protocol_version if self.initialize_result else None

    # -- listeners and handlers ------------------------------------------

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_notification(self, method: str | None, handler: NotificationHandler) -> None:
        """Registers a handler for `method`, or for every notification when `method` is None."""
        if method is None:
            self._catch_all_handlers.append(handler)
        else:
            self._notification_handlers.setdefault(method, []).append(handler)

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self.logger.debug("Session state changed.", old_state=old_state.value, new_state=new_state.value)
        for listener in list(self._state_listeners):
            try:
                listener(old_state, new_state)
            except Exception:
                self.logger.exception("State listener raised.", listener=repr(listener))

    # -- lifecycle -------------------------------------------------------

    async def _open_transport(self) -> Transport:
        if self._transport_factory is not None:
            return await self._transport_factory(self.descriptor)

        # Imported here to keep the session importable without pulling in every transport.
        from .auth_client import AuthenticatedClient
        from .supervisor import ProcessSupervisor
        from .transport.http import HttpTransport
        from .transport.stdio import StdioTransport

        session_cfg = self.config.session
        if self.descriptor.transport == TransportType.STDIO:
            stdio = StdioTransport(
                self.descriptor,
                ProcessSupervisor(grace_period=session_cfg.terminate_grace_seconds),
                max_frame_bytes=session_cfg.max_frame_bytes,
            )
            await stdio.start()
            return stdio

        http = HttpTransport(self.descriptor, self.config.http)
        try:
            if self._credentials is not None:
                client = AuthenticatedClient(http, self._credentials)
                await client.open()
                return client
            if self.descriptor.auth_required:
                raise MCPAuthError(
                    f"Server '{self.name}' requires authentication but no credential store is configured."
                )
            await http.connect()
            return http
        except (Exception, asyncio.CancelledError):
            await http.close()
            raise

    async def connect(self) -> InitializeResult:
        """Opens the transport and performs the initialize handshake.

        Raises:
            MCPHandshakeError: rejected, malformed or unsupported handshake.
            MCPHandshakeTimeoutError: no initialize response in time.
            MCPSpawnError, MCPTransportError, MCPAuthError: propagated unchanged.
        """
        async with self._connect_lock:
            if self._state == SessionState.READY and self.initialize_result is not None:
                return self.initialize_result

            self.failure = None
            self._pending = PendingRequests()
            self._set_state(SessionState.HANDSHAKING)
            handshake_timeout = self.config.session.handshake_timeout_seconds
            self.logger.debug("Connecting.", target=self.descriptor.target)
            try:
                self._transport = await self._open_transport()
                self._reader_task = asyncio.create_task(self._read_loop(self._transport))
                result = await self._request("initialize", self._initialize_params(), timeout=handshake_timeout)
                self.initialize_result = self._validate_initialize_result(result)
            except MCPTimeoutError as e:
                error = MCPHandshakeTimeoutError(
                    f"Server did not answer initialize within {handshake_timeout}s", timeout=handshake_timeout
                )
                await self._abort(error)
                raise error from e
            except (MCPProtocolError, MCPMalformedResponseError) as e:
                error = MCPHandshakeError(f"Server rejected initialize: {e}")
                await self._abort(error)
                raise error from e
            except MCPClientError as e:
                await self._abort(e)
                raise e.with_server(self.name)
            except (Exception, asyncio.CancelledError) as e:
                await self._abort(MCPHandshakeError(f"Handshake aborted: {e!r}"))
                raise

            self._set_state(SessionState.READY)
            try:
                await self.notify("notifications/initialized")
            except MCPClientError as e:
                await self._abort(e)
                raise e.with_server(self.name)

            info = self.initialize_result.server_info
            self.logger.info(
                "Session ready.",
                protocol_version=self.initialize_result.protocol_version,
                server_info_name=info.name,
                server_info_version=info.version,
            )
            return self.initialize_result

    def _initialize_params(self) -> dict[str, Any]:
        session_cfg = self.config.session
        return {
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {
                "name": session_cfg.client_name,
                "version": session_cfg.client_version or __version__,
            },
        }

    def _validate_initialize_result(self, result: dict[str, Any]) -> InitializeResult:
        try:
            parsed = InitializeResult.model_validate(result)
        except ValidationError as e:
            raise MCPHandshakeError(f"Malformed initialize result: {e.errors()[0]['msg']}") from e
        if parsed.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            raise MCPHandshakeError(
                f"Server negotiated unsupported protocol version {parsed.protocol_version!r}; "
                f"supported: {', '.join(SUPPORTED_PROTOCOL_VERSIONS)}"
            )
        return parsed

    async def _abort(self, error: MCPClientError) -> None:
        """Handshake failure: FAILED, pending requests failed, transport released."""
        self.failure = error.with_server(self.name)
        if self._state not in (SessionState.CLOSED, SessionState.FAILED):
            self._set_state(SessionState.FAILED)
        self._pending.fail_all(error)
        await self._release_transport()

    async def _fail(self, error: MCPClientError) -> None:
        if self._state in (SessionState.CLOSED, SessionState.FAILED):
            return
        error.with_server(self.name)
        self.failure = error
        self.logger.warning("Session failed.", error=str(error), error_kind=error.kind, pending=len(self._pending))
        self._set_state(SessionState.FAILED)
        self._pending.fail_all(error)
        await self._release_transport()

    async def _release_transport(self) -> None:
        transport, self._transport = self._transport, None
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if transport is not None:
            await transport.close()

    async def close(self) -> None:
        """Closes the session. Pending requests fail with MCPSessionClosedError. Idempotent."""
        if self._state == SessionState.CLOSED:
            return
        self._set_state(SessionState.CLOSED)
        failed = self._pending.fail_all(MCPSessionClosedError(f"Session for '{self.name}' was closed", server=self.name))
        await self._release_transport()
        tasks = [t for t in self._server_request_tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.debug("Session closed.", failed_pending=failed)

    async def __aenter__(self) -> "ProtocolSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # -- requests --------------------------------------------------------

    def _ensure_ready(self) -> None:
        if self._state == SessionState.READY:
            return
        if self._state == SessionState.FAILED and self.failure is not None:
            raise MCPSessionClosedError(
                f"Session for '{self.name}' failed earlier: {self.failure}", server=self.name
            ) from self.failure
        raise MCPSessionClosedError(f"Session for '{self.name}' is {self._state.value}", server=self.name)

    async def call(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> dict[str, Any]:
        """Sends a request and waits for its result.

        Raises:
            MCPSessionClosedError: the session is not READY.
            MCPTimeoutError: no response within `timeout`.
            MCPProtocolError / MCPToolInvocationError: the server answered with an error.
            MCPMalformedResponseError: the response carried no result.
            MCPTransportError: the transport failed; the session is FAILED afterwards.
        """
        self._ensure_ready()
        if timeout is None:
            session_cfg = self.config.session
            timeout = session_cfg.tool_timeout_seconds if method == "tools/call" else session_cfg.request_timeout_seconds
        try:
            return await self._request(method, params, timeout=timeout)
        except MCPClientError as e:
            raise e.with_server(self.name)

    async def _request(self, method: str, params: dict[str, Any] | None, timeout: float) -> dict[str, Any]:
        transport = self._transport
        if transport is None:
            raise MCPSessionClosedError(f"Session for '{self.name}' has no transport", server=self.name)

        request_id = next(self._ids)
        message = make_request(request_id, method, params)
        entry = self._pending.register(request_id, method, message)
        log = self.logger.bind(method=method, request_id=request_id)
        # One deadline covers the send too: an HTTP send is the whole round trip.
        try:
            async with asyncio.timeout(timeout):
                await transport.send(message)
                log.debug("Request sent.")
                response = await entry.future
        except TimeoutError:
            log.warning("Request timed out.", timeout=timeout)
            raise MCPTimeoutError(
                f"No response to '{method}' within {timeout}s", method=method, timeout=timeout
            ) from None
        except MCPTransportError as e:
            await self._fail(e)
            raise
        finally:
            self._pending.discard(request_id)

        elapsed_ms = (time.monotonic() - entry.sent_at) * 1000
        log.debug("Response received.", elapsed_ms=round(elapsed_ms, 2), error_present="error" in response)
        return self._unwrap_response(method, params, response)

    def _unwrap_response(self, method: str, params: dict[str, Any] | None, response: dict[str, Any]) -> dict[str, Any]:
        if "error" in response:
            error = response["error"] if isinstance(response["error"], dict) else {"message": str(response["error"])}
            code = error.get("code")
            message = error.get("message", "Unknown error")
            data = error.get("data")
            if method == "tools/call":
                tool_name = (params or {}).get("name", "<unknown>")
                raise MCPToolInvocationError(tool_name, message, error_code=code, error_data=data)
            raise MCPProtocolError(f"Server error {code} for '{method}': {message}", error_code=code, error_data=data)
        result = response.get("result")
        if not isinstance(result, dict):
            raise MCPMalformedResponseError(f"Response to '{method}' has no result object")
        return result

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if self._state not in (SessionState.READY, SessionState.HANDSHAKING) or self._transport is None:
            raise MCPSessionClosedError(f"Session for '{self.name}' is {self._state.value}", server=self.name)
        timeout = self.config.session.request_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                await self._transport.send(make_notification(method, params))
        except TimeoutError:
            raise MCPTimeoutError(
                f"Notification '{method}' not accepted within {timeout}s", method=method, timeout=timeout
            ) from None
        except MCPTransportError as e:
            await self._fail(e)
            raise

    async def ping(self, timeout: float | None = None) -> PingResult:
        """Round-trips a protocol `ping` and reports the negotiated server identity."""
        started = time.monotonic()
        await self.call("ping", timeout=timeout)
        info = self.initialize_result.server_info
        return PingResult(
            server=self.name,
            protocol_version=self.initialize_result.protocol_version,
            server_name=info.name,
            server_version=info.version,
            elapsed_ms=(time.monotonic() - started) * 1000,
        )

    # -- inbound ---------------------------------------------------------

    async def _read_loop(self, transport: Transport) -> None:
        while True:
            try:
                message = await transport.receive()
            except MCPMalformedMessageError as e:
                self.logger.warning("Skipping malformed frame.", error=str(e))
                continue
            except MCPTransportError as e:
                if self._transport is transport:
                    await self._fail(e)
                return
            for item in message if isinstance(message, list) else [message]:
                self._dispatch(item)

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            self.logger.warning("Dropping non-object message.", message_type=type(message).__name__)
            return
        if is_response(message):
            if not self._pending.complete(message.get("id"), message):
                self.logger.debug("Dropping unmatched response.", response_id=message.get("id"))
        elif is_request(message):
            task = asyncio.create_task(self._answer_server_request(message))
            self._server_request_tasks.add(task)
            task.add_done_callback(self._server_request_tasks.discard)
        elif is_notification(message):
            self._handle_notification(message)
        else:
            self.logger.debug("Dropping unrecognised message.", keys=sorted(message))

    async def _answer_server_request(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method == "ping":
            reply = make_result(message["id"], {})
        else:
            self.logger.debug("Rejecting unsupported server request.", method=method)
            reply = make_error(message["id"], METHOD_NOT_FOUND, f"Method not found: {method}")
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.send(reply)
        except MCPClientError as e:
            self.logger.warning("Failed to answer server request.", method=method, error=str(e))

    def _handle_notification(self, message: dict[str, Any]) -> None:
        method = message.get("method", "")
        handlers = [*self._notification_handlers.get(method, []), *self._catch_all_handlers]
        if not handlers:
            self.logger.debug("Dropping notification without handler.", method=method)
            return
        for handler in handlers:
            try:
                outcome = handler(message)
            except Exception:
                self.logger.exception("Notification handler raised.", method=method)
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._server_request_tasks.add(task)
                task.add_done_callback(self._server_request_tasks.discard)
