"""
Custom exceptions for the MCP client.

Every error carries a short ``kind`` string (used by the CLI to pick an exit
code and to label output) and the ``server`` it originated from, once known.
"""
from typing import Any, Dict, Optional


class MCPClientError(Exception):
    """Base class for all MCP client errors."""
    kind = "error"

    def __init__(self, message: str, server: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.server = server

    def with_server(self, server: str) -> "MCPClientError":
        """Attributes the error to `server` unless it already names one."""
        if self.server is None:
            self.server = server
        return self


class MCPSpawnError(MCPClientError):
    """Raised when a stdio server's executable is missing or cannot be started."""
    kind = "spawn"

    def __init__(self, message: str, command: Optional[str] = None, server: Optional[str] = None):
        super().__init__(message, server=server)
        self.command = command


class MCPTransportError(MCPClientError):
    """Raised when the underlying byte channel fails."""
    CONNECTION_LOST = "connection_lost"
    IO_FAILURE = "io_failure"

    def __init__(self, message: str, kind: str = IO_FAILURE, server: Optional[str] = None):
        super().__init__(message, server=server)
        self.kind = kind


class MCPPeerCrashedError(MCPTransportError):
    """Raised when a stdio server process exits while the session is live."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr_tail: Optional[list[str]] = None,
        server: Optional[str] = None,
    ):
        super().__init__(message, kind="peer_crashed", server=server)
        self.returncode = returncode
        self.stderr_tail = list(stderr_tail or [])


class MCPMalformedMessageError(MCPTransportError):
    """Raised by a frame decoder for a complete frame that is not valid JSON.

    The stream itself stays usable; the read loop logs and skips the frame.
    """

    def __init__(self, message: str, raw: bytes = b"", server: Optional[str] = None):
        super().__init__(message, kind=MCPTransportError.IO_FAILURE, server=server)
        self.raw = raw


class MCPHandshakeError(MCPClientError):
    """Raised when the initialize exchange fails or negotiates an unsupported version."""
    kind = "handshake"


class MCPRequestError(MCPClientError):
    """Base class for failures of a single request."""


class MCPTimeoutError(MCPRequestError):
    """Raised when a request gets no reply within its deadline."""
    kind = "timeout"

    def __init__(self, message: str, method: Optional[str] = None, timeout: Optional[float] = None,
                 server: Optional[str] = None):
        super().__init__(message, server=server)
        self.method = method
        self.timeout = timeout


class MCPHandshakeTimeoutError(MCPHandshakeError, MCPTimeoutError):
    """The server did not answer `initialize` in time."""
    kind = "timeout"

    def __init__(self, message: str, timeout: Optional[float] = None, server: Optional[str] = None):
        MCPTimeoutError.__init__(self, message, method="initialize", timeout=timeout, server=server)


class MCPMalformedResponseError(MCPRequestError):
    """Raised when a reply has neither a usable result nor an error."""
    kind = "malformed"


class MCPProtocolError(MCPClientError):
    """Raised for errors related to the JSONRPC protocol itself,
    including error responses returned by the server."""
    kind = "protocol"

    def __init__(self, message: str, error_code: Optional[int] = None, error_data: Optional[Any] = None,
                 server: Optional[str] = None):
        super().__init__(message, server=server)
        self.error_code = error_code
        self.error_data = error_data


class MCPToolInvocationError(MCPProtocolError):
    """Raised when invoking a tool on the MCP server results in an error
    reported by the server's JSONRPC error response for that tool call."""

    def __init__(self, tool_name: str, message: str, error_code: Optional[int] = None,
                 error_data: Optional[Dict] = None, server: Optional[str] = None):
        full_message = f"Error invoking tool '{tool_name}': {message}"
        super().__init__(full_message, error_code=error_code, error_data=error_data, server=server)
        self.tool_name = tool_name
        self.original_message = message


class MCPAuthError(MCPClientError):
    """Raised for authentication specific errors during MCP communication."""
    kind = "auth"

    def __init__(self, message: str, server_error: Optional[Any] = None, requires_reauth: bool = False,
                 status: Optional[int] = None, server: Optional[str] = None):
        super().__init__(message, server=server)
        self.server_error = server_error
        self.requires_reauth = requires_reauth
        self.status = status


class MCPNotFoundError(MCPClientError):
    """Raised when a server or tool name is unknown."""
    kind = "not_found"


class MCPSessionClosedError(MCPClientError):
    """Raised for operations on a session that is closed or has failed."""
    kind = "session_closed"


class MCPArgumentError(MCPClientError):
    """Raised when tool arguments do not satisfy the tool's input schema."""
    kind = "invalid_argument"
