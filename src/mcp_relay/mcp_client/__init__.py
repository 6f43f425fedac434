"""
MCP client core: transports, protocol sessions and the tool catalog.
"""
from .catalog import ToolCatalog
from .exceptions import (
    MCPArgumentError,
    MCPAuthError,
    MCPClientError,
    MCPHandshakeError,
    MCPHandshakeTimeoutError,
    MCPMalformedResponseError,
    MCPNotFoundError,
    MCPPeerCrashedError,
    MCPProtocolError,
    MCPSessionClosedError,
    MCPSpawnError,
    MCPTimeoutError,
    MCPToolInvocationError,
    MCPTransportError,
)
from .session import SUPPORTED_PROTOCOL_VERSIONS, ProtocolSession, SessionState

__all__ = [
    "MCPArgumentError",
    "MCPAuthError",
    "MCPClientError",
    "MCPHandshakeError",
    "MCPHandshakeTimeoutError",
    "MCPMalformedResponseError",
    "MCPNotFoundError",
    "MCPPeerCrashedError",
    "MCPProtocolError",
    "MCPSessionClosedError",
    "MCPSpawnError",
    "MCPTimeoutError",
    "MCPToolInvocationError",
    "MCPTransportError",
    "ProtocolSession",
    "SUPPORTED_PROTOCOL_VERSIONS",
    "SessionState",
    "ToolCatalog",
]
