"""
Pydantic models for MCP Relay.
"""
from .auth import Credential, OAuthError, TokenRequest
from .common import BasePydanticModel, FramingType, TransportType
from .mcp import (
    ContentItem,
    InitializeResult,
    PingResult,
    ServerCapabilities,
    ServerDescriptor,
    ServerInfo,
    ToolCallResult,
    ToolDescriptor,
    ToolsListResult,
)

__all__ = [
    "BasePydanticModel",
    "ContentItem",
    "Credential",
    "FramingType",
    "InitializeResult",
    "OAuthError",
    "PingResult",
    "ServerCapabilities",
    "ServerDescriptor",
    "ServerInfo",
    "TokenRequest",
    "ToolCallResult",
    "ToolDescriptor",
    "ToolsListResult",
    "TransportType",
]
