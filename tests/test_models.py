"""
Unit tests for the pydantic models and JSON-RPC helpers.
"""
import time

import pytest
from pydantic import ValidationError

from mcp_relay.models.auth import Credential
from mcp_relay.models.jsonrpc import (
    is_notification,
    is_request,
    is_response,
    make_error,
    make_notification,
    make_request,
)
from mcp_relay.models.mcp import InitializeResult, ServerDescriptor, ToolCallResult


class TestServerDescriptor:
    def test_stdio_requires_command(self):
        with pytest.raises(ValidationError, match="require a command"):
            ServerDescriptor(name="s", transport="stdio")

    def test_http_requires_valid_url(self):
        with pytest.raises(ValidationError, match="require a url"):
            ServerDescriptor(name="h", transport="http")
        with pytest.raises(ValidationError, match="http:// or https://"):
            ServerDescriptor(name="h", transport="http", url="ftp://example.com")

    def test_unknown_transport(self):
        with pytest.raises(ValidationError):
            ServerDescriptor(name="w", transport="websocket", url="ws://example.com")

    def test_is_immutable(self):
        descriptor = ServerDescriptor(name="s", transport="stdio", command="npx")
        with pytest.raises(ValidationError):
            descriptor.command = "other"

    def test_sse_channel_detection(self):
        assert ServerDescriptor(name="a", transport="http", url="https://x.example.com/sse").uses_sse_channel
        assert ServerDescriptor(name="b", transport="http", url="https://x.example.com/mcp", sse=True).uses_sse_channel
        assert not ServerDescriptor(name="c", transport="http", url="https://x.example.com/mcp").uses_sse_channel

    def test_target(self):
        descriptor = ServerDescriptor(name="s", transport="stdio", command="npx", args=["-y", "pkg"])
        assert descriptor.target == "npx -y pkg"


def test_initialize_result_aliases():
    result = InitializeResult.model_validate({
        "protocolVersion": "2025-06-18",
        "capabilities": {"tools": {"listChanged": True}, "experimental": {}},
        "serverInfo": {"name": "srv", "version": "1.0", "title": "Server"},
    })
    assert result.protocol_version == "2025-06-18"
    assert result.capabilities.tools_list_changed
    assert result.server_info.version == "1.0"


def test_tool_call_result_wire_format():
    result = ToolCallResult.model_validate({
        "content": [{"type": "image", "data": "aGk=", "mimeType": "image/png"}],
        "isError": True,
        "_meta": {"trace": "t1"},
    })
    assert result.is_error
    assert result.content[0].mime_type == "image/png"
    assert result.to_wire() == {
        "content": [{"type": "image", "data": "aGk=", "mimeType": "image/png"}],
        "isError": True,
        "_meta": {"trace": "t1"},
    }


class TestCredential:
    def test_authorization_header(self):
        assert Credential(access_token="abc").authorization_header() == "Bearer abc"
        assert Credential(access_token="abc", token_type="token").authorization_header() == "token abc"
        assert Credential(access_token="Bearer already").authorization_header() == "Bearer already"

    def test_expiry_uses_buffer(self):
        assert not Credential(access_token="a").is_expired
        assert Credential(access_token="a", expires_at=time.time() + 60).is_expired
        assert not Credential(access_token="a", expires_at=time.time() + 3600).is_expired

    def test_can_refresh(self):
        assert not Credential(access_token="a", refresh_token="r").can_refresh
        assert Credential(access_token="a", refresh_token="r", token_endpoint="https://a/token").can_refresh

    def test_from_token_response(self):
        credential = Credential.from_token_response(
            {"access_token": "new", "token_type": "bearer", "expires_in": 3600, "refresh_token": "r2"},
            token_endpoint="https://auth.example.com/token",
        )
        assert credential.access_token == "new"
        assert credential.refresh_token == "r2"
        assert credential.expires_at == pytest.approx(time.time() + 3600, abs=5)
        assert credential.token_endpoint == "https://auth.example.com/token"


def test_jsonrpc_classification():
    request = make_request(1, "tools/list")
    notification = make_notification("notifications/initialized")
    error = make_error(1, -32601, "Method not found")

    assert "params" not in request
    assert is_request(request) and not is_notification(request) and not is_response(request)
    assert is_notification(notification) and not is_request(notification)
    assert is_response(error) and not is_request(error)
    assert is_response({"jsonrpc": "2.0", "id": 2, "result": {}})
