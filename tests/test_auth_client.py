"""
Unit tests for AuthenticatedClient's refresh-once policy.
"""
import time
from unittest.mock import AsyncMock

import pytest

from mcp_relay.mcp_client.auth_client import AuthenticatedClient
from mcp_relay.mcp_client.exceptions import MCPAuthError
from mcp_relay.mcp_client.transport.http import HttpTransport
from mcp_relay.models.auth import Credential
from mcp_relay.models.mcp import ServerDescriptor

MESSAGE = {"jsonrpc": "2.0", "id": 1, "method": "ping"}


@pytest.fixture
def mock_transport():
    transport = AsyncMock(spec=HttpTransport)
    transport.descriptor = ServerDescriptor(name="remote", transport="http", url="https://mcp.example.com/mcp")
    return transport


@pytest.fixture
def mock_credentials():
    credentials = AsyncMock()
    credentials.get = AsyncMock(return_value=Credential(access_token="old-token"))
    credentials.refresh = AsyncMock(return_value=Credential(access_token="new-token"))
    return credentials


def sent_authorization(transport, call_index):
    return transport.send.await_args_list[call_index].kwargs["extra_headers"]["Authorization"]


@pytest.mark.asyncio
async def test_attaches_bearer_header(mock_transport, mock_credentials):
    client = AuthenticatedClient(mock_transport, mock_credentials)
    await client.open()
    await client.send(MESSAGE)

    mock_transport.connect.assert_awaited_once_with(extra_headers={"Authorization": "Bearer old-token"})
    assert sent_authorization(mock_transport, 0) == "Bearer old-token"
    mock_credentials.refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_refreshes_once_and_retries_on_auth_failure(mock_transport, mock_credentials):
    mock_transport.send.side_effect = [MCPAuthError("HTTP 401", status=401), None]
    client = AuthenticatedClient(mock_transport, mock_credentials)
    await client.open()
    await client.send(MESSAGE)

    assert mock_transport.send.await_count == 2
    assert sent_authorization(mock_transport, 0) == "Bearer old-token"
    assert sent_authorization(mock_transport, 1) == "Bearer new-token"
    mock_credentials.refresh.assert_awaited_once_with("remote")
    assert client.credential.access_token == "new-token"


@pytest.mark.asyncio
async def test_second_auth_failure_requires_reauth(mock_transport, mock_credentials):
    mock_transport.send.side_effect = [MCPAuthError("HTTP 401", status=401), MCPAuthError("HTTP 403", status=403)]
    client = AuthenticatedClient(mock_transport, mock_credentials)
    await client.open()

    with pytest.raises(MCPAuthError) as exc_info:
        await client.send(MESSAGE)
    assert exc_info.value.requires_reauth
    assert exc_info.value.status == 403
    assert "mcp-relay auth remote" in str(exc_info.value)
    assert mock_transport.send.await_count == 2
    mock_credentials.refresh.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_refresh_requires_reauth(mock_transport, mock_credentials):
    mock_transport.send.side_effect = MCPAuthError("HTTP 401", status=401)
    mock_credentials.refresh.side_effect = MCPAuthError("Credential for 'remote' cannot be refreshed")
    client = AuthenticatedClient(mock_transport, mock_credentials)
    await client.open()

    with pytest.raises(MCPAuthError, match="cannot be refreshed") as exc_info:
        await client.send(MESSAGE)
    assert exc_info.value.requires_reauth
    assert mock_transport.send.await_count == 1


@pytest.mark.asyncio
async def test_required_auth_without_credential_fails_before_connecting(mock_transport, mock_credentials):
    mock_credentials.get.return_value = None
    client = AuthenticatedClient(mock_transport, mock_credentials, auth_required=True)

    with pytest.raises(MCPAuthError, match="requires authentication"):
        await client.open()
    mock_transport.connect.assert_not_awaited()


@pytest.mark.asyncio
async def test_optional_auth_without_credential_sends_no_header(mock_transport, mock_credentials):
    mock_credentials.get.return_value = None
    client = AuthenticatedClient(mock_transport, mock_credentials)
    await client.open()
    await client.send(MESSAGE)
    assert mock_transport.send.await_args.kwargs["extra_headers"] == {}


@pytest.mark.asyncio
async def test_expired_credential_is_refreshed_before_connecting(mock_transport, mock_credentials):
    mock_credentials.get.return_value = Credential(
        access_token="expired",
        expires_at=time.time() - 10,
        refresh_token="r1",
        token_endpoint="https://auth.example.com/token",
    )
    client = AuthenticatedClient(mock_transport, mock_credentials)
    await client.open()

    mock_credentials.refresh.assert_awaited_once_with("remote")
    mock_transport.connect.assert_awaited_once_with(extra_headers={"Authorization": "Bearer new-token"})


@pytest.mark.asyncio
async def test_receive_and_close_delegate(mock_transport, mock_credentials):
    mock_transport.receive.return_value = {"jsonrpc": "2.0", "id": 1, "result": {}}
    client = AuthenticatedClient(mock_transport, mock_credentials)
    assert await client.receive() == {"jsonrpc": "2.0", "id": 1, "result": {}}
    await client.close()
    mock_transport.close.assert_awaited_once()
