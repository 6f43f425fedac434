"""
Stdio transport tests against a real subprocess (tests/fixtures/mock_server.py).
"""
import asyncio
import os
import signal

import pytest

from conftest import mock_server_descriptor
from mcp_relay.mcp_client.catalog import ToolCatalog
from mcp_relay.mcp_client.exceptions import (
    MCPHandshakeError,
    MCPPeerCrashedError,
    MCPSessionClosedError,
    MCPSpawnError,
    MCPTimeoutError,
    MCPTransportError,
)
from mcp_relay.mcp_client.session import ProtocolSession, SessionState
from mcp_relay.mcp_client.transport.stdio import StdioTransport
from mcp_relay.models.mcp import ServerDescriptor


@pytest.mark.asyncio
async def test_round_trip_over_newline_framing(fast_config):
    async with ProtocolSession(mock_server_descriptor(), config=fast_config) as session:
        assert session.initialize_result.server_info.name == "mock-server"
        tools = await ToolCatalog().list(session)
        assert [t.name for t in tools] == ["echo", "add", "fail"]

        result = await session.call("tools/call", {"name": "echo", "arguments": {"message": "hi"}})
        assert result["content"][0]["text"] == "Echo: hi"


@pytest.mark.asyncio
async def test_round_trip_over_content_length_framing(fast_config):
    descriptor = mock_server_descriptor(framing="content-length")
    async with ProtocolSession(descriptor, config=fast_config) as session:
        result = await session.call("tools/call", {"name": "add", "arguments": {"a": 2, "b": 3}})
        assert result["content"][0]["text"] == "5"


@pytest.mark.asyncio
async def test_unsupported_server_version_fails_handshake(fast_config):
    descriptor = mock_server_descriptor(protocol_version="2023-01-01")
    session = ProtocolSession(descriptor, config=fast_config)
    with pytest.raises(MCPHandshakeError):
        await session.connect()
    assert session.state == SessionState.FAILED


@pytest.mark.asyncio
async def test_crash_fails_pending_request_with_peer_crashed(fast_config):
    session = ProtocolSession(mock_server_descriptor(mode="crash"), config=fast_config)
    await session.connect()

    with pytest.raises(MCPPeerCrashedError) as exc_info:
        await session.call("tools/call", {"name": "echo", "arguments": {"message": "boom"}})

    error = exc_info.value
    assert error.kind == "peer_crashed"
    assert error.server == "mock"
    assert error.returncode == 3
    assert "fatal: tool exploded" in error.stderr_tail
    assert "exited with code 3" in str(error)
    assert session.state == SessionState.FAILED

    with pytest.raises(MCPSessionClosedError):
        await session.call("ping")
    await session.close()


@pytest.mark.asyncio
async def test_killed_server_fails_every_pending_request(fast_config):
    session = ProtocolSession(mock_server_descriptor(mode="hang"), config=fast_config)
    await session.connect()
    calls = [asyncio.create_task(session.call("ping", timeout=10.0)) for _ in range(3)]
    for _ in range(200):
        if session.pending_count == 3:
            break
        await asyncio.sleep(0.01)
    assert session.pending_count == 3

    os.killpg(session.transport.handle.pid, signal.SIGKILL)
    results = await asyncio.wait_for(asyncio.gather(*calls, return_exceptions=True), 5.0)

    assert [type(r) for r in results] == [MCPPeerCrashedError] * 3
    assert all(r.returncode == -signal.SIGKILL for r in results)
    assert session.state == SessionState.FAILED
    await session.close()

@pytest.mark.asyncio
async def test_hung_request_times_out_without_killing_session(fast_config):
    async with ProtocolSession(mock_server_descriptor(mode="hang"), config=fast_config) as session:
        with pytest.raises(MCPTimeoutError):
            await session.call("ping", timeout=0.2)
        assert session.state == SessionState.READY
        result = await session.call("tools/list")
        assert len(result["tools"]) == 3


@pytest.mark.asyncio
async def test_missing_executable_is_spawn_error(fast_config):
    descriptor = ServerDescriptor(name="ghost", transport="stdio", command="mcp-relay-no-such-binary")
    session = ProtocolSession(descriptor, config=fast_config)
    with pytest.raises(MCPSpawnError, match="Executable not found") as exc_info:
        await session.connect()
    assert exc_info.value.server == "ghost"
    assert session.state == SessionState.FAILED


@pytest.mark.asyncio
async def test_close_terminates_process():
    transport = StdioTransport(mock_server_descriptor())
    await transport.start()
    handle = transport.handle
    assert transport.is_connected

    await transport.close()
    assert handle.returncode is not None
    assert not transport.is_connected

    with pytest.raises(MCPTransportError) as exc_info:
        await transport.send({"jsonrpc": "2.0", "method": "notifications/initialized"})
    assert exc_info.value.kind == MCPTransportError.CONNECTION_LOST


@pytest.mark.asyncio
async def test_receive_reports_crash_after_exit():
    transport = StdioTransport(mock_server_descriptor(mode="crash"))
    await transport.start()
    await transport.send({"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "echo"}})
    with pytest.raises(MCPPeerCrashedError):
        await asyncio.wait_for(transport.receive(), 5.0)
    await transport.close()
