"""
Unit tests for ProtocolSession, driven through an in-memory transport.
"""
import asyncio

import pytest

from conftest import FakeTransport, RPCError, wait_for_sent
from mcp_relay.mcp_client.exceptions import (
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
from mcp_relay.mcp_client.session import (
    LATEST_PROTOCOL_VERSION,
    PendingRequests,
    ProtocolSession,
    SessionState,
)
from mcp_relay.models.jsonrpc import make_result


def make_session(descriptor, config, transport):
    async def factory(_descriptor):
        return transport
    return ProtocolSession(descriptor, config=config, transport_factory=factory)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
async def session(descriptor, fast_config, transport):
    s = make_session(descriptor, fast_config, transport)
    await s.connect()
    yield s
    await s.close()


@pytest.mark.asyncio
async def test_handshake_sends_initialize_then_initialized(descriptor, fast_config, transport):
    s = make_session(descriptor, fast_config, transport)
    result = await s.connect()

    initialize, initialized = transport.sent[0], transport.sent[1]
    assert initialize["method"] == "initialize"
    assert initialize["params"]["protocolVersion"] == LATEST_PROTOCOL_VERSION
    assert initialize["params"]["capabilities"] == {}
    assert initialize["params"]["clientInfo"]["name"] == "mcp-relay"
    assert initialized == {"jsonrpc": "2.0", "method": "notifications/initialized"}
    assert s.state == SessionState.READY
    assert result.server_info.name == "fake-server"
    assert s.protocol_version == "2025-06-18"
    await s.close()


@pytest.mark.asyncio
async def test_connect_twice_reuses_ready_session(session, transport):
    await session.connect()
    assert len(transport.requests("initialize")) == 1


@pytest.mark.asyncio
async def test_older_supported_version_is_accepted(descriptor, fast_config):
    transport = FakeTransport({"initialize": lambda p: {
        "protocolVersion": "2024-11-05", "capabilities": {}, "serverInfo": {"name": "old"},
    }})
    s = make_session(descriptor, fast_config, transport)
    await s.connect()
    assert s.protocol_version == "2024-11-05"
    await s.close()


@pytest.mark.asyncio
async def test_unsupported_protocol_version_fails_handshake(descriptor, fast_config):
    transport = FakeTransport({"initialize": lambda p: {
        "protocolVersion": "1999-01-01", "capabilities": {}, "serverInfo": {"name": "ancient"},
    }})
    s = make_session(descriptor, fast_config, transport)
    with pytest.raises(MCPHandshakeError, match="unsupported protocol version"):
        await s.connect()
    assert s.state == SessionState.FAILED
    assert transport.closed


@pytest.mark.asyncio
async def test_initialize_error_response_is_handshake_error(descriptor, fast_config):
    transport = FakeTransport({"initialize": lambda p: RPCError(-32600, "go away")})
    s = make_session(descriptor, fast_config, transport)
    with pytest.raises(MCPHandshakeError, match="go away") as exc_info:
        await s.connect()
    assert exc_info.value.kind == "handshake"
    assert s.state == SessionState.FAILED


@pytest.mark.asyncio
async def test_malformed_initialize_result_is_handshake_error(descriptor, fast_config):
    transport = FakeTransport({"initialize": lambda p: {"capabilities": {}}})
    s = make_session(descriptor, fast_config, transport)
    with pytest.raises(MCPHandshakeError):
        await s.connect()


@pytest.mark.asyncio
async def test_handshake_timeout(descriptor, fast_config):
    fast_config.session.handshake_timeout_seconds = 0.05
    transport = FakeTransport({"initialize": None})
    s = make_session(descriptor, fast_config, transport)
    with pytest.raises(MCPHandshakeTimeoutError) as exc_info:
        await s.connect()
    assert isinstance(exc_info.value, MCPTimeoutError)
    assert isinstance(exc_info.value, MCPHandshakeError)
    assert exc_info.value.server == "fake"
    assert s.state == SessionState.FAILED
    assert s.pending_count == 0


@pytest.mark.asyncio
async def test_out_of_order_responses_are_correlated(session, transport):
    sent_before = len(transport.sent)
    first = asyncio.create_task(session.call("custom/first"))
    second = asyncio.create_task(session.call("custom/second"))
    await wait_for_sent(transport, sent_before + 2)

    first_id = transport.requests("custom/first")[0]["id"]
    second_id = transport.requests("custom/second")[0]["id"]
    assert first_id != second_id
    transport.push(make_result(second_id, {"which": "second"}))
    transport.push(make_result(first_id, {"which": "first"}))

    assert await first == {"which": "first"}
    assert await second == {"which": "second"}
    assert session.pending_count == 0


@pytest.mark.asyncio
async def test_batched_responses_are_dispatched_individually(session, transport):
    sent_before = len(transport.sent)
    a = asyncio.create_task(session.call("custom/a"))
    b = asyncio.create_task(session.call("custom/b"))
    await wait_for_sent(transport, sent_before + 2)
    transport.push([
        make_result(transport.requests("custom/a")[0]["id"], {"n": 1}),
        make_result(transport.requests("custom/b")[0]["id"], {"n": 2}),
    ])
    assert (await a, await b) == ({"n": 1}, {"n": 2})


@pytest.mark.asyncio
async def test_request_timeout_leaves_session_usable(session, transport):
    with pytest.raises(MCPTimeoutError) as exc_info:
        await session.call("custom/slow", timeout=0.05)
    assert exc_info.value.method == "custom/slow"
    assert exc_info.value.server == "fake"
    assert session.pending_count == 0
    assert session.state == SessionState.READY

    # A late reply for the abandoned request is dropped.
    late_id = transport.requests("custom/slow")[0]["id"]
    transport.push(make_result(late_id, {"late": True}))
    assert await session.call("ping") == {}


@pytest.mark.asyncio
async def test_server_error_maps_to_protocol_error(descriptor, fast_config):
    transport = FakeTransport({"resources/list": lambda p: RPCError(-32601, "Method not found")})
    s = make_session(descriptor, fast_config, transport)
    await s.connect()
    with pytest.raises(MCPProtocolError) as exc_info:
        await s.call("resources/list")
    assert exc_info.value.error_code == -32601
    assert not isinstance(exc_info.value, MCPToolInvocationError)
    assert s.state == SessionState.READY
    await s.close()


@pytest.mark.asyncio
async def test_tool_call_error_maps_to_tool_invocation_error(descriptor, fast_config):
    transport = FakeTransport({"tools/call": lambda p: RPCError(-32602, "bad arguments")})
    s = make_session(descriptor, fast_config, transport)
    await s.connect()
    with pytest.raises(MCPToolInvocationError) as exc_info:
        await s.call("tools/call", {"name": "echo", "arguments": {}})
    assert exc_info.value.tool_name == "echo"
    assert "bad arguments" in str(exc_info.value)
    await s.close()


@pytest.mark.asyncio
async def test_response_without_result_is_malformed(session, transport):
    sent_before = len(transport.sent)
    task = asyncio.create_task(session.call("custom/odd"))
    await wait_for_sent(transport, sent_before + 1)
    transport.push({"jsonrpc": "2.0", "id": transport.requests("custom/odd")[0]["id"], "result": 42})
    with pytest.raises(MCPMalformedResponseError):
        await task


@pytest.mark.asyncio
async def test_transport_failure_fails_every_pending_request(session, transport):
    sent_before = len(transport.sent)
    calls = [asyncio.create_task(session.call(f"custom/{i}")) for i in range(3)]
    await wait_for_sent(transport, sent_before + 3)

    transport.fail(MCPTransportError("pipe broke", kind=MCPTransportError.CONNECTION_LOST))
    results = await asyncio.gather(*calls, return_exceptions=True)

    assert all(isinstance(r, MCPTransportError) for r in results)
    assert all(r.kind == "connection_lost" for r in results)
    assert session.state == SessionState.FAILED
    assert session.pending_count == 0
    assert transport.closed

    with pytest.raises(MCPSessionClosedError, match="failed earlier"):
        await session.call("ping")


@pytest.mark.asyncio
async def test_send_failure_fails_session(session, transport):
    transport.send_error = MCPTransportError("write failed", kind=MCPTransportError.IO_FAILURE)
    with pytest.raises(MCPTransportError):
        await session.call("ping")
    assert session.state == SessionState.FAILED


@pytest.mark.asyncio
async def test_close_fails_pending_with_session_closed(session, transport):
    sent_before = len(transport.sent)
    task = asyncio.create_task(session.call("custom/forever"))
    await wait_for_sent(transport, sent_before + 1)

    await session.close()
    with pytest.raises(MCPSessionClosedError):
        await task
    assert session.state == SessionState.CLOSED
    await session.close()
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_call_before_connect_raises(descriptor, fast_config, transport):
    s = make_session(descriptor, fast_config, transport)
    with pytest.raises(MCPSessionClosedError):
        await s.call("ping")


@pytest.mark.asyncio
async def test_malformed_frame_is_skipped(session, transport):
    transport.fail(MCPMalformedMessageError("Frame is not valid JSON", raw=b"{oops"))
    assert await session.call("ping") == {}
    assert session.state == SessionState.READY


@pytest.mark.asyncio
async def test_server_ping_request_is_answered(session, transport):
    sent_before = len(transport.sent)
    transport.push({"jsonrpc": "2.0", "id": "srv-1", "method": "ping"})
    await wait_for_sent(transport, sent_before + 1)
    assert transport.sent[-1] == {"jsonrpc": "2.0", "id": "srv-1", "result": {}}


@pytest.mark.asyncio
async def test_unsupported_server_request_gets_method_not_found(session, transport):
    sent_before = len(transport.sent)
    transport.push({"jsonrpc": "2.0", "id": 99, "method": "sampling/createMessage", "params": {}})
    await wait_for_sent(transport, sent_before + 1)
    reply = transport.sent[-1]
    assert reply["id"] == 99
    assert reply["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_notifications_reach_registered_handlers(session, transport):
    received = asyncio.get_running_loop().create_future()
    catch_all = []
    session.on_notification("notifications/message", received.set_result)
    session.on_notification(None, catch_all.append)

    notification = {"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}}
    transport.push(notification)

    assert await asyncio.wait_for(received, 1.0) == notification
    assert catch_all == [notification]


@pytest.mark.asyncio
async def test_ping_reports_server_identity(session):
    result = await session.ping()
    assert result.server == "fake"
    assert result.server_name == "fake-server"
    assert result.server_version == "0.9.0"
    assert result.elapsed_ms >= 0


@pytest.mark.asyncio
async def test_state_listeners_see_transitions(descriptor, fast_config, transport):
    s = make_session(descriptor, fast_config, transport)
    transitions = []
    s.add_state_listener(lambda old, new: transitions.append((old, new)))
    await s.connect()
    await s.close()
    assert transitions == [
        (SessionState.UNINITIALIZED, SessionState.HANDSHAKING),
        (SessionState.HANDSHAKING, SessionState.READY),
        (SessionState.READY, SessionState.CLOSED),
    ]


@pytest.mark.asyncio
async def test_pending_requests_complete_at_most_once():
    pending = PendingRequests()
    entry = pending.register(1, "ping", {"id": 1})
    with pytest.raises(ValueError):
        pending.register(1, "ping", {"id": 1})

    assert pending.complete(1, {"id": 1, "result": {}}) is True
    assert pending.complete(1, {"id": 1, "result": {}}) is False
    assert entry.future.result() == {"id": 1, "result": {}}
    assert pending.fail_all(RuntimeError("gone")) == 0
