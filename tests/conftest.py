"""
Shared fixtures: an in-memory transport with scripted replies and helpers
for spawning the mock stdio server.
"""
import asyncio
import sys
from pathlib import Path

import pytest

from mcp_relay.config import Config, SessionConfig
from mcp_relay.mcp_client.exceptions import MCPTransportError
from mcp_relay.models.jsonrpc import make_error, make_result
from mcp_relay.models.mcp import ServerDescriptor
from mcp_relay.registry import ServerRegistry

MOCK_SERVER = Path(__file__).parent / "fixtures" / "mock_server.py"

ECHO_TOOL = {
    "name": "echo",
    "description": "Echoes a message back",
    "inputSchema": {
        "type": "object",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    },
}


class RPCError(Exception):
    """Returned (not raised) by a FakeTransport handler to answer with an error."""

    def __init__(self, code, message):
        super().__init__(message)
        self.code = code
        self.message = message


def default_initialize(_params):
    return {
        "protocolVersion": "2025-06-18",
        "capabilities": {"tools": {"listChanged": True}},
        "serverInfo": {"name": "fake-server", "version": "0.9.0"},
    }


class FakeTransport:
    """
    Transport stand-in. Requests whose method has a handler are answered
    immediately; requests without one stay unanswered until the test pushes
    a response.
    """

    def __init__(self, handlers=None):
        self.handlers = {"initialize": default_initialize, "ping": lambda _params: {}}
        self.handlers.update(handlers or {})
        self.sent = []
        self.inbound = asyncio.Queue()
        self.closed = False
        self.send_error = None

    async def send(self, message):
        if self.closed:
            raise MCPTransportError("Transport closed", kind=MCPTransportError.CONNECTION_LOST)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)
        method = message.get("method")
        if method is None or "id" not in message:
            return
        handler = self.handlers.get(method)
        if handler is None:
            return
        outcome = handler(message.get("params"))
        if isinstance(outcome, RPCError):
            self.push(make_error(message["id"], outcome.code, outcome.message))
        else:
            self.push(make_result(message["id"], outcome))

    async def receive(self):
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True
        self.inbound.put_nowait(MCPTransportError("Transport closed", kind=MCPTransportError.CONNECTION_LOST))

    def push(self, message):
        self.inbound.put_nowait(message)

    def fail(self, error):
        self.inbound.put_nowait(error)

    def requests(self, method):
        return [m for m in self.sent if m.get("method") == method and "id" in m]


async def wait_for_sent(transport, count, timeout=1.0):
    """Waits until `transport` has recorded at least `count` outbound messages."""
    async def _poll():
        while len(transport.sent) < count:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


def mock_server_descriptor(name="mock", mode="normal", framing="newline", **extra):
    args = [str(MOCK_SERVER), "--mode", mode, "--framing", framing]
    for key, value in extra.items():
        args += [f"--{key.replace('_', '-')}", value]
    return ServerDescriptor(
        name=name,
        transport="stdio",
        command=sys.executable,
        args=args,
        framing=framing,
    )


@pytest.fixture
def fast_config():
    return Config(session=SessionConfig(
        handshake_timeout_seconds=2.0,
        request_timeout_seconds=2.0,
        tool_timeout_seconds=2.0,
        terminate_grace_seconds=1.0,
    ))


@pytest.fixture
def descriptor():
    return ServerDescriptor(name="fake", transport="stdio", command="fake-server")


@pytest.fixture
def registry(tmp_path):
    return ServerRegistry(tmp_path / "servers.json")
