from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """A bidirectional channel carrying whole JSON-RPC messages.

    `receive` is only ever awaited by one reader (the session's read loop).
    `send` may be called concurrently; implementations serialize writes.
    """

    async def send(self, message: dict[str, Any]) -> None:
        """Delivers one message. Raises MCPTransportError on I/O failure."""
        ...

    async def receive(self) -> dict[str, Any]:
        """Waits for the next inbound message.

        Raises MCPTransportError(connection_lost) once the channel is closed,
        or MCPPeerCrashedError when a subprocess peer died.
        """
        ...

    async def close(self) -> None:
        """Releases every resource. Safe to call more than once."""
        ...
