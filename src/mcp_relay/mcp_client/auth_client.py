"""
Credential-attaching wrapper around the HTTP transport.
"""
from typing import Any, Protocol, runtime_checkable

import structlog

from ..models.auth import Credential
from .exceptions import MCPAuthError
from .transport.http import HttpTransport

logger = structlog.get_logger(__name__)


@runtime_checkable
class CredentialProvider(Protocol):
    """Source of per-server credentials (implemented by `TokenManager`)."""

    async def get(self, server: str) -> Credential | None:
        ...

    async def refresh(self, server: str) -> Credential:
        """Obtains a fresh credential or raises MCPAuthError."""
        ...


class AuthenticatedClient:
    """
    Satisfies the Transport capability set. Adds an ``Authorization`` header to
    every request and recovers from exactly one authentication failure per
    send by refreshing the credential and retrying that send once.
    """

    def __init__(self, transport: HttpTransport, credentials: CredentialProvider, server: str | None = None,
                 auth_required: bool = False):
        self.transport = transport
        self.credentials = credentials
        self.server = server or transport.descriptor.name
        self.auth_required = auth_required or transport.descriptor.auth_required
        self._credential: Credential | None = None
        self.logger = logger.bind(server_name=self.server, transport="http", authenticated=True)

    @property
    def credential(self) -> Credential | None:
        return self._credential

    def _auth_headers(self) -> dict[str, str]:
        if self._credential is None:
            return {}
        return {"Authorization": self._credential.authorization_header()}

    async def open(self) -> None:
        """Loads the credential and opens the underlying channel.

        Raises MCPAuthError when the server requires authentication and no
        credential is stored.
        """
        self._credential = await self.credentials.get(self.server)
        if self._credential is None and self.auth_required:
            raise MCPAuthError(
                f"Server '{self.server}' requires authentication. Run: mcp-relay auth {self.server}",
                requires_reauth=True,
            )
        if self._credential is not None and self._credential.is_expired and self._credential.can_refresh:
            self.logger.info("Stored credential expired, refreshing before connecting.")
            self._credential = await self.credentials.refresh(self.server)
        await self._with_refresh(self.transport.connect)

    async def send(self, message: dict[str, Any]) -> None:
        await self._with_refresh(self.transport.send, message)

    async def _with_refresh(self, operation, *args) -> None:
        try:
            await operation(*args, extra_headers=self._auth_headers())
            return
        except MCPAuthError as first_error:
            self.logger.info("Request rejected, refreshing credential once.", status=first_error.status)
            try:
                self._credential = await self.credentials.refresh(self.server)
            except MCPAuthError as refresh_error:
                refresh_error.requires_reauth = True
                raise refresh_error from first_error

        try:
            await operation(*args, extra_headers=self._auth_headers())
        except MCPAuthError as second_error:
            self.logger.warning("Request rejected after credential refresh.", status=second_error.status)
            raise MCPAuthError(
                f"Authentication failed for server '{self.server}' after refreshing the credential. "
                f"Run: mcp-relay auth {self.server}",
                server_error=second_error.server_error,
                requires_reauth=True,
                status=second_error.status,
            ) from second_error

    async def receive(self) -> dict[str, Any]:
        return await self.transport.receive()

    async def close(self) -> None:
        await self.transport.close()
