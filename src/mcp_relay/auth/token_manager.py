"""
Credential lifecycle: lookup with caching, refresh and storage.
"""
import asyncio
from typing import Optional

import structlog

from ..config import Config
from ..mcp_client.exceptions import MCPAuthError
from ..models.auth import Credential
from .oauth_client import OAuth2Client
from .token_storage import KeyringCredentialStore, TokenStorageError

logger = structlog.get_logger(__name__)


class TokenManager:
    """
    Credential provider for authenticated transports. Keeps an in-memory
    cache in front of the keyring store and serialises refreshes per server.
    """

    def __init__(self, app_config: Config, store: Optional[KeyringCredentialStore] = None):
        self.app_config = app_config
        self._store = store or KeyringCredentialStore(app_config.auth)
        # In-memory cache to avoid repeated keyring lookups
        self._cache: dict[str, Credential] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.logger = logger

    def _get_lock(self, server: str) -> asyncio.Lock:
        return self._locks.setdefault(server, asyncio.Lock())

    async def get(self, server: str) -> Optional[Credential]:
        cached = self._cache.get(server)
        if cached is not None:
            return cached
        try:
            credential = await self._store.get(server)
        except TokenStorageError as e:
            # Unusable keyring: behave as if nothing is stored.
            self.logger.warning("Credential store unavailable.", server_name=server, error=str(e))
            return None
        if credential is not None:
            self._cache[server] = credential
        return credential

    async def refresh(self, server: str) -> Credential:
        """
        Runs the refresh_token grant against the stored token endpoint and
        persists the result.

        Raises:
            MCPAuthError (requires_reauth): nothing to refresh with, or the grant was rejected.
        """
        log = self.logger.bind(server_name=server)
        async with self._get_lock(server):
            self._cache.pop(server, None)
            current = await self.get(server)
            if current is None or not current.can_refresh:
                log.warning("Cannot refresh credential: no refresh token or token endpoint stored.")
                raise MCPAuthError(
                    f"Credential for '{server}' cannot be refreshed. Run: mcp-relay auth {server}",
                    requires_reauth=True,
                    server=server,
                )
            async with OAuth2Client(
                current.token_endpoint, client_id=current.client_id, http_config=self.app_config.http
            ) as client:
                try:
                    refreshed = await client.refresh_token(current.refresh_token, scope=current.scope)
                except MCPAuthError as e:
                    e.requires_reauth = True
                    raise e.with_server(server)
            await self.store(server, refreshed)
            log.info("Credential refreshed.")
            return refreshed

    async def store(self, server: str, credential: Credential) -> None:
        try:
            await self._store.store(server, credential)
        except TokenStorageError as e:
            raise MCPAuthError(f"Cannot store credential for '{server}': {e}", server=server) from e
        self._cache[server] = credential

    async def clear(self, server: str) -> bool:
        """Forgets the credential for `server`. Returns False if none was stored."""
        self._cache.pop(server, None)
        try:
            return await self._store.delete(server)
        except TokenStorageError as e:
            raise MCPAuthError(f"Cannot delete credential for '{server}': {e}", server=server) from e
