"""
Minimal OAuth 2.0 client: the refresh_token grant (RFC 6749, Section 6).
"""
import asyncio
import json
from typing import Optional
from urllib.parse import urlparse

import aiohttp
import structlog
from pydantic import ValidationError

from ..config import HTTPClientConfig
from ..mcp_client.exceptions import MCPAuthError, MCPTransportError
from ..models.auth import Credential, OAuthError, TokenRequest

logger = structlog.get_logger(__name__)


class OAuth2Client:
    """Talks to one token endpoint on behalf of one client id."""

    def __init__(
        self,
        token_endpoint: str,
        client_id: Optional[str] = None,
        http_config: Optional[HTTPClientConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout_seconds: float = 30.0,
    ):
        self.token_endpoint = token_endpoint
        self.client_id = client_id
        self.http_config = http_config or HTTPClientConfig()
        self.request_timeout_seconds = request_timeout_seconds
        self._session = session
        self._session_owner = session is None
        self.logger = logger.bind(client_id=client_id, token_url_host=urlparse(token_endpoint).hostname)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            ssl_context = None
            if urlparse(self.token_endpoint).scheme == "https" and not self.http_config.ssl_verify:
                self.logger.warning("SSL verification is DISABLED for OAuth2 client. This is insecure.")
                ssl_context = False
            connector = aiohttp.TCPConnector(
                limit=self.http_config.connection_pool_total_limit,
                limit_per_host=self.http_config.connection_pool_per_host_limit,
                ttl_dns_cache=self.http_config.connection_pool_dns_cache_ttl_seconds,
                ssl=ssl_context,
            )
            self._session = aiohttp.ClientSession(connector=connector)
            self._session_owner = True
        return self._session

    async def close_session(self) -> None:
        if self._session_owner and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _send_token_request(self, payload: dict) -> dict:
        """
        Posts a form-encoded token request.

        Raises:
            MCPAuthError: the endpoint returned an error response.
            MCPTransportError: network failure or timeout.
        """
        session = await self._get_session()
        headers = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
        timeout = aiohttp.ClientTimeout(
            total=self.request_timeout_seconds, connect=self.http_config.connect_timeout_seconds
        )
        self.logger.info("Requesting token from endpoint")
        try:
            async with session.post(self.token_endpoint, data=payload, headers=headers, timeout=timeout) as response:
                response_text = await response.text()
                self.logger.debug("Token endpoint response status", status=response.status)
                if response.status != 200:
                    self._handle_error_response(response.status, response_text)
                try:
                    return json.loads(response_text)
                except json.JSONDecodeError as e:
                    self.logger.error("Failed to decode JSON from token response", error=str(e), response_text=response_text[:500])
                    raise MCPAuthError(f"Failed to decode JSON from token response: {e}") from e
        except aiohttp.ClientConnectorError as e:
            self.logger.error("Token endpoint connection failed", error=str(e.os_error or e))
            raise MCPTransportError(
                f"Connection to token endpoint {self.token_endpoint} failed: {e.os_error or e}",
                kind=MCPTransportError.CONNECTION_LOST,
            ) from e
        except asyncio.TimeoutError as e:
            self.logger.error("Token request timed out")
            raise MCPTransportError(
                f"Request to token endpoint {self.token_endpoint} timed out.",
                kind=MCPTransportError.CONNECTION_LOST,
            ) from e
        except aiohttp.ClientError as e:
            self.logger.error("AIOHTTP client error during token request", error_type=type(e).__name__, error_message=str(e))
            raise MCPTransportError(f"HTTP client error during token request: {e}") from e

    def _handle_error_response(self, status: int, body: str) -> None:
        self.logger.error("Token request failed", status=status, response_body=body[:500])
        try:
            oauth_error = OAuthError.model_validate(json.loads(body))
        except (json.JSONDecodeError, ValidationError):
            raise MCPAuthError(f"Token request failed with status {status}. Response: {body[:500]}", status=status) from None

        if oauth_error.error == "invalid_grant":
            raise MCPAuthError(
                f"Token refresh failed: {oauth_error.error} - "
                f"{oauth_error.error_description or 'Refresh token likely invalid/revoked'}. Re-authentication required.",
                server_error=oauth_error,
                requires_reauth=True,
                status=status,
            )
        raise MCPAuthError(
            f"Token request failed: {oauth_error.error} - {oauth_error.error_description or 'No description available'}",
            server_error=oauth_error,
            status=status,
        )

    async def refresh_token(self, refresh_token_value: str, scope: Optional[str] = None) -> Credential:
        """
        Exchanges a refresh token for a new credential. The old refresh token
        is kept when the server does not rotate it.
        """
        self.logger.debug("Refreshing access token.")
        if not refresh_token_value:
            raise MCPAuthError("Cannot refresh token: refresh_token is missing.", requires_reauth=True)

        request = TokenRequest(
            grant_type="refresh_token",
            refresh_token=refresh_token_value,
            client_id=self.client_id,
            scope=scope,
        )
        token_data = await self._send_token_request(request.model_dump(exclude_none=True))
        try:
            credential = Credential.from_token_response(
                token_data, token_endpoint=self.token_endpoint, client_id=self.client_id
            )
        except (KeyError, ValidationError, TypeError, ValueError) as e:
            self.logger.error("Failed to validate token response", error=str(e))
            raise MCPAuthError(f"Invalid token data received: {e}") from e
        if not credential.refresh_token:
            self.logger.debug("Refresh token not returned in response, reusing existing one.")
            credential = credential.model_copy(update={"refresh_token": refresh_token_value})
        self.logger.info("Token successfully refreshed.")
        return credential

    async def __aenter__(self) -> "OAuth2Client":
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close_session()
