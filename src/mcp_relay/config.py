"""Configuration management for MCP Relay."""

import json
from pathlib import Path
from typing import Optional

import click
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_NAME = "mcp-relay"


def default_app_dir() -> Path:
    """Per-user configuration directory (platform specific, resolved by click)."""
    return Path(click.get_app_dir(APP_NAME))


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="WARNING", description="Log level")
    format: str = Field(default="console", description="Log format ('console' or 'json')")
    file: Optional[Path] = Field(default=None, description="Log file path. Logs go to stderr when unset.")


class SessionConfig(BaseModel):
    """Protocol session behaviour: deadlines, framing limits and client identity."""

    handshake_timeout_seconds: float = Field(default=30.0, gt=0, description="Bounded wait for the initialize response.")
    request_timeout_seconds: float = Field(default=60.0, gt=0, description="Default deadline for a single request.")
    tool_timeout_seconds: float = Field(default=300.0, gt=0, description="Deadline for tools/call requests.")
    terminate_grace_seconds: float = Field(default=5.0, ge=0, description="Time a subprocess gets to exit after SIGTERM before SIGKILL.")
    max_frame_bytes: int = Field(default=10 * 1024 * 1024, ge=1024, description="Largest accepted inbound frame on stdio.")
    client_name: str = Field(default="mcp-relay", description="clientInfo.name sent during the handshake.")
    client_version: Optional[str] = Field(default=None, description="clientInfo.version; defaults to the package version.")


class HTTPClientConfig(BaseModel):
    """HTTP client settings shared by the MCP transport (httpx) and the OAuth token client (aiohttp)."""

    connect_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for establishing a connection.")
    ssl_verify: bool = Field(default=True, description="Enable/disable SSL certificate verification.")
    connection_pool_total_limit: int = Field(default=100, ge=1, description="Total connection pool limit.")
    connection_pool_per_host_limit: int = Field(default=30, ge=1, description="Per-host connection pool limit (OAuth token client).")
    connection_pool_dns_cache_ttl_seconds: int = Field(default=300, ge=0, description="DNS cache TTL in seconds (OAuth token client).")
    user_agent: Optional[str] = Field(default=None, description="User-Agent header; defaults to 'mcp-relay/<version>'.")


class AuthConfig(BaseModel):
    """Configuration for credential storage."""

    token_storage_method: str = Field(default="keyring", description="Method for storing credentials ('keyring').")
    keyring_service_name: str = Field(default="mcp_relay_tokens", description="Service name for keyring storage.")


class Config(BaseSettings):
    """Main configuration for MCP Relay. Loads from environment variables prefixed with MCP_RELAY_."""

    model_config = SettingsConfigDict(
        env_prefix="MCP_RELAY_",
        env_nested_delimiter="__",  # e.g., MCP_RELAY_SESSION__REQUEST_TIMEOUT_SECONDS
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    http: HTTPClientConfig = Field(default_factory=HTTPClientConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    registry_file: Optional[Path] = Field(default=None, description="Path of the server registry JSON file.")

    @property
    def resolved_registry_file(self) -> Path:
        return self.registry_file or default_app_dir() / "servers.json"

    @classmethod
    def from_file(cls, file_path: Path) -> "Config":
        """Create configuration strictly from a JSON file.
        Note: This does not layer with environment variables.
        """
        with open(file_path) as f:
            config_data = json.load(f)
        return cls.model_validate(config_data)
