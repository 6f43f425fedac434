"""
Server registry: the persisted set of known MCP servers and the default one.

Stored as a JSON document::

    {
      "servers": {"linear": {"transport": "stdio", "command": "npx", "args": [...]}},
      "default_server": "linear"
    }
"""
import json
import os
from pathlib import Path

import structlog
from pydantic import ValidationError

from .mcp_client.exceptions import MCPClientError, MCPNotFoundError
from .models.mcp import ServerDescriptor

logger = structlog.get_logger(__name__)


class RegistryError(MCPClientError):
    """Raised when the registry file cannot be read or written."""
    kind = "config"


class ServerRegistry:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._servers: dict[str, ServerDescriptor] = {}
        self._default_server: str | None = None
        self._loaded = False

    def load(self) -> "ServerRegistry":
        """Reads the registry file. A missing file is an empty registry."""
        self._servers, self._default_server = {}, None
        self._loaded = True
        if not self.path.exists():
            return self
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryError(f"Failed to read server registry {self.path}: {e}") from e

        for name, entry in (data.get("servers") or {}).items():
            try:
                self._servers[name] = ServerDescriptor.model_validate({**entry, "name": name})
            except ValidationError as e:
                raise RegistryError(f"Invalid entry for server '{name}' in {self.path}: {e}") from e
        default = data.get("default_server")
        self._default_server = default if default in self._servers else None
        logger.debug("Server registry loaded.", path=str(self.path), server_count=len(self._servers))
        return self

    def save(self) -> None:
        data = {
            "servers": {
                name: descriptor.model_dump(mode="json", exclude={"name"}, exclude_defaults=True)
                for name, descriptor in sorted(self._servers.items())
            },
            "default_server": self._default_server,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise RegistryError(f"Failed to write server registry {self.path}: {e}") from e

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    @property
    def default_server(self) -> str | None:
        self._ensure_loaded()
        return self._default_server

    def list(self) -> list[ServerDescriptor]:
        self._ensure_loaded()
        return [self._servers[name] for name in sorted(self._servers)]

    def get(self, name: str) -> ServerDescriptor:
        self._ensure_loaded()
        descriptor = self._servers.get(name)
        if descriptor is None:
            raise MCPNotFoundError(f"Server '{name}' not found", server=name)
        return descriptor

    def resolve(self, name: str | None) -> ServerDescriptor:
        """Returns `name`, or the default server when no name is given."""
        if name:
            return self.get(name)
        default = self.default_server
        if default is None:
            raise MCPNotFoundError("No server specified and no default server set. Use `mcp-relay add` first.")
        return self.get(default)

    def add(self, descriptor: ServerDescriptor, make_default: bool = False) -> None:
        """Registers (or replaces) a server. The first server becomes the default."""
        self._ensure_loaded()
        self._servers[descriptor.name] = descriptor
        if make_default or self._default_server is None:
            self._default_server = descriptor.name
        self.save()
        logger.info("Server registered.", server_name=descriptor.name, transport=descriptor.transport)

    def remove(self, name: str) -> ServerDescriptor:
        self._ensure_loaded()
        descriptor = self._servers.pop(name, None)
        if descriptor is None:
            raise MCPNotFoundError(f"Server '{name}' not found", server=name)
        if self._default_server == name:
            self._default_server = min(self._servers) if self._servers else None
        self.save()
        logger.info("Server removed.", server_name=name, new_default=self._default_server)
        return descriptor
