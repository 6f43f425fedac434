"""MCP Relay - a command-line client for MCP servers.

Registers, inspects and invokes tools exposed by local (stdio) and remote
(HTTP) Model Context Protocol servers through one transport-agnostic view.
"""

__version__ = "0.4.0"

from .config import Config

__all__ = ["Config", "__version__"]
