"""
Credential storage and refresh for authenticated MCP servers.
"""
from .oauth_client import OAuth2Client
from .token_manager import TokenManager
from .token_storage import KeyringCredentialStore, TokenStorageError

__all__ = ["KeyringCredentialStore", "OAuth2Client", "TokenManager", "TokenStorageError"]
