"""
Credential storage in the system keyring.
"""
import json
from typing import Optional

import keyring
import structlog
from keyring.errors import KeyringError, NoKeyringError, PasswordDeleteError
from pydantic import ValidationError

from ..config import AuthConfig
from ..models.auth import Credential

logger = structlog.get_logger(__name__)


class TokenStorageError(Exception):
    """Base class for token storage errors."""
    pass


class KeyringCredentialStore:
    """
    Stores one JSON-serialised Credential per server in the system keyring,
    under ``<server>_credential`` in the configured service.
    """
    CREDENTIAL_SUFFIX = "_credential"

    def __init__(self, auth_config: AuthConfig):
        self.service_name = auth_config.keyring_service_name
        self.logger = logger.bind(storage_type="keyring", service_name=self.service_name)

    def _get_key(self, server: str) -> str:
        return f"{server}{self.CREDENTIAL_SUFFIX}"

    async def store(self, server: str, credential: Credential) -> None:
        key = self._get_key(server)
        try:
            keyring.set_password(self.service_name, key, credential.model_dump_json())
            self.logger.debug("Stored credential in keyring", server_name=server)
        except NoKeyringError as e:
            self.logger.error("No keyring backend found. Please install a keyring provider (e.g., SecretService, Windows Credential Manager).")
            raise TokenStorageError("No keyring backend available.") from e
        except KeyringError as e:
            self.logger.error("Failed to store credential in keyring", server_name=server, error=str(e))
            raise TokenStorageError(f"Failed to store credential for '{server}': {e}") from e

    async def get(self, server: str) -> Optional[Credential]:
        key = self._get_key(server)
        try:
            raw = keyring.get_password(self.service_name, key)
        except NoKeyringError as e:
            self.logger.error("No keyring backend found when trying to retrieve credential.")
            raise TokenStorageError("No keyring backend available.") from e
        except KeyringError as e:
            self.logger.error("Failed to retrieve credential from keyring", server_name=server, error=str(e))
            raise TokenStorageError(f"Failed to retrieve credential for '{server}': {e}") from e
        if not raw:
            return None
        try:
            return Credential.model_validate_json(raw)
        except (ValidationError, json.JSONDecodeError) as e:
            # Corrupted entry: treat as absent and clean it up.
            self.logger.warning("Discarding unreadable credential from keyring", server_name=server, error=str(e))
            await self.delete(server)
            return None

    async def delete(self, server: str) -> bool:
        """Removes the stored credential. Returns False if there was none."""
        key = self._get_key(server)
        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            self.logger.debug("No credential to delete", server_name=server)
            return False
        except NoKeyringError as e:
            self.logger.error("No keyring backend found when trying to delete credential.")
            raise TokenStorageError("No keyring backend available.") from e
        except KeyringError as e:
            self.logger.error("Failed to delete credential from keyring", server_name=server, error=str(e))
            raise TokenStorageError(f"Failed to delete credential for '{server}': {e}") from e
        self.logger.debug("Deleted credential from keyring", server_name=server)
        return True
