"""Credential storage for ftpmon.

FTP passwords are kept in the system keyring (Windows Credential
Manager, macOS Keychain, Linux Secret Service) instead of the settings
file.
"""

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger("ftpmon.credentials")


class CredentialManager:
    """FTP password storage using the system keyring."""

    SERVICE_NAME = "ftpmon"

    def _make_key(self, host: str, username: str) -> str:
        return f"{host}:{username}"

    def save_password(self, host: str, username: str, password: str) -> bool:
        """
        Save an FTP password.

        Args:
            host: FTP host
            username: FTP username
            password: Password to save

        Returns:
            True if saved successfully, False otherwise
        """
        try:
            keyring.set_password(self.SERVICE_NAME, self._make_key(host, username), password)
            return True
        except KeyringError as e:
            logger.warning(f"Could not save password for {username}@{host}: {e}")
            return False

    def get_password(self, host: str, username: str) -> Optional[str]:
        """
        Retrieve a saved password.

        Returns:
            Password string or None if not found or the keyring is unavailable
        """
        try:
            return keyring.get_password(self.SERVICE_NAME, self._make_key(host, username))
        except KeyringError as e:
            logger.debug(f"Keyring lookup for {username}@{host} failed: {e}")
            return None

    def delete_password(self, host: str, username: str) -> bool:
        """Remove a saved password; False if there was none or removal failed."""
        try:
            keyring.delete_password(self.SERVICE_NAME, self._make_key(host, username))
            return True
        except KeyringError:
            return False

    def has_password(self, host: str, username: str) -> bool:
        return self.get_password(host, username) is not None
