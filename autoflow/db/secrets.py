"""Secrets encryption utilities.

Uses Fernet symmetric encryption to store OAuth tokens at rest and to seal
OAuth ``state`` values. The key material comes from ``Settings.secrets_key``.
"""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


class SecretsError(Exception):
    """Error related to secrets management."""

    pass


def _derive_fernet(key_material: str) -> Fernet:
    """Derive a valid Fernet key (32 bytes, base64-encoded) from any string."""
    key_hash = hashlib.sha256(key_material.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(key_hash))


class TokenCipher:
    """Encrypts and decrypts secret values."""

    def __init__(self, key_material: str | None, database_path: str = "./data/autoflow.db"):
        """Initialize the cipher.

        Args:
            key_material: The SECRETS_KEY value. If not set, a deterministic
                key derived from the database path is used; this is only
                suitable for development.
            database_path: Used for the development fallback key
        """
        if not key_material:
            key_material = f"dev-secrets-key-{database_path}"
        self._fernet = _derive_fernet(key_material)

    def encrypt(self, value: str) -> str:
        """Encrypt a secret value.

        Args:
            value: The plaintext secret value

        Returns:
            Base64-encoded encrypted value
        """
        encrypted = self._fernet.encrypt(value.encode("utf-8"))
        return encrypted.decode("utf-8")

    def decrypt(self, encrypted_value: str, ttl: int | None = None) -> str:
        """Decrypt a secret value.

        Args:
            encrypted_value: Base64-encoded encrypted value
            ttl: Optional maximum age in seconds

        Returns:
            The plaintext secret value

        Raises:
            SecretsError: If decryption fails or the value is older than ``ttl``
        """
        try:
            decrypted = self._fernet.decrypt(encrypted_value.encode("utf-8"), ttl=ttl)
        except InvalidToken as e:
            raise SecretsError("Failed to decrypt secret") from e
        return decrypted.decode("utf-8")
