"""Encryption of merchant M-Pesa secrets.

Secrets are encrypted with Fernet using a key derived from the configured
passphrase. The stored value is an opaque handle; only the gateway decrypts it
when it needs to talk to the payment network.
"""

import base64
import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ....core.config import get_settings
from ..errors import EncryptionError


class CredentialsEncryption:
    """Encrypts and decrypts secret dictionaries for storage."""

    def __init__(self, encryption_key: str | None = None):
        """Initialize the encryption handler.

        Args:
            encryption_key: Passphrase. If None, uses ZIRA_MPESA_ENCRYPTION_KEY
                from settings.

        Raises:
            EncryptionError: If no encryption key is available.
        """
        key = encryption_key or get_settings().MPESA_ENCRYPTION_KEY
        if not key:
            raise EncryptionError(
                "M-Pesa encryption key not configured. Set ZIRA_MPESA_ENCRYPTION_KEY."
            )
        self._fernet = self._create_fernet(key)

    @staticmethod
    def _create_fernet(key: str) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"zira_mpesa_credentials_v1",
            iterations=100000,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(key.encode())))

    def encrypt(self, data: dict[str, Any]) -> dict[str, Any]:
        """Encrypt a dictionary of secrets.

        Returns:
            Handle of the form ``{"encrypted": True, "data": <token>}``.
            An empty input yields an empty handle.
        """
        if not data:
            return {"encrypted": True, "data": ""}

        token = self._fernet.encrypt(json.dumps(data).encode())
        return {"encrypted": True, "data": base64.b64encode(token).decode()}

    def decrypt(self, handle: dict[str, Any] | None) -> dict[str, Any]:
        """Decrypt a handle produced by :meth:`encrypt`.

        Raises:
            EncryptionError: If the handle is not encrypted or was produced
                with another key.
        """
        if not handle:
            return {}
        if not handle.get("encrypted"):
            raise EncryptionError("Stored credentials are not encrypted")

        payload = handle.get("data", "")
        if not payload:
            return {}

        try:
            plaintext = self._fernet.decrypt(base64.b64decode(payload))
        except (InvalidToken, ValueError) as e:
            raise EncryptionError(f"Failed to decrypt credentials: {e!r}") from e
        return json.loads(plaintext.decode())

    @staticmethod
    def generate_key() -> str:
        """Generate a random passphrase suitable for ZIRA_MPESA_ENCRYPTION_KEY."""
        return Fernet.generate_key().decode()


def get_encryption_handler() -> CredentialsEncryption:
    return CredentialsEncryption()
