from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from stormcrm.logging import get_logger

logger = get_logger(__name__)


class CredentialCipher:
    """Encrypts third-party API keys before they reach storage.

    The Fernet key is derived from ``API_KEY_ENCRYPTION_KEY``, falling back to
    the access-token secret. Changing the material makes previously stored keys
    unreadable.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("key material is required")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return None
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.warning("credential_decrypt_failed")
            return None

    @staticmethod
    def preview(plaintext: str) -> str:
        """Last four characters only, e.g. ``****wxyz``."""
        return f"****{plaintext[-4:]}" if len(plaintext) > 4 else "****"


__all__ = ["CredentialCipher"]
