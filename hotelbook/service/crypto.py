from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from hotelbook.logging import get_logger

logger = get_logger(__name__)


class FieldCipher:
    """Encrypts PII fields (phone numbers) at rest with Fernet."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("key material is required for field encryption")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return None
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            # Wrong key or tampered value; the field reads as absent
            logger.warning("field_decrypt_failed")
            return None
