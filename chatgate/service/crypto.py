from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from chatgate.logging import get_logger

logger = get_logger(__name__)


class SecretDecryptionError(Exception):
    """Ciphertext was tampered with or produced under a different key."""


class SecretBox:
    """Authenticated symmetric encryption for small secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("encryption key material is required")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.warning("secret_decrypt_failed")
            raise SecretDecryptionError("unable to decrypt secret") from exc


def mask_secret(value: str | None, visible: int = 4) -> str:
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}{'*' * (len(value) - visible * 2)}{value[-visible:]}"
