"""
Key derivation for backup stream encryption.
Derives a 32-byte key from the operator's passphrase with PBKDF2-HMAC-SHA256.
"""

import os
import base64
from typing import Optional

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from securebackup.config import Config


SALT_SIZE = 16
KEY_SIZE = 32


class CryptoManager:
    """Derives and holds the symmetric key for one backup stream."""

    def __init__(self, iterations: Optional[int] = None):
        self.iterations = iterations or Config.KDF_ITERATIONS
        self._key = None
        self._salt = None

    def initialize(self, passphrase: str, salt: bytes = None) -> bytes:
        """
        Initialize the manager with a passphrase.

        Args:
            passphrase: Secret to derive the stream key from
            salt: Optional salt (if None, generates new one)

        Returns:
            The salt used (stored in the stream header)
        """
        if not passphrase:
            raise ValueError("Passphrase must not be empty")

        if salt is None:
            salt = os.urandom(SALT_SIZE)

        self._salt = salt

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        self._key = kdf.derive(passphrase.encode())
        return salt

    def _require_key(self) -> bytes:
        if self._key is None:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")
        return self._key

    def fernet(self) -> Fernet:
        """Fernet instance keyed with the derived key."""
        return Fernet(base64.urlsafe_b64encode(self._require_key()))

    def aesgcm(self) -> AESGCM:
        """AES-256-GCM instance keyed with the derived key."""
        return AESGCM(self._require_key())

    @property
    def salt(self) -> Optional[bytes]:
        return self._salt

    @property
    def is_initialized(self) -> bool:
        """Check if the crypto manager has been initialized."""
        return self._key is not None
