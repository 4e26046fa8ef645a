"""AES-256-GCM encryption for OAuth tokens stored in the accounts table."""

import os
import secrets
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class EncryptionManager:
    """Encrypts and decrypts token material with a single 32-byte key."""

    def __init__(self, key: bytes):
        if len(key) < 32:
            raise ValueError("Encryption key must be at least 32 bytes")
        self._aesgcm = AESGCM(key[:32])

    def encrypt(self, plaintext: Union[str, bytes]) -> bytes:
        """
        Encrypt a token.

        Args:
            plaintext: Token to encrypt (string or bytes)

        Returns:
            Nonce followed by ciphertext
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, None)

    def decrypt(self, encrypted_data: bytes) -> str:
        """
        Decrypt a token produced by encrypt().

        Raises:
            ValueError: if the payload is truncated or fails authentication
        """
        if len(encrypted_data) < NONCE_SIZE:
            raise ValueError("Invalid encrypted data: too short")

        nonce, ciphertext = encrypted_data[:NONCE_SIZE], encrypted_data[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise ValueError("Invalid encrypted data: authentication failed") from e

        return plaintext.decode("utf-8")


def generate_encryption_key() -> bytes:
    """Generate a new 32-byte encryption key."""
    return secrets.token_bytes(32)


# Global encryption manager instance (initialized after key is loaded)
_encryption_manager: Optional[EncryptionManager] = None


def init_encryption_manager(key: bytes) -> EncryptionManager:
    """Initialize the global encryption manager with a specific key."""
    global _encryption_manager
    _encryption_manager = EncryptionManager(key)
    return _encryption_manager


def get_encryption_manager() -> EncryptionManager:
    """Get the global encryption manager, loading the key file on first use."""
    global _encryption_manager
    if _encryption_manager is None:
        from calmesh.config import get_encryption_key

        _encryption_manager = EncryptionManager(get_encryption_key())
    return _encryption_manager


def encrypt_value(value: str) -> bytes:
    """Encrypt a value with the global manager."""
    return get_encryption_manager().encrypt(value)


def decrypt_value(encrypted: bytes) -> str:
    """Decrypt a value with the global manager."""
    return get_encryption_manager().decrypt(encrypted)
