"""
Encryption Utilities

Fernet encryption for custodial key material (agent wallet private keys).

**CRITICAL SECURITY NOTES:**
- Encryption key MUST be in environment variables
- NEVER hardcode encryption key
- Key should be 32 url-safe base64-encoded bytes

Author: Custody Team
Last Updated: 2026-10-18
"""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from custody.config.settings import get_settings
from custody.utils.logger import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Base exception for encryption errors"""
    pass


class EncryptionKeyError(EncryptionError):
    """Encryption key not configured or invalid"""
    pass


class DecryptionError(EncryptionError):
    """Failed to decrypt data (invalid key or corrupted data)"""
    pass


class KeyMaterialEncryption:
    """
    Encrypts and decrypts custodial key material.

    Usage:
        encryption = KeyMaterialEncryption()
        encrypted = encryption.encrypt_string(private_key_hex)
        private_key_hex = encryption.decrypt_string(encrypted)
    """

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            encryption_key: Base64-encoded Fernet key (defaults to settings.ENCRYPTION_KEY)

        Raises:
            EncryptionKeyError: If key is invalid or not found
        """
        if encryption_key is None:
            encryption_key = get_settings().ENCRYPTION_KEY

        if not encryption_key:
            raise EncryptionKeyError(
                "Encryption key not configured. Set ENCRYPTION_KEY in environment variables."
            )

        try:
            self.fernet = Fernet(encryption_key.encode())
        except (ValueError, TypeError) as e:
            raise EncryptionKeyError(
                f"Invalid encryption key format: {str(e)}. "
                "Key must be 32 url-safe base64-encoded bytes."
            ) from e

        logger.debug("Encryption service initialized")

    def encrypt_string(self, plaintext: str) -> str:
        """Encrypt a string; returns the Fernet token as text."""
        if not plaintext:
            raise EncryptionError("Refusing to encrypt empty key material")
        return self.fernet.encrypt(plaintext.encode()).decode()

    def decrypt_string(self, encrypted: str) -> str:
        """
        Decrypt a Fernet token.

        Raises:
            DecryptionError: If decryption fails (wrong key or corrupted data)
        """
        try:
            return self.fernet.decrypt(encrypted.encode()).decode()
        except InvalidToken as e:
            logger.error("Decryption failed: Invalid token (wrong key or corrupted data)")
            raise DecryptionError(
                "Failed to decrypt key material. The encryption key may be incorrect, "
                "or the data may be corrupted."
            ) from e


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key."""
    return Fernet.generate_key().decode()


# ==================== GLOBAL INSTANCE ====================

_encryption_service: Optional[KeyMaterialEncryption] = None


def get_encryption_service() -> KeyMaterialEncryption:
    """Get global encryption service instance (singleton)."""
    global _encryption_service

    if _encryption_service is None:
        _encryption_service = KeyMaterialEncryption()

    return _encryption_service
