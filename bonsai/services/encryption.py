"""
Encryption service for organization secrets.

Uses Fernet symmetric encryption so widget keys are never stored in
plaintext, and compares presented keys in constant time.
"""
import hmac
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from bonsai.config import settings


class EncryptionService:
    """Service for encrypting, decrypting and comparing secrets."""

    def __init__(self, key: Optional[str] = None):
        """
        Initialize the encryption service.

        Args:
            key: Fernet key as base64-encoded string. If None, uses settings.fernet_key
        """
        key_to_use = key or settings.fernet_key
        self._fernet = Fernet(key_to_use.encode())

    def encrypt(self, plaintext: str) -> bytes:
        """
        Encrypt a plaintext string.

        Raises:
            ValueError: If plaintext is empty
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")

        return self._fernet.encrypt(plaintext.encode())

    def decrypt(self, ciphertext: bytes) -> str:
        """
        Decrypt ciphertext bytes to a string.

        Raises:
            ValueError: If ciphertext is empty
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty bytes")

        return self._fernet.decrypt(ciphertext).decode()

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[bytes]:
        """Encrypt a string if it's not None, otherwise return None."""
        if plaintext is None:
            return None
        return self.encrypt(plaintext)

    def decrypt_optional(self, ciphertext: Optional[bytes]) -> Optional[str]:
        """Decrypt bytes if not None, otherwise return None."""
        if ciphertext is None:
            return None
        return self.decrypt(ciphertext)

    def matches(self, ciphertext: Optional[bytes], candidate: Optional[str]) -> bool:
        """
        Check a presented secret against an encrypted one.

        Returns False when either side is missing or the stored value cannot
        be decrypted with the current key.
        """
        if not ciphertext or not candidate:
            return False
        try:
            stored = self.decrypt(ciphertext)
        except InvalidToken:
            return False
        return hmac.compare_digest(stored.encode(), candidate.encode())


# Global encryption service instance
encryption_service = EncryptionService()


def generate_fernet_key() -> str:
    """
    Generate a new Fernet key.

    Usage:
        >>> key = generate_fernet_key()
        >>> print(f"FERNET_KEY={key}")
    """
    return Fernet.generate_key().decode()
