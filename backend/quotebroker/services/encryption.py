"""
Encryption Service

Handles encryption and decryption of Questrade refresh and access tokens.
Uses AES-256-GCM so every ciphertext is stored alongside its own IV and is
authenticated: a tampered ciphertext or a wrong IV fails to decrypt instead of
yielding garbage.
"""
import logging
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

_IV_BYTES = 12


class TokenDecryptionError(Exception):
    """Raised when a stored token cannot be decrypted with the configured key."""


class EncryptionService:
    """Service for encrypting and decrypting sensitive data"""

    def __init__(self, secret: Optional[str] = None):
        """
        Initialize the encryption service with a key derived from ENCRYPTION_KEY.
        The ENCRYPTION_KEY is already validated to be 32+ characters and secure.
        """
        if secret is None:
            from quotebroker.config import settings
            secret = settings.ENCRYPTION_KEY

        # Derive a proper 256-bit key from the configured secret
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b'questrade_token_encryption_salt',  # Fixed salt for key derivation
            iterations=100000,
        )
        self.key = kdf.derive(secret.encode())
        self.cipher = AESGCM(self.key)

    def encrypt(self, plaintext: str) -> Tuple[str, str]:
        """
        Encrypt a plaintext string.

        Args:
            plaintext: The string to encrypt

        Returns:
            Tuple of (hex ciphertext, hex IV)
        """
        if not plaintext:
            raise ValueError("Cannot encrypt an empty token")

        iv = os.urandom(_IV_BYTES)
        encrypted_bytes = self.cipher.encrypt(iv, plaintext.encode(), None)
        return encrypted_bytes.hex(), iv.hex()

    def decrypt(self, ciphertext: str, iv: str) -> str:
        """
        Decrypt a hex ciphertext with its hex IV and return plaintext.

        Args:
            ciphertext: Hex-encoded ciphertext (with authentication tag)
            iv: Hex-encoded IV used at encryption time

        Returns:
            Decrypted plaintext string

        Raises:
            TokenDecryptionError: ciphertext or IV is malformed, tampered or from another key
        """
        if not ciphertext or not iv:
            raise TokenDecryptionError("Missing encrypted token or IV")

        try:
            decrypted_bytes = self.cipher.decrypt(bytes.fromhex(iv), bytes.fromhex(ciphertext), None)
            return decrypted_bytes.decode()
        except (InvalidTag, ValueError, UnicodeDecodeError) as e:
            logger.error(f"Token decryption failed: {type(e).__name__}")
            raise TokenDecryptionError("Token decryption failed") from e

