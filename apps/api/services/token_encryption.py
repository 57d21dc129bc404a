"""
Token Encryption Service

Encrypts and decrypts OAuth tokens (Strava) with AES-256-GCM.
All tokens are encrypted at rest in the database.

FORMAT:
    enc:v1:<iv b64>:<auth tag b64>:<ciphertext b64>

- Key: TOKEN_ENCRYPTION_KEY, 64 hex chars (32 bytes)
- Fresh random 12-byte IV per encryption
- Values without the enc:v1: prefix are legacy plaintext and pass through
  decryption unchanged
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import settings

logger = logging.getLogger(__name__)

PREFIX = "enc:v1:"
IV_BYTES = 12
TAG_BYTES = 16
KEY_HEX_LENGTH = 64


class TokenEncryption:
    """Handles encryption/decryption of OAuth tokens."""

    def __init__(self, key_hex: Optional[str] = None):
        """Initialize encryption with key from settings (or an explicit key)."""
        key_hex = key_hex if key_hex is not None else settings.TOKEN_ENCRYPTION_KEY
        self._cipher: Optional[AESGCM] = None
        self._warned = False

        if not key_hex:
            # SECURITY: Fail hard in production - no plaintext storage
            if settings.ENVIRONMENT == "production":
                raise RuntimeError(
                    "TOKEN_ENCRYPTION_KEY must be set in production. "
                    "Generate with: openssl rand -hex 32"
                )
            self._reason = "TOKEN_ENCRYPTION_KEY not set"
            return

        key = self._parse_key(key_hex)
        if key is None:
            self._reason = "TOKEN_ENCRYPTION_KEY is not 64 hex characters"
            return

        self._cipher = AESGCM(key)
        self._reason = None

    @staticmethod
    def _parse_key(key_hex: str) -> Optional[bytes]:
        if len(key_hex) != KEY_HEX_LENGTH:
            return None
        try:
            return bytes.fromhex(key_hex)
        except ValueError:
            return None

    @property
    def enabled(self) -> bool:
        return self._cipher is not None

    def _warn_once(self):
        if not self._warned:
            logger.warning(f"{self._reason}; OAuth tokens will be stored unencrypted (NOT FOR PRODUCTION)")
            self._warned = True

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext token.

        Returns the enc:v1 string, or the plaintext unchanged when no usable
        key is configured.
        """
        if not self.enabled:
            self._warn_once()
            return plaintext

        iv = os.urandom(IV_BYTES)
        sealed = self._cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return PREFIX + ":".join(
            base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)
        )

    def decrypt(self, value: str) -> str:
        """
        Decrypt a stored token.

        Legacy plaintext is returned as-is. Returns "" when the value cannot be
        decrypted (no key, wrong or rotated key, malformed value).
        """
        if not self.is_encrypted(value):
            return value

        if not self.enabled:
            logger.error("Encrypted token found but no usable TOKEN_ENCRYPTION_KEY is configured")
            return ""

        parts = value[len(PREFIX):].split(":")
        if len(parts) != 3:
            logger.error("Malformed encrypted token")
            return ""

        try:
            iv, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
        except (binascii.Error, ValueError):
            logger.error("Malformed encrypted token")
            return ""

        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            logger.error("Malformed encrypted token")
            return ""

        try:
            return self._cipher.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except InvalidTag:
            logger.error("Token decryption failed (wrong or rotated key)")
            return ""

    @staticmethod
    def is_encrypted(token: Optional[str]) -> bool:
        """True if the token carries the enc:v1: prefix."""
        return bool(token) and token.startswith(PREFIX)


# Global instance
_token_encryption: Optional[TokenEncryption] = None


def get_token_encryption() -> TokenEncryption:
    """Get or create global token encryption instance."""
    global _token_encryption
    if _token_encryption is None:
        _token_encryption = TokenEncryption()
    return _token_encryption


def reset_token_encryption() -> None:
    """Drop the global instance so the next call re-reads settings (tests, key rotation)."""
    global _token_encryption
    _token_encryption = None


def encrypt_token(token: Optional[str]) -> Optional[str]:
    """Convenience function to encrypt a token."""
    if not token:
        return None
    return get_token_encryption().encrypt(token)


def decrypt_token(token: Optional[str]) -> Optional[str]:
    """Convenience function to decrypt a token."""
    if not token:
        return None
    return get_token_encryption().decrypt(token)


def is_encrypted(token: Optional[str]) -> bool:
    return TokenEncryption.is_encrypted(token)
