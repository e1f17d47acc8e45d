"""Credential generation and at-rest encryption for provisioned proxies.

Passwords are stored as ``iv_hex:tag_hex:ciphertext_hex`` (AES-256-GCM, 16 byte IV)
so rows written by earlier deployments remain readable.
"""

import os
import secrets
import string

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"
PASSWORD_LENGTH = 16
_IV_BYTES = 16
_TAG_BYTES = 16


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Generate a random proxy password from the device-safe alphabet."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def shared_username(user_id: str) -> str:
    """Username shared by the HTTP and SOCKS5 grants of one user."""
    return f"user_{user_id[:8]}"


class PasswordCipher:
    """AES-256-GCM encryption for proxy passwords."""

    def __init__(self, key_hex: str) -> None:
        if not key_hex:
            raise ValueError("PROXY_ENCRYPTION_KEY is not configured")
        key = bytes.fromhex(key_hex)
        if len(key) != 32:
            raise ValueError("PROXY_ENCRYPTION_KEY must decode to 32 bytes")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        try:
            iv_hex, tag_hex, ciphertext_hex = token.split(":")
            iv = bytes.fromhex(iv_hex)
            sealed = bytes.fromhex(ciphertext_hex) + bytes.fromhex(tag_hex)
            return self._aead.decrypt(iv, sealed, None).decode("utf-8")
        except (ValueError, InvalidTag) as e:
            raise ValueError("Invalid encrypted password") from e
