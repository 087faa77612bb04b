"""AES-256-GCM encryption of TOTP secrets at rest.

Stored form is ``base64(nonce) + ":" + base64(ciphertext || tag)`` in a single
text column. The key comes from Vault (``two_factor/encryption_key``, base64
of 32 random bytes).
"""

import base64
import binascii
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_BYTES = 12


class SecretBox:
    """Encrypts and decrypts short strings with one AES-256-GCM key."""

    def __init__(self, key_b64: str):
        try:
            key = base64.b64decode(key_b64, validate=True)
        except binascii.Error as e:
            raise ValueError("Encryption key must be base64") from e
        if len(key) != 32:
            raise ValueError("Encryption key must decode to 32 bytes")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        # Fresh nonce every call; GCM must never reuse one under the same key.
        nonce = secrets.token_bytes(NONCE_BYTES)
        ct_and_tag = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return (
            base64.b64encode(nonce).decode("ascii")
            + ":"
            + base64.b64encode(ct_and_tag).decode("ascii")
        )

    def decrypt(self, stored: str) -> str:
        """
        Reverse ``encrypt``.

        Raises ValueError if the value is malformed, was tampered with, or was
        encrypted under another key.
        """
        try:
            nonce_b64, ct_b64 = stored.split(":", 1)
            nonce = base64.b64decode(nonce_b64)
            ct_and_tag = base64.b64decode(ct_b64)
            plaintext = self._aesgcm.decrypt(nonce, ct_and_tag, None)
        except (ValueError, binascii.Error, InvalidTag) as e:
            raise ValueError("Decryption failed - data may be tampered") from e
        return plaintext.decode("utf-8")

    @staticmethod
    def generate_key() -> str:
        """New random key in the form Vault stores it."""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")
