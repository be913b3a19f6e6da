"""
Crypto Service for the secure store
Field-level AES-256-GCM encryption. Stored form is base64(nonce ‖ tag ‖ ciphertext).
"""
import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from copilot.errors import IntegrityError

KEY_SIZE = 32     # 256-bit key
NONCE_SIZE = 12   # 96-bit nonce
TAG_SIZE = 16


def generate_key() -> bytes:
    """Generate a fresh random 256-bit key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


class FieldCipher:
    """
    Authenticated encryption for individual columns.
    A fresh random nonce is drawn for every encrypt() call.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes")
        self._aead = AESGCM(key)

    def encrypt_bytes(self, data: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        # AESGCM appends the tag to the ciphertext; reorder to nonce ‖ tag ‖ ciphertext
        sealed = self._aead.encrypt(nonce, data, None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return nonce + tag + ciphertext

    def decrypt_bytes(self, blob: bytes) -> bytes:
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise IntegrityError("Ciphertext is truncated")
        nonce = blob[:NONCE_SIZE]
        tag = blob[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = blob[NONCE_SIZE + TAG_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise IntegrityError("Authentication tag mismatch") from e

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a text value for storage.

        Args:
            plaintext: Value to protect; None stays None

        Returns:
            base64 text of nonce ‖ tag ‖ ciphertext
        """
        if plaintext is None:
            return None
        blob = self.encrypt_bytes(plaintext.encode("utf-8"))
        return base64.b64encode(blob).decode("ascii")

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored value.

        Raises:
            IntegrityError: ciphertext was modified or the key is wrong
        """
        if stored is None:
            return None
        try:
            blob = base64.b64decode(stored.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise IntegrityError("Ciphertext is not valid base64") from e
        data = self.decrypt_bytes(blob)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise IntegrityError("Decrypted value is not valid UTF-8") from e


def mask_secret(secret: str) -> str:
    """
    Mask a secret for display (show first 4 and last 4 chars).
    """
    if not secret or len(secret) < 10:
        return "****"

    return f"{secret[:4]}...{secret[-4:]}"
