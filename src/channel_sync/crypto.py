"""Encryption of stored channel credentials (AES-256-GCM)."""

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class CredentialError(Exception):
    """Raised when a credential cannot be encrypted or decrypted."""
    pass


def generate_key() -> str:
    """Return a new base64 encoded 256-bit key."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode('ascii')


class CredentialCipher:
    """Encrypts credentials as base64(nonce || ciphertext)."""

    def __init__(self, key: Optional[str]):
        if not key:
            raise CredentialError("ENCRYPTION_KEY is not configured")
        try:
            raw = base64.b64decode(key)
        except ValueError as e:
            raise CredentialError(f"ENCRYPTION_KEY is not valid base64: {e}")
        if len(raw) != 32:
            raise CredentialError("ENCRYPTION_KEY must decode to 32 bytes")
        self._aesgcm = AESGCM(raw)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode('utf-8'), None)
        return base64.b64encode(nonce + ciphertext).decode('ascii')

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        try:
            blob = base64.b64decode(token)
            nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
            return self._aesgcm.decrypt(nonce, ciphertext, None).decode('utf-8')
        except (InvalidTag, ValueError) as e:
            raise CredentialError(f"Could not decrypt credential: {type(e).__name__}")
