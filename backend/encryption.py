# encryption.py — AES-256-GCM vault for project credentials
#
# Stored format (hex): ciphertext || 16-byte auth tag, plus a separate 16-byte IV.
import os
import hashlib
import logging
import secrets
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger("teamspace.encryption")

IV_LENGTH = 16
TAG_LENGTH = 16

ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "")
if not ENCRYPTION_KEY:
    ENCRYPTION_KEY = secrets.token_urlsafe(48)
    logger.warning(
        "ENCRYPTION_KEY not set. Generated ephemeral key; stored credentials "
        "will be unreadable after restart. Set ENCRYPTION_KEY in production!"
    )


class DecryptionFailed(Exception):
    """Auth tag did not verify: tampered data, wrong key or malformed input."""


class EncryptedValue(NamedTuple):
    encrypted: str
    iv: str


class CredentialVault:
    def __init__(self, secret: str):
        # SHA-256 normalises any configured secret to the 32-byte AES-256 key
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> EncryptedValue:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedValue(encrypted=sealed.hex(), iv=iv.hex())

    def decrypt(self, encrypted: str, iv: str) -> str:
        try:
            sealed = bytes.fromhex(encrypted)
            nonce = bytes.fromhex(iv)
        except ValueError as e:
            raise DecryptionFailed("Malformed ciphertext or IV") from e
        if len(sealed) < TAG_LENGTH or len(nonce) != IV_LENGTH:
            raise DecryptionFailed("Malformed ciphertext or IV")
        try:
            return self._aead.decrypt(nonce, sealed, None).decode("utf-8")
        except InvalidTag as e:
            raise DecryptionFailed("Authentication tag mismatch") from e


vault = CredentialVault(ENCRYPTION_KEY)


def encrypt(plaintext: str) -> EncryptedValue:
    return vault.encrypt(plaintext)


def decrypt(encrypted: str, iv: str) -> str:
    return vault.decrypt(encrypted, iv)
