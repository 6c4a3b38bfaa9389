"""Encryption at rest: AES-256-GCM with per-account keys derived via PBKDF2.

Encrypted blob layout:
    [12 bytes nonce][16 bytes auth tag][ciphertext...]
"""
import hashlib
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from exceptions import IntegrityError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100000
SALT_PREFIX = "darkdrop:"

_warned_no_master_key = False


def derive_key(master_key: bytes, account_id: str, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive the 256-bit key for one account from the master key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=f"{SALT_PREFIX}{account_id}".encode("utf-8"),
        iterations=iterations,
    )
    return kdf.derive(master_key)


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    aesgcm = AESGCM(key)
    nonce = os.urandom(NONCE_LENGTH)
    # AESGCM appends the tag; move it in front of the ciphertext
    sealed = aesgcm.encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return nonce + tag + ciphertext


def decrypt(blob: bytes, key: bytes) -> bytes:
    """Decrypt a blob produced by encrypt(). Raises IntegrityError on tamper or wrong key."""
    if len(blob) < NONCE_LENGTH + TAG_LENGTH:
        raise IntegrityError("Encrypted data is too short to contain nonce and auth tag")

    nonce = blob[:NONCE_LENGTH]
    tag = blob[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
    ciphertext = blob[NONCE_LENGTH + TAG_LENGTH:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag:
        raise IntegrityError("Encrypted data failed authentication")


def hash_file(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def verify_integrity(data: bytes, expected_checksum: str) -> bool:
    """Verify data matches stored checksum to detect corruption."""
    return hash_file(data) == expected_checksum


class EncryptionManager:
    """Holds the master key and hands out per-account keys."""

    def __init__(self, master_key_hex: Optional[str], iterations: int = PBKDF2_ITERATIONS):
        self._master_key = bytes.fromhex(master_key_hex) if master_key_hex else None
        self.iterations = iterations

    @property
    def available(self) -> bool:
        return self._master_key is not None

    def get_account_key(self, account_id: str) -> Optional[bytes]:
        """Return the account key, or None when no master key is configured."""
        global _warned_no_master_key
        if self._master_key is None:
            if not _warned_no_master_key:
                logger.warning("DARKDROP_MASTER_KEY not set - encryption disabled, storing plaintext")
                _warned_no_master_key = True
            return None
        return derive_key(self._master_key, account_id, self.iterations)

    def encrypt(self, plaintext: bytes, key: bytes) -> bytes:
        return encrypt(plaintext, key)

    def decrypt(self, blob: bytes, key: bytes) -> bytes:
        return decrypt(blob, key)
