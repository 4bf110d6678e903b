"""
Authenticated encryption for wallet state at rest.

AES-256-GCM with a fresh 96-bit nonce per encryption. Ciphertext layout is
``nonce(12) || ciphertext || tag(16)``. The key is either a random key
persisted in the store or derived from a user credential with PBKDF2.

Any authentication or decoding failure raises DecryptionError. Callers must
never interpret it as "no data".
"""

import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError
from .storage import KeyValueStore, StorageKeys

logger = logging.getLogger("nutpay.crypto")

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
SALT_SIZE = 32
PBKDF2_ITERATIONS = 100_000


class StorageCipher:
    """AES-256-GCM wrapper used by every encrypted store."""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def generate(cls) -> "StorageCipher":
        return cls(AESGCM.generate_key(bit_length=256))

    @classmethod
    async def load_or_create(cls, store: KeyValueStore) -> "StorageCipher":
        """Load the persisted random key, creating it on first use."""
        key = await store.get(StorageKeys.ENCRYPTION_KEY)
        if key is None:
            key = AESGCM.generate_key(bit_length=256)
            await store.set(StorageKeys.ENCRYPTION_KEY, key)
            logger.info("nutpay: crypto: generated new storage key")
        elif len(key) != KEY_SIZE:
            raise DecryptionError("persisted storage key is corrupt")
        return cls(key)

    @classmethod
    async def from_credential(cls, store: KeyValueStore, credential: str,
                              iterations: int = PBKDF2_ITERATIONS) -> "StorageCipher":
        """Derive the key from a PIN or password and a persisted salt."""
        if not credential:
            raise ValueError("credential must not be empty")
        salt = await store.get(StorageKeys.ENCRYPTION_SALT)
        if salt is None:
            salt = os.urandom(SALT_SIZE)
            await store.set(StorageKeys.ENCRYPTION_SALT, salt)
        return cls(derive_key(credential, salt, iterations))

    def encrypt(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def decrypt(self, blob: bytes) -> bytes:
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("ciphertext too short")
        try:
            return self._aead.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise DecryptionError("authentication failed (wrong key or tampered data)") from e

    def encrypt_json(self, obj: Any) -> bytes:
        return self.encrypt(json.dumps(obj, separators=(",", ":")).encode("utf-8"))

    def decrypt_json(self, blob: bytes) -> Any:
        plaintext = self.decrypt(blob)
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecryptionError(f"decrypted payload is not valid JSON: {e}") from e


def derive_key(credential: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt,
                     iterations=iterations)
    return kdf.derive(credential.encode("utf-8"))
