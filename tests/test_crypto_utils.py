"""
Tests for StorageCipher (AES-256-GCM at rest).

Tests cover:
- Ciphertext layout and nonce freshness
- Wrong key, tampering and truncation raise DecryptionError
- Persisted random key and PBKDF2 credential keys
"""

import pytest

from nutpay.crypto_utils import NONCE_SIZE, TAG_SIZE, StorageCipher, derive_key
from nutpay.errors import DecryptionError
from nutpay.storage import MemoryStore, StorageKeys


class TestStorageCipher:

    def test_encrypt_decrypt(self):
        cipher = StorageCipher.generate()
        blob = cipher.encrypt(b"proofs")
        assert len(blob) == NONCE_SIZE + len(b"proofs") + TAG_SIZE
        assert cipher.decrypt(blob) == b"proofs"

    def test_fresh_nonce_per_encryption(self):
        cipher = StorageCipher.generate()
        assert cipher.encrypt(b"same")[:NONCE_SIZE] != cipher.encrypt(b"same")[:NONCE_SIZE]

    def test_wrong_key_raises(self):
        blob = StorageCipher.generate().encrypt(b"secret")
        with pytest.raises(DecryptionError):
            StorageCipher.generate().decrypt(blob)

    def test_tampered_ciphertext_raises(self):
        cipher = StorageCipher.generate()
        blob = bytearray(cipher.encrypt(b"secret"))
        blob[-1] ^= 0x01
        with pytest.raises(DecryptionError):
            cipher.decrypt(bytes(blob))

    def test_truncated_blob_raises(self):
        with pytest.raises(DecryptionError):
            StorageCipher.generate().decrypt(b"\x00" * 10)

    def test_json_helpers(self):
        cipher = StorageCipher.generate()
        assert cipher.decrypt_json(cipher.encrypt_json({"a": [1, 2]})) == {"a": [1, 2]}

    def test_non_json_payload_raises(self):
        cipher = StorageCipher.generate()
        with pytest.raises(DecryptionError):
            cipher.decrypt_json(cipher.encrypt(b"not json"))

    def test_rejects_short_key(self):
        with pytest.raises(ValueError):
            StorageCipher(b"short")


class TestKeyManagement:

    @pytest.mark.asyncio
    async def test_load_or_create_persists_key(self):
        store = MemoryStore()
        first = await StorageCipher.load_or_create(store)
        second = await StorageCipher.load_or_create(store)
        assert second.decrypt(first.encrypt(b"x")) == b"x"
        assert await store.get(StorageKeys.ENCRYPTION_KEY) is not None

    @pytest.mark.asyncio
    async def test_corrupt_persisted_key_raises(self):
        store = MemoryStore()
        await store.set(StorageKeys.ENCRYPTION_KEY, b"bad")
        with pytest.raises(DecryptionError):
            await StorageCipher.load_or_create(store)

    @pytest.mark.asyncio
    async def test_credential_key(self):
        store = MemoryStore()
        cipher = await StorageCipher.from_credential(store, "1234", iterations=1000)
        same = await StorageCipher.from_credential(store, "1234", iterations=1000)
        other = await StorageCipher.from_credential(store, "4321", iterations=1000)
        blob = cipher.encrypt(b"seed")
        assert same.decrypt(blob) == b"seed"
        with pytest.raises(DecryptionError):
            other.decrypt(blob)

    @pytest.mark.asyncio
    async def test_empty_credential_rejected(self):
        with pytest.raises(ValueError):
            await StorageCipher.from_credential(MemoryStore(), "")

    def test_derive_key_depends_on_salt(self):
        assert derive_key("pin", b"a" * 32, 1000) != derive_key("pin", b"b" * 32, 1000)
        assert len(derive_key("pin", b"a" * 32, 1000)) == 32
