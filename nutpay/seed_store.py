"""
Encrypted wallet seed, recovery phrase and wallet version.

A seed that exists but cannot be decrypted raises DecryptionError. Treating
it as absent would silently switch the wallet to random secrets and lose
seed recoverability for everything minted afterwards.
"""

import logging
from typing import Optional

from .config import log_level
from .crypto_utils import StorageCipher
from .derivation import generate_mnemonic, mnemonic_to_seed, validate_mnemonic
from .errors import ValidationError
from .models import WalletVersion
from .storage import KeyValueStore, StorageKeys

logger = logging.getLogger("nutpay.seed")


class SeedStore:

    def __init__(self, store: KeyValueStore, cipher: StorageCipher):
        self.store = store
        self.cipher = cipher

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: seed: {msg}")

    async def has_seed(self) -> bool:
        return await self.store.get(StorageKeys.SEED) is not None

    async def get_seed(self) -> Optional[bytes]:
        raw = await self.store.get(StorageKeys.SEED)
        if raw is None:
            return None
        return self.cipher.decrypt(raw)

    async def store_seed(self, seed: bytes) -> None:
        await self.store.set(StorageKeys.SEED, self.cipher.encrypt(seed))

    async def get_mnemonic(self) -> Optional[str]:
        raw = await self.store.get(StorageKeys.RECOVERY_PHRASE)
        if raw is None:
            return None
        return self.cipher.decrypt(raw).decode("utf-8")

    async def store_mnemonic(self, mnemonic: str) -> None:
        await self.store.set(StorageKeys.RECOVERY_PHRASE,
                             self.cipher.encrypt(mnemonic.encode("utf-8")))

    async def get_version(self) -> WalletVersion:
        raw = await self.store.get(StorageKeys.WALLET_VERSION)
        if raw is None:
            return WalletVersion.V1_LEGACY
        return WalletVersion(raw.decode("utf-8"))

    async def set_version(self, version: WalletVersion) -> None:
        await self.store.set(StorageKeys.WALLET_VERSION, version.value.encode("utf-8"))

    async def needs_migration(self) -> bool:
        return (await self.get_version() == WalletVersion.V1_LEGACY
                or not await self.has_seed())

    async def initialize_deterministic(self) -> str:
        """
        Generate a BIP39 mnemonic, store its seed and mark the wallet deterministic.

        Returns the mnemonic so the host can show it to the user once.
        Refuses to overwrite an existing seed.
        """
        if await self.has_seed():
            raise ValidationError("wallet already has a seed")
        mnemonic = generate_mnemonic()
        await self.store_seed(mnemonic_to_seed(mnemonic))
        await self.store_mnemonic(mnemonic)
        await self.set_version(WalletVersion.V2_DETERMINISTIC)
        self._log("initialized deterministic wallet seed")
        return mnemonic

    async def restore_from_mnemonic(self, mnemonic: str) -> bytes:
        """Replace the seed with one derived from ``mnemonic``; returns the seed."""
        mnemonic = " ".join(mnemonic.strip().lower().split())
        if not validate_mnemonic(mnemonic):
            raise ValidationError("invalid recovery phrase")
        seed = mnemonic_to_seed(mnemonic)
        await self.store_seed(seed)
        await self.store_mnemonic(mnemonic)
        await self.set_version(WalletVersion.V2_DETERMINISTIC)
        self._log("seed restored from recovery phrase")
        return seed

    async def clear(self) -> None:
        await self.store.remove(StorageKeys.SEED)
        await self.store.remove(StorageKeys.RECOVERY_PHRASE)
        await self.store.remove(StorageKeys.WALLET_VERSION)
