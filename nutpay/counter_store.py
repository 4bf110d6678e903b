"""
Keyset counters for NUT-13 deterministic secrets.

Each (keyset) counter only ever moves forward. A counter value is consumed
the moment a secret derived from it is sent to a mint, so reservation is a
durable increment made under the ledger mutex before any network call.
"""

import logging
from typing import Dict, Optional

from .config import log_level
from .mutex import AsyncMutex
from .storage import KeyValueStore, StorageKeys

logger = logging.getLogger("nutpay.counters")


class CounterStore:
    """Persistent per-keyset counters."""

    def __init__(self, store: KeyValueStore, mutex: Optional[AsyncMutex] = None):
        self.store = store
        self.mutex = mutex or AsyncMutex()

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: counters: {msg}")

    async def _load(self) -> Dict[str, int]:
        return await self.store.get_json(StorageKeys.KEYSET_COUNTERS, {})

    async def get_counters(self) -> Dict[str, int]:
        return dict(await self._load())

    async def get_counter(self, keyset_id: str) -> int:
        return int((await self._load()).get(keyset_id, 0))

    async def reserve(self, keyset_id: str, count: int) -> int:
        """Consume ``count`` counter values; returns the first one."""
        if count < 0:
            raise ValueError("count must be non-negative")
        async with self.mutex:
            counters = await self._load()
            start = int(counters.get(keyset_id, 0))
            if count:
                counters[keyset_id] = start + count
                await self.store.set_json(StorageKeys.KEYSET_COUNTERS, counters)
        return start

    async def set_counter(self, keyset_id: str, value: int) -> bool:
        """Raise a counter to ``value``. Never lowers it; returns True if changed."""
        async with self.mutex:
            counters = await self._load()
            if value <= int(counters.get(keyset_id, 0)):
                return False
            counters[keyset_id] = value
            await self.store.set_json(StorageKeys.KEYSET_COUNTERS, counters)
        self._log(f"counter for {keyset_id} raised to {value}")
        return True

    async def set_counters(self, values: Dict[str, int]) -> None:
        """Merge counters by taking the maximum per keyset."""
        async with self.mutex:
            counters = await self._load()
            for keyset_id, value in values.items():
                counters[keyset_id] = max(int(counters.get(keyset_id, 0)), int(value))
            await self.store.set_json(StorageKeys.KEYSET_COUNTERS, counters)

    async def clear(self) -> None:
        async with self.mutex:
            await self.store.remove(StorageKeys.KEYSET_COUNTERS)
