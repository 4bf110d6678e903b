"""
Durable key-value storage for wallet state.

All ledger, recovery-store and history state is persisted as opaque bytes
under the keys in StorageKeys. The engine assumes nothing about the backing:
MemoryStore serves tests and ephemeral wallets, SqliteStore persists to disk.

Key patterns:
- KeyValueStore: get/set/remove interface, JSON helpers on top
- SqliteStore: single kv table, thread-local connections, WAL journal,
  blocking sqlite calls moved off the event loop with asyncio.to_thread
- RecordListStore: a newest-first list of JSON records under one key,
  optionally encrypted, serialized through its own mutex
"""

import asyncio
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import log_level
from .mutex import AsyncMutex

logger = logging.getLogger("nutpay.storage")


class StorageKeys:
    """Key namespace for everything the engine persists."""
    PROOFS = "nutpay_proofs"
    TRANSACTIONS = "nutpay_transactions"
    ENCRYPTION_KEY = "nutpay_enc_key"
    ENCRYPTION_SALT = "nutpay_enc_salt"
    PENDING_MINT_QUOTES = "nutpay_pending_mint_quotes"
    PENDING_TOKENS = "nutpay_pending_tokens"
    KEYSET_COUNTERS = "nutpay_keyset_counters"
    SEED = "nutpay_seed"
    RECOVERY_PHRASE = "nutpay_recovery_phrase"
    MINTS = "nutpay_mints"
    WALLET_VERSION = "nutpay_wallet_version"


# =============================================================================
# KEY-VALUE BACKENDS
# =============================================================================

class KeyValueStore:
    """Durable key-value interface. Subclasses implement get/set/remove."""

    async def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    async def set(self, key: str, value: bytes) -> None:
        raise NotImplementedError

    async def remove(self, key: str) -> None:
        raise NotImplementedError

    async def get_json(self, key: str, default: Any = None) -> Any:
        raw = await self.get(key)
        if raw is None:
            return default
        return json.loads(raw.decode("utf-8"))

    async def set_json(self, key: str, value: Any) -> None:
        await self.set(key, json.dumps(value, separators=(",", ":")).encode("utf-8"))

    async def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    """Process-local store."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL,
    updated_at INTEGER NOT NULL
);
"""


class SqliteStore(KeyValueStore):
    """SQLite-backed store with one row per key."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()

        if db_path == ":memory:":
            # Each worker thread would get its own empty database.
            raise ValueError("SqliteStore needs a file path; use MemoryStore instead")
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._get_conn() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_conn(self):
        """Get thread-local database connection."""
        if getattr(self._local, "conn", None) is None:
            conn = sqlite3.connect(self.db_path)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        try:
            yield self._local.conn
        except Exception:
            self._local.conn.rollback()
            raise

    def _get_sync(self, key: str) -> Optional[bytes]:
        with self._get_conn() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            return bytes(row[0]) if row else None

    def _set_sync(self, key: str, value: bytes) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                (key, sqlite3.Binary(value), int(time.time())),
            )
            conn.commit()

    def _remove_sync(self, key: str) -> None:
        with self._get_conn() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(self._set_sync, key, bytes(value))

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_sync, key)

    async def close(self) -> None:
        with self._conn_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.debug(f"nutpay: storage: close failed: {e}")
        self._local = threading.local()


# =============================================================================
# RECORD LISTS
# =============================================================================

class RecordListStore:
    """
    Newest-first list of JSON records persisted under a single key.

    When a cipher is given the whole list is encrypted at rest and a
    decryption failure propagates as DecryptionError.
    """

    COMPONENT = "records"

    def __init__(self, store: KeyValueStore, key: str, cipher=None,
                 max_records: Optional[int] = None):
        self.store = store
        self.key = key
        self.cipher = cipher
        self.max_records = max_records
        self._mutex = AsyncMutex()

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: {self.COMPONENT}: {msg}")

    async def _load(self) -> List[Dict[str, Any]]:
        raw = await self.store.get(self.key)
        if raw is None:
            return []
        if self.cipher is not None:
            return self.cipher.decrypt_json(raw)
        return json.loads(raw.decode("utf-8"))

    def _trim(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if self.max_records is not None and len(records) > self.max_records:
            return records[:self.max_records]
        return records

    async def _save(self, records: List[Dict[str, Any]]) -> None:
        records = self._trim(records)
        if self.cipher is not None:
            await self.store.set(self.key, self.cipher.encrypt_json(records))
        else:
            await self.store.set_json(self.key, records)

    async def _prepend(self, record: Dict[str, Any]) -> None:
        async with self._mutex:
            records = await self._load()
            records.insert(0, record)
            await self._save(records)

    async def _update(self, record_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._mutex:
            records = await self._load()
            for record in records:
                if record.get("id") == record_id:
                    record.update(changes)
                    await self._save(records)
                    return record
            return None

    async def _delete(self, record_id: str) -> bool:
        async with self._mutex:
            records = await self._load()
            kept = [r for r in records if r.get("id") != record_id]
            if len(kept) == len(records):
                return False
            await self._save(kept)
            return True

    async def clear(self) -> None:
        async with self._mutex:
            await self.store.remove(self.key)
