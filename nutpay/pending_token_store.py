"""
Recovery store for outbound ecash not yet confirmed redeemed.

Records are written before proofs are handed to the mint for a send or melt.
Tokens are bearer instruments, so the list is encrypted at rest. The record
cap only ever evicts settled records; a PENDING record stays until it is
resolved or ages out in cleanup_old().
"""

import time
from typing import Any, Dict, List, Optional

from .crypto_utils import StorageCipher
from .models import (
    PendingToken,
    PendingTokenPurpose,
    PendingTokenStatus,
    generate_id,
    normalize_mint_url,
)
from .storage import KeyValueStore, RecordListStore, StorageKeys

MAX_PENDING_TOKENS = 50
PENDING_RETENTION = 7 * 86400
SETTLED_RETENTION = 86400


class PendingTokenStore(RecordListStore):

    COMPONENT = "pending-tokens"

    def __init__(self, store: KeyValueStore, cipher: StorageCipher,
                 max_records: int = MAX_PENDING_TOKENS):
        super().__init__(store, StorageKeys.PENDING_TOKENS, cipher=cipher,
                         max_records=max_records)

    def _trim(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        excess = len(records) - self.max_records
        if excess <= 0:
            return records
        pending = PendingTokenStatus.PENDING.value
        dropped = set()
        for i in range(len(records) - 1, -1, -1):
            if len(dropped) == excess:
                break
            if records[i].get("status", pending) != pending:
                dropped.add(i)
        if len(dropped) < excess:
            self._log(f"keeping {len(records) - len(dropped)} records over the cap of "
                      f"{self.max_records}, unresolved tokens are not evicted", level="warn")
        return [r for i, r in enumerate(records) if i not in dropped]

    async def add(self, token: str, amount: int, mint_url: str,
                  purpose: PendingTokenPurpose, destination: Optional[str] = None,
                  quote_id: Optional[str] = None,
                  transaction_id: Optional[str] = None) -> PendingToken:
        record = PendingToken(
            id=generate_id("pt"),
            token=token,
            amount=amount,
            mint_url=normalize_mint_url(mint_url),
            purpose=purpose,
            created_at=int(time.time()),
            destination=destination,
            quote_id=quote_id,
            transaction_id=transaction_id,
        )
        await self._prepend(record.to_dict())
        return record

    async def list(self, status: Optional[PendingTokenStatus] = None) -> List[PendingToken]:
        tokens = [PendingToken.from_dict(r) for r in await self._load()]
        if status is not None:
            tokens = [t for t in tokens if t.status == status]
        return tokens

    async def get(self, token_id: str) -> Optional[PendingToken]:
        for token in await self.list():
            if token.id == token_id:
                return token
        return None

    async def update_status(self, token_id: str, status: PendingTokenStatus) -> bool:
        return await self._update(token_id, {"status": status.value}) is not None

    async def remove(self, token_id: str) -> bool:
        return await self._delete(token_id)

    async def cleanup_old(self, now: Optional[int] = None) -> int:
        """Keep pending tokens for 7 days, claimed or expired ones for 24 hours."""
        now = now or int(time.time())
        async with self._mutex:
            records = await self._load()
            kept = []
            for record in records:
                token = PendingToken.from_dict(record)
                age = now - token.created_at
                if token.status == PendingTokenStatus.PENDING:
                    if age < PENDING_RETENTION:
                        kept.append(record)
                elif age < SETTLED_RETENTION:
                    kept.append(record)
            removed = len(records) - len(kept)
            if removed:
                await self._save(kept)
        if removed:
            self._log(f"pruned {removed} pending tokens")
        return removed
