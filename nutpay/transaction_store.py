"""Transaction history, newest first, capped at a fixed number of records."""

import time
from typing import Any, Dict, List, Optional

from .models import (
    Transaction,
    TransactionStatus,
    TransactionType,
    generate_id,
    normalize_mint_url,
)
from .storage import KeyValueStore, RecordListStore, StorageKeys

MAX_TRANSACTIONS = 100


class TransactionStore(RecordListStore):

    COMPONENT = "history"

    def __init__(self, store: KeyValueStore, max_records: int = MAX_TRANSACTIONS):
        super().__init__(store, StorageKeys.TRANSACTIONS, max_records=max_records)

    async def add(self, tx_type: TransactionType, amount: int, unit: str, mint_url: str,
                  status: TransactionStatus = TransactionStatus.PENDING,
                  origin: Optional[str] = None, token: Optional[str] = None) -> Transaction:
        tx = Transaction(
            id=generate_id("tx"),
            type=tx_type,
            amount=amount,
            unit=unit,
            mint_url=normalize_mint_url(mint_url),
            timestamp=int(time.time()),
            status=status,
            origin=origin,
            token=token,
        )
        await self._prepend(tx.to_dict())
        return tx

    async def update(self, tx_id: str, status: TransactionStatus,
                     amount: Optional[int] = None,
                     token: Optional[str] = None) -> Optional[Transaction]:
        changes: Dict[str, Any] = {"status": status.value}
        if amount is not None:
            changes["amount"] = amount
        if token is not None:
            changes["token"] = token
        record = await self._update(tx_id, changes)
        return Transaction.from_dict(record) if record else None

    async def list(self) -> List[Transaction]:
        return [Transaction.from_dict(r) for r in await self._load()]

    async def get(self, tx_id: str) -> Optional[Transaction]:
        for tx in await self.list():
            if tx.id == tx_id:
                return tx
        return None

    async def list_recent(self, limit: int = 10) -> List[Transaction]:
        return (await self.list())[:limit]

    async def list_for_origin(self, origin: str) -> List[Transaction]:
        return [tx for tx in await self.list() if tx.origin == origin]

    async def spent_today(self, origin: Optional[str] = None,
                          now: Optional[float] = None) -> int:
        """Sum of completed payments since local midnight."""
        now = now or time.time()
        midnight = int(time.mktime(time.localtime(now)[:3] + (0, 0, 0, 0, 0, -1)))
        return sum(
            tx.amount for tx in await self.list()
            if tx.type == TransactionType.PAYMENT
            and tx.status == TransactionStatus.COMPLETED
            and tx.timestamp >= midnight
            and (origin is None or tx.origin == origin)
        )
