"""
Recovery store for inbound Lightning invoices (pending mint quotes).

A quote is recorded as soon as the invoice is requested so a restart can
still claim proofs for an invoice paid while the process was down.
"""

import time
from typing import List, Optional

from .models import MintQuoteStatus, PendingMintQuote, generate_id, normalize_mint_url
from .storage import KeyValueStore, RecordListStore, StorageKeys

DEFAULT_QUOTE_EXPIRY = 3600
PAID_QUOTE_RETENTION = 3600


class PendingQuoteStore(RecordListStore):

    COMPONENT = "quotes"

    def __init__(self, store: KeyValueStore):
        super().__init__(store, StorageKeys.PENDING_MINT_QUOTES)

    async def add(self, quote_id: str, mint_url: str, amount: int, invoice: str,
                  expires_at: Optional[int] = None) -> PendingMintQuote:
        now = int(time.time())
        quote = PendingMintQuote(
            id=generate_id("mq"),
            quote_id=quote_id,
            mint_url=normalize_mint_url(mint_url),
            amount=amount,
            invoice=invoice,
            created_at=now,
            expires_at=expires_at or now + DEFAULT_QUOTE_EXPIRY,
        )
        await self._prepend(quote.to_dict())
        return quote

    async def list(self, mint_url: Optional[str] = None) -> List[PendingMintQuote]:
        quotes = [PendingMintQuote.from_dict(r) for r in await self._load()]
        if mint_url:
            target = normalize_mint_url(mint_url)
            quotes = [q for q in quotes if q.mint_url == target]
        return quotes

    async def list_pending(self) -> List[PendingMintQuote]:
        return [q for q in await self.list() if q.status == MintQuoteStatus.PENDING]

    async def get(self, record_id: str) -> Optional[PendingMintQuote]:
        for quote in await self.list():
            if quote.id == record_id:
                return quote
        return None

    async def get_by_quote_id(self, quote_id: str) -> Optional[PendingMintQuote]:
        for quote in await self.list():
            if quote.quote_id == quote_id:
                return quote
        return None

    async def update_status(self, quote_id: str, status: MintQuoteStatus) -> bool:
        """Update by mint-assigned quote id."""
        quote = await self.get_by_quote_id(quote_id)
        if quote is None:
            return False
        return await self._update(quote.id, {"status": status.value}) is not None

    async def remove(self, quote_id: str) -> bool:
        quote = await self.get_by_quote_id(quote_id)
        if quote is None:
            return False
        return await self._delete(quote.id)

    async def cleanup_old(self, now: Optional[int] = None) -> int:
        """
        Prune finished or stale quotes.

        Pending quotes live until expiry, paid quotes for an hour after
        creation, minted quotes are dropped.
        """
        now = now or int(time.time())
        async with self._mutex:
            records = await self._load()
            kept = []
            for record in records:
                quote = PendingMintQuote.from_dict(record)
                age = now - quote.created_at
                if quote.status == MintQuoteStatus.PENDING and quote.expires_at > now:
                    kept.append(record)
                elif quote.status == MintQuoteStatus.PAID and age < PAID_QUOTE_RETENTION:
                    kept.append(record)
            removed = len(records) - len(kept)
            if removed:
                await self._save(kept)
        if removed:
            self._log(f"pruned {removed} mint quotes")
        return removed
