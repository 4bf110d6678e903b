"""
Proof Ledger: encrypted, persistent collection of owned proofs.

Each proof is LIVE (spendable) or PENDING_SPEND (reserved for an outgoing
operation still in flight). Spendable balance counts LIVE proofs only.

Key patterns:
- The whole ledger is one encrypted blob; every mutation is a single
  read-modify-write executed inside the ledger mutex
- select_and_reserve makes selection and reservation one critical section,
  so two concurrent payments can never claim the same proof
- finalize_pending_spend is the only path that destroys reserved proofs
- Decryption failures propagate; an unreadable ledger is never "empty"
"""

import logging
import time
from typing import Dict, Iterable, List, Optional

from .config import log_level
from .crypto_utils import StorageCipher
from .models import (
    Proof,
    ProofSelection,
    ProofStatus,
    StoredProof,
    normalize_mint_url,
)
from .mutex import AsyncMutex
from .storage import KeyValueStore, StorageKeys

logger = logging.getLogger("nutpay.ledger")


def select_greedy(candidates: Iterable[StoredProof], target: int) -> Optional[ProofSelection]:
    """
    Largest-first selection over the given candidates.

    Accumulates proofs in descending amount order until the running total
    reaches ``target``. Returns None when all candidates together fall short.
    Ties are broken by secret so the result is deterministic.
    """
    ordered = sorted(candidates, key=lambda sp: (-sp.amount, sp.secret))
    selected: List[Proof] = []
    total = 0
    for sp in ordered:
        if total >= target:
            break
        selected.append(sp.proof)
        total += sp.amount
    if total < target:
        return None
    return ProofSelection(proofs=selected, total=total)


class ProofStore:
    """Encrypted ledger of StoredProofs keyed by secret."""

    def __init__(self, store: KeyValueStore, cipher: StorageCipher,
                 mutex: Optional[AsyncMutex] = None):
        self.store = store
        self.cipher = cipher
        # Shared with CounterStore so counter reservation and ledger writes serialize
        self.mutex = mutex or AsyncMutex()

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: ledger: {msg}")

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def _read(self) -> List[StoredProof]:
        raw = await self.store.get(StorageKeys.PROOFS)
        if raw is None:
            return []
        records = self.cipher.decrypt_json(raw)
        return [StoredProof.from_dict(r) for r in records]

    async def _write(self, proofs: List[StoredProof]) -> None:
        blob = self.cipher.encrypt_json([sp.to_dict() for sp in proofs])
        await self.store.set(StorageKeys.PROOFS, blob)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_all(self) -> List[StoredProof]:
        return await self._read()

    async def list_live(self, mint_url: str) -> List[StoredProof]:
        mint_url = normalize_mint_url(mint_url)
        return [sp for sp in await self._read()
                if sp.mint_url == mint_url and sp.status == ProofStatus.LIVE]

    async def list_pending_spend(self, mint_url: Optional[str] = None) -> List[StoredProof]:
        target = normalize_mint_url(mint_url) if mint_url else None
        return [sp for sp in await self._read()
                if sp.status == ProofStatus.PENDING_SPEND
                and (target is None or sp.mint_url == target)]

    async def balance_by_mint(self) -> Dict[str, int]:
        balances: Dict[str, int] = {}
        for sp in await self._read():
            if sp.status != ProofStatus.LIVE:
                continue
            balances[sp.mint_url] = balances.get(sp.mint_url, 0) + sp.amount
        return balances

    async def balance(self, mint_url: str) -> int:
        return sum(sp.amount for sp in await self.list_live(mint_url))

    async def total_balance(self) -> int:
        return sum((await self.balance_by_mint()).values())

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def add_proofs(self, proofs: List[Proof], mint_url: str) -> int:
        """Insert proofs as LIVE. Secrets already in the ledger are skipped."""
        if not proofs:
            return 0
        async with self.mutex:
            return await self._add_locked(proofs, normalize_mint_url(mint_url))

    async def _add_locked(self, proofs: List[Proof], mint_url: str) -> int:
        stored = await self._read()
        known = {sp.secret for sp in stored}
        now = int(time.time())
        added = 0
        for proof in proofs:
            if proof.secret in known:
                self._log(f"skipping duplicate proof ({proof.amount}) for {mint_url}",
                          level="warn")
                continue
            stored.append(StoredProof(proof=proof, mint_url=mint_url, received_at=now))
            known.add(proof.secret)
            added += 1
        await self._write(stored)
        self._log(f"added {added} proofs to {mint_url}", level="debug")
        return added

    async def remove_proofs(self, proofs: List[Proof]) -> int:
        """Delete proofs by secret regardless of status."""
        secrets = {p.secret for p in proofs}
        async with self.mutex:
            stored = await self._read()
            kept = [sp for sp in stored if sp.secret not in secrets]
            removed = len(stored) - len(kept)
            if removed:
                await self._write(kept)
            return removed

    async def mark_pending_spend(self, proofs: List[Proof]) -> int:
        async with self.mutex:
            return await self._set_status_locked(proofs, ProofStatus.LIVE,
                                                 ProofStatus.PENDING_SPEND)

    async def revert_pending_spend(self, proofs: List[Proof]) -> int:
        """
        Return reserved proofs to LIVE.

        Only proofs currently PENDING_SPEND are touched, so reverting twice or
        reverting already-removed proofs is a no-op.
        """
        async with self.mutex:
            reverted = await self._set_status_locked(proofs, ProofStatus.PENDING_SPEND,
                                                     ProofStatus.LIVE)
        if reverted:
            self._log(f"reverted {reverted} proofs to LIVE")
        return reverted

    async def _set_status_locked(self, proofs: List[Proof], from_status: ProofStatus,
                                 to_status: ProofStatus) -> int:
        secrets = {p.secret for p in proofs}
        stored = await self._read()
        changed = 0
        for sp in stored:
            if sp.secret in secrets and sp.status == from_status:
                sp.status = to_status
                changed += 1
        if changed:
            await self._write(stored)
        return changed

    async def finalize_pending_spend(self, spent: List[Proof], change: List[Proof],
                                     mint_url: str) -> None:
        """Remove ``spent`` and insert ``change`` as LIVE in one durable write."""
        mint_url = normalize_mint_url(mint_url)
        spent_secrets = {p.secret for p in spent}
        async with self.mutex:
            stored = [sp for sp in await self._read() if sp.secret not in spent_secrets]
            known = {sp.secret for sp in stored}
            now = int(time.time())
            for proof in change:
                if proof.secret in known:
                    continue
                stored.append(StoredProof(proof=proof, mint_url=mint_url, received_at=now))
                known.add(proof.secret)
            await self._write(stored)
        self._log(f"finalized spend of {sum(p.amount for p in spent)} "
                  f"with {sum(p.amount for p in change)} change at {mint_url}")

    # =========================================================================
    # COIN SELECTION
    # =========================================================================

    async def select_for_amount(self, mint_url: str, target: int) -> Optional[ProofSelection]:
        """Greedy largest-first selection over LIVE proofs; None if insufficient."""
        async with self.mutex:
            return select_greedy(await self._live_locked(mint_url), target)

    async def select_and_reserve(self, mint_url: str, target: int) -> Optional[ProofSelection]:
        """Select and mark PENDING_SPEND atomically; None if insufficient."""
        async with self.mutex:
            selection = select_greedy(await self._live_locked(mint_url), target)
            if selection is None or not selection.proofs:
                return selection
            await self._set_status_locked(selection.proofs, ProofStatus.LIVE,
                                          ProofStatus.PENDING_SPEND)
        self._log(f"reserved {len(selection.proofs)} proofs ({selection.total}) "
                  f"for {target} at {normalize_mint_url(mint_url)}", level="debug")
        return selection

    async def _live_locked(self, mint_url: str) -> List[StoredProof]:
        mint_url = normalize_mint_url(mint_url)
        return [sp for sp in await self._read()
                if sp.mint_url == mint_url and sp.status == ProofStatus.LIVE]
