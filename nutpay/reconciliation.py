"""
Startup reconciliation and retention cleanup.

Resolves proofs left PENDING_SPEND by an interrupted or ambiguous
operation by re-querying the mint:

1. resolve_pending_melts: pending lightning_melt tokens are settled from
   their melt quote state (PAID -> spend finalized, UNPAID -> reverted).
2. recover_pending_proofs: any remaining PENDING_SPEND proof is checked
   with NUT-07 (SPENT -> removed, UNSPENT -> LIVE, PENDING -> left).
3. reconcile_proof_states: LIVE proofs spent elsewhere are dropped.
4. cleanup: recovery stores are pruned.

Proofs owned by an operation still in flight are never touched. A mint
that cannot be reached is logged and skipped; the next pass retries it.
"""

import logging
from typing import Callable, Dict, List, Optional

from .config import log_level
from .errors import MintError, TokenDecodeError
from .mint_manager import MintManager, quote_state
from .models import (
    PendingTokenPurpose,
    PendingTokenStatus,
    Proof,
    ProofState,
    QuoteState,
    TransactionStatus,
)
from .pending_quote_store import PendingQuoteStore
from .pending_token_store import PendingTokenStore
from .proof_store import ProofStore
from .token_codec import decode_token
from .transaction_store import TransactionStore

logger = logging.getLogger("nutpay.reconcile")


class Reconciler:

    def __init__(self, proofs: ProofStore, pending_tokens: PendingTokenStore,
                 transactions: TransactionStore, mint_quotes: PendingQuoteStore,
                 mints: MintManager,
                 is_in_flight: Optional[Callable[[str], bool]] = None):
        self.proofs = proofs
        self.pending_tokens = pending_tokens
        self.transactions = transactions
        self.mint_quotes = mint_quotes
        self.mints = mints
        self._is_in_flight = is_in_flight or (lambda secret: False)

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: reconcile: {msg}")

    def _settled(self, proofs: List[Proof]) -> List[Proof]:
        return [p for p in proofs if not self._is_in_flight(p.secret)]

    async def run(self) -> Dict[str, Dict[str, int]]:
        summary = {
            "melts": await self.resolve_pending_melts(),
            "pending_proofs": await self.recover_pending_proofs(),
            "live_proofs": {"removed": await self.reconcile_proof_states()},
            "cleanup": await self.cleanup(),
        }
        self._log(f"startup reconciliation: {summary}", level="debug")
        return summary

    async def resolve_pending_melts(self) -> Dict[str, int]:
        counts = {"paid": 0, "unpaid": 0, "unresolved": 0}
        for token in await self.pending_tokens.list(PendingTokenStatus.PENDING):
            if token.purpose != PendingTokenPurpose.LIGHTNING_MELT or not token.quote_id:
                continue
            try:
                proofs = decode_token(token.token).proofs
            except TokenDecodeError as e:
                self._log(f"pending token {token.id} unreadable: {e}", level="error")
                continue
            if len(self._settled(proofs)) != len(proofs):
                continue

            try:
                wallet = await self.mints.get_wallet(token.mint_url)
                state = quote_state(await wallet.check_melt_quote(token.quote_id))
            except MintError as e:
                self._log(f"melt quote {token.quote_id} unresolved: {e}", level="warn")
                counts["unresolved"] += 1
                continue

            if state == QuoteState.PAID:
                await self.proofs.finalize_pending_spend(proofs, [], token.mint_url)
                await self.pending_tokens.update_status(token.id, PendingTokenStatus.CLAIMED)
                if token.transaction_id:
                    await self.transactions.update(token.transaction_id,
                                                   TransactionStatus.COMPLETED,
                                                   amount=token.amount)
                counts["paid"] += 1
                self._log(f"melt {token.quote_id} was paid, spend finalized")
            elif state == QuoteState.UNPAID:
                await self.proofs.revert_pending_spend(proofs)
                await self.pending_tokens.update_status(token.id, PendingTokenStatus.EXPIRED)
                if token.transaction_id:
                    await self.transactions.update(token.transaction_id,
                                                   TransactionStatus.FAILED)
                counts["unpaid"] += 1
                self._log(f"melt {token.quote_id} was not paid, proofs restored")
            else:
                counts["unresolved"] += 1
        return counts

    async def recover_pending_proofs(self) -> Dict[str, int]:
        counts = {"spent": 0, "reverted": 0, "pending": 0}
        by_mint: Dict[str, List[Proof]] = {}
        for sp in await self.proofs.list_pending_spend():
            if not self._is_in_flight(sp.secret):
                by_mint.setdefault(sp.mint_url, []).append(sp.proof)

        for mint_url, proofs in by_mint.items():
            try:
                wallet = await self.mints.get_wallet(mint_url)
                states = await wallet.check_proof_states(proofs)
            except MintError as e:
                self._log(f"cannot check pending proofs at {mint_url}: {e}", level="warn")
                counts["pending"] += len(proofs)
                continue

            proofs = self._settled(proofs)
            spent = [p for p in proofs if states.get(p.secret) == ProofState.SPENT]
            unspent = [p for p in proofs if states.get(p.secret) == ProofState.UNSPENT]
            if spent:
                await self.proofs.finalize_pending_spend(spent, [], mint_url)
            if unspent:
                await self.proofs.revert_pending_spend(unspent)
            counts["spent"] += len(spent)
            counts["reverted"] += len(unspent)
            counts["pending"] += len(proofs) - len(spent) - len(unspent)

        if counts["spent"] or counts["reverted"]:
            self._log(f"pending proofs: {counts['spent']} spent, "
                      f"{counts['reverted']} restored, {counts['pending']} still pending")
        return counts

    async def reconcile_proof_states(self) -> int:
        """Drop LIVE proofs the mint reports as already spent."""
        by_mint: Dict[str, List[Proof]] = {}
        for mint_url in await self.proofs.balance_by_mint():
            by_mint[mint_url] = [sp.proof for sp in await self.proofs.list_live(mint_url)]

        removed = 0
        for mint_url, proofs in by_mint.items():
            try:
                wallet = await self.mints.get_wallet(mint_url)
                states = await wallet.check_proof_states(proofs)
            except MintError as e:
                self._log(f"cannot check proofs at {mint_url}: {e}", level="warn")
                continue
            spent = [p for p in self._settled(proofs)
                     if states.get(p.secret) == ProofState.SPENT]
            if spent:
                removed += await self.proofs.remove_proofs(spent)
                self._log(f"removed {len(spent)} proofs spent elsewhere at {mint_url}",
                          level="warn")
        return removed

    async def cleanup(self) -> Dict[str, int]:
        return {
            "mint_quotes": await self.mint_quotes.cleanup_old(),
            "pending_tokens": await self.pending_tokens.cleanup_old(),
        }
