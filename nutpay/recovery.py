"""
Balance recovery from a wallet seed (NUT-09 restore + NUT-13 secrets).

For every keyset of each mint, counters are re-derived in batches and
sent to /v1/restore. Scanning a keyset stops after several consecutive
empty batches. Unspent proofs go back into the ledger and keyset counters
are moved past everything seen so recovered secrets are never reused.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .config import log_level
from .counter_store import CounterStore
from .errors import DecryptionError, WalletError
from .mint_manager import MintManager
from .models import ProofState, sum_proofs
from .proof_store import ProofStore

logger = logging.getLogger("nutpay.recovery")

BATCH_SIZE = 100
EMPTY_BATCHES_BEFORE_STOP = 3
MAX_COUNTER = 10_000
COUNTER_BUFFER = 10


@dataclass
class RecoveryProgress:
    mint_url: str
    keyset_id: str
    counter: int
    proofs_found: int
    amount_found: int


@dataclass
class RecoveryResult:
    success: bool
    recovered_amount: int = 0
    recovered_proofs: int = 0
    mints_scanned: int = 0
    cancelled: bool = False
    errors: List[str] = field(default_factory=list)


class SeedRecovery:

    def __init__(self, mints: MintManager, proofs: ProofStore, counters: CounterStore):
        self.mints = mints
        self.proofs = proofs
        self.counters = counters
        self._in_progress = False
        self._cancelled = False

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: recovery: {msg}")

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def cancel(self) -> None:
        self._cancelled = True

    async def recover(self, seed: bytes, mint_urls: List[str],
                      on_progress: Optional[Callable[[RecoveryProgress], None]] = None
                      ) -> RecoveryResult:
        if self._in_progress:
            return RecoveryResult(success=False, errors=["recovery already in progress"])
        self._in_progress = True
        self._cancelled = False
        result = RecoveryResult(success=True)
        try:
            for mint_url in mint_urls:
                if self._cancelled:
                    result.cancelled = True
                    break
                try:
                    amount, count = await self._recover_mint(seed, mint_url, on_progress)
                except DecryptionError:
                    raise
                except (WalletError, KeyError, TypeError, ValueError) as e:
                    self._log(f"recovery at {mint_url} failed: {e}", level="warn")
                    result.errors.append(f"{mint_url}: {e}")
                    continue
                result.mints_scanned += 1
                result.recovered_amount += amount
                result.recovered_proofs += count
        finally:
            self._in_progress = False
        result.cancelled = result.cancelled or self._cancelled
        result.success = not result.cancelled and result.mints_scanned > 0
        self._log(f"recovered {result.recovered_amount} in {result.recovered_proofs} proofs "
                  f"from {result.mints_scanned} mints")
        return result

    async def _recover_mint(self, seed: bytes, mint_url: str,
                            on_progress) -> Tuple[int, int]:
        wallet = await self.mints.get_wallet(mint_url)
        keyset_ids = [ks.id for ks in wallet.keysets.values()
                      if ks.unit == wallet.unit and _is_hex(ks.id)]
        total_amount = 0
        total_count = 0
        for keyset_id in keyset_ids:
            counter = 0
            empty_batches = 0
            next_unused = None
            while counter < MAX_COUNTER and empty_batches < EMPTY_BATCHES_BEFORE_STOP:
                if self._cancelled:
                    break
                restored = await wallet.restore(seed, keyset_id, counter, BATCH_SIZE)
                counter += BATCH_SIZE
                if not restored:
                    empty_batches += 1
                    continue
                empty_batches = 0
                next_unused = counter
                states = await wallet.check_proof_states(restored)
                unspent = [p for p in restored if states.get(p.secret) == ProofState.UNSPENT]
                if unspent:
                    await self.proofs.add_proofs(unspent, mint_url)
                    total_amount += sum_proofs(unspent)
                    total_count += len(unspent)
                if on_progress is not None:
                    on_progress(RecoveryProgress(mint_url, keyset_id, counter,
                                                 total_count, total_amount))
            if next_unused is not None:
                await self.counters.set_counter(keyset_id, next_unused + COUNTER_BUFFER)
        return total_amount, total_count


def _is_hex(value: str) -> bool:
    try:
        bytes.fromhex(value)
        return True
    except ValueError:
        return False
