"""
Mint Client Facade and known-mint registry.

MintWallet wraps one mint: it detects capabilities from /v1/info (fees,
DLEQ, websocket push, restore), builds blinded outputs from deterministic
(NUT-13) or random secrets, unblinds and DLEQ-verifies signatures, and
exposes send/receive/mint/melt/checkstate/restore.

MintManager owns the persisted list of known mints, per-mint circuit
breakers and MintWallet instances, and picks which mint pays a request.

Key patterns:
- Deterministic secrets whenever a seed exists; counters are reserved
  durably before the outputs are sent
- A seed that cannot be decrypted aborts output creation instead of
  silently falling back to random secrets
- When the mint advertises NUT-12 every returned signature must carry a
  valid DLEQ proof
"""

import logging
import math
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from coincurve import PrivateKey, PublicKey

from .bdhke import (
    alice_verify_dleq,
    carol_verify_dleq,
    proof_y,
    step1_alice,
    step3_alice,
)
from .config import PRESET_MINTS, WalletConfig, log_level
from .counter_store import CounterStore
from .derivation import DeterministicSecrets
from .errors import (
    DLEQVerificationError,
    InsufficientFundsError,
    MintError,
    ValidationError,
    WalletError,
)
from .mint_client import MintCircuitBreaker, MintClient
from .models import (
    DLEQ,
    MintConfig,
    Proof,
    ProofState,
    QuoteState,
    normalize_mint_url,
    sum_proofs,
)
from .mutex import AsyncMutex
from .seed_store import SeedStore
from .storage import KeyValueStore, StorageKeys

logger = logging.getLogger("nutpay.mints")

CHECKSTATE_BATCH_SIZE = 100
WEBSOCKET_QUOTE_KIND = "bolt11_mint_quote"


# =============================================================================
# HELPERS
# =============================================================================

def amount_split(amount: int) -> List[int]:
    """Decompose an amount into ascending powers of two."""
    if amount < 0:
        raise ValueError("amount must be non-negative")
    parts = []
    bit = 1
    while amount:
        if amount & 1:
            parts.append(bit)
        amount >>= 1
        bit <<= 1
    return parts


def blank_outputs_count(overpaid: int) -> int:
    """NUT-08: blank outputs needed to receive up to ``overpaid`` as change."""
    if overpaid <= 0:
        return 0
    return max(math.ceil(math.log2(overpaid)), 1)


def quote_state(response: Dict[str, Any]) -> QuoteState:
    """Read a quote's state, accepting the legacy boolean ``paid`` field."""
    state = response.get("state")
    if state:
        try:
            return QuoteState(str(state).upper())
        except ValueError as e:
            raise MintError(f"unknown quote state {state!r}") from e
    return QuoteState.PAID if response.get("paid") else QuoteState.UNPAID


def _nut(nuts: Dict[str, Any], number: int) -> Dict[str, Any]:
    entry = nuts.get(str(number), nuts.get(number))
    return entry if isinstance(entry, dict) else {}


@dataclass
class MintCapabilities:
    name: str = ""
    version: str = ""
    dleq: bool = False
    websocket: bool = False
    restore: bool = False
    state_check: bool = False

    @classmethod
    def from_info(cls, info: Dict[str, Any], unit: str = "sat") -> "MintCapabilities":
        nuts = info.get("nuts") or {}
        websocket = False
        for method in _nut(nuts, 17).get("supported") or []:
            if (method.get("method") == "bolt11" and method.get("unit", unit) == unit
                    and WEBSOCKET_QUOTE_KIND in (method.get("commands") or [])):
                websocket = True
        return cls(
            name=info.get("name") or "",
            version=info.get("version") or "",
            dleq=bool(_nut(nuts, 12).get("supported")),
            websocket=websocket,
            restore=bool(_nut(nuts, 9).get("supported")),
            state_check=bool(_nut(nuts, 7).get("supported")),
        )


@dataclass
class MintKeyset:
    id: str
    unit: str
    active: bool
    input_fee_ppk: int = 0
    keys: Dict[int, PublicKey] = field(default_factory=dict)


@dataclass
class BlindedOutput:
    amount: int
    secret: str
    r: PrivateKey
    B_: PublicKey
    keyset_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.amount, "id": self.keyset_id, "B_": self.B_.format().hex()}


@dataclass
class SendSplit:
    send: List[Proof]
    keep: List[Proof]
    fee: int = 0


@dataclass
class MeltOutcome:
    state: QuoteState
    preimage: Optional[str] = None
    change: List[Proof] = field(default_factory=list)
    change_error: Optional[str] = None


# =============================================================================
# MINT WALLET (PER-MINT FACADE)
# =============================================================================

class MintWallet:
    """Protocol operations against one mint."""

    def __init__(self, mint_url: str, client, counters: CounterStore,
                 seed_store: SeedStore, unit: str = "sat"):
        self.mint_url = normalize_mint_url(mint_url)
        self.client = client
        self.counters = counters
        self.seed_store = seed_store
        self.unit = unit
        self.capabilities = MintCapabilities()
        self.keysets: Dict[str, MintKeyset] = {}
        self.loaded = False

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: mint-wallet: {self.mint_url}: {msg}")

    async def load_mint(self) -> None:
        info = await self.client.get_info()
        self.capabilities = MintCapabilities.from_info(info, self.unit)
        response = await self.client.get_keysets()
        for ks in response.get("keysets", []):
            self.keysets[ks["id"]] = MintKeyset(
                id=ks["id"],
                unit=ks.get("unit", self.unit),
                active=bool(ks.get("active", True)),
                input_fee_ppk=int(ks.get("input_fee_ppk") or 0),
            )
        await self._load_keys(self.active_keyset.id)
        self.loaded = True
        self._log(f"loaded {len(self.keysets)} keysets (dleq={self.capabilities.dleq}, "
                  f"ws={self.capabilities.websocket})", level="debug")

    @property
    def active_keyset(self) -> MintKeyset:
        candidates = [ks for ks in self.keysets.values() if ks.active and ks.unit == self.unit]
        if not candidates:
            raise MintError(f"mint {self.mint_url} has no active {self.unit} keyset",
                            mint_url=self.mint_url)
        return min(candidates, key=lambda ks: (ks.input_fee_ppk, ks.id))

    async def _load_keys(self, keyset_id: str) -> Dict[int, PublicKey]:
        keyset = self.keysets.get(keyset_id)
        if keyset is not None and keyset.keys:
            return keyset.keys
        response = await self.client.get_keys(keyset_id)
        for entry in response.get("keysets", []):
            if entry.get("id") != keyset_id:
                continue
            keys = {int(amount): PublicKey(bytes.fromhex(pubkey))
                    for amount, pubkey in entry["keys"].items()}
            if keyset is None:
                keyset = MintKeyset(id=keyset_id, unit=entry.get("unit", self.unit),
                                    active=False)
                self.keysets[keyset_id] = keyset
            keyset.keys = keys
            return keys
        raise MintError(f"mint did not return keys for keyset {keyset_id}",
                        mint_url=self.mint_url)

    def get_fees_for_proofs(self, proofs: List[Proof]) -> int:
        """NUT-02 input fee: ceil(sum of input_fee_ppk / 1000)."""
        ppk = sum(self.keysets[p.id].input_fee_ppk for p in proofs if p.id in self.keysets)
        return (ppk + 999) // 1000

    # =========================================================================
    # OUTPUTS AND SIGNATURES
    # =========================================================================

    async def _create_outputs(self, amounts: List[int],
                              keyset_id: Optional[str] = None) -> List[BlindedOutput]:
        if not amounts:
            return []
        keyset_id = keyset_id or self.active_keyset.id
        # DecryptionError propagates: never fall back to random secrets
        seed = await self.seed_store.get_seed()
        if seed is not None:
            start = await self.counters.reserve(keyset_id, len(amounts))
            pairs = DeterministicSecrets(seed).derive_range(keyset_id, start, len(amounts))
        else:
            pairs = [(secrets.token_hex(32), None) for _ in amounts]

        outputs = []
        for amount, (secret, r_bytes) in zip(amounts, pairs):
            B_, r = step1_alice(secret, PrivateKey(r_bytes) if r_bytes else None)
            outputs.append(BlindedOutput(amount=amount, secret=secret, r=r, B_=B_,
                                         keyset_id=keyset_id))
        return outputs

    def _unblind(self, signatures: List[Dict[str, Any]],
                 outputs: List[BlindedOutput]) -> List[Proof]:
        if len(signatures) > len(outputs):
            raise MintError("mint returned more signatures than outputs", mint_url=self.mint_url)
        proofs = []
        for sig, output in zip(signatures, outputs):
            keyset_id = sig.get("id") or output.keyset_id
            amount = int(sig["amount"])
            keyset = self.keysets.get(keyset_id)
            A = keyset.keys.get(amount) if keyset else None
            if A is None:
                raise MintError(f"no key for amount {amount} in keyset {keyset_id}",
                                mint_url=self.mint_url)
            C_ = PublicKey(bytes.fromhex(sig["C_"]))

            dleq = None
            if self.capabilities.dleq:
                raw = sig.get("dleq")
                if not raw:
                    raise DLEQVerificationError(f"mint {self.mint_url} omitted DLEQ proof")
                e, s = bytes.fromhex(raw["e"]), bytes.fromhex(raw["s"])
                if not alice_verify_dleq(output.B_, C_, e, s, A):
                    raise DLEQVerificationError(
                        f"DLEQ verification failed for {amount} signature from {self.mint_url}")
                dleq = DLEQ(e=raw["e"], s=raw["s"], r=output.r.secret.hex())

            C = step3_alice(C_, output.r, A)
            proofs.append(Proof(id=keyset_id, amount=amount, secret=output.secret,
                                C=C.format().hex(), dleq=dleq))
        return proofs

    async def verify_proofs_dleq(self, proofs: List[Proof]) -> None:
        """Verify carried DLEQ proofs of received proofs (NUT-12 carol side)."""
        if not self.capabilities.dleq:
            return
        for proof in proofs:
            if proof.dleq is None or not proof.dleq.r:
                continue
            keys = await self._load_keys(proof.id)
            A = keys.get(proof.amount)
            if A is None:
                raise DLEQVerificationError(f"unknown amount {proof.amount} for keyset {proof.id}")
            valid = carol_verify_dleq(
                secret=proof.secret,
                r=PrivateKey(bytes.fromhex(proof.dleq.r)),
                C=PublicKey(bytes.fromhex(proof.C)),
                e=bytes.fromhex(proof.dleq.e),
                s=bytes.fromhex(proof.dleq.s),
                A=A,
            )
            if not valid:
                raise DLEQVerificationError(f"DLEQ verification failed for received proof "
                                            f"({proof.amount})")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def send(self, amount: int, proofs: List[Proof]) -> SendSplit:
        """Swap ``proofs`` into exactly ``amount`` to send plus change to keep."""
        total = sum_proofs(proofs)
        if total == amount:
            return SendSplit(send=list(proofs), keep=[], fee=0)
        fee = self.get_fees_for_proofs(proofs)
        keep_amount = total - amount - fee
        if keep_amount < 0:
            raise InsufficientFundsError(f"need {amount + fee}, selected {total}")

        send_amounts = amount_split(amount)
        outputs = await self._create_outputs(send_amounts + amount_split(keep_amount))
        response = await self.client.post_swap([p.to_mint_dict() for p in proofs],
                                               [o.to_dict() for o in outputs])
        signatures = response.get("signatures") or []
        if len(signatures) != len(outputs):
            raise MintError("swap returned wrong number of signatures", mint_url=self.mint_url)
        fresh = self._unblind(signatures, outputs)
        return SendSplit(send=fresh[:len(send_amounts)], keep=fresh[len(send_amounts):], fee=fee)

    async def receive(self, proofs: List[Proof]) -> List[Proof]:
        """Swap incoming proofs for fresh ones we alone know the secrets of."""
        if not proofs:
            raise ValidationError("no proofs to receive")
        await self.verify_proofs_dleq(proofs)
        total = sum_proofs(proofs)
        fee = self.get_fees_for_proofs(proofs)
        if total <= fee:
            raise ValidationError(f"token amount {total} does not cover the mint fee {fee}")
        outputs = await self._create_outputs(amount_split(total - fee))
        response = await self.client.post_swap([p.to_mint_dict() for p in proofs],
                                               [o.to_dict() for o in outputs])
        return self._unblind(response.get("signatures") or [], outputs)

    async def create_mint_quote(self, amount: int) -> Dict[str, Any]:
        return await self.client.post_mint_quote(amount, self.unit)

    async def check_mint_quote(self, quote_id: str) -> Dict[str, Any]:
        return await self.client.get_mint_quote(quote_id)

    async def mint_proofs(self, amount: int, quote_id: str) -> List[Proof]:
        outputs = await self._create_outputs(amount_split(amount))
        response = await self.client.post_mint(quote_id, [o.to_dict() for o in outputs])
        return self._unblind(response.get("signatures") or [], outputs)

    async def create_melt_quote(self, invoice: str) -> Dict[str, Any]:
        return await self.client.post_melt_quote(invoice, self.unit)

    async def check_melt_quote(self, quote_id: str) -> Dict[str, Any]:
        return await self.client.get_melt_quote(quote_id)

    async def melt_proofs(self, quote_id: str, proofs: List[Proof],
                          amount: int) -> MeltOutcome:
        """
        Melt ``proofs`` against a quote for ``amount``.

        Everything the inputs carry beyond the quote amount and their input fee
        (unused fee reserve plus any selection surplus) comes back as change
        on NUT-08 blank outputs.
        """
        overpaid = sum_proofs(proofs) - self.get_fees_for_proofs(proofs) - amount
        outputs = await self._create_outputs([1] * blank_outputs_count(overpaid))
        response = await self.client.post_melt(quote_id, [p.to_mint_dict() for p in proofs],
                                               [o.to_dict() for o in outputs])
        outcome = MeltOutcome(state=quote_state(response),
                              preimage=response.get("payment_preimage"))
        if outcome.state == QuoteState.PAID and response.get("change"):
            try:
                outcome.change = self._unblind(response["change"], outputs)
            except DLEQVerificationError as e:
                # Payment went through; unverifiable change is discarded
                outcome.change_error = str(e)
                self._log(f"discarding melt change: {e}", level="error")
        return outcome

    async def check_proof_states(self, proofs: List[Proof]) -> Dict[str, ProofState]:
        """NUT-07 state per proof secret. Secrets the mint omits are absent."""
        states: Dict[str, ProofState] = {}
        for i in range(0, len(proofs), CHECKSTATE_BATCH_SIZE):
            batch = proofs[i:i + CHECKSTATE_BATCH_SIZE]
            by_y = {proof_y(p.secret): p.secret for p in batch}
            response = await self.client.post_checkstate(list(by_y))
            for entry in response.get("states", []):
                secret = by_y.get(entry.get("Y"))
                if secret is not None:
                    states[secret] = ProofState(entry["state"])
        return states

    async def restore(self, seed: bytes, keyset_id: str, start: int,
                      count: int) -> List[Proof]:
        """NUT-09: re-derive outputs for counters [start, start+count) and unblind matches."""
        await self._load_keys(keyset_id)
        derived = DeterministicSecrets(seed).derive_range(keyset_id, start, count)
        outputs = []
        for secret, r_bytes in derived:
            B_, r = step1_alice(secret, PrivateKey(r_bytes))
            outputs.append(BlindedOutput(amount=1, secret=secret, r=r, B_=B_,
                                         keyset_id=keyset_id))
        response = await self.client.post_restore([o.to_dict() for o in outputs])
        by_b = {o.B_.format().hex(): o for o in outputs}
        matched = [by_b[out["B_"]] for out in response.get("outputs", []) if out["B_"] in by_b]
        signatures = response.get("signatures") or response.get("promises") or []
        return self._unblind(signatures, matched)


# =============================================================================
# MINT MANAGER
# =============================================================================

ClientFactory = Callable[[str, MintCircuitBreaker], Any]


class MintManager:
    """Known mints, their circuit breakers and loaded MintWallets."""

    def __init__(self, store: KeyValueStore, counters: CounterStore, seed_store: SeedStore,
                 config: Optional[WalletConfig] = None,
                 client_factory: Optional[ClientFactory] = None):
        self.store = store
        self.counters = counters
        self.seed_store = seed_store
        self.config = config or WalletConfig()
        self._client_factory = client_factory or self._default_client
        self._mint_breakers: Dict[str, MintCircuitBreaker] = {}
        self._wallets: Dict[str, MintWallet] = {}
        self._clients: Dict[str, Any] = {}
        self._mints_mutex = AsyncMutex()
        self._load_mutex = AsyncMutex()

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: mints: {msg}")

    def _default_client(self, mint_url: str, breaker: MintCircuitBreaker) -> MintClient:
        return MintClient(mint_url, timeout=self.config.http_timeout, breaker=breaker)

    # =========================================================================
    # KNOWN MINTS
    # =========================================================================

    async def get_mints(self) -> List[MintConfig]:
        records = await self.store.get_json(StorageKeys.MINTS)
        if records is None:
            records = PRESET_MINTS
        return [MintConfig.from_dict(r) for r in records]

    async def _save_mints(self, mints: List[MintConfig]) -> None:
        await self.store.set_json(StorageKeys.MINTS, [m.to_dict() for m in mints])

    async def get_mint(self, mint_url: str) -> Optional[MintConfig]:
        mint_url = normalize_mint_url(mint_url)
        for mint in await self.get_mints():
            if mint.url == mint_url:
                return mint
        return None

    async def get_enabled_mints(self) -> List[MintConfig]:
        return [m for m in await self.get_mints() if m.enabled]

    async def add_mint(self, mint_url: str, name: str = "", enabled: bool = True,
                       trusted: bool = False) -> MintConfig:
        mint_url = normalize_mint_url(mint_url)
        async with self._mints_mutex:
            mints = await self.get_mints()
            for mint in mints:
                if mint.url == mint_url:
                    return mint
            mint = MintConfig(url=mint_url, name=name or mint_url, enabled=enabled,
                              trusted=trusted)
            mints.append(mint)
            await self._save_mints(mints)
        self._log(f"added mint {mint_url} (trusted={trusted})")
        return mint

    async def update_mint(self, mint_url: str, enabled: Optional[bool] = None,
                          trusted: Optional[bool] = None) -> Optional[MintConfig]:
        mint_url = normalize_mint_url(mint_url)
        async with self._mints_mutex:
            mints = await self.get_mints()
            for mint in mints:
                if mint.url != mint_url:
                    continue
                if enabled is not None:
                    mint.enabled = enabled
                if trusted is not None:
                    mint.trusted = trusted
                await self._save_mints(mints)
                return mint
        return None

    async def remove_mint(self, mint_url: str) -> bool:
        mint_url = normalize_mint_url(mint_url)
        async with self._mints_mutex:
            mints = await self.get_mints()
            kept = [m for m in mints if m.url != mint_url]
            if len(kept) == len(mints):
                return False
            await self._save_mints(kept)
        self._wallets.pop(mint_url, None)
        return True

    async def discover_mint(self, mint_url: str) -> Optional[MintConfig]:
        """Add a reachable unknown mint as enabled but untrusted."""
        mint_url = normalize_mint_url(mint_url)
        existing = await self.get_mint(mint_url)
        if existing is not None:
            return existing
        if not mint_url.startswith(("https://", "http://")):
            return None
        try:
            info = await self._get_client(mint_url).get_info()
        except WalletError as e:
            self._log(f"discovery of {mint_url} failed: {e}", level="warn")
            return None
        return await self.add_mint(mint_url, name=info.get("name") or "", trusted=False)

    async def resolve_receive_mint(self, mint_url: str) -> MintConfig:
        """Mint a token may be received from; raises ValidationError otherwise."""
        mint = await self.get_mint(mint_url)
        if mint is not None:
            if not mint.enabled:
                raise ValidationError(f"mint {mint.url} is disabled")
            return mint
        if not self.config.auto_discover_mints:
            raise ValidationError(f"untrusted mint: {normalize_mint_url(mint_url)}")
        mint = await self.discover_mint(mint_url)
        if mint is None:
            raise ValidationError(f"mint {normalize_mint_url(mint_url)} is unreachable")
        return mint

    async def find_mint_for_payment(self, accepted_mints: List[str], amount: int,
                                    balances: Dict[str, int]) -> Optional[str]:
        """
        First accepted mint that can pay.

        Prefers enabled known mints holding enough balance. Falls back to the
        first enabled known mint, then to the first discoverable unknown mint.
        """
        known = {m.url: m for m in await self.get_mints()}
        accepted = []
        for url in accepted_mints:
            url = normalize_mint_url(url)
            if url not in accepted:
                accepted.append(url)

        for url in accepted:
            mint = known.get(url)
            if (mint and mint.enabled and balances.get(url, 0) >= amount
                    and self._get_breaker(url).is_available()):
                return url

        for url in accepted:
            mint = known.get(url)
            if mint is not None:
                if mint.enabled:
                    return url
                continue
            if self.config.auto_discover_mints and await self.discover_mint(url):
                return url
        return None

    async def get_mint_name(self, mint_url: str) -> str:
        mint = await self.get_mint(mint_url)
        return mint.name if mint else normalize_mint_url(mint_url)

    # =========================================================================
    # CLIENTS AND WALLETS
    # =========================================================================

    def _get_breaker(self, mint_url: str) -> MintCircuitBreaker:
        if mint_url not in self._mint_breakers:
            self._mint_breakers[mint_url] = MintCircuitBreaker(
                mint_url,
                max_failures=self.config.breaker_max_failures,
                reset_timeout=self.config.breaker_reset_timeout,
            )
        return self._mint_breakers[mint_url]

    def _get_client(self, mint_url: str):
        if mint_url not in self._clients:
            self._clients[mint_url] = self._client_factory(mint_url, self._get_breaker(mint_url))
        return self._clients[mint_url]

    async def get_wallet(self, mint_url: str) -> MintWallet:
        """Loaded MintWallet for a mint; loading failures are not cached."""
        mint_url = normalize_mint_url(mint_url)
        wallet = self._wallets.get(mint_url)
        if wallet is not None:
            return wallet
        async with self._load_mutex:
            wallet = self._wallets.get(mint_url)
            if wallet is None:
                wallet = MintWallet(mint_url, self._get_client(mint_url), self.counters,
                                    self.seed_store, unit=self.config.unit)
                await wallet.load_mint()
                self._wallets[mint_url] = wallet
        return wallet

    def get_mint_status(self, mint_url: str) -> Dict[str, Any]:
        return self._get_breaker(normalize_mint_url(mint_url)).get_stats()

    def get_all_mint_statuses(self) -> List[Dict[str, Any]]:
        return [b.get_stats() for b in self._mint_breakers.values()]

    async def close(self) -> None:
        clients, self._clients = self._clients, {}
        self._wallets.clear()
        for client in clients.values():
            await client.aclose()
