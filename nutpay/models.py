"""
Data model for the wallet engine.

Status fields are closed enums. Records serialize to plain JSON-compatible
dicts for storage (to_dict / from_dict); the orchestrator returns the
*Result dataclasses across its public boundary.
"""

import secrets
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit


# =============================================================================
# ENUMS
# =============================================================================

class ProofStatus(Enum):
    """Local custody state of a stored proof."""
    LIVE = "LIVE"
    PENDING_SPEND = "PENDING_SPEND"


class ProofState(Enum):
    """Mint-side state of a proof (NUT-07)."""
    UNSPENT = "UNSPENT"
    PENDING = "PENDING"
    SPENT = "SPENT"


class QuoteState(Enum):
    """Mint-side state of a mint or melt quote."""
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    ISSUED = "ISSUED"


class MintQuoteStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    MINTED = "minted"


class PendingTokenStatus(Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    EXPIRED = "expired"


class PendingTokenPurpose(Enum):
    MANUAL_SEND = "manual_send"
    LIGHTNING_MELT = "lightning_melt"


class TransactionType(Enum):
    PAYMENT = "payment"
    RECEIVE = "receive"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WalletVersion(Enum):
    V1_LEGACY = "v1_legacy"
    V2_DETERMINISTIC = "v2_deterministic"


# =============================================================================
# HELPERS
# =============================================================================

_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_mint_url(url: str) -> str:
    """
    Canonical form of a mint URL used as the ledger grouping key.

    Scheme and host are lowercased, default ports and trailing slashes are
    dropped, query and fragment are kept. Unparseable input only loses its
    trailing slashes.
    """
    url = (url or "").strip()
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return url.rstrip("/")
    if not parts.scheme or not parts.hostname:
        return url.rstrip("/")

    scheme = parts.scheme.lower()
    origin = f"{scheme}://{parts.hostname.lower()}"
    if port and port != _DEFAULT_PORTS.get(scheme):
        origin += f":{port}"
    normalized = origin + parts.path.rstrip("/")
    if parts.query:
        normalized += f"?{parts.query}"
    if parts.fragment:
        normalized += f"#{parts.fragment}"
    return normalized


def generate_id(prefix: str) -> str:
    """Local record id: ``<prefix>-<epoch ms>-<random>``."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


def sum_proofs(proofs) -> int:
    return sum(p.amount for p in proofs)


# =============================================================================
# PROOFS
# =============================================================================

@dataclass
class DLEQ:
    """NUT-12 DLEQ proof. ``r`` is the blinding factor, present on wallet-held proofs."""
    e: str
    s: str
    r: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        d = {"e": self.e, "s": self.s}
        if self.r:
            d["r"] = self.r
        return d

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["DLEQ"]:
        if not d:
            return None
        return cls(e=d["e"], s=d["s"], r=d.get("r"))


@dataclass
class Proof:
    """A bearer ecash token issued by a mint. Immutable once issued."""
    id: str
    amount: int
    secret: str
    C: str
    dleq: Optional[DLEQ] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "amount": self.amount,
            "secret": self.secret,
            "C": self.C,
        }
        if self.dleq:
            d["dleq"] = self.dleq.to_dict()
        return d

    def to_mint_dict(self) -> Dict[str, Any]:
        """Input form sent to the mint (no DLEQ)."""
        return {"id": self.id, "amount": self.amount, "secret": self.secret, "C": self.C}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Proof":
        return cls(
            id=d["id"],
            amount=int(d["amount"]),
            secret=d["secret"],
            C=d["C"],
            dleq=DLEQ.from_dict(d.get("dleq")),
        )


@dataclass
class StoredProof:
    """A Proof plus local custody metadata."""
    proof: Proof
    mint_url: str
    received_at: int
    status: ProofStatus = ProofStatus.LIVE

    @property
    def secret(self) -> str:
        return self.proof.secret

    @property
    def amount(self) -> int:
        return self.proof.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof": self.proof.to_dict(),
            "mint_url": self.mint_url,
            "amount": self.proof.amount,
            "received_at": self.received_at,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StoredProof":
        return cls(
            proof=Proof.from_dict(d["proof"]),
            mint_url=d["mint_url"],
            received_at=int(d.get("received_at", 0)),
            status=ProofStatus(d.get("status", ProofStatus.LIVE.value)),
        )


@dataclass
class ProofSelection:
    proofs: List[Proof]
    total: int


# =============================================================================
# RECOVERY RECORDS
# =============================================================================

@dataclass
class PendingMintQuote:
    """An inbound Lightning invoice awaiting payment."""
    id: str
    quote_id: str
    mint_url: str
    amount: int
    invoice: str
    created_at: int
    expires_at: int
    status: MintQuoteStatus = MintQuoteStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PendingMintQuote":
        return cls(
            id=d["id"], quote_id=d["quote_id"], mint_url=d["mint_url"],
            amount=int(d["amount"]), invoice=d["invoice"],
            created_at=int(d["created_at"]), expires_at=int(d["expires_at"]),
            status=MintQuoteStatus(d.get("status", "pending")),
        )


@dataclass
class PendingToken:
    """Ecash that left local custody but whose redemption is not yet confirmed."""
    id: str
    token: str
    amount: int
    mint_url: str
    purpose: PendingTokenPurpose
    created_at: int
    status: PendingTokenStatus = PendingTokenStatus.PENDING
    destination: Optional[str] = None
    quote_id: Optional[str] = None
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["purpose"] = self.purpose.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PendingToken":
        return cls(
            id=d["id"], token=d["token"], amount=int(d["amount"]),
            mint_url=d["mint_url"],
            purpose=PendingTokenPurpose(d["purpose"]),
            created_at=int(d["created_at"]),
            status=PendingTokenStatus(d.get("status", "pending")),
            destination=d.get("destination"),
            quote_id=d.get("quote_id"),
            transaction_id=d.get("transaction_id"),
        )


@dataclass
class Transaction:
    id: str
    type: TransactionType
    amount: int
    unit: str
    mint_url: str
    timestamp: int
    status: TransactionStatus
    origin: Optional[str] = None
    token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["type"] = self.type.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Transaction":
        return cls(
            id=d["id"], type=TransactionType(d["type"]), amount=int(d["amount"]),
            unit=d["unit"], mint_url=d["mint_url"], timestamp=int(d["timestamp"]),
            status=TransactionStatus(d["status"]),
            origin=d.get("origin"), token=d.get("token"),
        )


# =============================================================================
# MINTS AND REQUESTS
# =============================================================================

@dataclass
class MintConfig:
    url: str
    name: str
    enabled: bool = True
    trusted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MintConfig":
        return cls(url=normalize_mint_url(d["url"]), name=d.get("name", ""),
                   enabled=bool(d.get("enabled", True)),
                   trusted=bool(d.get("trusted", False)))


@dataclass
class MintBalance:
    mint_url: str
    mint_name: str
    balance: int
    unit: str


@dataclass
class PaymentRequest:
    """A 402 payment intent: amount, unit and the mints the payee accepts."""
    amount: int
    unit: str
    mints: List[str] = field(default_factory=list)
    payment_id: Optional[str] = None
    description: Optional[str] = None
    single_use: bool = False


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class PaymentResult:
    success: bool
    token: Optional[str] = None
    error: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass
class ReceiveResult:
    success: bool
    amount: int = 0
    error: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass
class SendResult:
    success: bool
    token: Optional[str] = None
    pending_token_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MintQuoteResult:
    success: bool
    quote: Optional[PendingMintQuote] = None
    error: Optional[str] = None


@dataclass
class QuoteStatusResult:
    paid: bool = False
    state: Optional[QuoteState] = None
    error: Optional[str] = None


@dataclass
class MeltQuoteInfo:
    quote: str
    amount: int
    fee_reserve: int
    expiry: Optional[int] = None


@dataclass
class MeltQuoteResult:
    success: bool
    quote: Optional[MeltQuoteInfo] = None
    error: Optional[str] = None


@dataclass
class MeltResult:
    success: bool
    preimage: Optional[str] = None
    change_amount: int = 0
    pending: bool = False
    error: Optional[str] = None
    transaction_id: Optional[str] = None
