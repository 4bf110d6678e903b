"""
Cashu token encoding.

- cashuA (V3): base64url JSON ``{"token": [{"mint", "proofs"}], "unit", "memo"}``
- cashuB (V4): base64url CBOR ``{"m", "u", "d"?, "t": [{"i": bytes, "p": [...]}]}``

New tokens are emitted as cashuB when every keyset id is hex, otherwise
cashuA. Both versions decode; a ``cashu:`` URI prefix is accepted. Tokens
spanning several mints are rejected.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import cbor2

from .errors import TokenDecodeError
from .models import DLEQ, Proof, normalize_mint_url

V3_PREFIX = "cashuA"
V4_PREFIX = "cashuB"
URI_PREFIX = "cashu:"


@dataclass
class DecodedToken:
    mint_url: str
    unit: str
    proofs: List[Proof]
    memo: Optional[str] = None

    @property
    def amount(self) -> int:
        return sum(p.amount for p in self.proofs)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    data = data.strip().replace("+", "-").replace("/", "_")
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _is_hex(value: str) -> bool:
    try:
        bytes.fromhex(value)
        return True
    except ValueError:
        return False


# =============================================================================
# ENCODING
# =============================================================================

def encode_token_v3(mint_url: str, proofs: List[Proof], unit: str = "sat",
                    memo: Optional[str] = None) -> str:
    data: Dict[str, Any] = {
        "token": [{"mint": mint_url, "proofs": [p.to_dict() for p in proofs]}],
        "unit": unit,
    }
    if memo:
        data["memo"] = memo
    return V3_PREFIX + _b64url_encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))


def encode_token_v4(mint_url: str, proofs: List[Proof], unit: str = "sat",
                    memo: Optional[str] = None) -> str:
    by_keyset: Dict[str, List[Dict[str, Any]]] = {}
    for proof in proofs:
        entry: Dict[str, Any] = {
            "a": proof.amount,
            "s": proof.secret,
            "c": bytes.fromhex(proof.C),
        }
        if proof.dleq:
            entry["d"] = {
                "e": bytes.fromhex(proof.dleq.e),
                "s": bytes.fromhex(proof.dleq.s),
            }
            if proof.dleq.r:
                entry["d"]["r"] = bytes.fromhex(proof.dleq.r)
        by_keyset.setdefault(proof.id, []).append(entry)

    data: Dict[str, Any] = {
        "m": mint_url,
        "u": unit,
        "t": [{"i": bytes.fromhex(kid), "p": entries} for kid, entries in by_keyset.items()],
    }
    if memo:
        data["d"] = memo
    return V4_PREFIX + _b64url_encode(cbor2.dumps(data))


def encode_token(mint_url: str, proofs: List[Proof], unit: str = "sat",
                 memo: Optional[str] = None) -> str:
    if proofs and all(_is_hex(p.id) for p in proofs):
        return encode_token_v4(mint_url, proofs, unit, memo)
    return encode_token_v3(mint_url, proofs, unit, memo)


# =============================================================================
# DECODING
# =============================================================================

def decode_token(token: str) -> DecodedToken:
    """Decode a cashuA or cashuB token. Raises TokenDecodeError on any malformation."""
    token = (token or "").strip()
    if token.lower().startswith(URI_PREFIX):
        token = token[len(URI_PREFIX):]
    try:
        if token.startswith(V3_PREFIX):
            decoded = _decode_v3(token[len(V3_PREFIX):])
        elif token.startswith(V4_PREFIX):
            decoded = _decode_v4(token[len(V4_PREFIX):])
        else:
            raise TokenDecodeError(f"unknown token version: {token[:7]!r}")
    except TokenDecodeError:
        raise
    except (ValueError, KeyError, TypeError, AttributeError, binascii.Error,
            cbor2.CBORDecodeError) as e:
        raise TokenDecodeError(f"malformed token: {e}") from e

    if not decoded.proofs:
        raise TokenDecodeError("token contains no proofs")
    if any(p.amount <= 0 for p in decoded.proofs):
        raise TokenDecodeError("token contains a non-positive amount")
    return decoded


def _decode_v3(payload: str) -> DecodedToken:
    data = json.loads(_b64url_decode(payload).decode("utf-8"))
    entries = data["token"]
    if not entries:
        raise TokenDecodeError("token has no entries")
    mints = {normalize_mint_url(e["mint"]) for e in entries}
    if len(mints) != 1:
        raise TokenDecodeError("multi-mint tokens are not supported")
    proofs = [Proof.from_dict(p) for e in entries for p in e["proofs"]]
    return DecodedToken(mint_url=mints.pop(), unit=data.get("unit") or "sat",
                        proofs=proofs, memo=data.get("memo"))


def _decode_v4(payload: str) -> DecodedToken:
    data = cbor2.loads(_b64url_decode(payload))
    proofs: List[Proof] = []
    for entry in data["t"]:
        keyset_id = entry["i"].hex()
        for p in entry["p"]:
            dleq = None
            if p.get("d"):
                d = p["d"]
                dleq = DLEQ(e=d["e"].hex(), s=d["s"].hex(),
                            r=d["r"].hex() if d.get("r") else None)
            proofs.append(Proof(id=keyset_id, amount=int(p["a"]), secret=p["s"],
                                C=p["c"].hex(), dleq=dleq))
    return DecodedToken(mint_url=normalize_mint_url(data["m"]), unit=data["u"],
                        proofs=proofs, memo=data.get("d"))
