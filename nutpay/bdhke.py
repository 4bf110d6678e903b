"""
Blind Diffie-Hellman key exchange (NUT-00) and DLEQ verification (NUT-12).

Wallet side only:
- step1_alice: blind a secret, B_ = Y + rG with Y = hash_to_curve(secret)
- step3_alice: unblind a mint signature, C = C_ - rA
- alice_verify_dleq: verify the mint's DLEQ over (B_, C_) at issuance
- carol_verify_dleq: verify a received proof's DLEQ using the revealed r
"""

import hashlib
from typing import Optional, Tuple

from coincurve import PrivateKey, PublicKey

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
MAX_HASH_TO_CURVE_ITERATIONS = 2 ** 16


def _scalar(value: int) -> bytes:
    return (value % CURVE_ORDER).to_bytes(32, "big")


def _negate(point: PublicKey, scalar: bytes) -> PublicKey:
    """Return -(scalar * point)."""
    return point.multiply(_scalar(-int.from_bytes(scalar, "big")))


def hash_to_curve(message: bytes) -> PublicKey:
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(MAX_HASH_TO_CURVE_ITERATIONS):
        digest = hashlib.sha256(msg_to_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + digest)
        except ValueError:
            continue
    raise ValueError("no valid point found")


def step1_alice(secret: str,
                blinding_factor: Optional[PrivateKey] = None) -> Tuple[PublicKey, PrivateKey]:
    Y = hash_to_curve(secret.encode("utf-8"))
    r = blinding_factor or PrivateKey()
    B_ = PublicKey.combine_keys([Y, r.public_key])
    return B_, r


def step3_alice(C_: PublicKey, r: PrivateKey, A: PublicKey) -> PublicKey:
    return PublicKey.combine_keys([C_, _negate(A, r.secret)])


def hash_e(*points: PublicKey) -> bytes:
    """DLEQ challenge over the uncompressed hex encodings of the points."""
    joined = "".join(p.format(compressed=False).hex() for p in points)
    return hashlib.sha256(joined.encode("utf-8")).digest()


def alice_verify_dleq(B_: PublicKey, C_: PublicKey, e: bytes, s: bytes,
                      A: PublicKey) -> bool:
    try:
        R1 = PublicKey.combine_keys([PrivateKey(s).public_key, _negate(A, e)])
        R2 = PublicKey.combine_keys([B_.multiply(s), _negate(C_, e)])
    except ValueError:
        return False
    return hash_e(R1, R2, A, C_) == e


def carol_verify_dleq(secret: str, r: PrivateKey, C: PublicKey, e: bytes, s: bytes,
                      A: PublicKey) -> bool:
    Y = hash_to_curve(secret.encode("utf-8"))
    C_ = PublicKey.combine_keys([C, A.multiply(r.secret)])
    B_ = PublicKey.combine_keys([Y, r.public_key])
    return alice_verify_dleq(B_, C_, e, s, A)


def proof_y(secret: str) -> str:
    """Compressed hex Y of a secret, the key mints use in NUT-07 state checks."""
    return hash_to_curve(secret.encode("utf-8")).format().hex()
