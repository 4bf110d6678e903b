"""
NUT-13 deterministic secrets and BIP39 recovery phrases.

Secrets and blinding factors are derived from the wallet seed along
m/129372'/0'/{keyset}'/{counter}'/{0|1}, so the whole balance can be
re-derived and rescanned from the recovery phrase alone.
"""

from typing import Tuple

from bip32 import BIP32
from mnemonic import Mnemonic

DERIVATION_PURPOSE = 129372
MNEMONIC_STRENGTH = 128

_wordlist = Mnemonic("english")


def generate_mnemonic() -> str:
    return _wordlist.generate(strength=MNEMONIC_STRENGTH)


def validate_mnemonic(mnemonic: str) -> bool:
    try:
        return _wordlist.check(mnemonic)
    except (ValueError, LookupError):
        return False


def mnemonic_to_seed(mnemonic: str) -> bytes:
    return Mnemonic.to_seed(mnemonic, passphrase="")


def keyset_id_to_int(keyset_id: str) -> int:
    """Map a hex keyset id onto a hardened-index-safe integer."""
    return int.from_bytes(bytes.fromhex(keyset_id), "big") % (2 ** 31 - 1)


class DeterministicSecrets:
    """Derives (secret, blinding factor) pairs for a seed."""

    def __init__(self, seed: bytes):
        self._bip32 = BIP32.from_seed(seed)

    def derive(self, keyset_id: str, counter: int) -> Tuple[str, bytes]:
        """Return (secret hex string, blinding factor bytes) for one counter value."""
        base = f"m/{DERIVATION_PURPOSE}'/0'/{keyset_id_to_int(keyset_id)}'/{counter}'"
        secret = self._bip32.get_privkey_from_path(f"{base}/0")
        r = self._bip32.get_privkey_from_path(f"{base}/1")
        return secret.hex(), r

    def derive_range(self, keyset_id: str, start: int, count: int):
        return [self.derive(keyset_id, start + i) for i in range(count)]
