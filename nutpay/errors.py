"""
Error taxonomy for the wallet engine.

Exceptions unwind multi-step operations to their revert/cleanup branch.
The orchestrator converts everything except DecryptionError into result
records at its public boundary.
"""

from typing import Optional


class WalletError(Exception):
    """Base class for all wallet engine errors."""


class ValidationError(WalletError):
    """Malformed request, bad mint URL or unsupported input. Nothing was mutated."""


class TokenDecodeError(ValidationError):
    """An encoded token could not be parsed."""


class InsufficientFundsError(WalletError):
    """Live proofs for the mint do not cover the requested amount."""


class DecryptionError(WalletError):
    """
    Stored ciphertext could not be decrypted.

    Fatal: callers must never treat this as an empty ledger or a missing seed.
    """


class DLEQVerificationError(WalletError):
    """A mint signature failed NUT-12 DLEQ verification."""


class MintError(WalletError):
    """The mint rejected a request or the outcome of a call is unknown."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 code: Optional[int] = None, mint_url: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.mint_url = mint_url


class MintUnavailableError(MintError):
    """The request never reached the mint (circuit open or connection refused)."""
