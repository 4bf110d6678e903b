"""
nutpay: Cashu ecash wallet engine for paying HTTP 402 payment requests.

The engine holds unspent proofs in an encrypted ledger, reserves them
atomically for outgoing operations, talks to Cashu mints over HTTP, and
recovers from crashes or network failures without losing or double-spending
funds.
"""

__version__ = "0.4.0"
