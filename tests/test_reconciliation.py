"""
Tests for startup reconciliation.

Tests cover:
- PENDING_SPEND proofs: SPENT removed, UNSPENT restored, mint-PENDING left
- Proofs owned by an in-flight operation are never touched
- Unreachable mints are skipped
- LIVE proofs spent elsewhere are dropped
- Pending melts settled from the melt quote state
- Retention cleanup counts
"""

import pytest

from nutpay.models import (
    PaymentRequest,
    PendingTokenPurpose,
    PendingTokenStatus,
    ProofStatus,
    TransactionStatus,
    TransactionType,
)
from nutpay.token_codec import encode_token

from fake_mint import MINT_URL, FakeMint, fund, make_wallet


# =============================================================================
# Test helpers
# =============================================================================

async def amounts_with_status(wallet, status):
    return sorted(sp.proof.amount for sp in await wallet.proofs.get_all()
                  if sp.status == status)


async def pending_melt(wallet, mint, proofs, quote_id):
    """Record a melt that was interrupted after the proofs were reserved."""
    await wallet.proofs.mark_pending_spend(proofs)
    tx = await wallet.transactions.add(TransactionType.PAYMENT, 100, "sat", MINT_URL)
    token = await wallet.pending_tokens.add(
        encode_token(MINT_URL, proofs, "sat"), sum(p.amount for p in proofs), MINT_URL,
        PendingTokenPurpose.LIGHTNING_MELT, destination="lnbc-invoice",
        quote_id=quote_id, transaction_id=tx.id)
    return token, tx


# =============================================================================
# Pending proofs
# =============================================================================

class TestRecoverPendingProofs:

    @pytest.mark.asyncio
    async def test_spent_removed_and_unspent_restored(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        proofs = await fund(wallet, mint, [8, 4, 2])
        await wallet.proofs.mark_pending_spend(proofs)
        mint.spend(proofs[:1])

        counts = await wallet.reconciler.recover_pending_proofs()

        assert counts == {"spent": 1, "reverted": 2, "pending": 0}
        assert await amounts_with_status(wallet, ProofStatus.LIVE) == [2, 4]
        assert await amounts_with_status(wallet, ProofStatus.PENDING_SPEND) == []
        assert await wallet.get_total_balance() == 6

    @pytest.mark.asyncio
    async def test_mint_pending_left_alone(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        proofs = await fund(wallet, mint, [8, 4])
        await wallet.proofs.mark_pending_spend(proofs)
        mint.mark_pending(proofs[:1])

        counts = await wallet.reconciler.recover_pending_proofs()

        assert counts == {"spent": 0, "reverted": 1, "pending": 1}
        assert await amounts_with_status(wallet, ProofStatus.PENDING_SPEND) == [8]

    @pytest.mark.asyncio
    async def test_in_flight_proofs_untouched(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        proofs = await fund(wallet, mint, [8, 4])
        await wallet.proofs.mark_pending_spend(proofs)
        wallet._track(proofs[:1])

        counts = await wallet.reconciler.recover_pending_proofs()

        assert counts["reverted"] == 1
        assert await amounts_with_status(wallet, ProofStatus.PENDING_SPEND) == [8]
        assert await amounts_with_status(wallet, ProofStatus.LIVE) == [4]

    @pytest.mark.asyncio
    async def test_unreachable_mint_skipped(self):
        wallet = make_wallet()
        other = FakeMint()
        proofs = other.issue_proofs([16])
        await wallet.proofs.add_proofs(proofs, MINT_URL)
        await wallet.proofs.mark_pending_spend(proofs)

        counts = await wallet.reconciler.recover_pending_proofs()

        assert counts == {"spent": 0, "reverted": 0, "pending": 1}
        assert await amounts_with_status(wallet, ProofStatus.PENDING_SPEND) == [16]

    @pytest.mark.asyncio
    async def test_dleq_failure_inputs_removed(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [64, 32, 8, 1])
        await wallet.mints.get_wallet(MINT_URL)
        mint.corrupt_dleq = True
        request = PaymentRequest(amount=40, unit="sat", mints=[MINT_URL])

        result = await wallet.create_payment_token(request)
        assert not result.success
        assert await amounts_with_status(wallet, ProofStatus.PENDING_SPEND) == [64]

        await wallet.startup()

        assert await amounts_with_status(wallet, ProofStatus.PENDING_SPEND) == []
        assert await wallet.get_total_balance() == 41


# =============================================================================
# Live proofs
# =============================================================================

class TestReconcileProofStates:

    @pytest.mark.asyncio
    async def test_spent_elsewhere_removed(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        proofs = await fund(wallet, mint, [32, 16, 1])
        mint.spend(proofs[1:])

        assert await wallet.reconciler.reconcile_proof_states() == 2
        assert await amounts_with_status(wallet, ProofStatus.LIVE) == [32]

    @pytest.mark.asyncio
    async def test_nothing_spent(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [4, 2])
        assert await wallet.reconciler.reconcile_proof_states() == 0
        assert await wallet.get_total_balance() == 6


# =============================================================================
# Pending melts
# =============================================================================

class TestResolvePendingMelts:

    @pytest.mark.asyncio
    async def test_paid_melt_finalized(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        proofs = await fund(wallet, mint, [64, 32, 8, 2])
        quote = await mint.post_melt_quote("lnbc-invoice", "sat")
        mint.melt_quotes[quote["quote"]]["state"] = "PAID"
        token, tx = await pending_melt(wallet, mint, proofs[:3], quote["quote"])

        counts = await wallet.reconciler.resolve_pending_melts()

        assert counts == {"paid": 1, "unpaid": 0, "unresolved": 0}
        assert await amounts_with_status(wallet, ProofStatus.LIVE) == [2]
        assert await amounts_with_status(wallet, ProofStatus.PENDING_SPEND) == []
        assert (await wallet.pending_tokens.get(token.id)).status == PendingTokenStatus.CLAIMED
        assert (await wallet.transactions.get(tx.id)).status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unpaid_melt_reverted(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        proofs = await fund(wallet, mint, [64, 32, 8])
        quote = await mint.post_melt_quote("lnbc-invoice", "sat")
        token, tx = await pending_melt(wallet, mint, proofs, quote["quote"])

        counts = await wallet.reconciler.resolve_pending_melts()

        assert counts["unpaid"] == 1
        assert await wallet.get_total_balance() == 104
        assert (await wallet.pending_tokens.get(token.id)).status == PendingTokenStatus.EXPIRED
        assert (await wallet.transactions.get(tx.id)).status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_pending_melt_unresolved(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        proofs = await fund(wallet, mint, [64, 32, 8])
        quote = await mint.post_melt_quote("lnbc-invoice", "sat")
        mint.melt_quotes[quote["quote"]]["state"] = "PENDING"
        token, _ = await pending_melt(wallet, mint, proofs, quote["quote"])

        counts = await wallet.reconciler.resolve_pending_melts()

        assert counts["unresolved"] == 1
        assert await amounts_with_status(wallet, ProofStatus.PENDING_SPEND) == [8, 32, 64]
        assert (await wallet.pending_tokens.get(token.id)).status == PendingTokenStatus.PENDING

    @pytest.mark.asyncio
    async def test_in_flight_melt_skipped(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        proofs = await fund(wallet, mint, [64])
        quote = await mint.post_melt_quote("lnbc-invoice", "sat")
        await pending_melt(wallet, mint, proofs, quote["quote"])
        wallet._track(proofs)
        mint.calls.clear()

        counts = await wallet.reconciler.resolve_pending_melts()

        assert counts == {"paid": 0, "unpaid": 0, "unresolved": 0}
        assert "melt_quote_state" not in mint.calls


# =============================================================================
# Full pass
# =============================================================================

class TestStartup:

    @pytest.mark.asyncio
    async def test_summary_shape(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [4])

        summary = await wallet.startup()

        assert set(summary) == {"melts", "pending_proofs", "live_proofs", "cleanup"}
        assert summary["live_proofs"] == {"removed": 0}
        assert summary["cleanup"] == {"mint_quotes": 0, "pending_tokens": 0}
