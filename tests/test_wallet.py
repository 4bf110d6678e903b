"""
Tests for the Payment Orchestrator (CashuWallet).

Tests cover:
- 402 payments: success, validation, insufficient funds, fee-inclusive retry
- Reservation reverted when the mint certainly did not accept the inputs
- Bad DLEQ leaves the consumed inputs reserved and stores nothing
- Concurrent payments never double-spend
- Receiving tokens, trust policy, double redemption
- Manual send tokens
- Lightning receive: invoice, status, minting
- Lightning send: paid, ambiguous paid/unpaid, undetermined, unavailable
- DecryptionError propagates out of public operations
- SQLite-backed open with a credential and the configured log level
- Bookkeeping failures before any mint call release the reservation
- Melt surplus and unused fee reserve come back as change
"""

import asyncio
import logging

import pytest

from nutpay.config import WalletConfig
from nutpay.crypto_utils import StorageCipher
from nutpay.errors import DecryptionError, MintError, MintUnavailableError
from nutpay.models import (
    MintQuoteStatus,
    PaymentRequest,
    PendingTokenStatus,
    TransactionStatus,
    TransactionType,
)
from nutpay.seed_store import SeedStore
from nutpay.storage import MemoryStore, StorageKeys
from nutpay.token_codec import decode_token, encode_token
from nutpay.wallet import ORIGIN_LIGHTNING_RECEIVE, ORIGIN_SEND_ECASH, CashuWallet

from fake_mint import MINT_URL, FakeMint, client_factory, fund, make_wallet


# =============================================================================
# Test helpers
# =============================================================================

INVOICE = "lnbc1u1pfakeinvoice"


def pay_request(amount, mints=None):
    return PaymentRequest(amount=amount, unit="sat", mints=mints or [MINT_URL])


async def live_amounts(wallet):
    return sorted(sp.amount for sp in await wallet.proofs.list_live(MINT_URL))


async def pending_amounts(wallet):
    return sorted(sp.amount for sp in await wallet.proofs.list_pending_spend())


class FailingStore(MemoryStore):
    """MemoryStore whose writes to the keys in fail_keys raise OSError."""

    def __init__(self):
        super().__init__()
        self.fail_keys = set()

    async def set(self, key, value):
        if key in self.fail_keys:
            raise OSError("disk full")
        await super().set(key, value)


async def setup_melt(fee_reserve=4, amounts=(64, 32, 8, 1)):
    mint = FakeMint()
    mint.melt_fee_reserve = fee_reserve
    wallet = make_wallet(mint)
    await fund(wallet, mint, list(amounts))
    quote = (await wallet.get_melt_quote(MINT_URL, INVOICE)).quote
    return mint, wallet, quote


# =============================================================================
# 402 payments
# =============================================================================

class TestCreatePaymentToken:

    @pytest.mark.asyncio
    async def test_pays_exact_amount_and_keeps_change(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [64, 32, 8, 1])

        result = await wallet.create_payment_token(pay_request(40), origin="api.example.com")

        assert result.success, result.error
        decoded = decode_token(result.token)
        assert decoded.mint_url == MINT_URL
        assert decoded.amount == 40
        assert await wallet.get_total_balance() == 65
        assert await pending_amounts(wallet) == []

        tx = await wallet.transactions.get(result.transaction_id)
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.type == TransactionType.PAYMENT
        assert tx.origin == "api.example.com"
        assert tx.token == result.token

    @pytest.mark.asyncio
    async def test_token_redeemable_once_by_payee(self):
        mint = FakeMint()
        payer = make_wallet(mint)
        await fund(payer, mint, [64])
        token = (await payer.create_payment_token(pay_request(40))).token

        payee = make_wallet(mint)
        received = await payee.receive_token(token)
        assert received.success, received.error
        assert received.amount == 40
        assert await payee.get_total_balance() == 40

        again = await payee.receive_token(token)
        assert not again.success
        assert await payee.get_total_balance() == 40

    @pytest.mark.asyncio
    async def test_invalid_request_touches_nothing(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [64])

        result = await wallet.create_payment_token(pay_request(0))

        assert not result.success
        assert await wallet.transactions.list() == []
        assert mint.calls == []

    @pytest.mark.asyncio
    async def test_no_available_mint(self):
        wallet = make_wallet(config=WalletConfig(auto_discover_mints=False))
        result = await wallet.create_payment_token(pay_request(10, ["https://x.example.com"]))
        assert not result.success
        assert "No available mint" in result.error

    @pytest.mark.asyncio
    async def test_insufficient_funds(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [8])

        result = await wallet.create_payment_token(pay_request(40))

        assert not result.success
        assert "Insufficient" in result.error
        assert await live_amounts(wallet) == [8]
        assert await wallet.transactions.list() == []

    @pytest.mark.asyncio
    async def test_mint_rejection_reverts_reservation(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [64, 32, 8, 1])
        mint.fail_next["swap"] = MintError("keyset inactive", status_code=400)

        result = await wallet.create_payment_token(pay_request(40))

        assert not result.success
        assert await live_amounts(wallet) == [1, 8, 32, 64]
        assert await pending_amounts(wallet) == []
        tx = await wallet.transactions.get(result.transaction_id)
        assert tx.status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_unreachable_mint_reverts_reservation(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [64])
        await wallet.mints.get_wallet(MINT_URL)
        mint.fail_next["swap"] = MintUnavailableError("connection refused")

        result = await wallet.create_payment_token(pay_request(40))

        assert not result.success
        assert await wallet.get_total_balance() == 64

    @pytest.mark.asyncio
    async def test_fee_inclusive_reselection(self):
        mint = FakeMint(input_fee_ppk=1000)
        wallet = make_wallet(mint)
        await fund(wallet, mint, [32, 8, 1])

        result = await wallet.create_payment_token(pay_request(32))

        assert result.success, result.error
        assert decode_token(result.token).amount == 32
        # 41 - 32 sent - 2 input fee
        assert await wallet.get_total_balance() == 7

    @pytest.mark.asyncio
    async def test_insufficient_once_fee_is_included(self):
        mint = FakeMint(input_fee_ppk=1000)
        wallet = make_wallet(mint)
        await fund(wallet, mint, [32])

        result = await wallet.create_payment_token(pay_request(32))

        assert not result.success
        assert "fee" in result.error
        assert await live_amounts(wallet) == [32]

    @pytest.mark.asyncio
    async def test_bad_dleq_leaves_inputs_reserved(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [64, 32, 8, 1])
        await wallet.mints.get_wallet(MINT_URL)
        mint.corrupt_dleq = True

        result = await wallet.create_payment_token(pay_request(40))

        assert not result.success
        assert "DLEQ" in result.error
        assert await pending_amounts(wallet) == [64]
        assert await live_amounts(wallet) == [1, 8, 32]
        tx = await wallet.transactions.get(result.transaction_id)
        assert tx.status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_concurrent_payments_do_not_double_spend(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [64, 32, 8, 1])

        results = await asyncio.gather(
            wallet.create_payment_token(pay_request(60)),
            wallet.create_payment_token(pay_request(60)),
        )

        assert sum(r.success for r in results) == 1
        assert await wallet.get_total_balance() == 45
        assert await pending_amounts(wallet) == []

    @pytest.mark.asyncio
    async def test_undecryptable_ledger_raises(self):
        mint = FakeMint()
        store = MemoryStore()
        funded = make_wallet(mint, store=store)
        await fund(funded, mint, [64])

        locked_out = make_wallet(mint, store=store)
        with pytest.raises(DecryptionError):
            await locked_out.create_payment_token(pay_request(10))
        with pytest.raises(DecryptionError):
            await locked_out.get_total_balance()

    @pytest.mark.asyncio
    async def test_undecryptable_seed_raises_and_reverts(self):
        mint = FakeMint()
        store = MemoryStore()
        await SeedStore(store, StorageCipher.generate()).initialize_deterministic()
        wallet = make_wallet(mint, store=store)
        await fund(wallet, mint, [64])

        with pytest.raises(DecryptionError):
            await wallet.create_payment_token(pay_request(40))
        assert await live_amounts(wallet) == [64]
        assert "swap" not in mint.calls


# =============================================================================
# Receive
# =============================================================================

class TestReceiveToken:

    @pytest.mark.asyncio
    async def test_receive_discovers_mint(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        token = encode_token(MINT_URL, mint.issue_proofs([8, 2]))

        result = await wallet.receive_token(token)

        assert result.success, result.error
        assert result.amount == 10
        assert await wallet.get_total_balance() == 10
        assert not (await wallet.mints.get_mint(MINT_URL)).trusted
        tx = await wallet.transactions.get(result.transaction_id)
        assert tx.type == TransactionType.RECEIVE
        assert tx.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_mint_rejected_without_discovery(self):
        mint = FakeMint()
        wallet = make_wallet(mint, config=WalletConfig(auto_discover_mints=False))
        proofs = mint.issue_proofs([8])

        result = await wallet.receive_token(encode_token(MINT_URL, proofs))

        assert not result.success
        assert await wallet.get_total_balance() == 0
        assert not mint.is_spent(proofs[0])

    @pytest.mark.asyncio
    async def test_unit_mismatch(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        result = await wallet.receive_token(encode_token(MINT_URL, mint.issue_proofs([8]),
                                                         unit="usd"))
        assert not result.success
        assert "unit" in result.error

    @pytest.mark.asyncio
    async def test_malformed_token(self):
        result = await make_wallet().receive_token("cashuBnot-a-token")
        assert not result.success
        assert result.error

    @pytest.mark.asyncio
    async def test_spent_token_stores_nothing(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        proofs = mint.issue_proofs([8])
        mint.spend(proofs)

        result = await wallet.receive_token(encode_token(MINT_URL, proofs))

        assert not result.success
        assert await wallet.proofs.get_all() == []
        assert await wallet.transactions.list() == []


# =============================================================================
# Manual send
# =============================================================================

class TestGenerateSendToken:

    @pytest.mark.asyncio
    async def test_send_token(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [64, 32, 8, 1])

        result = await wallet.generate_send_token(MINT_URL, 10)

        assert result.success, result.error
        assert decode_token(result.token).amount == 10
        assert await wallet.get_total_balance() == 95
        pending = await wallet.pending_tokens.get(result.pending_token_id)
        assert pending.status == PendingTokenStatus.CLAIMED
        assert pending.token == result.token
        history = await wallet.transactions.list_for_origin(ORIGIN_SEND_ECASH)
        assert history[0].status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_invalid_amount(self):
        result = await make_wallet().generate_send_token(MINT_URL, 0)
        assert not result.success

    @pytest.mark.asyncio
    async def test_insufficient(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [4])
        result = await wallet.generate_send_token(MINT_URL, 10)
        assert not result.success
        assert await live_amounts(wallet) == [4]


# =============================================================================
# Lightning receive
# =============================================================================

class TestLightningReceive:

    @pytest.mark.asyncio
    async def test_invoice_to_proofs(self):
        mint = FakeMint()
        wallet = make_wallet(mint)

        created = await wallet.create_lightning_receive_invoice(MINT_URL, 21)
        assert created.success, created.error
        quote = created.quote
        assert quote.invoice.startswith("lnbc")
        assert (await wallet.mint_quotes.list_pending())[0].quote_id == quote.quote_id

        status = await wallet.check_mint_quote_status(MINT_URL, quote.quote_id)
        assert not status.paid

        mint.pay_quote(quote.quote_id)
        status = await wallet.check_mint_quote_status(MINT_URL, quote.quote_id)
        assert status.paid
        stored = await wallet.mint_quotes.get_by_quote_id(quote.quote_id)
        assert stored.status == MintQuoteStatus.PAID

        minted = await wallet.mint_proofs_from_quote(MINT_URL, 21, quote.quote_id)
        assert minted.success, minted.error
        assert minted.amount == 21
        assert await wallet.get_total_balance() == 21
        stored = await wallet.mint_quotes.get_by_quote_id(quote.quote_id)
        assert stored.status == MintQuoteStatus.MINTED
        tx = await wallet.transactions.get(minted.transaction_id)
        assert tx.origin == ORIGIN_LIGHTNING_RECEIVE

    @pytest.mark.asyncio
    async def test_invalid_amounts(self):
        wallet = make_wallet(FakeMint())
        assert not (await wallet.create_lightning_receive_invoice(MINT_URL, 0)).success
        assert not (await wallet.create_lightning_receive_invoice(MINT_URL, 10 ** 9)).success

    @pytest.mark.asyncio
    async def test_unpaid_quote_cannot_mint(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        quote = (await wallet.create_lightning_receive_invoice(MINT_URL, 8)).quote

        result = await wallet.mint_proofs_from_quote(MINT_URL, 8, quote.quote_id)

        assert not result.success
        assert await wallet.get_total_balance() == 0
        stored = await wallet.mint_quotes.get_by_quote_id(quote.quote_id)
        assert stored.status == MintQuoteStatus.PENDING

    @pytest.mark.asyncio
    async def test_status_error_reported(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await wallet.mints.get_wallet(MINT_URL)
        mint.fail_next["mint_quote_state"] = MintError("down")
        status = await wallet.check_mint_quote_status(MINT_URL, "mq1")
        assert status.error
        assert not status.paid


# =============================================================================
# Lightning send (melt)
# =============================================================================

class TestPayLightningInvoice:

    @pytest.mark.asyncio
    async def test_paid_with_change(self):
        mint, wallet, quote = await setup_melt()
        assert (quote.amount, quote.fee_reserve) == (100, 4)

        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote,
                                                    quote.amount, quote.fee_reserve)

        assert result.success, result.error
        assert result.preimage == "00" * 32
        assert result.change_amount == 4
        assert await wallet.get_total_balance() == 5
        assert await pending_amounts(wallet) == []
        tx = await wallet.transactions.get(result.transaction_id)
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.amount == 100
        tokens = await wallet.pending_tokens.list()
        assert tokens[0].status == PendingTokenStatus.CLAIMED
        assert tokens[0].destination == INVOICE

    @pytest.mark.asyncio
    async def test_selection_surplus_returned_as_change(self):
        mint = FakeMint()
        mint.invoice_amounts[INVOICE] = 10
        wallet = make_wallet(mint)
        await fund(wallet, mint, [64, 32, 8, 1])
        quote = (await wallet.get_melt_quote(MINT_URL, INVOICE)).quote
        assert (quote.amount, quote.fee_reserve) == (10, 2)

        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote,
                                                    quote.amount, quote.fee_reserve)

        assert result.success, result.error
        assert await wallet.get_total_balance() == 95
        assert await pending_amounts(wallet) == []
        tx = await wallet.transactions.get(result.transaction_id)
        assert tx.amount == 10

    @pytest.mark.asyncio
    async def test_unused_fee_reserve_returned_when_mint_charges_less(self):
        mint, wallet, quote = await setup_melt()
        mint.melt_actual_fee = 1

        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote,
                                                    quote.amount, quote.fee_reserve)

        assert result.success, result.error
        assert result.change_amount == 3
        assert await wallet.get_total_balance() == 4


    @pytest.mark.asyncio
    async def test_ambiguous_failure_resolved_as_paid(self):
        mint, wallet, quote = await setup_melt()
        mint.melt_mode = "pay_then_error"

        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote, 100, 4)

        assert result.success, result.error
        assert await wallet.get_total_balance() == 1
        assert await pending_amounts(wallet) == []
        assert "melt_quote_state" in mint.calls
        tokens = await wallet.pending_tokens.list()
        assert tokens[0].status == PendingTokenStatus.CLAIMED

    @pytest.mark.asyncio
    async def test_ambiguous_failure_resolved_as_unpaid(self):
        mint, wallet, quote = await setup_melt()
        mint.melt_mode = "error_unpaid"

        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote, 100, 4)

        assert not result.success
        assert not result.pending
        assert await wallet.get_total_balance() == 105
        tokens = await wallet.pending_tokens.list()
        assert tokens[0].status == PendingTokenStatus.EXPIRED
        tx = await wallet.transactions.get(result.transaction_id)
        assert tx.status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_undetermined_outcome_left_pending(self):
        mint, wallet, quote = await setup_melt()
        mint.melt_mode = "error_unpaid"
        mint.fail_next["melt_quote_state"] = MintError("down")

        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote, 100, 4)

        assert not result.success
        assert result.pending
        assert await pending_amounts(wallet) == [8, 32, 64]
        assert await wallet.get_total_balance() == 1
        tokens = await wallet.pending_tokens.list()
        assert tokens[0].status == PendingTokenStatus.PENDING

        await wallet.startup()
        assert await wallet.get_total_balance() == 105
        tokens = await wallet.pending_tokens.list()
        assert tokens[0].status == PendingTokenStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_unavailable_mint_reverts_without_probe(self):
        mint, wallet, quote = await setup_melt()
        mint.fail_next["melt"] = MintUnavailableError("connection refused")

        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote, 100, 4)

        assert not result.success
        assert not result.pending
        assert await wallet.get_total_balance() == 105
        assert "melt_quote_state" not in mint.calls

    @pytest.mark.asyncio
    async def test_pending_state_left_for_reconciliation(self):
        mint, wallet, quote = await setup_melt()
        mint.melt_mode = "pending"

        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote, 100, 4)

        assert result.pending
        assert await pending_amounts(wallet) == [8, 32, 64]

    @pytest.mark.asyncio
    async def test_insufficient_for_fee_reserve(self):
        mint, wallet, quote = await setup_melt(amounts=(64, 32, 4))
        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote, 100, 4)
        assert not result.success
        assert await wallet.get_total_balance() == 100
        assert "melt" not in mint.calls

    @pytest.mark.asyncio
    async def test_invalid_amount(self):
        result = await make_wallet().pay_lightning_invoice(MINT_URL, INVOICE, "q", 0, 0)
        assert not result.success
        for amount, fee_reserve in [(None, 2), (1.5, 2), (True, 2), (10, None), (10, -1)]:
            result = await make_wallet().pay_lightning_invoice(MINT_URL, INVOICE, "q",
                                                               amount, fee_reserve)
            assert not result.success
            assert result.error == "Invalid melt amount"

    @pytest.mark.asyncio
    async def test_melt_quote_requires_invoice(self):
        result = await make_wallet(FakeMint()).get_melt_quote(MINT_URL, "")
        assert not result.success


# =============================================================================
# Bookkeeping failures before the mint is contacted
# =============================================================================

class TestBookkeepingFailure:

    async def failing_wallet(self, fail_key):
        mint = FakeMint()
        store = FailingStore()
        wallet = make_wallet(mint, store=store)
        await fund(wallet, mint, [64, 32, 8, 1])
        await wallet.mints.get_wallet(MINT_URL)
        store.fail_keys.add(fail_key)
        return mint, wallet

    @pytest.mark.asyncio
    async def test_payment_releases_reservation(self):
        mint, wallet = await self.failing_wallet(StorageKeys.TRANSACTIONS)

        result = await wallet.create_payment_token(pay_request(40))

        assert not result.success
        assert "disk full" in result.error
        assert await pending_amounts(wallet) == []
        assert await wallet.get_total_balance() == 105
        assert "swap" not in mint.calls
        assert not wallet._in_flight

    @pytest.mark.asyncio
    async def test_send_token_releases_reservation(self):
        mint, wallet = await self.failing_wallet(StorageKeys.TRANSACTIONS)

        result = await wallet.generate_send_token(MINT_URL, 10)

        assert not result.success
        assert await pending_amounts(wallet) == []
        assert await wallet.get_total_balance() == 105
        assert "swap" not in mint.calls

    @pytest.mark.asyncio
    async def test_melt_releases_reservation(self):
        mint, wallet = await self.failing_wallet(StorageKeys.PENDING_TOKENS)
        quote = (await wallet.get_melt_quote(MINT_URL, INVOICE)).quote

        result = await wallet.pay_lightning_invoice(MINT_URL, INVOICE, quote.quote,
                                                    quote.amount, quote.fee_reserve)

        assert not result.success
        assert not result.pending
        assert await pending_amounts(wallet) == []
        assert await wallet.get_total_balance() == 105
        assert "melt" not in mint.calls


# =============================================================================
# Balances and lifecycle
# =============================================================================

class TestBalances:

    @pytest.mark.asyncio
    async def test_wallet_balances(self):
        mint = FakeMint()
        wallet = make_wallet(mint)
        await fund(wallet, mint, [8, 2])
        balances = {b.mint_url: b for b in await wallet.get_wallet_balances()}
        assert balances[MINT_URL].balance == 10
        assert balances[MINT_URL].mint_name == "Fake Mint"
        assert await wallet.can_pay(MINT_URL, 10)
        assert not await wallet.can_pay(MINT_URL, 11)


class TestOpen:

    @pytest.mark.asyncio
    async def test_sqlite_wallet_with_credential(self, tmp_path):
        mint = FakeMint()
        config = WalletConfig(db_path=str(tmp_path / "wallet.db"))

        wallet = await CashuWallet.open(config, credential="1234",
                                        client_factory=client_factory(mint))
        await fund(wallet, mint, [8, 4])
        await wallet.close()

        reopened = await CashuWallet.open(config, credential="1234",
                                          client_factory=client_factory(mint))
        assert await reopened.get_total_balance() == 12
        await reopened.close()

        with pytest.raises(DecryptionError):
            await CashuWallet.open(config, credential="9999",
                                   client_factory=client_factory(mint))

    @pytest.mark.asyncio
    async def test_open_applies_log_level(self, tmp_path):
        nutpay_logger = logging.getLogger("nutpay")
        previous = nutpay_logger.level
        config = WalletConfig(db_path=str(tmp_path / "wallet.db"), log_level="debug")
        try:
            wallet = await CashuWallet.open(config, client_factory=client_factory())
            assert nutpay_logger.level == logging.DEBUG
            await wallet.close()
        finally:
            nutpay_logger.setLevel(previous)
