"""
Payment Orchestrator: the wallet engine's public surface.

Drives the Proof Ledger, the mint facade and the recovery stores through
send, receive, mint-from-quote and melt, and owns every failure-handling
decision:

- Proofs are reserved (PENDING_SPEND) atomically before any network call
  and are either finalized or reverted afterwards
- A failure where the mint certainly did not accept the inputs reverts
  the reservation
- A melt whose outcome is unknown is disambiguated through the quote
  state; if that fails too, the proofs stay reserved for reconciliation
- Bad DLEQ proofs abort without storing anything

Every public operation returns a result record. DecryptionError is the one
exception allowed through: an unreadable ledger or seed must stop the host.
"""

import inspect
import logging
from typing import Callable, Iterable, List, Optional, Set, Tuple

from .config import WalletConfig, configure_logging, log_level
from .counter_store import CounterStore
from .crypto_utils import StorageCipher
from .errors import (
    DecryptionError,
    DLEQVerificationError,
    InsufficientFundsError,
    MintUnavailableError,
    ValidationError,
    WalletError,
)
from .mint_manager import ClientFactory, MintManager, MintWallet, quote_state
from .models import (
    MeltQuoteInfo,
    MeltQuoteResult,
    MeltResult,
    MintBalance,
    MintQuoteResult,
    MintQuoteStatus,
    PaymentRequest,
    PaymentResult,
    PendingToken,
    PendingTokenPurpose,
    PendingTokenStatus,
    Proof,
    ProofSelection,
    QuoteState,
    QuoteStatusResult,
    ReceiveResult,
    SendResult,
    Transaction,
    TransactionStatus,
    TransactionType,
    normalize_mint_url,
    sum_proofs,
)
from .mutex import AsyncMutex
from .payment_request import validate_payment_request
from .pending_quote_store import PendingQuoteStore
from .pending_token_store import PendingTokenStore
from .proof_store import ProofStore
from .reconciliation import Reconciler
from .recovery import RecoveryProgress, RecoveryResult, SeedRecovery
from .seed_store import SeedStore
from .storage import KeyValueStore, SqliteStore
from .subscriptions import OnPaid, QuoteSubscriptionManager
from .token_codec import decode_token, encode_token
from .transaction_store import TransactionStore

logger = logging.getLogger("nutpay.wallet")

ORIGIN_LIGHTNING_RECEIVE = "Lightning"
ORIGIN_SEND_ECASH = "Send Ecash"
ORIGIN_LIGHTNING_SEND = "Lightning Send"


class CashuWallet:
    """Cashu wallet engine over one durable store."""

    def __init__(self, store: KeyValueStore, cipher: StorageCipher,
                 config: Optional[WalletConfig] = None,
                 client_factory: Optional[ClientFactory] = None):
        self.config = config or WalletConfig()
        self.unit = self.config.unit
        self.store = store

        # Ledger writes, coin selection and counter reservation share one mutex
        self.ledger_mutex = AsyncMutex()
        self.proofs = ProofStore(store, cipher, self.ledger_mutex)
        self.counters = CounterStore(store, self.ledger_mutex)
        self.seed = SeedStore(store, cipher)
        self.mint_quotes = PendingQuoteStore(store)
        self.pending_tokens = PendingTokenStore(store, cipher,
                                                max_records=self.config.max_pending_tokens)
        self.transactions = TransactionStore(store, max_records=self.config.max_transactions)
        self.mints = MintManager(store, self.counters, self.seed, self.config, client_factory)
        self.subscriptions = QuoteSubscriptionManager(
            self.mints, self.check_mint_quote_status,
            poll_interval=self.config.poll_interval,
            push_timeout=self.config.push_timeout,
        )
        self._in_flight: Set[str] = set()
        self.reconciler = Reconciler(self.proofs, self.pending_tokens, self.transactions,
                                     self.mint_quotes, self.mints,
                                     is_in_flight=self._in_flight.__contains__)
        self.recovery = SeedRecovery(self.mints, self.proofs, self.counters)

    @classmethod
    async def open(cls, config: Optional[WalletConfig] = None,
                   credential: Optional[str] = None,
                   client_factory: Optional[ClientFactory] = None) -> "CashuWallet":
        """Open the SQLite-backed wallet at config.db_path and reconcile it."""
        config = config or WalletConfig.from_env()
        configure_logging(config.log_level)
        store = SqliteStore(config.db_path)
        if credential:
            cipher = await StorageCipher.from_credential(store, credential)
        else:
            cipher = await StorageCipher.load_or_create(store)
        wallet = cls(store, cipher, config, client_factory)
        await wallet.startup()
        return wallet

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: wallet: {msg}")

    async def startup(self) -> dict:
        summary = await self.reconciler.run()
        self._log("startup reconciliation complete")
        return summary

    async def close(self) -> None:
        await self.subscriptions.unsubscribe_all()
        await self.mints.close()
        await self.store.close()

    # =========================================================================
    # RESERVATION
    # =========================================================================

    def _track(self, proofs: Iterable[Proof]) -> None:
        self._in_flight.update(p.secret for p in proofs)

    def _untrack(self, proofs: Iterable[Proof]) -> None:
        self._in_flight.difference_update(p.secret for p in proofs)

    async def _insufficient(self, mint_url: str, need: int, fee: int) -> InsufficientFundsError:
        have = await self.proofs.balance(mint_url)
        detail = f" ({need - fee} + {fee} fee)" if fee else ""
        return InsufficientFundsError(
            f"Insufficient balance at {mint_url}: need {need} {self.unit}{detail}, "
            f"have {have} {self.unit}")

    async def _reserve(self, mint_wallet: MintWallet, mint_url: str,
                       amount: int) -> Tuple[ProofSelection, int]:
        """
        Reserve proofs covering ``amount`` plus the mint's input fee.

        The fee depends on which proofs are chosen, so a first selection that
        cannot also pay its own fee is released and redone once with the
        fee-inclusive target.
        """
        selection = await self.proofs.select_and_reserve(mint_url, amount)
        if selection is None:
            raise await self._insufficient(mint_url, amount, 0)
        self._track(selection.proofs)
        fee = mint_wallet.get_fees_for_proofs(selection.proofs)
        if selection.total >= amount + fee:
            return selection, fee

        await self.proofs.revert_pending_spend(selection.proofs)
        self._untrack(selection.proofs)
        selection = await self.proofs.select_and_reserve(mint_url, amount + fee)
        if selection is None:
            raise await self._insufficient(mint_url, amount + fee, fee)
        self._track(selection.proofs)
        fee = mint_wallet.get_fees_for_proofs(selection.proofs)
        if selection.total < amount + fee:
            await self.proofs.revert_pending_spend(selection.proofs)
            self._untrack(selection.proofs)
            raise await self._insufficient(mint_url, amount + fee, fee)
        return selection, fee

    async def _release(self, proofs: List[Proof], error: Exception) -> None:
        """Undo a reservation when bookkeeping fails before the mint was contacted."""
        await self.proofs.revert_pending_spend(proofs)
        self._log(f"bookkeeping failed before contacting the mint ({error!r}), "
                  f"reservation reverted", level="error")

    # =========================================================================
    # SEND
    # =========================================================================

    async def create_payment_token(self, request: PaymentRequest,
                                   origin: Optional[str] = None) -> PaymentResult:
        """Pay a 402 request: returns an encoded token for exactly request.amount."""
        ok, error = validate_payment_request(request, self.unit, self.config.max_payment_amount)
        if not ok:
            return PaymentResult(success=False, error=error)
        try:
            return await self._create_payment_token(request, origin)
        except DecryptionError:
            raise
        except WalletError as e:
            self._log(f"payment failed: {e}", level="warn")
            return PaymentResult(success=False, error=str(e))
        except Exception as e:
            self._log(f"payment failed unexpectedly: {e!r}", level="error")
            return PaymentResult(success=False, error=f"Payment failed: {e}")

    async def _create_payment_token(self, request: PaymentRequest,
                                    origin: Optional[str]) -> PaymentResult:
        balances = await self.proofs.balance_by_mint()
        mint_url = await self.mints.find_mint_for_payment(request.mints, request.amount, balances)
        if mint_url is None:
            return PaymentResult(success=False,
                                 error=f"No available mint among: {', '.join(request.mints)}")

        mint_wallet = await self.mints.get_wallet(mint_url)
        selection, _ = await self._reserve(mint_wallet, mint_url, request.amount)
        try:
            try:
                tx = await self.transactions.add(TransactionType.PAYMENT, request.amount,
                                                 self.unit, mint_url, origin=origin)
            except Exception as e:
                await self._release(selection.proofs, e)
                raise
            try:
                split = await mint_wallet.send(request.amount, selection.proofs)
            except DecryptionError:
                await self.proofs.revert_pending_spend(selection.proofs)
                await self.transactions.update(tx.id, TransactionStatus.FAILED)
                raise
            except DLEQVerificationError as e:
                # Inputs were consumed by the mint; reconciliation removes them
                await self.transactions.update(tx.id, TransactionStatus.FAILED)
                self._log(f"payment aborted, {e}", level="error")
                return PaymentResult(success=False, error=str(e), transaction_id=tx.id)
            except WalletError as e:
                await self.proofs.revert_pending_spend(selection.proofs)
                await self.transactions.update(tx.id, TransactionStatus.FAILED)
                self._log(f"swap at {mint_url} failed, reservation reverted: {e}", level="warn")
                return PaymentResult(success=False, error=f"Mint error: {e}",
                                     transaction_id=tx.id)

            token = encode_token(mint_url, split.send, self.unit)
            await self.proofs.finalize_pending_spend(selection.proofs, split.keep, mint_url)
            await self.transactions.update(tx.id, TransactionStatus.COMPLETED, token=token)
            self._log(f"paid {request.amount} {self.unit} from {mint_url}"
                      + (f" for {origin}" if origin else ""))
            return PaymentResult(success=True, token=token, transaction_id=tx.id)
        finally:
            self._untrack(selection.proofs)

    async def generate_send_token(self, mint_url: str, amount: int) -> SendResult:
        """Produce a token for manual sharing, tracked as a pending token until finalized."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return SendResult(success=False, error="Amount must be a positive integer")
        try:
            return await self._generate_send_token(normalize_mint_url(mint_url), amount)
        except DecryptionError:
            raise
        except WalletError as e:
            self._log(f"send failed: {e}", level="warn")
            return SendResult(success=False, error=str(e))
        except Exception as e:
            self._log(f"send failed unexpectedly: {e!r}", level="error")
            return SendResult(success=False, error=f"Send failed: {e}")

    async def _generate_send_token(self, mint_url: str, amount: int) -> SendResult:
        mint_wallet = await self.mints.get_wallet(mint_url)
        selection, _ = await self._reserve(mint_wallet, mint_url, amount)
        try:
            try:
                tx = await self.transactions.add(TransactionType.PAYMENT, amount, self.unit,
                                                 mint_url, origin=ORIGIN_SEND_ECASH)
            except Exception as e:
                await self._release(selection.proofs, e)
                raise
            try:
                split = await mint_wallet.send(amount, selection.proofs)
            except DecryptionError:
                await self.proofs.revert_pending_spend(selection.proofs)
                await self.transactions.update(tx.id, TransactionStatus.FAILED)
                raise
            except DLEQVerificationError as e:
                await self.transactions.update(tx.id, TransactionStatus.FAILED)
                self._log(f"send aborted, {e}", level="error")
                return SendResult(success=False, error=str(e))
            except WalletError as e:
                await self.proofs.revert_pending_spend(selection.proofs)
                await self.transactions.update(tx.id, TransactionStatus.FAILED)
                return SendResult(success=False, error=f"Mint error: {e}")

            token = encode_token(mint_url, split.send, self.unit)
            pending = await self.pending_tokens.add(token, amount, mint_url,
                                                    PendingTokenPurpose.MANUAL_SEND,
                                                    transaction_id=tx.id)
            await self.proofs.finalize_pending_spend(selection.proofs, split.keep, mint_url)
            await self.pending_tokens.update_status(pending.id, PendingTokenStatus.CLAIMED)
            await self.transactions.update(tx.id, TransactionStatus.COMPLETED, token=token)
            return SendResult(success=True, token=token, pending_token_id=pending.id)
        finally:
            self._untrack(selection.proofs)

    # =========================================================================
    # RECEIVE
    # =========================================================================

    async def receive_token(self, token: str) -> ReceiveResult:
        """Redeem an incoming token into fresh proofs. Nothing is stored on failure."""
        try:
            decoded = decode_token(token)
            if decoded.unit != self.unit:
                raise ValidationError(f"Unsupported token unit: {decoded.unit}")
            mint = await self.mints.resolve_receive_mint(decoded.mint_url)
            mint_wallet = await self.mints.get_wallet(mint.url)
            received = await mint_wallet.receive(decoded.proofs)
            await self.proofs.add_proofs(received, mint.url)
            amount = sum_proofs(received)
            tx = await self.transactions.add(TransactionType.RECEIVE, amount, self.unit,
                                             mint.url, status=TransactionStatus.COMPLETED)
        except DecryptionError:
            raise
        except WalletError as e:
            self._log(f"receive failed: {e}", level="warn")
            return ReceiveResult(success=False, error=str(e))
        except Exception as e:
            self._log(f"receive failed unexpectedly: {e!r}", level="error")
            return ReceiveResult(success=False, error=f"Receive failed: {e}")
        self._log(f"received {amount} {self.unit} at {mint.url}")
        return ReceiveResult(success=True, amount=amount, transaction_id=tx.id)

    async def create_lightning_receive_invoice(self, mint_url: str,
                                               amount: int) -> MintQuoteResult:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return MintQuoteResult(success=False, error="Amount must be a positive integer")
        if amount > self.config.max_payment_amount:
            return MintQuoteResult(success=False, error="Amount exceeds maximum")
        try:
            mint_wallet = await self.mints.get_wallet(mint_url)
            response = await mint_wallet.create_mint_quote(amount)
            quote = await self.mint_quotes.add(response["quote"], mint_wallet.mint_url, amount,
                                               response["request"],
                                               expires_at=response.get("expiry"))
        except WalletError as e:
            return MintQuoteResult(success=False, error=str(e))
        except (KeyError, TypeError) as e:
            return MintQuoteResult(success=False, error=f"Malformed mint quote: {e}")
        self._log(f"created invoice for {amount} {self.unit} at {quote.mint_url}")
        return MintQuoteResult(success=True, quote=quote)

    async def check_mint_quote_status(self, mint_url: str, quote_id: str) -> QuoteStatusResult:
        try:
            mint_wallet = await self.mints.get_wallet(mint_url)
            state = quote_state(await mint_wallet.check_mint_quote(quote_id))
        except WalletError as e:
            return QuoteStatusResult(error=str(e))
        if state == QuoteState.PAID:
            quote = await self.mint_quotes.get_by_quote_id(quote_id)
            if quote is not None and quote.status == MintQuoteStatus.PENDING:
                await self.mint_quotes.update_status(quote_id, MintQuoteStatus.PAID)
        return QuoteStatusResult(paid=state == QuoteState.PAID, state=state)

    async def mint_proofs_from_quote(self, mint_url: str, amount: int,
                                     quote_id: str) -> ReceiveResult:
        """Claim proofs for a paid invoice."""
        try:
            mint_wallet = await self.mints.get_wallet(mint_url)
            proofs = await mint_wallet.mint_proofs(amount, quote_id)
            await self.proofs.add_proofs(proofs, mint_wallet.mint_url)
            await self.mint_quotes.update_status(quote_id, MintQuoteStatus.MINTED)
            minted = sum_proofs(proofs)
            tx = await self.transactions.add(TransactionType.RECEIVE, minted, self.unit,
                                             mint_wallet.mint_url,
                                             status=TransactionStatus.COMPLETED,
                                             origin=ORIGIN_LIGHTNING_RECEIVE)
        except DecryptionError:
            raise
        except WalletError as e:
            self._log(f"minting for quote {quote_id} failed: {e}", level="warn")
            return ReceiveResult(success=False, error=str(e))
        except Exception as e:
            self._log(f"minting for quote {quote_id} failed unexpectedly: {e!r}", level="error")
            return ReceiveResult(success=False, error=f"Minting failed: {e}")
        self._log(f"minted {minted} {self.unit} for quote {quote_id}")
        return ReceiveResult(success=True, amount=minted, transaction_id=tx.id)

    # =========================================================================
    # LIGHTNING SEND (MELT)
    # =========================================================================

    async def get_melt_quote(self, mint_url: str, invoice: str) -> MeltQuoteResult:
        if not invoice or not isinstance(invoice, str):
            return MeltQuoteResult(success=False, error="Invoice is required")
        try:
            mint_wallet = await self.mints.get_wallet(mint_url)
            response = await mint_wallet.create_melt_quote(invoice.strip())
            quote = MeltQuoteInfo(quote=response["quote"], amount=int(response["amount"]),
                                  fee_reserve=int(response.get("fee_reserve") or 0),
                                  expiry=response.get("expiry"))
        except WalletError as e:
            return MeltQuoteResult(success=False, error=str(e))
        except (KeyError, TypeError, ValueError) as e:
            return MeltQuoteResult(success=False, error=f"Malformed melt quote: {e}")
        return MeltQuoteResult(success=True, quote=quote)

    async def pay_lightning_invoice(self, mint_url: str, invoice: str, quote_id: str,
                                    amount: int, fee_reserve: int) -> MeltResult:
        if (isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0
                or isinstance(fee_reserve, bool) or not isinstance(fee_reserve, int)
                or fee_reserve < 0):
            return MeltResult(success=False, error="Invalid melt amount")
        try:
            return await self._pay_lightning_invoice(normalize_mint_url(mint_url), invoice,
                                                     quote_id, amount, fee_reserve)
        except DecryptionError:
            raise
        except WalletError as e:
            self._log(f"lightning payment failed: {e}", level="warn")
            return MeltResult(success=False, error=str(e))
        except Exception as e:
            self._log(f"lightning payment failed unexpectedly: {e!r}", level="error")
            return MeltResult(success=False, error=f"Lightning payment failed: {e}")

    async def _pay_lightning_invoice(self, mint_url: str, invoice: str, quote_id: str,
                                     amount: int, fee_reserve: int) -> MeltResult:
        mint_wallet = await self.mints.get_wallet(mint_url)
        selection, _ = await self._reserve(mint_wallet, mint_url, amount + fee_reserve)
        proofs = selection.proofs
        try:
            try:
                tx = await self.transactions.add(TransactionType.PAYMENT, amount + fee_reserve,
                                                 self.unit, mint_url,
                                                 origin=ORIGIN_LIGHTNING_SEND)
                # Only recovery path if the process dies during the melt call
                pending = await self.pending_tokens.add(
                    encode_token(mint_url, proofs, self.unit), selection.total, mint_url,
                    PendingTokenPurpose.LIGHTNING_MELT, destination=invoice,
                    quote_id=quote_id, transaction_id=tx.id)
            except Exception as e:
                await self._release(proofs, e)
                raise

            try:
                outcome = await mint_wallet.melt_proofs(quote_id, proofs, amount)
            except (MintUnavailableError, DecryptionError) as e:
                # Nothing was sent to the mint
                await self._melt_not_paid(proofs, pending, tx, str(e))
                if isinstance(e, DecryptionError):
                    raise
                return MeltResult(success=False, error=f"Mint unavailable: {e}",
                                  transaction_id=tx.id)
            except Exception as e:
                return await self._resolve_melt_failure(mint_wallet, quote_id, proofs,
                                                        selection.total, pending, tx, e)

            if outcome.state == QuoteState.PAID:
                return await self._melt_paid(mint_url, proofs, outcome.change, outcome.preimage,
                                             selection.total, pending, tx)
            if outcome.state == QuoteState.UNPAID:
                await self._melt_not_paid(proofs, pending, tx, "mint reported UNPAID")
                return MeltResult(success=False, error="Lightning payment failed",
                                  transaction_id=tx.id)
            self._log(f"melt {quote_id} is {outcome.state.value}, left for reconciliation",
                      level="warn")
            return MeltResult(success=False, pending=True, transaction_id=tx.id,
                              error="Lightning payment is still pending")
        finally:
            self._untrack(proofs)

    async def _melt_paid(self, mint_url: str, proofs: List[Proof], change: List[Proof],
                         preimage: Optional[str], total: int, pending: PendingToken,
                         tx: Transaction) -> MeltResult:
        change_amount = sum_proofs(change)
        try:
            await self.proofs.finalize_pending_spend(proofs, change, mint_url)
            await self.pending_tokens.update_status(pending.id, PendingTokenStatus.CLAIMED)
            await self.transactions.update(tx.id, TransactionStatus.COMPLETED,
                                           amount=total - change_amount)
        except Exception as e:
            # The invoice is paid; bookkeeping errors must not turn this into a failure
            self._log(f"payment succeeded but cleanup failed: {e!r}", level="error")
        self._log(f"paid invoice via {mint_url}: spent {total - change_amount} {self.unit}")
        return MeltResult(success=True, preimage=preimage, change_amount=change_amount,
                          transaction_id=tx.id)

    async def _melt_not_paid(self, proofs: List[Proof], pending: PendingToken,
                             tx: Transaction, reason: str) -> None:
        await self.proofs.revert_pending_spend(proofs)
        await self.pending_tokens.update_status(pending.id, PendingTokenStatus.EXPIRED)
        await self.transactions.update(tx.id, TransactionStatus.FAILED)
        self._log(f"melt not paid ({reason}), reservation reverted", level="warn")

    async def _resolve_melt_failure(self, mint_wallet: MintWallet, quote_id: str,
                                    proofs: List[Proof], total: int, pending: PendingToken,
                                    tx: Transaction, error: Exception) -> MeltResult:
        self._log(f"melt call for {quote_id} failed ({error!r}), checking quote state",
                  level="warn")
        try:
            response = await mint_wallet.check_melt_quote(quote_id)
            state = quote_state(response)
        except Exception as e:
            self._log(f"quote {quote_id} state unknown ({e!r}), proofs left pending",
                      level="error")
            return MeltResult(success=False, pending=True, transaction_id=tx.id,
                              error=f"Payment status unknown: {error}")

        if state == QuoteState.PAID:
            return await self._melt_paid(mint_wallet.mint_url, proofs, [],
                                         response.get("payment_preimage"), total, pending, tx)
        if state == QuoteState.UNPAID:
            await self._melt_not_paid(proofs, pending, tx, str(error))
            return MeltResult(success=False, error=f"Lightning payment failed: {error}",
                              transaction_id=tx.id)
        return MeltResult(success=False, pending=True, transaction_id=tx.id,
                          error=f"Payment status {state.value}: {error}")

    # =========================================================================
    # BALANCES
    # =========================================================================

    async def get_wallet_balances(self) -> List[MintBalance]:
        balances = await self.proofs.balance_by_mint()
        result = []
        seen = set()
        for mint in await self.mints.get_mints():
            if mint.enabled or balances.get(mint.url):
                result.append(MintBalance(mint.url, mint.name, balances.get(mint.url, 0),
                                          self.unit))
                seen.add(mint.url)
        for mint_url, balance in balances.items():
            if mint_url not in seen:
                result.append(MintBalance(mint_url, mint_url, balance, self.unit))
        return result

    async def get_total_balance(self) -> int:
        return await self.proofs.total_balance()

    async def can_pay(self, mint_url: str, amount: int) -> bool:
        return await self.proofs.balance(mint_url) >= amount

    # =========================================================================
    # QUOTE SUBSCRIPTIONS
    # =========================================================================

    def subscribe_quote(self, mint_url: str, quote_id: str, on_paid: OnPaid) -> bool:
        """Watch an inbound invoice; on_paid(quote_id) runs once when it is paid."""

        async def _paid(paid_quote_id: str) -> None:
            quote = await self.mint_quotes.get_by_quote_id(paid_quote_id)
            if quote is not None and quote.status == MintQuoteStatus.PENDING:
                await self.mint_quotes.update_status(paid_quote_id, MintQuoteStatus.PAID)
            result = on_paid(paid_quote_id)
            if inspect.isawaitable(result):
                await result

        return self.subscriptions.subscribe(normalize_mint_url(mint_url), quote_id, _paid)

    async def unsubscribe_quote(self, quote_id: str) -> bool:
        return await self.subscriptions.unsubscribe(quote_id)

    # =========================================================================
    # SEED
    # =========================================================================

    async def initialize_seed(self) -> str:
        """Switch to deterministic secrets; returns the new recovery phrase."""
        return await self.seed.initialize_deterministic()

    async def recover_from_mnemonic(
            self, mnemonic: str, mint_urls: Optional[List[str]] = None,
            on_progress: Optional[Callable[[RecoveryProgress], None]] = None) -> RecoveryResult:
        try:
            seed = await self.seed.restore_from_mnemonic(mnemonic)
        except ValidationError as e:
            return RecoveryResult(success=False, errors=[str(e)])
        if mint_urls is None:
            mint_urls = [m.url for m in await self.mints.get_enabled_mints()]
        return await self.recovery.recover(seed, [normalize_mint_url(u) for u in mint_urls],
                                           on_progress)
