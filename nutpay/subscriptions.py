"""
Quote Subscription Manager: watch inbound Lightning invoices until paid.

One subscription per quote id, held in a registry owned by the manager
instance. When the mint supports NUT-17 the quote is watched over a
websocket, bounded by a timeout; any push failure other than cancellation
falls back to polling the quote status at a fixed interval. on_paid is
invoked exactly once, when the quote reaches PAID.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .config import QUOTE_POLL_INTERVAL, QUOTE_PUSH_TIMEOUT, log_level
from .errors import MintError, WalletError
from .mint_manager import WEBSOCKET_QUOTE_KIND, quote_state
from .models import QuoteState, QuoteStatusResult

logger = logging.getLogger("nutpay.subscriptions")

StatusCheck = Callable[[str, str], Awaitable[QuoteStatusResult]]
OnPaid = Callable[[str], Optional[Awaitable[None]]]

TERMINAL_STATES = (QuoteState.PAID, QuoteState.ISSUED)


class QuoteSubscriptionManager:

    def __init__(self, mint_manager, check_status: StatusCheck,
                 poll_interval: float = QUOTE_POLL_INTERVAL,
                 push_timeout: float = QUOTE_PUSH_TIMEOUT):
        self.mint_manager = mint_manager
        self.check_status = check_status
        self.poll_interval = poll_interval
        self.push_timeout = push_timeout
        self._subscriptions: Dict[str, asyncio.Task] = {}

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: subscriptions: {msg}")

    def is_subscribed(self, quote_id: str) -> bool:
        return quote_id in self._subscriptions

    def active_quotes(self) -> List[str]:
        return list(self._subscriptions)

    def subscribe(self, mint_url: str, quote_id: str, on_paid: OnPaid) -> bool:
        """Start watching a quote. Returns False if it is already watched."""
        if quote_id in self._subscriptions:
            return False
        task = asyncio.get_running_loop().create_task(
            self._run(mint_url, quote_id, on_paid), name=f"nutpay-quote-{quote_id}")
        self._subscriptions[quote_id] = task
        task.add_done_callback(lambda t, q=quote_id: self._on_done(q, t))
        return True

    def _on_done(self, quote_id: str, task: asyncio.Task) -> None:
        if self._subscriptions.get(quote_id) is task:
            del self._subscriptions[quote_id]
        if not task.cancelled() and task.exception() is not None:
            self._log(f"subscription for {quote_id} crashed: {task.exception()!r}", level="error")

    async def unsubscribe(self, quote_id: str) -> bool:
        """Cancel a subscription and wait for its resources to be released."""
        task = self._subscriptions.pop(quote_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        return True

    async def unsubscribe_all(self) -> None:
        for quote_id in list(self._subscriptions):
            await self.unsubscribe(quote_id)

    # =========================================================================
    # WATCH LOOP
    # =========================================================================

    async def _run(self, mint_url: str, quote_id: str, on_paid: OnPaid) -> None:
        state = None
        if await self._supports_push(mint_url):
            try:
                state = await asyncio.wait_for(self._watch_push(mint_url, quote_id),
                                               timeout=self.push_timeout)
            except asyncio.TimeoutError:
                self._log(f"push timed out for {quote_id}, polling instead", level="debug")
            except Exception as e:
                # CancelledError is not an Exception and still propagates
                self._log(f"push failed for {quote_id} ({e!r}), polling instead", level="warn")

        if state is None:
            state = await self._poll(mint_url, quote_id)

        if state == QuoteState.PAID:
            await self._fire(on_paid, quote_id)
        else:
            self._log(f"quote {quote_id} already issued, not notifying")

    async def _supports_push(self, mint_url: str) -> bool:
        try:
            wallet = await self.mint_manager.get_wallet(mint_url)
        except WalletError as e:
            self._log(f"capability check failed for {mint_url}: {e}", level="debug")
            return False
        return wallet.capabilities.websocket

    async def _watch_push(self, mint_url: str, quote_id: str) -> QuoteState:
        wallet = await self.mint_manager.get_wallet(mint_url)
        stream = wallet.client.watch_quote(WEBSOCKET_QUOTE_KIND, quote_id)
        try:
            async for payload in stream:
                state = quote_state(payload)
                if state in TERMINAL_STATES:
                    return state
        finally:
            await stream.aclose()
        raise MintError("push channel closed before the quote was paid", mint_url=mint_url)

    async def _poll(self, mint_url: str, quote_id: str) -> QuoteState:
        while True:
            result = await self.check_status(mint_url, quote_id)
            if result.error:
                self._log(f"status check for {quote_id} failed: {result.error}", level="debug")
            elif result.state in TERMINAL_STATES:
                return result.state
            await asyncio.sleep(self.poll_interval)

    async def _fire(self, on_paid: OnPaid, quote_id: str) -> None:
        try:
            result = on_paid(quote_id)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._log(f"on_paid callback for {quote_id} failed: {e!r}", level="error")
