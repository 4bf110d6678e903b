"""
HTTP client for the Cashu mint protocol (NUT-00 .. NUT-17).

Every request goes through a per-mint circuit breaker. Errors are mapped
onto two classes with different recovery semantics:

- MintUnavailableError: the request never left this process (circuit open,
  connection refused). The mint cannot have acted on it.
- MintError: the mint rejected the request, or the transport failed after
  the request may have been delivered. The outcome can be uncertain.

Key patterns:
- MintCircuitBreaker: CLOSED -> OPEN after repeated failures, OPEN ->
  HALF_OPEN after a timeout, HALF_OPEN -> CLOSED after consecutive successes
- Explicit 4xx rejections count as the mint being reachable
- watch_quote(): NUT-17 JSON-RPC websocket subscription yielding payloads
"""

import json
import logging
import time
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import websockets

from .config import MINT_HTTP_TIMEOUT, log_level
from .errors import MintError, MintUnavailableError
from .models import normalize_mint_url

logger = logging.getLogger("nutpay.mint")

MAX_RESPONSE_BYTES = 1_048_576


# =============================================================================
# MINT CIRCUIT BREAKER
# =============================================================================

class MintCircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class MintCircuitBreaker:
    """
    Per-mint circuit breaker.

    CLOSED opens after ``max_failures`` failures in a row. OPEN lets a probe
    through (HALF_OPEN) once ``reset_timeout`` seconds have passed since it
    opened. A failed probe reopens the circuit; ``half_open_success_threshold``
    successful probes close it.
    """

    def __init__(self, mint_url: str, max_failures: int = 5,
                 reset_timeout: float = 60,
                 half_open_success_threshold: int = 3):
        self.mint_url = mint_url
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self.half_open_success_threshold = half_open_success_threshold

        self._state = MintCircuitState.CLOSED
        self._consecutive_failures = 0
        self._probe_successes = 0
        self._opened_at = 0.0
        self._last_failure_time = 0
        self._last_success_time = 0

    @property
    def state(self) -> MintCircuitState:
        if (self._state == MintCircuitState.OPEN
                and time.monotonic() - self._opened_at >= self.reset_timeout):
            self._state = MintCircuitState.HALF_OPEN
            self._probe_successes = 0
        return self._state

    def is_available(self) -> bool:
        return self.state != MintCircuitState.OPEN

    def _open(self) -> None:
        self._state = MintCircuitState.OPEN
        self._opened_at = time.monotonic()
        self._probe_successes = 0

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._last_success_time = int(time.time())
        if self.state != MintCircuitState.HALF_OPEN:
            return
        self._probe_successes += 1
        if self._probe_successes >= self.half_open_success_threshold:
            self._state = MintCircuitState.CLOSED

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        self._last_failure_time = int(time.time())
        state = self.state
        if state == MintCircuitState.HALF_OPEN:
            self._open()
        elif state == MintCircuitState.CLOSED and self._consecutive_failures >= self.max_failures:
            self._open()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "mint_url": self.mint_url,
            "state": self.state.value,
            "failure_count": self._consecutive_failures,
            "last_failure_time": self._last_failure_time,
            "last_success_time": self._last_success_time,
        }


# =============================================================================
# MINT CLIENT
# =============================================================================

class MintClient:
    """Async JSON client for one mint's /v1 API."""

    def __init__(self, mint_url: str, timeout: float = MINT_HTTP_TIMEOUT,
                 breaker: Optional[MintCircuitBreaker] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.mint_url = normalize_mint_url(mint_url)
        self.timeout = timeout
        self.breaker = breaker or MintCircuitBreaker(self.mint_url)
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    def _log(self, msg: str, level: str = "info") -> None:
        logger.log(log_level(level), f"nutpay: mint: {msg}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str,
                       body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.breaker.is_available():
            self._log(f"circuit OPEN for {self.mint_url}, skipping {path}", level="debug")
            raise MintUnavailableError(f"mint {self.mint_url} is temporarily unavailable",
                                       mint_url=self.mint_url)

        url = self.mint_url + path
        try:
            response = await self._client.request(method, url, json=body)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            self.breaker.record_failure()
            self._log(f"connect failed {url}: {e}", level="debug")
            raise MintUnavailableError(f"could not connect to {self.mint_url}: {e}",
                                       mint_url=self.mint_url) from e
        except httpx.HTTPError as e:
            self.breaker.record_failure()
            self._log(f"request failed {method} {url}: {e!r}", level="warn")
            raise MintError(f"request to {self.mint_url} failed: {e!r}",
                            mint_url=self.mint_url) from e

        if response.status_code >= 500:
            self.breaker.record_failure()
        else:
            self.breaker.record_success()

        if len(response.content) > MAX_RESPONSE_BYTES:
            raise MintError(f"response from {self.mint_url} too large",
                            status_code=response.status_code, mint_url=self.mint_url)
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            raise MintError(f"invalid JSON from {self.mint_url}{path}",
                            status_code=response.status_code, mint_url=self.mint_url) from e

        if response.status_code >= 400:
            detail = data.get("detail") if isinstance(data, dict) else None
            code = data.get("code") if isinstance(data, dict) else None
            raise MintError(str(detail or f"HTTP {response.status_code}"),
                            status_code=response.status_code, code=code,
                            mint_url=self.mint_url)
        if not isinstance(data, dict):
            raise MintError(f"unexpected response shape from {self.mint_url}{path}",
                            status_code=response.status_code, mint_url=self.mint_url)
        return data

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    async def get_info(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/info")

    async def get_keysets(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/keysets")

    async def get_keys(self, keyset_id: Optional[str] = None) -> Dict[str, Any]:
        path = "/v1/keys" if keyset_id is None else f"/v1/keys/{keyset_id}"
        return await self._request("GET", path)

    async def post_mint_quote(self, amount: int, unit: str) -> Dict[str, Any]:
        return await self._request("POST", "/v1/mint/quote/bolt11",
                                   {"amount": amount, "unit": unit})

    async def get_mint_quote(self, quote_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/mint/quote/bolt11/{quote_id}")

    async def post_mint(self, quote_id: str, outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._request("POST", "/v1/mint/bolt11",
                                   {"quote": quote_id, "outputs": outputs})

    async def post_melt_quote(self, invoice: str, unit: str) -> Dict[str, Any]:
        return await self._request("POST", "/v1/melt/quote/bolt11",
                                   {"request": invoice, "unit": unit})

    async def get_melt_quote(self, quote_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/melt/quote/bolt11/{quote_id}")

    async def post_melt(self, quote_id: str, inputs: List[Dict[str, Any]],
                        outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._request("POST", "/v1/melt/bolt11",
                                   {"quote": quote_id, "inputs": inputs, "outputs": outputs})

    async def post_swap(self, inputs: List[Dict[str, Any]],
                        outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._request("POST", "/v1/swap", {"inputs": inputs, "outputs": outputs})

    async def post_checkstate(self, ys: List[str]) -> Dict[str, Any]:
        return await self._request("POST", "/v1/checkstate", {"Ys": ys})

    async def post_restore(self, outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._request("POST", "/v1/restore", {"outputs": outputs})

    # =========================================================================
    # PUSH CHANNEL (NUT-17)
    # =========================================================================

    def websocket_url(self) -> str:
        if self.mint_url.startswith("https://"):
            return "wss://" + self.mint_url[len("https://"):] + "/v1/ws"
        if self.mint_url.startswith("http://"):
            return "ws://" + self.mint_url[len("http://"):] + "/v1/ws"
        return self.mint_url + "/v1/ws"

    async def watch_quote(self, kind: str, quote_id: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Subscribe to state notifications for one quote.

        Yields notification payloads until the caller stops iterating. The
        socket is closed when the generator is closed or cancelled.
        """
        sub_id = uuid.uuid4().hex
        request = {
            "jsonrpc": "2.0",
            "id": 0,
            "method": "subscribe",
            "params": {"kind": kind, "subId": sub_id, "filters": [quote_id]},
        }
        async with websockets.connect(self.websocket_url(),
                                      open_timeout=self.timeout,
                                      max_size=MAX_RESPONSE_BYTES) as ws:
            await ws.send(json.dumps(request))
            async for raw in ws:
                message = json.loads(raw)
                if message.get("error"):
                    raise MintError(f"subscription rejected: {message['error']}",
                                    mint_url=self.mint_url)
                params = message.get("params") or {}
                if message.get("method") == "subscribe" and params.get("subId") == sub_id:
                    yield params.get("payload") or {}
