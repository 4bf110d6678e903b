"""
Wallet configuration, preset mints and logging setup.

Configuration is a plain dataclass. Hosts either construct it directly or
load it from NUTPAY_* environment variables with WalletConfig.from_env().
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_UNIT = "sat"
DEFAULT_DB_PATH = os.path.expanduser("~/.nutpay/wallet.db")

MINT_HTTP_TIMEOUT = 10
QUOTE_POLL_INTERVAL = 5.0
QUOTE_PUSH_TIMEOUT = 600
MAX_PAYMENT_AMOUNT = 1_000_000

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Level names accepted by the per-component _log() helpers
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

PRESET_MINTS: List[Dict[str, Any]] = [
    {
        "url": "https://mint.minibits.cash/Bitcoin",
        "name": "Minibits",
        "enabled": True,
        "trusted": True,
    },
    {
        "url": "https://mint.coinos.io",
        "name": "Coinos",
        "enabled": False,
        "trusted": True,
    },
    {
        "url": "https://legend.lnbits.com/cashu/api/v1/4gr9Xcmz3XEkUNwiBiQGoC",
        "name": "LNbits Legend",
        "enabled": False,
        "trusted": False,
    },
]


def log_level(name: str) -> int:
    """Map a _log() level name to a logging level."""
    return LOG_LEVELS.get(name, logging.INFO)


def configure_logging(level: str = "info") -> None:
    """Set the nutpay logger level; adds a root handler only if none exists."""
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger("nutpay").setLevel(log_level(level))


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class WalletConfig:
    """Tunable wallet engine settings."""
    unit: str = DEFAULT_UNIT
    db_path: str = DEFAULT_DB_PATH
    http_timeout: float = MINT_HTTP_TIMEOUT
    poll_interval: float = QUOTE_POLL_INTERVAL
    push_timeout: float = QUOTE_PUSH_TIMEOUT
    auto_discover_mints: bool = True
    max_payment_amount: int = MAX_PAYMENT_AMOUNT
    max_transactions: int = 100
    max_pending_tokens: int = 50
    breaker_max_failures: int = 5
    breaker_reset_timeout: int = 60
    log_level: str = "info"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "WalletConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            unit=env.get("NUTPAY_UNIT", defaults.unit),
            db_path=env.get("NUTPAY_DB_PATH", defaults.db_path),
            http_timeout=float(env.get("NUTPAY_HTTP_TIMEOUT", defaults.http_timeout)),
            poll_interval=float(env.get("NUTPAY_POLL_INTERVAL", defaults.poll_interval)),
            push_timeout=float(env.get("NUTPAY_PUSH_TIMEOUT", defaults.push_timeout)),
            auto_discover_mints=_env_bool(env.get("NUTPAY_AUTO_DISCOVER"),
                                          defaults.auto_discover_mints),
            max_payment_amount=int(env.get("NUTPAY_MAX_PAYMENT", defaults.max_payment_amount)),
            max_transactions=int(env.get("NUTPAY_MAX_TRANSACTIONS", defaults.max_transactions)),
            max_pending_tokens=int(env.get("NUTPAY_MAX_PENDING_TOKENS",
                                           defaults.max_pending_tokens)),
            breaker_max_failures=int(env.get("NUTPAY_BREAKER_MAX_FAILURES",
                                             defaults.breaker_max_failures)),
            breaker_reset_timeout=int(env.get("NUTPAY_BREAKER_RESET_TIMEOUT",
                                              defaults.breaker_reset_timeout)),
            log_level=env.get("NUTPAY_LOG_LEVEL", defaults.log_level),
        )
