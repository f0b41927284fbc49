"""Reusable safety guard helpers for execution logic."""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from ..config import ExecutionRulesConfig
from ..data.models import Quote
from ..utils.timezone_utils import is_extended_session, is_regular_session, is_weekend

CRYPTO_SYMBOLS = frozenset({
    "BTCUSD", "ETHUSD", "LTCUSD", "BCHUSD",
    "ADAUSD", "DOTUSD", "SOLUSD", "AVAXUSD", "MATICUSD", "SHIBUSD",
    "LINKUSD", "UNIUSD", "AAVEUSD", "ALGOUSD", "BATUSD", "COMPUSD",
    "TRXUSD", "XLMUSD", "XTZUSD", "ATOMUSD", "EOSUSD", "IOTAUSD",
})

MAX_ESTIMATED_SPREAD = 0.02


def normalize_symbol(symbol: str) -> str:
    return symbol.upper().replace("/", "").replace("-", "")


def is_crypto_symbol(symbol: str) -> bool:
    """Round-the-clock pairs: known list or short USD/USDT/USDC-quoted tickers."""
    s = normalize_symbol(symbol)
    if s in CRYPTO_SYMBOLS:
        return True
    if s.endswith("USDT") or s.endswith("USDC"):
        return len(s) <= 9
    return s.endswith("USD") and 6 <= len(s) <= 8


def session_allowed(symbol: str, now: datetime, rules: ExecutionRulesConfig) -> bool:
    """Whether ``symbol`` may trade at ``now`` under the execution rules.

    Regular hours always pass; extended hours need ``after_hours_trading``;
    weekends need ``weekend_trading``. Crypto symbols bypass the clock only
    when ``crypto_trading_enabled`` is set.
    """
    if not rules.market_hours_only:
        return True
    if rules.crypto_trading_enabled and is_crypto_symbol(symbol):
        return True
    if is_regular_session(now):
        return True
    if rules.after_hours_trading and is_extended_session(now):
        return True
    if rules.weekend_trading and is_weekend(now):
        return True
    return False


def average_volume(volumes: Sequence[float], window: int = 20) -> float:
    tail = np.asarray(volumes, dtype=float)[-window:]
    return float(tail.mean()) if tail.size else 0.0


def estimate_spread(closes: Sequence[float], quote: Optional[Quote] = None) -> float:
    """Quoted relative spread, or a proxy from the last five closes' return dispersion."""
    if quote is not None:
        return quote.spread
    prices = np.asarray(closes, dtype=float)[-5:]
    if prices.size < 2:
        return MAX_ESTIMATED_SPREAD
    returns = np.diff(prices) / prices[:-1]
    return float(min(MAX_ESTIMATED_SPREAD, returns.std() * 0.1))


def spread_threshold(symbol: str, rules: ExecutionRulesConfig) -> float:
    return rules.crypto_spread_threshold if is_crypto_symbol(symbol) else rules.spread_threshold


def minimum_position_weight(symbol: str) -> float:
    return 0.003 if is_crypto_symbol(symbol) else 0.005
