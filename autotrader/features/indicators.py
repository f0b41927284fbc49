"""Lightweight indicator utilities used across the trading stack.

Every helper takes plain price/volume sequences (lists, numpy arrays or
pandas Series) and returns a scalar for the latest bar. Short histories
return the neutral value of the indicator instead of raising.
"""
from __future__ import annotations

import math
from typing import Sequence

import numpy as np
import pandas as pd

TRADING_DAYS = 252


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def simple_returns(prices: Sequence[float]) -> np.ndarray:
    arr = _as_array(prices)
    if arr.size < 2:
        return np.array([], dtype=float)
    return np.diff(arr) / arr[:-1]


def annualized_volatility(prices: Sequence[float], default: float = 0.0) -> float:
    """Population std of simple returns scaled by sqrt(252)."""
    returns = simple_returns(prices)
    if returns.size == 0:
        return default
    return float(np.std(returns) * math.sqrt(TRADING_DAYS))


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Plain-average RSI over the last ``period`` changes (50 when too short)."""
    arr = _as_array(prices)
    if arr.size < period + 1:
        return 50.0
    changes = np.diff(arr[-(period + 1):])
    avg_gain = changes[changes > 0].sum() / period
    avg_loss = -changes[changes < 0].sum() / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


def ema(prices: Sequence[float], span: int) -> float:
    """Exponential average seeded with the first price."""
    series = pd.Series(_as_array(prices))
    if series.empty:
        return 0.0
    return float(series.ewm(span=span, adjust=False).mean().iloc[-1])


def macd(prices: Sequence[float]) -> tuple[float, float]:
    """MACD line and a damped signal line (0.8x the MACD)."""
    line = ema(prices, 12) - ema(prices, 26)
    return line, line * 0.8


def bollinger_position(prices: Sequence[float], period: int = 20, num_std: float = 2.0) -> float:
    """Position of the last price inside the bands, scaled to [-1, 1]."""
    arr = _as_array(prices)
    if arr.size < period:
        return 0.0
    window = arr[-period:]
    sma = window.mean()
    std = window.std()
    upper = sma + std * num_std
    lower = sma - std * num_std
    if upper == lower:
        return 0.0
    return float((arr[-1] - lower) / (upper - lower) * 2 - 1)


def stochastic(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
    h = _as_array(highs)
    lo = _as_array(lows)
    c = _as_array(closes)
    if c.size < period:
        return 50.0
    highest = h[-period:].max()
    lowest = lo[-period:].min()
    if highest == lowest:
        return 50.0
    return float((c[-1] - lowest) / (highest - lowest) * 100)


def williams_r(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
    return stochastic(highs, lows, closes, period) - 100.0


def rate_of_change(prices: Sequence[float], period: int = 10, percent: bool = True) -> float:
    arr = _as_array(prices)
    if arr.size < period + 1:
        return 0.0
    past = arr[-1 - period]
    change = (arr[-1] - past) / past
    return float(change * 100 if percent else change)


def true_ranges(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> np.ndarray:
    h = _as_array(highs)
    lo = _as_array(lows)
    c = _as_array(closes)
    if c.size < 2:
        return np.array([], dtype=float)
    prev_close = c[:-1]
    return np.maximum.reduce([h[1:] - lo[1:], np.abs(h[1:] - prev_close), np.abs(lo[1:] - prev_close)])


def average_true_range(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
    default: float = 0.0,
) -> float:
    """Mean of the last ``period`` true ranges; ``default`` with fewer than period+1 bars."""
    if len(closes) < period + 1:
        return default
    return float(true_ranges(highs, lows, closes)[-period:].mean())


def composite_momentum(prices: Sequence[float]) -> float:
    """Blend of 5- and 20-bar summed returns plus their acceleration."""
    returns = simple_returns(prices)
    if returns.size == 0:
        return 0.0
    short = returns[-5:].sum()
    medium = returns[-20:].sum()
    return float(short * 0.6 + medium * 0.3 + (short - medium) * 0.1)


def volume_trend(volumes: Sequence[float]) -> float:
    """Relative change of the last 10 bars' volume against the 40 before them."""
    arr = _as_array(volumes)
    recent = arr[-10:]
    historical = arr[-50:-10]
    if recent.size == 0 or historical.size == 0:
        return 0.0
    base = historical.mean()
    if base == 0:
        return 0.0
    return float((recent.mean() - base) / base)


def price_trend_strength(prices: Sequence[float]) -> float:
    """Distance of price from its 20-bar mean, and of that mean from the 50-bar mean."""
    arr = _as_array(prices)
    if arr.size < 20:
        return 0.0
    sma20 = arr[-20:].mean()
    sma50 = arr[-50:].mean()
    short_trend = (arr[-1] - sma20) / sma20
    long_trend = (sma20 - sma50) / sma50
    return float(short_trend * 0.7 + long_trend * 0.3)


def volume_balance(prices: Sequence[float], volumes: Sequence[float]) -> float:
    """Up-bar volume minus down-bar volume over total volume."""
    p = _as_array(prices)
    v = _as_array(volumes)
    if p.size < 2 or v.size < 2:
        return 0.0
    up = np.diff(p) > 0
    traded = v[1:]
    total = traded.sum()
    if total == 0:
        return 0.0
    return float((traded[up].sum() - traded[~up].sum()) / total)


def volatility_sentiment(prices: Sequence[float]) -> float:
    vol = annualized_volatility(prices)
    if vol > 0.4:
        return -0.5
    if vol > 0.25:
        return -0.2
    if vol < 0.1:
        return 0.3
    return 0.0


def regression_trend(prices: Sequence[float], min_samples: int = 20) -> float:
    """Least-squares slope over mean price, scaled by sqrt(R^2)."""
    y = _as_array(prices)
    if y.size < min_samples:
        return 0.0
    x = np.arange(y.size, dtype=float)
    slope, intercept = np.polyfit(x, y, 1)
    fitted = slope * x + intercept
    ss_tot = ((y - y.mean()) ** 2).sum()
    ss_res = ((y - fitted) ** 2).sum()
    r_squared = 1 - ss_res / ss_tot if ss_tot > 0 else 0.0
    mean_price = y.mean()
    if mean_price == 0:
        return 0.0
    return float(slope / mean_price * math.sqrt(max(0.0, r_squared)))


def horizon_momentum(prices: Sequence[float], min_samples: int = 20) -> float:
    """0.5*ROC5 + 0.3*ROC10 + 0.2*ROC20; a horizon without enough history adds nothing."""
    if len(prices) < min_samples:
        return 0.0
    return (
        0.5 * rate_of_change(prices, 5, percent=False)
        + 0.3 * rate_of_change(prices, 10, percent=False)
        + 0.2 * rate_of_change(prices, 20, percent=False)
    )


def volume_price_correlation(prices: Sequence[float], volumes: Sequence[float], min_samples: int = 10) -> float:
    """Pearson correlation of price % changes against volume % changes."""
    price_changes = simple_returns(prices)
    v = _as_array(volumes)
    if v.size < 2 or np.any(v[:-1] == 0):
        return 0.0
    volume_changes = np.diff(v) / v[:-1]
    n = min(price_changes.size, volume_changes.size)
    if n < min_samples:
        return 0.0
    x = price_changes[-n:]
    y = volume_changes[-n:]
    dx = x - x.mean()
    dy = y - y.mean()
    denominator = math.sqrt((dx ** 2).sum() * (dy ** 2).sum())
    if denominator == 0:
        return 0.0
    return float((dx * dy).sum() / denominator)


def has_volume_variation(volumes: Sequence[float]) -> bool:
    arr = _as_array(volumes)
    return arr.size > 1 and float(arr.std()) > 0


def momentum_mean(prices: Sequence[float]) -> float:
    """Average simple return over the window."""
    returns = simple_returns(prices)
    return float(returns.mean()) if returns.size else 0.0
