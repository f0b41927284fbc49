"""Feature engineering for technical indicators and sentiment fusion."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

import pandas as pd

from ..errors import InsufficientDataError
from ..utils.timezone_utils import intraday_activity, is_regular_session, to_et
from . import indicators as ind

TECHNICAL_WINDOW = 50


@dataclass(frozen=True)
class FeatureVector:
    """Model inputs derived from one symbol's bar window."""

    price: float
    momentum: float
    volatility: float
    volume_trend: float
    rsi: float
    macd: float
    macd_signal: float
    bollinger_position: float
    stochastic: float
    williams_r: float
    roc: float
    sentiment: float
    time_features: Tuple[float, ...] = ()
    closes: Tuple[float, ...] = field(default=(), repr=False)

    @property
    def technical_indicators(self) -> Tuple[float, ...]:
        return (
            self.rsi,
            self.macd,
            self.macd_signal,
            self.bollinger_position,
            self.stochastic,
            self.williams_r,
            self.roc,
        )


def time_encodings(ts: datetime) -> Tuple[float, ...]:
    """Hour, weekday, day-of-month and month scaled to [0, 1), session flag, activity."""
    et = to_et(ts)
    return (
        et.hour / 24,
        (et.isoweekday() % 7) / 7,
        et.day / 31,
        (et.month - 1) / 12,
        1.0 if is_regular_session(et) else 0.0,
        intraday_activity(et),
    )


def technical_sentiment(closes, volumes) -> float:
    return (
        ind.price_trend_strength(closes) * 0.4
        + ind.volume_balance(closes, volumes) * 0.35
        + ind.volatility_sentiment(closes) * 0.25
    )


def extract_features(
    df: pd.DataFrame,
    news_sentiment: float = 0.0,
    now: Optional[datetime] = None,
    min_bars: int = 26,
) -> FeatureVector:
    """Compute the feature vector for the latest bar of ``df``.

    Args:
        df: OHLCV frame, oldest first
        news_sentiment: External sentiment score in [-1, 1]; 0 when unknown
        now: Timestamp for the time encodings (defaults to the last bar)
        min_bars: Minimum history; fewer bars raise InsufficientDataError

    Returns:
        FeatureVector for the last bar
    """
    if len(df) < min_bars:
        raise InsufficientDataError(f"need at least {min_bars} bars, got {len(df)}")

    closes = df["close"].astype(float).to_numpy()
    volumes = df["volume"].astype(float).to_numpy()
    window = df.iloc[-TECHNICAL_WINDOW:]
    w_close = window["close"].astype(float).to_numpy()
    w_high = window["high"].astype(float).to_numpy()
    w_low = window["low"].astype(float).to_numpy()

    macd_line, macd_signal = ind.macd(w_close)
    sentiment = technical_sentiment(closes, volumes) * 0.6 + max(-1.0, min(1.0, news_sentiment)) * 0.4

    if now is None:
        last = df.index[-1]
        now = last.to_pydatetime() if isinstance(last, pd.Timestamp) else datetime.now()

    return FeatureVector(
        price=float(closes[-1]),
        momentum=ind.composite_momentum(closes),
        volatility=ind.annualized_volatility(closes),
        volume_trend=ind.volume_trend(volumes),
        rsi=ind.rsi(w_close, 14),
        macd=macd_line,
        macd_signal=macd_signal,
        bollinger_position=ind.bollinger_position(w_close, 20, 2.0),
        stochastic=ind.stochastic(w_high, w_low, w_close, 14),
        williams_r=ind.williams_r(w_high, w_low, w_close, 14),
        roc=ind.rate_of_change(w_close, 10),
        sentiment=sentiment,
        time_features=time_encodings(now),
        closes=tuple(float(c) for c in closes),
    )
