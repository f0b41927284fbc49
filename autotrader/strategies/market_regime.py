"""Market regime detection for adaptive strategy selection."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import pandas as pd

from ..features import indicators as ind
from ..utils.logger import logger
from ..utils.structured_logging import log_structured_event


class MarketRegime(str, Enum):
    """Market regime classifications."""
    BULL = "BULL"
    BEAR = "BEAR"
    SIDEWAYS = "SIDEWAYS"
    VOLATILE = "VOLATILE"
    TRANSITION = "TRANSITION"


@dataclass(frozen=True)
class RegimeCharacteristics:
    trend_strength: float = 0.0
    volatility: float = 0.2
    momentum: float = 0.0
    volume_pattern: float = 0.0
    # False when volume never changes across the window
    volume_informative: bool = True


@dataclass(frozen=True)
class RegimeSignal:
    regime: MarketRegime
    confidence: float
    characteristics: RegimeCharacteristics
    duration_hours: float
    change_signal: bool
    active_regime: MarketRegime
    adapted_strategy: str


@dataclass(frozen=True)
class RegimeStrategy:
    """Per-regime playbook."""
    position_sizing: float
    risk_level: float
    trading_frequency: float
    confidence_threshold: float
    recommended_actions: tuple = ()


@dataclass
class HistoricalRegime:
    regime: MarketRegime
    start: datetime
    characteristics: RegimeCharacteristics
    end: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.end is None


REGIME_STRATEGIES: Dict[MarketRegime, RegimeStrategy] = {
    MarketRegime.BULL: RegimeStrategy(
        0.15, 0.12, 1.2, 0.65,
        ("Increase position sizes", "Focus on momentum strategies", "Target trending stocks"),
    ),
    MarketRegime.BEAR: RegimeStrategy(
        0.08, 0.06, 0.7, 0.80,
        ("Reduce position sizes", "Implement tight stop-losses", "Increase cash allocation"),
    ),
    MarketRegime.SIDEWAYS: RegimeStrategy(
        0.10, 0.08, 0.9, 0.72,
        ("Range trading strategies", "Mean reversion approaches"),
    ),
    MarketRegime.VOLATILE: RegimeStrategy(
        0.06, 0.04, 0.5, 0.85,
        ("Minimize exposure", "Wait for clearer signals"),
    ),
    MarketRegime.TRANSITION: RegimeStrategy(
        0.07, 0.05, 0.6, 0.82,
        ("Wait for regime confirmation", "Monitor key indicators"),
    ),
}


def regime_strategy(regime: MarketRegime) -> RegimeStrategy:
    return REGIME_STRATEGIES.get(regime, REGIME_STRATEGIES[MarketRegime.SIDEWAYS])


def compute_characteristics(df: pd.DataFrame, min_samples: int = 20) -> RegimeCharacteristics:
    closes = df["close"].astype(float).to_numpy()
    volumes = df["volume"].astype(float).to_numpy()
    return RegimeCharacteristics(
        trend_strength=ind.regression_trend(closes, min_samples),
        volatility=ind.annualized_volatility(closes),
        momentum=ind.horizon_momentum(closes, min_samples),
        volume_pattern=ind.volume_price_correlation(closes, volumes),
        volume_informative=ind.has_volume_variation(volumes),
    )


def classify(ch: RegimeCharacteristics) -> MarketRegime:
    """First matching rule wins."""
    volume_confirms = ch.volume_pattern > 0.3 or not ch.volume_informative
    if ch.volatility > 0.4:
        return MarketRegime.VOLATILE
    if ch.trend_strength > 0.02 and ch.momentum > 0.03 and volume_confirms:
        return MarketRegime.BULL
    if ch.trend_strength < -0.02 and ch.momentum < -0.03:
        return MarketRegime.BEAR
    if abs(ch.trend_strength) > 0.01 and ch.volatility > 0.25:
        return MarketRegime.TRANSITION
    return MarketRegime.SIDEWAYS


def regime_confidence(ch: RegimeCharacteristics, regime: MarketRegime) -> float:
    t = abs(ch.trend_strength)
    m = abs(ch.momentum)
    vol = ch.volatility
    if regime is MarketRegime.BULL:
        score = t * 20 + m * 15 + max(0.0, ch.volume_pattern) * 10 + (1 - min(1.0, vol / 0.3)) * 5
        return min(0.95, score / 50)
    if regime is MarketRegime.BEAR:
        score = t * 20 + m * 15 + (1 - min(1.0, vol / 0.4)) * 15
        return min(0.95, score / 50)
    if regime is MarketRegime.VOLATILE:
        return min(0.95, vol / 0.5)
    if regime is MarketRegime.TRANSITION:
        return 0.6 + min(0.3, vol / 0.4)
    return 0.7 - min(0.4, t * 10)


def adapted_strategy(regime: MarketRegime, ch: RegimeCharacteristics) -> str:
    if regime is MarketRegime.BULL:
        return "AGGRESSIVE_GROWTH" if ch.momentum > 0.05 else "MODERATE_GROWTH"
    if regime is MarketRegime.BEAR:
        return "DEFENSIVE_CASH" if ch.volatility > 0.3 else "SELECTIVE_SHORTS"
    if regime is MarketRegime.SIDEWAYS:
        return "RANGE_TRADING" if ch.volume_pattern > 0.2 else "MEAN_REVERSION"
    if regime is MarketRegime.VOLATILE:
        return "VOLATILITY_CAPTURE"
    if regime is MarketRegime.TRANSITION:
        return "WAIT_AND_SEE"
    return "CONSERVATIVE"


class RegimeClassifier:
    """Holds the single committed regime shared by the whole watchlist.

    A detected regime is committed only after the active one has been held for
    ``min_regime_hours`` and the new regime scores above ``change_confidence``.
    """

    LOOKBACK = 50

    def __init__(
        self,
        min_regime_hours: float = 24.0,
        change_confidence: float = 0.75,
        min_samples: int = 20,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.min_regime_hours = min_regime_hours
        self.change_confidence = change_confidence
        self.min_samples = min_samples
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self.active_regime = MarketRegime.SIDEWAYS
        self.regime_start = self._now()
        self._history: List[HistoricalRegime] = []

    @classmethod
    def from_settings(cls, settings, now: Optional[Callable[[], datetime]] = None) -> "RegimeClassifier":
        cfg = settings.regime
        return cls(cfg.min_regime_hours, cfg.change_confidence, cfg.min_samples, now=now)

    def duration_hours(self) -> float:
        return (self._now() - self.regime_start).total_seconds() / 3600

    def detect(self, df: pd.DataFrame, symbol: str = "") -> RegimeSignal:
        try:
            ch = compute_characteristics(df.tail(self.LOOKBACK), self.min_samples)
            detected = classify(ch)
            confidence = regime_confidence(ch, detected)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Regime detection failed for {symbol or 'window'}: {exc}")
            return RegimeSignal(
                regime=MarketRegime.SIDEWAYS,
                confidence=0.5,
                characteristics=RegimeCharacteristics(),
                duration_hours=0.0,
                change_signal=False,
                active_regime=self.active_regime,
                adapted_strategy="CONSERVATIVE",
            )

        with self._lock:
            changed = self._should_change(detected, confidence)
            if changed:
                self._commit(detected, ch, symbol)
            active = self.active_regime
            duration = self.duration_hours()

        return RegimeSignal(
            regime=detected,
            confidence=confidence,
            characteristics=ch,
            duration_hours=duration,
            change_signal=changed,
            active_regime=active,
            adapted_strategy=adapted_strategy(detected, ch),
        )

    def _should_change(self, detected: MarketRegime, confidence: float) -> bool:
        if self.duration_hours() < self.min_regime_hours:
            return False
        return detected != self.active_regime and confidence > self.change_confidence

    def _commit(self, regime: MarketRegime, ch: RegimeCharacteristics, symbol: str) -> None:
        now = self._now()
        if self._history and self._history[-1].is_open:
            self._history[-1].end = now
        self._history.append(HistoricalRegime(regime=regime, start=now, characteristics=ch))
        previous = self.active_regime
        self.active_regime = regime
        self.regime_start = now
        log_structured_event(
            component="regime",
            event_type="regime.changed",
            message=f"Market regime changed {previous.value} -> {regime.value} (via {symbol or 'window'})",
            payload={"from": previous.value, "to": regime.value, "symbol": symbol},
        )

    def regime_history(self) -> List[HistoricalRegime]:
        with self._lock:
            return [replace(h) for h in self._history]

    def current_strategy(self) -> RegimeStrategy:
        return regime_strategy(self.active_regime)

    def regime_analytics(self, outcomes: Iterable = ()) -> Dict[str, object]:
        """Per-regime realized performance from outcome records tagged with a regime."""
        performance: Dict[str, Dict[str, float]] = {}
        grouped: Dict[str, List[float]] = {r.value: [] for r in MarketRegime}
        for outcome in outcomes:
            tag = (getattr(outcome, "market_conditions", None) or {}).get("regime")
            if tag in grouped:
                grouped[tag].append(float(outcome.pnl))
        for regime, pnls in grouped.items():
            if not pnls:
                performance[regime] = {"avg_return": 0.0, "success_rate": 0.0, "trades": 0}
                continue
            performance[regime] = {
                "avg_return": sum(pnls) / len(pnls),
                "success_rate": sum(1 for p in pnls if p > 0) / len(pnls),
                "trades": len(pnls),
            }
        return {
            "current_regime": self.active_regime.value,
            "regime_duration_hours": self.duration_hours(),
            "historical_performance": performance,
            "recommended_adjustments": list(self.current_strategy().recommended_actions),
        }
