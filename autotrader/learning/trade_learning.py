"""Prediction accuracy tracking and threshold insights."""
from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, List, Optional

import numpy as np

from ..utils.logger import logger

FLAT_MOVE_PCT = 0.5


@dataclass
class TrackedPrediction:
    trade_id: str
    symbol: str
    action: str
    predicted_direction: str
    confidence: float
    entry_price: float
    entry_time: datetime
    position_size: float = 0.0
    market_conditions: Dict[str, float] = field(default_factory=dict)
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    actual_direction: Optional[str] = None
    realized_pnl: Optional[float] = None
    correct: Optional[bool] = None
    calibration_error: Optional[float] = None
    timing_accuracy: Optional[float] = None
    magnitude_accuracy: Optional[float] = None

    @property
    def closed(self) -> bool:
        return self.correct is not None


@dataclass(frozen=True)
class LearningInsights:
    overall_accuracy: float
    confidence_calibration: float
    optimal_confidence_threshold: float
    recommended_minimum: float
    recommended_conservative: float
    recommended_aggressive: float
    base_multiplier: float
    confidence_multiplier: float
    sample_size: int
    strongest_patterns: tuple = ()
    weakest_patterns: tuple = ()


def timing_accuracy(hours: float) -> float:
    """1.0 for holds between 1 and 24 hours, decaying outside that window."""
    if 1 <= hours <= 24:
        return 1.0
    if hours < 1:
        return max(0.0, hours)
    return max(0.0, 1 - (hours - 24) / 48)


def magnitude_accuracy(confidence: float, move_pct: float) -> float:
    expected = confidence * 5
    denominator = max(expected, move_pct)
    if denominator == 0:
        return 1.0
    return 1 - abs(expected - move_pct) / denominator


class PredictionAccuracyTracker:
    """Follows each executed prediction from entry to exit and scores it."""

    def __init__(
        self,
        min_samples: int = 10,
        capacity: int = 1000,
        now: Optional[Callable[[], datetime]] = None,
        accuracy_samples: Optional[int] = None,
    ) -> None:
        self.min_samples = min_samples
        # closed predictions needed before recent_accuracy() reports anything
        self.accuracy_samples = min_samples if accuracy_samples is None else accuracy_samples
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._records: "OrderedDict[str, TrackedPrediction]" = OrderedDict()
        self.capacity = capacity
        self._insights_history: Deque[LearningInsights] = deque(maxlen=100)
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, now: Optional[Callable[[], datetime]] = None) -> "PredictionAccuracyTracker":
        return cls(
            settings.learning.min_outcomes_for_insights,
            settings.learning.outcome_history_cap,
            now=now,
            accuracy_samples=settings.thresholds.accuracy_min_samples,
        )

    def track_entry(
        self,
        trade_id: str,
        symbol: str,
        action: str,
        confidence: float,
        entry_price: float,
        position_size: float = 0.0,
        market_conditions: Optional[Dict[str, float]] = None,
    ) -> TrackedPrediction:
        action = action.upper()
        record = TrackedPrediction(
            trade_id=trade_id,
            symbol=symbol,
            action=action,
            predicted_direction="UP" if action == "BUY" else "DOWN",
            confidence=confidence,
            entry_price=entry_price,
            entry_time=self._now(),
            position_size=position_size,
            market_conditions=dict(market_conditions or {}),
        )
        with self._lock:
            self._records[trade_id] = record
            while len(self._records) > self.capacity:
                self._records.popitem(last=False)
        return record

    def track_exit(self, trade_id: str, exit_price: float, realized_pnl: float) -> Optional[TrackedPrediction]:
        with self._lock:
            record = self._records.get(trade_id)
            if record is None:
                logger.debug(f"Exit for untracked trade {trade_id} ignored")
                return None
            move_pct = (exit_price - record.entry_price) / record.entry_price * 100 if record.entry_price else 0.0
            if abs(move_pct) < FLAT_MOVE_PCT:
                actual = "FLAT"
            else:
                actual = "UP" if move_pct > 0 else "DOWN"
            correct = record.predicted_direction == actual
            exit_time = self._now()
            hours = (exit_time - record.entry_time).total_seconds() / 3600
            record.exit_price = exit_price
            record.exit_time = exit_time
            record.actual_direction = actual
            record.realized_pnl = realized_pnl
            record.correct = correct
            record.calibration_error = abs(record.confidence - (1.0 if correct else 0.0))
            record.timing_accuracy = timing_accuracy(hours)
            record.magnitude_accuracy = magnitude_accuracy(record.confidence, abs(move_pct))
            closed_count = sum(1 for r in self._records.values() if r.closed)
        logger.info(f"Trade {trade_id} closed: {'correct' if correct else 'incorrect'} ({actual})")
        if closed_count >= self.min_samples:
            self.analyze()
        return replace(record)

    def open_trades(self) -> List[TrackedPrediction]:
        with self._lock:
            return [replace(r) for r in self._records.values() if not r.closed]

    def closed_trades(self) -> List[TrackedPrediction]:
        with self._lock:
            return [replace(r) for r in self._records.values() if r.closed]

    def recent_accuracy(self) -> Optional[float]:
        """Accuracy over closed predictions, or None below ``accuracy_samples``."""
        closed = self.closed_trades()
        if not closed or len(closed) < self.accuracy_samples:
            return None
        return sum(1 for r in closed if r.correct) / len(closed)

    @staticmethod
    def optimal_threshold(trades: List[TrackedPrediction]) -> float:
        best_threshold = 0.65
        best_score = 0.0
        for threshold in np.arange(0.50, 0.951, 0.05):
            valid = [t for t in trades if t.confidence >= threshold]
            if not valid:
                continue
            accuracy = sum(1 for t in valid if t.correct) / len(valid)
            avg_pnl = sum(t.realized_pnl or 0.0 for t in valid) / len(valid)
            score = accuracy * 0.7 + (0.3 if avg_pnl > 0 else 0.0)
            if score > best_score:
                best_score = score
                best_threshold = round(float(threshold), 2)
        return best_threshold

    def analyze(self) -> Optional[LearningInsights]:
        closed = self.closed_trades()
        if len(closed) < self.min_samples:
            return None
        accuracy = sum(1 for t in closed if t.correct) / len(closed)
        avg_error = sum(t.calibration_error or 0.0 for t in closed) / len(closed)
        optimal = self.optimal_threshold(closed)

        strongest: List[str] = []
        high_vol_wins = sum(1 for t in closed if t.market_conditions.get("volatility", 0) > 0.3 and t.correct)
        if high_vol_wins / len(closed) > 0.7:
            strongest.append("High volatility breakouts")
        weakest: List[str] = []
        flat = [t for t in closed if abs(t.market_conditions.get("momentum", 0.0)) < 0.01]
        if flat and sum(1 for t in flat if t.correct) / len(flat) < 0.4:
            weakest.append("Flat market conditions")

        insights = LearningInsights(
            overall_accuracy=accuracy,
            confidence_calibration=1 - avg_error,
            optimal_confidence_threshold=optimal,
            recommended_minimum=max(0.6, optimal - 0.1),
            recommended_conservative=max(0.7, optimal),
            recommended_aggressive=min(0.9, optimal + 0.1),
            base_multiplier=1.2 if accuracy > 0.6 else 0.8,
            confidence_multiplier=2.0 if avg_error < 0.3 else 1.5,
            sample_size=len(closed),
            strongest_patterns=tuple(strongest),
            weakest_patterns=tuple(weakest),
        )
        with self._lock:
            self._insights_history.append(insights)
        logger.info(
            f"Learning analysis: accuracy {accuracy:.1%}, calibration {insights.confidence_calibration:.1%}, "
            f"optimal threshold {optimal:.2f}"
        )
        return insights

    def latest_insights(self) -> Optional[LearningInsights]:
        with self._lock:
            return self._insights_history[-1] if self._insights_history else None

    def accuracy_trend(self, days: int = 30) -> List[float]:
        """Daily accuracy, oldest first, over the last ``days``."""
        cutoff = self._now() - timedelta(days=days)
        by_day: "OrderedDict[str, List[bool]]" = OrderedDict()
        for record in sorted(self.closed_trades(), key=lambda r: r.exit_time):
            if record.exit_time < cutoff:
                continue
            by_day.setdefault(record.exit_time.date().isoformat(), []).append(bool(record.correct))
        return [sum(v) / len(v) for v in by_day.values()]
