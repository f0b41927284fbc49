"""Trade outcome recording and performance metrics."""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from ..data.persistence import OutcomeStore, TradeOutcome
from ..utils.logger import logger

CONFIDENCE_BUCKETS = ((0.9, 1.0), (0.8, 0.9), (0.7, 0.8), (0.6, 0.7))
DEFAULT_THRESHOLD = 0.7


@dataclass(frozen=True)
class LearningMetrics:
    accuracy: float = 0.0
    profit_factor: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    trades: int = 0


@dataclass(frozen=True)
class ThresholdRecommendation:
    buy_threshold: float
    sell_threshold: float
    recommendation: str


def classify_outcome(pnl: float) -> str:
    if pnl > 0:
        return "profit"
    if pnl < 0:
        return "loss"
    return "breakeven"


def trend_label(momentum: float) -> str:
    if momentum > 0.02:
        return "bullish"
    if momentum < -0.02:
        return "bearish"
    return "sideways"


def sharpe(returns: Sequence[float]) -> float:
    if not returns:
        return 0.0
    mean = sum(returns) / len(returns)
    std = math.sqrt(sum((r - mean) ** 2 for r in returns) / len(returns))
    return mean / std if std > 0 else 0.0


def max_drawdown(returns: Sequence[float]) -> float:
    """Largest peak-to-trough fall of the cumulative P&L curve."""
    peak = cumulative = worst = 0.0
    for r in returns:
        cumulative += r
        peak = max(peak, cumulative)
        worst = max(worst, peak - cumulative)
    return worst


def compute_metrics(outcomes: Sequence[TradeOutcome]) -> LearningMetrics:
    if not outcomes:
        return LearningMetrics()
    wins = [o.pnl for o in outcomes if o.outcome == "profit"]
    losses = [abs(o.pnl) for o in outcomes if o.outcome == "loss"]
    total_wins = sum(wins)
    total_losses = sum(losses)
    returns = [o.pnl for o in outcomes]
    return LearningMetrics(
        accuracy=len(wins) / len(outcomes),
        profit_factor=total_wins / total_losses if total_losses > 0 else total_wins,
        avg_win=total_wins / len(wins) if wins else 0.0,
        avg_loss=total_losses / len(losses) if losses else 0.0,
        sharpe_ratio=sharpe(returns),
        max_drawdown=max_drawdown(returns),
        trades=len(outcomes),
    )


class TradeFeedback:
    """Persists closed trades and derives metrics and threshold advice from them."""

    def __init__(self, store: OutcomeStore, history_limit: int = 1000) -> None:
        self.store = store
        self.history_limit = history_limit

    def record_trade_outcome(
        self,
        trade_id: str,
        symbol: str,
        action: str,
        entry_price: float,
        exit_price: float,
        quantity: float,
        confidence: float,
        entry_time: datetime,
        exit_time: Optional[datetime] = None,
        market_conditions: Optional[Dict[str, float]] = None,
    ) -> TradeOutcome:
        exit_time = exit_time or datetime.now(timezone.utc)
        direction = 1.0 if action.upper() == "BUY" else -1.0
        pnl = (exit_price - entry_price) * quantity * direction
        conditions = dict(market_conditions or {})
        conditions.setdefault("trend", trend_label(conditions.get("momentum", 0.0)))
        outcome = TradeOutcome(
            trade_id=trade_id,
            symbol=symbol,
            action=action.upper(),
            entry_price=entry_price,
            exit_price=exit_price,
            quantity=quantity,
            pnl=pnl,
            confidence=confidence,
            outcome=classify_outcome(pnl),
            duration_hours=(exit_time - entry_time).total_seconds() / 3600,
            market_conditions=conditions,
            entry_time=entry_time.isoformat(),
            exit_time=exit_time.isoformat(),
        )
        self.store.save(outcome)
        logger.info(f"Recorded {outcome.outcome} on {symbol}: P&L {pnl:+.2f} ({outcome.duration_hours:.1f}h)")
        return outcome

    def _recent(self, symbol: Optional[str] = None) -> List[TradeOutcome]:
        return self.store.query_recent(symbol=symbol, limit=self.history_limit)

    def learning_metrics(self, symbol: Optional[str] = None) -> LearningMetrics:
        return compute_metrics(self._recent(symbol))

    def strategy_performance(self) -> Dict[str, LearningMetrics]:
        """Metrics grouped by the regime tag stored with each outcome."""
        grouped: Dict[str, List[TradeOutcome]] = {}
        for outcome in self._recent():
            grouped.setdefault(str(outcome.market_conditions.get("regime", "UNKNOWN")), []).append(outcome)
        return {name: compute_metrics(items) for name, items in grouped.items()}

    def improved_confidence_threshold(self, symbol: Optional[str] = None) -> ThresholdRecommendation:
        outcomes = self._recent(symbol)
        if len(outcomes) < 10:
            return ThresholdRecommendation(DEFAULT_THRESHOLD, DEFAULT_THRESHOLD, "Insufficient data for optimization")

        best_threshold = DEFAULT_THRESHOLD
        best_accuracy = 0.0
        for low, high in CONFIDENCE_BUCKETS:
            bucket = [o for o in outcomes if low <= o.confidence < high]
            if len(bucket) < 5:
                continue
            accuracy = sum(1 for o in bucket if o.outcome == "profit") / len(bucket)
            if accuracy > best_accuracy:
                best_accuracy = accuracy
                best_threshold = low

        if best_accuracy > 0.6:
            note = f"Confidence threshold optimized. Current accuracy: {best_accuracy * 100:.1f}%"
        else:
            note = "Consider increasing confidence thresholds or reviewing strategy"
        return ThresholdRecommendation(best_threshold, best_threshold, note)
