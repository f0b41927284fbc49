"""Execution gateway: ordered safety gates, execution sizing and order submission."""
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from ..config import Settings
from ..data.broker import BrokerGateway
from ..data.models import OrderSide, OrderStatus, Portfolio, PositionSide, Quote, TradeExecution
from ..errors import BrokerResponseError, InsufficientBuyingPower, SoftWarn
from ..features import indicators as ind
from ..learning.trade_learning import LearningInsights, PredictionAccuracyTracker
from ..risk.position_sizing import BuyingPowerSizer
from ..utils.logger import logger
from ..utils.structured_logging import log_structured_event
from ..utils.timezone_utils import trading_day
from .components.cooldown_manager import CooldownManager
from .components.daily_limits import DailyLimits
from .guards import (
    average_volume,
    estimate_spread,
    is_crypto_symbol,
    minimum_position_weight,
    session_allowed,
    spread_threshold,
)
from .order_builder import Bracket, build_entry_order, quantity_for_notional

MIN_EXECUTION_SIZE = 0.003
MAX_EXECUTION_SIZE = 0.10


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SymbolGateState(str, Enum):
    COOLDOWN = "COOLDOWN"
    ELIGIBLE = "ELIGIBLE"
    REJECTED = "REJECTED"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"


@dataclass(frozen=True)
class ExecutionDecision:
    should_execute: bool
    position_size: float
    reason: str
    confidence: float
    risk_score: float
    priority: Priority = Priority.LOW
    warnings: Tuple[SoftWarn, ...] = ()
    execution: Optional[TradeExecution] = None
    state: SymbolGateState = SymbolGateState.REJECTED


@dataclass
class TradeSignal:
    """Directional signal handed to the gateway.

    ``recommended_size`` is the risk layer's portfolio fraction; when it is
    None the configured base size is used instead. ``stop_loss`` and
    ``take_profit`` are priced off ``reference_price`` (the last close when
    unset) and move with the fill.
    """

    symbol: str
    action: str
    confidence: float
    risk_score: float = 0.5
    recommended_size: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    atr: Optional[float] = None
    reference_price: Optional[float] = None
    reason: str = ""

    @property
    def side(self) -> Optional[OrderSide]:
        try:
            return OrderSide(self.action.upper())
        except ValueError:
            return None


@dataclass
class OpenTrade:
    trade_id: str
    symbol: str
    side: OrderSide
    quantity: float
    entry_price: float
    confidence: float
    entry_time: datetime
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    market_conditions: Dict[str, float] = field(default_factory=dict)


def priority_for(confidence: float, ai_score: float, position_size: float) -> Priority:
    score = confidence * 40 + ai_score * 0.4 + position_size * 200
    if score >= 90:
        return Priority.CRITICAL
    if score >= 75:
        return Priority.HIGH
    if score >= 60:
        return Priority.MEDIUM
    return Priority.LOW


def confidence_tier_bonus(confidence: float) -> float:
    if confidence >= 0.90:
        return 1.8
    if confidence >= 0.85:
        return 1.5
    if confidence >= 0.75:
        return 1.25
    if confidence >= 0.65:
        return 1.1
    return 1.0


class ExecutionGateway:
    """Decides whether a signal becomes an order and submits it.

    Gates run in a fixed order and the first failure is the rejection
    reason. Approved entries are sized, submitted as market orders and, once
    filled, protected with a GTC stop and a GTC take-profit limit.
    """

    def __init__(
        self,
        broker: BrokerGateway,
        settings: Optional[Settings] = None,
        accuracy_tracker: Optional[PredictionAccuracyTracker] = None,
        sizer: Optional[BuyingPowerSizer] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.broker = broker
        self.settings = settings or Settings()
        self.thresholds = self.settings.thresholds
        self.rules = self.settings.execution
        self.controls = self.settings.risk_controls
        self.sizing = self.settings.sizing
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.accuracy_tracker = accuracy_tracker
        self.sizer = sizer or BuyingPowerSizer(self.sizing)
        self.cooldowns = CooldownManager(self.controls.cooldown_minutes, now=self._now)
        self.daily = DailyLimits(self.controls.max_daily_trades, trading_day(self._now()))
        self.execution_enabled = True
        self.circuit_breaker_tripped = False
        self._history: Deque[TradeExecution] = deque(maxlen=self.rules.history_size)
        self._open_trades: Dict[str, OpenTrade] = {}
        self._states: Dict[str, SymbolGateState] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ gates
    def effective_minimum(self) -> float:
        """Configured minimum nudged by recent realized accuracy, never below the floor."""
        nudge = 0.0
        accuracy = self.accuracy_tracker.recent_accuracy() if self.accuracy_tracker else None
        if accuracy is not None:
            if accuracy > 0.75:
                nudge = -0.05
            elif accuracy < 0.55:
                nudge = 0.10
        return max(self.thresholds.floor, self.thresholds.minimum + nudge)

    def current_daily_pnl(self, portfolio: Portfolio) -> float:
        return min(self.daily.daily_pnl, portfolio.day_pnl)

    def portfolio_health(self, portfolio: Portfolio) -> float:
        health = 1.0
        daily_pnl = self.current_daily_pnl(portfolio)
        if daily_pnl > 0:
            health *= 1.1
        elif daily_pnl < -0.02 * portfolio.total_value:
            health *= 0.8
        if len(portfolio.positions) > self.controls.max_open_positions * 0.8:
            health *= 0.9
        return max(0.5, min(1.5, health))

    def execution_size(self, signal: TradeSignal, ai_score: float, portfolio: Portfolio) -> float:
        """Portfolio fraction to commit, bounded to [0.003, min(max_size, 0.10)]."""
        base = signal.recommended_size if signal.recommended_size is not None else self.sizing.base_size
        confidence = signal.confidence
        size = base
        size *= (confidence / 0.6) ** self.sizing.confidence_multiplier
        size *= 0.5 + (ai_score / 100) * 1.5
        size *= 1 - signal.risk_score * 0.3
        size *= confidence_tier_bonus(confidence)
        size *= self.portfolio_health(portfolio)
        upper = min(self.sizing.max_size, MAX_EXECUTION_SIZE)
        return max(MIN_EXECUTION_SIZE, min(size, upper))

    def _check_gates(
        self,
        signal: TradeSignal,
        side: OrderSide,
        df: pd.DataFrame,
        portfolio: Portfolio,
        quote: Optional[Quote],
    ) -> Tuple[Optional[str], SymbolGateState]:
        symbol = signal.symbol
        confidence = signal.confidence

        minimum = self.effective_minimum()
        if confidence < minimum:
            return (
                f"Confidence below threshold: {confidence * 100:.1f}% < {minimum * 100:.1f}%",
                SymbolGateState.REJECTED,
            )

        if not session_allowed(symbol, self._now(), self.rules):
            return "Market closed and extended-hours trading disabled", SymbolGateState.REJECTED

        if self.daily.limit_reached():
            stats = self.daily.stats()
            used = stats["trades_executed"] + stats["trades_pending"]
            return f"Daily trade limit reached: {used}/{self.daily.limit}", SymbolGateState.REJECTED

        if self.circuit_breaker_tripped:
            return "Circuit breaker active: execution disabled until daily reset", SymbolGateState.REJECTED
        if self.check_daily_loss(portfolio):
            pct = self.daily_loss_pct(portfolio)
            return f"Daily loss limit reached: {pct:.2f}%", SymbolGateState.REJECTED

        if len(portfolio.positions) >= self.controls.max_open_positions:
            return (
                f"Maximum positions reached: {len(portfolio.positions)}/{self.controls.max_open_positions}",
                SymbolGateState.REJECTED,
            )

        if self.cooldowns.is_cooling_down(symbol):
            elapsed = self.cooldowns.minutes_since_last_trade(symbol) or 0.0
            return (
                f"Cooldown active: {elapsed:.1f}/{self.cooldowns.cooldown_minutes:g} minutes",
                SymbolGateState.COOLDOWN,
            )

        avg_volume = average_volume(df["volume"].to_numpy(), 20)
        if avg_volume < self.rules.volume_threshold:
            return f"Volume too low: {avg_volume:,.0f}", SymbolGateState.REJECTED

        spread = estimate_spread(df["close"].to_numpy(), quote)
        threshold = spread_threshold(symbol, self.rules)
        if spread > threshold:
            kind = "crypto" if is_crypto_symbol(symbol) else "stock"
            return (
                f"Spread too wide: {spread * 100:.2f}% ({kind} threshold: {threshold * 100:.1f}%)",
                SymbolGateState.REJECTED,
            )

        position = portfolio.position_for(symbol)
        if position is not None and position.quantity > 0:
            held = OrderSide.BUY if position.side == PositionSide.LONG else OrderSide.SELL
            if held == side:
                return "Already have position in same direction", SymbolGateState.REJECTED

        return None, SymbolGateState.ELIGIBLE

    def _decide(
        self,
        signal: TradeSignal,
        df: pd.DataFrame,
        portfolio: Portfolio,
        ai_score: float,
        quote: Optional[Quote],
        warnings: Tuple[SoftWarn, ...],
    ) -> ExecutionDecision:
        side = signal.side
        rejected = ExecutionDecision(
            should_execute=False,
            position_size=0.0,
            reason="HOLD signal",
            confidence=signal.confidence,
            risk_score=signal.risk_score,
            warnings=warnings,
        )
        if side is None:
            return rejected

        reason, state = self._check_gates(signal, side, df, portfolio, quote)
        if reason is not None:
            return replace(rejected, reason=reason, state=state)

        size = self.execution_size(signal, ai_score, portfolio)
        min_weight = minimum_position_weight(signal.symbol)
        if size < min_weight:
            return replace(
                rejected,
                position_size=size,
                reason=f"Position size too small: {size * 100:.3f}% < {min_weight * 100:.1f}%",
            )

        priority = priority_for(signal.confidence, ai_score, size)
        return ExecutionDecision(
            should_execute=True,
            position_size=size,
            reason=(
                f"{priority.value} PRIORITY: {signal.confidence * 100:.1f}% confidence, "
                f"AI score: {ai_score:.1f}, size: {size * 100:.2f}% of portfolio"
            ),
            confidence=signal.confidence,
            risk_score=signal.risk_score,
            priority=priority,
            warnings=warnings,
            state=SymbolGateState.ELIGIBLE,
        )

    # -------------------------------------------------------------- execution
    async def evaluate_and_execute(
        self,
        signal: TradeSignal,
        df: pd.DataFrame,
        portfolio: Portfolio,
        ai_score: float,
        quote: Optional[Quote] = None,
        warnings: Sequence[SoftWarn] = (),
    ) -> ExecutionDecision:
        """Run the gates for ``signal`` and submit the order when they pass.

        Args:
            signal: Directional signal with confidence and risk score
            df: OHLCV window for the symbol, oldest first
            portfolio: Current portfolio snapshot
            ai_score: Composite score in [0, 100]
            quote: Latest quote; the spread is estimated from closes when absent
            warnings: Soft warnings raised upstream, carried on the decision

        Returns:
            ExecutionDecision; ``execution`` is set only when an order went out
        """
        decision = self._decide(signal, df, portfolio, ai_score, quote, tuple(warnings))
        self._set_state(signal.symbol, decision.state)

        if not decision.should_execute:
            self._log_decision(signal, decision)
            return decision

        if not (self.rules.auto_execute and self.execution_enabled):
            logger.info(
                f"Advisory only for {signal.symbol}: auto_execute={self.rules.auto_execute}, "
                f"execution_enabled={self.execution_enabled}"
            )
            self._log_decision(signal, decision)
            return decision

        self._set_state(signal.symbol, SymbolGateState.EXECUTING)
        try:
            execution = await self._submit(signal, decision, df, portfolio, ai_score)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Auto-execution failed for {signal.symbol}: {exc}")
            decision = replace(
                decision,
                should_execute=False,
                reason=f"Execution failed: {exc}",
                state=SymbolGateState.REJECTED,
            )
        else:
            decision = replace(decision, execution=execution, state=SymbolGateState.EXECUTED)
        self._set_state(signal.symbol, decision.state)
        self._log_decision(signal, decision)
        return decision

    async def _submit(
        self,
        signal: TradeSignal,
        decision: ExecutionDecision,
        df: pd.DataFrame,
        portfolio: Portfolio,
        ai_score: float,
    ) -> TradeExecution:
        side = signal.side
        symbol = signal.symbol
        price = float(df["close"].iloc[-1])

        if not self.daily.reserve():
            raise BrokerResponseError("Daily trade limit reached while reserving a slot")
        try:
            account = await self.broker.get_account()
            sized = self.sizer.size(signal.confidence * 100, symbol, account.buying_power)
            if sized.notional <= 0:
                raise InsufficientBuyingPower(sized.reasoning)
            notional = min(decision.position_size * portfolio.total_value, sized.notional)
            notional = max(self.sizer.min_order_value, min(notional, self.sizer.order_cap(account.buying_power)))
            ok, why = self.sizer.validate_position_size(notional, account.buying_power)
            if not ok:
                raise InsufficientBuyingPower(why)

            quantity = quantity_for_notional(notional, price, self.sizing.fractional_shares)
            if quantity <= 0:
                raise InsufficientBuyingPower(f"Order for {symbol} rounds to zero shares at ${price:.2f}")

            tag = f"{symbol}_{int(time.time() * 1000)}"
            request = build_entry_order(symbol, side, quantity, client_order_id=f"ai_{tag}")
            started = time.perf_counter()
            result = await self.broker.create_order(request)
            latency = time.perf_counter() - started
            if result.status in (OrderStatus.REJECTED, OrderStatus.CANCELED):
                raise BrokerResponseError(f"Order {result.order_id} {result.status.value.lower()}")
        except Exception:
            self.daily.release()
            raise

        self.daily.commit()
        self.cooldowns.record_trade(symbol)
        fill_price = result.filled_price or price
        slippage = abs(fill_price - price) / price if price else 0.0
        execution = TradeExecution(
            symbol=symbol,
            action=side,
            quantity=quantity,
            price=fill_price,
            order_id=result.order_id,
            timestamp=self._now(),
            confidence=signal.confidence,
            ai_score=ai_score,
            execution_latency=latency,
            slippage=slippage,
            notional=quantity * fill_price,
        )
        with self._lock:
            self._history.append(execution)
        logger.info(
            f"🚀 Executed {side.value} {quantity:g} {symbol} @ ${fill_price:.2f} "
            f"(order {result.order_id}, {decision.priority.value})"
        )

        stop_loss = take_profit = None
        if result.status.has_fill:
            stop_loss, take_profit = await self._attach_protection(signal, side, quantity, fill_price, df, tag)
        self._track_entry(signal, execution, decision.position_size, stop_loss, take_profit, df)
        return execution

    async def _attach_protection(
        self,
        signal: TradeSignal,
        side: OrderSide,
        quantity: float,
        fill_price: float,
        df: pd.DataFrame,
        tag: str,
    ) -> Tuple[Optional[float], Optional[float]]:
        if signal.stop_loss and signal.take_profit:
            reference = signal.reference_price or float(df["close"].iloc[-1])
            bracket = Bracket.from_levels(side, fill_price, reference, signal.stop_loss, signal.take_profit)
        else:
            atr = signal.atr
            if not atr:
                atr = ind.average_true_range(
                    df["high"].to_numpy(), df["low"].to_numpy(), df["close"].to_numpy(),
                    self.settings.risk.atr_period, default=fill_price * 0.02,
                )
            bracket = Bracket.from_atr(side, fill_price, atr, signal.confidence)
        problem = bracket.problem()
        if problem:
            logger.warning(f"Protective orders skipped for {signal.symbol}: {problem}")
            return None, None
        bracket = bracket.snapped()
        stop_req, target_req = bracket.orders(signal.symbol, quantity, tag)
        try:
            await self.broker.create_order(stop_req)
            await self.broker.create_order(target_req)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to attach protective orders for {signal.symbol}: {exc}")
            return None, None
        logger.info(f"🛡️ Protection for {signal.symbol}: {bracket}")
        return bracket.stop_loss, bracket.take_profit

    def _track_entry(
        self,
        signal: TradeSignal,
        execution: TradeExecution,
        position_size: float,
        stop_loss: Optional[float],
        take_profit: Optional[float],
        df: pd.DataFrame,
    ) -> None:
        closes = df["close"].to_numpy()
        conditions = {
            "volatility": ind.annualized_volatility(closes[-20:], default=0.2),
            "momentum": ind.momentum_mean(closes[-5:]),
            "volume": float(df["volume"].iloc[-1]),
        }
        trade = OpenTrade(
            trade_id=execution.order_id,
            symbol=execution.symbol,
            side=execution.action,
            quantity=execution.quantity,
            entry_price=execution.price,
            confidence=execution.confidence,
            entry_time=execution.timestamp,
            stop_loss=stop_loss,
            take_profit=take_profit,
            market_conditions=conditions,
        )
        with self._lock:
            self._open_trades[trade.trade_id] = trade
        if self.accuracy_tracker is not None:
            self.accuracy_tracker.track_entry(
                trade.trade_id,
                trade.symbol,
                trade.side.value,
                trade.confidence,
                trade.entry_price,
                position_size=position_size,
                market_conditions=conditions,
            )

    # ---------------------------------------------------------- open trades
    def open_trades(self) -> List[OpenTrade]:
        with self._lock:
            return list(self._open_trades.values())

    def close_trade(self, trade_id: str, exit_price: float) -> Optional[Tuple[OpenTrade, float]]:
        """Forget an open trade and report its realized P&L to the accuracy tracker."""
        with self._lock:
            trade = self._open_trades.pop(trade_id, None)
        if trade is None:
            return None
        direction = 1.0 if trade.side == OrderSide.BUY else -1.0
        pnl = (exit_price - trade.entry_price) * trade.quantity * direction
        if self.accuracy_tracker is not None:
            self.accuracy_tracker.track_exit(trade_id, exit_price, pnl)
        return trade, pnl

    # ------------------------------------------------------------- controls
    def daily_loss_pct(self, portfolio: Portfolio) -> float:
        value = portfolio.total_value
        return self.current_daily_pnl(portfolio) / value * 100 if value else 0.0

    def check_daily_loss(self, portfolio: Portfolio) -> bool:
        """Trip the breaker once the day's loss passes ``max_daily_loss``; True while it is tripped."""
        if self.circuit_breaker_tripped:
            return True
        if self.current_daily_pnl(portfolio) < -self.controls.max_daily_loss * portfolio.total_value:
            self.trip_circuit_breaker(f"daily P&L {self.daily_loss_pct(portfolio):.2f}%")
        return self.circuit_breaker_tripped

    def trip_circuit_breaker(self, reason: str) -> None:
        if self.circuit_breaker_tripped:
            return
        self.circuit_breaker_tripped = True
        self.execution_enabled = False
        log_structured_event(
            "gateway",
            "circuit_breaker.tripped",
            f"Circuit breaker tripped: {reason}",
            {"reason": reason, "trading_day": str(self.daily.trading_day)},
            severity="error",
        )

    def enable_execution(self) -> None:
        if self.circuit_breaker_tripped:
            logger.warning("Circuit breaker active; execution stays disabled until the daily reset")
            return
        self.execution_enabled = True
        logger.info("Auto-execution enabled")

    def disable_execution(self) -> None:
        self.execution_enabled = False
        logger.info("Auto-execution disabled")

    def update_daily_pnl(self, pnl: float) -> None:
        self.daily.update_pnl(pnl)

    def reset_daily_counters(self, day=None) -> bool:
        """Start a new trading day; repeated calls for the same day do nothing."""
        day = day or trading_day(self._now())
        if not self.daily.reset(day):
            return False
        if self.circuit_breaker_tripped:
            self.circuit_breaker_tripped = False
            self.execution_enabled = True
            logger.info("Circuit breaker cleared for the new trading day")
        return True

    def adapt_configuration(self, insights: Optional[LearningInsights]) -> None:
        """Shift confidence thresholds toward what realized accuracy supports."""
        if insights is None:
            return
        thresholds = self.thresholds
        before = (thresholds.minimum, thresholds.conservative, thresholds.aggressive)
        if insights.overall_accuracy < 0.6:
            thresholds.minimum = min(0.80, thresholds.minimum + 0.05)
            thresholds.conservative = min(0.85, thresholds.conservative + 0.05)
        elif insights.overall_accuracy > 0.75:
            thresholds.minimum = max(0.60, thresholds.minimum - 0.02)
        if insights.optimal_confidence_threshold > thresholds.minimum + 0.1:
            thresholds.minimum = insights.optimal_confidence_threshold
        # aggressive tier follows the learned recommendation, bounded by the other tiers
        thresholds.aggressive = min(thresholds.maximum, max(thresholds.conservative, insights.recommended_aggressive))
        thresholds.minimum = min(thresholds.minimum, thresholds.maximum)
        if (thresholds.minimum, thresholds.conservative, thresholds.aggressive) != before:
            log_structured_event(
                "gateway",
                "config.adapted",
                f"Confidence thresholds adapted: minimum {before[0]:.2f} -> {thresholds.minimum:.2f}",
                {
                    "accuracy": insights.overall_accuracy,
                    "minimum": thresholds.minimum,
                    "conservative": thresholds.conservative,
                    "aggressive": thresholds.aggressive,
                },
            )

    # ---------------------------------------------------------------- stats
    def _set_state(self, symbol: str, state: SymbolGateState) -> None:
        with self._lock:
            self._states[symbol] = state

    def symbol_state(self, symbol: str) -> SymbolGateState:
        if self.cooldowns.is_cooling_down(symbol):
            return SymbolGateState.COOLDOWN
        with self._lock:
            state = self._states.get(symbol, SymbolGateState.ELIGIBLE)
        return SymbolGateState.ELIGIBLE if state == SymbolGateState.COOLDOWN else state

    def get_recent_executions(self, limit: int = 10) -> List[TradeExecution]:
        with self._lock:
            history = list(self._history)
        return history[-limit:]

    def get_today_stats(self) -> Dict[str, object]:
        stats = self.daily.stats()
        stats.update({
            "execution_enabled": self.execution_enabled,
            "circuit_breaker_tripped": self.circuit_breaker_tripped,
            "open_trades": len(self._open_trades),
        })
        return stats

    def get_execution_metrics(self) -> Dict[str, float]:
        with self._lock:
            history = list(self._history)
        if not history:
            return {"total_executions": 0, "avg_latency": 0.0, "avg_slippage": 0.0, "avg_confidence": 0.0}
        n = len(history)
        return {
            "total_executions": n,
            "avg_latency": sum(e.execution_latency for e in history) / n,
            "avg_slippage": sum(e.slippage for e in history) / n,
            "avg_confidence": sum(e.confidence for e in history) / n,
        }

    def _log_decision(self, signal: TradeSignal, decision: ExecutionDecision) -> None:
        event = "decision.executed" if decision.execution else (
            "decision.approved" if decision.should_execute else "decision.rejected"
        )
        log_structured_event(
            "gateway",
            event,
            f"{signal.symbol} {signal.action}: {decision.reason}",
            {
                "symbol": signal.symbol,
                "action": signal.action,
                "confidence": round(signal.confidence, 4),
                "position_size": round(decision.position_size, 5),
                "priority": decision.priority.value,
                "state": decision.state.value,
                "warnings": [w.code for w in decision.warnings],
                "order_id": decision.execution.order_id if decision.execution else None,
            },
            severity="info" if decision.should_execute else "debug",
        )
