"""Tests for the execution gateway: gate order, sizing, submission and daily state."""
import itertools
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pandas as pd
import pytest

from autotrader.config import Settings
from autotrader.data.models import (
    Account,
    OrderResult,
    OrderSide,
    OrderStatus,
    OrderType,
    Portfolio,
    Position,
    Quote,
)
from autotrader.errors import BrokerResponseError
from autotrader.execution.gateway import (
    MAX_EXECUTION_SIZE,
    MIN_EXECUTION_SIZE,
    ExecutionGateway,
    Priority,
    SymbolGateState,
    TradeSignal,
    priority_for,
)
from autotrader.learning.trade_learning import LearningInsights, PredictionAccuracyTracker

# Tuesday 10:00 ET
T0 = datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def _frame(n: int = 30, price: float = 100.0, volume: float = 1_000_000.0) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "open": [price] * n,
            "high": [price + 1] * n,
            "low": [price - 1] * n,
            "close": [price] * n,
            "volume": [volume] * n,
        }
    )


def _broker() -> MagicMock:
    ids = itertools.count(1)

    def fill(request):
        if request.order_type == OrderType.MARKET:
            return OrderResult(f"ord-{next(ids)}", OrderStatus.FILLED, 100.05, request.quantity)
        return OrderResult(f"ord-{next(ids)}", OrderStatus.NEW)

    broker = MagicMock()
    broker.get_account = AsyncMock(return_value=Account(equity=100_000.0, cash=100_000.0, buying_power=100_000.0))
    broker.create_order = AsyncMock(side_effect=fill)
    return broker


def _signal(confidence: float = 0.8, action: str = "BUY", symbol: str = "AAPL") -> TradeSignal:
    return TradeSignal(symbol=symbol, action=action, confidence=confidence, risk_score=0.2, recommended_size=0.05)


QUOTE = Quote("AAPL", bid=99.95, ask=100.05)


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def broker():
    return _broker()


@pytest.fixture
def gateway(broker, clock):
    return ExecutionGateway(broker, Settings(), now=clock)


@pytest.fixture
def portfolio():
    return Portfolio(total_value=100_000.0, cash=100_000.0, buying_power=100_000.0)


class TestGates:
    @pytest.mark.asyncio
    async def test_low_confidence_reason(self, gateway, broker, portfolio):
        decision = await gateway.evaluate_and_execute(_signal(0.5), _frame(), portfolio, 50, quote=QUOTE)
        assert not decision.should_execute
        assert decision.reason == "Confidence below threshold: 50.0% < 55.0%"
        broker.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hold_is_never_executed(self, gateway, portfolio):
        decision = await gateway.evaluate_and_execute(_signal(action="HOLD"), _frame(), portfolio, 90)
        assert not decision.should_execute
        assert decision.reason == "HOLD signal"

    @pytest.mark.asyncio
    async def test_closed_market_rejects(self, gateway, clock, portfolio):
        clock.current = datetime(2024, 3, 9, 15, 0, tzinfo=timezone.utc)  # Saturday
        decision = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)
        assert decision.reason == "Market closed and extended-hours trading disabled"

    @pytest.mark.asyncio
    async def test_low_volume_rejects(self, gateway, portfolio):
        decision = await gateway.evaluate_and_execute(_signal(), _frame(volume=5_000), portfolio, 80, quote=QUOTE)
        assert decision.reason.startswith("Volume too low")

    @pytest.mark.asyncio
    async def test_wide_spread_rejects(self, gateway, portfolio):
        wide = Quote("AAPL", bid=98.0, ask=102.0)
        decision = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=wide)
        assert decision.reason.startswith("Spread too wide")

    @pytest.mark.asyncio
    async def test_same_direction_position_rejects(self, gateway, portfolio):
        portfolio.positions.append(Position("AAPL", 10, avg_price=95.0, current_price=100.0))
        decision = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)
        assert decision.reason == "Already have position in same direction"

    @pytest.mark.asyncio
    async def test_max_positions_rejects(self, gateway, portfolio):
        gateway.controls.max_open_positions = 1
        portfolio.positions.append(Position("MSFT", 10, avg_price=300.0, current_price=300.0))
        decision = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)
        assert decision.reason == "Maximum positions reached: 1/1"

    @pytest.mark.asyncio
    async def test_accuracy_nudge_raises_minimum(self, broker, clock, portfolio):
        tracker = PredictionAccuracyTracker(min_samples=2, now=clock)
        for trade_id in ("t1", "t2"):
            tracker.track_entry(trade_id, "AAPL", "BUY", 0.7, 100.0)
            tracker.track_exit(trade_id, 95.0, -50.0)
        gateway = ExecutionGateway(broker, Settings(), accuracy_tracker=tracker, now=clock)
        assert gateway.effective_minimum() == pytest.approx(0.65)
        decision = await gateway.evaluate_and_execute(_signal(0.6), _frame(), portfolio, 60, quote=QUOTE)
        assert decision.reason == "Confidence below threshold: 60.0% < 65.0%"


class TestSizing:
    def test_execution_size_is_bounded(self, gateway, portfolio):
        huge = TradeSignal("AAPL", "BUY", 0.95, risk_score=0.0, recommended_size=0.5)
        tiny = TradeSignal("AAPL", "BUY", 0.55, risk_score=1.0, recommended_size=0.0001)
        assert gateway.execution_size(huge, 100, portfolio) == MAX_EXECUTION_SIZE
        assert gateway.execution_size(tiny, 0, portfolio) == MIN_EXECUTION_SIZE

    def test_falls_back_to_configured_base_size(self, gateway, portfolio):
        signal = TradeSignal("AAPL", "BUY", 0.6, risk_score=0.0, recommended_size=None)
        # (0.6/0.6)^1.8 * (0.5 + 0) * 1 * 1.0 * 1.0
        assert gateway.execution_size(signal, 0, portfolio) == pytest.approx(0.05 * 0.5)

    def test_confidence_exponent_comes_from_settings(self, broker, clock, portfolio):
        settings = Settings()
        settings.sizing.confidence_multiplier = 1.0
        gateway = ExecutionGateway(broker, settings, now=clock)
        signal = TradeSignal("AAPL", "BUY", 0.9, risk_score=0.0, recommended_size=0.02)
        # 0.02 * (0.9/0.6)^1 * 0.5 * 1.8 tier bonus
        assert gateway.execution_size(signal, 0, portfolio) == pytest.approx(0.027)

    def test_priority_levels(self):
        assert priority_for(0.95, 100, 0.10) == Priority.CRITICAL
        assert priority_for(0.55, 10, 0.01) == Priority.LOW


class TestExecution:
    @pytest.mark.asyncio
    async def test_executes_with_protective_orders(self, gateway, broker, portfolio):
        decision = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)

        assert decision.should_execute
        assert decision.state == SymbolGateState.EXECUTED
        assert decision.execution is not None
        assert decision.execution.quantity == 10
        assert decision.reason.startswith(f"{decision.priority.value} PRIORITY: 80.0% confidence")

        requests = [call.args[0] for call in broker.create_order.await_args_list]
        assert [r.order_type for r in requests] == [OrderType.MARKET, OrderType.STOP, OrderType.LIMIT]
        entry, stop, target = requests
        assert entry.client_order_id.startswith("ai_AAPL_")
        assert stop.side == OrderSide.SELL and stop.time_in_force == "GTC"
        assert stop.stop_price < 100.05 < target.limit_price

        trade = gateway.open_trades()[0]
        assert trade.stop_loss == stop.stop_price
        assert gateway.get_recent_executions()[0].order_id == trade.trade_id == "ord-1"

    @pytest.mark.asyncio
    async def test_advisory_mode_does_not_submit(self, broker, clock, portfolio):
        settings = Settings()
        settings.execution.auto_execute = False
        gateway = ExecutionGateway(broker, settings, now=clock)
        decision = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)
        assert decision.should_execute
        assert decision.execution is None
        broker.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_broker_failure_releases_reservation(self, gateway, broker, portfolio):
        broker.create_order.side_effect = BrokerResponseError("gateway timeout")
        decision = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)

        assert not decision.should_execute
        assert decision.reason == "Execution failed: gateway timeout"
        assert decision.state == SymbolGateState.REJECTED
        stats = gateway.get_today_stats()
        assert stats["trades_executed"] == 0
        assert stats["trades_pending"] == 0
        assert not gateway.cooldowns.is_cooling_down("AAPL")

    @pytest.mark.asyncio
    async def test_rejected_order_is_a_failure(self, gateway, broker, portfolio):
        broker.create_order.side_effect = None
        broker.create_order.return_value = OrderResult("ord-9", OrderStatus.REJECTED)
        decision = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)
        assert decision.reason == "Execution failed: Order ord-9 rejected"

    @pytest.mark.asyncio
    async def test_close_trade_reports_pnl(self, gateway, portfolio):
        decision = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)
        trade_id = decision.execution.order_id
        trade, pnl = gateway.close_trade(trade_id, 110.05)
        assert trade.symbol == "AAPL"
        assert pnl == pytest.approx(100.0)
        assert gateway.close_trade(trade_id, 110.05) is None

    @pytest.mark.asyncio
    async def test_protection_keeps_risk_layer_distances(self, gateway, broker, portfolio):
        signal = TradeSignal(
            "AAPL", "BUY", 0.9, risk_score=0.1, recommended_size=0.05,
            stop_loss=96.0, take_profit=106.0, atr=2.0,
        )
        await gateway.evaluate_and_execute(signal, _frame(), portfolio, 80, quote=QUOTE)

        _, stop, target = [call.args[0] for call in broker.create_order.await_args_list]
        # levels priced off the 100.00 close move with the 100.05 fill
        assert stop.stop_price == pytest.approx(96.05)
        assert target.limit_price == pytest.approx(106.05)
        trade = gateway.open_trades()[0]
        assert (trade.stop_loss, trade.take_profit) == (stop.stop_price, target.limit_price)

    @pytest.mark.asyncio
    async def test_short_protection_from_explicit_reference(self, gateway, broker, portfolio):
        signal = TradeSignal(
            "AAPL", "SELL", 0.8, risk_score=0.2, recommended_size=0.05,
            stop_loss=103.0, take_profit=95.0, reference_price=99.0,
        )
        await gateway.evaluate_and_execute(signal, _frame(), portfolio, 80, quote=QUOTE)

        _, stop, target = [call.args[0] for call in broker.create_order.await_args_list]
        assert stop.side == OrderSide.BUY
        assert stop.stop_price == pytest.approx(104.05)
        assert target.limit_price == pytest.approx(96.05)


class TestDailyState:
    @pytest.mark.asyncio
    async def test_counter_increments_and_resets_once(self, gateway, portfolio):
        await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)
        assert gateway.get_today_stats()["trades_executed"] == 1

        assert gateway.reset_daily_counters(date(2024, 3, 6)) is True
        assert gateway.get_today_stats()["trades_executed"] == 0
        assert gateway.reset_daily_counters(date(2024, 3, 6)) is False

    def test_daily_loss_check_holds_after_recovery(self, gateway, portfolio):
        assert gateway.check_daily_loss(portfolio) is False

        losing = Portfolio(total_value=100_000.0, cash=94_000.0, buying_power=94_000.0, day_pnl=-6_000.0)
        assert gateway.check_daily_loss(losing) is True
        assert gateway.circuit_breaker_tripped
        assert not gateway.execution_enabled

        gateway.update_daily_pnl(0.0)
        assert gateway.check_daily_loss(portfolio) is True

    @pytest.mark.asyncio
    async def test_daily_trade_limit(self, broker, clock, portfolio):
        settings = Settings()
        settings.risk_controls.max_daily_trades = 1
        gateway = ExecutionGateway(broker, settings, now=clock)
        await gateway.evaluate_and_execute(_signal(symbol="AAPL"), _frame(), portfolio, 80, quote=QUOTE)
        decision = await gateway.evaluate_and_execute(_signal(symbol="MSFT"), _frame(), portfolio, 80)
        assert decision.reason == "Daily trade limit reached: 1/1"

    @pytest.mark.asyncio
    async def test_daily_loss_trips_circuit_breaker(self, gateway, broker, portfolio):
        losing = Portfolio(total_value=100_000.0, cash=94_000.0, buying_power=94_000.0, day_pnl=-6_000.0)
        decision = await gateway.evaluate_and_execute(_signal(0.9), _frame(), losing, 90, quote=QUOTE)

        assert not decision.should_execute
        assert decision.reason == "Daily loss limit reached: -6.00%"
        assert gateway.circuit_breaker_tripped
        assert not gateway.execution_enabled

        gateway.enable_execution()
        assert not gateway.execution_enabled

        again = await gateway.evaluate_and_execute(_signal(0.9), _frame(), portfolio, 90, quote=QUOTE)
        assert again.reason.startswith("Circuit breaker active")
        broker.create_order.assert_not_awaited()

        gateway.reset_daily_counters(date(2024, 3, 6))
        assert not gateway.circuit_breaker_tripped
        assert gateway.execution_enabled

    @pytest.mark.asyncio
    async def test_cooldown_blocks_second_trade(self, gateway, clock, portfolio):
        first = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)
        assert first.execution is not None

        clock.advance(minutes=3)
        second = await gateway.evaluate_and_execute(_signal(), _frame(), portfolio, 80, quote=QUOTE)
        assert not second.should_execute
        assert "Cooldown" in second.reason
        assert second.state == SymbolGateState.COOLDOWN
        assert gateway.symbol_state("AAPL") == SymbolGateState.COOLDOWN

        clock.advance(minutes=3)
        assert gateway.symbol_state("AAPL") == SymbolGateState.ELIGIBLE


class TestAdaptation:
    def test_low_accuracy_raises_thresholds(self, gateway):
        insights = LearningInsights(
            overall_accuracy=0.5,
            confidence_calibration=0.6,
            optimal_confidence_threshold=0.65,
            recommended_minimum=0.6,
            recommended_conservative=0.7,
            recommended_aggressive=0.8,
            base_multiplier=0.8,
            confidence_multiplier=1.5,
            sample_size=20,
        )
        gateway.adapt_configuration(insights)
        assert gateway.thresholds.minimum == pytest.approx(0.60)
        assert gateway.thresholds.conservative == pytest.approx(0.75)

    def test_none_insights_is_a_no_op(self, gateway):
        gateway.adapt_configuration(None)
        assert gateway.thresholds.minimum == pytest.approx(0.55)

    def test_aggressive_tier_is_bounded_by_maximum(self, gateway):
        insights = LearningInsights(
            overall_accuracy=0.7,
            confidence_calibration=0.9,
            optimal_confidence_threshold=0.6,
            recommended_minimum=0.6,
            recommended_conservative=0.7,
            recommended_aggressive=0.99,
            base_multiplier=1.0,
            confidence_multiplier=1.5,
            sample_size=20,
        )
        gateway.adapt_configuration(insights)
        assert gateway.thresholds.aggressive == pytest.approx(gateway.thresholds.maximum)
        assert gateway.thresholds.minimum == pytest.approx(0.55)
