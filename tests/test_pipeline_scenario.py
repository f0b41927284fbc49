"""End-to-end decision cycle over a paper broker with a steady uptrend."""
from datetime import datetime, timedelta, timezone

import pytest

from autotrader.config import Settings
from autotrader.data.models import Bar, OrderSide, OrderType
from autotrader.data.paper import PaperBrokerGateway
from autotrader.execution.gateway import SymbolGateState
from autotrader.execution.order_builder import build_entry_order
from autotrader.execution.trading_engine import EngineContext, TradingEngine
from autotrader.learning.q_agent import ActionType, QState, TradingAction, action_key, hash_state
from autotrader.strategies.market_regime import MarketRegime
from autotrader.strategies.models import Direction

# Tuesday 10:00 ET
T0 = datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current


def uptrend_bars(symbol: str = "AAPL", n: int = 30, start: float = 100.0):
    """Closes alternating +3% / +2% with flat volume."""
    bars = []
    close = start
    first = T0 - timedelta(days=n)
    for i in range(n):
        if i:
            close *= 1.03 if i % 2 else 1.02
        bars.append(Bar(symbol, first + timedelta(days=i), close, close * 1.005, close * 0.995, close, 1_000_000.0))
    return bars


def scenario_settings(*symbols: str) -> Settings:
    settings = Settings()
    settings.scheduler.watchlist = list(symbols or ("AAPL",))
    settings.thresholds.minimum = 0.55
    settings.execution.auto_execute = True
    settings.execution.max_executions_per_cycle = 3
    settings.risk_controls.max_daily_trades = 20
    settings.risk_controls.max_open_positions = 10
    settings.risk_controls.cooldown_minutes = 5
    settings.sizing.max_order_value = 1000.0
    settings.sizing.conservative_mode = False
    settings.logging.slack_webhook_url = None
    return settings


@pytest.fixture
def broker():
    paper = PaperBrokerGateway(starting_cash=100_000.0)
    paper.load_bars(uptrend_bars())
    return paper


@pytest.fixture
def engine(broker):
    context = EngineContext.build(scenario_settings("AAPL"), broker, now=Clock(T0))
    return TradingEngine(context)


@pytest.mark.asyncio
async def test_uptrend_cycle_places_protected_buy(engine, broker):
    await engine.load_initial_data()
    assert await engine.check_daily_reset() is True

    decisions = await engine.run_decision_cycle()

    ctx = engine.context
    frame = ctx.cache.frame("AAPL")
    assert ctx.regime.detect(frame.iloc[:20], "AAPL").regime == MarketRegime.BULL
    assert ctx.forecaster.history()[-1].direction == Direction.UP
    assert ctx.risk.get_statistics()["approvals"] == 1

    assert len(decisions) == 1
    decision = decisions[0]
    assert decision.should_execute
    assert decision.execution is not None
    assert decision.execution.action == OrderSide.BUY

    assert len(broker.filled_orders) == 1
    entry = broker.filled_orders[0]
    assert entry.order_type == OrderType.MARKET
    assert entry.quantity * decision.execution.price <= 1000.0
    assert sorted(o.order_type.value for o in broker.resting_orders) == ["LIMIT", "STOP"]
    assert all(o.side == OrderSide.SELL for o in broker.resting_orders)

    trade = ctx.gateway.open_trades()[0]
    assert trade.stop_loss < trade.entry_price < trade.take_profit
    assert ctx.gateway.symbol_state("AAPL") == SymbolGateState.COOLDOWN
    assert ctx.gateway.get_today_stats()["trades_executed"] == 1
    assert engine.cycles_completed == 1


@pytest.mark.asyncio
async def test_second_cycle_is_held_back_by_cooldown(engine, broker):
    await engine.load_initial_data()
    await engine.check_daily_reset()
    await engine.run_decision_cycle()

    decisions = await engine.run_decision_cycle()

    assert len(decisions) == 1
    assert decisions[0].execution is None
    assert decisions[0].reason.startswith("Cooldown active")
    assert len(broker.filled_orders) == 1


@pytest.mark.asyncio
async def test_learning_steps_follow_cycles(engine):
    await engine.load_initial_data()
    await engine.check_daily_reset()
    engine.sessions.start_session()

    await engine.run_decision_cycle()
    assert engine.context.agent.current_episode.steps == []

    await engine.run_decision_cycle()
    steps = engine.context.agent.current_episode.steps
    assert len(steps) == 1
    assert steps[0].state.regime == "SIDEWAYS"


@pytest.mark.asyncio
async def test_closed_position_is_fed_back_to_learning(engine, broker):
    await engine.load_initial_data()
    await engine.check_daily_reset()
    decisions = await engine.run_decision_cycle()
    execution = decisions[0].execution

    await broker.create_order(build_entry_order("AAPL", OrderSide.SELL, execution.quantity))
    assert await broker.get_positions() == []

    result = await engine.run_learning_cycle()

    ctx = engine.context
    assert result["closed_trades"] == 1
    assert ctx.gateway.open_trades() == []
    assert ctx.feedback.learning_metrics("AAPL").trades == 1
    assert len(ctx.accuracy.closed_trades()) == 1
    outcome = ctx.feedback.store.query_recent("AAPL")[0]
    assert outcome.market_conditions["regime"] == "SIDEWAYS"


@pytest.mark.asyncio
async def test_learned_policy_scales_disagreeing_entry(engine):
    await engine.load_initial_data()
    await engine.check_daily_reset()
    ctx = engine.context
    portfolio = await engine.portfolio()

    untrained = await engine.decisions.evaluate_symbol("AAPL", portfolio)
    assert untrained.policy_action is None
    assert untrained.signal.recommended_size == untrained.assessment.sizing.recommended_size

    key = hash_state(untrained.state)
    ctx.agent.q_table[key] = QState(key, {action_key(TradingAction(ActionType.SELL, 100, 0.6)): 1.0})
    ctx.agent.epsilon = 0.0

    candidate = await engine.decisions.evaluate_symbol("AAPL", portfolio)

    assert candidate.signal.action == "BUY"
    assert candidate.policy_action.type == ActionType.SELL
    assert candidate.signal.recommended_size == pytest.approx(candidate.assessment.sizing.recommended_size * 0.5)
    assert any(w.code == "policy_disagrees" for w in candidate.warnings)
    _, queued, _ = engine.decisions._pending_steps["AAPL"]
    assert queued.type == ActionType.SELL


@pytest.mark.asyncio
async def test_closed_trade_reward_carries_pnl_and_holding_time(engine, broker):
    await engine.load_initial_data()
    await engine.check_daily_reset()
    engine.sessions.start_session()
    decisions = await engine.run_decision_cycle()
    execution = decisions[0].execution
    trade = engine.context.gateway.open_trades()[0]

    await broker.create_order(build_entry_order("AAPL", OrderSide.SELL, execution.quantity))
    engine.context.now.current = T0 + timedelta(hours=30)
    await engine.run_learning_cycle()

    exit_price = engine.context.cache.last_price("AAPL")
    pnl = (exit_price - trade.entry_price) * trade.quantity
    steps = engine.context.agent.current_episode.steps
    assert len(steps) == 1
    step = steps[0]
    assert step.action.type == ActionType.BUY
    assert step.action.quantity == trade.quantity
    assert step.state.regime == "SIDEWAYS"
    # 10% of realized P&L less 0.001 per hour held beyond a day
    assert step.reward.delayed == pytest.approx(pnl * 0.1 - 0.006)
