from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from autotrader.config import Settings
from autotrader.data.models import Account, Bar, OrderResult, OrderSide, OrderStatus, Position
from autotrader.data.paper import PaperBrokerGateway
from autotrader.execution.trading_engine import EngineContext, TradingEngine
from autotrader.risk.manager import RiskAction

# Tuesday 10:00 ET
T0 = datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def _bars(symbol: str, n: int = 30, step_up: float = 0.03, step_down: float = 0.02):
    bars = []
    close = 100.0
    first = T0 - timedelta(days=n)
    for i in range(n):
        if i:
            close *= 1 + (step_up if i % 2 else step_down)
        bars.append(Bar(symbol, first + timedelta(days=i), close, close * 1.005, close * 0.995, close, 1_000_000.0))
    return bars


def _settings(*symbols: str, per_cycle: int = 3) -> Settings:
    settings = Settings()
    settings.scheduler.watchlist = list(symbols)
    settings.thresholds.minimum = 0.55
    settings.execution.auto_execute = True
    settings.execution.max_executions_per_cycle = per_cycle
    settings.risk_controls.max_daily_trades = 20
    settings.risk_controls.max_open_positions = 10
    settings.sizing.max_order_value = 1000.0
    settings.sizing.conservative_mode = False
    settings.logging.slack_webhook_url = None
    return settings


def _engine(broker, *symbols: str, clock=None, per_cycle: int = 3) -> TradingEngine:
    context = EngineContext.build(_settings(*symbols, per_cycle=per_cycle), broker, now=clock or Clock(T0))
    return TradingEngine(context)


@pytest.fixture
def paper():
    broker = PaperBrokerGateway()
    broker.load_bars(_bars("AAPL"))
    broker.load_bars(_bars("MSFT"))
    return broker


class TestDecisionCycle:
    @pytest.mark.asyncio
    async def test_symbol_without_data_does_not_block_others(self):
        broker = PaperBrokerGateway()
        broker.load_bars(_bars("AAPL"))
        engine = _engine(broker, "NVDA", "AAPL")
        await engine.load_initial_data()
        await engine.check_daily_reset()

        decisions = await engine.run_decision_cycle()

        assert [d.execution.symbol for d in decisions] == ["AAPL"]
        assert len(broker.filled_orders) == 1

    @pytest.mark.asyncio
    async def test_per_cycle_execution_cap(self, paper):
        engine = _engine(paper, "AAPL", "MSFT", per_cycle=1)
        await engine.load_initial_data()
        await engine.check_daily_reset()

        decisions = await engine.run_decision_cycle()

        assert len(decisions) == 1
        assert len(paper.filled_orders) == 1

    @pytest.mark.asyncio
    async def test_weekend_cycle_is_skipped(self, paper):
        engine = _engine(paper, "AAPL", clock=Clock(datetime(2024, 3, 9, 15, 0, tzinfo=timezone.utc)))
        await engine.load_initial_data()
        assert await engine.run_decision_cycle() == []
        assert engine.cycles_completed == 0

    @pytest.mark.asyncio
    async def test_stopped_engine_does_nothing(self, paper):
        engine = _engine(paper, "AAPL")
        await engine.load_initial_data()
        await engine.stop()

        assert await engine.run_decision_cycle() == []
        assert not engine.running
        with pytest.raises(RuntimeError):
            await engine.start()

    @pytest.mark.asyncio
    async def test_daily_loss_trips_breaker_until_reset(self, paper):
        clock = Clock(T0)
        engine = _engine(paper, "AAPL", clock=clock)
        gateway = engine.context.gateway
        await engine.load_initial_data()
        await engine.check_daily_reset()
        opening = engine._day_start_equity

        # equity is 6% below where the day started
        engine._day_start_equity = opening / 0.94
        await engine.run_decision_cycle()

        assert gateway.circuit_breaker_tripped is True
        assert gateway.execution_enabled is False
        assert paper.filled_orders == []

        # losses recovered, the breaker holds for the rest of the day
        engine._day_start_equity = opening
        decisions = await engine.run_decision_cycle()

        assert paper.filled_orders == []
        assert decisions
        assert all(d.execution is None for d in decisions)
        assert decisions[0].reason.startswith("Circuit breaker active")

        clock.advance(days=1)
        await engine.check_daily_reset()
        assert gateway.circuit_breaker_tripped is False
        assert gateway.execution_enabled is True

    @pytest.mark.asyncio
    async def test_status_snapshot(self, paper):
        engine = _engine(paper, "AAPL")
        await engine.load_initial_data()
        await engine.check_daily_reset()
        await engine.run_decision_cycle()

        status = engine.status()
        assert status["cycles_completed"] == 1
        assert status["regime"] == "SIDEWAYS"
        assert status["today"]["trades_executed"] == 1
        assert status["execution"]["total_executions"] == 1


class TestDailyReset:
    @pytest.mark.asyncio
    async def test_reset_runs_once_per_trading_day(self, paper):
        clock = Clock(T0)
        engine = _engine(paper, "AAPL", clock=clock)
        gateway = engine.context.gateway

        assert await engine.check_daily_reset() is True
        gateway.daily.commit()
        assert await engine.check_daily_reset() is False
        assert gateway.daily.trade_count == 1

        # 08:00 ET the next morning still belongs to the previous trading day
        clock.advance(hours=22)
        assert await engine.check_daily_reset() is False

        clock.advance(hours=2)
        assert await engine.check_daily_reset() is True
        assert gateway.daily.trade_count == 0
        assert str(gateway.daily.trading_day) == "2024-03-06"

    @pytest.mark.asyncio
    async def test_new_day_rolls_the_session(self, paper):
        clock = Clock(T0)
        engine = _engine(paper, "AAPL", clock=clock)
        await engine.check_daily_reset()
        engine.sessions.start_session()
        first = engine.sessions.current.session_id

        clock.advance(days=1)
        await engine.check_daily_reset()

        assert engine.sessions.current.session_id != first
        assert len(engine.sessions.history()) == 1
        assert len(engine.context.agent.episodes) == 1

    @pytest.mark.asyncio
    async def test_day_pnl_is_measured_from_opening_equity(self, paper):
        engine = _engine(paper, "AAPL")
        await engine.check_daily_reset()
        paper.cash -= 2_500.0
        portfolio = await engine.portfolio()
        assert portfolio.day_pnl == pytest.approx(-2_500.0)


def _losing_broker() -> MagicMock:
    broker = MagicMock()
    broker.get_account = AsyncMock(return_value=Account(equity=100_000.0, cash=20_000.0, buying_power=20_000.0))
    broker.get_positions = AsyncMock(return_value=[Position("AAPL", 1000, 100.0, 80.0)])
    broker.create_order = AsyncMock(return_value=OrderResult("close-1", OrderStatus.FILLED, 80.0, 1000))
    return broker


class TestRiskMonitor:
    @pytest.mark.asyncio
    async def test_critical_drawdown_stops_trading(self):
        broker = _losing_broker()
        engine = _engine(broker, "AAPL")
        flat = [Bar("AAPL", T0 - timedelta(days=10 - i), 80.0, 80.5, 79.5, 80.0, 1_000_000.0) for i in range(10)]
        engine.context.cache.extend("AAPL", flat)

        alerts = await engine.run_risk_monitor()

        actions = {a.action for a in alerts}
        assert RiskAction.STOP_TRADING in actions
        assert RiskAction.CLOSE_POSITION in actions
        request = broker.create_order.await_args.args[0]
        assert request.side == OrderSide.SELL
        assert request.quantity == 1000
        assert request.client_order_id == "risk_close_AAPL"
        assert engine.context.gateway.execution_enabled is False
        assert not engine.running
        assert await engine.run_decision_cycle() == []

    @pytest.mark.asyncio
    async def test_quiet_portfolio_raises_no_alerts(self, paper):
        engine = _engine(paper, "AAPL")
        await engine.load_initial_data()
        assert await engine.run_risk_monitor() == []
        assert engine.context.gateway.execution_enabled is True
