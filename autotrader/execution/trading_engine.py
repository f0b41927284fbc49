"""Asyncio cycle scheduler wiring data, models, risk, gateway and learning together."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from ..config import Settings
from ..data.broker import BrokerGateway
from ..data.market_cache import MarketDataCache
from ..data.models import OrderSide, Portfolio, PositionSide
from ..data.persistence import InMemoryOutcomeStore, JsonlOutcomeStore, OutcomeStore
from ..data.sentiment import CachedSentiment, SentimentProvider
from ..learning.q_agent import ActionType, QLearningAgent, TradingAction, TradingState
from ..learning.rewards import calculate_reward
from ..learning.strategy_state import StrategyStateManager
from ..learning.trade_feedback import TradeFeedback
from ..learning.trade_learning import PredictionAccuracyTracker
from ..monitoring.alerter import Alerter
from ..risk.manager import AlertSeverity, RiskAction, RiskAlert, RiskValidator
from ..strategies.ensemble import EnsembleForecaster
from ..strategies.market_regime import RegimeClassifier
from ..utils.logger import logger
from ..utils.timezone_utils import trading_day
from .components.trade_decision_engine import Candidate, TradeDecisionEngine
from .components.trading_session_manager import TradingSessionManager
from .gateway import ExecutionDecision, ExecutionGateway, OpenTrade
from .guards import session_allowed
from .order_builder import build_entry_order

CLOSE_LOSS_THRESHOLD = -0.10


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineContext:
    """Every collaborator the engine needs, built once and passed explicitly."""

    settings: Settings
    broker: BrokerGateway
    cache: MarketDataCache
    sentiment: CachedSentiment
    regime: RegimeClassifier
    forecaster: EnsembleForecaster
    risk: RiskValidator
    gateway: ExecutionGateway
    accuracy: PredictionAccuracyTracker
    feedback: TradeFeedback
    agent: QLearningAgent
    alerter: Alerter
    state_manager: Optional[StrategyStateManager] = None
    now: Callable[[], datetime] = field(default=_utc_now)

    @classmethod
    def build(
        cls,
        settings: Settings,
        broker: BrokerGateway,
        sentiment_provider: Optional[SentimentProvider] = None,
        outcome_store: Optional[OutcomeStore] = None,
        persist: bool = False,
        now: Optional[Callable[[], datetime]] = None,
    ) -> "EngineContext":
        """Assemble a context from settings.

        Args:
            settings: Validated settings
            broker: Brokerage gateway implementation
            sentiment_provider: Optional news/social sentiment source
            outcome_store: Where closed trades are saved; in-memory when omitted
                and ``persist`` is false, JSONL at ``learning.outcomes_path`` otherwise
            persist: Load and save the Q-table and strategy state on disk
            now: Injectable clock
        """
        clock = now or _utc_now
        learning = settings.learning
        if outcome_store is None:
            outcome_store = (
                JsonlOutcomeStore(learning.outcomes_path) if persist else InMemoryOutcomeStore(learning.outcome_history_cap)
            )
        accuracy = PredictionAccuracyTracker.from_settings(settings, now=clock)
        agent = QLearningAgent(learning, now=clock)
        state_manager = None
        if persist:
            state_manager = StrategyStateManager(Path(learning.state_path))
            state_manager.restore(settings.thresholds, agent)
        return cls(
            settings=settings,
            broker=broker,
            cache=MarketDataCache(settings.scheduler.cache_size),
            sentiment=CachedSentiment(sentiment_provider),
            regime=RegimeClassifier.from_settings(settings, now=clock),
            forecaster=EnsembleForecaster.from_settings(settings),
            risk=RiskValidator.from_settings(settings),
            gateway=ExecutionGateway(broker, settings, accuracy_tracker=accuracy, now=clock),
            accuracy=accuracy,
            feedback=TradeFeedback(outcome_store, learning.outcome_history_cap),
            agent=agent,
            alerter=Alerter.from_settings(settings),
            state_manager=state_manager,
            now=clock,
        )


class TradingEngine:
    """Runs the periodic tasks: decisions, data refresh, risk monitor, learning and daily reset.

    Each task is isolated: an exception is logged and the loop sleeps until
    its next tick. Symbols are isolated inside each task the same way.
    """

    def __init__(self, context: EngineContext):
        self.context = context
        self.settings = context.settings
        self.sessions = TradingSessionManager(self)
        self.decisions = TradeDecisionEngine(self)
        self._cycle_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._stopped = False
        self._running = False
        self._day: Optional[date] = None
        self._day_start_equity: Optional[float] = None
        # trade id -> market state when the entry was decided
        self._entry_states: Dict[str, TradingState] = {}
        self.cycles_completed = 0

    @property
    def running(self) -> bool:
        return self._running and not self._stopped

    # ------------------------------------------------------------ lifecycle
    async def start(self) -> None:
        if self._running:
            return
        if self._stopped:
            raise RuntimeError("engine was stopped; build a new one to restart")
        self._running = True
        logger.info(f"🚀 Starting trading engine for {', '.join(self.settings.scheduler.watchlist)}")
        await self.load_initial_data()
        await self.check_daily_reset()
        if self.sessions.current is None:
            self.sessions.start_session()

        sched = self.settings.scheduler
        loops = [
            ("decision", sched.decision_interval_seconds, self.run_decision_cycle),
            ("data_refresh", sched.data_refresh_seconds, self.refresh_market_data),
            ("risk_monitor", sched.risk_monitor_seconds, self.run_risk_monitor),
            ("learning", sched.learning_interval_seconds, self.run_learning_cycle),
            ("daily_reset", sched.daily_reset_check_seconds, self.check_daily_reset),
        ]
        for name, interval, fn in loops:
            self._tasks.append(asyncio.create_task(self._every(name, interval, fn), name=f"autotrader-{name}"))

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self.sessions.end_session()
        self._persist_learning()
        self._running = False
        logger.info("🛑 Trading engine stopped")

    async def _every(self, name: str, interval: float, fn: Callable[[], Awaitable[object]]) -> None:
        while not self._stopped:
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error(f"{name} task failed: {exc}")
            await asyncio.sleep(interval)

    # ---------------------------------------------------------------- data
    async def load_initial_data(self) -> None:
        sched = self.settings.scheduler
        for symbol in sched.watchlist:
            try:
                bars = await self.context.broker.get_bars(symbol, sched.bar_timeframe, sched.initial_bars)
                added = self.context.cache.extend(symbol, bars)
                logger.info(f"Loaded {added} bars for {symbol}")
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Initial data load failed for {symbol}: {exc}")

    async def refresh_market_data(self) -> None:
        sched = self.settings.scheduler
        for symbol in sched.watchlist:
            try:
                bars = await self.context.broker.get_bars(symbol, sched.bar_timeframe, 5)
                self.context.cache.extend(symbol, bars)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Market data refresh failed for {symbol}: {exc}")

    async def portfolio(self) -> Portfolio:
        """Account and positions from the broker, with the day's P&L against the opening equity."""
        broker = self.context.broker
        account = await broker.get_account()
        positions = await broker.get_positions()
        if self._day_start_equity is None:
            self._day_start_equity = account.equity
        day_pnl = account.equity - self._day_start_equity
        return Portfolio(
            total_value=account.equity,
            cash=account.cash,
            buying_power=account.buying_power,
            positions=positions,
            day_pnl=day_pnl,
            total_pnl=sum(p.unrealized_pnl for p in positions),
        )

    # ------------------------------------------------------------ decisions
    async def run_decision_cycle(self) -> List[ExecutionDecision]:
        """Evaluate the watchlist and hand the best candidates to the gateway."""
        if self._stopped:
            return []
        async with self._cycle_lock:
            if self._stopped:
                return []
            ctx = self.context
            now = ctx.now()
            watchlist = self.settings.scheduler.watchlist
            if not any(session_allowed(symbol, now, self.settings.execution) for symbol in watchlist):
                logger.debug("No watchlist symbol tradable right now; skipping decision cycle")
                return []

            portfolio = await self.portfolio()
            ctx.gateway.update_daily_pnl(portfolio.day_pnl)
            ctx.risk.update_daily_pnl(portfolio.day_pnl)
            self.sessions.update_pnl(portfolio.day_pnl)
            # symbols are still evaluated for learning; the gateway rejects every order while tripped
            if ctx.gateway.check_daily_loss(portfolio):
                logger.warning(
                    f"Circuit breaker active ({ctx.gateway.daily_loss_pct(portfolio):.2f}% today); "
                    "no orders until the daily reset"
                )

            candidates: List[Candidate] = []
            for symbol in watchlist:
                try:
                    candidate = await self.decisions.evaluate_symbol(symbol, portfolio)
                except Exception as exc:  # noqa: BLE001
                    logger.warning(f"Skipping {symbol} this cycle: {exc}")
                    continue
                if candidate is not None:
                    candidates.append(candidate)

            candidates.sort(key=lambda c: c.ai_score, reverse=True)
            decisions: List[ExecutionDecision] = []
            executed = 0
            for candidate in candidates:
                if executed >= self.settings.execution.max_executions_per_cycle:
                    logger.info(f"Per-cycle execution cap reached; {candidate.symbol} deferred")
                    break
                try:
                    decision = await ctx.gateway.evaluate_and_execute(
                        candidate.signal,
                        candidate.df,
                        portfolio,
                        candidate.ai_score,
                        quote=candidate.quote,
                        warnings=candidate.warnings,
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.error(f"Gateway failed for {candidate.symbol}: {exc}")
                    continue
                decisions.append(decision)
                if decision.execution is not None:
                    executed += 1
                    self.sessions.record_trade()
                    if candidate.state is not None:
                        self._entry_states[decision.execution.order_id] = candidate.state

            self.cycles_completed += 1
            logger.info(f"✅ Decision cycle complete: {len(candidates)} candidates, {executed} executed")
            return decisions

    # ----------------------------------------------------------------- risk
    async def run_risk_monitor(self) -> List[RiskAlert]:
        ctx = self.context
        portfolio = await self.portfolio()
        market = {symbol: ctx.cache.frame(symbol) for symbol in ctx.cache.symbols()}
        alerts = ctx.risk.monitor_portfolio(portfolio, market)
        for alert in alerts:
            ctx.alerter.dispatch(alert)
        critical = [a for a in alerts if a.severity == AlertSeverity.CRITICAL]
        if any(a.action == RiskAction.CLOSE_POSITION for a in critical):
            await self.close_losing_positions(portfolio)
        if any(a.action == RiskAction.STOP_TRADING for a in critical):
            logger.error("🚨 Critical risk alert requires stopping trading")
            ctx.gateway.disable_execution()
            await self.stop()
        return alerts

    async def close_losing_positions(self, portfolio: Portfolio) -> int:
        closed = 0
        for position in portfolio.positions:
            if position.unrealized_pnl_pct >= CLOSE_LOSS_THRESHOLD:
                continue
            side = OrderSide.SELL if position.side == PositionSide.LONG else OrderSide.BUY
            try:
                await self.context.broker.create_order(
                    build_entry_order(position.symbol, side, position.quantity, client_order_id=f"risk_close_{position.symbol}")
                )
                closed += 1
                logger.warning(
                    f"Closed {position.symbol} at {position.unrealized_pnl_pct * 100:.1f}% unrealized loss"
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Failed to close {position.symbol}: {exc}")
        return closed

    # ------------------------------------------------------------- learning
    async def run_learning_cycle(self) -> Dict[str, object]:
        """Close out finished trades, then adapt thresholds from the insights."""
        ctx = self.context
        positions = await ctx.broker.get_positions()
        held = {p.symbol for p in positions}
        closed = 0
        for trade in ctx.gateway.open_trades():
            if trade.symbol in held:
                continue
            exit_price = ctx.cache.last_price(trade.symbol)
            if exit_price is None:
                continue
            result = ctx.gateway.close_trade(trade.trade_id, exit_price)
            if result is None:
                continue
            _, pnl = result
            conditions = dict(trade.market_conditions)
            conditions["regime"] = ctx.regime.active_regime.value
            ctx.feedback.record_trade_outcome(
                trade.trade_id,
                trade.symbol,
                trade.side.value,
                trade.entry_price,
                exit_price,
                trade.quantity,
                trade.confidence,
                trade.entry_time,
                exit_time=ctx.now(),
                market_conditions=conditions,
            )
            self.sessions.record_prediction(pnl > 0)
            self._reward_closed_trade(trade, exit_price, pnl)
            closed += 1

        insights = ctx.accuracy.latest_insights() or ctx.accuracy.analyze()
        before = ctx.settings.thresholds.minimum
        ctx.gateway.adapt_configuration(insights)
        if ctx.state_manager is not None and ctx.settings.thresholds.minimum != before:
            ctx.state_manager.append_adjustment_record({
                "from_minimum": before,
                "to_minimum": ctx.settings.thresholds.minimum,
                "accuracy": insights.overall_accuracy if insights else None,
            })
        self._persist_learning()
        return {"closed_trades": closed, "insights": insights, "q_learning": ctx.agent.metrics()}

    def _reward_closed_trade(self, trade: OpenTrade, exit_price: float, pnl: float) -> None:
        """Feed a closed trade's realized P&L and holding time back to the agent."""
        ctx = self.context
        state = self._entry_states.pop(trade.trade_id, None)
        if not ctx.settings.learning.enabled:
            return
        conditions = trade.market_conditions
        if state is None:
            state = TradingState(
                volatility=conditions.get("volatility", 0.2),
                momentum=conditions.get("momentum", 0.0),
                regime=ctx.regime.active_regime.value,
                price=trade.entry_price,
            )
        action = TradingAction(ActionType(trade.side.value), trade.quantity, trade.confidence)
        change = (exit_price - trade.entry_price) / trade.entry_price if trade.entry_price else 0.0
        held_hours = (ctx.now() - trade.entry_time).total_seconds() / 3600
        reward = calculate_reward(action, change, state.volatility, pnl=pnl, duration_hours=held_hours)
        ctx.agent.record_step(state, action, reward)
        logger.debug(f"Reward for closed {trade.symbol} trade {trade.trade_id}: {reward.total:.4f} (delayed {reward.delayed:.4f})")

    def _persist_learning(self) -> None:
        ctx = self.context
        if ctx.state_manager is None:
            return
        try:
            ctx.state_manager.persist(ctx.settings.thresholds, ctx.agent)
        except OSError as exc:
            logger.error(f"Failed to persist learning state: {exc}")

    # ---------------------------------------------------------- daily reset
    async def check_daily_reset(self) -> bool:
        """Roll counters, P&L baseline and session over when the trading day changes."""
        ctx = self.context
        now = ctx.now()
        day = trading_day(now)
        if self._day == day:
            return False
        first = self._day is None
        self._day = day
        ctx.gateway.reset_daily_counters(day)
        ctx.risk.reset_daily(now)
        try:
            account = await ctx.broker.get_account()
            self._day_start_equity = account.equity
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not read opening equity for {day}: {exc}")
            self._day_start_equity = None
        if not first:
            self.sessions.start_session()
        logger.info(f"📅 Trading day {day} started")
        return True

    # --------------------------------------------------------------- status
    def status(self) -> Dict[str, object]:
        ctx = self.context
        session = self.sessions.snapshot()
        return {
            "running": self.running,
            "cycles_completed": self.cycles_completed,
            "session": session.session_id if session else None,
            "regime": ctx.regime.active_regime.value,
            "today": ctx.gateway.get_today_stats(),
            "execution": ctx.gateway.get_execution_metrics(),
            "risk": ctx.risk.get_statistics(),
            "learning": ctx.agent.metrics(),
        }
