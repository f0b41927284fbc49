"""Per-symbol decision flow: features, regime, forecast, policy, risk and AI score."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional, Tuple

import pandas as pd

from ...data.models import OrderSide, Portfolio, Quote
from ...errors import InsufficientDataError, SoftWarn, TransientFailure
from ...features import indicators as ind
from ...learning.q_agent import ActionType, TradingAction, TradingState
from ...learning.rewards import calculate_reward
from ...risk.manager import RiskAssessment
from ...strategies.ensemble import Forecast
from ...strategies.market_regime import RegimeSignal
from ...strategies.models import Direction
from ...utils.logger import logger
from ...utils.timezone_utils import session_phase, to_et
from ..gateway import TradeSignal

if TYPE_CHECKING:  # pragma: no cover
    from ..trading_engine import TradingEngine

# size multiplier when the learned policy would hold or trade the other way
POLICY_HOLD_FACTOR = 0.75
POLICY_OPPOSE_FACTOR = 0.5


@dataclass
class Candidate:
    """A risk-approved signal waiting for the gateway."""

    signal: TradeSignal
    df: pd.DataFrame
    ai_score: float
    forecast: Forecast
    regime: RegimeSignal
    assessment: RiskAssessment
    quote: Optional[Quote] = None
    warnings: Tuple[SoftWarn, ...] = field(default_factory=tuple)
    state: Optional[TradingState] = None
    policy_action: Optional[TradingAction] = None

    @property
    def symbol(self) -> str:
        return self.signal.symbol


def ai_score(confidence: float, volatility: float, momentum: float, risk_reward: float) -> float:
    """Composite 0-100 score from confidence, volatility, momentum and reward:risk."""
    score = confidence * 100
    if volatility > 0.3:
        score -= 10
    elif volatility < 0.1:
        score += 5
    if abs(momentum) > 0.02:
        score += 5
    if risk_reward > 2:
        score += 10
    elif risk_reward < 1:
        score -= 10
    return max(0.0, min(100.0, score))


def action_for(direction: Direction) -> str:
    if direction == Direction.UP:
        return OrderSide.BUY.value
    if direction == Direction.DOWN:
        return OrderSide.SELL.value
    return "HOLD"


def policy_size_factor(policy: Optional[TradingAction], side: OrderSide) -> float:
    """1.0 when the agent agrees with ``side`` or has no opinion yet."""
    if policy is None or policy.type.value == side.value:
        return 1.0
    if policy.type == ActionType.HOLD:
        return POLICY_HOLD_FACTOR
    return POLICY_OPPOSE_FACTOR


class TradeDecisionEngine:
    """Turns one symbol's cached bars into a gateway candidate, or nothing."""

    def __init__(self, engine: "TradingEngine"):  # noqa: F821 (forward reference)
        self.engine = engine
        # symbol -> (state, action, price) awaiting its reward on the next cycle
        self._pending_steps: Dict[str, Tuple[TradingState, TradingAction, float]] = {}

    async def evaluate_symbol(self, symbol: str, portfolio: Portfolio) -> Optional[Candidate]:
        ctx = self.engine.context
        df = ctx.cache.frame(symbol)
        if len(df) < ctx.settings.forecast.min_bars:
            raise InsufficientDataError(f"{symbol}: {len(df)} bars cached, need {ctx.settings.forecast.min_bars}")

        now = ctx.now()
        sentiment = await ctx.sentiment.score(symbol)
        regime = ctx.regime.detect(df, symbol)
        forecast = ctx.forecaster.forecast(df, news_sentiment=sentiment, now=now)
        action = action_for(forecast.direction)
        state = self._market_state(symbol, forecast, regime, portfolio)
        policy = self._consult_agent(symbol, state, forecast)

        if action == "HOLD":
            logger.debug(f"{symbol}: {forecast.direction.value} forecast ({forecast.confidence:.2f}), holding")
            return None

        side = OrderSide(action)
        assessment = ctx.risk.validate_trade(side, forecast.confidence, portfolio, df)
        if not assessment.approved:
            logger.info(f"❌ Trade rejected for {symbol}: {assessment.reason}")
            return None

        closes = df["close"].astype(float).to_numpy()
        volatility = ind.annualized_volatility(closes[-20:], default=0.2)
        window = closes[-10:]
        momentum = (window[-1] - window[0]) / window[0] if len(window) >= 2 else 0.0
        score = ai_score(forecast.confidence, volatility, momentum, assessment.sizing.risk_reward_ratio)

        quote = None
        try:
            quote = await ctx.broker.get_latest_quote(symbol)
        except TransientFailure as exc:
            logger.warning(f"No quote for {symbol}, estimating spread from closes: {exc}")

        sizing = assessment.sizing
        warnings = list(assessment.warnings)
        size = sizing.recommended_size
        factor = policy_size_factor(policy, side)
        if factor < 1.0:
            size *= factor
            warnings.append(SoftWarn("policy_disagrees", f"Learned policy prefers {policy.type.value}; size x{factor:.2f}"))
        signal = TradeSignal(
            symbol=symbol,
            action=action,
            confidence=forecast.confidence,
            risk_score=1 - forecast.confidence,
            recommended_size=size,
            stop_loss=sizing.stop_loss,
            take_profit=sizing.take_profit,
            atr=sizing.atr or None,
            reference_price=float(closes[-1]),
            reason=(
                f"Ensemble {forecast.direction.value} at {forecast.confidence * 100:.1f}% "
                f"({regime.regime.value} regime, R:R {sizing.risk_reward_ratio:.2f})"
            ),
        )
        return Candidate(
            signal=signal,
            df=df,
            ai_score=score,
            forecast=forecast,
            regime=regime,
            assessment=assessment,
            quote=quote,
            warnings=tuple(warnings),
            state=state,
            policy_action=policy,
        )

    def _market_state(
        self,
        symbol: str,
        forecast: Forecast,
        regime: RegimeSignal,
        portfolio: Portfolio,
    ) -> Optional[TradingState]:
        if forecast.features is None:
            return None
        now = self.engine.context.now()
        position = portfolio.position_for(symbol)
        return TradingState.from_features(
            forecast.features,
            regime.active_regime,
            unrealized_pnl=position.unrealized_pnl if position else 0.0,
            session=session_phase(now),
            hour=to_et(now).hour,
        )

    def _consult_agent(self, symbol: str, state: Optional[TradingState], forecast: Forecast) -> Optional[TradingAction]:
        """Ask the policy for an action, reward the symbol's previous one and queue this one.

        Returns None while learning is off or the agent has never learned
        anything about ``state``, which leaves sizing untouched.
        """
        ctx = self.engine.context
        if not ctx.settings.learning.enabled or state is None:
            return None
        agent = ctx.agent
        experienced = agent.has_experience(state)
        if experienced:
            chosen = agent.select_action(state)
        else:
            # an untrained state learns from the ensemble's call instead
            kind = ActionType(action_for(forecast.direction))
            chosen = TradingAction(kind, 0.0 if kind == ActionType.HOLD else 100.0, forecast.confidence)
        price = forecast.features.price

        previous = self._pending_steps.get(symbol)
        if previous is not None:
            prev_state, prev_action, prev_price = previous
            change = (price - prev_price) / prev_price if prev_price else 0.0
            reward = calculate_reward(prev_action, change, prev_state.volatility)
            agent.record_step(prev_state, prev_action, reward)
        self._pending_steps[symbol] = (state, chosen, price)
        return chosen if experienced else None
