"""Reward shaping for the Q-learning agent."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .q_agent import TradingAction


@dataclass(frozen=True)
class RewardSignal:
    immediate: float = 0.0
    delayed: float = 0.0
    risk: float = 0.0
    opportunity: float = 0.0
    total: float = 0.0


def calculate_reward(
    action: "TradingAction",
    price_change: float,
    volatility: float,
    pnl: Optional[float] = None,
    duration_hours: Optional[float] = None,
) -> RewardSignal:
    """Score one action against the realized price change.

    Args:
        action: Action the agent took
        price_change: Fractional price move after the action
        volatility: Market volatility at decision time
        pnl: Realized P&L when the trade has closed
        duration_hours: Holding time of the closed trade

    Returns:
        RewardSignal with each component and their sum
    """
    kind = action.type.value
    if kind == "BUY" and price_change > 0:
        immediate = price_change * action.quantity * action.confidence
    elif kind == "SELL" and price_change < 0:
        immediate = abs(price_change) * action.quantity * action.confidence
    elif kind == "HOLD":
        immediate = 0.001
    else:
        immediate = -abs(price_change) * 0.1

    delayed = 0.0
    if pnl is not None:
        delayed = pnl * 0.1
        # Holding past a day costs a little per extra hour
        delayed -= max(0.0, ((duration_hours or 0.0) - 24) * 0.001)

    risk = -abs(action.quantity) * volatility * 0.01

    opportunity = 0.0
    if kind == "HOLD" and abs(price_change) > 0.02:
        opportunity = -abs(price_change) * 0.5

    return RewardSignal(
        immediate=immediate,
        delayed=delayed,
        risk=risk,
        opportunity=opportunity,
        total=immediate + delayed + risk + opportunity,
    )
