"""Component modules for TradingEngine orchestration.

``TradeDecisionEngine`` lives in ``trade_decision_engine`` and is imported
from there; it depends on the gateway, which itself uses these components.
"""

from .cooldown_manager import CooldownManager
from .daily_limits import DailyLimits
from .trading_session_manager import Session, TradingSessionManager

__all__ = [
    "CooldownManager",
    "DailyLimits",
    "Session",
    "TradingSessionManager",
]
