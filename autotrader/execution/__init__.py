"""Execution gateway, order construction and the cycle scheduler."""

from .gateway import (
    ExecutionDecision,
    ExecutionGateway,
    OpenTrade,
    Priority,
    SymbolGateState,
    TradeSignal,
)
from .trading_engine import EngineContext, TradingEngine

__all__ = [
    "EngineContext",
    "ExecutionDecision",
    "ExecutionGateway",
    "OpenTrade",
    "Priority",
    "SymbolGateState",
    "TradeSignal",
    "TradingEngine",
]
