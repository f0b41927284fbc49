"""Market data, brokerage and persistence boundary.

Broker implementations (``IBKRBrokerGateway`` in ``autotrader.data.ibkr`` and
``PaperBrokerGateway`` in ``autotrader.data.paper``) are imported from their
own modules so the ib_insync dependency is only loaded when used.
"""

from .broker import BrokerGateway
from .market_cache import MarketDataCache
from .models import (
    Account,
    Bar,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    OrderType,
    Portfolio,
    Position,
    PositionSide,
    Quote,
    TradeExecution,
    bars_to_frame,
)
from .persistence import InMemoryOutcomeStore, JsonlOutcomeStore, OutcomeStore, TradeOutcome
from .sentiment import CachedSentiment, NeutralSentimentProvider, SentimentProvider

__all__ = [
    "Account",
    "Bar",
    "BrokerGateway",
    "CachedSentiment",
    "InMemoryOutcomeStore",
    "JsonlOutcomeStore",
    "MarketDataCache",
    "NeutralSentimentProvider",
    "OrderRequest",
    "OrderResult",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "OutcomeStore",
    "Portfolio",
    "Position",
    "PositionSide",
    "Quote",
    "SentimentProvider",
    "TradeExecution",
    "TradeOutcome",
    "bars_to_frame",
]
