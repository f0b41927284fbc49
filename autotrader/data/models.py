"""Core records exchanged with the brokerage boundary.

Every payload coming back from a broker goes through a ``from_payload``
constructor; a missing or non-numeric field raises ``BrokerResponseError``
instead of being defaulted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional

import pandas as pd

from ..errors import BrokerResponseError


def _number(payload: Mapping[str, Any], key: str, model: str) -> float:
    if key not in payload or payload[key] is None:
        raise BrokerResponseError(f"{model} payload missing '{key}'")
    try:
        return float(payload[key])
    except (TypeError, ValueError) as exc:
        raise BrokerResponseError(f"{model}.{key} is not numeric: {payload[key]!r}") from exc


def _text(payload: Mapping[str, Any], key: str, model: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise BrokerResponseError(f"{model} payload missing '{key}'")
    return value


def _timestamp(value: Any, model: str) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError) as exc:
        raise BrokerResponseError(f"{model} timestamp is invalid: {value!r}") from exc
    if pd.isna(ts):
        raise BrokerResponseError(f"{model} timestamp is invalid: {value!r}")
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.to_pydatetime()


@dataclass(frozen=True)
class Bar:
    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_payload(cls, symbol: str, payload: Mapping[str, Any]) -> "Bar":
        if "timestamp" not in payload:
            raise BrokerResponseError("Bar payload missing 'timestamp'")
        bar = cls(
            symbol=symbol,
            timestamp=_timestamp(payload["timestamp"], "Bar"),
            open=_number(payload, "open", "Bar"),
            high=_number(payload, "high", "Bar"),
            low=_number(payload, "low", "Bar"),
            close=_number(payload, "close", "Bar"),
            volume=_number(payload, "volume", "Bar"),
        )
        if bar.close <= 0 or bar.high < bar.low:
            raise BrokerResponseError(f"Bar for {symbol} has inconsistent prices: {payload!r}")
        return bar


def bars_to_frame(bars: Iterable[Bar]) -> pd.DataFrame:
    """OHLCV frame indexed by timestamp, oldest first."""
    records = [
        {
            "timestamp": b.timestamp,
            "open": b.open,
            "high": b.high,
            "low": b.low,
            "close": b.close,
            "volume": b.volume,
        }
        for b in bars
    ]
    if not records:
        return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
    df = pd.DataFrame(records)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df.set_index("timestamp", inplace=True)
    return df.sort_index()


@dataclass(frozen=True)
class Account:
    equity: float
    cash: float
    buying_power: float

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Account":
        return cls(
            equity=_number(payload, "equity", "Account"),
            cash=_number(payload, "cash", "Account"),
            buying_power=_number(payload, "buying_power", "Account"),
        )


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(frozen=True)
class Position:
    symbol: str
    quantity: float
    avg_price: float
    current_price: float
    side: PositionSide = PositionSide.LONG

    @property
    def market_value(self) -> float:
        return abs(self.quantity) * self.current_price

    @property
    def unrealized_pnl(self) -> float:
        direction = 1.0 if self.side == PositionSide.LONG else -1.0
        return (self.current_price - self.avg_price) * abs(self.quantity) * direction

    @property
    def unrealized_pnl_pct(self) -> float:
        cost = abs(self.quantity) * self.avg_price
        return self.unrealized_pnl / cost if cost else 0.0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Position":
        quantity = _number(payload, "quantity", "Position")
        raw_side = str(payload.get("side") or ("LONG" if quantity >= 0 else "SHORT")).upper()
        try:
            side = PositionSide(raw_side)
        except ValueError as exc:
            raise BrokerResponseError(f"Position side is invalid: {raw_side!r}") from exc
        return cls(
            symbol=_text(payload, "symbol", "Position"),
            quantity=abs(quantity),
            avg_price=_number(payload, "avg_price", "Position"),
            current_price=_number(payload, "current_price", "Position"),
            side=side,
        )


@dataclass
class Portfolio:
    """Snapshot of account state consumed by the risk layer and the gateway."""

    total_value: float
    cash: float
    buying_power: float
    positions: List[Position] = field(default_factory=list)
    day_pnl: float = 0.0
    total_pnl: float = 0.0

    @property
    def day_change(self) -> float:
        return self.day_pnl / self.total_value if self.total_value else 0.0

    def position_for(self, symbol: str) -> Optional[Position]:
        for position in self.positions:
            if position.symbol == symbol:
                return position
        return None


@dataclass(frozen=True)
class Quote:
    symbol: str
    bid: float
    ask: float

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2

    @property
    def spread(self) -> float:
        """Relative spread against the mid price."""
        mid = self.mid
        return (self.ask - self.bid) / mid if mid > 0 else 0.0

    @classmethod
    def from_payload(cls, symbol: str, payload: Mapping[str, Any]) -> "Quote":
        bid = _number(payload, "bid", "Quote")
        ask = _number(payload, "ask", "Quote")
        if not (bid > 0 and ask > 0 and ask >= bid):
            raise BrokerResponseError(f"Quote for {symbol} is crossed or empty: bid={bid} ask={ask}")
        return cls(symbol=symbol, bid=bid, ask=ask)


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    MARKET = "MARKET"
    STOP = "STOP"
    LIMIT = "LIMIT"


class OrderStatus(str, Enum):
    NEW = "NEW"
    FILLED = "FILLED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"

    @property
    def has_fill(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED)


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: OrderSide
    quantity: float
    order_type: OrderType = OrderType.MARKET
    time_in_force: str = "DAY"
    stop_price: Optional[float] = None
    limit_price: Optional[float] = None
    client_order_id: Optional[str] = None


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    status: OrderStatus
    filled_price: Optional[float] = None
    filled_quantity: float = 0.0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "OrderResult":
        order_id = payload.get("order_id")
        if order_id is None or str(order_id) == "":
            raise BrokerResponseError("OrderResult payload missing 'order_id'")
        raw_status = str(payload.get("status", "")).upper()
        try:
            status = OrderStatus(raw_status)
        except ValueError as exc:
            raise BrokerResponseError(f"OrderResult status is invalid: {raw_status!r}") from exc
        filled_price = payload.get("filled_price")
        if filled_price is not None:
            filled_price = _number(payload, "filled_price", "OrderResult")
        filled_quantity = payload.get("filled_quantity")
        return cls(
            order_id=str(order_id),
            status=status,
            filled_price=filled_price,
            filled_quantity=float(filled_quantity) if filled_quantity is not None else 0.0,
        )


@dataclass(frozen=True)
class TradeExecution:
    """Record of a submitted entry order."""

    symbol: str
    action: OrderSide
    quantity: float
    price: float
    order_id: str
    timestamp: datetime
    confidence: float
    ai_score: float = 0.0
    execution_latency: float = 0.0
    slippage: float = 0.0
    notional: float = 0.0
