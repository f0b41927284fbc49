"""Interactive Brokers gateway via ib_insync."""
from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, List

import pandas as pd
from ib_insync import IB, LimitOrder, MarketOrder, StopOrder, Stock

from ..errors import BrokerResponseError
from ..utils.logger import logger
from .broker import BrokerGateway
from .models import (
    Account,
    Bar,
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderType,
    Position,
    Quote,
)

# ib_insync order states -> normalized status
_STATUS_MAP = {
    "Filled": OrderStatus.FILLED,
    "Cancelled": OrderStatus.CANCELED,
    "ApiCancelled": OrderStatus.CANCELED,
    "Inactive": OrderStatus.REJECTED,
}

_BAR_SIZES = {
    "1Min": ("1 min", 60),
    "5Min": ("5 mins", 300),
    "15Min": ("15 mins", 900),
    "1Hour": ("1 hour", 3600),
    "1Day": ("1 day", 86400),
}


class IBKRBrokerGateway(BrokerGateway):
    """Equity gateway over an ib_insync ``IB`` connection."""

    def __init__(
        self,
        ib: IB,
        host: str = "127.0.0.1",
        port: int = 4002,
        client_id: int = 1,
        exchange: str = "SMART",
        currency: str = "USD",
        fill_timeout: float = 10.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        self.ib = ib
        self.host = host
        self.port = port
        self.client_id = client_id
        self.exchange = exchange
        self.currency = currency
        self.fill_timeout = fill_timeout
        self.max_retries = max_retries
        self.base_delay = base_delay

    async def connect(self) -> None:
        """Connect with exponential backoff."""
        if self.ib.isConnected():
            return
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Connecting to IBKR at {self.host}:{self.port} client_id={self.client_id} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await self.ib.connectAsync(self.host, self.port, clientId=self.client_id, timeout=30)
                return
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                delay = self.base_delay * (2 ** attempt)
                logger.warning(f"IBKR connection failed: {exc}. Retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
        raise BrokerResponseError(f"Could not connect to IBKR: {last_error}")

    def disconnect(self) -> None:
        if self.ib.isConnected():
            self.ib.disconnect()

    def _contract(self, symbol: str) -> Stock:
        return Stock(symbol, self.exchange, self.currency)

    async def get_account(self) -> Account:
        try:
            summary = await self.ib.accountSummaryAsync()
        except Exception as exc:  # noqa: BLE001
            raise BrokerResponseError(f"account summary failed: {exc}") from exc
        values: Dict[str, Any] = {}
        for item in summary:
            if item.tag == "NetLiquidation":
                values["equity"] = item.value
            elif item.tag == "TotalCashValue":
                values["cash"] = item.value
            elif item.tag == "BuyingPower":
                values["buying_power"] = item.value
        return Account.from_payload(values)

    async def get_positions(self) -> List[Position]:
        try:
            raw_positions = self.ib.positions()
        except Exception as exc:  # noqa: BLE001
            raise BrokerResponseError(f"positions request failed: {exc}") from exc
        positions: List[Position] = []
        for pos in raw_positions:
            if not pos.position:
                continue
            avg_price = float(pos.avgCost)
            positions.append(
                Position.from_payload(
                    {
                        "symbol": pos.contract.symbol,
                        "quantity": pos.position,
                        "avg_price": avg_price,
                        # Mark-to-market refresh happens through the quote path
                        "current_price": avg_price,
                    }
                )
            )
        return positions

    async def create_order(self, request: OrderRequest) -> OrderResult:
        contract = self._contract(request.symbol)
        if request.order_type == OrderType.MARKET:
            order = MarketOrder(request.side.value, request.quantity)
        elif request.order_type == OrderType.STOP:
            if request.stop_price is None:
                raise BrokerResponseError("stop order requires stop_price")
            order = StopOrder(request.side.value, request.quantity, round(request.stop_price, 2))
        else:
            if request.limit_price is None:
                raise BrokerResponseError("limit order requires limit_price")
            order = LimitOrder(request.side.value, request.quantity, round(request.limit_price, 2))
        order.tif = request.time_in_force
        if request.client_order_id:
            order.orderRef = request.client_order_id

        try:
            trade = self.ib.placeOrder(contract, order)
        except Exception as exc:  # noqa: BLE001
            raise BrokerResponseError(f"order placement failed: {exc}") from exc

        if request.order_type == OrderType.MARKET:
            await self._wait_for_fill(trade)
        return self._trade_to_result(trade)

    async def _wait_for_fill(self, trade: Any) -> None:
        elapsed = 0.0
        while not trade.isDone() and elapsed < self.fill_timeout:
            await asyncio.sleep(0.25)
            elapsed += 0.25

    @staticmethod
    def _trade_to_result(trade: Any) -> OrderResult:
        state = trade.orderStatus
        status = _STATUS_MAP.get(state.status, OrderStatus.NEW)
        filled = float(state.filled or 0.0)
        if status == OrderStatus.NEW and filled > 0:
            status = OrderStatus.PARTIALLY_FILLED
        avg_fill = float(state.avgFillPrice or 0.0)
        return OrderResult.from_payload(
            {
                "order_id": trade.order.orderId,
                "status": status.value,
                "filled_price": avg_fill if avg_fill > 0 else None,
                "filled_quantity": filled,
            }
        )

    async def get_bars(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        bar_size, seconds = _BAR_SIZES.get(timeframe, _BAR_SIZES["1Day"])
        days = max(1, math.ceil(limit * seconds / 86400 * 1.6))
        duration = f"{days} D" if days <= 365 else f"{math.ceil(days / 365)} Y"
        try:
            raw = await self.ib.reqHistoricalDataAsync(
                self._contract(symbol),
                endDateTime="",
                durationStr=duration,
                barSizeSetting=bar_size,
                whatToShow="TRADES",
                useRTH=True,
                formatDate=2,
            )
        except Exception as exc:  # noqa: BLE001
            raise BrokerResponseError(f"historical data for {symbol} failed: {exc}") from exc
        bars = [
            Bar.from_payload(
                symbol,
                {
                    "timestamp": pd.Timestamp(b.date),
                    "open": b.open,
                    "high": b.high,
                    "low": b.low,
                    "close": b.close,
                    "volume": b.volume,
                },
            )
            for b in raw or []
        ]
        return bars[-limit:]

    async def get_latest_quote(self, symbol: str) -> Quote:
        try:
            tickers = await self.ib.reqTickersAsync(self._contract(symbol))
        except Exception as exc:  # noqa: BLE001
            raise BrokerResponseError(f"quote for {symbol} failed: {exc}") from exc
        if not tickers:
            raise BrokerResponseError(f"no quote returned for {symbol}")
        ticker = tickers[0]
        return Quote.from_payload(symbol, {"bid": ticker.bid, "ask": ticker.ask})
