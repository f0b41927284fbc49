"""In-memory paper broker for dry runs."""
from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable, List

from ..errors import BrokerResponseError
from ..utils.logger import logger
from .broker import BrokerGateway
from .models import (
    Account,
    Bar,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    Quote,
)


class PaperBrokerGateway(BrokerGateway):
    """Fills market orders at the last known close and rests stop/limit orders.

    Bars are fed through ``load_bars``/``push_bar``; quotes are synthesized
    around the last close with ``half_spread``.
    """

    def __init__(self, starting_cash: float = 100_000.0, half_spread: float = 0.0005, max_bars: int = 1000) -> None:
        self.cash = starting_cash
        self.half_spread = half_spread
        self._bars: Dict[str, Deque[Bar]] = defaultdict(lambda: deque(maxlen=max_bars))
        self._holdings: Dict[str, float] = defaultdict(float)
        self._cost_basis: Dict[str, float] = {}
        self.resting_orders: List[OrderRequest] = []
        self.filled_orders: List[OrderRequest] = []
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    def load_bars(self, bars: Iterable[Bar]) -> None:
        for bar in bars:
            self._bars[bar.symbol].append(bar)

    def push_bar(self, bar: Bar) -> None:
        self._bars[bar.symbol].append(bar)

    def _last_price(self, symbol: str) -> float:
        bars = self._bars.get(symbol)
        if not bars:
            raise BrokerResponseError(f"no market data for {symbol}")
        return bars[-1].close

    async def get_account(self) -> Account:
        equity = self.cash
        for symbol, qty in self._holdings.items():
            if qty:
                equity += qty * self._last_price(symbol)
        return Account(equity=equity, cash=self.cash, buying_power=max(0.0, self.cash))

    async def get_positions(self) -> List[Position]:
        positions = []
        for symbol, qty in self._holdings.items():
            if not qty:
                continue
            positions.append(
                Position(
                    symbol=symbol,
                    quantity=abs(qty),
                    avg_price=self._cost_basis.get(symbol, 0.0),
                    current_price=self._last_price(symbol),
                    side=PositionSide.LONG if qty > 0 else PositionSide.SHORT,
                )
            )
        return positions

    async def create_order(self, request: OrderRequest) -> OrderResult:
        if request.quantity <= 0:
            raise BrokerResponseError("order quantity must be positive")
        order_id = f"paper-{next(self._ids)}"
        if request.order_type != OrderType.MARKET:
            self.resting_orders.append(request)
            return OrderResult(order_id=order_id, status=OrderStatus.NEW)

        async with self._lock:
            price = self._last_price(request.symbol)
            fill = price * (1 + self.half_spread) if request.side == OrderSide.BUY else price * (1 - self.half_spread)
            signed = request.quantity if request.side == OrderSide.BUY else -request.quantity
            cost = signed * fill
            if request.side == OrderSide.BUY and cost > self.cash:
                return OrderResult(order_id=order_id, status=OrderStatus.REJECTED)
            previous = self._holdings[request.symbol]
            updated = previous + signed
            if previous == 0 or (previous > 0) == (signed > 0):
                basis = self._cost_basis.get(request.symbol, fill)
                self._cost_basis[request.symbol] = (basis * abs(previous) + fill * abs(signed)) / abs(updated)
            self._holdings[request.symbol] = updated
            self.cash -= cost
            self.filled_orders.append(request)
        logger.info(f"Paper fill {request.side.value} {request.quantity} {request.symbol} @ {fill:.2f}")
        return OrderResult(
            order_id=order_id,
            status=OrderStatus.FILLED,
            filled_price=fill,
            filled_quantity=request.quantity,
        )

    async def get_bars(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        return list(self._bars.get(symbol, ()))[-limit:]

    async def get_latest_quote(self, symbol: str) -> Quote:
        price = self._last_price(symbol)
        return Quote(symbol=symbol, bid=price * (1 - self.half_spread), ask=price * (1 + self.half_spread))
