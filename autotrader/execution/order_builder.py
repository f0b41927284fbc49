"""Entry and protective order construction."""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from ..data.models import OrderRequest, OrderSide, OrderType

# target distance as a multiple of the stop distance
REWARD_RISK = 2.5
PRICE_TICK = 0.01


@dataclass(frozen=True)
class Bracket:
    """Stop-loss and take-profit around a filled entry."""

    entry_side: OrderSide
    entry_price: float
    stop_loss: float
    take_profit: float

    @classmethod
    def from_atr(cls, entry_side: OrderSide, entry_price: float, atr: float, confidence: float) -> "Bracket":
        """Stop 1.5 ATR away above 0.8 confidence, otherwise 2 ATR."""
        stop_distance = atr * (1.5 if confidence > 0.8 else 2.0)
        sign = 1 if entry_side == OrderSide.BUY else -1
        return cls(
            entry_side,
            entry_price,
            entry_price - sign * stop_distance,
            entry_price + sign * stop_distance * REWARD_RISK,
        )

    @classmethod
    def from_levels(
        cls,
        entry_side: OrderSide,
        entry_price: float,
        reference_price: float,
        stop_loss: float,
        take_profit: float,
    ) -> "Bracket":
        """Carry stop and target distances priced off ``reference_price`` over to the fill."""
        shift = entry_price - reference_price
        return cls(entry_side, entry_price, stop_loss + shift, take_profit + shift)

    @property
    def is_long(self) -> bool:
        return self.entry_side == OrderSide.BUY

    @property
    def reward_risk(self) -> float:
        risk = abs(self.entry_price - self.stop_loss)
        return abs(self.take_profit - self.entry_price) / risk if risk else 0.0

    def problem(self) -> Optional[str]:
        if self.entry_price <= 0:
            return "entry price must be positive"
        if self.stop_loss <= 0 or self.take_profit <= 0:
            return "protective prices must be positive"
        stop_ok = self.stop_loss < self.entry_price if self.is_long else self.stop_loss > self.entry_price
        if not stop_ok:
            return f"stop-loss on the wrong side of entry for {self.entry_side.value}"
        target_ok = self.take_profit > self.entry_price if self.is_long else self.take_profit < self.entry_price
        if not target_ok:
            return f"take-profit on the wrong side of entry for {self.entry_side.value}"
        return None

    def snapped(self, tick: float = PRICE_TICK) -> "Bracket":
        """Round both legs to the tick grid, keeping each at least one tick from entry."""
        sign = 1 if self.is_long else -1
        stop = round(self.stop_loss / tick) * tick
        target = round(self.take_profit / tick) * tick
        if sign * (self.entry_price - stop) < tick:
            stop = self.entry_price - sign * tick
        if sign * (target - self.entry_price) < tick:
            target = self.entry_price + sign * tick
        return replace(self, stop_loss=round(stop, 2), take_profit=round(target, 2))

    def orders(self, symbol: str, quantity: float, tag: str = "") -> Tuple[OrderRequest, OrderRequest]:
        """GTC stop and limit exits on the opposite side of the entry."""
        exit_side = self.entry_side.opposite
        stop = OrderRequest(
            symbol=symbol,
            side=exit_side,
            quantity=quantity,
            order_type=OrderType.STOP,
            time_in_force="GTC",
            stop_price=self.stop_loss,
            client_order_id=f"sl_{tag}" if tag else None,
        )
        target = OrderRequest(
            symbol=symbol,
            side=exit_side,
            quantity=quantity,
            order_type=OrderType.LIMIT,
            time_in_force="GTC",
            limit_price=self.take_profit,
            client_order_id=f"tp_{tag}" if tag else None,
        )
        return stop, target

    def __str__(self) -> str:
        return (
            f"entry={self.entry_price:.2f} SL={self.stop_loss:.2f} TP={self.take_profit:.2f} "
            f"(R:R {self.reward_risk:.1f})"
        )


def quantity_for_notional(notional: float, price: float, fractional: bool = False) -> float:
    """Whole shares, or 4 decimals when fractional trading is on."""
    if price <= 0 or notional <= 0:
        return 0.0
    if fractional:
        return round(notional / price, 4)
    return float(math.floor(notional / price))


def build_entry_order(symbol: str, side: OrderSide, quantity: float, client_order_id: Optional[str] = None) -> OrderRequest:
    return OrderRequest(
        symbol=symbol,
        side=side,
        quantity=quantity,
        order_type=OrderType.MARKET,
        time_in_force="DAY",
        client_order_id=client_order_id,
    )
