"""Daily trade counter, daily P&L and reset bookkeeping."""

import threading
from datetime import date
from typing import Dict, Optional

from ...utils.logger import logger

HARD_DAILY_TRADE_CAP = 100


class DailyLimits:
    """Counts submissions per trading day.

    A slot is reserved before an order goes out and committed once the broker
    accepts it (released on failure), so concurrent decisions cannot overrun
    the cap. Reservations still in flight when the day rolls over are kept and
    count toward the new day when committed.
    """

    def __init__(self, max_daily_trades: int, trading_day: Optional[date] = None):
        self.max_daily_trades = max_daily_trades
        self.trading_day = trading_day
        self.trade_count = 0
        self.pending = 0
        self.daily_pnl = 0.0
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return min(self.max_daily_trades, HARD_DAILY_TRADE_CAP)

    def limit_reached(self) -> bool:
        with self._lock:
            return self.trade_count + self.pending >= self.limit

    def reserve(self) -> bool:
        with self._lock:
            if self.trade_count + self.pending >= self.limit:
                return False
            self.pending += 1
            return True

    def commit(self) -> None:
        with self._lock:
            self.pending = max(0, self.pending - 1)
            self.trade_count += 1

    def release(self) -> None:
        with self._lock:
            self.pending = max(0, self.pending - 1)

    def update_pnl(self, pnl: float) -> None:
        with self._lock:
            self.daily_pnl = pnl

    def reset(self, day: date) -> bool:
        """Zero the counters for ``day``; a second call for the same day is a no-op."""
        with self._lock:
            if self.trading_day == day:
                return False
            previous = self.trading_day
            self.trading_day = day
            self.trade_count = 0
            self.daily_pnl = 0.0
        logger.info(f"Daily counters reset for {day} (previous trading day {previous})")
        return True

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "trading_day": self.trading_day.isoformat() if self.trading_day else None,
                "trades_executed": self.trade_count,
                "trades_pending": self.pending,
                "trades_remaining": max(0, self.limit - self.trade_count - self.pending),
                "daily_pnl": self.daily_pnl,
            }
