"""Per-symbol cooldown tracking."""

import math
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ...utils.logger import logger


class CooldownManager:
    """Blocks a symbol for ``cooldown_minutes`` after each successful submission."""

    DEFAULT_COOLDOWN_MINUTES = 5.0
    MIN_COOLDOWN_MINUTES = 0.0
    MAX_COOLDOWN_MINUTES = 240.0
    COOLDOWN_WARNING_MINUTES = 60

    def __init__(self, cooldown_minutes: Any = DEFAULT_COOLDOWN_MINUTES, now: Optional[Callable[[], datetime]] = None):
        self.cooldown_minutes = self.sanitize_cooldown_minutes(cooldown_minutes)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._last_trade: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def sanitize_cooldown_minutes(self, raw_value: Any) -> float:
        """Minutes as a float so sub-minute cooldowns survive; clamped to [0, 240]."""
        try:
            minutes = float(raw_value)
            if not math.isfinite(minutes):
                raise ValueError(raw_value)
        except (TypeError, ValueError):
            logger.warning(
                f"Invalid cooldown_minutes={raw_value!r}; defaulting to {self.DEFAULT_COOLDOWN_MINUTES:g} minutes"
            )
            return self.DEFAULT_COOLDOWN_MINUTES
        clamped = max(self.MIN_COOLDOWN_MINUTES, min(self.MAX_COOLDOWN_MINUTES, minutes))
        if clamped != minutes:
            logger.warning(
                f"cooldown_minutes={minutes:g} outside [{self.MIN_COOLDOWN_MINUTES:g}, "
                f"{self.MAX_COOLDOWN_MINUTES:g}]; clamped to {clamped:g}"
            )
        elif clamped >= self.COOLDOWN_WARNING_MINUTES:
            logger.warning(f"cooldown_minutes={clamped:g} is unusually high; verify this is intentional")
        return clamped

    def record_trade(self, symbol: str, timestamp: Optional[datetime] = None) -> None:
        ts = (timestamp or self._now()).astimezone(timezone.utc)
        with self._lock:
            self._last_trade[symbol] = ts

    def minutes_since_last_trade(self, symbol: str) -> Optional[float]:
        with self._lock:
            last = self._last_trade.get(symbol)
        if last is None:
            return None
        return (self._now() - last).total_seconds() / 60

    def is_cooling_down(self, symbol: str) -> bool:
        elapsed = self.minutes_since_last_trade(symbol)
        return elapsed is not None and elapsed < self.cooldown_minutes

    def remaining_minutes(self, symbol: str) -> float:
        elapsed = self.minutes_since_last_trade(symbol)
        if elapsed is None:
            return 0.0
        return max(0.0, self.cooldown_minutes - elapsed)

    def snapshot(self) -> Dict[str, datetime]:
        with self._lock:
            return dict(self._last_trade)
