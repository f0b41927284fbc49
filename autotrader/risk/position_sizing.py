"""Buying-power based order sizing."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from ..config import PositionSizingConfig
from ..utils.logger import logger


@dataclass(frozen=True)
class BuyingPowerSize:
    notional: float
    percent_of_buying_power: float
    reasoning: str
    within_limits: bool


class BuyingPowerSizer:
    """Translates a confidence percentage into a dollar order size.

    Conservative mode tightens the limits: base 3%, max 10%, max order $200
    and never more than 20% of buying power.
    """

    CONSERVATIVE_MAX_ORDER = 200.0

    def __init__(self, config: Optional[PositionSizingConfig] = None) -> None:
        cfg = config or PositionSizingConfig()
        self.conservative = cfg.conservative_mode
        self.base_percent = cfg.base_size
        self.max_percent = cfg.max_size
        self.min_order_value = cfg.min_order_value
        self.max_order_value = cfg.max_order_value
        self.buffer = cfg.buying_power_buffer
        if self.conservative:
            self.max_percent = min(self.max_percent, 0.10)
            self.base_percent = min(self.base_percent, 0.03)
            self.max_order_value = min(self.max_order_value, self.CONSERVATIVE_MAX_ORDER)
            self.buffer = max(self.buffer, 0.05)
            logger.info("Conservative sizing enabled")

    def order_cap(self, buying_power: float) -> float:
        """Largest notional allowed for a single order."""
        cap = min(self.max_order_value, buying_power * 0.8, buying_power * (1 - self.buffer))
        if self.conservative:
            cap = min(cap, buying_power * 0.20)
        return cap

    def size(self, confidence_pct: float, symbol: str, buying_power: float) -> BuyingPowerSize:
        """Dollar size for an order.

        Args:
            confidence_pct: Confidence in percent (0-100)
            symbol: Instrument, used for logging only
            buying_power: Available buying power

        Returns:
            BuyingPowerSize; notional 0 when buying power is below the minimum order
        """
        if buying_power < self.min_order_value:
            return BuyingPowerSize(
                0.0,
                0.0,
                f"Insufficient buying power: ${buying_power:.2f} (minimum ${self.min_order_value:.2f} required)",
                False,
            )

        if self.conservative:
            bonus = max(0.0, (confidence_pct - 60) / 100) * 0.07
            percent = min(self.base_percent + bonus, self.max_percent)
        else:
            multiplier = max(0.0, (confidence_pct - 50) / 100)
            percent = min(self.base_percent + (self.max_percent - self.base_percent) * multiplier, self.max_percent)

        notional = buying_power * percent
        notional = max(self.min_order_value, min(notional, min(self.max_order_value, buying_power * 0.8)))
        max_allowed = buying_power * (1 - self.buffer)
        notional = min(notional, max_allowed)
        if self.conservative:
            notional = min(notional, buying_power * 0.20)
        notional = round(notional, 2)

        actual = notional / buying_power
        reasoning = (
            f"{confidence_pct:.1f}% confidence -> {percent * 100:.1f}% of buying power | "
            f"size ${notional:.2f} ({actual * 100:.1f}%) | buffer {self.buffer * 100:.1f}%"
        )
        logger.debug(f"Sizing {symbol}: {reasoning}")
        return BuyingPowerSize(
            notional=notional,
            percent_of_buying_power=actual,
            reasoning=reasoning,
            within_limits=self.min_order_value <= notional <= max_allowed,
        )

    def validate_position_size(self, notional: float, buying_power: float) -> Tuple[bool, Optional[str]]:
        if notional < self.min_order_value:
            return False, f"Position size ${notional:.2f} below minimum ${self.min_order_value:.2f}"
        if notional > buying_power * (1 - self.buffer):
            return False, (
                f"Position size ${notional:.2f} exceeds available buying power ${buying_power:.2f} "
                f"(with {self.buffer * 100:.0f}% buffer)"
            )
        if notional > self.max_order_value:
            return False, f"Position size ${notional:.2f} exceeds maximum order value ${self.max_order_value:.2f}"
        return True, None
