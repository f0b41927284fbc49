"""Error taxonomy for the decision-and-execution pipeline.

HardReject aborts a single decision, TransientFailure drops one symbol for
one cycle, CircuitBreakerTripped locks execution until the daily reset.
Soft warnings are not raised; they travel on the decision as ``SoftWarn``
records.
"""
from __future__ import annotations

from dataclasses import dataclass


class TradingError(Exception):
    """Base class for pipeline errors."""


class HardReject(TradingError):
    """Risk-of-ruin condition: no order is submitted and nothing is retried."""


class InsufficientBuyingPower(HardReject):
    pass


class TransientFailure(TradingError):
    """Per-symbol failure that is logged and skipped for the current cycle."""


class BrokerResponseError(TransientFailure):
    """Brokerage payload did not match the expected schema or the call failed."""


class InsufficientDataError(TransientFailure):
    """Not enough bars to compute features."""


class CircuitBreakerTripped(TradingError):
    """Daily loss ceiling breached; execution is disabled for the trading day."""


@dataclass(frozen=True)
class SoftWarn:
    """Quality warning attached to a decision that still proceeds."""

    code: str
    message: str

    def __str__(self) -> str:
        return self.message


__all__ = [
    "TradingError",
    "HardReject",
    "InsufficientBuyingPower",
    "TransientFailure",
    "BrokerResponseError",
    "InsufficientDataError",
    "CircuitBreakerTripped",
    "SoftWarn",
]
