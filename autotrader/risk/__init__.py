"""Risk validation, sizing and monitoring."""

from .manager import (
    AlertSeverity,
    PositionSizing,
    RiskAction,
    RiskAlert,
    RiskAssessment,
    RiskMetrics,
    RiskValidator,
)
from .position_sizing import BuyingPowerSize, BuyingPowerSizer

__all__ = [
    "AlertSeverity",
    "BuyingPowerSize",
    "BuyingPowerSizer",
    "PositionSizing",
    "RiskAction",
    "RiskAlert",
    "RiskAssessment",
    "RiskMetrics",
    "RiskValidator",
]
