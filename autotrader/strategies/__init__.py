"""Regime classification and ensemble forecasting."""

from .ensemble import EnsembleForecaster, Forecast
from .market_regime import MarketRegime, RegimeClassifier, RegimeSignal, regime_strategy
from .models import Direction, ModelKind, ModelPrediction

__all__ = [
    "Direction",
    "EnsembleForecaster",
    "Forecast",
    "MarketRegime",
    "ModelKind",
    "ModelPrediction",
    "RegimeClassifier",
    "RegimeSignal",
    "regime_strategy",
]
