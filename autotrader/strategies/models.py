"""Deterministic scoring models combined by the ensemble forecaster."""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Sequence

import numpy as np

from ..features.feature_engineer import FeatureVector


class ModelKind(str, Enum):
    LSTM = "LSTM"
    TRANSFORMER = "TRANSFORMER"
    RANDOM_FOREST = "RANDOM_FOREST"


class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    SIDEWAYS = "SIDEWAYS"

    @property
    def value_sign(self) -> int:
        return {Direction.UP: 1, Direction.DOWN: -1}.get(self, 0)


@dataclass(frozen=True)
class ModelPrediction:
    model: ModelKind
    direction: Direction
    confidence: float
    price_change: float
    price_target: float
    horizon_hours: int = 24


def _direction(change: float, band: float) -> Direction:
    if change > band:
        return Direction.UP
    if change < -band:
        return Direction.DOWN
    return Direction.SIDEWAYS


def sequence_pattern(closes: Sequence[float]) -> float:
    """tanh of +/-0.1 for every three-bar rising or falling run."""
    prices = list(closes)
    pattern = 0.0
    for i in range(2, len(prices)):
        if prices[i] > prices[i - 1] > prices[i - 2]:
            pattern += 0.1
        elif prices[i] < prices[i - 1] < prices[i - 2]:
            pattern -= 0.1
    return math.tanh(pattern)


def attention_weights(closes: Sequence[float]) -> np.ndarray:
    """Recency decay plus twice the absolute return, normalized to sum to 1."""
    prices = np.asarray(closes, dtype=float)
    n = prices.size
    if n == 0:
        return np.array([], dtype=float)
    recency = np.exp(-(n - np.arange(n) - 1) * 0.1)
    moves = np.zeros(n)
    if n > 1:
        moves[1:] = np.abs(np.diff(prices) / prices[:-1])
    weights = recency + moves * 2
    return weights / weights.sum()


def attention_pattern(closes: Sequence[float]) -> float:
    prices = np.asarray(closes, dtype=float)
    if prices.size < 2:
        return 0.0
    weights = attention_weights(prices)
    returns = np.diff(prices) / prices[:-1]
    return math.tanh(float((returns * weights[1:]).sum()) * 5)


def technical_score(indicators: Sequence[float]) -> float:
    """Mean of the seven indicators mapped onto roughly [-1, 1]."""
    if len(indicators) < 7:
        return 0.0
    rsi, macd, signal, bb, stoch, williams_r, roc = indicators[:7]
    scores = (
        (rsi - 50) / 50,
        math.tanh(macd - signal),
        math.tanh(bb),
        (stoch - 50) / 50,
        (williams_r + 50) / 50,
        math.tanh(roc / 10),
    )
    return sum(scores) / len(scores)


class ForecastModel(ABC):
    kind: ModelKind

    @abstractmethod
    def score(self, features: FeatureVector, horizon_hours: int = 24) -> ModelPrediction:
        """Score one feature vector."""

    def _prediction(self, features: FeatureVector, change: float, band: float, confidence: float, horizon: int) -> ModelPrediction:
        return ModelPrediction(
            model=self.kind,
            direction=_direction(change, band),
            confidence=confidence,
            price_change=change,
            price_target=features.price * (1 + change),
            horizon_hours=horizon,
        )


class LSTMModel(ForecastModel):
    kind = ModelKind.LSTM

    def score(self, features: FeatureVector, horizon_hours: int = 24) -> ModelPrediction:
        seq = sequence_pattern(features.closes[-20:])
        if features.momentum > 0.02:
            trend = 0.7
        elif features.momentum < -0.02:
            trend = -0.7
        else:
            trend = 0.0
        change = (seq + trend + features.sentiment * 0.3) * features.volatility
        confidence = min(0.85, abs(change) * 8 + 0.6)
        return self._prediction(features, change, 0.002, confidence, horizon_hours)


class TransformerModel(ForecastModel):
    kind = ModelKind.TRANSFORMER

    def score(self, features: FeatureVector, horizon_hours: int = 24) -> ModelPrediction:
        pattern = attention_pattern(features.closes)
        change = (pattern + features.sentiment * 0.4 + features.momentum * 0.3) * features.volatility
        confidence = min(0.90, abs(change) * 6 + 0.65)
        return self._prediction(features, change, 0.003, confidence, horizon_hours)


class RandomForestModel(ForecastModel):
    kind = ModelKind.RANDOM_FOREST

    def score(self, features: FeatureVector, horizon_hours: int = 24) -> ModelPrediction:
        ensemble_score = (
            technical_score(features.technical_indicators)
            + features.momentum * 2
            + features.volume_trend * 1.5
            - (0.1 if features.volatility > 0.3 else 0.0)
        )
        change = math.tanh(ensemble_score) * features.volatility * 0.8
        confidence = min(0.80, abs(ensemble_score) * 0.15 + 0.45)
        return self._prediction(features, change, 0.003, confidence, horizon_hours)


MODEL_REGISTRY: Dict[ModelKind, type] = {
    ModelKind.LSTM: LSTMModel,
    ModelKind.TRANSFORMER: TransformerModel,
    ModelKind.RANDOM_FOREST: RandomForestModel,
}


def build_model(kind: ModelKind) -> ForecastModel:
    return MODEL_REGISTRY[kind]()
