"""Confidence-weighted ensemble over the scoring models."""
from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from ..features.feature_engineer import FeatureVector, extract_features
from ..utils.logger import logger
from .models import Direction, ForecastModel, ModelKind, ModelPrediction, build_model

DEFAULT_WEIGHTS: Dict[ModelKind, float] = {
    ModelKind.LSTM: 0.35,
    ModelKind.TRANSFORMER: 0.40,
    ModelKind.RANDOM_FOREST: 0.25,
}


@dataclass(frozen=True)
class Forecast:
    direction: Direction
    confidence: float
    price_target: float
    horizon_hours: int
    contributing_models: tuple = ()
    agreement: float = 0.0
    features: Optional[FeatureVector] = field(default=None, repr=False, compare=False)

    @property
    def is_neutral(self) -> bool:
        return not self.contributing_models


def agreement(predictions: Sequence[ModelPrediction]) -> float:
    """0 below two models, 1 when unanimous, else the majority share."""
    if len(predictions) < 2:
        return 0.0
    counts = Counter(p.direction for p in predictions)
    if len(counts) == 1:
        return 1.0
    return counts.most_common(1)[0][1] / len(predictions)


def combine(
    predictions: Sequence[ModelPrediction],
    weights: Dict[ModelKind, float],
    horizon_hours: int = 24,
    features: Optional[FeatureVector] = None,
) -> Forecast:
    weighted_direction = 0.0
    weighted_confidence = 0.0
    weighted_target = 0.0
    total_weight = 0.0
    for pred in predictions:
        adjusted = weights.get(pred.model, 0.0) * pred.confidence
        weighted_direction += pred.direction.value_sign * adjusted
        weighted_confidence += pred.confidence * adjusted
        weighted_target += pred.price_target * adjusted
        total_weight += adjusted
    if total_weight == 0:
        total_weight = 1.0

    score = weighted_direction / total_weight
    if score > 0.3:
        direction = Direction.UP
    elif score < -0.3:
        direction = Direction.DOWN
    else:
        direction = Direction.SIDEWAYS

    agree = agreement(predictions)
    confidence = min(0.95, weighted_confidence / total_weight + agree * 0.2)
    return Forecast(
        direction=direction,
        confidence=confidence,
        price_target=weighted_target / total_weight,
        horizon_hours=horizon_hours,
        contributing_models=tuple(p.model for p in predictions),
        agreement=agree,
        features=features,
    )


class EnsembleForecaster:
    """Runs every registered model and blends the surviving predictions."""

    def __init__(
        self,
        models: Optional[Iterable[ForecastModel]] = None,
        weights: Optional[Dict[ModelKind, float]] = None,
        min_bars: int = 26,
        horizon_hours: int = 24,
        history_size: int = 200,
    ) -> None:
        self.models: List[ForecastModel] = list(models) if models is not None else [build_model(k) for k in ModelKind]
        self.weights = dict(weights or DEFAULT_WEIGHTS)
        self.min_bars = min_bars
        self.horizon_hours = horizon_hours
        self._history: Deque[Forecast] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "EnsembleForecaster":
        cfg = settings.forecast
        weights = {
            ModelKind.LSTM: cfg.lstm_weight,
            ModelKind.TRANSFORMER: cfg.transformer_weight,
            ModelKind.RANDOM_FOREST: cfg.random_forest_weight,
        }
        return cls(weights=weights, min_bars=cfg.min_bars, horizon_hours=cfg.horizon_hours, history_size=cfg.history_size)

    def forecast(self, df: pd.DataFrame, news_sentiment: float = 0.0, now: Optional[datetime] = None) -> Forecast:
        """Forecast the next move for one symbol's bar window.

        Raises:
            InsufficientDataError: fewer bars than ``min_bars``
        """
        features = extract_features(df, news_sentiment=news_sentiment, now=now, min_bars=self.min_bars)
        return self.forecast_features(features)

    def forecast_features(self, features: FeatureVector) -> Forecast:
        predictions: List[ModelPrediction] = []
        for model in self.models:
            try:
                predictions.append(model.score(features, self.horizon_hours))
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Model {model.kind.value} prediction failed: {exc}")

        if not predictions:
            logger.error("All forecast models failed; returning neutral forecast")
            result = Forecast(
                direction=Direction.SIDEWAYS,
                confidence=0.5,
                price_target=features.price,
                horizon_hours=self.horizon_hours,
                features=features,
            )
        else:
            result = combine(predictions, self.weights, self.horizon_hours, features)

        with self._lock:
            self._history.append(result)
        return result

    def history(self) -> List[Forecast]:
        with self._lock:
            return list(self._history)

    def direction_breakdown(self) -> Dict[str, int]:
        counts = Counter(f.direction.value for f in self.history())
        return {d.value: counts.get(d.value, 0) for d in Direction}
