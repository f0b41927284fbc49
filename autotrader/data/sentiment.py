"""Sentiment collaborator interfaces."""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from ..utils.logger import logger


class SentimentProvider(ABC):
    """External news/social sentiment source returning a score in [-1, 1]."""

    @abstractmethod
    async def get_score(self, symbol: str) -> Optional[float]:
        """Return the latest score or None when nothing is known."""


class NeutralSentimentProvider(SentimentProvider):
    async def get_score(self, symbol: str) -> Optional[float]:
        return None


class CachedSentiment:
    """TTL cache in front of a provider; absence or failure reads as neutral (0)."""

    def __init__(
        self,
        provider: Optional[SentimentProvider] = None,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider or NeutralSentimentProvider()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[float, float]] = {}

    async def score(self, symbol: str) -> float:
        now = self._clock()
        cached = self._cache.get(symbol)
        if cached and now - cached[0] < self.ttl_seconds:
            return cached[1]
        try:
            raw = await self.provider.get_score(symbol)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Sentiment lookup failed for {symbol}: {exc}; using neutral")
            return 0.0
        value = 0.0 if raw is None else max(-1.0, min(1.0, float(raw)))
        self._cache[symbol] = (now, value)
        return value
