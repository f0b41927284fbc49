"""Rolling per-symbol bar cache shared by the scheduler tasks."""
from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict, Iterable, List

import pandas as pd

from .models import Bar, bars_to_frame


class MarketDataCache:
    """Fixed-capacity ring buffer of bars per symbol.

    Appends are deduplicated by timestamp: a bar with the same timestamp as the
    newest cached bar replaces it (a refreshed in-progress bar), older bars are
    ignored.
    """

    def __init__(self, capacity: int = 200) -> None:
        self.capacity = capacity
        self._buffers: Dict[str, Deque[Bar]] = {}
        self._lock = threading.Lock()

    def extend(self, symbol: str, bars: Iterable[Bar]) -> int:
        added = 0
        with self._lock:
            buffer = self._buffers.setdefault(symbol, deque(maxlen=self.capacity))
            for bar in bars:
                if buffer and bar.timestamp < buffer[-1].timestamp:
                    continue
                if buffer and bar.timestamp == buffer[-1].timestamp:
                    buffer[-1] = bar
                    continue
                buffer.append(bar)
                added += 1
        return added

    def bars(self, symbol: str) -> List[Bar]:
        with self._lock:
            return list(self._buffers.get(symbol, ()))

    def frame(self, symbol: str) -> pd.DataFrame:
        return bars_to_frame(self.bars(symbol))

    def last_price(self, symbol: str) -> float | None:
        with self._lock:
            buffer = self._buffers.get(symbol)
            return buffer[-1].close if buffer else None

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._buffers)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._buffers.values())
