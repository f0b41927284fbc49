"""Trade-outcome persistence collaborators."""
from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from ..utils.logger import logger


@dataclass
class TradeOutcome:
    """Completed trade with the market context it was taken in."""

    trade_id: str
    symbol: str
    action: str
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float
    confidence: float
    outcome: str  # profit / loss / breakeven
    duration_hours: float = 0.0
    market_conditions: Dict[str, Any] = field(default_factory=dict)
    entry_time: str = ""
    exit_time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def pnl_pct(self) -> float:
        if not self.entry_price:
            return 0.0
        direction = 1.0 if self.action == "BUY" else -1.0
        return (self.exit_price - self.entry_price) / self.entry_price * direction

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeOutcome":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class OutcomeStore(ABC):
    @abstractmethod
    def save(self, outcome: TradeOutcome) -> None:
        """Append one outcome."""

    @abstractmethod
    def query_recent(self, symbol: Optional[str] = None, limit: int = 100) -> List[TradeOutcome]:
        """Most recent outcomes, oldest first."""


class InMemoryOutcomeStore(OutcomeStore):
    def __init__(self, capacity: int = 1000) -> None:
        self._records: Deque[TradeOutcome] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def save(self, outcome: TradeOutcome) -> None:
        with self._lock:
            self._records.append(outcome)

    def query_recent(self, symbol: Optional[str] = None, limit: int = 100) -> List[TradeOutcome]:
        with self._lock:
            records = [r for r in self._records if symbol is None or r.symbol == symbol]
        return records[-limit:]


class JsonlOutcomeStore(OutcomeStore):
    """Append-only newline-delimited JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def save(self, outcome: TradeOutcome) -> None:
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(outcome.to_dict(), default=str) + "\n")

    def query_recent(self, symbol: Optional[str] = None, limit: int = 100) -> List[TradeOutcome]:
        if not self.path.exists():
            return []
        records: Deque[TradeOutcome] = deque(maxlen=limit)
        with self._lock, self.path.open("r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = TradeOutcome.from_dict(json.loads(line))
                except (json.JSONDecodeError, TypeError) as exc:
                    logger.warning(f"Skipping unreadable outcome at {self.path}:{line_no}: {exc}")
                    continue
                if symbol is None or record.symbol == symbol:
                    records.append(record)
        return list(records)
