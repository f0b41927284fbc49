"""Trading session lifecycle and per-session statistics."""
from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from ...utils.logger import logger
from ...utils.structured_logging import log_structured_event

if TYPE_CHECKING:  # pragma: no cover
    from ..trading_engine import TradingEngine


@dataclass
class Session:
    session_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    trades_executed: int = 0
    total_pnl: float = 0.0
    peak_pnl: float = 0.0
    max_drawdown: float = 0.0
    predictions: int = 0
    correct_predictions: int = 0

    @property
    def active(self) -> bool:
        return self.end_time is None

    @property
    def accuracy(self) -> float:
        return self.correct_predictions / self.predictions if self.predictions else 0.0


class TradingSessionManager:
    """Opens and closes sessions; exactly one is active at a time.

    Each session is also one learning episode for the Q-learning agent.
    """

    def __init__(self, engine: "TradingEngine"):  # noqa: F821 (forward reference)
        self.engine = engine
        self.current: Optional[Session] = None
        self._completed: List[Session] = []
        self._lock = threading.Lock()

    def start_session(self) -> Session:
        ctx = self.engine.context
        if self.current is not None:
            self.end_session()
        now = ctx.now()
        session = Session(session_id=f"session_{int(now.timestamp() * 1000)}", start_time=now)
        with self._lock:
            self.current = session
        if ctx.settings.learning.enabled:
            ctx.agent.start_episode("PORTFOLIO", ctx.regime.active_regime)
        logger.info(f"📈 Trading session {session.session_id} started")
        return session

    def end_session(self) -> Optional[Session]:
        ctx = self.engine.context
        with self._lock:
            session = self.current
            self.current = None
            if session is None:
                return None
            session.end_time = ctx.now()
            self._completed.append(session)
        if ctx.settings.learning.enabled:
            ctx.agent.end_episode(session.total_pnl)
        log_structured_event(
            "session",
            "session.ended",
            f"Session {session.session_id} ended: {session.trades_executed} trades, P&L {session.total_pnl:+.2f}",
            {
                "session_id": session.session_id,
                "trades_executed": session.trades_executed,
                "total_pnl": session.total_pnl,
                "max_drawdown": session.max_drawdown,
                "accuracy": session.accuracy,
            },
        )
        return session

    def record_trade(self) -> None:
        with self._lock:
            if self.current:
                self.current.trades_executed += 1

    def record_prediction(self, correct: bool) -> None:
        with self._lock:
            if self.current:
                self.current.predictions += 1
                if correct:
                    self.current.correct_predictions += 1

    def update_pnl(self, pnl: float) -> None:
        with self._lock:
            session = self.current
            if session is None:
                return
            session.total_pnl = pnl
            session.peak_pnl = max(session.peak_pnl, pnl)
            session.max_drawdown = max(session.max_drawdown, session.peak_pnl - pnl)

    def snapshot(self) -> Optional[Session]:
        with self._lock:
            return replace(self.current) if self.current else None

    def history(self) -> List[Session]:
        with self._lock:
            return list(self._completed)
