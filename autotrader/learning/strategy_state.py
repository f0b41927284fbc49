"""
On-disk learned state.

A restarted engine resumes with the Q-table, the adapted confidence tiers and
the exploration rate it had when it last persisted. Files live side by side:

    q_table.json              agent snapshot, replaced atomically
    strategy_state.json       LearnedState
    strategy_adjustments.ndjson  one line per threshold change
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..utils.logger import logger

if TYPE_CHECKING:  # pragma: no cover
    from ..config import ConfidenceThresholdsConfig
    from .q_agent import QLearningAgent


@dataclass
class LearnedState:
    minimum: float
    conservative: float
    aggressive: float
    exploration_rate: float
    episodes_completed: int = 0
    updated_at: str = ""

    @classmethod
    def capture(cls, thresholds: "ConfidenceThresholdsConfig", agent: "QLearningAgent") -> "LearnedState":
        return cls(
            minimum=thresholds.minimum,
            conservative=thresholds.conservative,
            aggressive=thresholds.aggressive,
            exploration_rate=agent.epsilon,
            episodes_completed=len(agent.episodes),
            updated_at=datetime.now(timezone.utc).isoformat(),
        )

    def apply(self, thresholds: "ConfidenceThresholdsConfig", agent: "QLearningAgent") -> None:
        # configured floor and maximum still bound whatever was learned
        thresholds.minimum = min(thresholds.maximum, max(thresholds.floor, self.minimum))
        thresholds.conservative = min(thresholds.maximum, self.conservative)
        thresholds.aggressive = min(thresholds.maximum, self.aggressive)
        agent.epsilon = max(agent.min_epsilon, self.exploration_rate)


class StrategyStateManager:
    """Reads and writes the learned-state files next to ``q_table_path``."""

    def __init__(self, q_table_path: Path):
        self.q_table_path = Path(q_table_path)
        self.q_table_path.parent.mkdir(parents=True, exist_ok=True)
        self.state_path = self.q_table_path.parent / "strategy_state.json"
        self.adjustments_path = self.q_table_path.parent / "strategy_adjustments.ndjson"

    def _read_json(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as exc:
            logger.warning(f"Ignoring unreadable learned state at {path}: {exc}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        tmp = path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
        tmp.replace(path)

    # ----------------------------------------------------------- q-table
    def save_q_table(self, snapshot: Dict[str, Any]) -> None:
        self._write_json(self.q_table_path, snapshot)

    def load_q_table(self) -> Dict[str, Any]:
        return self._read_json(self.q_table_path)

    # ------------------------------------------------------- learned knobs
    def load_state(self) -> Optional[LearnedState]:
        data = self._read_json(self.state_path)
        known = {f.name for f in fields(LearnedState)}
        try:
            return LearnedState(**{k: v for k, v in data.items() if k in known}) if data else None
        except TypeError as exc:
            logger.warning(f"Learned state at {self.state_path} is incomplete: {exc}")
            return None

    def save_state(self, state: LearnedState) -> None:
        self._write_json(self.state_path, asdict(state))

    def restore(self, thresholds: "ConfidenceThresholdsConfig", agent: "QLearningAgent") -> bool:
        """Load Q-table and knobs into a fresh agent; False when nothing was stored."""
        snapshot = self.load_q_table()
        if snapshot:
            agent.load_dict(snapshot)
        state = self.load_state()
        if state is not None:
            state.apply(thresholds, agent)
            logger.info(
                f"Restored learned state: minimum confidence {thresholds.minimum:.2f}, "
                f"exploration {agent.epsilon:.3f}, {state.episodes_completed} episodes"
            )
        return bool(snapshot) or state is not None

    def persist(self, thresholds: "ConfidenceThresholdsConfig", agent: "QLearningAgent") -> LearnedState:
        self.save_q_table(agent.to_dict())
        state = LearnedState.capture(thresholds, agent)
        self.save_state(state)
        return state

    def append_adjustment_record(self, adjustment: Dict[str, Any]) -> None:
        record = {**adjustment, "timestamp": datetime.now(timezone.utc).isoformat()}
        with self.adjustments_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, default=str) + "\n")
