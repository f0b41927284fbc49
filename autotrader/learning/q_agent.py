"""Tabular Q-learning over discretized market states."""
from __future__ import annotations

import math
import random
import threading
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import numpy as np

from ..config import LearningConfig
from ..utils.logger import logger
from .rewards import RewardSignal

SEED_REGIMES = ("BULL", "BEAR", "SIDEWAYS", "VOLATILE")
SESSIONS = ("PRE", "OPEN", "CLOSE", "AFTER")


class ActionType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class ConvergenceStatus(str, Enum):
    EXPLORING = "EXPLORING"
    CONVERGING = "CONVERGING"
    CONVERGED = "CONVERGED"


@dataclass(frozen=True)
class TradingAction:
    type: ActionType
    quantity: float = 0.0
    confidence: float = 0.5


@dataclass(frozen=True)
class TradingState:
    rsi: float = 50.0
    volatility: float = 0.2
    momentum: float = 0.0
    sentiment: float = 0.0
    regime: str = "SIDEWAYS"
    unrealized_pnl: float = 0.0
    hour: int = 10
    session: str = "OPEN"
    price: float = 0.0
    volume: float = 0.0
    macd: float = 0.0

    @classmethod
    def from_features(cls, features, regime: Any, unrealized_pnl: float = 0.0, session: str = "OPEN", hour: int = 10) -> "TradingState":
        return cls(
            rsi=features.rsi,
            volatility=features.volatility,
            momentum=features.momentum,
            sentiment=features.sentiment,
            regime=getattr(regime, "value", str(regime)),
            unrealized_pnl=unrealized_pnl,
            hour=hour,
            session=session,
            price=features.price,
            macd=features.macd,
        )


@dataclass
class QState:
    state_hash: str
    action_values: Dict[str, float] = field(default_factory=dict)
    visit_count: int = 0
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class EpisodeStep:
    state: TradingState
    action: TradingAction
    reward: RewardSignal


@dataclass
class Episode:
    symbol: str
    regime: str
    start_time: datetime
    steps: List[EpisodeStep] = field(default_factory=list)
    final_return: float = 0.0
    duration: float = 0.0
    end_time: Optional[datetime] = None


@dataclass(frozen=True)
class StrategyRecommendation:
    recommended_actions: Tuple[TradingAction, ...]
    confidence_score: float
    expected_return: float
    risk_level: float
    exploration_advice: Tuple[str, ...]


EXPLORE_ACTIONS: Tuple[TradingAction, ...] = (
    TradingAction(ActionType.BUY, 100, 0.6),
    TradingAction(ActionType.BUY, 200, 0.7),
    TradingAction(ActionType.SELL, 100, 0.6),
    TradingAction(ActionType.SELL, 200, 0.7),
    TradingAction(ActionType.HOLD, 0, 0.8),
)
DEFAULT_ACTION = TradingAction(ActionType.HOLD, 0, 0.5)


def discretize(value: float, low: float, high: float, buckets: int) -> int:
    bucket = math.floor((value - low) / (high - low) * buckets)
    return max(0, min(buckets - 1, bucket))


def hash_state(state: TradingState) -> str:
    return "|".join(
        str(part)
        for part in (
            discretize(state.rsi, 0, 100, 10),
            discretize(state.volatility, 0, 1, 5),
            discretize(state.momentum, -0.1, 0.1, 10),
            discretize(state.sentiment, -1, 1, 5),
            state.regime,
            discretize(state.unrealized_pnl, -1000, 1000, 10),
            state.hour // 6,
            state.session,
        )
    )


def action_key(action: TradingAction) -> str:
    return f"{action.type.value}|{discretize(action.quantity, 0, 1000, 5)}|{discretize(action.confidence, 0, 1, 5)}"


def parse_action_key(key: str) -> TradingAction:
    kind, quantity_bucket, confidence_bucket = key.split("|")
    return TradingAction(ActionType(kind), int(quantity_bucket) * 200, int(confidence_bucket) / 5)


class QLearningAgent:
    """Epsilon-greedy Q-learning agent with episodic backups.

    One episode corresponds to one trading session. Q-states are created
    lazily and never removed; the episode history is bounded.
    """

    def __init__(
        self,
        config: Optional[LearningConfig] = None,
        rng: Optional[random.Random] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        cfg = config or LearningConfig()
        self.alpha = cfg.alpha
        self.gamma = cfg.gamma
        self.epsilon = cfg.epsilon
        self.epsilon_decay = cfg.epsilon_decay
        self.min_epsilon = cfg.min_epsilon
        self._rng = rng or random.Random()
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.q_table: Dict[str, QState] = {}
        self.episodes: Deque[Episode] = deque(maxlen=cfg.episode_history_cap)
        self.current_episode: Optional[Episode] = None
        self._lock = threading.Lock()
        self._seed_table()

    def _seed_table(self) -> None:
        for regime in SEED_REGIMES:
            for session in SESSIONS:
                key = hash_state(TradingState(regime=regime, session=session, price=100, volume=1_000_000))
                self.q_table.setdefault(key, QState(key, last_updated=self._now()))

    # ---------------------------------------------------------------- policy
    def select_action(self, state: TradingState) -> TradingAction:
        if self._rng.random() < self.epsilon:
            return self._rng.choice(EXPLORE_ACTIONS)
        return self.best_action(state)

    def best_action(self, state: TradingState) -> TradingAction:
        with self._lock:
            q_state = self.q_table.get(hash_state(state))
            if q_state is None or not q_state.action_values:
                return DEFAULT_ACTION
            key = max(q_state.action_values.items(), key=lambda kv: kv[1])[0]
        return parse_action_key(key)

    def has_experience(self, state: TradingState) -> bool:
        with self._lock:
            q_state = self.q_table.get(hash_state(state))
            return bool(q_state and q_state.action_values)

    def q_value(self, state: TradingState, action: TradingAction) -> float:
        with self._lock:
            q_state = self.q_table.get(hash_state(state))
            return q_state.action_values.get(action_key(action), 0.0) if q_state else 0.0

    # ---------------------------------------------------------------- update
    def update(self, state: TradingState, action: TradingAction, reward: float, next_state: TradingState) -> float:
        """Apply one Q-learning backup and decay epsilon.

        Returns:
            The new Q(s, a)
        """
        state_hash = hash_state(state)
        key = action_key(action)
        with self._lock:
            q_state = self.q_table.get(state_hash)
            if q_state is None:
                q_state = QState(state_hash)
                self.q_table[state_hash] = q_state
            current = q_state.action_values.get(key, 0.0)
            next_q = self.q_table.get(hash_state(next_state))
            max_next = max(next_q.action_values.values()) if next_q and next_q.action_values else 0.0
            updated = current + self.alpha * (reward + self.gamma * max_next - current)
            q_state.action_values[key] = updated
            q_state.visit_count += 1
            q_state.last_updated = self._now()
            self.epsilon = max(self.min_epsilon, self.epsilon * self.epsilon_decay)
        return updated

    # -------------------------------------------------------------- episodes
    def start_episode(self, symbol: str, regime: Any) -> Episode:
        if self.current_episode is not None:
            logger.warning(f"Episode for {self.current_episode.symbol} still open; discarding it")
        self.current_episode = Episode(
            symbol=symbol,
            regime=getattr(regime, "value", str(regime)),
            start_time=self._now(),
        )
        return self.current_episode

    def record_step(self, state: TradingState, action: TradingAction, reward: RewardSignal) -> None:
        if self.current_episode is None:
            return
        self.current_episode.steps.append(EpisodeStep(state, action, reward))

    def end_episode(self, final_return: float) -> Optional[Episode]:
        """Close the current episode, propagate rewards backward and learn from it."""
        episode = self.current_episode
        if episode is None:
            return None
        self.current_episode = None
        episode.final_return = final_return
        episode.end_time = self._now()
        episode.duration = (episode.end_time - episode.start_time).total_seconds()

        steps = episode.steps
        for i in range(len(steps) - 2, -1, -1):
            discounted = steps[i].reward.total + self.gamma * steps[i + 1].reward.total
            steps[i] = replace(steps[i], reward=replace(steps[i].reward, total=discounted))
        for i in range(len(steps) - 1):
            self.update(steps[i].state, steps[i].action, steps[i].reward.total, steps[i + 1].state)

        with self._lock:
            self.episodes.append(episode)
        logger.info(
            f"Episode closed for {episode.symbol} ({episode.regime}): {len(steps)} steps, return {final_return:.4f}"
        )
        return episode

    # ------------------------------------------------------------- analytics
    def convergence_status(self) -> ConvergenceStatus:
        with self._lock:
            returns = [e.final_return for e in self.episodes]
        if len(returns) > 100:
            if float(np.var(returns[-50:])) < 0.01:
                return ConvergenceStatus.CONVERGED
            if self.epsilon < 0.05:
                return ConvergenceStatus.CONVERGING
        return ConvergenceStatus.EXPLORING

    def optimal_strategy(self, symbol: str, regime: Any) -> StrategyRecommendation:
        regime_name = getattr(regime, "value", str(regime))
        with self._lock:
            matching = [e for e in self.episodes if e.symbol == symbol and e.regime == regime_name]
        if not matching:
            return StrategyRecommendation(
                recommended_actions=(DEFAULT_ACTION,),
                confidence_score=0.3,
                expected_return=0.0,
                risk_level=0.5,
                exploration_advice=(
                    "Insufficient data for this regime",
                    "Consider manual trading to gather experience",
                ),
            )

        winners = sorted((e for e in matching if e.final_return > 0), key=lambda e: e.final_return, reverse=True)[:10]
        counts = Counter(action_key(step.action) for e in winners for step in e.steps)
        actions = tuple(parse_action_key(k) for k, _ in counts.most_common(3))
        avg_return = sum(e.final_return for e in matching) / len(matching)
        win_rate = len(winners) / len(matching)
        risk_level = 0.5
        if winners:
            risk_level = min(0.9, max(0.1, float(np.var([e.final_return for e in winners])) / 100))

        advice: List[str] = []
        if len(matching) < 10:
            advice.append("Limited experience in this regime - continue learning")
        if sum(1 for e in matching if e.final_return > 0) / len(matching) < 0.4:
            advice.append("Low success rate - consider different strategies")
        if self.epsilon > 0.2:
            advice.append("Still in exploration phase - results may vary")
        if sum(e.duration for e in matching) / len(matching) > 24 * 3600:
            advice.append("Consider shorter holding periods")

        return StrategyRecommendation(
            recommended_actions=actions or (DEFAULT_ACTION,),
            confidence_score=min(0.95, win_rate + len(matching) / 100),
            expected_return=avg_return,
            risk_level=risk_level,
            exploration_advice=tuple(advice),
        )

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            returns = [e.final_return for e in self.episodes]
            top = []
            for state_hash, q_state in self.q_table.items():
                if not q_state.action_values:
                    continue
                best_key, best_value = max(q_state.action_values.items(), key=lambda kv: kv[1])
                parts = state_hash.split("|")
                top.append({
                    "state": f"RSI:{parts[0]} Vol:{parts[1]} Mom:{parts[2]} Regime:{parts[4]}",
                    "best_action": best_key,
                    "q_value": best_value,
                })
            total_states = len(self.q_table)
        top.sort(key=lambda item: item["q_value"], reverse=True)
        return {
            "total_states": total_states,
            "exploration_rate": self.epsilon,
            "average_reward": sum(returns) / len(returns) if returns else 0.0,
            "episode_count": len(returns),
            "convergence_status": self.convergence_status().value,
            "top_strategies": top[:10],
        }

    # ----------------------------------------------------------- persistence
    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "epsilon": self.epsilon,
                "states": {
                    h: {
                        "action_values": dict(q.action_values),
                        "visit_count": q.visit_count,
                        "last_updated": q.last_updated.isoformat(),
                    }
                    for h, q in self.q_table.items()
                },
            }

    def load_dict(self, data: Dict[str, Any]) -> None:
        states = data.get("states", {})
        with self._lock:
            for state_hash, raw in states.items():
                self.q_table[state_hash] = QState(
                    state_hash=state_hash,
                    action_values={k: float(v) for k, v in raw.get("action_values", {}).items()},
                    visit_count=int(raw.get("visit_count", 0)),
                    last_updated=datetime.fromisoformat(raw["last_updated"]) if raw.get("last_updated") else self._now(),
                )
            if "epsilon" in data:
                self.epsilon = max(self.min_epsilon, float(data["epsilon"]))
        logger.info(f"Loaded {len(states)} Q-states (epsilon {self.epsilon:.4f})")
