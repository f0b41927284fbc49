"""Learning feedback loop: Q-learning, outcome tracking and accuracy insights."""

from .q_agent import (
    ActionType,
    ConvergenceStatus,
    Episode,
    QLearningAgent,
    QState,
    TradingAction,
    TradingState,
    action_key,
    discretize,
    hash_state,
)
from .rewards import RewardSignal, calculate_reward
from .strategy_state import LearnedState, StrategyStateManager
from .trade_feedback import LearningMetrics, ThresholdRecommendation, TradeFeedback
from .trade_learning import LearningInsights, PredictionAccuracyTracker

__all__ = [
    "ActionType",
    "ConvergenceStatus",
    "Episode",
    "LearnedState",
    "LearningInsights",
    "LearningMetrics",
    "PredictionAccuracyTracker",
    "QLearningAgent",
    "QState",
    "RewardSignal",
    "StrategyStateManager",
    "ThresholdRecommendation",
    "TradeFeedback",
    "TradingAction",
    "TradingState",
    "action_key",
    "calculate_reward",
    "discretize",
    "hash_state",
]
