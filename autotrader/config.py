"""Application configuration and settings management."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional
import os


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in {"1", "true", "yes"}


@dataclass
class ConfidenceThresholdsConfig:
    minimum: float = field(default_factory=lambda: float(os.environ.get("MIN_CONFIDENCE", "0.55")))
    conservative: float = 0.70
    aggressive: float = 0.80
    maximum: float = 0.95
    # Effective minimum never drops below this, whatever the accuracy nudge says
    floor: float = 0.55
    accuracy_min_samples: int = 10


@dataclass
class PositionSizingConfig:
    base_size: float = 0.05
    max_size: float = 0.10
    confidence_multiplier: float = 1.8
    min_order_value: float = 25.0
    max_order_value: float = field(default_factory=lambda: float(os.environ.get("MAX_ORDER_VALUE", "1000.0")))
    buying_power_buffer: float = 0.05
    conservative_mode: bool = field(default_factory=lambda: _env_bool("CONSERVATIVE_SIZING", "false"))
    fractional_shares: bool = False


@dataclass
class RiskControlsConfig:
    max_daily_trades: int = field(default_factory=lambda: int(os.environ.get("MAX_DAILY_TRADES", "20")))
    max_open_positions: int = field(default_factory=lambda: int(os.environ.get("MAX_OPEN_POSITIONS", "10")))
    max_daily_loss: float = field(default_factory=lambda: float(os.environ.get("MAX_DAILY_LOSS", "0.05")))
    cooldown_minutes: float = field(default_factory=lambda: float(os.environ.get("TRADE_COOLDOWN_MINUTES", "5")))


@dataclass
class ExecutionRulesConfig:
    auto_execute: bool = field(default_factory=lambda: _env_bool("AUTO_EXECUTE", "true"))
    market_hours_only: bool = True
    volume_threshold: float = 100_000.0
    spread_threshold: float = 0.01
    crypto_spread_threshold: float = 0.02
    crypto_trading_enabled: bool = False
    after_hours_trading: bool = False
    weekend_trading: bool = False
    max_executions_per_cycle: int = 3
    history_size: int = 500


@dataclass
class RiskLimitsConfig:
    """Portfolio-level ceilings used by the risk validator."""
    max_portfolio_risk: float = 0.02
    max_daily_loss: float = 0.05
    max_drawdown: float = 0.15
    max_position_size: float = 0.10
    max_concentration: float = 0.25
    min_risk_reward: float = 1.5
    atr_period: int = 14
    atr_stop_multiplier: float = 2.0
    var_confidence: float = 0.95


@dataclass
class RegimeConfig:
    min_regime_hours: float = 24.0
    change_confidence: float = 0.75
    min_samples: int = 20


@dataclass
class ForecastConfig:
    min_bars: int = 26
    horizon_hours: int = 24
    lstm_weight: float = 0.35
    transformer_weight: float = 0.40
    random_forest_weight: float = 0.25
    history_size: int = 200


@dataclass
class LearningConfig:
    enabled: bool = True
    alpha: float = 0.1
    gamma: float = 0.95
    epsilon: float = 0.1
    epsilon_decay: float = 0.999
    min_epsilon: float = 0.01
    episode_history_cap: int = 500
    outcome_history_cap: int = 1000
    min_outcomes_for_insights: int = 10
    state_path: str = "data/learning/q_table.json"
    outcomes_path: str = "data/learning/trade_outcomes.jsonl"


@dataclass
class SchedulerConfig:
    watchlist: List[str] = field(
        default_factory=lambda: [
            s.strip() for s in os.environ.get("WATCHLIST", "AAPL,MSFT,GOOGL,AMZN,SPY").split(",") if s.strip()
        ]
    )
    decision_interval_seconds: int = 300
    data_refresh_seconds: int = 60
    risk_monitor_seconds: int = 120
    learning_interval_seconds: int = 900
    daily_reset_check_seconds: int = 60
    cache_size: int = 200
    initial_bars: int = 100
    bar_timeframe: str = "1Day"


@dataclass
class BrokerConfig:
    backend: str = field(default_factory=lambda: os.environ.get("BROKER_BACKEND", "paper").lower())
    ibkr_host: str = field(default_factory=lambda: os.environ.get("IBKR_HOST", "127.0.0.1"))
    ibkr_port: int = field(default_factory=lambda: int(os.environ.get("IBKR_PORT", "4002")))
    ibkr_client_id: int = field(default_factory=lambda: int(os.environ.get("IBKR_CLIENT_ID", "1")))
    exchange: str = "SMART"
    currency: str = "USD"
    paper_starting_cash: float = 100_000.0


@dataclass
class LoggingConfig:
    level: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: os.environ.get("LOG_FILE"))
    serialize: bool = False
    slack_webhook_url: Optional[str] = field(default_factory=lambda: os.environ.get("SLACK_WEBHOOK_URL"))


@dataclass
class Settings:
    thresholds: ConfidenceThresholdsConfig = field(default_factory=ConfidenceThresholdsConfig)
    sizing: PositionSizingConfig = field(default_factory=PositionSizingConfig)
    risk_controls: RiskControlsConfig = field(default_factory=RiskControlsConfig)
    execution: ExecutionRulesConfig = field(default_factory=ExecutionRulesConfig)
    risk: RiskLimitsConfig = field(default_factory=RiskLimitsConfig)
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        if not 0 < self.thresholds.minimum < 1:
            raise ValueError("minimum confidence must be between 0 and 1")
        if self.sizing.base_size <= 0 or self.sizing.max_size <= 0:
            raise ValueError("position sizes must be positive")
        if self.sizing.base_size > self.sizing.max_size:
            raise ValueError("base position size cannot exceed max position size")
        if self.sizing.min_order_value > self.sizing.max_order_value:
            raise ValueError("min order value cannot exceed max order value")
        if not 0 <= self.sizing.buying_power_buffer < 1:
            raise ValueError("buying power buffer must be in [0, 1)")
        if self.risk_controls.max_daily_trades < 0:
            raise ValueError("max daily trades cannot be negative")
        if self.risk_controls.max_daily_loss <= 0:
            raise ValueError("max daily loss must be positive")
        if not 0 < self.learning.alpha <= 1 or not 0 <= self.learning.gamma <= 1:
            raise ValueError("learning rate and discount must be within (0, 1]")
        if self.forecast.min_bars < 21:
            raise ValueError("forecast.min_bars must be at least 21")
        if not self.scheduler.watchlist:
            raise ValueError("watchlist cannot be empty")
        if self.sizing.max_size > 0.10:
            # Hard cap in code even if config tries to override
            self.sizing.max_size = 0.10
        if self.risk_controls.max_daily_trades > 100:
            self.risk_controls.max_daily_trades = 100
