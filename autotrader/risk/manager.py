"""Risk validation, position sizing and real-time portfolio monitoring."""
from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Deque, Dict, List, Mapping, Optional

import pandas as pd

from ..config import RiskLimitsConfig
from ..data.models import OrderSide, Portfolio, Position, PositionSide
from ..errors import SoftWarn
from ..features import indicators as ind
from ..utils.logger import logger

SECTORS = {
    "Technology": {"AAPL", "MSFT", "GOOGL", "AMZN", "TSLA", "META"},
    "Finance": {"JPM", "BAC", "WFC", "GS", "MS"},
    "Healthcare": {"JNJ", "PFE", "UNH", "MRNA", "ABT"},
}

# Assumed annual portfolio volatility for VaR and Sharpe
PORTFOLIO_VOL = 0.15
RISK_FREE_RATE = 0.02


def sector_for(symbol: str) -> str:
    for sector, members in SECTORS.items():
        if symbol in members:
            return sector
    return "Other"


@dataclass
class PositionSizing:
    """Sizing proposal; ``recommended_size`` is a fraction of portfolio value."""

    recommended_size: float
    max_size: float
    stop_loss: float
    take_profit: float
    risk_reward_ratio: float
    risk_amount: float = 0.0
    atr: float = 0.0


@dataclass
class RiskMetrics:
    portfolio_value: float
    total_risk: float
    var95: float
    var99: float
    sharpe_ratio: float
    max_drawdown: float
    concentration: float
    correlation: float
    sector_weights: Dict[str, float] = field(default_factory=dict)


@dataclass
class RiskAssessment:
    approved: bool
    sizing: PositionSizing
    warnings: List[SoftWarn] = field(default_factory=list)
    restrictions: List[str] = field(default_factory=list)
    metrics: Optional[RiskMetrics] = None

    @property
    def reason(self) -> str:
        return "; ".join(self.restrictions) if self.restrictions else "approved"


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class RiskAction(str, Enum):
    MONITOR = "MONITOR"
    REDUCE_POSITION = "REDUCE_POSITION"
    CLOSE_POSITION = "CLOSE_POSITION"
    STOP_TRADING = "STOP_TRADING"


@dataclass(frozen=True)
class RiskAlert:
    severity: AlertSeverity
    kind: str
    message: str
    action: RiskAction
    score: int
    symbol: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class StressResult:
    scenario: str
    pnl: float
    pnl_pct: float
    breaches_daily_loss: bool


# scenario -> (shock for all, per-sector overrides)
STRESS_SCENARIOS: Dict[str, tuple] = {
    "market_crash": (-0.20, {}),
    "tech_selloff": (0.0, {"Technology": -0.30}),
    "rate_shock": (-0.05, {"Finance": -0.10}),
}


class RiskValidator:
    """Kelly/volatility sizing with ATR stops and a reject-vs-warn policy.

    Daily-loss and drawdown breaches are restrictions (hard reject); portfolio
    risk, low confidence, high volatility and weak reward:risk are warnings.
    """

    def __init__(self, limits: Optional[RiskLimitsConfig] = None, alert_history: int = 500) -> None:
        self.limits = limits or RiskLimitsConfig()
        self._alerts: Deque[RiskAlert] = deque(maxlen=alert_history)
        self._lock = threading.Lock()
        self.daily_pnl = 0.0
        self.max_daily_pnl_seen = 0.0
        self.validations = 0
        self.approvals = 0
        self.rejections = 0
        self.last_metrics: Optional[RiskMetrics] = None

    @classmethod
    def from_settings(cls, settings) -> "RiskValidator":
        return cls(settings.risk)

    # ------------------------------------------------------------------ sizing
    @staticmethod
    def market_volatility(df: pd.DataFrame) -> float:
        return ind.annualized_volatility(df["close"].astype(float).to_numpy(), default=0.2)

    @staticmethod
    def estimate_win_rate(confidence: float) -> float:
        return min(0.8, max(0.3, 0.55 + (confidence - 0.5) * 0.2))

    def kelly_fraction(self, confidence: float, volatility: float) -> float:
        vol = max(volatility, 0.01)
        win_rate = self.estimate_win_rate(confidence)
        avg_win = vol * 1.5
        avg_loss = vol
        kelly = (win_rate * avg_win - (1 - win_rate) * avg_loss) / avg_win
        return max(0.0, min(0.25, kelly))

    def atr(self, df: pd.DataFrame) -> float:
        return ind.average_true_range(
            df["high"].to_numpy(), df["low"].to_numpy(), df["close"].to_numpy(), self.limits.atr_period
        )

    def calculate_position_size(self, action: OrderSide, confidence: float, portfolio: Portfolio, df: pd.DataFrame) -> PositionSizing:
        price = float(df["close"].iloc[-1])
        limits = self.limits
        volatility = self.market_volatility(df)

        kelly = self.kelly_fraction(confidence, volatility)
        vol_cap = limits.max_portfolio_risk / max(volatility, 0.01)
        size = min(kelly, vol_cap, limits.max_position_size)

        atr = self.atr(df)
        offset = atr * limits.atr_stop_multiplier
        stop_loss = price - offset if action == OrderSide.BUY else price + offset
        risk_per_share = abs(price - stop_loss)
        if risk_per_share > 0:
            # Loss at the stop may not exceed max_portfolio_risk of portfolio value
            size = min(size, limits.max_portfolio_risk / (risk_per_share / price))
        reward = risk_per_share * limits.min_risk_reward
        take_profit = price + reward if action == OrderSide.BUY else price - reward

        rr = reward / risk_per_share if risk_per_share > 0 else 0.0
        size = max(0.0, size)
        return PositionSizing(
            recommended_size=size,
            max_size=limits.max_position_size,
            stop_loss=stop_loss,
            take_profit=take_profit,
            risk_reward_ratio=rr,
            risk_amount=size * portfolio.total_value * (risk_per_share / price),
            atr=atr,
        )

    # -------------------------------------------------------------- validation
    def validate_trade(self, action: OrderSide, confidence: float, portfolio: Portfolio, df: pd.DataFrame) -> RiskAssessment:
        """Size the trade and apply the reject-vs-warn policy.

        Args:
            action: Proposed order side
            confidence: Forecast confidence in [0, 1]
            portfolio: Current portfolio snapshot
            df: OHLCV window for the symbol

        Returns:
            RiskAssessment with sizing, warnings and restrictions
        """
        warnings: List[SoftWarn] = []
        restrictions: List[str] = []
        sizing = self.calculate_position_size(action, confidence, portfolio, df)
        metrics = self.portfolio_risk(portfolio)

        if metrics.total_risk > 0.15:
            warnings.append(SoftWarn("portfolio_risk", f"High portfolio risk: {metrics.total_risk * 100:.1f}%"))

        if portfolio.day_pnl < -self.limits.max_daily_loss * portfolio.total_value:
            restrictions.append("Daily loss limit reached - trading suspended")
            return self._finish(RiskAssessment(False, sizing, warnings, restrictions, metrics))

        if metrics.max_drawdown > self.limits.max_drawdown:
            restrictions.append(f"Drawdown limit exceeded: {metrics.max_drawdown * 100:.1f}%")
            return self._finish(RiskAssessment(False, sizing, warnings, restrictions, metrics))

        if metrics.concentration > self.limits.max_concentration:
            warnings.append(SoftWarn(
                "concentration",
                f"Largest position is {metrics.concentration * 100:.1f}% of the portfolio "
                f"(limit {self.limits.max_concentration * 100:.0f}%)",
            ))

        if confidence < 0.6:
            warnings.append(SoftWarn("low_confidence", f"Low signal confidence: {confidence * 100:.1f}%"))

        if self.market_volatility(df) > 0.4:
            warnings.append(SoftWarn("high_volatility", "High market volatility detected"))
            sizing.recommended_size *= 0.7

        if sizing.risk_reward_ratio < self.limits.min_risk_reward:
            warnings.append(SoftWarn("risk_reward", f"Poor risk/reward ratio: {sizing.risk_reward_ratio:.1f}:1"))

        approved = not restrictions and sizing.recommended_size > 0
        return self._finish(RiskAssessment(approved, sizing, warnings, restrictions, metrics))

    def _finish(self, assessment: RiskAssessment) -> RiskAssessment:
        with self._lock:
            self.validations += 1
            if assessment.approved:
                self.approvals += 1
            else:
                self.rejections += 1
        if assessment.restrictions:
            logger.warning(f"Risk rejected trade: {assessment.reason}")
        return assessment

    # ----------------------------------------------------------- portfolio risk
    def portfolio_risk(self, portfolio: Portfolio) -> RiskMetrics:
        value = portfolio.total_value
        concentration = 0.0
        sector_weights: Dict[str, float] = {}
        if value > 0:
            for position in portfolio.positions:
                weight = position.market_value / value
                concentration = max(concentration, weight)
                sector = sector_for(position.symbol)
                sector_weights[sector] = sector_weights.get(sector, 0.0) + weight

        correlation = self._correlation_risk(portfolio.positions)
        var95 = self.value_at_risk(value, 0.95)
        var99 = self.value_at_risk(value, 0.99)
        # total risk is measured at the configured VaR confidence
        var_ratio = self.value_at_risk(value, self.limits.var_confidence) / value if value > 0 else 0.0
        total_risk = math.sqrt(concentration ** 2 + correlation ** 2 + var_ratio ** 2)
        total_return = portfolio.total_pnl / value if value > 0 else 0.0

        metrics = RiskMetrics(
            portfolio_value=value,
            total_risk=total_risk,
            var95=var95,
            var99=var99,
            sharpe_ratio=(total_return - RISK_FREE_RATE) / PORTFOLIO_VOL,
            max_drawdown=abs(min(0.0, total_return)),
            concentration=concentration,
            correlation=correlation,
            sector_weights=sector_weights,
        )
        self.last_metrics = metrics
        return metrics

    @staticmethod
    def _correlation_risk(positions: List[Position]) -> float:
        if len(positions) < 2:
            return 0.0
        tech_share = sum(1 for p in positions if sector_for(p.symbol) == "Technology") / len(positions)
        return tech_share * 0.3 if tech_share > 0.5 else 0.1

    @staticmethod
    def value_at_risk(value: float, confidence: float = 0.95) -> float:
        if confidence >= 0.99:
            z = 2.326
        elif confidence >= 0.95:
            z = 1.645
        else:
            z = 1.282
        return value * PORTFOLIO_VOL / math.sqrt(252) * z

    # --------------------------------------------------------------- monitoring
    def update_daily_pnl(self, pnl: float) -> None:
        self.daily_pnl = pnl
        self.max_daily_pnl_seen = max(self.max_daily_pnl_seen, pnl)

    def reset_daily(self, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        self.daily_pnl = 0.0
        self.max_daily_pnl_seen = 0.0
        cutoff = now - timedelta(hours=24)
        with self._lock:
            kept = [a for a in self._alerts if a.timestamp > cutoff]
            self._alerts.clear()
            self._alerts.extend(kept)

    def position_risk_score(self, position: Position, df: Optional[pd.DataFrame]) -> tuple[int, List[str]]:
        if df is None or len(df) < 2:
            return 5, ["Insufficient data"]
        score = 0
        reasons: List[str] = []
        value = position.market_value
        loss_pct = position.unrealized_pnl / value if value else 0.0
        if loss_pct < -0.10:
            score += 7
            reasons.append(f"Large unrealized loss: {loss_pct * 100:.1f}%")

        momentum = ind.momentum_mean(df["close"].astype(float).to_numpy()[-5:])
        if position.side == PositionSide.LONG and momentum < -0.05:
            score += 6
            reasons.append("Negative momentum in long position")
        elif position.side == PositionSide.SHORT and momentum > 0.05:
            score += 6
            reasons.append("Positive momentum in short position")

        if self.market_volatility(df) > 0.5:
            score += 5
            reasons.append("High volatility")
        return min(10, score), reasons

    def monitor_portfolio(self, portfolio: Portfolio, market: Mapping[str, pd.DataFrame]) -> List[RiskAlert]:
        """Scan the portfolio and cached market data for risk alerts."""
        alerts: List[RiskAlert] = []
        day_change = portfolio.day_change

        if day_change < -0.03:
            alerts.append(RiskAlert(
                AlertSeverity.WARNING, "daily_loss", f"Portfolio down {day_change * 100:.1f}% today",
                RiskAction.MONITOR, 5,
            ))
        if day_change < -0.05:
            alerts.append(RiskAlert(
                AlertSeverity.CRITICAL, "daily_loss", f"Significant daily loss: {day_change * 100:.1f}%",
                RiskAction.REDUCE_POSITION, 8,
            ))

        drawdown = self.portfolio_risk(portfolio).max_drawdown
        if drawdown > self.limits.max_drawdown:
            alerts.append(RiskAlert(
                AlertSeverity.CRITICAL, "drawdown", f"Drawdown {drawdown * 100:.1f}% above ceiling",
                RiskAction.STOP_TRADING, 10,
            ))

        for position in portfolio.positions:
            score, reasons = self.position_risk_score(position, market.get(position.symbol))
            if score >= 7:
                alerts.append(RiskAlert(
                    AlertSeverity.CRITICAL, "position_risk",
                    f"High risk in {position.symbol}: {', '.join(reasons)}",
                    RiskAction.CLOSE_POSITION, score, symbol=position.symbol,
                ))

        for symbol, df in market.items():
            if len(df) < 2:
                continue
            vol = self.market_volatility(df)
            if vol > 0.6:
                alerts.append(RiskAlert(
                    AlertSeverity.WARNING, "volatility", f"High volatility in {symbol}: {vol * 100:.1f}%",
                    RiskAction.MONITOR, 6, symbol=symbol,
                ))

        with self._lock:
            self._alerts.extend(alerts)
        return alerts

    def recent_alerts(self) -> List[RiskAlert]:
        with self._lock:
            return list(self._alerts)

    def stress_test(self, portfolio: Portfolio) -> List[StressResult]:
        """Apply fixed price shocks to the open positions."""
        results = []
        for name, (base_shock, sector_shocks) in STRESS_SCENARIOS.items():
            pnl = 0.0
            for position in portfolio.positions:
                shock = sector_shocks.get(sector_for(position.symbol), base_shock)
                direction = 1.0 if position.side == PositionSide.LONG else -1.0
                pnl += position.market_value * shock * direction
            pct = pnl / portfolio.total_value if portfolio.total_value else 0.0
            results.append(StressResult(
                scenario=name,
                pnl=pnl,
                pnl_pct=pct,
                breaches_daily_loss=pct < -self.limits.max_daily_loss,
            ))
        return results

    def get_statistics(self) -> Dict[str, object]:
        with self._lock:
            alerts = list(self._alerts)
            stats = {
                "validations": self.validations,
                "approvals": self.approvals,
                "rejections": self.rejections,
            }
        by_severity = {s.value: sum(1 for a in alerts if a.severity == s) for s in AlertSeverity}
        stats.update({
            "alerts": len(alerts),
            "alerts_by_severity": by_severity,
            "daily_pnl": self.daily_pnl,
            "total_risk": self.last_metrics.total_risk if self.last_metrics else None,
            "max_drawdown": self.last_metrics.max_drawdown if self.last_metrics else None,
            "approval_rate": stats["approvals"] / stats["validations"] if stats["validations"] else 0.0,
        })
        return stats
