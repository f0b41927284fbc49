"""Tests for regime classification and the change hysteresis."""
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from autotrader.strategies.market_regime import (
    MarketRegime,
    RegimeCharacteristics,
    RegimeClassifier,
    classify,
    regime_strategy,
)

T0 = datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def _frame(returns, start: float = 100.0) -> pd.DataFrame:
    closes = [start]
    for r in returns:
        closes.append(closes[-1] * (1 + r))
    index = pd.date_range("2024-01-02", periods=len(closes), freq="D", tz="UTC")
    return pd.DataFrame(
        {
            "open": closes,
            "high": [c * 1.005 for c in closes],
            "low": [c * 0.995 for c in closes],
            "close": closes,
            "volume": [1_000_000.0] * len(closes),
        },
        index=index,
    )


@pytest.fixture
def uptrend():
    """Strictly increasing closes with flat volume."""
    return _frame([0.02 if i % 2 else 0.03 for i in range(29)])


@pytest.fixture
def choppy():
    return _frame([0.05 if i % 2 else -0.05 for i in range(40)])


class TestClassify:
    def test_flat_volume_waives_volume_confirmation(self):
        ch = RegimeCharacteristics(trend_strength=0.03, volatility=0.1, momentum=0.05,
                                   volume_pattern=0.0, volume_informative=False)
        assert classify(ch) == MarketRegime.BULL

    def test_uncorrelated_volume_blocks_bull(self):
        ch = RegimeCharacteristics(trend_strength=0.03, volatility=0.1, momentum=0.05,
                                   volume_pattern=0.0, volume_informative=True)
        assert classify(ch) == MarketRegime.SIDEWAYS

    def test_volatility_wins_over_trend(self):
        ch = RegimeCharacteristics(trend_strength=0.05, volatility=0.5, momentum=0.1)
        assert classify(ch) == MarketRegime.VOLATILE

    def test_bear(self):
        ch = RegimeCharacteristics(trend_strength=-0.03, volatility=0.2, momentum=-0.05)
        assert classify(ch) == MarketRegime.BEAR

    def test_strategy_table_covers_every_regime(self):
        for regime in MarketRegime:
            assert regime_strategy(regime).confidence_threshold > 0


class TestRegimeClassifier:
    def test_uptrend_reads_bull_within_twenty_bars(self, uptrend):
        classifier = RegimeClassifier(now=Clock(T0))
        signal = classifier.detect(uptrend.iloc[:20], "AAPL")
        assert signal.regime == MarketRegime.BULL
        assert signal.characteristics.volume_informative is False

    def test_starts_sideways(self):
        classifier = RegimeClassifier(now=Clock(T0))
        assert classifier.active_regime == MarketRegime.SIDEWAYS
        assert classifier.regime_history() == []

    def test_change_waits_for_minimum_duration(self, choppy):
        clock = Clock(T0)
        classifier = RegimeClassifier(min_regime_hours=24, change_confidence=0.75, now=clock)

        first = classifier.detect(choppy, "SPY")
        assert first.regime == MarketRegime.VOLATILE
        assert first.confidence > 0.75
        assert first.change_signal is False
        assert classifier.active_regime == MarketRegime.SIDEWAYS

        clock.advance(hours=23)
        assert classifier.detect(choppy, "SPY").change_signal is False

        clock.advance(hours=2)
        changed = classifier.detect(choppy, "SPY")
        assert changed.change_signal is True
        assert changed.active_regime == MarketRegime.VOLATILE
        assert len(classifier.regime_history()) == 1
        assert classifier.duration_hours() == 0

    def test_low_confidence_regime_is_not_committed(self, uptrend):
        clock = Clock(T0)
        classifier = RegimeClassifier(now=clock)
        clock.advance(hours=48)
        signal = classifier.detect(uptrend, "AAPL")
        assert signal.regime == MarketRegime.BULL
        assert signal.confidence < 0.75
        assert classifier.active_regime == MarketRegime.SIDEWAYS

    def test_detection_failure_falls_back_to_sideways(self):
        classifier = RegimeClassifier(now=Clock(T0))
        signal = classifier.detect(pd.DataFrame({"price": [1.0, 2.0]}), "BAD")
        assert signal.regime == MarketRegime.SIDEWAYS
        assert signal.confidence == 0.5
        assert signal.adapted_strategy == "CONSERVATIVE"
