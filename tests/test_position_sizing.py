import pytest

from autotrader.config import PositionSizingConfig
from autotrader.risk.position_sizing import BuyingPowerSizer


@pytest.fixture
def sizer():
    return BuyingPowerSizer(PositionSizingConfig())


def test_high_confidence_is_capped_by_max_order_value(sizer):
    sized = sizer.size(95, "AAPL", 100_000)
    assert sized.notional == 1_000.0
    assert sized.within_limits


def test_neutral_confidence_uses_base_percent(sizer):
    sized = sizer.size(50, "AAPL", 10_000)
    assert sized.notional == pytest.approx(500.0)
    assert sized.percent_of_buying_power == pytest.approx(0.05)


def test_insufficient_buying_power_returns_zero(sizer):
    sized = sizer.size(90, "AAPL", 10)
    assert sized.notional == 0.0
    assert not sized.within_limits
    assert "Insufficient buying power" in sized.reasoning


def test_conservative_mode_tightens_limits():
    sizer = BuyingPowerSizer(PositionSizingConfig(conservative_mode=True))
    assert sizer.base_percent == 0.03
    assert sizer.max_order_value == 200.0
    sized = sizer.size(90, "AAPL", 1_000)
    assert sized.notional == pytest.approx(51.0)
    assert sizer.order_cap(100_000) == 200.0


def test_order_cap_respects_buffer(sizer):
    assert sizer.order_cap(1_000) == pytest.approx(800.0)


def test_validate_position_size(sizer):
    assert sizer.validate_position_size(500, 10_000) == (True, None)

    ok, reason = sizer.validate_position_size(10, 10_000)
    assert not ok and "below minimum" in reason

    ok, reason = sizer.validate_position_size(960, 1_000)
    assert not ok and "buying power" in reason

    ok, reason = sizer.validate_position_size(1_500, 100_000)
    assert not ok and "maximum order value" in reason
