"""IBKR gateway against a mocked ib_insync connection."""
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from autotrader.data.ibkr import IBKRBrokerGateway
from autotrader.data.models import OrderRequest, OrderSide, OrderStatus, OrderType, PositionSide
from autotrader.errors import BrokerResponseError


def _trade(status: str, filled: float = 0.0, avg_fill: float = 0.0, order_id: int = 7):
    return SimpleNamespace(
        order=SimpleNamespace(orderId=order_id),
        orderStatus=SimpleNamespace(status=status, filled=filled, avgFillPrice=avg_fill),
        isDone=lambda: status in ("Filled", "Cancelled", "ApiCancelled", "Inactive"),
    )


@pytest.fixture
def ib():
    mock = MagicMock()
    mock.isConnected.return_value = False
    mock.connectAsync = AsyncMock()
    return mock


@pytest.fixture
def gateway(ib):
    return IBKRBrokerGateway(ib, fill_timeout=0.5, max_retries=2, base_delay=0)


class TestConnection:
    @pytest.mark.asyncio
    async def test_retries_then_connects(self, ib, gateway):
        ib.connectAsync.side_effect = [ConnectionRefusedError("gateway down"), None]
        await gateway.connect()
        assert ib.connectAsync.await_count == 2
        assert ib.connectAsync.await_args.kwargs["clientId"] == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, ib, gateway):
        ib.connectAsync.side_effect = ConnectionRefusedError("gateway down")
        with pytest.raises(BrokerResponseError, match="Could not connect"):
            await gateway.connect()

    @pytest.mark.asyncio
    async def test_already_connected_is_noop(self, ib, gateway):
        ib.isConnected.return_value = True
        await gateway.connect()
        ib.connectAsync.assert_not_called()


class TestAccount:
    @pytest.mark.asyncio
    async def test_account_summary_tags(self, ib, gateway):
        ib.accountSummaryAsync = AsyncMock(return_value=[
            SimpleNamespace(tag="NetLiquidation", value="105000.5"),
            SimpleNamespace(tag="TotalCashValue", value="40000"),
            SimpleNamespace(tag="BuyingPower", value="80000"),
            SimpleNamespace(tag="Currency", value="USD"),
        ])
        account = await gateway.get_account()
        assert account.equity == 105000.5
        assert account.buying_power == 80000.0

    @pytest.mark.asyncio
    async def test_missing_tag_is_a_schema_error(self, ib, gateway):
        ib.accountSummaryAsync = AsyncMock(return_value=[SimpleNamespace(tag="NetLiquidation", value="1")])
        with pytest.raises(BrokerResponseError, match="cash"):
            await gateway.get_account()

    @pytest.mark.asyncio
    async def test_positions_skip_flat_and_read_shorts(self, ib, gateway):
        ib.positions.return_value = [
            SimpleNamespace(contract=SimpleNamespace(symbol="AAPL"), position=-10, avgCost=150.0),
            SimpleNamespace(contract=SimpleNamespace(symbol="MSFT"), position=0, avgCost=300.0),
        ]
        positions = await gateway.get_positions()
        assert len(positions) == 1
        assert positions[0].side == PositionSide.SHORT
        assert positions[0].quantity == 10


class TestOrders:
    @pytest.mark.asyncio
    async def test_market_order_waits_for_fill(self, ib, gateway):
        ib.placeOrder.return_value = _trade("Filled", 10, 100.5)
        result = await gateway.create_order(
            OrderRequest("AAPL", OrderSide.BUY, 10, client_order_id="ai_AAPL_1")
        )
        assert result.status == OrderStatus.FILLED
        assert result.filled_price == 100.5
        contract, order = ib.placeOrder.call_args.args
        assert contract.symbol == "AAPL"
        assert order.action == "BUY"
        assert order.orderRef == "ai_AAPL_1"

    @pytest.mark.asyncio
    async def test_partial_fill_after_timeout(self, ib, gateway):
        ib.placeOrder.return_value = _trade("Submitted", 4, 100.2)
        result = await gateway.create_order(OrderRequest("AAPL", OrderSide.BUY, 10))
        assert result.status == OrderStatus.PARTIALLY_FILLED
        assert result.filled_quantity == 4

    @pytest.mark.asyncio
    async def test_stop_order_is_gtc_and_rounded(self, ib, gateway):
        ib.placeOrder.return_value = _trade("PreSubmitted")
        result = await gateway.create_order(
            OrderRequest("AAPL", OrderSide.SELL, 10, OrderType.STOP, "GTC", stop_price=95.1234)
        )
        assert result.status == OrderStatus.NEW
        order = ib.placeOrder.call_args.args[1]
        assert order.tif == "GTC"
        assert order.auxPrice == 95.12

    @pytest.mark.asyncio
    async def test_inactive_order_is_rejected(self, ib, gateway):
        ib.placeOrder.return_value = _trade("Inactive")
        result = await gateway.create_order(
            OrderRequest("AAPL", OrderSide.SELL, 10, OrderType.LIMIT, "GTC", limit_price=120.0)
        )
        assert result.status == OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_limit_without_price_raises(self, gateway):
        with pytest.raises(BrokerResponseError, match="limit_price"):
            await gateway.create_order(OrderRequest("AAPL", OrderSide.SELL, 10, OrderType.LIMIT))


class TestMarketData:
    @pytest.mark.asyncio
    async def test_bars_are_trimmed_to_limit(self, ib, gateway):
        raw = [
            SimpleNamespace(date=datetime(2024, 3, d, tzinfo=timezone.utc), open=1, high=2, low=0.5, close=1.5, volume=100)
            for d in (1, 4, 5)
        ]
        ib.reqHistoricalDataAsync = AsyncMock(return_value=raw)
        bars = await gateway.get_bars("AAPL", "1Day", 2)
        assert [b.timestamp.day for b in bars] == [4, 5]
        assert ib.reqHistoricalDataAsync.await_args.kwargs["durationStr"] == "4 D"

    @pytest.mark.asyncio
    async def test_quote(self, ib, gateway):
        ib.reqTickersAsync = AsyncMock(return_value=[SimpleNamespace(bid=99.9, ask=100.1)])
        quote = await gateway.get_latest_quote("AAPL")
        assert quote.mid == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_empty_or_nan_quote_raises(self, ib, gateway):
        ib.reqTickersAsync = AsyncMock(return_value=[])
        with pytest.raises(BrokerResponseError, match="no quote"):
            await gateway.get_latest_quote("AAPL")
        ib.reqTickersAsync = AsyncMock(return_value=[SimpleNamespace(bid=float("nan"), ask=100.1)])
        with pytest.raises(BrokerResponseError):
            await gateway.get_latest_quote("AAPL")
