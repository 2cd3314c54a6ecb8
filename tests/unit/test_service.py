"""
Tests for TradingEngineService.

The service is the outward boundary: every call returns a result model and
engine errors surface as error codes.
"""

import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest
import pytest_asyncio

from conftest import USER_ID, make_request
from trade_engine import TradingEngineService
from trade_engine.config import Config
from trade_engine.ledger import InMemoryLedgerStore, SqlLedgerStore
from trade_engine.models import OrderStatus, OrderType, ServiceResult, SizingReasonCode
from trade_engine.price_oracle import StaticPriceOracle


@pytest_asyncio.fixture
async def service():
    oracle = StaticPriceOracle({"AAPL": "180", "MSFT": "350"})
    svc = TradingEngineService(InMemoryLedgerStore(), oracle, config=Config(), run_monitors=False)
    await svc.start()
    yield svc
    await svc.stop()


class TestOrders:
    @pytest.mark.asyncio
    async def test_market_buy(self, service):
        result = await service.submit_order(make_request(quantity="5"))

        assert result.success
        assert result.status == OrderStatus.FILLED
        assert result.executed_shares == Decimal("5")

        fetched = await service.get_order(USER_ID, result.order_id)
        assert fetched.success
        assert fetched.data.status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_a_result(self, service):
        result = await service.submit_order(make_request(quantity="100"))

        assert not result.success
        assert result.error_code == "INSUFFICIENT_FUNDS"

    @pytest.mark.asyncio
    async def test_unexpected_engine_error(self, service):
        with patch.object(service.engine, "execute_order", side_effect=RuntimeError("boom")):
            result = await service.submit_order(make_request())

        assert not result.success
        assert result.status == OrderStatus.REJECTED
        assert result.error_code == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_cancel_pending_limit(self, service):
        placed = await service.submit_order(
            make_request(quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("150"))
        )
        assert placed.status == OrderStatus.PENDING

        cancelled = await service.cancel_order(USER_ID, placed.order_id)
        again = await service.cancel_order(USER_ID, placed.order_id)

        assert cancelled.success
        assert cancelled.data.status == OrderStatus.CANCELLED
        assert not again.success
        assert again.error_code == "CONFLICT"

    @pytest.mark.asyncio
    async def test_orders_are_private(self, service):
        placed = await service.submit_order(make_request(quantity="1"))

        fetched = await service.get_order("intruder", placed.order_id)
        cancelled = await service.cancel_order("intruder", placed.order_id)

        assert fetched.error_code == "ORDER_NOT_FOUND"
        assert cancelled.error_code == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_orders_by_status(self, service):
        await service.submit_order(make_request(quantity="1"))
        await service.submit_order(
            make_request(quantity="1", order_type=OrderType.LIMIT, limit_price=Decimal("150"))
        )

        pending = await service.list_orders(USER_ID, OrderStatus.PENDING)
        everything = await service.list_orders(USER_ID)

        assert [o.order_type for o in pending.data] == [OrderType.LIMIT]
        assert len(everything.data) == 2


class TestRiskAndAnalytics:
    @pytest.mark.asyncio
    async def test_recommendation(self, service):
        result = await service.recommend_position_size(USER_ID, "AAPL", Decimal("180"))

        assert isinstance(result, ServiceResult)
        assert result.success
        assert result.data.reason_code == SizingReasonCode.MODERATE_RISK_REDUCTION

    @pytest.mark.asyncio
    async def test_invalid_price_maps_to_validation_error(self, service):
        result = await service.recommend_position_size(USER_ID, "AAPL", Decimal("-1"))

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_position_metrics_after_buy(self, service):
        await service.submit_order(make_request(quantity="5"))

        missing = await service.get_position_metrics(USER_ID, "MSFT")
        held = await service.get_position_metrics(USER_ID, "AAPL")

        assert missing.error_code == "VALIDATION_ERROR"
        assert held.data.shares == Decimal("5")

    @pytest.mark.asyncio
    async def test_portfolio_views(self, service):
        await service.submit_order(make_request(quantity="5"))

        metrics = await service.get_portfolio_metrics(USER_ID)
        summary = await service.get_portfolio_risk_summary(USER_ID)
        alerts = await service.get_risk_alerts(USER_ID)

        assert metrics.success and metrics.data.top_holdings[0].symbol == "AAPL"
        assert summary.success and summary.data.position_count == 1
        assert alerts.success

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal_error(self, service):
        with patch.object(service.alert_monitor, "scan", side_effect=RuntimeError("boom")):
            result = await service.get_risk_alerts(USER_ID)

        assert not result.success
        assert result.error_code == "INTERNAL_ERROR"
        assert result.error == "boom"

    @pytest.mark.asyncio
    async def test_rebalance_validation(self, service):
        result = await service.rebalance_portfolio(USER_ID, {"AAPL": 2.0})

        assert result.error_code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_stop_loss_order(self, service):
        missing = await service.create_stop_loss_order(USER_ID, "AAPL")
        assert missing.error_code == "VALIDATION_ERROR"

        await service.submit_order(make_request(quantity="5"))
        placed = await service.create_stop_loss_order(USER_ID, "AAPL")

        assert placed.success
        assert placed.status == OrderStatus.PENDING
        order = (await service.get_order(USER_ID, placed.order_id)).data
        assert order.order_type == OrderType.STOP
        assert order.quantity == Decimal("5")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_runs_monitors(self):
        svc = TradingEngineService(InMemoryLedgerStore(), StaticPriceOracle(), config=Config())

        async with svc:
            await asyncio.sleep(0.01)
            assert svc.order_monitor.is_running
            assert svc.alert_monitor.is_running

        assert not svc.order_monitor.is_running
        assert not svc.alert_monitor.is_running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, service):
        await service.start()

        assert not service.order_monitor.is_running

    def test_from_config_uses_sql_ledger(self):
        svc = TradingEngineService.from_config(StaticPriceOracle(), config=Config(), run_monitors=False)

        assert isinstance(svc.ledger, SqlLedgerStore)
        assert svc.retry_policy.max_attempts == Config().execution.oracle_max_attempts
