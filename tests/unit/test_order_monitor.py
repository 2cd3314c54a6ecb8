"""
Unit tests for pending order monitoring.

Trigger evaluation across order types, idempotent re-runs, bounded retry of
ledger failures and the background loop lifecycle.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from conftest import USER_ID, make_request, seed_position
from trade_engine.errors import LedgerWriteFailure
from trade_engine.models import OrderSide, OrderStatus, OrderType, TimeInForce
from trade_engine.trade_executor.execution_engine import TriggerOutcome


async def place(engine, **kwargs):
    result = await engine.execute_order(make_request(**kwargs))
    assert result.success is True, result.error
    assert result.status == OrderStatus.PENDING
    return result.order_id


class TestLimitOrders:
    @pytest.mark.asyncio
    async def test_limit_sell_fills_once_price_crosses(
        self, engine, order_monitor, ledger, price_oracle, funded_user
    ):
        """Limit sell at $200 waits at $190 and fills at $201."""
        await seed_position(ledger, "AAPL", 10, 150)
        price_oracle.set_price("AAPL", "190")
        order_id = await place(
            engine, side=OrderSide.SELL, quantity="10", order_type=OrderType.LIMIT, limit_price=Decimal("200")
        )

        report = await order_monitor.run_cycle()
        assert report.waiting == 1
        assert (await ledger.get_order(order_id)).status == OrderStatus.PENDING

        price_oracle.set_price("AAPL", "201")
        report = await order_monitor.run_cycle()

        order = await ledger.get_order(order_id)
        assert report.filled == 1
        assert order.status == OrderStatus.FILLED
        assert order.average_fill_price == Decimal("201")
        assert order.filled_quantity == Decimal("10")

        trades = await ledger.list_trades(USER_ID)
        assert len(trades) == 1
        assert trades[0].price == Decimal("201")
        assert (await ledger.get_wallet(USER_ID)).available_balance == Decimal("12010")
        assert await ledger.get_position(USER_ID, "AAPL") is None

    @pytest.mark.asyncio
    async def test_limit_buy_fills_at_or_below_limit(self, engine, order_monitor, ledger, price_oracle, funded_user):
        order_id = await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))

        price_oracle.set_price("AAPL", "169.5")
        await order_monitor.run_cycle()

        order = await ledger.get_order(order_id)
        assert order.status == OrderStatus.FILLED
        assert (await ledger.get_position(USER_ID, "AAPL")).average_cost == Decimal("169.5")

    @pytest.mark.asyncio
    async def test_rerunning_cycles_never_duplicates_trades(
        self, engine, order_monitor, ledger, price_oracle, funded_user
    ):
        order_id = await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        price_oracle.set_price("AAPL", "165")

        await order_monitor.run_cycle()
        await order_monitor.run_cycle()
        assert await engine.process_pending_order(order_id) == TriggerOutcome.NOT_PENDING

        assert len(await ledger.list_trades(USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_cycles_fill_once(self, engine, order_monitor, ledger, price_oracle, funded_user):
        await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        price_oracle.set_price("AAPL", "165")

        await asyncio.gather(order_monitor.run_cycle(), order_monitor.run_cycle())

        assert len(await ledger.list_trades(USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_triggered_buy_without_funds_is_rejected(
        self, engine, order_monitor, ledger, price_oracle, funded_user
    ):
        order_id = await place(engine, quantity="50", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        await ledger.set_balance(USER_ID, "USD", Decimal("100"))
        price_oracle.set_price("AAPL", "165")

        report = await order_monitor.run_cycle()

        order = await ledger.get_order(order_id)
        assert report.rejected == 1
        assert order.status == OrderStatus.REJECTED
        assert "Insufficient funds" in order.error
        assert (await ledger.get_wallet(USER_ID)).available_balance == Decimal("100")


class TestStopOrders:
    @pytest.mark.asyncio
    async def test_stop_sell_triggers_at_or_below_stop(self, engine, order_monitor, ledger, price_oracle, funded_user):
        await seed_position(ledger, "AAPL", 10, 150)
        order_id = await place(
            engine, side=OrderSide.SELL, quantity="10", order_type=OrderType.STOP, stop_price=Decimal("170")
        )

        price_oracle.set_price("AAPL", "175")
        await order_monitor.run_cycle()
        assert (await ledger.get_order(order_id)).status == OrderStatus.PENDING

        price_oracle.set_price("AAPL", "168")
        await order_monitor.run_cycle()
        order = await ledger.get_order(order_id)
        assert order.status == OrderStatus.FILLED
        assert order.average_fill_price == Decimal("168")

    @pytest.mark.asyncio
    async def test_stop_limit_converts_then_fills(self, engine, order_monitor, ledger, price_oracle, funded_user):
        order_id = await place(
            engine, quantity="5", order_type=OrderType.STOP_LIMIT,
            stop_price=Decimal("185"), limit_price=Decimal("187"),
        )

        # Stop reached but the limit is not marketable yet
        price_oracle.set_price("AAPL", "190")
        report = await order_monitor.run_cycle()

        order = await ledger.get_order(order_id)
        assert report.converted == 1
        assert order.order_type == OrderType.LIMIT
        assert order.status == OrderStatus.PENDING

        price_oracle.set_price("AAPL", "186.5")
        await order_monitor.run_cycle()

        order = await ledger.get_order(order_id)
        assert order.status == OrderStatus.FILLED
        assert order.average_fill_price == Decimal("186.5")

    @pytest.mark.asyncio
    async def test_stop_limit_below_stop_waits(self, engine, order_monitor, ledger, price_oracle, funded_user):
        order_id = await place(
            engine, quantity="5", order_type=OrderType.STOP_LIMIT,
            stop_price=Decimal("185"), limit_price=Decimal("187"),
        )

        report = await order_monitor.run_cycle()

        order = await ledger.get_order(order_id)
        assert report.waiting == 1
        assert order.order_type == OrderType.STOP_LIMIT

    @pytest.mark.asyncio
    async def test_stop_limit_fills_in_the_cycle_its_stop_is_hit(
        self, engine, order_monitor, ledger, price_oracle, funded_user
    ):
        order_id = await place(
            engine, quantity="5", order_type=OrderType.STOP_LIMIT,
            stop_price=Decimal("185"), limit_price=Decimal("187"),
        )

        price_oracle.set_price("AAPL", "186")
        report = await order_monitor.run_cycle()

        order = await ledger.get_order(order_id)
        assert report.filled == 1
        assert order.order_type == OrderType.LIMIT
        assert order.average_fill_price == Decimal("186")


class TestTrailingStops:
    @pytest.mark.asyncio
    async def test_sell_trail_ratchets_up_and_never_down(
        self, engine, order_monitor, ledger, price_oracle, funded_user
    ):
        await seed_position(ledger, "AAPL", 10, 150)
        order_id = await place(
            engine, side=OrderSide.SELL, quantity="10", order_type=OrderType.TRAILING_STOP,
            trailing_percent=Decimal("10"),
        )
        assert (await ledger.get_order(order_id)).stop_price == Decimal("162")

        price_oracle.set_price("AAPL", "200")
        await order_monitor.run_cycle()
        order = await ledger.get_order(order_id)
        assert order.stop_price == Decimal("180")
        assert order.trail_reference_price == Decimal("200")

        price_oracle.set_price("AAPL", "190")
        await order_monitor.run_cycle()
        order = await ledger.get_order(order_id)
        assert order.stop_price == Decimal("180")
        assert order.status == OrderStatus.PENDING

        price_oracle.set_price("AAPL", "179")
        await order_monitor.run_cycle()
        order = await ledger.get_order(order_id)
        assert order.status == OrderStatus.FILLED
        assert order.average_fill_price == Decimal("179")

    @pytest.mark.asyncio
    async def test_buy_trail_ratchets_down(self, engine, order_monitor, ledger, price_oracle, funded_user):
        order_id = await place(
            engine, quantity="5", order_type=OrderType.TRAILING_STOP, trailing_percent=Decimal("5"),
        )
        assert (await ledger.get_order(order_id)).stop_price == Decimal("189")

        price_oracle.set_price("AAPL", "160")
        await order_monitor.run_cycle()
        assert (await ledger.get_order(order_id)).stop_price == Decimal("168")

        price_oracle.set_price("AAPL", "168")
        await order_monitor.run_cycle()
        assert (await ledger.get_order(order_id)).status == OrderStatus.FILLED


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_price_outage_skips_order(self, engine, order_monitor, ledger, price_oracle, funded_user):
        order_id = await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        price_oracle.set_unavailable("AAPL")

        report = await order_monitor.run_cycle()

        assert report.skipped == 1
        assert (await ledger.get_order(order_id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_ledger_failures_reject_after_max_attempts(
        self, engine, order_monitor, ledger, price_oracle, funded_user
    ):
        order_id = await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        price_oracle.set_price("AAPL", "165")

        with patch.object(ledger, "record_trade", AsyncMock(side_effect=LedgerWriteFailure("disk full"))):
            first = await order_monitor.run_cycle()
            second = await order_monitor.run_cycle()
            assert (await ledger.get_order(order_id)).status == OrderStatus.PENDING
            third = await order_monitor.run_cycle()

        assert first.skipped == 1
        assert second.skipped == 1
        assert third.rejected == 1

        order = await ledger.get_order(order_id)
        assert order.status == OrderStatus.REJECTED
        assert "after 3 attempts" in order.error
        assert (await ledger.get_wallet(USER_ID)).available_balance == Decimal("10000")
        assert await ledger.list_trades(USER_ID) == []

    @pytest.mark.asyncio
    async def test_transient_ledger_failure_recovers(self, engine, order_monitor, ledger, price_oracle, funded_user):
        order_id = await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        price_oracle.set_price("AAPL", "165")

        with patch.object(ledger, "record_trade", AsyncMock(side_effect=LedgerWriteFailure("disk full"))):
            await order_monitor.run_cycle()

        await order_monitor.run_cycle()

        assert (await ledger.get_order(order_id)).status == OrderStatus.FILLED
        assert len(await ledger.list_trades(USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_failed_fill_claim_settles_nothing(self, engine, order_monitor, ledger, price_oracle, funded_user):
        """A failed pending to filled write leaves the order to the next cycle with no fill applied."""
        order_id = await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        price_oracle.set_price("AAPL", "165")
        original = ledger.compare_and_set_status
        failures = []

        async def claim_fails_once(order_id, expected, new_status, **changes):
            if new_status == OrderStatus.FILLED and not failures:
                failures.append(order_id)
                raise LedgerWriteFailure("connection dropped")
            return await original(order_id, expected, new_status, **changes)

        with patch.object(ledger, "compare_and_set_status", side_effect=claim_fails_once):
            first = await order_monitor.run_cycle()
            assert first.skipped == 1
            assert (await ledger.get_order(order_id)).status == OrderStatus.PENDING
            assert await ledger.list_trades(USER_ID) == []
            assert (await ledger.get_wallet(USER_ID)).available_balance == Decimal("10000")

            second = await order_monitor.run_cycle()

        assert second.filled == 1
        assert (await ledger.get_order(order_id)).status == OrderStatus.FILLED
        assert len(await ledger.list_trades(USER_ID)) == 1
        assert (await ledger.get_position(USER_ID, "AAPL")).shares == Decimal("5")
        assert (await ledger.get_wallet(USER_ID)).available_balance == Decimal("10000") - Decimal("825")

    @pytest.mark.asyncio
    async def test_failed_settlement_releases_claim(self, engine, order_monitor, ledger, price_oracle, funded_user):
        order_id = await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        price_oracle.set_price("AAPL", "165")

        with patch.object(ledger, "record_trade", AsyncMock(side_effect=LedgerWriteFailure("disk full"))):
            await order_monitor.run_cycle()

        order = await ledger.get_order(order_id)
        assert order.status == OrderStatus.PENDING
        assert order.filled_quantity == Decimal("0")
        assert order.average_fill_price is None

        await order_monitor.run_cycle()

        assert (await ledger.get_order(order_id)).status == OrderStatus.FILLED
        assert len(await ledger.list_trades(USER_ID)) == 1
        assert (await ledger.get_wallet(USER_ID)).available_balance == Decimal("10000") - Decimal("825")

    @pytest.mark.asyncio
    async def test_short_funds_at_trigger_rejects(self, engine, order_monitor, ledger, price_oracle, funded_user):
        order_id = await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        await ledger.set_balance(USER_ID, "USD", Decimal("100"))
        price_oracle.set_price("AAPL", "165")

        report = await order_monitor.run_cycle()

        order = await ledger.get_order(order_id)
        assert report.rejected == 1
        assert order.status == OrderStatus.REJECTED
        assert order.filled_quantity == Decimal("0")
        assert await ledger.list_trades(USER_ID) == []

    @pytest.mark.asyncio
    async def test_triggered_sale_with_failed_credit_stays_filled(
        self, engine, order_monitor, ledger, price_oracle, funded_user
    ):
        await seed_position(ledger, "AAPL", 10, 150)
        order_id = await place(
            engine, side=OrderSide.SELL, quantity="10", order_type=OrderType.LIMIT, limit_price=Decimal("200")
        )
        price_oracle.set_price("AAPL", "201")
        original = ledger.adjust_balance

        async def credits_down(user_id, currency, delta):
            if delta > 0:
                raise LedgerWriteFailure("connection dropped")
            return await original(user_id, currency, delta)

        with patch.object(ledger, "adjust_balance", side_effect=credits_down):
            first = await order_monitor.run_cycle()

        assert first.filled == 1
        assert first.credits_applied == 0
        assert (await ledger.get_order(order_id)).status == OrderStatus.FILLED
        assert len(await ledger.list_trades(USER_ID)) == 1
        assert await ledger.get_position(USER_ID, "AAPL") is None
        assert (await ledger.get_wallet(USER_ID)).available_balance == Decimal("10000")
        assert len(engine.pending_credits) == 1

        second = await order_monitor.run_cycle()

        assert second.credits_applied == 1
        assert engine.pending_credits == []
        assert (await ledger.get_order(order_id)).status == OrderStatus.FILLED
        assert (await ledger.get_wallet(USER_ID)).available_balance == Decimal("12010")

    @pytest.mark.asyncio
    async def test_stale_day_order_expires(self, engine, order_monitor, ledger, funded_user):
        order_id = await place(
            engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"),
            time_in_force=TimeInForce.DAY,
        )
        order = await ledger.get_order(order_id)
        ledger._orders[order_id] = order.model_copy(update={"created_at": order.created_at - timedelta(days=2)})

        report = await order_monitor.run_cycle()

        assert report.expired == 1
        assert (await ledger.get_order(order_id)).status == OrderStatus.CANCELLED


class TestMonitorLifecycle:
    @pytest.mark.asyncio
    async def test_background_loop_fills_orders(self, engine, order_monitor, ledger, price_oracle, funded_user):
        order_monitor.interval = 0.01
        order_id = await place(engine, quantity="5", order_type=OrderType.LIMIT, limit_price=Decimal("170"))
        price_oracle.set_price("AAPL", "165")

        await order_monitor.start()
        assert order_monitor.is_running
        for _ in range(100):
            if (await ledger.get_order(order_id)).status == OrderStatus.FILLED:
                break
            await asyncio.sleep(0.01)
        await order_monitor.stop()

        assert not order_monitor.is_running
        assert (await ledger.get_order(order_id)).status == OrderStatus.FILLED
        assert order_monitor.last_report is not None
