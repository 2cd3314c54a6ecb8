"""Unit tests for RiskAlertMonitor."""

import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest

from conftest import USER_ID, seed_position, trending_closes
from trade_engine.models import RiskAlertType, RiskParameters, RiskSeverity
from trade_engine.risk_manager.alert_monitor import RiskAlertMonitor

# Suppresses concentration alerts so single-position scans isolate one rule
NO_CONCENTRATION = RiskParameters(max_position_size_pct=Decimal("1"))


def by_type(alerts):
    return {alert.alert_type: alert for alert in alerts}


class TestScan:
    @pytest.mark.asyncio
    async def test_stop_loss_breach(self, alert_monitor, ledger):
        # 180 is 10% below the 200 entry, beyond the 8% stop
        await seed_position(ledger, "AAPL", 10, 200)

        alerts = by_type(await alert_monitor.scan(USER_ID, NO_CONCENTRATION))

        alert = alerts[RiskAlertType.STOP_LOSS]
        assert alert.id == "stop_loss_AAPL"
        assert alert.severity == RiskSeverity.HIGH
        assert alert.action_required is True
        assert alert.message == "AAPL has declined 10.0% below your entry price"

    @pytest.mark.asyncio
    async def test_loss_within_stop(self, alert_monitor, ledger):
        await seed_position(ledger, "AAPL", 10, 190)

        assert await alert_monitor.scan(USER_ID, NO_CONCENTRATION) == []

    @pytest.mark.asyncio
    async def test_take_profit(self, alert_monitor, ledger):
        await seed_position(ledger, "AAPL", 10, 150)

        alerts = by_type(await alert_monitor.scan(USER_ID, NO_CONCENTRATION))

        alert = alerts[RiskAlertType.TAKE_PROFIT]
        assert alert.severity == RiskSeverity.LOW
        assert alert.action_required is False
        assert RiskAlertType.STOP_LOSS not in alerts

    @pytest.mark.asyncio
    async def test_unpriced_position_skips_price_rules(self, alert_monitor, ledger, price_oracle):
        await seed_position(ledger, "AAPL", 10, 300)
        price_oracle.set_unavailable("AAPL")

        assert await alert_monitor.scan(USER_ID, NO_CONCENTRATION) == []

    @pytest.mark.asyncio
    async def test_high_volatility(self, alert_monitor, ledger, price_oracle):
        await seed_position(ledger, "AAPL", 10, 180)
        price_oracle.set_history("AAPL", trending_closes(180, 0.0, 30, wobble=0.05))

        alerts = by_type(await alert_monitor.scan(USER_ID, NO_CONCENTRATION))

        alert = alerts[RiskAlertType.VOLATILITY]
        assert alert.severity == RiskSeverity.MEDIUM
        assert alert.message.startswith("AAPL has high volatility (")
        assert alert.metadata["volatility_pct"] > 30

    @pytest.mark.asyncio
    async def test_concentration_uses_invested_value(self, alert_monitor, ledger):
        # AAPL 1,800 and MSFT 1,050: weights 63% and 37% of invested value
        await seed_position(ledger, "AAPL", 10, 180)
        await seed_position(ledger, "MSFT", 3, 350)

        alerts = await alert_monitor.scan(USER_ID, RiskParameters(max_position_size_pct=Decimal("0.5")))

        assert [a.id for a in alerts] == ["concentration_AAPL"]
        assert alerts[0].message == "AAPL represents 63.2% of your portfolio (limit: 50.0%)"

    @pytest.mark.asyncio
    async def test_no_positions(self, alert_monitor):
        assert await alert_monitor.scan(USER_ID) == []


class TestRiskSummary:
    @pytest.mark.asyncio
    async def test_scores(self, alert_monitor, ledger):
        await seed_position(ledger, "AAPL", 10, 200)
        await seed_position(ledger, "MSFT", 3, 350)

        summary = await alert_monitor.portfolio_risk_summary(USER_ID)

        # stop loss on AAPL plus concentration on both -> three high alerts
        assert summary.overall_risk_score == 9
        assert summary.diversification_score == pytest.approx(1.6)
        assert summary.position_count == 2
        assert summary.portfolio_value == Decimal("12850")
        assert summary.concentration_risk == pytest.approx((1800 / 2850) ** 2 + (1050 / 2850) ** 2)
        assert summary.herfindahl_diversification == pytest.approx(1 - summary.concentration_risk)

    @pytest.mark.asyncio
    async def test_portfolio_valued_once(self, alert_monitor, valuator, ledger):
        await seed_position(ledger, "AAPL", 10, 200)

        with patch.object(valuator, "value_portfolio", wraps=valuator.value_portfolio) as value_portfolio:
            summary = await alert_monitor.portfolio_risk_summary(USER_ID)

        value_portfolio.assert_awaited_once_with(USER_ID)
        assert summary.portfolio_value == Decimal("11800")

    @pytest.mark.asyncio
    async def test_empty_portfolio(self, alert_monitor):
        summary = await alert_monitor.portfolio_risk_summary(USER_ID)

        assert summary.overall_risk_score == 3
        assert summary.diversification_score == 1.0
        assert summary.alerts == []
        assert summary.portfolio_value == Decimal("10000")


class TestMonitorCycle:
    @pytest.mark.asyncio
    async def test_cycle_scans_position_holders(self, valuator, risk_calculator, risk_config, ledger):
        delivered = {}

        async def collect(user_id, alerts):
            delivered[user_id] = alerts

        monitor = RiskAlertMonitor(valuator, risk_calculator, risk_config, on_alerts=collect)
        await seed_position(ledger, "AAPL", 10, 200, user_id="alice")
        await seed_position(ledger, "AAPL", 10, 180, user_id="bob")
        await ledger.set_balance("carol", "USD", Decimal("500"))

        results = await monitor.run_cycle()

        assert set(results) == {"alice", "bob"}
        assert set(delivered) == {"alice", "bob"}
        assert RiskAlertType.STOP_LOSS in by_type(results["alice"])
        assert RiskAlertType.STOP_LOSS not in by_type(results["bob"])
        assert monitor.latest_alerts == results

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_cycle(self, valuator, risk_calculator, ledger):
        calls = []

        async def explode(user_id, alerts):
            calls.append(user_id)
            raise RuntimeError("webhook down")

        monitor = RiskAlertMonitor(valuator, risk_calculator, on_alerts=explode)
        await seed_position(ledger, "AAPL", 10, 200, user_id="alice")
        await seed_position(ledger, "AAPL", 10, 200, user_id="bob")

        results = await monitor.run_cycle()

        assert calls == ["alice", "bob"]
        assert set(results) == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_start_and_stop(self, alert_monitor, ledger):
        await seed_position(ledger, "AAPL", 10, 200)

        await alert_monitor.start()
        assert alert_monitor.is_running
        await asyncio.sleep(0.05)
        await alert_monitor.stop()

        assert not alert_monitor.is_running
        assert USER_ID in alert_monitor.latest_alerts
