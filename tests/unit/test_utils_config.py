"""Tests for configuration loading and shared utilities."""

import asyncio
import logging
import logging.handlers
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from trade_engine.config import Config, DatabaseConfig, ExecutionConfig, RiskConfig, SchedulerConfig
from trade_engine.models import RiskLimits, RiskParameters
from trade_engine.utils import KeyedLocks, floor_shares, round_price, setup_logging, to_utc


class TestConfig:
    def test_defaults(self):
        config = Config()

        assert config.risk.max_position_size_pct == Decimal("0.10")
        assert config.scheduler.timezone == "America/New_York"
        assert config.execution.oracle_max_attempts == 3

    def test_environment_aliases(self, monkeypatch):
        monkeypatch.setenv("RISK_STOP_LOSS_PCT", "0.05")
        monkeypatch.setenv("SCHEDULER_ORDER_MONITOR_INTERVAL", "5")

        config = Config()

        assert config.risk.stop_loss_pct == Decimal("0.05")
        assert config.scheduler.order_monitor_interval == 5

    def test_crypto_symbols_from_comma_list(self, monkeypatch):
        monkeypatch.setenv("EXEC_CRYPTO_SYMBOLS", "btc, eth")

        assert ExecutionConfig().crypto_symbols == ["BTC", "ETH"]

    def test_trading_fee_rate(self, monkeypatch):
        assert ExecutionConfig().trading_fee_rate == Decimal("0.001")

        monkeypatch.setenv("EXEC_TRADING_FEE_RATE", "0")
        assert ExecutionConfig().trading_fee_rate == Decimal("0")

        monkeypatch.setenv("EXEC_TRADING_FEE_RATE", "1.5")
        with pytest.raises(ValueError):
            ExecutionConfig()

    def test_field_names_accepted(self):
        assert RiskConfig(stop_loss_pct=Decimal("0.1")).stop_loss_pct == Decimal("0.1")
        assert SchedulerConfig(max_trigger_attempts=2).max_trigger_attempts == 2

    def test_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert DatabaseConfig().url.startswith("postgresql+asyncpg://")

        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///ledger.db")
        assert DatabaseConfig().url == "sqlite+aiosqlite:///ledger.db"

    def test_invalid_environment(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "moon")
        with pytest.raises(ValueError):
            Config()

    def test_risk_bundles_from_config(self):
        risk_config = RiskConfig(max_order_value=Decimal("2500"), take_profit_pct=Decimal("0.3"))

        assert RiskLimits.from_config(risk_config).max_order_value == Decimal("2500")
        assert RiskParameters.from_config(risk_config).take_profit_pct == Decimal("0.3")


class TestLogging:
    def test_console_only(self):
        logger = setup_logging(Config(), "trade_engine_console_test")

        assert logger.propagate is False
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.StreamHandler)

    def test_rotating_file(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LOG_ENABLE_FILE", "true")
        monkeypatch.setenv("LOG_ENABLE_CONSOLE", "false")
        monkeypatch.setenv("LOG_FILE_PATH", str(tmp_path / "logs" / "engine.log"))

        logger = setup_logging(Config(), "trade_engine_file_test")
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()

        assert [type(h) for h in logger.handlers] == [logging.handlers.RotatingFileHandler]
        assert "hello" in (tmp_path / "logs" / "trade_engine_file_test.log").read_text()
        for handler in logger.handlers:
            handler.close()

    def test_invalid_level(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "LOUD")
        with pytest.raises(ValueError):
            Config().logging


class TestDecimalHelpers:
    def test_round_price(self):
        assert round_price(Decimal("165.605"), Decimal("0.01")) == Decimal("165.61")
        assert round_price(Decimal("180.36004")) == Decimal("180.3600")

    def test_floor_shares(self):
        assert floor_shares(Decimal("5.99")) == Decimal("5")
        assert floor_shares(Decimal("0.4")) == Decimal("0")

    def test_to_utc(self):
        naive = datetime(2024, 1, 2, 15, 0)
        eastern = datetime(2024, 1, 2, 10, 0, tzinfo=timezone(timedelta(hours=-5)))

        assert to_utc(naive).tzinfo == timezone.utc
        assert to_utc(eastern) == datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc)


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLocks()
        events = []

        async def worker(name):
            async with locks.hold(("user-1", "USD")):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_keys_overlap(self):
        locks = KeyedLocks()
        events = []

        async def worker(key):
            async with locks.hold(key):
                events.append(f"{key}-in")
                await asyncio.sleep(0.01)
                events.append(f"{key}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert events[:2] == ["a-in", "b-in"]

    @pytest.mark.asyncio
    async def test_entry_dropped_after_last_holder(self):
        locks = KeyedLocks()

        async with locks.hold("k"):
            assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiter_and_late_arrival_still_serialize(self):
        locks = KeyedLocks()
        inside = 0
        max_inside = 0
        first_in = asyncio.Event()
        release_first = asyncio.Event()

        async def critical(hold_until=None):
            nonlocal inside, max_inside
            async with locks.hold("order"):
                inside += 1
                max_inside = max(max_inside, inside)
                if hold_until is not None:
                    first_in.set()
                    await hold_until.wait()
                await asyncio.sleep(0.01)
                inside -= 1

        first = asyncio.create_task(critical(release_first))
        await first_in.wait()
        waiter = asyncio.create_task(critical())
        await asyncio.sleep(0)

        # Release the holder, then arrive while the lock is handed to the waiter
        release_first.set()
        await asyncio.sleep(0.011)
        late = asyncio.create_task(critical())
        await asyncio.gather(first, waiter, late)

        assert max_inside == 1
        assert len(locks) == 0
