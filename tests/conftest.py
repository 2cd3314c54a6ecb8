"""Shared fixtures for trade engine tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest
import pytest_asyncio

from trade_engine.config import ExecutionConfig, RiskConfig, SchedulerConfig
from trade_engine.ledger.memory import InMemoryLedgerStore
from trade_engine.models import (
    OrderRequest,
    OrderSide,
    OrderType,
    Position,
    RiskLimits,
    Trade,
)
from trade_engine.portfolio.analytics import PortfolioAnalytics
from trade_engine.portfolio.valuation import PortfolioValuator
from trade_engine.price_oracle import RetryPolicy, StaticPriceOracle
from trade_engine.risk_manager.alert_monitor import RiskAlertMonitor
from trade_engine.risk_manager.position_sizer import PositionSizer
from trade_engine.risk_manager.risk_calculator import RiskCalculator
from trade_engine.trade_executor.execution_engine import OrderExecutionEngine
from trade_engine.trade_executor.order_monitor import PendingOrderMonitor

USER_ID = "user-1"


class SlowPriceOracle(StaticPriceOracle):
    """Oracle that yields to the event loop before answering."""

    def __init__(self, *args, delay: float = 0.01, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay

    async def get_quote(self, symbol: str):
        await asyncio.sleep(self.delay)
        return await super().get_quote(symbol)


class FlakyPriceOracle(StaticPriceOracle):
    """Oracle failing with ConnectionError for the first ``failures`` calls."""

    def __init__(self, *args, failures: int = 1, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.calls = 0

    async def get_quote(self, symbol: str):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("upstream reset")
        return await super().get_quote(symbol)


def make_trade(
    side: OrderSide,
    shares,
    price,
    symbol: str = "AAPL",
    user_id: str = USER_ID,
    minutes: int = 0,
) -> Trade:
    """Trade stamped ``minutes`` after a fixed base time."""
    base = datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc)
    return Trade(
        user_id=user_id,
        symbol=symbol,
        side=side,
        shares=Decimal(str(shares)),
        price=Decimal(str(price)),
        executed_at=base + timedelta(minutes=minutes),
    )


def make_request(
    side: OrderSide = OrderSide.BUY,
    quantity="10",
    symbol: str = "AAPL",
    order_type: OrderType = OrderType.MARKET,
    user_id: str = USER_ID,
    **kwargs,
) -> OrderRequest:
    return OrderRequest(
        user_id=user_id,
        symbol=symbol,
        side=side,
        order_type=order_type,
        quantity=Decimal(str(quantity)),
        **kwargs,
    )


def trending_closes(start: float, daily_return: float, days: int, wobble: float = 0.0) -> List[float]:
    """Deterministic close series with an alternating wobble on top of a trend."""
    closes = [start]
    for i in range(1, days):
        step = daily_return + (wobble if i % 2 else -wobble)
        closes.append(closes[-1] * (1 + step))
    return closes


@pytest.fixture
def fast_retry_policy() -> RetryPolicy:
    """Retry policy without backoff so failure paths stay fast."""
    return RetryPolicy(max_attempts=3, backoff_multiplier=0, wait_min=0, wait_max=0, timeout=1.0)


@pytest.fixture
def risk_config() -> RiskConfig:
    return RiskConfig()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(order_monitor_interval=1, order_monitor_error_interval=1, max_trigger_attempts=3)


@pytest.fixture
def ledger() -> InMemoryLedgerStore:
    return InMemoryLedgerStore(default_balance=Decimal("10000"))


@pytest.fixture
def price_oracle() -> StaticPriceOracle:
    return StaticPriceOracle(
        {"AAPL": "180", "MSFT": "350", "GOOGL": "140", "XOM": "100", "SPY": "450"}
    )


@pytest.fixture
def permissive_limits() -> RiskLimits:
    """Limits that leave concentration unchecked."""
    return RiskLimits(max_position_concentration=Decimal("1"))


@pytest.fixture
def engine(ledger, price_oracle, fast_retry_policy, permissive_limits) -> OrderExecutionEngine:
    """Engine without commission so balances move by notional value alone."""
    return OrderExecutionEngine(
        ledger,
        price_oracle,
        retry_policy=fast_retry_policy,
        risk_limits=permissive_limits,
        execution_config=ExecutionConfig(trading_fee_rate=Decimal("0")),
    )


@pytest.fixture
def order_monitor(engine, scheduler_config) -> PendingOrderMonitor:
    return PendingOrderMonitor(engine, scheduler_config)


@pytest.fixture
def valuator(ledger, price_oracle, fast_retry_policy) -> PortfolioValuator:
    return PortfolioValuator(ledger, price_oracle, fast_retry_policy)


@pytest.fixture
def risk_calculator(price_oracle, fast_retry_policy, risk_config) -> RiskCalculator:
    return RiskCalculator(price_oracle, fast_retry_policy, risk_config)


@pytest.fixture
def position_sizer(valuator, risk_calculator, risk_config) -> PositionSizer:
    return PositionSizer(valuator, risk_calculator, risk_config)


@pytest.fixture
def alert_monitor(valuator, risk_calculator, risk_config, scheduler_config) -> RiskAlertMonitor:
    return RiskAlertMonitor(valuator, risk_calculator, risk_config, scheduler_config)


@pytest.fixture
def analytics(valuator, risk_calculator, risk_config) -> PortfolioAnalytics:
    return PortfolioAnalytics(valuator, risk_calculator, risk_config)


async def seed_position(
    ledger: InMemoryLedgerStore,
    symbol: str,
    shares,
    average_cost,
    user_id: str = USER_ID,
) -> Position:
    """Insert a position directly, bypassing execution."""
    position = Position(
        user_id=user_id,
        symbol=symbol,
        shares=Decimal(str(shares)),
        average_cost=Decimal(str(average_cost)),
    )
    return await ledger.upsert_position(position)


@pytest_asyncio.fixture
async def funded_user(ledger) -> str:
    """User with a $10,000 wallet."""
    await ledger.set_balance(USER_ID, "USD", Decimal("10000"))
    return USER_ID
