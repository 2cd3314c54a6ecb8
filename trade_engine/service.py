"""
Trading engine service.

Wires the execution engine, pending order monitor, position sizer, risk
alert monitor and portfolio analytics around one ledger store and one price
oracle, and exposes them as an async API whose calls always return a result
model. Engine errors surface as ``error``/``error_code`` on the result;
nothing raises across this boundary.
"""

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from uuid import UUID

from .config import Config, get_config
from .errors import OrderNotFound, TradeEngineError
from .ledger.base import LedgerStore
from .ledger.sql_store import SqlLedgerStore
from .market_hours import MarketHours
from .models import (
    Order,
    OrderRequest,
    OrderResult,
    OrderStatus,
    PortfolioMetrics,
    PortfolioRiskSummary,
    PositionMetrics,
    PositionSizeRecommendation,
    RebalanceAction,
    RiskAlert,
    RiskLimits,
    RiskParameters,
    ServiceResult,
)
from .portfolio.analytics import PortfolioAnalytics
from .portfolio.valuation import PortfolioValuator
from .price_oracle import PriceOracle, RetryPolicy
from .risk_manager.alert_monitor import AlertCallback, RiskAlertMonitor
from .risk_manager.position_sizer import PositionSizer
from .risk_manager.risk_calculator import RiskCalculator
from .trade_executor.execution_engine import OrderExecutionEngine
from .trade_executor.order_monitor import PendingOrderMonitor
from .utils import setup_logging

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTERNAL_ERROR = "INTERNAL_ERROR"


class TradingEngineService:
    """Process-owned facade over the trade engine components."""

    def __init__(
        self,
        ledger: LedgerStore,
        price_oracle: PriceOracle,
        config: Optional[Config] = None,
        on_alerts: Optional[AlertCallback] = None,
        run_monitors: bool = True,
    ):
        self.config = config or get_config()
        self.ledger = ledger
        self.price_oracle = price_oracle
        self.run_monitors = run_monitors

        risk_config = self.config.risk
        execution_config = self.config.execution
        scheduler_config = self.config.scheduler

        self.retry_policy = RetryPolicy.from_config(execution_config)
        self.market_hours = MarketHours(scheduler_config, execution_config.crypto_symbols)

        self.engine = OrderExecutionEngine(
            ledger,
            price_oracle,
            retry_policy=self.retry_policy,
            risk_limits=RiskLimits.from_config(risk_config),
            execution_config=execution_config,
            market_hours=self.market_hours,
        )
        self.order_monitor = PendingOrderMonitor(self.engine, scheduler_config)

        self.valuator = PortfolioValuator(
            ledger, price_oracle, self.retry_policy, execution_config.default_currency
        )
        self.risk_calculator = RiskCalculator(price_oracle, self.retry_policy, risk_config)
        self.position_sizer = PositionSizer(self.valuator, self.risk_calculator, risk_config)
        self.alert_monitor = RiskAlertMonitor(
            self.valuator, self.risk_calculator, risk_config, scheduler_config, on_alerts
        )
        self.analytics = PortfolioAnalytics(self.valuator, self.risk_calculator, risk_config)

        self._started = False

    @classmethod
    def from_config(cls, price_oracle: PriceOracle, config: Optional[Config] = None, **kwargs) -> "TradingEngineService":
        """Build a service backed by the configured SQL ledger, with logging configured."""
        config = config or get_config()
        setup_logging(config)
        ledger = SqlLedgerStore(
            database_config=config.database,
            default_balance=config.execution.default_wallet_balance,
        )
        return cls(ledger, price_oracle, config=config, **kwargs)

    # Lifecycle

    async def start(self) -> None:
        if self._started:
            return
        logger.info("Starting trading engine service...")
        await self.ledger.initialize()
        if self.run_monitors:
            await self.order_monitor.start()
            await self.alert_monitor.start()
        self._started = True
        logger.info("Trading engine service started")

    async def stop(self) -> None:
        logger.info("Stopping trading engine service...")
        await self.order_monitor.stop()
        await self.alert_monitor.stop()
        await self.ledger.close()
        self._started = False
        logger.info("Trading engine service stopped")

    async def __aenter__(self) -> "TradingEngineService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _call(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any) -> ServiceResult[T]:
        try:
            return ServiceResult.ok(await fn(*args))
        except TradeEngineError as e:
            logger.warning(f"{operation} failed: {e.message}")
            return ServiceResult.fail(e.message, e.code)
        except Exception as e:
            logger.error(f"Unexpected error in {operation}: {e}")
            return ServiceResult.fail(str(e), INTERNAL_ERROR)

    # Orders

    async def submit_order(self, request: OrderRequest) -> OrderResult:
        try:
            return await self.engine.execute_order(request)
        except Exception as e:
            logger.error(f"Unexpected error submitting order for {request.user_id}: {e}")
            return OrderResult(
                success=False,
                status=OrderStatus.REJECTED,
                error=str(e),
                error_code=INTERNAL_ERROR,
            )

    async def cancel_order(self, user_id: str, order_id: UUID) -> ServiceResult[Order]:
        return await self._call("cancel_order", self.engine.cancel_order, user_id, order_id)

    async def get_order(self, user_id: str, order_id: UUID) -> ServiceResult[Order]:
        async def fetch() -> Order:
            order = await self.ledger.get_order(order_id)
            if order is None or order.user_id != user_id:
                raise OrderNotFound(f"Order {order_id} not found")
            return order

        return await self._call("get_order", fetch)

    async def list_orders(
        self, user_id: str, status: Optional[OrderStatus] = None, limit: int = 100
    ) -> ServiceResult[List[Order]]:
        return await self._call("list_orders", self.ledger.list_orders, user_id, status, limit)

    # Risk and analytics

    async def get_position_metrics(self, user_id: str, symbol: str) -> ServiceResult[PositionMetrics]:
        return await self._call("get_position_metrics", self.analytics.position_metrics, user_id, symbol)

    async def get_portfolio_metrics(self, user_id: str) -> ServiceResult[PortfolioMetrics]:
        return await self._call("get_portfolio_metrics", self.analytics.portfolio_metrics, user_id)

    async def get_portfolio_risk_summary(self, user_id: str) -> ServiceResult[PortfolioRiskSummary]:
        return await self._call(
            "get_portfolio_risk_summary", self.alert_monitor.portfolio_risk_summary, user_id
        )

    async def recommend_position_size(
        self,
        user_id: str,
        symbol: str,
        price: Decimal,
        params: Optional[RiskParameters] = None,
    ) -> ServiceResult[PositionSizeRecommendation]:
        return await self._call(
            "recommend_position_size", self.position_sizer.recommend, user_id, symbol, price, params
        )

    async def get_risk_alerts(self, user_id: str) -> ServiceResult[List[RiskAlert]]:
        return await self._call("get_risk_alerts", self.alert_monitor.scan, user_id)

    async def rebalance_portfolio(
        self,
        user_id: str,
        target_allocation: Dict[str, float],
        threshold: Optional[float] = None,
    ) -> ServiceResult[List[RebalanceAction]]:
        return await self._call(
            "rebalance_portfolio", self.analytics.rebalance, user_id, target_allocation, threshold
        )

    async def create_stop_loss_order(self, user_id: str, symbol: str) -> OrderResult:
        """Place a protective stop sell for a whole position."""
        try:
            request = await self.position_sizer.create_stop_loss_order(user_id, symbol)
        except TradeEngineError as e:
            return OrderResult(success=False, error=e.message, error_code=e.code)
        except Exception as e:
            logger.error(f"Unexpected error building stop loss for {user_id}/{symbol}: {e}")
            return OrderResult(success=False, error=str(e), error_code=INTERNAL_ERROR)
        return await self.submit_order(request)
