"""
Pre-execution risk gate.

Blocks orders that breach absolute order value, daily traded volume or
post-trade position concentration limits. The gate only reads a portfolio
snapshot; it never mutates ledger state.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..errors import RiskLimitExceeded
from ..models import OrderRequest, OrderSide, RiskLimits

logger = logging.getLogger(__name__)


@dataclass
class PortfolioSnapshot:
    """Valuation of a user's account at order time."""

    cash: Decimal
    positions_value: Decimal
    symbol_position_value: Decimal
    daily_volume: Decimal

    @property
    def total_value(self) -> Decimal:
        return self.cash + self.positions_value


class RiskGate:
    """Evaluates orders against RiskLimits."""

    def __init__(self, risk_limits: Optional[RiskLimits] = None):
        self.risk_limits = risk_limits or RiskLimits()

    def check(self, request: OrderRequest, reference_price: Decimal, snapshot: PortfolioSnapshot) -> None:
        """
        Raises:
            RiskLimitExceeded: the first limit the order breaches
        """
        limits = self.risk_limits
        order_value = request.quantity * reference_price

        if order_value > limits.max_order_value:
            raise RiskLimitExceeded(
                f"Order value {order_value:.2f} exceeds maximum of {limits.max_order_value:.2f}"
            )

        if order_value < limits.min_order_value:
            raise RiskLimitExceeded(
                f"Order value {order_value:.2f} is below minimum of {limits.min_order_value:.2f}"
            )

        if snapshot.daily_volume + order_value > limits.max_daily_trading_volume:
            raise RiskLimitExceeded(
                f"Daily trading volume limit of {limits.max_daily_trading_volume:.2f} would be exceeded"
            )

        if request.side == OrderSide.BUY:
            # A buy converts cash into the position, so the total is unchanged
            total_value = snapshot.total_value
            if total_value > 0:
                concentration = (snapshot.symbol_position_value + order_value) / total_value
                if concentration > limits.max_position_concentration:
                    raise RiskLimitExceeded(
                        f"Position in {request.symbol} would be {concentration * 100:.1f}% of the portfolio, "
                        f"above the {limits.max_position_concentration * 100:.1f}% limit"
                    )

        logger.debug(f"Risk gate passed for {request.side.value} {request.quantity} {request.symbol}")
