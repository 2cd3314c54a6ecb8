"""
Order validation.

Checks that run before any ledger mutation: structural validity of the
request, price fields per order type, and funds/shares availability.
Validation never has side effects. Non-blocking concerns come back as
warnings.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from ..config import ExecutionConfig
from ..errors import InsufficientFunds, InsufficientShares, ValidationError
from ..market_hours import MarketHours
from ..models import OrderRequest, OrderSide, OrderType, Position, WalletBalance
from .slippage import trading_fee

logger = logging.getLogger(__name__)

MARKET_CLOSED_WARNING = "Market is closed. Order will be queued for next market open."


class OrderValidator:
    """Validates order requests against ledger state."""

    def __init__(
        self,
        execution_config: Optional[ExecutionConfig] = None,
        market_hours: Optional[MarketHours] = None,
    ):
        self.config = execution_config or ExecutionConfig()
        self.market_hours = market_hours or MarketHours(crypto_symbols=self.config.crypto_symbols)

    def validate_structure(self, request: OrderRequest) -> None:
        """
        Validate quantity and price fields.

        Raises:
            ValidationError: listing every problem found
        """
        issues: List[str] = []

        if not request.symbol:
            issues.append("Symbol is required")

        quantity = request.quantity
        if quantity <= 0:
            issues.append("Quantity must be positive")
        elif request.is_fractional:
            if quantity < self.config.min_fractional_quantity:
                issues.append(
                    f"Fractional quantity must be at least {self.config.min_fractional_quantity}"
                )
        elif quantity != quantity.to_integral_value():
            issues.append("Whole-share orders require an integer quantity")

        order_type = request.order_type
        if order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and request.limit_price is None:
            issues.append(f"{order_type.value} orders require a limit price")
        if request.limit_price is not None and request.limit_price <= 0:
            issues.append("Limit price must be positive")

        if order_type in (OrderType.STOP, OrderType.STOP_LIMIT) and request.stop_price is None:
            issues.append(f"{order_type.value} orders require a stop price")
        if request.stop_price is not None and request.stop_price <= 0:
            issues.append("Stop price must be positive")

        pct = request.trailing_percent
        if pct is None:
            if order_type == OrderType.TRAILING_STOP:
                issues.append("Trailing stop orders require a trailing percent between 0 and 100")
        elif not (0 < pct < 100):
            issues.append("Trailing stop orders require a trailing percent between 0 and 100")

        if issues:
            raise ValidationError("; ".join(issues))

    def reference_price(self, request: OrderRequest, market_price: Decimal) -> Decimal:
        """Price used for funds checks and order value."""
        if request.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT):
            return request.limit_price
        if request.order_type == OrderType.STOP:
            return request.stop_price
        return market_price

    def validate(
        self,
        request: OrderRequest,
        market_price: Decimal,
        wallet: WalletBalance,
        position: Optional[Position],
    ) -> List[str]:
        """
        Run all validation for ``request``.

        Args:
            request: Order request
            market_price: Current quoted price
            wallet: User's wallet in the order currency
            position: Current position in the symbol, if any

        Returns:
            List of non-blocking warnings

        Raises:
            ValidationError, InsufficientFunds, InsufficientShares
        """
        self.validate_structure(request)

        if market_price <= 0:
            raise ValidationError(f"No valid market price for {request.symbol}")

        reference_price = self.reference_price(request, market_price)
        order_value = request.quantity * reference_price

        if request.side == OrderSide.BUY:
            fee = trading_fee(order_value, self.config.trading_fee_rate)
            required = order_value + fee
            if required > wallet.available_balance:
                raise InsufficientFunds(
                    f"Insufficient funds: order requires {required:.2f} including {fee:.2f} fees, "
                    f"available {wallet.available_balance:.2f}",
                    required=required,
                    available=wallet.available_balance,
                )
        else:
            held = position.shares if position else Decimal("0")
            if request.quantity > held:
                raise InsufficientShares(
                    f"Insufficient shares: selling {request.quantity} {request.symbol}, holding {held}",
                    required=request.quantity,
                    available=held,
                )

        return self._collect_warnings(request, market_price, order_value)

    def _collect_warnings(
        self, request: OrderRequest, market_price: Decimal, order_value: Decimal
    ) -> List[str]:
        warnings: List[str] = []

        if request.order_type == OrderType.MARKET and not self.market_hours.is_market_open(request.symbol):
            warnings.append(MARKET_CLOSED_WARNING)

        if request.limit_price is not None:
            deviation = abs(request.limit_price - market_price) / market_price
            if deviation > self.config.price_deviation_warning:
                warnings.append(
                    f"Limit price is {deviation * 100:.1f}% away from the current price of {market_price}"
                )

        if order_value > self.config.large_order_warning:
            warnings.append("Large orders may experience slippage")

        return warnings
