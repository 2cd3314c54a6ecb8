"""Slippage and commission models for fills."""

from decimal import ROUND_DOWN, ROUND_UP, Decimal
from typing import Optional

from ..config import ExecutionConfig
from ..models import OrderSide
from ..utils import round_price


class SlippageModel:
    """
    Base slippage plus a capped size-impact term.

    The adjustment is always adverse: buys pay up, sells receive less.
    Fractional orders carry a higher base rate.
    """

    def __init__(
        self,
        base: Decimal = Decimal("0.001"),
        fractional_base: Decimal = Decimal("0.002"),
        size_impact_divisor: Decimal = Decimal("10000"),
        max_size_impact: Decimal = Decimal("0.01"),
    ):
        self.base = base
        self.fractional_base = fractional_base
        self.size_impact_divisor = size_impact_divisor
        self.max_size_impact = max_size_impact

    @classmethod
    def from_config(cls, execution_config: Optional[ExecutionConfig] = None) -> "SlippageModel":
        execution_config = execution_config or ExecutionConfig()
        return cls(
            base=execution_config.base_slippage,
            fractional_base=execution_config.fractional_base_slippage,
            size_impact_divisor=execution_config.size_impact_divisor,
            max_size_impact=execution_config.max_size_impact,
        )

    def rate(self, shares: Decimal, is_fractional: bool = False) -> Decimal:
        base = self.fractional_base if is_fractional else self.base
        impact = min(shares / self.size_impact_divisor, self.max_size_impact)
        return base + impact

    def apply(self, price: Decimal, shares: Decimal, side: OrderSide, is_fractional: bool = False) -> Decimal:
        """Executed price for a market fill of ``shares`` at quoted ``price``."""
        rate = self.rate(shares, is_fractional)
        if side == OrderSide.BUY:
            return round_price(price * (1 + rate), rounding=ROUND_UP)
        return round_price(price * (1 - rate), rounding=ROUND_DOWN)


def trading_fee(notional: Decimal, rate: Decimal) -> Decimal:
    """Commission on a fill of ``notional`` value, rounded to the cent."""
    return round_price(notional * rate, tick_size=Decimal("0.01"))
