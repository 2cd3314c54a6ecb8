"""
Portfolio valuation.

Marks a user's positions to market with current quotes. Prices are derived
on read from the oracle and never stored on the position.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from ..errors import PriceUnavailable
from ..ledger.base import LedgerStore
from ..models import Position, Quote
from ..price_oracle import PriceOracle, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class Holding:
    """A position marked to market."""

    position: Position
    price: Decimal
    previous_close: Optional[Decimal] = None
    priced: bool = True

    @property
    def symbol(self) -> str:
        return self.position.symbol

    @property
    def market_value(self) -> Decimal:
        return self.position.shares * self.price

    @property
    def cost_basis(self) -> Decimal:
        return self.position.cost_basis


@dataclass
class PortfolioValuation:
    user_id: str
    cash: Decimal
    holdings: List[Holding] = field(default_factory=list)

    @property
    def positions_value(self) -> Decimal:
        return sum((h.market_value for h in self.holdings), Decimal("0"))

    @property
    def total_value(self) -> Decimal:
        return self.cash + self.positions_value

    def holding(self, symbol: str) -> Optional[Holding]:
        for holding in self.holdings:
            if holding.symbol == symbol:
                return holding
        return None

    def values_by_symbol(self) -> Dict[str, Decimal]:
        return {h.symbol: h.market_value for h in self.holdings}

    def weights(self, include_cash: bool = False) -> Dict[str, float]:
        """Position weights relative to invested value, or to total value."""
        denominator = self.total_value if include_cash else self.positions_value
        if denominator <= 0:
            return {}
        return {h.symbol: float(h.market_value / denominator) for h in self.holdings}


class PortfolioValuator:
    """Builds PortfolioValuation snapshots from the ledger and oracle."""

    def __init__(
        self,
        ledger: LedgerStore,
        price_oracle: PriceOracle,
        retry_policy: Optional[RetryPolicy] = None,
        currency: str = "USD",
    ):
        self.ledger = ledger
        self.price_oracle = price_oracle
        self.retry_policy = retry_policy or RetryPolicy()
        self.currency = currency

    async def get_quote(self, symbol: str) -> Quote:
        return await self.retry_policy.call(self.price_oracle.get_quote, symbol)

    async def value_portfolio(self, user_id: str) -> PortfolioValuation:
        """
        Mark every position to market.

        Positions whose quote is unavailable are valued at average cost and
        flagged ``priced=False``.
        """
        wallet = await self.ledger.get_wallet(user_id, self.currency)
        positions = await self.ledger.list_positions(user_id)
        holdings = await asyncio.gather(*(self._mark(p) for p in positions))
        return PortfolioValuation(user_id=user_id, cash=wallet.available_balance, holdings=list(holdings))

    async def _mark(self, position: Position) -> Holding:
        try:
            quote = await self.get_quote(position.symbol)
        except PriceUnavailable as e:
            logger.warning(f"Valuing {position.symbol} at average cost: {e.message}")
            return Holding(position=position, price=position.average_cost, priced=False)
        return Holding(position=position, price=quote.price, previous_close=quote.previous_close)
