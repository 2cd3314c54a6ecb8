"""Position and lot accounting, valuation and portfolio analytics."""

from .analytics import PortfolioAnalytics
from .lot_accounting import (
    apply_fill,
    blend_average_cost,
    open_lots,
    realized_gain_fifo,
    realized_gains_by_symbol,
    replay_fifo,
    unrealized_pnl,
)
from .valuation import Holding, PortfolioValuation, PortfolioValuator

__all__ = [
    "PortfolioAnalytics",
    "PortfolioValuator",
    "PortfolioValuation",
    "Holding",
    "apply_fill",
    "blend_average_cost",
    "open_lots",
    "realized_gain_fifo",
    "realized_gains_by_symbol",
    "replay_fifo",
    "unrealized_pnl",
]
