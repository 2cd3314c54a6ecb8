"""
Position and lot accounting.

Two cost-basis conventions coexist on purpose:

- realized gains are computed FIFO, by replaying the full trade history
  and consuming the oldest open buy lots first
- unrealized P&L uses the position's running weighted-average cost

The first answers "what did I already lock in", the second "what is this
position worth now". Unifying them changes reported numbers.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from ..errors import InsufficientShares
from ..models import OrderSide, Position, Trade
from ..utils import utc_now

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class Lot:
    """An open purchase lot."""

    shares: Decimal
    price: Decimal
    acquired_at: datetime


@dataclass
class FifoResult:
    realized_gain: Decimal
    open_lots: List[Lot]
    shares_sold: Decimal


def _ordered(trades: Iterable[Trade]) -> List[Trade]:
    # Stable sort keeps insertion order for trades sharing a timestamp
    return sorted(trades, key=lambda t: t.executed_at)


def replay_fifo(trades: Iterable[Trade]) -> FifoResult:
    """
    Replay a single symbol's trade history with FIFO lot matching.

    Args:
        trades: Buy and sell trades for one (user, symbol)

    Returns:
        Realized gain, remaining open lots and total shares sold

    Raises:
        InsufficientShares: a sell consumes more shares than the open lots hold
    """
    lots: Deque[Lot] = deque()
    realized = ZERO
    sold = ZERO

    for trade in _ordered(trades):
        if trade.side == OrderSide.BUY:
            lots.append(Lot(shares=trade.shares, price=trade.price, acquired_at=trade.executed_at))
            continue

        remaining = trade.shares
        while remaining > 0:
            if not lots:
                raise InsufficientShares(
                    f"Sell of {trade.shares} {trade.symbol} exceeds open lots",
                    required=trade.shares,
                    available=trade.shares - remaining,
                )
            lot = lots[0]
            matched = min(lot.shares, remaining)
            realized += (trade.price - lot.price) * matched
            lot.shares -= matched
            remaining -= matched
            if lot.shares == 0:
                lots.popleft()
        sold += trade.shares

    return FifoResult(realized_gain=realized, open_lots=list(lots), shares_sold=sold)


def realized_gain_fifo(trades: Iterable[Trade]) -> Decimal:
    """Realized gain of one symbol's history under FIFO matching."""
    return replay_fifo(trades).realized_gain


def open_lots(trades: Iterable[Trade]) -> List[Lot]:
    """Buy lots still open after FIFO matching, oldest first."""
    return replay_fifo(trades).open_lots


def realized_gains_by_symbol(trades: Iterable[Trade]) -> Dict[str, Decimal]:
    """Realized FIFO gain per symbol for a user's full history."""
    by_symbol: Dict[str, List[Trade]] = {}
    for trade in trades:
        by_symbol.setdefault(trade.symbol, []).append(trade)
    return {symbol: realized_gain_fifo(history) for symbol, history in by_symbol.items()}


def blend_average_cost(
    position: Optional[Position], shares: Decimal, price: Decimal
) -> Tuple[Decimal, Decimal]:
    """
    Apply a buy fill to a position using the weighted-average rule.

    Returns:
        (new_shares, new_average_cost)
    """
    if position is None or position.shares == 0:
        return shares, price

    total_shares = position.shares + shares
    total_cost = position.shares * position.average_cost + shares * price
    return total_shares, total_cost / total_shares


def apply_fill(
    position: Optional[Position],
    user_id: str,
    symbol: str,
    side: OrderSide,
    shares: Decimal,
    price: Decimal,
) -> Optional[Position]:
    """
    Compute the position that results from a fill.

    Buys blend the average cost; sells reduce shares and keep the average
    cost. Returns ``None`` when the position is closed out.

    Raises:
        InsufficientShares: a sell exceeds the shares held
    """
    now = utc_now()

    if side == OrderSide.BUY:
        new_shares, new_cost = blend_average_cost(position, shares, price)
        if position is None:
            return Position(
                user_id=user_id,
                symbol=symbol,
                shares=new_shares,
                average_cost=new_cost,
                created_at=now,
                updated_at=now,
            )
        return position.model_copy(
            update={"shares": new_shares, "average_cost": new_cost, "updated_at": now}
        )

    held = position.shares if position else ZERO
    if shares > held:
        raise InsufficientShares(
            f"Cannot sell {shares} {symbol}: only {held} held",
            required=shares,
            available=held,
        )

    remaining = held - shares
    if remaining == 0:
        return None
    return position.model_copy(update={"shares": remaining, "updated_at": now})


def unrealized_pnl(position: Position, current_price: Decimal) -> Tuple[Decimal, float]:
    """
    Unrealized P&L against the weighted-average cost basis.

    Returns:
        (pnl, pnl_percent) where pnl_percent is relative to cost basis
    """
    market_value = position.shares * current_price
    cost_basis = position.cost_basis
    pnl = market_value - cost_basis
    pnl_pct = float(pnl / cost_basis * 100) if cost_basis > 0 else 0.0
    return pnl, pnl_pct


def day_change(position: Position, current_price: Decimal, previous_close: Optional[Decimal]) -> Decimal:
    """Value change since the previous close."""
    if previous_close is None:
        return ZERO
    return (current_price - previous_close) * position.shares
