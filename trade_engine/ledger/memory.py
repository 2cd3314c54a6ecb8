"""
In-memory ledger store.

Keeps entities in dictionaries guarded by a single asyncio lock. Suitable
for paper trading, tests and single-process deployments.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from ..errors import ConflictError, InsufficientFunds, LedgerWriteFailure, OrderNotFound
from ..models import Order, OrderStatus, Position, Trade, WalletBalance
from ..utils import to_utc, utc_now
from .base import LedgerStore

logger = logging.getLogger(__name__)


class InMemoryLedgerStore(LedgerStore):
    """Dictionary-backed ledger store."""

    def __init__(self, default_balance: Decimal = Decimal("10000")):
        self.default_balance = default_balance
        self._orders: Dict[UUID, Order] = {}
        self._trades: List[Trade] = []
        self._trade_ids: set = set()
        self._positions: Dict[Tuple[str, str], Position] = {}
        self._wallets: Dict[Tuple[str, str], WalletBalance] = {}
        self._lock = asyncio.Lock()

    async def save_order(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise LedgerWriteFailure(f"Order {order.id} already exists")
            self._orders[order.id] = order
            return order

    async def get_order(self, order_id: UUID) -> Optional[Order]:
        return self._orders.get(order_id)

    async def list_orders(
        self, user_id: str, status: Optional[OrderStatus] = None, limit: int = 100
    ) -> List[Order]:
        orders = [
            o for o in self._orders.values()
            if o.user_id == user_id and (status is None or o.status == status)
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[:limit]

    async def list_pending_orders(self) -> List[Order]:
        orders = [o for o in self._orders.values() if o.status == OrderStatus.PENDING]
        orders.sort(key=lambda o: o.created_at)
        return orders

    async def update_order(self, order: Order) -> Order:
        async with self._lock:
            current = self._orders.get(order.id)
            if current is None:
                raise OrderNotFound(f"Order {order.id} not found")
            # Status only moves through compare_and_set_status
            updated = order.model_copy(update={"status": current.status, "updated_at": utc_now()})
            self._orders[order.id] = updated
            return updated

    async def compare_and_set_status(
        self, order_id: UUID, expected: OrderStatus, new_status: OrderStatus, **changes: Any
    ) -> Order:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise OrderNotFound(f"Order {order_id} not found")
            if current.status != expected:
                raise ConflictError(
                    f"Order {order_id} is {current.status.value}, expected {expected.value}"
                )
            updated = current.model_copy(
                update={**changes, "status": new_status, "updated_at": utc_now()}
            )
            self._orders[order_id] = updated
            return updated

    async def record_trade(self, trade: Trade) -> Trade:
        async with self._lock:
            if trade.id in self._trade_ids:
                raise LedgerWriteFailure(f"Trade {trade.id} already recorded")
            self._trades.append(trade)
            self._trade_ids.add(trade.id)
            return trade

    async def list_trades(
        self,
        user_id: str,
        symbol: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[Trade]:
        since = to_utc(since) if since else None
        trades = [
            t for t in self._trades
            if t.user_id == user_id
            and (symbol is None or t.symbol == symbol)
            and (since is None or t.executed_at >= since)
        ]
        trades.sort(key=lambda t: t.executed_at)
        return trades

    async def get_position(self, user_id: str, symbol: str) -> Optional[Position]:
        return self._positions.get((user_id, symbol))

    async def list_positions(self, user_id: str) -> List[Position]:
        return sorted(
            (p for (uid, _), p in self._positions.items() if uid == user_id),
            key=lambda p: p.symbol,
        )

    async def list_position_holders(self) -> List[str]:
        return sorted({uid for uid, _ in self._positions})

    async def upsert_position(self, position: Position) -> Position:
        if position.shares <= 0:
            raise LedgerWriteFailure(
                f"Refusing to store {position.symbol} position with {position.shares} shares"
            )
        async with self._lock:
            self._positions[(position.user_id, position.symbol)] = position
            return position

    async def delete_position(self, user_id: str, symbol: str) -> None:
        async with self._lock:
            self._positions.pop((user_id, symbol), None)

    async def get_wallet(self, user_id: str, currency: str = "USD") -> WalletBalance:
        async with self._lock:
            return self._get_or_create_wallet(user_id, currency)

    async def adjust_balance(self, user_id: str, currency: str, delta: Decimal) -> WalletBalance:
        async with self._lock:
            wallet = self._get_or_create_wallet(user_id, currency)
            new_balance = wallet.available_balance + delta
            if new_balance < 0:
                raise InsufficientFunds(
                    f"Insufficient funds: required {-delta}, available {wallet.available_balance}",
                    required=-delta,
                    available=wallet.available_balance,
                )
            updated = wallet.model_copy(
                update={"available_balance": new_balance, "updated_at": utc_now()}
            )
            self._wallets[(user_id, currency)] = updated
            return updated

    def _get_or_create_wallet(self, user_id: str, currency: str) -> WalletBalance:
        wallet = self._wallets.get((user_id, currency))
        if wallet is None:
            wallet = WalletBalance(
                user_id=user_id, currency=currency, available_balance=self.default_balance
            )
            self._wallets[(user_id, currency)] = wallet
            logger.info(f"Created {currency} wallet for {user_id} with {self.default_balance}")
        return wallet

    async def set_balance(self, user_id: str, currency: str, balance: Decimal) -> WalletBalance:
        """Overwrite a wallet balance. Intended for funding and fixtures."""
        async with self._lock:
            wallet = WalletBalance(user_id=user_id, currency=currency, available_balance=balance)
            self._wallets[(user_id, currency)] = wallet
            return wallet
