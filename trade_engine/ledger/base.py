"""
Ledger store interface.

The ledger is the durable record of orders, trades, positions and wallet
balances. Besides plain reads and upserts it exposes two atomic
conditional-update primitives that the engine relies on for correctness
under concurrency: ``adjust_balance`` and ``compare_and_set_status``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from ..models import Order, OrderStatus, Position, Trade, WalletBalance


class LedgerStore(ABC):
    """Abstract transactional store for engine entities."""

    async def initialize(self) -> None:
        """Prepare connections and schema."""

    async def close(self) -> None:
        """Release connections."""

    # Orders

    @abstractmethod
    async def save_order(self, order: Order) -> Order:
        """Insert a new order."""

    @abstractmethod
    async def get_order(self, order_id: UUID) -> Optional[Order]:
        ...

    @abstractmethod
    async def list_orders(
        self, user_id: str, status: Optional[OrderStatus] = None, limit: int = 100
    ) -> List[Order]:
        """Orders for a user, newest first."""

    @abstractmethod
    async def list_pending_orders(self) -> List[Order]:
        """All orders in ``pending`` status across users, oldest first."""

    @abstractmethod
    async def update_order(self, order: Order) -> Order:
        """Overwrite the non-status fields of an existing order."""

    @abstractmethod
    async def compare_and_set_status(
        self, order_id: UUID, expected: OrderStatus, new_status: OrderStatus, **changes: Any
    ) -> Order:
        """
        Atomically move an order from ``expected`` to ``new_status``.

        Additional column values (filled_quantity, average_fill_price, error)
        are applied in the same update.

        Raises:
            ConflictError: the order's current status is not ``expected``
            OrderNotFound: no such order
        """

    # Trades

    @abstractmethod
    async def record_trade(self, trade: Trade) -> Trade:
        """Durably append an immutable trade."""

    @abstractmethod
    async def list_trades(
        self,
        user_id: str,
        symbol: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[Trade]:
        """Trades for a user, oldest first."""

    # Positions

    @abstractmethod
    async def get_position(self, user_id: str, symbol: str) -> Optional[Position]:
        ...

    @abstractmethod
    async def list_positions(self, user_id: str) -> List[Position]:
        ...

    @abstractmethod
    async def list_position_holders(self) -> List[str]:
        """User ids that currently hold at least one position."""

    @abstractmethod
    async def upsert_position(self, position: Position) -> Position:
        """Insert or replace a position. Positions with zero shares are rejected."""

    @abstractmethod
    async def delete_position(self, user_id: str, symbol: str) -> None:
        ...

    # Wallets

    @abstractmethod
    async def get_wallet(self, user_id: str, currency: str = "USD") -> WalletBalance:
        """Return the wallet, lazily creating it with the default balance."""

    @abstractmethod
    async def adjust_balance(self, user_id: str, currency: str, delta: Decimal) -> WalletBalance:
        """
        Atomically add ``delta`` to the available balance.

        Raises:
            InsufficientFunds: the resulting balance would be negative
        """

    @abstractmethod
    async def set_balance(self, user_id: str, currency: str, balance: Decimal) -> WalletBalance:
        """Overwrite a wallet's available balance (funding, fixtures)."""
