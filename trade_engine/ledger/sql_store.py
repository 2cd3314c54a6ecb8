"""
SQL ledger store.

Persists engine entities through SQLAlchemy's async engine. PostgreSQL is
reached through asyncpg; local single-file deployments and tests use SQLite
through aiosqlite. Conditional updates carry the atomicity guarantees the
engine needs across processes:

- wallet debits only apply when the resulting balance stays non-negative
- order status only moves when the current status matches the expected one
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    MetaData,
    Numeric,
    String,
    Table,
    and_,
    delete,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..config import DatabaseConfig
from ..errors import ConflictError, InsufficientFunds, LedgerWriteFailure, OrderNotFound
from ..models import Order, OrderStatus, Position, Trade, WalletBalance
from ..utils import to_utc, utc_now
from .base import LedgerStore

logger = logging.getLogger(__name__)

metadata = MetaData()

_AMOUNT = Numeric(24, 8, asdecimal=True)

orders_table = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(100), nullable=False, index=True),
    Column("symbol", String(20), nullable=False),
    Column("side", String(10), nullable=False),
    Column("order_type", String(20), nullable=False),
    Column("quantity", _AMOUNT, nullable=False),
    Column("limit_price", _AMOUNT),
    Column("stop_price", _AMOUNT),
    Column("trailing_percent", _AMOUNT),
    Column("trail_reference_price", _AMOUNT),
    Column("time_in_force", String(10), nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("filled_quantity", _AMOUNT, nullable=False),
    Column("average_fill_price", _AMOUNT),
    Column("is_fractional", Boolean, nullable=False, default=False),
    Column("currency", String(10), nullable=False),
    Column("error", String(500)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

trades_table = Table(
    "trades",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36)),
    Column("user_id", String(100), nullable=False, index=True),
    Column("symbol", String(20), nullable=False),
    Column("side", String(10), nullable=False),
    Column("shares", _AMOUNT, nullable=False),
    Column("price", _AMOUNT, nullable=False),
    Column("total_amount", _AMOUNT, nullable=False),
    Column("fees", _AMOUNT, nullable=False, default=Decimal("0")),
    Column("is_fractional", Boolean, nullable=False, default=False),
    Column("executed_at", DateTime(timezone=True), nullable=False),
)

positions_table = Table(
    "positions",
    metadata,
    Column("user_id", String(100), primary_key=True),
    Column("symbol", String(20), primary_key=True),
    Column("shares", _AMOUNT, nullable=False),
    Column("average_cost", _AMOUNT, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

wallets_table = Table(
    "wallet_balances",
    metadata,
    Column("user_id", String(100), primary_key=True),
    Column("currency", String(10), primary_key=True),
    Column("available_balance", _AMOUNT, nullable=False),
    Column("reserved_balance", _AMOUNT, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


def _order_from_row(row) -> Order:
    data = dict(row._mapping)
    data["id"] = UUID(data["id"])
    data["created_at"] = to_utc(data["created_at"])
    data["updated_at"] = to_utc(data["updated_at"])
    return Order.model_validate(data)


def _column_values(model) -> Dict[str, Any]:
    return {name: getattr(model, name) for name in type(model).model_fields}


def _order_values(order: Order) -> Dict[str, Any]:
    values = _column_values(order)
    values["id"] = str(order.id)
    values["side"] = order.side.value
    values["order_type"] = order.order_type.value
    values["time_in_force"] = order.time_in_force.value
    values["status"] = order.status.value
    return values


def _trade_from_row(row) -> Trade:
    data = dict(row._mapping)
    data["id"] = UUID(data["id"])
    data["order_id"] = UUID(data["order_id"]) if data["order_id"] else None
    data["executed_at"] = to_utc(data["executed_at"])
    return Trade.model_validate(data)


def _position_from_row(row) -> Position:
    data = dict(row._mapping)
    data["created_at"] = to_utc(data["created_at"])
    data["updated_at"] = to_utc(data["updated_at"])
    return Position.model_validate(data)


def _wallet_from_row(row) -> WalletBalance:
    data = dict(row._mapping)
    data["updated_at"] = to_utc(data["updated_at"])
    return WalletBalance.model_validate(data)


class SqlLedgerStore(LedgerStore):
    """Ledger store backed by a relational database."""

    def __init__(
        self,
        url: Optional[str] = None,
        default_balance: Decimal = Decimal("10000"),
        database_config: Optional[DatabaseConfig] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.database_config = database_config or DatabaseConfig()
        self.url = url or self.database_config.url
        self.default_balance = default_balance
        self.engine = engine
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize database connection and create tables if needed."""
        if self._initialized:
            return

        try:
            if self.engine is None:
                engine_kwargs: Dict[str, Any] = {"echo": False, "pool_pre_ping": True}
                if self.url.startswith("postgresql"):
                    engine_kwargs.update(
                        pool_size=self.database_config.pool_size,
                        max_overflow=self.database_config.max_overflow,
                        pool_recycle=3600,
                    )
                self.engine = create_async_engine(self.url, **engine_kwargs)

            logger.info(f"Connecting to ledger database: {self.url.split('@')[-1]}")

            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                await conn.run_sync(metadata.create_all)

            self._initialized = True
            logger.info("Ledger database initialized")

        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize ledger database: {e}")
            raise LedgerWriteFailure(f"Ledger initialization failed: {e}") from e

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self._initialized = False
            logger.info("Ledger database connections closed")

    def _require_engine(self) -> AsyncEngine:
        if self.engine is None or not self._initialized:
            raise RuntimeError("Ledger store not initialized. Call initialize() first.")
        return self.engine

    # Orders

    async def save_order(self, order: Order) -> Order:
        engine = self._require_engine()
        try:
            async with engine.begin() as conn:
                await conn.execute(insert(orders_table).values(**_order_values(order)))
            return order
        except SQLAlchemyError as e:
            logger.error(f"Failed to store order {order.id}: {e}")
            raise LedgerWriteFailure(f"Failed to store order {order.id}") from e

    async def get_order(self, order_id: UUID) -> Optional[Order]:
        engine = self._require_engine()
        async with engine.connect() as conn:
            result = await conn.execute(
                select(orders_table).where(orders_table.c.id == str(order_id))
            )
            row = result.first()
        return _order_from_row(row) if row else None

    async def list_orders(
        self, user_id: str, status: Optional[OrderStatus] = None, limit: int = 100
    ) -> List[Order]:
        engine = self._require_engine()
        query = select(orders_table).where(orders_table.c.user_id == user_id)
        if status is not None:
            query = query.where(orders_table.c.status == status.value)
        query = query.order_by(orders_table.c.created_at.desc()).limit(limit)

        async with engine.connect() as conn:
            result = await conn.execute(query)
            return [_order_from_row(row) for row in result]

    async def list_pending_orders(self) -> List[Order]:
        engine = self._require_engine()
        query = (
            select(orders_table)
            .where(orders_table.c.status == OrderStatus.PENDING.value)
            .order_by(orders_table.c.created_at)
        )
        async with engine.connect() as conn:
            result = await conn.execute(query)
            return [_order_from_row(row) for row in result]

    async def update_order(self, order: Order) -> Order:
        engine = self._require_engine()
        values = _order_values(order)
        for key in ("id", "status", "created_at"):
            values.pop(key)
        values["updated_at"] = utc_now()

        try:
            async with engine.begin() as conn:
                result = await conn.execute(
                    update(orders_table)
                    .where(orders_table.c.id == str(order.id))
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise OrderNotFound(f"Order {order.id} not found")
        except SQLAlchemyError as e:
            logger.error(f"Failed to update order {order.id}: {e}")
            raise LedgerWriteFailure(f"Failed to update order {order.id}") from e

        return await self.get_order(order.id)

    async def compare_and_set_status(
        self, order_id: UUID, expected: OrderStatus, new_status: OrderStatus, **changes: Any
    ) -> Order:
        engine = self._require_engine()
        values = dict(changes)
        values["status"] = new_status.value
        values["updated_at"] = utc_now()

        try:
            async with engine.begin() as conn:
                result = await conn.execute(
                    update(orders_table)
                    .where(
                        and_(
                            orders_table.c.id == str(order_id),
                            orders_table.c.status == expected.value,
                        )
                    )
                    .values(**values)
                )
                updated = result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Failed to update status of order {order_id}: {e}")
            raise LedgerWriteFailure(f"Failed to update order {order_id}") from e

        current = await self.get_order(order_id)
        if current is None:
            raise OrderNotFound(f"Order {order_id} not found")
        if updated == 0:
            raise ConflictError(
                f"Order {order_id} is {current.status.value}, expected {expected.value}"
            )
        return current

    # Trades

    async def record_trade(self, trade: Trade) -> Trade:
        engine = self._require_engine()
        values = _column_values(trade)
        values["id"] = str(trade.id)
        values["order_id"] = str(trade.order_id) if trade.order_id else None
        values["side"] = trade.side.value

        try:
            async with engine.begin() as conn:
                await conn.execute(insert(trades_table).values(**values))
            return trade
        except SQLAlchemyError as e:
            logger.error(f"Failed to record trade {trade.id}: {e}")
            raise LedgerWriteFailure(f"Failed to record trade {trade.id}") from e

    async def list_trades(
        self,
        user_id: str,
        symbol: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[Trade]:
        engine = self._require_engine()
        query = select(trades_table).where(trades_table.c.user_id == user_id)
        if symbol is not None:
            query = query.where(trades_table.c.symbol == symbol)
        if since is not None:
            query = query.where(trades_table.c.executed_at >= to_utc(since))
        query = query.order_by(trades_table.c.executed_at)

        async with engine.connect() as conn:
            result = await conn.execute(query)
            return [_trade_from_row(row) for row in result]

    # Positions

    async def get_position(self, user_id: str, symbol: str) -> Optional[Position]:
        engine = self._require_engine()
        async with engine.connect() as conn:
            result = await conn.execute(
                select(positions_table).where(
                    and_(
                        positions_table.c.user_id == user_id,
                        positions_table.c.symbol == symbol,
                    )
                )
            )
            row = result.first()
        return _position_from_row(row) if row else None

    async def list_positions(self, user_id: str) -> List[Position]:
        engine = self._require_engine()
        async with engine.connect() as conn:
            result = await conn.execute(
                select(positions_table)
                .where(positions_table.c.user_id == user_id)
                .order_by(positions_table.c.symbol)
            )
            return [_position_from_row(row) for row in result]

    async def list_position_holders(self) -> List[str]:
        engine = self._require_engine()
        async with engine.connect() as conn:
            result = await conn.execute(
                select(positions_table.c.user_id).distinct().order_by(positions_table.c.user_id)
            )
            return [row.user_id for row in result]

    async def upsert_position(self, position: Position) -> Position:
        if position.shares <= 0:
            raise LedgerWriteFailure(
                f"Refusing to store {position.symbol} position with {position.shares} shares"
            )
        engine = self._require_engine()
        key = and_(
            positions_table.c.user_id == position.user_id,
            positions_table.c.symbol == position.symbol,
        )
        values = _column_values(position)

        try:
            async with engine.begin() as conn:
                result = await conn.execute(
                    update(positions_table)
                    .where(key)
                    .values(
                        shares=values["shares"],
                        average_cost=values["average_cost"],
                        updated_at=values["updated_at"],
                    )
                )
                if result.rowcount == 0:
                    await conn.execute(insert(positions_table).values(**values))
            return position
        except SQLAlchemyError as e:
            logger.error(f"Failed to store position {position.user_id}/{position.symbol}: {e}")
            raise LedgerWriteFailure(f"Failed to store {position.symbol} position") from e

    async def delete_position(self, user_id: str, symbol: str) -> None:
        engine = self._require_engine()
        try:
            async with engine.begin() as conn:
                await conn.execute(
                    delete(positions_table).where(
                        and_(
                            positions_table.c.user_id == user_id,
                            positions_table.c.symbol == symbol,
                        )
                    )
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete position {user_id}/{symbol}: {e}")
            raise LedgerWriteFailure(f"Failed to delete {symbol} position") from e

    # Wallets

    def _wallet_key(self, user_id: str, currency: str):
        return and_(wallets_table.c.user_id == user_id, wallets_table.c.currency == currency)

    async def _ensure_wallet(self, engine: AsyncEngine, user_id: str, currency: str) -> None:
        """Lazily create the wallet with the default balance."""
        try:
            async with engine.begin() as conn:
                exists = await conn.execute(
                    select(wallets_table.c.user_id).where(self._wallet_key(user_id, currency))
                )
                if exists.first() is not None:
                    return
                await conn.execute(
                    insert(wallets_table).values(
                        user_id=user_id,
                        currency=currency,
                        available_balance=self.default_balance,
                        reserved_balance=Decimal("0"),
                        updated_at=utc_now(),
                    )
                )
            logger.info(f"Created {currency} wallet for {user_id} with {self.default_balance}")
        except IntegrityError:
            # Created concurrently by another writer
            logger.debug(f"Wallet {user_id}/{currency} already exists")

    async def _read_wallet(self, conn, user_id: str, currency: str) -> WalletBalance:
        result = await conn.execute(
            select(wallets_table).where(self._wallet_key(user_id, currency))
        )
        return _wallet_from_row(result.one())

    async def get_wallet(self, user_id: str, currency: str = "USD") -> WalletBalance:
        engine = self._require_engine()
        await self._ensure_wallet(engine, user_id, currency)
        async with engine.connect() as conn:
            return await self._read_wallet(conn, user_id, currency)

    async def adjust_balance(self, user_id: str, currency: str, delta: Decimal) -> WalletBalance:
        engine = self._require_engine()
        balance = wallets_table.c.available_balance

        try:
            await self._ensure_wallet(engine, user_id, currency)
            async with engine.begin() as conn:
                result = await conn.execute(
                    update(wallets_table)
                    .where(and_(self._wallet_key(user_id, currency), balance + delta >= 0))
                    .values(available_balance=balance + delta, updated_at=utc_now())
                )
                wallet = await self._read_wallet(conn, user_id, currency)
        except SQLAlchemyError as e:
            logger.error(f"Failed to adjust {currency} balance for {user_id}: {e}")
            raise LedgerWriteFailure(f"Failed to adjust balance for {user_id}") from e

        if result.rowcount == 0:
            raise InsufficientFunds(
                f"Insufficient funds: required {-delta}, available {wallet.available_balance}",
                required=-delta,
                available=wallet.available_balance,
            )
        return wallet

    async def set_balance(self, user_id: str, currency: str, balance: Decimal) -> WalletBalance:
        engine = self._require_engine()
        try:
            await self._ensure_wallet(engine, user_id, currency)
            async with engine.begin() as conn:
                await conn.execute(
                    update(wallets_table)
                    .where(self._wallet_key(user_id, currency))
                    .values(available_balance=balance, updated_at=utc_now())
                )
                return await self._read_wallet(conn, user_id, currency)
        except SQLAlchemyError as e:
            logger.error(f"Failed to set {currency} balance for {user_id}: {e}")
            raise LedgerWriteFailure(f"Failed to set balance for {user_id}") from e
