"""Ledger stores for orders, trades, positions and wallet balances."""

from .base import LedgerStore
from .memory import InMemoryLedgerStore
from .sql_store import SqlLedgerStore

__all__ = ["LedgerStore", "InMemoryLedgerStore", "SqlLedgerStore"]
