"""
Order execution and portfolio risk engine.

Turns trade intents into validated, risk-checked ledger state changes and
derives risk and performance metrics from the resulting positions.
"""

from .config import Config, get_config, reload_config
from .errors import (
    ConflictError,
    InsufficientFunds,
    InsufficientShares,
    LedgerWriteFailure,
    OrderNotFound,
    PriceUnavailable,
    RiskLimitExceeded,
    TradeEngineError,
    ValidationError,
)
from .ledger import InMemoryLedgerStore, LedgerStore, SqlLedgerStore
from .price_oracle import PriceOracle, RetryPolicy, StaticPriceOracle
from .service import TradingEngineService

__version__ = "1.0.0"

__all__ = [
    "Config",
    "get_config",
    "reload_config",
    "TradeEngineError",
    "ValidationError",
    "InsufficientFunds",
    "InsufficientShares",
    "RiskLimitExceeded",
    "PriceUnavailable",
    "LedgerWriteFailure",
    "ConflictError",
    "OrderNotFound",
    "LedgerStore",
    "InMemoryLedgerStore",
    "SqlLedgerStore",
    "PriceOracle",
    "StaticPriceOracle",
    "RetryPolicy",
    "TradingEngineService",
]
