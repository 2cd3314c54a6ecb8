"""
Exception hierarchy for the trade engine.

Internal components raise these; the outward service converts them into
result models using ``code``.
"""

from decimal import Decimal
from typing import Optional


class TradeEngineError(Exception):
    """Base class for all trade engine errors."""

    code = "TRADE_ENGINE_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TradeEngineError):
    """Malformed or incomplete order. Never touches the ledger."""

    code = "VALIDATION_ERROR"


class InsufficientFunds(TradeEngineError):
    """Wallet balance cannot cover the requested debit."""

    code = "INSUFFICIENT_FUNDS"

    def __init__(self, message: str, required: Optional[Decimal] = None, available: Optional[Decimal] = None):
        super().__init__(message)
        self.required = required
        self.available = available


class InsufficientShares(TradeEngineError):
    """Position does not hold enough shares for the sell."""

    code = "INSUFFICIENT_SHARES"

    def __init__(self, message: str, required: Optional[Decimal] = None, available: Optional[Decimal] = None):
        super().__init__(message)
        self.required = required
        self.available = available


class RiskLimitExceeded(TradeEngineError):
    """Order breaches an order value, volume or concentration limit."""

    code = "RISK_LIMIT_EXCEEDED"


class PriceUnavailable(TradeEngineError):
    """Price oracle could not supply a price."""

    code = "PRICE_UNAVAILABLE"
    retryable = True

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class LedgerWriteFailure(TradeEngineError):
    """Ledger store failed to persist a mutation."""

    code = "LEDGER_WRITE_FAILURE"
    retryable = True


class ConflictError(TradeEngineError):
    """A concurrent state mutation won the race."""

    code = "CONFLICT"


class OrderNotFound(TradeEngineError):
    """No order with the given id exists for the user."""

    code = "ORDER_NOT_FOUND"
