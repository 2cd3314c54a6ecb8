"""
Price oracle interface and call policy.

The oracle is the only network-facing collaborator of the engine. Every call
site goes through a ``RetryPolicy`` so that attempts, backoff and the
per-attempt timeout are explicit rather than hardcoded.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import PriceUnavailable
from .models import PriceBar, Quote
from .utils import to_decimal, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (PriceUnavailable, asyncio.TimeoutError, ConnectionError)

FALLBACK_PRICES: Dict[str, Decimal] = {
    "AAPL": Decimal("180"),
    "MSFT": Decimal("350"),
    "GOOGL": Decimal("140"),
    "AMZN": Decimal("145"),
    "NVDA": Decimal("450"),
    "META": Decimal("330"),
}


class RetryPolicy(BaseModel):
    """Attempts, exponential backoff and per-attempt timeout for oracle calls."""

    max_attempts: int = Field(default=3, ge=1, description="Total attempts including the first")
    backoff_multiplier: float = Field(default=0.5, ge=0, description="Exponential backoff multiplier")
    wait_min: float = Field(default=0.5, ge=0, description="Minimum wait between attempts in seconds")
    wait_max: float = Field(default=4.0, ge=0, description="Maximum wait between attempts in seconds")
    timeout: float = Field(default=5.0, gt=0, description="Per-attempt timeout in seconds")

    @classmethod
    def from_config(cls, execution_config) -> "RetryPolicy":
        return cls(
            max_attempts=execution_config.oracle_max_attempts,
            backoff_multiplier=execution_config.oracle_backoff_multiplier,
            wait_min=execution_config.oracle_backoff_min,
            wait_max=execution_config.oracle_backoff_max,
            timeout=execution_config.oracle_timeout,
        )

    def retrying(self, *exception_types: Type[BaseException]) -> AsyncRetrying:
        """Build a tenacity controller retrying only ``exception_types``."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_multiplier, min=self.wait_min, max=self.wait_max
            ),
            retry=retry_if_exception_type(exception_types),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Invoke ``fn`` under this policy.

        Timeouts and transient oracle failures are retried; once attempts are
        exhausted the failure surfaces as ``PriceUnavailable``.
        """
        try:
            async for attempt in self.retrying(*RETRYABLE_ERRORS):
                with attempt:
                    return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
        except PriceUnavailable:
            raise
        except (asyncio.TimeoutError, ConnectionError) as e:
            raise PriceUnavailable(f"Price oracle call failed after {self.max_attempts} attempts: {e!r}") from e
        except RetryError as e:
            raise PriceUnavailable(f"Price oracle call failed: {e}") from e
        raise PriceUnavailable("Price oracle call produced no result")


class PriceOracle(ABC):
    """Source of last-traded prices and historical closes."""

    @abstractmethod
    async def get_quote(self, symbol: str) -> Quote:
        """Return the latest quote or raise PriceUnavailable."""

    @abstractmethod
    async def get_historical_closes(self, symbol: str, days: int) -> List[PriceBar]:
        """Return up to ``days`` daily bars, oldest first."""


class StaticPriceOracle(PriceOracle):
    """
    In-process oracle backed by configurable prices.

    Used for paper trading and tests. Symbols without an explicit price fall
    back to a fixed table of reference prices; unknown symbols are
    unavailable.
    """

    def __init__(
        self,
        prices: Optional[Dict[str, Any]] = None,
        use_fallback_prices: bool = True,
    ):
        self._prices: Dict[str, Decimal] = {}
        self._previous_close: Dict[str, Decimal] = {}
        self._history: Dict[str, List[Decimal]] = {}
        self._unavailable: set = set()
        self._fallback = dict(FALLBACK_PRICES) if use_fallback_prices else {}
        for symbol, price in (prices or {}).items():
            self.set_price(symbol, price)

    def set_price(self, symbol: str, price: Any, previous_close: Optional[Any] = None) -> None:
        symbol = symbol.upper()
        self._prices[symbol] = to_decimal(price)
        if previous_close is not None:
            self._previous_close[symbol] = to_decimal(previous_close)
        self._unavailable.discard(symbol)

    def set_history(self, symbol: str, closes: Iterable[Any]) -> None:
        self._history[symbol.upper()] = [to_decimal(c) for c in closes]

    def set_unavailable(self, symbol: str, unavailable: bool = True) -> None:
        if unavailable:
            self._unavailable.add(symbol.upper())
        else:
            self._unavailable.discard(symbol.upper())

    async def get_quote(self, symbol: str) -> Quote:
        symbol = symbol.upper()
        if symbol in self._unavailable:
            raise PriceUnavailable(f"No quote available for {symbol}", symbol=symbol)

        price = self._prices.get(symbol, self._fallback.get(symbol))
        if price is None:
            raise PriceUnavailable(f"Unknown symbol {symbol}", symbol=symbol)

        previous_close = self._previous_close.get(symbol)
        if previous_close is None and self._history.get(symbol):
            previous_close = self._history[symbol][-1]

        change_pct = 0.0
        if previous_close:
            change_pct = float((price - previous_close) / previous_close * 100)

        return Quote(
            symbol=symbol,
            price=price,
            change_pct=change_pct,
            previous_close=previous_close,
        )

    async def get_historical_closes(self, symbol: str, days: int) -> List[PriceBar]:
        symbol = symbol.upper()
        if symbol in self._unavailable:
            raise PriceUnavailable(f"No history available for {symbol}", symbol=symbol)

        closes = self._history.get(symbol, [])[-days:]
        start = utc_now() - timedelta(days=len(closes))
        return [
            PriceBar(
                timestamp=start + timedelta(days=i),
                open=close,
                high=close,
                low=close,
                close=close,
            )
            for i, close in enumerate(closes)
        ]
