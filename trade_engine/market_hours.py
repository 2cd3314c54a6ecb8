"""
Market hours helpers.

Regular session detection for equities (weekdays, configured open/close in
the market timezone). Crypto symbols trade around the clock. Holidays are
not modelled.
"""

import logging
from datetime import date, datetime, time
from enum import Enum
from typing import Iterable, Optional

import pytz

from .config import SchedulerConfig
from .utils import utc_now

logger = logging.getLogger(__name__)


class MarketSession(str, Enum):
    """Market session types."""

    PRE_MARKET = "pre_market"
    REGULAR = "regular"
    AFTER_HOURS = "after_hours"
    CLOSED = "closed"


def _parse_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class MarketHours:
    """Regular trading session calendar."""

    def __init__(
        self,
        scheduler_config: Optional[SchedulerConfig] = None,
        crypto_symbols: Iterable[str] = (),
    ):
        scheduler_config = scheduler_config or SchedulerConfig()
        self.timezone = pytz.timezone(scheduler_config.timezone)
        self.open_time = _parse_time(scheduler_config.trading_start_time)
        self.close_time = _parse_time(scheduler_config.trading_end_time)
        self.trade_weekends = scheduler_config.trade_weekends
        self.crypto_symbols = {s.upper() for s in crypto_symbols}

    def local_time(self, dt: Optional[datetime] = None) -> datetime:
        dt = dt or utc_now()
        if dt.tzinfo is None:
            dt = pytz.utc.localize(dt)
        return dt.astimezone(self.timezone)

    def trading_date(self, dt: Optional[datetime] = None) -> date:
        """Calendar date in the market timezone."""
        return self.local_time(dt).date()

    def is_trading_day(self, check_date: date) -> bool:
        return self.trade_weekends or is_trading_day_simple(check_date)

    def get_session(self, dt: Optional[datetime] = None) -> MarketSession:
        local = self.local_time(dt)
        if not self.is_trading_day(local.date()):
            return MarketSession.CLOSED

        now = local.time()
        if now < time(4, 0) or now >= time(20, 0):
            return MarketSession.CLOSED
        if now < self.open_time:
            return MarketSession.PRE_MARKET
        if now < self.close_time:
            return MarketSession.REGULAR
        return MarketSession.AFTER_HOURS

    def is_crypto(self, symbol: str) -> bool:
        return symbol.upper() in self.crypto_symbols

    def is_market_open(self, symbol: Optional[str] = None, dt: Optional[datetime] = None) -> bool:
        """Check whether ``symbol`` can trade in the regular session at ``dt``."""
        if symbol and self.is_crypto(symbol):
            return True
        return self.get_session(dt) == MarketSession.REGULAR


def is_trading_day_simple(check_date: date) -> bool:
    """
    Simple synchronous check if a date is a trading day (weekday).

    Note: This doesn't account for holidays.
    """
    return check_date.weekday() < 5
