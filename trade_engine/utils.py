"""
Shared utilities for the trade engine.

This module provides logging setup, date/time helpers, decimal helpers and
the keyed lock registry used to serialize per-user mutations.
"""

import asyncio
import logging
import logging.handlers
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import AsyncIterator, Dict, Hashable, Optional, Union

from .config import Config


def setup_logging(config: Config, service_name: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration for the service.

    Args:
        config: Configuration object
        service_name: Name of the service (used in log messages)

    Returns:
        Configured logger instance
    """
    formatter = logging.Formatter(config.logging.format)

    logger_name = service_name or config.service_name
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, config.logging.level))

    # Clear existing handlers
    logger.handlers.clear()

    if config.logging.enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, config.logging.level))
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if config.logging.enable_file:
        log_dir = Path(config.logging.file_path).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        log_file = config.logging.file_path
        if service_name:
            log_file = str(log_dir / f"{service_name}.log")

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=config.logging.max_file_size,
            backupCount=config.logging.backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(getattr(logging, config.logging.level))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False

    return logger


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert datetime to UTC.

    Args:
        dt: Datetime to convert

    Returns:
        UTC datetime
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_decimal(value: Union[Decimal, float, int, str]) -> Decimal:
    """Convert a number to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_price(
    price: Decimal, tick_size: Decimal = Decimal("0.0001"), rounding: str = ROUND_HALF_UP
) -> Decimal:
    """Round a price to the given tick size."""
    return (price / tick_size).quantize(Decimal("1"), rounding=rounding) * tick_size


def floor_shares(value: Decimal) -> Decimal:
    """Round a share count down to a whole number."""
    return value.quantize(Decimal("1"), rounding=ROUND_DOWN)


class KeyedLocks:
    """
    Registry of asyncio locks keyed by an arbitrary hashable.

    Used to serialize mutations per (user, currency), (user, symbol) or
    order id without a global lock. Each entry counts the tasks holding or
    waiting on it and is dropped when the last one leaves, so the registry
    only holds keys that are in use.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
