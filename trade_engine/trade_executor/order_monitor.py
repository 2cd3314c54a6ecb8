"""
Pending order monitor.

Background scheduler that periodically re-evaluates pending conditional
orders and triggers fills. The monitor owns its task and bookkeeping; it is
constructed by the process and handed to whoever needs to start, stop or
run it on demand.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from ..config import SchedulerConfig
from ..errors import ConflictError, LedgerWriteFailure, PriceUnavailable
from ..models import Order
from ..utils import utc_now
from .execution_engine import OrderExecutionEngine, TriggerOutcome

logger = logging.getLogger(__name__)


@dataclass
class MonitorCycleReport:
    """Counts from one monitor cycle."""

    evaluated: int = 0
    filled: int = 0
    waiting: int = 0
    converted: int = 0
    rejected: int = 0
    expired: int = 0
    skipped: int = 0
    errors: int = 0
    credits_applied: int = 0
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None


class PendingOrderMonitor:
    """Periodic trigger evaluation for pending orders."""

    def __init__(
        self,
        engine: OrderExecutionEngine,
        scheduler_config: Optional[SchedulerConfig] = None,
        max_concurrency: int = 20,
    ):
        scheduler_config = scheduler_config or SchedulerConfig()
        self.engine = engine
        self.interval = scheduler_config.order_monitor_interval
        self.error_interval = scheduler_config.order_monitor_error_interval
        self.max_trigger_attempts = scheduler_config.max_trigger_attempts
        self.last_report: Optional[MonitorCycleReport] = None

        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._cycle_lock = asyncio.Lock()
        self._failures: Dict[UUID, int] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background monitoring task."""
        if self.is_running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop(), name="pending-order-monitor")
        logger.info(f"Pending order monitoring started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop the background task and wait for it to finish."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Pending order monitoring stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in pending order monitoring loop: {e}")
                await asyncio.sleep(self.error_interval)

    async def run_cycle(self) -> MonitorCycleReport:
        """
        Evaluate every pending order once.

        Safe to call on demand while the background loop runs; cycles never
        overlap. Queued wallet credits are applied first, then orders are
        evaluated concurrently.
        """
        async with self._cycle_lock:
            report = MonitorCycleReport()
            report.credits_applied = await self.engine.retry_pending_credits()
            orders = await self.engine.ledger.list_pending_orders()

            outcomes = await asyncio.gather(*(self._evaluate(order) for order in orders))
            for outcome in outcomes:
                report.evaluated += 1
                if outcome == TriggerOutcome.FILLED:
                    report.filled += 1
                elif outcome == TriggerOutcome.WAITING:
                    report.waiting += 1
                elif outcome == TriggerOutcome.CONVERTED:
                    report.converted += 1
                elif outcome == TriggerOutcome.REJECTED:
                    report.rejected += 1
                elif outcome == TriggerOutcome.EXPIRED:
                    report.expired += 1
                elif outcome == "skipped":
                    report.skipped += 1
                elif outcome == "error":
                    report.errors += 1

            # Drop bookkeeping for orders that left the pending set
            pending_ids = {order.id for order in orders}
            for order_id in list(self._failures):
                if order_id not in pending_ids:
                    del self._failures[order_id]

            report.finished_at = utc_now()
            self.last_report = report

            if orders or report.credits_applied:
                logger.info(
                    f"Monitor cycle: {report.evaluated} evaluated, {report.filled} filled, "
                    f"{report.converted} converted, {report.rejected} rejected, "
                    f"{report.expired} expired, {report.skipped} skipped, {report.errors} errors, "
                    f"{report.credits_applied} queued credits applied"
                )
            return report

    async def _evaluate(self, order: Order):
        async with self._semaphore:
            try:
                outcome = await self.engine.process_pending_order(order.id)
                self._failures.pop(order.id, None)
                return outcome

            except PriceUnavailable as e:
                logger.debug(f"Skipping order {order.id} this cycle: {e.message}")
                return "skipped"

            except LedgerWriteFailure as e:
                attempts = self._failures.get(order.id, 0) + 1
                self._failures[order.id] = attempts
                logger.warning(
                    f"Ledger failure evaluating order {order.id} "
                    f"(attempt {attempts}/{self.max_trigger_attempts}): {e.message}"
                )
                if attempts >= self.max_trigger_attempts:
                    try:
                        await self.engine.reject_order(
                            order.id, f"Execution failed after {attempts} attempts: {e.message}"
                        )
                    except LedgerWriteFailure as reject_error:
                        logger.error(f"Failed to reject order {order.id}: {reject_error.message}")
                        return "error"
                    self._failures.pop(order.id, None)
                    return TriggerOutcome.REJECTED
                return "skipped"

            except ConflictError as e:
                logger.warning(f"Order {order.id} lost a status race: {e.message}")
                return "error"

            except Exception as e:
                logger.error(f"Error monitoring order {order.id}: {e}")
                return "error"
