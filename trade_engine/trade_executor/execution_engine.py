"""
Order Execution Engine.

This module turns a validated order request into ledger state changes:
- Market orders settle immediately against the price oracle with slippage
- Conditional orders (limit, stop, stop_limit, trailing_stop) are stored as
  pending and filled later by the pending-order monitor
- Cancellations move pending orders to cancelled through a conditional update

Fill settlement is all-or-nothing up to the trade write. Buys debit the
wallet (notional plus fee) first and, if a later ledger write fails, restore
the position and credit the debit back before the error surfaces. Sells
reduce the position and record the trade, then credit the proceeds net of
the fee. Once a trade is recorded the fill stands: a wallet credit that
keeps failing is queued and applied later by ``retry_pending_credits``.

Triggered orders are claimed (pending to filled) before settlement starts and
the claim is released if settlement does not happen.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID

from pydantic import ValidationError as ModelValidationError

from ..config import ExecutionConfig
from ..errors import (
    ConflictError,
    InsufficientFunds,
    InsufficientShares,
    LedgerWriteFailure,
    OrderNotFound,
    TradeEngineError,
    ValidationError,
)
from ..ledger.base import LedgerStore
from ..market_hours import MarketHours
from ..models import (
    Order,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    Quote,
    RiskLimits,
    TimeInForce,
    Trade,
)
from ..portfolio.lot_accounting import apply_fill
from ..price_oracle import PriceOracle, RetryPolicy
from ..utils import KeyedLocks, round_price, utc_now
from .order_validator import OrderValidator
from .risk_gate import PortfolioSnapshot, RiskGate
from .slippage import SlippageModel, trading_fee

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
CREDIT_QUEUED_WARNING = "Sale proceeds could not be credited yet and are queued for retry"


class TriggerOutcome(str, Enum):
    """Result of evaluating one pending order."""

    NOT_PENDING = "not_pending"
    WAITING = "waiting"
    CONVERTED = "converted"
    FILLED = "filled"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass
class PendingCredit:
    """Wallet credit owed for a recorded trade or refund that could not be applied."""

    user_id: str
    currency: str
    amount: Decimal
    reason: str
    order_id: Optional[UUID] = None
    retries: int = 0
    created_at: datetime = field(default_factory=utc_now)


class OrderExecutionEngine:
    """
    Validates, gates and settles orders.

    Price oracle calls happen before any lock is taken. Wallet mutation is
    serialized per (user, currency), position mutation per (user, symbol)
    and order status transitions per order id.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        price_oracle: PriceOracle,
        retry_policy: Optional[RetryPolicy] = None,
        risk_limits: Optional[RiskLimits] = None,
        execution_config: Optional[ExecutionConfig] = None,
        market_hours: Optional[MarketHours] = None,
    ):
        self.ledger = ledger
        self.price_oracle = price_oracle
        self.config = execution_config or ExecutionConfig()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.market_hours = market_hours or MarketHours(crypto_symbols=self.config.crypto_symbols)
        self.validator = OrderValidator(self.config, self.market_hours)
        self.risk_gate = RiskGate(risk_limits)
        self.slippage = SlippageModel.from_config(self.config)
        self.fee_rate = self.config.trading_fee_rate

        self._wallet_locks = KeyedLocks()
        self._position_locks = KeyedLocks()
        self._order_locks = KeyedLocks()
        self._pending_credits: List[PendingCredit] = []

    async def get_quote(self, symbol: str) -> Quote:
        return await self.retry_policy.call(self.price_oracle.get_quote, symbol)

    def trading_fee(self, notional: Decimal) -> Decimal:
        return trading_fee(notional, self.fee_rate)

    # Submission

    async def execute_order(self, request: OrderRequest) -> OrderResult:
        """
        Validate, gate and execute an order request.

        Market orders return ``filled`` or ``rejected``; conditional orders
        return ``pending`` (or ``cancelled`` for unfillable ioc/fok orders).
        Engine errors are reported in the result rather than raised.
        """
        warnings: List[str] = []
        logger.info(
            f"Processing {request.order_type.value} {request.side.value} order: "
            f"{request.quantity} {request.symbol} for {request.user_id}"
        )

        try:
            self.validator.validate_structure(request)
            order = self._order_from_request(request)
            quote = await self.get_quote(request.symbol)

            wallet = await self.ledger.get_wallet(request.user_id, request.currency)
            position = await self.ledger.get_position(request.user_id, request.symbol)
            warnings = self.validator.validate(request, quote.price, wallet, position)

            reference_price = self.validator.reference_price(request, quote.price)
            snapshot = await self._portfolio_snapshot(request, quote, wallet.available_balance)
            self.risk_gate.check(request, reference_price, snapshot)

        except TradeEngineError as e:
            logger.warning(f"Order for {request.user_id} {request.symbol} rejected: {e.message}")
            return OrderResult(
                success=False,
                status=OrderStatus.REJECTED,
                error=e.message,
                error_code=e.code,
                warnings=warnings,
            )

        if order.order_type == OrderType.MARKET:
            return await self._execute_market(order, quote, warnings)
        return await self._create_conditional(order, quote, warnings)

    async def _execute_market(self, order: Order, quote: Quote, warnings: List[str]) -> OrderResult:
        executed_price = self.slippage.apply(
            quote.price, order.quantity, order.side, order.is_fractional
        )

        try:
            trade = await self._settle_fill(order, executed_price)
        except TradeEngineError as e:
            logger.warning(f"Market order {order.id} rejected during settlement: {e.message}")
            rejected = order.model_copy(update={"status": OrderStatus.REJECTED, "error": e.message})
            await self._store_order_record(rejected)
            return OrderResult(
                success=False,
                order_id=order.id,
                status=OrderStatus.REJECTED,
                error=e.message,
                error_code=e.code,
                warnings=warnings,
            )

        filled = order.model_copy(
            update={
                "status": OrderStatus.FILLED,
                "filled_quantity": order.quantity,
                "average_fill_price": executed_price,
                "updated_at": utc_now(),
            }
        )
        if not await self._store_order_record(filled):
            warnings.append("Order filled but the order record could not be stored")
        if self.has_pending_credit(order.id):
            warnings.append(CREDIT_QUEUED_WARNING)

        logger.info(
            f"Market order {order.id} filled: {order.side.value} {trade.shares} "
            f"{trade.symbol} @ {executed_price} (quote {quote.price}, fees {trade.fees})"
        )
        return OrderResult(
            success=True,
            order_id=order.id,
            status=OrderStatus.FILLED,
            executed_price=executed_price,
            executed_shares=trade.shares,
            total_amount=trade.total_amount,
            fees=trade.fees,
            warnings=warnings,
        )

    async def _create_conditional(self, order: Order, quote: Quote, warnings: List[str]) -> OrderResult:
        if order.order_type == OrderType.TRAILING_STOP:
            order = order.model_copy(
                update={
                    "stop_price": self._trailing_stop_price(order.side, quote.price, order.trailing_percent),
                    "trail_reference_price": quote.price,
                }
            )

        try:
            await self.ledger.save_order(order)
        except TradeEngineError as e:
            logger.error(f"Failed to store conditional order {order.id}: {e.message}")
            return OrderResult(
                success=False, status=OrderStatus.REJECTED, error=e.message,
                error_code=e.code, warnings=warnings,
            )

        logger.info(
            f"Conditional order {order.id} placed: {order.order_type.value} {order.side.value} "
            f"{order.quantity} {order.symbol} (limit={order.limit_price}, stop={order.stop_price})"
        )

        if order.time_in_force in (TimeInForce.IOC, TimeInForce.FOK):
            return await self._execute_immediate_or_cancel(order, quote, warnings)

        return OrderResult(
            success=True, order_id=order.id, status=OrderStatus.PENDING, warnings=warnings
        )

    async def _execute_immediate_or_cancel(self, order: Order, quote: Quote, warnings: List[str]) -> OrderResult:
        try:
            outcome = await self.process_pending_order(order.id, price=quote.price)
        except TradeEngineError as e:
            outcome = None
            logger.warning(f"Immediate evaluation of order {order.id} failed: {e.message}")

        current = await self.ledger.get_order(order.id)
        if outcome == TriggerOutcome.FILLED and current is not None:
            total = current.filled_quantity * current.average_fill_price
            if self.has_pending_credit(order.id):
                warnings.append(CREDIT_QUEUED_WARNING)
            return OrderResult(
                success=True,
                order_id=order.id,
                status=OrderStatus.FILLED,
                executed_price=current.average_fill_price,
                executed_shares=current.filled_quantity,
                total_amount=total,
                fees=self.trading_fee(total),
                warnings=warnings,
            )

        if current is not None and current.status == OrderStatus.PENDING:
            try:
                current = await self.ledger.compare_and_set_status(
                    order.id, OrderStatus.PENDING, OrderStatus.CANCELLED,
                    error=f"{order.time_in_force.value} order could not be filled immediately",
                )
            except ConflictError:
                current = await self.ledger.get_order(order.id)

        status = current.status if current else OrderStatus.CANCELLED
        return OrderResult(
            success=False,
            order_id=order.id,
            status=status,
            error=(current.error if current and current.error else "Order could not be filled immediately"),
            error_code="NOT_FILLED",
            warnings=warnings,
        )

    # Cancellation

    async def cancel_order(self, user_id: str, order_id: UUID) -> Order:
        """
        Cancel a pending order.

        Raises:
            OrderNotFound: unknown order or owned by another user
            ConflictError: the order is no longer pending
        """
        async with self._order_locks.hold(order_id):
            order = await self.ledger.get_order(order_id)
            if order is None or order.user_id != user_id:
                raise OrderNotFound(f"Order {order_id} not found")

            cancelled = await self.ledger.compare_and_set_status(
                order_id, OrderStatus.PENDING, OrderStatus.CANCELLED
            )

        logger.info(f"Order {order_id} cancelled by {user_id}")
        return cancelled

    # Pending order evaluation

    async def process_pending_order(self, order_id: UUID, price: Optional[Decimal] = None) -> TriggerOutcome:
        """
        Evaluate one pending order against the current price.

        A triggered order is moved to ``filled`` before its fill settles.
        The claim is released back to ``pending`` when settlement fails on
        a ledger error, or turned into ``rejected`` when funds or shares are
        short. Filled, cancelled and rejected orders are never re-evaluated.
        Price oracle and ledger failures propagate so the caller can retry
        on a later cycle.
        """
        order = await self.ledger.get_order(order_id)
        if order is None or order.status != OrderStatus.PENDING:
            return TriggerOutcome.NOT_PENDING

        if await self._expire_if_stale(order):
            return TriggerOutcome.EXPIRED

        if price is None:
            quote = await self.get_quote(order.symbol)
            price = quote.price

        async with self._order_locks.hold(order_id):
            order = await self.ledger.get_order(order_id)
            if order is None or order.status != OrderStatus.PENDING:
                return TriggerOutcome.NOT_PENDING

            order, converted = await self._advance_order(order, price)
            if not self.should_trigger(order, price):
                return TriggerOutcome.CONVERTED if converted else TriggerOutcome.WAITING

            logger.info(
                f"Order {order.id} triggered: {order.order_type.value} {order.side.value} "
                f"{order.symbol} at {price}"
            )

            try:
                await self.ledger.compare_and_set_status(
                    order.id,
                    OrderStatus.PENDING,
                    OrderStatus.FILLED,
                    filled_quantity=order.quantity,
                    average_fill_price=price,
                )
            except ConflictError as e:
                logger.info(f"Order {order.id} left pending before its fill was claimed: {e.message}")
                return TriggerOutcome.NOT_PENDING

            try:
                await self._settle_fill(order, price)
            except (InsufficientFunds, InsufficientShares) as e:
                await self._release_claim(order, OrderStatus.REJECTED, error=e.message)
                logger.warning(f"Triggered order {order.id} rejected: {e.message}")
                return TriggerOutcome.REJECTED
            except Exception:
                await self._release_claim(order, OrderStatus.PENDING)
                raise

        logger.info(f"Order {order.id} filled: {order.quantity} {order.symbol} @ {price}")
        return TriggerOutcome.FILLED

    async def _release_claim(self, order: Order, status: OrderStatus, error: Optional[str] = None) -> None:
        """Move a claimed but unsettled order from filled to ``status``."""
        try:
            await self.ledger.compare_and_set_status(
                order.id,
                OrderStatus.FILLED,
                status,
                filled_quantity=Decimal("0"),
                average_fill_price=None,
                error=error,
            )
        except Exception as e:
            logger.critical(
                f"Order {order.id} is marked filled without a settled fill; "
                f"moving it to {status.value} failed: {e}"
            )
            raise

    async def reject_order(self, order_id: UUID, reason: str) -> Optional[Order]:
        """Move a pending order to rejected. Returns None if it is no longer pending."""
        async with self._order_locks.hold(order_id):
            try:
                order = await self.ledger.compare_and_set_status(
                    order_id, OrderStatus.PENDING, OrderStatus.REJECTED, error=reason
                )
            except (ConflictError, OrderNotFound):
                return None
        logger.warning(f"Order {order_id} rejected: {reason}")
        return order

    @staticmethod
    def should_trigger(order: Order, price: Decimal) -> bool:
        """Trigger condition for a pending order at ``price``."""
        buy = order.side == OrderSide.BUY

        if order.order_type == OrderType.LIMIT:
            return price <= order.limit_price if buy else price >= order.limit_price

        if order.order_type in (OrderType.STOP, OrderType.TRAILING_STOP):
            return price >= order.stop_price if buy else price <= order.stop_price

        # stop_limit orders trigger only after conversion to limit
        return False

    async def _advance_order(self, order: Order, price: Decimal) -> Tuple[Order, bool]:
        """Apply stop_limit conversion and trailing stop ratchets in place."""
        if order.order_type == OrderType.STOP_LIMIT:
            stop_hit = price >= order.stop_price if order.side == OrderSide.BUY else price <= order.stop_price
            if stop_hit:
                converted = await self.ledger.update_order(
                    order.model_copy(update={"order_type": OrderType.LIMIT})
                )
                logger.info(f"Stop-limit order {order.id} stop reached at {price}, now working as limit")
                return converted, True
            return order, False

        if order.order_type == OrderType.TRAILING_STOP:
            reference = order.trail_reference_price or price
            if order.side == OrderSide.SELL:
                reference = max(reference, price)
                new_stop = self._trailing_stop_price(order.side, reference, order.trailing_percent)
                moved = new_stop > order.stop_price
            else:
                reference = min(reference, price)
                new_stop = self._trailing_stop_price(order.side, reference, order.trailing_percent)
                moved = new_stop < order.stop_price

            if moved or reference != order.trail_reference_price:
                update = {"trail_reference_price": reference}
                if moved:
                    update["stop_price"] = new_stop
                    logger.debug(f"Trailing stop {order.id} moved to {new_stop}")
                order = await self.ledger.update_order(order.model_copy(update=update))

        return order, False

    @staticmethod
    def _trailing_stop_price(side: OrderSide, reference: Decimal, trailing_percent: Decimal) -> Decimal:
        distance = trailing_percent / HUNDRED
        if side == OrderSide.SELL:
            return round_price(reference * (1 - distance))
        return round_price(reference * (1 + distance))

    async def _expire_if_stale(self, order: Order) -> bool:
        """Cancel day orders left pending past their trading date."""
        if order.time_in_force != TimeInForce.DAY:
            return False
        if self.market_hours.trading_date(order.created_at) >= self.market_hours.trading_date():
            return False

        async with self._order_locks.hold(order.id):
            try:
                await self.ledger.compare_and_set_status(
                    order.id, OrderStatus.PENDING, OrderStatus.CANCELLED,
                    error="Day order expired",
                )
            except ConflictError:
                return False
        logger.info(f"Day order {order.id} expired")
        return True

    # Settlement

    async def _settle_fill(self, order: Order, price: Decimal) -> Trade:
        """
        Apply one fill to wallet, position and trade history.

        Raises:
            InsufficientFunds, InsufficientShares: nothing was changed
            LedgerWriteFailure: no trade was recorded and prior mutations
                were compensated (a failed refund is queued)
        """
        if order.side == OrderSide.BUY:
            return await self._settle_buy(order, price)
        return await self._settle_sell(order, price)

    def _new_trade(self, order: Order, price: Decimal) -> Trade:
        notional = order.quantity * price
        return Trade(
            order_id=order.id,
            user_id=order.user_id,
            symbol=order.symbol,
            side=order.side,
            shares=order.quantity,
            price=price,
            total_amount=notional,
            fees=self.trading_fee(notional),
            is_fractional=order.is_fractional,
        )

    async def _settle_buy(self, order: Order, price: Decimal) -> Trade:
        trade = self._new_trade(order, price)
        total = trade.total_amount + trade.fees
        wallet_key = (order.user_id, order.currency)

        async with self._wallet_locks.hold(wallet_key):
            await self.ledger.adjust_balance(order.user_id, order.currency, -total)

        try:
            async with self._position_locks.hold((order.user_id, order.symbol)):
                previous = await self.ledger.get_position(order.user_id, order.symbol)
                updated = apply_fill(previous, order.user_id, order.symbol, order.side, order.quantity, price)
                await self.ledger.upsert_position(updated)
                try:
                    await self.ledger.record_trade(trade)
                except Exception:
                    await self._restore_position(order.user_id, order.symbol, previous)
                    raise
        except Exception as e:
            logger.error(f"Buy settlement for order {order.id} failed, refunding {total}: {e}")
            await self._credit(
                order.user_id, order.currency, total, reason=f"refund for order {order.id}", order_id=order.id
            )
            if isinstance(e, TradeEngineError):
                raise
            raise LedgerWriteFailure(f"Failed to settle order {order.id}: {e}") from e

        return trade

    async def _settle_sell(self, order: Order, price: Decimal) -> Trade:
        trade = self._new_trade(order, price)

        async with self._position_locks.hold((order.user_id, order.symbol)):
            previous = await self.ledger.get_position(order.user_id, order.symbol)
            updated = apply_fill(previous, order.user_id, order.symbol, order.side, order.quantity, price)
            try:
                if updated is None:
                    await self.ledger.delete_position(order.user_id, order.symbol)
                else:
                    await self.ledger.upsert_position(updated)
                try:
                    await self.ledger.record_trade(trade)
                except Exception:
                    await self._restore_position(order.user_id, order.symbol, previous)
                    raise
            except TradeEngineError:
                raise
            except Exception as e:
                raise LedgerWriteFailure(f"Failed to settle order {order.id}: {e}") from e

        # The trade is recorded; from here on the fill stands
        await self._credit(
            order.user_id,
            order.currency,
            trade.total_amount - trade.fees,
            reason=f"proceeds of order {order.id}",
            order_id=order.id,
        )
        return trade

    # Wallet credits

    async def _credit(
        self, user_id: str, currency: str, amount: Decimal, reason: str, order_id: Optional[UUID] = None
    ) -> bool:
        """
        Credit a wallet, retrying transient ledger failures.

        A credit that still fails is queued for ``retry_pending_credits``.
        Returns False in that case.
        """
        try:
            async with self._wallet_locks.hold((user_id, currency)):
                async for attempt in self.retry_policy.retrying(LedgerWriteFailure):
                    with attempt:
                        await self.ledger.adjust_balance(user_id, currency, amount)
            return True
        except Exception as e:
            logger.critical(
                f"Wallet credit of {amount} {currency} to {user_id} ({reason}) failed, queued for retry: {e}"
            )
            self._pending_credits.append(
                PendingCredit(user_id=user_id, currency=currency, amount=amount, reason=reason, order_id=order_id)
            )
            return False

    @property
    def pending_credits(self) -> List[PendingCredit]:
        return list(self._pending_credits)

    def has_pending_credit(self, order_id: UUID) -> bool:
        return any(credit.order_id == order_id for credit in self._pending_credits)

    async def retry_pending_credits(self) -> int:
        """Apply queued wallet credits. Returns how many were applied."""
        if not self._pending_credits:
            return 0

        queued, self._pending_credits = self._pending_credits, []
        applied = 0
        for credit in queued:
            try:
                async with self._wallet_locks.hold((credit.user_id, credit.currency)):
                    await self.ledger.adjust_balance(credit.user_id, credit.currency, credit.amount)
            except Exception as e:
                credit.retries += 1
                self._pending_credits.append(credit)
                logger.error(
                    f"Queued credit of {credit.amount} {credit.currency} to {credit.user_id} "
                    f"({credit.reason}) failed again, retry {credit.retries}: {e}"
                )
                continue

            applied += 1
            logger.info(
                f"Applied queued credit of {credit.amount} {credit.currency} to {credit.user_id} ({credit.reason})"
            )
        return applied

    async def _restore_position(self, user_id: str, symbol: str, previous: Optional[Position]) -> None:
        try:
            if previous is None:
                await self.ledger.delete_position(user_id, symbol)
            else:
                await self.ledger.upsert_position(previous)
            logger.warning(f"Restored {user_id} {symbol} position after failed trade write")
        except Exception as e:
            logger.critical(f"Failed to restore {user_id} {symbol} position: {e}")
            raise

    # Helpers

    def _order_from_request(self, request: OrderRequest) -> Order:
        try:
            return Order(
                user_id=request.user_id,
                symbol=request.symbol,
                side=request.side,
                order_type=request.order_type,
                quantity=request.quantity,
                limit_price=request.limit_price,
                stop_price=request.stop_price,
                trailing_percent=request.trailing_percent,
                time_in_force=request.time_in_force,
                is_fractional=request.is_fractional,
                currency=request.currency,
            )
        except ModelValidationError as e:
            problems = "; ".join(error["msg"] for error in e.errors())
            raise ValidationError(f"Invalid order: {problems}") from e

    async def _store_order_record(self, order: Order) -> bool:
        try:
            await self.ledger.save_order(order)
            return True
        except TradeEngineError as e:
            logger.error(f"Failed to store order record {order.id}: {e.message}")
            return False

    async def _portfolio_snapshot(self, request: OrderRequest, quote: Quote, cash: Decimal) -> PortfolioSnapshot:
        positions = await self.ledger.list_positions(request.user_id)
        prices = await asyncio.gather(
            *(self._valuation_price(p, request.symbol, quote.price) for p in positions)
        )

        positions_value = Decimal("0")
        symbol_value = Decimal("0")
        for position, price in zip(positions, prices):
            value = position.shares * price
            positions_value += value
            if position.symbol == request.symbol:
                symbol_value = value

        return PortfolioSnapshot(
            cash=cash,
            positions_value=positions_value,
            symbol_position_value=symbol_value,
            daily_volume=await self.daily_trading_volume(request.user_id),
        )

    async def _valuation_price(self, position: Position, symbol: str, quoted: Decimal) -> Decimal:
        if position.symbol == symbol:
            return quoted
        try:
            return (await self.get_quote(position.symbol)).price
        except TradeEngineError:
            logger.debug(f"Valuing {position.symbol} at average cost, no quote available")
            return position.average_cost

    async def daily_trading_volume(self, user_id: str) -> Decimal:
        """Traded notional since the start of the current trading date."""
        today = self.market_hours.trading_date()
        start = self.market_hours.timezone.localize(datetime.combine(today, time.min))
        trades = await self.ledger.list_trades(user_id, since=start)
        return sum((t.total_amount for t in trades), Decimal("0"))
