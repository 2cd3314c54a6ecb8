"""
Pydantic models for the trade engine.

This module defines the ledger entities (orders, trades, positions, wallet
balances), the risk configuration bundle, and the result models returned
across the service boundary.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderSide(str, Enum):
    """Order side enumeration."""
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order type enumeration."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"
    TRAILING_STOP = "trailing_stop"


class TimeInForce(str, Enum):
    """Time in force enumeration."""
    DAY = "day"
    GTC = "gtc"
    IOC = "ioc"
    FOK = "fok"


class OrderStatus(str, Enum):
    """Order status enumeration.

    PARTIAL is reserved for tranche execution; no code path produces it.
    """
    PENDING = "pending"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class RiskAlertType(str, Enum):
    """Risk alert type enumeration."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    VOLATILITY = "volatility"
    CONCENTRATION = "concentration"
    CORRELATION = "correlation"


class RiskSeverity(str, Enum):
    """Risk severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SizingReasonCode(str, Enum):
    """Reason codes attached to position size recommendations."""
    POSITION_LIMIT_REACHED = "POSITION_LIMIT_REACHED"
    HIGH_RISK_REDUCTION = "HIGH_RISK_REDUCTION"
    MODERATE_RISK_REDUCTION = "MODERATE_RISK_REDUCTION"
    MINOR_RISK_ADJUSTMENT = "MINOR_RISK_ADJUSTMENT"
    OPTIMAL_SIZING = "OPTIMAL_SIZING"
    CALCULATION_ERROR = "CALCULATION_ERROR"


class Quote(BaseModel):
    """Last traded price snapshot from the price oracle."""

    symbol: str = Field(..., description="Trading symbol")
    price: Decimal = Field(..., ge=0, description="Last traded price")
    change_pct: float = Field(default=0.0, description="Percent change from previous close")
    volume: int = Field(default=0, ge=0, description="Session volume")
    previous_close: Optional[Decimal] = Field(None, description="Previous session close")
    timestamp: datetime = Field(default_factory=_utc_now, description="Quote timestamp")

    @field_serializer('price', 'previous_close')
    def serialize_decimal(self, value: Optional[Decimal]) -> Optional[str]:
        return str(value) if value is not None else None


class PriceBar(BaseModel):
    """Daily OHLCV bar."""

    timestamp: datetime = Field(..., description="Bar timestamp")
    open: Decimal = Field(..., ge=0, description="Open price")
    high: Decimal = Field(..., ge=0, description="High price")
    low: Decimal = Field(..., ge=0, description="Low price")
    close: Decimal = Field(..., ge=0, description="Close price")
    volume: int = Field(default=0, ge=0, description="Volume")

    @field_serializer('open', 'high', 'low', 'close')
    def serialize_decimal(self, value: Decimal) -> str:
        return str(value)

    @field_serializer('timestamp')
    def serialize_datetime(self, value: datetime) -> str:
        return value.isoformat()


class RiskParameters(BaseModel):
    """Per-evaluation risk configuration bundle.

    Percentages are fractions of 1 except ``volatility_threshold_pct`` which
    is an annualized volatility expressed in percent.
    """

    model_config = ConfigDict(frozen=True)

    max_position_size_pct: Decimal = Field(default=Decimal("0.10"), gt=0, le=1, description="Max position size as fraction of portfolio")
    max_daily_loss_pct: Decimal = Field(default=Decimal("0.02"), gt=0, le=1, description="Max daily loss as fraction of portfolio")
    stop_loss_pct: Decimal = Field(default=Decimal("0.08"), gt=0, lt=1, description="Stop loss distance from entry")
    take_profit_pct: Decimal = Field(default=Decimal("0.20"), gt=0, description="Take profit distance from entry")
    max_correlation: float = Field(default=0.7, ge=0, le=1, description="Maximum tolerated correlation")
    max_sector_concentration_pct: Decimal = Field(default=Decimal("0.25"), gt=0, le=1, description="Max sector weight")
    volatility_threshold_pct: float = Field(default=30.0, gt=0, description="Annualized volatility threshold in percent")

    @classmethod
    def from_config(cls, risk_config) -> "RiskParameters":
        """Build the default bundle from a RiskConfig."""
        return cls(
            max_position_size_pct=risk_config.max_position_size_pct,
            max_daily_loss_pct=risk_config.max_daily_loss_pct,
            stop_loss_pct=risk_config.stop_loss_pct,
            take_profit_pct=risk_config.take_profit_pct,
            max_correlation=risk_config.max_correlation,
            max_sector_concentration_pct=risk_config.max_sector_concentration_pct,
            volatility_threshold_pct=risk_config.volatility_threshold_pct,
        )


class RiskLimits(BaseModel):
    """Absolute limits used by the execution risk gate."""

    max_order_value: Decimal = Field(default=Decimal("50000"), gt=0, description="Maximum single order value")
    min_order_value: Decimal = Field(default=Decimal("1"), ge=0, description="Minimum single order value")
    max_daily_trading_volume: Decimal = Field(default=Decimal("100000"), gt=0, description="Maximum traded value per day")
    max_position_concentration: Decimal = Field(default=Decimal("0.25"), gt=0, le=1, description="Max position weight after a buy")

    @classmethod
    def from_config(cls, risk_config) -> "RiskLimits":
        """Build limits from a RiskConfig."""
        return cls(
            max_order_value=risk_config.max_order_value,
            min_order_value=risk_config.min_order_value,
            max_daily_trading_volume=risk_config.max_daily_trading_volume,
            max_position_concentration=risk_config.max_position_concentration,
        )


class OrderRequest(BaseModel):
    """A caller's trade intent, prior to validation."""

    user_id: str = Field(..., min_length=1, description="Owning user")
    symbol: str = Field(..., description="Trading symbol")
    side: OrderSide = Field(..., description="Order side")
    order_type: OrderType = Field(default=OrderType.MARKET, description="Order type")
    quantity: Decimal = Field(..., description="Order quantity, may be fractional")
    limit_price: Optional[Decimal] = Field(None, description="Limit price")
    stop_price: Optional[Decimal] = Field(None, description="Stop price")
    trailing_percent: Optional[Decimal] = Field(None, description="Trailing distance in percent")
    time_in_force: TimeInForce = Field(default=TimeInForce.GTC, description="Time in force")
    is_fractional: bool = Field(default=False, description="Fractional share order")
    currency: str = Field(default="USD", description="Settlement currency")

    @field_validator('symbol')
    @classmethod
    def normalize_symbol(cls, v):
        return v.strip().upper()


class Order(BaseModel):
    """A user's standing instruction, as persisted in the ledger."""

    id: UUID = Field(default_factory=uuid4, description="Order ID")
    user_id: str = Field(..., description="Owning user")
    symbol: str = Field(..., description="Trading symbol")
    side: OrderSide = Field(..., description="Order side")
    order_type: OrderType = Field(..., description="Order type")
    quantity: Decimal = Field(..., gt=0, description="Order quantity")
    limit_price: Optional[Decimal] = Field(None, gt=0, description="Limit price")
    stop_price: Optional[Decimal] = Field(None, gt=0, description="Stop price")
    trailing_percent: Optional[Decimal] = Field(None, description="Trailing distance in percent")
    trail_reference_price: Optional[Decimal] = Field(None, description="High/low watermark for trailing stops")
    time_in_force: TimeInForce = Field(default=TimeInForce.GTC, description="Time in force")
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Order status")
    filled_quantity: Decimal = Field(default=Decimal("0"), ge=0, description="Filled quantity")
    average_fill_price: Optional[Decimal] = Field(None, description="Average fill price")
    is_fractional: bool = Field(default=False, description="Fractional share order")
    currency: str = Field(default="USD", description="Settlement currency")
    error: Optional[str] = Field(None, description="Rejection reason")
    created_at: datetime = Field(default_factory=_utc_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=_utc_now, description="Last update timestamp")

    @model_validator(mode='after')
    def check_invariants(self):
        if self.filled_quantity > self.quantity:
            raise ValueError("filled_quantity cannot exceed quantity")
        if self.status == OrderStatus.FILLED and self.filled_quantity != self.quantity:
            raise ValueError("filled orders must have filled_quantity equal to quantity")
        if self.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and self.limit_price is None:
            raise ValueError(f"{self.order_type.value} orders require limit_price")
        if self.order_type in (OrderType.STOP, OrderType.STOP_LIMIT) and self.stop_price is None:
            raise ValueError(f"{self.order_type.value} orders require stop_price")
        if self.order_type == OrderType.TRAILING_STOP:
            if self.trailing_percent is None or not (0 < self.trailing_percent < 100):
                raise ValueError("trailing_stop orders require 0 < trailing_percent < 100")
        return self

    @field_serializer('id')
    def serialize_uuid(self, value: UUID) -> str:
        return str(value)

    @field_serializer(
        'quantity', 'limit_price', 'stop_price', 'trailing_percent',
        'trail_reference_price', 'filled_quantity', 'average_fill_price'
    )
    def serialize_decimal(self, value: Optional[Decimal]) -> Optional[str]:
        return str(value) if value is not None else None

    @field_serializer('created_at', 'updated_at')
    def serialize_datetime(self, value: datetime) -> str:
        return value.isoformat()


class Trade(BaseModel):
    """Immutable execution record of a fill."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4, description="Trade ID")
    order_id: Optional[UUID] = Field(None, description="Originating order ID")
    user_id: str = Field(..., description="Owning user")
    symbol: str = Field(..., description="Trading symbol")
    side: OrderSide = Field(..., description="Trade side")
    shares: Decimal = Field(..., gt=0, description="Executed shares")
    price: Decimal = Field(..., gt=0, description="Execution price")
    total_amount: Decimal = Field(default=Decimal("0"), description="shares x price")
    fees: Decimal = Field(default=Decimal("0"), ge=0, description="Commission charged on the fill")
    is_fractional: bool = Field(default=False, description="Fractional share trade")
    executed_at: datetime = Field(default_factory=_utc_now, description="Execution timestamp")

    @model_validator(mode='before')
    @classmethod
    def compute_total_amount(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get('total_amount'):
            data = dict(data)
            data['total_amount'] = Decimal(str(data['shares'])) * Decimal(str(data['price']))
        return data

    @field_serializer('id', 'order_id')
    def serialize_uuid(self, value: Optional[UUID]) -> Optional[str]:
        return str(value) if value is not None else None

    @field_serializer('shares', 'price', 'total_amount', 'fees')
    def serialize_decimal(self, value: Decimal) -> str:
        return str(value)

    @field_serializer('executed_at')
    def serialize_datetime(self, value: datetime) -> str:
        return value.isoformat()


class Position(BaseModel):
    """A user's current holding in one symbol."""

    user_id: str = Field(..., description="Owning user")
    symbol: str = Field(..., description="Trading symbol")
    shares: Decimal = Field(..., ge=0, description="Shares held")
    average_cost: Decimal = Field(..., ge=0, description="Shares-weighted average cost")
    created_at: datetime = Field(default_factory=_utc_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=_utc_now, description="Last update timestamp")

    @property
    def cost_basis(self) -> Decimal:
        return self.shares * self.average_cost

    @field_serializer('shares', 'average_cost')
    def serialize_decimal(self, value: Decimal) -> str:
        return str(value)

    @field_serializer('created_at', 'updated_at')
    def serialize_datetime(self, value: datetime) -> str:
        return value.isoformat()


class WalletBalance(BaseModel):
    """Per-user, per-currency cash."""

    user_id: str = Field(..., description="Owning user")
    currency: str = Field(default="USD", description="Currency code")
    available_balance: Decimal = Field(..., ge=0, description="Spendable cash")
    reserved_balance: Decimal = Field(default=Decimal("0"), ge=0, description="Cash held for pending orders")
    updated_at: datetime = Field(default_factory=_utc_now, description="Last update timestamp")

    @field_serializer('available_balance', 'reserved_balance')
    def serialize_decimal(self, value: Decimal) -> str:
        return str(value)


class RiskAlert(BaseModel):
    """Derived risk signal, regenerated every monitor cycle."""

    id: str = Field(..., description="Alert identifier, stable per user/type/symbol")
    user_id: str = Field(..., description="Owning user")
    symbol: Optional[str] = Field(None, description="Related symbol")
    alert_type: RiskAlertType = Field(..., description="Alert type")
    severity: RiskSeverity = Field(..., description="Alert severity")
    title: str = Field(..., description="Alert title")
    message: str = Field(..., description="Alert message")
    action_required: bool = Field(default=False, description="Whether action is required")
    created_at: datetime = Field(default_factory=_utc_now, description="Alert timestamp")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional data")

    @field_serializer('created_at')
    def serialize_datetime(self, value: datetime) -> str:
        return value.isoformat()


class OrderResult(BaseModel):
    """Outcome of an order submission."""

    success: bool = Field(..., description="Whether the order was accepted")
    order_id: Optional[UUID] = Field(None, description="Order ID if persisted")
    status: Optional[OrderStatus] = Field(None, description="Resulting order status")
    executed_price: Optional[Decimal] = Field(None, description="Fill price for filled orders")
    executed_shares: Optional[Decimal] = Field(None, description="Filled shares")
    total_amount: Optional[Decimal] = Field(None, description="Filled notional")
    fees: Optional[Decimal] = Field(None, description="Commission charged on the fill")
    error: Optional[str] = Field(None, description="Error message")
    error_code: Optional[str] = Field(None, description="Machine readable error code")
    warnings: List[str] = Field(default_factory=list, description="Non-blocking warnings")

    @field_serializer('order_id')
    def serialize_uuid(self, value: Optional[UUID]) -> Optional[str]:
        return str(value) if value is not None else None

    @field_serializer('executed_price', 'executed_shares', 'total_amount', 'fees')
    def serialize_decimal(self, value: Optional[Decimal]) -> Optional[str]:
        return str(value) if value is not None else None


T = TypeVar("T")


class ServiceResult(BaseModel, Generic[T]):
    """Generic success/error envelope for the outward API."""

    success: bool = Field(..., description="Whether the call succeeded")
    data: Optional[T] = Field(None, description="Payload on success")
    error: Optional[str] = Field(None, description="Error message")
    error_code: Optional[str] = Field(None, description="Machine readable error code")

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: Optional[str] = None) -> "ServiceResult[T]":
        return cls(success=False, error=error, error_code=error_code)


class PositionSizeRecommendation(BaseModel):
    """Position size recommendation produced by the sizer."""

    symbol: str = Field(..., description="Trading symbol")
    recommended_shares: Decimal = Field(..., ge=0, description="Recommended shares to buy")
    max_shares: Decimal = Field(..., ge=0, description="Shares allowed by the position limit")
    reason_code: SizingReasonCode = Field(..., description="Sizing reason code")
    risk_score: float = Field(..., ge=1, le=10, description="Risk score on a 1-10 scale")
    stop_loss_price: Optional[Decimal] = Field(None, description="Suggested stop loss price")
    take_profit_price: Optional[Decimal] = Field(None, description="Suggested take profit price")
    adjustment_factor: float = Field(default=0.0, description="Combined volatility/correlation/Kelly factor")
    volatility_pct: Optional[float] = Field(None, description="Annualized volatility in percent")

    @field_serializer('recommended_shares', 'max_shares', 'stop_loss_price', 'take_profit_price')
    def serialize_decimal(self, value: Optional[Decimal]) -> Optional[str]:
        return str(value) if value is not None else None


class PositionMetrics(BaseModel):
    """Per-position valuation and risk metrics."""

    symbol: str
    shares: Decimal
    average_cost: Decimal
    current_price: Decimal
    market_value: Decimal
    cost_basis: Decimal
    unrealized_pnl: Decimal
    unrealized_pnl_pct: float
    day_change: Decimal = Decimal("0")
    day_change_pct: float = 0.0
    realized_gain: Decimal = Decimal("0")
    weight: float = 0.0
    volatility_pct: float = 0.0
    beta: float = 1.0

    @field_serializer(
        'shares', 'average_cost', 'current_price', 'market_value',
        'cost_basis', 'unrealized_pnl', 'day_change', 'realized_gain'
    )
    def serialize_decimal(self, value: Decimal) -> str:
        return str(value)


class PortfolioMetrics(BaseModel):
    """Portfolio-level performance and risk metrics."""

    user_id: str
    total_value: Decimal = Decimal("0")
    cash_balance: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    total_unrealized_pnl: Decimal = Decimal("0")
    total_realized_gain: Decimal = Decimal("0")
    day_change: Decimal = Decimal("0")
    annualized_return: float = 0.0
    volatility: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    max_drawdown: float = 0.0
    beta: float = 1.0
    alpha: float = 0.0
    treynor_ratio: float = 0.0
    information_ratio: float = 0.0
    value_at_risk_95: Decimal = Decimal("0")
    diversification: float = 0.0
    concentration_risk: float = 0.0
    sector_allocation: Dict[str, float] = Field(default_factory=dict)
    top_holdings: List[PositionMetrics] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utc_now)

    @field_serializer(
        'total_value', 'cash_balance', 'total_cost', 'total_unrealized_pnl',
        'total_realized_gain', 'day_change', 'value_at_risk_95'
    )
    def serialize_decimal(self, value: Decimal) -> str:
        return str(value)

    @field_serializer('timestamp')
    def serialize_datetime(self, value: datetime) -> str:
        return value.isoformat()


class PortfolioRiskSummary(BaseModel):
    """Aggregated risk view of a user's portfolio."""

    user_id: str
    overall_risk_score: float = Field(..., ge=0, le=10)
    diversification_score: float = Field(..., ge=0)
    herfindahl_diversification: float = 0.0
    concentration_risk: float = 0.0
    max_drawdown_risk: float = 0.15
    portfolio_value: Decimal = Decimal("0")
    position_count: int = 0
    alerts: List[RiskAlert] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utc_now)

    @field_serializer('portfolio_value')
    def serialize_decimal(self, value: Decimal) -> str:
        return str(value)

    @field_serializer('timestamp')
    def serialize_datetime(self, value: datetime) -> str:
        return value.isoformat()


class RebalanceAction(BaseModel):
    """Trade suggested to move a symbol toward its target weight."""

    symbol: str
    action: OrderSide
    current_weight: float
    target_weight: float
    shares: Decimal
    value: Decimal

    @field_serializer('shares', 'value')
    def serialize_decimal(self, value: Decimal) -> str:
        return str(value)
