"""
Position Sizing Calculator

Recommends how many shares of a symbol a user should buy given the current
portfolio and the active risk parameters. The recommendation combines:
- A hard cap of max_position_size_pct of portfolio value per symbol
- Volatility adjustment against the configured volatility threshold
- A sector-cluster correlation dampener
- A Kelly criterion fraction derived from stop loss and take profit distances
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..config import RiskConfig
from ..errors import TradeEngineError, ValidationError
from ..models import (
    OrderRequest,
    OrderSide,
    OrderType,
    PositionSizeRecommendation,
    RiskParameters,
    SizingReasonCode,
    TimeInForce,
)
from ..portfolio.valuation import PortfolioValuation, PortfolioValuator
from ..utils import floor_shares, round_price
from .risk_calculator import RiskCalculator
from .sectors import OTHER_SECTOR, get_sector, sector_weights

logger = logging.getLogger(__name__)

PRICE_TICK = Decimal("0.01")


class PositionSizer:
    """Kelly and volatility adjusted position sizing."""

    def __init__(
        self,
        valuator: PortfolioValuator,
        risk_calculator: RiskCalculator,
        risk_config: Optional[RiskConfig] = None,
    ):
        self.valuator = valuator
        self.risk_calculator = risk_calculator
        self.risk_config = risk_config or RiskConfig()
        self.default_params = RiskParameters.from_config(self.risk_config)

    async def recommend(
        self,
        user_id: str,
        symbol: str,
        current_price: Decimal,
        params: Optional[RiskParameters] = None,
    ) -> PositionSizeRecommendation:
        """
        Recommend a position size for a prospective buy.

        Args:
            user_id: User the recommendation is for
            symbol: Trading symbol
            current_price: Price the user expects to pay
            params: Risk parameters overriding the configured defaults

        Returns:
            PositionSizeRecommendation. Unexpected failures produce a zero
            recommendation with reason code CALCULATION_ERROR.
        """
        symbol = symbol.strip().upper()
        params = params or self.default_params
        current_price = Decimal(str(current_price))

        if current_price <= 0:
            raise ValidationError(f"Price must be positive, got {current_price}")

        try:
            valuation = await self.valuator.value_portfolio(user_id)
            return await self._size(symbol, current_price, params, valuation)

        except TradeEngineError as e:
            logger.error(f"Error sizing position for {symbol}: {e.message}")
            return self._calculation_error(symbol)
        except Exception as e:
            logger.error(f"Unexpected error sizing position for {symbol}: {e}")
            return self._calculation_error(symbol)

    async def _size(
        self,
        symbol: str,
        current_price: Decimal,
        params: RiskParameters,
        valuation: PortfolioValuation,
    ) -> PositionSizeRecommendation:
        portfolio_value = valuation.total_value
        if portfolio_value <= 0:
            portfolio_value = self.risk_config.default_portfolio_value

        max_position_value = portfolio_value * params.max_position_size_pct
        max_shares = floor_shares(max_position_value / current_price)

        existing = valuation.holding(symbol)
        existing_value = existing.market_value if existing else Decimal("0")
        available_value = max_position_value - existing_value

        stop_loss_price = round_price(current_price * (1 - params.stop_loss_pct), PRICE_TICK)
        take_profit_price = round_price(current_price * (1 + params.take_profit_pct), PRICE_TICK)

        if available_value <= 0:
            logger.info(f"Position limit reached for {symbol}: existing value {existing_value}")
            return PositionSizeRecommendation(
                symbol=symbol,
                recommended_shares=Decimal("0"),
                max_shares=Decimal("0"),
                reason_code=SizingReasonCode.POSITION_LIMIT_REACHED,
                risk_score=10,
                stop_loss_price=stop_loss_price,
                take_profit_price=take_profit_price,
            )

        volatility_pct = await self.risk_calculator.symbol_volatility_pct(symbol)
        volatility_adjustment = self._volatility_adjustment(volatility_pct, params)
        correlation_adjustment = self._correlation_adjustment(symbol, valuation)
        kelly_adjustment = self._kelly_adjustment(params)

        adjustment_factor = volatility_adjustment * correlation_adjustment * kelly_adjustment
        recommended_value = available_value * Decimal(str(adjustment_factor))
        recommended_shares = floor_shares(recommended_value / current_price)

        risk_score = self._risk_score(
            recommended_shares * current_price, portfolio_value, volatility_pct, correlation_adjustment
        )

        logger.debug(
            f"Sized {symbol}: vol_adj={volatility_adjustment:.3f} corr_adj={correlation_adjustment:.2f} "
            f"kelly_adj={kelly_adjustment:.3f} -> {recommended_shares} shares"
        )

        return PositionSizeRecommendation(
            symbol=symbol,
            recommended_shares=recommended_shares,
            max_shares=max_shares,
            reason_code=self._reason_code(adjustment_factor),
            risk_score=risk_score,
            stop_loss_price=stop_loss_price,
            take_profit_price=take_profit_price,
            adjustment_factor=adjustment_factor,
            volatility_pct=volatility_pct,
        )

    @staticmethod
    def _volatility_adjustment(volatility_pct: float, params: RiskParameters) -> float:
        if volatility_pct <= 0:
            return 1.0
        return min(1.0, params.volatility_threshold_pct / volatility_pct)

    def _correlation_adjustment(self, symbol: str, valuation: PortfolioValuation) -> float:
        """
        Dampen sizing when the symbol joins an already overweight sector.

        Sector membership stands in for computed return correlation.
        """
        sector = get_sector(symbol)
        if sector == OTHER_SECTOR:
            return 1.0

        weights = sector_weights(valuation.values_by_symbol())
        if weights.get(sector, 0.0) > self.risk_config.sector_cluster_threshold:
            return 0.5
        return 1.0

    def _kelly_adjustment(self, params: RiskParameters) -> float:
        win_rate = self.risk_config.kelly_win_rate
        avg_win = float(params.take_profit_pct)
        avg_loss = float(params.stop_loss_pct)

        kelly_fraction = (win_rate * avg_win - (1 - win_rate) * avg_loss) / avg_win
        return max(0.1, min(1.0, kelly_fraction))

    @staticmethod
    def _risk_score(
        position_value: Decimal,
        portfolio_value: Decimal,
        volatility_pct: float,
        correlation_adjustment: float,
    ) -> float:
        position_weight = float(position_value / portfolio_value) if portfolio_value > 0 else 0.0
        weight_score = min(10.0, position_weight * 100)
        volatility_score = min(10.0, volatility_pct / 3)
        correlation_score = (1 - correlation_adjustment) * 5
        return round(min(10.0, max(1.0, weight_score + volatility_score + correlation_score)), 2)

    @staticmethod
    def _reason_code(adjustment_factor: float) -> SizingReasonCode:
        if adjustment_factor < 0.3:
            return SizingReasonCode.HIGH_RISK_REDUCTION
        if adjustment_factor < 0.6:
            return SizingReasonCode.MODERATE_RISK_REDUCTION
        if adjustment_factor < 0.9:
            return SizingReasonCode.MINOR_RISK_ADJUSTMENT
        return SizingReasonCode.OPTIMAL_SIZING

    @staticmethod
    def _calculation_error(symbol: str) -> PositionSizeRecommendation:
        return PositionSizeRecommendation(
            symbol=symbol,
            recommended_shares=Decimal("0"),
            max_shares=Decimal("0"),
            reason_code=SizingReasonCode.CALCULATION_ERROR,
            risk_score=10,
        )

    async def create_stop_loss_order(
        self, user_id: str, symbol: str, params: Optional[RiskParameters] = None
    ) -> OrderRequest:
        """Build a stop sell for the whole position at the configured stop distance."""
        symbol = symbol.strip().upper()
        params = params or self.default_params

        position = await self.valuator.ledger.get_position(user_id, symbol)
        if position is None:
            raise ValidationError(f"No position in {symbol} to protect")

        stop_price = (position.average_cost * (1 - params.stop_loss_pct)).quantize(
            PRICE_TICK, rounding=ROUND_HALF_UP
        )
        logger.info(f"Stop loss for {user_id}/{symbol}: {position.shares} shares at {stop_price}")

        return OrderRequest(
            user_id=user_id,
            symbol=symbol,
            side=OrderSide.SELL,
            order_type=OrderType.STOP,
            quantity=position.shares,
            stop_price=stop_price,
            time_in_force=TimeInForce.GTC,
            is_fractional=position.shares != floor_shares(position.shares),
        )
