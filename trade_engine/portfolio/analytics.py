"""
Portfolio Analytics

Per-position and portfolio-level performance metrics plus rebalance
recommendations. Everything here is derived on read from the ledger and
the price oracle; nothing is written back.

The portfolio value history is reconstructed from each holding's daily
closes at its current share count plus current cash. Benchmark relative
metrics use the configured benchmark symbol.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional

import pandas as pd

from ..config import RiskConfig
from ..errors import InsufficientShares, PriceUnavailable, ValidationError
from ..models import OrderSide, PortfolioMetrics, PositionMetrics, RebalanceAction
from ..risk_manager.risk_calculator import MIN_RETURNS, RiskCalculator
from ..risk_manager.sectors import sector_weights
from ..utils import floor_shares
from .lot_accounting import day_change, realized_gain_fifo, realized_gains_by_symbol, unrealized_pnl
from .valuation import Holding, PortfolioValuation, PortfolioValuator

logger = logging.getLogger(__name__)

TOP_HOLDINGS = 10
WEIGHT_TOLERANCE = 1e-6


class PortfolioAnalytics:
    """Performance and allocation analytics for a user's portfolio."""

    def __init__(
        self,
        valuator: PortfolioValuator,
        risk_calculator: RiskCalculator,
        risk_config: Optional[RiskConfig] = None,
    ):
        self.valuator = valuator
        self.ledger = valuator.ledger
        self.risk_calculator = risk_calculator
        self.risk_config = risk_config or RiskConfig()
        self.lookback_days = self.risk_config.analytics_lookback_days

    async def position_metrics(self, user_id: str, symbol: str) -> PositionMetrics:
        """
        Metrics for a single holding.

        Raises:
            ValidationError: the user holds no position in ``symbol``
        """
        symbol = symbol.strip().upper()
        valuation = await self.valuator.value_portfolio(user_id)
        holding = valuation.holding(symbol)
        if holding is None:
            raise ValidationError(f"No position in {symbol}")

        trades = await self.ledger.list_trades(user_id, symbol=symbol)
        try:
            realized = realized_gain_fifo(trades)
        except InsufficientShares as e:
            logger.error(f"Inconsistent trade history for {user_id}/{symbol}: {e.message}")
            realized = Decimal("0")

        return await self._holding_metrics(holding, valuation, realized, with_risk=True)

    async def _holding_metrics(
        self,
        holding: Holding,
        valuation: PortfolioValuation,
        realized_gain: Decimal,
        with_risk: bool = False,
    ) -> PositionMetrics:
        position = holding.position
        pnl, pnl_pct = unrealized_pnl(position, holding.price)
        change = day_change(position, holding.price, holding.previous_close)

        day_change_pct = 0.0
        if holding.previous_close:
            day_change_pct = float((holding.price - holding.previous_close) / holding.previous_close * 100)

        volatility_pct = 0.0
        beta = 1.0
        if with_risk:
            volatility_pct = await self.risk_calculator.symbol_volatility_pct(holding.symbol)
            beta = await self.risk_calculator.symbol_beta(holding.symbol)

        return PositionMetrics(
            symbol=holding.symbol,
            shares=position.shares,
            average_cost=position.average_cost,
            current_price=holding.price,
            market_value=holding.market_value,
            cost_basis=holding.cost_basis,
            unrealized_pnl=pnl,
            unrealized_pnl_pct=pnl_pct,
            day_change=change,
            day_change_pct=day_change_pct,
            realized_gain=realized_gain,
            weight=valuation.weights().get(holding.symbol, 0.0),
            volatility_pct=volatility_pct,
            beta=beta,
        )

    async def portfolio_metrics(self, user_id: str) -> PortfolioMetrics:
        """
        Aggregate metrics for a user's whole portfolio.

        With no positions, or fewer than 10 days of reconstructed history,
        the time-series metrics keep their defaults (beta 1.0, zeros
        elsewhere).
        """
        valuation = await self.valuator.value_portfolio(user_id)
        trades = await self.ledger.list_trades(user_id)

        try:
            realized = realized_gains_by_symbol(trades)
        except InsufficientShares as e:
            logger.error(f"Inconsistent trade history for {user_id}: {e.message}")
            realized = {}

        holdings_metrics = [
            await self._holding_metrics(h, valuation, realized.get(h.symbol, Decimal("0")))
            for h in valuation.holdings
        ]
        weights = valuation.weights()

        metrics = PortfolioMetrics(
            user_id=user_id,
            total_value=valuation.total_value,
            cash_balance=valuation.cash,
            total_cost=sum((h.cost_basis for h in valuation.holdings), Decimal("0")),
            total_unrealized_pnl=sum((m.unrealized_pnl for m in holdings_metrics), Decimal("0")),
            total_realized_gain=sum(realized.values(), Decimal("0")),
            day_change=sum((m.day_change for m in holdings_metrics), Decimal("0")),
            diversification=self.risk_calculator.diversification(weights.values()),
            concentration_risk=self.risk_calculator.concentration_risk(weights.values()),
            sector_allocation=sector_weights(valuation.values_by_symbol()),
            top_holdings=sorted(holdings_metrics, key=lambda m: m.market_value, reverse=True)[:TOP_HOLDINGS],
        )

        if not valuation.holdings:
            return metrics

        values = await self._value_history(valuation)
        returns = self.risk_calculator.returns_from_prices(values)
        if len(returns) < MIN_RETURNS:
            logger.debug(f"Insufficient history for {user_id} metrics ({len(returns)} returns)")
            return metrics

        calc = self.risk_calculator
        annualized = calc.annualized_return(returns)
        benchmark_returns = await self._benchmark_returns()
        beta = 1.0 if benchmark_returns is None else calc.beta(returns, benchmark_returns)
        if benchmark_returns is not None:
            metrics.information_ratio = calc.information_ratio(returns, benchmark_returns)

        metrics.annualized_return = annualized
        metrics.volatility = calc.volatility(returns)
        metrics.sharpe_ratio = calc.sharpe_ratio(returns)
        metrics.sortino_ratio = calc.sortino_ratio(returns)
        metrics.max_drawdown = calc.max_drawdown(values)
        metrics.calmar_ratio = calc.calmar_ratio(returns, values)
        metrics.beta = beta
        metrics.alpha = calc.alpha(annualized, beta)
        metrics.treynor_ratio = calc.treynor_ratio(annualized, beta)
        metrics.value_at_risk_95 = calc.value_at_risk(returns, valuation.total_value)
        return metrics

    async def _value_history(self, valuation: PortfolioValuation) -> pd.Series:
        """Daily portfolio value from each holding's closes at today's share count."""
        columns: Dict[str, pd.Series] = {}
        for holding in valuation.holdings:
            try:
                closes = await self.risk_calculator.get_close_series(holding.symbol, self.lookback_days)
            except PriceUnavailable as e:
                logger.warning(f"No history for {holding.symbol}, excluded from value history: {e.message}")
                continue
            if not closes.empty:
                columns[holding.symbol] = closes * float(holding.position.shares)

        if not columns:
            return pd.Series(dtype=float)

        frame = pd.DataFrame(columns).sort_index().ffill().dropna()
        return frame.sum(axis=1) + float(valuation.cash)

    async def _benchmark_returns(self) -> Optional[pd.Series]:
        benchmark = self.risk_config.benchmark_symbol
        try:
            return await self.risk_calculator.get_symbol_returns(benchmark, self.lookback_days)
        except PriceUnavailable as e:
            logger.warning(f"Benchmark {benchmark} unavailable, using beta 1.0: {e.message}")
            return None

    async def rebalance(
        self,
        user_id: str,
        target_allocation: Dict[str, float],
        threshold: Optional[float] = None,
    ) -> List[RebalanceAction]:
        """
        Trades that move each targeted symbol back to its target weight.

        Weights are fractions of total portfolio value including cash, so
        targets summing below 1 leave the remainder in cash. Symbols in the
        target but not held start at weight 0; held symbols absent from the
        target are left alone. Drift at or below ``threshold`` is ignored.

        Raises:
            ValidationError: a weight is outside [0, 1] or the weights sum above 1
        """
        threshold = float(self.risk_config.rebalance_threshold if threshold is None else threshold)
        targets = {symbol.strip().upper(): float(weight) for symbol, weight in target_allocation.items()}

        for symbol, weight in targets.items():
            if not 0 <= weight <= 1:
                raise ValidationError(f"Target weight for {symbol} must be between 0 and 1, got {weight}")
        if sum(targets.values()) > 1 + WEIGHT_TOLERANCE:
            raise ValidationError("Target weights sum to more than 1")

        valuation = await self.valuator.value_portfolio(user_id)
        total_value = valuation.total_value
        if total_value <= 0:
            return []

        actions: List[RebalanceAction] = []
        for symbol, target_weight in sorted(targets.items()):
            holding = valuation.holding(symbol)
            if holding is not None:
                price = holding.price
                held_shares = holding.position.shares
                current_value = holding.market_value
            else:
                try:
                    quote = await self.valuator.get_quote(symbol)
                except PriceUnavailable as e:
                    logger.warning(f"Skipping {symbol} in rebalance: {e.message}")
                    continue
                price = quote.price
                held_shares = Decimal("0")
                current_value = Decimal("0")

            if price <= 0:
                continue

            current_weight = float(current_value / total_value)
            drift = target_weight - current_weight
            if abs(drift) <= threshold:
                continue

            trade_value = abs(Decimal(str(drift)) * total_value)
            shares = floor_shares(trade_value / price)
            side = OrderSide.BUY if drift > 0 else OrderSide.SELL
            if side == OrderSide.SELL:
                shares = min(shares, held_shares)
            if shares <= 0:
                continue

            actions.append(
                RebalanceAction(
                    symbol=symbol,
                    action=side,
                    current_weight=current_weight,
                    target_weight=target_weight,
                    shares=shares,
                    value=(shares * price).quantize(Decimal("0.01")),
                )
            )

        logger.info(f"Rebalance for {user_id}: {len(actions)} actions")
        return actions
