"""
Risk Calculator for portfolio and symbol risk metrics.

This module implements the numeric core used by position sizing, alerts and
portfolio analytics:
- Annualized volatility from daily returns
- Beta against a benchmark
- Sharpe, Sortino, Calmar, Treynor and information ratios
- Historical Value at Risk
- Maximum drawdown
- Herfindahl concentration and diversification

Every metric tolerates short histories by returning a documented default
instead of dividing by a near-zero variance.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..config import RiskConfig
from ..errors import PriceUnavailable
from ..models import PriceBar
from ..price_oracle import PriceOracle, RetryPolicy

logger = logging.getLogger(__name__)

TRADING_DAYS = 252
MIN_RETURNS = 10
VARIANCE_EPSILON = 1e-12


class RiskCalculator:
    """
    Risk metric calculator.

    The pure methods operate on return or value series. The async helpers
    pull closes from the price oracle under the configured retry policy.
    """

    def __init__(
        self,
        price_oracle: Optional[PriceOracle] = None,
        retry_policy: Optional[RetryPolicy] = None,
        risk_config: Optional[RiskConfig] = None,
    ):
        self.price_oracle = price_oracle
        self.retry_policy = retry_policy or RetryPolicy()
        self.risk_config = risk_config or RiskConfig()
        self.risk_free_rate = self.risk_config.risk_free_rate
        self.market_return = self.risk_config.market_return
        self.default_volatility = self.risk_config.default_volatility_pct / 100
        self.lookback_days = self.risk_config.volatility_lookback_days

    # Series helpers

    @staticmethod
    def closes_to_series(bars: Sequence[PriceBar]) -> pd.Series:
        """Daily close series indexed by normalized date."""
        if not bars:
            return pd.Series(dtype=float)
        index = pd.to_datetime([bar.timestamp for bar in bars], utc=True).normalize()
        series = pd.Series([float(bar.close) for bar in bars], index=index)
        return series[~series.index.duplicated(keep="last")].sort_index()

    @staticmethod
    def returns_from_prices(prices: Iterable[float]) -> pd.Series:
        """Simple daily returns of a price or value series."""
        series = prices if isinstance(prices, pd.Series) else pd.Series(list(prices), dtype=float)
        series = series.astype(float)
        series = series[series > 0]
        return series.pct_change().dropna()

    # Single series metrics

    def volatility(self, returns: pd.Series) -> float:
        """
        Annualized volatility as a fraction.

        Sample standard deviation of daily returns scaled by sqrt(252).
        Returns the configured default with fewer than 10 returns.
        """
        if len(returns) < MIN_RETURNS:
            return self.default_volatility
        return float(np.std(np.asarray(returns, dtype=float), ddof=1) * np.sqrt(TRADING_DAYS))

    def annualized_return(self, returns: pd.Series) -> float:
        """Geometric annualized return of a daily return series."""
        if len(returns) == 0:
            return 0.0
        growth = float(np.prod(1 + np.asarray(returns, dtype=float)))
        if growth <= 0:
            return -1.0
        return growth ** (TRADING_DAYS / len(returns)) - 1

    def sharpe_ratio(self, returns: pd.Series) -> float:
        """(annualized return - risk free rate) / annualized volatility."""
        if len(returns) < MIN_RETURNS:
            return 0.0
        vol = float(np.std(np.asarray(returns, dtype=float), ddof=1) * np.sqrt(TRADING_DAYS))
        if vol < 1e-9:
            return 0.0
        return (self.annualized_return(returns) - self.risk_free_rate) / vol

    def sortino_ratio(self, returns: pd.Series) -> float:
        if len(returns) < MIN_RETURNS:
            return 0.0
        downside = np.asarray(returns[returns < 0], dtype=float)
        if len(downside) < 2:
            return 0.0
        downside_vol = float(np.std(downside, ddof=1) * np.sqrt(TRADING_DAYS))
        if downside_vol < 1e-9:
            return 0.0
        return (self.annualized_return(returns) - self.risk_free_rate) / downside_vol

    @staticmethod
    def max_drawdown(values: Iterable[float]) -> float:
        """Largest peak-to-trough decline as a fraction of the running peak."""
        series = np.asarray(list(values), dtype=float)
        if len(series) < 2:
            return 0.0
        running_peak = np.maximum.accumulate(series)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdowns = np.where(running_peak > 0, (running_peak - series) / running_peak, 0.0)
        return float(np.max(drawdowns))

    def calmar_ratio(self, returns: pd.Series, values: Iterable[float]) -> float:
        max_dd = self.max_drawdown(values)
        if max_dd < 1e-9:
            return 0.0
        return self.annualized_return(returns) / max_dd

    @staticmethod
    def value_at_risk(returns: pd.Series, value: Decimal, confidence: float = 0.95) -> Decimal:
        """
        Historical one-day VaR.

        Magnitude of the empirical (1 - confidence) percentile daily return,
        scaled by ``value``. Zero with fewer than 10 returns or when the
        percentile return is a gain.
        """
        if len(returns) < MIN_RETURNS:
            return Decimal("0")
        cutoff = float(np.percentile(np.asarray(returns, dtype=float), (1 - confidence) * 100))
        loss = max(0.0, -cutoff)
        return (Decimal(str(loss)) * value).quantize(Decimal("0.01"))

    # Paired series metrics

    @staticmethod
    def _align(left: pd.Series, right: pd.Series) -> pd.DataFrame:
        return pd.concat([left, right], axis=1, join="inner").dropna()

    def beta(self, asset_returns: pd.Series, benchmark_returns: pd.Series) -> float:
        """
        Covariance with the benchmark over benchmark variance.

        Defaults to 1.0 below 10 aligned returns or with zero benchmark variance.
        """
        aligned = self._align(asset_returns, benchmark_returns)
        if len(aligned) < MIN_RETURNS:
            return 1.0
        asset = aligned.iloc[:, 0].to_numpy()
        bench = aligned.iloc[:, 1].to_numpy()
        variance = np.var(bench, ddof=1)
        if variance < VARIANCE_EPSILON:
            return 1.0
        return float(np.cov(asset, bench, ddof=1)[0, 1] / variance)

    def correlation(self, left: pd.Series, right: pd.Series) -> float:
        aligned = self._align(left, right)
        if len(aligned) < MIN_RETURNS:
            return 0.0
        a = aligned.iloc[:, 0].to_numpy()
        b = aligned.iloc[:, 1].to_numpy()
        if np.std(a) < 1e-12 or np.std(b) < 1e-12:
            return 0.0
        return float(np.corrcoef(a, b)[0, 1])

    def information_ratio(self, returns: pd.Series, benchmark_returns: pd.Series) -> float:
        aligned = self._align(returns, benchmark_returns)
        if len(aligned) < MIN_RETURNS:
            return 0.0
        active = aligned.iloc[:, 0] - aligned.iloc[:, 1]
        tracking_error = float(np.std(active, ddof=1))
        if tracking_error < 1e-9:
            return 0.0
        return float(np.mean(active) / tracking_error * np.sqrt(TRADING_DAYS))

    def treynor_ratio(self, annualized_return: float, beta: float) -> float:
        if abs(beta) < 1e-9:
            return 0.0
        return (annualized_return - self.risk_free_rate) / beta

    def alpha(self, annualized_return: float, beta: float) -> float:
        """Jensen's alpha against the configured market return."""
        return annualized_return - (
            self.risk_free_rate + beta * (self.market_return - self.risk_free_rate)
        )

    # Weights

    @staticmethod
    def concentration_risk(weights: Iterable[float]) -> float:
        """Herfindahl-Hirschman index of portfolio weights."""
        weights = [w for w in weights if w > 0]
        if not weights:
            return 0.0
        return min(1.0, float(sum(w ** 2 for w in weights)))

    @classmethod
    def diversification(cls, weights: Iterable[float]) -> float:
        """Inverse Herfindahl index, zero for one or no positions."""
        weights = [w for w in weights if w > 0]
        if len(weights) <= 1:
            return 0.0
        return 1.0 - cls.concentration_risk(weights)

    @staticmethod
    def weighted_beta(betas: Dict[str, float], weights: Dict[str, float]) -> float:
        """Value-weighted portfolio beta."""
        if not weights:
            return 1.0
        return float(sum(betas.get(symbol, 1.0) * weight for symbol, weight in weights.items()))

    # Oracle backed helpers

    async def get_close_series(self, symbol: str, days: Optional[int] = None) -> pd.Series:
        if self.price_oracle is None:
            return pd.Series(dtype=float)
        bars: List[PriceBar] = await self.retry_policy.call(
            self.price_oracle.get_historical_closes, symbol, days or self.lookback_days
        )
        return self.closes_to_series(bars)

    async def get_symbol_returns(self, symbol: str, days: Optional[int] = None) -> pd.Series:
        closes = await self.get_close_series(symbol, days)
        return self.returns_from_prices(closes)

    async def symbol_volatility_pct(self, symbol: str, days: Optional[int] = None) -> float:
        """Annualized volatility in percent, default 25% on short or missing history."""
        try:
            returns = await self.get_symbol_returns(symbol, days)
        except PriceUnavailable as e:
            logger.warning(f"Using default volatility for {symbol}: {e}")
            return self.default_volatility * 100
        return self.volatility(returns) * 100

    async def symbol_beta(self, symbol: str, days: Optional[int] = None) -> float:
        benchmark = self.risk_config.benchmark_symbol
        if symbol == benchmark:
            return 1.0
        try:
            asset_returns = await self.get_symbol_returns(symbol, days)
            benchmark_returns = await self.get_symbol_returns(benchmark, days)
        except PriceUnavailable as e:
            logger.warning(f"Using default beta for {symbol}: {e}")
            return 1.0
        return self.beta(asset_returns, benchmark_returns)
