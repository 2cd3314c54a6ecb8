"""
Risk alert monitor.

Derives stop loss, take profit, volatility and concentration alerts from a
user's current positions. Alerts are recomputed from scratch on every scan
and never written to the ledger; consumers that need deduplication key on
the alert id, which is stable per user, type and symbol.
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from ..config import RiskConfig, SchedulerConfig
from ..models import (
    PortfolioRiskSummary,
    RiskAlert,
    RiskAlertType,
    RiskParameters,
    RiskSeverity,
)
from ..portfolio.valuation import Holding, PortfolioValuation, PortfolioValuator
from .risk_calculator import RiskCalculator

logger = logging.getLogger(__name__)

AlertCallback = Callable[[str, List[RiskAlert]], Awaitable[None]]


class RiskAlertMonitor:
    """Periodic risk scan over every user holding positions."""

    def __init__(
        self,
        valuator: PortfolioValuator,
        risk_calculator: RiskCalculator,
        risk_config: Optional[RiskConfig] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        on_alerts: Optional[AlertCallback] = None,
    ):
        self.valuator = valuator
        self.risk_calculator = risk_calculator
        self.risk_config = risk_config or RiskConfig()
        self.params = RiskParameters.from_config(self.risk_config)
        self.interval = (scheduler_config or SchedulerConfig()).risk_check_interval
        self.on_alerts = on_alerts

        self.latest_alerts: Dict[str, List[RiskAlert]] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def scan(self, user_id: str, params: Optional[RiskParameters] = None) -> List[RiskAlert]:
        """Evaluate every position of a user and return the current alerts."""
        valuation = await self.valuator.value_portfolio(user_id)
        return await self._alerts_for(user_id, valuation, params or self.params)

    async def _alerts_for(
        self, user_id: str, valuation: PortfolioValuation, params: RiskParameters
    ) -> List[RiskAlert]:
        alerts: List[RiskAlert] = []
        for holding in valuation.holdings:
            alerts.extend(await self._position_alerts(user_id, holding, params))
        alerts.extend(self._concentration_alerts(user_id, valuation, params))
        return alerts

    async def _position_alerts(
        self, user_id: str, holding: Holding, params: RiskParameters
    ) -> List[RiskAlert]:
        alerts: List[RiskAlert] = []
        symbol = holding.symbol
        entry_price = holding.position.average_cost

        if holding.priced and entry_price > 0:
            change = (holding.price - entry_price) / entry_price
            loss_pct = -change

            if loss_pct > params.stop_loss_pct:
                alerts.append(
                    RiskAlert(
                        id=f"stop_loss_{symbol}",
                        user_id=user_id,
                        symbol=symbol,
                        alert_type=RiskAlertType.STOP_LOSS,
                        severity=RiskSeverity.HIGH,
                        title=f"Stop loss breached for {symbol}",
                        message=f"{symbol} has declined {float(loss_pct) * 100:.1f}% below your entry price",
                        action_required=True,
                        metadata={
                            "entry_price": str(entry_price),
                            "current_price": str(holding.price),
                            "stop_loss_pct": str(params.stop_loss_pct),
                        },
                    )
                )
            elif change >= params.take_profit_pct:
                alerts.append(
                    RiskAlert(
                        id=f"take_profit_{symbol}",
                        user_id=user_id,
                        symbol=symbol,
                        alert_type=RiskAlertType.TAKE_PROFIT,
                        severity=RiskSeverity.LOW,
                        title=f"Take profit reached for {symbol}",
                        message=f"{symbol} is up {float(change) * 100:.1f}% from your entry price",
                        action_required=False,
                        metadata={
                            "entry_price": str(entry_price),
                            "current_price": str(holding.price),
                            "take_profit_pct": str(params.take_profit_pct),
                        },
                    )
                )

        volatility_pct = await self.risk_calculator.symbol_volatility_pct(symbol)
        if volatility_pct > params.volatility_threshold_pct:
            alerts.append(
                RiskAlert(
                    id=f"volatility_{symbol}",
                    user_id=user_id,
                    symbol=symbol,
                    alert_type=RiskAlertType.VOLATILITY,
                    severity=RiskSeverity.MEDIUM,
                    title=f"High volatility in {symbol}",
                    message=f"{symbol} has high volatility ({volatility_pct:.1f}%)",
                    action_required=False,
                    metadata={
                        "volatility_pct": volatility_pct,
                        "threshold_pct": params.volatility_threshold_pct,
                    },
                )
            )
        return alerts

    @staticmethod
    def _concentration_alerts(
        user_id: str, valuation: PortfolioValuation, params: RiskParameters
    ) -> List[RiskAlert]:
        alerts: List[RiskAlert] = []
        limit_pct = float(params.max_position_size_pct) * 100

        # Weights are relative to invested value, cash excluded
        for symbol, weight in valuation.weights().items():
            concentration_pct = weight * 100
            if concentration_pct > limit_pct:
                alerts.append(
                    RiskAlert(
                        id=f"concentration_{symbol}",
                        user_id=user_id,
                        symbol=symbol,
                        alert_type=RiskAlertType.CONCENTRATION,
                        severity=RiskSeverity.HIGH,
                        title=f"Concentration risk in {symbol}",
                        message=(
                            f"{symbol} represents {concentration_pct:.1f}% of your portfolio "
                            f"(limit: {limit_pct:.1f}%)"
                        ),
                        action_required=True,
                        metadata={"weight": weight, "limit": float(params.max_position_size_pct)},
                    )
                )
        return alerts

    async def portfolio_risk_summary(self, user_id: str) -> PortfolioRiskSummary:
        """Coarse portfolio risk score plus the alerts behind it."""
        valuation = await self.valuator.value_portfolio(user_id)
        alerts = await self._alerts_for(user_id, valuation, self.params)

        position_count = len(valuation.holdings)
        high_alerts = sum(1 for alert in alerts if alert.severity == RiskSeverity.HIGH)
        weights = list(valuation.weights().values())

        return PortfolioRiskSummary(
            user_id=user_id,
            overall_risk_score=min(10, high_alerts * 2 + 3),
            diversification_score=8 if position_count > 10 else max(1.0, position_count * 0.8),
            herfindahl_diversification=self.risk_calculator.diversification(weights),
            concentration_risk=self.risk_calculator.concentration_risk(weights),
            portfolio_value=valuation.total_value,
            position_count=position_count,
            alerts=alerts,
        )

    # Scheduling

    async def start(self) -> None:
        """Start the periodic risk scan."""
        if self.is_running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop(), name="risk-alert-monitor")
        logger.info(f"Risk alert monitoring started (interval {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Risk alert monitoring stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in risk monitoring loop: {e}")
            await asyncio.sleep(self.interval)

    async def run_cycle(self) -> Dict[str, List[RiskAlert]]:
        """Scan every user with open positions once."""
        user_ids = await self.valuator.ledger.list_position_holders()
        results: Dict[str, List[RiskAlert]] = {}

        for user_id in user_ids:
            try:
                alerts = await self.scan(user_id)
            except Exception as e:
                logger.error(f"Risk scan failed for user {user_id}: {e}")
                continue

            results[user_id] = alerts
            if alerts:
                logger.info(f"{len(alerts)} risk alerts for user {user_id}")
            if self.on_alerts is not None:
                try:
                    await self.on_alerts(user_id, alerts)
                except Exception as e:
                    logger.error(f"Alert callback failed for user {user_id}: {e}")

        self.latest_alerts = results
        return results
