"""Order execution: validation, risk gating, settlement and pending-order monitoring."""

from .execution_engine import OrderExecutionEngine, TriggerOutcome
from .order_monitor import MonitorCycleReport, PendingOrderMonitor
from .order_validator import OrderValidator
from .risk_gate import PortfolioSnapshot, RiskGate
from .slippage import SlippageModel

__all__ = [
    "OrderExecutionEngine",
    "TriggerOutcome",
    "PendingOrderMonitor",
    "MonitorCycleReport",
    "OrderValidator",
    "RiskGate",
    "PortfolioSnapshot",
    "SlippageModel",
]
