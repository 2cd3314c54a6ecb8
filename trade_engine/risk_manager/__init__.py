"""Position sizing, risk metrics and risk alerting."""

from .alert_monitor import RiskAlertMonitor
from .position_sizer import PositionSizer
from .risk_calculator import RiskCalculator

__all__ = ["PositionSizer", "RiskAlertMonitor", "RiskCalculator"]
