"""
Static sector classification.

A coarse symbol-to-sector table used for sector allocation reporting and as
the correlated-cluster heuristic in position sizing. Unknown symbols fall
into "Other".
"""

from decimal import Decimal
from typing import Dict, Mapping

SECTOR_MAP: Dict[str, str] = {
    "AAPL": "Technology",
    "MSFT": "Technology",
    "GOOGL": "Technology",
    "GOOG": "Technology",
    "META": "Technology",
    "NVDA": "Technology",
    "AMZN": "Consumer Discretionary",
    "TSLA": "Consumer Discretionary",
}

OTHER_SECTOR = "Other"


def get_sector(symbol: str) -> str:
    return SECTOR_MAP.get(symbol.upper(), OTHER_SECTOR)


def sector_weights(values: Mapping[str, Decimal]) -> Dict[str, float]:
    """Portfolio weight per sector from a symbol -> market value map."""
    total = sum(values.values(), Decimal("0"))
    if total <= 0:
        return {}

    weights: Dict[str, float] = {}
    for symbol, value in values.items():
        sector = get_sector(symbol)
        weights[sector] = weights.get(sector, 0.0) + float(value / total)
    return weights

