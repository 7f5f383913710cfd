"""
vperp: virtual-AMM perpetual-futures clearing engine
"""

from .core.math import ONE, from_fixed, to_fixed
from .core.types import PnlCalcOption, Side
from .integration import (
    Action,
    ClearingHouse,
    ClearingHouseConfig,
    InMemoryPriceFeed,
    MarketConfig,
    Operation,
    StepResult,
    load_config,
)

__version__ = "0.1.0"

__all__ = [
    "ONE",
    "from_fixed",
    "to_fixed",
    "PnlCalcOption",
    "Side",
    "Action",
    "ClearingHouse",
    "ClearingHouseConfig",
    "InMemoryPriceFeed",
    "MarketConfig",
    "Operation",
    "StepResult",
    "load_config",
]
