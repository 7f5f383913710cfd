"""
Entry-point facade, configuration and collaborator adapters
"""

from .clearing_house import Action, ClearingHouse, Operation, StepResult
from .config import ClearingHouseConfig, MarketConfig, load_config
from .oracle import InMemoryPriceFeed, PriceFeed

__all__ = [
    "Action",
    "ClearingHouse",
    "Operation",
    "StepResult",
    "ClearingHouseConfig",
    "MarketConfig",
    "load_config",
    "InMemoryPriceFeed",
    "PriceFeed",
]
