"""
State management for the clearing engine
"""

from .ledger import AssetLedger

__all__ = [
    "AssetLedger",
]
