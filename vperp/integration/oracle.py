"""
Price-feed collaborator.

The engine only needs a time-weighted oracle price per feed key and the time
of its last update. ``InMemoryPriceFeed`` is the reference implementation used
by tests and local runs; it refuses to serve a price older than its staleness
window.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Protocol

from ..core.errors import StaleOracle


class PriceFeed(Protocol):
    def twap_price(self, key: str, interval: int) -> int: ...

    def latest_timestamp(self, key: str) -> int: ...


@dataclass(frozen=True)
class FeedEntry:
    price: int
    timestamp: int

    def __post_init__(self) -> None:
        if self.price <= 0:
            raise ValueError(f"price must be positive: {self.price}")
        if self.timestamp < 0:
            raise ValueError(f"timestamp must be non-negative: {self.timestamp}")


def is_fresh(entry: FeedEntry, now: int, max_staleness: int) -> bool:
    """True if *entry* is not from the future and within *max_staleness* of *now*."""
    if entry.timestamp > now:
        return False
    return (now - entry.timestamp) <= max_staleness


class InMemoryPriceFeed:
    """Feed keyed by string; ``max_staleness=0`` disables the freshness check."""

    def __init__(self, clock=None, *, max_staleness: int = 0):
        if max_staleness < 0:
            raise ValueError(f"max_staleness must be non-negative: {max_staleness}")
        self._clock = clock
        self.max_staleness = max_staleness
        self._entries: Dict[str, FeedEntry] = {}

    def set_price(self, key: str, price: int, timestamp: int) -> None:
        self._entries[key] = FeedEntry(price, timestamp)

    def _entry(self, key: str) -> FeedEntry:
        try:
            entry = self._entries[key]
        except KeyError:
            raise StaleOracle(f"no price for feed {key}") from None
        if self.max_staleness and self._clock is not None:
            if not is_fresh(entry, self._clock(), self.max_staleness):
                raise StaleOracle(f"price for feed {key} is stale (updated at {entry.timestamp})")
        return entry

    def twap_price(self, key: str, interval: int) -> int:
        return self._entry(key).price

    def latest_timestamp(self, key: str) -> int:
        return self._entry(key).timestamp
