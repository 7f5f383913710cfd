"""
Market registry and the aggregate clearing state.

The registry owns every per-market record (curve, funding schedule, caps,
aggregates) and every (market, trader) position. Components receive it
explicitly through ``ClearingState``; nothing here is module-global.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, Set, Tuple

from ..core.curve import CurveState
from ..core.errors import MarketAlreadyExists, MarketClosed, MarketNotFound
from ..core.math import ONE
from ..core.types import EMPTY_POSITION, FundingState, Position
from ..core.waterfall import LossWaterfall
from .ledger import AssetLedger


def vault_account(market_id: str) -> str:
    """Ledger account holding a market's margins."""
    return f"vault:{market_id}"


@dataclass(frozen=True)
class Market:
    """Everything the engine knows about one market."""

    market_id: str
    quote_asset: str
    price_feed_key: str
    curve: CurveState
    funding: FundingState

    # Caps (0 = uncapped).
    max_holding_base: int = 0
    open_interest_cap: int = 0

    # Funding-driven recentering.
    twap_interval: int = 3_600
    price_divergence_threshold: int = ONE // 10
    adjustable: bool = False
    can_lower_k: bool = False
    k_increase_max: int = ONE + ONE // 100
    k_decrease_max: int = ONE // 100

    open: bool = True

    # Aggregates.
    net_size: int = 0
    open_interest_notional: int = 0
    total_fees: int = 0
    total_minus_fees: int = 0
    net_revenues_since_last_funding: int = 0

    def __post_init__(self) -> None:
        if not self.market_id:
            raise ValueError("market_id must be non-empty")
        if self.max_holding_base < 0 or self.open_interest_cap < 0:
            raise ValueError("caps must be non-negative")
        if self.k_increase_max < ONE:
            raise ValueError(f"k_increase_max must be >= 1: {self.k_increase_max}")
        if not 0 <= self.k_decrease_max < ONE:
            raise ValueError(f"k_decrease_max must be within [0, 1): {self.k_decrease_max}")
        if self.open_interest_notional < 0:
            raise ValueError("open_interest_notional must be non-negative")

    @property
    def vault(self) -> str:
        return vault_account(self.market_id)


class MarketRegistry:
    """Markets keyed by id plus positions keyed by (market, trader).

    The registry keeps the sum of stored position sizes per market and
    remembers which markets and positions were written since it was created
    or copied, so commit-time checks never walk every position.
    """

    def __init__(self):
        self._markets: Dict[str, Market] = {}
        self._positions: Dict[Tuple[str, str], Position] = {}
        self._size_totals: Dict[str, int] = {}
        self._touched_markets: Set[str] = set()
        self._touched_positions: Set[Tuple[str, str]] = set()

    def copy(self) -> "MarketRegistry":
        copied = MarketRegistry()
        # Markets and positions are immutable; shallow dict copies suffice.
        copied._markets = dict(self._markets)
        copied._positions = dict(self._positions)
        copied._size_totals = dict(self._size_totals)
        return copied

    # -- markets --------------------------------------------------------------

    def add(self, market: Market) -> None:
        if market.market_id in self._markets:
            raise MarketAlreadyExists(f"market already added: {market.market_id}")
        self._markets[market.market_id] = market
        self._touched_markets.add(market.market_id)

    def remove(self, market_id: str) -> Market:
        """Flag a market closed; its record is kept."""
        market = self.get(market_id)
        if not market.open:
            raise MarketNotFound(f"market already removed: {market_id}")
        closed = replace(market, open=False)
        self._markets[market_id] = closed
        self._touched_markets.add(market_id)
        return closed

    def get(self, market_id: str) -> Market:
        try:
            return self._markets[market_id]
        except KeyError:
            raise MarketNotFound(f"unknown market: {market_id}") from None

    def require_open(self, market_id: str) -> Market:
        market = self.get(market_id)
        if not market.open:
            raise MarketClosed(f"market closed: {market_id}")
        return market

    def update(self, market: Market) -> None:
        if market.market_id not in self._markets:
            raise MarketNotFound(f"unknown market: {market.market_id}")
        self._markets[market.market_id] = market
        self._touched_markets.add(market.market_id)

    def __contains__(self, market_id: object) -> bool:
        return market_id in self._markets

    def __iter__(self) -> Iterator[Market]:
        for market_id in sorted(self._markets):
            yield self._markets[market_id]

    def open_interest(self) -> Dict[str, int]:
        return {m.market_id: m.open_interest_notional for m in self}

    # -- positions ------------------------------------------------------------

    def get_position(self, market_id: str, trader: str) -> Position:
        return self._positions.get((market_id, trader), EMPTY_POSITION)

    def set_position(self, market_id: str, trader: str, position: Position) -> None:
        key = (market_id, trader)
        delta = position.size - self._positions.get(key, EMPTY_POSITION).size
        if delta:
            self._size_totals[market_id] = self._size_totals.get(market_id, 0) + delta
        if position.is_empty:
            self._positions.pop(key, None)
        else:
            self._positions[key] = position
        self._touched_positions.add(key)
        if market_id in self._markets:
            self._touched_markets.add(market_id)

    def size_total(self, market_id: str) -> int:
        """Sum of stored position sizes on *market_id*."""
        return self._size_totals.get(market_id, 0)

    def positions(self, market_id: str) -> Dict[str, Position]:
        """Open positions of one market keyed by trader (sorted)."""
        found = [(trader, pos) for (m, trader), pos in self._positions.items() if m == market_id]
        return dict(sorted(found))

    # -- write tracking -------------------------------------------------------

    def touched_markets(self) -> Iterator[Market]:
        for market_id in sorted(self._touched_markets):
            yield self._markets[market_id]

    def touched_positions(self) -> Iterator[Tuple[str, str, Position]]:
        """Stored positions written since this registry was created or copied."""
        for key in sorted(self._touched_positions):
            position = self._positions.get(key)
            if position is not None:
                yield key[0], key[1], position

    def __repr__(self) -> str:
        return f"MarketRegistry({len(self._markets)} markets, {len(self._positions)} positions)"


@dataclass
class ClearingState:
    """All mutable engine state; copied wholesale for atomic execution."""

    registry: MarketRegistry
    ledger: AssetLedger
    waterfall: LossWaterfall
    events: list = field(default_factory=list)

    def copy(self) -> "ClearingState":
        return ClearingState(
            registry=self.registry.copy(),
            ledger=self.ledger.copy(),
            waterfall=self.waterfall.copy(),
            events=[],
        )

    def emit(self, record) -> None:
        self.events.append(record)

    def vault_balance(self, market_id: str) -> int:
        market = self.registry.get(market_id)
        return self.ledger.balance_of(market.vault, market.quote_asset)
