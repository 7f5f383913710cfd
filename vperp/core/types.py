"""Data types for the clearing engine.

All records are frozen dataclasses (immutable).

Units/conventions:
- amounts, prices and ratios are 18-decimal fixed-point ints (see ``math.ONE``),
- ``size`` is signed base units (long > 0, short < 0),
- ``open_notional`` is the unsigned quote basis of a position,
- funding payments are positive when the trader pays.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import ClassVar, Tuple

from .math import ONE


@unique
class Side(Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


@unique
class Direction(Enum):
    """Which way an asset moves relative to the curve."""
    ADD_TO_AMM = "add"
    REMOVE_FROM_AMM = "remove"


@unique
class PnlCalcOption(Enum):
    SPOT_PRICE = "spot_price"
    TWAP = "twap"


@unique
class Event(Enum):
    """One member per observable record type."""
    POSITION_CHANGED = "PositionChanged"
    POSITION_LIQUIDATED = "PositionLiquidated"
    MARGIN_CHANGED = "MarginChanged"
    REPEG = "Repeg"
    K_UPDATED = "UpdateK"
    FUNDING_SETTLED = "FundingSettled"
    MARKET_ADDED = "MarketAdded"
    MARKET_REMOVED = "MarketRemoved"
    BAD_DEBT_REALIZED = "BadDebtRealized"


@dataclass(frozen=True)
class Position:
    """Per (market, trader) position."""

    size: int = 0
    margin: int = 0
    open_notional: int = 0
    last_premium_fraction: int = 0
    updated_at: int = 0

    def __post_init__(self) -> None:
        if self.margin < 0:
            raise ValueError(f"margin must be non-negative: {self.margin}")
        if self.open_notional < 0:
            raise ValueError(f"open_notional must be non-negative: {self.open_notional}")
        if self.size == 0 and (self.margin != 0 or self.open_notional != 0):
            raise ValueError("flat position must carry no margin or open notional")

    @property
    def is_empty(self) -> bool:
        return self.size == 0

    @property
    def is_long(self) -> bool:
        return self.size > 0


EMPTY_POSITION = Position()


@dataclass(frozen=True)
class RiskParams:
    """Margin and liquidation ratios shared by all markets."""

    initial_margin_ratio: int = ONE // 20
    maintenance_margin_ratio: int = ONE // 20
    liquidation_fee_ratio: int = ONE // 20
    # 0 disables partial liquidation.
    partial_liquidation_ratio: int = 0

    def __post_init__(self) -> None:
        for name in (
            "initial_margin_ratio",
            "maintenance_margin_ratio",
            "liquidation_fee_ratio",
            "partial_liquidation_ratio",
        ):
            value = getattr(self, name)
            if value < 0 or value > ONE:
                raise ValueError(f"{name} must be within [0, 1]: {value}")
        if self.initial_margin_ratio == 0:
            raise ValueError("initial_margin_ratio must be positive")
        if self.maintenance_margin_ratio > self.initial_margin_ratio:
            raise ValueError("maintenance_margin_ratio must not exceed initial_margin_ratio")


@dataclass(frozen=True)
class FundingState:
    """Funding schedule and append-only cumulative premium history."""

    funding_period: int
    next_funding_time: int
    cumulative_premium_fractions: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if self.funding_period <= 0:
            raise ValueError(f"funding_period must be positive: {self.funding_period}")

    @property
    def latest_cumulative(self) -> int:
        if not self.cumulative_premium_fractions:
            return 0
        return self.cumulative_premium_fractions[-1]


# -- Observable records ------------------------------------------------------

@dataclass(frozen=True)
class PositionChanged:
    event: ClassVar[Event] = Event.POSITION_CHANGED

    trader: str
    market: str
    margin: int
    position_notional: int
    exchanged_size: int
    fee: int
    size_after: int
    realized_pnl: int
    unrealized_pnl_after: int
    bad_debt: int
    liquidation_penalty: int
    spot_price: int
    funding_payment: int


@dataclass(frozen=True)
class PositionLiquidated:
    event: ClassVar[Event] = Event.POSITION_LIQUIDATED

    trader: str
    market: str
    position_notional: int
    position_size: int
    liquidation_fee: int
    liquidator: str
    bad_debt: int
    # Share of the penalty retained by the loss buffer.
    backstop_fee: int = 0


@dataclass(frozen=True)
class MarginChanged:
    event: ClassVar[Event] = Event.MARGIN_CHANGED

    trader: str
    market: str
    amount: int
    funding_payment: int


@dataclass(frozen=True)
class Recentered:
    """Repeg (``Event.REPEG``) or depth change (``Event.K_UPDATED``)."""

    event: Event
    market: str
    new_quote: int
    new_base: int
    cost: int


@dataclass(frozen=True)
class FundingSettled:
    event: ClassVar[Event] = Event.FUNDING_SETTLED

    market: str
    premium_fraction: int
    cumulative_premium_fraction: int
    mark_twap: int
    oracle_twap: int
    system_cost: int
    capped: bool
    next_funding_time: int


@dataclass(frozen=True)
class MarketListed:
    """Market added (``Event.MARKET_ADDED``) or removed (``Event.MARKET_REMOVED``)."""

    event: Event
    market: str


@dataclass(frozen=True)
class BadDebtRealized:
    event: ClassVar[Event] = Event.BAD_DEBT_REALIZED

    market: str
    amount: int
    drawn: int
