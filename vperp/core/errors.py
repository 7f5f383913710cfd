"""Exception types for the clearing engine.

Every domain failure derives from ``ClearingError`` so callers can catch the
whole family; the facade rolls back all state on any of them.
"""

from __future__ import annotations


class ClearingError(Exception):
    """Base class for all clearing-engine failures."""


# -- Margin ------------------------------------------------------------------

class MarginError(ClearingError):
    """A margin requirement was not satisfied."""


class MarginRatioNotMet(MarginError):
    """Raised when a margin ratio is on the wrong side of its threshold."""


class InsufficientMargin(MarginError):
    """Raised when removing margin would leave too little collateral."""


# -- Curve -------------------------------------------------------------------

class CurveError(ClearingError):
    """A swap could not be executed on the price curve."""


class InsufficientLiquidity(CurveError):
    """Raised when a swap would drain a reserve or exceed the trade limit."""


class FluctuationLimitExceeded(CurveError):
    """Raised when a trade moves the spot price further than allowed."""


# -- Trading -----------------------------------------------------------------

class SlippageExceeded(ClearingError):
    """Raised when a swap result misses the caller's limit."""


class BadDebt(ClearingError):
    """Raised when a voluntary action would realize bad debt."""


class EmptyPosition(ClearingError):
    """Raised when closing a position of size zero."""


class CapExceeded(ClearingError):
    """A per-market cap would be exceeded."""


class OverOpenInterestLimit(CapExceeded):
    """Raised when aggregate open-interest notional would exceed its cap."""


class OverPositionSizeLimit(CapExceeded):
    """Raised when a position's absolute size would exceed its cap."""


# -- Administration ----------------------------------------------------------

class AuthorizationError(ClearingError):
    """Raised when the caller lacks the required capability."""


class InsufficientFeePool(ClearingError):
    """Raised when a recentering cost exceeds what the market can fund."""


# -- Assets ------------------------------------------------------------------

class TokenGranularityError(ClearingError):
    """Raised for amounts finer than the asset's smallest unit."""


class InsufficientBalance(ClearingError):
    """Raised when a transfer exceeds a balance or allowance."""


# -- Markets -----------------------------------------------------------------

class MarketError(ClearingError):
    """Market registry failure."""


class MarketNotFound(MarketError):
    pass


class MarketAlreadyExists(MarketError):
    pass


class MarketClosed(MarketError):
    pass


class StaleOracle(ClearingError):
    """Raised when a price feed has not been updated recently enough."""


class InvariantViolation(ClearingError):
    """Raised when a post-state violates one or more invariants."""

    def __init__(self, violations: list[str]) -> None:
        self.violations = violations
        super().__init__(f"invariant violations: {', '.join(violations)}")
