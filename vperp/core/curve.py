"""Virtual constant-product price curve.

The curve holds no real liquidity; it exists for price discovery only.
The curve stores its constant K; only ``repeg`` and ``adjust_k`` change it.

Every function here is pure: it takes a ``CurveState`` and returns a new one.

Rounding: after a swap the counter reserve is recomputed from the stored K as
``ceil(K / r)``, so ``Q * B >= K`` and a reserve the curve has held before
maps back to the same counter reserve. Rounding never compounds across swaps,
so unwinding a trade straight away never leaves the trader worse off.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Tuple

from .errors import FluctuationLimitExceeded, InsufficientLiquidity, SlippageExceeded
from .math import ONE, abs_val, ceil_div, div_d, mul_d, sign
from .types import Direction, PnlCalcOption

logger = logging.getLogger(__name__)

# Oldest snapshots beyond this many are dropped.
SNAPSHOT_HISTORY_LIMIT: int = 1024


@dataclass(frozen=True)
class ReserveSnapshot:
    quote_reserve: int
    base_reserve: int
    timestamp: int

    @property
    def price(self) -> int:
        return div_d(self.quote_reserve, self.base_reserve)


@dataclass(frozen=True)
class CurveState:
    """Reserves, fee/limit ratios and reserve history of one market."""

    quote_reserve: int
    base_reserve: int
    k: int
    toll_ratio: int = 0
    spread_ratio: int = 0
    # 0 disables the check.
    fluctuation_limit_ratio: int = 0
    # 0 disables the check.
    trade_limit_ratio: int = 9 * ONE // 10
    snapshots: Tuple[ReserveSnapshot, ...] = ()

    def __post_init__(self) -> None:
        if self.quote_reserve <= 0 or self.base_reserve <= 0:
            raise ValueError(
                f"reserves must be positive: quote={self.quote_reserve} base={self.base_reserve}"
            )
        if self.quote_reserve * self.base_reserve < self.k:
            raise ValueError(f"reserves fall short of k: {self.quote_reserve} * {self.base_reserve} < {self.k}")
        for name in ("toll_ratio", "spread_ratio", "fluctuation_limit_ratio", "trade_limit_ratio"):
            value = getattr(self, name)
            if value < 0 or value > ONE:
                raise ValueError(f"{name} must be within [0, 1]: {value}")

    @property
    def product(self) -> int:
        return self.quote_reserve * self.base_reserve


def init_curve(quote_reserve: int, base_reserve: int, now: int, **params: int) -> CurveState:
    """Create a curve with a genesis snapshot at *now*."""
    curve = CurveState(quote_reserve=quote_reserve, base_reserve=base_reserve, k=quote_reserve * base_reserve, **params)
    return replace(curve, snapshots=(ReserveSnapshot(quote_reserve, base_reserve, now),))


# -- Prices ------------------------------------------------------------------

def spot_price(curve: CurveState) -> int:
    """``Q / B``."""
    return div_d(curve.quote_reserve, curve.base_reserve)


def twap_price(curve: CurveState, interval: int, now: int) -> int:
    """Time-weighted spot price over ``[now - interval, now]``.

    Each snapshot's price holds from its timestamp until the next snapshot (or
    *now*). With no elapsed time inside the window this is the spot price.
    """
    if interval <= 0 or not curve.snapshots:
        return spot_price(curve)
    window_start = now - interval
    cursor = now
    weighted = 0
    for snap in reversed(curve.snapshots):
        start = max(snap.timestamp, window_start)
        if cursor > start:
            weighted += snap.price * (cursor - start)
            cursor = start
        if snap.timestamp <= window_start:
            break
    elapsed = now - cursor
    if elapsed <= 0:
        return spot_price(curve)
    return weighted // elapsed


def _reference_price(curve: CurveState, now: int) -> int:
    """Price at the end of the last timestamp before *now*."""
    for snap in reversed(curve.snapshots):
        if snap.timestamp < now:
            return snap.price
    if curve.snapshots:
        return curve.snapshots[0].price
    return spot_price(curve)


# -- Quotes (read-only) ------------------------------------------------------

def get_input_price(curve: CurveState, direction: Direction, quote_amount: int) -> int:
    """Base amount exchanged for moving *quote_amount* of quote in *direction*.

    Args:
        direction: ``ADD_TO_AMM`` buys base with quote, ``REMOVE_FROM_AMM`` sells base for quote.
        quote_amount: Non-negative quote amount.

    Returns:
        Unsigned base amount.

    Raises:
        InsufficientLiquidity: If the removal would drain the quote reserve.
    """
    if quote_amount < 0:
        raise ValueError(f"quote_amount must be non-negative: {quote_amount}")
    if quote_amount == 0:
        return 0
    k = curve.k
    if direction is Direction.ADD_TO_AMM:
        quote_after = curve.quote_reserve + quote_amount
        return curve.base_reserve - ceil_div(k, quote_after)
    if quote_amount >= curve.quote_reserve:
        raise InsufficientLiquidity("quote removal exceeds reserve")
    quote_after = curve.quote_reserve - quote_amount
    return ceil_div(k, quote_after) - curve.base_reserve


def get_output_price(curve: CurveState, direction: Direction, base_amount: int) -> int:
    """Quote amount exchanged for moving *base_amount* of base in *direction*.

    ``ADD_TO_AMM`` sells base to the curve (quote received), ``REMOVE_FROM_AMM``
    buys base from it (quote paid).
    """
    if base_amount < 0:
        raise ValueError(f"base_amount must be non-negative: {base_amount}")
    if base_amount == 0:
        return 0
    k = curve.k
    if direction is Direction.ADD_TO_AMM:
        base_after = curve.base_reserve + base_amount
        return curve.quote_reserve - ceil_div(k, base_after)
    if base_amount >= curve.base_reserve:
        raise InsufficientLiquidity("base removal exceeds reserve")
    base_after = curve.base_reserve - base_amount
    return ceil_div(k, base_after) - curve.quote_reserve


# -- Swaps -------------------------------------------------------------------

def _over_trade_limit(curve: CurveState, reserve: int, amount: int) -> bool:
    if curve.trade_limit_ratio == 0:
        return False
    return amount > mul_d(reserve, curve.trade_limit_ratio)


def _record(curve: CurveState, quote_reserve: int, base_reserve: int, now: int, k: int = 0) -> CurveState:
    snap = ReserveSnapshot(quote_reserve, base_reserve, now)
    snaps = curve.snapshots
    if len(snaps) > 1 and snaps[-1].timestamp == now:
        snaps = snaps[:-1] + (snap,)
    else:
        snaps = snaps + (snap,)
    if len(snaps) > SNAPSHOT_HISTORY_LIMIT:
        snaps = snaps[-SNAPSHOT_HISTORY_LIMIT:]
    return replace(
        curve, quote_reserve=quote_reserve, base_reserve=base_reserve, k=k or curve.k, snapshots=snaps
    )


def is_over_fluctuation_limit(curve: CurveState, new_price: int, now: int) -> bool:
    """True when *new_price* moved further than allowed from the reference price."""
    if curve.fluctuation_limit_ratio == 0:
        return False
    ref = _reference_price(curve, now)
    return abs_val(new_price - ref) * ONE > curve.fluctuation_limit_ratio * ref


def _check_fluctuation(before: CurveState, after: CurveState, now: int) -> None:
    if is_over_fluctuation_limit(before, spot_price(after), now):
        raise FluctuationLimitExceeded(
            f"price moved from {_reference_price(before, now)} to {spot_price(after)}"
        )


def swap_input(
    curve: CurveState,
    direction: Direction,
    quote_amount: int,
    base_limit: int,
    now: int,
    *,
    skip_fluctuation_check: bool = False,
) -> tuple[CurveState, int]:
    """Swap a fixed quote amount. Returns ``(new_curve, base_amount)``.

    ``base_limit`` (0 = none) is the minimum base received when adding quote
    and the maximum base sold when removing quote.
    """
    if quote_amount == 0:
        return curve, 0
    if direction is Direction.REMOVE_FROM_AMM and _over_trade_limit(curve, curve.quote_reserve, quote_amount):
        raise InsufficientLiquidity("over trading limit")

    base_amount = get_input_price(curve, direction, quote_amount)
    if base_limit != 0:
        if direction is Direction.ADD_TO_AMM and base_amount < base_limit:
            raise SlippageExceeded(f"less than minimal base received: {base_amount} < {base_limit}")
        if direction is Direction.REMOVE_FROM_AMM and base_amount > base_limit:
            raise SlippageExceeded(f"more than maximal base sold: {base_amount} > {base_limit}")

    if direction is Direction.ADD_TO_AMM:
        new_q = curve.quote_reserve + quote_amount
        new_b = curve.base_reserve - base_amount
    else:
        new_q = curve.quote_reserve - quote_amount
        new_b = curve.base_reserve + base_amount
    if new_b <= 0:
        raise InsufficientLiquidity("base reserve exhausted")

    after = _record(curve, new_q, new_b, now)
    if not skip_fluctuation_check:
        _check_fluctuation(curve, after, now)
    logger.debug("swap_input %s quote=%d base=%d -> Q=%d B=%d", direction.value, quote_amount, base_amount, new_q, new_b)
    return after, base_amount


def swap_output(
    curve: CurveState,
    direction: Direction,
    base_amount: int,
    quote_limit: int,
    now: int,
    *,
    skip_fluctuation_check: bool = False,
) -> tuple[CurveState, int]:
    """Swap a fixed base amount. Returns ``(new_curve, quote_amount)``.

    ``quote_limit`` (0 = none) is the minimum quote received when adding base
    and the maximum quote paid when removing base.
    """
    if base_amount == 0:
        return curve, 0
    if direction is Direction.REMOVE_FROM_AMM and _over_trade_limit(curve, curve.base_reserve, base_amount):
        raise InsufficientLiquidity("over trading limit")

    quote_amount = get_output_price(curve, direction, base_amount)
    if quote_limit != 0:
        if direction is Direction.ADD_TO_AMM and quote_amount < quote_limit:
            raise SlippageExceeded(f"less than minimal quote received: {quote_amount} < {quote_limit}")
        if direction is Direction.REMOVE_FROM_AMM and quote_amount > quote_limit:
            raise SlippageExceeded(f"more than maximal quote paid: {quote_amount} > {quote_limit}")

    if direction is Direction.ADD_TO_AMM:
        new_q = curve.quote_reserve - quote_amount
        new_b = curve.base_reserve + base_amount
    else:
        new_q = curve.quote_reserve + quote_amount
        new_b = curve.base_reserve - base_amount
    if new_q <= 0:
        raise InsufficientLiquidity("quote reserve exhausted")

    after = _record(curve, new_q, new_b, now)
    if not skip_fluctuation_check:
        _check_fluctuation(curve, after, now)
    logger.debug("swap_output %s base=%d quote=%d -> Q=%d B=%d", direction.value, base_amount, quote_amount, new_q, new_b)
    return after, quote_amount


# -- Fees and valuation ------------------------------------------------------

def calc_fee(curve: CurveState, notional: int) -> tuple[int, int]:
    """``(toll, spread)`` charged on a trade of *notional* quote."""
    notional = abs_val(notional)
    return mul_d(notional, curve.toll_ratio), mul_d(notional, curve.spread_ratio)


def position_value(curve: CurveState, size: int, option: PnlCalcOption = PnlCalcOption.SPOT_PRICE, *, twap: int = 0) -> int:
    """Quote value of unwinding *size* base.

    ``SPOT_PRICE`` walks the curve (long: ``Q*d/(B+d)``, short: ``Q*|d|/(B-|d|)``);
    ``TWAP`` values ``|size|`` at the supplied *twap*.
    """
    if size == 0:
        return 0
    if option is PnlCalcOption.TWAP:
        return mul_d(abs_val(size), twap)
    direction = Direction.ADD_TO_AMM if size > 0 else Direction.REMOVE_FROM_AMM
    return get_output_price(curve, direction, abs_val(size))


def recenter_cost(before: CurveState, after: CurveState, net_size: int) -> int:
    """Cost to the system of moving reserves from *before* to *after*.

    Positive means the system pays (traders' net exposure gains value).
    """
    if net_size == 0:
        return 0
    return sign(net_size) * (position_value(after, net_size) - position_value(before, net_size))


# -- Recentering -------------------------------------------------------------

def repeg(curve: CurveState, new_quote_reserve: int, now: int) -> CurveState:
    """Set ``Q`` holding ``B``: moves price, changes K."""
    if new_quote_reserve <= 0:
        raise ValueError(f"new_quote_reserve must be positive: {new_quote_reserve}")
    return _record(curve, new_quote_reserve, curve.base_reserve, now, new_quote_reserve * curve.base_reserve)


def adjust_k(curve: CurveState, numerator: int, denominator: int, now: int) -> CurveState:
    """Scale both reserves by ``numerator / denominator``: keeps price, changes K."""
    if numerator <= 0 or denominator <= 0:
        raise ValueError(f"ratio must be positive: {numerator}/{denominator}")
    new_q = curve.quote_reserve * numerator // denominator
    new_b = curve.base_reserve * numerator // denominator
    if new_q <= 0 or new_b <= 0:
        raise InsufficientLiquidity("k adjustment would empty a reserve")
    return _record(curve, new_q, new_b, now, new_q * new_b)
