"""Invariant checkers over a whole ``ClearingState``.

Each function returns True when the invariant holds, and ``check_all()``
returns the list of violated invariant IDs (empty = all pass). The facade runs
them after every call before committing, so per-position and per-market checks
look only at what the call wrote (see ``MarketRegistry.touched_positions``);
net size is compared against the registry's running total.
"""

from __future__ import annotations

from typing import Callable

from ..state.registry import ClearingState
from .waterfall import INSURANCE_FUND


def inv_reserves_positive(s: ClearingState) -> bool:
    return all(m.curve.quote_reserve > 0 and m.curve.base_reserve > 0 for m in s.registry.touched_markets())


def inv_net_size_matches_positions(s: ClearingState) -> bool:
    return all(m.net_size == s.registry.size_total(m.market_id) for m in s.registry.touched_markets())


def inv_stored_positions_open(s: ClearingState) -> bool:
    for _, _, position in s.registry.touched_positions():
        if position.is_empty or position.margin < 0:
            return False
    return True


def inv_open_interest_non_negative(s: ClearingState) -> bool:
    return all(m.open_interest_notional >= 0 for m in s.registry.touched_markets())


def inv_ledger_non_negative(s: ClearingState) -> bool:
    return s.ledger.verify_non_negative()


def inv_snapshots_ordered(s: ClearingState) -> bool:
    for market in s.registry.touched_markets():
        stamps = [snap.timestamp for snap in market.curve.snapshots]
        if stamps != sorted(stamps):
            return False
    return True


def inv_staking_principal_matches_stakes(s: ClearingState) -> bool:
    return s.waterfall.staking_principal == sum(s.waterfall.stakes.values())


def inv_insurance_contributions_covered(s: ClearingState) -> bool:
    contributed = sum(s.waterfall.insurance_by_market.values())
    return contributed <= s.ledger.balance_of(INSURANCE_FUND, s.waterfall.asset)


# ---------------------------------------------------------------------------
# Registry + check_all
# ---------------------------------------------------------------------------

INVARIANT_REGISTRY: dict[str, Callable[[ClearingState], bool]] = {
    "inv_reserves_positive": inv_reserves_positive,
    "inv_net_size_matches_positions": inv_net_size_matches_positions,
    "inv_stored_positions_open": inv_stored_positions_open,
    "inv_open_interest_non_negative": inv_open_interest_non_negative,
    "inv_ledger_non_negative": inv_ledger_non_negative,
    "inv_snapshots_ordered": inv_snapshots_ordered,
    "inv_staking_principal_matches_stakes": inv_staking_principal_matches_stakes,
    "inv_insurance_contributions_covered": inv_insurance_contributions_covered,
}


def check_all(state: ClearingState) -> list[str]:
    """Return list of violated invariant IDs (empty = all pass)."""
    return [
        inv_id
        for inv_id, check_fn in INVARIANT_REGISTRY.items()
        if not check_fn(state)
    ]
