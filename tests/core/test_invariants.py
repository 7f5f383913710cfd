"""Tests for vperp/core/invariants.py — invariant registry and checkers."""

from __future__ import annotations

from dataclasses import replace

from vperp.core.curve import init_curve
from vperp.core.invariants import INVARIANT_REGISTRY, check_all
from vperp.core.math import to_fixed as fx
from vperp.core.types import FundingState, Position
from vperp.core.waterfall import INSURANCE_FUND, LossWaterfall
from vperp.state.ledger import AssetLedger
from vperp.state.registry import ClearingState, Market, MarketRegistry


def _state():
    registry = MarketRegistry()
    registry.add(Market(
        market_id="ETH",
        quote_asset="USDC",
        price_feed_key="ETH",
        curve=init_curve(fx(1000), fx(100), 0),
        funding=FundingState(funding_period=3600, next_funding_time=3600),
    ))
    return ClearingState(registry, AssetLedger(), LossWaterfall("USDC"))


def test_fresh_state_is_clean():
    assert check_all(_state()) == []


def test_registry_covers_every_check():
    assert all(name.startswith("inv_") for name in INVARIANT_REGISTRY)


def test_net_size_must_match_positions():
    state = _state()
    state.registry.set_position("ETH", "alice", Position(size=fx(1), margin=fx(1), open_notional=fx(10)))
    assert check_all(state) == ["inv_net_size_matches_positions"]
    state.registry.update(replace(state.registry.get("ETH"), net_size=fx(1)))
    assert check_all(state) == []


def test_snapshots_out_of_order():
    state = _state()
    market = state.registry.get("ETH")
    snaps = market.curve.snapshots
    curve = replace(market.curve, snapshots=(replace(snaps[0], timestamp=10),) + snaps)
    state.registry.update(replace(market, curve=curve))
    assert check_all(state) == ["inv_snapshots_ordered"]


def test_stakes_must_sum_to_principal():
    state = _state()
    state.waterfall.staking_principal = 5
    assert check_all(state) == ["inv_staking_principal_matches_stakes"]


def test_contributions_backed_by_insurance_balance():
    state = _state()
    state.waterfall.insurance_by_market["ETH"] = 10
    assert check_all(state) == ["inv_insurance_contributions_covered"]
    state.ledger.mint(INSURANCE_FUND, "USDC", 10)
    assert check_all(state) == []


def test_size_totals_survive_copy():
    state = _state()
    state.registry.set_position("ETH", "alice", Position(size=fx(1), margin=fx(1), open_notional=fx(10)))
    state.registry.update(replace(state.registry.get("ETH"), net_size=fx(1)))

    copied = state.copy()
    assert check_all(copied) == []
    copied.registry.update(replace(copied.registry.get("ETH"), net_size=fx(2)))
    assert check_all(copied) == ["inv_net_size_matches_positions"]
