"""Tests for vperp/core/funding.py — premium settlement and recentering."""

from __future__ import annotations

import pytest

from vperp.core.curve import adjust_k, init_curve, recenter_cost
from vperp.core.errors import InsufficientFeePool
from vperp.core.funding import FundingEngine, is_diverged, k_increase_ratio, premium_fraction
from vperp.core.math import ONE, REFERENCE_PERIOD, to_fixed as fx
from vperp.core.types import Event, FundingSettled, FundingState, Recentered
from vperp.core.waterfall import INSURANCE_FUND, LossWaterfall
from vperp.state.ledger import AssetLedger
from vperp.state.registry import ClearingState, Market, MarketRegistry

DAY = REFERENCE_PERIOD


def _state(net_size=0, vault=100, **market_kwargs):
    registry = MarketRegistry()
    registry.add(Market(
        market_id="ETH",
        quote_asset="USDC",
        price_feed_key="ETH",
        curve=init_curve(fx(1000), fx(100), 0),
        funding=FundingState(funding_period=DAY, next_funding_time=DAY),
        net_size=net_size,
        open_interest_notional=fx(100) if net_size else 0,
        **market_kwargs,
    ))
    ledger = AssetLedger()
    ledger.mint("vault:ETH", "USDC", fx(vault))
    return ClearingState(registry, ledger, LossWaterfall("USDC"))


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_premium_fraction_scales_with_period(self):
        assert premium_fraction(fx("1.6"), fx("2.1"), DAY) == -fx("0.5")
        assert premium_fraction(fx(11), fx(10), DAY // 24) == fx(1) // 24

    def test_divergence(self):
        assert is_diverged(fx("1.6"), fx("2.1"), fx("0.1")) is True
        assert is_diverged(fx(10), fx("10.5"), fx("0.1")) is False
        assert is_diverged(fx(10), fx(20), 0) is False

    def test_k_increase_ratio_matches_revenue(self):
        curve = init_curve(fx(1000), fx(100), 0)
        num, den = k_increase_ratio(curve, fx(10), fx(1), 2 * ONE)
        cost = recenter_cost(curve, adjust_k(curve, num, den, 1), fx(10))
        assert abs(cost - fx(1)) < 10**6

    def test_k_increase_ratio_short_exposure(self):
        curve = init_curve(fx(1000), fx(100), 0)
        num, den = k_increase_ratio(curve, -fx(10), fx(1), 2 * ONE)
        assert num > den
        cost = recenter_cost(curve, adjust_k(curve, num, den, 1), -fx(10))
        assert abs(cost - fx(1)) < 10**6

    def test_k_increase_ratio_capped(self):
        curve = init_curve(fx(1000), fx(100), 0)
        assert k_increase_ratio(curve, fx(10), fx(1), ONE + ONE // 100) == (ONE + ONE // 100, ONE)

    def test_k_increase_ratio_without_exposure(self):
        curve = init_curve(fx(1000), fx(100), 0)
        assert k_increase_ratio(curve, 0, fx(1), 2 * ONE) is None


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

class TestSettle:
    def test_noop_before_window(self):
        state = _state()
        assert FundingEngine().settle(state, "ETH", DAY - 1, fx(10)) is None
        assert state.events == []

    def test_second_call_in_window_is_noop(self):
        state = _state()
        engine = FundingEngine()
        first = engine.settle(state, "ETH", DAY, fx("9.9"))
        assert isinstance(first, FundingSettled)
        assert first.next_funding_time == 2 * DAY
        curve = state.registry.get("ETH").curve
        assert engine.settle(state, "ETH", DAY + 10, fx(5)) is None
        market = state.registry.get("ETH")
        assert market.funding.cumulative_premium_fractions == (fx("0.1"),)
        assert market.curve == curve

    def test_rejects_non_positive_oracle(self):
        with pytest.raises(ValueError):
            FundingEngine().settle(_state(), "ETH", DAY, 0)

    def test_revenue_buys_depth_on_adjustable_market(self):
        state = _state(net_size=fx(10), adjustable=True)
        record = FundingEngine().settle(state, "ETH", DAY, fx("9.9"))
        market = state.registry.get("ETH")

        assert record.premium_fraction == fx("0.1")
        assert record.system_cost == -fx(1)
        assert (market.curve.quote_reserve, market.curve.base_reserve) == (fx(1010), fx(101))
        k_event = [e for e in state.events if isinstance(e, Recentered)][0]
        assert k_event.event is Event.K_UPDATED
        released = fx(1) - k_event.cost
        assert state.ledger.balance_of(INSURANCE_FUND, "USDC") == released
        assert market.total_minus_fees == released

    def test_depth_cost_above_revenue_drawn_from_budget(self, monkeypatch):
        monkeypatch.setattr("vperp.core.funding.recenter_cost", lambda before, after, net: fx(1) + 5)
        state = _state(net_size=fx(10), adjustable=True)
        state.ledger.mint("staker", "USDC", fx(10))
        state.waterfall.stake(state.ledger, "staker", fx(10))

        FundingEngine().settle(state, "ETH", DAY, fx("9.9"))
        market = state.registry.get("ETH")
        assert (market.curve.quote_reserve, market.curve.base_reserve) == (fx(1010), fx(101))
        assert state.vault_balance("ETH") == fx(100) + 5
        assert state.waterfall.staking_balance(state.ledger) == fx(10) - 5
        assert state.ledger.balance_of(INSURANCE_FUND, "USDC") == 0
        assert market.total_minus_fees == -5

    def test_unfundable_depth_cost_skips_increase(self, monkeypatch):
        monkeypatch.setattr("vperp.core.funding.recenter_cost", lambda before, after, net: fx(1) + 5)
        state = _state(net_size=fx(10), adjustable=True)

        FundingEngine().settle(state, "ETH", DAY, fx("9.9"))
        market = state.registry.get("ETH")
        assert (market.curve.quote_reserve, market.curve.base_reserve) == (fx(1000), fx(100))
        assert state.ledger.balance_of(INSURANCE_FUND, "USDC") == fx(1)
        assert [e for e in state.events if isinstance(e, Recentered)] == []

    def test_revenue_released_on_plain_market(self):
        state = _state(net_size=fx(10))
        FundingEngine().settle(state, "ETH", DAY, fx("9.9"))
        assert state.ledger.balance_of(INSURANCE_FUND, "USDC") == fx(1)
        assert state.vault_balance("ETH") == fx(99)

    def test_cost_capped_by_empty_budget(self):
        state = _state(net_size=fx(10))
        record = FundingEngine().settle(state, "ETH", DAY, fx("10.1"))
        assert record.capped is True
        assert record.premium_fraction == 0
        assert record.system_cost == 0

    def test_capped_cost_lowers_k(self):
        state = _state(net_size=fx(10), adjustable=True, can_lower_k=True)
        FundingEngine().settle(state, "ETH", DAY, fx("10.1"))
        curve = state.registry.get("ETH").curve
        assert (curve.quote_reserve, curve.base_reserve) == (fx(990), fx(99))

    def test_cost_paid_from_staking_share(self):
        state = _state(net_size=fx(10))
        state.ledger.mint("staker", "USDC", fx(10))
        state.waterfall.stake(state.ledger, "staker", fx(10))
        record = FundingEngine().settle(state, "ETH", DAY, fx("10.1"))
        assert record.capped is False
        assert record.system_cost == fx(1)
        assert state.vault_balance("ETH") == fx(101)

    def test_unfundable_forced_repeg_is_skipped(self):
        state = _state(net_size=fx(10))
        record = FundingEngine().settle(state, "ETH", DAY, fx(20))
        assert state.registry.get("ETH").curve.quote_reserve == fx(1000)
        assert record.capped is True

    def test_forced_repeg_pins_price_to_oracle(self):
        state = _state(net_size=-fx(10))
        FundingEngine().settle(state, "ETH", DAY, fx(12))
        curve = state.registry.get("ETH").curve
        assert curve.quote_reserve * ONE // curve.base_reserve == fx(12)


# ---------------------------------------------------------------------------
# Manual recentering guard
# ---------------------------------------------------------------------------

class TestManualGuard:
    def test_cost_needs_fee_pool(self):
        state = _state(net_size=fx(10))
        with pytest.raises(InsufficientFeePool):
            FundingEngine().repeg(state, "ETH", fx(1100), 1)

    def test_revenue_needs_no_pool(self):
        state = _state(net_size=fx(10))
        record = FundingEngine().repeg(state, "ETH", fx(900), 1)
        assert record.event is Event.REPEG
        assert record.cost < 0
        assert state.registry.get("ETH").total_minus_fees == -record.cost
