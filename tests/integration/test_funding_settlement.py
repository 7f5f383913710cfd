"""Funding windows and operator recentering through the clearing house."""

from __future__ import annotations

import pytest

from vperp import Side, to_fixed as fx
from vperp.core.errors import AuthorizationError, InsufficientFeePool, StaleOracle
from vperp.core.types import Event, FundingSettled, Recentered
from vperp.core.waterfall import INSURANCE_FUND, STAKING_POOL
from vperp.integration.config import DAY

BUY, SELL = Side.BUY, Side.SELL


def _records(house, kind):
    return [e for e in house.events if isinstance(e, kind)]


class TestSchedule:
    def test_nothing_due_before_window(self, make_house, clock):
        house = make_house()
        clock.advance(DAY - 1)
        assert house.settle_funding("anyone", "ETH") is None
        assert _records(house, FundingSettled) == []

    def test_window_advances_once(self, make_house, clock, feed):
        house = make_house()
        clock.advance(DAY)
        feed.set_price("ETH", fx(10), clock.now)

        first = house.settle_funding("anyone", "ETH")
        assert first.premium_fraction == 0
        assert first.next_funding_time == clock.now + DAY
        assert house.settle_funding("anyone", "ETH") is None
        assert house.market("ETH").funding.cumulative_premium_fractions == (0,)

    def test_stale_feed_ignored_inside_window(self, make_house, clock, feed):
        house = make_house()
        feed.max_staleness = 60
        clock.advance(DAY)
        feed.set_price("ETH", fx(10), clock.now)
        assert house.settle_funding("anyone", "ETH") is not None
        market = house.market("ETH")

        clock.advance(3600)
        assert house.settle_funding("anyone", "ETH") is None
        assert house.market("ETH") == market

    def test_missing_oracle_blocks_settlement(self, make_house, clock):
        house = make_house()
        house.open_position("alice", "ETH", BUY, fx(100), fx(10))
        clock.advance(DAY)
        with pytest.raises(StaleOracle):
            house.open_position("alice", "ETH", BUY, fx(100), fx(10))
        assert house.get_position("ETH", "alice").open_notional == fx(100)

    def test_trade_settles_elapsed_window_first(self, make_house, clock, feed):
        house = make_house()
        house.open_position("alice", "ETH", BUY, fx(100), fx(10))
        clock.advance(DAY)
        feed.set_price("ETH", house.spot_price("ETH"), clock.now)

        house.add_margin("alice", "ETH", fx(1))
        settled = _records(house, FundingSettled)
        assert len(settled) == 1
        assert house.events.index(settled[0]) < len(house.events) - 1


class TestPayments:
    def test_payments_and_system_cost_net_to_zero(self, make_house, clock, feed):
        house = make_house()
        house.open_position("alice", "ETH", BUY, fx(600), fx(2))
        house.open_position("bob", "ETH", SELL, fx(1200), fx(1))
        house.stake("dave", fx(10))
        assert house.market("ETH").net_size == -fx(150)

        clock.advance(DAY)
        feed.set_price("ETH", fx("1.59"), clock.now)
        record = house.settle_funding("anyone", "ETH")

        assert record.mark_twap == fx("1.6")
        assert record.premium_fraction == fx("0.01")
        assert record.system_cost == fx("1.5")
        assert record.capped is False

        alice = house.get_position_with_funding("ETH", "alice")
        bob = house.get_position_with_funding("ETH", "bob")
        assert alice.margin == fx("299.625")
        assert bob.margin == fx("1201.875")
        paid = (fx(300) - alice.margin) + (fx(1200) - bob.margin)
        assert paid + record.system_cost == 0
        assert house.ledger.balance_of(STAKING_POOL, "USDC") == fx("8.5")

    def test_funding_applied_on_next_margin_change(self, make_house, clock, feed):
        house = make_house()
        house.open_position("alice", "ETH", BUY, fx(600), fx(2))
        house.open_position("bob", "ETH", SELL, fx(1200), fx(1))
        house.stake("dave", fx(10))
        clock.advance(DAY)
        feed.set_price("ETH", fx("1.59"), clock.now)

        record = house.remove_margin("bob", "ETH", fx(1))
        assert record.funding_payment == -fx("1.875")
        assert house.get_position("ETH", "bob").margin == fx("1200.875")

    def test_diverged_mark_is_repegged_to_oracle(self, make_house, clock, feed):
        house = make_house()
        house.open_position("alice", "ETH", SELL, fx(600), fx(10))
        clock.advance(DAY)
        feed.set_price("ETH", fx("2.1"), clock.now)

        record = house.settle_funding("anyone", "ETH")
        curve = house.market("ETH").curve
        assert (curve.quote_reserve, curve.base_reserve) == (fx(525), fx(250))
        assert house.spot_price("ETH") == fx("2.1")
        assert record.premium_fraction == -fx("0.5")
        assert record.cumulative_premium_fraction == -fx("0.5")

        repegs = [e for e in _records(house, Recentered) if e.event is Event.REPEG]
        assert repegs[0].cost == -fx("187.5")
        # The short owes more funding than its margin; only the vault balance is released.
        assert house.get_position_with_funding("ETH", "alice").margin == 0
        assert house.vault_balance("ETH") == 0
        assert house.ledger.balance_of(INSURANCE_FUND, "USDC") == fx(60)


@pytest.fixture
def fee_house(make_house):
    """Net short 25 at Q=800/B=125 with 70 of collected spread fees."""
    house = make_house(market={"spread_ratio": fx("0.1")})
    house.open_position("alice", "ETH", BUY, fx(250), fx(2))
    house.open_position("bob", "ETH", SELL, fx(450), fx(1))
    return house


class TestOperatorRecentering:
    def test_starting_point(self, fee_house):
        market = fee_house.market("ETH")
        assert market.net_size == -fx(25)
        assert (market.curve.quote_reserve, market.curve.base_reserve) == (fx(800), fx(125))
        assert market.total_fees == fx(70)
        assert market.total_minus_fees == fx(70)
        assert fee_house.available_budget("ETH") == fx(70)

    def test_repeg_with_revenue(self, fee_house):
        record = fee_house.repeg("operator", "ETH", fx(900))
        assert record.event is Event.REPEG
        assert record.cost == -fx(25)
        assert fee_house.market("ETH").total_minus_fees == fx(95)

    def test_repeg_with_cost(self, fee_house):
        record = fee_house.repeg("operator", "ETH", fx(700))
        assert record.cost == fx(25)
        assert fee_house.market("ETH").total_minus_fees == fx(45)
        assert fee_house.ledger.balance_of(INSURANCE_FUND, "USDC") == fx(45)

    def test_repeg_beyond_half_the_fee_pool(self, fee_house):
        with pytest.raises(InsufficientFeePool):
            fee_house.repeg("operator", "ETH", fx(600))
        assert fee_house.market("ETH").curve.quote_reserve == fx(800)

    def test_adjust_k(self, fee_house):
        deeper = fee_house.adjust_k("operator", "ETH", 11, 10)
        assert deeper.event is Event.K_UPDATED
        assert abs(deeper.cost - fx("4.444444444444444444")) <= 1
        assert fee_house.spot_price("ETH") == fx("6.4")

    def test_adjust_k_shallower(self, fee_house):
        shallower = fee_house.adjust_k("operator", "ETH", 9, 10)
        assert abs(shallower.cost + fx("5.714285714285714285")) <= 1

    def test_adjust_k_beyond_fee_pool(self, fee_house):
        with pytest.raises(InsufficientFeePool):
            fee_house.adjust_k("operator", "ETH", 100, 10)

    def test_operator_only(self, fee_house):
        with pytest.raises(AuthorizationError):
            fee_house.repeg("alice", "ETH", fx(900))
        with pytest.raises(AuthorizationError):
            fee_house.adjust_k("owner", "ETH", 11, 10)
