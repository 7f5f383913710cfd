from __future__ import annotations

import pytest

from vperp import ClearingHouse, ClearingHouseConfig, InMemoryPriceFeed, MarketConfig, to_fixed

GENESIS = 1_600_000_000
TRADERS = ("alice", "bob", "carol", "dave")


class ManualClock:
    def __init__(self, now: int = GENESIS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def feed(clock) -> InMemoryPriceFeed:
    return InMemoryPriceFeed(clock)


@pytest.fixture
def make_house(clock, feed):
    """Build a clearing house with one ETH market (Q=1000, B=100) and funded traders."""

    def _make(*, balance=5000, market=None, **house_kwargs) -> ClearingHouse:
        config = ClearingHouseConfig(owner="owner", operator="operator", quote_asset="USDC", **house_kwargs)
        house = ClearingHouse(config, feed, clock=clock)
        if market is None:
            market = {}
        if isinstance(market, dict):
            params = {"quote_reserve": to_fixed(1000), "base_reserve": to_fixed(100)}
            params.update(market)
            market = MarketConfig(market_id="ETH", price_feed_key="ETH", **params)
        house.add_market("owner", market)
        for trader in TRADERS:
            house.ledger.mint(trader, "USDC", to_fixed(balance))
            house.approve(trader, to_fixed(10**9))
        return house

    return _make
