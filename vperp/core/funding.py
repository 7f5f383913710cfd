"""Funding settlement and curve recentering.

Settlement is time-gated per market: nothing happens before
``next_funding_time``; afterwards one premium fraction is appended to the
market's cumulative history and the schedule advances by one period.
Positions pick up the payment lazily (see ``positions.py``).

The curve is the counterparty of the traders' net exposure, so each funding
event has a system cost ``-(net_size * premium_fraction)``:

- a cost is paid from the loss waterfall into the market vault, capped at
  the market's available budget (the premium is scaled down to fit);
- a revenue leaves the vault, optionally buys curve depth (K increase) on
  adjustable markets, and the rest is distributed through the waterfall.

Manual ``repeg`` / ``adjust_k`` are operator tools guarded by the same
budget plus half of the market's accumulated fee pool.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from ..state.registry import ClearingState, Market
from .curve import CurveState, adjust_k, position_value, recenter_cost, repeg, twap_price
from .errors import InsufficientFeePool, InsufficientLiquidity
from .math import ONE, REFERENCE_PERIOD, abs_val, mul_d, mul_div, sign
from .types import Event, FundingSettled, Recentered

logger = logging.getLogger(__name__)


def premium_fraction(mark_twap: int, oracle_twap: int, funding_period: int) -> int:
    """``(mark - oracle) * period / reference_period``; positive means longs pay."""
    return mul_div(mark_twap - oracle_twap, funding_period, REFERENCE_PERIOD)


def is_diverged(mark_twap: int, oracle_twap: int, threshold: int) -> bool:
    """True when ``|oracle - mark| / mark`` exceeds *threshold*."""
    if threshold == 0 or mark_twap <= 0:
        return False
    return abs_val(oracle_twap - mark_twap) * ONE > threshold * mark_twap


def k_increase_ratio(curve: CurveState, net_size: int, revenue: int, cap: int) -> Optional[tuple[int, int]]:
    """Depth multiplier ``(num, den)`` whose adjustment cost equals *revenue*.

    Scaling reserves by ``m`` changes the unwind value of the net exposure to
    ``m*Q*d/(m*B+d)``; solving ``cost(m) == revenue`` gives the closed forms
    below. The result is capped at ``cap`` (fixed-point); ``None`` means no
    increase is possible.
    """
    if net_size == 0 or revenue <= 0:
        return None
    q, b = curve.quote_reserve, curve.base_reserve
    n0 = position_value(curve, net_size)
    if net_size > 0:
        target = n0 + revenue
        num = target * net_size
        den = q * net_size - target * b
    else:
        size = -net_size
        target = n0 - revenue
        num = target * size
        den = target * b - q * size
    if target <= 0 or den <= 0 or num * ONE > cap * den:
        num, den = cap, ONE
    if num <= den:
        return None
    return num, den


class FundingEngine:
    """Periodic premium settlement plus manual and automatic recentering."""

    def available_budget(self, state: ClearingState, market_id: str) -> int:
        return state.waterfall.available_budget_for(
            state.ledger, market_id, state.registry.open_interest()
        )

    # -- recentering ----------------------------------------------------------

    def _apply_recenter(
        self, state: ClearingState, market: Market, new_curve: CurveState, cost: int, kind: Event
    ) -> Market:
        """Commit new reserves and settle *cost* between vault and waterfall."""
        if cost > 0:
            state.waterfall.withdraw(state.ledger, market.market_id, cost, market.vault)
        elif cost < 0:
            self._release_revenue(state, market, -cost)
        market = replace(
            market,
            curve=new_curve,
            total_minus_fees=market.total_minus_fees - cost,
            net_revenues_since_last_funding=market.net_revenues_since_last_funding + max(0, -cost),
        )
        state.registry.update(market)
        state.emit(Recentered(kind, market.market_id, new_curve.quote_reserve, new_curve.base_reserve, cost))
        logger.info(
            "%s %s: Q=%d B=%d cost=%d", kind.value, market.market_id,
            new_curve.quote_reserve, new_curve.base_reserve, cost,
        )
        return market

    def _release_revenue(self, state: ClearingState, market: Market, revenue: int) -> int:
        """Move system revenue out of the vault into the waterfall. Returns the amount moved.

        Revenue owed by positions that are already under water is not in the
        vault; only what the vault holds is released.
        """
        vault_balance = state.vault_balance(market.market_id)
        collected = min(revenue, vault_balance)
        if collected < revenue:
            logger.warning(
                "vault of %s holds %d of %d revenue; releasing what is there", market.market_id, vault_balance, revenue
            )
        state.waterfall.distribute(state.ledger, market.market_id, collected, market.vault, vault_balance - collected)
        return collected

    def _require_fundable(self, state: ClearingState, market: Market, cost: int) -> None:
        if cost <= 0:
            return
        limit = min(self.available_budget(state, market.market_id), market.total_minus_fees // 2)
        if cost > limit:
            raise InsufficientFeePool(f"recentering cost {cost} exceeds fundable {limit}")

    def repeg(self, state: ClearingState, market_id: str, new_quote_reserve: int, now: int) -> Recentered:
        """Operator repeg: set Q holding B, paying or collecting the exposure cost."""
        market = state.registry.require_open(market_id)
        new_curve = repeg(market.curve, new_quote_reserve, now)
        cost = recenter_cost(market.curve, new_curve, market.net_size)
        self._require_fundable(state, market, cost)
        self._apply_recenter(state, market, new_curve, cost, Event.REPEG)
        return state.events[-1]

    def adjust_k(self, state: ClearingState, market_id: str, numerator: int, denominator: int, now: int) -> Recentered:
        """Operator depth change: scale Q and B by ``numerator / denominator``."""
        market = state.registry.require_open(market_id)
        new_curve = adjust_k(market.curve, numerator, denominator, now)
        cost = recenter_cost(market.curve, new_curve, market.net_size)
        self._require_fundable(state, market, cost)
        self._apply_recenter(state, market, new_curve, cost, Event.K_UPDATED)
        return state.events[-1]

    # -- settlement -----------------------------------------------------------

    def settle(self, state: ClearingState, market_id: str, now: int, oracle_twap: int) -> Optional[FundingSettled]:
        """Settle one funding window if it has elapsed; otherwise do nothing."""
        market = state.registry.get(market_id)
        if now < market.funding.next_funding_time:
            return None
        if oracle_twap <= 0:
            raise ValueError(f"oracle twap must be positive: {oracle_twap}")

        mark_twap = twap_price(market.curve, market.twap_interval, now)

        if is_diverged(mark_twap, oracle_twap, market.price_divergence_threshold):
            market = self._force_repeg(state, market, oracle_twap, now)

        premium = premium_fraction(mark_twap, oracle_twap, market.funding.funding_period)
        system_cost = -mul_d(market.net_size, premium)
        capped = False

        if system_cost > 0:
            budget = self.available_budget(state, market_id)
            if system_cost > budget:
                capped = True
                premium = sign(premium) * mul_div(abs_val(premium), budget, system_cost)
                system_cost = min(budget, max(0, -mul_d(market.net_size, premium)))
                logger.warning(
                    "funding for %s capped by budget %d (premium scaled to %d)", market_id, budget, premium
                )
            state.waterfall.withdraw(state.ledger, market_id, system_cost, market.vault)
            market = replace(market, total_minus_fees=market.total_minus_fees - system_cost)
            state.registry.update(market)
            if capped and market.adjustable and market.can_lower_k:
                market = self._lower_k(state, market, now)
        elif system_cost < 0:
            market = self._collect_revenue(state, market, -system_cost, now)

        cumulative = market.funding.latest_cumulative + premium
        funding = replace(
            market.funding,
            next_funding_time=market.funding.next_funding_time + market.funding.funding_period,
            cumulative_premium_fractions=market.funding.cumulative_premium_fractions + (cumulative,),
        )
        market = replace(market, funding=funding, net_revenues_since_last_funding=0)
        state.registry.update(market)

        record = FundingSettled(
            market=market_id,
            premium_fraction=premium,
            cumulative_premium_fraction=cumulative,
            mark_twap=mark_twap,
            oracle_twap=oracle_twap,
            system_cost=system_cost,
            capped=capped,
            next_funding_time=funding.next_funding_time,
        )
        state.emit(record)
        logger.info(
            "funding settled for %s: premium=%d cumulative=%d cost=%d", market_id, premium, cumulative, system_cost
        )
        return record

    def _force_repeg(self, state: ClearingState, market: Market, oracle_twap: int, now: int) -> Market:
        target = repeg(market.curve, mul_d(oracle_twap, market.curve.base_reserve), now)
        cost = recenter_cost(market.curve, target, market.net_size)
        budget = self.available_budget(state, market.market_id)
        if cost > budget:
            logger.warning(
                "skipping forced repeg of %s: cost %d exceeds budget %d", market.market_id, cost, budget
            )
            return market
        return self._apply_recenter(state, market, target, cost, Event.REPEG)

    def _lower_k(self, state: ClearingState, market: Market, now: int) -> Market:
        numerator = ONE - market.k_decrease_max
        if numerator >= ONE:
            return market
        try:
            new_curve = adjust_k(market.curve, numerator, ONE, now)
            cost = recenter_cost(market.curve, new_curve, market.net_size)
        except InsufficientLiquidity:
            logger.warning("cannot lower k of %s: net exposure exceeds reserves", market.market_id)
            return market
        if cost > 0:
            return market
        return self._apply_recenter(state, market, new_curve, cost, Event.K_UPDATED)

    def _collect_revenue(self, state: ClearingState, market: Market, revenue: int, now: int) -> Market:
        """Spend *revenue* on curve depth where allowed and release the rest.

        A depth increase whose cost rounds above *revenue* draws the excess
        from the market's budget, or is skipped when the budget cannot pay it.
        """
        spent = 0
        excess = 0
        if market.adjustable:
            ratio = k_increase_ratio(market.curve, market.net_size, revenue, market.k_increase_max)
            if ratio is not None:
                new_curve = adjust_k(market.curve, ratio[0], ratio[1], now)
                cost = recenter_cost(market.curve, new_curve, market.net_size)
                excess = max(0, cost - revenue)
                if excess > self.available_budget(state, market.market_id):
                    logger.warning(
                        "skipping k increase on %s: cost %d exceeds revenue %d and budget", market.market_id, cost, revenue
                    )
                    excess = 0
                elif cost > 0:
                    if excess:
                        state.waterfall.withdraw(state.ledger, market.market_id, excess, market.vault)
                    spent = cost - excess
                    market = replace(market, curve=new_curve)
                    state.registry.update(market)
                    state.emit(Recentered(
                        Event.K_UPDATED, market.market_id, new_curve.quote_reserve, new_curve.base_reserve, cost
                    ))
                    logger.info("k increased on %s: cost=%d of revenue=%d", market.market_id, cost, revenue)

        rest = revenue - spent
        if rest > 0:
            self._release_revenue(state, market, rest)
        market = replace(market, total_minus_fees=market.total_minus_fees + rest - excess)
        state.registry.update(market)
        return market
