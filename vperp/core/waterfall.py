"""Loss-absorption waterfall: insurance fund backed by a staking pool.

Balances live in the shared ``AssetLedger`` under fixed account names; this
module keeps the accounting around them:

- the staking principal (reward = staking balance - principal),
- each market's contribution to the insurance fund,
- each market's prepaid bad-debt credit,
- an insurance deficit for costs absorbed beyond the fund's balance.

Revenue order: top up staking principal, then the insurance fund (a market's
contribution is capped by its vault balance), then staking reward.
Cost order: staking reward, the drawing market's insurance contribution,
staking principal, then the rest of the insurance fund. With the staking pool
deactivated the insurance fund alone absorbs costs.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping

from ..state.ledger import AssetLedger
from .errors import InsufficientBalance
from .math import mul_div

logger = logging.getLogger(__name__)

INSURANCE_FUND = "insurance_fund"
STAKING_POOL = "staking_pool"
TOLL_POOL = "toll_pool"


class LossWaterfall:
    """Accounting for the shared loss buffer of one quote asset."""

    def __init__(self, asset: str, *, staking_active: bool = True):
        self.asset = asset
        self.staking_active = staking_active
        self.staking_principal = 0
        self.stakes: Dict[str, int] = {}
        self.insurance_by_market: Dict[str, int] = {}
        self.prepaid_bad_debt: Dict[str, int] = {}
        self.deficit = 0

    def copy(self) -> "LossWaterfall":
        copied = LossWaterfall(self.asset, staking_active=self.staking_active)
        copied.staking_principal = self.staking_principal
        copied.stakes = dict(self.stakes)
        copied.insurance_by_market = dict(self.insurance_by_market)
        copied.prepaid_bad_debt = dict(self.prepaid_bad_debt)
        copied.deficit = self.deficit
        return copied

    # -- views ----------------------------------------------------------------

    def insurance_balance(self, ledger: AssetLedger) -> int:
        return ledger.balance_of(INSURANCE_FUND, self.asset)

    def staking_balance(self, ledger: AssetLedger) -> int:
        return ledger.balance_of(STAKING_POOL, self.asset)

    def staking_reward(self, ledger: AssetLedger) -> int:
        return max(0, self.staking_balance(ledger) - self.staking_principal)

    def contribution(self, market: str) -> int:
        return self.insurance_by_market.get(market, 0)

    def prepaid(self, market: str) -> int:
        return self.prepaid_bad_debt.get(market, 0)

    def available_budget_for(self, ledger: AssetLedger, market: str, open_interest: Mapping[str, int]) -> int:
        """Drawable amount for *market*.

        The market's own insurance contribution plus a share of the staking
        balance proportional to its open-interest notional. Staking is not
        counted when no market has open interest.
        """
        own = min(self.contribution(market), self.insurance_balance(ledger))
        total_oi = sum(open_interest.values())
        if not self.staking_active or total_oi <= 0:
            return own
        share = mul_div(self.staking_balance(ledger), open_interest.get(market, 0), total_oi)
        return own + share

    # -- revenue --------------------------------------------------------------

    def distribute(self, ledger: AssetLedger, market: str, amount: int, src: str, vault_balance: int) -> None:
        """Route *amount* of revenue from account *src* through the waterfall."""
        if amount < 0:
            raise ValueError(f"revenue must be non-negative: {amount}")
        remaining = amount

        if self.deficit > 0 and remaining > 0:
            repaid = min(self.deficit, remaining)
            ledger.transfer(src, INSURANCE_FUND, self.asset, repaid)
            self.deficit -= repaid
            remaining -= repaid

        if self.staking_active and remaining > 0:
            shortfall = self.staking_principal - self.staking_balance(ledger)
            if shortfall > 0:
                top_up = min(shortfall, remaining)
                ledger.transfer(src, STAKING_POOL, self.asset, top_up)
                remaining -= top_up

        if remaining > 0:
            room = max(0, vault_balance - self.contribution(market))
            to_insurance = min(remaining, room)
            if not (self.staking_active and self.staking_principal > 0):
                to_insurance = remaining
            ledger.transfer(src, INSURANCE_FUND, self.asset, to_insurance)
            self.insurance_by_market[market] = self.contribution(market) + to_insurance
            remaining -= to_insurance

        if remaining > 0:
            ledger.transfer(src, STAKING_POOL, self.asset, remaining)

    # -- costs ----------------------------------------------------------------

    def drawable(self, ledger: AssetLedger) -> int:
        """Everything ``withdraw`` could deliver right now, across all markets."""
        total = self.insurance_balance(ledger)
        if self.staking_active:
            total += self.staking_balance(ledger)
        return total

    def _debit_shared(self, amount: int, unattributed: int) -> None:
        """Charge a draw on other markets' insurance after the unattributed part."""
        rest = amount - min(amount, unattributed)
        for other in sorted(self.insurance_by_market):
            if rest <= 0:
                break
            take = min(self.insurance_by_market[other], rest)
            self.insurance_by_market[other] -= take
            rest -= take

    def withdraw(self, ledger: AssetLedger, market: str, amount: int, dst: str) -> int:
        """Pay a cost of *amount* to account *dst*. Returns the amount delivered.

        Draw order: staking reward, the market's own insurance contribution,
        staking principal, then insurance not attributed to any market and
        finally other markets' contributions. A draw within
        ``available_budget_for(market)`` therefore never touches another
        market's contribution. Any part the buffer cannot cover is recorded
        as an insurance deficit.
        """
        if amount < 0:
            raise ValueError(f"cost must be non-negative: {amount}")
        remaining = amount

        if self.staking_active:
            from_reward = min(remaining, self.staking_reward(ledger))
            ledger.transfer(STAKING_POOL, dst, self.asset, from_reward)
            remaining -= from_reward

        from_own = min(remaining, self.contribution(market), self.insurance_balance(ledger))
        if from_own:
            ledger.transfer(INSURANCE_FUND, dst, self.asset, from_own)
            self.insurance_by_market[market] = self.contribution(market) - from_own
            remaining -= from_own

        if self.staking_active:
            from_principal = min(remaining, self.staking_balance(ledger))
            ledger.transfer(STAKING_POOL, dst, self.asset, from_principal)
            remaining -= from_principal

        balance = self.insurance_balance(ledger)
        from_shared = min(remaining, balance)
        if from_shared:
            unattributed = max(0, balance - sum(self.insurance_by_market.values()))
            ledger.transfer(INSURANCE_FUND, dst, self.asset, from_shared)
            self._debit_shared(from_shared, unattributed)
            remaining -= from_shared

        if remaining > 0:
            self.deficit += remaining
            logger.warning("loss buffer exhausted for %s: deficit grew by %d to %d", market, remaining, self.deficit)
        return amount - remaining

    def realize_bad_debt(self, ledger: AssetLedger, market: str, amount: int, vault: str) -> int:
        """Settle realized bad debt, netting prepaid credit first. Returns the amount drawn."""
        if amount <= 0:
            return 0
        prepaid = self.prepaid(market)
        if prepaid >= amount:
            self.prepaid_bad_debt[market] = prepaid - amount
            return 0
        self.prepaid_bad_debt[market] = 0
        return self.withdraw(ledger, market, amount - prepaid, vault)

    def prepay_shortfall(self, ledger: AssetLedger, market: str, amount: int, vault: str) -> int:
        """Fund a vault shortfall ahead of the bad debt that caused it."""
        if amount <= 0:
            return 0
        drawn = self.withdraw(ledger, market, amount, vault)
        self.prepaid_bad_debt[market] = self.prepaid(market) + drawn
        return drawn

    # -- staking --------------------------------------------------------------

    def stake(self, ledger: AssetLedger, staker: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError(f"stake must be positive: {amount}")
        ledger.transfer(staker, STAKING_POOL, self.asset, amount)
        self.stakes[staker] = self.stakes.get(staker, 0) + amount
        self.staking_principal += amount

    def unstake(self, ledger: AssetLedger, staker: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError(f"unstake must be positive: {amount}")
        staked = self.stakes.get(staker, 0)
        if amount > staked or amount > self.staking_balance(ledger):
            raise InsufficientBalance(f"{staker} cannot unstake {amount} (staked {staked})")
        ledger.transfer(STAKING_POOL, staker, self.asset, amount)
        self.stakes[staker] = staked - amount
        self.staking_principal -= amount

    def set_staking_active(self, active: bool) -> None:
        self.staking_active = active

    # -- shutdown -------------------------------------------------------------

    def remove_token(self, ledger: AssetLedger, owner: str) -> int:
        """Sweep every buffer balance to *owner* and reset the accounting."""
        swept = 0
        for account in (INSURANCE_FUND, STAKING_POOL, TOLL_POOL):
            balance = ledger.balance_of(account, self.asset)
            ledger.transfer(account, owner, self.asset, balance)
            swept += balance
        self.staking_principal = 0
        self.stakes.clear()
        self.insurance_by_market.clear()
        logger.info("swept %d of %s to %s", swept, self.asset, owner)
        return swept
