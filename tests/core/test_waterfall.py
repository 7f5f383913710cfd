"""Tests for vperp/core/waterfall.py — insurance fund and staking pool."""

import pytest

from vperp.core.errors import InsufficientBalance
from vperp.core.math import to_fixed as fx
from vperp.core.waterfall import INSURANCE_FUND, STAKING_POOL, TOLL_POOL, LossWaterfall
from vperp.state.ledger import AssetLedger

USDC = "USDC"
VAULT = "vault:ETH"


def _setup(stake=0, vault=1000):
    ledger = AssetLedger()
    waterfall = LossWaterfall(USDC)
    ledger.mint(VAULT, USDC, fx(vault))
    if stake:
        ledger.mint("staker", USDC, fx(stake))
        waterfall.stake(ledger, "staker", fx(stake))
    return ledger, waterfall


# ---------------------------------------------------------------------------
# Revenue distribution
# ---------------------------------------------------------------------------

class TestDistribute:
    def test_insurance_capped_by_vault_then_reward(self):
        ledger, waterfall = _setup(stake=10, vault=180)
        waterfall.distribute(ledger, "ETH", fx(120), VAULT, fx(60))
        assert waterfall.insurance_balance(ledger) == fx(60)
        assert waterfall.staking_balance(ledger) == fx(70)
        assert waterfall.staking_reward(ledger) == fx(60)
        assert waterfall.contribution("ETH") == fx(60)

    def test_small_fee_goes_to_insurance(self):
        ledger, waterfall = _setup(stake=10, vault=66)
        waterfall.distribute(ledger, "ETH", fx(6), VAULT, fx(60))
        assert waterfall.insurance_balance(ledger) == fx(6)
        assert waterfall.staking_balance(ledger) == fx(10)

    def test_without_principal_everything_insures(self):
        ledger, waterfall = _setup(vault=120)
        waterfall.distribute(ledger, "ETH", fx(120), VAULT, 0)
        assert waterfall.insurance_balance(ledger) == fx(120)

    def test_principal_topped_up_first(self):
        ledger, waterfall = _setup(stake=10, vault=100)
        waterfall.withdraw(ledger, "ETH", fx(4), VAULT)
        assert waterfall.staking_balance(ledger) == fx(6)
        waterfall.distribute(ledger, "ETH", fx(5), VAULT, fx(100))
        assert waterfall.staking_balance(ledger) == fx(10)
        assert waterfall.insurance_balance(ledger) == fx(1)

    def test_negative_revenue_rejected(self):
        ledger, waterfall = _setup()
        with pytest.raises(ValueError):
            waterfall.distribute(ledger, "ETH", -1, VAULT, 0)


# ---------------------------------------------------------------------------
# Cost consumption
# ---------------------------------------------------------------------------

class TestWithdraw:
    def test_draw_order_reward_insurance_principal(self):
        ledger, waterfall = _setup(stake=10, vault=100)
        waterfall.distribute(ledger, "ETH", fx(8), VAULT, fx(5))
        assert waterfall.insurance_balance(ledger) == fx(5)
        assert waterfall.staking_reward(ledger) == fx(3)

        waterfall.withdraw(ledger, "ETH", fx(4), "payee")
        assert waterfall.staking_reward(ledger) == 0
        assert waterfall.insurance_balance(ledger) == fx(4)
        assert waterfall.staking_balance(ledger) == fx(10)

        delivered = waterfall.withdraw(ledger, "ETH", fx(10), "payee")
        assert delivered == fx(10)
        assert waterfall.insurance_balance(ledger) == 0
        assert waterfall.staking_balance(ledger) == fx(4)
        assert ledger.balance_of("payee", USDC) == fx(14)

    def test_deactivated_pool_uses_insurance_then_deficit(self):
        ledger, waterfall = _setup(stake=10, vault=100)
        waterfall.distribute(ledger, "ETH", fx(5), VAULT, fx(100))
        waterfall.set_staking_active(False)

        delivered = waterfall.withdraw(ledger, "ETH", fx(12), "payee")
        assert delivered == fx(5)
        assert waterfall.deficit == fx(7)
        assert waterfall.staking_balance(ledger) == fx(10)

    def test_deficit_repaid_before_anything_else(self):
        ledger, waterfall = _setup(vault=100)
        waterfall.set_staking_active(False)
        waterfall.withdraw(ledger, "ETH", fx(7), "payee")
        assert waterfall.deficit == fx(7)

        waterfall.distribute(ledger, "ETH", fx(10), VAULT, fx(100))
        assert waterfall.deficit == 0
        assert waterfall.insurance_balance(ledger) == fx(10)
        assert waterfall.contribution("ETH") == fx(3)

    def test_contributions_debited_own_market_first(self):
        ledger, waterfall = _setup(vault=100)
        ledger.mint("vault:BTC", USDC, fx(100))
        waterfall.distribute(ledger, "ETH", fx(3), VAULT, fx(100))
        waterfall.distribute(ledger, "BTC", fx(5), "vault:BTC", fx(100))
        waterfall.withdraw(ledger, "ETH", fx(4), "payee")
        assert waterfall.contribution("ETH") == 0
        assert waterfall.contribution("BTC") == fx(4)

    def test_draw_within_budget_spares_other_markets(self):
        ledger, waterfall = _setup(stake=1000, vault=100)
        ledger.mint("vault:BTC", USDC, fx(1000))
        waterfall.distribute(ledger, "BTC", fx(500), "vault:BTC", fx(1000))
        oi = {"ETH": fx(600), "BTC": fx(600)}
        assert waterfall.available_budget_for(ledger, "ETH", oi) == fx(500)

        assert waterfall.withdraw(ledger, "ETH", fx(400), "payee") == fx(400)
        assert waterfall.contribution("BTC") == fx(500)
        assert waterfall.staking_balance(ledger) == fx(600)
        assert waterfall.available_budget_for(ledger, "BTC", oi) == fx(800)

    def test_unattributed_insurance_drawn_before_other_markets(self):
        ledger, waterfall = _setup(vault=100)
        ledger.mint("vault:BTC", USDC, fx(100))
        waterfall.distribute(ledger, "BTC", fx(5), "vault:BTC", fx(100))
        ledger.mint(INSURANCE_FUND, USDC, fx(2))
        assert waterfall.drawable(ledger) == fx(7)

        waterfall.withdraw(ledger, "ETH", fx(3), "payee")
        assert waterfall.contribution("BTC") == fx(4)
        assert waterfall.insurance_balance(ledger) == fx(4)


# ---------------------------------------------------------------------------
# Budget, bad debt, staking, shutdown
# ---------------------------------------------------------------------------

class TestBudget:
    def test_budget_is_per_market(self):
        ledger, waterfall = _setup(stake=10, vault=100)
        waterfall.distribute(ledger, "ETH", fx("0.6"), VAULT, fx(100))
        oi = {"ETH": fx(600), "BTC": fx(600)}
        assert waterfall.available_budget_for(ledger, "ETH", oi) == fx("5.6")
        assert waterfall.available_budget_for(ledger, "BTC", oi) == fx(5)

    def test_no_open_interest_counts_only_insurance(self):
        ledger, waterfall = _setup(stake=10, vault=100)
        waterfall.distribute(ledger, "ETH", fx("0.6"), VAULT, fx(100))
        assert waterfall.available_budget_for(ledger, "ETH", {"ETH": 0}) == fx("0.6")

    def test_deactivated_pool_not_counted(self):
        ledger, waterfall = _setup(stake=10, vault=100)
        waterfall.set_staking_active(False)
        assert waterfall.available_budget_for(ledger, "ETH", {"ETH": fx(600)}) == 0


class TestBadDebt:
    def test_realize_nets_prepaid_credit(self):
        ledger, waterfall = _setup(stake=10, vault=0)
        assert waterfall.prepay_shortfall(ledger, "ETH", fx(5), VAULT) == fx(5)
        assert waterfall.prepaid("ETH") == fx(5)
        assert ledger.balance_of(VAULT, USDC) == fx(5)

        assert waterfall.realize_bad_debt(ledger, "ETH", fx(3), VAULT) == 0
        assert waterfall.prepaid("ETH") == fx(2)

        assert waterfall.realize_bad_debt(ledger, "ETH", fx(4), VAULT) == fx(2)
        assert waterfall.prepaid("ETH") == 0
        assert ledger.balance_of(VAULT, USDC) == fx(7)


class TestStaking:
    def test_unstake_principal(self):
        ledger, waterfall = _setup(stake=10)
        waterfall.unstake(ledger, "staker", fx(4))
        assert waterfall.staking_principal == fx(6)
        assert ledger.balance_of("staker", USDC) == fx(4)

    def test_unstake_more_than_staked(self):
        ledger, waterfall = _setup(stake=10)
        with pytest.raises(InsufficientBalance):
            waterfall.unstake(ledger, "staker", fx(11))

    def test_unstake_bounded_by_balance(self):
        ledger, waterfall = _setup(stake=10)
        waterfall.withdraw(ledger, "ETH", fx(8), "payee")
        with pytest.raises(InsufficientBalance):
            waterfall.unstake(ledger, "staker", fx(5))

    def test_remove_token_sweeps_everything(self):
        ledger, waterfall = _setup(stake=10, vault=100)
        waterfall.distribute(ledger, "ETH", fx(5), VAULT, fx(100))
        ledger.mint(TOLL_POOL, USDC, fx(2))
        assert waterfall.remove_token(ledger, "owner") == fx(17)
        assert ledger.balance_of(INSURANCE_FUND, USDC) == 0
        assert ledger.balance_of(STAKING_POOL, USDC) == 0
        assert waterfall.staking_principal == 0
        assert waterfall.contribution("ETH") == 0
