"""
Fungible-asset ledger with transfer/approve semantics.

Implements AssetLedger[Account, AssetId] -> Amount plus allowances.
Amounts are 18-decimal fixed-point ints; an asset registered with fewer
decimals only accepts multiples of its smallest unit.
"""

from typing import Dict, Set, Tuple

from ..core.errors import InsufficientBalance, TokenGranularityError
from ..core.math import DECIMALS


# Type aliases
Account = str
AssetId = str
Amount = int  # Non-negative integer (arbitrary precision)


class AssetLedger:
    """
    Balance table mapping (account, asset) -> amount, plus
    (owner, spender, asset) -> allowance.

    Zero balances are dropped so the table stays sparse.
    """

    def __init__(self):
        self._balances: Dict[Tuple[Account, AssetId], Amount] = {}
        self._allowances: Dict[Tuple[Account, Account, AssetId], Amount] = {}
        self._decimals: Dict[AssetId, int] = {}
        self._touched: Set[Tuple[Account, AssetId]] = set()

    def copy(self) -> "AssetLedger":
        """Independent copy (used for copy-then-commit execution)."""
        copied = AssetLedger()
        copied._balances = dict(self._balances)
        copied._allowances = dict(self._allowances)
        copied._decimals = dict(self._decimals)
        return copied

    # -- assets ---------------------------------------------------------------

    def register_asset(self, asset: AssetId, decimals: int = DECIMALS) -> None:
        """
        Declare an asset's native precision.

        Raises:
            ValueError: If decimals is outside [0, 18]
        """
        if decimals < 0 or decimals > DECIMALS:
            raise ValueError(f"decimals must be within [0, {DECIMALS}]: {decimals}")
        self._decimals[asset] = decimals

    def granularity(self, asset: AssetId) -> int:
        return 10 ** (DECIMALS - self._decimals.get(asset, DECIMALS))

    def require_granular(self, asset: AssetId, amount: Amount) -> None:
        """Raise TokenGranularityError unless *amount* is a whole number of native units."""
        unit = self.granularity(asset)
        if amount % unit != 0:
            raise TokenGranularityError(f"amount {amount} is finer than the smallest unit of {asset}")

    # -- balances -------------------------------------------------------------

    def balance_of(self, account: Account, asset: AssetId) -> Amount:
        """Balance for (account, asset). Returns 0 if not found."""
        return self._balances.get((account, asset), 0)

    def _set(self, account: Account, asset: AssetId, amount: Amount) -> None:
        if amount < 0:
            raise InsufficientBalance(f"balance cannot be negative: {account} {amount}")
        self._touched.add((account, asset))
        if amount == 0:
            self._balances.pop((account, asset), None)
        else:
            self._balances[(account, asset)] = amount

    def mint(self, account: Account, asset: AssetId, amount: Amount) -> None:
        """Credit *amount* out of thin air (faucet / test setup)."""
        if amount < 0:
            raise ValueError(f"amount must be non-negative: {amount}")
        self._set(account, asset, self.balance_of(account, asset) + amount)

    def transfer(self, src: Account, dst: Account, asset: AssetId, amount: Amount) -> None:
        """
        Move *amount* from src to dst.

        Raises:
            ValueError: If amount is negative
            InsufficientBalance: If src holds less than amount
        """
        if amount < 0:
            raise ValueError(f"amount must be non-negative: {amount}")
        if amount == 0 or src == dst:
            return
        current = self.balance_of(src, asset)
        if current < amount:
            raise InsufficientBalance(f"{src} holds {current} of {asset}, needs {amount}")
        self._set(src, asset, current - amount)
        self._set(dst, asset, self.balance_of(dst, asset) + amount)

    # -- allowances -----------------------------------------------------------

    def approve(self, owner: Account, spender: Account, asset: AssetId, amount: Amount) -> None:
        if amount < 0:
            raise ValueError(f"allowance must be non-negative: {amount}")
        if amount == 0:
            self._allowances.pop((owner, spender, asset), None)
        else:
            self._allowances[(owner, spender, asset)] = amount

    def allowance(self, owner: Account, spender: Account, asset: AssetId) -> Amount:
        return self._allowances.get((owner, spender, asset), 0)

    def transfer_from(self, spender: Account, src: Account, dst: Account, asset: AssetId, amount: Amount) -> None:
        """
        Move *amount* from src to dst on behalf of spender, consuming allowance.

        Raises:
            InsufficientBalance: If the allowance or src balance is too small
        """
        if spender != src:
            allowed = self.allowance(src, spender, asset)
            if allowed < amount:
                raise InsufficientBalance(f"allowance {allowed} of {spender} over {src} is below {amount}")
            self.transfer(src, dst, asset, amount)
            self.approve(src, spender, asset, allowed - amount)
            return
        self.transfer(src, dst, asset, amount)

    def total_supply(self, asset: AssetId) -> Amount:
        return sum(amount for (_, a), amount in self._balances.items() if a == asset)

    def verify_non_negative(self) -> bool:
        """Check the balances written since this ledger was created or copied."""
        return all(self.balance_of(account, asset) >= 0 for account, asset in self._touched)

    def __repr__(self) -> str:
        return f"AssetLedger({len(self._balances)} balances)"
