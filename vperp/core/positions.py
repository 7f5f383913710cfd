"""Per (market, trader) position ledger.

Trades go through the market's curve; margin sits in the market vault on the
shared asset ledger. Funding is applied lazily: a position remembers the
cumulative premium fraction it last settled against and pays
``size * (latest - last)`` the next time it is mutated.

Trade shapes for ``open_position``:

- increase (fresh or same side): swap, add margin ``notional / leverage``;
  the fee is paid on top of margin;
- reduce (opposite side, smaller than the position's current value): realize
  PnL in proportion to the base closed; margin is kept, adjusted by realized
  PnL, and the fee is deducted from it;
- close and reverse (opposite side, at least the position's value): close the
  whole position, pay out, then open the remainder fresh at the requested
  leverage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from ..state.registry import ClearingState, Market
from .curve import CurveState, calc_fee, position_value, spot_price, swap_input, swap_output, twap_price
from .errors import (
    BadDebt,
    EmptyPosition,
    InsufficientMargin,
    MarginRatioNotMet,
    OverOpenInterestLimit,
    OverPositionSizeLimit,
)
from .math import ONE, abs_val, div_d, div_d_ceil, mul_d, mul_div
from .types import Direction, MarginChanged, PnlCalcOption, Position, PositionChanged, RiskParams, Side
from .waterfall import TOLL_POOL

logger = logging.getLogger(__name__)

# Spender identity used when pulling trader funds through allowances.
CLEARING_HOUSE = "clearing_house"


@dataclass(frozen=True)
class SwapFill:
    """Result of one curve swap on behalf of a position."""

    curve: CurveState
    base: int
    quote: int


@dataclass(frozen=True)
class CloseFill:
    """A fully closed position, before any token movement."""

    curve: CurveState
    exchanged_size: int
    quote: int
    realized_pnl: int
    remain_margin: int
    bad_debt: int
    funding_payment: int
    margin_before: int


def _quote_direction(side: Side) -> Direction:
    return Direction.ADD_TO_AMM if side is Side.BUY else Direction.REMOVE_FROM_AMM


def _base_direction(side: Side) -> Direction:
    return Direction.REMOVE_FROM_AMM if side is Side.BUY else Direction.ADD_TO_AMM


def swap_for(
    curve: CurveState,
    side: Side,
    amount: int,
    is_quote: bool,
    limit: int,
    now: int,
    *,
    skip_fluctuation_check: bool = False,
) -> SwapFill:
    """Trade *amount* (quote or base) in the direction of *side*."""
    if is_quote:
        curve, base = swap_input(
            curve, _quote_direction(side), amount, limit, now, skip_fluctuation_check=skip_fluctuation_check
        )
        return SwapFill(curve, base, amount)
    curve, quote = swap_output(
        curve, _base_direction(side), amount, limit, now, skip_fluctuation_check=skip_fluctuation_check
    )
    return SwapFill(curve, amount, quote)


class PositionLedger:
    """Open/increase/reduce/reverse/close positions and manage their margin."""

    def __init__(self, params: RiskParams):
        self.params = params

    # -- views ----------------------------------------------------------------

    @staticmethod
    def funding_payment(position: Position, market: Market) -> int:
        """Pending funding owed by the position (positive = trader pays)."""
        if position.is_empty:
            return 0
        return mul_d(position.size, market.funding.latest_cumulative - position.last_premium_fraction)

    def remain_margin(self, position: Position, market: Market, margin_delta: int) -> tuple[int, int, int]:
        """``(remain_margin, bad_debt, funding_payment)`` after adding *margin_delta*."""
        payment = self.funding_payment(position, market)
        remain = position.margin + margin_delta - payment
        if remain < 0:
            return 0, -remain, payment
        return remain, 0, payment

    @staticmethod
    def notional_and_pnl(
        market: Market, position: Position, option: PnlCalcOption = PnlCalcOption.SPOT_PRICE, now: int = 0
    ) -> tuple[int, int]:
        """``(position_notional, unrealized_pnl)`` valued with *option*."""
        if position.is_empty:
            return 0, 0
        twap = 0
        if option is PnlCalcOption.TWAP:
            twap = twap_price(market.curve, market.twap_interval, now)
        notional = position_value(market.curve, position.size, option, twap=twap)
        if position.is_long:
            return notional, notional - position.open_notional
        return notional, position.open_notional - notional

    def margin_ratio(
        self,
        state: ClearingState,
        market_id: str,
        trader: str,
        option: PnlCalcOption = PnlCalcOption.SPOT_PRICE,
        now: int = 0,
    ) -> int:
        """``(margin + unrealized_pnl - pending_funding) / position_notional``; may be negative."""
        market = state.registry.get(market_id)
        position = state.registry.get_position(market_id, trader)
        if position.is_empty:
            raise EmptyPosition(f"no position for {trader} on {market_id}")
        notional, pnl = self.notional_and_pnl(market, position, option, now)
        remain, bad_debt, _ = self.remain_margin(position, market, pnl)
        if notional == 0:
            return 0
        return div_d(remain - bad_debt, notional)

    def position_with_funding(self, state: ClearingState, market_id: str, trader: str) -> Position:
        """The position as it would read after settling pending funding."""
        market = state.registry.get(market_id)
        position = state.registry.get_position(market_id, trader)
        if position.is_empty:
            return position
        remain, _, _ = self.remain_margin(position, market, 0)
        return replace(position, margin=remain, last_premium_fraction=market.funding.latest_cumulative)

    # -- vault movements ------------------------------------------------------

    @staticmethod
    def ensure_vault(state: ClearingState, market: Market, amount: int, *, voluntary: bool = False) -> None:
        """Top up the vault from the waterfall if it holds less than *amount*.

        A voluntary exit may only draw the market's available budget; forced
        movements may draw whatever the loss buffer holds.

        Raises:
            BadDebt: If the vault and the drawable buffer together fall short.
        """
        shortfall = amount - state.vault_balance(market.market_id)
        if shortfall <= 0:
            return
        waterfall = state.waterfall
        if voluntary:
            drawable = waterfall.available_budget_for(state.ledger, market.market_id, state.registry.open_interest())
        else:
            drawable = waterfall.drawable(state.ledger)
        if shortfall > drawable:
            raise BadDebt(f"vault of {market.market_id} is short {shortfall}; only {drawable} can be drawn")
        waterfall.prepay_shortfall(state.ledger, market.market_id, shortfall, market.vault)
        logger.warning("vault of %s short by %d; prepaid from the loss buffer", market.market_id, shortfall)

    def pay_out(self, state: ClearingState, market: Market, dst: str, amount: int, *, voluntary: bool = False) -> None:
        if amount <= 0:
            return
        self.ensure_vault(state, market, amount, voluntary=voluntary)
        state.ledger.transfer(market.vault, dst, market.quote_asset, amount)

    def route_fees(self, state: ClearingState, market: Market, toll: int, spread: int) -> Market:
        """Move collected fees out of the vault (toll pool / waterfall) and book them."""
        if toll > 0:
            self.pay_out(state, market, TOLL_POOL, toll)
        if spread > 0:
            self.ensure_vault(state, market, spread)
            balance = state.vault_balance(market.market_id)
            state.waterfall.distribute(state.ledger, market.market_id, spread, market.vault, balance - spread)
        market = replace(
            market,
            total_fees=market.total_fees + spread,
            total_minus_fees=market.total_minus_fees + spread,
            net_revenues_since_last_funding=market.net_revenues_since_last_funding + spread,
        )
        state.registry.update(market)
        return market

    def forfeit(self, state: ClearingState, market: Market, amount: int) -> None:
        """Send margin lost by a trader from the vault into the waterfall."""
        if amount <= 0:
            return
        self.ensure_vault(state, market, amount)
        balance = state.vault_balance(market.market_id)
        state.waterfall.distribute(state.ledger, market.market_id, amount, market.vault, balance - amount)

    # -- building blocks ------------------------------------------------------

    def _check_caps(self, market: Market, position: Position, oi_after: int, whitelisted: bool) -> None:
        if whitelisted:
            return
        if market.max_holding_base and abs_val(position.size) > market.max_holding_base:
            raise OverPositionSizeLimit(
                f"position size {abs_val(position.size)} exceeds cap {market.max_holding_base}"
            )
        if market.open_interest_cap and oi_after > market.open_interest_cap:
            raise OverOpenInterestLimit(
                f"open interest {oi_after} exceeds cap {market.open_interest_cap}"
            )

    def _increase(
        self,
        state: ClearingState,
        market: Market,
        trader: str,
        position: Position,
        side: Side,
        amount: int,
        is_quote: bool,
        leverage: int,
        limit: int,
        now: int,
        whitelisted: bool,
    ) -> tuple[Market, Position, SwapFill, int, int]:
        """Returns ``(market, position, fill, funding_payment, fee)``."""
        fill = swap_for(market.curve, side, amount, is_quote, limit, now)
        signed_base = fill.base if side is Side.BUY else -fill.base
        margin_required = div_d_ceil(fill.quote, leverage)

        remain, bad_debt, payment = self.remain_margin(position, market, margin_required)
        if bad_debt > 0:
            raise BadDebt(f"position of {trader} on {market.market_id} is under water after funding")

        new_position = Position(
            size=position.size + signed_base,
            margin=remain,
            open_notional=position.open_notional + fill.quote,
            last_premium_fraction=market.funding.latest_cumulative,
            updated_at=now,
        )
        oi_after = market.open_interest_notional + fill.quote
        self._check_caps(market, new_position, oi_after, whitelisted)

        market = replace(
            market,
            curve=fill.curve,
            net_size=market.net_size + signed_base,
            open_interest_notional=oi_after,
        )
        state.registry.update(market)
        state.registry.set_position(market.market_id, trader, new_position)

        toll, spread = calc_fee(fill.curve, fill.quote)
        state.ledger.transfer_from(
            CLEARING_HOUSE, trader, market.vault, market.quote_asset, margin_required + toll + spread
        )
        market = self.route_fees(state, market, toll, spread)
        return market, new_position, fill, payment, toll + spread

    def _reduce(
        self,
        state: ClearingState,
        market: Market,
        trader: str,
        position: Position,
        side: Side,
        amount: int,
        is_quote: bool,
        limit: int,
        now: int,
        *,
        skip_fluctuation_check: bool = False,
        charge_fee: bool = True,
    ) -> tuple[Market, Position, SwapFill, int, int, int]:
        """Returns ``(market, position, fill, realized_pnl, funding_payment, fee)``."""
        notional, pnl = self.notional_and_pnl(market, position)
        fill = swap_for(
            market.curve, side, amount, is_quote, limit, now, skip_fluctuation_check=skip_fluctuation_check
        )
        size = abs_val(position.size)
        realized = mul_div(pnl, fill.base, size)
        unrealized_after = pnl - realized

        toll, spread = calc_fee(fill.curve, fill.quote) if charge_fee else (0, 0)
        remain, bad_debt, payment = self.remain_margin(position, market, realized)
        if bad_debt > 0 or remain < toll + spread:
            raise BadDebt(f"reducing the position of {trader} on {market.market_id} realizes bad debt")

        if position.is_long:
            open_notional = notional - fill.quote - unrealized_after
            new_size = position.size - fill.base
        else:
            open_notional = unrealized_after + notional - fill.quote
            new_size = position.size + fill.base
        new_position = Position(
            size=new_size,
            margin=remain - toll - spread,
            open_notional=max(0, open_notional),
            last_premium_fraction=market.funding.latest_cumulative,
            updated_at=now,
        )

        market = replace(
            market,
            curve=fill.curve,
            net_size=market.net_size + (new_size - position.size),
            open_interest_notional=max(0, market.open_interest_notional - fill.quote),
        )
        state.registry.update(market)
        state.registry.set_position(market.market_id, trader, new_position)
        market = self.route_fees(state, market, toll, spread)
        return market, new_position, fill, realized, payment, toll + spread

    def close(
        self,
        state: ClearingState,
        market: Market,
        trader: str,
        position: Position,
        quote_limit: int,
        now: int,
        *,
        skip_fluctuation_check: bool = False,
    ) -> tuple[Market, CloseFill]:
        """Unwind the whole position on the curve; no tokens move here."""
        side = Side.SELL if position.is_long else Side.BUY
        fill = swap_for(
            market.curve, side, abs_val(position.size), False, quote_limit, now,
            skip_fluctuation_check=skip_fluctuation_check,
        )
        if position.is_long:
            pnl = fill.quote - position.open_notional
        else:
            pnl = position.open_notional - fill.quote
        remain, bad_debt, payment = self.remain_margin(position, market, pnl)

        market = replace(
            market,
            curve=fill.curve,
            net_size=market.net_size - position.size,
            open_interest_notional=max(0, market.open_interest_notional - fill.quote),
        )
        state.registry.update(market)
        state.registry.set_position(market.market_id, trader, Position())
        return market, CloseFill(
            curve=fill.curve,
            exchanged_size=-position.size,
            quote=fill.quote,
            realized_pnl=pnl,
            remain_margin=remain,
            bad_debt=bad_debt,
            funding_payment=payment,
            margin_before=position.margin,
        )

    def _settle_close(self, state: ClearingState, market: Market, trader: str, closed: CloseFill) -> tuple[Market, int]:
        """Charge the close fee from proceeds and pay the trader. Returns ``(market, fee)``."""
        toll, spread = calc_fee(closed.curve, closed.quote)
        if closed.bad_debt > 0 or closed.remain_margin < toll + spread:
            raise BadDebt(f"closing the position of {trader} on {market.market_id} realizes bad debt")
        self.ensure_vault(state, market, closed.remain_margin, voluntary=True)
        self.pay_out(state, market, trader, closed.remain_margin - toll - spread)
        market = self.route_fees(state, market, toll, spread)
        return market, toll + spread

    def _changed(
        self,
        trader: str,
        market: Market,
        position: Position,
        exchanged_size: int,
        fee: int,
        realized_pnl: int,
        funding_payment: int,
        *,
        position_notional: int | None = None,
        bad_debt: int = 0,
        liquidation_penalty: int = 0,
    ) -> PositionChanged:
        notional, unrealized = self.notional_and_pnl(market, position)
        return PositionChanged(
            trader=trader,
            market=market.market_id,
            margin=position.margin,
            position_notional=notional if position_notional is None else position_notional,
            exchanged_size=exchanged_size,
            fee=fee,
            size_after=position.size,
            realized_pnl=realized_pnl,
            unrealized_pnl_after=unrealized,
            bad_debt=bad_debt,
            liquidation_penalty=liquidation_penalty,
            spot_price=spot_price(market.curve),
            funding_payment=funding_payment,
        )

    # -- entry points ---------------------------------------------------------

    def open_position(
        self,
        state: ClearingState,
        trader: str,
        market_id: str,
        side: Side,
        amount: int,
        leverage: int,
        limit: int,
        now: int,
        *,
        is_quote: bool = True,
        whitelisted: bool = False,
    ) -> PositionChanged:
        """Trade *amount* (quote notional, or base when ``is_quote`` is False) at *leverage*.

        Args:
            limit: Base limit for quote orders, quote limit for base orders (0 = none).

        Raises:
            MarginRatioNotMet: If leverage or the resulting ratio breaches the initial margin ratio.
            BadDebt: If a reducing trade would realize bad debt.
            CapExceeded: If an increasing trade breaches a market cap.
        """
        if amount <= 0:
            raise ValueError(f"amount must be positive: {amount}")
        if leverage <= 0:
            raise ValueError(f"leverage must be positive: {leverage}")
        if div_d(ONE, leverage) < self.params.initial_margin_ratio:
            raise MarginRatioNotMet("leverage exceeds the initial margin ratio")

        market = state.registry.require_open(market_id)
        old = state.registry.get_position(market_id, trader)
        increasing = old.is_empty or old.is_long == (side is Side.BUY)

        if increasing:
            market, position, fill, payment, fee = self._increase(
                state, market, trader, old, side, amount, is_quote, leverage, limit, now, whitelisted
            )
            record = self._changed(trader, market, position, position.size - old.size, fee, 0, payment)
            self._require_initial_ratio(state, market_id, trader, now)
            return self._emit(state, record)

        notional, _ = self.notional_and_pnl(market, old)
        smaller = amount < notional if is_quote else amount < abs_val(old.size)
        if smaller:
            market, position, fill, realized, payment, fee = self._reduce(
                state, market, trader, old, side, amount, is_quote, limit, now
            )
            record = self._changed(trader, market, position, position.size - old.size, fee, realized, payment)
            return self._emit(state, record)

        return self._close_and_reverse(
            state, market, trader, old, side, amount, is_quote, leverage, limit, now, whitelisted
        )

    def _close_and_reverse(
        self,
        state: ClearingState,
        market: Market,
        trader: str,
        old: Position,
        side: Side,
        amount: int,
        is_quote: bool,
        leverage: int,
        limit: int,
        now: int,
        whitelisted: bool,
    ) -> PositionChanged:
        market, closed = self.close(state, market, trader, old, 0, now)
        if closed.bad_debt > 0:
            raise BadDebt(f"cannot reverse the under-water position of {trader} on {market.market_id}")
        market, fee = self._settle_close(state, market, trader, closed)

        remaining = amount - (closed.quote if is_quote else abs_val(old.size))
        position = state.registry.get_position(market.market_id, trader)
        payment = closed.funding_payment
        if remaining > 0:
            market, position, _, _, open_fee = self._increase(
                state, market, trader, position, side, remaining, is_quote, leverage, limit, now, whitelisted
            )
            fee += open_fee
        record = self._changed(
            trader, market, position, position.size - old.size, fee, closed.realized_pnl, payment
        )
        if not position.is_empty:
            self._require_initial_ratio(state, market.market_id, trader, now)
        return self._emit(state, record)

    def close_position(self, state: ClearingState, trader: str, market_id: str, quote_limit: int, now: int) -> PositionChanged:
        """Close the whole position; the limit is the minimum received (long) or maximum paid (short).

        Raises:
            BadDebt: If the position is under water, or the payout exceeds the
                vault plus the market's available budget.
        """
        market = state.registry.get(market_id)
        old = state.registry.get_position(market_id, trader)
        if old.is_empty:
            raise EmptyPosition(f"no position for {trader} on {market_id}")
        market, closed = self.close(state, market, trader, old, quote_limit, now)
        market, fee = self._settle_close(state, market, trader, closed)
        record = self._changed(
            trader, market, Position(), closed.exchanged_size, fee, closed.realized_pnl,
            closed.funding_payment, position_notional=closed.quote,
        )
        return self._emit(state, record)

    def add_margin(self, state: ClearingState, trader: str, market_id: str, amount: int) -> MarginChanged:
        """Add collateral. Pending funding is left for the next settlement."""
        market = state.registry.require_open(market_id)
        if amount <= 0:
            raise ValueError(f"amount must be positive: {amount}")
        state.ledger.require_granular(market.quote_asset, amount)
        position = state.registry.get_position(market_id, trader)
        if position.is_empty:
            raise EmptyPosition(f"no position for {trader} on {market_id}")
        state.ledger.transfer_from(CLEARING_HOUSE, trader, market.vault, market.quote_asset, amount)
        state.registry.set_position(market_id, trader, replace(position, margin=position.margin + amount))
        return self._emit(state, MarginChanged(trader, market_id, amount, 0))

    def remove_margin(self, state: ClearingState, trader: str, market_id: str, amount: int, now: int) -> MarginChanged:
        """Withdraw collateral after settling pending funding.

        Raises:
            InsufficientMargin: If the margin or the resulting ratio is too low.
            BadDebt: If the vault and the market's budget cannot pay it out.
        """
        market = state.registry.require_open(market_id)
        if amount <= 0:
            raise ValueError(f"amount must be positive: {amount}")
        state.ledger.require_granular(market.quote_asset, amount)
        position = state.registry.get_position(market_id, trader)
        if position.is_empty:
            raise EmptyPosition(f"no position for {trader} on {market_id}")

        remain, bad_debt, payment = self.remain_margin(position, market, -amount)
        if bad_debt > 0:
            raise InsufficientMargin(f"margin of {trader} on {market_id} is below {amount}")
        state.registry.set_position(
            market_id, trader,
            replace(position, margin=remain, last_premium_fraction=market.funding.latest_cumulative, updated_at=now),
        )
        if self.margin_ratio(state, market_id, trader, PnlCalcOption.SPOT_PRICE, now) < self.params.initial_margin_ratio:
            raise InsufficientMargin(f"removing {amount} breaches the initial margin ratio")
        self.pay_out(state, market, trader, amount, voluntary=True)
        return self._emit(state, MarginChanged(trader, market_id, -amount, payment))

    # -- helpers --------------------------------------------------------------

    def _require_initial_ratio(self, state: ClearingState, market_id: str, trader: str, now: int) -> None:
        ratio = self.margin_ratio(state, market_id, trader, PnlCalcOption.SPOT_PRICE, now)
        if ratio < self.params.initial_margin_ratio:
            raise MarginRatioNotMet(f"margin ratio {ratio} below initial {self.params.initial_margin_ratio}")

    @staticmethod
    def _emit(state: ClearingState, record):
        state.emit(record)
        return record
