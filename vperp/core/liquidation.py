"""Maintenance-margin liquidation.

A position whose spot margin ratio is below the maintenance ratio can be
liquidated. With a partial-liquidation ratio configured and the position still
solvent, only that fraction of the size is closed; otherwise the whole
position is unwound and its remaining margin is forfeited.

The penalty is ``closed_notional * liquidation_fee_ratio``. Bounty callers
take half of it; the rest (and, on a full liquidation, any margin left over)
goes to the loss waterfall. Bad debt is realized against the market's prepaid
credit first and only then drawn from the waterfall, and only a backstop
provider may realize it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Tuple

from ..state.registry import ClearingState
from .curve import spot_price
from .errors import AuthorizationError, EmptyPosition, MarginRatioNotMet
from .math import ONE, abs_val, mul_d
from .positions import PositionLedger
from .types import BadDebtRealized, PnlCalcOption, Position, PositionChanged, PositionLiquidated, RiskParams, Side

logger = logging.getLogger(__name__)


class LiquidationEngine:
    def __init__(self, params: RiskParams, positions: PositionLedger):
        self.params = params
        self.positions = positions

    def is_liquidatable(self, state: ClearingState, market_id: str, trader: str) -> bool:
        if state.registry.get_position(market_id, trader).is_empty:
            return False
        ratio = self.positions.margin_ratio(state, market_id, trader, PnlCalcOption.SPOT_PRICE)
        return ratio < self.params.maintenance_margin_ratio

    def liquidate(
        self,
        state: ClearingState,
        market_id: str,
        trader: str,
        liquidator: str,
        now: int,
        *,
        quote_limit: int = 0,
        pay_bounty: bool = True,
        is_backstop: bool = False,
    ) -> Tuple[PositionChanged, PositionLiquidated]:
        """Liquidate *trader* on *market_id*.

        Args:
            quote_limit: Minimum quote received when unwinding a long, maximum
                paid when unwinding a short (0 = no limit).
            pay_bounty: Pay half of the penalty to *liquidator*.
            is_backstop: Caller holds the backstop capability.

        Raises:
            MarginRatioNotMet: If the position is at or above maintenance margin.
            AuthorizationError: If bad debt would be realized by a non-backstop caller.
        """
        position = state.registry.get_position(market_id, trader)
        if position.is_empty:
            raise EmptyPosition(f"no position for {trader} on {market_id}")
        ratio = self.positions.margin_ratio(state, market_id, trader, PnlCalcOption.SPOT_PRICE, now)
        if ratio >= self.params.maintenance_margin_ratio:
            raise MarginRatioNotMet(
                f"margin ratio {ratio} not below maintenance {self.params.maintenance_margin_ratio}"
            )

        plr = self.params.partial_liquidation_ratio
        if 0 < plr < ONE and ratio > self.params.liquidation_fee_ratio:
            return self._partial(state, market_id, trader, liquidator, position, now, quote_limit, pay_bounty)
        return self._full(state, market_id, trader, liquidator, position, now, quote_limit, pay_bounty, is_backstop)

    def _partial(
        self,
        state: ClearingState,
        market_id: str,
        trader: str,
        liquidator: str,
        position: Position,
        now: int,
        quote_limit: int,
        pay_bounty: bool,
    ) -> Tuple[PositionChanged, PositionLiquidated]:
        ledger = self.positions
        market = state.registry.get(market_id)
        base = mul_d(abs_val(position.size), self.params.partial_liquidation_ratio)
        side = Side.SELL if position.is_long else Side.BUY
        market, reduced, fill, realized, payment, _ = ledger._reduce(
            state, market, trader, position, side, base, False, quote_limit, now,
            skip_fluctuation_check=True, charge_fee=False,
        )

        penalty = min(mul_d(fill.quote, self.params.liquidation_fee_ratio), reduced.margin)
        to_liquidator = penalty // 2 if pay_bounty else 0
        reduced = replace(reduced, margin=reduced.margin - penalty)
        state.registry.set_position(market_id, trader, reduced)

        ledger.pay_out(state, market, liquidator, to_liquidator)
        ledger.forfeit(state, market, penalty - to_liquidator)

        changed = ledger._changed(
            trader, market, reduced, reduced.size - position.size, 0, realized, payment,
            liquidation_penalty=penalty,
        )
        liquidated = PositionLiquidated(
            trader=trader,
            market=market_id,
            position_notional=fill.quote,
            position_size=fill.base,
            liquidation_fee=to_liquidator,
            liquidator=liquidator,
            bad_debt=0,
            backstop_fee=penalty - to_liquidator,
        )
        state.emit(changed)
        state.emit(liquidated)
        logger.warning(
            "partially liquidated %s on %s: base=%d notional=%d penalty=%d",
            trader, market_id, fill.base, fill.quote, penalty,
        )
        return changed, liquidated

    def _full(
        self,
        state: ClearingState,
        market_id: str,
        trader: str,
        liquidator: str,
        position: Position,
        now: int,
        quote_limit: int,
        pay_bounty: bool,
        is_backstop: bool,
    ) -> Tuple[PositionChanged, PositionLiquidated]:
        ledger = self.positions
        market = state.registry.get(market_id)
        market, closed = ledger.close(
            state, market, trader, position, quote_limit, now, skip_fluctuation_check=True
        )

        penalty = mul_d(closed.quote, self.params.liquidation_fee_ratio)
        to_liquidator = penalty // 2 if pay_bounty else 0
        remain = closed.remain_margin
        liquidation_bad_debt = 0
        if to_liquidator > remain:
            liquidation_bad_debt = to_liquidator - remain
            remain = 0
        else:
            remain -= to_liquidator
        bad_debt = closed.bad_debt + liquidation_bad_debt

        if bad_debt > 0:
            if not is_backstop:
                raise AuthorizationError(
                    f"liquidating {trader} on {market_id} realizes bad debt {bad_debt}; backstop required"
                )
            drawn = state.waterfall.realize_bad_debt(state.ledger, market_id, bad_debt, market.vault)
            state.emit(BadDebtRealized(market_id, bad_debt, drawn))
            logger.warning("bad debt %d realized on %s (%d drawn from the loss buffer)", bad_debt, market_id, drawn)

        ledger.forfeit(state, market, remain)
        ledger.pay_out(state, market, liquidator, to_liquidator)

        changed = PositionChanged(
            trader=trader,
            market=market_id,
            margin=0,
            position_notional=closed.quote,
            exchanged_size=closed.exchanged_size,
            fee=0,
            size_after=0,
            realized_pnl=closed.realized_pnl,
            unrealized_pnl_after=0,
            bad_debt=closed.bad_debt,
            liquidation_penalty=closed.remain_margin - closed.realized_pnl - closed.bad_debt,
            spot_price=spot_price(closed.curve),
            funding_payment=closed.funding_payment,
        )
        liquidated = PositionLiquidated(
            trader=trader,
            market=market_id,
            position_notional=closed.quote,
            position_size=abs_val(position.size),
            liquidation_fee=to_liquidator,
            liquidator=liquidator,
            bad_debt=liquidation_bad_debt,
            backstop_fee=remain,
        )
        state.emit(changed)
        state.emit(liquidated)
        logger.warning(
            "liquidated %s on %s: notional=%d penalty=%d bad_debt=%d", trader, market_id, closed.quote, penalty, bad_debt
        )
        return changed, liquidated
