"""
Clearing-house facade.

Every entry point runs against a copy of the engine state and commits only if
the call succeeds and every invariant in ``core.invariants`` holds afterwards;
records emitted by a failed call are discarded. ``apply_ops`` runs a batch of
operations the same way, all or nothing.

Capabilities:
- owner: market registration, parameter setters, staking switch, token sweep;
- operator: manual repeg and K adjustment;
- whitelist: bypasses position-size and open-interest caps;
- backstop: plain ``liquidate`` and any liquidation that realizes bad debt.

Trading entry points settle a market's funding first when its window has
elapsed, so the first call after a window closes pays for the settlement.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum, unique
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from ..core.curve import get_input_price, get_output_price, init_curve, spot_price, twap_price
from ..core.errors import AuthorizationError, ClearingError, InvariantViolation
from ..core.funding import FundingEngine
from ..core.invariants import check_all
from ..core.liquidation import LiquidationEngine
from ..core.positions import CLEARING_HOUSE, PositionLedger
from ..core.types import (
    Direction,
    Event,
    FundingState,
    MarketListed,
    PnlCalcOption,
    Position,
    RiskParams,
    Side,
)
from ..core.waterfall import LossWaterfall
from ..state.ledger import AssetLedger
from ..state.registry import ClearingState, Market, MarketRegistry
from .config import ClearingHouseConfig, MarketConfig
from .oracle import PriceFeed

logger = logging.getLogger(__name__)

_CURVE_PARAMS = ("toll_ratio", "spread_ratio", "fluctuation_limit_ratio", "trade_limit_ratio")
_MARKET_PARAMS = (
    "max_holding_base",
    "open_interest_cap",
    "twap_interval",
    "price_divergence_threshold",
    "adjustable",
    "can_lower_k",
    "k_increase_max",
    "k_decrease_max",
)


@unique
class Action(Enum):
    ADD_MARKET = "add_market"
    REMOVE_MARKET = "remove_market"
    SET_MARKET_PARAMS = "set_market_params"
    OPEN_POSITION = "open_position"
    CLOSE_POSITION = "close_position"
    ADD_MARGIN = "add_margin"
    REMOVE_MARGIN = "remove_margin"
    LIQUIDATE = "liquidate"
    LIQUIDATE_WITH_SLIPPAGE = "liquidate_with_slippage"
    SETTLE_FUNDING = "settle_funding"
    REPEG = "repeg"
    ADJUST_K = "adjust_k"
    STAKE = "stake"
    UNSTAKE = "unstake"
    SET_STAKING_ACTIVE = "set_staking_active"
    REMOVE_TOKEN = "remove_token"


@dataclass(frozen=True)
class Operation:
    action: Action
    sender: str
    args: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepResult:
    ok: bool
    events: Tuple[Any, ...] = ()
    results: Tuple[Any, ...] = ()
    error: Optional[str] = None


class ClearingHouse:
    """Single-caller clearing engine over one quote asset."""

    def __init__(
        self,
        config: ClearingHouseConfig,
        price_feed: PriceFeed,
        *,
        clock: Optional[Callable[[], int]] = None,
        ledger: Optional[AssetLedger] = None,
    ):
        self.config = config
        self.price_feed = price_feed
        self._clock = clock or (lambda: int(time.time()))

        ledger = ledger if ledger is not None else AssetLedger()
        ledger.register_asset(config.quote_asset, config.quote_decimals)
        self.state = ClearingState(
            registry=MarketRegistry(),
            ledger=ledger,
            waterfall=LossWaterfall(config.quote_asset, staking_active=config.staking_active),
        )

        self.params = config.risk_params()
        self.positions = PositionLedger(self.params)
        self.liquidations = LiquidationEngine(self.params, self.positions)
        self.funding = FundingEngine()

        self.owner = config.owner
        self.operator = config.operator
        self.whitelist: Set[str] = set()
        self.backstops: Set[str] = set()
        self.events: List[Any] = []

        self._handlers: Dict[Action, Callable[..., Any]] = {
            Action.ADD_MARKET: self._add_market,
            Action.REMOVE_MARKET: self._remove_market,
            Action.SET_MARKET_PARAMS: self._set_market_params,
            Action.OPEN_POSITION: self._open_position,
            Action.CLOSE_POSITION: self._close_position,
            Action.ADD_MARGIN: self._add_margin,
            Action.REMOVE_MARGIN: self._remove_margin,
            Action.LIQUIDATE: self._liquidate,
            Action.LIQUIDATE_WITH_SLIPPAGE: self._liquidate_with_slippage,
            Action.SETTLE_FUNDING: self._settle_funding,
            Action.REPEG: self._repeg,
            Action.ADJUST_K: self._adjust_k,
            Action.STAKE: self._stake,
            Action.UNSTAKE: self._unstake,
            Action.SET_STAKING_ACTIVE: self._set_staking_active,
            Action.REMOVE_TOKEN: self._remove_token,
        }

    @property
    def ledger(self) -> AssetLedger:
        return self.state.ledger

    @property
    def now(self) -> int:
        return int(self._clock())

    # -- execution ------------------------------------------------------------

    def _dispatch(self, state: ClearingState, op: Operation) -> Any:
        handler = self._handlers[op.action]
        return handler(state, op.sender, **dict(op.args))

    def _commit(self, working: ClearingState) -> None:
        violations = check_all(working)
        if violations:
            raise InvariantViolation(violations)
        self.events.extend(working.events)
        working.events = []
        self.state = working

    def _run(self, action: Action, sender: str, **args: Any) -> Any:
        working = self.state.copy()
        result = self._dispatch(working, Operation(action, sender, args))
        self._commit(working)
        return result

    def apply_ops_or_raise(self, ops: Sequence[Operation]) -> StepResult:
        """Run *ops* atomically; raises the first error and leaves state untouched."""
        working = self.state.copy()
        results = [self._dispatch(working, op) for op in ops]
        events = tuple(working.events)
        self._commit(working)
        return StepResult(ok=True, events=events, results=tuple(results))

    def apply_ops(self, ops: Sequence[Operation]) -> StepResult:
        """Like ``apply_ops_or_raise`` but reports failure in the result."""
        try:
            return self.apply_ops_or_raise(ops)
        except (ClearingError, ValueError) as exc:
            logger.info("batch of %d ops rejected: %s", len(ops), exc)
            return StepResult(ok=False, error=f"{type(exc).__name__}: {exc}")

    # -- capabilities ---------------------------------------------------------

    def _require_owner(self, sender: str) -> None:
        if sender != self.owner:
            raise AuthorizationError(f"{sender} is not the owner")

    def _require_operator(self, sender: str) -> None:
        if sender != self.operator:
            raise AuthorizationError(f"{sender} is not the operator")

    def _require_backstop(self, sender: str) -> None:
        if sender not in self.backstops:
            raise AuthorizationError(f"{sender} is not a backstop liquidity provider")

    def set_whitelisted(self, sender: str, trader: str, allowed: bool) -> None:
        self._require_owner(sender)
        if allowed:
            self.whitelist.add(trader)
        else:
            self.whitelist.discard(trader)

    def set_backstop(self, sender: str, account: str, allowed: bool) -> None:
        self._require_owner(sender)
        if allowed:
            self.backstops.add(account)
        else:
            self.backstops.discard(account)

    def set_owner(self, sender: str, new_owner: str) -> None:
        self._require_owner(sender)
        if not new_owner:
            raise ValueError("owner must be non-empty")
        self.owner = new_owner

    def set_operator(self, sender: str, new_operator: str) -> None:
        self._require_owner(sender)
        if not new_operator:
            raise ValueError("operator must be non-empty")
        self.operator = new_operator

    def set_risk_params(self, sender: str, **changes: int) -> RiskParams:
        """Replace margin/liquidation ratios (owner only)."""
        self._require_owner(sender)
        params = replace(self.params, **changes)
        self.params = params
        self.positions.params = params
        self.liquidations.params = params
        return params

    # -- public entry points --------------------------------------------------

    def add_market(self, sender: str, market: MarketConfig) -> Market:
        return self._run(Action.ADD_MARKET, sender, market=market)

    def remove_market(self, sender: str, market_id: str) -> Market:
        return self._run(Action.REMOVE_MARKET, sender, market_id=market_id)

    def set_market_params(self, sender: str, market_id: str, **changes: Any) -> Market:
        return self._run(Action.SET_MARKET_PARAMS, sender, market_id=market_id, **changes)

    def open_position(
        self,
        trader: str,
        market_id: str,
        side: Side,
        amount: int,
        leverage: int,
        limit: int = 0,
        *,
        is_quote: bool = True,
    ):
        return self._run(
            Action.OPEN_POSITION, trader,
            market_id=market_id, side=side, amount=amount, leverage=leverage, limit=limit, is_quote=is_quote,
        )

    def close_position(self, trader: str, market_id: str, quote_limit: int = 0):
        return self._run(Action.CLOSE_POSITION, trader, market_id=market_id, quote_limit=quote_limit)

    def add_margin(self, trader: str, market_id: str, amount: int):
        return self._run(Action.ADD_MARGIN, trader, market_id=market_id, amount=amount)

    def remove_margin(self, trader: str, market_id: str, amount: int):
        return self._run(Action.REMOVE_MARGIN, trader, market_id=market_id, amount=amount)

    def liquidate(self, sender: str, market_id: str, trader: str):
        return self._run(Action.LIQUIDATE, sender, market_id=market_id, trader=trader)

    def liquidate_with_slippage(self, sender: str, market_id: str, trader: str, quote_limit: int = 0):
        return self._run(
            Action.LIQUIDATE_WITH_SLIPPAGE, sender, market_id=market_id, trader=trader, quote_limit=quote_limit
        )

    def settle_funding(self, sender: str, market_id: str):
        return self._run(Action.SETTLE_FUNDING, sender, market_id=market_id)

    def repeg(self, sender: str, market_id: str, new_quote_reserve: int):
        return self._run(Action.REPEG, sender, market_id=market_id, new_quote_reserve=new_quote_reserve)

    def adjust_k(self, sender: str, market_id: str, numerator: int, denominator: int):
        return self._run(Action.ADJUST_K, sender, market_id=market_id, numerator=numerator, denominator=denominator)

    def stake(self, staker: str, amount: int) -> None:
        self._run(Action.STAKE, staker, amount=amount)

    def unstake(self, staker: str, amount: int) -> None:
        self._run(Action.UNSTAKE, staker, amount=amount)

    def set_staking_active(self, sender: str, active: bool) -> None:
        self._run(Action.SET_STAKING_ACTIVE, sender, active=active)

    def remove_token(self, sender: str) -> int:
        return self._run(Action.REMOVE_TOKEN, sender)

    # -- handlers -------------------------------------------------------------

    def _add_market(self, state: ClearingState, sender: str, *, market: MarketConfig) -> Market:
        self._require_owner(sender)
        now = self.now
        curve = init_curve(
            market.quote_reserve,
            market.base_reserve,
            now,
            **{name: getattr(market, name) for name in _CURVE_PARAMS},
        )
        record = Market(
            market_id=market.market_id,
            quote_asset=self.config.quote_asset,
            price_feed_key=market.price_feed_key,
            curve=curve,
            funding=FundingState(funding_period=market.funding_period, next_funding_time=now + market.funding_period),
            **{name: getattr(market, name) for name in _MARKET_PARAMS},
        )
        state.registry.add(record)
        state.emit(MarketListed(Event.MARKET_ADDED, market.market_id))
        logger.info("market %s added: Q=%d B=%d", market.market_id, market.quote_reserve, market.base_reserve)
        return record

    def _remove_market(self, state: ClearingState, sender: str, *, market_id: str) -> Market:
        self._require_owner(sender)
        closed = state.registry.remove(market_id)
        state.emit(MarketListed(Event.MARKET_REMOVED, market_id))
        logger.info("market %s removed", market_id)
        return closed

    def _set_market_params(self, state: ClearingState, sender: str, *, market_id: str, **changes: Any) -> Market:
        self._require_owner(sender)
        unknown = set(changes) - set(_CURVE_PARAMS) - set(_MARKET_PARAMS)
        if unknown:
            raise ValueError(f"unknown market parameters: {sorted(unknown)}")
        market = state.registry.get(market_id)
        curve_changes = {k: v for k, v in changes.items() if k in _CURVE_PARAMS}
        market_changes = {k: v for k, v in changes.items() if k in _MARKET_PARAMS}
        if curve_changes:
            market_changes["curve"] = replace(market.curve, **curve_changes)
        market = replace(market, **market_changes)
        state.registry.update(market)
        return market

    def _maybe_settle(self, state: ClearingState, market_id: str, now: int) -> None:
        market = state.registry.get(market_id)
        if market.open and now >= market.funding.next_funding_time:
            self._do_settle(state, market, now)

    def _do_settle(self, state: ClearingState, market: Market, now: int):
        oracle = self.price_feed.twap_price(market.price_feed_key, market.twap_interval)
        return self.funding.settle(state, market.market_id, now, oracle)

    def _open_position(
        self,
        state: ClearingState,
        sender: str,
        *,
        market_id: str,
        side: Side,
        amount: int,
        leverage: int,
        limit: int = 0,
        is_quote: bool = True,
    ):
        now = self.now
        self._maybe_settle(state, market_id, now)
        if is_quote:
            state.ledger.require_granular(self.config.quote_asset, amount)
        return self.positions.open_position(
            state, sender, market_id, side, amount, leverage, limit, now,
            is_quote=is_quote, whitelisted=sender in self.whitelist,
        )

    def _close_position(self, state: ClearingState, sender: str, *, market_id: str, quote_limit: int = 0):
        now = self.now
        self._maybe_settle(state, market_id, now)
        return self.positions.close_position(state, sender, market_id, quote_limit, now)

    def _add_margin(self, state: ClearingState, sender: str, *, market_id: str, amount: int):
        self._maybe_settle(state, market_id, self.now)
        return self.positions.add_margin(state, sender, market_id, amount)

    def _remove_margin(self, state: ClearingState, sender: str, *, market_id: str, amount: int):
        now = self.now
        self._maybe_settle(state, market_id, now)
        return self.positions.remove_margin(state, sender, market_id, amount, now)

    def _liquidate(self, state: ClearingState, sender: str, *, market_id: str, trader: str):
        self._require_backstop(sender)
        now = self.now
        self._maybe_settle(state, market_id, now)
        return self.liquidations.liquidate(
            state, market_id, trader, sender, now, pay_bounty=False, is_backstop=True
        )

    def _liquidate_with_slippage(
        self, state: ClearingState, sender: str, *, market_id: str, trader: str, quote_limit: int = 0
    ):
        now = self.now
        self._maybe_settle(state, market_id, now)
        return self.liquidations.liquidate(
            state, market_id, trader, sender, now,
            quote_limit=quote_limit, pay_bounty=True, is_backstop=sender in self.backstops,
        )

    def _settle_funding(self, state: ClearingState, sender: str, *, market_id: str):
        market = state.registry.require_open(market_id)
        now = self.now
        if now < market.funding.next_funding_time:
            return None
        return self._do_settle(state, market, now)

    def _repeg(self, state: ClearingState, sender: str, *, market_id: str, new_quote_reserve: int):
        self._require_operator(sender)
        return self.funding.repeg(state, market_id, new_quote_reserve, self.now)

    def _adjust_k(self, state: ClearingState, sender: str, *, market_id: str, numerator: int, denominator: int):
        self._require_operator(sender)
        return self.funding.adjust_k(state, market_id, numerator, denominator, self.now)

    def _stake(self, state: ClearingState, sender: str, *, amount: int) -> None:
        state.ledger.require_granular(self.config.quote_asset, amount)
        state.waterfall.stake(state.ledger, sender, amount)

    def _unstake(self, state: ClearingState, sender: str, *, amount: int) -> None:
        state.waterfall.unstake(state.ledger, sender, amount)

    def _set_staking_active(self, state: ClearingState, sender: str, *, active: bool) -> None:
        self._require_owner(sender)
        state.waterfall.set_staking_active(active)
        logger.info("staking pool %s", "activated" if active else "deactivated")

    def _remove_token(self, state: ClearingState, sender: str) -> int:
        self._require_owner(sender)
        return state.waterfall.remove_token(state.ledger, self.owner)

    # -- views ----------------------------------------------------------------

    def market(self, market_id: str) -> Market:
        return self.state.registry.get(market_id)

    def get_position(self, market_id: str, trader: str) -> Position:
        return self.state.registry.get_position(market_id, trader)

    def get_position_with_funding(self, market_id: str, trader: str) -> Position:
        return self.positions.position_with_funding(self.state, market_id, trader)

    def get_margin_ratio(
        self, market_id: str, trader: str, option: PnlCalcOption = PnlCalcOption.SPOT_PRICE
    ) -> int:
        return self.positions.margin_ratio(self.state, market_id, trader, option, self.now)

    def get_position_notional_and_unrealized_pnl(
        self, market_id: str, trader: str, option: PnlCalcOption = PnlCalcOption.SPOT_PRICE
    ) -> Tuple[int, int]:
        market = self.state.registry.get(market_id)
        position = self.state.registry.get_position(market_id, trader)
        return self.positions.notional_and_pnl(market, position, option, self.now)

    def get_unrealized_pnl(
        self, market_id: str, trader: str, option: PnlCalcOption = PnlCalcOption.SPOT_PRICE
    ) -> int:
        return self.get_position_notional_and_unrealized_pnl(market_id, trader, option)[1]

    def get_open_interest_notional(self, market_id: str) -> int:
        return self.state.registry.get(market_id).open_interest_notional

    def is_liquidatable(self, market_id: str, trader: str) -> bool:
        return self.liquidations.is_liquidatable(self.state, market_id, trader)

    def spot_price(self, market_id: str) -> int:
        return spot_price(self.market(market_id).curve)

    def twap_price(self, market_id: str, interval: int) -> int:
        return twap_price(self.market(market_id).curve, interval, self.now)

    def get_input_price(self, market_id: str, direction: Direction, quote_amount: int) -> int:
        return get_input_price(self.market(market_id).curve, direction, quote_amount)

    def get_output_price(self, market_id: str, direction: Direction, base_amount: int) -> int:
        return get_output_price(self.market(market_id).curve, direction, base_amount)

    def available_budget(self, market_id: str) -> int:
        return self.funding.available_budget(self.state, market_id)

    def vault_balance(self, market_id: str) -> int:
        return self.state.vault_balance(market_id)

    def approve(self, trader: str, amount: int) -> None:
        """Let the clearing house pull up to *amount* of the quote asset from *trader*."""
        self.state.ledger.approve(trader, CLEARING_HOUSE, self.config.quote_asset, amount)
