"""
Clearing-house configuration.

Configuration is a YAML document with two sections:

    clearing_house:
      owner: alice
      operator: ops
      quote_asset: USDC
      initial_margin_ratio: "0.1"
    markets:
      - market_id: ETH-USDC
        quote_reserve: 1000
        base_reserve: 100
        price_feed_key: ETH

Decimal values may be written as strings or numbers; they are converted to
18-decimal fixed point. ``VPERP_OWNER`` and ``VPERP_OPERATOR`` override the
administrative identities from the file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..core.math import ONE, to_fixed
from ..core.types import RiskParams

DAY = 86_400
HOUR = 3_600

_RATIO_FIELDS = (
    "initial_margin_ratio",
    "maintenance_margin_ratio",
    "liquidation_fee_ratio",
    "partial_liquidation_ratio",
)
_MARKET_DECIMAL_FIELDS = (
    "quote_reserve",
    "base_reserve",
    "toll_ratio",
    "spread_ratio",
    "fluctuation_limit_ratio",
    "trade_limit_ratio",
    "max_holding_base",
    "open_interest_cap",
    "price_divergence_threshold",
    "k_increase_max",
    "k_decrease_max",
)
_MARKET_INT_FIELDS = ("funding_period", "twap_interval")
_MARKET_BOOL_FIELDS = ("adjustable", "can_lower_k")


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip()
    return v if v else default


def _require_mapping(obj: Any, *, name: str) -> Dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"{name} must be a mapping")
    return obj


def _require_str(value: Any, *, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _require_bool(value: Any, *, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{name} must be true or false")
    return value


def _reject_unknown(data: Dict[str, Any], allowed: Tuple[str, ...], *, name: str) -> None:
    extra = set(data) - set(allowed)
    if extra:
        raise ValueError(f"{name} has unknown fields: {sorted(extra)}")


@dataclass(frozen=True)
class MarketConfig:
    market_id: str
    quote_reserve: int
    base_reserve: int
    price_feed_key: str
    toll_ratio: int = 0
    spread_ratio: int = 0
    fluctuation_limit_ratio: int = 0
    trade_limit_ratio: int = 9 * ONE // 10
    max_holding_base: int = 0
    open_interest_cap: int = 0
    funding_period: int = DAY
    twap_interval: int = HOUR
    price_divergence_threshold: int = ONE // 10
    adjustable: bool = False
    can_lower_k: bool = False
    k_increase_max: int = ONE + ONE // 100
    k_decrease_max: int = ONE // 100

    def __post_init__(self) -> None:
        if not self.market_id:
            raise ValueError("market_id must be non-empty")
        if not self.price_feed_key:
            raise ValueError("price_feed_key must be non-empty")
        if self.quote_reserve <= 0 or self.base_reserve <= 0:
            raise ValueError("reserves must be positive")
        for name in ("toll_ratio", "spread_ratio", "fluctuation_limit_ratio", "trade_limit_ratio"):
            value = getattr(self, name)
            if value < 0 or value > ONE:
                raise ValueError(f"{name} must be within [0, 1]: {value}")
        if self.funding_period <= 0 or self.twap_interval <= 0:
            raise ValueError("funding_period and twap_interval must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketConfig":
        data = _require_mapping(data, name="market")
        allowed = ("market_id", "price_feed_key") + _MARKET_DECIMAL_FIELDS + _MARKET_INT_FIELDS + _MARKET_BOOL_FIELDS
        _reject_unknown(data, allowed, name="market")
        kwargs: Dict[str, Any] = {
            "market_id": _require_str(data.get("market_id"), name="market.market_id"),
            "price_feed_key": _require_str(data.get("price_feed_key"), name="market.price_feed_key"),
        }
        for key in _MARKET_DECIMAL_FIELDS:
            if key in data:
                kwargs[key] = to_fixed(data[key])
        for key in _MARKET_INT_FIELDS:
            if key in data:
                kwargs[key] = int(data[key])
        for key in _MARKET_BOOL_FIELDS:
            if key in data:
                kwargs[key] = _require_bool(data[key], name=f"market.{key}")
        if "quote_reserve" not in kwargs or "base_reserve" not in kwargs:
            raise ValueError(f"market {kwargs['market_id']} needs quote_reserve and base_reserve")
        return cls(**kwargs)


@dataclass(frozen=True)
class ClearingHouseConfig:
    owner: str
    operator: str
    quote_asset: str
    initial_margin_ratio: int = ONE // 20
    maintenance_margin_ratio: int = ONE // 20
    liquidation_fee_ratio: int = ONE // 20
    partial_liquidation_ratio: int = 0
    staking_active: bool = True
    quote_decimals: int = 18

    def __post_init__(self) -> None:
        if not self.owner or not self.operator:
            raise ValueError("owner and operator must be non-empty")
        if not self.quote_asset:
            raise ValueError("quote_asset must be non-empty")
        if not 0 <= self.quote_decimals <= 18:
            raise ValueError(f"quote_decimals must be within [0, 18]: {self.quote_decimals}")
        # Validates the ratios.
        self.risk_params()

    def risk_params(self) -> RiskParams:
        return RiskParams(
            initial_margin_ratio=self.initial_margin_ratio,
            maintenance_margin_ratio=self.maintenance_margin_ratio,
            liquidation_fee_ratio=self.liquidation_fee_ratio,
            partial_liquidation_ratio=self.partial_liquidation_ratio,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClearingHouseConfig":
        data = _require_mapping(data, name="clearing_house")
        allowed = ("owner", "operator", "quote_asset", "staking_active", "quote_decimals") + _RATIO_FIELDS
        _reject_unknown(data, allowed, name="clearing_house")
        owner = _env_str("VPERP_OWNER", data.get("owner"))
        operator = _env_str("VPERP_OPERATOR", data.get("operator"))
        kwargs: Dict[str, Any] = {
            "owner": _require_str(owner, name="clearing_house.owner"),
            "operator": _require_str(operator, name="clearing_house.operator"),
            "quote_asset": _require_str(data.get("quote_asset"), name="clearing_house.quote_asset"),
        }
        for key in _RATIO_FIELDS:
            if key in data:
                kwargs[key] = to_fixed(data[key])
        if "staking_active" in data:
            kwargs["staking_active"] = _require_bool(data["staking_active"], name="clearing_house.staking_active")
        if "quote_decimals" in data:
            kwargs["quote_decimals"] = int(data["quote_decimals"])
        return cls(**kwargs)


def load_config(path: Union[str, Path]) -> Tuple[ClearingHouseConfig, List[MarketConfig]]:
    """Read a YAML configuration file into validated config records."""
    raw = Path(path).read_text(encoding="utf-8")
    root = _require_mapping(yaml.safe_load(raw), name="config")
    _reject_unknown(root, ("clearing_house", "markets"), name="config")
    house = ClearingHouseConfig.from_dict(root.get("clearing_house") or {})
    markets_raw = root.get("markets") or []
    if not isinstance(markets_raw, list):
        raise ValueError("markets must be a list")
    markets = [MarketConfig.from_dict(m) for m in markets_raw]
    seen = set()
    for market in markets:
        if market.market_id in seen:
            raise ValueError(f"duplicate market_id in config: {market.market_id}")
        seen.add(market.market_id)
    return house, markets
