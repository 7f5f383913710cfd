"""
Core clearing algorithms: curve pricing, fixed-point math and record types.

Components that need the engine state (positions, funding, liquidation, the
loss waterfall) are imported from their modules directly.
"""

from .curve import (
    CurveState,
    ReserveSnapshot,
    adjust_k,
    calc_fee,
    get_input_price,
    get_output_price,
    init_curve,
    position_value,
    recenter_cost,
    repeg,
    spot_price,
    swap_input,
    swap_output,
    twap_price,
)
from .errors import ClearingError
from .math import ONE, from_fixed, to_fixed
from .types import (
    Direction,
    Event,
    FundingState,
    PnlCalcOption,
    Position,
    RiskParams,
    Side,
)

__all__ = [
    "CurveState",
    "ReserveSnapshot",
    "adjust_k",
    "calc_fee",
    "get_input_price",
    "get_output_price",
    "init_curve",
    "position_value",
    "recenter_cost",
    "repeg",
    "spot_price",
    "swap_input",
    "swap_output",
    "twap_price",
    "ClearingError",
    "ONE",
    "from_fixed",
    "to_fixed",
    "Direction",
    "Event",
    "FundingState",
    "PnlCalcOption",
    "Position",
    "RiskParams",
    "Side",
]
