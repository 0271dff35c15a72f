"""Pure parsing functions for Algebra (QuickSwap V3) payloads: no I/O.

Algebra positions share the Uniswap V3 position layout minus the fee tier;
pools expose ``globalState`` instead of ``slot0`` and name their fee growth
counters differently.
"""
from __future__ import annotations

from typing import Any

from ...errors import InvalidPosition
from ..uniswap_v3.parser import compute_uncollected, parse_pair, parse_position, read_int

FEE_GROWTH_GLOBAL_KEYS = ("totalFeeGrowth0Token", "totalFeeGrowth1Token")
FEE_GROWTH_OUTSIDE_KEYS = ("outerFeeGrowth0Token", "outerFeeGrowth1Token")

__all__ = [
    "FEE_GROWTH_GLOBAL_KEYS",
    "FEE_GROWTH_OUTSIDE_KEYS",
    "compute_uncollected",
    "parse_pair",
    "parse_position",
    "parse_spot",
]


def parse_spot(pool_raw: dict[str, Any]) -> tuple[int, int]:
    """Return ``(sqrt_price_x96, tick)`` from the pool's ``globalState``."""
    state = pool_raw.get("globalState")
    if not isinstance(state, dict):
        raise InvalidPosition("Pool payload is missing 'globalState'")
    return read_int(state, "price"), read_int(state, "tick")
