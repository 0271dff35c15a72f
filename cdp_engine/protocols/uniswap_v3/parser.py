"""Pure parsing functions for Uniswap V3 payloads: no I/O.

Payload values may arrive as ints or as decimal strings (JSON-RPC); every
field goes through :func:`read_int`.
"""
from __future__ import annotations

from typing import Any

from ...errors import InvalidPosition
from ...liquidity_math import get_fee_growth_inside, get_sqrt_ratio_at_tick, get_uncollected_fees
from ...models import PositionInfo

FEE_GROWTH_GLOBAL_KEYS = ("feeGrowthGlobal0X128", "feeGrowthGlobal1X128")
FEE_GROWTH_OUTSIDE_KEYS = ("feeGrowthOutside0X128", "feeGrowthOutside1X128")


def read_int(payload: dict[str, Any], key: str) -> int:
    """Read an integer field, raising InvalidPosition when missing or malformed."""
    if key not in payload:
        raise InvalidPosition(f"Venue payload is missing '{key}'")
    try:
        return int(payload[key])
    except (TypeError, ValueError) as e:
        raise InvalidPosition(f"Venue field '{key}' is not an integer: {payload[key]!r}") from e


def read_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not value or not isinstance(value, str):
        raise InvalidPosition(f"Venue payload is missing '{key}'")
    return value


def parse_position(raw: dict[str, Any]) -> PositionInfo:
    """Build a :class:`PositionInfo` from a position-manager record.

    Example payload::

        {"token0": "WETH", "token1": "USDC", "fee": 500, "pool": "0xpool",
         "tickLower": -600, "tickUpper": 600, "liquidity": "10000",
         "feeGrowthInside0LastX128": "0", "feeGrowthInside1LastX128": "0",
         "tokensOwed0": 0, "tokensOwed1": 0}
    """
    tick_lower = read_int(raw, "tickLower")
    tick_upper = read_int(raw, "tickUpper")
    if tick_lower >= tick_upper:
        raise InvalidPosition(f"Empty tick range [{tick_lower}, {tick_upper})")

    liquidity = read_int(raw, "liquidity")
    if liquidity < 0:
        raise InvalidPosition("Negative liquidity")

    try:
        sqrt_lower = get_sqrt_ratio_at_tick(tick_lower)
        sqrt_upper = get_sqrt_ratio_at_tick(tick_upper)
    except ValueError as e:
        raise InvalidPosition(str(e)) from e

    return PositionInfo(
        token0=read_str(raw, "token0"),
        token1=read_str(raw, "token1"),
        pool=read_str(raw, "pool"),
        tick_lower=tick_lower,
        tick_upper=tick_upper,
        sqrt_price_lower_x96=sqrt_lower,
        sqrt_price_upper_x96=sqrt_upper,
        liquidity=liquidity,
        fee_growth_inside0_last_x128=read_int(raw, "feeGrowthInside0LastX128"),
        fee_growth_inside1_last_x128=read_int(raw, "feeGrowthInside1LastX128"),
        tokens_owed0=int(raw.get("tokensOwed0", 0)),
        tokens_owed1=int(raw.get("tokensOwed1", 0)),
    )


def parse_spot(pool_raw: dict[str, Any]) -> tuple[int, int]:
    """Return ``(sqrt_price_x96, tick)`` from the pool's ``slot0``."""
    slot0 = pool_raw.get("slot0")
    if not isinstance(slot0, dict):
        raise InvalidPosition("Pool payload is missing 'slot0'")
    return read_int(slot0, "sqrtPriceX96"), read_int(slot0, "tick")


def parse_pair(raw: dict[str, Any], keys: tuple[str, str]) -> tuple[int, int]:
    return read_int(raw, keys[0]), read_int(raw, keys[1])


def compute_uncollected(
    position: PositionInfo,
    tick_current: int,
    fee_growth_global: tuple[int, int],
    outside_lower: tuple[int, int],
    outside_upper: tuple[int, int],
) -> tuple[int, int]:
    """Fees owed to ``position`` now: accrued since its snapshot plus tokensOwed."""
    owed = [position.tokens_owed0, position.tokens_owed1]
    last = (position.fee_growth_inside0_last_x128, position.fee_growth_inside1_last_x128)

    for i in (0, 1):
        inside = get_fee_growth_inside(
            tick_current,
            position.tick_lower,
            position.tick_upper,
            fee_growth_global[i],
            outside_lower[i],
            outside_upper[i],
        )
        owed[i] += get_uncollected_fees(inside, last[i], position.liquidity)

    return owed[0], owed[1]
