"""Pure concentrated-liquidity math: no I/O.

Integer-exact ports of the venue formulas. Square-root prices are Q64.96,
fee growth counters are Q128.128 and wrap modulo 2**256 exactly as the venue
contracts do, so every subtraction of two counters goes through
:func:`sub_mod_256`.
"""
from __future__ import annotations

import math

from .constants import (
    DENOMINATOR,
    MAX_SQRT_RATIO,
    MAX_TICK,
    MIN_SQRT_RATIO,
    MIN_TICK,
    Q96,
    Q128,
    UINT256_MAX,
)

_TWO_256 = UINT256_MAX + 1

# (bit, multiplier) pairs of the venue's tick -> sqrt price table
_TICK_MULTIPLIERS = (
    (0x2, 0xFFF97272373D413259A46990580E213A),
    (0x4, 0xFFF2E50F5F656932EF12357CF3C7FDCC),
    (0x8, 0xFFE5CACA7E10E4E61C3624EAA0941CD0),
    (0x10, 0xFFCB9843D60F6159C9DB58835C926644),
    (0x20, 0xFF973B41FA98C081472E6896DFB254C0),
    (0x40, 0xFF2EA16466C96A3843EC78B326B52861),
    (0x80, 0xFE5DEE046A99A2A811C461F1969C3053),
    (0x100, 0xFCBE86C7900A88AEDCFFC83B479AA3A4),
    (0x200, 0xF987A7253AC413176F2B074CF7815E54),
    (0x400, 0xF3392B0822B70005940C7A398E4B70F3),
    (0x800, 0xE7159475A2C29B7443B29C7FA6E889D9),
    (0x1000, 0xD097F3BDFD2022B8845AD8F792AA5825),
    (0x2000, 0xA9F746462D870FDF8A65DC1F90E061E5),
    (0x4000, 0x70D869A156D2A1B890BB3DF62BAF32F7),
    (0x8000, 0x31BE135F97D08FD981231505542FCFA6),
    (0x10000, 0x9AA508B5B7A84E1C677DE54F3E99BC9),
    (0x20000, 0x5D6AF8DEDB81196699C329225EE604),
    (0x40000, 0x2216E584F5FA1EA926041BEDFE98),
    (0x80000, 0x48A170391F7DC42444E8FA2),
)


def mul_div(a: int, b: int, denominator: int) -> int:
    """Return ``floor(a * b / denominator)``."""
    if denominator == 0:
        raise ZeroDivisionError("mul_div by zero")
    return (a * b) // denominator


def mul_div_rounding_up(a: int, b: int, denominator: int) -> int:
    """Return ``ceil(a * b / denominator)``."""
    if denominator == 0:
        raise ZeroDivisionError("mul_div by zero")
    return -((-a * b) // denominator)


def sub_mod_256(a: int, b: int) -> int:
    """Unsigned 256-bit subtraction that wraps instead of going negative.

    Fee growth counters are allowed to overflow in the venue; the delta
    between two readings is only meaningful modulo 2**256.
    """
    return (a - b) % _TWO_256


def get_sqrt_ratio_at_tick(tick: int) -> int:
    """Convert a tick to its Q64.96 square-root price, bit-exact."""
    if tick < MIN_TICK or tick > MAX_TICK:
        raise ValueError(f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]")

    abs_tick = abs(tick)
    if abs_tick & 0x1:
        ratio = 0xFFFCB933BD6FAD37AA2D162D1A594001
    else:
        ratio = 0x100000000000000000000000000000000
    for bit, multiplier in _TICK_MULTIPLIERS:
        if abs_tick & bit:
            ratio = (ratio * multiplier) >> 128

    if tick > 0:
        ratio = UINT256_MAX // ratio

    # Q128.128 -> Q64.96, rounding up
    return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)


def get_tick_at_sqrt_ratio(sqrt_price_x96: int) -> int:
    """Greatest tick whose sqrt price does not exceed ``sqrt_price_x96``."""
    if sqrt_price_x96 < MIN_SQRT_RATIO or sqrt_price_x96 >= MAX_SQRT_RATIO:
        raise ValueError(f"sqrt price {sqrt_price_x96} out of bounds")

    low, high = MIN_TICK, MAX_TICK
    while high - low > 1:
        mid = (low + high) // 2
        if get_sqrt_ratio_at_tick(mid) <= sqrt_price_x96:
            low = mid
        else:
            high = mid
    return low


def encode_price_sqrt_x96(numerator: int, denominator: int) -> int:
    """Square-root price for ``numerator / denominator`` in Q64.96."""
    if numerator <= 0 or denominator <= 0:
        raise ValueError("Price ratio must be positive")
    return math.isqrt(numerator * Q96 * Q96 // denominator)


def _sorted(sqrt_a: int, sqrt_b: int) -> tuple[int, int]:
    return (sqrt_a, sqrt_b) if sqrt_a <= sqrt_b else (sqrt_b, sqrt_a)


def get_amount0_for_liquidity(sqrt_a_x96: int, sqrt_b_x96: int, liquidity: int) -> int:
    """Amount of token0 held by ``liquidity`` between two sqrt prices."""
    sqrt_a_x96, sqrt_b_x96 = _sorted(sqrt_a_x96, sqrt_b_x96)
    if liquidity == 0 or sqrt_a_x96 == sqrt_b_x96:
        return 0
    return mul_div(liquidity << 96, sqrt_b_x96 - sqrt_a_x96, sqrt_b_x96) // sqrt_a_x96


def get_amount1_for_liquidity(sqrt_a_x96: int, sqrt_b_x96: int, liquidity: int) -> int:
    """Amount of token1 held by ``liquidity`` between two sqrt prices."""
    sqrt_a_x96, sqrt_b_x96 = _sorted(sqrt_a_x96, sqrt_b_x96)
    if liquidity == 0:
        return 0
    return mul_div(liquidity, sqrt_b_x96 - sqrt_a_x96, Q96)


def get_amounts_for_liquidity(
    sqrt_price_x96: int,
    sqrt_a_x96: int,
    sqrt_b_x96: int,
    liquidity: int,
) -> tuple[int, int]:
    """Decompose a range position into its token0/token1 principal.

    At or below the lower bound everything is token0, at or above the upper
    bound everything is token1, in between both legs are interpolated.
    """
    sqrt_a_x96, sqrt_b_x96 = _sorted(sqrt_a_x96, sqrt_b_x96)

    if sqrt_price_x96 <= sqrt_a_x96:
        return get_amount0_for_liquidity(sqrt_a_x96, sqrt_b_x96, liquidity), 0
    if sqrt_price_x96 < sqrt_b_x96:
        amount0 = get_amount0_for_liquidity(sqrt_price_x96, sqrt_b_x96, liquidity)
        amount1 = get_amount1_for_liquidity(sqrt_a_x96, sqrt_price_x96, liquidity)
        return amount0, amount1
    return 0, get_amount1_for_liquidity(sqrt_a_x96, sqrt_b_x96, liquidity)


def max_token_amounts(sqrt_a_x96: int, sqrt_b_x96: int, liquidity: int) -> tuple[int, int]:
    """Largest amount of each token the position can ever hold.

    Reached when the spot price leaves the range on the corresponding side.
    """
    return (
        get_amount0_for_liquidity(sqrt_a_x96, sqrt_b_x96, liquidity),
        get_amount1_for_liquidity(sqrt_a_x96, sqrt_b_x96, liquidity),
    )


def get_fee_growth_inside(
    tick_current: int,
    tick_lower: int,
    tick_upper: int,
    fee_growth_global_x128: int,
    fee_growth_outside_lower_x128: int,
    fee_growth_outside_upper_x128: int,
) -> int:
    """Fee growth per unit of liquidity accumulated inside a tick range."""
    if tick_current >= tick_lower:
        below = fee_growth_outside_lower_x128
    else:
        below = sub_mod_256(fee_growth_global_x128, fee_growth_outside_lower_x128)

    if tick_current < tick_upper:
        above = fee_growth_outside_upper_x128
    else:
        above = sub_mod_256(fee_growth_global_x128, fee_growth_outside_upper_x128)

    return sub_mod_256(sub_mod_256(fee_growth_global_x128, below), above)


def get_uncollected_fees(
    fee_growth_inside_x128: int,
    fee_growth_inside_last_x128: int,
    liquidity: int,
) -> int:
    """Fees earned since the snapshot, floored."""
    delta = sub_mod_256(fee_growth_inside_x128, fee_growth_inside_last_x128)
    return mul_div(delta, liquidity, Q128)


def quote_value(amount: int, price_x96: int) -> int:
    """Convert an asset amount to quote units at ``price_x96``, floored."""
    return mul_div(amount, price_x96, Q96)


def apply_fraction(value: int, fraction_d: int) -> int:
    """Scale ``value`` by a ``DENOMINATOR``-based fraction, floored."""
    return mul_div(value, fraction_d, DENOMINATOR)


def price_deviation_d(sqrt_price_x96: int, price0_x96: int, price1_x96: int) -> int:
    """Relative deviation of the spot price from the oracle-implied price.

    Both prices are expressed as token1 per token0; the result is a
    ``DENOMINATOR``-based fraction of the oracle price.
    """
    spot_price_x96 = mul_div(sqrt_price_x96, sqrt_price_x96, Q96)
    oracle_price_x96 = mul_div(price0_x96, Q96, price1_x96)
    if oracle_price_x96 == 0:
        return DENOMINATOR
    return mul_div(abs(spot_price_x96 - oracle_price_x96), DENOMINATOR, oracle_price_x96)
