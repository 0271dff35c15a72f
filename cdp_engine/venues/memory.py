"""In-memory concentrated-liquidity venue used for replay and tests.

Implements just enough of a venue's accounting to produce realistic payloads:
pools with a spot price and global fee growth, initialized ticks with
fee-growth-outside that flip when crossed, and position-manager records with
their fee-growth-inside snapshots. Payloads are rendered in either the
Uniswap V3 or the Algebra field layout.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import InvalidPosition
from ..liquidity_math import (
    get_fee_growth_inside,
    get_sqrt_ratio_at_tick,
    get_tick_at_sqrt_ratio,
    sub_mod_256,
)

logger = logging.getLogger(__name__)

LAYOUTS = ("uniswap_v3", "algebra")


@dataclass
class _Pool:
    token0: str
    token1: str
    sqrt_price_x96: int
    tick: int
    fee: int = 500
    fee_growth_global: list[int] = field(default_factory=lambda: [0, 0])
    ticks: dict[int, list[int]] = field(default_factory=dict)


@dataclass
class _Position:
    owner: str
    pool: str
    tick_lower: int
    tick_upper: int
    liquidity: int
    fee_growth_inside_last: tuple[int, int]


class InMemoryVenue:
    """A single venue (position manager + its pools) held in memory."""

    def __init__(self, layout: str = "uniswap_v3") -> None:
        if layout not in LAYOUTS:
            raise ValueError(f"Unknown venue layout '{layout}'")
        self.layout = layout
        self._pools: dict[str, _Pool] = {}
        self._positions: dict[int, _Position] = {}
        self._next_token_id = 1

    # ------------------------------------------------------------------
    # Venue state manipulation
    # ------------------------------------------------------------------

    def create_pool(
        self,
        pool: str,
        token0: str,
        token1: str,
        tick: int = 0,
        fee: int = 500,
    ) -> None:
        self._pools[pool] = _Pool(
            token0=token0,
            token1=token1,
            sqrt_price_x96=get_sqrt_ratio_at_tick(tick),
            tick=tick,
            fee=fee,
        )

    def _pool(self, pool: str) -> _Pool:
        try:
            return self._pools[pool]
        except KeyError:
            raise InvalidPosition(f"Unknown pool {pool}") from None

    def _init_tick(self, state: _Pool, tick: int) -> None:
        if tick in state.ticks:
            return
        # By convention all growth so far happened below an initialized tick
        if tick <= state.tick:
            state.ticks[tick] = list(state.fee_growth_global)
        else:
            state.ticks[tick] = [0, 0]

    def _inside(self, state: _Pool, tick_lower: int, tick_upper: int) -> tuple[int, int]:
        return tuple(  # type: ignore[return-value]
            get_fee_growth_inside(
                state.tick,
                tick_lower,
                tick_upper,
                state.fee_growth_global[i],
                state.ticks[tick_lower][i],
                state.ticks[tick_upper][i],
            )
            for i in (0, 1)
        )

    def mint_position(
        self,
        owner: str,
        pool: str,
        tick_lower: int,
        tick_upper: int,
        liquidity: int,
    ) -> int:
        """Create a position and return its token id."""
        state = self._pool(pool)
        if tick_lower >= tick_upper:
            raise InvalidPosition("tick_lower must be below tick_upper")
        self._init_tick(state, tick_lower)
        self._init_tick(state, tick_upper)

        token_id = self._next_token_id
        self._next_token_id += 1
        self._positions[token_id] = _Position(
            owner=owner,
            pool=pool,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            liquidity=liquidity,
            fee_growth_inside_last=self._inside(state, tick_lower, tick_upper),
        )
        logger.debug("Minted position %d in %s for %s", token_id, pool, owner)
        return token_id

    def set_tick(self, pool: str, tick: int) -> None:
        """Move the spot price to ``tick``, crossing initialized ticks."""
        self._move(pool, tick, get_sqrt_ratio_at_tick(tick))

    def set_sqrt_price(self, pool: str, sqrt_price_x96: int) -> None:
        self._move(pool, get_tick_at_sqrt_ratio(sqrt_price_x96), sqrt_price_x96)

    def _move(self, pool: str, new_tick: int, sqrt_price_x96: int) -> None:
        state = self._pool(pool)
        old_tick = state.tick
        for t, outside in state.ticks.items():
            crossed_up = old_tick < t <= new_tick
            crossed_down = new_tick < t <= old_tick
            if crossed_up or crossed_down:
                for i in (0, 1):
                    outside[i] = sub_mod_256(state.fee_growth_global[i], outside[i])
        state.tick = new_tick
        state.sqrt_price_x96 = sqrt_price_x96

    def accrue_fees(self, pool: str, growth0_x128: int, growth1_x128: int) -> None:
        """Add per-liquidity fee growth to the pool's global counters (mod 2**256)."""
        state = self._pool(pool)
        state.fee_growth_global[0] = (state.fee_growth_global[0] + growth0_x128) % 2**256
        state.fee_growth_global[1] = (state.fee_growth_global[1] + growth1_x128) % 2**256

    def set_fee_growth_global(self, pool: str, growth0_x128: int, growth1_x128: int) -> None:
        state = self._pool(pool)
        state.fee_growth_global = [growth0_x128 % 2**256, growth1_x128 % 2**256]

    # ------------------------------------------------------------------
    # VenueClient
    # ------------------------------------------------------------------

    def _position(self, token_id: int) -> _Position:
        try:
            return self._positions[token_id]
        except KeyError:
            raise InvalidPosition(f"Unknown position {token_id}") from None

    def get_position(self, token_id: int) -> dict[str, Any]:
        position = self._position(token_id)
        state = self._pool(position.pool)
        payload: dict[str, Any] = {
            "token0": state.token0,
            "token1": state.token1,
            "pool": position.pool,
            "tickLower": position.tick_lower,
            "tickUpper": position.tick_upper,
            "liquidity": position.liquidity,
            "feeGrowthInside0LastX128": position.fee_growth_inside_last[0],
            "feeGrowthInside1LastX128": position.fee_growth_inside_last[1],
            "tokensOwed0": 0,
            "tokensOwed1": 0,
        }
        if self.layout == "uniswap_v3":
            payload["fee"] = state.fee
        return payload

    def get_pool(self, pool: str) -> dict[str, Any]:
        state = self._pool(pool)
        if self.layout == "algebra":
            return {
                "globalState": {"price": state.sqrt_price_x96, "tick": state.tick},
                "totalFeeGrowth0Token": state.fee_growth_global[0],
                "totalFeeGrowth1Token": state.fee_growth_global[1],
            }
        return {
            "slot0": {"sqrtPriceX96": state.sqrt_price_x96, "tick": state.tick},
            "feeGrowthGlobal0X128": state.fee_growth_global[0],
            "feeGrowthGlobal1X128": state.fee_growth_global[1],
        }

    def get_tick(self, pool: str, tick: int) -> dict[str, Any]:
        outside = self._pool(pool).ticks.get(tick, [0, 0])
        if self.layout == "algebra":
            return {"outerFeeGrowth0Token": outside[0], "outerFeeGrowth1Token": outside[1]}
        return {"feeGrowthOutside0X128": outside[0], "feeGrowthOutside1X128": outside[1]}

    def owner_of(self, token_id: int) -> str:
        return self._position(token_id).owner

    def transfer_from(self, sender: str, recipient: str, token_id: int) -> None:
        position = self._position(token_id)
        if position.owner != sender:
            raise InvalidPosition(f"{sender} does not own position {token_id}")
        position.owner = recipient
