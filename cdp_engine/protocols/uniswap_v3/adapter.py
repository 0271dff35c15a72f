"""Uniswap V3 venue adapter: position details, spot price and owed fees."""
from __future__ import annotations

import logging

from ...interfaces.venue import VenueClient
from ...models import PositionInfo
from . import parser as uniswap_parser

logger = logging.getLogger(__name__)


class UniswapV3Adapter:
    """Read Uniswap V3 positions through a :class:`VenueClient`."""

    name = "uniswap_v3"
    parser = uniswap_parser

    def __init__(self, client: VenueClient) -> None:
        self._client = client

    @property
    def venue_name(self) -> str:
        return self.name

    def get_position_details(self, token_id: int) -> PositionInfo:
        return self.parser.parse_position(self._client.get_position(token_id))

    def get_sqrt_price_x96(self, pool: str) -> int:
        sqrt_price_x96, _ = self.parser.parse_spot(self._client.get_pool(pool))
        return sqrt_price_x96

    def compute_uncollected_yield(self, position: PositionInfo) -> tuple[int, int]:
        pool_raw = self._client.get_pool(position.pool)
        _, tick_current = self.parser.parse_spot(pool_raw)
        fee_growth_global = self.parser.parse_pair(
            pool_raw, self.parser.FEE_GROWTH_GLOBAL_KEYS
        )
        outside_lower = self.parser.parse_pair(
            self._client.get_tick(position.pool, position.tick_lower),
            self.parser.FEE_GROWTH_OUTSIDE_KEYS,
        )
        outside_upper = self.parser.parse_pair(
            self._client.get_tick(position.pool, position.tick_upper),
            self.parser.FEE_GROWTH_OUTSIDE_KEYS,
        )

        fees = self.parser.compute_uncollected(
            position, tick_current, fee_growth_global, outside_lower, outside_upper
        )
        logger.debug(
            "%s uncollected fees in %s: %d / %d", self.name, position.pool, *fees
        )
        return fees

    def owner_of(self, token_id: int) -> str:
        return self._client.owner_of(token_id)

    def transfer_position(self, sender: str, recipient: str, token_id: int) -> None:
        self._client.transfer_from(sender, recipient, token_id)
        logger.info("%s position %d moved %s -> %s", self.name, token_id, sender, recipient)
