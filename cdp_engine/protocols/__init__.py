"""Venue adapters, selected by venue name at deposit time."""
from __future__ import annotations

from typing import Any, Callable

from ..interfaces.protocol_adapter import PositionAdapter
from ..interfaces.venue import VenueClient
from .algebra import AlgebraAdapter
from .uniswap_v3 import UniswapV3Adapter

# Registry of venue adapter factories keyed by venue name.
ADAPTER_FACTORIES: dict[str, Callable[[VenueClient], Any]] = {
    "uniswap_v3": UniswapV3Adapter,
    "algebra": AlgebraAdapter,
}


def build_adapter(venue: str, client: VenueClient) -> PositionAdapter:
    """Instantiate the adapter registered for ``venue``."""
    try:
        factory = ADAPTER_FACTORIES[venue]
    except KeyError:
        raise ValueError(f"No adapter registered for venue '{venue}'") from None
    return factory(client)


__all__ = ["ADAPTER_FACTORIES", "AlgebraAdapter", "UniswapV3Adapter", "build_adapter"]
