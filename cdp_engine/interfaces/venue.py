"""Venue client protocol: raw position/pool data source."""
from typing import Any, Protocol


class VenueClient(Protocol):
    """Raw data access for one liquidity venue; payloads are plain dicts."""

    def get_position(self, token_id: int) -> dict[str, Any]: ...

    def get_pool(self, pool: str) -> dict[str, Any]: ...

    def get_tick(self, pool: str, tick: int) -> dict[str, Any]: ...

    def owner_of(self, token_id: int) -> str: ...

    def transfer_from(self, sender: str, recipient: str, token_id: int) -> None: ...
