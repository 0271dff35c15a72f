"""Protocol adapter: per-venue position capabilities."""
from typing import Protocol

from ..models import PositionInfo


class PositionAdapter(Protocol):
    """Capability interface implemented once per liquidity venue."""

    @property
    def venue_name(self) -> str: ...

    def get_position_details(self, token_id: int) -> PositionInfo: ...

    def get_sqrt_price_x96(self, pool: str) -> int: ...

    def compute_uncollected_yield(self, position: PositionInfo) -> tuple[int, int]: ...

    def owner_of(self, token_id: int) -> str: ...

    def transfer_position(self, sender: str, recipient: str, token_id: int) -> None: ...
