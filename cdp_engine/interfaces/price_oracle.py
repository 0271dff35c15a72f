"""Price oracle protocol: price feed abstraction."""
from typing import Protocol


class PriceOracle(Protocol):
    """Uniform per-asset price query.

    ``price_x96`` is quote-token base units per asset base unit, times 2**96.
    A failed query returns ``(False, 0)``; callers must never read the zero as
    a price.
    """

    def get_price(self, asset: str) -> tuple[bool, int]: ...
