"""Protocol interfaces for the vault engine's external collaborators."""
from .debt_token import DebtToken
from .governance import Governance
from .price_oracle import PriceOracle
from .protocol_adapter import PositionAdapter
from .registry import VaultRegistry
from .venue import VenueClient

__all__ = [
    "DebtToken",
    "Governance",
    "PositionAdapter",
    "PriceOracle",
    "VaultRegistry",
    "VenueClient",
]
