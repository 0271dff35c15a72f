"""Price feeds and the price source adapter."""
from .price_source import PriceSourceAdapter, reading_to_price_x96
from .pyth import PriceReading, PythOracle

__all__ = ["PriceReading", "PriceSourceAdapter", "PythOracle", "reading_to_price_x96"]
