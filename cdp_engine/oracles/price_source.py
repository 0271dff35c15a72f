"""Price source adapter: uniform ``(ok, price_x96)`` queries over feeds.

Each asset may be served by several feeds in priority order. A reading is
usable while it is younger than ``valid_period`` seconds; when no feed has a
usable reading the last good price is served as long as it is itself still
inside the window. A failed lookup is ``(False, 0)``, never a zero price.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable

from ..clock import system_clock
from ..constants import DEBT_TOKEN_DECIMALS, DEFAULT_PRICE_VALID_PERIOD, Q96
from .pyth import PriceReading

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"


def reading_to_price_x96(reading: PriceReading, token_decimals: int, quote_decimals: int) -> int:
    """Quote base units per asset base unit, times 2**96.

    The quote token is assumed to trade at 1 USD.
    """
    numerator = reading.price * 10**quote_decimals * Q96
    denominator = 10**token_decimals
    if reading.expo >= 0:
        numerator *= 10**reading.expo
    else:
        denominator *= 10 ** (-reading.expo)
    return numerator // denominator


class PriceSourceAdapter:
    """Cache of feed readings, converted to priceX96 on demand."""

    def __init__(
        self,
        token_decimals: dict[str, int],
        valid_period: int = DEFAULT_PRICE_VALID_PERIOD,
        quote_decimals: int = DEBT_TOKEN_DECIMALS,
        sources: Iterable[str] = (MANUAL_SOURCE,),
        clock: Callable[[], int] = system_clock,
    ) -> None:
        self._decimals = dict(token_decimals)
        self.valid_period = valid_period
        self.quote_decimals = quote_decimals
        self._sources = list(sources)
        self._clock = clock
        self._readings: dict[tuple[str, str], PriceReading] = {}
        self._last_good: dict[str, PriceReading] = {}

    @property
    def sources(self) -> tuple[str, ...]:
        return tuple(self._sources)

    def add_source(self, source: str, primary: bool = False) -> None:
        if source in self._sources:
            return
        if primary:
            self._sources.insert(0, source)
        else:
            self._sources.append(source)

    def set_decimals(self, token: str, decimals: int) -> None:
        self._decimals[token] = decimals

    # ------------------------------------------------------------------
    # Feeding readings in
    # ------------------------------------------------------------------

    def update(self, readings: Iterable[PriceReading], source: str = MANUAL_SOURCE) -> int:
        """Store the latest reading per asset for ``source``; returns the count."""
        self.add_source(source)
        count = 0
        for reading in readings:
            current = self._readings.get((source, reading.symbol))
            if current is not None and current.publish_time > reading.publish_time:
                continue
            self._readings[(source, reading.symbol)] = reading
            if reading.price > 0:
                previous = self._last_good.get(reading.symbol)
                if previous is None or reading.publish_time >= previous.publish_time:
                    self._last_good[reading.symbol] = reading
            count += 1
        return count

    def set_price(
        self,
        symbol: str,
        price: int,
        expo: int = 0,
        publish_time: int | None = None,
        source: str = MANUAL_SOURCE,
    ) -> None:
        if publish_time is None:
            publish_time = self._clock()
        self.update([PriceReading(symbol, price, expo, publish_time)], source=source)

    async def refresh(self, feed) -> int:
        """Pull fresh readings from an async feed such as :class:`PythOracle`."""
        readings = await feed.fetch_readings()
        count = self.update(readings, source=feed.name)
        logger.info("Refreshed %d readings from %s", count, feed.name)
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _is_fresh(self, reading: PriceReading, now: int) -> bool:
        return reading.price > 0 and now - reading.publish_time <= self.valid_period

    def _latest_usable(self, asset: str, now: int) -> PriceReading | None:
        for source in self._sources:
            reading = self._readings.get((source, asset))
            if reading is not None and self._is_fresh(reading, now):
                return reading
        return None

    def get_price(self, asset: str) -> tuple[bool, int]:
        decimals = self._decimals.get(asset)
        if decimals is None:
            logger.warning("No decimals configured for %s", asset)
            return False, 0

        now = self._clock()
        reading = self._latest_usable(asset, now)
        if reading is None:
            cached = self._last_good.get(asset)
            if cached is None or not self._is_fresh(cached, now):
                logger.warning("No valid price for %s", asset)
                return False, 0
            logger.debug("Serving cached price for %s", asset)
            reading = cached

        price_x96 = reading_to_price_x96(reading, decimals, self.quote_decimals)
        if price_x96 == 0:
            return False, 0
        return True, price_x96

    def has_price(self, asset: str) -> bool:
        ok, _ = self.get_price(asset)
        return ok
