"""Pyth Network price feed (Hermes REST API)."""
from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass

import aiohttp
import certifi

from ..config import PythConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceReading:
    """One feed observation: ``price * 10**expo`` USD per whole token."""

    symbol: str
    price: int
    expo: int
    publish_time: int


class PythOracle:
    """Fetch price readings from Pyth Network with endpoint fallback."""

    name = "pyth"

    def __init__(self, config: PythConfig) -> None:
        self.endpoints = list(config.hermes_urls)
        self.timeout = config.timeout
        self.price_feeds = dict(config.feeds)
        self.current_endpoint_index = 0

    async def _get_json(self, query: str) -> dict:
        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            index = (self.current_endpoint_index + attempt) % len(self.endpoints)
            url = f"{self.endpoints[index]}?{query}"

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.get(
                        url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                    ) as response:
                        if response.status != 200:
                            raise RuntimeError(f"HTTP {response.status}")
                        data = await response.json()

                if index != self.current_endpoint_index:
                    logger.info("Switched to Hermes endpoint: %s", self.endpoints[index])
                    self.current_endpoint_index = index
                return data
            except Exception as e:
                last_error = e
                logger.warning("Hermes endpoint %s failed: %s", self.endpoints[index], e)
                continue

        raise RuntimeError(f"All Hermes endpoints failed. Last error: {last_error}")

    async def fetch_readings(self, symbols: list[str] | None = None) -> list[PriceReading]:
        """Fetch the latest readings for the configured feeds.

        Args:
            symbols: Optional list of symbols to fetch. If None, fetches all
                     configured feeds.

        Returns an empty list when every endpoint fails; stale prices are then
        handled by the price source's validity window.
        """
        feeds = self.price_feeds
        if symbols is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in symbols}

        feed_ids = sorted(set(feeds.values()))
        if not feed_ids or not self.endpoints:
            return []

        query = "&".join(f"ids[]={fid}" for fid in feed_ids)
        try:
            data = await self._get_json(query)
        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)
            return []

        # Create reverse mapping from feed ID to asset names
        id_to_assets: dict[str, list[str]] = {}
        for asset, feed_id in feeds.items():
            id_to_assets.setdefault(feed_id.lower().removeprefix("0x"), []).append(asset)

        readings: list[PriceReading] = []
        for item in data.get("parsed", []):
            feed_id = str(item.get("id", "")).lower().removeprefix("0x")
            price_data = item.get("price", {})
            try:
                price = int(price_data.get("price", 0))
                expo = int(price_data.get("expo", 0))
                publish_time = int(price_data.get("publish_time", 0))
            except (TypeError, ValueError):
                logger.warning("Malformed Pyth price for feed %s", feed_id)
                continue

            for asset in id_to_assets.get(feed_id, []):
                readings.append(PriceReading(asset, price, expo, publish_time))

        logger.info("Fetched %d prices from Pyth Network", len(readings))
        for r in readings:
            logger.debug("  %s: %d x 10^%d @ %d", r.symbol, r.price, r.expo, r.publish_time)
        return readings
