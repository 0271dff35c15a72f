"""Keeper: watches vault health and liquidates the ones that fell under water."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from ..config import KeeperConfig
from ..constants import DEBT_TOKEN_DECIMALS
from ..errors import PositionHealthy, PriceUnavailable, ProtocolError
from ..models import LiquidationResult, VaultHealth
from ..oracles import PriceSourceAdapter, PythOracle
from .vault import VaultLedger

logger = logging.getLogger(__name__)


class Keeper:
    """Periodic health checks and liquidations over every open vault."""

    def __init__(
        self,
        ledger: VaultLedger,
        config: KeeperConfig,
        prices: PriceSourceAdapter | None = None,
        feed: PythOracle | None = None,
        decimals: int = DEBT_TOKEN_DECIMALS,
    ) -> None:
        self._ledger = ledger
        self._config = config
        self._prices = prices
        self._feed = feed
        self._decimals = decimals

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _format_address(address: str) -> str:
        if len(address) > 16:
            return f"{address[:10]}...{address[-6:]}"
        return address

    def _format_amount(self, amount: int) -> str:
        return f"{amount / 10**self._decimals:,.2f}"

    def get_status(self, health: VaultHealth) -> str:
        if health.is_liquidatable:
            return "LIQUIDATABLE"
        if health.health_factor <= self._config.health_critical:
            return "CRITICAL"
        if health.health_factor <= self._config.health_warning:
            return "WARNING"
        return "HEALTHY"

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    def format_status(self, health: VaultHealth) -> str:
        hf = "inf" if health.overall_debt == 0 else f"{health.health_factor:.3f}"
        return (
            f"Vault {health.vault_id} · {self._format_address(health.owner)} · "
            f"{self.get_status(health)} · "
            f"Collateral: {self._format_amount(health.raw_collateral)} "
            f"(adjusted {self._format_amount(health.adjusted_collateral)}) · "
            f"Debt: {self._format_amount(health.debt)} "
            f"+ fee {self._format_amount(health.owed_fee)} · HF: {hf}"
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_vaults(self) -> list[VaultHealth]:
        """Health of every vault that can currently be valued."""
        results: list[VaultHealth] = []
        for vault_id in self._ledger.vault_ids():
            try:
                health = self._ledger.vault_health(vault_id)
            except PriceUnavailable as e:
                logger.warning("Vault %d skipped: %s", vault_id, e)
                continue

            status = self.get_status(health)
            line = self.format_status(health)
            if status == "HEALTHY":
                logger.info(line)
            else:
                logger.warning(line)
            results.append(health)
        return results

    def liquidate_unhealthy(self) -> list[LiquidationResult]:
        """Liquidate every liquidatable vault as the configured liquidator."""
        if not self._config.liquidator:
            logger.warning("No liquidator configured, skipping liquidations")
            return []

        results: list[LiquidationResult] = []
        for health in self.check_vaults():
            if not health.is_liquidatable:
                continue
            try:
                result = self._ledger.liquidate(self._config.liquidator, health.vault_id)
            except PositionHealthy:
                logger.info("Vault %d recovered before liquidation", health.vault_id)
                continue
            except ProtocolError as e:
                logger.error("Liquidation of vault %d failed: %s", health.vault_id, e)
                continue
            logger.warning(
                "Liquidated vault %d: paid %s, owner received %s at %s UTC",
                result.vault_id,
                self._format_amount(result.quote.return_amount),
                self._format_amount(result.quote.owner_share),
                self._now_str(),
            )
            results.append(result)
        return results

    async def run_once(self) -> list[LiquidationResult]:
        """Refresh prices from the feed (if any), then check and liquidate."""
        if self._prices is not None and self._feed is not None:
            await self._prices.refresh(self._feed)
        return self.liquidate_unhealthy()

    async def run_continuous(self, check_interval_minutes: int | None = None) -> None:
        """Run the keeper loop until cancelled."""
        interval = check_interval_minutes or self._config.check_interval_minutes
        logger.info("Starting keeper (checking every %d minutes)", interval)

        while True:
            try:
                await self.run_once()
                await asyncio.sleep(interval * 60)
            except Exception as e:
                logger.error("Error in keeper loop: %s", e)
                await asyncio.sleep(60)
