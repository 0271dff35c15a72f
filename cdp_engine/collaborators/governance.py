"""In-memory governance parameter store.

Parameters are validated on write and read by the engine at point of use.
Staged or time-delayed parameter changes are out of scope.
"""
from __future__ import annotations

import logging

from ..config import AppConfig, ProtocolParamsConfig
from ..constants import DENOMINATOR
from ..errors import InvalidParameter

logger = logging.getLogger(__name__)


def _check_fraction(name: str, value_d: int) -> None:
    if value_d < 0 or value_d > DENOMINATOR:
        raise InvalidParameter(f"{name} must be within [0, {DENOMINATOR}], got {value_d}")


class ProtocolGovernance:
    """Risk parameters, whitelists and roles of one vault system."""

    def __init__(self, params: ProtocolParamsConfig | None = None) -> None:
        params = params or ProtocolParamsConfig()
        self._admins: set[str] = set(params.admins)
        self.set_max_debt_per_vault(params.max_debt_per_vault)
        self.set_min_single_collateral(params.min_single_collateral)
        self.set_max_positions_per_vault(params.max_positions_per_vault)
        self.set_liquidation_fee(params.liquidation_fee_d)
        self.set_liquidation_premium(params.liquidation_premium_d)
        self.set_max_price_ratio_deviation(params.max_price_ratio_deviation_d)
        self._is_public = params.is_public
        self._depositors: set[str] = set(params.depositors_allowlist)
        self._liquidators_public = params.liquidators_public
        self._liquidators: set[str] = set(params.liquidators_allowlist)
        self._thresholds: dict[str, int] = {}
        self._capital_limits: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: AppConfig) -> "ProtocolGovernance":
        gov = cls(config.protocol)
        for pool, pool_cfg in config.pools.items():
            gov.set_liquidation_threshold(pool, pool_cfg.liquidation_threshold_d)
        for token, token_cfg in config.tokens.items():
            gov.set_token_limit(token, token_cfg.capital_limit)
        return gov

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def max_debt_per_vault(self) -> int:
        return self._max_debt_per_vault

    @property
    def min_single_collateral(self) -> int:
        return self._min_single_collateral

    @property
    def max_positions_per_vault(self) -> int:
        return self._max_positions_per_vault

    @property
    def liquidation_fee_d(self) -> int:
        return self._liquidation_fee_d

    @property
    def liquidation_premium_d(self) -> int:
        return self._liquidation_premium_d

    @property
    def max_price_ratio_deviation_d(self) -> int:
        return self._max_price_ratio_deviation_d

    @property
    def is_public(self) -> bool:
        return self._is_public

    def liquidation_threshold_d(self, pool: str) -> int:
        return self._thresholds.get(pool, 0)

    def token_capital_limit(self, token: str) -> int:
        # 0 means the token has no exposure allowance at all
        return self._capital_limits.get(token, 0)

    def is_pool_whitelisted(self, pool: str) -> bool:
        return self._thresholds.get(pool, 0) > 0

    def is_depositor_allowed(self, address: str) -> bool:
        return self._is_public or address in self._depositors

    def is_liquidator_allowed(self, address: str) -> bool:
        return self._liquidators_public or address in self._liquidators

    def is_admin(self, address: str) -> bool:
        return address in self._admins

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_admin(self, address: str) -> None:
        self._admins.add(address)

    def set_max_debt_per_vault(self, amount: int) -> None:
        if amount < 0:
            raise InvalidParameter("max_debt_per_vault must be >= 0")
        self._max_debt_per_vault = amount

    def set_min_single_collateral(self, amount: int) -> None:
        if amount < 0:
            raise InvalidParameter("min_single_collateral must be >= 0")
        self._min_single_collateral = amount

    def set_max_positions_per_vault(self, count: int) -> None:
        if count <= 0:
            raise InvalidParameter("max_positions_per_vault must be positive")
        self._max_positions_per_vault = count

    def set_liquidation_fee(self, fee_d: int) -> None:
        _check_fraction("liquidation_fee", fee_d)
        self._liquidation_fee_d = fee_d

    def set_liquidation_premium(self, premium_d: int) -> None:
        _check_fraction("liquidation_premium", premium_d)
        self._liquidation_premium_d = premium_d

    def set_max_price_ratio_deviation(self, deviation_d: int) -> None:
        _check_fraction("max_price_ratio_deviation", deviation_d)
        self._max_price_ratio_deviation_d = deviation_d

    def set_liquidation_threshold(self, pool: str, threshold_d: int) -> None:
        """Whitelist ``pool`` with a threshold; zero removes it."""
        _check_fraction("liquidation_threshold", threshold_d)
        if threshold_d == 0:
            self._thresholds.pop(pool, None)
            logger.info("Pool %s removed from whitelist", pool)
            return
        self._thresholds[pool] = threshold_d

    def set_token_limit(self, token: str, limit: int) -> None:
        if limit < 0:
            raise InvalidParameter("Token capital limit must be >= 0")
        self._capital_limits[token] = limit

    def set_public(self, is_public: bool) -> None:
        self._is_public = is_public

    def add_depositors(self, addresses: list[str]) -> None:
        self._depositors.update(addresses)

    def remove_depositors(self, addresses: list[str]) -> None:
        self._depositors.difference_update(addresses)

    def set_liquidators_public(self, is_public: bool) -> None:
        self._liquidators_public = is_public

    def add_liquidators(self, addresses: list[str]) -> None:
        self._liquidators.update(addresses)

    def remove_liquidators(self, addresses: list[str]) -> None:
        self._liquidators.difference_update(addresses)
