"""Governance protocol: parameters read at point of use, never cached."""
from typing import Protocol


class Governance(Protocol):
    @property
    def max_debt_per_vault(self) -> int: ...

    @property
    def min_single_collateral(self) -> int: ...

    @property
    def max_positions_per_vault(self) -> int: ...

    @property
    def liquidation_fee_d(self) -> int: ...

    @property
    def liquidation_premium_d(self) -> int: ...

    @property
    def max_price_ratio_deviation_d(self) -> int: ...

    @property
    def is_public(self) -> bool: ...

    def liquidation_threshold_d(self, pool: str) -> int: ...

    def token_capital_limit(self, token: str) -> int: ...

    def is_pool_whitelisted(self, pool: str) -> bool: ...

    def is_depositor_allowed(self, address: str) -> bool: ...

    def is_liquidator_allowed(self, address: str) -> bool: ...

    def is_admin(self, address: str) -> bool: ...
