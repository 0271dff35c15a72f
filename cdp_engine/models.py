"""Data models: value objects are frozen, ledger records are mutable."""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class PositionRef:
    """Opaque collateral identifier: a token id inside one venue."""

    venue: str
    token_id: int

    def __str__(self) -> str:
        return f"{self.venue}#{self.token_id}"


@dataclass(frozen=True)
class PositionInfo:
    """Concentrated-liquidity position as reported by its venue.

    The fee growth snapshot is reference data taken when the position last
    touched the venue; valuations read it but never advance it.
    """

    token0: str
    token1: str
    pool: str
    tick_lower: int
    tick_upper: int
    sqrt_price_lower_x96: int
    sqrt_price_upper_x96: int
    liquidity: int
    fee_growth_inside0_last_x128: int = 0
    fee_growth_inside1_last_x128: int = 0
    tokens_owed0: int = 0
    tokens_owed1: int = 0


@dataclass
class Vault:
    """Ledger record of one CDP."""

    vault_id: int
    owner: str
    positions: set[PositionRef] = field(default_factory=set)
    debt: int = 0
    owed_fee: int = 0
    fee_index_snapshot: int = 0


@dataclass
class FeeState:
    """Global stability fee state; the index only moves on rate changes."""

    rate_d: int = 0
    last_update: int = 0
    stored_index: int = 0


@dataclass(frozen=True)
class AssetAmount:
    """One leg of a valued position."""

    token: str
    principal: int
    uncollected: int
    price_x96: int
    value: int


@dataclass(frozen=True)
class Valuation:
    """Full breakdown of a position's quote value."""

    position: PositionRef
    pool: str
    sqrt_price_x96: int
    assets: tuple[AssetAmount, ...] = ()

    @property
    def total(self) -> int:
        return sum(a.value for a in self.assets)


@dataclass(frozen=True)
class VaultHealth:
    """Snapshot of a vault's solvency at a point in time."""

    vault_id: int
    owner: str
    raw_collateral: int
    adjusted_collateral: int
    debt: int
    owed_fee: int
    position_count: int = 0

    @property
    def overall_debt(self) -> int:
        return self.debt + self.owed_fee

    @property
    def health_factor(self) -> float:
        if self.overall_debt == 0:
            return float("inf")
        return self.adjusted_collateral / self.overall_debt

    @property
    def is_liquidatable(self) -> bool:
        return self.adjusted_collateral < self.overall_debt


@dataclass(frozen=True)
class LiquidationQuote:
    """Distribution of a liquidation payment; no value created or lost."""

    collateral_value: int
    debt: int
    owed_fee: int
    return_amount: int
    treasury_share: int
    owner_share: int

    @property
    def principal_burned(self) -> int:
        return self.debt


@dataclass(frozen=True)
class LiquidationResult:
    vault_id: int
    liquidator: str
    owner: str
    quote: LiquidationQuote
    positions: tuple[PositionRef, ...] = ()
