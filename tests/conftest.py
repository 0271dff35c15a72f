"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from cdp_engine.clock import ManualClock
from cdp_engine.collaborators import DebtToken, ProtocolGovernance, VaultRegistry
from cdp_engine.config import (
    AppConfig,
    KeeperConfig,
    PoolConfig,
    PriceOracleConfig,
    ProtocolParamsConfig,
    PythConfig,
    TokenConfig,
    build_config,
)
from cdp_engine.constants import DENOMINATOR
from cdp_engine.errors import InvalidPosition
from cdp_engine.liquidity_math import apply_fraction, get_sqrt_ratio_at_tick
from cdp_engine.models import PositionInfo, PositionRef
from cdp_engine.services import FeeAccrualLedger, VaultLedger
from cdp_engine.simulation import build_system

START = 1_700_000_000
E18 = 10**18


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_protocol_params() -> ProtocolParamsConfig:
    return ProtocolParamsConfig(
        admins=("admin",),
        treasury="treasury",
        max_debt_per_vault=10**30,
        min_single_collateral=100,
        max_positions_per_vault=3,
        liquidation_fee_d=30_000_000,
        liquidation_premium_d=100_000_000,
    )


@pytest.fixture()
def sample_config() -> AppConfig:
    return AppConfig(
        protocol=ProtocolParamsConfig(
            admins=("admin",),
            treasury="treasury",
            max_debt_per_vault=10**6 * E18,
            min_single_collateral=E18,
            liquidation_fee_d=30_000_000,
            liquidation_premium_d=30_000_000,
        ),
        tokens={
            "TKA": TokenConfig(decimals=18, capital_limit=10**6 * E18),
            "TKB": TokenConfig(decimals=18, capital_limit=10**6 * E18),
        },
        pools={
            "pool-ab": PoolConfig(
                venue="uniswap_v3",
                liquidation_threshold_d=800_000_000,
                token0="TKA",
                token1="TKB",
                tick=0,
            ),
            "pool-alg": PoolConfig(
                venue="algebra",
                liquidation_threshold_d=700_000_000,
                token0="TKA",
                token1="TKB",
                tick=0,
            ),
        },
        price_oracle=PriceOracleConfig(valid_period=3600, pyth=PythConfig(feeds={})),
        keeper=KeeperConfig(liquidator="keeper", health_warning=1.2, health_critical=1.05),
    )


@pytest.fixture()
def sample_yaml_config(tmp_path: Path) -> Path:
    content = textwrap.dedent("""\
        protocol:
          admins: [admin]
          treasury: ${TEST_TREASURY}
          stabilisation_fee_rate: 0.05
          max_debt_per_vault: 1000000000000000000000000
          min_single_collateral: 1000000000000000000
          max_positions_per_vault: 10
          liquidation_fee: 0.03
          liquidation_premium: 0.05
        debt_token:
          symbol: BOB
          decimals: 18
        tokens:
          TKA:
            decimals: 18
            capital_limit: 1000000000000000000000000
          TKB:
            decimals: 18
            capital_limit: 1000000000000000000000000
        pools:
          pool-ab:
            venue: uniswap_v3
            liquidation_threshold: 0.8
            token0: TKA
            token1: TKB
        price_oracle:
          valid_period: 600
          pyth:
            hermes_urls:
              - https://hermes.example.com/v2/updates/price/latest
            timeout: 5
            feeds:
              TKA: "0xaaa111"
        keeper:
          check_interval_minutes: 2
          liquidator: keeper
    """)
    p = tmp_path / "config.yaml"
    p.write_text(content)
    return p


# ---------------------------------------------------------------------------
# Stub venue and valuation for exact ledger arithmetic
# ---------------------------------------------------------------------------


def make_position_info(pool: str = "pool-a", liquidity: int = 10**18) -> PositionInfo:
    return PositionInfo(
        token0="TKA",
        token1="TKB",
        pool=pool,
        tick_lower=-600,
        tick_upper=600,
        sqrt_price_lower_x96=get_sqrt_ratio_at_tick(-600),
        sqrt_price_upper_x96=get_sqrt_ratio_at_tick(600),
        liquidity=liquidity,
    )


class FakeAdapter:
    """Venue adapter over a dict of positions with fixed ownership."""

    venue_name = "fake"

    def __init__(self) -> None:
        self.owners: dict[int, str] = {}
        self.positions: dict[int, PositionInfo] = {}
        self.on_transfer = None

    def add(self, token_id: int, owner: str, info: PositionInfo | None = None) -> PositionRef:
        self.owners[token_id] = owner
        self.positions[token_id] = info or make_position_info()
        return PositionRef("fake", token_id)

    def get_position_details(self, token_id: int) -> PositionInfo:
        try:
            return self.positions[token_id]
        except KeyError:
            raise InvalidPosition(f"Unknown position {token_id}") from None

    def owner_of(self, token_id: int) -> str:
        return self.owners[token_id]

    def transfer_position(self, sender: str, recipient: str, token_id: int) -> None:
        if self.on_transfer is not None:
            self.on_transfer(sender, recipient, token_id)
        if self.owners[token_id] != sender:
            raise InvalidPosition(f"{sender} does not own position {token_id}")
        self.owners[token_id] = recipient


class FakeValuation:
    """Valuation oracle returning configured values per position."""

    def __init__(self, adapter: FakeAdapter) -> None:
        self._adapter = adapter
        self.values: dict[PositionRef, int] = {}
        self.unavailable: set[PositionRef] = set()

    def adapter(self, venue: str) -> FakeAdapter:
        if venue != "fake":
            raise InvalidPosition(f"Unsupported venue '{venue}'")
        return self._adapter

    def value_position(
        self, ref: PositionRef, risk_factor_d: int = DENOMINATOR, position=None
    ) -> tuple[bool, int]:
        if ref in self.unavailable:
            return False, 0
        return True, apply_fraction(self.values[ref], risk_factor_d)


class LedgerEnv:
    """A ledger wired to stub collaborators plus handles on all of them."""

    def __init__(self, params: ProtocolParamsConfig) -> None:
        self.clock = ManualClock(START)
        self.governance = ProtocolGovernance(params)
        self.governance.set_liquidation_threshold("pool-a", 800_000_000)
        self.governance.set_token_limit("TKA", 10**30)
        self.governance.set_token_limit("TKB", 10**30)
        self.token = DebtToken()
        self.registry = VaultRegistry()
        self.adapter = FakeAdapter()
        self.valuation = FakeValuation(self.adapter)
        self.fees = FeeAccrualLedger(0, clock=self.clock)
        self.ledger = VaultLedger(
            self.governance,
            self.valuation,
            self.token,
            self.registry,
            treasury="treasury",
            fees=self.fees,
            clock=self.clock,
        )
        self._next_token_id = 1

    def new_position(self, owner: str, value: int, info: PositionInfo | None = None) -> PositionRef:
        ref = self.adapter.add(self._next_token_id, owner, info)
        self._next_token_id += 1
        self.valuation.values[ref] = value
        return ref

    def funded_vault(self, owner: str = "alice", value: int = 1000) -> tuple[int, PositionRef]:
        vault_id = self.ledger.open_vault(owner)
        ref = self.new_position(owner, value)
        self.ledger.deposit_collateral(owner, vault_id, ref)
        return vault_id, ref


@pytest.fixture()
def env(sample_protocol_params: ProtocolParamsConfig) -> LedgerEnv:
    return LedgerEnv(sample_protocol_params)


# ---------------------------------------------------------------------------
# Full in-memory stack
# ---------------------------------------------------------------------------


@pytest.fixture()
def system(sample_config: AppConfig):
    system = build_system(sample_config, start_time=START)
    system.prices.set_price("TKA", 1)
    system.prices.set_price("TKB", 1)
    return system


@pytest.fixture()
def yaml_config_dict() -> dict:
    return {
        "protocol": {"treasury": "treasury", "admins": ["admin"]},
        "tokens": {"TKA": {"decimals": 18}, "TKB": {"decimals": 6}},
        "pools": {"pool-ab": {"token0": "TKA", "token1": "TKB"}},
    }


@pytest.fixture()
def built_config(yaml_config_dict: dict) -> AppConfig:
    return build_config(yaml_config_dict)
