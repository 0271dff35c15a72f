"""Configuration loader: reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .constants import (
    DEBT_TOKEN_DECIMALS,
    DEFAULT_LIQUIDATION_FEE_D,
    DEFAULT_LIQUIDATION_PREMIUM_D,
    DEFAULT_LIQUIDATION_THRESHOLD_D,
    DEFAULT_MAX_POSITIONS_PER_VAULT,
    DEFAULT_PRICE_VALID_PERIOD,
    DENOMINATOR,
)
from .errors import InvalidParameter

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProtocolParamsConfig:
    admins: tuple[str, ...] = ()
    treasury: str = ""
    stabilisation_fee_rate_d: int = 0
    max_debt_per_vault: int = 0
    min_single_collateral: int = 0
    max_positions_per_vault: int = DEFAULT_MAX_POSITIONS_PER_VAULT
    liquidation_fee_d: int = DEFAULT_LIQUIDATION_FEE_D
    liquidation_premium_d: int = DEFAULT_LIQUIDATION_PREMIUM_D
    max_price_ratio_deviation_d: int = 0
    is_public: bool = True
    depositors_allowlist: tuple[str, ...] = ()
    liquidators_public: bool = True
    liquidators_allowlist: tuple[str, ...] = ()


@dataclass(frozen=True)
class DebtTokenConfig:
    symbol: str = "BOB"
    decimals: int = DEBT_TOKEN_DECIMALS


@dataclass(frozen=True)
class TokenConfig:
    decimals: int = 18
    capital_limit: int = 0


@dataclass(frozen=True)
class PoolConfig:
    venue: str = "uniswap_v3"
    liquidation_threshold_d: int = DEFAULT_LIQUIDATION_THRESHOLD_D
    token0: str = ""
    token1: str = ""
    tick: int = 0


@dataclass(frozen=True)
class PythConfig:
    hermes_urls: tuple[str, ...] = (
        "https://hermes.pyth.network/v2/updates/price/latest",
    )
    timeout: int = 10
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    valid_period: int = DEFAULT_PRICE_VALID_PERIOD
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class KeeperConfig:
    check_interval_minutes: int = 5
    liquidator: str = ""
    health_warning: float = 1.2
    health_critical: float = 1.05


@dataclass(frozen=True)
class AppConfig:
    protocol: ProtocolParamsConfig = field(default_factory=ProtocolParamsConfig)
    debt_token: DebtTokenConfig = field(default_factory=DebtTokenConfig)
    tokens: dict[str, TokenConfig] = field(default_factory=dict)
    pools: dict[str, PoolConfig] = field(default_factory=dict)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    keeper: KeeperConfig = field(default_factory=KeeperConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


def fraction_to_d(value: Any, name: str = "fraction") -> int:
    """Convert a decimal fraction such as ``0.05`` to ``DENOMINATOR`` units.

    Raises:
        InvalidParameter: if the value is not a number in [0, 1].
    """
    try:
        fraction = Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidParameter(f"{name} is not a number: {value!r}") from e
    if fraction < 0 or fraction > 1:
        raise InvalidParameter(f"{name} must be within [0, 1], got {value}")
    return int(fraction * DENOMINATOR)


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_protocol(raw: dict[str, Any]) -> ProtocolParamsConfig:
    return ProtocolParamsConfig(
        admins=tuple(raw.get("admins", [])),
        treasury=raw.get("treasury", ""),
        stabilisation_fee_rate_d=fraction_to_d(
            raw.get("stabilisation_fee_rate", 0), "stabilisation_fee_rate"
        ),
        max_debt_per_vault=int(raw.get("max_debt_per_vault", 0)),
        min_single_collateral=int(raw.get("min_single_collateral", 0)),
        max_positions_per_vault=int(
            raw.get("max_positions_per_vault", DEFAULT_MAX_POSITIONS_PER_VAULT)
        ),
        liquidation_fee_d=fraction_to_d(
            raw.get("liquidation_fee", Decimal(DEFAULT_LIQUIDATION_FEE_D) / DENOMINATOR),
            "liquidation_fee",
        ),
        liquidation_premium_d=fraction_to_d(
            raw.get(
                "liquidation_premium",
                Decimal(DEFAULT_LIQUIDATION_PREMIUM_D) / DENOMINATOR,
            ),
            "liquidation_premium",
        ),
        max_price_ratio_deviation_d=fraction_to_d(
            raw.get("max_price_ratio_deviation", 0), "max_price_ratio_deviation"
        ),
        is_public=bool(raw.get("is_public", True)),
        depositors_allowlist=tuple(raw.get("depositors_allowlist", [])),
        liquidators_public=bool(raw.get("liquidators_public", True)),
        liquidators_allowlist=tuple(raw.get("liquidators_allowlist", [])),
    )


def _build_debt_token(raw: dict[str, Any]) -> DebtTokenConfig:
    return DebtTokenConfig(
        symbol=raw.get("symbol", "BOB"),
        decimals=int(raw.get("decimals", DEBT_TOKEN_DECIMALS)),
    )


def _build_tokens(raw: dict[str, Any]) -> dict[str, TokenConfig]:
    tokens: dict[str, TokenConfig] = {}
    for symbol, cfg in raw.items():
        tokens[symbol] = TokenConfig(
            decimals=int(cfg.get("decimals", 18)),
            capital_limit=int(cfg.get("capital_limit", 0)),
        )
    return tokens


def _build_pools(raw: dict[str, Any]) -> dict[str, PoolConfig]:
    pools: dict[str, PoolConfig] = {}
    for address, cfg in raw.items():
        pools[address] = PoolConfig(
            venue=cfg.get("venue", "uniswap_v3"),
            liquidation_threshold_d=fraction_to_d(
                cfg.get(
                    "liquidation_threshold",
                    Decimal(DEFAULT_LIQUIDATION_THRESHOLD_D) / DENOMINATOR,
                ),
                f"pools.{address}.liquidation_threshold",
            ),
            token0=cfg.get("token0", ""),
            token1=cfg.get("token1", ""),
            tick=int(cfg.get("tick", 0)),
        )
    return pools


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        valid_period=int(raw.get("valid_period", DEFAULT_PRICE_VALID_PERIOD)),
        pyth=PythConfig(
            hermes_urls=tuple(pyth_raw.get("hermes_urls", PythConfig.hermes_urls)),
            timeout=int(pyth_raw.get("timeout", 10)),
            feeds=dict(pyth_raw.get("feeds", {})),
        ),
    )


def _build_keeper(raw: dict[str, Any]) -> KeeperConfig:
    return KeeperConfig(
        check_interval_minutes=int(raw.get("check_interval_minutes", 5)),
        liquidator=raw.get("liquidator", ""),
        health_warning=float(raw.get("health_warning", 1.2)),
        health_critical=float(raw.get("health_critical", 1.05)),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_config(raw: dict[str, Any]) -> AppConfig:
    """Build and validate an :class:`AppConfig` from an already-parsed mapping."""
    raw = _interpolate_env(raw or {})

    cfg = AppConfig(
        protocol=_build_protocol(raw.get("protocol", {})),
        debt_token=_build_debt_token(raw.get("debt_token", {})),
        tokens=_build_tokens(raw.get("tokens", {})),
        pools=_build_pools(raw.get("pools", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        keeper=_build_keeper(raw.get("keeper", {})),
    )

    _validate(cfg)
    return cfg


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    cfg = build_config(raw)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.protocol.treasury:
        raise ValueError("protocol.treasury must be configured")

    if not cfg.pools:
        raise ValueError("At least one pool must be configured")

    if cfg.protocol.max_positions_per_vault <= 0:
        raise InvalidParameter("max_positions_per_vault must be positive")

    if cfg.protocol.max_debt_per_vault < 0 or cfg.protocol.min_single_collateral < 0:
        raise InvalidParameter("Debt ceiling and minimum collateral must be >= 0")

    if cfg.price_oracle.valid_period <= 0:
        raise InvalidParameter("price_oracle.valid_period must be positive")

    for symbol, token in cfg.tokens.items():
        if token.capital_limit < 0:
            raise InvalidParameter(f"Token '{symbol}' has a negative capital limit")

    for address, pool in cfg.pools.items():
        for token in (pool.token0, pool.token1):
            if token and token not in cfg.tokens:
                raise ValueError(f"Pool '{address}' references unknown token '{token}'")

    for symbol in cfg.price_oracle.pyth.feeds:
        if symbol not in cfg.tokens:
            raise ValueError(f"Price feed references unknown token '{symbol}'")

    if cfg.keeper.health_critical > cfg.keeper.health_warning:
        raise ValueError("keeper.health_critical must not exceed keeper.health_warning")
