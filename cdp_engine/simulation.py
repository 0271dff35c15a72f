"""Scenario replay: wire an in-memory system from config and drive it from YAML.

A scenario file is either a list of steps or a mapping with ``start_time``
and ``steps``. Each step is a one-key mapping ``{action: {params}}``::

    start_time: 1700000000
    steps:
      - create_position: {owner: alice, pool: weth-usdc, tick_lower: -600,
                          tick_upper: 600, liquidity: 1000000, label: lp1}
      - open: {caller: alice}
      - deposit: {caller: alice, vault: 1, position: lp1}
      - mint: {caller: alice, vault: 1, amount: 800e18}

Protocol errors do not stop the replay; they are recorded against the step.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable

import yaml

from .clock import ManualClock
from .collaborators import DebtToken, ProtocolGovernance, VaultRegistry
from .config import AppConfig, fraction_to_d
from .errors import ProtocolError
from .interfaces.protocol_adapter import PositionAdapter
from .models import PositionRef
from .oracles import PriceSourceAdapter, PythOracle
from .protocols import build_adapter
from .services import FeeAccrualLedger, Keeper, PositionValuationOracle, VaultLedger
from .venues import InMemoryVenue

logger = logging.getLogger(__name__)


@dataclass
class System:
    """Every collaborator of one running vault system."""

    config: AppConfig
    clock: ManualClock
    governance: ProtocolGovernance
    debt_token: DebtToken
    registry: VaultRegistry
    venues: dict[str, InMemoryVenue]
    adapters: dict[str, PositionAdapter]
    prices: PriceSourceAdapter
    valuation: PositionValuationOracle
    fees: FeeAccrualLedger
    ledger: VaultLedger
    feed: PythOracle | None = None
    labels: dict[str, PositionRef] = field(default_factory=dict)

    def keeper(self, liquidator: str | None = None) -> Keeper:
        keeper_config = self.config.keeper
        if liquidator:
            keeper_config = replace(keeper_config, liquidator=liquidator)
        return Keeper(
            self.ledger,
            keeper_config,
            prices=self.prices,
            feed=self.feed,
            decimals=self.config.debt_token.decimals,
        )


@dataclass(frozen=True)
class Scenario:
    steps: tuple[tuple[str, dict[str, Any]], ...]
    start_time: int = 0


@dataclass(frozen=True)
class StepResult:
    index: int
    action: str
    ok: bool
    error: str = ""
    detail: str = ""
    value: Any = None

    @property
    def outcome(self) -> str:
        return "ok" if self.ok else self.error


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_system(config: AppConfig, start_time: int = 0) -> System:
    """Build an in-memory system whose venues and pools follow ``config``."""
    clock = ManualClock(start_time)
    governance = ProtocolGovernance.from_config(config)
    debt_token = DebtToken(config.debt_token.symbol, config.debt_token.decimals)
    registry = VaultRegistry()

    venues: dict[str, InMemoryVenue] = {}
    for address, pool_cfg in config.pools.items():
        venue = venues.get(pool_cfg.venue)
        if venue is None:
            venue = venues[pool_cfg.venue] = InMemoryVenue(layout=pool_cfg.venue)
        if pool_cfg.token0 and pool_cfg.token1:
            venue.create_pool(address, pool_cfg.token0, pool_cfg.token1, tick=pool_cfg.tick)
    adapters = {name: build_adapter(name, venue) for name, venue in venues.items()}

    prices = PriceSourceAdapter(
        {symbol: token.decimals for symbol, token in config.tokens.items()},
        valid_period=config.price_oracle.valid_period,
        quote_decimals=config.debt_token.decimals,
        clock=clock,
    )
    feed = None
    if config.price_oracle.provider == "pyth" and config.price_oracle.pyth.feeds:
        feed = PythOracle(config.price_oracle.pyth)
        prices.add_source(feed.name, primary=True)

    valuation = PositionValuationOracle(adapters, prices, governance)
    fees = FeeAccrualLedger(config.protocol.stabilisation_fee_rate_d, clock=clock)
    ledger = VaultLedger(
        governance,
        valuation,
        debt_token,
        registry,
        treasury=config.protocol.treasury,
        fees=fees,
        clock=clock,
    )
    logger.info(
        "System built: %d venues, %d pools, %d tokens",
        len(venues), len(config.pools), len(config.tokens),
    )
    return System(
        config=config,
        clock=clock,
        governance=governance,
        debt_token=debt_token,
        registry=registry,
        venues=venues,
        adapters=adapters,
        prices=prices,
        valuation=valuation,
        fees=fees,
        ledger=ledger,
        feed=feed,
    )


# ---------------------------------------------------------------------------
# Scenario parsing
# ---------------------------------------------------------------------------


def load_scenario(path: str | Path) -> Scenario:
    """Parse a scenario file; raises ValueError on malformed steps."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Scenario file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or []
    return parse_scenario(raw)


def parse_scenario(raw: Any) -> Scenario:
    start_time = 0
    if isinstance(raw, dict):
        start_time = int(raw.get("start_time", 0))
        raw = raw.get("steps", [])
    if not isinstance(raw, list):
        raise ValueError("Scenario must be a list of steps")

    steps: list[tuple[str, dict[str, Any]]] = []
    for index, step in enumerate(raw):
        if not isinstance(step, dict) or len(step) != 1:
            raise ValueError(f"Step {index} must be a single-key mapping")
        ((action, params),) = step.items()
        if action not in _ACTIONS:
            raise ValueError(f"Step {index}: unknown action '{action}'")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise ValueError(f"Step {index}: parameters of '{action}' must be a mapping")
        steps.append((action, params))
    return Scenario(steps=tuple(steps), start_time=start_time)


def _amount(value: Any) -> int:
    """Integer amount; accepts scientific notation such as ``800e18``."""
    if isinstance(value, int):
        return value
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Not an amount: {value!r}") from e
    if amount != amount.to_integral_value():
        raise ValueError(f"Amount must be a whole number of base units: {value!r}")
    return int(amount)


def _position(system: System, params: dict[str, Any]) -> PositionRef:
    position = params["position"]
    if isinstance(position, str):
        try:
            return system.labels[position]
        except KeyError:
            raise ValueError(f"Unknown position label '{position}'") from None
    venue = params.get("venue") or next(iter(system.venues))
    return PositionRef(venue, int(position))


def _pool_venue(system: System, pool: str) -> InMemoryVenue:
    pool_cfg = system.config.pools.get(pool)
    if pool_cfg is None:
        raise ValueError(f"Unknown pool '{pool}'")
    return system.venues[pool_cfg.venue]


# ---------------------------------------------------------------------------
# Step handlers
# ---------------------------------------------------------------------------


def _open(system: System, p: dict[str, Any]) -> Any:
    return system.ledger.open_vault(p["caller"])


def _deposit(system: System, p: dict[str, Any]) -> Any:
    system.ledger.deposit_collateral(p["caller"], int(p["vault"]), _position(system, p))


def _withdraw(system: System, p: dict[str, Any]) -> Any:
    system.ledger.withdraw_collateral(p["caller"], _position(system, p), p.get("recipient"))


def _mint(system: System, p: dict[str, Any]) -> Any:
    system.ledger.mint_debt(p["caller"], int(p["vault"]), _amount(p["amount"]))


def _burn(system: System, p: dict[str, Any]) -> Any:
    return system.ledger.burn_debt(p["caller"], int(p["vault"]), _amount(p["amount"]))


def _close(system: System, p: dict[str, Any]) -> Any:
    system.ledger.close_vault(p["caller"], int(p["vault"]), p.get("recipient"))


def _liquidate(system: System, p: dict[str, Any]) -> Any:
    result = system.ledger.liquidate(p["caller"], int(p["vault"]))
    return result.quote.return_amount


def _advance(system: System, p: dict[str, Any]) -> Any:
    seconds = int(p.get("seconds", 0)) + int(p.get("days", 0)) * 86400
    return system.clock.advance(seconds)


def _set_price(system: System, p: dict[str, Any]) -> Any:
    system.prices.set_price(
        p["token"],
        _amount(p["price"]),
        expo=int(p.get("expo", 0)),
        source=p.get("source", "manual"),
    )


def _set_rate(system: System, p: dict[str, Any]) -> Any:
    system.ledger.update_stabilisation_fee_rate(
        p["caller"], fraction_to_d(p["rate"], "rate")
    )


def _approve(system: System, p: dict[str, Any]) -> Any:
    system.debt_token.approve(p["holder"], p.get("spender", system.ledger.address), _amount(p["amount"]))


def _create_position(system: System, p: dict[str, Any]) -> Any:
    pool = p["pool"]
    venue = _pool_venue(system, pool)
    token_id = venue.mint_position(
        p["owner"],
        pool,
        int(p["tick_lower"]),
        int(p["tick_upper"]),
        _amount(p["liquidity"]),
    )
    if "label" in p:
        system.labels[p["label"]] = PositionRef(system.config.pools[pool].venue, token_id)
    return token_id


def _set_spot(system: System, p: dict[str, Any]) -> Any:
    _pool_venue(system, p["pool"]).set_tick(p["pool"], int(p["tick"]))


def _accrue_fees(system: System, p: dict[str, Any]) -> Any:
    _pool_venue(system, p["pool"]).accrue_fees(
        p["pool"], _amount(p.get("growth0_x128", 0)), _amount(p.get("growth1_x128", 0))
    )


def _pause(system: System, p: dict[str, Any]) -> Any:
    system.ledger.pause(p["caller"])


def _unpause(system: System, p: dict[str, Any]) -> Any:
    system.ledger.unpause(p["caller"])


_ACTIONS: dict[str, Callable[[System, dict[str, Any]], Any]] = {
    "open": _open,
    "deposit": _deposit,
    "withdraw": _withdraw,
    "mint": _mint,
    "burn": _burn,
    "close": _close,
    "liquidate": _liquidate,
    "advance": _advance,
    "set_price": _set_price,
    "set_rate": _set_rate,
    "approve": _approve,
    "create_position": _create_position,
    "set_spot": _set_spot,
    "accrue_fees": _accrue_fees,
    "pause": _pause,
    "unpause": _unpause,
}


def run_scenario(system: System, scenario: Scenario) -> list[StepResult]:
    """Execute every step, recording ``ok`` or the protocol error kind."""
    results: list[StepResult] = []
    for index, (action, params) in enumerate(scenario.steps):
        handler = _ACTIONS[action]
        try:
            value = handler(system, params)
        except ProtocolError as e:
            logger.info("Step %d (%s) failed: %s", index, action, e)
            results.append(
                StepResult(index=index, action=action, ok=False, error=e.kind, detail=str(e))
            )
            continue
        except KeyError as e:
            raise ValueError(f"Step {index} ({action}) is missing parameter {e}") from e
        results.append(StepResult(index=index, action=action, ok=True, value=value))
    return results


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def format_steps(results: list[StepResult]) -> str:
    lines = []
    for r in results:
        line = f"{r.index:>3}  {r.action:<16} {r.outcome}"
        if r.value is not None:
            line += f"  -> {r.value}"
        if r.detail:
            line += f"  ({r.detail})"
        lines.append(line)
    return "\n".join(lines)


def format_health_table(system: System) -> str:
    keeper = system.keeper()
    header = "Vaults"
    vault_ids = system.ledger.vault_ids()
    if not vault_ids:
        return f"{header}\n  No open vaults."

    lines = [header]
    for vault_id in vault_ids:
        try:
            health = system.ledger.vault_health(vault_id)
        except ProtocolError as e:
            lines.append(f"  Vault {vault_id} · {e.kind}")
            continue
        lines.append(f"  {keeper.format_status(health)}")
    return "\n".join(lines)


def format_report(system: System, results: list[StepResult]) -> str:
    token = system.debt_token
    return (
        f"Steps\n{format_steps(results)}\n"
        f"\n"
        f"{format_health_table(system)}\n"
        f"\n"
        f"Total debt: {system.ledger.total_debt()} · "
        f"{token.symbol} supply: {token.total_supply} · "
        f"Treasury: {token.balance_of(system.ledger.treasury)}"
    )
