"""Vault ledger: lifecycle of every CDP and its collateral.

Every mutating entry point runs inside :meth:`VaultLedger._transaction`:
re-entry is rejected, and the first change to each ledger entry is journaled
with its old value so a failed call restores exactly what it touched. Calls
that move tokens or positions are queued with :meth:`VaultLedger._defer` and
only run once internal mutation and every post-condition check of the whole
call have succeeded. Each queued call carries its inverse; if a later one
raises, the inverses of those already executed run in reverse order. Fees
are settled before any check that reads debt.
"""
from __future__ import annotations

import copy
import functools
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterator

from ..clock import system_clock
from ..constants import DENOMINATOR
from ..errors import (
    AccessDenied,
    CollateralTokenOverflow,
    CollateralUnderflow,
    DebtCeilingExceeded,
    InsufficientBalance,
    InvalidParameter,
    InvalidPool,
    InvalidPosition,
    InvalidVault,
    Paused,
    PositionHealthy,
    PositionsLimitExceeded,
    PositionUnhealthy,
    PriceUnavailable,
    Reentrancy,
    UnpaidDebt,
)
from ..interfaces.debt_token import DebtToken
from ..interfaces.governance import Governance
from ..interfaces.registry import VaultRegistry
from ..liquidity_math import apply_fraction, max_token_amounts
from ..models import LiquidationResult, PositionInfo, PositionRef, Vault, VaultHealth
from .fees import FeeAccrualLedger
from .liquidation import compute_liquidation, settle_liquidation, unsettle_liquidation
from .valuation import PositionValuationOracle

logger = logging.getLogger(__name__)

_ABSENT = object()


@dataclass
class LedgerState:
    """Everything the ledger owns; journaled entry by entry per transaction."""

    vaults: dict[int, Vault] = field(default_factory=dict)
    positions: dict[PositionRef, PositionInfo] = field(default_factory=dict)
    position_vault: dict[PositionRef, int] = field(default_factory=dict)
    exposure: dict[str, int] = field(default_factory=dict)
    contributions: dict[PositionRef, tuple[tuple[str, int], ...]] = field(
        default_factory=dict
    )
    treasury: str = ""
    paused: bool = False


def _transactional(method):
    """Run a public entry point inside a ledger transaction."""

    @functools.wraps(method)
    def wrapper(self: "VaultLedger", *args, **kwargs):
        with self._transaction(method.__name__):
            return method(self, *args, **kwargs)

    return wrapper


class VaultLedger:
    """Open, fund, borrow against, repay, close and liquidate vaults."""

    def __init__(
        self,
        governance: Governance,
        valuation: PositionValuationOracle,
        debt_token: DebtToken,
        registry: VaultRegistry,
        treasury: str,
        fees: FeeAccrualLedger | None = None,
        address: str = "vault",
        clock: Callable[[], int] = system_clock,
    ) -> None:
        if not treasury:
            raise InvalidParameter("Treasury address is required")
        self._governance = governance
        self._valuation = valuation
        self._token = debt_token
        self._registry = registry
        self._clock = clock
        self._fees = fees or FeeAccrualLedger(clock=clock)
        self.address = address
        self._state = LedgerState(treasury=treasury)
        self._locked = False
        self._journal: dict[tuple[str | None, Hashable], Any] = {}
        self._effects: list[tuple[Callable[[], None], Callable[[], None] | None]] = []
        self._compensations: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Transaction discipline
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, name: str) -> Iterator[None]:
        if self._locked:
            raise Reentrancy(f"Re-entrant call to {name}")
        self._locked = True
        fee_state = copy.copy(self._fees.state)
        self._journal, self._effects, self._compensations = {}, [], []
        try:
            yield
            for effect, undo in self._effects:
                effect()
                if undo is not None:
                    self._compensations.append(undo)
        except Exception as e:
            self._restore_journal()
            self._fees.state = fee_state
            for undo in reversed(self._compensations):
                undo()
            logger.info("%s reverted: %s", name, e)
            raise
        finally:
            self._journal, self._effects, self._compensations = {}, [], []
            self._locked = False

    def _remember(self, table: str, key: Hashable) -> None:
        """Journal ``table[key]`` before its first change in this transaction."""
        if (table, key) not in self._journal:
            entry = getattr(self._state, table).get(key, _ABSENT)
            if entry is not _ABSENT:
                entry = copy.deepcopy(entry)
            self._journal[(table, key)] = entry

    def _remember_field(self, name: str) -> None:
        if (None, name) not in self._journal:
            self._journal[(None, name)] = getattr(self._state, name)

    def _restore_journal(self) -> None:
        for (table, key), old in self._journal.items():
            if table is None:
                setattr(self._state, key, old)
                continue
            entries = getattr(self._state, table)
            if old is _ABSENT:
                entries.pop(key, None)
            else:
                entries[key] = old

    def _defer(
        self,
        effect: Callable[..., None],
        *args,
        undo: Callable[[], None] | None = None,
    ) -> None:
        """Queue an external call until the transaction body has succeeded.

        ``undo`` reverses the call once it has run; a call without one must
        be queued last.
        """
        self._effects.append((functools.partial(effect, *args), undo))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def fees(self) -> FeeAccrualLedger:
        return self._fees

    @property
    def treasury(self) -> str:
        return self._state.treasury

    @property
    def paused(self) -> bool:
        return self._state.paused

    def _vault(self, vault_id: int) -> Vault:
        try:
            return self._state.vaults[vault_id]
        except KeyError:
            raise InvalidVault(f"Vault {vault_id} does not exist") from None

    def _vault_for_update(self, vault_id: int) -> Vault:
        vault = self._vault(vault_id)
        self._remember("vaults", vault_id)
        return vault

    def _require_authorized(self, vault_id: int, caller: str) -> Vault:
        vault = self._vault_for_update(vault_id)
        if not self._registry.is_authorized(vault_id, caller):
            raise AccessDenied(f"{caller} is not authorized for vault {vault_id}")
        return vault

    def _require_admin(self, caller: str) -> None:
        if not self._governance.is_admin(caller):
            raise AccessDenied(f"{caller} is not an admin")

    def _require_not_paused(self) -> None:
        if self._state.paused:
            raise Paused("Vault operations are paused")

    def _collateral(self, vault: Vault) -> tuple[int, int]:
        """Return ``(adjusted, raw)`` collateral value; raises PriceUnavailable."""
        adjusted = raw = 0
        for ref in vault.positions:
            position = self._state.positions[ref]
            ok, value = self._valuation.value_position(ref, DENOMINATOR, position)
            if not ok:
                raise PriceUnavailable(f"Cannot value {ref} in vault {vault.vault_id}")
            raw += value
            adjusted += apply_fraction(
                value, self._governance.liquidation_threshold_d(position.pool)
            )
        return adjusted, raw

    def _require_healthy(self, vault: Vault) -> None:
        overall = vault.debt + vault.owed_fee
        if overall == 0:
            return
        adjusted, _ = self._collateral(vault)
        if adjusted < overall:
            raise PositionUnhealthy(
                f"Vault {vault.vault_id}: collateral {adjusted} < debt {overall}"
            )

    def _add_position(self, vault: Vault, ref: PositionRef, position: PositionInfo) -> None:
        amount0, amount1 = max_token_amounts(
            position.sqrt_price_lower_x96, position.sqrt_price_upper_x96, position.liquidity
        )
        contributions = ((position.token0, amount0), (position.token1, amount1))

        for token, amount in contributions:
            exposure = self._state.exposure.get(token, 0) + amount
            limit = self._governance.token_capital_limit(token)
            if exposure > limit:
                raise CollateralTokenOverflow(token, exposure, limit)

        self._remember_position(ref, contributions)
        for token, amount in contributions:
            self._state.exposure[token] = self._state.exposure.get(token, 0) + amount
        self._state.contributions[ref] = contributions
        self._state.positions[ref] = position
        self._state.position_vault[ref] = vault.vault_id
        vault.positions.add(ref)

    def _remember_position(
        self, ref: PositionRef, contributions: tuple[tuple[str, int], ...]
    ) -> None:
        for table in ("positions", "position_vault", "contributions"):
            self._remember(table, ref)
        for token, _ in contributions:
            self._remember("exposure", token)

    def _remove_position(self, vault: Vault, ref: PositionRef) -> None:
        self._remember_position(ref, self._state.contributions[ref])
        for token, amount in self._state.contributions.pop(ref):
            remaining = self._state.exposure[token] - amount
            if remaining:
                self._state.exposure[token] = remaining
            else:
                del self._state.exposure[token]
        del self._state.positions[ref]
        del self._state.position_vault[ref]
        vault.positions.discard(ref)

    def _transfer_out(self, refs: list[PositionRef], recipient: str) -> None:
        for ref in refs:
            adapter = self._valuation.adapter(ref.venue)
            self._defer(
                adapter.transfer_position, self.address, recipient, ref.token_id,
                undo=functools.partial(
                    adapter.transfer_position, recipient, self.address, ref.token_id
                ),
            )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def _open(self, caller: str) -> int:
        self._require_not_paused()
        if not self._governance.is_depositor_allowed(caller):
            raise AccessDenied(f"{caller} is not allowed to open vaults")

        vault_id = self._registry.mint(caller)
        self._compensations.append(functools.partial(self._registry.burn, vault_id))
        self._remember("vaults", vault_id)
        self._state.vaults[vault_id] = Vault(
            vault_id=vault_id,
            owner=caller,
            fee_index_snapshot=self._fees.global_index(self._clock()),
        )
        logger.info("Vault %d opened by %s", vault_id, caller)
        return vault_id

    def _deposit(self, caller: str, vault_id: int, ref: PositionRef) -> None:
        self._require_not_paused()
        vault = self._require_authorized(vault_id, caller)
        if not self._governance.is_depositor_allowed(caller):
            raise AccessDenied(f"{caller} is not allowed to deposit")
        if ref in self._state.position_vault:
            raise InvalidPosition(f"{ref} is already deposited")

        adapter = self._valuation.adapter(ref.venue)
        if adapter.owner_of(ref.token_id) != caller:
            raise AccessDenied(f"{caller} does not own {ref}")

        position = adapter.get_position_details(ref.token_id)
        if not self._governance.is_pool_whitelisted(position.pool):
            raise InvalidPool(f"Pool {position.pool} is not whitelisted")
        if len(vault.positions) >= self._governance.max_positions_per_vault:
            raise PositionsLimitExceeded(
                f"Vault {vault_id} already holds {len(vault.positions)} positions"
            )

        ok, value = self._valuation.value_position(ref, DENOMINATOR, position)
        if not ok:
            raise PriceUnavailable(f"Cannot value {ref}")
        if value < self._governance.min_single_collateral:
            raise CollateralUnderflow(
                f"{ref} is worth {value}, minimum is {self._governance.min_single_collateral}"
            )

        self._add_position(vault, ref, position)
        self._defer(
            adapter.transfer_position, caller, self.address, ref.token_id,
            undo=functools.partial(adapter.transfer_position, self.address, caller, ref.token_id),
        )
        logger.info("Vault %d: deposited %s worth %d", vault_id, ref, value)

    def _mint(self, caller: str, vault_id: int, amount: int) -> None:
        self._require_not_paused()
        vault = self._require_authorized(vault_id, caller)
        if amount < 0:
            raise InvalidParameter("Mint amount must be >= 0")

        self._fees.settle(vault, self._clock())
        vault.debt += amount

        self._require_healthy(vault)
        overall = vault.debt + vault.owed_fee
        if overall > self._governance.max_debt_per_vault:
            raise DebtCeilingExceeded(
                f"Vault {vault_id} would owe {overall}, "
                f"ceiling is {self._governance.max_debt_per_vault}"
            )

        self._defer(
            self._token.mint, caller, amount,
            undo=functools.partial(self._token.burn, caller, amount),
        )
        logger.info("Vault %d: minted %d (debt %d, fee %d)", vault_id, amount, vault.debt, vault.owed_fee)

    @_transactional
    def open_vault(self, caller: str) -> int:
        """Open an empty vault owned by ``caller``; returns its id."""
        return self._open(caller)

    @_transactional
    def deposit_collateral(self, caller: str, vault_id: int, ref: PositionRef) -> None:
        """Take ``ref`` into custody as collateral of ``vault_id``."""
        self._deposit(caller, vault_id, ref)

    @_transactional
    def withdraw_collateral(
        self, caller: str, ref: PositionRef, recipient: str | None = None
    ) -> None:
        """Return ``ref`` to ``recipient`` (default caller) if the vault stays healthy.

        The position is removed first and health is checked against the
        post-withdrawal state.
        """
        vault_id = self._state.position_vault.get(ref)
        if vault_id is None:
            raise InvalidPosition(f"{ref} is not held by any vault")
        vault = self._require_authorized(vault_id, caller)

        self._fees.settle(vault, self._clock())
        self._remove_position(vault, ref)
        self._require_healthy(vault)

        self._transfer_out([ref], recipient or caller)
        logger.info("Vault %d: withdrew %s", vault_id, ref)

    @_transactional
    def mint_debt(self, caller: str, vault_id: int, amount: int) -> None:
        """Borrow ``amount`` against the vault's collateral."""
        self._mint(caller, vault_id, amount)

    @_transactional
    def burn_debt(self, caller: str, vault_id: int, amount: int) -> int:
        """Repay up to ``amount``; principal first, the rest pays accrued fee.

        Returns the amount actually burned from ``caller``.
        """
        vault = self._require_authorized(vault_id, caller)
        if amount < 0:
            raise InvalidParameter("Burn amount must be >= 0")

        self._fees.settle(vault, self._clock())
        amount = min(amount, vault.debt + vault.owed_fee)
        balance = self._token.balance_of(caller)
        if balance < amount:
            raise InsufficientBalance(f"{caller} holds {balance}, needs {amount}")

        fee_part = max(0, amount - vault.debt)
        vault.owed_fee -= fee_part
        vault.debt -= amount - fee_part

        if fee_part:
            self._defer(
                self._token.mint, self._state.treasury, fee_part,
                undo=functools.partial(self._token.burn, self._state.treasury, fee_part),
            )
        self._defer(
            self._token.burn, caller, amount,
            undo=functools.partial(self._token.mint, caller, amount),
        )
        logger.info(
            "Vault %d: burned %d (fee paid %d, debt %d, fee %d)",
            vault_id, amount, fee_part, vault.debt, vault.owed_fee,
        )
        return amount

    @_transactional
    def close_vault(self, caller: str, vault_id: int, recipient: str | None = None) -> None:
        """Close a debt-free vault and send every position to ``recipient``."""
        vault = self._require_authorized(vault_id, caller)
        self._fees.settle(vault, self._clock())
        overall = vault.debt + vault.owed_fee
        if overall != 0:
            raise UnpaidDebt(f"Vault {vault_id} still owes {overall}")

        refs = sorted(vault.positions, key=lambda r: (r.venue, r.token_id))
        for ref in refs:
            self._remove_position(vault, ref)
        del self._state.vaults[vault_id]

        self._transfer_out(refs, recipient or caller)
        self._defer(self._registry.burn, vault_id)
        logger.info("Vault %d closed, %d positions returned", vault_id, len(refs))

    @_transactional
    def liquidate(self, caller: str, vault_id: int) -> LiquidationResult:
        """Force-close an undercollateralised vault; anyone allowed may call."""
        if not self._governance.is_liquidator_allowed(caller):
            raise AccessDenied(f"{caller} is not an allowed liquidator")
        vault = self._vault_for_update(vault_id)

        self._fees.settle(vault, self._clock())
        adjusted, raw = self._collateral(vault)
        overall = vault.debt + vault.owed_fee
        if adjusted >= overall:
            raise PositionHealthy(
                f"Vault {vault_id}: collateral {adjusted} covers debt {overall}"
            )

        quote = compute_liquidation(
            collateral_value=raw,
            debt=vault.debt,
            owed_fee=vault.owed_fee,
            liquidation_premium_d=self._governance.liquidation_premium_d,
            liquidation_fee_d=self._governance.liquidation_fee_d,
        )
        owner = self._registry.owner_of(vault_id)

        refs = sorted(vault.positions, key=lambda r: (r.venue, r.token_id))
        for ref in refs:
            self._remove_position(vault, ref)
        del self._state.vaults[vault_id]

        flows = (self._token, self.address, caller, owner, self._state.treasury, quote)
        self._defer(
            settle_liquidation, *flows,
            undo=functools.partial(unsettle_liquidation, *flows),
        )
        self._transfer_out(refs, caller)
        self._defer(self._registry.burn, vault_id)

        logger.warning(
            "Vault %d liquidated by %s: collateral %d, debt %d, fee %d",
            vault_id, caller, raw, quote.debt, quote.owed_fee,
        )
        return LiquidationResult(
            vault_id=vault_id,
            liquidator=caller,
            owner=owner,
            quote=quote,
            positions=tuple(refs),
        )

    # ------------------------------------------------------------------
    # Composite operations
    # ------------------------------------------------------------------

    @_transactional
    def deposit_and_mint(
        self, caller: str, vault_id: int, ref: PositionRef, amount: int
    ) -> None:
        self._deposit(caller, vault_id, ref)
        self._mint(caller, vault_id, amount)

    @_transactional
    def mint_debt_from_scratch(self, caller: str, ref: PositionRef, amount: int) -> int:
        """Open a vault, deposit ``ref`` and mint ``amount`` in one call."""
        vault_id = self._open(caller)
        self._deposit(caller, vault_id, ref)
        self._mint(caller, vault_id, amount)
        return vault_id

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    @_transactional
    def update_stabilisation_fee_rate(self, caller: str, rate_d: int) -> None:
        self._require_admin(caller)
        self._fees.set_rate(rate_d, self._clock())

    @_transactional
    def pause(self, caller: str) -> None:
        self._require_admin(caller)
        self._remember_field("paused")
        self._state.paused = True
        logger.warning("Vault operations paused by %s", caller)

    @_transactional
    def unpause(self, caller: str) -> None:
        self._require_admin(caller)
        self._remember_field("paused")
        self._state.paused = False
        logger.info("Vault operations resumed by %s", caller)

    @_transactional
    def set_treasury(self, caller: str, treasury: str) -> None:
        self._require_admin(caller)
        if not treasury:
            raise InvalidParameter("Treasury address is required")
        self._remember_field("treasury")
        self._state.treasury = treasury

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def vault_ids(self) -> list[int]:
        return sorted(self._state.vaults)

    def vault_owner(self, vault_id: int) -> str:
        self._vault(vault_id)
        return self._registry.owner_of(vault_id)

    def vault_positions(self, vault_id: int) -> list[PositionRef]:
        return sorted(self._vault(vault_id).positions, key=lambda r: (r.venue, r.token_id))

    def vault_debt(self, vault_id: int) -> int:
        return self._vault(vault_id).debt

    def vault_owed_fee(self, vault_id: int) -> int:
        """Settled plus pending stability fee, extrapolated to now."""
        return self._fees.accrued(self._vault(vault_id), self._clock())

    def get_overall_debt(self, vault_id: int) -> int:
        vault = self._vault(vault_id)
        return vault.debt + self._fees.accrued(vault, self._clock())

    def calculate_vault_collateral(self, vault_id: int) -> tuple[int, int]:
        """``(adjusted, raw)`` collateral value; raises PriceUnavailable."""
        return self._collateral(self._vault(vault_id))

    def vault_health(self, vault_id: int) -> VaultHealth:
        vault = self._vault(vault_id)
        adjusted, raw = self._collateral(vault)
        return VaultHealth(
            vault_id=vault_id,
            owner=self._registry.owner_of(vault_id),
            raw_collateral=raw,
            adjusted_collateral=adjusted,
            debt=vault.debt,
            owed_fee=self._fees.accrued(vault, self._clock()),
            position_count=len(vault.positions),
        )

    def position_info(self, ref: PositionRef) -> PositionInfo:
        try:
            return self._state.positions[ref]
        except KeyError:
            raise InvalidPosition(f"{ref} is not held by any vault") from None

    def position_vault(self, ref: PositionRef) -> int | None:
        return self._state.position_vault.get(ref)

    def capacity(self, token: str) -> int:
        """Running maximum exposure to ``token`` across held positions."""
        return self._state.exposure.get(token, 0)

    def recompute_capacity(self) -> dict[str, int]:
        """Exposure rebuilt by enumerating every held position."""
        totals: dict[str, int] = {}
        for position in self._state.positions.values():
            amount0, amount1 = max_token_amounts(
                position.sqrt_price_lower_x96,
                position.sqrt_price_upper_x96,
                position.liquidity,
            )
            for token, amount in ((position.token0, amount0), (position.token1, amount1)):
                totals[token] = totals.get(token, 0) + amount
        return {token: amount for token, amount in totals.items() if amount}

    def capacities(self) -> dict[str, int]:
        return dict(self._state.exposure)

    def total_debt(self) -> int:
        return sum(v.debt for v in self._state.vaults.values())
