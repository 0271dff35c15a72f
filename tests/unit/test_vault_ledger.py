"""Unit tests for the vault ledger state machine."""
from __future__ import annotations

import copy
from dataclasses import replace
from unittest.mock import patch

import pytest

from cdp_engine.constants import YEAR
from cdp_engine.errors import (
    AccessDenied,
    CollateralTokenOverflow,
    CollateralUnderflow,
    DebtCeilingExceeded,
    InsufficientAllowance,
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
from cdp_engine.liquidity_math import max_token_amounts
from cdp_engine.models import PositionRef
from cdp_engine.services import VaultLedger

FIVE_PERCENT = 50_000_000


def _max_amounts(env, ref: PositionRef) -> tuple[int, int]:
    info = env.adapter.positions[ref.token_id]
    return max_token_amounts(info.sqrt_price_lower_x96, info.sqrt_price_upper_x96, info.liquidity)


class TestOpenVault:
    def test_opens_sequential_vaults(self, env) -> None:
        assert env.ledger.open_vault("alice") == 1
        assert env.ledger.open_vault("bob") == 2
        assert env.ledger.vault_ids() == [1, 2]
        assert env.ledger.vault_owner(2) == "bob"
        assert env.ledger.get_overall_debt(1) == 0

    def test_snapshot_taken_at_open(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        env.clock.advance(YEAR)
        vault_id = env.ledger.open_vault("alice")
        ref = env.new_position("alice", 10_000)
        env.ledger.deposit_collateral("alice", vault_id, ref)
        env.ledger.mint_debt("alice", vault_id, 1000)
        # fees accrued before the vault existed are not charged
        assert env.ledger.vault_owed_fee(vault_id) == 0

    def test_private_protocol_requires_allowlist(self, env) -> None:
        env.governance.set_public(False)
        with pytest.raises(AccessDenied):
            env.ledger.open_vault("alice")
        env.governance.add_depositors(["alice"])
        assert env.ledger.open_vault("alice") == 1

    def test_paused(self, env) -> None:
        env.ledger.pause("admin")
        with pytest.raises(Paused):
            env.ledger.open_vault("alice")
        assert env.ledger.vault_ids() == []


class TestDepositCollateral:
    def test_deposit_takes_custody(self, env) -> None:
        vault_id, ref = env.funded_vault("alice", 1000)

        assert env.ledger.vault_positions(vault_id) == [ref]
        assert env.adapter.owner_of(ref.token_id) == env.ledger.address
        assert env.ledger.position_vault(ref) == vault_id
        assert env.ledger.position_info(ref) == env.adapter.positions[ref.token_id]
        max0, max1 = _max_amounts(env, ref)
        assert env.ledger.capacity("TKA") == max0
        assert env.ledger.capacity("TKB") == max1

    def test_requires_vault_authorization(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        ref = env.new_position("bob", 1000)
        with pytest.raises(AccessDenied):
            env.ledger.deposit_collateral("bob", vault_id, ref)

    def test_approved_operator_may_deposit(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        env.registry.approve("alice", vault_id, "bob")
        ref = env.new_position("bob", 1000)
        env.ledger.deposit_collateral("bob", vault_id, ref)
        assert env.ledger.vault_positions(vault_id) == [ref]

    def test_caller_must_own_position(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        ref = env.new_position("bob", 1000)
        with pytest.raises(AccessDenied):
            env.ledger.deposit_collateral("alice", vault_id, ref)

    def test_same_position_twice(self, env) -> None:
        vault_id, ref = env.funded_vault("alice", 1000)
        with pytest.raises(InvalidPosition, match="already deposited"):
            env.ledger.deposit_collateral("alice", vault_id, ref)

    def test_pool_must_be_whitelisted(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        ref = env.new_position("alice", 1000)
        env.adapter.positions[ref.token_id] = replace(env.adapter.positions[ref.token_id], pool="pool-x")
        with pytest.raises(InvalidPool):
            env.ledger.deposit_collateral("alice", vault_id, ref)

    def test_positions_limit(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        for _ in range(3):
            env.ledger.deposit_collateral("alice", vault_id, env.new_position("alice", 1000))
        with pytest.raises(PositionsLimitExceeded):
            env.ledger.deposit_collateral("alice", vault_id, env.new_position("alice", 1000))

    def test_minimum_single_collateral(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        with pytest.raises(CollateralUnderflow):
            env.ledger.deposit_collateral("alice", vault_id, env.new_position("alice", 99))
        env.ledger.deposit_collateral("alice", vault_id, env.new_position("alice", 100))

    def test_token_capacity(self, env) -> None:
        vault_id, first = env.funded_vault("alice", 1000)
        max0, _ = _max_amounts(env, first)
        env.governance.set_token_limit("TKA", max0)
        second = env.new_position("alice", 1000)

        with pytest.raises(CollateralTokenOverflow) as exc_info:
            env.ledger.deposit_collateral("alice", vault_id, second)

        assert exc_info.value.token == "TKA"
        assert env.ledger.capacity("TKA") == max0
        assert env.adapter.owner_of(second.token_id) == "alice"
        assert env.ledger.vault_positions(vault_id) == [first]

    def test_unlisted_token_has_no_capacity(self, env) -> None:
        env.governance.set_token_limit("TKB", 0)
        vault_id = env.ledger.open_vault("alice")
        with pytest.raises(CollateralTokenOverflow):
            env.ledger.deposit_collateral("alice", vault_id, env.new_position("alice", 1000))

    def test_price_unavailable(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        ref = env.new_position("alice", 1000)
        env.valuation.unavailable.add(ref)
        with pytest.raises(PriceUnavailable):
            env.ledger.deposit_collateral("alice", vault_id, ref)

    def test_unknown_vault(self, env) -> None:
        with pytest.raises(InvalidVault):
            env.ledger.deposit_collateral("alice", 9, env.new_position("alice", 1000))

    def test_unsupported_venue(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        with pytest.raises(InvalidPosition):
            env.ledger.deposit_collateral("alice", vault_id, PositionRef("curve", 1))


class TestWithdrawCollateral:
    def test_withdraw_without_debt(self, env) -> None:
        vault_id, ref = env.funded_vault("alice", 1000)

        env.ledger.withdraw_collateral("alice", ref)

        assert env.adapter.owner_of(ref.token_id) == "alice"
        assert env.ledger.vault_positions(vault_id) == []
        assert env.ledger.position_vault(ref) is None
        assert env.ledger.capacities() == {}

    def test_withdraw_to_recipient(self, env) -> None:
        _, ref = env.funded_vault("alice", 1000)
        env.ledger.withdraw_collateral("alice", ref, recipient="carol")
        assert env.adapter.owner_of(ref.token_id) == "carol"

    def test_cannot_leave_vault_unhealthy(self, env) -> None:
        vault_id, first = env.funded_vault("alice", 1000)
        second = env.new_position("alice", 500)
        env.ledger.deposit_collateral("alice", vault_id, second)
        env.ledger.mint_debt("alice", vault_id, 1000)
        capacities = env.ledger.capacities()

        with pytest.raises(PositionUnhealthy):
            env.ledger.withdraw_collateral("alice", first)

        assert env.ledger.vault_positions(vault_id) == [first, second]
        assert env.adapter.owner_of(first.token_id) == env.ledger.address
        assert env.ledger.capacities() == capacities

    def test_withdraw_keeping_vault_healthy(self, env) -> None:
        vault_id, first = env.funded_vault("alice", 1000)
        second = env.new_position("alice", 500)
        env.ledger.deposit_collateral("alice", vault_id, second)
        env.ledger.mint_debt("alice", vault_id, 800)

        env.ledger.withdraw_collateral("alice", second)

        assert env.ledger.vault_positions(vault_id) == [first]

    def test_unknown_position(self, env) -> None:
        with pytest.raises(InvalidPosition):
            env.ledger.withdraw_collateral("alice", PositionRef("fake", 77))

    def test_requires_authorization(self, env) -> None:
        _, ref = env.funded_vault("alice", 1000)
        with pytest.raises(AccessDenied):
            env.ledger.withdraw_collateral("bob", ref)

    def test_round_trip_restores_state(self, env) -> None:
        vault_id, keep = env.funded_vault("alice", 1000)
        before = (env.ledger.capacities(), env.ledger.vault_positions(vault_id))
        ref = env.new_position("alice", 300)

        env.ledger.deposit_collateral("alice", vault_id, ref)
        env.ledger.withdraw_collateral("alice", ref)

        assert (env.ledger.capacities(), env.ledger.vault_positions(vault_id)) == before
        assert env.adapter.owner_of(ref.token_id) == "alice"


class TestMintDebt:
    def test_mint_up_to_threshold_value(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)

        env.ledger.mint_debt("alice", vault_id, 800)
        assert env.token.balance_of("alice") == 800
        assert env.ledger.vault_debt(vault_id) == 800

        with pytest.raises(PositionUnhealthy):
            env.ledger.mint_debt("alice", vault_id, 1)
        assert env.token.balance_of("alice") == 800
        assert env.ledger.vault_debt(vault_id) == 800

    def test_debt_ceiling(self, env) -> None:
        env.governance.set_max_debt_per_vault(500)
        vault_id, _ = env.funded_vault("alice", 1000)
        with pytest.raises(DebtCeilingExceeded):
            env.ledger.mint_debt("alice", vault_id, 501)
        env.ledger.mint_debt("alice", vault_id, 500)

    def test_health_checked_before_ceiling(self, env) -> None:
        env.governance.set_max_debt_per_vault(500)
        vault_id, _ = env.funded_vault("alice", 1000)
        with pytest.raises(PositionUnhealthy):
            env.ledger.mint_debt("alice", vault_id, 900)

    def test_ceiling_includes_fee(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 10_000)
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        env.ledger.mint_debt("alice", vault_id, 1000)
        env.clock.advance(YEAR)
        env.governance.set_max_debt_per_vault(1100)
        with pytest.raises(DebtCeilingExceeded):
            env.ledger.mint_debt("alice", vault_id, 51)
        env.ledger.mint_debt("alice", vault_id, 50)

    def test_empty_vault(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        env.ledger.mint_debt("alice", vault_id, 0)
        with pytest.raises(PositionUnhealthy):
            env.ledger.mint_debt("alice", vault_id, 1)

    def test_negative_amount(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        with pytest.raises(InvalidParameter):
            env.ledger.mint_debt("alice", vault_id, -1)

    def test_price_unavailable(self, env) -> None:
        vault_id, ref = env.funded_vault("alice", 1000)
        env.valuation.unavailable.add(ref)
        with pytest.raises(PriceUnavailable):
            env.ledger.mint_debt("alice", vault_id, 1)
        assert PriceUnavailable.retryable is True

    def test_requires_authorization(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        with pytest.raises(AccessDenied):
            env.ledger.mint_debt("bob", vault_id, 1)

    def test_paused(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        env.ledger.pause("admin")
        with pytest.raises(Paused):
            env.ledger.mint_debt("alice", vault_id, 1)


class TestStabilityFee:
    def test_five_percent_for_one_year(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, _ = env.funded_vault("alice", 2000)
        env.ledger.mint_debt("alice", vault_id, 1000)

        env.clock.advance(YEAR)

        assert env.ledger.vault_owed_fee(vault_id) == 50
        assert env.ledger.get_overall_debt(vault_id) == 1050

    def test_rate_change_is_prospective(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, _ = env.funded_vault("alice", 2000)
        env.ledger.mint_debt("alice", vault_id, 1000)
        env.clock.advance(YEAR)
        env.ledger.update_stabilisation_fee_rate("admin", 0)
        env.clock.advance(YEAR)
        assert env.ledger.vault_owed_fee(vault_id) == 50

    def test_fee_never_decreases_without_burn(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, _ = env.funded_vault("alice", 10_000)
        env.ledger.mint_debt("alice", vault_id, 1000)
        seen = []
        for _ in range(5):
            env.clock.advance(YEAR // 4)
            env.ledger.mint_debt("alice", vault_id, 10)
            seen.append(env.ledger.vault_owed_fee(vault_id))
        assert seen == sorted(seen)

    def test_fee_can_make_vault_liquidatable(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, _ = env.funded_vault("alice", 1000)
        env.ledger.mint_debt("alice", vault_id, 800)
        env.clock.advance(YEAR)
        assert env.ledger.vault_health(vault_id).is_liquidatable


class TestBurnDebt:
    def test_partial_burn_reduces_principal(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        env.ledger.mint_debt("alice", vault_id, 800)

        assert env.ledger.burn_debt("alice", vault_id, 300) == 300

        assert env.ledger.vault_debt(vault_id) == 500
        assert env.token.balance_of("alice") == 500
        assert env.token.total_supply == 500

    def test_principal_first_then_fee(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, _ = env.funded_vault("alice", 2000)
        env.ledger.mint_debt("alice", vault_id, 800)
        env.clock.advance(YEAR)
        env.token.mint("alice", 100)

        burned = env.ledger.burn_debt("alice", vault_id, 820)

        assert burned == 820
        assert env.ledger.vault_debt(vault_id) == 0
        assert env.ledger.vault_owed_fee(vault_id) == 20
        assert env.token.balance_of("treasury") == 20

    def test_burn_capped_at_total_owed(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, _ = env.funded_vault("alice", 2000)
        env.ledger.mint_debt("alice", vault_id, 800)
        env.clock.advance(YEAR)
        env.token.mint("alice", 100)

        burned = env.ledger.burn_debt("alice", vault_id, 10**6)

        assert burned == 840
        assert env.ledger.get_overall_debt(vault_id) == 0
        assert env.token.balance_of("alice") == 60
        assert env.token.balance_of("treasury") == 40
        # supply = alice's leftover + the treasury's fee income
        assert env.token.total_supply == 100

    def test_insufficient_balance(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        env.ledger.mint_debt("alice", vault_id, 800)
        env.token.transfer("alice", "bob", 500)

        with pytest.raises(InsufficientBalance):
            env.ledger.burn_debt("alice", vault_id, 800)

        assert env.ledger.vault_debt(vault_id) == 800
        assert env.token.balance_of("alice") == 300

    def test_requires_authorization(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        with pytest.raises(AccessDenied):
            env.ledger.burn_debt("bob", vault_id, 1)

    def test_allowed_while_paused(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        env.ledger.mint_debt("alice", vault_id, 800)
        env.ledger.pause("admin")
        env.ledger.burn_debt("alice", vault_id, 800)
        assert env.ledger.vault_debt(vault_id) == 0


class TestCloseVault:
    def test_close_returns_positions(self, env) -> None:
        vault_id, first = env.funded_vault("alice", 1000)
        second = env.new_position("alice", 400)
        env.ledger.deposit_collateral("alice", vault_id, second)

        env.ledger.close_vault("alice", vault_id)

        assert env.ledger.vault_ids() == []
        assert not env.registry.exists(vault_id)
        assert env.adapter.owner_of(first.token_id) == "alice"
        assert env.adapter.owner_of(second.token_id) == "alice"
        assert env.ledger.capacities() == {}
        with pytest.raises(InvalidVault):
            env.ledger.vault_positions(vault_id)

    def test_close_to_recipient(self, env) -> None:
        vault_id, ref = env.funded_vault("alice", 1000)
        env.ledger.close_vault("alice", vault_id, recipient="carol")
        assert env.adapter.owner_of(ref.token_id) == "carol"

    def test_unpaid_principal(self, env) -> None:
        vault_id, ref = env.funded_vault("alice", 1000)
        env.ledger.mint_debt("alice", vault_id, 1)
        with pytest.raises(UnpaidDebt):
            env.ledger.close_vault("alice", vault_id)
        assert env.adapter.owner_of(ref.token_id) == env.ledger.address

    def test_unpaid_fee(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, _ = env.funded_vault("alice", 2000)
        env.ledger.mint_debt("alice", vault_id, 1000)
        env.clock.advance(YEAR)
        env.ledger.burn_debt("alice", vault_id, 1000)
        with pytest.raises(UnpaidDebt):
            env.ledger.close_vault("alice", vault_id)

    def test_full_lifecycle(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, ref = env.funded_vault("alice", 2000)
        env.ledger.mint_debt("alice", vault_id, 1000)
        env.clock.advance(YEAR)
        env.token.mint("alice", 50)

        env.ledger.burn_debt("alice", vault_id, 1050)
        env.ledger.close_vault("alice", vault_id)

        assert env.adapter.owner_of(ref.token_id) == "alice"
        assert env.token.balance_of("alice") == 0
        assert env.token.balance_of("treasury") == 50

    def test_requires_authorization(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        with pytest.raises(AccessDenied):
            env.ledger.close_vault("bob", vault_id)


class TestLiquidate:
    def _underwater(self, env, value_after: int) -> tuple[int, PositionRef]:
        vault_id, ref = env.funded_vault("alice", 2000)
        env.ledger.mint_debt("alice", vault_id, 1000)
        env.valuation.values[ref] = value_after
        env.token.mint("liquidator", 2000)
        env.token.approve("liquidator", env.ledger.address, 2000)
        return vault_id, ref

    def test_healthy_vault(self, env) -> None:
        vault_id, _ = self._underwater(env, 2000)
        with pytest.raises(PositionHealthy):
            env.ledger.liquidate("liquidator", vault_id)

    def test_liquidator_pays_principal_when_collateral_short(self, env) -> None:
        vault_id, ref = self._underwater(env, 900)
        supply_before = env.token.total_supply

        result = env.ledger.liquidate("liquidator", vault_id)

        assert result.quote.return_amount == 1000
        assert result.quote.treasury_share == 0
        assert result.quote.owner_share == 0
        assert result.owner == "alice"
        assert result.positions == (ref,)
        assert env.token.balance_of("liquidator") == 1000
        assert env.token.total_supply == supply_before - 1000
        assert env.token.balance_of(env.ledger.address) == 0
        assert env.adapter.owner_of(ref.token_id) == "liquidator"
        assert env.ledger.vault_ids() == []
        assert not env.registry.exists(vault_id)
        assert env.ledger.capacities() == {}

    def test_surplus_to_treasury_and_owner(self, env) -> None:
        vault_id, _ = self._underwater(env, 1200)

        result = env.ledger.liquidate("liquidator", vault_id)

        # premium 10%: pays 1080; liquidation fee 3% of 1200 = 36
        assert result.quote.return_amount == 1080
        assert env.token.balance_of("treasury") == 36
        assert env.token.balance_of("alice") == 1000 + 44
        assert env.token.balance_of("liquidator") == 2000 - 1080

    def test_owner_paid_is_current_registry_owner(self, env) -> None:
        vault_id, _ = self._underwater(env, 1200)
        env.registry.transfer("alice", vault_id, "dave")
        result = env.ledger.liquidate("liquidator", vault_id)
        assert result.owner == "dave"
        assert env.token.balance_of("dave") == 44

    def test_accrued_fee_goes_to_treasury(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, _ = self._underwater(env, 1300)
        env.clock.advance(YEAR)

        result = env.ledger.liquidate("liquidator", vault_id)

        assert result.quote.owed_fee == 50
        assert result.quote.principal_burned == 1000
        # 1300 * 0.9 = 1170; treasury min(50 + 39, 170) = 89
        assert env.token.balance_of("treasury") == 89

    def test_liquidator_allowlist(self, env) -> None:
        vault_id, _ = self._underwater(env, 900)
        env.governance.set_liquidators_public(False)
        with pytest.raises(AccessDenied):
            env.ledger.liquidate("liquidator", vault_id)
        env.governance.add_liquidators(["liquidator"])
        env.ledger.liquidate("liquidator", vault_id)

    def test_missing_allowance_rolls_back(self, env) -> None:
        vault_id, ref = self._underwater(env, 900)
        env.token.approve("liquidator", env.ledger.address, 0)

        with pytest.raises(InsufficientAllowance):
            env.ledger.liquidate("liquidator", vault_id)

        assert env.ledger.vault_ids() == [vault_id]
        assert env.ledger.vault_debt(vault_id) == 1000
        assert env.adapter.owner_of(ref.token_id) == env.ledger.address
        assert env.registry.exists(vault_id)

    def test_price_unavailable(self, env) -> None:
        vault_id, ref = self._underwater(env, 900)
        env.valuation.unavailable.add(ref)
        with pytest.raises(PriceUnavailable):
            env.ledger.liquidate("liquidator", vault_id)

    def test_allowed_while_paused(self, env) -> None:
        vault_id, _ = self._underwater(env, 900)
        env.ledger.pause("admin")
        env.ledger.liquidate("liquidator", vault_id)

    def test_unknown_vault(self, env) -> None:
        with pytest.raises(InvalidVault):
            env.ledger.liquidate("liquidator", 42)


class TestAtomicity:
    def test_reentrant_call_rejected(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        ref = env.new_position("alice", 1000)
        env.adapter.on_transfer = lambda *args: env.ledger.open_vault("mallory")

        with pytest.raises(Reentrancy):
            env.ledger.deposit_collateral("alice", vault_id, ref)

        assert env.ledger.vault_positions(vault_id) == []
        assert env.ledger.capacities() == {}
        assert env.ledger.vault_ids() == [vault_id]

        env.adapter.on_transfer = None
        env.ledger.deposit_collateral("alice", vault_id, ref)
        assert env.ledger.vault_positions(vault_id) == [ref]

    @staticmethod
    def _two_position_vault(env) -> tuple[int, PositionRef, PositionRef]:
        vault_id, first = env.funded_vault("alice", 1000)
        second = env.new_position("alice", 1000)
        env.ledger.deposit_collateral("alice", vault_id, second)
        return vault_id, first, second

    @staticmethod
    def _reenter_on_transfer_of(env, ref: PositionRef) -> None:
        def hook(sender: str, recipient: str, token_id: int) -> None:
            if token_id == ref.token_id:
                env.ledger.open_vault("mallory")

        env.adapter.on_transfer = hook

    def test_liquidate_reverts_when_second_transfer_fails(self, env) -> None:
        vault_id, first, second = self._two_position_vault(env)
        env.ledger.mint_debt("alice", vault_id, 1000)
        env.valuation.values[first] = 500
        env.valuation.values[second] = 500
        env.token.mint("liquidator", 2000)
        env.token.approve("liquidator", env.ledger.address, 2000)
        supply_before = env.token.total_supply
        capacities_before = env.ledger.capacities()
        self._reenter_on_transfer_of(env, second)

        with pytest.raises(Reentrancy):
            env.ledger.liquidate("liquidator", vault_id)

        assert env.ledger.vault_ids() == [vault_id]
        assert env.ledger.vault_debt(vault_id) == 1000
        assert env.ledger.vault_positions(vault_id) == [first, second]
        assert env.adapter.owner_of(first.token_id) == env.ledger.address
        assert env.adapter.owner_of(second.token_id) == env.ledger.address
        assert env.token.balance_of("liquidator") == 2000
        assert env.token.allowance("liquidator", env.ledger.address) == 2000
        assert env.token.total_supply == supply_before
        assert env.ledger.capacities() == capacities_before
        assert env.registry.exists(vault_id)

        env.adapter.on_transfer = None
        env.ledger.liquidate("liquidator", vault_id)
        assert env.token.balance_of("liquidator") == 1000
        assert env.adapter.owner_of(second.token_id) == "liquidator"

    def test_close_reverts_when_second_transfer_fails(self, env) -> None:
        vault_id, first, second = self._two_position_vault(env)
        capacities_before = env.ledger.capacities()
        self._reenter_on_transfer_of(env, second)

        with pytest.raises(Reentrancy):
            env.ledger.close_vault("alice", vault_id)

        assert env.ledger.vault_ids() == [vault_id]
        assert env.ledger.vault_positions(vault_id) == [first, second]
        assert env.adapter.owner_of(first.token_id) == env.ledger.address
        assert env.adapter.owner_of(second.token_id) == env.ledger.address
        assert env.ledger.capacities() == capacities_before
        assert env.registry.exists(vault_id)

        env.adapter.on_transfer = None
        env.ledger.close_vault("alice", vault_id)
        assert env.adapter.owner_of(first.token_id) == "alice"
        assert env.adapter.owner_of(second.token_id) == "alice"

    def test_burn_reverts_treasury_payment_when_burn_fails(self, env, monkeypatch) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        vault_id, _ = env.funded_vault("alice", 2000)
        env.ledger.mint_debt("alice", vault_id, 1000)
        env.clock.advance(YEAR)
        env.token.mint("alice", 50)

        real_burn = env.token.burn

        def burn(holder: str, amount: int) -> None:
            if holder == "alice":
                env.ledger.open_vault("mallory")
            real_burn(holder, amount)

        monkeypatch.setattr(env.token, "burn", burn)
        with pytest.raises(Reentrancy):
            env.ledger.burn_debt("alice", vault_id, 1050)

        assert env.token.balance_of("treasury") == 0
        assert env.token.balance_of("alice") == 1050
        assert env.ledger.vault_debt(vault_id) == 1000
        assert env.ledger.vault_owed_fee(vault_id) == 50

    def test_call_cost_does_not_grow_with_vault_count(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 10_000)

        def copies_during_mint() -> int:
            with patch.object(copy, "deepcopy", wraps=copy.deepcopy) as spy:
                env.ledger.mint_debt("alice", vault_id, 10)
            return spy.call_count

        alone = copies_during_mint()
        for _ in range(50):
            env.funded_vault("bob", 1000)

        assert copies_during_mint() == alone

    def test_mint_from_scratch(self, env) -> None:
        ref = env.new_position("alice", 1000)
        vault_id = env.ledger.mint_debt_from_scratch("alice", ref, 500)
        assert env.ledger.vault_positions(vault_id) == [ref]
        assert env.token.balance_of("alice") == 500

    def test_mint_from_scratch_rolls_back_everything(self, env) -> None:
        ref = env.new_position("alice", 1000)

        with pytest.raises(PositionUnhealthy):
            env.ledger.mint_debt_from_scratch("alice", ref, 801)

        assert env.ledger.vault_ids() == []
        assert not env.registry.exists(1)
        assert env.adapter.owner_of(ref.token_id) == "alice"
        assert env.token.total_supply == 0
        assert env.ledger.capacities() == {}

    def test_deposit_and_mint(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        ref = env.new_position("alice", 1000)
        env.ledger.deposit_and_mint("alice", vault_id, ref, 800)
        assert env.ledger.vault_debt(vault_id) == 800

    def test_deposit_and_mint_rolls_back_deposit(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        ref = env.new_position("alice", 1000)
        with pytest.raises(PositionUnhealthy):
            env.ledger.deposit_and_mint("alice", vault_id, ref, 1000)
        assert env.adapter.owner_of(ref.token_id) == "alice"
        assert env.ledger.vault_positions(vault_id) == []

    def test_failed_call_keeps_fee_state(self, env) -> None:
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        state_before = (env.fees.state.rate_d, env.fees.state.stored_index)
        with pytest.raises(AccessDenied):
            env.ledger.update_stabilisation_fee_rate("mallory", 0)
        assert (env.fees.state.rate_d, env.fees.state.stored_index) == state_before

    def test_solvency_after_every_mint(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        for amount in (100, 250, 300, 150, 1, 1):
            try:
                env.ledger.mint_debt("alice", vault_id, amount)
            except PositionUnhealthy:
                pass
            adjusted, _ = env.ledger.calculate_vault_collateral(vault_id)
            assert adjusted >= env.ledger.get_overall_debt(vault_id)
        assert env.ledger.vault_debt(vault_id) == 800


class TestAdmin:
    def test_rate_update_requires_admin(self, env) -> None:
        with pytest.raises(AccessDenied):
            env.ledger.update_stabilisation_fee_rate("alice", FIVE_PERCENT)
        env.ledger.update_stabilisation_fee_rate("admin", FIVE_PERCENT)
        assert env.fees.rate_d == FIVE_PERCENT

    def test_rate_out_of_range(self, env) -> None:
        with pytest.raises(InvalidParameter):
            env.ledger.update_stabilisation_fee_rate("admin", 1_000_000_001)

    def test_pause_and_unpause(self, env) -> None:
        with pytest.raises(AccessDenied):
            env.ledger.pause("alice")
        env.ledger.pause("admin")
        assert env.ledger.paused
        env.ledger.unpause("admin")
        assert not env.ledger.paused
        env.ledger.open_vault("alice")

    def test_withdraw_allowed_while_paused(self, env) -> None:
        _, ref = env.funded_vault("alice", 1000)
        env.ledger.pause("admin")
        env.ledger.withdraw_collateral("alice", ref)

    def test_set_treasury(self, env) -> None:
        with pytest.raises(AccessDenied):
            env.ledger.set_treasury("alice", "alice")
        with pytest.raises(InvalidParameter):
            env.ledger.set_treasury("admin", "")
        env.ledger.set_treasury("admin", "new-treasury")
        assert env.ledger.treasury == "new-treasury"

    def test_treasury_required(self, env) -> None:
        with pytest.raises(InvalidParameter):
            VaultLedger(env.governance, env.valuation, env.token, env.registry, treasury="")


class TestViews:
    def test_collateral_and_health(self, env) -> None:
        vault_id, _ = env.funded_vault("alice", 1000)
        env.ledger.mint_debt("alice", vault_id, 400)

        assert env.ledger.calculate_vault_collateral(vault_id) == (800, 1000)
        health = env.ledger.vault_health(vault_id)
        assert health.raw_collateral == 1000
        assert health.adjusted_collateral == 800
        assert health.debt == 400
        assert health.position_count == 1
        assert health.health_factor == pytest.approx(2.0)

    def test_total_debt(self, env) -> None:
        a, _ = env.funded_vault("alice", 1000)
        b, _ = env.funded_vault("bob", 1000)
        env.ledger.mint_debt("alice", a, 100)
        env.ledger.mint_debt("bob", b, 250)
        assert env.ledger.total_debt() == 350
        assert env.token.total_supply == 350

    def test_capacity_matches_enumeration(self, env) -> None:
        vault_id, first = env.funded_vault("alice", 1000)
        refs = [env.new_position("alice", 500) for _ in range(2)]
        for ref in refs:
            env.ledger.deposit_collateral("alice", vault_id, ref)
        env.ledger.withdraw_collateral("alice", refs[0])
        assert env.ledger.capacities() == env.ledger.recompute_capacity()

        env.funded_vault("bob", 1000)
        env.ledger.close_vault("alice", vault_id)
        assert env.ledger.capacities() == env.ledger.recompute_capacity()

    def test_vault_owner_follows_registry(self, env) -> None:
        vault_id = env.ledger.open_vault("alice")
        env.registry.transfer("alice", vault_id, "bob")
        assert env.ledger.vault_owner(vault_id) == "bob"
        env.ledger.mint_debt("bob", vault_id, 0)

    def test_position_info_unknown(self, env) -> None:
        with pytest.raises(InvalidPosition):
            env.ledger.position_info(PositionRef("fake", 1))

    def test_unknown_vault_views(self, env) -> None:
        with pytest.raises(InvalidVault):
            env.ledger.vault_health(3)
        with pytest.raises(InvalidVault):
            env.ledger.get_overall_debt(3)
