"""Stability fee accrual: one global index, one snapshot per vault.

The global index is the integral of the (piecewise-constant) yearly rate over
time, in fee units per unit of debt scaled by ``FEE_INDEX_SCALE``. Between
rate changes it is a pure function of time; storage only moves when the rate
changes. A vault owes ``debt * (index_now - snapshot)`` on top of its settled
fee, so settling any number of vaults never iterates over the others.
"""
from __future__ import annotations

import logging
from typing import Callable

from ..clock import system_clock
from ..constants import DENOMINATOR, FEE_INDEX_SCALE, YEAR
from ..errors import InvalidParameter
from ..liquidity_math import mul_div
from ..models import FeeState, Vault

logger = logging.getLogger(__name__)


class FeeAccrualLedger:
    """Global stability fee index plus lazy per-vault settlement."""

    def __init__(
        self,
        rate_d: int = 0,
        clock: Callable[[], int] = system_clock,
    ) -> None:
        _check_rate(rate_d)
        self._clock = clock
        self.state = FeeState(rate_d=rate_d, last_update=clock(), stored_index=0)

    @property
    def rate_d(self) -> int:
        return self.state.rate_d

    def global_index(self, now: int | None = None) -> int:
        """Stored index extrapolated to ``now`` at the current rate (floored)."""
        if now is None:
            now = self._clock()
        elapsed = max(0, now - self.state.last_update)
        return self.state.stored_index + mul_div(
            self.state.rate_d * elapsed, FEE_INDEX_SCALE, YEAR * DENOMINATOR
        )

    def set_rate(self, rate_d: int, now: int | None = None) -> None:
        """Change the yearly rate; time elapsed so far accrues at the old rate."""
        _check_rate(rate_d)
        if now is None:
            now = self._clock()
        self.state.stored_index = self.global_index(now)
        self.state.last_update = now
        old_rate = self.state.rate_d
        self.state.rate_d = rate_d
        logger.info("Stability fee rate changed %d -> %d (1e-9/yr)", old_rate, rate_d)

    def pending(self, vault: Vault, now: int | None = None) -> int:
        """Fee accrued since the vault's snapshot that is not yet settled."""
        index = self.global_index(now)
        return mul_div(vault.debt, index - vault.fee_index_snapshot, FEE_INDEX_SCALE)

    def accrued(self, vault: Vault, now: int | None = None) -> int:
        """Settled plus pending fee; read-only."""
        return vault.owed_fee + self.pending(vault, now)

    def settle(self, vault: Vault, now: int | None = None) -> int:
        """Fold the pending fee into ``vault.owed_fee`` and move its snapshot.

        Returns the newly settled amount.
        """
        index = self.global_index(now)
        delta = mul_div(vault.debt, index - vault.fee_index_snapshot, FEE_INDEX_SCALE)
        vault.owed_fee += delta
        vault.fee_index_snapshot = index
        return delta


def _check_rate(rate_d: int) -> None:
    if rate_d < 0 or rate_d > DENOMINATOR:
        raise InvalidParameter(
            f"Stability fee rate must be within [0, {DENOMINATOR}], got {rate_d}"
        )
