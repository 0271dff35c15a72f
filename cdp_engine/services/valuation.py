"""Position valuation oracle: quote value of a liquidity position.

Read-only: safe for liquidators and monitoring tools to call at any time.
"""
from __future__ import annotations

import logging

from ..constants import DENOMINATOR
from ..errors import InvalidParameter, InvalidPosition
from ..interfaces.governance import Governance
from ..interfaces.price_oracle import PriceOracle
from ..interfaces.protocol_adapter import PositionAdapter
from ..liquidity_math import (
    apply_fraction,
    get_amounts_for_liquidity,
    price_deviation_d,
    quote_value,
)
from ..models import AssetAmount, PositionInfo, PositionRef, Valuation

logger = logging.getLogger(__name__)


class PositionValuationOracle:
    """Value positions held in any registered venue."""

    def __init__(
        self,
        adapters: dict[str, PositionAdapter],
        price_oracle: PriceOracle,
        governance: Governance | None = None,
    ) -> None:
        self._adapters = adapters
        self._prices = price_oracle
        self._governance = governance

    def adapter(self, venue: str) -> PositionAdapter:
        try:
            return self._adapters[venue]
        except KeyError:
            raise InvalidPosition(f"Unsupported venue '{venue}'") from None

    def position_details(self, ref: PositionRef) -> PositionInfo:
        return self.adapter(ref.venue).get_position_details(ref.token_id)

    def describe_position(
        self, ref: PositionRef, position: PositionInfo | None = None
    ) -> Valuation | None:
        """Full per-asset breakdown, or None when a price is unavailable."""
        adapter = self.adapter(ref.venue)
        if position is None:
            position = adapter.get_position_details(ref.token_id)

        sqrt_price_x96 = adapter.get_sqrt_price_x96(position.pool)
        principal0, principal1 = get_amounts_for_liquidity(
            sqrt_price_x96,
            position.sqrt_price_lower_x96,
            position.sqrt_price_upper_x96,
            position.liquidity,
        )
        fees0, fees1 = adapter.compute_uncollected_yield(position)

        ok0, price0_x96 = self._prices.get_price(position.token0)
        ok1, price1_x96 = self._prices.get_price(position.token1)
        if not (ok0 and ok1):
            logger.warning(
                "Price unavailable for %s (%s ok=%s, %s ok=%s)",
                ref, position.token0, ok0, position.token1, ok1,
            )
            return None

        if not self._spot_within_deviation(ref, sqrt_price_x96, price0_x96, price1_x96):
            return None

        amount0 = principal0 + fees0
        amount1 = principal1 + fees1
        return Valuation(
            position=ref,
            pool=position.pool,
            sqrt_price_x96=sqrt_price_x96,
            assets=(
                AssetAmount(
                    token=position.token0,
                    principal=principal0,
                    uncollected=fees0,
                    price_x96=price0_x96,
                    value=quote_value(amount0, price0_x96),
                ),
                AssetAmount(
                    token=position.token1,
                    principal=principal1,
                    uncollected=fees1,
                    price_x96=price1_x96,
                    value=quote_value(amount1, price1_x96),
                ),
            ),
        )

    def value_position(
        self,
        ref: PositionRef,
        risk_factor_d: int = DENOMINATOR,
        position: PositionInfo | None = None,
    ) -> tuple[bool, int]:
        """Return ``(ok, value)`` of ``ref`` scaled by ``risk_factor_d / 1e9``.

        ``ok`` is False when either asset price is unavailable; the value is
        then 0 and must not be used.
        """
        if risk_factor_d < 0 or risk_factor_d > DENOMINATOR:
            raise InvalidParameter(f"Risk factor {risk_factor_d} outside [0, {DENOMINATOR}]")

        valuation = self.describe_position(ref, position)
        if valuation is None:
            return False, 0
        return True, apply_fraction(valuation.total, risk_factor_d)

    def _spot_within_deviation(
        self, ref: PositionRef, sqrt_price_x96: int, price0_x96: int, price1_x96: int
    ) -> bool:
        if self._governance is None:
            return True
        max_deviation_d = self._governance.max_price_ratio_deviation_d
        if max_deviation_d == 0:
            return True
        deviation_d = price_deviation_d(sqrt_price_x96, price0_x96, price1_x96)
        if deviation_d > max_deviation_d:
            logger.warning(
                "Spot price of %s deviates %.4f%% from oracle price",
                ref, deviation_d * 100 / DENOMINATOR,
            )
            return False
        return True
