"""Liquidation settlement arithmetic.

Payment floor policy: the liquidator always pays at least the vault's
principal, never principal plus fee. In a deep shortfall the accrued fee is
therefore the first loss; the protocol's exposure is bounded by the unpaid
fee, never by principal.
"""
from __future__ import annotations

import functools
import logging
from typing import Callable

from ..constants import DENOMINATOR
from ..interfaces.debt_token import DebtToken
from ..liquidity_math import apply_fraction
from ..models import LiquidationQuote

logger = logging.getLogger(__name__)


def compute_liquidation(
    collateral_value: int,
    debt: int,
    owed_fee: int,
    liquidation_premium_d: int,
    liquidation_fee_d: int,
) -> LiquidationQuote:
    """Split the liquidator's payment between burn, treasury and owner.

    ``return_amount = max(collateral * (1 - premium), debt)``; ``debt`` is
    burned, the treasury takes ``owed_fee + collateral * liquidation_fee``
    capped to what is left, the owner receives the remainder.
    """
    discounted = apply_fraction(collateral_value, DENOMINATOR - liquidation_premium_d)
    return_amount = max(discounted, debt)

    available = return_amount - debt
    treasury_share = min(
        owed_fee + apply_fraction(collateral_value, liquidation_fee_d),
        available,
    )
    owner_share = max(0, available - treasury_share)

    return LiquidationQuote(
        collateral_value=collateral_value,
        debt=debt,
        owed_fee=owed_fee,
        return_amount=return_amount,
        treasury_share=treasury_share,
        owner_share=owner_share,
    )


def _flows(
    token: DebtToken,
    custody: str,
    liquidator: str,
    owner: str,
    treasury: str,
    quote: LiquidationQuote,
) -> list[tuple[Callable[[], None], Callable[[], None]]]:
    """Each debt-token leg of a liquidation paired with its inverse, in order."""

    def collect() -> None:
        token.transfer_from(custody, liquidator, custody, quote.return_amount)

    def refund() -> None:
        token.transfer(custody, liquidator, quote.return_amount)
        allowance = token.allowance(liquidator, custody)
        token.approve(liquidator, custody, allowance + quote.return_amount)

    legs = [
        (collect, refund),
        (
            functools.partial(token.burn, custody, quote.principal_burned),
            functools.partial(token.mint, custody, quote.principal_burned),
        ),
    ]
    for recipient, share in ((treasury, quote.treasury_share), (owner, quote.owner_share)):
        if share:
            legs.append((
                functools.partial(token.transfer, custody, recipient, share),
                functools.partial(token.transfer, recipient, custody, share),
            ))
    return legs


def settle_liquidation(
    token: DebtToken,
    custody: str,
    liquidator: str,
    owner: str,
    treasury: str,
    quote: LiquidationQuote,
) -> None:
    """Move the debt-token flows of a liquidation, all or nothing.

    The liquidator's payment lands in ``custody`` first, so every outgoing
    leg is funded by it: principal burned, treasury and owner paid out. If a
    leg fails, the legs already moved are reversed before the error propagates.
    """
    done: list[Callable[[], None]] = []
    try:
        for leg, inverse in _flows(token, custody, liquidator, owner, treasury, quote):
            leg()
            done.append(inverse)
    except Exception:
        for inverse in reversed(done):
            inverse()
        raise
    logger.info(
        "Liquidation settled: paid %d, burned %d, treasury %d, owner %d",
        quote.return_amount,
        quote.principal_burned,
        quote.treasury_share,
        quote.owner_share,
    )


def unsettle_liquidation(
    token: DebtToken,
    custody: str,
    liquidator: str,
    owner: str,
    treasury: str,
    quote: LiquidationQuote,
) -> None:
    """Reverse a completed :func:`settle_liquidation` with the same arguments."""
    for _, inverse in reversed(_flows(token, custody, liquidator, owner, treasury, quote)):
        inverse()
    logger.info("Liquidation settlement reversed: refunded %d", quote.return_amount)
