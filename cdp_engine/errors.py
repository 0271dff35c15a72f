"""Error taxonomy raised by the vault engine.

Every error aborts the whole call; the ledger restores its state before the
exception leaves the entry point. ``kind`` is a stable identifier for
off-chain tooling, ``retryable`` tells a caller whether resubmitting later
can succeed without changing the request.
"""
from __future__ import annotations


class ProtocolError(Exception):
    """Base error class for protocol errors."""

    kind = "ProtocolError"
    retryable = False


class AccessDenied(ProtocolError):
    """Caller is not the owner, not an admin or not allow-listed."""

    kind = "AccessDenied"


class CollateralUnderflow(ProtocolError):
    """Deposited position is worth less than the minimum single collateral."""

    kind = "CollateralUnderflow"


class CollateralOverflow(ProtocolError):
    """Deposit would exceed a per-asset exposure cap."""

    kind = "CollateralOverflow"


class CollateralTokenOverflow(CollateralOverflow):
    """Exposure cap exceeded for one specific asset."""

    kind = "CollateralTokenOverflow"

    def __init__(self, token: str, exposure: int, limit: int) -> None:
        super().__init__(
            f"Exposure to {token} would reach {exposure}, limit is {limit}"
        )
        self.token = token
        self.exposure = exposure
        self.limit = limit


class PositionUnhealthy(ProtocolError):
    """Post-action collateral value is below the owed debt."""

    kind = "PositionUnhealthy"


class PositionHealthy(ProtocolError):
    """Liquidation attempted on a solvent vault."""

    kind = "PositionHealthy"


class DebtCeilingExceeded(ProtocolError):
    kind = "DebtCeilingExceeded"


class UnpaidDebt(ProtocolError):
    """Vault close attempted with non-zero owed debt."""

    kind = "UnpaidDebt"


class PriceUnavailable(ProtocolError):
    """A price query failed; valuation cannot proceed."""

    kind = "PriceUnavailable"
    retryable = True


class InvalidParameter(ProtocolError, ValueError):
    """Governance or call input outside its allowed range."""

    kind = "InvalidParameter"


class InvalidPosition(ProtocolError):
    """Unknown position, malformed venue data or position not held here."""

    kind = "InvalidPosition"


class InvalidPool(ProtocolError):
    """Position belongs to a pool that is not whitelisted."""

    kind = "InvalidPool"


class InvalidVault(ProtocolError):
    kind = "InvalidVault"


class PositionsLimitExceeded(ProtocolError):
    kind = "PositionsLimitExceeded"


class Paused(ProtocolError):
    kind = "Paused"


class Reentrancy(ProtocolError):
    """A mutating entry point was re-entered before the outer call finished."""

    kind = "Reentrancy"


class InsufficientBalance(ProtocolError):
    kind = "InsufficientBalance"


class InsufficientAllowance(ProtocolError):
    kind = "InsufficientAllowance"
