"""Service modules"""
from .fees import FeeAccrualLedger
from .keeper import Keeper
from .liquidation import compute_liquidation, settle_liquidation, unsettle_liquidation
from .valuation import PositionValuationOracle
from .vault import VaultLedger

__all__ = [
    "FeeAccrualLedger",
    "Keeper",
    "PositionValuationOracle",
    "VaultLedger",
    "compute_liquidation",
    "settle_liquidation",
    "unsettle_liquidation",
]
