"""In-memory implementations of the engine's external collaborators."""
from .debt_token import DebtToken
from .governance import ProtocolGovernance
from .vault_registry import VaultRegistry

__all__ = ["DebtToken", "ProtocolGovernance", "VaultRegistry"]
