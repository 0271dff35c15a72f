"""Vault registry protocol: vault ownership tokens."""
from typing import Protocol


class VaultRegistry(Protocol):
    def mint(self, owner: str) -> int: ...

    def burn(self, vault_id: int) -> None: ...

    def owner_of(self, vault_id: int) -> str: ...

    def is_authorized(self, vault_id: int, caller: str) -> bool: ...

    def approve(self, caller: str, vault_id: int, operator: str) -> None: ...

    def set_approval_for_all(self, owner: str, operator: str, approved: bool) -> None: ...
