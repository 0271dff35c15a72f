"""In-memory vault ownership registry (one non-fungible token per vault)."""
from __future__ import annotations

import logging

from ..errors import AccessDenied, InvalidVault

logger = logging.getLogger(__name__)


class VaultRegistry:
    """Sequential vault ids, owners and operator approvals."""

    def __init__(self) -> None:
        self._next_id = 1
        self._owners: dict[int, str] = {}
        self._approved: dict[int, str] = {}
        self._operators: set[tuple[str, str]] = set()

    def mint(self, owner: str) -> int:
        vault_id = self._next_id
        self._next_id += 1
        self._owners[vault_id] = owner
        logger.debug("Minted vault token %d to %s", vault_id, owner)
        return vault_id

    def burn(self, vault_id: int) -> None:
        if vault_id not in self._owners:
            raise InvalidVault(f"Vault token {vault_id} does not exist")
        del self._owners[vault_id]
        self._approved.pop(vault_id, None)

    def owner_of(self, vault_id: int) -> str:
        try:
            return self._owners[vault_id]
        except KeyError:
            raise InvalidVault(f"Vault token {vault_id} does not exist") from None

    def exists(self, vault_id: int) -> bool:
        return vault_id in self._owners

    def approve(self, caller: str, vault_id: int, operator: str) -> None:
        if self.owner_of(vault_id) != caller:
            raise AccessDenied(f"{caller} does not own vault {vault_id}")
        self._approved[vault_id] = operator

    def set_approval_for_all(self, owner: str, operator: str, approved: bool) -> None:
        if approved:
            self._operators.add((owner, operator))
        else:
            self._operators.discard((owner, operator))

    def transfer(self, caller: str, vault_id: int, recipient: str) -> None:
        if not self.is_authorized(vault_id, caller):
            raise AccessDenied(f"{caller} may not transfer vault {vault_id}")
        self._owners[vault_id] = recipient
        self._approved.pop(vault_id, None)

    def is_authorized(self, vault_id: int, caller: str) -> bool:
        owner = self._owners.get(vault_id)
        if owner is None:
            return False
        return (
            caller == owner
            or self._approved.get(vault_id) == caller
            or (owner, caller) in self._operators
        )
