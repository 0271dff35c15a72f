"""Debt token protocol: fungible token with privileged mint/burn."""
from typing import Protocol


class DebtToken(Protocol):
    def mint(self, to: str, amount: int) -> None: ...

    def burn(self, holder: str, amount: int) -> None: ...

    def transfer(self, sender: str, recipient: str, amount: int) -> None: ...

    def transfer_from(
        self, spender: str, holder: str, recipient: str, amount: int
    ) -> None: ...

    def balance_of(self, holder: str) -> int: ...

    def allowance(self, holder: str, spender: str) -> int: ...

    def approve(self, holder: str, spender: str, amount: int) -> None: ...

    @property
    def total_supply(self) -> int: ...
