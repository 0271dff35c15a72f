"""In-memory fungible debt token."""
from __future__ import annotations

import logging
from collections import defaultdict

from ..errors import InsufficientAllowance, InsufficientBalance, InvalidParameter

logger = logging.getLogger(__name__)


class DebtToken:
    """Balances, allowances and supply of the pegged debt token."""

    def __init__(self, symbol: str = "BOB", decimals: int = 18) -> None:
        self.symbol = symbol
        self.decimals = decimals
        self._balances: dict[str, int] = defaultdict(int)
        self._allowances: dict[tuple[str, str], int] = defaultdict(int)
        self._total_supply = 0

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def total_supply(self) -> int:
        return self._total_supply

    def balance_of(self, holder: str) -> int:
        return self._balances.get(holder, 0)

    def allowance(self, holder: str, spender: str) -> int:
        return self._allowances.get((holder, spender), 0)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def approve(self, holder: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise InvalidParameter("Allowance must be >= 0")
        self._allowances[(holder, spender)] = amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        self._move(sender, recipient, amount)

    def transfer_from(self, spender: str, holder: str, recipient: str, amount: int) -> None:
        allowed = self.allowance(holder, spender)
        if spender != holder and allowed < amount:
            raise InsufficientAllowance(
                f"{spender} may spend {allowed} of {holder}, needs {amount}"
            )
        self._move(holder, recipient, amount)
        if spender != holder:
            self._allowances[(holder, spender)] = allowed - amount

    def _move(self, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise InvalidParameter("Transfer amount must be >= 0")
        balance = self.balance_of(sender)
        if balance < amount:
            raise InsufficientBalance(f"{sender} holds {balance}, needs {amount}")
        self._balances[sender] = balance - amount
        self._balances[recipient] += amount

    # ------------------------------------------------------------------
    # Supply
    # ------------------------------------------------------------------

    def mint(self, to: str, amount: int) -> None:
        if amount < 0:
            raise InvalidParameter("Mint amount must be >= 0")
        self._balances[to] += amount
        self._total_supply += amount
        logger.debug("Minted %d %s to %s", amount, self.symbol, to)

    def burn(self, holder: str, amount: int) -> None:
        if amount < 0:
            raise InvalidParameter("Burn amount must be >= 0")
        balance = self.balance_of(holder)
        if balance < amount:
            raise InsufficientBalance(f"{holder} holds {balance}, cannot burn {amount}")
        self._balances[holder] = balance - amount
        self._total_supply -= amount
        logger.debug("Burned %d %s from %s", amount, self.symbol, holder)
