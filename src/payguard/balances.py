"""
Per-owner balance accounting.

``deposited`` is everything an owner has put in minus withdrawals and
payouts; ``locked`` is the part reserved by intents that have not reached
a terminal state. Every mutation re-checks ``0 <= locked <= deposited``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import InsufficientAvailableBalance, InvalidAmount, LedgerInvariantError
from .intent import normalize_address
from .journal import UndoJournal


@dataclass
class BalanceAccount:
    """Deposited and locked totals for one owner."""

    deposited: int = 0
    locked: int = 0

    @property
    def available(self) -> int:
        return self.deposited - self.locked

    def to_dict(self) -> dict:
        return {"deposited": str(self.deposited), "locked": str(self.locked)}

    @classmethod
    def from_dict(cls, d: dict) -> BalanceAccount:
        return cls(deposited=int(d["deposited"]), locked=int(d["locked"]))


class BalanceLedger:
    """Keyed store of balance accounts; the accounting invariant lives here."""

    def __init__(self):
        self._accounts: dict[str, BalanceAccount] = {}
        self.journal = UndoJournal()

    def account(self, owner: str) -> BalanceAccount:
        """Return a copy of ``owner``'s account (zeroed if never seen)."""
        acct = self._accounts.get(normalize_address(owner))
        if acct is None:
            return BalanceAccount()
        return BalanceAccount(deposited=acct.deposited, locked=acct.locked)

    def available(self, owner: str) -> int:
        return self.account(owner).available

    def credit(self, owner: str, amount: int) -> BalanceAccount:
        """Record a deposit."""
        _require_positive(amount)
        return self._apply(owner, deposited_delta=amount)

    def debit(self, owner: str, amount: int) -> BalanceAccount:
        """Record a withdrawal of unlocked funds."""
        _require_positive(amount)
        available = self.available(owner)
        if amount > available:
            raise InsufficientAvailableBalance(amount, available)
        return self._apply(owner, deposited_delta=-amount)

    def lock(self, owner: str, amount: int) -> BalanceAccount:
        """Reserve available funds against a new intent."""
        _require_positive(amount)
        available = self.available(owner)
        if amount > available:
            raise InsufficientAvailableBalance(amount, available)
        return self._apply(owner, locked_delta=amount)

    def release(self, owner: str, amount: int) -> BalanceAccount:
        """Return locked funds to available after a cancellation."""
        _require_positive(amount)
        return self._apply(owner, locked_delta=-amount)

    def settle(self, owner: str, amount: int) -> BalanceAccount:
        """Remove locked funds from the ledger for a payout."""
        _require_positive(amount)
        return self._apply(owner, deposited_delta=-amount, locked_delta=-amount)

    def owners(self) -> list[str]:
        return sorted(self._accounts)

    def _apply(self, owner: str, deposited_delta: int = 0, locked_delta: int = 0) -> BalanceAccount:
        owner = normalize_address(owner)
        current = self.account(owner)
        updated = BalanceAccount(
            deposited=current.deposited + deposited_delta,
            locked=current.locked + locked_delta,
        )
        self._checked(owner, updated)
        self.journal.remember(self._accounts, owner)
        self._accounts[owner] = updated
        return BalanceAccount(deposited=updated.deposited, locked=updated.locked)

    def _checked(self, owner: str, acct: BalanceAccount) -> None:
        if not 0 <= acct.locked <= acct.deposited:
            raise LedgerInvariantError(
                f"Balance invariant violated for {owner}: "
                f"locked={acct.locked} deposited={acct.deposited}"
            )

    def to_dict(self) -> dict:
        return {owner: acct.to_dict() for owner, acct in self._accounts.items()}

    @classmethod
    def from_dict(cls, d: dict) -> BalanceLedger:
        ledger = cls()
        for owner, raw in d.items():
            acct = BalanceAccount.from_dict(raw)
            ledger._checked(owner, acct)
            ledger._accounts[normalize_address(owner)] = acct
        return ledger


def _require_positive(amount: Any) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")
