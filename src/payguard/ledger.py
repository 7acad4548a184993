"""
Ledger adapter: the external token that actually moves value.

The escrow only needs two primitives, pull-from-owner and push-to-address.
Both either complete or raise ``TransferError``. A transfer may call back
into the escrow before it returns (token hooks, malicious recipients), so
the engine commits its own state before calling either primitive.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

from .errors import TransferError
from .intent import is_null_address, normalize_address

logger = logging.getLogger(__name__)

TransferHook = Callable[[str, str, int], None]


class TokenLedger(Protocol):
    def transfer_in(self, source: str, amount: int) -> None: ...

    def transfer_out(self, destination: str, amount: int) -> None: ...


class InMemoryTokenLedger:
    """ERC-20 style token with the escrow as approved spender and holder.

    ``on_transfer`` runs after every successful move, before the call
    returns, with ``(sender, receiver, amount)``. If it raises, the move is
    reverted and the exception propagates, the way a reverting token hook
    unwinds an on-chain transfer.
    """

    def __init__(self, escrow_address: str, symbol: str = "USDC", decimals: int = 6):
        self.escrow_address = normalize_address(escrow_address)
        self.symbol = symbol
        self.decimals = decimals
        self.on_transfer: Optional[TransferHook] = None
        self._balances: dict[str, int] = {}
        self._allowances: dict[str, int] = {}
        self._blocked: set[str] = set()

    def mint(self, account: str, amount: int) -> None:
        account = normalize_address(account)
        self._balances[account] = self._balances.get(account, 0) + int(amount)

    def approve(self, owner: str, amount: int) -> None:
        """Let the escrow pull up to ``amount`` from ``owner``."""
        self._allowances[normalize_address(owner)] = int(amount)

    def allowance(self, owner: str) -> int:
        return self._allowances.get(normalize_address(owner), 0)

    def balance_of(self, account: str) -> int:
        return self._balances.get(normalize_address(account), 0)

    def block(self, account: str) -> None:
        """Refuse every transfer to or from ``account``."""
        self._blocked.add(normalize_address(account))

    def unblock(self, account: str) -> None:
        self._blocked.discard(normalize_address(account))

    def transfer_in(self, source: str, amount: int) -> None:
        source = normalize_address(source)
        allowance = self.allowance(source)
        if amount > allowance:
            raise TransferError(f"Allowance {allowance} below {amount} for {source}")
        self._move(source, self.escrow_address, amount)
        self._allowances[source] = allowance - amount
        try:
            self._notify(source, self.escrow_address, amount)
        except BaseException:
            self._allowances[source] = allowance
            raise

    def transfer_out(self, destination: str, amount: int) -> None:
        self._move(self.escrow_address, normalize_address(destination), amount)
        self._notify(self.escrow_address, normalize_address(destination), amount)

    def _move(self, sender: str, receiver: str, amount: int) -> None:
        if amount <= 0:
            raise TransferError(f"Invalid transfer amount {amount}")
        if is_null_address(receiver):
            raise TransferError("Transfer to the null address")
        if sender in self._blocked or receiver in self._blocked:
            raise TransferError(f"Transfer {sender} -> {receiver} blocked")
        balance = self.balance_of(sender)
        if balance < amount:
            raise TransferError(f"Balance {balance} below {amount} for {sender}")
        self._balances[sender] = balance - amount
        self._balances[receiver] = self.balance_of(receiver) + amount

    def _notify(self, sender: str, receiver: str, amount: int) -> None:
        if self.on_transfer is None:
            return
        try:
            self.on_transfer(sender, receiver, amount)
        except BaseException:
            logger.warning("Transfer hook raised; reverting %s -> %s (%d)", sender, receiver, amount)
            self._balances[receiver] -= amount
            self._balances[sender] = self.balance_of(sender) + amount
            raise
