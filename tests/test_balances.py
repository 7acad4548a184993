"""Tests for per-owner balance accounting."""

import pytest
from eth_account import Account

from payguard.balances import BalanceAccount, BalanceLedger
from payguard.errors import InsufficientAvailableBalance, InvalidAmount, LedgerInvariantError


OWNER = Account.create().address


class TestBalanceLedger:
    def test_unknown_owner_is_zero(self):
        assert BalanceLedger().account(OWNER) == BalanceAccount(0, 0)

    def test_credit_lock_release_settle(self):
        ledger = BalanceLedger()
        ledger.credit(OWNER, 10)
        ledger.lock(OWNER, 4)
        assert ledger.account(OWNER) == BalanceAccount(10, 4)
        assert ledger.available(OWNER) == 6

        ledger.release(OWNER, 1)
        assert ledger.account(OWNER) == BalanceAccount(10, 3)

        ledger.settle(OWNER, 3)
        assert ledger.account(OWNER) == BalanceAccount(7, 0)

    def test_debit_limited_to_available(self):
        ledger = BalanceLedger()
        ledger.credit(OWNER, 10)
        ledger.lock(OWNER, 8)
        with pytest.raises(InsufficientAvailableBalance) as exc:
            ledger.debit(OWNER, 3)
        assert exc.value.available == 2
        assert ledger.account(OWNER) == BalanceAccount(10, 8)

    def test_lock_limited_to_available(self):
        ledger = BalanceLedger()
        ledger.credit(OWNER, 5)
        with pytest.raises(InsufficientAvailableBalance):
            ledger.lock(OWNER, 6)

    def test_release_more_than_locked_violates_invariant(self):
        ledger = BalanceLedger()
        ledger.credit(OWNER, 5)
        ledger.lock(OWNER, 2)
        with pytest.raises(LedgerInvariantError):
            ledger.release(OWNER, 3)
        assert ledger.account(OWNER) == BalanceAccount(5, 2)

    @pytest.mark.parametrize("amount", [0, -5, True, 1.0])
    def test_rejects_non_positive_amounts(self, amount):
        with pytest.raises(InvalidAmount):
            BalanceLedger().credit(OWNER, amount)

    def test_account_returns_copy(self):
        ledger = BalanceLedger()
        ledger.credit(OWNER, 5)
        ledger.account(OWNER).deposited = 999
        assert ledger.account(OWNER).deposited == 5

    def test_from_dict_rejects_inconsistent_account(self):
        with pytest.raises(LedgerInvariantError):
            BalanceLedger.from_dict({OWNER.lower(): {"deposited": "1", "locked": "2"}})
