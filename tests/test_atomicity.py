"""Rollback on transfer failure, reentrancy refusal, and concurrent callers."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from payguard.balances import BalanceAccount
from payguard.errors import PayGuardError, ReentrantCall, TransferError
from payguard.registry import IntentStatus


UNIT = 1_000_000
ESCROW = "0x" + "e5" * 20
EVIDENCE = "0x" + "ab" * 32


@pytest.fixture
def claimed(funded, owner, recipient, clock, signed_intent):
    intent, signature = signed_intent()
    h = funded.create_intent(owner.address, intent, signature)
    funded.claim_intent(recipient.address, h, EVIDENCE)
    clock.advance(60)
    return h


def _raise_transfer_error(*args):
    raise TransferError("ledger offline")


class TestTransferFailureRollback:
    def test_deposit_without_allowance(self, engine, token, owner):
        token.approve(owner.address, 0)
        with pytest.raises(TransferError):
            engine.deposit(owner.address, 5 * UNIT)
        assert engine.balance_of(owner.address) == BalanceAccount(0, 0)
        assert token.balance_of(ESCROW) == 0
        assert list(engine.events) == []

    def test_withdraw_to_blocked_account(self, funded, token, owner):
        token.block(owner.address)
        with pytest.raises(TransferError):
            funded.withdraw(owner.address, 1 * UNIT)
        assert funded.balance_of(owner.address) == BalanceAccount(10 * UNIT, 0)
        assert token.balance_of(ESCROW) == 10 * UNIT

    def test_failed_payout_keeps_intent_claimed(self, funded, token, owner, recipient, claimed):
        token.block(recipient.address)
        with pytest.raises(TransferError):
            funded.finalize_intent(recipient.address, claimed)
        assert funded.get_intent(claimed).status is IntentStatus.CLAIMED
        assert funded.balance_of(owner.address) == BalanceAccount(10 * UNIT, 2 * UNIT)

        token.unblock(recipient.address)
        funded.finalize_intent(recipient.address, claimed)
        assert token.balance_of(recipient.address) == 2 * UNIT

    def test_failed_dispute_payout_keeps_intent_disputed(self, funded, token, owner, recipient, claimed):
        funded.dispute_intent(owner.address, claimed)
        token.block(recipient.address)
        with pytest.raises(TransferError):
            funded.resolve_dispute(owner.address, claimed, True)

        assert funded.get_intent(claimed).status is IntentStatus.DISPUTED
        assert funded.balance_of(owner.address) == BalanceAccount(10 * UNIT, 2 * UNIT)
        assert token.balance_of(recipient.address) == 0
        assert token.balance_of(ESCROW) == 10 * UNIT

        token.unblock(recipient.address)
        funded.resolve_dispute(owner.address, claimed, True)
        assert token.balance_of(recipient.address) == 2 * UNIT

    def test_failed_create_leaves_nonce_unused(self, funded, owner, signed_intent):
        funded.balances.lock = _raise_transfer_error
        intent, signature = signed_intent()
        with pytest.raises(TransferError):
            funded.create_intent(owner.address, intent, signature)
        assert not funded.is_nonce_used(owner.address, intent.nonce)
        assert funded.intents_for(owner.address) == []


class TestReentrancy:
    def test_recipient_reentering_finalize_is_refused(self, funded, token, owner, recipient, claimed):
        calls = []

        def hook(sender, receiver, amount):
            calls.append(amount)
            funded.finalize_intent(recipient.address, claimed)

        token.on_transfer = hook
        with pytest.raises(ReentrantCall):
            funded.finalize_intent(recipient.address, claimed)

        token.on_transfer = None
        assert calls == [2 * UNIT]
        assert token.balance_of(recipient.address) == 0
        assert funded.get_intent(claimed).status is IntentStatus.CLAIMED
        assert funded.balance_of(owner.address) == BalanceAccount(10 * UNIT, 2 * UNIT)

    def test_hook_that_swallows_refusal_is_paid_once(self, funded, token, owner, recipient, claimed):
        refused = []

        def hook(sender, receiver, amount):
            try:
                funded.finalize_intent(recipient.address, claimed)
            except ReentrantCall:
                refused.append(True)

        token.on_transfer = hook
        funded.finalize_intent(recipient.address, claimed)
        token.on_transfer = None

        assert refused == [True]
        assert token.balance_of(recipient.address) == 2 * UNIT
        assert funded.balance_of(owner.address) == BalanceAccount(8 * UNIT, 0)

    def test_reentrant_withdraw_during_withdraw(self, funded, token, owner):
        def hook(sender, receiver, amount):
            funded.withdraw(owner.address, 1 * UNIT)

        token.on_transfer = hook
        with pytest.raises(ReentrantCall):
            funded.withdraw(owner.address, 10 * UNIT)
        token.on_transfer = None
        assert funded.balance_of(owner.address).deposited == 10 * UNIT
        assert token.balance_of(ESCROW) == 10 * UNIT


class TestConcurrency:
    def test_concurrent_creates_never_over_lock(self, funded, owner, signed_intent):
        signed = [signed_intent(nonce=n, amount=3 * UNIT) for n in range(1, 21)]

        def attempt(item) -> bool:
            intent, signature = item
            try:
                funded.create_intent(owner.address, intent, signature)
                return True
            except PayGuardError:
                return False

        with ThreadPoolExecutor(max_workers=10) as ex:
            results = list(ex.map(attempt, signed))

        assert sum(results) == 3
        account = funded.balance_of(owner.address)
        assert account.locked == 9 * UNIT
        assert account.locked == funded.registry.locked_total(owner.address)

    def test_concurrent_finalize_pays_once(self, funded, token, recipient, claimed):
        def attempt(_: int) -> bool:
            try:
                funded.finalize_intent(recipient.address, claimed)
                return True
            except PayGuardError:
                return False

        with ThreadPoolExecutor(max_workers=8) as ex:
            results = list(ex.map(attempt, range(16)))

        assert sum(results) == 1
        assert token.balance_of(recipient.address) == 2 * UNIT
