"""Tests for owner policies and recipient allowlists."""

import pytest
from eth_account import Account

from payguard.errors import InvalidAddress, InvalidAmount
from payguard.intent import NULL_ADDRESS
from payguard.policy import Policy, PolicyStore, UNSET_POLICY


OWNER = Account.create().address
RECIPIENT = Account.create().address


class TestPolicyStore:
    def test_unset_policy_by_default(self):
        store = PolicyStore()
        assert store.get_policy(OWNER) == UNSET_POLICY
        assert not store.get_policy(OWNER).is_set

    def test_set_policy_replaces_wholesale(self):
        store = PolicyStore()
        store.set_policy(OWNER, 5, 60, 30)
        store.set_policy(OWNER, 7, 0, 0)
        assert store.get_policy(OWNER) == Policy(7, 0, 0)

    def test_policy_lookup_is_case_insensitive(self):
        store = PolicyStore()
        store.set_policy(OWNER.lower(), 5, 60, 30)
        assert store.get_policy(OWNER.upper().replace("0X", "0x")).max_per_intent == 5

    @pytest.mark.parametrize("cap", [0, -1, True, 1.5])
    def test_rejects_non_positive_cap(self, cap):
        with pytest.raises(InvalidAmount):
            PolicyStore().set_policy(OWNER, cap, 60, 60)

    def test_rejects_negative_windows(self):
        store = PolicyStore()
        with pytest.raises(InvalidAmount):
            store.set_policy(OWNER, 5, -1, 60)
        with pytest.raises(InvalidAmount):
            store.set_policy(OWNER, 5, 60, -1)

    def test_zero_windows_allowed(self):
        policy = PolicyStore().set_policy(OWNER, 5, 0, 0)
        assert policy.timelock_seconds == 0
        assert policy.dispute_window_seconds == 0


class TestAllowlist:
    def test_default_deny(self):
        assert not PolicyStore().is_recipient_allowed(OWNER, RECIPIENT)

    def test_allow_and_revoke(self):
        store = PolicyStore()
        store.set_recipient_allowed(OWNER, RECIPIENT, True)
        assert store.is_recipient_allowed(OWNER, RECIPIENT)
        assert store.allowed_recipients(OWNER) == [RECIPIENT.lower()]

        store.set_recipient_allowed(OWNER, RECIPIENT, False)
        assert not store.is_recipient_allowed(OWNER, RECIPIENT)
        assert store.allowed_recipients(OWNER) == []

    def test_allowlist_is_per_owner(self):
        store = PolicyStore()
        store.set_recipient_allowed(OWNER, RECIPIENT, True)
        assert not store.is_recipient_allowed(Account.create().address, RECIPIENT)

    def test_null_recipient_rejected(self):
        with pytest.raises(InvalidAddress):
            PolicyStore().set_recipient_allowed(OWNER, NULL_ADDRESS, True)

    def test_journal_rollback(self):
        store = PolicyStore()
        store.set_policy(OWNER, 5, 60, 60)
        store.journal.begin()
        store.set_policy(OWNER, 9, 1, 1)
        store.set_recipient_allowed(OWNER, RECIPIENT, True)
        store.journal.rollback()
        assert store.get_policy(OWNER).max_per_intent == 5
        assert not store.is_recipient_allowed(OWNER, RECIPIENT)

    def test_dict_round_trip(self):
        store = PolicyStore()
        store.set_policy(OWNER, 5, 60, 30)
        store.set_recipient_allowed(OWNER, RECIPIENT, True)
        loaded = PolicyStore.from_dict(store.to_dict())
        assert loaded.get_policy(OWNER) == Policy(5, 60, 30)
        assert loaded.is_recipient_allowed(OWNER, RECIPIENT)
