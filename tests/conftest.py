"""Shared fixtures: a funded owner, an allowlisted recipient, and a manual clock."""

import pytest
from eth_account import Account

from payguard.clock import ManualClock
from payguard.engine import EscrowEngine
from payguard.intent import EscrowDomain, PaymentIntent, job_id_from_label, sign_intent
from payguard.ledger import InMemoryTokenLedger


UNIT = 1_000_000
CHAIN_ID = 84532
ESCROW = "0x" + "e5" * 20
START = 1_700_000_000


@pytest.fixture
def owner():
    return Account.create()


@pytest.fixture
def recipient():
    return Account.create()


@pytest.fixture
def domain():
    return EscrowDomain(chain_id=CHAIN_ID, verifying_contract=ESCROW)


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def token(owner):
    ledger = InMemoryTokenLedger(ESCROW)
    ledger.mint(owner.address, 100 * UNIT)
    ledger.approve(owner.address, 100 * UNIT)
    return ledger


@pytest.fixture
def engine(token, domain, clock):
    return EscrowEngine(token, domain, clock=clock)


@pytest.fixture
def funded(engine, owner, recipient):
    """Engine where the owner deposited 10 units under cap=5, timelock=60s, dispute=60s."""
    engine.set_policy(owner.address, 5 * UNIT, 60, 60)
    engine.set_recipient_allowed(owner.address, recipient.address, True)
    engine.deposit(owner.address, 10 * UNIT)
    return engine


@pytest.fixture
def make_intent(owner, recipient, clock):
    def _make(**overrides):
        fields = dict(
            owner=owner.address,
            recipient=recipient.address,
            amount=2 * UNIT,
            job_id=job_id_from_label("job-1"),
            nonce=1,
            expiry=clock.now() + 3600,
        )
        fields.update(overrides)
        return PaymentIntent(**fields)

    return _make


@pytest.fixture
def signed_intent(owner, domain, make_intent):
    """Build an intent and sign it with the owner's key."""

    def _signed(**overrides):
        intent = make_intent(**overrides)
        return intent, sign_intent(owner.key.hex(), intent, domain)

    return _signed
