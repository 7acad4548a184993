"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from payguard.audit import AuditTrail, EscrowEvent, EventType


EVIDENCE = "0x" + "ab" * 32


@pytest.fixture
def trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(tmp_path, trail):
    trail.record(EscrowEvent(EventType.DEPOSITED.value, 1, owner="0x" + "11" * 20, amount=10))
    trail.record(EscrowEvent(EventType.WITHDRAWN.value, 2, owner="0x" + "11" * 20, amount=5))

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = 9999
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_chain_survives_reopen(tmp_path, trail):
    trail.record(EscrowEvent(EventType.DEPOSITED.value, 1, owner="0x" + "11" * 20, amount=10))
    reopened = AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )
    reopened.record(EscrowEvent(EventType.WITHDRAWN.value, 2, owner="0x" + "11" * 20, amount=5))
    assert [e.event_type for e in reopened.read_events()] == ["deposited", "withdrawn"]


def test_engine_lifecycle_is_audited(funded, owner, recipient, clock, signed_intent, trail):
    funded.subscribe(trail)
    intent, signature = signed_intent()
    h = funded.create_intent(owner.address, intent, signature)
    funded.claim_intent(recipient.address, h, EVIDENCE)
    clock.advance(60)
    funded.finalize_intent(recipient.address, h)

    events = trail.read_events(intent_hash=h)
    assert [e.event_type for e in events] == [
        EventType.INTENT_CREATED.value,
        EventType.INTENT_CLAIMED.value,
        EventType.INTENT_FINALIZED.value,
    ]
    assert events[1].details == {"evidence_hash": EVIDENCE}

    summary = trail.summary(owner=owner.address)
    assert summary["total_events"] == 3
    assert summary["by_type"][EventType.INTENT_FINALIZED.value] == 1


def test_filter_by_event_type(trail):
    trail.record(EscrowEvent(EventType.DEPOSITED.value, 1, owner="0x" + "11" * 20, amount=10))
    trail.record(EscrowEvent(EventType.WITHDRAWN.value, 2, owner="0x" + "11" * 20, amount=5))
    events = trail.read_events(event_type=EventType.WITHDRAWN)
    assert len(events) == 1
    assert events[0].amount == 5


def test_default_key_kept_outside_audit_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("PAYGUARD_HOME", str(tmp_path / ".payguard"))
    monkeypatch.delenv("PAYGUARD_AUDIT_HMAC_KEY", raising=False)
    trail = AuditTrail()
    assert trail.path.parent == tmp_path / ".payguard"
    assert trail.key_path.parent == tmp_path / ".payguard-secrets"
    assert trail.key_path.read_bytes()
