"""
Intent registry: every authorization from creation to terminal resolution.

Records are keyed by intent hash and never deleted. Each transition checks
its guards before touching a flag, and the terminal flags (``finalized``,
``canceled``) are monotone: once set, every further transition is refused.

    Created -> Claimed -> Finalized
       |          |
       |          +-> Disputed -> Finalized | Canceled
       +-> Canceled
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from .errors import (
    AlreadyCanceled,
    AlreadyClaimed,
    AlreadyFinalized,
    DisputeWindowClosed,
    IntentAlreadyExists,
    IntentExpired,
    IntentIsDisputed,
    IntentNotFound,
    InvalidEvidenceHash,
    NonceAlreadyUsed,
    NotClaimed,
    NotDisputed,
    NotOwner,
    NotRecipient,
    TimelockNotElapsed,
)
from .intent import PaymentIntent, normalize_address, normalize_hex32
from .journal import UndoJournal
from .policy import Policy


class IntentStatus(str, Enum):
    CREATED = "created"
    CLAIMED = "claimed"
    DISPUTED = "disputed"
    FINALIZED = "finalized"
    CANCELED = "canceled"


@dataclass
class IntentRecord:
    """Registered intent plus policy snapshots and lifecycle flags."""

    intent_hash: str
    owner: str
    recipient: str
    amount: int
    job_id: str
    nonce: int
    expiry: int
    created_at: int
    timelock_ends_at: int
    dispute_ends_at: int
    claimed: bool = False
    finalized: bool = False
    canceled: bool = False
    disputed: bool = False
    evidence_hash: Optional[str] = None

    @property
    def status(self) -> IntentStatus:
        if self.finalized:
            return IntentStatus.FINALIZED
        if self.canceled:
            return IntentStatus.CANCELED
        if self.disputed:
            return IntentStatus.DISPUTED
        if self.claimed:
            return IntentStatus.CLAIMED
        return IntentStatus.CREATED

    @property
    def is_terminal(self) -> bool:
        return self.finalized or self.canceled

    def to_dict(self) -> dict:
        return {
            "intent_hash": self.intent_hash,
            "owner": self.owner,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "job_id": self.job_id,
            "nonce": str(self.nonce),
            "expiry": self.expiry,
            "created_at": self.created_at,
            "timelock_ends_at": self.timelock_ends_at,
            "dispute_ends_at": self.dispute_ends_at,
            "claimed": self.claimed,
            "finalized": self.finalized,
            "canceled": self.canceled,
            "disputed": self.disputed,
            "evidence_hash": self.evidence_hash,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> IntentRecord:
        return cls(
            intent_hash=normalize_hex32(d["intent_hash"], "intent_hash"),
            owner=normalize_address(d["owner"]),
            recipient=normalize_address(d["recipient"]),
            amount=int(d["amount"]),
            job_id=normalize_hex32(d["job_id"], "job_id"),
            nonce=int(d["nonce"]),
            expiry=int(d["expiry"]),
            created_at=int(d["created_at"]),
            timelock_ends_at=int(d["timelock_ends_at"]),
            dispute_ends_at=int(d["dispute_ends_at"]),
            claimed=bool(d.get("claimed", False)),
            finalized=bool(d.get("finalized", False)),
            canceled=bool(d.get("canceled", False)),
            disputed=bool(d.get("disputed", False)),
            evidence_hash=d.get("evidence_hash"),
        )


class IntentRegistry:
    """Intent records, per-owner nonce sets, and the lifecycle transitions."""

    def __init__(self):
        self._records: dict[str, IntentRecord] = {}
        self._nonces: dict[str, set[int]] = {}
        self._by_owner: dict[str, list[str]] = {}
        self.journal = UndoJournal()

    # ── Reads ─────────────────────────────────────────────────────

    def exists(self, intent_hash: str) -> bool:
        return _key(intent_hash) in self._records

    def get(self, intent_hash: str) -> IntentRecord:
        return replace(self._require(intent_hash))

    def is_nonce_used(self, owner: str, nonce: int) -> bool:
        return nonce in self._nonces.get(normalize_address(owner), set())

    def hashes_for(self, owner: str) -> list[str]:
        return list(self._by_owner.get(normalize_address(owner), []))

    def owners(self) -> list[str]:
        return sorted(self._by_owner)

    def locked_total(self, owner: str) -> int:
        """Sum of amounts over ``owner``'s non-terminal intents."""
        return sum(
            self._records[h].amount
            for h in self._by_owner.get(normalize_address(owner), [])
            if not self._records[h].is_terminal
        )

    def __len__(self) -> int:
        return len(self._records)

    # ── Transitions ───────────────────────────────────────────────

    def register(
        self,
        intent: PaymentIntent,
        intent_hash: str,
        created_at: int,
        policy: Policy,
    ) -> IntentRecord:
        """Record a validated intent, consuming its nonce."""
        key = _key(intent_hash)
        if key in self._records:
            raise IntentAlreadyExists(key)
        if self.is_nonce_used(intent.owner, intent.nonce):
            raise NonceAlreadyUsed(intent.owner, intent.nonce)

        record = IntentRecord(
            intent_hash=key,
            owner=intent.owner,
            recipient=intent.recipient,
            amount=intent.amount,
            job_id=intent.job_id,
            nonce=intent.nonce,
            expiry=intent.expiry,
            created_at=created_at,
            timelock_ends_at=created_at + policy.timelock_seconds,
            dispute_ends_at=created_at + policy.dispute_window_seconds,
        )
        self.journal.remember(self._records, key)
        self.journal.remember(self._nonces, intent.owner, copier=set)
        self.journal.remember(self._by_owner, intent.owner, copier=list)
        self._nonces.setdefault(intent.owner, set()).add(intent.nonce)
        self._records[key] = record
        self._by_owner.setdefault(intent.owner, []).append(key)
        return replace(record)

    def claim(self, intent_hash: str, caller: str, evidence_hash: str, now: int) -> IntentRecord:
        record = self._require(intent_hash)
        if normalize_address(caller) != record.recipient:
            raise NotRecipient(record.intent_hash)
        _require_open(record)
        if record.claimed:
            raise AlreadyClaimed(record.intent_hash)
        if now > record.expiry:
            raise IntentExpired(record.expiry, now)

        try:
            evidence = normalize_hex32(evidence_hash, "evidence_hash")
        except ValueError as e:
            raise InvalidEvidenceHash(str(e)) from e

        self._edit(record)
        record.claimed = True
        record.evidence_hash = evidence
        return replace(record)

    def cancel(self, intent_hash: str, caller: str) -> IntentRecord:
        record = self._require(intent_hash)
        _require_owner(record, caller)
        _require_open(record)
        if record.claimed:
            raise AlreadyClaimed(record.intent_hash)

        self._edit(record)
        record.canceled = True
        return replace(record)

    def dispute(self, intent_hash: str, caller: str, now: int) -> IntentRecord:
        record = self._require(intent_hash)
        _require_owner(record, caller)
        _require_open(record)
        if not record.claimed:
            raise NotClaimed(record.intent_hash)
        if record.disputed:
            raise IntentIsDisputed(record.intent_hash)
        if now > record.dispute_ends_at:
            raise DisputeWindowClosed(record.intent_hash, record.dispute_ends_at, now)

        self._edit(record)
        record.disputed = True
        return replace(record)

    def resolve(self, intent_hash: str, caller: str, pay_out: bool) -> IntentRecord:
        """Close a dispute. Owner-approved payouts skip the timelock."""
        record = self._require(intent_hash)
        _require_owner(record, caller)
        _require_open(record)
        if not record.disputed:
            raise NotDisputed(record.intent_hash)

        self._edit(record)
        if pay_out:
            record.finalized = True
        else:
            record.canceled = True
        return replace(record)

    def finalize(self, intent_hash: str, now: int) -> IntentRecord:
        record = self._require(intent_hash)
        _require_open(record)
        if not record.claimed:
            raise NotClaimed(record.intent_hash)
        if record.disputed:
            raise IntentIsDisputed(record.intent_hash)
        if now < record.timelock_ends_at:
            raise TimelockNotElapsed(record.intent_hash, record.timelock_ends_at, now)

        self._edit(record)
        record.finalized = True
        return replace(record)

    # ── Persistence ───────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "intents": [self._records[h].to_dict() for owner in self._by_owner for h in self._by_owner[owner]],
            "nonces": {owner: [str(n) for n in sorted(nonces)] for owner, nonces in self._nonces.items()},
        }

    @classmethod
    def from_dict(cls, d: dict) -> IntentRegistry:
        registry = cls()
        for raw in d.get("intents", []):
            record = IntentRecord.from_dict(raw)
            registry._records[record.intent_hash] = record
            registry._by_owner.setdefault(record.owner, []).append(record.intent_hash)
        for owner, nonces in d.get("nonces", {}).items():
            registry._nonces[normalize_address(owner)] = {int(n) for n in nonces}
        for owner in registry._by_owner:
            registry._by_owner[owner].sort(key=lambda h: registry._records[h].created_at)
        return registry

    def _edit(self, record: IntentRecord) -> None:
        self.journal.remember(self._records, record.intent_hash, copier=replace)

    def _require(self, intent_hash: str) -> IntentRecord:
        key = _key(intent_hash)
        record = self._records.get(key)
        if record is None:
            raise IntentNotFound(key)
        return record


def _key(intent_hash: str) -> str:
    try:
        return normalize_hex32(intent_hash, "intent_hash")
    except ValueError as e:
        raise IntentNotFound(str(intent_hash)) from e


def _require_owner(record: IntentRecord, caller: str) -> None:
    if normalize_address(caller) != record.owner:
        raise NotOwner(record.intent_hash)


def _require_open(record: IntentRecord) -> None:
    if record.canceled:
        raise AlreadyCanceled(record.intent_hash)
    if record.finalized:
        raise AlreadyFinalized(record.intent_hash)
