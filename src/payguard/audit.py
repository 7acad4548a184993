"""
Escrow notifications and the audit trail that persists them.

Every committed state change produces one or more ``EscrowEvent``s. The
engine hands them to its sinks after the call commits; ``AuditTrail`` is a
sink that appends them to JSONL with an HMAC hash chain, so tampering is
detected when the trail is read back.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .storage import ensure_private_dir, ensure_private_file, payguard_home, payguard_secrets_dir


AUDIT_FILENAME = "audit.jsonl"
AUDIT_KEY_FILENAME = "audit_hmac.key"


class EventType(str, Enum):
    POLICY_UPDATED = "policy_updated"
    RECIPIENT_ALLOWED = "recipient_allowed"
    DEPOSITED = "deposited"
    WITHDRAWN = "withdrawn"
    INTENT_CREATED = "intent_created"
    INTENT_CLAIMED = "intent_claimed"
    INTENT_CANCELED = "intent_canceled"
    INTENT_DISPUTED = "intent_disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    INTENT_FINALIZED = "intent_finalized"


@dataclass
class EscrowEvent:
    """A single notification / audit entry."""

    event_type: str
    timestamp: int
    owner: Optional[str] = None
    actor: Optional[str] = None
    intent_hash: Optional[str] = None
    amount: Optional[int] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def payload(self) -> dict:
        return {
            k: v
            for k, v in asdict(self).items()
            if v is not None and k not in {"prev_hash", "event_hash"}
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log of escrow events."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or payguard_home() / AUDIT_FILENAME
        self.key_path = key_path or payguard_secrets_dir() / AUDIT_KEY_FILENAME

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._lock = threading.Lock()
        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def __call__(self, event: EscrowEvent) -> None:
        self.record(event)

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("PAYGUARD_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                last = json.loads(line).get("event_hash", "")
        return last

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def record(self, event: EscrowEvent) -> EscrowEvent:
        """Append ``event`` to the chain and return the stored copy."""
        with self._lock:
            payload = event.payload()
            prev_hash = self._last_hash
            current_hash = self._event_hash(payload, prev_hash)
            stored = EscrowEvent(**payload, prev_hash=prev_hash or None, event_hash=current_hash)

            with open(self.path, "a") as f:
                f.write(stored.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())

            self._last_hash = current_hash
            return stored

    def read_events(
        self,
        intent_hash: Optional[str] = None,
        owner: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[EscrowEvent]:
        """Read and verify the chain, returning the last ``limit`` matches."""
        events: list[EscrowEvent] = []
        expected_prev = ""
        with self._lock, open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                expected_hash = self._event_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if intent_hash and raw.get("intent_hash") != intent_hash.lower():
                    continue
                if owner and raw.get("owner") != owner.lower():
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue

                events.append(
                    EscrowEvent(**{k: v for k, v in raw.items() if k in EscrowEvent.__dataclass_fields__})
                )

            self._last_hash = expected_prev
        return events[-limit:]

    def summary(self, owner: Optional[str] = None) -> dict:
        events = self.read_events(owner=owner, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        return {
            "total_events": len(events),
            "by_type": by_type,
            "last_event": events[-1].to_json() if events else None,
        }
