"""
Owner policies and recipient allowlists.

Each owner configures their own spending bounds. Policies are read at
intent creation and snapshotted into the record, so editing a policy
never changes intents that already exist.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .errors import InvalidAddress, InvalidAmount
from .intent import is_null_address, normalize_address
from .journal import UndoJournal


@dataclass(frozen=True)
class Policy:
    """Spending bounds for one owner. ``max_per_intent == 0`` means unset."""

    max_per_intent: int = 0
    timelock_seconds: int = 0
    dispute_window_seconds: int = 0

    @property
    def is_set(self) -> bool:
        return self.max_per_intent > 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> Policy:
        return cls(**{k: int(v) for k, v in d.items()})


UNSET_POLICY = Policy()


class PolicyStore:
    """Per-owner policies and (owner, recipient) allowlist bits."""

    def __init__(self):
        self._policies: dict[str, Policy] = {}
        self._allowlist: dict[str, dict[str, bool]] = {}
        self.journal = UndoJournal()

    def set_policy(
        self,
        owner: str,
        max_per_intent: int,
        timelock_seconds: int,
        dispute_window_seconds: int,
    ) -> Policy:
        """Replace ``owner``'s policy wholesale."""
        owner = normalize_address(owner)
        if not _is_positive_int(max_per_intent):
            raise InvalidAmount(f"max_per_intent must be a positive integer, got {max_per_intent!r}")
        for name, value in (
            ("timelock_seconds", timelock_seconds),
            ("dispute_window_seconds", dispute_window_seconds),
        ):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidAmount(f"{name} must be a non-negative integer, got {value!r}")

        policy = Policy(
            max_per_intent=max_per_intent,
            timelock_seconds=timelock_seconds,
            dispute_window_seconds=dispute_window_seconds,
        )
        self.journal.remember(self._policies, owner)
        self._policies[owner] = policy
        return policy

    def get_policy(self, owner: str) -> Policy:
        return self._policies.get(normalize_address(owner), UNSET_POLICY)

    def set_recipient_allowed(self, owner: str, recipient: str, allowed: bool) -> None:
        owner = normalize_address(owner)
        recipient = normalize_address(recipient)
        if is_null_address(recipient):
            raise InvalidAddress("Recipient cannot be the null address")
        self.journal.remember(self._allowlist, owner, copier=dict)
        self._allowlist.setdefault(owner, {})[recipient] = bool(allowed)

    def is_recipient_allowed(self, owner: str, recipient: str) -> bool:
        entries = self._allowlist.get(normalize_address(owner), {})
        return entries.get(normalize_address(recipient), False) is True

    def allowed_recipients(self, owner: str) -> list[str]:
        entries = self._allowlist.get(normalize_address(owner), {})
        return sorted(r for r, allowed in entries.items() if allowed)

    def to_dict(self) -> dict:
        return {
            "policies": {owner: p.to_dict() for owner, p in self._policies.items()},
            "allowlist": {owner: dict(entries) for owner, entries in self._allowlist.items()},
        }

    @classmethod
    def from_dict(cls, d: dict) -> PolicyStore:
        store = cls()
        store._policies = {
            normalize_address(owner): Policy.from_dict(p) for owner, p in d.get("policies", {}).items()
        }
        store._allowlist = {
            normalize_address(owner): {normalize_address(r): bool(v) for r, v in entries.items()}
            for owner, entries in d.get("allowlist", {}).items()
        }
        return store


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0
