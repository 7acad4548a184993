"""
Escrow engine: deposit, withdraw, and the intent lifecycle.

Flow for a paid intent:
1. Owner sets a policy, allowlists the recipient, and deposits funds
2. Owner signs a PaymentIntent off-system; anyone submits it
3. Engine verifies signature, policy and balance, then locks the amount
4. Recipient claims with an evidence hash
5. After the timelock (and absent a dispute) anyone finalizes; funds leave

Each state-changing call runs in one exclusive section and is
all-or-nothing: stores journal every key the call touches and put them back
if anything raises, including a failed token transfer. State is committed
(and saved, when a state file is attached) before the token is called, and a
nested state-changing call made from inside a transfer is refused with
``ReentrantCall``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping, Optional, Union

from .audit import EscrowEvent, EventType
from .balances import BalanceAccount, BalanceLedger
from .clock import Clock, SystemClock
from .errors import (
    BadSignature,
    ExceedsMaxPerIntent,
    InsufficientAvailableBalance,
    IntentAlreadyExists,
    IntentExpired,
    InvalidAddress,
    InvalidAmount,
    NonceAlreadyUsed,
    PolicyNotSet,
    RecipientNotAllowed,
    ReentrantCall,
    TransferError,
)
from .intent import EscrowDomain, PaymentIntent, hash_intent, is_null_address, normalize_address, recover_signer
from .ledger import TokenLedger
from .policy import Policy, PolicyStore
from .registry import IntentRecord, IntentRegistry
from .state_file import EscrowStateFile

logger = logging.getLogger(__name__)

EventSink = Callable[[EscrowEvent], None]

DEFAULT_EVENT_HISTORY = 1000


class EscrowEngine:
    """Owns every store and enforces the escrow's state machine.

    ``events`` keeps only the most recent ``event_history`` events; attach a
    sink (e.g. ``AuditTrail``) for the full record.
    """

    def __init__(
        self,
        ledger: TokenLedger,
        domain: EscrowDomain,
        clock: Optional[Clock] = None,
        sinks: Optional[list[EventSink]] = None,
        state_file: Optional[EscrowStateFile] = None,
        event_history: int = DEFAULT_EVENT_HISTORY,
    ):
        self.ledger = ledger
        self.domain = domain
        self.clock = clock or SystemClock()
        self.state_file = state_file
        self.policies = PolicyStore()
        self.balances = BalanceLedger()
        self.registry = IntentRegistry()
        self.events: deque[EscrowEvent] = deque(maxlen=event_history)

        self._sinks: list[EventSink] = list(sinks or [])
        self._lock = threading.RLock()
        self._in_call = False
        self._pending: list[EscrowEvent] = []
        self._persisted = False

        if state_file is not None:
            saved = state_file.load()
            if saved is not None:
                self.load_state(saved)

    def subscribe(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    # ── Policy ────────────────────────────────────────────────────

    def set_policy(
        self,
        caller: str,
        max_per_intent: int,
        timelock_seconds: int,
        dispute_window_seconds: int,
    ) -> Policy:
        """Replace the caller's policy. Existing intents keep their snapshots."""
        with self._operation("set_policy") as now:
            owner = _caller(caller)
            policy = self.policies.set_policy(owner, max_per_intent, timelock_seconds, dispute_window_seconds)
            self._emit(EventType.POLICY_UPDATED, now, owner=owner, actor=owner, details=policy.to_dict())
        logger.info(
            "Policy set for %s: cap=%d timelock=%ds dispute=%ds",
            owner,
            policy.max_per_intent,
            policy.timelock_seconds,
            policy.dispute_window_seconds,
        )
        return policy

    def set_recipient_allowed(self, caller: str, recipient: str, allowed: bool) -> None:
        with self._operation("set_recipient_allowed") as now:
            owner = _caller(caller)
            self.policies.set_recipient_allowed(owner, recipient, allowed)
            self._emit(
                EventType.RECIPIENT_ALLOWED,
                now,
                owner=owner,
                actor=owner,
                details={"recipient": normalize_address(recipient), "allowed": bool(allowed)},
            )
        logger.info("Recipient %s %s for %s", recipient, "allowed" if allowed else "removed", owner)

    # ── Balances ──────────────────────────────────────────────────

    def deposit(self, caller: str, amount: int) -> BalanceAccount:
        """Pull ``amount`` from the caller into their escrow balance."""
        with self._operation("deposit") as now:
            owner = _caller(caller)
            account = self.balances.credit(owner, amount)
            self._transfer_in(owner, amount)
            self._emit(EventType.DEPOSITED, now, owner=owner, actor=owner, amount=amount)
        logger.info("Deposit %d from %s (deposited=%d)", amount, owner, account.deposited)
        return account

    def withdraw(self, caller: str, amount: int) -> BalanceAccount:
        """Return unlocked funds to the caller."""
        with self._operation("withdraw") as now:
            owner = _caller(caller)
            account = self.balances.debit(owner, amount)
            self._transfer_out(owner, amount, "withdraw")
            self._emit(EventType.WITHDRAWN, now, owner=owner, actor=owner, amount=amount)
        logger.info("Withdrawal %d to %s (deposited=%d)", amount, owner, account.deposited)
        return account

    # ── Intent lifecycle ──────────────────────────────────────────

    def create_intent(
        self,
        caller: str,
        intent: Union[PaymentIntent, Mapping[str, Any]],
        signature: Union[str, bytes],
    ) -> str:
        """Register a signed intent and lock its amount. Any caller may submit."""
        if not isinstance(intent, PaymentIntent):
            intent = PaymentIntent.from_dict(intent)

        with self._operation("create_intent") as now:
            submitter = _caller(caller)
            if is_null_address(intent.owner) or is_null_address(intent.recipient):
                raise InvalidAddress("Intent owner and recipient must be non-null")
            if intent.expiry == 0 or now > intent.expiry:
                raise IntentExpired(intent.expiry, now)

            intent_hash = hash_intent(intent, self.domain)
            if self.registry.exists(intent_hash):
                raise IntentAlreadyExists(intent_hash)
            if self.registry.is_nonce_used(intent.owner, intent.nonce):
                raise NonceAlreadyUsed(intent.owner, intent.nonce)

            signer = recover_signer(intent, signature, self.domain)
            if signer != intent.owner:
                raise BadSignature(f"Signer mismatch: expected {intent.owner}, got {signer}")

            policy = self.policies.get_policy(intent.owner)
            if not policy.is_set:
                raise PolicyNotSet(intent.owner)
            if not self.policies.is_recipient_allowed(intent.owner, intent.recipient):
                raise RecipientNotAllowed(intent.owner, intent.recipient)
            if intent.amount == 0:
                raise InvalidAmount("Intent amount must be positive")
            if intent.amount > policy.max_per_intent:
                raise ExceedsMaxPerIntent(intent.amount, policy.max_per_intent)
            available = self.balances.available(intent.owner)
            if intent.amount > available:
                raise InsufficientAvailableBalance(intent.amount, available)

            record = self.registry.register(intent, intent_hash, now, policy)
            self.balances.lock(intent.owner, intent.amount)
            self._emit(
                EventType.INTENT_CREATED,
                now,
                owner=record.owner,
                actor=submitter,
                intent_hash=record.intent_hash,
                amount=record.amount,
                details={
                    "recipient": record.recipient,
                    "job_id": record.job_id,
                    "nonce": str(record.nonce),
                    "expiry": record.expiry,
                    "created_at": record.created_at,
                    "timelock_ends_at": record.timelock_ends_at,
                    "dispute_ends_at": record.dispute_ends_at,
                },
            )
        logger.info(
            "Intent created: %s (%s -> %s, amount %d, submitted by %s)",
            record.intent_hash,
            record.owner,
            record.recipient,
            record.amount,
            submitter,
        )
        return record.intent_hash

    def claim_intent(self, caller: str, intent_hash: str, evidence_hash: str) -> IntentRecord:
        """Recipient claims an intent, attaching a reference to delivered work."""
        with self._operation("claim_intent") as now:
            record = self.registry.claim(intent_hash, _caller(caller), evidence_hash, now)
            self._emit(
                EventType.INTENT_CLAIMED,
                now,
                owner=record.owner,
                actor=record.recipient,
                intent_hash=record.intent_hash,
                amount=record.amount,
                details={"evidence_hash": record.evidence_hash},
            )
        logger.info("Intent claimed: %s by %s", record.intent_hash, record.recipient)
        return record

    def cancel_intent(self, caller: str, intent_hash: str) -> IntentRecord:
        """Owner withdraws an unclaimed intent, releasing its lock."""
        with self._operation("cancel_intent") as now:
            record = self.registry.cancel(intent_hash, _caller(caller))
            self.balances.release(record.owner, record.amount)
            self._emit(
                EventType.INTENT_CANCELED,
                now,
                owner=record.owner,
                actor=record.owner,
                intent_hash=record.intent_hash,
                amount=record.amount,
            )
        logger.info("Intent canceled: %s", record.intent_hash)
        return record

    def dispute_intent(self, caller: str, intent_hash: str) -> IntentRecord:
        """Owner halts a claimed intent inside the dispute window."""
        with self._operation("dispute_intent") as now:
            record = self.registry.dispute(intent_hash, _caller(caller), now)
            self._emit(
                EventType.INTENT_DISPUTED,
                now,
                owner=record.owner,
                actor=record.owner,
                intent_hash=record.intent_hash,
                amount=record.amount,
            )
        logger.info("Intent disputed: %s", record.intent_hash)
        return record

    def resolve_dispute(self, caller: str, intent_hash: str, pay_out: bool) -> IntentRecord:
        """Owner settles a dispute: pay the recipient or cancel.

        Paying out here does not wait for the timelock; the owner's explicit
        approval stands in for it.
        """
        with self._operation("resolve_dispute") as now:
            record = self.registry.resolve(intent_hash, _caller(caller), pay_out)
            self._emit(
                EventType.DISPUTE_RESOLVED,
                now,
                owner=record.owner,
                actor=record.owner,
                intent_hash=record.intent_hash,
                amount=record.amount,
                details={"pay_out": bool(pay_out)},
            )
            if pay_out:
                self._pay_out(record, now, "resolve_dispute")
            else:
                self.balances.release(record.owner, record.amount)
                self._emit(
                    EventType.INTENT_CANCELED,
                    now,
                    owner=record.owner,
                    actor=record.owner,
                    intent_hash=record.intent_hash,
                    amount=record.amount,
                )
        logger.info("Dispute resolved: %s (%s)", record.intent_hash, "paid" if pay_out else "canceled")
        return record

    def finalize_intent(self, caller: str, intent_hash: str) -> IntentRecord:
        """Pay a claimed, undisputed intent once its timelock has passed. Any caller."""
        with self._operation("finalize_intent") as now:
            submitter = _caller(caller)
            record = self.registry.finalize(intent_hash, now)
            self._pay_out(record, now, "finalize_intent", actor=submitter)
        logger.info("Intent finalized: %s (%d to %s)", record.intent_hash, record.amount, record.recipient)
        return record

    # ── Queries ───────────────────────────────────────────────────

    def available_balance(self, owner: str) -> int:
        with self._lock:
            return self.balances.available(owner)

    def balance_of(self, owner: str) -> BalanceAccount:
        with self._lock:
            return self.balances.account(owner)

    def get_intent(self, intent_hash: str) -> IntentRecord:
        with self._lock:
            return self.registry.get(intent_hash)

    def intents_for(self, owner: str) -> list[IntentRecord]:
        with self._lock:
            return [self.registry.get(h) for h in self.registry.hashes_for(owner)]

    def get_policy(self, owner: str) -> Policy:
        with self._lock:
            return self.policies.get_policy(owner)

    def is_recipient_allowed(self, owner: str, recipient: str) -> bool:
        with self._lock:
            return self.policies.is_recipient_allowed(owner, recipient)

    def is_nonce_used(self, owner: str, nonce: int) -> bool:
        with self._lock:
            return self.registry.is_nonce_used(owner, nonce)

    def hash_intent(self, intent: PaymentIntent) -> str:
        return hash_intent(intent, self.domain)

    # ── State ─────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "domain": self.domain.to_eip712(),
                "policies": self.policies.to_dict(),
                "balances": self.balances.to_dict(),
                "registry": self.registry.to_dict(),
            }

    def load_state(self, state: Mapping[str, Any]) -> None:
        """Replace every store with a previously saved state."""
        saved_domain = state.get("domain", {})
        if (
            int(saved_domain.get("chainId", -1)) != self.domain.chain_id
            or str(saved_domain.get("verifyingContract", "")).lower() != self.domain.verifying_contract
        ):
            raise ValueError("Saved state belongs to a different escrow domain")
        policies = PolicyStore.from_dict(state.get("policies", {}))
        balances = BalanceLedger.from_dict(state.get("balances", {}))
        registry = IntentRegistry.from_dict(state.get("registry", {}))
        for owner in set(balances.owners()) | set(registry.owners()):
            if registry.locked_total(owner) != balances.account(owner).locked:
                raise ValueError(f"Saved state is inconsistent: locked balance mismatch for {owner}")
        with self._lock:
            self.policies, self.balances, self.registry = policies, balances, registry

    # ── Internals ─────────────────────────────────────────────────

    @contextmanager
    def _operation(self, name: str) -> Iterator[int]:
        with self._lock:
            if self._in_call:
                logger.warning("Rejected reentrant %s", name)
                raise ReentrantCall(f"{name} called while another operation is in progress")
            self._in_call = True
            self._persisted = False
            try:
                self._begin()
                self._pending = []
                try:
                    yield self.clock.now()
                    if not self._persisted:
                        self._persist()
                except BaseException:
                    self._rollback()
                    if self._persisted:
                        self._persist_rolled_back(name)
                    raise
                self._commit()
                self._publish()
            finally:
                self._pending = []
                self._in_call = False

    def _stores(self) -> tuple:
        return (self.policies, self.balances, self.registry)

    def _begin(self) -> None:
        for store in self._stores():
            store.journal.begin()

    def _commit(self) -> None:
        for store in self._stores():
            store.journal.commit()

    def _rollback(self) -> None:
        for store in self._stores():
            store.journal.rollback()

    def _persist(self) -> None:
        """Save committed state. Runs before any token transfer."""
        if self.state_file is not None:
            self.state_file.save(self.to_dict())
        self._persisted = True

    def _persist_rolled_back(self, name: str) -> None:
        try:
            self._persist()
        except Exception:
            logger.exception("Could not save rolled-back state after failed %s; state file is ahead of memory", name)

    def _emit(self, event_type: EventType, now: int, **fields: Any) -> None:
        self._pending.append(EscrowEvent(event_type=event_type.value, timestamp=now, **fields))

    def _publish(self) -> None:
        events, self._pending = self._pending, []
        self.events.extend(events)
        for event in events:
            for sink in self._sinks:
                try:
                    sink(event)
                except Exception:
                    logger.exception("Event sink failed for %s %s", event.event_type, event.intent_hash or "")

    def _pay_out(self, record: IntentRecord, now: int, context: str, actor: Optional[str] = None) -> None:
        self.balances.settle(record.owner, record.amount)
        self._transfer_out(record.recipient, record.amount, context)
        self._emit(
            EventType.INTENT_FINALIZED,
            now,
            owner=record.owner,
            actor=actor or record.owner,
            intent_hash=record.intent_hash,
            amount=record.amount,
            details={"recipient": record.recipient},
        )

    def _transfer_in(self, source: str, amount: int) -> None:
        self._persist()
        try:
            self.ledger.transfer_in(source, amount)
        except TransferError:
            logger.warning("Transfer of %d from %s failed during deposit; rolling back", amount, source)
            raise

    def _transfer_out(self, destination: str, amount: int, context: str) -> None:
        self._persist()
        try:
            self.ledger.transfer_out(destination, amount)
        except TransferError:
            logger.warning("Transfer of %d to %s failed during %s; rolling back", amount, destination, context)
            raise


def _caller(caller: str) -> str:
    normalized = normalize_address(caller)
    if is_null_address(normalized):
        raise InvalidAddress("Caller cannot be the null address")
    return normalized
