"""
PayGuard error types.

One exception per failure kind, so callers can tell exactly why a call
was rejected and decide whether to retry (e.g. after topping up a
deposit) or abandon. Every failure aborts the whole call; no partial
state survives an exception.
"""

from __future__ import annotations

from typing import Optional


class PayGuardError(Exception):
    """Base error for all PayGuard operations."""

    code = "payguard_error"


# Input validation
class ValidationError(PayGuardError):
    """Base error for malformed inputs."""

    code = "validation_error"


class InvalidAddress(ValidationError):
    """Address is malformed or the null identity."""

    code = "invalid_address"


class InvalidAmount(ValidationError):
    """Amount is zero, negative, or not an integer."""

    code = "invalid_amount"


class InvalidIntent(ValidationError):
    """Intent is missing a field or a field is out of range (nonce, expiry, job id)."""

    code = "invalid_intent"


class InvalidEvidenceHash(ValidationError):
    """Claim evidence is not a 32-byte hash."""

    code = "invalid_evidence_hash"


# Policy / authorization
class AuthorizationError(PayGuardError):
    """Base error for intents the owner's policy does not permit."""

    code = "authorization_error"


class PolicyNotSet(AuthorizationError):
    """Owner has no policy, so no intent can be created."""

    code = "policy_not_set"

    def __init__(self, owner: str):
        self.owner = owner
        super().__init__(f"No policy set for owner {owner}")


class RecipientNotAllowed(AuthorizationError):
    """Recipient is not on the owner's allowlist."""

    code = "recipient_not_allowed"

    def __init__(self, owner: str, recipient: str):
        self.owner = owner
        self.recipient = recipient
        super().__init__(f"Recipient {recipient} is not allowlisted by {owner}")


class ExceedsMaxPerIntent(AuthorizationError):
    """Amount exceeds the owner's per-intent cap."""

    code = "exceeds_max_per_intent"

    def __init__(self, amount: int, limit: int):
        self.amount = amount
        self.limit = limit
        super().__init__(f"Amount {amount} exceeds per-intent limit {limit}")


class BadSignature(AuthorizationError):
    """Signature does not recover to the intent owner."""

    code = "bad_signature"


class NonceAlreadyUsed(AuthorizationError):
    """The (owner, nonce) pair already authorized an intent."""

    code = "nonce_already_used"

    def __init__(self, owner: str, nonce: int):
        self.owner = owner
        self.nonce = nonce
        super().__init__(f"Nonce {nonce} already used by {owner}")


class IntentExpired(AuthorizationError):
    """Intent expiry is unset or has passed."""

    code = "intent_expired"

    def __init__(self, expiry: int, now: Optional[int] = None):
        self.expiry = expiry
        self.now = now
        if expiry == 0:
            message = "Intent has no expiry"
        else:
            message = f"Intent expired at {expiry} (now {now})"
        super().__init__(message)


# Balance
class BalanceError(PayGuardError):
    """Base error for balance accounting failures."""

    code = "balance_error"


class InsufficientAvailableBalance(BalanceError):
    """Amount exceeds the owner's unlocked deposit."""

    code = "insufficient_available_balance"

    def __init__(self, amount: int, available: int):
        self.amount = amount
        self.available = available
        super().__init__(f"Amount {amount} exceeds available balance {available}")


class LedgerInvariantError(BalanceError):
    """Balance accounting would leave 0 <= locked <= deposited. Internal fault."""

    code = "ledger_invariant"


# Lifecycle / state
class LifecycleError(PayGuardError):
    """Base error for calls not valid in the intent's current state."""

    code = "lifecycle_error"

    def __init__(self, intent_hash: str, message: Optional[str] = None):
        self.intent_hash = intent_hash
        super().__init__(message or f"{type(self).__name__}: {intent_hash}")


class IntentAlreadyExists(LifecycleError):
    """An identical intent was already registered."""

    code = "intent_already_exists"


class IntentNotFound(LifecycleError):
    """No intent is registered under this hash."""

    code = "intent_not_found"


class NotOwner(LifecycleError):
    """Caller is not the intent owner."""

    code = "not_owner"


class NotRecipient(LifecycleError):
    """Caller is not the intent recipient."""

    code = "not_recipient"


class AlreadyClaimed(LifecycleError):
    """Intent was already claimed."""

    code = "already_claimed"


class NotClaimed(LifecycleError):
    """Intent has not been claimed yet."""

    code = "not_claimed"


class AlreadyFinalized(LifecycleError):
    """Intent was already paid out."""

    code = "already_finalized"


class AlreadyCanceled(LifecycleError):
    """Intent was already canceled."""

    code = "already_canceled"


class TimelockNotElapsed(LifecycleError):
    """Payout attempted before the timelock ends."""

    code = "timelock_not_elapsed"

    def __init__(self, intent_hash: str, unlocks_at: int, now: int):
        self.unlocks_at = unlocks_at
        self.now = now
        super().__init__(intent_hash, f"Timelock for {intent_hash} ends at {unlocks_at} (now {now})")


class DisputeWindowClosed(LifecycleError):
    """Dispute attempted after the dispute window ended."""

    code = "dispute_window_closed"

    def __init__(self, intent_hash: str, closed_at: int, now: int):
        self.closed_at = closed_at
        self.now = now
        super().__init__(intent_hash, f"Dispute window for {intent_hash} closed at {closed_at} (now {now})")


class IntentIsDisputed(LifecycleError):
    """Intent is under dispute and awaits the owner's resolution."""

    code = "intent_is_disputed"


class NotDisputed(LifecycleError):
    """Resolution attempted on an intent that is not disputed."""

    code = "not_disputed"


# External
class TransferError(PayGuardError):
    """The token ledger refused or failed a transfer."""

    code = "transfer_error"


class ReentrantCall(PayGuardError):
    """A state-changing call was made while another one is in progress."""

    code = "reentrant_call"
