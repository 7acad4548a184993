"""
PayGuard: policy-enforced escrow for agent payments.

Owner sets bounds → signs an intent → recipient claims → timelock,
dispute window, then payout. Every state change is audited.
"""

__version__ = "0.1.0"

from .intent import (
    EscrowDomain,
    PaymentIntent,
    hash_intent,
    job_id_from_label,
    recover_signer,
    sign_intent,
    verify_intent_signature,
)
from .policy import Policy, PolicyStore
from .balances import BalanceAccount, BalanceLedger
from .registry import IntentRecord, IntentRegistry, IntentStatus
from .ledger import InMemoryTokenLedger, TokenLedger
from .clock import ManualClock, SystemClock
from .engine import EscrowEngine
from .state_file import EscrowStateFile
from .audit import AuditTrail, EscrowEvent, EventType

__all__ = [
    "EscrowDomain", "PaymentIntent", "hash_intent", "job_id_from_label",
    "recover_signer", "sign_intent", "verify_intent_signature",
    "Policy", "PolicyStore", "BalanceAccount", "BalanceLedger",
    "IntentRecord", "IntentRegistry", "IntentStatus",
    "InMemoryTokenLedger", "TokenLedger", "ManualClock", "SystemClock",
    "EscrowEngine", "EscrowStateFile",
    "AuditTrail", "EscrowEvent", "EventType",
]
