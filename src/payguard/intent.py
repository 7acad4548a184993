"""
Payment intents: the owner's signed, single-use payment authorization.

An intent is signed off-system with EIP-712 typed data and later submitted
by anyone. The digest binds the escrow domain (name, version, chain id,
verifying contract) and every intent field in a fixed order, so an intent
signed for one escrow or chain cannot be replayed on another, and changing
any single field changes the digest.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from .errors import BadSignature, InvalidAddress, InvalidAmount, InvalidIntent


DOMAIN_NAME = "AgentPayGuard"
DOMAIN_VERSION = "1"
DEFAULT_CHAIN_ID = 84532

NULL_ADDRESS = "0x" + "0" * 40
MAX_UINT48 = 2**48 - 1
MAX_UINT256 = 2**256 - 1

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_HEX32_RE = re.compile(r"^0x[a-f0-9]{64}$")

PAYMENT_INTENT_TYPES = {
    "PaymentIntent": [
        {"name": "owner", "type": "address"},
        {"name": "recipient", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "jobId", "type": "bytes32"},
        {"name": "nonce", "type": "uint256"},
        {"name": "expiry", "type": "uint48"},
    ],
}


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    if not isinstance(address, str):
        raise InvalidAddress(f"Invalid address: {address!r}")
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise InvalidAddress(f"Invalid address: {address}")
    return "0x" + candidate[2:].lower()


def is_null_address(address: str) -> bool:
    return normalize_address(address) == NULL_ADDRESS


def normalize_hex32(value: Any, field_name: str) -> str:
    """Normalize a 32-byte value (hex string or bytes) to 0x-prefixed lower hex."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError(f"{field_name} must be 32 bytes")
        return "0x" + bytes(value).hex()
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a 32-byte hex string")
    candidate = value.strip().lower()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    if not _HEX32_RE.match(candidate):
        raise ValueError(f"{field_name} must be 32 bytes (0x + 64 hex chars)")
    return candidate


def job_id_from_label(label: str) -> str:
    """Derive a bytes32 job id from a human label (keccak256 of its UTF-8 text)."""
    return "0x" + keccak(text=label).hex()


@dataclass(frozen=True)
class EscrowDomain:
    """EIP-712 domain identifying one escrow deployment."""

    chain_id: int
    verifying_contract: str
    name: str = DOMAIN_NAME
    version: str = DOMAIN_VERSION

    def __post_init__(self):
        if isinstance(self.chain_id, bool) or not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ValueError(f"Invalid chain id: {self.chain_id!r}")
        object.__setattr__(self, "verifying_contract", normalize_address(self.verifying_contract))

    def to_eip712(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


@dataclass(frozen=True)
class PaymentIntent:
    """Authorization payload signed by the owner."""

    owner: str
    recipient: str
    amount: int
    job_id: str
    nonce: int
    expiry: int

    def __post_init__(self):
        object.__setattr__(self, "owner", normalize_address(self.owner))
        object.__setattr__(self, "recipient", normalize_address(self.recipient))
        try:
            object.__setattr__(self, "job_id", normalize_hex32(self.job_id, "job_id"))
        except ValueError as e:
            raise InvalidIntent(str(e)) from e
        if not _is_uint(self.amount, MAX_UINT256):
            raise InvalidAmount(f"amount must be a uint256, got {self.amount!r}")
        if not _is_uint(self.nonce, MAX_UINT256):
            raise InvalidIntent(f"nonce must be a uint256, got {self.nonce!r}")
        if not _is_uint(self.expiry, MAX_UINT48):
            raise InvalidIntent(f"expiry must be a uint48 timestamp, got {self.expiry!r}")

    def to_eip712_message(self, domain: EscrowDomain) -> dict:
        """Convert intent to EIP-712 typed data for signing."""
        return {
            "types": PAYMENT_INTENT_TYPES,
            "primaryType": "PaymentIntent",
            "domain": domain.to_eip712(),
            "message": {
                "owner": self.owner,
                "recipient": self.recipient,
                "amount": self.amount,
                "jobId": self.job_id,
                "nonce": self.nonce,
                "expiry": self.expiry,
            },
        }

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "job_id": self.job_id,
            "nonce": str(self.nonce),
            "expiry": self.expiry,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentIntent:
        try:
            owner, recipient, job_id = d["owner"], d["recipient"], d["job_id"]
            amount, nonce, expiry = d["amount"], d["nonce"], d["expiry"]
        except (KeyError, TypeError) as e:
            raise InvalidIntent(f"Intent is missing field {e}") from e
        try:
            amount = _parse_int(amount, "amount")
        except ValueError as e:
            raise InvalidAmount(str(e)) from e
        try:
            nonce = _parse_int(nonce, "nonce")
            expiry = _parse_int(expiry, "expiry")
        except ValueError as e:
            raise InvalidIntent(str(e)) from e
        return cls(
            owner=str(owner),
            recipient=str(recipient),
            amount=amount,
            job_id=job_id if isinstance(job_id, (bytes, bytearray)) else str(job_id),
            nonce=nonce,
            expiry=expiry,
        )


def hash_intent(intent: PaymentIntent, domain: EscrowDomain) -> str:
    """Compute the EIP-712 digest that keys the intent registry."""
    typed_data = intent.to_eip712_message(domain)
    signable = encode_typed_data(
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    digest = keccak(b"\x19" + signable.version + signable.header + signable.body)
    return "0x" + digest.hex()


def sign_intent(private_key: str, intent: PaymentIntent, domain: EscrowDomain) -> str:
    """Sign an intent as its owner (the offline half of the protocol)."""
    account = Account.from_key(private_key)
    if normalize_address(account.address) != intent.owner:
        raise ValueError(f"Key for {account.address} cannot sign for owner {intent.owner}")
    typed_data = intent.to_eip712_message(domain)
    signed = Account.sign_typed_data(
        account.key,
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    return "0x" + signed.signature.hex().removeprefix("0x")


def recover_signer(intent: PaymentIntent, signature: str | bytes, domain: EscrowDomain) -> str:
    """Recover the address that signed ``intent`` under ``domain``."""
    try:
        raw = signature if isinstance(signature, (bytes, bytearray)) else bytes.fromhex(_strip_0x(signature))
        typed_data = intent.to_eip712_message(domain)
        signable = encode_typed_data(
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
        recovered = Account.recover_message(signable, signature=bytes(raw))
    except Exception as e:
        raise BadSignature(f"Signature recovery failed: {e}") from e
    return normalize_address(recovered)


def verify_intent_signature(
    intent: PaymentIntent,
    signature: str | bytes,
    domain: EscrowDomain,
) -> tuple[bool, str]:
    """Check that ``signature`` was produced by ``intent.owner``."""
    try:
        recovered = recover_signer(intent, signature, domain)
    except BadSignature as e:
        return False, str(e)
    if recovered != intent.owner:
        return False, f"Signer mismatch: expected {intent.owner}, got {recovered}"
    return True, "Valid intent signature"


def _is_uint(value: Any, upper: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= upper


def _parse_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError(f"{field_name} must be an integer")


def _strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value
