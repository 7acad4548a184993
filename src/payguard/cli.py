"""
PayGuard CLI: owner-side tooling for signed payment intents.

Commands:
    payguard intent hash      Compute the EIP-712 digest of an intent
    payguard intent sign      Sign an intent as its owner (offline)
    payguard intent verify    Check a signed intent file
    payguard audit            View the escrow audit trail
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .audit import AuditTrail
from .errors import PayGuardError
from .intent import (
    DEFAULT_CHAIN_ID,
    EscrowDomain,
    PaymentIntent,
    hash_intent,
    job_id_from_label,
    sign_intent,
    verify_intent_signature,
)
from .money import DEFAULT_DECIMALS, format_base_units, to_base_units
from .storage import ensure_private_file


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 90s, 30m, 1h, 7d)")
    return int(raw[:-1]) * units[raw[-1]]


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string")
    int(candidate, 16)
    return "0x" + candidate


def _resolve_job_id(job_id: Optional[str], job_label: Optional[str]) -> str:
    if job_id and job_label:
        raise ValueError("Pass either --job-id or --job-label, not both")
    if job_label:
        return job_id_from_label(job_label)
    if job_id:
        return job_id
    raise ValueError("One of --job-id or --job-label is required")


def _resolve_expiry(expiry: Optional[int], expires_in: Optional[str]) -> int:
    if expiry is not None and expires_in:
        raise ValueError("Pass either --expiry or --expires-in, not both")
    if expiry is not None:
        return expiry
    return int(time.time()) + _parse_duration_to_seconds(expires_in or "1h")


def _intent_options(func):
    decorators = [
        click.option("--recipient", required=True, help="Recipient address"),
        click.option("--amount", required=True, help="Amount in token units, e.g. 2.5"),
        click.option("--decimals", type=int, default=DEFAULT_DECIMALS, show_default=True,
                     help="Token decimals"),
        click.option("--job-id", default=None, help="bytes32 job id (0x + 64 hex chars)"),
        click.option("--job-label", default=None, help="Human job label, hashed to a job id"),
        click.option("--nonce", type=int, required=True, help="Owner-chosen single-use nonce"),
        click.option("--expiry", type=int, default=None, help="Absolute expiry (unix seconds)"),
        click.option("--expires-in", default=None, help="Relative expiry, e.g. 1h (default 1h)"),
        click.option("--chain-id", type=int, default=DEFAULT_CHAIN_ID, show_default=True,
                     help="EIP-712 chain id"),
        click.option("--contract", "verifying_contract", required=True,
                     help="Escrow verifying-contract / service address"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def _build_intent(
    owner: str,
    recipient: str,
    amount: str,
    decimals: int,
    job_id: Optional[str],
    job_label: Optional[str],
    nonce: int,
    expiry: Optional[int],
    expires_in: Optional[str],
) -> PaymentIntent:
    return PaymentIntent(
        owner=owner,
        recipient=recipient,
        amount=to_base_units(amount, decimals),
        job_id=_resolve_job_id(job_id, job_label),
        nonce=nonce,
        expiry=_resolve_expiry(expiry, expires_in),
    )


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
def main():
    """PayGuard: policy-enforced escrow for signed payment intents."""
    pass


@main.group("intent")
def intent_group():
    """Build, sign and verify payment intents."""
    pass


@intent_group.command("hash")
@click.option("--owner", required=True, help="Owner address")
@_intent_options
def intent_hash(
    owner: str,
    recipient: str,
    amount: str,
    decimals: int,
    job_id: Optional[str],
    job_label: Optional[str],
    nonce: int,
    expiry: Optional[int],
    expires_in: Optional[str],
    chain_id: int,
    verifying_contract: str,
):
    """Compute the digest an intent is registered under."""
    try:
        domain = EscrowDomain(chain_id=chain_id, verifying_contract=verifying_contract)
        intent = _build_intent(owner, recipient, amount, decimals, job_id, job_label, nonce, expiry, expires_in)
    except (PayGuardError, ValueError) as e:
        click.echo(f"❌ Invalid intent: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps({"intent": intent.to_dict(), "intent_hash": hash_intent(intent, domain)}, indent=2))


@intent_group.command("sign")
@click.option("--owner-key", prompt=True, hide_input=True,
              help="Owner's Ethereum private key (hex)")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --owner-key via argv (unsafe; can leak in shell/process history).",
)
@_intent_options
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the signed intent to this file instead of stdout")
def intent_sign(
    owner_key: str,
    unsafe_allow_key_arg: bool,
    recipient: str,
    amount: str,
    decimals: int,
    job_id: Optional[str],
    job_label: Optional[str],
    nonce: int,
    expiry: Optional[int],
    expires_in: Optional[str],
    chain_id: int,
    verifying_contract: str,
    output: Optional[Path],
):
    """Sign an intent. The output can be submitted by anyone."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("owner_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --owner-key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)

    try:
        private_key = _resolve_private_key(owner_key)
        owner = Account.from_key(private_key).address
        domain = EscrowDomain(chain_id=chain_id, verifying_contract=verifying_contract)
        intent = _build_intent(owner, recipient, amount, decimals, job_id, job_label, nonce, expiry, expires_in)
        signature = sign_intent(private_key, intent, domain)
    except (PayGuardError, ValueError) as e:
        click.echo(f"❌ Failed to sign intent: {e}", err=True)
        sys.exit(1)

    signed = {
        "domain": domain.to_eip712(),
        "intent": intent.to_dict(),
        "intent_hash": hash_intent(intent, domain),
        "signature": signature,
    }
    if output is None:
        click.echo(json.dumps(signed, indent=2))
        return

    with open(output, "w") as f:
        json.dump(signed, f, indent=2)
    ensure_private_file(output)
    click.echo(f"✅ Intent signed: {signed['intent_hash']}")
    click.echo(f"   Owner:     {intent.owner}")
    click.echo(f"   Recipient: {intent.recipient}")
    click.echo(f"   Amount:    {format_base_units(intent.amount, decimals)}")
    click.echo(f"   Expires:   {time.strftime('%Y-%m-%d %H:%M', time.localtime(intent.expiry))}")
    click.echo(f"   Saved to:  {output}")


@intent_group.command("verify")
@click.argument("signed_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def intent_verify(signed_file: Path):
    """Verify a signed intent file produced by `payguard intent sign`."""
    try:
        with open(signed_file) as f:
            signed = json.load(f)
        domain_data = signed["domain"]
        domain = EscrowDomain(
            chain_id=int(domain_data["chainId"]),
            verifying_contract=domain_data["verifyingContract"],
            name=domain_data.get("name", "AgentPayGuard"),
            version=domain_data.get("version", "1"),
        )
        intent = PaymentIntent.from_dict(signed["intent"])
    except (PayGuardError, ValueError, KeyError) as e:
        click.echo(f"❌ Malformed signed intent: {e}", err=True)
        sys.exit(1)

    valid, reason = verify_intent_signature(intent, signed.get("signature", ""), domain)
    digest = hash_intent(intent, domain)
    if signed.get("intent_hash") and signed["intent_hash"].lower() != digest:
        valid, reason = False, f"Intent hash mismatch: file says {signed['intent_hash']}, computed {digest}"

    click.echo(f"{'✅' if valid else '❌'} {reason}")
    click.echo(f"   Intent hash: {digest}")
    click.echo(f"   Owner:       {intent.owner}")
    click.echo(f"   Recipient:   {intent.recipient}")
    click.echo(f"   Amount:      {intent.amount}")
    if intent.expiry <= int(time.time()):
        click.echo("   ⚠️  Intent has already expired")
    if not valid:
        sys.exit(1)


@main.command()
@click.option("--owner", default=None, help="Filter by owner address")
@click.option("--intent-hash", default=None, help="Filter by intent hash")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(owner: Optional[str], intent_hash: Optional[str], limit: int):
    """View the audit trail."""
    trail = AuditTrail()
    try:
        events = trail.read_events(intent_hash=intent_hash, owner=owner, limit=limit)
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        amount = f" {event.amount}" if event.amount is not None else ""
        target = f" {event.intent_hash[:18]}…" if event.intent_hash else ""
        click.echo(f"  {ts} {event.event_type}{amount}{target} ({event.owner})")


if __name__ == "__main__":
    main()
