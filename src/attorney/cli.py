"""
Attorney CLI — Mandate chains for agent payments.

Commands:
    attorney intent create    Sign and store an intent mandate
    attorney intent show      Show a stored intent mandate
    attorney intent list      List intent mandates for an agent
    attorney cart create      Sign and store a cart under an intent
    attorney payment create   Sign and store a payment mandate under a cart
    attorney verify           Enforce the mandate chain for a payment request
    attorney revoke           Revoke a mandate
    attorney audit            View the audit trail
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import time
from decimal import Decimal
from typing import Optional

import click
from click.core import ParameterSource

from .approval import CallbackApprovalService, HttpApprovalService, HumanApprovalService
from .audit import AuditTrail, EventType
from .config import AttorneyConfig
from .enforcer import MandateEnforcer
from .errors import MandateViolationError
from .mandate import (
    CartItem,
    CartMandate,
    IntentMandate,
    MandateKind,
    create_cart_mandate,
    create_intent_mandate,
    create_payment_mandate,
)
from .money import format_amount
from .payment import PaymentRequest
from .repository import MandateStore
from .signature import EthereumSignatureService
from .verifier import MandateVerifier


CLI_KEY_ID = "cli"


# ── Helpers ───────────────────────────────────────────────────────

def _config() -> AttorneyConfig:
    ctx = click.get_current_context()
    return ctx.find_root().obj


def _store(config: AttorneyConfig) -> MandateStore:
    return MandateStore(config.mandates_dir)


def _audit_trail(config: AttorneyConfig) -> AuditTrail:
    return AuditTrail(config.audit_path, config.audit_key_path, hmac_key=config.audit_hmac_key)


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit() or int(raw[:-1]) == 0:
        raise ValueError(f"Invalid duration: {value} (expected formats like 15m, 1h, 30d)")
    return int(raw[:-1]) * units[raw[-1]]


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _refuse_key_from_argv(param: str, flag: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            f"❌ Refusing {flag} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _signer(signing_key: str) -> EthereumSignatureService:
    signer = EthereumSignatureService()
    signer.import_key(CLI_KEY_ID, _resolve_private_key(signing_key))
    return signer


def _fmt_time(ts: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ts))


def _approval_service(config: AttorneyConfig, interactive: bool) -> Optional[HumanApprovalService]:
    if interactive:
        return _console_approval_service()
    if config.approval_configured:
        return HttpApprovalService(
            config.approval_url,
            config.approval_secret,
            timeout_seconds=config.approval_timeout_seconds,
            approval_threshold=config.approval_threshold,
        )
    return None


def _console_approval_service() -> CallbackApprovalService:
    """The human at the terminal approves, then signs with their own key."""
    signers: dict[str, EthereumSignatureService] = {}

    def signer() -> EthereumSignatureService:
        if "human" not in signers:
            signers["human"] = _signer(click.prompt("Approver signing key", hide_input=True))
        return signers["human"]

    def approve_cart(intent: IntentMandate, request: PaymentRequest) -> Optional[CartMandate]:
        click.echo(
            f"🔐 Approve cart: {format_amount(request.amount, request.currency_code)} "
            f"to {request.receiving_agent_id} ({request.description or 'no description'})"
        )
        if not click.confirm("Approve this cart?", default=False):
            return None
        return create_cart_mandate(
            intent=intent,
            receiving_agent_id=request.receiving_agent_id,
            items=[CartItem(id="request", description=request.description or "Payment", unit_price=request.amount)],
            currency_code=request.currency_code,
            signer=signer(),
            key_id=CLI_KEY_ID,
        )

    def approve_payment(cart: CartMandate, request: PaymentRequest):
        if not click.confirm(f"Release payment of {format_amount(cart.amount, cart.currency_code)}?", default=False):
            return None
        return create_payment_mandate(
            cart=cart,
            payment_method_id=request.payment_method,
            payment_reference=request.external_reference,
            signer=signer(),
            key_id=CLI_KEY_ID,
        )

    return CallbackApprovalService(approve_cart, approve_payment)


def _key_options(func):
    func = click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help="Allow passing --signing-key via argv (unsafe; can leak in shell/process history).",
    )(func)
    func = click.option(
        "--signing-key",
        prompt=True,
        hide_input=True,
        help="Signer's Ethereum private key hex or op:// reference",
    )(func)
    return func


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """Attorney — Verifiable mandate chains for agent payments."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    try:
        ctx.obj = AttorneyConfig.from_env()
    except ValueError as exc:
        click.echo(f"❌ Invalid configuration: {exc}", err=True)
        sys.exit(1)


# -- Intent --------------------------------------------------------

@main.group("intent")
def intent_group():
    """Intent mandates: what an agent may buy, from whom, and how much."""
    pass


@intent_group.command("create")
@click.option("--agent", required=True, help="Requesting agent id")
@click.option("--merchant", default=None, help="Merchant agent id (omit for any merchant)")
@click.option("--max-amount", type=str, required=True, help="Maximum amount per payment")
@click.option("--category", "categories", multiple=True, help="Allowed category (repeatable)")
@click.option("--requires-approval", is_flag=True, help="Require human approval for every payment")
@click.option("--expires-in", default="30d", help="Lifetime (e.g. 72h, 30d)")
@_key_options
def intent_create(
    agent: str,
    merchant: Optional[str],
    max_amount: str,
    categories: tuple[str, ...],
    requires_approval: bool,
    expires_in: str,
    signing_key: str,
    unsafe_allow_key_arg: bool,
):
    """Sign and store an intent mandate."""
    _refuse_key_from_argv("signing_key", "--signing-key", unsafe_allow_key_arg)
    config = _config()

    try:
        intent = create_intent_mandate(
            requesting_agent_id=agent,
            receiving_agent_id=merchant,
            max_amount_per_payment=max_amount,
            requires_human_approval=requires_approval,
            allowed_categories=categories,
            ttl_seconds=_parse_duration_to_seconds(expires_in),
            signer=_signer(signing_key),
            key_id=CLI_KEY_ID,
        )
    except Exception as exc:
        click.echo(f"❌ Failed to create intent mandate: {exc}", err=True)
        sys.exit(1)

    _store(config).store_intent_mandate(intent)
    _audit_trail(config).log(
        EventType.MANDATE_STORED,
        mandate_id=intent.id,
        description="Intent mandate created",
        amount=str(intent.max_amount_per_payment),
        merchant=merchant,
        details={"agent": agent, "requires_human_approval": requires_approval},
    )

    click.echo(f"✅ Intent mandate created: {intent.id}")
    click.echo(f"   Agent:     {agent}")
    click.echo(f"   Merchant:  {merchant or 'any'}")
    click.echo(f"   Max/pay:   {format_amount(intent.max_amount_per_payment)}")
    if categories:
        click.echo(f"   Category:  {', '.join(sorted(categories))}")
    click.echo(f"   Approval:  {'required' if requires_approval else 'not required'}")
    click.echo(f"   Expires:   {_fmt_time(intent.expires_at)}")


@intent_group.command("show")
@click.argument("mandate_id")
def intent_show(mandate_id: str):
    """Show a stored intent mandate as JSON."""
    store = _store(_config())
    intent = store.find_intent_mandate(mandate_id)
    if intent is None:
        click.echo(f"❌ Intent mandate not found: {mandate_id}", err=True)
        sys.exit(1)
    payload = intent.to_dict()
    payload["revocation"] = store.revocation(mandate_id)
    click.echo(json.dumps(payload, indent=2))


@intent_group.command("list")
@click.option("--agent", default=None, help="Filter by requesting agent id")
@click.option("--include-revoked", is_flag=True, help="Include revoked intents")
def intent_list(agent: Optional[str], include_revoked: bool):
    """List intent mandates, newest first."""
    store = _store(_config())
    intents = [
        m
        for m in store.list_mandates(MandateKind.INTENT, include_revoked=include_revoked)
        if agent is None or m.requesting_agent_id == agent
    ]
    if not intents:
        click.echo("No intent mandates found.")
        return
    now = time.time()
    for intent in intents:
        state = "revoked" if store.is_revoked(intent.id) else ("expired" if intent.is_expired(now) else "active")
        click.echo(
            f"  {intent.id}  {state:<8} {intent.requesting_agent_id} → "
            f"{intent.receiving_agent_id or 'any'}  max {format_amount(intent.max_amount_per_payment)}"
        )


# -- Cart ----------------------------------------------------------

@main.group("cart")
def cart_group():
    """Cart mandates: a concrete, priced basket under an intent."""
    pass


@cart_group.command("create")
@click.option("--intent", "intent_id", required=True, help="Parent intent mandate id")
@click.option("--merchant", required=True, help="Merchant agent id")
@click.option(
    "--item",
    "items",
    type=(str, str, int),
    multiple=True,
    required=True,
    help="Line item as: ID UNIT_PRICE QUANTITY (repeatable)",
)
@click.option("--currency", default="USD", help="ISO 4217 currency code")
@click.option("--expires-in", default="1h", help="Lifetime (e.g. 15m, 1h)")
@_key_options
def cart_create(
    intent_id: str,
    merchant: str,
    items: tuple[tuple[str, str, int], ...],
    currency: str,
    expires_in: str,
    signing_key: str,
    unsafe_allow_key_arg: bool,
):
    """Sign and store a cart mandate under an intent."""
    _refuse_key_from_argv("signing_key", "--signing-key", unsafe_allow_key_arg)
    config = _config()
    store = _store(config)

    intent = store.find_intent_mandate(intent_id)
    if intent is None:
        click.echo(f"❌ Intent mandate not found: {intent_id}", err=True)
        sys.exit(1)

    try:
        cart = create_cart_mandate(
            intent=intent,
            receiving_agent_id=merchant,
            items=[
                CartItem(id=item_id, description=item_id, unit_price=Decimal(price), quantity=quantity)
                for item_id, price, quantity in items
            ],
            currency_code=currency,
            ttl_seconds=_parse_duration_to_seconds(expires_in),
            signer=_signer(signing_key),
            key_id=CLI_KEY_ID,
        )
        store.store_cart_mandate(cart)
    except Exception as exc:
        click.echo(f"❌ Failed to create cart mandate: {exc}", err=True)
        sys.exit(1)

    _audit_trail(config).log(
        EventType.MANDATE_STORED,
        mandate_id=cart.id,
        description="Cart mandate created",
        amount=str(cart.amount),
        currency=cart.currency_code,
        merchant=merchant,
        details={"intent_mandate_id": intent.id, "items": len(cart.items)},
    )

    click.echo(f"✅ Cart mandate created: {cart.id}")
    click.echo(f"   Intent:    {intent.id}")
    click.echo(f"   Merchant:  {merchant}")
    click.echo(f"   Total:     {format_amount(cart.amount, cart.currency_code)}")
    click.echo(f"   Expires:   {_fmt_time(cart.expires_at)}")


# -- Payment -------------------------------------------------------

@main.group("payment")
def payment_group():
    """Payment mandates: release of exactly one cart's total."""
    pass


@payment_group.command("create")
@click.option("--cart", "cart_id", required=True, help="Parent cart mandate id")
@click.option("--method", default=None, help="Payment method id")
@click.option("--reference", default=None, help="External payment reference")
@click.option("--expires-in", default="15m", help="Lifetime (e.g. 15m)")
@_key_options
def payment_create(
    cart_id: str,
    method: Optional[str],
    reference: Optional[str],
    expires_in: str,
    signing_key: str,
    unsafe_allow_key_arg: bool,
):
    """Sign and store a payment mandate under a cart."""
    _refuse_key_from_argv("signing_key", "--signing-key", unsafe_allow_key_arg)
    config = _config()
    store = _store(config)

    cart = store.find_cart_mandate(cart_id)
    if cart is None:
        click.echo(f"❌ Cart mandate not found: {cart_id}", err=True)
        sys.exit(1)

    try:
        payment = create_payment_mandate(
            cart=cart,
            payment_method_id=method,
            payment_reference=reference,
            ttl_seconds=_parse_duration_to_seconds(expires_in),
            signer=_signer(signing_key),
            key_id=CLI_KEY_ID,
        )
        store.store_payment_mandate(payment)
    except Exception as exc:
        click.echo(f"❌ Failed to create payment mandate: {exc}", err=True)
        sys.exit(1)

    _audit_trail(config).log(
        EventType.MANDATE_STORED,
        mandate_id=payment.id,
        description="Payment mandate created",
        amount=str(payment.amount),
        currency=payment.currency_code,
        merchant=payment.receiving_agent_id,
        details={"cart_mandate_id": cart.id},
    )

    click.echo(f"✅ Payment mandate created: {payment.id}")
    click.echo(f"   Cart:      {cart.id}")
    click.echo(f"   Amount:    {format_amount(payment.amount, payment.currency_code)}")
    click.echo(f"   Expires:   {_fmt_time(payment.expires_at)}")


# -- Enforcement ---------------------------------------------------

@main.command()
@click.option("--agent", required=True, help="Requesting agent id")
@click.option("--merchant", required=True, help="Merchant agent id")
@click.option("--amount", type=str, required=True, help="Payment amount")
@click.option("--currency", default="USD", help="ISO 4217 currency code")
@click.option("--category", default=None, help="Payment category label")
@click.option("--method", default=None, help="Payment method id")
@click.option("--description", default="", help="Payment description")
@click.option("--intent", "intent_id", default=None, help="Intent mandate id (default: agent's active intent)")
@click.option("--cart", "cart_id", default=None, help="Cart mandate id")
@click.option("--payment", "payment_id", default=None, help="Payment mandate id")
@click.option("--interactive", is_flag=True, help="Ask for human approval at this terminal")
def verify(
    agent: str,
    merchant: str,
    amount: str,
    currency: str,
    category: Optional[str],
    method: Optional[str],
    description: str,
    intent_id: Optional[str],
    cart_id: Optional[str],
    payment_id: Optional[str],
    interactive: bool,
):
    """Enforce the Intent -> Cart -> Payment chain for a payment request."""
    config = _config()
    try:
        request = PaymentRequest(
            amount=amount,
            currency_code=currency,
            requesting_agent_id=agent,
            receiving_agent_id=merchant,
            description=description,
            category=category,
            payment_method=method,
            intent_mandate_id=intent_id,
            cart_mandate_id=cart_id,
            payment_mandate_id=payment_id,
        )
    except ValueError as exc:
        click.echo(f"❌ Invalid payment request: {exc}", err=True)
        sys.exit(1)

    enforcer = MandateEnforcer(
        repository=_store(config),
        verifier=MandateVerifier(EthereumSignatureService()),
        approval_service=_approval_service(config, interactive),
        audit=_audit_trail(config),
        approval_timeout_seconds=config.approval_timeout_seconds,
    )

    try:
        chain = enforcer.enforce(request)
    except MandateViolationError as exc:
        click.echo(f"❌ Payment not authorized: {exc}")
        sys.exit(1)

    click.echo(f"✅ Payment authorized: {format_amount(request.amount, request.currency_code)} → {merchant}")
    click.echo(f"   Intent:    {chain.intent.id}")
    click.echo(f"   Cart:      {chain.cart.id}")
    click.echo(f"   Payment:   {chain.payment.id}")


@main.command()
@click.argument("mandate_id")
@click.option("--reason", default="revoked by user", help="Reason recorded with the revocation")
def revoke(mandate_id: str, reason: str):
    """Revoke a mandate. Verification of anything under it fails afterwards."""
    config = _config()
    store = _store(config)
    mandate = store.find_mandate(mandate_id)
    if mandate is None:
        click.echo(f"❌ Mandate not found: {mandate_id}", err=True)
        sys.exit(1)
    if not store.revoke_mandate(mandate_id, reason):
        click.echo(f"⚠️  Mandate already revoked: {mandate_id}")
        return

    _audit_trail(config).log(
        EventType.MANDATE_REVOKED,
        mandate_id=mandate_id,
        description=f"{mandate.kind.value} mandate revoked",
        reason=reason,
    )
    click.echo(f"✓ Mandate revoked: {mandate_id}")
    click.echo(f"  Reason: {reason}")


@main.command()
@click.option("--mandate-id", default=None, help="Filter by mandate ID")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--summary", "show_summary", is_flag=True, help="Show counts instead of events")
@click.option("--since", default=None, help="Only events newer than this (e.g. 15m, 24h, 7d)")
def audit(mandate_id: Optional[str], limit: int, show_summary: bool, since: Optional[str]):
    """View the audit trail."""
    trail = _audit_trail(_config())
    try:
        start_time = time.time() - _parse_duration_to_seconds(since) if since else None
    except ValueError as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)
    try:
        if show_summary:
            summary = trail.summary(mandate_id=mandate_id, start_time=start_time)
            click.echo(f"📊 Audit summary{f' for {mandate_id}' if mandate_id else ''}")
            click.echo(f"   Events:   {summary['total_events']}")
            click.echo(f"   Failures: {summary['failures']}")
            for event_type, count in sorted(summary["by_type"].items()):
                click.echo(f"   {event_type:<26} {count}")
            return
        events = trail.read_events(mandate_id=mandate_id, limit=limit, start_time=start_time)
    except RuntimeError as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount}" if event.amount else ""
        currency = f" {event.currency}" if event.currency and event.amount else ""
        merchant = f" → {event.merchant}" if event.merchant else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{currency}{merchant}{reason}")


if __name__ == "__main__":
    main()
