"""Shared fixtures: a signer, a fixed clock, and the $105 reference chain."""

from __future__ import annotations

from decimal import Decimal

import pytest

from attorney.mandate import (
    CartItem,
    MandateChain,
    create_cart_mandate,
    create_intent_mandate,
    create_payment_mandate,
)
from attorney.payment import PaymentRequest
from attorney.signature import EthereumSignatureService
from attorney.verifier import MandateVerifier


NOW = 1_900_000_000.0
AGENT = "agent-shopper"
MERCHANT = "merchant-m"
KEY_ID = "user"
METHOD = "card-123"


def build_chain(
    signer,
    *,
    key_id: str = KEY_ID,
    merchant=MERCHANT,
    max_amount: str = "200",
    requires_human_approval: bool = False,
    categories=(),
    now: float = NOW,
) -> MandateChain:
    intent = create_intent_mandate(
        requesting_agent_id=AGENT,
        receiving_agent_id=merchant,
        max_amount_per_payment=max_amount,
        requires_human_approval=requires_human_approval,
        allowed_categories=categories,
        signer=signer,
        key_id=key_id,
        now=now - 60,
    )
    cart = create_cart_mandate(
        intent=intent,
        receiving_agent_id=MERCHANT,
        items=[
            CartItem(id="sku-1", description="Widget", unit_price=Decimal("95.00")),
            CartItem(id="sku-2", description="Cable", unit_price=Decimal("5.00"), quantity=2),
        ],
        currency_code="USD",
        signer=signer,
        key_id=key_id,
        now=now - 30,
    )
    payment = create_payment_mandate(
        cart=cart,
        payment_method_id=METHOD,
        signer=signer,
        key_id=key_id,
        now=now - 10,
    )
    return MandateChain(intent=intent, cart=cart, payment=payment)


def make_request(**overrides) -> PaymentRequest:
    fields = {
        "amount": Decimal("105.00"),
        "currency_code": "USD",
        "requesting_agent_id": AGENT,
        "receiving_agent_id": MERCHANT,
        "description": "Widget and cables",
        "payment_method": METHOD,
    }
    fields.update(overrides)
    return PaymentRequest(**fields)


@pytest.fixture
def signer():
    service = EthereumSignatureService()
    service.generate_key_pair(KEY_ID)
    return service


@pytest.fixture
def verifier(signer):
    return MandateVerifier(signer, clock=lambda: NOW)


@pytest.fixture
def chain(signer):
    return build_chain(signer)


@pytest.fixture
def payment_request():
    return make_request()


class RecordingAudit:
    """In-memory AuditLogger for assertions on what the enforcer reported."""

    def __init__(self):
        self.events: list[tuple] = []

    def log_event(self, event_type, description, data=None):
        self.events.append((event_type, description, dict(data or {})))
        return str(len(self.events))

    def log_signed_event(self, event_type, description, data, signer_id, signature):
        return self.log_event(event_type, description, data)

    def types(self):
        return [event_type for event_type, _, _ in self.events]


@pytest.fixture
def recording_audit():
    return RecordingAudit()
