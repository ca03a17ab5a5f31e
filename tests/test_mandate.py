"""Tests for mandate entities: lifetimes, scope, cart totals, sealing."""

import dataclasses
from decimal import Decimal

import pytest

from attorney.credential import new_proof
from attorney.errors import MandateSealedError
from attorney.mandate import (
    DEFAULT_CART_TTL_SECONDS,
    DEFAULT_INTENT_TTL_SECONDS,
    DEFAULT_PAYMENT_TTL_SECONDS,
    UNRESTRICTED,
    CartItem,
    CartMandate,
    IntentMandate,
    MandateKind,
    create_cart_mandate,
    create_intent_mandate,
    create_payment_mandate,
    mandate_from_dict,
)

from conftest import AGENT, MERCHANT, METHOD, NOW


def _intent(**overrides) -> IntentMandate:
    fields = {
        "id": "intent-1",
        "requesting_agent_id": AGENT,
        "receiving_agent_id": MERCHANT,
        "created_at": NOW,
        "expires_at": NOW + 3600,
        "max_amount_per_payment": Decimal("200"),
    }
    fields.update(overrides)
    return IntentMandate(**fields)


def _cart(**overrides) -> CartMandate:
    fields = {
        "id": "cart-1",
        "requesting_agent_id": AGENT,
        "receiving_agent_id": MERCHANT,
        "created_at": NOW,
        "expires_at": NOW + 3600,
        "parent_intent_mandate_id": "intent-1",
        "currency_code": "usd",
        "items": [
            CartItem(id="sku-1", description="Widget", unit_price=Decimal("95.00")),
            CartItem(id="sku-2", description="Cable", unit_price=Decimal("5.00"), quantity=2),
        ],
    }
    fields.update(overrides)
    return CartMandate(**fields)


class TestLifetime:
    def test_rejects_expiry_at_or_before_creation(self):
        with pytest.raises(ValueError, match="must be after created_at"):
            _intent(expires_at=NOW)
        with pytest.raises(ValueError):
            _intent(expires_at=NOW - 1)

    def test_rejects_empty_ids(self):
        with pytest.raises(ValueError):
            _intent(id="")
        with pytest.raises(ValueError):
            _intent(requesting_agent_id="  ")

    def test_expired_exactly_at_expiry(self):
        intent = _intent()
        assert intent.is_valid(NOW + 1)
        assert not intent.is_expired(NOW + 3599)
        assert intent.is_expired(NOW + 3600)
        assert not intent.is_valid(NOW + 3600)

    def test_factories_apply_default_lifetimes(self):
        intent = create_intent_mandate(
            requesting_agent_id=AGENT,
            receiving_agent_id=MERCHANT,
            max_amount_per_payment="50",
            now=NOW,
        )
        cart = create_cart_mandate(
            intent=intent,
            receiving_agent_id=MERCHANT,
            items=[CartItem(id="a", description="A", unit_price=Decimal("10"))],
            currency_code="USD",
            now=NOW,
        )
        payment = create_payment_mandate(cart=cart, now=NOW)

        assert intent.expires_at - intent.created_at == DEFAULT_INTENT_TTL_SECONDS
        assert cart.expires_at - cart.created_at == DEFAULT_CART_TTL_SECONDS
        assert payment.expires_at - payment.created_at == DEFAULT_PAYMENT_TTL_SECONDS
        assert intent.id.startswith("intent-")
        assert cart.id.startswith("cart-")
        assert payment.id.startswith("payment-")
        assert not intent.has_proof()


class TestIntentScope:
    def test_empty_merchant_is_not_a_universal_grant(self):
        with pytest.raises(ValueError, match="UNRESTRICTED"):
            _intent(receiving_agent_id="")

    def test_unrestricted_intent_allows_any_merchant(self):
        intent = _intent(receiving_agent_id=UNRESTRICTED)
        assert not intent.is_merchant_restricted
        assert intent.permits("anyone", Decimal("10"))

    def test_merchant_restriction(self):
        intent = _intent()
        assert intent.permits(MERCHANT, Decimal("10"))
        assert "outside intent scope" in intent.scope_violation("other", Decimal("10"))

    def test_amount_ceiling_is_inclusive(self):
        intent = _intent()
        assert intent.permits(MERCHANT, Decimal("200.00"))
        assert "exceeds max per payment" in intent.scope_violation(MERCHANT, Decimal("200.01"))

    def test_category_restriction(self):
        intent = _intent(allowed_categories=frozenset({"books"}))
        assert intent.permits(MERCHANT, Decimal("1"), "books")
        assert intent.permits(MERCHANT, Decimal("1"), None)
        assert "not allowed" in intent.scope_violation(MERCHANT, Decimal("1"), "games")

    def test_rejects_negative_ceiling(self):
        with pytest.raises(ValueError, match=">= 0"):
            _intent(max_amount_per_payment=Decimal("-1"))


class TestCart:
    def test_amount_is_derived_from_items(self):
        cart = _cart()
        assert cart.amount == Decimal("105.00")
        assert cart.currency_code == "USD"

    def test_add_then_remove_restores_total_exactly(self):
        cart = _cart()
        before = cart.amount
        cart.add_item(CartItem(id="tip", description="Tip", unit_price=Decimal("0.10"), quantity=3))
        assert cart.amount == Decimal("105.30")
        removed = cart.remove_item("tip")
        assert removed.id == "tip"
        assert cart.amount == before
        assert str(cart.amount) == str(before)

    def test_remove_unknown_item(self):
        with pytest.raises(KeyError):
            _cart().remove_item("missing")

    def test_signed_cart_is_sealed(self, chain):
        with pytest.raises(MandateSealedError):
            chain.cart.add_item(CartItem(id="x", description="X", unit_price=Decimal("1")))
        with pytest.raises(MandateSealedError):
            chain.cart.remove_item("sku-1")
        assert chain.cart.amount == Decimal("105.00")

    def test_rejects_self_parent(self):
        with pytest.raises(ValueError, match="cannot reference itself"):
            _cart(id="same", parent_intent_mandate_id="same")

    def test_requires_merchant(self):
        with pytest.raises(ValueError, match="receiving_agent_id"):
            _cart(receiving_agent_id=None)

    @pytest.mark.parametrize("quantity", [0, -1, True])
    def test_item_quantity_must_be_positive_int(self, quantity):
        with pytest.raises(ValueError):
            CartItem(id="a", description="A", unit_price=Decimal("1"), quantity=quantity)


class TestPaymentMandate:
    def test_payment_releases_cart_total(self, chain):
        assert chain.payment.amount == chain.cart.amount
        assert chain.payment.currency_code == "USD"
        assert chain.payment.parent_cart_mandate_id == chain.cart.id
        assert chain.payment.payment_method_id == METHOD

    def test_method_absent(self, chain):
        payment = dataclasses.replace(chain.payment, payment_details={}, proof=None)
        assert payment.payment_method_id is None


class TestProofSlot:
    def test_attach_proof_last_write_wins(self):
        intent = _intent()
        first = new_proof(proof_type="T", verification_method="k#1", created=NOW)
        second = new_proof(proof_type="T", verification_method="k#2", created=NOW)
        intent.attach_proof(first)
        intent.attach_proof(second)
        assert intent.proof is second
        assert intent.has_proof()

    def test_canonical_bytes_exclude_proof(self, chain):
        bare = dataclasses.replace(chain.intent, proof=None)
        assert bare.canonical_bytes() == chain.intent.canonical_bytes()


class TestSerialization:
    def test_round_trip_preserves_signed_payload(self, chain):
        for mandate in (chain.intent, chain.cart, chain.payment):
            restored = mandate_from_dict(mandate.to_dict())
            assert type(restored) is type(mandate)
            assert restored.canonical_bytes() == mandate.canonical_bytes()
            assert restored.proof == mandate.proof

    def test_kind_tag(self, chain):
        assert chain.intent.to_dict()["kind"] == MandateKind.INTENT.value
        assert chain.cart.kind is MandateKind.CART
        assert chain.mandate_ids() == {
            "intent_mandate_id": chain.intent.id,
            "cart_mandate_id": chain.cart.id,
            "payment_mandate_id": chain.payment.id,
        }
