"""Tests for mandate enforcement at the payment boundary."""

import dataclasses
import threading
from decimal import Decimal

import pytest

from attorney.approval import CallbackApprovalService
from attorney.audit import AuditTrail, EventType
from attorney.enforcer import MandateEnforcer
from attorney.errors import MandateViolationError, ViolationType
from attorney.mandate import CartItem, create_cart_mandate, create_payment_mandate
from attorney.payment import Payment, PaymentResponse, PaymentStatus
from attorney.repository import InMemoryMandateRepository
from attorney.verifier import MandateVerifier

from conftest import AGENT, KEY_ID, MERCHANT, METHOD, NOW, build_chain, make_request


@pytest.fixture
def repo():
    return InMemoryMandateRepository()


@pytest.fixture
def stored_chain(repo, chain):
    repo.store_intent_mandate(chain.intent)
    repo.store_cart_mandate(chain.cart)
    repo.store_payment_mandate(chain.payment)
    return chain


def _request_for(chain, **overrides):
    return make_request(
        intent_mandate_id=chain.intent.id,
        cart_mandate_id=chain.cart.id,
        payment_mandate_id=chain.payment.id,
        **overrides,
    )


def _violation(enforcer, request) -> MandateViolationError:
    with pytest.raises(MandateViolationError) as excinfo:
        enforcer.enforce(request)
    return excinfo.value


class HumanAtTheKeyboard:
    """Approval callbacks that sign whatever the request describes."""

    def __init__(self, signer, approve=True, method=METHOD):
        self.signer = signer
        self.approve = approve
        self.method = method
        self.calls = []

    def cart(self, intent, request):
        self.calls.append("cart")
        if not self.approve:
            return None
        return create_cart_mandate(
            intent=intent,
            receiving_agent_id=request.receiving_agent_id,
            items=[CartItem(id="req", description=request.description, unit_price=request.amount)],
            currency_code=request.currency_code,
            signer=self.signer,
            key_id=KEY_ID,
            now=NOW - 5,
        )

    def payment(self, cart, request):
        self.calls.append("payment")
        return create_payment_mandate(
            cart=cart,
            payment_method_id=self.method,
            signer=self.signer,
            key_id=KEY_ID,
            now=NOW - 1,
        )

    def service(self, required=False):
        return CallbackApprovalService(self.cart, self.payment, required=required)


class TestEnforceStoredChain:
    def test_accepts_referenced_chain(self, repo, verifier, stored_chain, recording_audit):
        enforcer = MandateEnforcer(repo, verifier, audit=recording_audit)

        chain = enforcer.enforce(_request_for(stored_chain))

        assert chain.mandate_ids() == stored_chain.mandate_ids()
        assert recording_audit.types() == [
            EventType.INTENT_VERIFIED,
            EventType.CART_VERIFIED,
            EventType.PAYMENT_MANDATE_VERIFIED,
            EventType.ENFORCEMENT_PASSED,
        ]

    def test_resolves_active_intent(self, repo, verifier, stored_chain):
        enforcer = MandateEnforcer(repo, verifier)
        request = make_request(cart_mandate_id=stored_chain.cart.id, payment_mandate_id=stored_chain.payment.id)
        assert enforcer.enforce(request).intent.id == stored_chain.intent.id

    def test_no_intent(self, repo, verifier):
        error = _violation(MandateEnforcer(repo, verifier), make_request())
        assert error.violation_type is ViolationType.MANDATE_NOT_FOUND

    def test_unknown_intent_id(self, repo, verifier, stored_chain):
        error = _violation(MandateEnforcer(repo, verifier), make_request(intent_mandate_id="intent-nope"))
        assert error.violation_type is ViolationType.MANDATE_NOT_FOUND
        assert error.mandate_id == "intent-nope"

    def test_revoked_intent(self, repo, verifier, stored_chain, recording_audit):
        repo.revoke_mandate(stored_chain.intent.id, "user withdrew")
        enforcer = MandateEnforcer(repo, verifier, audit=recording_audit)

        error = _violation(enforcer, _request_for(stored_chain))

        assert error.violation_type is ViolationType.MANDATE_REVOKED
        event_type, _, data = recording_audit.events[-1]
        assert event_type is EventType.ENFORCEMENT_FAILED
        assert data["success"] is False
        assert data["reason"] == "mandate_revoked"

    def test_intent_of_another_agent(self, repo, verifier, stored_chain):
        request = _request_for(stored_chain, requesting_agent_id="agent-intruder")

        error = _violation(MandateEnforcer(repo, verifier), request)

        assert error.violation_type is ViolationType.MANDATE_SCOPE_VIOLATION
        assert error.mandate_id == stored_chain.intent.id
        assert not MandateEnforcer(repo, verifier).is_compliant(request)

    def test_revoked_cart(self, repo, verifier, stored_chain):
        repo.revoke_mandate(stored_chain.cart.id, "stale")
        error = _violation(MandateEnforcer(repo, verifier), _request_for(stored_chain))
        assert error.violation_type is ViolationType.MANDATE_REVOKED
        assert error.mandate_id == stored_chain.cart.id

    def test_value_mismatch(self, repo, verifier, stored_chain):
        error = _violation(MandateEnforcer(repo, verifier), _request_for(stored_chain, amount="104.99"))
        assert error.violation_type is ViolationType.VALUE_MISMATCH
        assert error.mandate_id == stored_chain.cart.id

    def test_missing_cart_without_approval(self, repo, verifier, stored_chain):
        error = _violation(MandateEnforcer(repo, verifier), make_request())
        assert error.violation_type is ViolationType.MANDATE_NOT_FOUND

    def test_unknown_cart_id(self, repo, verifier, stored_chain):
        error = _violation(MandateEnforcer(repo, verifier), make_request(cart_mandate_id="cart-nope"))
        assert error.violation_type is ViolationType.MANDATE_NOT_FOUND

    def test_check_payment_permission(self, repo, verifier, stored_chain):
        enforcer = MandateEnforcer(repo, verifier)
        assert enforcer.check_payment_permission(_request_for(stored_chain))
        assert not enforcer.check_payment_permission(_request_for(stored_chain, currency_code="EUR"))


class TestHumanApproval:
    def test_approval_completes_chain(self, repo, verifier, signer, stored_chain, recording_audit):
        human = HumanAtTheKeyboard(signer)
        enforcer = MandateEnforcer(repo, verifier, human.service(), audit=recording_audit)

        chain = enforcer.enforce(make_request())

        assert human.calls == ["cart", "payment"]
        assert repo.find_cart_mandate(chain.cart.id) is not None
        assert repo.find_payment_mandate(chain.payment.id) is not None
        types = recording_audit.types()
        assert types.count(EventType.APPROVAL_GRANTED) == 2
        assert types.count(EventType.MANDATE_STORED) == 2
        assert types[-1] is EventType.ENFORCEMENT_PASSED

    def test_intent_requiring_approval_ignores_agent_supplied_cart(self, repo, verifier, signer):
        chain = build_chain(signer, requires_human_approval=True)
        repo.store_intent_mandate(chain.intent)
        repo.store_cart_mandate(chain.cart)
        repo.store_payment_mandate(chain.payment)
        human = HumanAtTheKeyboard(signer)

        approved = MandateEnforcer(repo, verifier, human.service()).enforce(_request_for(chain))

        assert human.calls == ["cart", "payment"]
        assert approved.cart.id != chain.cart.id

    def test_approved_cart_cannot_reuse_a_stored_id(self, repo, verifier, signer, stored_chain):
        def reuse_cart_id(intent, request):
            return create_cart_mandate(
                intent=intent,
                receiving_agent_id=request.receiving_agent_id,
                items=[CartItem(id="req", description="", unit_price=request.amount)],
                currency_code=request.currency_code,
                mandate_id=stored_chain.cart.id,
                signer=signer,
                key_id=KEY_ID,
                now=NOW - 5,
            )

        human = HumanAtTheKeyboard(signer)
        enforcer = MandateEnforcer(repo, verifier, CallbackApprovalService(reuse_cart_id, human.payment))

        error = _violation(enforcer, make_request(amount="1.00"))

        assert error.violation_type is ViolationType.CHAIN_MISMATCH
        assert human.calls == []
        assert repo.find_cart_mandate(stored_chain.cart.id).amount == Decimal("105.00")

    def test_required_approval_without_service(self, repo, verifier, signer):
        chain = build_chain(signer, requires_human_approval=True)
        repo.store_intent_mandate(chain.intent)
        repo.store_cart_mandate(chain.cart)
        repo.store_payment_mandate(chain.payment)

        error = _violation(MandateEnforcer(repo, verifier), _request_for(chain))
        assert error.violation_type is ViolationType.APPROVAL_UNAVAILABLE

    def test_service_can_require_approval(self, repo, verifier, signer, stored_chain):
        human = HumanAtTheKeyboard(signer)
        enforcer = MandateEnforcer(repo, verifier, human.service(required=True))
        enforcer.enforce(_request_for(stored_chain))
        assert human.calls == ["cart", "payment"]

    def test_denial(self, repo, verifier, signer, stored_chain, recording_audit):
        human = HumanAtTheKeyboard(signer, approve=False)
        enforcer = MandateEnforcer(repo, verifier, human.service(), audit=recording_audit)

        error = _violation(enforcer, make_request())

        assert error.violation_type is ViolationType.APPROVAL_UNAVAILABLE
        assert "no cart mandate obtained" in str(error)
        assert EventType.APPROVAL_DENIED in recording_audit.types()
        assert len(repo.list_mandates()) == 3

    def test_timeout(self, repo, verifier, signer, stored_chain):
        release = threading.Event()

        def slow(intent, request):
            release.wait(10)

        enforcer = MandateEnforcer(
            repo,
            verifier,
            CallbackApprovalService(slow, lambda cart, request: None),
            approval_timeout_seconds=0.1,
        )
        try:
            error = _violation(enforcer, make_request())
        finally:
            release.set()
        assert error.violation_type is ViolationType.APPROVAL_UNAVAILABLE

    def test_nothing_stored_when_later_stage_fails(self, repo, verifier, signer, stored_chain):
        human = HumanAtTheKeyboard(signer, method="card-999")
        enforcer = MandateEnforcer(repo, verifier, human.service())

        error = _violation(enforcer, make_request())

        assert error.violation_type is ViolationType.VALUE_MISMATCH
        assert {m.id for m in repo.list_mandates()} == set(stored_chain.mandate_ids().values())

    def test_is_compliant_never_asks(self, repo, verifier, signer, stored_chain):
        human = HumanAtTheKeyboard(signer)
        enforcer = MandateEnforcer(repo, verifier, human.service())

        assert enforcer.is_compliant(_request_for(stored_chain))
        assert not enforcer.is_compliant(make_request())
        assert human.calls == []


class TestPostHocAudit:
    def _payment(self, chain, **overrides):
        fields = {
            "payment_id": "pay-1",
            "amount": Decimal("105.00"),
            "currency_code": "USD",
            "requesting_agent_id": AGENT,
            "receiving_agent_id": MERCHANT,
            "created_at": NOW,
            "payment_method": METHOD,
        }
        fields.update(overrides)
        return Payment(**fields)

    def test_linked_payment_passes(self, repo, verifier, stored_chain, recording_audit):
        repo.link_payment("pay-1", stored_chain.payment.id)
        enforcer = MandateEnforcer(repo, verifier, audit=recording_audit)

        assert enforcer.audit_payment(self._payment(stored_chain))
        event_type, _, data = recording_audit.events[-1]
        assert event_type is EventType.PAYMENT_AUDITED
        assert data["payment_id"] == "pay-1"

    def test_verified_as_of_payment_time(self, repo, signer, stored_chain):
        repo.link_payment("pay-1", stored_chain.payment.id)
        late_verifier = MandateVerifier(signer, clock=lambda: NOW + 10 * 24 * 3600)
        enforcer = MandateEnforcer(repo, late_verifier)
        assert enforcer.audit_payment(self._payment(stored_chain))

    def test_amount_differs_from_chain(self, repo, verifier, stored_chain):
        repo.link_payment("pay-1", stored_chain.payment.id)
        enforcer = MandateEnforcer(repo, verifier)
        assert not enforcer.audit_payment(self._payment(stored_chain, amount=Decimal("160.00")))

    def test_unlinked_payment(self, repo, verifier, stored_chain):
        assert not MandateEnforcer(repo, verifier).audit_payment(self._payment(stored_chain, payment_id="pay-x"))

    def test_revocation_after_payment_does_not_fail_audit(self, repo, verifier, stored_chain):
        repo.link_payment("pay-1", stored_chain.payment.id)
        repo.revoke_mandate(stored_chain.intent.id, "later", now=NOW)
        enforcer = MandateEnforcer(repo, verifier)

        assert enforcer.audit_payment(self._payment(stored_chain, created_at=NOW - 5))
        assert not enforcer.audit_payment(self._payment(stored_chain, created_at=NOW))


def test_attach_mandate_info(repo, verifier, stored_chain):
    repo.link_payment("pay-1", stored_chain.payment.id)
    enforcer = MandateEnforcer(repo, verifier)

    response = enforcer.attach_mandate_info(PaymentResponse(payment_id="pay-1", status=PaymentStatus.COMPLETED))
    assert response.mandate_info == stored_chain.mandate_ids()

    unknown = enforcer.attach_mandate_info(PaymentResponse(payment_id="pay-2", status=PaymentStatus.COMPLETED))
    assert unknown.mandate_info == {}


def test_enforcement_written_to_audit_trail(tmp_path, repo, verifier, stored_chain):
    trail = AuditTrail(tmp_path / "audit.jsonl", tmp_path / "secrets" / "audit.key")
    enforcer = MandateEnforcer(repo, verifier, audit=trail)

    enforcer.enforce(_request_for(stored_chain))
    with pytest.raises(MandateViolationError):
        enforcer.enforce(_request_for(stored_chain, amount="1.00"))

    events = trail.read_events()
    assert events[3].event_type == EventType.ENFORCEMENT_PASSED.value
    assert events[-1].event_type == EventType.ENFORCEMENT_FAILED.value
    assert events[-1].success is False
    assert events[-1].reason == ViolationType.VALUE_MISMATCH.value
    assert dataclasses.asdict(events[0])["details"]["receiving_agent_id"] == MERCHANT
