"""
Mandate enforcement for payment requests.

The enforcer resolves the Intent -> Cart -> Payment chain for a request, asks a
human for whatever the chain is missing, and verifies each stage parent to
child. A payment may be forwarded only when enforce() returns a chain.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .approval import DEFAULT_APPROVAL_TIMEOUT_SECONDS, ApprovalGate, ApprovalOutcome, HumanApprovalService
from .audit import AuditLogger, EventType
from .errors import MandateViolationError, ViolationType
from .mandate import CartMandate, IntentMandate, Mandate, MandateChain, PaymentMandate
from .payment import Payment, PaymentRequest, PaymentResponse
from .repository import MandateRepository
from .verifier import MandateVerifier, VerificationResult

logger = logging.getLogger(__name__)


_STAGE_EVENTS = {
    "intent": EventType.INTENT_VERIFIED,
    "cart": EventType.CART_VERIFIED,
    "payment": EventType.PAYMENT_MANDATE_VERIFIED,
}


class MandateEnforcer:
    """Guards the payment boundary with the mandate chain."""

    def __init__(
        self,
        repository: MandateRepository,
        verifier: MandateVerifier,
        approval_service: Optional[HumanApprovalService] = None,
        audit: Optional[AuditLogger] = None,
        approval_timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    ):
        self.repository = repository
        self.verifier = verifier
        self.approval_service = approval_service
        self.audit = audit
        self._gate = (
            ApprovalGate(approval_service, approval_timeout_seconds)
            if approval_service is not None
            else None
        )

    # -- Public API -----------------------------------------------------

    def enforce(
        self,
        request: PaymentRequest,
        cancel: Optional[threading.Event] = None,
    ) -> MandateChain:
        """Return the verified chain for request or raise MandateViolationError.

        Mandates obtained through human approval are stored only after every
        stage has passed.
        """
        approved: list[Mandate] = []
        try:
            chain = self._resolve_chain(request, approved, allow_approval=True, cancel=cancel)
        except MandateViolationError as exc:
            self._audit(
                EventType.ENFORCEMENT_FAILED,
                f"Payment request refused: {exc.args[0]}",
                request,
                mandate_id=exc.mandate_id,
                success=False,
                reason=exc.violation_type.value,
            )
            raise

        for mandate in approved:
            if isinstance(mandate, CartMandate):
                self.repository.store_cart_mandate(mandate)
            elif isinstance(mandate, PaymentMandate):
                self.repository.store_payment_mandate(mandate)
            self._audit(EventType.MANDATE_STORED, f"Stored approved {mandate.kind.value} mandate", request, mandate_id=mandate.id)

        self._audit(
            EventType.ENFORCEMENT_PASSED,
            "Mandate chain verified",
            request,
            mandate_id=chain.payment.id,
            **chain.mandate_ids(),
        )
        return chain

    def check_payment_permission(self, request: PaymentRequest) -> bool:
        try:
            self.enforce(request)
        except MandateViolationError:
            return False
        return True

    def is_compliant(self, request: PaymentRequest) -> bool:
        """Same checks as enforce(), using stored mandates only and never asking a human."""
        try:
            self._resolve_chain(request, [], allow_approval=False)
        except MandateViolationError as exc:
            logger.debug("Request is not compliant: %s", exc)
            return False
        return True

    def audit_payment(self, payment: Payment) -> bool:
        """Re-verify a recorded payment against the chain linked to its id.

        Verification runs as of the payment's creation time, so a mandate that
        expired or was revoked afterwards does not fail the audit.
        """
        request = payment.to_request()
        intent = self.repository.find_intent_mandate_for_payment(payment.payment_id)
        cart = self.repository.find_cart_mandate_for_payment(payment.payment_id)
        mandate = self.repository.find_payment_mandate_for_payment(payment.payment_id)

        if intent is None or cart is None or mandate is None:
            result = VerificationResult.fail(
                mandate.id if mandate is not None else None,
                ViolationType.MANDATE_NOT_FOUND,
                f"no mandate chain linked to payment {payment.payment_id}",
            )
        else:
            result = self._revoked_before(payment, intent, cart, mandate)
            if result is None:
                result = self.verifier.check_chain(intent, cart, mandate, request, now=payment.created_at)

        self._audit(
            EventType.PAYMENT_AUDITED,
            f"Audit of payment {payment.payment_id}",
            request,
            mandate_id=result.mandate_id,
            success=result.accepted,
            reason=result.violation.value if result.violation else None,
            payment_id=payment.payment_id,
        )
        if not result:
            logger.warning("Payment %s failed audit: %s", payment.payment_id, result.reason)
        return result.accepted

    def attach_mandate_info(self, response: PaymentResponse) -> PaymentResponse:
        """Add the ids of the mandates linked to response.payment_id."""
        found = {
            "intent_mandate_id": self.repository.find_intent_mandate_for_payment(response.payment_id),
            "cart_mandate_id": self.repository.find_cart_mandate_for_payment(response.payment_id),
            "payment_mandate_id": self.repository.find_payment_mandate_for_payment(response.payment_id),
        }
        for key, mandate in found.items():
            if mandate is not None:
                response.mandate_info[key] = mandate.id
        return response

    # -- Chain resolution -----------------------------------------------

    def _resolve_chain(
        self,
        request: PaymentRequest,
        approved: list[Mandate],
        allow_approval: bool,
        cancel: Optional[threading.Event] = None,
    ) -> MandateChain:
        now = self.verifier.clock()
        intent = self._resolve_intent(request, now)
        self._require("intent", self.verifier.check_intent_mandate(intent, request, now), request)

        needs_approval = self._approval_required(intent, request)

        cart, fresh = self._resolve_cart(intent, request, needs_approval, allow_approval, cancel)
        if fresh:
            approved.append(cart)
        self._require("cart", self.verifier.check_cart_mandate(cart, intent, request, now), request)

        payment, fresh = self._resolve_payment(cart, request, needs_approval, allow_approval, cancel)
        if fresh:
            approved.append(payment)
        self._require("payment", self.verifier.check_payment_mandate(payment, cart, request, now), request)

        return MandateChain(intent=intent, cart=cart, payment=payment)

    def _resolve_intent(self, request: PaymentRequest, now: float) -> IntentMandate:
        if request.intent_mandate_id:
            intent = self.repository.find_intent_mandate(request.intent_mandate_id)
            if intent is None:
                raise MandateViolationError(
                    "intent mandate not found",
                    request.intent_mandate_id,
                    ViolationType.MANDATE_NOT_FOUND,
                )
            self._ensure_not_revoked(intent)
            if intent.requesting_agent_id != request.requesting_agent_id:
                raise MandateViolationError(
                    f"intent mandate belongs to agent {intent.requesting_agent_id}, "
                    f"not {request.requesting_agent_id}",
                    intent.id,
                    ViolationType.MANDATE_SCOPE_VIOLATION,
                )
            return intent

        intent = self.repository.find_active_intent_mandate_for_agent(
            request.requesting_agent_id,
            request.receiving_agent_id,
            now=now,
        )
        if intent is None:
            raise MandateViolationError(
                f"no active intent mandate for agent {request.requesting_agent_id}",
                None,
                ViolationType.MANDATE_NOT_FOUND,
            )
        return intent

    def _resolve_cart(
        self,
        intent: IntentMandate,
        request: PaymentRequest,
        needs_approval: bool,
        allow_approval: bool,
        cancel: Optional[threading.Event],
    ) -> tuple[CartMandate, bool]:
        """The cart for request, and whether a human just approved it."""
        if request.cart_mandate_id and not needs_approval:
            cart = self.repository.find_cart_mandate(request.cart_mandate_id)
            if cart is None:
                raise MandateViolationError(
                    "cart mandate not found",
                    request.cart_mandate_id,
                    ViolationType.MANDATE_NOT_FOUND,
                )
            self._ensure_not_revoked(cart)
            return cart, False
        self._ensure_escalation(intent, "cart", request, needs_approval, allow_approval)
        outcome = self._gate.request_cart(intent, request, cancel)
        return self._approved_mandate(outcome, intent, "cart", request), True

    def _resolve_payment(
        self,
        cart: CartMandate,
        request: PaymentRequest,
        needs_approval: bool,
        allow_approval: bool,
        cancel: Optional[threading.Event],
    ) -> tuple[PaymentMandate, bool]:
        if request.payment_mandate_id and not needs_approval:
            payment = self.repository.find_payment_mandate(request.payment_mandate_id)
            if payment is None:
                raise MandateViolationError(
                    "payment mandate not found",
                    request.payment_mandate_id,
                    ViolationType.MANDATE_NOT_FOUND,
                )
            self._ensure_not_revoked(payment)
            return payment, False
        self._ensure_escalation(cart, "payment", request, needs_approval, allow_approval)
        outcome = self._gate.request_payment(cart, request, cancel)
        return self._approved_mandate(outcome, cart, "payment", request), True

    # -- Human approval -------------------------------------------------

    def _approval_required(self, intent: IntentMandate, request: PaymentRequest) -> bool:
        if intent.requires_human_approval:
            return True
        if self.approval_service is None:
            return False
        return bool(self.approval_service.is_human_approval_required(request))

    def _ensure_escalation(
        self,
        parent: Mandate,
        label: str,
        request: PaymentRequest,
        needs_approval: bool,
        allow_approval: bool,
    ) -> None:
        if not allow_approval:
            if needs_approval:
                raise MandateViolationError(
                    f"human approval required for {label} mandate",
                    parent.id,
                    ViolationType.APPROVAL_UNAVAILABLE,
                )
            raise MandateViolationError(
                f"no {label} mandate for request",
                parent.id,
                ViolationType.MANDATE_NOT_FOUND,
            )
        if self._gate is None:
            if needs_approval:
                raise MandateViolationError(
                    f"human approval required for {label} mandate but no approval service is configured",
                    parent.id,
                    ViolationType.APPROVAL_UNAVAILABLE,
                )
            raise MandateViolationError(
                f"no {label} mandate for request",
                parent.id,
                ViolationType.MANDATE_NOT_FOUND,
            )
        self._audit(
            EventType.APPROVAL_REQUESTED,
            f"Requested human approval for {label} mandate",
            request,
            mandate_id=parent.id,
        )

    def _approved_mandate(self, outcome: ApprovalOutcome, parent: Mandate, label: str, request: PaymentRequest):
        if not outcome.approved:
            self._audit(
                EventType.APPROVAL_DENIED,
                f"No {label} mandate obtained",
                request,
                mandate_id=parent.id,
                success=False,
                reason=outcome.status.value,
            )
            raise MandateViolationError(
                f"no {label} mandate obtained: {outcome.reason}",
                parent.id,
                ViolationType.APPROVAL_UNAVAILABLE,
            )
        mandate = outcome.mandate
        if self._id_in_use(mandate.id):
            self._audit(
                EventType.APPROVAL_DENIED,
                f"Approved {label} mandate reuses a stored id",
                request,
                mandate_id=mandate.id,
                success=False,
                reason=ViolationType.CHAIN_MISMATCH.value,
            )
            raise MandateViolationError(
                f"approved {label} mandate reuses stored id {mandate.id}",
                mandate.id,
                ViolationType.CHAIN_MISMATCH,
            )
        self._audit(
            EventType.APPROVAL_GRANTED,
            f"Human approved {label} mandate",
            request,
            mandate_id=mandate.id,
        )
        return mandate

    # -- Shared ---------------------------------------------------------

    def _id_in_use(self, mandate_id: str) -> bool:
        return any(
            find(mandate_id) is not None
            for find in (
                self.repository.find_intent_mandate,
                self.repository.find_cart_mandate,
                self.repository.find_payment_mandate,
            )
        )

    def _ensure_not_revoked(self, mandate: Mandate) -> None:
        if self.repository.is_revoked(mandate.id):
            raise MandateViolationError(
                f"{mandate.kind.value} mandate has been revoked",
                mandate.id,
                ViolationType.MANDATE_REVOKED,
            )

    def _revoked_before(
        self,
        payment: Payment,
        *mandates: Mandate,
    ) -> Optional[VerificationResult]:
        for mandate in mandates:
            record = self.repository.revocation(mandate.id)
            if record is not None and float(record.get("revoked_at", 0)) <= payment.created_at:
                return VerificationResult.fail(
                    mandate.id,
                    ViolationType.MANDATE_REVOKED,
                    f"{mandate.kind.value} mandate revoked before payment: {record.get('reason')}",
                )
        return None

    def _require(self, stage: str, result: VerificationResult, request: PaymentRequest) -> None:
        self._audit(
            _STAGE_EVENTS[stage],
            f"{stage.capitalize()} mandate {'accepted' if result else 'rejected'}",
            request,
            mandate_id=result.mandate_id,
            success=result.accepted,
            reason=result.reason,
        )
        if not result:
            raise MandateViolationError(
                result.reason or f"{stage} mandate rejected",
                result.mandate_id,
                result.violation or ViolationType.VALUE_MISMATCH,
            )

    def _audit(
        self,
        event_type: EventType,
        description: str,
        request: PaymentRequest,
        mandate_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        **extra: str,
    ) -> None:
        if self.audit is None:
            return
        data = {
            "mandate_id": mandate_id,
            "success": success,
            "reason": reason,
            "requesting_agent_id": request.requesting_agent_id,
            "receiving_agent_id": request.receiving_agent_id,
            "amount": str(request.amount),
            "currency_code": request.currency_code,
            **extra,
        }
        self.audit.log_event(event_type, description, data)
