"""
Mandate chain verification.

Three independent stages, called parent to child: Intent against the request,
Cart against its Intent and the request, Payment against its Cart and the
request. Every stage re-checks merchant, amount and currency against the
original request so a substituted cart or payment cannot carry a different
amount through a still-valid intent.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import ViolationType
from .mandate import CartMandate, IntentMandate, Mandate, PaymentMandate
from .money import amounts_equal
from .payment import PaymentRequest
from .signature import SignatureService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one verification stage. Truthy iff accepted."""

    accepted: bool
    mandate_id: Optional[str] = None
    violation: Optional[ViolationType] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.accepted

    @classmethod
    def ok(cls, mandate_id: str) -> VerificationResult:
        return cls(True, mandate_id=mandate_id)

    @classmethod
    def fail(cls, mandate_id: Optional[str], violation: ViolationType, reason: str) -> VerificationResult:
        return cls(False, mandate_id=mandate_id, violation=violation, reason=reason)


class MandateVerifier:
    """Stateless verifier; holds no locks and is safe to share across threads."""

    def __init__(
        self,
        signature_service: SignatureService,
        clock: Callable[[], float] = time.time,
    ):
        self.signature_service = signature_service
        self.clock = clock

    def verify_signature(self, mandate: Optional[Mandate]) -> bool:
        if mandate is None:
            return False
        if not isinstance(mandate, (IntentMandate, CartMandate, PaymentMandate)):
            logger.error("Unknown mandate type: %s", type(mandate).__name__)
            return False
        return self.signature_service.verify(mandate)

    # -- Intent ---------------------------------------------------------

    def check_intent_mandate(
        self,
        intent: Optional[IntentMandate],
        request: PaymentRequest,
        now: Optional[float] = None,
    ) -> VerificationResult:
        result = self._check_envelope(intent, now)
        if result is None:
            violation = intent.scope_violation(
                request.receiving_agent_id,
                request.amount,
                request.category,
            )
            if violation is not None:
                result = VerificationResult.fail(intent.id, ViolationType.MANDATE_SCOPE_VIOLATION, violation)
            else:
                result = VerificationResult.ok(intent.id)
        return self._report("Intent", result, request)

    def verify_intent_mandate(
        self,
        intent: IntentMandate,
        request: PaymentRequest,
        now: Optional[float] = None,
    ) -> bool:
        return self.check_intent_mandate(intent, request, now).accepted

    # -- Cart -----------------------------------------------------------

    def check_cart_mandate(
        self,
        cart: Optional[CartMandate],
        intent: Optional[IntentMandate],
        request: PaymentRequest,
        now: Optional[float] = None,
    ) -> VerificationResult:
        result = self._check_envelope(cart, now)
        if result is None and intent is None:
            result = VerificationResult.fail(cart.id, ViolationType.MANDATE_NOT_FOUND, "parent intent mandate is missing")
        if result is None:
            result = self._cart_fields(cart, intent, request)
        return self._report("Cart", result, request)

    def verify_cart_mandate(
        self,
        cart: CartMandate,
        intent: IntentMandate,
        request: PaymentRequest,
        now: Optional[float] = None,
    ) -> bool:
        return self.check_cart_mandate(cart, intent, request, now).accepted

    def _cart_fields(
        self,
        cart: CartMandate,
        intent: IntentMandate,
        request: PaymentRequest,
    ) -> VerificationResult:
        if cart.parent_intent_mandate_id != intent.id:
            return VerificationResult.fail(
                cart.id,
                ViolationType.CHAIN_MISMATCH,
                f"cart references intent {cart.parent_intent_mandate_id!r}, expected {intent.id!r}",
            )
        if cart.receiving_agent_id != request.receiving_agent_id:
            return VerificationResult.fail(
                cart.id,
                ViolationType.VALUE_MISMATCH,
                f"cart merchant {cart.receiving_agent_id!r} != request merchant {request.receiving_agent_id!r}",
            )
        if not amounts_equal(cart.amount, request.amount):
            return VerificationResult.fail(
                cart.id,
                ViolationType.VALUE_MISMATCH,
                f"cart amount {cart.amount} != request amount {request.amount}",
            )
        if cart.currency_code != request.currency_code:
            return VerificationResult.fail(
                cart.id,
                ViolationType.VALUE_MISMATCH,
                f"cart currency {cart.currency_code} != request currency {request.currency_code}",
            )
        return VerificationResult.ok(cart.id)

    # -- Payment --------------------------------------------------------

    def check_payment_mandate(
        self,
        payment: Optional[PaymentMandate],
        cart: Optional[CartMandate],
        request: PaymentRequest,
        now: Optional[float] = None,
    ) -> VerificationResult:
        result = self._check_envelope(payment, now)
        if result is None and cart is None:
            result = VerificationResult.fail(payment.id, ViolationType.MANDATE_NOT_FOUND, "parent cart mandate is missing")
        if result is None:
            result = self._payment_fields(payment, cart, request)
        return self._report("Payment", result, request)

    def verify_payment_mandate(
        self,
        payment: PaymentMandate,
        cart: CartMandate,
        request: PaymentRequest,
        now: Optional[float] = None,
    ) -> bool:
        return self.check_payment_mandate(payment, cart, request, now).accepted

    def _payment_fields(
        self,
        payment: PaymentMandate,
        cart: CartMandate,
        request: PaymentRequest,
    ) -> VerificationResult:
        if payment.parent_cart_mandate_id != cart.id:
            return VerificationResult.fail(
                payment.id,
                ViolationType.CHAIN_MISMATCH,
                f"payment references cart {payment.parent_cart_mandate_id!r}, expected {cart.id!r}",
            )
        if not amounts_equal(payment.amount, request.amount):
            return VerificationResult.fail(
                payment.id,
                ViolationType.VALUE_MISMATCH,
                f"payment amount {payment.amount} != request amount {request.amount}",
            )
        if payment.currency_code != request.currency_code:
            return VerificationResult.fail(
                payment.id,
                ViolationType.VALUE_MISMATCH,
                f"payment currency {payment.currency_code} != request currency {request.currency_code}",
            )
        if request.payment_method is not None and request.payment_method != payment.payment_method_id:
            return VerificationResult.fail(
                payment.id,
                ViolationType.VALUE_MISMATCH,
                f"payment method {payment.payment_method_id!r} != request method {request.payment_method!r}",
            )
        return VerificationResult.ok(payment.id)

    # -- Chain ----------------------------------------------------------

    def check_chain(
        self,
        intent: IntentMandate,
        cart: CartMandate,
        payment: PaymentMandate,
        request: PaymentRequest,
        now: Optional[float] = None,
    ) -> VerificationResult:
        """Run all three stages in order, stopping at the first failure."""
        result = self.check_intent_mandate(intent, request, now)
        if not result:
            return result
        result = self.check_cart_mandate(cart, intent, request, now)
        if not result:
            return result
        return self.check_payment_mandate(payment, cart, request, now)

    # -- Shared ---------------------------------------------------------

    def _check_envelope(self, mandate: Optional[Mandate], now: Optional[float]) -> Optional[VerificationResult]:
        """Signature first, then expiry. None means both passed."""
        if mandate is None:
            return VerificationResult.fail(None, ViolationType.MANDATE_NOT_FOUND, "mandate is missing")
        if not self.verify_signature(mandate):
            reason = "mandate is unsigned" if not mandate.has_proof() else "signature does not verify"
            return VerificationResult.fail(mandate.id, ViolationType.SIGNATURE_INVALID, reason)
        current = self.clock() if now is None else now
        if mandate.is_expired(current):
            return VerificationResult.fail(
                mandate.id,
                ViolationType.MANDATE_EXPIRED,
                f"mandate expired at {mandate.expires_at}",
            )
        return None

    def _report(self, stage: str, result: VerificationResult, request: PaymentRequest) -> VerificationResult:
        if result.accepted:
            logger.debug("%s mandate %s verified for request %s", stage, result.mandate_id, request.external_reference)
        else:
            logger.warning(
                "%s mandate %s rejected (%s): %s",
                stage,
                result.mandate_id,
                result.violation.value if result.violation else "unknown",
                result.reason,
            )
        return result
