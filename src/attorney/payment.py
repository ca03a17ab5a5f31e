"""
Payment boundary: requests, responses and the executor.

Flow:
1. Enforce the Intent -> Cart -> Payment mandate chain
2. Forward the request to the processor only if every stage passed
3. Link the processor's payment id to the chain
4. Attach mandate ids to the response and audit
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Protocol

from .audit import AuditTrail, EventType
from .errors import MandateViolationError
from .money import normalize_currency, to_amount

if TYPE_CHECKING:
    from .enforcer import MandateEnforcer
    from .repository import MandateRepository

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    REQUIRES_AUTH = "requires_auth"
    AUTHORIZED = "authorized"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    ERROR = "error"


@dataclass
class PaymentRequest:
    """A request from an agent to pay a merchant agent."""

    amount: Decimal
    currency_code: str
    requesting_agent_id: str
    receiving_agent_id: str
    description: str = ""
    category: Optional[str] = None
    payment_method: Optional[str] = None
    external_reference: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    intent_mandate_id: Optional[str] = None
    cart_mandate_id: Optional[str] = None
    payment_mandate_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.amount = to_amount(self.amount)
        self.currency_code = normalize_currency(self.currency_code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": str(self.amount),
            "currency_code": self.currency_code,
            "requesting_agent_id": self.requesting_agent_id,
            "receiving_agent_id": self.receiving_agent_id,
            "description": self.description,
            "category": self.category,
            "payment_method": self.payment_method,
            "external_reference": self.external_reference,
            "callback_url": self.callback_url,
            "metadata": dict(self.metadata),
            "intent_mandate_id": self.intent_mandate_id,
            "cart_mandate_id": self.cart_mandate_id,
            "payment_mandate_id": self.payment_mandate_id,
        }


@dataclass
class PaymentResponse:
    """Processor response, enriched with the mandate ids that authorized it."""

    payment_id: str
    status: PaymentStatus
    created_at: float = field(default_factory=time.time)
    updated_at: Optional[float] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    receipt_url: Optional[str] = None
    processor_data: dict[str, Any] = field(default_factory=dict)
    mandate_info: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "receipt_url": self.receipt_url,
            "processor_data": dict(self.processor_data),
            "mandate_info": dict(self.mandate_info),
        }


@dataclass
class Payment:
    """A payment as recorded by the processor, used for post-hoc audits."""

    payment_id: str
    amount: Decimal
    currency_code: str
    requesting_agent_id: str
    receiving_agent_id: str
    status: PaymentStatus = PaymentStatus.COMPLETED
    created_at: float = field(default_factory=time.time)
    payment_method: Optional[str] = None
    category: Optional[str] = None

    def to_request(self) -> PaymentRequest:
        return PaymentRequest(
            amount=self.amount,
            currency_code=self.currency_code,
            requesting_agent_id=self.requesting_agent_id,
            receiving_agent_id=self.receiving_agent_id,
            category=self.category,
            payment_method=self.payment_method,
            external_reference=self.payment_id,
        )


@dataclass
class PaymentResult:
    """Result of a payment attempt."""

    success: bool
    payment_id: Optional[str] = None
    reason: Optional[str] = None
    violation: Optional[str] = None
    response: Optional[PaymentResponse] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "payment_id": self.payment_id,
            "reason": self.reason,
            "violation": self.violation,
            "response": self.response.to_dict() if self.response is not None else None,
        }


class PaymentProcessor(Protocol):
    def process(self, request: PaymentRequest) -> PaymentResponse: ...


class DryRunPaymentProcessor:
    """Accepts every request without moving money."""

    def __init__(self):
        self.processed: list[PaymentRequest] = []

    def process(self, request: PaymentRequest) -> PaymentResponse:
        self.processed.append(request)
        return PaymentResponse(
            payment_id=_payment_id_for(request),
            status=PaymentStatus.COMPLETED,
            processor_data={"dry_run": True},
        )


class PaymentExecutor:
    """Forwards a request to the processor only after the mandate chain verifies."""

    def __init__(
        self,
        enforcer: MandateEnforcer,
        processor: PaymentProcessor,
        repository: MandateRepository,
        audit: Optional[AuditTrail] = None,
    ):
        self.enforcer = enforcer
        self.processor = processor
        self.repository = repository
        self.audit = audit

    def execute(self, request: PaymentRequest) -> PaymentResult:
        try:
            chain = self.enforcer.enforce(request)
        except MandateViolationError as exc:
            return PaymentResult(
                success=False,
                reason=str(exc),
                violation=exc.violation_type.value,
            )

        try:
            response = self.processor.process(request)
        except Exception as exc:
            logger.exception("Payment processor failed for payment mandate %s", chain.payment.id)
            self._log(
                EventType.PAYMENT_FAILED,
                f"Processor error: {type(exc).__name__}: {exc}",
                chain.payment.id,
                request,
                success=False,
            )
            return PaymentResult(success=False, reason=f"Payment execution error: {type(exc).__name__}: {exc}")

        self.repository.link_payment(response.payment_id, chain.payment.id)
        self.enforcer.attach_mandate_info(response)
        self._log(
            EventType.PAYMENT_FORWARDED,
            f"Payment {response.payment_id} forwarded with status {response.status.value}",
            chain.payment.id,
            request,
            success=response.status not in {PaymentStatus.FAILED, PaymentStatus.ERROR},
            extra={"payment_id": response.payment_id, **chain.mandate_ids()},
        )
        return PaymentResult(
            success=response.status not in {PaymentStatus.FAILED, PaymentStatus.ERROR},
            payment_id=response.payment_id,
            reason=response.error_message,
            response=response,
        )

    def _log(
        self,
        event_type: EventType,
        description: str,
        mandate_id: str,
        request: PaymentRequest,
        success: bool,
        extra: Optional[dict] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            mandate_id=mandate_id,
            description=description,
            amount=str(request.amount),
            currency=request.currency_code,
            merchant=request.receiving_agent_id,
            success=success,
            details=extra,
        )


def _payment_id_for(request: PaymentRequest) -> str:
    payload = json.dumps(
        {
            "request": request.to_dict(),
            "at": time.time(),
        },
        sort_keys=True,
    )
    return f"pay-{hashlib.sha256(payload.encode()).hexdigest()[:16]}"
