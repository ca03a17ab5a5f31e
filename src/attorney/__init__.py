"""
Attorney — Verifiable mandate chains for agent payments.

A payment goes out only when a signed chain backs it:
Intent (what the user allows) → Cart (what the merchant offers) → Payment.
"""

__version__ = "0.1.0"

from .credential import CredentialProof, canonical_json_bytes, payload_hash
from .errors import (
    ApprovalError,
    ApprovalTimeoutError,
    AttorneyError,
    KeyNotFoundError,
    MandateNotFoundError,
    MandateSealedError,
    MandateViolationError,
    ViolationType,
)
from .mandate import (
    CartItem,
    CartMandate,
    IntentMandate,
    Mandate,
    MandateChain,
    MandateKind,
    PaymentMandate,
    create_cart_mandate,
    create_intent_mandate,
    create_payment_mandate,
    mandate_from_dict,
)
from .signature import Ed25519SignatureService, EthereumSignatureService, SignatureService
from .verifier import MandateVerifier, VerificationResult
from .repository import InMemoryMandateRepository, MandateRepository, MandateStore
from .approval import (
    ApprovalGate,
    ApprovalOutcome,
    ApprovalStatus,
    CallbackApprovalService,
    HttpApprovalService,
    HumanApprovalService,
)
from .enforcer import MandateEnforcer
from .payment import (
    DryRunPaymentProcessor,
    Payment,
    PaymentExecutor,
    PaymentRequest,
    PaymentResponse,
    PaymentResult,
    PaymentStatus,
)
from .audit import AuditLogger, AuditTrail, EventType
from .config import AttorneyConfig

__all__ = [
    "CredentialProof", "canonical_json_bytes", "payload_hash",
    "AttorneyError", "MandateViolationError", "MandateSealedError", "MandateNotFoundError",
    "KeyNotFoundError", "ApprovalError", "ApprovalTimeoutError", "ViolationType",
    "IntentMandate", "CartItem", "CartMandate", "PaymentMandate", "Mandate", "MandateChain",
    "MandateKind", "create_intent_mandate", "create_cart_mandate", "create_payment_mandate",
    "mandate_from_dict",
    "SignatureService", "EthereumSignatureService", "Ed25519SignatureService",
    "MandateVerifier", "VerificationResult",
    "MandateRepository", "InMemoryMandateRepository", "MandateStore",
    "HumanApprovalService", "ApprovalGate", "ApprovalOutcome", "ApprovalStatus",
    "CallbackApprovalService", "HttpApprovalService",
    "MandateEnforcer",
    "PaymentRequest", "PaymentResponse", "PaymentStatus", "Payment", "PaymentResult",
    "PaymentExecutor", "DryRunPaymentProcessor",
    "AuditLogger", "AuditTrail", "EventType",
    "AttorneyConfig",
]
