"""
Attorney error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (reject, re-request approval, alert, etc.).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ViolationType(str, Enum):
    """Why a mandate failed to authorize a payment request."""

    SIGNATURE_INVALID = "signature_invalid"
    MANDATE_EXPIRED = "mandate_expired"
    MANDATE_SCOPE_VIOLATION = "mandate_scope_violation"
    CHAIN_MISMATCH = "chain_mismatch"
    VALUE_MISMATCH = "value_mismatch"
    MANDATE_NOT_FOUND = "mandate_not_found"
    MANDATE_REVOKED = "mandate_revoked"
    APPROVAL_UNAVAILABLE = "approval_unavailable"


class AttorneyError(Exception):
    """Base error for all Attorney operations."""
    pass


# Mandate errors
class MandateError(AttorneyError):
    """Base error for mandate issues."""
    pass


class MandateViolationError(MandateError):
    """A payment request is not backed by a valid mandate chain."""
    def __init__(self, message: str, mandate_id: Optional[str], violation_type: ViolationType):
        self.mandate_id = mandate_id
        self.violation_type = violation_type
        super().__init__(message)

    def __str__(self) -> str:
        target = self.mandate_id or "<none>"
        return f"[{self.violation_type.value}] {target}: {self.args[0]}"


class MandateSealedError(MandateError):
    """Mandate already carries a proof and can no longer be modified."""
    pass


class MandateNotFoundError(MandateError):
    """No mandate stored under the given id."""
    pass


# Signature errors
class SignatureError(AttorneyError):
    """Credential signing failed."""
    pass


class KeyNotFoundError(SignatureError):
    """Signing key id is unknown to the signature service."""
    def __init__(self, key_id: str):
        self.key_id = key_id
        super().__init__(f"Unknown signing key: {key_id}")


# Approval errors
class ApprovalError(AttorneyError):
    """Base error for human approval failures."""
    pass


class ApprovalTimeoutError(ApprovalError):
    """Human approval did not arrive in time. Retry with a fresh request."""
    def __init__(self, message: str, retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(message)
