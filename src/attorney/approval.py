"""
Human approval for carts and payments.

A human may take arbitrarily long to answer, so every request goes through an
ApprovalGate: the service call runs on its own daemon thread and the caller
waits at most `timeout_seconds` (or until cancelled). A denial, timeout or
service failure is reported as an explicit outcome, never as a hang.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Union
from urllib.parse import urlparse

import httpx
import jwt

from .errors import ApprovalError, ApprovalTimeoutError
from .mandate import CartMandate, IntentMandate, Mandate, PaymentMandate, mandate_from_dict
from .payment import PaymentRequest

logger = logging.getLogger(__name__)


DEFAULT_APPROVAL_TIMEOUT_SECONDS = 300.0
APPROVAL_AUDIENCE = "attorney-approval"
_POLL_INTERVAL_SECONDS = 0.05


class HumanApprovalService(Protocol):
    def request_cart_approval(self, intent: IntentMandate, request: PaymentRequest) -> Optional[CartMandate]: ...

    def request_payment_approval(self, cart: CartMandate, request: PaymentRequest) -> Optional[PaymentMandate]: ...

    def is_human_approval_required(self, request: PaymentRequest) -> bool: ...


class ApprovalStatus(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class ApprovalOutcome:
    status: ApprovalStatus
    mandate: Optional[Mandate] = None
    reason: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status is ApprovalStatus.APPROVED and self.mandate is not None


class ApprovalGate:
    """Bounds how long enforcement waits for a human."""

    def __init__(
        self,
        service: HumanApprovalService,
        timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.service = service
        self.timeout_seconds = timeout_seconds

    def request_cart(
        self,
        intent: IntentMandate,
        request: PaymentRequest,
        cancel: Optional[threading.Event] = None,
    ) -> ApprovalOutcome:
        return self._await(self.service.request_cart_approval, intent, request, CartMandate, cancel)

    def request_payment(
        self,
        cart: CartMandate,
        request: PaymentRequest,
        cancel: Optional[threading.Event] = None,
    ) -> ApprovalOutcome:
        return self._await(self.service.request_payment_approval, cart, request, PaymentMandate, cancel)

    def _await(
        self,
        call: Callable[[Any, PaymentRequest], Optional[Mandate]],
        parent: Mandate,
        request: PaymentRequest,
        expected: type,
        cancel: Optional[threading.Event],
    ) -> ApprovalOutcome:
        label = expected.kind.value
        logger.info("Requesting human %s approval under %s", label, parent.id)
        future = _run_in_background(call, parent, request, name=f"attorney-approval-{parent.id}")

        deadline = time.monotonic() + self.timeout_seconds
        while not future.done():
            if cancel is not None and cancel.is_set():
                future.cancel()
                logger.info("Human %s approval under %s cancelled", label, parent.id)
                return ApprovalOutcome(ApprovalStatus.CANCELLED, reason="approval request cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                logger.info("Human %s approval under %s timed out after %.1fs", label, parent.id, self.timeout_seconds)
                return ApprovalOutcome(
                    ApprovalStatus.TIMED_OUT,
                    reason=f"no decision within {self.timeout_seconds:g}s",
                )
            wait([future], timeout=min(remaining, _POLL_INTERVAL_SECONDS), return_when=FIRST_COMPLETED)

        try:
            mandate = future.result()
        except ApprovalTimeoutError as exc:
            return ApprovalOutcome(ApprovalStatus.TIMED_OUT, reason=str(exc))
        except Exception as exc:
            logger.warning("Human %s approval under %s failed: %s", label, parent.id, exc)
            return ApprovalOutcome(ApprovalStatus.FAILED, reason=f"{type(exc).__name__}: {exc}")

        if mandate is None:
            logger.info("Human denied %s approval under %s", label, parent.id)
            return ApprovalOutcome(ApprovalStatus.DENIED, reason="approval denied")
        if not isinstance(mandate, expected):
            return ApprovalOutcome(
                ApprovalStatus.FAILED,
                reason=f"approval returned {type(mandate).__name__}, expected {expected.__name__}",
            )
        logger.info("Human approved %s %s under %s", label, mandate.id, parent.id)
        return ApprovalOutcome(ApprovalStatus.APPROVED, mandate=mandate)


def _run_in_background(call, *args, name: str) -> Future:
    """Run call on a daemon thread so an unanswered human never blocks shutdown."""
    future: Future = Future()

    def runner() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(call(*args))
        except BaseException as exc:
            future.set_exception(exc)

    threading.Thread(target=runner, name=name, daemon=True).start()
    return future


class CallbackApprovalService:
    """Approval backed by plain callables (console prompts, tests, embedding apps)."""

    def __init__(
        self,
        approve_cart: Callable[[IntentMandate, PaymentRequest], Optional[CartMandate]],
        approve_payment: Callable[[CartMandate, PaymentRequest], Optional[PaymentMandate]],
        required: Union[bool, Callable[[PaymentRequest], bool]] = False,
    ):
        self._approve_cart = approve_cart
        self._approve_payment = approve_payment
        self._required = required

    def request_cart_approval(self, intent: IntentMandate, request: PaymentRequest) -> Optional[CartMandate]:
        return self._approve_cart(intent, request)

    def request_payment_approval(self, cart: CartMandate, request: PaymentRequest) -> Optional[PaymentMandate]:
        return self._approve_payment(cart, request)

    def is_human_approval_required(self, request: PaymentRequest) -> bool:
        if callable(self._required):
            return bool(self._required(request))
        return bool(self._required)


class HttpApprovalService:
    """Asks a human-facing approval webhook to sign carts and payments.

    Requests are authenticated with a short-lived HS256 JWT bound to the exact
    endpoint. The webhook answers {"approved": bool, "mandate": {...}}; anything
    else counts as a denial.
    """

    def __init__(
        self,
        endpoint_url: str,
        shared_secret: str,
        client_id: str = "attorney",
        timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        token_ttl_seconds: int = 120,
        approval_threshold: Optional[Decimal] = None,
        always_required: bool = False,
        client: Optional[httpx.Client] = None,
    ):
        if not shared_secret:
            raise ValueError("Approval shared secret is required")
        parsed = urlparse(endpoint_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid approval URL: {endpoint_url}")

        self._base_url = endpoint_url.rstrip("/")
        self._host = parsed.netloc
        self._base_path = parsed.path.rstrip("/")
        self._secret = shared_secret
        self._client_id = client_id
        self._token_ttl_seconds = token_ttl_seconds
        self.approval_threshold = approval_threshold
        self.always_required = always_required
        self._http = client or httpx.Client(timeout=timeout_seconds)

    def __enter__(self) -> HttpApprovalService:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def is_human_approval_required(self, request: PaymentRequest) -> bool:
        if self.always_required:
            return True
        return self.approval_threshold is not None and request.amount > self.approval_threshold

    def request_cart_approval(self, intent: IntentMandate, request: PaymentRequest) -> Optional[CartMandate]:
        body = {"kind": "cart", "intent": intent.to_dict(), "request": request.to_dict()}
        return self._request("cart", body, CartMandate)

    def request_payment_approval(self, cart: CartMandate, request: PaymentRequest) -> Optional[PaymentMandate]:
        body = {"kind": "payment", "cart": cart.to_dict(), "request": request.to_dict()}
        return self._request("payment", body, PaymentMandate)

    def authorization_header(self, path: str) -> str:
        now = int(time.time())
        claims = {
            "iss": self._client_id,
            "aud": APPROVAL_AUDIENCE,
            "iat": now,
            "nbf": now,
            "exp": now + self._token_ttl_seconds,
            "jti": secrets.token_hex(8),
            "uris": [f"POST {self._host}{path}"],
        }
        token = jwt.encode(claims, self._secret, algorithm="HS256")
        return f"Bearer {token}"

    def _request(self, kind: str, body: dict[str, Any], expected: type) -> Optional[Mandate]:
        path = f"{self._base_path}/{kind}"
        try:
            response = self._http.post(
                f"{self._base_url}/{kind}",
                json=body,
                headers={"Authorization": self.authorization_header(path)},
            )
        except httpx.TimeoutException as exc:
            raise ApprovalTimeoutError(f"Approval webhook timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ApprovalError(f"Approval webhook unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.warning("Approval webhook rejected %s request (%d)", kind, response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Approval webhook returned non-JSON body for %s request", kind)
            return None
        if not isinstance(payload, dict) or payload.get("approved") is not True:
            return None
        try:
            mandate = mandate_from_dict(payload["mandate"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Approval webhook returned malformed %s mandate: %s", kind, exc)
            return None
        return mandate if isinstance(mandate, expected) else None
