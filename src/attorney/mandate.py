"""
Mandate entities: the Intent -> Cart -> Payment delegation chain.

A mandate is a signed, time-bounded authorization. The Intent is a standing
grant from a human, a Cart approves one concrete itemized total under that
Intent, and a Payment releases funds for exactly that Cart.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Iterable, Mapping, Optional, Union

from .credential import CredentialProof, canonical_json_bytes, timestamp_ms
from .errors import MandateSealedError
from .money import non_negative_amount, normalize_currency, sum_amounts

if TYPE_CHECKING:
    from .signature import SignatureService


DEFAULT_INTENT_TTL_SECONDS = 30 * 24 * 3600
DEFAULT_CART_TTL_SECONDS = 3600
DEFAULT_PAYMENT_TTL_SECONDS = 15 * 60

PAYMENT_METHOD_KEY = "paymentMethodId"

# Intent.receiving_agent_id value meaning "any merchant".
UNRESTRICTED = None


class MandateKind(str, Enum):
    INTENT = "intent"
    CART = "cart"
    PAYMENT = "payment"


@dataclass(kw_only=True)
class MandateFields:
    """Fields and behavior shared by all three mandate kinds."""

    id: str
    requesting_agent_id: str
    receiving_agent_id: Optional[str]
    created_at: float
    expires_at: float
    proof: Optional[CredentialProof] = None

    kind: ClassVar[MandateKind]

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ValueError("Mandate id must be non-empty")
        if not self.requesting_agent_id or not self.requesting_agent_id.strip():
            raise ValueError("requesting_agent_id must be non-empty")
        if self.receiving_agent_id is not None and not self.receiving_agent_id.strip():
            raise ValueError(
                "receiving_agent_id must be non-empty; use UNRESTRICTED (None) for any merchant"
            )
        self.created_at = float(self.created_at)
        self.expires_at = float(self.expires_at)
        if self.expires_at <= self.created_at:
            raise ValueError(
                f"expires_at ({self.expires_at}) must be after created_at ({self.created_at})"
            )

    def is_valid(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return self.created_at < current < self.expires_at

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at

    def has_proof(self) -> bool:
        return self.proof is not None

    def attach_proof(self, proof: CredentialProof) -> None:
        """Set the proof. A later call replaces the earlier proof."""
        self.proof = proof

    def signing_payload(self) -> dict[str, Any]:
        payload = {
            "kind": self.kind.value,
            "id": self.id,
            "requestingAgentId": self.requesting_agent_id,
            "receivingAgentId": self.receiving_agent_id,
            "createdAt": timestamp_ms(self.created_at),
            "expiresAt": timestamp_ms(self.expires_at),
        }
        payload.update(self._claims())
        return payload

    def canonical_bytes(self) -> bytes:
        return canonical_json_bytes(self.signing_payload())

    def _claims(self) -> dict[str, Any]:
        raise NotImplementedError

    def _base_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "requesting_agent_id": self.requesting_agent_id,
            "receiving_agent_id": self.receiving_agent_id,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "proof": self.proof.to_dict() if self.proof is not None else None,
        }

    def _ensure_unsealed(self) -> None:
        if self.proof is not None:
            raise MandateSealedError(f"{self.kind.value} mandate {self.id} is signed and immutable")


@dataclass(kw_only=True)
class IntentMandate(MandateFields):
    """Standing grant: merchant scope, per-payment ceiling, allowed categories."""

    max_amount_per_payment: Decimal
    requires_human_approval: bool = False
    allowed_categories: frozenset[str] = frozenset()

    kind: ClassVar[MandateKind] = MandateKind.INTENT

    def __post_init__(self) -> None:
        super().__post_init__()
        self.max_amount_per_payment = non_negative_amount(
            self.max_amount_per_payment, "max_amount_per_payment"
        )
        self.allowed_categories = frozenset(
            c.strip() for c in self.allowed_categories if c and c.strip()
        )

    @property
    def is_merchant_restricted(self) -> bool:
        return self.receiving_agent_id is not UNRESTRICTED

    def scope_violation(
        self,
        merchant_id: Optional[str],
        amount: Decimal,
        category: Optional[str] = None,
    ) -> Optional[str]:
        """Return why the intent does not cover the payment, or None if it does."""
        if self.is_merchant_restricted and self.receiving_agent_id != merchant_id:
            return f"merchant {merchant_id!r} is outside intent scope {self.receiving_agent_id!r}"
        if amount > self.max_amount_per_payment:
            return f"amount {amount} exceeds max per payment {self.max_amount_per_payment}"
        if category is not None and self.allowed_categories and category not in self.allowed_categories:
            return f"category {category!r} is not allowed"
        return None

    def permits(self, merchant_id: Optional[str], amount: Decimal, category: Optional[str] = None) -> bool:
        return self.scope_violation(merchant_id, amount, category) is None

    def _claims(self) -> dict[str, Any]:
        return {
            "maxAmountPerPayment": self.max_amount_per_payment,
            "requiresHumanApproval": self.requires_human_approval,
            "allowedCategories": sorted(self.allowed_categories),
        }

    def to_dict(self) -> dict[str, Any]:
        d = self._base_dict()
        d.update(
            {
                "max_amount_per_payment": str(self.max_amount_per_payment),
                "requires_human_approval": self.requires_human_approval,
                "allowed_categories": sorted(self.allowed_categories),
            }
        )
        return d


@dataclass(frozen=True)
class CartItem:
    id: str
    description: str
    unit_price: Decimal
    quantity: int = 1

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Cart item id must be non-empty")
        object.__setattr__(self, "unit_price", non_negative_amount(self.unit_price, "unit_price"))
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValueError(f"quantity must be a positive integer, got {self.quantity!r}")

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CartItem:
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            unit_price=Decimal(str(data["unit_price"])),
            quantity=int(data["quantity"]),
        )


@dataclass(kw_only=True)
class CartMandate(MandateFields):
    """Itemized approval of one concrete cart total under an Intent."""

    parent_intent_mandate_id: str
    currency_code: str
    items: list[CartItem] = field(default_factory=list)

    kind: ClassVar[MandateKind] = MandateKind.CART

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.receiving_agent_id is None:
            raise ValueError("Cart mandate requires a receiving_agent_id")
        _check_parent_reference(self.id, self.parent_intent_mandate_id)
        self.currency_code = normalize_currency(self.currency_code)
        self.items = list(self.items)

    @property
    def amount(self) -> Decimal:
        """Cart total, always derived from the items."""
        return sum_amounts(item.total_price for item in self.items)

    def add_item(self, item: CartItem) -> None:
        self._ensure_unsealed()
        self.items.append(item)

    def remove_item(self, item_id: str) -> CartItem:
        self._ensure_unsealed()
        for index, item in enumerate(self.items):
            if item.id == item_id:
                return self.items.pop(index)
        raise KeyError(f"Cart item not found: {item_id}")

    def _claims(self) -> dict[str, Any]:
        return {
            "parentIntentMandateId": self.parent_intent_mandate_id,
            "currencyCode": self.currency_code,
            "amount": self.amount,
            "items": [
                {
                    "id": item.id,
                    "description": item.description,
                    "unitPrice": item.unit_price,
                    "quantity": item.quantity,
                }
                for item in self.items
            ],
        }

    def to_dict(self) -> dict[str, Any]:
        d = self._base_dict()
        d.update(
            {
                "parent_intent_mandate_id": self.parent_intent_mandate_id,
                "currency_code": self.currency_code,
                "items": [item.to_dict() for item in self.items],
            }
        )
        return d


@dataclass(kw_only=True)
class PaymentMandate(MandateFields):
    """Final authorization: this cart, this amount, this instrument."""

    parent_cart_mandate_id: str
    amount: Decimal
    currency_code: str
    payment_reference: Optional[str] = None
    payment_details: dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[MandateKind] = MandateKind.PAYMENT

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.receiving_agent_id is None:
            raise ValueError("Payment mandate requires a receiving_agent_id")
        _check_parent_reference(self.id, self.parent_cart_mandate_id)
        self.amount = non_negative_amount(self.amount, "amount")
        self.currency_code = normalize_currency(self.currency_code)
        self.payment_details = dict(self.payment_details)

    @property
    def payment_method_id(self) -> Optional[str]:
        value = self.payment_details.get(PAYMENT_METHOD_KEY)
        return None if value is None else str(value)

    def _claims(self) -> dict[str, Any]:
        return {
            "parentCartMandateId": self.parent_cart_mandate_id,
            "amount": self.amount,
            "currencyCode": self.currency_code,
            "paymentReference": self.payment_reference,
            "paymentDetails": dict(self.payment_details),
        }

    def to_dict(self) -> dict[str, Any]:
        d = self._base_dict()
        d.update(
            {
                "parent_cart_mandate_id": self.parent_cart_mandate_id,
                "amount": str(self.amount),
                "currency_code": self.currency_code,
                "payment_reference": self.payment_reference,
                "payment_details": dict(self.payment_details),
            }
        )
        return d


Mandate = Union[IntentMandate, CartMandate, PaymentMandate]

MANDATE_TYPES: dict[MandateKind, type] = {
    MandateKind.INTENT: IntentMandate,
    MandateKind.CART: CartMandate,
    MandateKind.PAYMENT: PaymentMandate,
}


@dataclass
class MandateChain:
    """A fully verified Intent -> Cart -> Payment chain."""

    intent: IntentMandate
    cart: CartMandate
    payment: PaymentMandate

    def mandate_ids(self) -> dict[str, str]:
        return {
            "intent_mandate_id": self.intent.id,
            "cart_mandate_id": self.cart.id,
            "payment_mandate_id": self.payment.id,
        }


def mandate_from_dict(data: Mapping[str, Any]) -> Mandate:
    """Rebuild a mandate from its to_dict() form, dispatching on "kind"."""
    raw = dict(data)
    kind = MandateKind(raw.pop("kind"))
    proof_data = raw.pop("proof", None)
    proof = CredentialProof.from_dict(proof_data) if proof_data else None
    common = {
        "id": str(raw["id"]),
        "requesting_agent_id": str(raw["requesting_agent_id"]),
        "receiving_agent_id": raw.get("receiving_agent_id"),
        "created_at": float(raw["created_at"]),
        "expires_at": float(raw["expires_at"]),
        "proof": proof,
    }
    if kind is MandateKind.INTENT:
        return IntentMandate(
            **common,
            max_amount_per_payment=Decimal(str(raw["max_amount_per_payment"])),
            requires_human_approval=bool(raw.get("requires_human_approval", False)),
            allowed_categories=frozenset(raw.get("allowed_categories") or []),
        )
    if kind is MandateKind.CART:
        return CartMandate(
            **common,
            parent_intent_mandate_id=str(raw["parent_intent_mandate_id"]),
            currency_code=str(raw["currency_code"]),
            items=[CartItem.from_dict(item) for item in raw.get("items") or []],
        )
    return PaymentMandate(
        **common,
        parent_cart_mandate_id=str(raw["parent_cart_mandate_id"]),
        amount=Decimal(str(raw["amount"])),
        currency_code=str(raw["currency_code"]),
        payment_reference=raw.get("payment_reference"),
        payment_details=dict(raw.get("payment_details") or {}),
    )


def create_intent_mandate(
    *,
    requesting_agent_id: str,
    receiving_agent_id: Optional[str],
    max_amount_per_payment: Decimal | int | str,
    requires_human_approval: bool = False,
    allowed_categories: Optional[Iterable[str]] = None,
    ttl_seconds: float = DEFAULT_INTENT_TTL_SECONDS,
    mandate_id: Optional[str] = None,
    signer: Optional[SignatureService] = None,
    key_id: Optional[str] = None,
    now: Optional[float] = None,
) -> IntentMandate:
    """Create an intent mandate, signing it when a signer and key id are given."""
    created = time.time() if now is None else float(now)
    mandate = IntentMandate(
        id=mandate_id or _new_id(MandateKind.INTENT),
        requesting_agent_id=requesting_agent_id,
        receiving_agent_id=receiving_agent_id,
        created_at=created,
        expires_at=created + ttl_seconds,
        max_amount_per_payment=non_negative_amount(max_amount_per_payment, "max_amount_per_payment"),
        requires_human_approval=requires_human_approval,
        allowed_categories=frozenset(allowed_categories or ()),
    )
    return _maybe_sign(mandate, signer, key_id)


def create_cart_mandate(
    *,
    intent: IntentMandate,
    receiving_agent_id: str,
    items: Iterable[CartItem],
    currency_code: str,
    ttl_seconds: float = DEFAULT_CART_TTL_SECONDS,
    mandate_id: Optional[str] = None,
    signer: Optional[SignatureService] = None,
    key_id: Optional[str] = None,
    now: Optional[float] = None,
) -> CartMandate:
    """Create a cart mandate under an intent. The total is derived from items."""
    created = time.time() if now is None else float(now)
    mandate = CartMandate(
        id=mandate_id or _new_id(MandateKind.CART),
        requesting_agent_id=intent.requesting_agent_id,
        receiving_agent_id=receiving_agent_id,
        created_at=created,
        expires_at=created + ttl_seconds,
        parent_intent_mandate_id=intent.id,
        currency_code=currency_code,
        items=list(items),
    )
    return _maybe_sign(mandate, signer, key_id)


def create_payment_mandate(
    *,
    cart: CartMandate,
    payment_method_id: Optional[str] = None,
    payment_reference: Optional[str] = None,
    payment_details: Optional[Mapping[str, Any]] = None,
    ttl_seconds: float = DEFAULT_PAYMENT_TTL_SECONDS,
    mandate_id: Optional[str] = None,
    signer: Optional[SignatureService] = None,
    key_id: Optional[str] = None,
    now: Optional[float] = None,
) -> PaymentMandate:
    """Create a payment mandate releasing exactly the cart's total."""
    created = time.time() if now is None else float(now)
    details = dict(payment_details or {})
    if payment_method_id is not None:
        details[PAYMENT_METHOD_KEY] = payment_method_id
    mandate = PaymentMandate(
        id=mandate_id or _new_id(MandateKind.PAYMENT),
        requesting_agent_id=cart.requesting_agent_id,
        receiving_agent_id=cart.receiving_agent_id,
        created_at=created,
        expires_at=created + ttl_seconds,
        parent_cart_mandate_id=cart.id,
        amount=cart.amount,
        currency_code=cart.currency_code,
        payment_reference=payment_reference,
        payment_details=details,
    )
    return _maybe_sign(mandate, signer, key_id)


def _maybe_sign(mandate, signer: Optional[SignatureService], key_id: Optional[str]):
    if signer is None:
        return mandate
    if key_id is None:
        raise ValueError("key_id is required when a signer is given")
    return signer.sign(mandate, key_id)


def _check_parent_reference(mandate_id: str, parent_id: str) -> None:
    if not parent_id or not parent_id.strip():
        raise ValueError("Parent mandate reference must be non-empty")
    if parent_id == mandate_id:
        raise ValueError(f"Mandate {mandate_id} cannot reference itself as parent")


def _new_id(kind: MandateKind) -> str:
    return f"{kind.value}-{secrets.token_hex(8)}"
