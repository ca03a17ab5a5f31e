"""
Mandate persistence.

Revocation is recorded beside a mandate, never written into it: a signed
mandate stays byte-identical for its whole life. Every public operation runs
inside a single transaction, so store/find/revoke on one id are linearizable.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Protocol

from .credential import payload_hash
from .errors import MandateNotFoundError
from .mandate import (
    CartMandate,
    IntentMandate,
    Mandate,
    MandateKind,
    PaymentMandate,
    mandate_from_dict,
)
from .storage import (
    atomic_write_json,
    ensure_private_dir,
    exclusive_lock,
    read_json,
    safe_child_path,
)


DEFAULT_MANDATE_STORE_DIR = Path.home() / ".attorney" / "mandates"


class MandateRepository(Protocol):
    def store_intent_mandate(self, mandate: IntentMandate) -> str: ...

    def store_cart_mandate(self, mandate: CartMandate) -> str: ...

    def store_payment_mandate(self, mandate: PaymentMandate) -> str: ...

    def find_intent_mandate(self, mandate_id: str) -> Optional[IntentMandate]: ...

    def find_cart_mandate(self, mandate_id: str) -> Optional[CartMandate]: ...

    def find_payment_mandate(self, mandate_id: str) -> Optional[PaymentMandate]: ...

    def find_active_intent_mandate_for_agent(
        self, agent_id: str, merchant_id: Optional[str] = None, now: Optional[float] = None
    ) -> Optional[IntentMandate]: ...

    def link_payment(self, payment_id: str, payment_mandate_id: str) -> None: ...

    def find_intent_mandate_for_payment(self, payment_id: str) -> Optional[IntentMandate]: ...

    def find_cart_mandate_for_payment(self, payment_id: str) -> Optional[CartMandate]: ...

    def find_payment_mandate_for_payment(self, payment_id: str) -> Optional[PaymentMandate]: ...

    def revoke_mandate(self, mandate_id: str, reason: str, now: Optional[float] = None) -> bool: ...

    def is_revoked(self, mandate_id: str) -> bool: ...

    def revocation(self, mandate_id: str) -> Optional[dict[str, Any]]: ...


class _RepositoryBase:
    """Repository operations over a handful of storage primitives."""

    def _transaction(self):
        """Context manager making the enclosed primitives atomic."""
        raise NotImplementedError

    def _get(self, mandate_id: str) -> Optional[Mandate]:
        raise NotImplementedError

    def _put(self, mandate: Mandate) -> None:
        raise NotImplementedError

    def _all(self) -> Iterable[Mandate]:
        raise NotImplementedError

    def _revocations(self) -> dict[str, dict[str, Any]]:
        raise NotImplementedError

    def _save_revocations(self, revocations: dict[str, dict[str, Any]]) -> None:
        raise NotImplementedError

    def _payment_links(self) -> dict[str, str]:
        raise NotImplementedError

    def _save_payment_links(self, links: dict[str, str]) -> None:
        raise NotImplementedError

    # -- Store ----------------------------------------------------------

    def store_intent_mandate(self, mandate: IntentMandate) -> str:
        return self._store(mandate, IntentMandate)

    def store_cart_mandate(self, mandate: CartMandate) -> str:
        return self._store(mandate, CartMandate)

    def store_payment_mandate(self, mandate: PaymentMandate) -> str:
        return self._store(mandate, PaymentMandate)

    def store_mandate(self, mandate: Mandate) -> str:
        return self._store(mandate, type(mandate))

    def _store(self, mandate: Mandate, expected: type) -> str:
        if not isinstance(mandate, expected):
            raise TypeError(f"Expected {expected.__name__}, got {type(mandate).__name__}")
        with self._transaction():
            existing = self._get(mandate.id)
            if existing is not None:
                if existing.kind is not mandate.kind:
                    raise ValueError(
                        f"Mandate id {mandate.id} already used by a {existing.kind.value} mandate"
                    )
                if not _same_signed_content(existing, mandate):
                    raise ValueError(f"Mandate {mandate.id} is already stored with different content")
                return mandate.id
            self._check_parent(mandate)
            self._put(mandate)
        return mandate.id

    def _check_parent(self, mandate: Mandate) -> None:
        if isinstance(mandate, CartMandate):
            parent_id, parent_kind = mandate.parent_intent_mandate_id, MandateKind.INTENT
        elif isinstance(mandate, PaymentMandate):
            parent_id, parent_kind = mandate.parent_cart_mandate_id, MandateKind.CART
        else:
            return

        parent = self._get(parent_id)
        if parent is None:
            raise MandateNotFoundError(f"Parent {parent_kind.value} mandate not found: {parent_id}")
        if parent.kind is not parent_kind:
            raise ValueError(
                f"{mandate.kind.value} mandate {mandate.id} must reference a "
                f"{parent_kind.value} mandate, got {parent.kind.value} {parent_id}"
            )
        # The new mandate must not already sit above its own parent.
        for ancestor_id in self._ancestor_ids(parent):
            if ancestor_id == mandate.id:
                raise ValueError(f"Mandate {mandate.id} would create a reference cycle")

    def _ancestor_ids(self, mandate: Mandate) -> Iterator[str]:
        current: Optional[Mandate] = mandate
        seen: set[str] = set()
        while current is not None and current.id not in seen:
            seen.add(current.id)
            yield current.id
            if isinstance(current, CartMandate):
                current = self._get(current.parent_intent_mandate_id)
            elif isinstance(current, PaymentMandate):
                current = self._get(current.parent_cart_mandate_id)
            else:
                current = None

    # -- Find -----------------------------------------------------------

    def find_mandate(self, mandate_id: str) -> Optional[Mandate]:
        with self._transaction():
            return self._get(mandate_id)

    def find_intent_mandate(self, mandate_id: str) -> Optional[IntentMandate]:
        return _as(self.find_mandate(mandate_id), IntentMandate)

    def find_cart_mandate(self, mandate_id: str) -> Optional[CartMandate]:
        return _as(self.find_mandate(mandate_id), CartMandate)

    def find_payment_mandate(self, mandate_id: str) -> Optional[PaymentMandate]:
        return _as(self.find_mandate(mandate_id), PaymentMandate)

    def find_active_intent_mandate_for_agent(
        self,
        agent_id: str,
        merchant_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Optional[IntentMandate]:
        """Most recent unexpired, unrevoked intent for the agent.

        A merchant-specific intent wins over an unrestricted one.
        """
        current = time.time() if now is None else now
        with self._transaction():
            revoked = self._revocations()
            candidates = [
                m
                for m in self._all()
                if isinstance(m, IntentMandate)
                and m.requesting_agent_id == agent_id
                and m.id not in revoked
                and not m.is_expired(current)
                and (
                    merchant_id is None
                    or not m.is_merchant_restricted
                    or m.receiving_agent_id == merchant_id
                )
            ]
        if not candidates:
            return None
        candidates.sort(key=lambda m: (m.is_merchant_restricted, m.created_at), reverse=True)
        return candidates[0]

    def list_mandates(
        self,
        kind: Optional[MandateKind] = None,
        include_revoked: bool = True,
    ) -> list[Mandate]:
        with self._transaction():
            revoked = self._revocations()
            mandates = [
                m
                for m in self._all()
                if (kind is None or m.kind is kind) and (include_revoked or m.id not in revoked)
            ]
        mandates.sort(key=lambda m: m.created_at, reverse=True)
        return mandates

    # -- Payment links --------------------------------------------------

    def link_payment(self, payment_id: str, payment_mandate_id: str) -> None:
        """Record which payment mandate authorized a processor payment id."""
        with self._transaction():
            if not isinstance(self._get(payment_mandate_id), PaymentMandate):
                raise MandateNotFoundError(f"Payment mandate not found: {payment_mandate_id}")
            links = self._payment_links()
            links[payment_id] = payment_mandate_id
            self._save_payment_links(links)

    def find_payment_mandate_for_payment(self, payment_id: str) -> Optional[PaymentMandate]:
        with self._transaction():
            mandate_id = self._payment_links().get(payment_id)
            return _as(self._get(mandate_id), PaymentMandate) if mandate_id else None

    def find_cart_mandate_for_payment(self, payment_id: str) -> Optional[CartMandate]:
        with self._transaction():
            mandate_id = self._payment_links().get(payment_id)
            payment = _as(self._get(mandate_id), PaymentMandate) if mandate_id else None
            if payment is None:
                return None
            return _as(self._get(payment.parent_cart_mandate_id), CartMandate)

    def find_intent_mandate_for_payment(self, payment_id: str) -> Optional[IntentMandate]:
        with self._transaction():
            mandate_id = self._payment_links().get(payment_id)
            payment = _as(self._get(mandate_id), PaymentMandate) if mandate_id else None
            if payment is None:
                return None
            cart = _as(self._get(payment.parent_cart_mandate_id), CartMandate)
            if cart is None:
                return None
            return _as(self._get(cart.parent_intent_mandate_id), IntentMandate)

    # -- Revocation -----------------------------------------------------

    def revoke_mandate(self, mandate_id: str, reason: str, now: Optional[float] = None) -> bool:
        """Mark a mandate revoked. False if it is unknown or already revoked."""
        with self._transaction():
            if self._get(mandate_id) is None:
                return False
            revocations = self._revocations()
            if mandate_id in revocations:
                return False
            revocations[mandate_id] = {"reason": reason, "revoked_at": time.time() if now is None else now}
            self._save_revocations(revocations)
        return True

    def is_revoked(self, mandate_id: str) -> bool:
        with self._transaction():
            return mandate_id in self._revocations()

    def revocation(self, mandate_id: str) -> Optional[dict[str, Any]]:
        with self._transaction():
            record = self._revocations().get(mandate_id)
            return dict(record) if record is not None else None


class InMemoryMandateRepository(_RepositoryBase):
    """Process-local repository guarded by a re-entrant lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._mandates: dict[str, dict[str, Any]] = {}
        self._revoked: dict[str, dict[str, Any]] = {}
        self._links: dict[str, str] = {}

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock:
            yield

    def _get(self, mandate_id: str) -> Optional[Mandate]:
        raw = self._mandates.get(mandate_id)
        return mandate_from_dict(raw) if raw is not None else None

    def _put(self, mandate: Mandate) -> None:
        self._mandates[mandate.id] = mandate.to_dict()

    def _all(self) -> Iterable[Mandate]:
        return [mandate_from_dict(raw) for raw in self._mandates.values()]

    def _revocations(self) -> dict[str, dict[str, Any]]:
        return dict(self._revoked)

    def _save_revocations(self, revocations: dict[str, dict[str, Any]]) -> None:
        self._revoked = dict(revocations)

    def _payment_links(self) -> dict[str, str]:
        return dict(self._links)

    def _save_payment_links(self, links: dict[str, str]) -> None:
        self._links = dict(links)


class MandateStore(_RepositoryBase):
    """File-backed repository with lock-based concurrency control.

    Layout: one JSON document per mandate, plus revocations.json and
    payments.json indexes. Each document carries the keccak hash of the
    mandate's canonical payload, checked on every read.
    """

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or DEFAULT_MANDATE_STORE_DIR
        ensure_private_dir(self.base_dir)
        self._lock_path = self.base_dir / ".lock"
        self._revocations_path = self.base_dir / "revocations.json"
        self._payments_path = self.base_dir / "payments.json"
        self._thread_lock = threading.RLock()
        self._depth = threading.local()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._thread_lock:
            depth = getattr(self._depth, "value", 0)
            self._depth.value = depth + 1
            try:
                if depth:
                    yield
                else:
                    with exclusive_lock(self._lock_path):
                        yield
            finally:
                self._depth.value = depth

    def _mandate_path(self, mandate_id: str) -> Path:
        return safe_child_path(self.base_dir, mandate_id, ".mandate.json")

    def _read_mandate_path(self, path: Path) -> Mandate:
        document = read_json(path)
        mandate = mandate_from_dict(document["mandate"])
        if payload_hash(mandate.signing_payload()) != document.get("payload_hash"):
            raise ValueError(f"Mandate payload hash mismatch for {mandate.id}")
        return mandate

    def _get(self, mandate_id: str) -> Optional[Mandate]:
        path = self._mandate_path(mandate_id)
        if not path.exists():
            return None
        mandate = self._read_mandate_path(path)
        # Distinct ids can sanitize to the same file name.
        if mandate.id != mandate_id:
            return None
        return mandate

    def _put(self, mandate: Mandate) -> None:
        path = self._mandate_path(mandate.id)
        if path.exists():
            occupant = self._read_mandate_path(path)
            if occupant.id != mandate.id:
                raise ValueError(f"Mandate id {mandate.id} collides with stored mandate {occupant.id}")
        atomic_write_json(
            path,
            {
                "mandate": mandate.to_dict(),
                "payload_hash": payload_hash(mandate.signing_payload()),
            },
        )

    def _all(self) -> Iterable[Mandate]:
        return [self._read_mandate_path(path) for path in sorted(self.base_dir.glob("*.mandate.json"))]

    def _revocations(self) -> dict[str, dict[str, Any]]:
        return dict(read_json(self._revocations_path, default={}))

    def _save_revocations(self, revocations: dict[str, dict[str, Any]]) -> None:
        atomic_write_json(self._revocations_path, revocations)

    def _payment_links(self) -> dict[str, str]:
        return dict(read_json(self._payments_path, default={}))

    def _save_payment_links(self, links: dict[str, str]) -> None:
        atomic_write_json(self._payments_path, links)


def _as(mandate: Optional[Mandate], expected: type):
    return mandate if isinstance(mandate, expected) else None


def _same_signed_content(stored: Mandate, candidate: Mandate) -> bool:
    if stored.canonical_bytes() != candidate.canonical_bytes():
        return False
    stored_proof = stored.proof.to_dict() if stored.proof is not None else None
    candidate_proof = candidate.proof.to_dict() if candidate.proof is not None else None
    return stored_proof == candidate_proof
