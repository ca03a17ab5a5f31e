"""
Audit trail for mandate verification and enforcement.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads. The enforcement path only writes;
reading back is for operators and the CLI.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Protocol

from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".attorney" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".attorney-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "ATTORNEY_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    MANDATE_STORED = "mandate_stored"
    MANDATE_REVOKED = "mandate_revoked"
    INTENT_VERIFIED = "intent_verified"
    CART_VERIFIED = "cart_verified"
    PAYMENT_MANDATE_VERIFIED = "payment_mandate_verified"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_DENIED = "approval_denied"
    ENFORCEMENT_PASSED = "enforcement_passed"
    ENFORCEMENT_FAILED = "enforcement_failed"
    PAYMENT_FORWARDED = "payment_forwarded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_AUDITED = "payment_audited"


class AuditLogger(Protocol):
    """Write-only audit sink consumed by the enforcer."""

    def log_event(self, event_type: EventType, description: str, data: Optional[Mapping[str, Any]] = None) -> str: ...

    def log_signed_event(
        self,
        event_type: EventType,
        description: str,
        data: Optional[Mapping[str, Any]],
        signer_id: str,
        signature: str,
    ) -> str: ...


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    mandate_id: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    merchant: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    signer_id: Optional[str] = None
    signature: Optional[str] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        hmac_key: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.clock = clock
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._write_lock = threading.Lock()
        self._hmac_key = hmac_key.encode() if hmac_key else self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        if not self.path.exists():
            return ""
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                event = json.loads(line)
                last = event.get("event_hash", "")
        return last

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        mandate_id: Optional[str] = None,
        description: Optional[str] = None,
        amount: Optional[str] = None,
        currency: Optional[str] = None,
        merchant: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
        signer_id: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": self.clock(),
            "mandate_id": mandate_id,
            "description": description,
            "amount": amount,
            "currency": currency,
            "merchant": merchant,
            "success": success,
            "reason": reason,
            "details": details,
            "signer_id": signer_id,
            "signature": signature,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}

        with self._write_lock:
            prev_hash = self._last_hash
            current_hash = self._event_hash(payload, prev_hash)
            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=current_hash,
            )
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            ensure_private_file(self.path)
            self._last_hash = current_hash
        return event

    def log_event(
        self,
        event_type: EventType,
        description: str,
        data: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Append an event and return its hash, which doubles as the entry id."""
        fields = dict(data or {})
        event = self.log(
            event_type,
            mandate_id=fields.pop("mandate_id", None),
            description=description,
            success=bool(fields.pop("success", True)),
            reason=fields.pop("reason", None),
            details=fields or None,
        )
        return event.event_hash or ""

    def log_signed_event(
        self,
        event_type: EventType,
        description: str,
        data: Optional[Mapping[str, Any]],
        signer_id: str,
        signature: str,
    ) -> str:
        fields = dict(data or {})
        event = self.log(
            event_type,
            mandate_id=fields.pop("mandate_id", None),
            description=description,
            success=bool(fields.pop("success", True)),
            reason=fields.pop("reason", None),
            details=fields or None,
            signer_id=signer_id,
            signature=signature,
        )
        return event.event_hash or ""

    def _verified_entries(self) -> Iterator[dict[str, Any]]:
        """Yield raw entries in order, raising as soon as the hash chain breaks."""
        if not self.path.exists():
            return
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                raw = json.loads(line)
                prev_hash = raw.pop("prev_hash", "") or ""
                event_hash = raw.pop("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(raw, prev_hash), event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash
                raw["prev_hash"] = prev_hash or None
                raw["event_hash"] = event_hash
                yield raw

    def read_events(
        self,
        mandate_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
    ) -> list[AuditEvent]:
        """Verified events, oldest first, optionally filtered to [start_time, end_time].

        The whole chain is verified even when filters select only a few entries.
        """
        fields = AuditEvent.__dataclass_fields__
        selected: list[AuditEvent] = []
        for raw in self._verified_entries():
            if mandate_id and raw.get("mandate_id") != mandate_id:
                continue
            if event_type and raw.get("event_type") != event_type.value:
                continue
            timestamp = float(raw.get("timestamp", 0))
            if start_time is not None and timestamp < start_time:
                continue
            if end_time is not None and timestamp > end_time:
                continue
            selected.append(AuditEvent(**{k: v for k, v in raw.items() if k in fields}))
        return selected[-limit:] if limit > 0 else selected

    def summary(
        self,
        mandate_id: Optional[str] = None,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
    ) -> dict:
        events = self.read_events(mandate_id=mandate_id, limit=0, start_time=start_time, end_time=end_time)
        by_type = Counter(e.event_type for e in events)
        return {
            "total_events": len(events),
            "by_type": dict(by_type),
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
