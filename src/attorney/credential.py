"""
Credential envelope shared by every mandate.

Only the subset of the W3C verifiable-credential shape the verifier relies on:
a claim payload with a stable canonical encoding, plus one detached proof.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from eth_utils import keccak


DEFAULT_PROOF_PURPOSE = "assertionMethod"


@dataclass(frozen=True)
class CredentialProof:
    """Detached proof over a credential's canonical bytes."""

    type: str
    created: float
    verification_method: str
    proof_purpose: str = DEFAULT_PROOF_PURPOSE
    signature_value: str = ""
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_signed(self) -> bool:
        return bool(self.signature_value)

    def with_signature(self, signature_value: str) -> CredentialProof:
        return replace(self, signature_value=signature_value)

    def with_attribute(self, key: str, value: Any) -> CredentialProof:
        attributes = dict(self.attributes)
        attributes[key] = value
        return replace(self, attributes=attributes)

    def options(self) -> dict[str, Any]:
        """Proof fields covered by the signature (everything except the signature)."""
        return {
            "type": self.type,
            "created": timestamp_ms(self.created),
            "verificationMethod": self.verification_method,
            "proofPurpose": self.proof_purpose,
            "attributes": dict(self.attributes),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "created": self.created,
            "verificationMethod": self.verification_method,
            "proofPurpose": self.proof_purpose,
            "signatureValue": self.signature_value,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CredentialProof:
        return cls(
            type=str(data["type"]),
            created=float(data["created"]),
            verification_method=str(data["verificationMethod"]),
            proof_purpose=str(data.get("proofPurpose", DEFAULT_PROOF_PURPOSE)),
            signature_value=str(data.get("signatureValue", "")),
            attributes=dict(data.get("attributes") or {}),
        )


@runtime_checkable
class Signable(Protocol):
    """Anything a SignatureService can sign: an id, a payload, and one proof slot."""

    id: str
    proof: Optional[CredentialProof]

    def signing_payload(self) -> dict[str, Any]: ...

    def canonical_bytes(self) -> bytes: ...

    def attach_proof(self, proof: CredentialProof) -> None: ...


def new_proof(
    *,
    proof_type: str,
    verification_method: str,
    purpose: str = DEFAULT_PROOF_PURPOSE,
    created: Optional[float] = None,
) -> CredentialProof:
    return CredentialProof(
        type=proof_type,
        created=time.time() if created is None else float(created),
        verification_method=verification_method,
        proof_purpose=purpose,
    )


def signing_input(credential: Signable, proof: CredentialProof) -> bytes:
    """Bytes a signature commits to: the credential payload and the proof options."""
    return canonical_json_bytes(
        {
            "credential": credential.signing_payload(),
            "proof": proof.options(),
        }
    )


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    normalized = _normalize_for_canonical_json(value)
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def payload_hash(value: Any) -> str:
    """Return keccak256 hash of canonical JSON bytes."""
    return "0x" + keccak(canonical_json_bytes(value)).hex()


def timestamp_ms(value: float) -> int:
    return int(round(float(value) * 1000))


def _normalize_for_canonical_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_canonical_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_canonical_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_normalize_for_canonical_json(item) for item in value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, float):
        raise ValueError("Floats are not allowed in canonical credential payloads")
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    raise ValueError(f"Unsupported JSON canonicalization value type: {type(value).__name__}")
