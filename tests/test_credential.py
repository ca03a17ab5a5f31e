"""Tests for the credential envelope and canonical encoding."""

from decimal import Decimal

import pytest

from attorney.credential import (
    CredentialProof,
    canonical_json_bytes,
    new_proof,
    payload_hash,
    signing_input,
)


def test_canonical_json_sorts_keys_and_drops_whitespace():
    encoded = canonical_json_bytes({"b": 1, "a": [Decimal("1.50"), None, True]})
    assert encoded == b'{"a":["1.50",null,true],"b":1}'


def test_canonical_json_keeps_decimal_scale():
    assert canonical_json_bytes({"x": Decimal("105.00")}) != canonical_json_bytes({"x": Decimal("105")})


def test_canonical_json_rejects_floats():
    with pytest.raises(ValueError, match="Floats are not allowed"):
        canonical_json_bytes({"amount": 1.5})


def test_payload_hash_is_stable_keccak_hex():
    first = payload_hash({"a": 1, "b": [1, 2]})
    second = payload_hash({"b": [1, 2], "a": 1})
    assert first == second
    assert first.startswith("0x")
    assert len(first) == 66


def test_new_proof_is_unsigned_template():
    proof = new_proof(proof_type="Test", verification_method="k#x", created=10.0)
    assert not proof.is_signed
    assert proof.proof_purpose == "assertionMethod"
    assert proof.with_signature("abc").is_signed


def test_with_attribute_returns_new_proof():
    proof = new_proof(proof_type="Test", verification_method="k#x", created=10.0)
    extended = proof.with_attribute("challenge", "n-1")

    assert extended.attributes == {"challenge": "n-1"}
    assert proof.attributes == {}
    assert extended is not proof


def test_proof_dict_uses_camel_case_names():
    proof = CredentialProof(
        type="Test",
        created=12.5,
        verification_method="key-1#0xabc",
        signature_value="0xsig",
        attributes={"domain": "shop"},
    )
    data = proof.to_dict()

    assert data["verificationMethod"] == "key-1#0xabc"
    assert data["proofPurpose"] == "assertionMethod"
    assert data["signatureValue"] == "0xsig"
    assert CredentialProof.from_dict(data) == proof


def test_signing_input_covers_proof_options(chain):
    proof = chain.intent.proof
    moved = CredentialProof.from_dict({**proof.to_dict(), "created": proof.created + 1})

    assert signing_input(chain.intent, proof) != signing_input(chain.intent, moved)
