"""
Signature capability for mandates.

The verifier only depends on the SignatureService protocol. Two concrete
services are provided: secp256k1 personal-sign via eth_account (the same key
material agents already hold for settlement) and Ed25519 via cryptography.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .credential import (
    DEFAULT_PROOF_PURPOSE,
    CredentialProof,
    Signable,
    new_proof,
    signing_input,
)
from .errors import KeyNotFoundError

logger = logging.getLogger(__name__)


ETH_PROOF_TYPE = "EcdsaSecp256k1RecoverySignature2020"
ED25519_PROOF_TYPE = "Ed25519Signature2020"


class SignatureService(Protocol):
    def sign(self, credential: Signable, key_id: str) -> Signable: ...

    def verify(self, credential: Signable) -> bool: ...

    def generate_key_pair(self, key_id: str) -> str: ...

    def create_proof(
        self,
        key_id: str,
        method: Optional[str] = None,
        purpose: str = DEFAULT_PROOF_PURPOSE,
    ) -> CredentialProof: ...


class _KeyringSignatureService:
    """Holds signing keys by id; subclasses supply the actual cryptosystem."""

    proof_type: str = ""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: dict = {}

    def key_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._keys)

    def _key(self, key_id: str):
        with self._lock:
            key = self._keys.get(key_id)
        if key is None:
            raise KeyNotFoundError(key_id)
        return key

    def _put_key(self, key_id: str, key) -> None:
        if not key_id:
            raise ValueError("key_id must be non-empty")
        with self._lock:
            self._keys[key_id] = key

    def create_proof(
        self,
        key_id: str,
        method: Optional[str] = None,
        purpose: str = DEFAULT_PROOF_PURPOSE,
    ) -> CredentialProof:
        """Unsigned proof template for key_id, created now."""
        key = self._key(key_id)
        return new_proof(
            proof_type=self.proof_type,
            verification_method=method or self._verification_method(key_id, key),
            purpose=purpose,
        )

    def sign(self, credential: Signable, key_id: str) -> Signable:
        """Attach a fresh proof to credential, replacing any earlier one."""
        key = self._key(key_id)
        proof = self.create_proof(key_id)
        signature = self._sign_bytes(key, signing_input(credential, proof))
        credential.attach_proof(proof.with_signature(signature))
        return credential

    def verify(self, credential: Signable) -> bool:
        """True only for a signed proof that validates over unmodified canonical bytes."""
        proof = getattr(credential, "proof", None)
        if proof is None or not proof.is_signed:
            return False
        if proof.type != self.proof_type:
            return False
        try:
            message = signing_input(credential, proof)
            return self._verify_bytes(proof.verification_method, message, proof.signature_value)
        except Exception as exc:
            logger.debug("Signature verification error for %s: %s", getattr(credential, "id", "?"), exc)
            return False

    def _verification_method(self, key_id: str, key) -> str:
        raise NotImplementedError

    def _sign_bytes(self, key, message: bytes) -> str:
        raise NotImplementedError

    def _verify_bytes(self, verification_method: str, message: bytes, signature: str) -> bool:
        raise NotImplementedError


class EthereumSignatureService(_KeyringSignatureService):
    """EIP-191 personal-sign over the canonical signing input.

    The verification method embeds the signer address, so verification needs no
    key lookup: the recovered address must equal the referenced one.
    """

    proof_type = ETH_PROOF_TYPE

    def generate_key_pair(self, key_id: str) -> str:
        account = Account.create()
        self._put_key(key_id, account)
        return account.address

    def import_key(self, key_id: str, private_key: str) -> str:
        account: LocalAccount = Account.from_key(private_key)
        self._put_key(key_id, account)
        return account.address

    def address(self, key_id: str) -> str:
        return self._key(key_id).address

    def _verification_method(self, key_id: str, key: LocalAccount) -> str:
        return f"{key_id}#{key.address}"

    def _sign_bytes(self, key: LocalAccount, message: bytes) -> str:
        signed = Account.sign_message(encode_defunct(primitive=message), private_key=key.key)
        return "0x" + bytes(signed.signature).hex()

    def _verify_bytes(self, verification_method: str, message: bytes, signature: str) -> bool:
        _, _, expected = verification_method.rpartition("#")
        if not expected:
            return False
        recovered = Account.recover_message(
            encode_defunct(primitive=message),
            signature=bytes.fromhex(_strip_0x(signature)),
        )
        return recovered.lower() == expected.lower()


class Ed25519SignatureService(_KeyringSignatureService):
    """Ed25519 signatures; the verification method carries the raw public key."""

    proof_type = ED25519_PROOF_TYPE

    def generate_key_pair(self, key_id: str) -> str:
        key = ed25519.Ed25519PrivateKey.generate()
        self._put_key(key_id, key)
        return _public_key_hex(key)

    def import_key(self, key_id: str, private_key_hex: str) -> str:
        seed = bytes.fromhex(_strip_0x(private_key_hex.strip()))
        if len(seed) != 32:
            raise ValueError("Ed25519 private key must be 32 bytes of hex")
        key = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
        self._put_key(key_id, key)
        return _public_key_hex(key)

    def _verification_method(self, key_id: str, key: ed25519.Ed25519PrivateKey) -> str:
        return f"{key_id}#ed25519:{_public_key_hex(key)}"

    def _sign_bytes(self, key: ed25519.Ed25519PrivateKey, message: bytes) -> str:
        return key.sign(message).hex()

    def _verify_bytes(self, verification_method: str, message: bytes, signature: str) -> bool:
        _, _, fragment = verification_method.rpartition("#")
        algorithm, _, key_material = fragment.partition(":")
        if algorithm != "ed25519" or not key_material:
            return False
        public_key = ed25519.Ed25519PublicKey.from_public_bytes(bytes.fromhex(key_material))
        try:
            public_key.verify(bytes.fromhex(signature), message)
        except InvalidSignature:
            return False
        return True


def _public_key_hex(key: ed25519.Ed25519PrivateKey) -> str:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ).hex()


def _strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value
