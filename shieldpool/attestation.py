"""Signed verification attestations.

An attestor that has checked a proof off-engine states so in a compact,
Ed25519-signed record binding the proof, the public inputs and the
verifying key by their SHA-256 hashes.

Binary layout (169 bytes):

    proof_hash (32) || public_inputs_hash (32) || verifying_key_hash (32)
    || is_valid (u8) || timestamp (i64 little-endian) || signature (64)

The signature covers the first 105 bytes. The JSON form carries byte
fields as lowercase hex.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import struct
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from shieldpool.hardening import InvalidInputError, ValidationError, Validators

MESSAGE_SIZE = 32 * 3 + 1 + 8
SIGNATURE_SIZE = 64
ATTESTATION_SIZE = MESSAGE_SIZE + SIGNATURE_SIZE


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


@dataclass(frozen=True)
class VerificationAttestation:
    proof_hash: bytes
    public_inputs_hash: bytes
    verifying_key_hash: bytes
    is_valid: bool
    timestamp: int
    signature: bytes = bytes(SIGNATURE_SIZE)

    def message(self) -> bytes:
        """Canonical bytes covered by the signature."""
        return (
            self.proof_hash
            + self.public_inputs_hash
            + self.verifying_key_hash
            + struct.pack("<Bq", 1 if self.is_valid else 0, self.timestamp)
        )

    def to_bytes(self) -> bytes:
        return self.message() + self.signature

    @classmethod
    def from_bytes(cls, data: bytes) -> "VerificationAttestation":
        if len(data) != ATTESTATION_SIZE:
            raise InvalidInputError(f"attestation must be {ATTESTATION_SIZE} bytes, got {len(data)}")
        flag, timestamp = struct.unpack_from("<Bq", data, 96)
        if flag > 1:
            raise InvalidInputError(f"attestation is_valid flag must be 0 or 1, got {flag}")
        return cls(
            proof_hash=data[0:32],
            public_inputs_hash=data[32:64],
            verifying_key_hash=data[64:96],
            is_valid=bool(flag),
            timestamp=timestamp,
            signature=data[MESSAGE_SIZE:],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof_hash": self.proof_hash.hex(),
            "public_inputs_hash": self.public_inputs_hash.hex(),
            "verifying_key_hash": self.verifying_key_hash.hex(),
            "is_valid": self.is_valid,
            "timestamp": self.timestamp,
            "signature": self.signature.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationAttestation":
        errors = []
        values: Dict[str, bytes] = {}
        for name in ("proof_hash", "public_inputs_hash", "verifying_key_hash"):
            result = Validators.validate_bytes32(data.get(name), name)
            errors.extend(result.errors)
            values[name] = result.sanitized_value
        sig = Validators.validate_bytes(data.get("signature"), "signature", SIGNATURE_SIZE, SIGNATURE_SIZE)
        errors.extend(sig.errors)
        if not isinstance(data.get("is_valid"), bool):
            errors.append(ValidationError("is_valid", "Expected boolean", data.get("is_valid")))
        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            errors.append(ValidationError("timestamp", "Expected integer", timestamp))
        elif not -(1 << 63) <= timestamp < (1 << 63):
            errors.append(ValidationError("timestamp", "Out of i64 range", timestamp))
        if errors:
            raise InvalidInputError(errors=errors)
        return cls(
            proof_hash=values["proof_hash"],
            public_inputs_hash=values["public_inputs_hash"],
            verifying_key_hash=values["verifying_key_hash"],
            is_valid=data["is_valid"],
            timestamp=timestamp,
            signature=sig.sanitized_value,
        )


def load_public_key(raw: bytes) -> Ed25519PublicKey:
    if len(raw) != 32:
        raise InvalidInputError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def public_key_bytes(key: Ed25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def check_signature(attestation: VerificationAttestation, public_key: Ed25519PublicKey) -> bool:
    try:
        public_key.verify(attestation.signature, attestation.message())
    except InvalidSignature:
        return False
    return True


class AttestationSigner:
    """Attestor-side signing key."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key

    @classmethod
    def generate(cls) -> "AttestationSigner":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_private_bytes(cls, raw: bytes) -> "AttestationSigner":
        if len(raw) != 32:
            raise InvalidInputError(f"Ed25519 private key must be 32 bytes, got {len(raw)}")
        return cls(Ed25519PrivateKey.from_private_bytes(raw))

    def private_bytes(self) -> bytes:
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self._private_key.public_key()

    @property
    def public_key_bytes(self) -> bytes:
        return public_key_bytes(self.public_key)

    def attest(
        self,
        proof: bytes,
        public_inputs: bytes,
        key_bytes: bytes,
        is_valid: bool = True,
        timestamp: Optional[int] = None,
    ) -> VerificationAttestation:
        """Hash the three inputs and sign the resulting statement."""
        unsigned = VerificationAttestation(
            proof_hash=sha256(proof),
            public_inputs_hash=sha256(public_inputs),
            verifying_key_hash=sha256(key_bytes),
            is_valid=is_valid,
            timestamp=int(time.time()) if timestamp is None else timestamp,
        )
        signature = self._private_key.sign(unsigned.message())
        return VerificationAttestation(
            proof_hash=unsigned.proof_hash,
            public_inputs_hash=unsigned.public_inputs_hash,
            verifying_key_hash=unsigned.verifying_key_hash,
            is_valid=unsigned.is_valid,
            timestamp=unsigned.timestamp,
            signature=signature,
        )


def create_attestation(
    signer: AttestationSigner,
    proof: bytes,
    public_inputs: bytes,
    key_bytes: bytes,
    is_valid: bool = True,
    timestamp: Optional[int] = None,
) -> VerificationAttestation:
    return signer.attest(proof, public_inputs, key_bytes, is_valid=is_valid, timestamp=timestamp)
