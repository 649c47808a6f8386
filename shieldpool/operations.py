"""
Prepared Operations

Types shared by the vault and the pool: operation kinds and statuses, the
canonical field encoding the operation id is derived from, the public-input
layout a proof must commit to, and the attached payload wire format.

Payload wire format:

    flags (u8) || proof (256) || [attestation (169) if flags & 1] || public_inputs

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from shieldpool.attestation import ATTESTATION_SIZE, VerificationAttestation
from shieldpool.groth16 import PROOF_SIZE
from shieldpool.hardening import (
    FIELD_BYTES,
    InvalidAmountError,
    InvalidInputError,
    InvalidOperationStatusError,
    InvalidProofError,
    InvalidPublicInputsError,
    Validators,
    ValidationError,
)

OPERATION_ID_TAG = b"shieldpool:operation:v1"

FLAG_ATTESTATION = 0x01


class OperationKind(Enum):
    SHIELD = "shield"
    UNSHIELD = "unshield"
    TRANSFER = "transfer"
    TRANSFER_FROM = "transfer_from"

    @property
    def code(self) -> int:
        return _KIND_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "OperationKind":
        for kind, c in _KIND_CODES.items():
            if c == code:
                return kind
        raise InvalidInputError(f"unknown operation kind code {code}")


_KIND_CODES = {
    OperationKind.SHIELD: 0,
    OperationKind.UNSHIELD: 1,
    OperationKind.TRANSFER: 2,
    OperationKind.TRANSFER_FROM: 3,
}


class OperationStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    UPDATED = "updated"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def code(self) -> int:
        return list(OperationStatus).index(self)

    @classmethod
    def from_code(cls, code: int) -> "OperationStatus":
        members = list(OperationStatus)
        if not 0 <= code < len(members):
            raise InvalidInputError(f"unknown operation status code {code}")
        return members[code]


# Status only moves forward
VALID_TRANSITIONS: Dict[OperationStatus, FrozenSet[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({OperationStatus.VERIFIED, OperationStatus.FAILED}),
    OperationStatus.VERIFIED: frozenset({OperationStatus.UPDATED, OperationStatus.FAILED}),
    OperationStatus.UPDATED: frozenset({OperationStatus.COMPLETED}),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.FAILED: frozenset(),
}

# 32-byte fields each kind carries, in canonical order
KIND_FIELDS: Dict[OperationKind, Tuple[str, ...]] = {
    OperationKind.SHIELD: ("commitment",),
    OperationKind.UNSHIELD: ("nullifier", "recipient", "root"),
    OperationKind.TRANSFER: ("nullifier", "commitment", "root"),
    OperationKind.TRANSFER_FROM: ("nullifier", "commitment", "root", "owner", "spender"),
}

FIELD_ORDER = ("commitment", "nullifier", "recipient", "root", "owner", "spender")

# Kinds that spend a nullifier against an anchor root, and kinds that insert a note
SPENDING_KINDS = frozenset({OperationKind.UNSHIELD, OperationKind.TRANSFER, OperationKind.TRANSFER_FROM})
INSERTING_KINDS = frozenset({OperationKind.SHIELD, OperationKind.TRANSFER, OperationKind.TRANSFER_FROM})


@dataclass(frozen=True)
class OperationFields:
    """Canonical fields of an operation."""
    amount: int
    commitment: Optional[bytes] = None
    nullifier: Optional[bytes] = None
    recipient: Optional[bytes] = None
    root: Optional[bytes] = None
    owner: Optional[bytes] = None
    spender: Optional[bytes] = None

    @classmethod
    def build(
        cls,
        kind: OperationKind,
        amount: Any,
        min_amount: int = Validators.MIN_AMOUNT,
        max_amount: int = Validators.MAX_AMOUNT,
        **values: Any,
    ) -> "OperationFields":
        """Validate and normalize the fields for ``kind``."""
        result = Validators.validate_amount(amount, min_value=min_amount, max_value=max_amount)
        result.raise_if_invalid(InvalidAmountError)

        required = KIND_FIELDS[kind]
        errors = []
        clean: Dict[str, bytes] = {}
        for name, value in values.items():
            if name not in FIELD_ORDER:
                errors.append(ValidationError(name, "Unknown operation field", value))
            elif name not in required and value is not None:
                errors.append(ValidationError(name, f"Not a {kind.value} field", value))
        for name in required:
            if values.get(name) is None:
                errors.append(ValidationError(name, "Required field missing"))
                continue
            check = Validators.validate_bytes32(values[name], name)
            if check.is_valid:
                clean[name] = check.sanitized_value
            else:
                errors.extend(check.errors)
        if errors:
            raise InvalidInputError(errors=errors)
        return cls(amount=amount, **clean)

    def present(self) -> Tuple[str, ...]:
        return tuple(name for name in FIELD_ORDER if getattr(self, name) is not None)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"amount": self.amount}
        for name in self.present():
            d[name] = getattr(self, name).hex()
        return d


def canonical_encoding(kind: OperationKind, fields: OperationFields) -> bytes:
    """kind (u8) || amount (u64 LE) || the kind's 32-byte fields in order."""
    parts = [struct.pack("<BQ", kind.code, fields.amount)]
    for name in KIND_FIELDS[kind]:
        parts.append(getattr(fields, name))
    return b"".join(parts)


def operation_id(kind: OperationKind, fields: OperationFields) -> bytes:
    return hashlib.sha256(OPERATION_ID_TAG + canonical_encoding(kind, fields)).digest()


def encode_amount(amount: int) -> bytes:
    """Amount as a 32-byte big-endian field element."""
    return amount.to_bytes(FIELD_BYTES, "big")


def expected_public_inputs(kind: OperationKind, fields: OperationFields) -> bytes:
    """Public inputs the prover must commit to for this operation."""
    if kind is OperationKind.SHIELD:
        return fields.commitment
    if kind is OperationKind.UNSHIELD:
        return fields.nullifier + encode_amount(fields.amount)
    # transfer and transfer_from; the allowance is checked on apply
    return fields.nullifier + fields.commitment + encode_amount(fields.amount)


# =============================================================================
# PAYLOAD
# =============================================================================

@dataclass(frozen=True)
class OperationPayload:
    """Proof material attached to a pending operation."""
    proof: bytes
    public_inputs: bytes
    attestation: Optional[VerificationAttestation] = None

    @classmethod
    def build(
        cls,
        proof: Any,
        public_inputs: Any,
        attestation: Optional[VerificationAttestation] = None,
        max_proof_size: int = Validators.MAX_PROOF_SIZE,
        max_public_inputs_size: int = Validators.MAX_PUBLIC_INPUTS_SIZE,
    ) -> "OperationPayload":
        """Sanitize raw proof material."""
        proof_check = Validators.validate_proof(proof, max_proof_size)
        proof_check.raise_if_invalid(InvalidProofError)
        if len(proof_check.sanitized_value) != PROOF_SIZE:
            raise InvalidProofError(f"proof must be {PROOF_SIZE} bytes, got {len(proof_check.sanitized_value)}")
        inputs_check = Validators.validate_public_inputs(public_inputs, max_public_inputs_size)
        inputs_check.raise_if_invalid(InvalidPublicInputsError)
        if attestation is not None and not isinstance(attestation, VerificationAttestation):
            raise InvalidInputError(f"attestation must be a VerificationAttestation, got {type(attestation).__name__}")
        return cls(proof_check.sanitized_value, inputs_check.sanitized_value, attestation)

    def to_bytes(self) -> bytes:
        flags = FLAG_ATTESTATION if self.attestation is not None else 0
        parts = [bytes([flags]), self.proof]
        if self.attestation is not None:
            parts.append(self.attestation.to_bytes())
        parts.append(self.public_inputs)
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "OperationPayload":
        if len(data) < 1 + PROOF_SIZE:
            raise InvalidProofError(f"payload too short ({len(data)} bytes)")
        flags = data[0]
        if flags & ~FLAG_ATTESTATION:
            raise InvalidInputError(f"unknown payload flags 0x{flags:02x}")
        offset = 1 + PROOF_SIZE
        attestation = None
        if flags & FLAG_ATTESTATION:
            if len(data) < offset + ATTESTATION_SIZE:
                raise InvalidInputError("payload truncated inside attestation")
            attestation = VerificationAttestation.from_bytes(data[offset:offset + ATTESTATION_SIZE])
            offset += ATTESTATION_SIZE
        return cls.build(data[1:1 + PROOF_SIZE], data[offset:], attestation)


# =============================================================================
# PREPARED OPERATION
# =============================================================================

@dataclass
class PreparedOperation:
    """An in-flight operation held by an owner's vault."""
    id: bytes
    kind: OperationKind
    fields: OperationFields
    status: OperationStatus = OperationStatus.PENDING
    payload: bytes = b""
    leaf_index: Optional[int] = None
    failure_reason: str = ""

    @classmethod
    def create(cls, kind: OperationKind, fields: OperationFields) -> "PreparedOperation":
        return cls(id=operation_id(kind, fields), kind=kind, fields=fields)

    def require_status(self, expected: OperationStatus) -> None:
        if self.status is not expected:
            raise InvalidOperationStatusError(
                f"operation {self.id.hex()[:16]} is {self.status.value}, expected {expected.value}"
            )

    def transition(self, target: OperationStatus) -> None:
        if target not in VALID_TRANSITIONS[self.status]:
            raise InvalidOperationStatusError(
                f"invalid transition {self.status.value} -> {target.value} for {self.id.hex()[:16]}"
            )
        self.status = target

    def decoded_payload(self) -> OperationPayload:
        if not self.payload:
            raise InvalidInputError(f"operation {self.id.hex()[:16]} has no payload attached")
        return OperationPayload.from_bytes(self.payload)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id.hex(),
            "kind": self.kind.value,
            "status": self.status.value,
            "fields": self.fields.to_dict(),
            "has_payload": bool(self.payload),
        }
        if self.leaf_index is not None:
            d["leaf_index"] = self.leaf_index
        if self.failure_reason:
            d["failure_reason"] = self.failure_reason
        return d
