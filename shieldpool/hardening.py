"""
Shielded Pool Validation and Hardening Module

Error taxonomy, input validation and defensive utilities shared by every
component of the shielded-operation engine:

1. Error kinds with recoverable / fatal classification
2. Input validation with collected errors
3. Constant-time digest comparisons
4. Checked unsigned 64-bit arithmetic

Security Model:
    - All inputs are untrusted until validated
    - All digest comparisons are constant-time
    - Counters and amounts never wrap silently
    - Every failure surfaces to the caller with its kind

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hmac
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional


U64_MAX = (1 << 64) - 1
U32_MAX = (1 << 32) - 1

FIELD_BYTES = 32


# =============================================================================
# ERROR TAXONOMY
# =============================================================================

class ErrorKind(Enum):
    """Classification of every engine failure."""
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    STATE_CONFLICT = "state_conflict"
    VERIFICATION_FAILURE = "verification_failure"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    ARITHMETIC = "arithmetic"

    @property
    def recoverable(self) -> bool:
        return self in {ErrorKind.STATE_CONFLICT, ErrorKind.VERIFICATION_FAILURE}


class ShieldedPoolError(Exception):
    """Base exception for the shielded-operation engine."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT
    error_code: str = "SP000"
    fatal: bool = False

    def __init__(self, message: str = "", **context: Any):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": self.__class__.__name__,
            "kind": self.kind.value,
            "error_code": self.error_code,
            "fatal": self.fatal,
            "message": self.message,
        }


# NOT_FOUND ---------------------------------------------------------------

class NotFoundError(ShieldedPoolError):
    """Requested record does not exist."""
    kind = ErrorKind.NOT_FOUND
    error_code = "SP100"


class OperationNotFoundError(NotFoundError):
    """Operation not found."""
    error_code = "SP101"


class KeyNotFoundError(NotFoundError):
    """Verifying key not found."""
    error_code = "SP102"


class RecordNotFoundError(NotFoundError):
    """Persisted record not found."""
    error_code = "SP103"


# INVALID_INPUT -----------------------------------------------------------

class InvalidInputError(ShieldedPoolError):
    """Input failed size or range validation."""
    kind = ErrorKind.INVALID_INPUT
    error_code = "SP200"

    def __init__(self, message: str = "", errors: Optional[List["ValidationError"]] = None, **context: Any):
        self.errors = list(errors or [])
        if not message and self.errors:
            message = "Validation failed: " + "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(message, **context)


class InvalidAmountError(InvalidInputError):
    """Invalid amount."""
    error_code = "SP201"


class InvalidProofError(InvalidInputError):
    """Invalid proof encoding."""
    error_code = "SP202"


class InvalidPublicInputsError(InvalidInputError):
    """Invalid public inputs encoding."""
    error_code = "SP203"


class InvalidVerifyingKeyError(InvalidInputError):
    """Invalid verifying key encoding."""
    error_code = "SP204"


# UNAUTHORIZED ------------------------------------------------------------

class UnauthorizedError(ShieldedPoolError):
    """Owner or authority mismatch."""
    kind = ErrorKind.UNAUTHORIZED
    error_code = "SP300"


# STATE_CONFLICT ----------------------------------------------------------

class StateConflictError(ShieldedPoolError):
    """Requested transition conflicts with current state."""
    kind = ErrorKind.STATE_CONFLICT
    error_code = "SP400"


class InvalidOperationStatusError(StateConflictError):
    """Invalid operation status."""
    error_code = "SP401"


class DuplicateOperationError(StateConflictError):
    """Operation already prepared."""
    error_code = "SP402"


class NullifierAlreadyUsedError(StateConflictError):
    """Nullifier already used."""
    error_code = "SP403"


class KeyAlreadyExistsError(StateConflictError):
    """Verifying key already exists."""
    error_code = "SP404"


class KeyAlreadyRevokedError(StateConflictError):
    """Key already revoked."""
    error_code = "SP405"


class InsufficientBalanceError(StateConflictError):
    """Insufficient custody balance."""
    error_code = "SP406"


class InsufficientAllowanceError(StateConflictError):
    """Spender allowance below the transfer amount."""
    error_code = "SP407"


# VERIFICATION_FAILURE ----------------------------------------------------

class VerificationFailureError(ShieldedPoolError):
    """Proof or attestation rejected."""
    kind = ErrorKind.VERIFICATION_FAILURE
    error_code = "SP500"


class ProofVerificationFailedError(VerificationFailureError):
    """Proof verification failed."""
    error_code = "SP501"


class KeyRevokedError(VerificationFailureError):
    """Verifying key revoked."""
    error_code = "SP502"


class RootMismatchError(VerificationFailureError):
    """Root mismatch."""
    error_code = "SP503"


# RESOURCE_EXHAUSTED ------------------------------------------------------

class ResourceExhaustedError(ShieldedPoolError):
    """A bounded resource is exhausted."""
    kind = ErrorKind.RESOURCE_EXHAUSTED
    error_code = "SP600"


class TreeFullError(ResourceExhaustedError):
    """Commitment tree exhausted."""
    error_code = "SP601"
    fatal = True


class RateLimitExceededError(ResourceExhaustedError):
    """Rate limit exceeded."""
    error_code = "SP602"


class BatchTooLargeError(ResourceExhaustedError):
    """Batch exceeds the configured maximum size."""
    error_code = "SP603"


class PoolHaltedError(ResourceExhaustedError):
    """Pool halted after a fatal error."""
    error_code = "SP604"
    fatal = True


# ARITHMETIC --------------------------------------------------------------

class ArithmeticOverflowError(ShieldedPoolError):
    """Counter or amount overflow."""
    kind = ErrorKind.ARITHMETIC
    error_code = "SP700"
    fatal = True


# Corruption is reported as invalid input but is never recoverable.
class CorruptRecordError(InvalidInputError):
    """Persisted record is corrupt."""
    error_code = "SP800"
    fatal = True


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationError:
    """A single field-level validation problem."""
    field: str
    message: str
    value: Any = None

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self, error_cls: type = InvalidInputError) -> None:
        """Raise an InvalidInputError (or subclass) if validation failed."""
        if not self.is_valid:
            raise error_cls(errors=self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    # Limits
    MIN_AMOUNT = 1
    MAX_AMOUNT = U64_MAX
    MIN_PROOF_SIZE = 64
    MAX_PROOF_SIZE = 1024
    MAX_PUBLIC_INPUTS_SIZE = 512

    @classmethod
    def validate_amount(
        cls,
        value: Any,
        field_name: str = "amount",
        min_value: Optional[int] = None,
        max_value: Optional[int] = None,
    ) -> ValidationResult:
        """Validate an integer amount in base units."""
        min_value = min_value if min_value is not None else cls.MIN_AMOUNT
        max_value = max_value if max_value is not None else cls.MAX_AMOUNT

        # bool is a subclass of int
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])

        errors = []
        if value < min_value:
            errors.append(ValidationError(field_name, f"Below minimum ({min_value})", value))
        if value > min(max_value, U64_MAX):
            errors.append(ValidationError(field_name, f"Exceeds maximum ({min(max_value, U64_MAX)})", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(value)

    @classmethod
    def validate_bytes(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: int = 65536,
    ) -> ValidationResult:
        """Validate bytes. Hex strings (optionally 0x-prefixed) are decoded."""
        errors = []

        if isinstance(value, str):
            text = value[2:] if value.startswith("0x") else value
            try:
                value = bytes.fromhex(text)
            except ValueError:
                errors.append(ValidationError(field_name, "Invalid hex string", value))
                return ValidationResult.failure(errors)

        if isinstance(value, (bytearray, memoryview)):
            value = bytes(value)

        if not isinstance(value, bytes):
            errors.append(ValidationError(field_name, f"Expected bytes, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        if len(value) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} bytes)", len(value)))

        if len(value) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} bytes)", len(value)))

        if errors:
            return ValidationResult.failure(errors)

        return ValidationResult.success(value)

    @classmethod
    def validate_bytes32(cls, value: Any, field_name: str) -> ValidationResult:
        """Validate a 32-byte value (commitment, nullifier, root, recipient)."""
        return cls.validate_bytes(value, field_name, min_length=FIELD_BYTES, max_length=FIELD_BYTES)

    @classmethod
    def validate_proof(cls, value: Any, max_size: Optional[int] = None) -> ValidationResult:
        """Sanitize raw proof bytes."""
        max_size = min(max_size or cls.MAX_PROOF_SIZE, cls.MAX_PROOF_SIZE)
        return cls.validate_bytes(value, "proof", min_length=cls.MIN_PROOF_SIZE, max_length=max_size)

    @classmethod
    def validate_public_inputs(cls, value: Any, max_size: Optional[int] = None) -> ValidationResult:
        """Sanitize public inputs: non-empty concatenation of 32-byte elements."""
        max_size = min(max_size or cls.MAX_PUBLIC_INPUTS_SIZE, cls.MAX_PUBLIC_INPUTS_SIZE)
        result = cls.validate_bytes(value, "public_inputs", min_length=FIELD_BYTES, max_length=max_size)
        if not result.is_valid:
            return result
        if len(result.sanitized_value) % FIELD_BYTES != 0:
            return ValidationResult.failure([
                ValidationError("public_inputs", f"Length must be a multiple of {FIELD_BYTES}", len(result.sanitized_value))
            ])
        return result


def require_bytes32(value: Any, field_name: str) -> bytes:
    """Validate and return a 32-byte value, raising InvalidInputError."""
    result = Validators.validate_bytes32(value, field_name)
    result.raise_if_invalid()
    return result.sanitized_value


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Cryptographic utility functions with security hardening."""

    @staticmethod
    def secure_compare(a: bytes, b: bytes) -> bool:
        """Constant-time comparison to prevent timing attacks."""
        return hmac.compare_digest(a, b)


def canonical_json(obj: Any) -> bytes:
    """Canonical JSON bytes: sorted keys, no insignificant whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


# =============================================================================
# CHECKED ARITHMETIC
# =============================================================================

def checked_add_u64(a: int, b: int, what: str = "value") -> int:
    """Add two u64 values, raising ArithmeticOverflowError instead of wrapping."""
    result = a + b
    if a < 0 or b < 0 or result > U64_MAX:
        raise ArithmeticOverflowError(f"{what} overflow: {a} + {b}")
    return result


def checked_sub_u64(a: int, b: int, what: str = "value") -> int:
    """Subtract two u64 values, raising ArithmeticOverflowError on underflow."""
    if b > a:
        raise ArithmeticOverflowError(f"{what} underflow: {a} - {b}")
    return a - b
