"""
Operation Vault

Per-owner store of in-flight operations and the state machine that drives
them:

    PENDING --verify--> VERIFIED --apply--> UPDATED --finalize--> COMPLETED
       |                   |
       +------- fail ------+--> FAILED

Recoverable rejections (state conflicts, verification failures) leave the
status unchanged so the owner can retry with corrected data. Completed
operations are removed from the vault. Failed operations stay until
``purge_failed`` removes them.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Union

from shieldpool.attestation import VerificationAttestation
from shieldpool.audit import AuditEventType
from shieldpool.hardening import (
    BatchTooLargeError,
    CryptoUtils,
    DuplicateOperationError,
    InvalidInputError,
    NullifierAlreadyUsedError,
    OperationNotFoundError,
    ProofVerificationFailedError,
    ShieldedPoolError,
    VerificationFailureError,
)
from shieldpool.observability import PoolLayer, correlation_scope, get_logger
from shieldpool.operations import (
    OperationFields,
    OperationKind,
    OperationPayload,
    OperationStatus,
    PreparedOperation,
    expected_public_inputs,
)

if TYPE_CHECKING:
    from shieldpool.pool import ApplyResult, ShieldedPool

logger = get_logger("vault", PoolLayer.VAULT)


class OperationVault:
    """In-flight operations of a single owner."""

    def __init__(self, owner: str, pool: "ShieldedPool"):
        self.owner = owner
        self._pool = pool
        self._ops: Dict[bytes, PreparedOperation] = {}
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def __len__(self) -> int:
        with self._lock:
            return len(self._ops)

    def __contains__(self, op_id: object) -> bool:
        with self._lock:
            return op_id in self._ops

    def _get(self, op_id: bytes) -> PreparedOperation:
        op = self._ops.get(op_id)
        if op is None:
            raise OperationNotFoundError(f"operation {bytes(op_id).hex()[:16]} not in vault of {self.owner}")
        return op

    def _audit(self, event_type: AuditEventType, op: PreparedOperation, outcome: str = "success", **details: Any) -> None:
        self._pool.audit.log(event_type, owner=self.owner, operation_id=op.id.hex(), outcome=outcome,
                             kind=op.kind.value, **details)

    def get(self, op_id: bytes) -> PreparedOperation:
        with self._lock:
            return self._get(op_id)

    def list(self, status: Optional[OperationStatus] = None) -> List[PreparedOperation]:
        with self._lock:
            ops = list(self._ops.values())
        if status is not None:
            ops = [op for op in ops if op.status is status]
        return ops

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def prepare(self, kind: Union[OperationKind, str], amount: int, **fields: Any) -> bytes:
        """Register a new Pending operation and return its id."""
        if not isinstance(kind, OperationKind):
            try:
                kind = OperationKind(kind)
            except ValueError:
                raise InvalidInputError(f"unknown operation kind {kind!r}") from None
        vault_config = self._pool.config.vault
        op_fields = OperationFields.build(
            kind,
            amount,
            min_amount=vault_config.min_amount.get(),
            max_amount=vault_config.max_amount.get(),
            **fields,
        )
        op = PreparedOperation.create(kind, op_fields)

        with self._lock:
            self._pool.ensure_running()
            if op.id in self._ops:
                raise DuplicateOperationError(f"operation {op.id.hex()[:16]} already prepared")
            self._ops[op.id] = op
            self._pool.register_vault(self)

        self._audit(AuditEventType.OPERATION_PREPARED, op, amount=op_fields.amount)
        logger.info("Operation prepared", owner=self.owner, operation_id=op.id.hex(), kind=kind.value)
        return op.id

    def attach_payload(
        self,
        op_id: bytes,
        proof: bytes,
        public_inputs: bytes,
        attestation: Optional[VerificationAttestation] = None,
    ) -> None:
        """Attach (or replace) proof material while Pending."""
        vault_config = self._pool.config.vault
        payload = OperationPayload.build(
            proof,
            public_inputs,
            attestation,
            max_proof_size=vault_config.max_proof_size.get(),
            max_public_inputs_size=vault_config.max_public_inputs_size.get(),
        )
        with self._lock:
            self._pool.ensure_running()
            op = self._get(op_id)
            op.require_status(OperationStatus.PENDING)
            op.payload = payload.to_bytes()
        self._audit(AuditEventType.PAYLOAD_ATTACHED, op, attested=attestation is not None)

    def verify(self, op_id: bytes) -> None:
        """Check the attached payload; Pending -> Verified on success."""
        with self._lock, correlation_scope(f"verify-{bytes(op_id).hex()[:16]}"):
            self._pool.ensure_running()
            op = self._get(op_id)
            op.require_status(OperationStatus.PENDING)
            payload = op.decoded_payload()

            expected = expected_public_inputs(op.kind, op.fields)
            if not CryptoUtils.secure_compare(payload.public_inputs, expected):
                self._audit(AuditEventType.VERIFICATION_REJECTED, op, "rejected", reason="public input mismatch")
                raise ProofVerificationFailedError("public inputs do not match the operation's fields")

            key = self._pool.active_key_record()
            try:
                accepted = self._pool.verifier.verify(payload.proof, payload.public_inputs, key, payload.attestation)
            except VerificationFailureError as e:
                self._audit(AuditEventType.VERIFICATION_REJECTED, op, "rejected", reason=e.message)
                raise
            if not accepted:
                self._audit(AuditEventType.VERIFICATION_REJECTED, op, "rejected",
                            reason=f"{self._pool.verifier.name} check failed")
                raise ProofVerificationFailedError(f"operation {op.id.hex()[:16]}: proof rejected")

            op.transition(OperationStatus.VERIFIED)

        self._audit(AuditEventType.OPERATION_VERIFIED, op, verifier=self._pool.verifier.name)
        logger.info("Operation verified", owner=self.owner, operation_id=op.id.hex())

    def apply(self, op_id: bytes) -> "ApplyResult":
        """Commit the operation's shared-state change; Verified -> Updated."""
        with self._lock:
            self._pool.ensure_running()
            op = self._get(op_id)
            op.require_status(OperationStatus.VERIFIED)
            (result,) = self._commit([op])
        return result

    def apply_batch(self, op_ids: Sequence[bytes]) -> List["ApplyResult"]:
        """Apply several Verified operations as one atomic unit."""
        max_batch = self._pool.config.vault.max_batch_size.get()
        if not op_ids:
            raise InvalidInputError("batch is empty")
        if len(op_ids) > max_batch:
            raise BatchTooLargeError(f"batch of {len(op_ids)} exceeds maximum {max_batch}")
        if len(set(op_ids)) != len(op_ids):
            raise InvalidInputError("batch contains duplicate operation ids")

        with self._lock:
            self._pool.ensure_running()
            ops = [self._get(op_id) for op_id in op_ids]
            for op in ops:
                op.require_status(OperationStatus.VERIFIED)
                op.decoded_payload()
            return self._commit(ops)

    def _commit(self, ops: List[PreparedOperation]) -> List["ApplyResult"]:
        try:
            with correlation_scope(f"apply-{ops[0].id.hex()[:16]}"):
                results = self._pool.apply_operations(ops)
        except NullifierAlreadyUsedError as e:
            for op in ops:
                self._audit(AuditEventType.NULLIFIER_REUSE, op, "rejected", reason=e.message)
            raise
        except ShieldedPoolError as e:
            for op in ops:
                self._audit(AuditEventType.APPLY_REJECTED, op, "rejected", reason=e.message,
                            error_code=e.error_code)
            raise

        for op, result in zip(ops, results):
            op.leaf_index = result.leaf_index
            op.transition(OperationStatus.UPDATED)
            self._audit(AuditEventType.OPERATION_APPLIED, op, root=result.root, leaf_index=result.leaf_index)
        return results

    def finalize(self, op_id: bytes) -> None:
        """Move custodial value and remove the operation; Updated -> Completed."""
        with self._lock:
            self._pool.ensure_running()
            op = self._get(op_id)
            op.require_status(OperationStatus.UPDATED)

            custody = self._pool.custody
            try:
                if op.kind is OperationKind.SHIELD:
                    custody.deposit(op.fields.amount, self._pool.authority)
                elif op.kind is OperationKind.UNSHIELD:
                    custody.withdraw(op.fields.amount, op.fields.recipient, self._pool.authority)
            except ShieldedPoolError as e:
                self._audit(AuditEventType.CUSTODY_REJECTED, op, "error" if e.fatal else "rejected",
                            reason=e.message, error_code=e.error_code)
                if e.fatal:
                    self._pool.halt(e)
                raise

            op.transition(OperationStatus.COMPLETED)
            del self._ops[op.id]

        self._audit(AuditEventType.OPERATION_COMPLETED, op, amount=op.fields.amount)
        logger.info("Operation completed", owner=self.owner, operation_id=op.id.hex(), kind=op.kind.value)

    # -------------------------------------------------------------------------
    # Operator path
    # -------------------------------------------------------------------------

    def fail(self, op_id: bytes, reason: str = "") -> None:
        """Abandon a Pending or Verified operation."""
        with self._lock:
            op = self._get(op_id)
            op.transition(OperationStatus.FAILED)
            op.failure_reason = reason
        self._audit(AuditEventType.OPERATION_FAILED, op, "failure", reason=reason)
        logger.warning("Operation failed", owner=self.owner, operation_id=op.id.hex(), reason=reason)

    def purge_failed(self) -> int:
        """Drop Failed operations; returns how many were removed."""
        with self._lock:
            failed = [op for op in self._ops.values() if op.status is OperationStatus.FAILED]
            for op in failed:
                del self._ops[op.id]
        for op in failed:
            self._audit(AuditEventType.OPERATION_PURGED, op)
        return len(failed)

    def restore(self, op: PreparedOperation) -> None:
        """Insert a persisted operation as-is."""
        with self._lock:
            if op.id in self._ops:
                raise DuplicateOperationError(f"operation {op.id.hex()[:16]} already present")
            self._ops[op.id] = op
            self._pool.register_vault(self)
