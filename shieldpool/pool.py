"""
Shielded Pool

Owns the pool-wide shared state (commitment tree, nullifier set, note
ledger, pool ledger, allowances) behind a single re-entrant lock and
exposes it to vaults through one atomic mutation path.

Atomicity:
    ``apply_operations`` stages every change on clones of the tree, the
    ledger and the allowances plus a pending nullifier list. Only when
    every operation in the call has staged successfully are the clones
    swapped in, so a failed apply leaves no trace.

Lock order:
    owner vault lock, then pool lock. Vaults never call back into another
    vault while holding the pool lock. Whole-pool readers take every vault
    lock in owner order before the pool lock.

Vaults:
    ``vault(owner)`` hands out the owner's vault; it is registered with
    the pool on its first ``prepare`` (or restore), so lookups never create
    pool state.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
import weakref
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set

from shieldpool.accumulator import (
    CommitmentTree,
    HashPair,
    authentication_path,
    compute_root,
    derive_amount_commitment,
    sha256_pair,
)
from shieldpool.allowances import Allowance, AllowanceRegistry
from shieldpool.audit import AuditEventType, AuditTrail
from shieldpool.config import ShieldPoolConfig, get_config
from shieldpool.custody import Custodian, InMemoryCustody
from shieldpool.hardening import (
    CryptoUtils,
    KeyNotFoundError,
    KeyRevokedError,
    NullifierAlreadyUsedError,
    PoolHaltedError,
    ShieldedPoolError,
    UnauthorizedError,
    require_bytes32,
)
from shieldpool.keys import KeyRegistry, VerifyingKeyRecord
from shieldpool.ledger import PoolLedger, intervals_from_config
from shieldpool.nullifiers import NullifierSet
from shieldpool.observability import PoolLayer, get_logger
from shieldpool.operations import INSERTING_KINDS, SPENDING_KINDS, OperationKind, PreparedOperation
from shieldpool.vault import OperationVault
from shieldpool.verifier import ProofVerifier, build_verifier

logger = get_logger("pool", PoolLayer.POOL)


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of one operation's shared-state mutation."""
    operation_id: bytes
    leaf_index: Optional[int]
    root: bytes


class ShieldedPool:
    """A single shielded pool instance."""

    def __init__(
        self,
        authority: bytes,
        keys: Optional[KeyRegistry] = None,
        verifier: Optional[ProofVerifier] = None,
        custody: Optional[Custodian] = None,
        config: Optional[ShieldPoolConfig] = None,
        hash_pair: HashPair = sha256_pair,
        clock: Callable[[], float] = time.time,
        audit: Optional[AuditTrail] = None,
    ):
        self.config = config or get_config()
        self.authority = require_bytes32(authority, "authority")
        self.keys = keys if keys is not None else KeyRegistry(self.authority)
        self.clock = clock
        self.verifier = verifier if verifier is not None else build_verifier(self.config.verifier, clock)
        self.custody = custody if custody is not None else InMemoryCustody(self.authority)
        self.audit = audit if audit is not None else AuditTrail()
        self.hash_pair = hash_pair

        self._tree = CommitmentTree(
            depth=self.config.accumulator.depth.get(),
            hash_pair=hash_pair,
            recent_cache_size=self.config.accumulator.recent_cache_size.get(),
        )
        self._nullifiers = NullifierSet()
        self._notes: List[bytes] = []
        self._ledger = PoolLedger(
            self._tree.current_root,
            root_history_size=self.config.ledger.root_history_size.get(),
            min_intervals=intervals_from_config(self.config.ledger),
        )
        self._allowances = AllowanceRegistry(self.authority)
        self._lock = threading.RLock()
        self._vaults: Dict[str, OperationVault] = {}
        # Handed out but not yet registered
        self._detached: "weakref.WeakValueDictionary[str, OperationVault]" = weakref.WeakValueDictionary()
        self._vaults_lock = threading.Lock()
        self.halted = False
        self.halt_reason = ""

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        """Pool lock, for callers that need a consistent multi-record view."""
        return self._lock

    @property
    def tree(self) -> CommitmentTree:
        return self._tree

    @property
    def nullifiers(self) -> NullifierSet:
        return self._nullifiers

    @property
    def ledger(self) -> PoolLedger:
        return self._ledger

    @property
    def allowances(self) -> AllowanceRegistry:
        return self._allowances

    @property
    def current_root(self) -> bytes:
        with self._lock:
            return self._tree.current_root

    @property
    def recent_roots(self) -> List[bytes]:
        with self._lock:
            return list(self._ledger.recent_roots)

    @property
    def notes(self) -> List[bytes]:
        with self._lock:
            return list(self._notes)

    def is_spent(self, nullifier: bytes) -> bool:
        with self._lock:
            return self._nullifiers.contains(nullifier)

    def authentication_path(self, index: int) -> List[bytes]:
        """Witness for the note at ``index`` against the current root."""
        with self._lock:
            return authentication_path(self._notes, index, self._tree.depth, self.hash_pair)

    def check_consistency(self) -> bool:
        """Recompute the root from the note ledger and compare."""
        with self._lock:
            rebuilt = compute_root(self._notes, self._tree.depth, self.hash_pair)
            return len(self._notes) == self._tree.next_index and rebuilt == self._tree.current_root

    # -------------------------------------------------------------------------
    # Vaults
    # -------------------------------------------------------------------------

    def vault(self, owner: str) -> OperationVault:
        """The owner's vault. A new vault joins the pool on its first prepare."""
        with self._vaults_lock:
            vault = self._vaults.get(owner)
            if vault is None:
                vault = self._detached.get(owner)
            if vault is None:
                vault = OperationVault(owner, self)
                self._detached[owner] = vault
            return vault

    def find_vault(self, owner: str) -> Optional[OperationVault]:
        with self._vaults_lock:
            return self._vaults.get(owner)

    def vaults(self) -> List[OperationVault]:
        """Registered vaults, in owner order."""
        with self._vaults_lock:
            return [self._vaults[owner] for owner in sorted(self._vaults)]

    def register_vault(self, vault: OperationVault) -> None:
        with self._vaults_lock:
            if self._vaults.setdefault(vault.owner, vault) is vault:
                self._detached.pop(vault.owner, None)

    # -------------------------------------------------------------------------
    # Allowances
    # -------------------------------------------------------------------------

    def allowance(self, owner: bytes, spender: bytes) -> int:
        with self._lock:
            return self._allowances.get(owner, spender)

    def approve_allowance(self, owner: bytes, spender: bytes, amount: int, authority: bytes) -> Allowance:
        """Let ``spender`` move up to ``amount`` of ``owner``'s value via transfer_from."""
        with self._lock:
            self.ensure_running()
            allowance = self._allowances.approve(owner, spender, amount, authority)
        self.audit.log(AuditEventType.ALLOWANCE_APPROVED, owner=allowance.owner.hex(), spender=allowance.spender,
                       amount=amount)
        return allowance

    def revoke_allowance(self, owner: bytes, spender: bytes, authority: bytes) -> int:
        owner = require_bytes32(owner, "owner")
        spender = require_bytes32(spender, "spender")
        with self._lock:
            self.ensure_running()
            remaining = self._allowances.revoke(owner, spender, authority)
        self.audit.log(AuditEventType.ALLOWANCE_REVOKED, owner=owner.hex(), spender=spender,
                       remaining=remaining)
        return remaining

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def register_key(
        self,
        circuit_tag: bytes,
        version: int,
        key_bytes: bytes,
        authority: bytes,
        activate: bool = True,
    ) -> VerifyingKeyRecord:
        record = self.keys.register(circuit_tag, version, key_bytes, authority)
        self.audit.log(AuditEventType.KEY_REGISTERED, circuit_tag=circuit_tag, version=version)
        if activate:
            self.set_active_key(circuit_tag, version, authority)
        return record

    def revoke_key(self, circuit_tag: bytes, version: int, authority: bytes) -> VerifyingKeyRecord:
        record = self.keys.revoke(circuit_tag, version, authority)
        self.audit.log(AuditEventType.KEY_REVOKED, circuit_tag=circuit_tag, version=version)
        return record

    def set_active_key(self, circuit_tag: bytes, version: int, authority: bytes) -> None:
        if not CryptoUtils.secure_compare(require_bytes32(authority, "authority"), self.authority):
            raise UnauthorizedError("only the pool authority may select the verifying key")
        record = self.keys.get(circuit_tag, version)
        if record.revoked:
            raise KeyRevokedError(f"verifying key {circuit_tag.hex()}/v{version} is revoked")
        with self._lock:
            self._ledger.set_active_key(record)
        logger.info("Active verifying key set", circuit_tag=circuit_tag.hex(), version=version)

    def active_key_record(self) -> VerifyingKeyRecord:
        with self._lock:
            key_id = self._ledger.active_key
        if key_id is None:
            raise KeyNotFoundError("pool has no active verifying key")
        return self.keys.get(*key_id)

    # -------------------------------------------------------------------------
    # Shared-state mutation
    # -------------------------------------------------------------------------

    def ensure_running(self) -> None:
        if self.halted:
            raise PoolHaltedError(f"pool halted: {self.halt_reason}")

    def halt(self, error: ShieldedPoolError) -> None:
        """Stop the pool after a fatal error; every later mutation raises PoolHaltedError."""
        self.halted = True
        self.halt_reason = f"{error.__class__.__name__}: {error.message}"
        logger.critical("Pool halted", error_code=error.error_code, reason=self.halt_reason)
        self.audit.log(AuditEventType.POOL_HALTED, outcome="error", reason=self.halt_reason)

    def apply_operations(self, ops: Sequence[PreparedOperation]) -> List[ApplyResult]:
        """Apply verified operations to the shared state, all or nothing."""
        with self._lock:
            self.ensure_running()
            now = self.clock()
            tree = self._tree.clone()
            ledger = self._ledger.clone()
            allowances = self._allowances.clone()
            spent: List[bytes] = []
            spent_set: Set[bytes] = set()
            notes: List[bytes] = []
            try:
                for kind in dict.fromkeys(op.kind for op in ops):
                    ledger.check_rate(kind, now)
                results = [self._stage(op, tree, ledger, allowances, spent, spent_set, notes) for op in ops]
                for kind, count in Counter(op.kind for op in ops).items():
                    ledger.record_operation(kind, now, count)
            except ShieldedPoolError as e:
                if e.fatal:
                    self.halt(e)
                raise

            self._nullifiers.insert_many(spent)
            self._tree = tree
            self._ledger = ledger
            self._allowances = allowances
            self._notes.extend(notes)

        logger.info("Operations applied", count=len(results), root=tree.current_root.hex(),
                    next_index=tree.next_index)
        return results

    def _stage(
        self,
        op: PreparedOperation,
        tree: CommitmentTree,
        ledger: PoolLedger,
        allowances: AllowanceRegistry,
        spent: List[bytes],
        spent_set: Set[bytes],
        notes: List[bytes],
    ) -> ApplyResult:
        fields = op.fields
        if op.kind in SPENDING_KINDS:
            ledger.check_root(fields.root)
            if fields.nullifier in self._nullifiers or fields.nullifier in spent_set:
                raise NullifierAlreadyUsedError(f"nullifier {fields.nullifier.hex()} already used")
            spent.append(fields.nullifier)
            spent_set.add(fields.nullifier)

        if op.kind is OperationKind.TRANSFER_FROM:
            allowances.spend(fields.owner, fields.spender, fields.amount)

        leaf_index = None
        if op.kind in INSERTING_KINDS:
            leaf_index, root = tree.insert(
                fields.commitment,
                derive_amount_commitment(fields.commitment, fields.amount),
            )
            ledger.record_root(root)
            notes.append(fields.commitment)

        return ApplyResult(op.id, leaf_index, tree.current_root)

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore_state(
        self,
        tree: CommitmentTree,
        nullifiers: NullifierSet,
        ledger: PoolLedger,
        notes: Sequence[bytes],
        allowances: Optional[AllowanceRegistry] = None,
    ) -> None:
        """Install persisted shared state."""
        with self._lock:
            self._tree = tree
            self._nullifiers = nullifiers
            self._ledger = ledger
            self._notes = list(notes)
            self._allowances = allowances if allowances is not None else AllowanceRegistry(self.authority)
