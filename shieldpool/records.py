"""
Persisted Records

Binary codecs for the independent records a pool is persisted as, and a
directory-backed store.

Every record is ``discriminator (8) || body`` where the discriminator is
``SHA256("record:<Name>")[:8]``. Integers are little-endian; 32-byte
values are stored as-is. A discriminator mismatch, a truncated body,
trailing bytes or an invalid field is reported as CorruptRecordError;
records are never repaired in place.

Record bodies:

    CommitmentTree      depth u32 | next_index u64 | current_root 32
                        | frontier[depth] 32 each
                        | recent count u32 | (commitment 32, amount_commitment 32, index u64)*
    NullifierSet        count u32 | nullifier 32 *
    NoteLedger          count u32 | commitment 32 *
    PoolLedger          current_root 32 | history capacity u32 | count u32 | root 32 *
                        | operation_count u64 | last_operation_time (u8 flag, f64)
                        | per kind (u8 flag, f64) x4 | active key (u8 flag, tag 32, version u32, hash 32)
    VerifyingKeyRecord  circuit_tag 32 | version u32 | authority 32 | revoked u8
                        | key length u32 | key bytes
    Allowance           owner 32 | spender 32 | pool 32 | amount u64
    OperationVault      owner length u16 | owner utf-8 | count u32 | operation *
    operation           id 32 | kind u8 | status u8 | amount u64 | field mask u8
                        | present fields 32 each | leaf index (u8 flag, u64)
                        | payload length u32 | payload

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import os
import struct
import tempfile
from contextlib import ExitStack
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from shieldpool.accumulator import CommitmentTree, HashPair, RecentLeaf, compute_root, sha256_pair
from shieldpool.allowances import Allowance, AllowanceRegistry
from shieldpool.hardening import CorruptRecordError, InvalidInputError, RecordNotFoundError, ShieldedPoolError
from shieldpool.keys import VerifyingKeyRecord
from shieldpool.ledger import PoolLedger, intervals_from_config
from shieldpool.nullifiers import NullifierSet
from shieldpool.observability import PoolLayer, get_logger
from shieldpool.operations import (
    FIELD_ORDER,
    OperationFields,
    OperationKind,
    OperationStatus,
    PreparedOperation,
    operation_id,
)

if TYPE_CHECKING:
    from shieldpool.pool import ShieldedPool

logger = get_logger("records", PoolLayer.RECORDS)

T = TypeVar("T")

_KINDS = (OperationKind.SHIELD, OperationKind.UNSHIELD, OperationKind.TRANSFER, OperationKind.TRANSFER_FROM)


def discriminator(name: str) -> bytes:
    return hashlib.sha256(f"record:{name}".encode("utf-8")).digest()[:8]


class _Reader:
    """Cursor over a record body; running past the end is corruption."""

    def __init__(self, name: str, data: bytes):
        self.name = name
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise CorruptRecordError(f"{self.name}: truncated at offset {self.pos}")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def unpack(self, fmt: str) -> Tuple[Any, ...]:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))

    def u8(self) -> int:
        return self.unpack("<B")[0]

    def u32(self) -> int:
        return self.unpack("<I")[0]

    def u64(self) -> int:
        return self.unpack("<Q")[0]

    def flag(self) -> bool:
        value = self.u8()
        if value > 1:
            raise CorruptRecordError(f"{self.name}: bad flag byte {value} at offset {self.pos - 1}")
        return bool(value)

    def opt_f64(self) -> Optional[float]:
        present = self.flag()
        (value,) = self.unpack("<d")
        return value if present else None

    def bytes32(self) -> bytes:
        return self.take(32)

    def finish(self) -> None:
        if self.pos != len(self.data):
            raise CorruptRecordError(f"{self.name}: {len(self.data) - self.pos} trailing bytes")


def _opt_f64(value: Optional[float]) -> bytes:
    return struct.pack("<Bd", 0 if value is None else 1, 0.0 if value is None else value)


def encode_record(name: str, body: bytes) -> bytes:
    return discriminator(name) + body


def decode_record(name: str, data: bytes, parse: Callable[[_Reader], T]) -> T:
    """Check the discriminator and parse the body with ``parse``."""
    if len(data) < 8 or data[:8] != discriminator(name):
        logger.critical("Record discriminator mismatch", error_code=CorruptRecordError.error_code, record=name)
        raise CorruptRecordError(f"{name}: discriminator mismatch")
    reader = _Reader(name, data[8:])
    try:
        value = parse(reader)
    except CorruptRecordError:
        raise
    except (ShieldedPoolError, ValueError, UnicodeDecodeError) as e:
        raise CorruptRecordError(f"{name}: {e}") from e
    reader.finish()
    return value


# =============================================================================
# COMMITMENT TREE
# =============================================================================

def encode_tree(tree: CommitmentTree) -> bytes:
    parts = [struct.pack("<IQ", tree.depth, tree.next_index), tree.current_root]
    parts.extend(tree.frontier)
    parts.append(struct.pack("<I", len(tree.recent)))
    for leaf in tree.recent:
        parts.append(leaf.commitment + leaf.amount_commitment + struct.pack("<Q", leaf.index))
    return encode_record("CommitmentTree", b"".join(parts))


def decode_tree(data: bytes, hash_pair: HashPair = sha256_pair, recent_cache_size: int = 128) -> CommitmentTree:
    def parse(r: _Reader) -> CommitmentTree:
        depth, next_index = r.unpack("<IQ")
        if not 1 <= depth <= 64:
            raise CorruptRecordError(f"CommitmentTree: depth {depth} out of range")
        root = r.bytes32()
        frontier = [r.bytes32() for _ in range(depth)]
        recent = []
        for _ in range(r.u32()):
            commitment, amount_commitment = r.bytes32(), r.bytes32()
            recent.append(RecentLeaf(commitment, amount_commitment, r.u64()))
        if len(recent) > recent_cache_size:
            raise CorruptRecordError(f"CommitmentTree: {len(recent)} cached leaves exceed {recent_cache_size}")
        return CommitmentTree.restore(depth, next_index, frontier, root, recent, hash_pair, recent_cache_size)

    return decode_record("CommitmentTree", data, parse)


# =============================================================================
# NULLIFIER SET / NOTE LEDGER
# =============================================================================

def _encode_list(name: str, items: List[bytes]) -> bytes:
    return encode_record(name, struct.pack("<I", len(items)) + b"".join(items))


def _decode_list(name: str, data: bytes) -> List[bytes]:
    return decode_record(name, data, lambda r: [r.bytes32() for _ in range(r.u32())])


def encode_nullifiers(nullifiers: NullifierSet) -> bytes:
    return _encode_list("NullifierSet", nullifiers.to_list())


def decode_nullifiers(data: bytes) -> NullifierSet:
    items = _decode_list("NullifierSet", data)
    try:
        return NullifierSet(items)
    except ShieldedPoolError as e:
        raise CorruptRecordError(f"NullifierSet: {e}") from e


def encode_notes(notes: List[bytes]) -> bytes:
    return _encode_list("NoteLedger", notes)


def decode_notes(data: bytes) -> List[bytes]:
    return _decode_list("NoteLedger", data)


# =============================================================================
# POOL LEDGER
# =============================================================================

def encode_ledger(ledger: PoolLedger) -> bytes:
    parts = [ledger.current_root, struct.pack("<II", ledger.root_history_size, len(ledger.recent_roots))]
    parts.extend(ledger.recent_roots)
    parts.append(struct.pack("<Q", ledger.operation_count))
    parts.append(_opt_f64(ledger.last_operation_time))
    for kind in _KINDS:
        parts.append(_opt_f64(ledger.last_kind_time.get(kind)))
    if ledger.active_key is None:
        parts.append(b"\x00" + bytes(32) + struct.pack("<I", 0) + bytes(32))
    else:
        tag, version = ledger.active_key
        parts.append(b"\x01" + tag + struct.pack("<I", version) + (ledger.active_key_hash or bytes(32)))
    return encode_record("PoolLedger", b"".join(parts))


def decode_ledger(data: bytes, min_intervals: Optional[Dict[OperationKind, float]] = None) -> PoolLedger:
    def parse(r: _Reader) -> PoolLedger:
        current_root = r.bytes32()
        capacity, count = r.unpack("<II")
        if capacity < 1 or count > capacity:
            raise CorruptRecordError(f"PoolLedger: {count} roots in history of {capacity}")
        ledger = PoolLedger(current_root, capacity, min_intervals)
        ledger.recent_roots.extend(r.bytes32() for _ in range(count))
        ledger.operation_count = r.u64()
        ledger.last_operation_time = r.opt_f64()
        for kind in _KINDS:
            t = r.opt_f64()
            if t is not None:
                ledger.last_kind_time[kind] = t
        has_key = r.flag()
        tag, (version,), key_hash = r.bytes32(), r.unpack("<I"), r.bytes32()
        if has_key:
            ledger.active_key = (tag, version)
            ledger.active_key_hash = key_hash
        return ledger

    return decode_record("PoolLedger", data, parse)


# =============================================================================
# VERIFYING KEY RECORD
# =============================================================================

def encode_key_record(record: VerifyingKeyRecord) -> bytes:
    body = (
        record.circuit_tag
        + struct.pack("<I", record.version)
        + record.authority
        + struct.pack("<BI", 1 if record.revoked else 0, len(record.key_bytes))
        + record.key_bytes
    )
    return encode_record("VerifyingKeyRecord", body)


def decode_key_record(data: bytes) -> VerifyingKeyRecord:
    def parse(r: _Reader) -> VerifyingKeyRecord:
        tag = r.bytes32()
        version = r.u32()
        authority = r.bytes32()
        revoked = r.flag()
        key_bytes = r.take(r.u32())
        return VerifyingKeyRecord(tag, version, key_bytes, authority, revoked)

    return decode_record("VerifyingKeyRecord", data, parse)


# =============================================================================
# ALLOWANCE
# =============================================================================

def encode_allowance(allowance: Allowance) -> bytes:
    body = allowance.owner + allowance.spender + allowance.pool + struct.pack("<Q", allowance.amount)
    return encode_record("Allowance", body)


def decode_allowance(data: bytes) -> Allowance:
    def parse(r: _Reader) -> Allowance:
        owner, spender, pool = r.bytes32(), r.bytes32(), r.bytes32()
        return Allowance(owner, spender, pool, r.u64())

    return decode_record("Allowance", data, parse)


# =============================================================================
# OPERATION VAULT
# =============================================================================

def _encode_operation(op: PreparedOperation) -> bytes:
    present = op.fields.present()
    mask = sum(1 << FIELD_ORDER.index(name) for name in present)
    parts = [
        op.id,
        struct.pack("<BBQB", op.kind.code, op.status.code, op.fields.amount, mask),
    ]
    parts.extend(getattr(op.fields, name) for name in present)
    parts.append(struct.pack("<BQ", 0 if op.leaf_index is None else 1, op.leaf_index or 0))
    parts.append(struct.pack("<I", len(op.payload)) + op.payload)
    return b"".join(parts)


def _decode_operation(r: _Reader) -> PreparedOperation:
    op_id = r.bytes32()
    kind_code, status_code, amount, mask = r.unpack("<BBQB")
    kind = OperationKind.from_code(kind_code)
    status = OperationStatus.from_code(status_code)
    if mask >> len(FIELD_ORDER):
        raise CorruptRecordError(f"OperationVault: bad field mask 0x{mask:02x}")
    values = {name: r.bytes32() for i, name in enumerate(FIELD_ORDER) if mask & (1 << i)}
    has_index = r.flag()
    (leaf_index,) = r.unpack("<Q")
    payload = r.take(r.u32())

    fields = OperationFields.build(kind, amount, **values)
    if operation_id(kind, fields) != op_id:
        raise CorruptRecordError(f"OperationVault: id mismatch for operation {op_id.hex()[:16]}")
    return PreparedOperation(
        id=op_id,
        kind=kind,
        fields=fields,
        status=status,
        payload=payload,
        leaf_index=leaf_index if has_index else None,
    )


def encode_vault(owner: str, operations: List[PreparedOperation]) -> bytes:
    owner_bytes = owner.encode("utf-8")
    parts = [struct.pack("<H", len(owner_bytes)), owner_bytes, struct.pack("<I", len(operations))]
    parts.extend(_encode_operation(op) for op in operations)
    return encode_record("OperationVault", b"".join(parts))


def decode_vault(data: bytes) -> Tuple[str, List[PreparedOperation]]:
    def parse(r: _Reader) -> Tuple[str, List[PreparedOperation]]:
        (owner_len,) = r.unpack("<H")
        owner = r.take(owner_len).decode("utf-8")
        return owner, [_decode_operation(r) for _ in range(r.u32())]

    return decode_record("OperationVault", data, parse)


# =============================================================================
# RECORD STORE
# =============================================================================

class RecordStore:
    """Directory of record files, one per key, replaced atomically."""

    SUFFIX = ".rec"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise InvalidInputError(f"invalid record key: {key!r}")
        return self.directory / f"{key}{self.SUFFIX}"

    def save(self, key: str, data: bytes) -> None:
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def load(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise RecordNotFoundError(f"record {key} not found in {self.directory}")
        return path.read_bytes()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> List[str]:
        return sorted(p.name[:-len(self.SUFFIX)] for p in self.directory.glob(f"*{self.SUFFIX}")
                      if not p.name.startswith("."))


# =============================================================================
# POOL SNAPSHOT
# =============================================================================

def _vault_key(owner: str) -> str:
    return f"vault-{hashlib.sha256(owner.encode('utf-8')).hexdigest()[:32]}"


def _allowance_key(allowance: Allowance) -> str:
    return f"allowance-{hashlib.sha256(allowance.owner + allowance.spender).hexdigest()[:32]}"


def dump_pool(pool: "ShieldedPool") -> Dict[str, bytes]:
    """
    Encode every record of ``pool`` keyed by store key.

    All records come from one critical section: every registered vault's
    lock in owner order, then the pool lock. If a vault registered while
    the locks were being taken, they are released and taken again.
    """
    while True:
        with ExitStack() as stack:
            vaults = pool.vaults()
            for vault in vaults:
                stack.enter_context(vault.lock)
            stack.enter_context(pool.lock)
            if pool.vaults() != vaults:
                continue

            records = {
                "tree": encode_tree(pool.tree),
                "nullifiers": encode_nullifiers(pool.nullifiers),
                "notes": encode_notes(pool.notes),
                "ledger": encode_ledger(pool.ledger),
            }
            for allowance in pool.allowances.records():
                records[_allowance_key(allowance)] = encode_allowance(allowance)
            for record in pool.keys.records():
                records[f"key-{record.circuit_tag.hex()}-{record.version}"] = encode_key_record(record)
            for vault in vaults:
                records[_vault_key(vault.owner)] = encode_vault(vault.owner, vault.list())
            return records


def save_pool(store: RecordStore, pool: "ShieldedPool") -> None:
    for key, data in dump_pool(pool).items():
        store.save(key, data)
    logger.info("Pool persisted", directory=str(store.directory))


def load_pool(store: RecordStore, pool: "ShieldedPool") -> "ShieldedPool":
    """Install persisted records into a freshly constructed pool."""
    config = pool.config
    tree = decode_tree(store.load("tree"), pool.hash_pair, config.accumulator.recent_cache_size.get())
    nullifiers = decode_nullifiers(store.load("nullifiers"))
    notes = decode_notes(store.load("notes"))
    ledger = decode_ledger(store.load("ledger"), intervals_from_config(config.ledger))
    if len(notes) != tree.next_index:
        raise CorruptRecordError(f"NoteLedger: {len(notes)} notes for {tree.next_index} leaves")
    if compute_root(notes, tree.depth, pool.hash_pair) != tree.current_root:
        logger.critical("Note ledger does not rebuild the tree root", error_code=CorruptRecordError.error_code)
        raise CorruptRecordError("NoteLedger: notes do not rebuild the CommitmentTree root")
    if ledger.current_root != tree.current_root:
        raise CorruptRecordError("PoolLedger: current root disagrees with CommitmentTree")

    allowances = AllowanceRegistry(pool.authority)
    for key in store.keys():
        if key.startswith("allowance-"):
            try:
                allowances.add(decode_allowance(store.load(key)))
            except CorruptRecordError:
                raise
            except InvalidInputError as e:
                raise CorruptRecordError(f"Allowance: {e.message}") from e
        elif key.startswith("key-"):
            pool.keys.add(decode_key_record(store.load(key)))
    pool.restore_state(tree, nullifiers, ledger, notes, allowances)
    for key in store.keys():
        if key.startswith("vault-"):
            owner, operations = decode_vault(store.load(key))
            vault = pool.vault(owner)
            for op in operations:
                vault.restore(op)
            pool.register_vault(vault)
    logger.info("Pool restored", directory=str(store.directory), next_index=tree.next_index)
    return pool
