"""Pool ledger: root history, rate limits and counters.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, Optional

from shieldpool.config import LedgerConfig
from shieldpool.hardening import (
    CryptoUtils,
    RateLimitExceededError,
    RootMismatchError,
    checked_add_u64,
    require_bytes32,
)
from shieldpool.keys import KeyId, VerifyingKeyRecord
from shieldpool.observability import PoolLayer, get_logger
from shieldpool.operations import OperationKind

logger = get_logger("ledger", PoolLayer.LEDGER)

ROOT_HISTORY_SIZE = 16

DEFAULT_MIN_INTERVALS: Dict[OperationKind, float] = {
    OperationKind.SHIELD: 4.0,
    OperationKind.UNSHIELD: 4.0,
    OperationKind.TRANSFER: 2.0,
    OperationKind.TRANSFER_FROM: 2.0,
}


def intervals_from_config(config: LedgerConfig) -> Dict[OperationKind, float]:
    return {
        OperationKind.SHIELD: float(config.shield_min_interval_seconds.get()),
        OperationKind.UNSHIELD: float(config.unshield_min_interval_seconds.get()),
        OperationKind.TRANSFER: float(config.transfer_min_interval_seconds.get()),
        OperationKind.TRANSFER_FROM: float(config.transfer_min_interval_seconds.get()),
    }


class PoolLedger:
    """
    Aggregate pool state outside the tree and the nullifier set.

    ``recent_roots`` holds the last ``root_history_size`` roots produced by
    insertions, oldest first; anchors may name any of them or the current
    root.
    """

    def __init__(
        self,
        current_root: bytes,
        root_history_size: int = ROOT_HISTORY_SIZE,
        min_intervals: Optional[Dict[OperationKind, float]] = None,
    ):
        self.current_root = require_bytes32(current_root, "current_root")
        self.recent_roots: Deque[bytes] = deque(maxlen=root_history_size)
        self.min_intervals = dict(DEFAULT_MIN_INTERVALS)
        if min_intervals:
            self.min_intervals.update(min_intervals)
        self.last_operation_time: Optional[float] = None
        self.last_kind_time: Dict[OperationKind, float] = {}
        self.operation_count = 0
        self.active_key: Optional[KeyId] = None
        self.active_key_hash: Optional[bytes] = None

    @property
    def root_history_size(self) -> int:
        return self.recent_roots.maxlen or 0

    def is_known_root(self, root: bytes) -> bool:
        if CryptoUtils.secure_compare(root, self.current_root):
            return True
        return any(CryptoUtils.secure_compare(root, r) for r in self.recent_roots)

    def check_root(self, root: bytes) -> None:
        if not self.is_known_root(root):
            logger.info("Anchor root outside history window", root=root.hex())
            raise RootMismatchError(f"root {root.hex()[:16]} is not current or recent")

    def check_rate(self, kind: OperationKind, now: float) -> None:
        last = self.last_kind_time.get(kind)
        interval = self.min_intervals.get(kind, 0.0)
        if last is not None and now - last < interval:
            wait = interval - (now - last)
            logger.info("Rate limit hit", kind=kind.value, retry_after=round(wait, 3))
            raise RateLimitExceededError(f"{kind.value} rate limit: retry in {wait:.3f}s", retry_after=wait)

    def record_root(self, root: bytes) -> None:
        self.current_root = root
        self.recent_roots.append(root)

    def record_operation(self, kind: OperationKind, now: float, count: int = 1) -> None:
        self.operation_count = checked_add_u64(self.operation_count, count, "operation_count")
        self.last_operation_time = now
        self.last_kind_time[kind] = now

    def set_active_key(self, record: VerifyingKeyRecord) -> None:
        self.active_key = record.key_id
        self.active_key_hash = record.key_hash

    def clone(self) -> "PoolLedger":
        other = PoolLedger(self.current_root, self.root_history_size, self.min_intervals)
        other.recent_roots.extend(self.recent_roots)
        other.last_operation_time = self.last_operation_time
        other.last_kind_time = dict(self.last_kind_time)
        other.operation_count = self.operation_count
        other.active_key = self.active_key
        other.active_key_hash = self.active_key_hash
        return other

    def to_dict(self) -> Dict[str, object]:
        return {
            "current_root": self.current_root.hex(),
            "recent_roots": [r.hex() for r in self.recent_roots],
            "operation_count": self.operation_count,
            "last_operation_time": self.last_operation_time,
            "active_key": None if self.active_key is None else {
                "circuit_tag": self.active_key[0].hex(),
                "version": self.active_key[1],
                "key_hash": self.active_key_hash.hex() if self.active_key_hash else None,
            },
        }
