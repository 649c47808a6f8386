"""Verifying-key records and the authority-gated key registry.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from typing import Dict, List, Tuple

from shieldpool.groth16 import key_layout_count
from shieldpool.hardening import (
    U32_MAX,
    CryptoUtils,
    InvalidInputError,
    KeyAlreadyExistsError,
    KeyAlreadyRevokedError,
    KeyNotFoundError,
    UnauthorizedError,
    require_bytes32,
)
from shieldpool.observability import PoolLayer, get_logger

logger = get_logger("keys", PoolLayer.VERIFIER)

KeyId = Tuple[bytes, int]


@dataclass
class VerifyingKeyRecord:
    """A circuit's verifying key at one version. Revocation is permanent."""
    circuit_tag: bytes
    version: int
    key_bytes: bytes
    authority: bytes
    revoked: bool = False

    def __post_init__(self):
        self.circuit_tag = require_bytes32(self.circuit_tag, "circuit_tag")
        self.authority = require_bytes32(self.authority, "authority")
        if isinstance(self.version, bool) or not isinstance(self.version, int) or not 0 <= self.version <= U32_MAX:
            raise InvalidInputError(f"key version must be a u32, got {self.version!r}")
        key_layout_count(self.key_bytes)

    @property
    def key_id(self) -> KeyId:
        return (self.circuit_tag, self.version)

    @property
    def key_hash(self) -> bytes:
        return hashlib.sha256(self.key_bytes).digest()

    def revoke(self) -> None:
        if self.revoked:
            raise KeyAlreadyRevokedError(f"key {self.circuit_tag.hex()}/v{self.version} already revoked")
        self.revoked = True


class KeyRegistry:
    """Registry of verifying keys keyed by (circuit_tag, version)."""

    def __init__(self, authority: bytes):
        self.authority = require_bytes32(authority, "authority")
        self._records: Dict[KeyId, VerifyingKeyRecord] = {}
        self._lock = threading.RLock()

    def _check_authority(self, authority: bytes) -> None:
        if not CryptoUtils.secure_compare(require_bytes32(authority, "authority"), self.authority):
            raise UnauthorizedError("caller is not the key registry authority")

    def register(self, circuit_tag: bytes, version: int, key_bytes: bytes, authority: bytes) -> VerifyingKeyRecord:
        self._check_authority(authority)
        record = VerifyingKeyRecord(circuit_tag, version, key_bytes, authority)
        with self._lock:
            if record.key_id in self._records:
                raise KeyAlreadyExistsError(f"key {circuit_tag.hex()}/v{version} already registered")
            self._records[record.key_id] = record
        logger.info("Verifying key registered", circuit_tag=circuit_tag.hex(), version=version,
                    key_hash=record.key_hash.hex())
        return record

    def add(self, record: VerifyingKeyRecord) -> None:
        """Insert a restored record."""
        with self._lock:
            if record.key_id in self._records:
                raise KeyAlreadyExistsError(f"key {record.circuit_tag.hex()}/v{record.version} already registered")
            self._records[record.key_id] = record

    def revoke(self, circuit_tag: bytes, version: int, authority: bytes) -> VerifyingKeyRecord:
        self._check_authority(authority)
        with self._lock:
            record = self.get(circuit_tag, version)
            record.revoke()
        logger.warning("Verifying key revoked", circuit_tag=circuit_tag.hex(), version=version)
        return record

    def get(self, circuit_tag: bytes, version: int) -> VerifyingKeyRecord:
        with self._lock:
            record = self._records.get((circuit_tag, version))
        if record is None:
            raise KeyNotFoundError(f"no key {circuit_tag.hex()}/v{version}")
        return record

    def records(self) -> List[VerifyingKeyRecord]:
        with self._lock:
            return list(self._records.values())
