"""Nullifier registry.

Append-only set of spent-note tags. Insertion order is kept in a list
for persistence; membership goes through a hash set.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Iterable, Iterator, List, Set

from shieldpool.hardening import NullifierAlreadyUsedError, require_bytes32
from shieldpool.observability import PoolLayer, get_logger

logger = get_logger("registry", PoolLayer.NULLIFIER)


class NullifierSet:
    """Append-only nullifier registry."""

    def __init__(self, nullifiers: Iterable[bytes] = ()):
        self._ordered: List[bytes] = []
        self._members: Set[bytes] = set()
        for n in nullifiers:
            self.insert(n)

    def __len__(self) -> int:
        return len(self._ordered)

    def __iter__(self) -> Iterator[bytes]:
        return iter(list(self._ordered))

    def __contains__(self, nullifier: object) -> bool:
        return nullifier in self._members

    def contains(self, nullifier: bytes) -> bool:
        return require_bytes32(nullifier, "nullifier") in self._members

    def insert(self, nullifier: bytes) -> None:
        """Register a nullifier; reuse raises NullifierAlreadyUsedError."""
        nullifier = require_bytes32(nullifier, "nullifier")
        if nullifier in self._members:
            logger.warning("Nullifier reuse rejected", nullifier=nullifier.hex())
            raise NullifierAlreadyUsedError(f"nullifier {nullifier.hex()} already used")
        self._members.add(nullifier)
        self._ordered.append(nullifier)

    def insert_many(self, nullifiers: Iterable[bytes]) -> None:
        """Register several nullifiers, all or none."""
        batch = [require_bytes32(n, "nullifier") for n in nullifiers]
        seen: Set[bytes] = set()
        for n in batch:
            if n in self._members or n in seen:
                logger.warning("Nullifier reuse rejected", nullifier=n.hex())
                raise NullifierAlreadyUsedError(f"nullifier {n.hex()} already used")
            seen.add(n)
        for n in batch:
            self._members.add(n)
            self._ordered.append(n)

    def to_list(self) -> List[bytes]:
        return list(self._ordered)

    def clone(self) -> "NullifierSet":
        other = NullifierSet()
        other._ordered = list(self._ordered)
        other._members = set(self._members)
        return other
