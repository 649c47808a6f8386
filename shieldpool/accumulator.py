"""Incremental Merkle commitment accumulator.

Append-only tree of note commitments maintained with a Merkle frontier:
insertion touches one node per level and the tree keeps O(depth) state
regardless of how many leaves it holds.

Hashing:
- pluggable order-sensitive 2-to-1 compression (``HashPair``)
- default: node = SHA256(0x01 || left || right)
- empty leaf = 32 zero bytes; zeros[l+1] = node(zeros[l], zeros[l])

The root produced by ``CommitmentTree.insert`` always equals
``compute_root`` over the same leaves, i.e. the root of a full binary tree
of the configured depth padded with empty leaves.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Iterable, List, Optional, Sequence, Tuple

from shieldpool.hardening import (
    FIELD_BYTES,
    InvalidInputError,
    TreeFullError,
    require_bytes32,
)
from shieldpool.observability import PoolLayer, get_logger

logger = get_logger("tree", PoolLayer.ACCUMULATOR)

HashPair = Callable[[bytes, bytes], bytes]

DEFAULT_DEPTH = 32
RECENT_CACHE_SIZE = 128
EMPTY_LEAF = bytes(FIELD_BYTES)

_AMOUNT_COMMITMENT_TAG = b"shieldpool:amount-commitment:v1"


def sha256_pair(left: bytes, right: bytes) -> bytes:
    """Default node hash: SHA256(0x01 || left || right)."""
    return hashlib.sha256(b"\x01" + left + right).digest()


def zero_hashes(depth: int, hash_pair: HashPair = sha256_pair) -> List[bytes]:
    """Empty-subtree hash for each level below the root (``depth`` entries)."""
    zeros = [EMPTY_LEAF]
    for _ in range(depth - 1):
        zeros.append(hash_pair(zeros[-1], zeros[-1]))
    return zeros


def empty_root(depth: int, hash_pair: HashPair = sha256_pair) -> bytes:
    top = zero_hashes(depth, hash_pair)[-1]
    return hash_pair(top, top)


def derive_amount_commitment(commitment: bytes, amount: int) -> bytes:
    """Bind an amount to a commitment for the recent-leaf cache."""
    return hashlib.sha256(_AMOUNT_COMMITMENT_TAG + amount.to_bytes(8, "little") + commitment).digest()


def compute_root(leaves: Sequence[bytes], depth: int = DEFAULT_DEPTH, hash_pair: HashPair = sha256_pair) -> bytes:
    """Root of a full tree over ``leaves``, computed level by level."""
    if len(leaves) > (1 << depth):
        raise InvalidInputError(f"{len(leaves)} leaves exceed capacity of depth {depth}")
    zeros = zero_hashes(depth, hash_pair)
    nodes = list(leaves)
    if not nodes:
        return hash_pair(zeros[-1], zeros[-1])
    for level in range(depth):
        if len(nodes) % 2:
            nodes.append(zeros[level])
        nodes = [hash_pair(nodes[i], nodes[i + 1]) for i in range(0, len(nodes), 2)]
    return nodes[0]


def authentication_path(
    leaves: Sequence[bytes],
    index: int,
    depth: int = DEFAULT_DEPTH,
    hash_pair: HashPair = sha256_pair,
) -> List[bytes]:
    """Sibling hashes from leaf ``index`` up to (excluding) the root."""
    if index < 0 or index >= len(leaves):
        raise InvalidInputError(f"leaf index {index} out of range")
    zeros = zero_hashes(depth, hash_pair)
    nodes = list(leaves)
    path: List[bytes] = []
    pos = index
    for level in range(depth):
        if len(nodes) % 2:
            nodes.append(zeros[level])
        path.append(nodes[pos ^ 1])
        nodes = [hash_pair(nodes[i], nodes[i + 1]) for i in range(0, len(nodes), 2)]
        pos >>= 1
    return path


def verify_path(
    leaf: bytes,
    index: int,
    path: Sequence[bytes],
    root: bytes,
    hash_pair: HashPair = sha256_pair,
) -> bool:
    """Check that ``leaf`` sits at ``index`` under ``root``."""
    cur = leaf
    for level, sibling in enumerate(path):
        if (index >> level) & 1:
            cur = hash_pair(sibling, cur)
        else:
            cur = hash_pair(cur, sibling)
    return cur == root


@dataclass(frozen=True)
class RecentLeaf:
    commitment: bytes
    amount_commitment: bytes
    index: int


class CommitmentTree:
    """
    Fixed-depth append-only commitment tree.

    Holds only the frontier (the left nodes on the rightmost path), the
    precomputed empty-subtree hashes and a bounded cache of recent leaves.
    """

    def __init__(
        self,
        depth: int = DEFAULT_DEPTH,
        hash_pair: HashPair = sha256_pair,
        recent_cache_size: int = RECENT_CACHE_SIZE,
    ):
        if depth < 1:
            raise InvalidInputError(f"tree depth must be positive, got {depth}")
        if not 0 < recent_cache_size <= RECENT_CACHE_SIZE:
            raise InvalidInputError(f"recent cache size must be in 1..{RECENT_CACHE_SIZE}")
        self.depth = depth
        self.hash_pair = hash_pair
        self.zeros = zero_hashes(depth, hash_pair)
        self.frontier: List[bytes] = list(self.zeros)
        self.next_index = 0
        self.current_root = hash_pair(self.zeros[-1], self.zeros[-1])
        self.recent: Deque[RecentLeaf] = deque(maxlen=recent_cache_size)

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    @property
    def is_full(self) -> bool:
        return self.next_index >= self.capacity

    def insert(self, commitment: bytes, amount_commitment: Optional[bytes] = None) -> Tuple[int, bytes]:
        """Append a commitment; returns (leaf index, new root)."""
        commitment = require_bytes32(commitment, "commitment")
        if amount_commitment is not None:
            amount_commitment = require_bytes32(amount_commitment, "amount_commitment")
        if self.is_full:
            logger.critical("Commitment tree exhausted", error_code=TreeFullError.error_code,
                            depth=self.depth, next_index=self.next_index)
            raise TreeFullError(f"tree of depth {self.depth} holds {self.capacity} leaves")

        index = self.next_index
        cur = commitment
        for level in range(self.depth):
            if (index >> level) & 1:
                cur = self.hash_pair(self.frontier[level], cur)
            else:
                self.frontier[level] = cur
                cur = self.hash_pair(cur, self.zeros[level])

        self.current_root = cur
        self.next_index = index + 1
        self.recent.append(RecentLeaf(commitment, amount_commitment or EMPTY_LEAF, index))
        logger.debug("Commitment inserted", index=index, root=cur.hex())
        return index, cur

    def extend(self, commitments: Iterable[bytes]) -> bytes:
        for c in commitments:
            self.insert(c)
        return self.current_root

    def find_recent(self, commitment: bytes) -> Optional[RecentLeaf]:
        """Look up a commitment among the cached recent leaves."""
        for leaf in reversed(self.recent):
            if leaf.commitment == commitment:
                return leaf
        return None

    def clone(self) -> "CommitmentTree":
        """Independent copy used to stage mutations."""
        other = CommitmentTree.__new__(CommitmentTree)
        other.depth = self.depth
        other.hash_pair = self.hash_pair
        other.zeros = self.zeros
        other.frontier = list(self.frontier)
        other.next_index = self.next_index
        other.current_root = self.current_root
        other.recent = deque(self.recent, maxlen=self.recent.maxlen)
        return other

    @classmethod
    def restore(
        cls,
        depth: int,
        next_index: int,
        frontier: Sequence[bytes],
        current_root: bytes,
        recent: Sequence[RecentLeaf] = (),
        hash_pair: HashPair = sha256_pair,
        recent_cache_size: int = RECENT_CACHE_SIZE,
    ) -> "CommitmentTree":
        """Rebuild a tree from persisted state."""
        tree = cls(depth=depth, hash_pair=hash_pair, recent_cache_size=recent_cache_size)
        if len(frontier) != depth:
            raise InvalidInputError(f"frontier has {len(frontier)} levels, expected {depth}")
        if not 0 <= next_index <= tree.capacity:
            raise InvalidInputError(f"next_index {next_index} out of range")
        tree.frontier = [require_bytes32(f, "frontier") for f in frontier]
        tree.next_index = next_index
        tree.current_root = require_bytes32(current_root, "current_root")
        tree.recent.extend(recent)
        return tree

    def __repr__(self) -> str:
        return f"CommitmentTree(depth={self.depth}, next_index={self.next_index}, root={self.current_root.hex()[:16]}...)"
