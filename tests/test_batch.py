"""
Atomic batch application tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import hashlib

import pytest


def _h(label) -> bytes:
    return hashlib.sha256(f"batch-test:{label}".encode("utf-8")).digest()


class TestBatchApply:
    """apply_batch commits all entries or none."""

    def test_three_shields_commit_together(self, pool, harness):
        from shieldpool.accumulator import compute_root
        from shieldpool.operations import OperationStatus

        vault = pool.vault("alice")
        ids = [harness.verified("alice", "shield", 10 + i, commitment=_h(i)) for i in range(3)]
        results = vault.apply_batch(ids)

        assert [r.leaf_index for r in results] == [0, 1, 2]
        assert [r.operation_id for r in results] == ids
        assert pool.current_root == compute_root([_h(0), _h(1), _h(2)], 8)
        assert results[-1].root == pool.current_root
        assert all(vault.get(i).status is OperationStatus.UPDATED for i in ids)
        assert pool.ledger.operation_count == 3

    def test_failure_rolls_back_every_entry(self, pool, harness):
        from shieldpool.hardening import NullifierAlreadyUsedError
        from shieldpool.operations import OperationStatus

        harness.shield("alice", 100, _h("funding"))
        root_before = pool.current_root
        count_before = pool.ledger.operation_count
        vault = pool.vault("alice")

        shield = harness.verified("alice", "shield", 5, commitment=_h("new"))
        spend_a = harness.verified("alice", "unshield", 5, nullifier=_h("n"), recipient=_h("a"), root=root_before)
        spend_b = harness.verified("alice", "unshield", 5, nullifier=_h("n"), recipient=_h("b"), root=root_before)

        with pytest.raises(NullifierAlreadyUsedError):
            vault.apply_batch([shield, spend_a, spend_b])

        assert pool.current_root == root_before
        assert pool.tree.next_index == 1
        assert not pool.is_spent(_h("n"))
        assert pool.ledger.operation_count == count_before
        for op_id in (shield, spend_a, spend_b):
            assert vault.get(op_id).status is OperationStatus.VERIFIED

    def test_bad_anchor_rolls_back_earlier_insert(self, pool, harness):
        from shieldpool.hardening import RootMismatchError

        vault = pool.vault("alice")
        shield = harness.verified("alice", "shield", 5, commitment=_h("new"))
        transfer = harness.verified("alice", "transfer", 5, nullifier=_h("n"), commitment=_h("out"),
                                    root=_h("unknown"))
        with pytest.raises(RootMismatchError):
            vault.apply_batch([shield, transfer])
        assert pool.tree.next_index == 0
        assert pool.notes == []

    def test_later_entry_may_anchor_on_earlier_root(self, pool, harness):
        from shieldpool.accumulator import compute_root

        vault = pool.vault("alice")
        shield = harness.verified("alice", "shield", 5, commitment=_h("in"))
        anchor = compute_root([_h("in")], 8)
        transfer = harness.verified("alice", "transfer", 5, nullifier=_h("n"), commitment=_h("out"), root=anchor)

        results = vault.apply_batch([shield, transfer])
        assert [r.leaf_index for r in results] == [0, 1]
        assert pool.is_spent(_h("n"))
        assert pool.check_consistency()

    def test_pending_entry_rejects_whole_batch(self, pool, harness):
        from shieldpool.hardening import InvalidOperationStatusError

        vault = pool.vault("alice")
        ready = harness.verified("alice", "shield", 5, commitment=_h("a"))
        pending = harness.submit("alice", "shield", 5, commitment=_h("b"))
        with pytest.raises(InvalidOperationStatusError):
            vault.apply_batch([ready, pending])
        assert pool.tree.next_index == 0


class TestBatchShape:
    """Size and identity checks before any staging."""

    def test_too_large(self, pool, harness):
        from shieldpool.hardening import BatchTooLargeError

        ids = [harness.verified("alice", "shield", 1, commitment=_h(i)) for i in range(4)]
        with pytest.raises(BatchTooLargeError):
            pool.vault("alice").apply_batch(ids)

    def test_configured_limit(self, make_pool, make_harness):
        from shieldpool.hardening import BatchTooLargeError

        pool = make_pool(settings={"vault.max_batch_size": 2})
        harness = make_harness(pool)
        ids = [harness.verified("alice", "shield", 1, commitment=_h(i)) for i in range(3)]
        with pytest.raises(BatchTooLargeError):
            pool.vault("alice").apply_batch(ids)
        pool.vault("alice").apply_batch(ids[:2])

    def test_empty_and_duplicate(self, pool, harness):
        from shieldpool.hardening import InvalidInputError

        vault = pool.vault("alice")
        op_id = harness.verified("alice", "shield", 1, commitment=_h(0))
        with pytest.raises(InvalidInputError):
            vault.apply_batch([])
        with pytest.raises(InvalidInputError):
            vault.apply_batch([op_id, op_id])
