"""
Integration Test: Shielded Pool End-to-End Flow

End-to-end workflows across vaults, verification strategies, the shared
pool state and custody, driven through the public API.
"""

import hashlib

import pytest

from shieldpool.accumulator import compute_root, empty_root, verify_path
from shieldpool.hardening import (
    NullifierAlreadyUsedError,
    PoolHaltedError,
    ProofVerificationFailedError,
    TreeFullError,
)
from shieldpool.operations import OperationStatus, expected_public_inputs
from shieldpool.pool import ShieldedPool
from shieldpool.verifier import Groth16PairingVerifier


AUTHORITY = bytes(range(32))
CIRCUIT_TAG = hashlib.sha256(b"shieldpool-integration-circuit").digest()


def field_element(n: int) -> bytes:
    return n.to_bytes(32, "big")


def note(label: str) -> bytes:
    return hashlib.sha256(f"integration:{label}".encode("utf-8")).digest()


def groth16_pool(setup, config, clock) -> ShieldedPool:
    pool = ShieldedPool(AUTHORITY, verifier=Groth16PairingVerifier(), config=config, clock=clock)
    pool.register_key(CIRCUIT_TAG, 1, setup.key_bytes, AUTHORITY)
    return pool


class TestGroth16Flow:
    """Operations verified by the BN254 pairing check."""

    def test_shield_end_to_end(self, groth16_shield_setup, pool_config, clock):
        """A shield with a valid proof lands in the tree and settles in custody."""
        pool = groth16_pool(groth16_shield_setup, pool_config, clock)
        vault = pool.vault("alice")
        commitment = field_element(1234)

        op_id = vault.prepare("shield", 75, commitment=commitment)
        vault.attach_payload(op_id, groth16_shield_setup.prove(commitment), commitment)
        vault.verify(op_id)
        result = vault.apply(op_id)
        vault.finalize(op_id)

        assert result.leaf_index == 0
        assert pool.current_root == compute_root([commitment], 8)
        assert pool.custody.balance == 75
        assert op_id not in vault
        path = pool.authentication_path(0)
        assert verify_path(commitment, 0, path, pool.current_root)

    @pytest.mark.slow
    def test_wrong_proof_then_correct_proof(self, groth16_shield_setup, pool_config, clock):
        """A rejected proof leaves the operation pending for another attempt."""
        pool = groth16_pool(groth16_shield_setup, pool_config, clock)
        vault = pool.vault("alice")
        commitment = field_element(42)

        op_id = vault.prepare("shield", 5, commitment=commitment)
        vault.attach_payload(op_id, groth16_shield_setup.prove(field_element(43)), commitment)
        with pytest.raises(ProofVerificationFailedError):
            vault.verify(op_id)
        assert vault.get(op_id).status is OperationStatus.PENDING

        vault.attach_payload(op_id, groth16_shield_setup.prove(commitment), commitment)
        vault.verify(op_id)
        assert vault.get(op_id).status is OperationStatus.VERIFIED

    @pytest.mark.slow
    def test_transfer_anchored_on_empty_root(self, groth16_transfer_setup, pool_config, clock):
        """A transfer may anchor on the empty tree and spends its nullifier."""
        pool = groth16_pool(groth16_transfer_setup, pool_config, clock)
        vault = pool.vault("bob")
        nullifier, commitment = field_element(5), field_element(6)

        op_id = vault.prepare("transfer", 10, nullifier=nullifier, commitment=commitment, root=empty_root(8))
        inputs = expected_public_inputs(vault.get(op_id).kind, vault.get(op_id).fields)
        vault.attach_payload(op_id, groth16_transfer_setup.prove(inputs), inputs)
        vault.verify(op_id)
        vault.apply(op_id)
        vault.finalize(op_id)

        assert pool.is_spent(nullifier)
        assert pool.notes == [commitment]
        assert pool.custody.balance == 0


class TestMultiKindFlow:
    """Shield, transfer and unshield against one pool."""

    def test_full_lifecycle(self, pool, harness):
        """Value enters, moves and leaves; every invariant holds afterwards."""
        harness.shield("alice", 100, note("a"))
        harness.shield("bob", 50, note("b"))
        anchor = pool.current_root

        harness.run("alice", "transfer", 100, nullifier=note("na"), commitment=note("c"), root=anchor)
        recipient = note("recipient")
        harness.run("bob", "unshield", 50, nullifier=note("nb"), recipient=recipient, root=anchor)

        assert pool.notes == [note("a"), note("b"), note("c")]
        assert pool.nullifiers.to_list() == [note("na"), note("nb")]
        assert pool.custody.balance == 100
        assert pool.custody.payouts == {recipient: 50}
        assert pool.ledger.operation_count == 4
        assert pool.check_consistency()
        for index, leaf in enumerate(pool.notes):
            assert verify_path(leaf, index, pool.authentication_path(index), pool.current_root)
        assert pool.audit.verify_chain() == (True, None)

    def test_double_spend_rejected_then_abandoned(self, pool, harness):
        """A second spend of the same nullifier never reaches the tree."""
        harness.shield("alice", 100, note("a"))
        anchor = pool.current_root
        harness.run("alice", "unshield", 40, nullifier=note("n"), recipient=note("r1"), root=anchor)

        vault = pool.vault("alice")
        op_id = harness.verified("alice", "unshield", 40, nullifier=note("n"), recipient=note("r2"), root=anchor)
        with pytest.raises(NullifierAlreadyUsedError):
            vault.apply(op_id)
        assert vault.get(op_id).status is OperationStatus.VERIFIED
        assert pool.custody.balance == 60

        vault.fail(op_id, "double spend")
        assert vault.purge_failed() == 1
        assert len(vault) == 0


class TestFatalHalt:
    """Fatal errors stop the pool."""

    def test_full_tree_halts_pool(self, make_pool, make_harness):
        """Exhausting the tree halts every later mutation."""
        pool = make_pool(depth=1)
        harness = make_harness(pool)
        harness.shield("alice", 1, note(0))
        harness.shield("alice", 1, note(1))
        root = pool.current_root

        op_id = harness.verified("alice", "shield", 1, commitment=note(2))
        with pytest.raises(TreeFullError):
            pool.vault("alice").apply(op_id)

        assert pool.halted
        assert "TreeFullError" in pool.halt_reason
        assert pool.current_root == root
        with pytest.raises(PoolHaltedError):
            pool.vault("bob").prepare("shield", 1, commitment=note(3))
        with pytest.raises(PoolHaltedError):
            pool.vault("alice").apply(op_id)
