"""
Delegated spending tests: allowances and transfer_from.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import hashlib

import pytest


OWNER = hashlib.sha256(b"allowance-test:owner").digest()
SPENDER = hashlib.sha256(b"allowance-test:spender").digest()
POOL = bytes(range(32))


def _h(label) -> bytes:
    return hashlib.sha256(f"allowance-test:{label}".encode("utf-8")).digest()


def _transfer_from(harness, amount, label, root, owner=OWNER, spender=SPENDER) -> bytes:
    return harness.verified("spender", "transfer_from", amount, nullifier=_h(f"n-{label}"),
                            commitment=_h(f"c-{label}"), root=root, owner=owner, spender=spender)


class TestAllowanceRegistry:
    """Owner-gated approvals and draw-down."""

    def test_approve_replaces_remaining(self):
        from shieldpool.allowances import AllowanceRegistry

        registry = AllowanceRegistry(POOL)
        assert registry.get(OWNER, SPENDER) == 0
        registry.approve(OWNER, SPENDER, 100, OWNER)
        registry.spend(OWNER, SPENDER, 30)
        assert registry.get(OWNER, SPENDER) == 70
        registry.approve(OWNER, SPENDER, 10, OWNER)
        assert registry.get(OWNER, SPENDER) == 10

    def test_only_owner_approves(self):
        from shieldpool.allowances import AllowanceRegistry
        from shieldpool.hardening import UnauthorizedError

        registry = AllowanceRegistry(POOL)
        with pytest.raises(UnauthorizedError):
            registry.approve(OWNER, SPENDER, 100, SPENDER)
        registry.approve(OWNER, SPENDER, 100, OWNER)
        with pytest.raises(UnauthorizedError):
            registry.revoke(OWNER, SPENDER, SPENDER)
        assert registry.get(OWNER, SPENDER) == 100

    @pytest.mark.parametrize("amount", [0, -1, 1 << 64, True])
    def test_approve_amount_bounds(self, amount):
        from shieldpool.allowances import AllowanceRegistry
        from shieldpool.hardening import InvalidAmountError

        with pytest.raises(InvalidAmountError):
            AllowanceRegistry(POOL).approve(OWNER, SPENDER, amount, OWNER)

    def test_spend_limits(self):
        from shieldpool.allowances import AllowanceRegistry
        from shieldpool.hardening import ErrorKind, InsufficientAllowanceError

        registry = AllowanceRegistry(POOL)
        with pytest.raises(InsufficientAllowanceError) as exc_info:
            registry.spend(OWNER, SPENDER, 1)
        assert exc_info.value.kind is ErrorKind.STATE_CONFLICT
        assert not exc_info.value.fatal

        registry.approve(OWNER, SPENDER, 50, OWNER)
        with pytest.raises(InsufficientAllowanceError):
            registry.spend(OWNER, SPENDER, 51)
        assert registry.spend(OWNER, SPENDER, 50) == 0
        assert registry.get(OWNER, SPENDER) == 0
        assert len(registry) == 0

    def test_revoke_and_clone(self):
        from shieldpool.allowances import AllowanceRegistry

        registry = AllowanceRegistry(POOL)
        registry.approve(OWNER, SPENDER, 50, OWNER)
        staged = registry.clone()
        staged.spend(OWNER, SPENDER, 20)
        assert registry.get(OWNER, SPENDER) == 50
        assert staged.get(OWNER, SPENDER) == 30

        assert registry.revoke(OWNER, SPENDER, OWNER) == 50
        assert registry.revoke(OWNER, SPENDER, OWNER) == 0
        assert registry.records() == []


class TestTransferFrom:
    """transfer_from spends a note and draws the allowance down atomically."""

    def test_fields_and_public_inputs(self, pool):
        from shieldpool.hardening import InvalidInputError
        from shieldpool.operations import OperationKind, expected_public_inputs

        vault = pool.vault("spender")
        with pytest.raises(InvalidInputError):
            vault.prepare("transfer_from", 5, nullifier=_h("n"), commitment=_h("c"), root=pool.current_root)

        op_id = vault.prepare("transfer_from", 5, nullifier=_h("n"), commitment=_h("c"),
                              root=pool.current_root, owner=OWNER, spender=SPENDER)
        op = vault.get(op_id)
        assert op.kind is OperationKind.TRANSFER_FROM
        assert expected_public_inputs(op.kind, op.fields) == _h("n") + _h("c") + (5).to_bytes(32, "big")

    def test_exact_spend_exhausts_allowance(self, pool, harness):
        from shieldpool.hardening import InsufficientAllowanceError

        harness.shield("owner", 100, _h("in"))
        root = pool.current_root
        pool.approve_allowance(OWNER, SPENDER, 60, OWNER)

        vault = pool.vault("spender")
        op_id = _transfer_from(harness, 60, "a", root)
        result = vault.apply(op_id)
        vault.finalize(op_id)

        assert result.leaf_index == 1
        assert pool.allowance(OWNER, SPENDER) == 0
        assert pool.is_spent(_h("n-a"))
        assert pool.notes == [_h("in"), _h("c-a")]
        assert pool.custody.balance == 100
        assert pool.check_consistency()

        again = _transfer_from(harness, 1, "b", root)
        with pytest.raises(InsufficientAllowanceError):
            vault.apply(again)

    def test_over_spend_leaves_state_untouched(self, pool, harness):
        from shieldpool.audit import AuditEventType
        from shieldpool.hardening import InsufficientAllowanceError
        from shieldpool.operations import OperationStatus

        harness.shield("owner", 100, _h("in"))
        root = pool.current_root
        pool.approve_allowance(OWNER, SPENDER, 10, OWNER)

        vault = pool.vault("spender")
        op_id = _transfer_from(harness, 11, "a", root)
        with pytest.raises(InsufficientAllowanceError):
            vault.apply(op_id)

        assert vault.get(op_id).status is OperationStatus.VERIFIED
        assert pool.allowance(OWNER, SPENDER) == 10
        assert not pool.is_spent(_h("n-a"))
        assert pool.tree.next_index == 1
        assert not pool.halted
        events = pool.audit.get_events(event_type=AuditEventType.APPLY_REJECTED)
        assert [e.details["error_code"] for e in events] == ["SP407"]

    def test_allowance_is_per_spender(self, pool, harness):
        from shieldpool.hardening import InsufficientAllowanceError

        pool.approve_allowance(OWNER, SPENDER, 100, OWNER)
        op_id = _transfer_from(harness, 5, "a", pool.current_root, spender=_h("someone-else"))
        with pytest.raises(InsufficientAllowanceError):
            pool.vault("spender").apply(op_id)
        assert pool.allowance(OWNER, SPENDER) == 100

    def test_batch_rolls_back_allowance(self, pool, harness):
        from shieldpool.hardening import InsufficientAllowanceError
        from shieldpool.operations import OperationStatus

        harness.shield("owner", 100, _h("in"))
        root = pool.current_root
        pool.approve_allowance(OWNER, SPENDER, 100, OWNER)

        vault = pool.vault("spender")
        ids = [_transfer_from(harness, 60, "a", root), _transfer_from(harness, 60, "b", root)]
        with pytest.raises(InsufficientAllowanceError):
            vault.apply_batch(ids)

        assert pool.allowance(OWNER, SPENDER) == 100
        assert not pool.is_spent(_h("n-a"))
        assert pool.tree.next_index == 1
        assert all(vault.get(op_id).status is OperationStatus.VERIFIED for op_id in ids)

    def test_batch_within_allowance(self, pool, harness):
        harness.shield("owner", 100, _h("in"))
        root = pool.current_root
        pool.approve_allowance(OWNER, SPENDER, 100, OWNER)

        vault = pool.vault("spender")
        ids = [_transfer_from(harness, 40, "a", root), _transfer_from(harness, 60, "b", root)]
        results = vault.apply_batch(ids)

        assert [r.leaf_index for r in results] == [1, 2]
        assert pool.allowance(OWNER, SPENDER) == 0
        assert pool.ledger.operation_count == 3

    def test_nullifier_reuse_keeps_allowance(self, pool, harness):
        from shieldpool.hardening import NullifierAlreadyUsedError

        harness.shield("owner", 100, _h("in"))
        root = pool.current_root
        harness.run("owner", "transfer", 100, nullifier=_h("n-a"), commitment=_h("other"), root=root)
        pool.approve_allowance(OWNER, SPENDER, 50, OWNER)

        op_id = _transfer_from(harness, 50, "a", root)
        with pytest.raises(NullifierAlreadyUsedError):
            pool.vault("spender").apply(op_id)
        assert pool.allowance(OWNER, SPENDER) == 50


class TestPoolAllowances:
    """Pool-level approval guards and audit."""

    def test_approval_audited(self, pool):
        from shieldpool.audit import AuditEventType

        pool.approve_allowance(OWNER, SPENDER, 25, OWNER)
        assert pool.revoke_allowance(OWNER, SPENDER, OWNER) == 25

        approved = pool.audit.get_events(event_type=AuditEventType.ALLOWANCE_APPROVED)
        revoked = pool.audit.get_events(event_type=AuditEventType.ALLOWANCE_REVOKED)
        assert approved[0].details == {"spender": SPENDER.hex(), "amount": 25}
        assert revoked[0].details == {"spender": SPENDER.hex(), "remaining": 25}
        assert pool.audit.verify_chain() == (True, None)

    def test_halted_pool_rejects_approval(self, pool):
        from shieldpool.hardening import PoolHaltedError, TreeFullError

        pool.halt(TreeFullError("tree full"))
        with pytest.raises(PoolHaltedError):
            pool.approve_allowance(OWNER, SPENDER, 25, OWNER)
        assert pool.allowance(OWNER, SPENDER) == 0
