"""Delegated spending allowances.

An owner approves a spender to move up to ``amount`` of the owner's
shielded value through ``transfer_from``. Every applied transfer_from
draws the allowance down by its amount; a new approval replaces whatever
remains.

The registry itself is not locked. The pool mutates it only under the
pool lock, and ``apply`` stages spends on a clone.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from shieldpool.hardening import (
    CryptoUtils,
    InsufficientAllowanceError,
    InvalidAmountError,
    InvalidInputError,
    UnauthorizedError,
    Validators,
    require_bytes32,
)
from shieldpool.observability import PoolLayer, get_logger

logger = get_logger("allowances", PoolLayer.LEDGER)

AllowanceKey = Tuple[bytes, bytes]


@dataclass
class Allowance:
    """Remaining amount ``spender`` may move on behalf of ``owner`` in ``pool``."""
    owner: bytes
    spender: bytes
    pool: bytes
    amount: int

    def __post_init__(self):
        self.owner = require_bytes32(self.owner, "owner")
        self.spender = require_bytes32(self.spender, "spender")
        self.pool = require_bytes32(self.pool, "pool")
        Validators.validate_amount(self.amount, min_value=0).raise_if_invalid(InvalidAmountError)

    @property
    def key(self) -> AllowanceKey:
        return (self.owner, self.spender)


class AllowanceRegistry:
    """Allowances of one pool keyed by (owner, spender)."""

    def __init__(self, pool: bytes, allowances: Optional[Iterable[Allowance]] = None):
        self.pool = require_bytes32(pool, "pool")
        self._allowances: Dict[AllowanceKey, Allowance] = {}
        for allowance in allowances or ():
            self.add(allowance)

    def __len__(self) -> int:
        return len(self._allowances)

    def get(self, owner: bytes, spender: bytes) -> int:
        allowance = self._allowances.get((owner, spender))
        return allowance.amount if allowance is not None else 0

    def records(self) -> List[Allowance]:
        return [self._allowances[key] for key in sorted(self._allowances)]

    def add(self, allowance: Allowance) -> None:
        """Insert a restored allowance."""
        if not CryptoUtils.secure_compare(allowance.pool, self.pool):
            raise InvalidInputError(f"allowance belongs to pool {allowance.pool.hex()[:16]}")
        if allowance.key in self._allowances:
            raise InvalidInputError(
                f"duplicate allowance {allowance.owner.hex()[:16]} -> {allowance.spender.hex()[:16]}"
            )
        self._allowances[allowance.key] = allowance

    def approve(self, owner: bytes, spender: bytes, amount: int, authority: bytes) -> Allowance:
        """Set the spender's allowance. Only the owner may approve."""
        owner = require_bytes32(owner, "owner")
        if not CryptoUtils.secure_compare(require_bytes32(authority, "authority"), owner):
            raise UnauthorizedError("only the owner may approve an allowance")
        Validators.validate_amount(amount).raise_if_invalid(InvalidAmountError)
        allowance = Allowance(owner, spender, self.pool, amount)
        self._allowances[allowance.key] = allowance
        logger.info("Allowance approved", owner=owner.hex(), spender=allowance.spender.hex(), amount=amount)
        return allowance

    def revoke(self, owner: bytes, spender: bytes, authority: bytes) -> int:
        """Drop the spender's allowance; returns the amount that remained."""
        owner = require_bytes32(owner, "owner")
        if not CryptoUtils.secure_compare(require_bytes32(authority, "authority"), owner):
            raise UnauthorizedError("only the owner may revoke an allowance")
        allowance = self._allowances.pop((owner, require_bytes32(spender, "spender")), None)
        return allowance.amount if allowance is not None else 0

    def spend(self, owner: bytes, spender: bytes, amount: int) -> int:
        """Draw ``amount`` down; returns what remains."""
        allowance = self._allowances.get((owner, spender))
        remaining = allowance.amount if allowance is not None else 0
        if amount > remaining:
            raise InsufficientAllowanceError(
                f"allowance {owner.hex()[:16]} -> {spender.hex()[:16]} is {remaining}, cannot spend {amount}",
                remaining=remaining,
            )
        if amount == remaining:
            del self._allowances[(owner, spender)]
        else:
            allowance.amount = remaining - amount
        return remaining - amount

    def clone(self) -> "AllowanceRegistry":
        return AllowanceRegistry(
            self.pool,
            (Allowance(a.owner, a.spender, a.pool, a.amount) for a in self._allowances.values()),
        )
