"""Custodial value movement.

The engine moves value only after an operation's shielded state change
has committed. Real deployments plug in a token custodian; the in-memory
custodian here is the reference implementation used by tests and tools.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from typing import Dict, Protocol

from shieldpool.hardening import (
    CryptoUtils,
    InsufficientBalanceError,
    UnauthorizedError,
    Validators,
    InvalidAmountError,
    checked_add_u64,
    checked_sub_u64,
    require_bytes32,
)
from shieldpool.observability import PoolLayer, get_logger

logger = get_logger("custody", PoolLayer.CUSTODY)


class Custodian(Protocol):
    """Protocol for the custodial vault collaborator."""

    def deposit(self, amount: int, authority: bytes) -> None:
        """Take ``amount`` into pool custody."""
        ...

    def withdraw(self, amount: int, recipient: bytes, authority: bytes) -> None:
        """Pay ``amount`` out of pool custody to ``recipient``."""
        ...


class InMemoryCustody:
    """Balance-tracking custodian keyed by the pool authority."""

    def __init__(self, authority: bytes, balance: int = 0):
        self.authority = require_bytes32(authority, "authority")
        self.balance = balance
        self.total_deposited = 0
        self.total_withdrawn = 0
        self.payouts: Dict[bytes, int] = {}
        self._lock = threading.Lock()

    def _check(self, amount: int, authority: bytes) -> None:
        if not CryptoUtils.secure_compare(require_bytes32(authority, "authority"), self.authority):
            logger.warning("Custody call with wrong authority")
            raise UnauthorizedError("authority does not control this custody account")
        Validators.validate_amount(amount).raise_if_invalid(InvalidAmountError)

    def deposit(self, amount: int, authority: bytes) -> None:
        self._check(amount, authority)
        with self._lock:
            balance = checked_add_u64(self.balance, amount, "custody balance")
            total = checked_add_u64(self.total_deposited, amount, "total deposited")
            self.balance, self.total_deposited = balance, total
        logger.info("Deposit settled", amount=amount, balance=balance)

    def withdraw(self, amount: int, recipient: bytes, authority: bytes) -> None:
        self._check(amount, authority)
        recipient = require_bytes32(recipient, "recipient")
        with self._lock:
            if amount > self.balance:
                raise InsufficientBalanceError(f"custody holds {self.balance}, cannot pay {amount}")
            balance = checked_sub_u64(self.balance, amount, "custody balance")
            total = checked_add_u64(self.total_withdrawn, amount, "total withdrawn")
            paid = checked_add_u64(self.payouts.get(recipient, 0), amount, "recipient payout")
            self.balance, self.total_withdrawn = balance, total
            self.payouts[recipient] = paid
        logger.info("Withdrawal settled", amount=amount, recipient=recipient.hex(), balance=balance)
