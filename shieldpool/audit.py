"""
Operation Audit Trail

Tamper-evident record of every operation state transition and every
rejection. Each event carries the digest of its predecessor, so editing
or dropping an entry breaks the chain.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from shieldpool.hardening import canonical_json


class AuditEventType(Enum):
    """Types of audit events."""
    # Lifecycle
    OPERATION_PREPARED = "operation_prepared"
    PAYLOAD_ATTACHED = "payload_attached"
    OPERATION_VERIFIED = "operation_verified"
    OPERATION_APPLIED = "operation_applied"
    OPERATION_COMPLETED = "operation_completed"
    OPERATION_FAILED = "operation_failed"
    OPERATION_PURGED = "operation_purged"

    # Rejections
    VERIFICATION_REJECTED = "verification_rejected"
    NULLIFIER_REUSE = "nullifier_reuse"
    APPLY_REJECTED = "apply_rejected"
    CUSTODY_REJECTED = "custody_rejected"

    # Key registry
    KEY_REGISTERED = "key_registered"
    KEY_REVOKED = "key_revoked"

    # Allowances
    ALLOWANCE_APPROVED = "allowance_approved"
    ALLOWANCE_REVOKED = "allowance_revoked"

    POOL_HALTED = "pool_halted"


@dataclass
class AuditEvent:
    """An audit log entry."""
    sequence: int
    event_type: AuditEventType
    timestamp: str
    owner: str
    operation_id: str
    outcome: str  # success, rejected, error
    details: Dict[str, Any] = field(default_factory=dict)

    # Tamper evidence
    previous_event_digest: Optional[str] = None
    event_digest: str = ""

    def __post_init__(self):
        if not self.event_digest:
            self.event_digest = self.compute_digest()

    def compute_digest(self) -> str:
        """Compute tamper-evident digest."""
        content = {
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "owner": self.owner,
            "operation_id": self.operation_id,
            "outcome": self.outcome,
            "details": self.details,
            "previous_event_digest": self.previous_event_digest,
        }
        return hashlib.sha256(canonical_json(content)).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "owner": self.owner,
            "operation_id": self.operation_id,
            "outcome": self.outcome,
            "details": self.details,
            "previous_event_digest": self.previous_event_digest,
            "event_digest": self.event_digest,
        }


class AuditTrail:
    """
    Hash-chained audit trail.

    Thread-safe; shared between the vaults of one pool.
    """

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def log(
        self,
        event_type: AuditEventType,
        owner: str = "",
        operation_id: str = "",
        outcome: str = "success",
        **details: Any,
    ) -> AuditEvent:
        """Append an event to the chain."""
        with self._lock:
            previous_digest = self._events[-1].event_digest if self._events else None
            event = AuditEvent(
                sequence=len(self._events),
                event_type=event_type,
                timestamp=datetime.now(timezone.utc).isoformat(),
                owner=owner,
                operation_id=operation_id,
                outcome=outcome,
                details={k: (v.hex() if isinstance(v, bytes) else v) for k, v in details.items()},
                previous_event_digest=previous_digest,
            )
            self._events.append(event)
            return event

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Verify the audit chain integrity.

        Returns (valid, first_invalid_index).
        """
        with self._lock:
            for i, event in enumerate(self._events):
                if event.compute_digest() != event.event_digest:
                    return (False, i)
                expected_prev = self._events[i - 1].event_digest if i > 0 else None
                if event.previous_event_digest != expected_prev:
                    return (False, i)
            return (True, None)

    def get_events(
        self,
        event_type: Optional[AuditEventType] = None,
        operation_id: Optional[str] = None,
        owner: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events."""
        with self._lock:
            events = list(self._events)

        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if operation_id:
            events = [e for e in events if e.operation_id == operation_id]
        if owner:
            events = [e for e in events if e.owner == owner]

        return events[-limit:]

    def export(self) -> List[Dict[str, Any]]:
        """Export all events as dicts."""
        with self._lock:
            return [e.to_dict() for e in self._events]
