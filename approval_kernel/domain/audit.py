"""
Audit ledger domain types (``approval_kernel.domain.audit``).

Responsibility
--------------
The closed set of audit event kinds, the input record for new entries,
the entry snapshot returned by reads (with its integrity verdict), and
the report/query result shapes produced by the audit ledger.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``AuditEventKind`` is closed: ``AuditEntryData`` coerces strings through
  the enum, so an unknown kind never reaches persistence.
* ``AuditEntry.integrity_valid`` is the read-side verdict.  Tampering is
  reported as data, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class AuditEventKind(str, Enum):
    """Every workflow-affecting event the ledger records."""

    WORKFLOW_CREATED = "WORKFLOW_CREATED"
    ACTION_TAKEN = "ACTION_TAKEN"
    DELEGATION_CREATED = "DELEGATION_CREATED"
    ESCALATED = "ESCALATED"
    EMERGENCY_BYPASS = "EMERGENCY_BYPASS"


@dataclass(frozen=True)
class AuditEntryData:
    """Input for ``AuditLedger.create_audit_entry``.

    ``timestamp`` is normally left to the ledger's clock; the failsafe
    drain passes the original occurrence time.
    """

    event: AuditEventKind | str
    entity_type: str
    entity_id: str
    actor_id: str | None
    workflow_id: UUID | None = None
    actor_role: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    owner_id: str | None = None
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        event = self.event.value if isinstance(self.event, AuditEventKind) else self.event
        return {
            "event": event,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "workflow_id": str(self.workflow_id) if self.workflow_id else None,
            "actor_role": self.actor_role,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "session_id": self.session_id,
            "owner_id": self.owner_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEntryData:
        workflow_id = data.get("workflow_id")
        timestamp = data.get("timestamp")
        return cls(
            event=data["event"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            actor_id=data.get("actor_id"),
            workflow_id=UUID(workflow_id) if workflow_id else None,
            actor_role=data.get("actor_role"),
            old_values=data.get("old_values"),
            new_values=data.get("new_values"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            session_id=data.get("session_id"),
            owner_id=data.get("owner_id"),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
        )


@dataclass(frozen=True)
class AuditEntry:
    """A persisted audit entry plus its integrity verdict."""

    entry_id: UUID
    seq: int
    event: AuditEventKind
    entity_type: str
    entity_id: str
    actor_id: str
    timestamp: datetime
    integrity_hash: str
    workflow_id: UUID | None = None
    actor_role: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    owner_id: str | None = None
    prev_hash: str | None = None
    integrity_valid: bool = True

    def hashable_fields(self) -> dict[str, Any]:
        """All fields covered by ``integrity_hash``."""
        return {
            "id": str(self.entry_id),
            "seq": self.seq,
            "workflow_id": str(self.workflow_id) if self.workflow_id else None,
            "event": self.event.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "session_id": self.session_id,
            "owner_id": self.owner_id,
            "timestamp": self.timestamp,
            "prev_hash": self.prev_hash,
        }

    def to_export_dict(self) -> dict[str, Any]:
        data = self.hashable_fields()
        data["integrity_hash"] = self.integrity_hash
        data["integrity_valid"] = self.integrity_valid
        return data


@dataclass(frozen=True)
class AuditStats:
    total_events: int
    by_event_type: dict[str, int]
    by_actor: dict[str, int]


@dataclass(frozen=True)
class ComplianceReport:
    period_start: datetime
    period_end: datetime
    total_events: int
    emergency_bypass_count: int
    by_event_type: dict[str, int]
    by_actor: dict[str, int]
    tampered_entry_ids: tuple[UUID, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SuspiciousActivity:
    pattern: str
    actor_id: str
    count: int
    time_window: str
    first_seen: datetime | None = None
    last_seen: datetime | None = None


@dataclass(frozen=True)
class ApprovalVelocity:
    """Completion time statistics in hours."""

    average_completion_hours: float
    median_completion_hours: float
    total_workflows: int


@dataclass(frozen=True)
class AuditChainReport:
    """Result of walking the whole ledger in seq order."""

    is_valid: bool
    entries_checked: int
    tampered_entry_ids: tuple[UUID, ...] = field(default_factory=tuple)
    broken_links: tuple[UUID, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AuditPage:
    total_count: int
    page_size: int
    offset: int
    entries: tuple[AuditEntry, ...]

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total_count


@dataclass(frozen=True)
class AuditExportBundle:
    """Checksummed export for external compliance tooling."""

    format: str
    entries: tuple[dict[str, Any], ...]
    exported_at: datetime
    integrity_checksum: str
    period_start: datetime
    period_end: datetime
    content: str | None = None


@dataclass(frozen=True)
class FailsafeReceipt:
    """Returned instead of an entry when the ledger queued a critical write."""

    failsafe_mode: bool
    queued: bool
    data: AuditEntryData
    queue_position: int | None = None
