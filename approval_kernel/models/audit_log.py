"""
Module: approval_kernel.models.audit_log
Responsibility: ORM persistence for the approval audit ledger.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Audit rows are append-only; no UPDATE or DELETE (ORM listener + DB
      trigger).
    - seq is unique and monotonic, allocated by SequenceService.
    - integrity_hash = sha256(canonical JSON of every other column,
      keys sorted).  prev_hash links each row to the row before it.
    - event is one of the AuditEventKind values (CHECK).

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityError on a duplicate seq (concurrent allocation bug).

Audit relevance:
    This table IS the audit trail.  Workflow creation, every approval
    action, delegation grants, escalations and emergency bypasses each
    produce one row.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.audit import AuditEntry, AuditEventKind

_EVENT_VALUES = ", ".join(f"'{e.value}'" for e in AuditEventKind)


class ApprovalAuditLogModel(Base):
    """
    One audit ledger entry.

    Contract:
        Rows are sacred: append-only, never updated or deleted.

    Guarantees:
        - prev_hash is None only for the first entry of the ledger.

    Non-goals:
        - This model does NOT verify the hash at INSERT time; that is the
          responsibility of AuditLedger.
    """

    __tablename__ = "approval_audit_log"

    __table_args__ = (
        CheckConstraint(f"event IN ({_EVENT_VALUES})", name="ck_approval_audit_event"),
        Index("ix_approval_audit_workflow", "workflow_id"),
        Index("ix_approval_audit_event", "event"),
        Index("ix_approval_audit_actor", "actor_id"),
        Index("ix_approval_audit_timestamp", "timestamp"),
        Index("ix_approval_audit_entity", "entity_type", "entity_id"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    workflow_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    event: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)

    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_role: Mapped[str | None] = mapped_column(String(100), nullable=True)

    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Request metadata
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    owner_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    integrity_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<ApprovalAuditLog #{self.seq} {self.event} on {self.entity_type}:{self.entity_id}>"

    def to_dto(self, integrity_valid: bool = True) -> AuditEntry:
        return AuditEntry(
            entry_id=self.id,
            seq=self.seq,
            event=AuditEventKind(self.event),
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            actor_id=self.actor_id,
            timestamp=self.timestamp,
            integrity_hash=self.integrity_hash,
            workflow_id=self.workflow_id,
            actor_role=self.actor_role,
            old_values=self.old_values,
            new_values=self.new_values,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            session_id=self.session_id,
            owner_id=self.owner_id,
            prev_hash=self.prev_hash,
            integrity_valid=integrity_valid,
        )
