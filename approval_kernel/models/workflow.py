"""
Module: approval_kernel.models.workflow
Responsibility: ORM persistence for approval workflows and the actions
    recorded against them.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - One workflow per invoice (UNIQUE(invoice_id)).
    - 1 <= current_level <= required_level (CHECK).
    - status is one of the WorkflowStatus values (CHECK).
    - Optimistic concurrency: ``version`` is SQLAlchemy's version_id_col, so
      an UPDATE against a row another transaction already advanced matches
      zero rows and raises StaleDataError.
    - One action per (workflow, level, role) (UNIQUE); this is what stops a
      parallel role from being counted twice.
    - Actions are append-only (ORM listeners + DB triggers).

Failure modes:
    - IntegrityError on a duplicate invoice_id or duplicate action key.
    - StaleDataError when the workflow row was modified concurrently.
    - ImmutabilityViolationError on UPDATE/DELETE of an action.

Audit relevance:
    The workflow row carries a snapshot of the rule that seeded it
    (approver_roles, parallel flag, escalation role, required level), so
    later rule edits never change what a running workflow requires.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.workflow import (
    ApprovalActionRecord,
    ApprovalActionType,
    ApprovalWorkflow,
    FinalDecision,
    WorkflowStatus,
)

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in WorkflowStatus)


class ApprovalWorkflowModel(Base):
    """
    Approval workflow for one invoice.

    Contract:
        Mutated only by WorkflowService (actions, bypass) and the
        escalation service.  Never deleted.

    Guarantees:
        - completed_at is set iff status is terminal (enforced by the
          service; checked by validate_workflow_integrity).
        - version increases on every UPDATE; every action touches
          updated_at so even a non-completing parallel approval bumps it.
    """

    __tablename__ = "approval_workflows"

    __table_args__ = (
        UniqueConstraint("invoice_id", name="uq_approval_workflows_invoice"),
        CheckConstraint(
            "current_level >= 1 AND current_level <= required_level",
            name="ck_approval_workflows_level",
        ),
        CheckConstraint(
            f"status IN ({_STATUS_VALUES})", name="ck_approval_workflows_status",
        ),
        Index("ix_approval_workflows_status_due", "status", "due_date"),
        Index("ix_approval_workflows_owner", "owner_id"),
        Index("ix_approval_workflows_rule", "rule_id"),
    )

    invoice_id: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_rules.id"), nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WorkflowStatus.PENDING.value,
    )
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    required_level: Mapped[int] = mapped_column(Integer, nullable=False)

    # Rule snapshot
    approver_roles: Mapped[list] = mapped_column(JSON, nullable=False)
    parallel_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalate_to_role: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Invoice snapshot (base-currency amount used for authority checks)
    invoice_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(nullable=True)

    escalated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    escalated_to: Mapped[str | None] = mapped_column(String(100), nullable=True)

    final_decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    final_decision_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    bypass_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    bypassed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bypassed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<ApprovalWorkflow invoice={self.invoice_id} status={self.status} "
            f"level={self.current_level}/{self.required_level}>"
        )

    def to_dto(self) -> ApprovalWorkflow:
        return ApprovalWorkflow(
            workflow_id=self.id,
            invoice_id=self.invoice_id,
            owner_id=self.owner_id,
            rule_id=self.rule_id,
            status=WorkflowStatus(self.status),
            current_level=self.current_level,
            required_level=self.required_level,
            approver_roles=tuple(self.approver_roles),
            parallel_approval=self.parallel_approval,
            invoice_amount=self.invoice_amount,
            currency=self.currency,
            initiated_by=self.initiated_by,
            created_at=self.created_at,
            due_date=self.due_date,
            escalate_to_role=self.escalate_to_role,
            escalated_at=self.escalated_at,
            escalated_to=self.escalated_to,
            final_decision=(
                FinalDecision(self.final_decision) if self.final_decision else None
            ),
            final_decision_by=self.final_decision_by,
            completed_at=self.completed_at,
            bypass_reason=self.bypass_reason,
            bypassed_by=self.bypassed_by,
            bypassed_at=self.bypassed_at,
            version=self.version,
        )


class ApprovalActionModel(Base):
    """
    One approve/reject decision.  Append-only.

    ``delegation_id`` is set when the decider acted through a delegation
    rather than direct role membership.
    """

    __tablename__ = "approval_actions"

    __table_args__ = (
        UniqueConstraint(
            "workflow_id", "level", "role", name="uq_approval_actions_level_role",
        ),
        CheckConstraint("action IN ('APPROVE', 'REJECT')", name="ck_approval_actions_action"),
        Index("ix_approval_actions_workflow", "workflow_id"),
        Index("ix_approval_actions_decided_by", "decided_by"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_workflows.id"), nullable=False,
    )
    action: Mapped[str] = mapped_column(String(10), nullable=False)
    decided_by: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime] = mapped_column(nullable=False)
    delegation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("approval_delegations.id"), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ApprovalAction {self.action} by {self.decided_by} as {self.role} L{self.level}>"

    def to_dto(self) -> ApprovalActionRecord:
        return ApprovalActionRecord(
            action_id=self.id,
            workflow_id=self.workflow_id,
            action=ApprovalActionType(self.action),
            decided_by=self.decided_by,
            role=self.role,
            level=self.level,
            decided_at=self.decided_at,
            comments=self.comments,
            delegation_id=self.delegation_id,
        )
