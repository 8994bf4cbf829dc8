"""
Module: approval_kernel.models.rule
Responsibility: ORM persistence for approval rules.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - min_amount <= max_amount when both are present (CHECK).
    - required_approvals >= 1 and priority within 0..100 (CHECK).
    - approver_roles is an ordered JSON list of role names.

Failure modes:
    - IntegrityError when a CHECK constraint is violated; the rule admin
      service validates first, so this only fires on raw writes.

Audit relevance:
    Workflows snapshot rule content at creation.  Once a rule is
    referenced, the rule admin service refuses content edits.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.domain.rules import ApprovalRule, ApprovalRuleDraft


class ApprovalRuleModel(Base):
    """A persisted approval rule."""

    __tablename__ = "approval_rules"

    __table_args__ = (
        CheckConstraint(
            "max_amount IS NULL OR min_amount <= max_amount",
            name="ck_approval_rules_amount_range",
        ),
        CheckConstraint("required_approvals >= 1", name="ck_approval_rules_required"),
        CheckConstraint(
            "priority >= 0 AND priority <= 100", name="ck_approval_rules_priority",
        ),
        Index("ix_approval_rules_owner_active", "owner_id", "is_active"),
    )

    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    min_amount: Mapped[Decimal] = mapped_column(nullable=False)
    max_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    invoice_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_roles: Mapped[list] = mapped_column(JSON, nullable=False)
    parallel_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approval_timeout_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    escalate_to_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ApprovalRule {self.name} priority={self.priority} active={self.is_active}>"

    def to_dto(self) -> ApprovalRule:
        return ApprovalRule(
            rule_id=self.id,
            owner_id=self.owner_id,
            name=self.name,
            description=self.description,
            min_amount=self.min_amount,
            max_amount=self.max_amount,
            currency=self.currency,
            invoice_type=self.invoice_type,
            required_approvals=self.required_approvals,
            approver_roles=tuple(self.approver_roles),
            parallel_approval=self.parallel_approval,
            approval_timeout_hours=self.approval_timeout_hours,
            escalate_to_role=self.escalate_to_role,
            priority=self.priority,
            is_active=self.is_active,
            created_at=self.created_at,
        )

    def apply_draft(self, draft: ApprovalRuleDraft) -> None:
        """Copy editable content from ``draft`` onto this row."""
        self.name = draft.name
        self.description = draft.description
        self.min_amount = draft.min_amount
        self.max_amount = draft.max_amount
        self.currency = draft.currency
        self.invoice_type = draft.invoice_type
        self.required_approvals = draft.required_approvals
        self.approver_roles = list(draft.approver_roles)
        self.parallel_approval = draft.parallel_approval
        self.approval_timeout_hours = draft.approval_timeout_hours
        self.escalate_to_role = draft.escalate_to_role
        self.priority = draft.priority
        self.is_active = draft.is_active
