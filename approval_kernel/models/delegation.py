"""
Module: approval_kernel.models.delegation
Responsibility: ORM persistence for approval delegations.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - start_date < end_date (CHECK).
    - max_amount, when present, is non-negative (CHECK).

Delegations are not append-only: usage_count/last_used_at are bumped when
a delegation authorises an action, and housekeeping deactivates expired rows.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.domain.delegation import ApprovalDelegation, DelegationType


class ApprovalDelegationModel(Base):
    """A time-bounded grant of one role's authority to a principal."""

    __tablename__ = "approval_delegations"

    __table_args__ = (
        CheckConstraint("start_date < end_date", name="ck_approval_delegations_window"),
        CheckConstraint(
            "max_amount IS NULL OR max_amount >= 0",
            name="ck_approval_delegations_max_amount",
        ),
        Index("ix_approval_delegations_lookup", "to_user_id", "from_role", "is_active"),
    )

    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    from_role: Mapped[str] = mapped_column(String(100), nullable=False)
    delegated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    to_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[datetime] = mapped_column(nullable=False)
    end_date: Mapped[datetime] = mapped_column(nullable=False)
    delegation_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DelegationType.TEMPORARY.value,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    max_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApprovalDelegation {self.from_role} -> {self.to_user_id} "
            f"[{self.start_date:%Y-%m-%d}..{self.end_date:%Y-%m-%d}]>"
        )

    def to_dto(self) -> ApprovalDelegation:
        return ApprovalDelegation(
            delegation_id=self.id,
            owner_id=self.owner_id,
            from_role=self.from_role,
            delegated_by=self.delegated_by,
            to_user_id=self.to_user_id,
            start_date=self.start_date,
            end_date=self.end_date,
            delegation_type=DelegationType(self.delegation_type),
            reason=self.reason,
            max_amount=self.max_amount,
            currency=self.currency,
            is_active=self.is_active,
            usage_count=self.usage_count,
            last_used_at=self.last_used_at,
            created_at=self.created_at,
        )
