"""
Module: approval_kernel.models.role
Responsibility: ORM persistence for the approval role directory.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Role names are unique per owner (UNIQUE(owner_id, name)).
    - level is 1..10 and max_approval_amount is non-negative (CHECK).
    - can_modify implies can_approve (CHECK).

Failure modes:
    - IntegrityError on duplicate role name for the same owner.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.domain.rules import RoleDefinition


class ApprovalRoleModel(Base):
    """One role of the approval role directory."""

    __tablename__ = "approval_roles"

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_approval_roles_owner_name"),
        CheckConstraint("level >= 1 AND level <= 10", name="ck_approval_roles_level"),
        CheckConstraint(
            "max_approval_amount IS NULL OR max_approval_amount >= 0",
            name="ck_approval_roles_max_amount",
        ),
        CheckConstraint(
            "NOT can_modify OR can_approve",
            name="ck_approval_roles_modify_requires_approve",
        ),
    )

    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    max_approval_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    can_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_reject: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_delegate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_modify: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ApprovalRole {self.name} level={self.level} owner={self.owner_id}>"

    def to_dto(self) -> RoleDefinition:
        return RoleDefinition(
            role_id=self.id,
            name=self.name,
            level=self.level,
            owner_id=self.owner_id,
            max_approval_amount=self.max_approval_amount,
            currency=self.currency,
            can_approve=self.can_approve,
            can_reject=self.can_reject,
            can_delegate=self.can_delegate,
            can_modify=self.can_modify,
            is_active=self.is_active,
        )
