"""
Module: approval_kernel.models.notification
Responsibility: Outbox of notification requests for the external delivery
    subsystem.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Rows are written in the same transaction as the workflow change that caused
them.  Delivery (and ``dispatched_at``) belongs to the external consumer.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.notification import (
    NotificationChannel,
    NotificationRequest,
    NotificationType,
    NotificationUrgency,
)


class ApprovalNotificationModel(Base):
    """One notification request (outbox row)."""

    __tablename__ = "approval_notifications"

    __table_args__ = (
        Index("ix_approval_notifications_workflow", "workflow_id"),
        Index("ix_approval_notifications_pending", "dispatched_at"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_workflows.id"), nullable=False,
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    recipient_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    recipient_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    channels: Mapped[list] = mapped_column(JSON, nullable=False)
    urgency: Mapped[str] = mapped_column(String(10), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ApprovalNotification {self.type} wf={self.workflow_id} urgency={self.urgency}>"

    def to_dto(self) -> NotificationRequest:
        return NotificationRequest(
            notification_id=self.id,
            workflow_id=self.workflow_id,
            type=NotificationType(self.type),
            recipient_ids=tuple(self.recipient_ids),
            channels=tuple(NotificationChannel(c) for c in self.channels),
            urgency=NotificationUrgency(self.urgency),
            created_at=self.created_at,
            recipient_role=self.recipient_role,
            message=self.message,
        )
