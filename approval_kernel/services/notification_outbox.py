"""
NotificationOutbox -- writes notification requests for external delivery.

Responsibility:
    Persists APPROVAL_REQUIRED / APPROVED / REJECTED / ESCALATED / REMINDER
    requests in the same transaction as the workflow change (or sweep)
    that caused them.
    Recipients are the members of the target role as reported by the
    RoleMembershipProvider; urgency follows the time left to the due date.

Architecture position:
    Kernel > Services.  Used by WorkflowService and EscalationService
    (escalations and reminders).
    Delivery (email, in-app, SMS) is owned by an external consumer that
    reads undispatched rows and calls ``mark_dispatched``.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.delegation import RoleMembershipProvider
from approval_kernel.domain.notification import (
    DEFAULT_CHANNELS,
    NotificationChannel,
    NotificationRequest,
    NotificationType,
    urgency_for_due_date,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.notification import ApprovalNotificationModel

logger = get_logger("services.notifications")


class NotificationOutbox:
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        membership: RoleMembershipProvider | None = None,
        channels: Sequence[NotificationChannel] = DEFAULT_CHANNELS,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._membership = membership
        self._channels = tuple(channels)

    def request(
        self,
        workflow_id: UUID,
        type: NotificationType,
        recipient_role: str | None = None,
        due_date: datetime | None = None,
        recipient_ids: Sequence[str] | None = None,
        message: str | None = None,
    ) -> NotificationRequest:
        """Queue one notification request.

        ``recipient_ids`` defaults to the members of ``recipient_role``.
        """
        if recipient_ids is None:
            recipient_ids = (
                self._membership.members_of(recipient_role)
                if self._membership is not None and recipient_role
                else ()
            )
        now = self._clock.now()
        row = ApprovalNotificationModel(
            workflow_id=workflow_id,
            type=type.value,
            recipient_role=recipient_role,
            recipient_ids=list(recipient_ids),
            channels=[c.value for c in self._channels],
            urgency=urgency_for_due_date(due_date, now).value,
            message=message,
            created_at=now,
        )
        self._session.add(row)
        self._session.flush()
        logger.info(
            "notification_requested",
            extra={
                "notification_type": type.value,
                "recipient_role": recipient_role,
                "recipient_count": len(row.recipient_ids),
                "urgency": row.urgency,
            },
        )
        return row.to_dto()

    def for_workflow(self, workflow_id: UUID) -> list[NotificationRequest]:
        rows = self._session.execute(
            select(ApprovalNotificationModel)
            .where(ApprovalNotificationModel.workflow_id == workflow_id)
            .order_by(ApprovalNotificationModel.created_at)
        ).scalars().all()
        return [r.to_dto() for r in rows]

    def last_requested_at(
        self,
        workflow_id: UUID,
        types: Sequence[NotificationType],
    ) -> datetime | None:
        """When ``workflow_id`` last had a request of one of ``types``."""
        return self._session.execute(
            select(func.max(ApprovalNotificationModel.created_at)).where(
                ApprovalNotificationModel.workflow_id == workflow_id,
                ApprovalNotificationModel.type.in_([t.value for t in types]),
            )
        ).scalar_one_or_none()

    def undispatched(self, limit: int = 100) -> list[NotificationRequest]:
        rows = self._session.execute(
            select(ApprovalNotificationModel)
            .where(ApprovalNotificationModel.dispatched_at.is_(None))
            .order_by(ApprovalNotificationModel.created_at)
            .limit(limit)
        ).scalars().all()
        return [r.to_dto() for r in rows]

    def mark_dispatched(self, notification_id: UUID) -> None:
        row = self._session.get(ApprovalNotificationModel, notification_id)
        if row is None:
            raise LookupError(f"Notification not found: {notification_id}")
        row.dispatched_at = self._clock.now()
        self._session.flush()
