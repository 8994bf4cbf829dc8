"""Notification request types produced for the external delivery subsystem."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID


class NotificationType(str, Enum):
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"
    REMINDER = "REMINDER"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    IN_APP = "IN_APP"
    SMS = "SMS"


class NotificationUrgency(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


DEFAULT_CHANNELS: tuple[NotificationChannel, ...] = (
    NotificationChannel.EMAIL,
    NotificationChannel.IN_APP,
)


def urgency_for_due_date(due_date: datetime | None, now: datetime) -> NotificationUrgency:
    """URGENT within 1 hour of the deadline, HIGH within 24 hours."""
    if due_date is None:
        return NotificationUrgency.NORMAL
    remaining = due_date - now
    if remaining <= timedelta(hours=1):
        return NotificationUrgency.URGENT
    if remaining <= timedelta(hours=24):
        return NotificationUrgency.HIGH
    return NotificationUrgency.NORMAL


@dataclass(frozen=True)
class NotificationRequest:
    """A request to notify principals about a workflow.  Delivery is external."""

    notification_id: UUID
    workflow_id: UUID
    type: NotificationType
    recipient_ids: tuple[str, ...]
    channels: tuple[NotificationChannel, ...]
    urgency: NotificationUrgency
    created_at: datetime
    recipient_role: str | None = None
    message: str | None = None
