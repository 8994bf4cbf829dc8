"""
approval_engines.reminders -- When a pending approver gets nudged again.

The reminder interval tightens as the due date approaches: every 24 hours
while more than a day remains, every 12 hours inside the last day, every
2 hours inside the last 4 hours and after the deadline has passed.
Workflows without a due date are never reminded.
"""

from __future__ import annotations

from datetime import datetime, timedelta

DAILY = timedelta(hours=24)
TWICE_DAILY = timedelta(hours=12)
CLOSE_TO_DEADLINE = timedelta(hours=2)


def reminder_interval(due_date: datetime, now: datetime) -> timedelta:
    remaining = due_date - now
    if remaining <= timedelta(hours=4):
        return CLOSE_TO_DEADLINE
    if remaining <= timedelta(hours=24):
        return TWICE_DAILY
    return DAILY


def reminder_is_due(
    due_date: datetime | None,
    last_notified_at: datetime,
    now: datetime,
) -> bool:
    """True when at least one interval has passed since the last notification."""
    if due_date is None:
        return False
    return now - last_notified_at >= reminder_interval(due_date, now)
