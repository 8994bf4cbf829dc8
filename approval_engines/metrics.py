"""
approval_engines.metrics -- Pure aggregations behind the audit reports.

Responsibility:
    Count audit entries by event type and actor, compute completion-time
    statistics, and find actors with repeated emergency bypasses inside a
    trailing window.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The audit ledger loads
    rows and hands DTOs in; ``now`` is always passed explicitly.
"""

from __future__ import annotations

import statistics
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from approval_kernel.domain.audit import (
    ApprovalVelocity,
    AuditEntry,
    AuditEventKind,
    AuditStats,
    SuspiciousActivity,
)

MULTIPLE_EMERGENCY_BYPASSES = "MULTIPLE_EMERGENCY_BYPASSES"


def summarize_entries(entries: Iterable[AuditEntry]) -> AuditStats:
    by_event: Counter[str] = Counter()
    by_actor: Counter[str] = Counter()
    total = 0
    for entry in entries:
        total += 1
        by_event[entry.event.value] += 1
        by_actor[entry.actor_id] += 1
    return AuditStats(
        total_events=total,
        by_event_type=dict(sorted(by_event.items())),
        by_actor=dict(sorted(by_actor.items())),
    )


def completion_velocity(
    durations: Sequence[tuple[datetime, datetime]],
) -> ApprovalVelocity:
    """Mean/median hours from creation to completion.

    ``durations`` holds ``(created_at, completed_at)`` pairs of finished
    workflows.  Zero workflows yields zeros.
    """
    hours = [
        (completed - created).total_seconds() / 3600
        for created, completed in durations
    ]
    if not hours:
        return ApprovalVelocity(
            average_completion_hours=0.0,
            median_completion_hours=0.0,
            total_workflows=0,
        )
    return ApprovalVelocity(
        average_completion_hours=round(statistics.mean(hours), 4),
        median_completion_hours=round(statistics.median(hours), 4),
        total_workflows=len(hours),
    )


def detect_bypass_bursts(
    entries: Iterable[AuditEntry],
    now: datetime,
    window_hours: int = 24,
) -> list[SuspiciousActivity]:
    """Actors with more than one EMERGENCY_BYPASS in the trailing window."""
    since = now - timedelta(hours=window_hours)
    per_actor: dict[str, list[datetime]] = {}
    for entry in entries:
        if entry.event != AuditEventKind.EMERGENCY_BYPASS:
            continue
        if not since <= entry.timestamp <= now:
            continue
        per_actor.setdefault(entry.actor_id, []).append(entry.timestamp)

    findings = []
    for actor_id in sorted(per_actor):
        stamps = sorted(per_actor[actor_id])
        if len(stamps) > 1:
            findings.append(
                SuspiciousActivity(
                    pattern=MULTIPLE_EMERGENCY_BYPASSES,
                    actor_id=actor_id,
                    count=len(stamps),
                    time_window=f"{window_hours}h",
                    first_seen=stamps[0],
                    last_seen=stamps[-1],
                )
            )
    return findings
