"""
Workflow domain types (``approval_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the invoice approval state machine: statuses and
their allowed transitions, approval actions, the workflow snapshot handed
back to callers, and the status-change event published when a workflow
completes.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* ``WORKFLOW_TRANSITIONS`` defines the only valid status transitions.
  Only PENDING has outgoing edges; every other status is terminal.
* ``current_level`` starts at 1 and never exceeds ``required_level``.
* ``completed_at`` is set iff the status is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class WorkflowStatus(str, Enum):
    """Approval workflow lifecycle states."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"


WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset({
        WorkflowStatus.APPROVED,
        WorkflowStatus.REJECTED,
        WorkflowStatus.ESCALATED,
    }),
    WorkflowStatus.APPROVED: frozenset(),
    WorkflowStatus.REJECTED: frozenset(),
    WorkflowStatus.ESCALATED: frozenset(),
}

TERMINAL_WORKFLOW_STATUSES: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.APPROVED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.ESCALATED,
})


def is_valid_transition(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    """True when ``current -> target`` is an edge of the lifecycle."""
    return target in WORKFLOW_TRANSITIONS.get(current, frozenset())


class ApprovalActionType(str, Enum):
    """Decisions an approver can submit."""

    APPROVE = "APPROVE"
    REJECT = "REJECT"


class FinalDecision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class ApprovalWorkflow:
    """Snapshot of one invoice's approval workflow.

    The rule that seeded the workflow is captured at creation
    (``approver_roles``, ``parallel_approval``, ``escalate_to_role``,
    ``required_level``) so later rule edits never change a running workflow.
    """

    workflow_id: UUID
    invoice_id: str
    owner_id: str
    rule_id: UUID
    status: WorkflowStatus
    current_level: int
    required_level: int
    approver_roles: tuple[str, ...]
    parallel_approval: bool
    invoice_amount: Decimal
    currency: str
    initiated_by: str
    created_at: datetime
    due_date: datetime | None = None
    escalate_to_role: str | None = None
    escalated_at: datetime | None = None
    escalated_to: str | None = None
    final_decision: FinalDecision | None = None
    final_decision_by: str | None = None
    completed_at: datetime | None = None
    bypass_reason: str | None = None
    bypassed_by: str | None = None
    bypassed_at: datetime | None = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def is_escalated(self) -> bool:
        return self.escalated_at is not None

    @property
    def is_bypassed(self) -> bool:
        return self.bypassed_at is not None

    def role_for_level(self, level: int) -> str | None:
        """Role that decides ``level`` in sequential mode."""
        if 1 <= level <= len(self.approver_roles):
            return self.approver_roles[level - 1]
        return None


@dataclass(frozen=True)
class ApprovalActionRecord:
    """One recorded decision.  Append-only."""

    action_id: UUID
    workflow_id: UUID
    action: ApprovalActionType
    decided_by: str
    role: str
    level: int
    decided_at: datetime
    comments: str | None = None
    delegation_id: UUID | None = None


@dataclass(frozen=True)
class TakeActionRequest:
    """Input to ``WorkflowService.take_action``.

    ``expected_level`` lets a caller state which level it saw when it
    rendered the decision; a mismatch is reported as a conflict instead of
    silently acting on a later level.
    """

    workflow_id: UUID
    action: ApprovalActionType
    decided_by: str
    role: str
    comments: str | None = None
    expected_level: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class WorkflowStatusChanged:
    """Published when a workflow reaches a terminal decision.

    Consumed by the invoicing subsystem to synchronise invoice status.
    """

    invoice_id: str
    workflow_id: UUID
    workflow_status: WorkflowStatus
    final_decision: FinalDecision | None
    occurred_at: datetime


@dataclass(frozen=True)
class WorkflowIntegrityReport:
    """Result of cross-checking a workflow against its action history."""

    workflow_id: UUID
    is_consistent: bool
    issues: tuple[str, ...] = field(default_factory=tuple)
