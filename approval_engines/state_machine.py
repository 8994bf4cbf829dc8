"""
approval_engines.state_machine -- Pure workflow transition decisions.

Responsibility:
    Given a workflow snapshot and an incoming decision, compute the next
    status, level and final decision.  Also answers which roles may act
    on a workflow right now.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  WorkflowService applies
    the outcome to the row; this module never touches persistence.

Invariants enforced:
    - Only PENDING workflows transition (WORKFLOW_TRANSITIONS).
    - current_level never decreases and never exceeds required_level.
    - A single REJECT is final; no further levels are evaluated.
    - Parallel workflows stay at level 1 and complete once every rule role
      has approved.
    - An escalated workflow stays actionable; the escalation role may act
      at the current level in place of the level role (sequential) or of
      all outstanding roles (parallel).
    - In sequential mode one role clears at most one level: the escalation
      role cannot stand in once it has approved an earlier level, nor when
      it owns a later level of the chain.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from approval_kernel.domain.workflow import (
    ApprovalActionType,
    ApprovalWorkflow,
    FinalDecision,
    WorkflowStatus,
    is_valid_transition,
)


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of applying one decision to a PENDING workflow."""

    status: WorkflowStatus
    current_level: int
    final_decision: FinalDecision | None = None

    @property
    def is_terminal(self) -> bool:
        return self.final_decision is not None


def eligible_roles(
    workflow: ApprovalWorkflow,
    approved_earlier: Iterable[str] = (),
) -> tuple[str, ...]:
    """Roles that may act on ``workflow`` at its current level.

    ``approved_earlier`` are the roles that approved a lower level
    (sequential mode only).
    """
    stand_in = workflow.escalated_to if workflow.is_escalated else None
    if workflow.parallel_approval:
        roles = list(workflow.approver_roles)
        if stand_in and stand_in not in roles:
            roles.append(stand_in)
        return tuple(roles)

    level_role = workflow.role_for_level(workflow.current_level)
    roles = [level_role] if level_role else []
    later_roles = workflow.approver_roles[workflow.current_level:workflow.required_level]
    if (
        stand_in
        and stand_in not in roles
        and stand_in not in later_roles
        and stand_in not in set(approved_earlier)
    ):
        roles.append(stand_in)
    return tuple(roles)


def roles_to_notify(workflow: ApprovalWorkflow) -> tuple[str, ...]:
    """Roles asked to decide ``workflow`` at its current level."""
    if workflow.parallel_approval:
        return workflow.approver_roles
    role = workflow.role_for_level(workflow.current_level)
    return (role,) if role else ()


def decide_transition(
    workflow: ApprovalWorkflow,
    action: ApprovalActionType,
    acting_role: str,
    approved_roles_at_level: Iterable[str] = (),
) -> TransitionOutcome:
    """Next state of ``workflow`` after ``acting_role`` submits ``action``.

    ``approved_roles_at_level`` are the roles that already approved at the
    current level (parallel mode only).

    Raises:
        ValueError: If the workflow is not PENDING.
    """
    if workflow.status != WorkflowStatus.PENDING:
        raise ValueError(f"Workflow {workflow.workflow_id} is {workflow.status.value}")

    if action == ApprovalActionType.REJECT:
        outcome = TransitionOutcome(
            status=WorkflowStatus.REJECTED,
            current_level=workflow.current_level,
            final_decision=FinalDecision.REJECTED,
        )
    elif workflow.parallel_approval:
        approved = set(approved_roles_at_level) | {acting_role}
        by_escalation = acting_role not in workflow.approver_roles
        if by_escalation or set(workflow.approver_roles) <= approved:
            outcome = TransitionOutcome(
                status=WorkflowStatus.APPROVED,
                current_level=workflow.current_level,
                final_decision=FinalDecision.APPROVED,
            )
        else:
            outcome = TransitionOutcome(
                status=WorkflowStatus.PENDING, current_level=workflow.current_level,
            )
    elif workflow.current_level < workflow.required_level:
        outcome = TransitionOutcome(
            status=WorkflowStatus.PENDING, current_level=workflow.current_level + 1,
        )
    else:
        outcome = TransitionOutcome(
            status=WorkflowStatus.APPROVED,
            current_level=workflow.current_level,
            final_decision=FinalDecision.APPROVED,
        )

    if outcome.status != workflow.status:
        assert is_valid_transition(workflow.status, outcome.status)
    return outcome
