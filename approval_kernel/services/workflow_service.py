"""
WorkflowService -- lifecycle of invoice approval workflows.

Responsibility:
    Creates a workflow from the winning approval rule, applies approve /
    reject decisions level by level (or in parallel), answers authority
    questions for UIs, applies audited emergency bypasses and cross-checks
    a workflow against its recorded actions.

Architecture position:
    Kernel > Services -- imperative shell.  Transition decisions come
    from ``approval_engines.state_machine``; authority from
    DelegationService; history goes to the AuditLedger and notification
    requests to the NotificationOutbox, all in the caller's transaction.

Invariants enforced:
    - At most one workflow per invoice (service check + UNIQUE(invoice_id)
      under a savepoint).
    - Decisions are accepted only on PENDING workflows, only from an
      eligible role, and only from a principal holding that role directly
      (within the role's approval limit) or through a live delegation.
    - Each accepted decision writes exactly one ApprovalAction and one
      ACTION_TAKEN audit entry.
    - A role acts at most once per level (service check +
      UNIQUE(workflow_id, level, role)).
    - Workflow updates carry the optimistic ``version``; a stale write is a
      ConcurrencyConflictError, never a lost update.

Failure modes:
    - WorkflowNotFoundError, InvalidWorkflowStateError, PermissionDeniedError,
      DuplicateActionError, ConcurrencyConflictError, InvalidActionError.
    - WorkflowAlreadyExistsError / NoApplicableRuleError from creation.

Audit relevance:
    WORKFLOW_CREATED, ACTION_TAKEN and EMERGENCY_BYPASS entries are written
    here.  Completed workflows publish WorkflowStatusChanged on the event
    channel for the invoicing side.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_engines.rule_engine import base_amount_for, rank_rules
from approval_engines.state_machine import decide_transition, eligible_roles, roles_to_notify
from approval_kernel.domain.audit import AuditEntryData, AuditEventKind
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.delegation import AuthorityDecision
from approval_kernel.domain.notification import NotificationType
from approval_kernel.domain.rules import ApprovalRule, InvoiceSnapshot
from approval_kernel.domain.workflow import (
    ApprovalActionRecord,
    ApprovalActionType,
    ApprovalWorkflow,
    FinalDecision,
    TakeActionRequest,
    WorkflowIntegrityReport,
    WorkflowStatus,
    WorkflowStatusChanged,
)
from approval_kernel.exceptions import (
    ConcurrencyConflictError,
    DuplicateActionError,
    InvalidActionError,
    InvalidWorkflowStateError,
    NoApplicableRuleError,
    PermissionDeniedError,
    WorkflowAlreadyExistsError,
    WorkflowNotFoundError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.models.role import ApprovalRoleModel
from approval_kernel.models.workflow import ApprovalActionModel, ApprovalWorkflowModel
from approval_kernel.services.audit_ledger import AuditLedger
from approval_kernel.services.delegation_service import DelegationService
from approval_kernel.services.event_channel import ChannelTopic, EventChannel
from approval_kernel.services.notification_outbox import NotificationOutbox

logger = get_logger("services.workflow")


class WorkflowService:
    """
    Contract:
        Every method runs inside the caller's transaction and flushes;
        none commits.  Callers commit on success and roll back on any
        exception.

    Guarantees:
        - ``take_action`` locks the workflow row before reading it.
        - Read-side helpers (``can_user_take_action``, ``get_*``,
          ``validate_workflow_integrity``) never write.

    Non-goals:
        - Does NOT authenticate principals; role membership comes from the
          RoleMembershipProvider held by the DelegationService.
    """

    def __init__(
        self,
        session: Session,
        audit: AuditLedger,
        delegations: DelegationService,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
        channel: EventChannel | None = None,
        *,
        base_currency: str = "INR",
        rates: Mapping[str, Decimal] | None = None,
        require_rejection_comment: bool = False,
    ):
        self._session = session
        self._audit = audit
        self._delegations = delegations
        self._clock = clock or SystemClock()
        self._outbox = outbox
        self._channel = channel
        self._base_currency = base_currency
        self._rates = dict(rates or {})
        self._require_rejection_comment = require_rejection_comment

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self, workflow_id: UUID, for_update: bool = False) -> ApprovalWorkflowModel:
        stmt = select(ApprovalWorkflowModel).where(ApprovalWorkflowModel.id == workflow_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        row = self._session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return row

    def _actions_at_level(self, workflow_id: UUID, level: int) -> list[ApprovalActionModel]:
        return list(
            self._session.execute(
                select(ApprovalActionModel).where(
                    ApprovalActionModel.workflow_id == workflow_id,
                    ApprovalActionModel.level == level,
                )
            ).scalars().all()
        )

    def _roles_approved_before(self, workflow: ApprovalWorkflow) -> set[str]:
        if workflow.parallel_approval or workflow.current_level == 1:
            return set()
        return set(
            self._session.execute(
                select(ApprovalActionModel.role).where(
                    ApprovalActionModel.workflow_id == workflow.workflow_id,
                    ApprovalActionModel.level < workflow.current_level,
                    ApprovalActionModel.action == ApprovalActionType.APPROVE.value,
                )
            ).scalars()
        )

    def _role_row(self, owner_id: str, role: str) -> ApprovalRoleModel | None:
        return self._session.execute(
            select(ApprovalRoleModel).where(
                ApprovalRoleModel.owner_id == owner_id,
                ApprovalRoleModel.name == role,
            )
        ).scalar_one_or_none()

    def _flush_workflow(self, row: ApprovalWorkflowModel) -> None:
        try:
            self._session.flush()
        except StaleDataError as exc:
            logger.warning(
                "workflow_version_conflict", extra={"conflict_workflow_id": str(row.id)},
            )
            raise ConcurrencyConflictError(str(row.id)) from exc

    def get_workflow(self, workflow_id: UUID) -> ApprovalWorkflow:
        return self._load(workflow_id).to_dto()

    def get_workflow_for_invoice(self, invoice_id: str) -> ApprovalWorkflow | None:
        row = self._session.execute(
            select(ApprovalWorkflowModel).where(ApprovalWorkflowModel.invoice_id == invoice_id)
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    def list_actions(self, workflow_id: UUID) -> list[ApprovalActionRecord]:
        rows = self._session.execute(
            select(ApprovalActionModel)
            .where(ApprovalActionModel.workflow_id == workflow_id)
            .order_by(ApprovalActionModel.level, ApprovalActionModel.decided_at)
        ).scalars().all()
        return [r.to_dto() for r in rows]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_workflow(
        self,
        invoice: InvoiceSnapshot,
        rules: Sequence[ApprovalRule],
        initiated_by: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> ApprovalWorkflow:
        """
        Start the approval workflow for ``invoice``.

        ``rules`` is the output of rule evaluation; when several are given
        the best-ranked one seeds the workflow.

        Raises:
            WorkflowAlreadyExistsError: the invoice already has a workflow.
            NoApplicableRuleError: ``rules`` is empty.
            UnknownCurrencyError: no rate for the invoice currency.
        """
        existing = self.get_workflow_for_invoice(invoice.invoice_id)
        if existing is not None:
            raise WorkflowAlreadyExistsError(invoice.invoice_id, existing.status.value)
        if not rules:
            raise NoApplicableRuleError(invoice.invoice_id)

        rule = rank_rules(rules)[0]
        amount = base_amount_for(invoice, self._base_currency, self._rates)
        now = self._clock.now()
        due_date = (
            now + timedelta(hours=rule.approval_timeout_hours)
            if rule.approval_timeout_hours
            else None
        )

        row = ApprovalWorkflowModel(
            invoice_id=invoice.invoice_id,
            owner_id=invoice.owner_id,
            rule_id=rule.rule_id,
            status=WorkflowStatus.PENDING.value,
            current_level=1,
            required_level=rule.required_approvals,
            approver_roles=list(rule.approver_roles),
            parallel_approval=rule.parallel_approval,
            escalate_to_role=rule.escalate_to_role,
            invoice_amount=amount,
            currency=self._base_currency,
            initiated_by=initiated_by,
            created_at=now,
            due_date=due_date,
        )
        try:
            with self._session.begin_nested():
                self._session.add(row)
                self._session.flush()
        except IntegrityError as exc:
            logger.warning(
                "workflow_create_conflict", extra={"conflict_invoice_id": invoice.invoice_id},
            )
            raise WorkflowAlreadyExistsError(invoice.invoice_id) from exc

        workflow = row.to_dto()
        with LogContext.bind(
            workflow_id=str(workflow.workflow_id),
            invoice_id=invoice.invoice_id,
            actor_id=initiated_by,
        ):
            self._audit.create_audit_entry(
                AuditEntryData(
                    event=AuditEventKind.WORKFLOW_CREATED,
                    entity_type="ApprovalWorkflow",
                    entity_id=str(workflow.workflow_id),
                    actor_id=initiated_by,
                    workflow_id=workflow.workflow_id,
                    new_values={
                        "invoice_id": invoice.invoice_id,
                        "rule_id": rule.rule_id,
                        "status": workflow.status.value,
                        "current_level": workflow.current_level,
                        "required_level": workflow.required_level,
                        "approver_roles": list(workflow.approver_roles),
                        "parallel_approval": workflow.parallel_approval,
                        "invoice_amount": amount,
                        "currency": self._base_currency,
                        "due_date": due_date,
                    },
                    ip_address=ip_address,
                    user_agent=user_agent,
                    session_id=session_id,
                    owner_id=invoice.owner_id,
                )
            )
            for role in roles_to_notify(workflow):
                self._notify(workflow, NotificationType.APPROVAL_REQUIRED, recipient_role=role)

            logger.info(
                "workflow_created",
                extra={
                    "rule_id": str(rule.rule_id),
                    "required_level": workflow.required_level,
                    "parallel_approval": workflow.parallel_approval,
                    "due_date": due_date,
                },
            )
        return workflow

    def _notify(
        self,
        workflow: ApprovalWorkflow,
        type: NotificationType,
        recipient_role: str | None = None,
        recipient_ids: Sequence[str] | None = None,
    ) -> None:
        if self._outbox is None:
            return
        self._outbox.request(
            workflow.workflow_id,
            type,
            recipient_role=recipient_role,
            due_date=workflow.due_date,
            recipient_ids=recipient_ids,
            message=f"Invoice {workflow.invoice_id}: {type.value.replace('_', ' ').lower()}",
        )

    # ------------------------------------------------------------------
    # Authority
    # ------------------------------------------------------------------

    def _check_role_permits(
        self,
        workflow: ApprovalWorkflow,
        user_id: str,
        role: str,
        action: ApprovalActionType,
    ) -> None:
        role_row = self._role_row(workflow.owner_id, role)
        if role_row is None:
            return
        if action == ApprovalActionType.APPROVE and not role_row.can_approve:
            raise PermissionDeniedError(user_id, role, f"role {role} cannot approve")
        if action == ApprovalActionType.REJECT and not role_row.can_reject:
            raise PermissionDeniedError(user_id, role, f"role {role} cannot reject")

    def _authorize(
        self,
        workflow: ApprovalWorkflow,
        user_id: str,
        role: str,
        action: ApprovalActionType,
    ) -> AuthorityDecision:
        """Raise PermissionDeniedError unless ``user_id`` may act as ``role`` now."""
        if role not in eligible_roles(workflow, self._roles_approved_before(workflow)):
            raise PermissionDeniedError(
                user_id, role,
                f"role {role} is not an approver at level {workflow.current_level}",
            )
        self._check_role_permits(workflow, user_id, role, action)
        decision = self._delegations.resolve_authority(
            workflow.owner_id, user_id, role, workflow.invoice_amount,
        )
        if not decision.granted:
            raise PermissionDeniedError(user_id, role, decision.reason)
        return decision

    def can_user_take_action(
        self,
        user_id: str,
        workflow_id: UUID,
        action: ApprovalActionType = ApprovalActionType.APPROVE,
        role: str | None = None,
    ) -> bool:
        """
        True when ``user_id`` could submit ``action`` right now.

        With ``role`` omitted, any eligible role that has not yet acted at
        the current level counts.  Read-only; never raises for unknown or
        terminal workflows.
        """
        row = self._session.get(ApprovalWorkflowModel, workflow_id)
        if row is None:
            return False
        workflow = row.to_dto()
        if workflow.is_terminal:
            return False
        acted = {a.role for a in self._actions_at_level(workflow_id, workflow.current_level)}
        candidates = (
            [role] if role is not None
            else list(eligible_roles(workflow, self._roles_approved_before(workflow)))
        )
        for candidate in candidates:
            if candidate in acted:
                continue
            try:
                self._authorize(workflow, user_id, candidate, ApprovalActionType(action))
            except PermissionDeniedError:
                continue
            return True
        return False

    def pending_for_user(self, owner_id: str, user_id: str) -> list[ApprovalWorkflow]:
        """PENDING workflows of ``owner_id`` that ``user_id`` could approve now."""
        rows = self._session.execute(
            select(ApprovalWorkflowModel)
            .where(
                ApprovalWorkflowModel.owner_id == owner_id,
                ApprovalWorkflowModel.status == WorkflowStatus.PENDING.value,
            )
            .order_by(ApprovalWorkflowModel.created_at)
        ).scalars().all()
        return [r.to_dto() for r in rows if self.can_user_take_action(user_id, r.id)]

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def take_action(self, request: TakeActionRequest) -> ApprovalActionRecord:
        """
        Apply one approve/reject decision.

        Preconditions:
            - The workflow is PENDING and ``request.role`` may act at its
              current level.

        Postconditions:
            - One ApprovalAction row and one ACTION_TAKEN audit entry exist
              for the decision; the workflow moved per the state machine.

        Raises:
            WorkflowNotFoundError, InvalidWorkflowStateError,
            ConcurrencyConflictError, PermissionDeniedError,
            InvalidActionError, DuplicateActionError.
        """
        row = self._load(request.workflow_id, for_update=True)
        workflow = row.to_dto()

        with LogContext.bind(
            workflow_id=str(workflow.workflow_id),
            invoice_id=workflow.invoice_id,
            actor_id=request.decided_by,
        ):
            if workflow.is_terminal:
                raise InvalidWorkflowStateError(str(workflow.workflow_id), workflow.status.value)
            if (
                request.expected_level is not None
                and request.expected_level != workflow.current_level
            ):
                raise ConcurrencyConflictError(
                    str(workflow.workflow_id), request.expected_level, workflow.current_level,
                )
            try:
                action = ApprovalActionType(request.action)
            except ValueError:
                raise InvalidActionError(
                    str(workflow.workflow_id), f"unknown action {request.action!r}",
                ) from None

            try:
                authority = self._authorize(workflow, request.decided_by, request.role, action)
            except PermissionDeniedError as exc:
                logger.warning(
                    "approval_action_denied",
                    extra={"role": request.role, "reason": exc.reason},
                )
                raise

            if (
                action == ApprovalActionType.REJECT
                and self._require_rejection_comment
                and not (request.comments or "").strip()
            ):
                raise InvalidActionError(
                    str(workflow.workflow_id), "a comment is required when rejecting",
                )

            level_actions = self._actions_at_level(workflow.workflow_id, workflow.current_level)
            if any(a.role == request.role for a in level_actions):
                raise DuplicateActionError(
                    str(workflow.workflow_id), workflow.current_level, request.role,
                )
            approved_roles = [
                a.role for a in level_actions if a.action == ApprovalActionType.APPROVE.value
            ]
            outcome = decide_transition(workflow, action, request.role, approved_roles)
            now = self._clock.now()

            action_row = ApprovalActionModel(
                workflow_id=workflow.workflow_id,
                action=action.value,
                decided_by=request.decided_by,
                role=request.role,
                level=workflow.current_level,
                comments=request.comments,
                decided_at=now,
                delegation_id=authority.via_delegation_id,
            )
            # The action row and the workflow update land together or not at all.
            try:
                with self._session.begin_nested():
                    self._session.add(action_row)
                    self._session.flush()
                    row.status = outcome.status.value
                    row.current_level = outcome.current_level
                    row.updated_at = now
                    if outcome.is_terminal:
                        row.final_decision = outcome.final_decision.value
                        row.final_decision_by = request.decided_by
                        row.completed_at = now
                    self._flush_workflow(row)
            except IntegrityError as exc:
                raise DuplicateActionError(
                    str(workflow.workflow_id), workflow.current_level, request.role,
                ) from exc
            updated = row.to_dto()

            if authority.via_delegation_id is not None:
                self._delegations.record_usage(authority.via_delegation_id)

            record = action_row.to_dto()
            self._audit.create_audit_entry(
                AuditEntryData(
                    event=AuditEventKind.ACTION_TAKEN,
                    entity_type="ApprovalAction",
                    entity_id=str(record.action_id),
                    actor_id=request.decided_by,
                    actor_role=request.role,
                    workflow_id=workflow.workflow_id,
                    old_values={
                        "status": workflow.status.value,
                        "current_level": workflow.current_level,
                    },
                    new_values={
                        "action": action.value,
                        "level": record.level,
                        "comments": request.comments,
                        "status": updated.status.value,
                        "current_level": updated.current_level,
                        "final_decision": (
                            updated.final_decision.value if updated.final_decision else None
                        ),
                        "delegation_id": authority.via_delegation_id,
                    },
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    session_id=request.session_id,
                    owner_id=workflow.owner_id,
                )
            )

            if outcome.is_terminal:
                self._on_completed(updated)
            elif updated.current_level != workflow.current_level:
                for role in roles_to_notify(updated):
                    self._notify(updated, NotificationType.APPROVAL_REQUIRED, recipient_role=role)

            logger.info(
                "approval_action_taken",
                extra={
                    "action": action.value,
                    "role": request.role,
                    "action_level": record.level,
                    "status": updated.status.value,
                    "current_level": updated.current_level,
                    "via_delegation": authority.via_delegation_id is not None,
                },
            )
        return record

    def _on_completed(self, workflow: ApprovalWorkflow) -> None:
        kind = (
            NotificationType.APPROVED
            if workflow.final_decision == FinalDecision.APPROVED
            else NotificationType.REJECTED
        )
        self._notify(workflow, kind, recipient_ids=[workflow.initiated_by])
        if self._channel is not None:
            self._channel.publish(
                ChannelTopic.WORKFLOW_STATUS_CHANGED,
                WorkflowStatusChanged(
                    invoice_id=workflow.invoice_id,
                    workflow_id=workflow.workflow_id,
                    workflow_status=workflow.status,
                    final_decision=workflow.final_decision,
                    occurred_at=workflow.completed_at,
                ),
                workflow.completed_at,
            )
        logger.info(
            "workflow_completed",
            extra={
                "status": workflow.status.value,
                "final_decision": workflow.final_decision.value if workflow.final_decision else None,
            },
        )

    # ------------------------------------------------------------------
    # Emergency bypass
    # ------------------------------------------------------------------

    def emergency_bypass(
        self,
        workflow_id: UUID,
        actor_id: str,
        reason: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> ApprovalWorkflow:
        """
        Approve a PENDING workflow outside the normal levels.

        The actor must hold a role with ``can_modify``.  The bypass is
        recorded as a critical audit entry (failsafe-queued if the ledger
        cannot write) and alerted on the monitoring channel.

        Raises:
            InvalidActionError: empty ``reason``.
            PermissionDeniedError: actor holds no modifying role.
            WorkflowNotFoundError, InvalidWorkflowStateError,
            ConcurrencyConflictError.
        """
        if not (reason or "").strip():
            raise InvalidActionError(str(workflow_id), "an emergency bypass needs a reason")

        row = self._load(workflow_id, for_update=True)
        workflow = row.to_dto()
        if workflow.is_terminal:
            raise InvalidWorkflowStateError(str(workflow_id), workflow.status.value)

        actor_roles = self._delegations.membership.get_user_roles(actor_id)
        modifying = sorted(
            r for r in actor_roles
            if (role_row := self._role_row(workflow.owner_id, r)) is not None
            and role_row.can_modify
            and role_row.is_active
        )
        if not modifying:
            raise PermissionDeniedError(actor_id, "EMERGENCY_BYPASS", "no role with modify rights")

        now = self._clock.now()
        row.status = WorkflowStatus.APPROVED.value
        row.final_decision = FinalDecision.APPROVED.value
        row.final_decision_by = actor_id
        row.completed_at = now
        row.bypass_reason = reason
        row.bypassed_by = actor_id
        row.bypassed_at = now
        row.updated_at = now
        self._flush_workflow(row)
        updated = row.to_dto()

        with LogContext.bind(
            workflow_id=str(workflow_id), invoice_id=workflow.invoice_id, actor_id=actor_id,
        ):
            self._audit.create_critical_audit_entry(
                AuditEntryData(
                    event=AuditEventKind.EMERGENCY_BYPASS,
                    entity_type="ApprovalWorkflow",
                    entity_id=str(workflow_id),
                    actor_id=actor_id,
                    actor_role=modifying[0],
                    workflow_id=workflow_id,
                    old_values={
                        "status": workflow.status.value,
                        "current_level": workflow.current_level,
                    },
                    new_values={
                        "status": updated.status.value,
                        "final_decision": FinalDecision.APPROVED.value,
                        "bypass_reason": reason,
                    },
                    ip_address=ip_address,
                    user_agent=user_agent,
                    session_id=session_id,
                    owner_id=workflow.owner_id,
                    timestamp=now,
                )
            )
            logger.warning(
                "emergency_bypass_applied",
                extra={"bypass_reason": reason, "skipped_level": workflow.current_level},
            )
            self._on_completed(updated)
        return updated

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def validate_workflow_integrity(self, workflow_id: UUID) -> WorkflowIntegrityReport:
        """Cross-check a workflow's status and level against its actions."""
        workflow = self._load(workflow_id).to_dto()
        actions = self.list_actions(workflow_id)
        issues: list[str] = []

        rejects = [a for a in actions if a.action == ApprovalActionType.REJECT]
        approvals = [a for a in actions if a.action == ApprovalActionType.APPROVE]

        for a in actions:
            if a.level > workflow.current_level:
                issues.append(f"action {a.action_id} recorded at level {a.level} beyond current level")

        if workflow.is_terminal != (workflow.completed_at is not None):
            issues.append("completed_at does not match terminal status")

        if workflow.status == WorkflowStatus.PENDING:
            if rejects:
                issues.append("pending workflow has a REJECT action")
            if not workflow.parallel_approval:
                for level in range(1, workflow.current_level):
                    if not any(a.level == level for a in approvals):
                        issues.append(f"level {level} passed without an approval")

        elif workflow.status == WorkflowStatus.REJECTED:
            if len(rejects) != 1:
                issues.append(f"rejected workflow has {len(rejects)} REJECT actions")
            if workflow.final_decision != FinalDecision.REJECTED:
                issues.append("final_decision does not match REJECTED status")

        elif workflow.status == WorkflowStatus.APPROVED:
            if rejects:
                issues.append("approved workflow has a REJECT action")
            if workflow.final_decision != FinalDecision.APPROVED:
                issues.append("final_decision does not match APPROVED status")
            if not workflow.is_bypassed:
                approved_roles = {a.role for a in approvals}
                if workflow.parallel_approval:
                    by_escalation = (
                        workflow.escalated_to is not None
                        and workflow.escalated_to in approved_roles
                    )
                    missing = set(workflow.approver_roles) - approved_roles
                    if missing and not by_escalation:
                        issues.append(f"approved without roles {sorted(missing)}")
                else:
                    for level in range(1, workflow.required_level + 1):
                        if not any(a.level == level for a in approvals):
                            issues.append(f"level {level} has no approval")

        report = WorkflowIntegrityReport(
            workflow_id=workflow_id, is_consistent=not issues, issues=tuple(issues),
        )
        if issues:
            logger.warning(
                "workflow_integrity_issues",
                extra={"checked_workflow_id": str(workflow_id), "issues": list(issues)},
            )
        return report
