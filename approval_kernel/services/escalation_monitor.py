"""
Escalation of overdue approval workflows.

Contract:
    ``EscalationService`` finds PENDING workflows past their due date and
    escalates them: the workflow is flagged (``escalated_at``,
    ``escalated_to``), its due date is pushed out by the extension window,
    an ESCALATED audit entry is appended and the escalation role is
    notified.  The workflow stays PENDING; members of the escalation role
    may then act at the current level alongside the level role.

    It also sends REMINDER requests to the roles a PENDING workflow is
    waiting on, more often as the due date approaches
    (``approval_engines.reminders``).

    ``EscalationMonitor`` runs the sweep in a background thread on an
    interval, one session per tick.

Architecture: Kernel > Services.  Polling loop modelled on an in-process
    scheduler: ``tick()`` is public so tests drive it synchronously.

Invariants enforced:
    - All timestamps from the injected Clock.
    - Each workflow is escalated in its own savepoint; a workflow that was
      modified concurrently (version conflict) or completed meanwhile is
      skipped and picked up on a later tick if still overdue.
    - Graceful shutdown: the stop signal is checked between workflows.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from typing import Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_engines.reminders import reminder_is_due
from approval_engines.state_machine import roles_to_notify
from approval_kernel.domain.audit import AuditEntryData, AuditEventKind
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.notification import NotificationType
from approval_kernel.domain.workflow import ApprovalWorkflow, WorkflowStatus
from approval_kernel.exceptions import (
    ConcurrencyConflictError,
    InvalidWorkflowStateError,
    WorkflowNotFoundError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.models.workflow import ApprovalWorkflowModel
from approval_kernel.services.audit_ledger import AuditLedger
from approval_kernel.services.notification_outbox import NotificationOutbox

logger = get_logger("services.escalation")

DEFAULT_EXTENSION_HOURS = 24
SYSTEM_ACTOR = "system:escalation-monitor"

# Any of these restarts the reminder clock for a workflow.
REMINDER_ANCHORS = (
    NotificationType.APPROVAL_REQUIRED,
    NotificationType.ESCALATED,
    NotificationType.REMINDER,
)


class EscalationService:
    """Escalates overdue workflows and reminds pending approvers.  Never commits."""

    def __init__(
        self,
        session: Session,
        audit: AuditLedger,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
        extension_hours: int = DEFAULT_EXTENSION_HOURS,
        actor_id: str = SYSTEM_ACTOR,
    ):
        self._session = session
        self._audit = audit
        self._clock = clock or SystemClock()
        self._outbox = outbox
        self._extension = timedelta(hours=extension_hours)
        self._actor_id = actor_id

    def find_expired_workflows(self, limit: int | None = None) -> list[ApprovalWorkflow]:
        """PENDING workflows whose due date has passed, oldest due first."""
        stmt = (
            select(ApprovalWorkflowModel)
            .where(
                ApprovalWorkflowModel.status == WorkflowStatus.PENDING.value,
                ApprovalWorkflowModel.due_date.is_not(None),
                ApprovalWorkflowModel.due_date < self._clock.now(),
            )
            .order_by(ApprovalWorkflowModel.due_date, ApprovalWorkflowModel.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [r.to_dto() for r in self._session.execute(stmt).scalars().all()]

    def escalate_workflow(self, workflow_id: UUID) -> ApprovalWorkflow:
        """
        Flag ``workflow_id`` as escalated and give it a fresh due date.

        Raises:
            WorkflowNotFoundError: unknown workflow.
            InvalidWorkflowStateError: workflow is no longer PENDING.
            ConcurrencyConflictError: the row changed under us.
        """
        row = self._session.execute(
            select(ApprovalWorkflowModel)
            .where(ApprovalWorkflowModel.id == workflow_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise WorkflowNotFoundError(str(workflow_id))
        if row.status != WorkflowStatus.PENDING.value:
            raise InvalidWorkflowStateError(str(workflow_id), row.status)

        before = row.to_dto()
        now = self._clock.now()
        row.escalated_at = now
        row.escalated_to = row.escalate_to_role
        row.due_date = now + self._extension
        row.updated_at = now
        try:
            self._session.flush()
        except StaleDataError as exc:
            raise ConcurrencyConflictError(str(workflow_id)) from exc
        workflow = row.to_dto()

        with LogContext.bind(
            workflow_id=str(workflow_id), invoice_id=workflow.invoice_id, actor_id=self._actor_id,
        ):
            self._audit.create_audit_entry(
                AuditEntryData(
                    event=AuditEventKind.ESCALATED,
                    entity_type="ApprovalWorkflow",
                    entity_id=str(workflow_id),
                    actor_id=self._actor_id,
                    workflow_id=workflow_id,
                    old_values={
                        "due_date": before.due_date,
                        "escalated_to": before.escalated_to,
                    },
                    new_values={
                        "current_level": workflow.current_level,
                        "due_date": workflow.due_date,
                        "escalated_at": now,
                        "escalated_to": workflow.escalated_to,
                    },
                    owner_id=workflow.owner_id,
                )
            )

            if workflow.escalated_to is None:
                logger.warning(
                    "workflow_escalated_without_role",
                    extra={"current_level": workflow.current_level},
                )
            elif self._outbox is not None:
                self._outbox.request(
                    workflow.workflow_id,
                    NotificationType.ESCALATED,
                    recipient_role=workflow.escalated_to,
                    due_date=workflow.due_date,
                    message=(
                        f"Invoice {workflow.invoice_id} is overdue at level "
                        f"{workflow.current_level}"
                    ),
                )

            logger.info(
                "workflow_escalated",
                extra={
                    "escalated_to": workflow.escalated_to,
                    "current_level": workflow.current_level,
                    "new_due_date": workflow.due_date,
                },
            )
        return workflow

    def find_workflows_due_for_reminder(self, limit: int | None = None) -> list[ApprovalWorkflow]:
        """PENDING workflows with a due date whose reminder interval has elapsed."""
        if self._outbox is None:
            return []
        now = self._clock.now()
        rows = self._session.execute(
            select(ApprovalWorkflowModel)
            .where(
                ApprovalWorkflowModel.status == WorkflowStatus.PENDING.value,
                ApprovalWorkflowModel.due_date.is_not(None),
            )
            .order_by(ApprovalWorkflowModel.due_date, ApprovalWorkflowModel.created_at)
        ).scalars().all()

        due = []
        for row in rows:
            workflow = row.to_dto()
            last = self._outbox.last_requested_at(workflow.workflow_id, REMINDER_ANCHORS)
            if reminder_is_due(workflow.due_date, last or workflow.created_at, now):
                due.append(workflow)
                if limit is not None and len(due) >= limit:
                    break
        return due

    def send_reminder(self, workflow_id: UUID) -> int:
        """
        Remind the roles deciding ``workflow_id`` now: the level role in
        sequential mode, every rule role in parallel mode.

        Returns the number of reminder requests written; 0 for workflows
        that are no longer PENDING or when no outbox is configured.
        """
        row = self._session.get(ApprovalWorkflowModel, workflow_id)
        if row is None:
            raise WorkflowNotFoundError(str(workflow_id))
        workflow = row.to_dto()
        if self._outbox is None or workflow.status != WorkflowStatus.PENDING:
            return 0

        roles = roles_to_notify(workflow)
        with LogContext.bind(workflow_id=str(workflow_id), invoice_id=workflow.invoice_id):
            for role in roles:
                self._outbox.request(
                    workflow.workflow_id,
                    NotificationType.REMINDER,
                    recipient_role=role,
                    due_date=workflow.due_date,
                    message=(
                        f"Reminder: invoice {workflow.invoice_id} is waiting for "
                        f"level {workflow.current_level} approval"
                    ),
                )
            logger.info(
                "workflow_reminder_sent",
                extra={"recipient_roles": roles, "current_level": workflow.current_level},
            )
        return len(roles)

    def send_reminders(self, limit: int | None = None) -> int:
        """Remind every workflow due for it.  Returns the number of workflows reminded."""
        reminded = 0
        for workflow in self.find_workflows_due_for_reminder(limit=limit):
            if self.send_reminder(workflow.workflow_id):
                reminded += 1
        return reminded


class EscalationMonitor:
    """Background sweep that escalates overdue workflows and sends due reminders.

    Contract:
        - ``tick()`` escalates every overdue workflow, then sends the
          reminders that are due, and commits.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler; running several monitors is safe
          (row locks, version column) but wasteful.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        service_factory: Callable[[Session], EscalationService],
        interval_seconds: float = 300,
        batch_size: int | None = None,
    ):
        self._session_factory = session_factory
        self._service_factory = service_factory
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self) -> int:
        """Run one sweep.  Returns the number of workflows escalated."""
        session = self._session_factory()
        try:
            escalated = self._sweep(session)
            session.commit()
            return escalated
        except Exception:
            session.rollback()
            logger.exception("escalation_tick_failed")
            return 0
        finally:
            session.close()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="approval-escalation-monitor",
            daemon=True,
        )
        self._thread.start()
        logger.info("escalation_monitor_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current sweep to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("escalation_monitor_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("escalation_tick_exception")
            self._stop_event.wait(timeout=self._interval)

    def _sweep(self, session: Session) -> int:
        service = self._service_factory(session)
        escalated = 0
        for workflow in service.find_expired_workflows(limit=self._batch_size):
            if self._stop_event.is_set():
                break
            try:
                with session.begin_nested():
                    service.escalate_workflow(workflow.workflow_id)
                escalated += 1
            except (ConcurrencyConflictError, InvalidWorkflowStateError) as exc:
                logger.info(
                    "escalation_skipped",
                    extra={"skipped_workflow_id": str(workflow.workflow_id), "error_code": exc.code},
                )
        if not self._stop_event.is_set():
            reminded = service.send_reminders(limit=self._batch_size)
            if reminded:
                logger.info("reminder_sweep_finished", extra={"reminded": reminded})
        return escalated
