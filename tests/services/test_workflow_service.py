"""
Tests for WorkflowService.

Covers:
- create_workflow(): initial state, due date, duplicates (existence check
  and unique constraint), empty rule list, audit entry and
  APPROVAL_REQUIRED notification
- take_action(): sequential advance, completion, rejection, parallel mode,
  authority checks, duplicate decisions, expected_level conflicts, stale
  version rolled back with no action or audit row, rejection comments
- can_user_take_action() / pending_for_user()
- emergency_bypass(): permission, reason, audit entry, channel alert
- validate_workflow_integrity()
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import update

from approval_kernel.domain.audit import AuditEventKind
from approval_kernel.domain.notification import NotificationType
from approval_kernel.domain.workflow import (
    ApprovalActionType,
    FinalDecision,
    TakeActionRequest,
    WorkflowStatus,
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
from approval_kernel.models.workflow import ApprovalWorkflowModel
from approval_kernel.services.event_channel import ChannelTopic

APPROVE = ApprovalActionType.APPROVE
REJECT = ApprovalActionType.REJECT


def request(workflow, user, role, action=APPROVE, **kwargs) -> TakeActionRequest:
    return TakeActionRequest(
        workflow_id=workflow.workflow_id,
        action=action,
        decided_by=user,
        role=role,
        **kwargs,
    )


# =========================================================================
# Creation
# =========================================================================


class TestCreateWorkflow:
    def test_initial_state(self, create_workflow, rule_named, deterministic_clock):
        wf = create_workflow(amount="83500")

        rule = rule_named("Mid-value invoices")
        assert wf.status == WorkflowStatus.PENDING
        assert wf.current_level == 1
        assert wf.required_level == 2
        assert wf.rule_id == rule.rule_id
        assert wf.approver_roles == ("MANAGER", "FINANCE_HEAD")
        assert wf.escalate_to_role == "CFO"
        assert wf.due_date == deterministic_clock.now() + timedelta(hours=24)
        assert wf.completed_at is None

    def test_amount_stored_in_base_currency(self, create_workflow):
        wf = create_workflow(amount="1000", currency="USD")
        assert wf.invoice_amount == 82500
        assert wf.currency == "INR"

    def test_second_workflow_for_invoice_rejected(
        self, create_workflow, make_invoice, rule_engine_service, workflow_service,
    ):
        create_workflow(invoice_id="INV-DUP")
        invoice = make_invoice(invoice_id="INV-DUP")
        with pytest.raises(WorkflowAlreadyExistsError) as exc_info:
            workflow_service.create_workflow(
                invoice, rule_engine_service.evaluate_rules(invoice), "clerk-1",
            )
        assert exc_info.value.status == "PENDING"

    def test_duplicate_insert_past_the_precheck(
        self, create_workflow, make_invoice, rule_engine_service, workflow_service, monkeypatch,
    ):
        first = create_workflow(invoice_id="INV-RACE")
        # A concurrent creator passed the existence check before this row landed.
        monkeypatch.setattr(workflow_service, "get_workflow_for_invoice", lambda invoice_id: None)
        invoice = make_invoice(invoice_id="INV-RACE")

        with pytest.raises(WorkflowAlreadyExistsError) as exc_info:
            workflow_service.create_workflow(
                invoice, rule_engine_service.evaluate_rules(invoice), "clerk-2",
            )

        assert exc_info.value.invoice_id == "INV-RACE"
        assert workflow_service.get_workflow(first.workflow_id).status == WorkflowStatus.PENDING
        assert create_workflow(invoice_id="INV-AFTER-RACE").status == WorkflowStatus.PENDING

    def test_no_rules_is_an_error(self, seeded, workflow_service, make_invoice):
        with pytest.raises(NoApplicableRuleError):
            workflow_service.create_workflow(make_invoice("6000000"), [], "clerk-1")

    def test_writes_audit_entry(self, create_workflow, ledger):
        wf = create_workflow()
        trail = ledger.get_workflow_trail(wf.workflow_id)
        assert [e.event for e in trail] == [AuditEventKind.WORKFLOW_CREATED]
        assert trail[0].actor_id == "clerk-1"
        assert trail[0].new_values["required_level"] == 2

    def test_notifies_first_level_role(self, create_workflow, outbox):
        wf = create_workflow()
        [note] = outbox.for_workflow(wf.workflow_id)
        assert note.type == NotificationType.APPROVAL_REQUIRED
        assert note.recipient_role == "MANAGER"
        assert note.recipient_ids == ("mgr-1", "mgr-2")

    def test_parallel_notifies_every_role(self, create_workflow, outbox):
        wf = create_workflow(amount="100000", invoice_type="CAPEX")
        roles = {n.recipient_role for n in outbox.for_workflow(wf.workflow_id)}
        assert roles == {"PROCUREMENT", "FINANCE_HEAD"}

    def test_logs_creation(self, create_workflow, captured_logs):
        wf = create_workflow()
        created = [r for r in captured_logs() if r["message"] == "workflow_created"]
        assert len(created) == 1
        assert created[0]["workflow_id"] == str(wf.workflow_id)

    def test_get_workflow_unknown(self, workflow_service):
        with pytest.raises(WorkflowNotFoundError):
            workflow_service.get_workflow(uuid4())


# =========================================================================
# Sequential decisions
# =========================================================================


class TestSequentialActions:
    def test_first_approval_advances(self, create_workflow, workflow_service):
        wf = create_workflow()
        record = workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))

        assert record.level == 1
        assert record.action == APPROVE
        after = workflow_service.get_workflow(wf.workflow_id)
        assert after.status == WorkflowStatus.PENDING
        assert after.current_level == 2

    def test_final_approval_completes(self, create_workflow, workflow_service, channel):
        wf = create_workflow()
        workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))
        workflow_service.take_action(request(wf, "fh-1", "FINANCE_HEAD"))

        after = workflow_service.get_workflow(wf.workflow_id)
        assert after.status == WorkflowStatus.APPROVED
        assert after.final_decision == FinalDecision.APPROVED
        assert after.final_decision_by == "fh-1"
        assert after.completed_at is not None

        [message] = channel.history(ChannelTopic.WORKFLOW_STATUS_CHANGED)
        assert message.payload.invoice_id == wf.invoice_id
        assert message.payload.workflow_status == WorkflowStatus.APPROVED

    def test_rejection_is_final(self, create_workflow, workflow_service, outbox):
        wf = create_workflow()
        workflow_service.take_action(
            request(wf, "mgr-1", "MANAGER", REJECT, comments="Duplicate invoice"),
        )

        after = workflow_service.get_workflow(wf.workflow_id)
        assert after.status == WorkflowStatus.REJECTED
        assert after.current_level == 1
        assert after.final_decision == FinalDecision.REJECTED

        rejected = [n for n in outbox.for_workflow(wf.workflow_id) if n.type == NotificationType.REJECTED]
        assert rejected[0].recipient_ids == ("clerk-1",)

    def test_rejection_requires_comment(self, create_workflow, workflow_service):
        wf = create_workflow()
        with pytest.raises(InvalidActionError):
            workflow_service.take_action(request(wf, "mgr-1", "MANAGER", REJECT, comments="  "))

    def test_terminal_workflow_rejects_actions(self, create_workflow, workflow_service):
        wf = create_workflow(amount="1000")
        workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))
        with pytest.raises(InvalidWorkflowStateError):
            workflow_service.take_action(request(wf, "mgr-2", "MANAGER"))

    def test_wrong_level_role_denied(self, create_workflow, workflow_service):
        wf = create_workflow()
        with pytest.raises(PermissionDeniedError):
            workflow_service.take_action(request(wf, "fh-1", "FINANCE_HEAD"))

    def test_principal_without_role_denied(self, create_workflow, workflow_service, captured_logs):
        wf = create_workflow()
        with pytest.raises(PermissionDeniedError) as exc_info:
            workflow_service.take_action(request(wf, "clerk-1", "MANAGER"))
        assert exc_info.value.user_id == "clerk-1"
        assert any(r["message"] == "approval_action_denied" for r in captured_logs())

    def test_role_limit_enforced(self, create_workflow, workflow_service):
        # MANAGER is capped at 200000; the large rule still lists MANAGER first
        wf = create_workflow(amount="300000")
        with pytest.raises(PermissionDeniedError):
            workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))

    def test_expected_level_mismatch_is_conflict(self, create_workflow, workflow_service):
        wf = create_workflow()
        workflow_service.take_action(request(wf, "mgr-1", "MANAGER", expected_level=1))
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            workflow_service.take_action(request(wf, "fh-1", "FINANCE_HEAD", expected_level=1))
        assert exc_info.value.actual_level == 2

    def test_stale_version_writes_nothing(
        self, create_workflow, workflow_service, ledger, session, monkeypatch,
    ):
        wf = create_workflow()
        table = ApprovalWorkflowModel.__table__
        read_actions = workflow_service._actions_at_level

        def _read_then_bump(workflow_id, level):
            # Another writer commits between this decision's read and write.
            session.execute(
                update(table)
                .where(table.c.id == workflow_id)
                .values(version=table.c.version + 1)
            )
            return read_actions(workflow_id, level)

        monkeypatch.setattr(workflow_service, "_actions_at_level", _read_then_bump)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))

        assert exc_info.value.workflow_id == str(wf.workflow_id)
        assert workflow_service.list_actions(wf.workflow_id) == []
        assert ledger.get_events_by_type(wf.workflow_id, AuditEventKind.ACTION_TAKEN) == []

        monkeypatch.undo()
        workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))
        assert workflow_service.get_workflow(wf.workflow_id).current_level == 2

    def test_one_action_and_one_audit_entry_per_decision(
        self, create_workflow, workflow_service, ledger,
    ):
        wf = create_workflow()
        workflow_service.take_action(request(wf, "mgr-1", "MANAGER", comments="ok"))
        workflow_service.take_action(request(wf, "fh-1", "FINANCE_HEAD"))

        actions = workflow_service.list_actions(wf.workflow_id)
        taken = ledger.get_events_by_type(wf.workflow_id, AuditEventKind.ACTION_TAKEN)
        assert [(a.level, a.role) for a in actions] == [(1, "MANAGER"), (2, "FINANCE_HEAD")]
        assert len(taken) == 2
        assert taken[0].actor_role == "MANAGER"
        assert taken[0].new_values["comments"] == "ok"
        assert taken[1].new_values["final_decision"] == "APPROVED"

    def test_next_level_notified_after_advance(self, create_workflow, workflow_service, outbox):
        wf = create_workflow()
        workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))
        required = [
            n.recipient_role for n in outbox.for_workflow(wf.workflow_id)
            if n.type == NotificationType.APPROVAL_REQUIRED
        ]
        assert required == ["MANAGER", "FINANCE_HEAD"]


# =========================================================================
# Parallel decisions
# =========================================================================


class TestParallelActions:
    def test_completes_after_every_role(self, create_workflow, workflow_service):
        wf = create_workflow(amount="100000", invoice_type="CAPEX")
        assert wf.parallel_approval
        assert wf.required_level == 2

        workflow_service.take_action(request(wf, "proc-1", "PROCUREMENT"))
        middle = workflow_service.get_workflow(wf.workflow_id)
        assert middle.status == WorkflowStatus.PENDING
        assert middle.current_level == 1

        workflow_service.take_action(request(wf, "fh-1", "FINANCE_HEAD"))
        after = workflow_service.get_workflow(wf.workflow_id)
        assert after.status == WorkflowStatus.APPROVED
        assert after.current_level == 1

    def test_same_role_twice_is_duplicate(self, create_workflow, workflow_service, membership):
        membership.grant("proc-2", "PROCUREMENT")
        wf = create_workflow(amount="100000", invoice_type="CAPEX")
        workflow_service.take_action(request(wf, "proc-1", "PROCUREMENT"))
        with pytest.raises(DuplicateActionError):
            workflow_service.take_action(request(wf, "proc-2", "PROCUREMENT"))


# =========================================================================
# Authority queries
# =========================================================================


class TestAuthorityQueries:
    def test_can_user_take_action(self, create_workflow, workflow_service):
        wf = create_workflow()
        assert workflow_service.can_user_take_action("mgr-1", wf.workflow_id)
        assert not workflow_service.can_user_take_action("fh-1", wf.workflow_id)
        assert not workflow_service.can_user_take_action("clerk-1", wf.workflow_id)

    def test_can_user_take_action_unknown_workflow(self, workflow_service):
        assert not workflow_service.can_user_take_action("mgr-1", uuid4())

    def test_can_user_take_action_terminal(self, create_workflow, workflow_service):
        wf = create_workflow(amount="1000")
        workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))
        assert not workflow_service.can_user_take_action("mgr-2", wf.workflow_id)

    def test_pending_for_user(self, create_workflow, workflow_service, owner_id):
        small = create_workflow(amount="1000")
        mid = create_workflow(amount="83500")
        workflow_service.take_action(request(mid, "mgr-1", "MANAGER"))

        for_manager = {w.workflow_id for w in workflow_service.pending_for_user(owner_id, "mgr-2")}
        for_head = {w.workflow_id for w in workflow_service.pending_for_user(owner_id, "fh-1")}
        assert for_manager == {small.workflow_id}
        assert for_head == {mid.workflow_id}


# =========================================================================
# Emergency bypass
# =========================================================================


class TestEmergencyBypass:
    def test_bypass_approves(self, create_workflow, workflow_service, ledger, channel):
        wf = create_workflow(amount="300000")
        after = workflow_service.emergency_bypass(wf.workflow_id, "cfo-1", "Supplier shutdown risk")

        assert after.status == WorkflowStatus.APPROVED
        assert after.final_decision == FinalDecision.APPROVED
        assert after.bypassed_by == "cfo-1"
        assert after.bypass_reason == "Supplier shutdown risk"
        assert after.is_bypassed

        [entry] = ledger.get_events_by_type(wf.workflow_id, AuditEventKind.EMERGENCY_BYPASS)
        assert entry.actor_id == "cfo-1"
        assert entry.actor_role == "CFO"
        assert entry.new_values["bypass_reason"] == "Supplier shutdown risk"

        [alert] = channel.history(ChannelTopic.EMERGENCY_BYPASS)
        assert alert.payload.entry_id == entry.entry_id

    def test_bypass_needs_modify_rights(self, create_workflow, workflow_service):
        wf = create_workflow()
        with pytest.raises(PermissionDeniedError):
            workflow_service.emergency_bypass(wf.workflow_id, "fh-1", "urgent")

    def test_bypass_needs_reason(self, create_workflow, workflow_service):
        wf = create_workflow()
        with pytest.raises(InvalidActionError):
            workflow_service.emergency_bypass(wf.workflow_id, "cfo-1", "   ")

    def test_bypass_on_terminal_workflow(self, create_workflow, workflow_service):
        wf = create_workflow(amount="1000")
        workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))
        with pytest.raises(InvalidWorkflowStateError):
            workflow_service.emergency_bypass(wf.workflow_id, "cfo-1", "urgent")


# =========================================================================
# Integrity
# =========================================================================


class TestWorkflowIntegrity:
    def test_pending_workflow_is_consistent(self, create_workflow, workflow_service):
        wf = create_workflow()
        workflow_service.take_action(request(wf, "mgr-1", "MANAGER"))
        report = workflow_service.validate_workflow_integrity(wf.workflow_id)
        assert report.is_consistent
        assert report.issues == ()

    def test_completed_workflows_are_consistent(self, create_workflow, workflow_service):
        approved = create_workflow()
        workflow_service.take_action(request(approved, "mgr-1", "MANAGER"))
        workflow_service.take_action(request(approved, "fh-1", "FINANCE_HEAD"))
        rejected = create_workflow()
        workflow_service.take_action(
            request(rejected, "mgr-1", "MANAGER", REJECT, comments="wrong vendor"),
        )
        bypassed = create_workflow()
        workflow_service.emergency_bypass(bypassed.workflow_id, "cfo-1", "urgent")

        for wf in (approved, rejected, bypassed):
            assert workflow_service.validate_workflow_integrity(wf.workflow_id).is_consistent

    def test_detects_level_skipped_without_approval(
        self, create_workflow, workflow_service, session,
    ):
        wf = create_workflow()
        row = session.get(ApprovalWorkflowModel, wf.workflow_id)
        row.current_level = 2
        session.flush()

        report = workflow_service.validate_workflow_integrity(wf.workflow_id)
        assert not report.is_consistent
        assert "level 1 passed without an approval" in report.issues
