"""
Config -> Kernel Bridges.

Builds the kernel services from an ``ApprovalConfiguration``.  These live
in approval_config (the producer) because the kernel must never import
approval_config.

Usage:
    from approval_config.bridges import build_services

    config = get_active_config()
    services = build_services(session, config, membership)
    workflow = services.workflows.create_workflow(invoice, rules, user_id)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.orm import Session

from approval_config.schema import ApprovalConfiguration
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.delegation import RoleMembershipProvider
from approval_kernel.services.audit_ledger import AuditLedger
from approval_kernel.services.delegation_service import DelegationService
from approval_kernel.services.escalation_monitor import EscalationMonitor, EscalationService
from approval_kernel.services.event_channel import EventChannel
from approval_kernel.services.failsafe_queue import FailsafeAuditQueue
from approval_kernel.services.notification_outbox import NotificationOutbox
from approval_kernel.services.rule_service import RuleAdminService, RuleEngineService
from approval_kernel.services.workflow_service import WorkflowService


@dataclass(frozen=True)
class ApprovalServices:
    """The kernel services bound to one session."""

    session: Session
    rule_admin: RuleAdminService
    rule_engine: RuleEngineService
    ledger: AuditLedger
    outbox: NotificationOutbox
    delegations: DelegationService
    workflows: WorkflowService
    escalations: EscalationService


def build_failsafe_queue(config: ApprovalConfiguration) -> FailsafeAuditQueue | None:
    path = config.settings.failsafe_queue_path
    return FailsafeAuditQueue(Path(path)) if path else None


def build_services(
    session: Session,
    config: ApprovalConfiguration,
    membership: RoleMembershipProvider,
    clock: Clock | None = None,
    channel: EventChannel | None = None,
    failsafe_queue: FailsafeAuditQueue | None = None,
) -> ApprovalServices:
    """Wire every service to ``session`` with the configured settings."""
    settings = config.settings
    clock = clock or SystemClock()
    ledger = AuditLedger(
        session,
        clock,
        channel,
        failsafe_queue if failsafe_queue is not None else build_failsafe_queue(config),
        retry_attempts=settings.audit_retry_attempts,
        backoff_seconds=settings.audit_backoff_seconds,
        max_page_size=settings.audit_max_page_size,
        suspicious_window_hours=settings.suspicious_window_hours,
    )
    outbox = NotificationOutbox(session, clock, membership)
    delegations = DelegationService(session, ledger, membership, clock)
    workflows = WorkflowService(
        session,
        ledger,
        delegations,
        clock,
        outbox,
        channel,
        base_currency=settings.base_currency,
        rates=settings.exchange_rates,
        require_rejection_comment=settings.require_rejection_comment,
    )
    return ApprovalServices(
        session=session,
        rule_admin=RuleAdminService(session, clock),
        rule_engine=RuleEngineService(
            session,
            base_currency=settings.base_currency,
            rates=settings.exchange_rates,
            default_timeout_hours=settings.default_timeout_hours,
        ),
        ledger=ledger,
        outbox=outbox,
        delegations=delegations,
        workflows=workflows,
        escalations=EscalationService(
            session,
            ledger,
            clock,
            outbox,
            extension_hours=settings.escalation_extension_hours,
        ),
    )


def build_escalation_monitor(
    session_factory,
    config: ApprovalConfiguration,
    membership: RoleMembershipProvider,
    clock: Clock | None = None,
    channel: EventChannel | None = None,
) -> EscalationMonitor:
    """An EscalationMonitor whose sweeps use services built from ``config``."""

    def _service(session: Session) -> EscalationService:
        return build_services(session, config, membership, clock, channel).escalations

    return EscalationMonitor(
        session_factory,
        _service,
        interval_seconds=config.settings.escalation_interval_seconds,
    )
