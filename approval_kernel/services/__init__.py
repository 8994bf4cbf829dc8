"""Services for the approval kernel (write side)."""

from approval_kernel.services.audit_ledger import AuditLedger
from approval_kernel.services.delegation_service import DelegationService
from approval_kernel.services.escalation_monitor import EscalationMonitor, EscalationService
from approval_kernel.services.event_channel import ChannelMessage, ChannelTopic, EventChannel
from approval_kernel.services.failsafe_queue import FailsafeAuditQueue
from approval_kernel.services.notification_outbox import NotificationOutbox
from approval_kernel.services.rule_service import RuleAdminService, RuleEngineService
from approval_kernel.services.sequence_service import SequenceService
from approval_kernel.services.workflow_service import WorkflowService

__all__ = [
    "AuditLedger",
    "ChannelMessage",
    "ChannelTopic",
    "DelegationService",
    "EscalationMonitor",
    "EscalationService",
    "EventChannel",
    "FailsafeAuditQueue",
    "NotificationOutbox",
    "RuleAdminService",
    "RuleEngineService",
    "SequenceService",
    "WorkflowService",
]
