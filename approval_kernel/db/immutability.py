"""
ORM-Level Immutability Enforcement (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

Approval history must be tamper-proof.  Auditors rely on the audit ledger
and the recorded approval actions to reconstruct who decided what, when,
and under which authority.  Neither may be altered after the fact.

  Layer 1: THIS FILE (ORM event listeners)
    - Catches modifications through Python/SQLAlchemy code
    - Fires BEFORE the SQL is sent to the database

  Layer 2: db/sql/<dialect>/*.sql (database triggers)
    - Catches raw SQL, bulk UPDATE statements, direct database access
    - Fires AT the database level, independent of application code

Both layers enforce the SAME rules.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                | When Immutable          | Why
----------------------|-------------------------|--------------------------------
ApprovalAuditLogModel | ALWAYS (from creation)  | Audit trail is sacred
ApprovalActionModel   | ALWAYS (from creation)  | Actions reconstruct history

Workflows, rules and delegations are mutable and are not covered here.

===============================================================================
USAGE
===============================================================================

Called once at startup (and by the test suite's session fixture):

    from approval_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners()
    # ... out-of-band tampering to prove detection ...
    register_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event

from approval_kernel.exceptions import ImmutabilityViolationError
from approval_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_audit_log_immutability(mapper, connection, target):
    """Prevent any updates to audit ledger entries."""
    _block(
        "ApprovalAuditLog", target, "UPDATE",
        "Audit entries are immutable and cannot be modified",
    )


def _check_audit_log_delete(mapper, connection, target):
    """Prevent deletion of audit ledger entries."""
    _block("ApprovalAuditLog", target, "DELETE", "Audit entries cannot be deleted")


def _check_action_immutability(mapper, connection, target):
    _block(
        "ApprovalAction", target, "UPDATE",
        "Approval actions are immutable and cannot be modified",
    )


def _check_action_delete(mapper, connection, target):
    _block("ApprovalAction", target, "DELETE", "Approval actions cannot be deleted")


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call this after all models are imported but before any database
    operations begin.  Registering twice is harmless.
    """
    from approval_kernel.models.audit_log import ApprovalAuditLogModel
    from approval_kernel.models.workflow import ApprovalActionModel

    listeners = (
        (ApprovalAuditLogModel, "before_update", _check_audit_log_immutability),
        (ApprovalAuditLogModel, "before_delete", _check_audit_log_delete),
        (ApprovalActionModel, "before_update", _check_action_immutability),
        (ApprovalActionModel, "before_delete", _check_action_delete),
    )
    for target, event_name, listener_fn in listeners:
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    from approval_kernel.models.audit_log import ApprovalAuditLogModel
    from approval_kernel.models.workflow import ApprovalActionModel

    _safe_remove_listener(ApprovalAuditLogModel, "before_update", _check_audit_log_immutability)
    _safe_remove_listener(ApprovalAuditLogModel, "before_delete", _check_audit_log_delete)
    _safe_remove_listener(ApprovalActionModel, "before_update", _check_action_immutability)
    _safe_remove_listener(ApprovalActionModel, "before_delete", _check_action_delete)
