"""ORM models for the approval kernel."""

from approval_kernel.models.audit_log import ApprovalAuditLogModel
from approval_kernel.models.delegation import ApprovalDelegationModel
from approval_kernel.models.notification import ApprovalNotificationModel
from approval_kernel.models.role import ApprovalRoleModel
from approval_kernel.models.rule import ApprovalRuleModel
from approval_kernel.models.workflow import ApprovalActionModel, ApprovalWorkflowModel

__all__ = [
    "ApprovalRoleModel",
    "ApprovalRuleModel",
    "ApprovalWorkflowModel",
    "ApprovalActionModel",
    "ApprovalDelegationModel",
    "ApprovalAuditLogModel",
    "ApprovalNotificationModel",
    "import_all_models",
]


def import_all_models() -> None:
    """Import every module that declares a table so ``Base.metadata`` is complete.

    The sequence counter table lives with SequenceService.  This function is
    idempotent -- repeated calls are harmless.
    """
    import approval_kernel.models.audit_log  # noqa: F401
    import approval_kernel.models.delegation  # noqa: F401
    import approval_kernel.models.notification  # noqa: F401
    import approval_kernel.models.role  # noqa: F401
    import approval_kernel.models.rule  # noqa: F401
    import approval_kernel.models.workflow  # noqa: F401
    import approval_kernel.services.sequence_service  # noqa: F401
