"""
Approval configuration schema.

Defines the human-authored, reviewable configuration of the approval
engine.  YAML files are parsed into these types by the loader, checked by
``validate_configuration`` and seeded into the store by ``seed``.

Key distinction:
  EngineSettings        = runtime knobs (currency, timeouts, retry policy)
  RoleDef / RuleDef     = initial directory content, written to the store
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from approval_kernel.domain.rules import ApprovalRuleDraft, RoleDefinition

# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings shared by the approval services."""

    base_currency: str = "INR"
    exchange_rates: dict[str, Decimal] = field(default_factory=dict)
    default_timeout_hours: int = 24
    escalation_extension_hours: int = 24
    escalation_interval_seconds: int = 300
    audit_retry_attempts: int = 3
    audit_backoff_seconds: float = 0.5
    audit_max_page_size: int = 500
    failsafe_queue_path: str | None = None
    suspicious_window_hours: int = 24
    require_rejection_comment: bool = False


# ---------------------------------------------------------------------------
# Directory content
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleDef:
    """A role of the approval hierarchy."""

    name: str
    level: int
    max_approval_amount: Decimal | None = None
    can_approve: bool = True
    can_reject: bool = True
    can_delegate: bool = False
    can_modify: bool = False

    def to_definition(self, owner_id: str, currency: str) -> RoleDefinition:
        return RoleDefinition(
            name=self.name,
            level=self.level,
            owner_id=owner_id,
            max_approval_amount=self.max_approval_amount,
            currency=currency,
            can_approve=self.can_approve,
            can_reject=self.can_reject,
            can_delegate=self.can_delegate,
            can_modify=self.can_modify,
        )


@dataclass(frozen=True)
class RuleDef:
    """An approval rule as declared in configuration."""

    name: str
    min_amount: Decimal
    approver_roles: tuple[str, ...]
    required_approvals: int = 1
    max_amount: Decimal | None = None
    currency: str | None = None
    invoice_type: str | None = None
    parallel_approval: bool = False
    approval_timeout_hours: int | None = None
    escalate_to_role: str | None = None
    priority: int = 0
    description: str | None = None

    def to_draft(self) -> ApprovalRuleDraft:
        return ApprovalRuleDraft(
            name=self.name,
            min_amount=self.min_amount,
            approver_roles=self.approver_roles,
            required_approvals=self.required_approvals,
            max_amount=self.max_amount,
            currency=self.currency,
            invoice_type=self.invoice_type,
            parallel_approval=self.parallel_approval,
            approval_timeout_hours=self.approval_timeout_hours,
            escalate_to_role=self.escalate_to_role,
            priority=self.priority,
            description=self.description,
        )


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApprovalConfiguration:
    """Root configuration artifact."""

    config_id: str
    version: int
    settings: EngineSettings
    roles: tuple[RoleDef, ...] = ()
    rules: tuple[RuleDef, ...] = ()
    checksum: str = ""

    def role(self, name: str) -> RoleDef | None:
        for r in self.roles:
            if r.name == name:
                return r
        return None
