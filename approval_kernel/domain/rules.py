"""
Rule-side domain types: approval rules, invoice snapshots, role directory.

Responsibility:
    Frozen value objects exchanged between the rule admin service, the pure
    rule engine and the workflow service.  No I/O.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - ``RuleUpdate`` names every field an administrator may change.  Fields
      left as ``UNSET`` are untouched; ``None`` is a real value for the
      optional fields (e.g. clearing ``max_amount``).
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


class _Unset:
    """Marker for partial-update fields that were not supplied."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class InvoiceSnapshot:
    """Read-only view of the invoice an approval workflow is about.

    ``base_currency_amount`` is used as-is when supplied; otherwise the
    rule engine converts ``amount`` with the configured rates.
    """

    invoice_id: str
    owner_id: str
    amount: Decimal
    currency: str
    base_currency_amount: Decimal | None = None
    invoice_type: str | None = None


@dataclass(frozen=True)
class RoleDefinition:
    """One entry of the role directory."""

    name: str
    level: int
    owner_id: str
    max_approval_amount: Decimal | None = None
    currency: str = "INR"
    can_approve: bool = True
    can_reject: bool = True
    can_delegate: bool = False
    can_modify: bool = False
    is_active: bool = True
    role_id: UUID | None = None


@dataclass(frozen=True)
class ApprovalRuleDraft:
    """Rule content as authored by an administrator, before persistence."""

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
    is_active: bool = True
    description: str | None = None


@dataclass(frozen=True)
class ApprovalRule:
    """A persisted approval rule (snapshot of its row)."""

    rule_id: UUID
    owner_id: str
    name: str
    min_amount: Decimal
    approver_roles: tuple[str, ...]
    required_approvals: int
    created_at: datetime
    max_amount: Decimal | None = None
    currency: str | None = None
    invoice_type: str | None = None
    parallel_approval: bool = False
    approval_timeout_hours: int | None = None
    escalate_to_role: str | None = None
    priority: int = 0
    is_active: bool = True
    description: str | None = None

    def to_draft(self) -> ApprovalRuleDraft:
        """Return the editable content of this rule."""
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
            is_active=self.is_active,
            description=self.description,
        )


@dataclass(frozen=True)
class RuleUpdate:
    """Partial update of an approval rule.

    Every attribute defaults to ``UNSET``.  ``apply_to`` returns a new draft
    with only the supplied fields replaced, so the result can be run
    through ``validate_rule`` before anything is written.
    """

    name: Any = UNSET
    min_amount: Any = UNSET
    max_amount: Any = UNSET
    currency: Any = UNSET
    invoice_type: Any = UNSET
    required_approvals: Any = UNSET
    approver_roles: Any = UNSET
    parallel_approval: Any = UNSET
    approval_timeout_hours: Any = UNSET
    escalate_to_role: Any = UNSET
    priority: Any = UNSET
    is_active: Any = UNSET
    description: Any = UNSET

    def changes(self) -> dict[str, Any]:
        """Fields that were explicitly supplied."""
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not UNSET:
                out[f.name] = tuple(value) if f.name == "approver_roles" else value
        return out

    @property
    def is_empty(self) -> bool:
        return not self.changes()

    @property
    def only_toggles_activity(self) -> bool:
        return set(self.changes()) == {"is_active"}

    def apply_to(self, draft: ApprovalRuleDraft) -> ApprovalRuleDraft:
        return replace(draft, **self.changes())


@dataclass(frozen=True)
class ApprovalRequirement:
    """Projection of what approving an invoice would take."""

    levels: int
    roles: tuple[str, ...]
    parallel_approval: bool
    timeout_hours: int | None
    escalate_to_role: str | None = None
    rule_id: UUID | None = None
    rule_name: str | None = None

    @property
    def requires_approval(self) -> bool:
        return self.rule_id is not None


@dataclass(frozen=True)
class RuleValidationResult:
    """Outcome of ``validate_rule``."""

    is_valid: bool
    errors: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_errors(cls, errors: list[str]) -> RuleValidationResult:
        return cls(is_valid=not errors, errors=tuple(errors))
