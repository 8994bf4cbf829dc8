"""
Rule services -- role directory, rule administration and rule evaluation.

Responsibility:
    ``RuleAdminService`` maintains the role directory and the approval
    rules of an owner, validating every draft with the pure rule engine
    before it is written.  ``RuleEngineService`` loads an owner's rules and
    delegates selection to ``approval_engines.rule_engine``.

Architecture position:
    Kernel > Services -- imperative shell around the pure rule engine.

Invariants enforced:
    - No rule is persisted unless ``validate_rule`` passes.
    - Rule content is frozen once a workflow references the rule; only
      ``is_active`` may still be toggled.  Running workflows carry their
      own snapshot, so this keeps the rule row an honest record of what
      those workflows were created from.

Failure modes:
    - RuleValidationError with every validation message.
    - RuleNotFoundError / RoleNotFoundError for unknown ids and names.
    - RuleInUseError when editing a referenced rule.
    - UnknownCurrencyError from evaluation when no rate is configured.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from approval_engines.rule_engine import (
    DEFAULT_TIMEOUT_HOURS,
    calculate_required_approvals,
    evaluate_rules,
    validate_rule,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.rules import (
    ApprovalRequirement,
    ApprovalRule,
    ApprovalRuleDraft,
    InvoiceSnapshot,
    RoleDefinition,
    RuleUpdate,
)
from approval_kernel.exceptions import (
    RoleNotFoundError,
    RuleInUseError,
    RuleNotFoundError,
    RuleValidationError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.role import ApprovalRoleModel
from approval_kernel.models.rule import ApprovalRuleModel
from approval_kernel.models.workflow import ApprovalWorkflowModel

logger = get_logger("services.rules")


class RuleAdminService:
    """
    Authoring side of the rule engine.

    Contract:
        Flushes within the caller's transaction; never commits.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    # Role directory

    def define_role(self, role: RoleDefinition) -> RoleDefinition:
        """Create ``role``, or overwrite the role of the same name and owner."""
        row = self._session.execute(
            select(ApprovalRoleModel).where(
                ApprovalRoleModel.owner_id == role.owner_id,
                ApprovalRoleModel.name == role.name,
            )
        ).scalar_one_or_none()
        created = row is None
        if row is None:
            row = ApprovalRoleModel(
                owner_id=role.owner_id, name=role.name, created_at=self._clock.now(),
            )
            self._session.add(row)
        row.level = role.level
        row.max_approval_amount = role.max_approval_amount
        row.currency = role.currency
        row.can_approve = role.can_approve
        row.can_reject = role.can_reject
        row.can_delegate = role.can_delegate
        row.can_modify = role.can_modify
        row.is_active = role.is_active
        self._session.flush()
        logger.info(
            "approval_role_defined",
            extra={"role": role.name, "role_level": role.level, "role_created": created},
        )
        return row.to_dto()

    def get_role(self, owner_id: str, name: str) -> RoleDefinition:
        row = self._session.execute(
            select(ApprovalRoleModel).where(
                ApprovalRoleModel.owner_id == owner_id,
                ApprovalRoleModel.name == name,
            )
        ).scalar_one_or_none()
        if row is None:
            raise RoleNotFoundError(name)
        return row.to_dto()

    def list_roles(self, owner_id: str, include_inactive: bool = False) -> list[RoleDefinition]:
        stmt = select(ApprovalRoleModel).where(ApprovalRoleModel.owner_id == owner_id)
        if not include_inactive:
            stmt = stmt.where(ApprovalRoleModel.is_active.is_(True))
        rows = self._session.execute(
            stmt.order_by(ApprovalRoleModel.level, ApprovalRoleModel.name)
        ).scalars().all()
        return [r.to_dto() for r in rows]

    # Rules

    def _validate(self, owner_id: str, draft: ApprovalRuleDraft) -> None:
        result = validate_rule(draft, self.list_roles(owner_id))
        if not result.is_valid:
            logger.warning(
                "approval_rule_rejected",
                extra={"rule_name": draft.name, "errors": list(result.errors)},
            )
            raise RuleValidationError(draft.name, result.errors)

    def _load(self, rule_id: UUID) -> ApprovalRuleModel:
        row = self._session.get(ApprovalRuleModel, rule_id)
        if row is None:
            raise RuleNotFoundError(str(rule_id))
        return row

    def create_rule(
        self,
        owner_id: str,
        draft: ApprovalRuleDraft,
        created_by: str,
    ) -> ApprovalRule:
        """Validate and persist a new rule."""
        self._validate(owner_id, draft)
        row = ApprovalRuleModel(
            owner_id=owner_id,
            created_by=created_by,
            created_at=self._clock.now(),
        )
        row.apply_draft(draft)
        self._session.add(row)
        self._session.flush()
        logger.info(
            "approval_rule_created",
            extra={
                "rule_id": str(row.id),
                "rule_name": row.name,
                "priority": row.priority,
            },
        )
        return row.to_dto()

    def workflow_count(self, rule_id: UUID) -> int:
        return self._session.execute(
            select(func.count())
            .select_from(ApprovalWorkflowModel)
            .where(ApprovalWorkflowModel.rule_id == rule_id)
        ).scalar_one()

    def update_rule(self, rule_id: UUID, update: RuleUpdate, updated_by: str) -> ApprovalRule:
        """
        Apply a partial update.

        Raises:
            RuleNotFoundError: unknown ``rule_id``.
            RuleInUseError: content change on a rule referenced by a workflow.
            RuleValidationError: the updated rule would be invalid.
        """
        row = self._load(rule_id)
        if update.is_empty:
            return row.to_dto()

        if not update.only_toggles_activity:
            in_use = self.workflow_count(rule_id)
            if in_use:
                raise RuleInUseError(str(rule_id), in_use)

        draft = update.apply_to(row.to_dto().to_draft())
        self._validate(row.owner_id, draft)
        row.apply_draft(draft)
        row.updated_at = self._clock.now()
        self._session.flush()
        logger.info(
            "approval_rule_updated",
            extra={
                "rule_id": str(rule_id),
                "fields": sorted(update.changes()),
                "updated_by": updated_by,
            },
        )
        return row.to_dto()

    def deactivate_rule(self, rule_id: UUID, updated_by: str) -> ApprovalRule:
        return self.update_rule(rule_id, RuleUpdate(is_active=False), updated_by)

    def get_rule(self, rule_id: UUID) -> ApprovalRule:
        return self._load(rule_id).to_dto()

    def list_rules(self, owner_id: str, active_only: bool = False) -> list[ApprovalRule]:
        stmt = select(ApprovalRuleModel).where(ApprovalRuleModel.owner_id == owner_id)
        if active_only:
            stmt = stmt.where(ApprovalRuleModel.is_active.is_(True))
        rows = self._session.execute(stmt).scalars().all()
        return [r.to_dto() for r in rows]


class RuleEngineService:
    """
    Evaluation side of the rule engine.

    Reads rules from the store and hands them to the pure engine together
    with the configured base currency and exchange rates.
    """

    def __init__(
        self,
        session: Session,
        base_currency: str = "INR",
        rates: Mapping[str, Decimal] | None = None,
        default_timeout_hours: int = DEFAULT_TIMEOUT_HOURS,
    ):
        self._session = session
        self._base_currency = base_currency
        self._rates = dict(rates or {})
        self._default_timeout_hours = default_timeout_hours

    @property
    def base_currency(self) -> str:
        return self._base_currency

    @property
    def rates(self) -> dict[str, Decimal]:
        return dict(self._rates)

    def _active_rules(self, owner_id: str) -> list[ApprovalRule]:
        rows = self._session.execute(
            select(ApprovalRuleModel).where(
                ApprovalRuleModel.owner_id == owner_id,
                ApprovalRuleModel.is_active.is_(True),
            )
        ).scalars().all()
        return [r.to_dto() for r in rows]

    def evaluate_rules(self, invoice: InvoiceSnapshot) -> list[ApprovalRule]:
        """The single rule governing ``invoice`` as a list, or ``[]``."""
        matched = evaluate_rules(
            rules=self._active_rules(invoice.owner_id),
            invoice=invoice,
            base_currency=self._base_currency,
            rates=self._rates,
        )
        logger.info(
            "approval_rules_evaluated",
            extra={
                "invoice_id": invoice.invoice_id,
                "matched_rule_id": str(matched[0].rule_id) if matched else None,
            },
        )
        return matched

    def calculate_required_approvals(
        self,
        owner_id: str,
        amount: Decimal,
        currency: str,
        invoice_type: str | None = None,
    ) -> ApprovalRequirement:
        return calculate_required_approvals(
            self._active_rules(owner_id),
            amount,
            currency,
            self._base_currency,
            self._rates,
            invoice_type=invoice_type,
            default_timeout_hours=self._default_timeout_hours,
        )
