"""
approval_engines.rule_engine -- Pure approval rule selection and validation.

Responsibility:
    Decide which single approval rule governs an invoice, project what
    approving it would require, and validate rule drafts against the role
    directory at authoring time.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel domain types and helpers.

Invariants enforced:
    - Deterministic selection: among matching rules the winner is the
      highest ``priority``; ties go to the most recently created rule,
      then to the greatest ``rule_id`` string.  The same rule set and
      invoice always yield the same rule.
    - Amount comparisons use the base-currency amount; floats never enter
      the comparison.
    - Purity: no clock access, no I/O, no database.

Failure modes:
    - UnknownCurrencyError when the invoice currency has no configured rate
      and no ``base_currency_amount`` was supplied.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from decimal import Decimal

from approval_engines.tracer import traced_engine
from approval_kernel.db.types import normalize_currency, to_base_currency
from approval_kernel.domain.rules import (
    ApprovalRequirement,
    ApprovalRule,
    ApprovalRuleDraft,
    InvoiceSnapshot,
    RoleDefinition,
    RuleValidationResult,
)

DEFAULT_TIMEOUT_HOURS = 24
MIN_PRIORITY = 0
MAX_PRIORITY = 100
MIN_TIMEOUT_HOURS = 1
MAX_TIMEOUT_HOURS = 720


def base_amount_for(
    invoice: InvoiceSnapshot,
    base_currency: str,
    rates: Mapping[str, Decimal],
) -> Decimal:
    """Invoice amount in the base currency.

    ``base_currency_amount`` wins when the invoicing side already converted.
    """
    if invoice.base_currency_amount is not None:
        return invoice.base_currency_amount
    return to_base_currency(invoice.amount, invoice.currency, base_currency, rates)


def rule_matches(
    rule: ApprovalRule,
    amount: Decimal,
    invoice_currency: str,
    base_currency: str,
    invoice_type: str | None = None,
) -> bool:
    """True when ``rule`` applies to an invoice of ``amount`` (base currency)."""
    if not rule.is_active:
        return False
    if amount < rule.min_amount:
        return False
    if rule.max_amount is not None and amount > rule.max_amount:
        return False
    if rule.currency is not None:
        code = normalize_currency(rule.currency)
        if code not in (normalize_currency(base_currency), normalize_currency(invoice_currency)):
            return False
    if rule.invoice_type is not None and rule.invoice_type != invoice_type:
        return False
    return True


def rank_rules(rules: Iterable[ApprovalRule]) -> list[ApprovalRule]:
    """Order rules best-first: priority, then created_at, then rule_id (all desc)."""
    return sorted(
        rules,
        key=lambda r: (r.priority, r.created_at, str(r.rule_id)),
        reverse=True,
    )


def select_rule(
    rules: Iterable[ApprovalRule],
    amount: Decimal,
    invoice_currency: str,
    base_currency: str,
    invoice_type: str | None = None,
) -> ApprovalRule | None:
    """The single winning rule for the given amount, or None."""
    candidates = [
        r for r in rules
        if rule_matches(r, amount, invoice_currency, base_currency, invoice_type)
    ]
    if not candidates:
        return None
    return rank_rules(candidates)[0]


@traced_engine("rule_selection", "1.0", fingerprint_fields=("invoice", "base_currency"))
def evaluate_rules(
    rules: Sequence[ApprovalRule],
    invoice: InvoiceSnapshot,
    base_currency: str,
    rates: Mapping[str, Decimal],
) -> list[ApprovalRule]:
    """Rules governing ``invoice``: a one-element list, or ``[]`` when no
    approval is required.

    Raises:
        UnknownCurrencyError: invoice currency has no rate.
    """
    amount = base_amount_for(invoice, base_currency, rates)
    winner = select_rule(rules, amount, invoice.currency, base_currency, invoice.invoice_type)
    return [winner] if winner is not None else []


def calculate_required_approvals(
    rules: Sequence[ApprovalRule],
    amount: Decimal,
    currency: str,
    base_currency: str,
    rates: Mapping[str, Decimal],
    invoice_type: str | None = None,
    default_timeout_hours: int = DEFAULT_TIMEOUT_HOURS,
) -> ApprovalRequirement:
    """Preview what approving an invoice of ``amount`` in ``currency`` takes.

    Falls back to a single level with no roles, sequential, with the default
    timeout when no rule matches.
    """
    base_amount = to_base_currency(amount, currency, base_currency, rates)
    rule = select_rule(rules, base_amount, currency, base_currency, invoice_type)
    if rule is None:
        return ApprovalRequirement(
            levels=1,
            roles=(),
            parallel_approval=False,
            timeout_hours=default_timeout_hours,
        )
    return ApprovalRequirement(
        levels=rule.required_approvals,
        roles=tuple(rule.approver_roles),
        parallel_approval=rule.parallel_approval,
        timeout_hours=rule.approval_timeout_hours,
        escalate_to_role=rule.escalate_to_role,
        rule_id=rule.rule_id,
        rule_name=rule.name,
    )


def validate_rule(
    draft: ApprovalRuleDraft,
    role_directory: Iterable[RoleDefinition],
) -> RuleValidationResult:
    """Check a rule draft before it is persisted.

    Every problem is reported; validation does not stop at the first one.
    Inactive roles count as unknown.
    """
    known = {role.name for role in role_directory if role.is_active}
    roles = tuple(draft.approver_roles)
    errors: list[str] = []

    if draft.min_amount < 0:
        errors.append(f"min_amount must not be negative (got {draft.min_amount})")
    if draft.max_amount is not None and draft.min_amount > draft.max_amount:
        errors.append(
            f"min_amount {draft.min_amount} is greater than max_amount {draft.max_amount}"
        )
    if draft.required_approvals < 1:
        errors.append("required_approvals must be at least 1")
    if not roles:
        errors.append("approver_roles must not be empty")
    for name in roles:
        if name not in known:
            errors.append(f"Unknown approver role: {name}")
    if len(set(roles)) != len(roles):
        errors.append("approver_roles contains duplicate roles")
    if draft.required_approvals > len(roles):
        errors.append(
            f"required_approvals ({draft.required_approvals}) exceeds the number "
            f"of approver roles ({len(roles)})"
        )
    if not MIN_PRIORITY <= draft.priority <= MAX_PRIORITY:
        errors.append(
            f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY} (got {draft.priority})"
        )
    if draft.parallel_approval and draft.required_approvals != len(roles):
        errors.append(
            "parallel rules must require an approval from every approver role"
        )
    if draft.escalate_to_role is not None and draft.escalate_to_role not in known:
        errors.append(f"Unknown escalation role: {draft.escalate_to_role}")
    if draft.approval_timeout_hours is not None and not (
        MIN_TIMEOUT_HOURS <= draft.approval_timeout_hours <= MAX_TIMEOUT_HOURS
    ):
        errors.append(
            f"approval_timeout_hours must be between {MIN_TIMEOUT_HOURS} and "
            f"{MAX_TIMEOUT_HOURS} (got {draft.approval_timeout_hours})"
        )

    return RuleValidationResult.from_errors(errors)
