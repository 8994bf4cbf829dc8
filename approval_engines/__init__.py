"""
Module: approval_engines
Responsibility:
    Package entrypoint that re-exports the pure calculation engines used by
    the approval services: rule selection and validation, delegation
    authority, workflow transitions, reminder timing and report aggregations.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel domain types and helpers.
    MUST NOT import approval_kernel.services or approval_config.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()``.  The current time is
      passed in by the calling service from its injected Clock.
    - Decimal-only arithmetic for amounts.
    - Determinism: identical inputs always produce identical outputs.
"""

from approval_engines.delegation import (
    delegation_grants_authority,
    is_circular_delegation,
    resolve_authority,
)
from approval_engines.metrics import (
    MULTIPLE_EMERGENCY_BYPASSES,
    completion_velocity,
    detect_bypass_bursts,
    summarize_entries,
)
from approval_engines.reminders import reminder_interval, reminder_is_due
from approval_engines.rule_engine import (
    DEFAULT_TIMEOUT_HOURS,
    base_amount_for,
    calculate_required_approvals,
    evaluate_rules,
    rank_rules,
    rule_matches,
    select_rule,
    validate_rule,
)
from approval_engines.state_machine import (
    TransitionOutcome,
    decide_transition,
    eligible_roles,
    roles_to_notify,
)

__all__ = [
    # Rule engine
    "DEFAULT_TIMEOUT_HOURS",
    "base_amount_for",
    "calculate_required_approvals",
    "evaluate_rules",
    "rank_rules",
    "rule_matches",
    "select_rule",
    "validate_rule",
    # Delegation
    "delegation_grants_authority",
    "is_circular_delegation",
    "resolve_authority",
    # State machine
    "TransitionOutcome",
    "decide_transition",
    "eligible_roles",
    "roles_to_notify",
    # Reminders
    "reminder_interval",
    "reminder_is_due",
    # Metrics
    "MULTIPLE_EMERGENCY_BYPASSES",
    "completion_velocity",
    "detect_bypass_bursts",
    "summarize_entries",
]
