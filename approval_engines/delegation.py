"""
approval_engines.delegation -- Pure delegation and authority resolution.

Responsibility:
    Decide whether a principal may act as a role on a workflow, either
    through direct role membership or through a delegation that is live
    at ``now`` and whose amount cap covers the invoice.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Membership is passed in
    as a boolean; the caller resolves it through a RoleMembershipProvider.

Invariants enforced:
    - The delegation window is inclusive: ``start_date <= now <= end_date``.
    - The amount cap is inclusive: ``amount <= max_amount``.
    - Overlapping delegations combine by logical OR; the first granting
      delegation (ordered by delegation_id string) is reported so the
      result is deterministic.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from approval_kernel.domain.delegation import ApprovalDelegation, AuthorityDecision


def delegation_grants_authority(
    delegation: ApprovalDelegation,
    user_id: str,
    role: str,
    amount: Decimal,
    now: datetime,
) -> bool:
    """True when ``delegation`` lets ``user_id`` act as ``role`` at ``now``."""
    if not delegation.is_active:
        return False
    if delegation.from_role != role or delegation.to_user_id != user_id:
        return False
    if not delegation.start_date <= now <= delegation.end_date:
        return False
    if delegation.max_amount is not None and amount > delegation.max_amount:
        return False
    return True


def resolve_authority(
    *,
    user_id: str,
    role: str,
    amount: Decimal,
    now: datetime,
    holds_role: bool,
    role_limit: Decimal | None = None,
    delegations: Iterable[ApprovalDelegation] = (),
) -> AuthorityDecision:
    """Combine direct membership and delegations into one decision.

    Direct membership counts only when the role's approval limit (if any)
    covers ``amount``; otherwise delegations are still consulted.
    """
    if holds_role:
        if role_limit is None or amount <= role_limit:
            return AuthorityDecision(granted=True, reason="direct role membership")
        direct_reason = (
            f"amount {amount} exceeds the {role} approval limit {role_limit}"
        )
    else:
        direct_reason = f"{user_id} does not hold role {role}"

    candidates = sorted(
        (d for d in delegations if d.from_role == role and d.to_user_id == user_id),
        key=lambda d: str(d.delegation_id),
    )
    for delegation in candidates:
        if delegation_grants_authority(delegation, user_id, role, amount, now):
            return AuthorityDecision(
                granted=True,
                reason="active delegation",
                via_delegation_id=delegation.delegation_id,
            )

    if candidates:
        return AuthorityDecision(
            granted=False,
            reason=f"{direct_reason}; no delegation covers this amount and time",
        )
    return AuthorityDecision(granted=False, reason=f"{direct_reason} and has no delegation")


def is_circular_delegation(
    active: Iterable[ApprovalDelegation],
    from_role: str,
    delegated_by: str,
    to_user_id: str,
) -> bool:
    """True when ``to_user_id`` already delegated ``from_role`` to ``delegated_by``."""
    return any(
        d.is_active
        and d.from_role == from_role
        and d.delegated_by == to_user_id
        and d.to_user_id == delegated_by
        for d in active
    )
