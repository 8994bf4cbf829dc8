"""
DelegationService -- creation, lookup and use of approval delegations.

Responsibility:
    Validates and persists delegations of a role's approval authority,
    answers "may this principal act as this role for this amount now?"
    by combining the caller-supplied role membership with the stored
    delegations, and keeps delegation usage statistics.

Architecture position:
    Kernel > Services -- imperative shell around
    ``approval_engines.delegation``.

Invariants enforced:
    - start_date < end_date, and the window has not already ended.
    - The delegator holds the role directly and the role allows delegation.
    - No self-delegation and no circular delegation (an active reverse
      delegation of the same role).
    - Overlapping delegations to the same principal are allowed; any one
      of them grants authority.

Failure modes:
    - InvalidDelegationError for window, self, circular and amount checks.
    - RoleNotFoundError when the role is not in the owner's directory.
    - PermissionDeniedError when the delegator does not hold the role.
    - DelegationNotFoundError when revoking an unknown delegation.

Audit relevance:
    Every created delegation produces a DELEGATION_CREATED audit entry.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from approval_engines.delegation import is_circular_delegation, resolve_authority
from approval_kernel.domain.audit import AuditEntryData, AuditEventKind
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.delegation import (
    ApprovalDelegation,
    AuthorityDecision,
    DelegationType,
    RoleMembershipProvider,
)
from approval_kernel.exceptions import (
    DelegationNotFoundError,
    InvalidDelegationError,
    PermissionDeniedError,
    RoleNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.delegation import ApprovalDelegationModel
from approval_kernel.models.role import ApprovalRoleModel
from approval_kernel.services.audit_ledger import AuditLedger

logger = get_logger("services.delegation")


class DelegationService:
    """
    Contract:
        Flushes within the caller's transaction; never commits.

    Guarantees:
        - ``resolve_authority`` is read-only.
        - ``record_usage`` is the only write on the action path.
    """

    def __init__(
        self,
        session: Session,
        audit: AuditLedger,
        membership: RoleMembershipProvider,
        clock: Clock | None = None,
    ):
        self._session = session
        self._audit = audit
        self._membership = membership
        self._clock = clock or SystemClock()

    @property
    def membership(self) -> RoleMembershipProvider:
        return self._membership

    def _role(self, owner_id: str, name: str) -> ApprovalRoleModel | None:
        return self._session.execute(
            select(ApprovalRoleModel).where(
                ApprovalRoleModel.owner_id == owner_id,
                ApprovalRoleModel.name == name,
            )
        ).scalar_one_or_none()

    def create_delegation(
        self,
        *,
        owner_id: str,
        from_role: str,
        delegated_by: str,
        to_user_id: str,
        start_date: datetime,
        end_date: datetime,
        delegation_type: DelegationType = DelegationType.TEMPORARY,
        reason: str | None = None,
        max_amount: Decimal | None = None,
        currency: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> ApprovalDelegation:
        """Validate, persist and audit a new delegation."""
        now = self._clock.now()

        if start_date >= end_date:
            raise InvalidDelegationError(from_role, to_user_id, "start_date must be before end_date")
        if end_date <= now:
            raise InvalidDelegationError(from_role, to_user_id, "delegation window has already ended")
        if delegated_by == to_user_id:
            raise InvalidDelegationError(from_role, to_user_id, "cannot delegate to oneself")
        if max_amount is not None and max_amount < 0:
            raise InvalidDelegationError(from_role, to_user_id, "max_amount must not be negative")

        role = self._role(owner_id, from_role)
        if role is None or not role.is_active:
            raise RoleNotFoundError(from_role)
        if not role.can_delegate:
            raise InvalidDelegationError(from_role, to_user_id, "role does not allow delegation")
        if not self._membership.has_role(delegated_by, from_role):
            raise PermissionDeniedError(delegated_by, from_role, "delegator does not hold the role")

        reverse = self._session.execute(
            select(ApprovalDelegationModel).where(
                ApprovalDelegationModel.owner_id == owner_id,
                ApprovalDelegationModel.from_role == from_role,
                ApprovalDelegationModel.delegated_by == to_user_id,
                ApprovalDelegationModel.to_user_id == delegated_by,
                ApprovalDelegationModel.is_active.is_(True),
                ApprovalDelegationModel.end_date >= now,
            )
        ).scalars().all()
        if is_circular_delegation(
            [r.to_dto() for r in reverse], from_role, delegated_by, to_user_id,
        ):
            raise InvalidDelegationError(from_role, to_user_id, "circular delegation")

        row = ApprovalDelegationModel(
            owner_id=owner_id,
            from_role=from_role,
            delegated_by=delegated_by,
            to_user_id=to_user_id,
            start_date=start_date,
            end_date=end_date,
            delegation_type=DelegationType(delegation_type).value,
            reason=reason,
            max_amount=max_amount,
            currency=currency,
            is_active=True,
            usage_count=0,
            created_at=now,
        )
        self._session.add(row)
        self._session.flush()
        delegation = row.to_dto()

        self._audit.create_audit_entry(
            AuditEntryData(
                event=AuditEventKind.DELEGATION_CREATED,
                entity_type="ApprovalDelegation",
                entity_id=str(delegation.delegation_id),
                actor_id=delegated_by,
                actor_role=from_role,
                new_values={
                    "from_role": from_role,
                    "to_user_id": to_user_id,
                    "start_date": start_date,
                    "end_date": end_date,
                    "delegation_type": delegation.delegation_type,
                    "max_amount": max_amount,
                    "reason": reason,
                },
                ip_address=ip_address,
                user_agent=user_agent,
                session_id=session_id,
                owner_id=owner_id,
            )
        )
        logger.info(
            "delegation_created",
            extra={
                "delegation_id": str(delegation.delegation_id),
                "from_role": from_role,
                "to_user_id": to_user_id,
                "end_date": end_date,
            },
        )
        return delegation

    def delegations_for(self, owner_id: str, user_id: str, role: str | None = None) -> list[ApprovalDelegation]:
        """All active-flagged delegations to ``user_id``, whatever their window."""
        stmt = select(ApprovalDelegationModel).where(
            ApprovalDelegationModel.owner_id == owner_id,
            ApprovalDelegationModel.to_user_id == user_id,
            ApprovalDelegationModel.is_active.is_(True),
        )
        if role is not None:
            stmt = stmt.where(ApprovalDelegationModel.from_role == role)
        return [r.to_dto() for r in self._session.execute(stmt).scalars().all()]

    def find_active_delegations(
        self,
        owner_id: str,
        user_id: str,
        role: str | None = None,
        at: datetime | None = None,
    ) -> list[ApprovalDelegation]:
        """Delegations to ``user_id`` whose window contains ``at`` (default now)."""
        moment = at or self._clock.now()
        return [
            d for d in self.delegations_for(owner_id, user_id, role)
            if d.start_date <= moment <= d.end_date
        ]

    def resolve_authority(
        self,
        owner_id: str,
        user_id: str,
        role: str,
        amount: Decimal,
    ) -> AuthorityDecision:
        """May ``user_id`` act as ``role`` on an invoice of ``amount`` right now?"""
        role_row = self._role(owner_id, role)
        return resolve_authority(
            user_id=user_id,
            role=role,
            amount=amount,
            now=self._clock.now(),
            holds_role=self._membership.has_role(user_id, role),
            role_limit=role_row.max_approval_amount if role_row is not None else None,
            delegations=self.delegations_for(owner_id, user_id, role),
        )

    def record_usage(self, delegation_id: UUID) -> None:
        row = self._session.get(ApprovalDelegationModel, delegation_id)
        if row is None:
            return
        row.usage_count += 1
        row.last_used_at = self._clock.now()
        self._session.flush()
        logger.debug(
            "delegation_used",
            extra={"delegation_id": str(delegation_id), "usage_count": row.usage_count},
        )

    def revoke_delegation(self, delegation_id: UUID, revoked_by: str) -> ApprovalDelegation:
        row = self._session.get(ApprovalDelegationModel, delegation_id)
        if row is None:
            raise DelegationNotFoundError(str(delegation_id))
        row.is_active = False
        self._session.flush()
        logger.info(
            "delegation_revoked",
            extra={"delegation_id": str(delegation_id), "revoked_by": revoked_by},
        )
        return row.to_dto()

    def deactivate_expired_delegations(self) -> int:
        """Clear ``is_active`` on every delegation whose window has ended."""
        now = self._clock.now()
        result = self._session.execute(
            update(ApprovalDelegationModel)
            .where(
                ApprovalDelegationModel.is_active.is_(True),
                ApprovalDelegationModel.end_date < now,
            )
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        )
        count = result.rowcount or 0
        logger.info("expired_delegations_deactivated", extra={"count": count})
        return count
