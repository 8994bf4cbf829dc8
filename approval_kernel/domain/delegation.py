"""
Delegation and role membership domain types.

Responsibility:
    Value objects for time-bounded, amount-capped grants of a role's
    approval authority, and the ``RoleMembershipProvider`` protocol through
    which callers supply a principal's direct role memberships.

Architecture position:
    Kernel > Domain -- pure value objects, zero I/O.

Invariants enforced:
    - ``start_date < end_date`` for every delegation (checked at creation
      and by a DB check constraint).
    - Membership is supplied, never derived: the kernel does not
      authenticate principals.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, runtime_checkable
from uuid import UUID


class DelegationType(str, Enum):
    TEMPORARY = "TEMPORARY"
    VACATION = "VACATION"
    EMERGENCY = "EMERGENCY"


@dataclass(frozen=True)
class ApprovalDelegation:
    """A grant of ``from_role`` authority to ``to_user_id``."""

    delegation_id: UUID
    owner_id: str
    from_role: str
    delegated_by: str
    to_user_id: str
    start_date: datetime
    end_date: datetime
    delegation_type: DelegationType = DelegationType.TEMPORARY
    reason: str | None = None
    max_amount: Decimal | None = None
    currency: str | None = None
    is_active: bool = True
    usage_count: int = 0
    last_used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AuthorityDecision:
    """Whether a principal may act as a role, and on what basis."""

    granted: bool
    reason: str
    via_delegation_id: UUID | None = None

    @property
    def is_direct(self) -> bool:
        return self.granted and self.via_delegation_id is None


@runtime_checkable
class RoleMembershipProvider(Protocol):
    """Supplies a principal's direct role memberships."""

    def has_role(self, user_id: str, role: str) -> bool: ...

    def get_user_roles(self, user_id: str) -> frozenset[str]: ...

    def members_of(self, role: str) -> tuple[str, ...]: ...


class StaticRoleMembership:
    """In-memory membership table: ``{user_id: roles}``."""

    def __init__(self, memberships: Mapping[str, Iterable[str]] | None = None):
        self._memberships: dict[str, frozenset[str]] = {
            user: frozenset(roles) for user, roles in (memberships or {}).items()
        }

    def has_role(self, user_id: str, role: str) -> bool:
        return role in self._memberships.get(user_id, frozenset())

    def get_user_roles(self, user_id: str) -> frozenset[str]:
        return self._memberships.get(user_id, frozenset())

    def grant(self, user_id: str, role: str) -> None:
        self._memberships[user_id] = self.get_user_roles(user_id) | {role}

    def members_of(self, role: str) -> tuple[str, ...]:
        return tuple(sorted(u for u, roles in self._memberships.items() if role in roles))
