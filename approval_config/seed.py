"""
Seeding of configured roles and rules into the store.

Roles are upserted by name.  Rules are created once: a configured rule
whose name already exists for the owner is left untouched, because rule
content is frozen as soon as a workflow references it.  Every rule passes
through ``RuleAdminService`` so the same validation applies as for
rules authored at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from approval_config.schema import ApprovalConfiguration
from approval_kernel.domain.clock import Clock
from approval_kernel.domain.rules import ApprovalRule, RoleDefinition
from approval_kernel.logging_config import get_logger
from approval_kernel.services.rule_service import RuleAdminService

logger = get_logger("config.seed")


@dataclass(frozen=True)
class SeedResult:
    roles: tuple[RoleDefinition, ...]
    created_rules: tuple[ApprovalRule, ...]
    skipped_rules: tuple[str, ...]


def seed_from_config(
    session: Session,
    config: ApprovalConfiguration,
    owner_id: str,
    actor_id: str,
    clock: Clock | None = None,
) -> SeedResult:
    """Write ``config``'s roles and rules for ``owner_id``.  Flushes only.

    Raises:
        RuleValidationError: a configured rule is invalid.
    """
    admin = RuleAdminService(session, clock)
    currency = config.settings.base_currency

    roles = tuple(
        admin.define_role(role.to_definition(owner_id, currency)) for role in config.roles
    )

    existing = {r.name for r in admin.list_rules(owner_id)}
    created: list[ApprovalRule] = []
    skipped: list[str] = []
    for rule in config.rules:
        if rule.name in existing:
            skipped.append(rule.name)
            continue
        created.append(admin.create_rule(owner_id, rule.to_draft(), created_by=actor_id))

    logger.info(
        "approval_config_seeded",
        extra={
            "config_id": config.config_id,
            "checksum": config.checksum,
            "role_count": len(roles),
            "created_rule_count": len(created),
            "skipped_rule_count": len(skipped),
        },
    )
    return SeedResult(roles=roles, created_rules=tuple(created), skipped_rules=tuple(skipped))
