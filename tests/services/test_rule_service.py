"""
Tests for RuleAdminService and RuleEngineService.

Covers:
- Role directory: define (create/overwrite), get, list
- create_rule(): validation against the stored directory
- update_rule(): partial updates, rules in use, activity toggle
- RuleEngineService: evaluation over stored rules, requirement projection
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from approval_kernel.domain.rules import ApprovalRuleDraft, RoleDefinition, RuleUpdate
from approval_kernel.exceptions import (
    RoleNotFoundError,
    RuleInUseError,
    RuleNotFoundError,
    RuleValidationError,
    UnknownCurrencyError,
)


def draft(**kwargs) -> ApprovalRuleDraft:
    kwargs.setdefault("name", "Marketing spend")
    kwargs.setdefault("min_amount", Decimal("0"))
    kwargs.setdefault("max_amount", Decimal("10000"))
    kwargs.setdefault("approver_roles", ("MANAGER",))
    kwargs.setdefault("invoice_type", "MARKETING")
    kwargs.setdefault("priority", 5)
    return ApprovalRuleDraft(**kwargs)


class TestRoleDirectory:
    def test_seeded_roles_listed_by_level(self, seeded, rule_admin, owner_id):
        names = [r.name for r in rule_admin.list_roles(owner_id)]
        assert names == ["MANAGER", "PROCUREMENT", "FINANCE_HEAD", "CFO"]

    def test_define_overwrites_existing(self, seeded, rule_admin, owner_id):
        rule_admin.define_role(
            RoleDefinition(
                name="MANAGER", level=1, owner_id=owner_id, max_approval_amount=Decimal("300000"),
            )
        )
        assert rule_admin.get_role(owner_id, "MANAGER").max_approval_amount == Decimal("300000")

    def test_inactive_roles_hidden_by_default(self, seeded, rule_admin, owner_id):
        rule_admin.define_role(RoleDefinition(name="AUDITOR", level=4, owner_id=owner_id, is_active=False))
        assert "AUDITOR" not in [r.name for r in rule_admin.list_roles(owner_id)]
        assert "AUDITOR" in [r.name for r in rule_admin.list_roles(owner_id, include_inactive=True)]

    def test_unknown_role(self, rule_admin, owner_id):
        with pytest.raises(RoleNotFoundError):
            rule_admin.get_role(owner_id, "BOARD")


class TestCreateRule:
    def test_create(self, seeded, rule_admin, owner_id):
        rule = rule_admin.create_rule(owner_id, draft(), "admin-1")
        assert rule.name == "Marketing spend"
        assert rule.approver_roles == ("MANAGER",)
        assert rule_admin.get_rule(rule.rule_id) == rule

    def test_invalid_rule_rejected(self, seeded, rule_admin, owner_id):
        with pytest.raises(RuleValidationError) as exc_info:
            rule_admin.create_rule(owner_id, draft(approver_roles=("BOARD",)), "admin-1")
        assert "Unknown approver role: BOARD" in exc_info.value.errors

    def test_roles_of_other_owner_unknown(self, seeded, rule_admin):
        with pytest.raises(RuleValidationError):
            rule_admin.create_rule("org-other", draft(), "admin-1")

    def test_list_rules(self, seeded, rule_admin, owner_id):
        assert len(rule_admin.list_rules(owner_id)) == 4
        assert rule_admin.list_rules("org-other") == []


class TestUpdateRule:
    def test_partial_update(self, seeded, rule_admin, owner_id):
        rule = rule_admin.create_rule(owner_id, draft(), "admin-1")
        updated = rule_admin.update_rule(
            rule.rule_id, RuleUpdate(max_amount=None, priority=7), "admin-1",
        )
        assert updated.max_amount is None
        assert updated.priority == 7
        assert updated.name == rule.name

    def test_update_validated(self, seeded, rule_admin, owner_id):
        rule = rule_admin.create_rule(owner_id, draft(), "admin-1")
        with pytest.raises(RuleValidationError):
            rule_admin.update_rule(rule.rule_id, RuleUpdate(priority=101), "admin-1")

    def test_rule_in_use_cannot_change(self, create_workflow, rule_named, rule_admin):
        create_workflow(amount="83500")
        rule = rule_named("Mid-value invoices")
        with pytest.raises(RuleInUseError) as exc_info:
            rule_admin.update_rule(rule.rule_id, RuleUpdate(max_amount=Decimal("300000")), "admin-1")
        assert exc_info.value.workflow_count == 1

    def test_rule_in_use_can_be_deactivated(self, create_workflow, rule_named, rule_admin):
        create_workflow(amount="83500")
        rule = rule_named("Mid-value invoices")
        assert not rule_admin.deactivate_rule(rule.rule_id, "admin-1").is_active

    def test_unknown_rule(self, rule_admin):
        with pytest.raises(RuleNotFoundError):
            rule_admin.update_rule(uuid4(), RuleUpdate(priority=1), "admin-1")


class TestRuleEngineService:
    def test_evaluates_stored_rules(self, rule_engine_service, rule_named, make_invoice):
        [rule] = rule_engine_service.evaluate_rules(make_invoice("83500"))
        assert rule.rule_id == rule_named("Mid-value invoices").rule_id

    def test_no_rule_above_largest_band(self, seeded, rule_engine_service, make_invoice):
        assert rule_engine_service.evaluate_rules(make_invoice("6000000")) == []

    def test_inactive_rule_skipped(self, rule_engine_service, rule_admin, rule_named, make_invoice):
        rule_admin.deactivate_rule(rule_named("Mid-value invoices").rule_id, "admin-1")
        assert rule_engine_service.evaluate_rules(make_invoice("83500")) == []

    def test_invoice_type_rule_outranks_amount_band(self, rule_engine_service, rule_named, make_invoice):
        [rule] = rule_engine_service.evaluate_rules(make_invoice("83500", invoice_type="CAPEX"))
        assert rule.rule_id == rule_named("Capital purchases").rule_id

    def test_unknown_currency(self, seeded, rule_engine_service, make_invoice):
        with pytest.raises(UnknownCurrencyError):
            rule_engine_service.evaluate_rules(make_invoice("100", currency="JPY"))

    def test_calculate_required_approvals(self, seeded, rule_engine_service, owner_id):
        req = rule_engine_service.calculate_required_approvals(owner_id, Decimal("3000"), "USD")
        # 3000 USD = 247500 INR
        assert req.rule_name == "Large invoices"
        assert req.levels == 3
        assert req.roles == ("MANAGER", "FINANCE_HEAD", "CFO")
        assert req.timeout_hours == 72

    def test_default_requirement(self, seeded, rule_engine_service, owner_id):
        req = rule_engine_service.calculate_required_approvals(owner_id, Decimal("6000000"), "INR")
        assert not req.requires_approval
        assert req.levels == 1
        assert req.timeout_hours == 24
