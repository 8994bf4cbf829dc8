"""
Tests for approval_engines.rule_engine -- pure rule selection and validation.

Covers:
- evaluate_rules(): amount range, currency and invoice-type filters,
  inactive rules, conversion through exchange rates, pre-converted amounts
- Tie-break: priority, then most recently created, then rule id
- calculate_required_approvals(): projection and the no-match default
- validate_rule(): every validation message
- Property: selection is deterministic and independent of input order
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from approval_engines.rule_engine import (
    calculate_required_approvals,
    evaluate_rules,
    rank_rules,
    validate_rule,
)
from approval_engines.tracer import compute_input_fingerprint
from approval_kernel.domain.rules import (
    ApprovalRule,
    ApprovalRuleDraft,
    InvoiceSnapshot,
    RoleDefinition,
)
from approval_kernel.exceptions import UnknownCurrencyError

RATES = {
    "INR": Decimal("1"),
    "USD": Decimal("82.5"),
    "EUR": Decimal("90"),
    "GBP": Decimal("102"),
}
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

DIRECTORY = (
    RoleDefinition(name="MANAGER", level=1, owner_id="o"),
    RoleDefinition(name="FINANCE_HEAD", level=2, owner_id="o"),
    RoleDefinition(name="CFO", level=3, owner_id="o"),
    RoleDefinition(name="RETIRED", level=1, owner_id="o", is_active=False),
)


def make_rule(
    min_amount="0",
    max_amount=None,
    priority=0,
    created_at=T0,
    rule_id=None,
    **kwargs,
) -> ApprovalRule:
    kwargs.setdefault("approver_roles", ("MANAGER",))
    kwargs.setdefault("required_approvals", len(kwargs["approver_roles"]))
    return ApprovalRule(
        rule_id=rule_id or uuid4(),
        owner_id="o",
        name=kwargs.pop("name", "rule"),
        min_amount=Decimal(min_amount),
        max_amount=Decimal(max_amount) if max_amount is not None else None,
        priority=priority,
        created_at=created_at,
        **kwargs,
    )


def make_invoice(amount="83500", currency="INR", **kwargs) -> InvoiceSnapshot:
    return InvoiceSnapshot(
        invoice_id="INV-1", owner_id="o", amount=Decimal(amount), currency=currency, **kwargs,
    )


def evaluate(rules, invoice):
    return evaluate_rules(rules, invoice, base_currency="INR", rates=RATES)


def make_draft(**kwargs) -> ApprovalRuleDraft:
    kwargs.setdefault("name", "draft")
    kwargs.setdefault("min_amount", Decimal("0"))
    kwargs.setdefault("approver_roles", ("MANAGER", "FINANCE_HEAD"))
    kwargs.setdefault("required_approvals", 2)
    return ApprovalRuleDraft(**kwargs)


# =========================================================================
# evaluate_rules()
# =========================================================================


class TestEvaluateRules:
    def test_returns_single_matching_rule(self):
        rule = make_rule(
            "50000", "200000", priority=1, currency="INR",
            approver_roles=("MANAGER", "FINANCE_HEAD"),
        )
        assert evaluate([rule], make_invoice("83500")) == [rule]

    def test_no_match_returns_empty_list(self):
        rule = make_rule("0", "200000")
        assert evaluate([rule], make_invoice("250000")) == []

    def test_bounds_are_inclusive(self):
        rule = make_rule("50000", "200000")
        assert evaluate([rule], make_invoice("50000")) == [rule]
        assert evaluate([rule], make_invoice("200000")) == [rule]
        assert evaluate([rule], make_invoice("49999.99")) == []
        assert evaluate([rule], make_invoice("200000.01")) == []

    def test_open_ended_rule_matches_large_amounts(self):
        rule = make_rule("1000000", None)
        assert evaluate([rule], make_invoice("999999999")) == [rule]

    def test_inactive_rule_is_ignored(self):
        rule = make_rule(is_active=False)
        assert evaluate([rule], make_invoice()) == []

    def test_foreign_currency_is_converted_before_matching(self):
        # 1000 USD = 82500 INR
        rule = make_rule("50000", "100000")
        assert evaluate([rule], make_invoice("1000", "USD")) == [rule]
        assert evaluate([rule], make_invoice("500", "USD")) == []

    def test_pre_converted_amount_wins_over_rates(self):
        rule = make_rule("50000", "100000")
        invoice = make_invoice("10", "USD", base_currency_amount=Decimal("60000"))
        assert evaluate([rule], invoice) == [rule]

    def test_unknown_currency_raises(self):
        with pytest.raises(UnknownCurrencyError) as exc_info:
            evaluate([make_rule()], make_invoice("100", "JPY"))
        assert exc_info.value.currency == "JPY"

    def test_rule_currency_must_be_base_or_invoice_currency(self):
        usd_rule = make_rule(currency="USD")
        inr_rule = make_rule(currency="INR")
        eur_rule = make_rule(currency="EUR")
        assert evaluate([usd_rule], make_invoice("100", "USD")) == [usd_rule]
        assert evaluate([inr_rule], make_invoice("100", "USD")) == [inr_rule]
        assert evaluate([eur_rule], make_invoice("100", "USD")) == []

    def test_invoice_type_filter(self):
        capex = make_rule(invoice_type="CAPEX")
        assert evaluate([capex], make_invoice(invoice_type="CAPEX")) == [capex]
        assert evaluate([capex], make_invoice(invoice_type="OPEX")) == []
        assert evaluate([capex], make_invoice()) == []


class TestTieBreak:
    def test_higher_priority_wins(self):
        low = make_rule(priority=1)
        high = make_rule(priority=5)
        assert evaluate([low, high], make_invoice()) == [high]

    def test_same_priority_most_recent_wins(self):
        older = make_rule(priority=3, created_at=T0)
        newer = make_rule(priority=3, created_at=T0 + timedelta(minutes=1))
        assert evaluate([older, newer], make_invoice()) == [newer]
        assert evaluate([newer, older], make_invoice()) == [newer]

    def test_same_priority_and_time_falls_back_to_rule_id(self):
        a = make_rule(priority=3, rule_id=UUID("00000000-0000-0000-0000-00000000000a"))
        b = make_rule(priority=3, rule_id=UUID("00000000-0000-0000-0000-00000000000b"))
        assert evaluate([a, b], make_invoice()) == [b]

    def test_rank_rules_orders_best_first(self):
        rules = [make_rule(priority=p) for p in (2, 9, 0, 5)]
        assert [r.priority for r in rank_rules(rules)] == [9, 5, 2, 0]


# =========================================================================
# calculate_required_approvals()
# =========================================================================


class TestCalculateRequiredApprovals:
    def test_projects_matching_rule(self):
        rule = make_rule(
            "50000", "200000",
            approver_roles=("MANAGER", "FINANCE_HEAD"),
            approval_timeout_hours=24,
            escalate_to_role="CFO",
        )
        req = calculate_required_approvals(
            [rule], Decimal("83500"), "INR", "INR", RATES,
        )
        assert req.levels == 2
        assert req.roles == ("MANAGER", "FINANCE_HEAD")
        assert req.parallel_approval is False
        assert req.timeout_hours == 24
        assert req.escalate_to_role == "CFO"
        assert req.rule_id == rule.rule_id
        assert req.requires_approval

    def test_default_when_nothing_matches(self):
        req = calculate_required_approvals([], Decimal("10"), "INR", "INR", RATES)
        assert req.levels == 1
        assert req.roles == ()
        assert req.parallel_approval is False
        assert req.timeout_hours == 24
        assert req.rule_id is None
        assert not req.requires_approval

    def test_default_timeout_is_configurable(self):
        req = calculate_required_approvals(
            [], Decimal("10"), "INR", "INR", RATES, default_timeout_hours=48,
        )
        assert req.timeout_hours == 48


# =========================================================================
# validate_rule()
# =========================================================================


class TestValidateRule:
    def test_valid_rule(self):
        result = validate_rule(make_draft(), DIRECTORY)
        assert result.is_valid
        assert result.errors == ()

    def test_min_greater_than_max(self):
        result = validate_rule(
            make_draft(min_amount=Decimal("100"), max_amount=Decimal("50")), DIRECTORY,
        )
        assert not result.is_valid
        assert any("greater than max_amount" in e for e in result.errors)

    def test_required_approvals_below_one(self):
        result = validate_rule(make_draft(required_approvals=0), DIRECTORY)
        assert "required_approvals must be at least 1" in result.errors

    def test_empty_roles(self):
        result = validate_rule(
            make_draft(approver_roles=(), required_approvals=1), DIRECTORY,
        )
        assert "approver_roles must not be empty" in result.errors

    def test_one_error_per_unknown_role(self):
        result = validate_rule(
            make_draft(approver_roles=("GHOST", "PHANTOM"), required_approvals=2), DIRECTORY,
        )
        assert "Unknown approver role: GHOST" in result.errors
        assert "Unknown approver role: PHANTOM" in result.errors

    def test_inactive_role_counts_as_unknown(self):
        result = validate_rule(
            make_draft(approver_roles=("RETIRED",), required_approvals=1), DIRECTORY,
        )
        assert "Unknown approver role: RETIRED" in result.errors

    def test_required_exceeds_roles(self):
        result = validate_rule(make_draft(required_approvals=3), DIRECTORY)
        assert any("exceeds the number of approver roles" in e for e in result.errors)

    @pytest.mark.parametrize("priority", [-1, 101])
    def test_priority_out_of_range(self, priority):
        result = validate_rule(make_draft(priority=priority), DIRECTORY)
        assert any("priority must be between 0 and 100" in e for e in result.errors)

    def test_parallel_rule_requires_every_role(self):
        result = validate_rule(
            make_draft(parallel_approval=True, required_approvals=1), DIRECTORY,
        )
        assert "parallel rules must require an approval from every approver role" in result.errors

    def test_unknown_escalation_role(self):
        result = validate_rule(make_draft(escalate_to_role="BOARD"), DIRECTORY)
        assert "Unknown escalation role: BOARD" in result.errors

    @pytest.mark.parametrize("hours", [0, 721])
    def test_timeout_out_of_range(self, hours):
        result = validate_rule(make_draft(approval_timeout_hours=hours), DIRECTORY)
        assert any("approval_timeout_hours must be between 1 and 720" in e for e in result.errors)

    def test_reports_every_problem(self):
        result = validate_rule(
            make_draft(
                min_amount=Decimal("-1"),
                priority=500,
                escalate_to_role="BOARD",
            ),
            DIRECTORY,
        )
        assert len(result.errors) == 3


# =========================================================================
# Property: deterministic selection
# =========================================================================


rule_specs = st.lists(
    st.tuples(
        st.integers(min_value=0, max_value=100_000),
        st.integers(min_value=0, max_value=100_000),
        st.integers(min_value=0, max_value=3),
        st.integers(min_value=0, max_value=3),
    ),
    min_size=1,
    max_size=8,
)


class TestSelectionDeterminism:
    @settings(max_examples=100, deadline=None)
    @given(specs=rule_specs, amount=st.integers(min_value=0, max_value=100_000), data=st.data())
    def test_same_winner_for_any_order(self, specs, amount, data):
        rules = [
            make_rule(
                str(min(lo, hi)),
                str(max(lo, hi)),
                priority=priority,
                created_at=T0 + timedelta(minutes=minute),
            )
            for lo, hi, priority, minute in specs
        ]
        invoice = make_invoice(str(amount))
        first = evaluate(rules, invoice)
        shuffled = data.draw(st.permutations(rules))

        assert evaluate(shuffled, invoice) == first
        assert evaluate(rules, invoice) == first
        assert len(first) <= 1
        if first:
            winner = first[0]
            matching = [r for r in rules if r.min_amount <= amount <= r.max_amount]
            assert winner.priority == max(r.priority for r in matching)


class TestEngineTrace:
    def test_trace_emitted_with_stable_fingerprint(self, captured_logs):
        rules = [make_rule("0", "100000", priority=1)]
        evaluate(rules, make_invoice("83500"))
        evaluate(rules, make_invoice("83500"))
        evaluate(rules, make_invoice("90000"))

        traces = [r for r in captured_logs() if r["message"] == "APPROVAL_ENGINE_TRACE"]
        assert [t["engine_name"] for t in traces] == ["rule_selection"] * 3
        assert [t["result_count"] for t in traces] == [1, 1, 1]
        first, repeat, other = (t["input_fingerprint"] for t in traces)
        assert first == repeat
        assert first != other

    def test_fingerprint_ignores_unselected_fields(self):
        a = compute_input_fingerprint(("invoice",), {"invoice": make_invoice(), "rates": {"USD": 1}})
        b = compute_input_fingerprint(("invoice",), {"invoice": make_invoice(), "rates": {"USD": 2}})
        assert a == b
        assert len(a) == 16
