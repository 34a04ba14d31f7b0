"""
Tests for the rule engine -- conditions, actions, rule sets and decision tables.

Covers:
- Text and structured conditions compile to the same behaviour
- Actions run against a copy; the caller's entity is never mutated
- Every evaluation leaves one audited RuleExecution
- Rule set modes: Sequential halting, FirstMatch, Parallel merge order
- Decision-table hit policies (Priority, First, Unique, Collect)
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from erp_engines.rules.decision_table import TableRow, lookup
from erp_engines.rules.types import ExecutionMode, ExecutionResult, HitPolicy, RuleType
from erp_kernel.exceptions import (
    DuplicateCodeError,
    ExpressionSyntaxError,
    ImmutabilityViolationError,
    UniqueHitPolicyViolationError,
)
from erp_services._rule_types import MemberSpec
from erp_services.models.rules import RuleExecution

ORDER = "SalesOrder"


@pytest.fixture
def discount_table(rules):
    """Gold customers: 15% over 1000, 10% over 500."""
    return rules.create_decision_table(
        "GOLD-DISCOUNT",
        "Gold discount",
        ["tier", "amount"],
        ["discount"],
        HitPolicy.PRIORITY,
        rows=[
            {"inputs": {"tier": "Gold", "amount": ">1000"}, "outputs": {"discount": 15}, "priority": 2},
            {"inputs": {"tier": "Gold", "amount": ">500"}, "outputs": {"discount": 10}, "priority": 1},
        ],
    )


class TestDecisionTables:
    def test_priority_table_picks_highest_priority_match(self, rules, discount_table):
        assert rules.lookup("GOLD-DISCOUNT", {"tier": "Gold", "amount": 1200}).value("discount") == 15
        assert rules.lookup("GOLD-DISCOUNT", {"tier": "Gold", "amount": 700}).value("discount") == 10

        miss = rules.lookup("GOLD-DISCOUNT", {"tier": "Silver", "amount": 5000})
        assert miss.is_empty
        assert miss.matched_rows == ()

    def test_lookup_is_deterministic(self, rules, discount_table):
        results = {
            rules.lookup("GOLD-DISCOUNT", {"tier": "Gold", "amount": 1200}).matched_rows
            for _ in range(5)
        }
        assert results == {(1,)}

    def test_first_policy_takes_earliest_row(self):
        rows = [
            TableRow(row_number=1, inputs={"region": "[1..10]"}, outputs={"lane": "A"}),
            TableRow(row_number=2, inputs={"region": "*"}, outputs={"lane": "B"}),
        ]

        assert lookup(
            table_code="LANES", hit_policy=HitPolicy.FIRST, rows=rows, inputs={"region": Decimal(5)}
        ).first == {"lane": "A"}
        assert lookup(
            table_code="LANES", hit_policy=HitPolicy.FIRST, rows=rows, inputs={"region": Decimal(11)}
        ).first == {"lane": "B"}

    def test_collect_returns_every_match_in_row_order(self, rules):
        rules.create_decision_table(
            "FLAGS",
            "Review flags",
            ["amount"],
            ["flag"],
            HitPolicy.COLLECT,
            rows=[
                {"inputs": {"amount": ">=100"}, "outputs": {"flag": "review"}},
                {"inputs": {"amount": ">=1000"}, "outputs": {"flag": "audit"}},
            ],
        )

        result = rules.lookup("FLAGS", {"amount": 5000})
        assert [o["flag"] for o in result.outputs] == ["review", "audit"]

    def test_unique_policy_rejects_overlapping_rows(self, rules):
        rules.create_decision_table(
            "OVERLAP",
            "Overlapping",
            ["amount"],
            ["band"],
            HitPolicy.UNIQUE,
            rows=[
                {"inputs": {"amount": "[0..100]"}, "outputs": {"band": "low"}},
                {"inputs": {"amount": "[50..200]"}, "outputs": {"band": "mid"}},
            ],
        )

        assert rules.lookup("OVERLAP", {"amount": 20}).value("band") == "low"
        with pytest.raises(UniqueHitPolicyViolationError):
            rules.lookup("OVERLAP", {"amount": 75})

    def test_output_expression_sees_inputs(self, rules):
        rules.create_decision_table(
            "FEE",
            "Fee",
            ["amount"],
            ["fee"],
            HitPolicy.FIRST,
            rows=[{"inputs": {"amount": "*"}, "outputs": {"fee": {"expression": "amount * 0.02"}}}],
        )

        assert Decimal(str(rules.lookup("FEE", {"amount": 250}).value("fee"))) == Decimal("5")


class TestRuleEvaluation:
    def test_matching_rule_applies_actions_to_a_copy(self, rules):
        rules.create_rule(
            "BIG-ORDER",
            "Flag big orders",
            ORDER,
            RuleType.DERIVATION,
            "amount > 1000 and customer.tier in ['Gold', 'Platinum']",
            [
                {"type": "set", "field": "review", "value": True},
                {"type": "increment", "field": "score", "by": 5},
                {"type": "append", "field": "tags", "value": "big"},
            ],
        )
        entity = {"amount": 1500, "customer": {"tier": "Gold"}, "score": 1}

        result = rules.evaluate("BIG-ORDER", entity)

        assert result.matched
        assert result.execution.result == ExecutionResult.MATCHED
        assert result.context["review"] is True
        assert result.context["score"] == 6
        assert result.context["tags"] == ["big"]
        assert entity == {"amount": 1500, "customer": {"tier": "Gold"}, "score": 1}

    def test_structured_condition_and_else_branch(self, rules):
        rules.create_rule(
            "SMALL",
            "Small order",
            ORDER,
            RuleType.ROUTING,
            {"field": "amount", "operator": "lessThan", "value": 100},
            [{"type": "set", "field": "queue", "value": "fast"}],
            else_actions=[{"type": "set", "field": "queue", "value": "standard"}],
        )

        assert rules.evaluate("SMALL", {"amount": 50}).context["queue"] == "fast"
        missed = rules.evaluate("SMALL", {"amount": 500})
        assert not missed.matched
        assert missed.execution.result == ExecutionResult.NOT_MATCHED
        assert missed.context["queue"] == "standard"

    def test_emit_action_publishes_event(self, rules, event_bus):
        rules.create_rule(
            "NOTIFY",
            "Notify",
            ORDER,
            RuleType.ROUTING,
            "amount >= 10",
            [{"type": "emit", "topic": "orders.flagged", "payload": {"reason": "size"}}],
        )

        rules.evaluate("NOTIFY", {"amount": 10})

        events = event_bus.of_topic("orders.flagged")
        assert len(events) == 1
        assert events[0].payload["reason"] == "size"
        assert events[0].payload["rule_code"] == "NOTIFY"

    def test_fail_action_records_failed_execution(self, rules):
        rules.create_rule(
            "NO-NEGATIVE",
            "Reject negative amounts",
            ORDER,
            RuleType.VALIDATION,
            "amount < 0",
            [{"type": "fail", "message": "amount must not be negative"}],
        )

        result = rules.evaluate("NO-NEGATIVE", {"amount": -5})

        assert result.execution.result == ExecutionResult.FAILED
        assert "negative" in result.execution.error

    def test_naive_timestamps_compare_against_now_as_utc(self, rules):
        rules.create_rule("STALE", "Stale order", ORDER, RuleType.VALIDATION, "created_at < now()", [])

        result = rules.evaluate("STALE", {"created_at": datetime(2024, 1, 1, 8, 0)})

        assert result.matched
        assert result.execution.result == ExecutionResult.MATCHED

    def test_runtime_condition_error_records_error_execution(self, rules):
        rules.create_rule(
            "FAR-DUE",
            "Far due date",
            ORDER,
            RuleType.DERIVATION,
            "due_date + grace_days > due_date",
            [{"type": "set", "field": "flagged", "value": True}],
        )

        result = rules.evaluate("FAR-DUE", {"due_date": date(2024, 1, 31), "grace_days": 10**12})

        assert not result.matched
        assert result.execution.result == ExecutionResult.ERROR
        assert result.execution.actions_executed == ()
        assert "flagged" not in result.context
        assert rules.list_executions("FAR-DUE").total == 1

    def test_executions_are_audited_and_append_only(self, rules, session):
        rules.create_rule("ALWAYS", "Always", ORDER, RuleType.DERIVATION, "", [])
        rules.evaluate("ALWAYS", {})
        rules.evaluate("ALWAYS", {})

        page = rules.list_executions("ALWAYS")
        assert page.total == 2

        row = session.get(RuleExecution, page.items[0].id)
        row.error = "tampered"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_invalid_condition_is_rejected_at_definition(self, rules):
        with pytest.raises(ExpressionSyntaxError):
            rules.create_rule("BAD", "Bad", ORDER, RuleType.VALIDATION, "amount >", [])

    def test_duplicate_rule_code(self, rules):
        rules.create_rule("DUP", "Dup", ORDER, RuleType.DERIVATION, "", [])
        with pytest.raises(DuplicateCodeError):
            rules.create_rule("DUP", "Dup", ORDER, RuleType.DERIVATION, "", [])

    def test_update_bumps_version_and_keeps_history(self, rules):
        rules.create_rule("VERSIONED", "Versioned", ORDER, RuleType.PRICING, "amount > 1", [])
        updated = rules.update_rule("VERSIONED", condition="amount > 2", change_reason="raise bar")

        assert updated.version == 2
        history = rules.rule_versions("VERSIONED")
        assert [v["version"] for v in history] == [1, 2]
        assert history[1]["condition"] == "amount > 2"


class TestRuleSets:
    @pytest.fixture
    def order_rules(self, rules):
        rules.create_rule(
            "REQUIRE-CUSTOMER",
            "Customer required",
            ORDER,
            RuleType.VALIDATION,
            "is_null(customer)",
            [{"type": "fail", "message": "customer is required"}],
            priority=10,
        )
        rules.create_rule(
            "DEFAULT-QUEUE",
            "Default queue",
            ORDER,
            RuleType.ROUTING,
            "",
            [{"type": "set", "field": "queue", "value": "standard"}],
            priority=1,
        )
        rules.create_rule(
            "VIP-QUEUE",
            "VIP queue",
            ORDER,
            RuleType.ROUTING,
            "customer = 'vip'",
            [{"type": "set", "field": "queue", "value": "priority"}],
            priority=5,
        )

    def test_sequential_halts_on_failed_validation(self, rules, order_rules):
        rules.create_rule_set(
            "CHECKOUT",
            "Checkout",
            ORDER,
            ExecutionMode.SEQUENTIAL,
            ["REQUIRE-CUSTOMER", "DEFAULT-QUEUE"],
        )

        halted = rules.evaluate_set("CHECKOUT", {"customer": None})
        assert halted.halted
        assert halted.halted_by == "REQUIRE-CUSTOMER"
        assert "queue" not in halted.context

        passed = rules.evaluate_set("CHECKOUT", {"customer": "acme"})
        assert not passed.halted
        assert passed.context["queue"] == "standard"
        assert passed.matched_rule_codes == ("DEFAULT-QUEUE",)

    def test_first_match_stops_after_first_matching_rule(self, rules, order_rules):
        rules.create_rule_set(
            "ROUTE",
            "Route",
            ORDER,
            ExecutionMode.FIRST_MATCH,
            ["VIP-QUEUE", "DEFAULT-QUEUE"],
        )

        result = rules.evaluate_set("ROUTE", {"customer": "vip"})

        assert result.context["queue"] == "priority"
        assert [e.rule_code for e in result.executions] == ["VIP-QUEUE"]

    def test_parallel_merge_lets_highest_priority_win(self, rules, order_rules):
        rules.create_rule_set(
            "ROUTE-ALL",
            "Route all",
            ORDER,
            ExecutionMode.PARALLEL,
            [MemberSpec(rule="VIP-QUEUE"), MemberSpec(rule="DEFAULT-QUEUE")],
        )

        result = rules.evaluate_set("ROUTE-ALL", {"customer": "vip"})

        assert result.context["queue"] == "priority"
        assert set(result.matched_rule_codes) == {"VIP-QUEUE", "DEFAULT-QUEUE"}
