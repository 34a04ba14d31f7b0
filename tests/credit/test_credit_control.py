"""
Tests for customer credit control through CreditService.

Covers:
- Threshold breach places an automatic hold and an ApproachingLimit alert
- Releasing a hold leaves exposure untouched
- Transactions are idempotent per (kind, reference) and append-only
- available_credit == credit_limit - credit_used after every operation
- Order checks: Approved, Warning, Blocked (with automatic hold)
- Limit changes keep their history
- Portfolio queries: profiles on hold, high-risk profiles, summary totals
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from erp_engines.credit import (
    AlertSeverity,
    AlertType,
    CreditCheckResult,
    HoldStatus,
    HoldType,
    RiskLevel,
    TransactionKind,
)
from erp_kernel.domain.events import Topics
from erp_kernel.exceptions import (
    CreditHoldActiveError,
    CreditHoldNotFoundError,
    CreditProfileNotFoundError,
    DuplicateCodeError,
    HoldNotActiveError,
    ImmutabilityViolationError,
    InvalidEnumValueError,
    ValidationError,
)
from erp_services.models.credit import CreditTransaction

from conftest import TEST_ACTOR_ID


def _invoice(credit, customer_id, amount, reference=None):
    return credit.apply_transaction(
        customer_id, amount, reference or uuid4(), kind=TransactionKind.INVOICE
    )


class TestAutomaticHolds:
    def test_threshold_breach_places_hold_and_alert(self, credit, create_profile, event_bus):
        profile = create_profile(credit_limit=1_000, hold_threshold_percent=80)

        _invoice(credit, profile.customer_id, 700)
        assert credit.active_hold(profile.customer_id) is None

        _invoice(credit, profile.customer_id, 150)
        hold = credit.active_hold(profile.customer_id)

        assert hold is not None
        assert hold.hold_type == HoldType.THRESHOLD_EXCEEDED
        assert hold.reason.startswith("threshold")
        approaching = [
            a for a in credit.list_alerts(profile.customer_id)
            if a.alert_type == AlertType.APPROACHING_LIMIT
        ]
        assert len(approaching) == 1
        assert approaching[0].severity == AlertSeverity.HIGH
        assert len(event_bus.of_topic(Topics.CREDIT_HOLD_PLACED)) == 1

    def test_release_keeps_exposure(self, credit, create_profile, event_bus):
        profile = create_profile(credit_limit=1_000, hold_threshold_percent=80)
        _invoice(credit, profile.customer_id, 850)
        hold = credit.active_hold(profile.customer_id)

        released = credit.release_hold(hold.id, TEST_ACTOR_ID, "Payment promised")

        assert released.status == HoldStatus.RELEASED
        assert released.released_by_id == TEST_ACTOR_ID
        assert credit.active_hold(profile.customer_id) is None
        after = credit.get_profile(profile.customer_id)
        assert after.credit_used == 850
        assert after.available_credit == 150
        assert len(event_bus.of_topic(Topics.CREDIT_HOLD_RELEASED)) == 1

        with pytest.raises(HoldNotActiveError):
            credit.release_hold(hold.id, TEST_ACTOR_ID, "again")

    def test_exceeding_limit_places_limit_hold(self, credit, create_profile):
        profile = create_profile(credit_limit=1_000)

        _invoice(credit, profile.customer_id, 1_200)

        hold = credit.active_hold(profile.customer_id)
        assert hold.hold_type == HoldType.CREDIT_LIMIT_EXCEEDED
        assert hold.amount_over_limit == 200
        assert hold.reason.startswith("limit exceeded")

    def test_profiles_without_auto_hold_are_never_held(self, credit, create_profile):
        profile = create_profile(credit_limit=1_000, auto_hold_enabled=False)

        _invoice(credit, profile.customer_id, 5_000)

        assert credit.active_hold(profile.customer_id) is None
        assert credit.get_profile(profile.customer_id).risk_level == RiskLevel.CRITICAL

    def test_manual_hold_refused_while_another_is_active(self, credit, create_profile):
        profile = create_profile(credit_limit=1_000)
        hold = credit.place_manual_hold(profile.customer_id, "Disputed invoices", TEST_ACTOR_ID)
        assert hold.hold_type == HoldType.MANUAL_HOLD

        with pytest.raises(CreditHoldActiveError):
            credit.place_manual_hold(profile.customer_id, "Again")

    def test_release_unknown_hold(self, credit):
        with pytest.raises(CreditHoldNotFoundError):
            credit.release_hold(uuid4(), TEST_ACTOR_ID, "n/a")


class TestTransactions:
    def test_replayed_transaction_is_not_applied_twice(self, credit, create_profile):
        profile = create_profile(credit_limit=10_000)
        reference = uuid4()

        first = _invoice(credit, profile.customer_id, 400, reference)
        replay = _invoice(credit, profile.customer_id, 400, reference)

        assert not first.duplicate
        assert replay.duplicate
        assert replay.id == first.id
        assert credit.get_profile(profile.customer_id).credit_used == 400
        assert credit.list_transactions(profile.customer_id).total == 1

    def test_same_reference_with_other_kind_is_a_new_transaction(self, credit, create_profile):
        profile = create_profile(credit_limit=10_000)
        reference = uuid4()

        _invoice(credit, profile.customer_id, 400, reference)
        credit.apply_transaction(
            profile.customer_id, -400, reference, kind=TransactionKind.PAYMENT
        )

        after = credit.get_profile(profile.customer_id)
        assert after.credit_used == 0
        assert after.outstanding_invoices == 0

    def test_used_equals_sum_of_deltas_and_available_is_derived(self, credit, create_profile):
        profile = create_profile(credit_limit=10_000)
        deltas = [(1_000, TransactionKind.INVOICE), (2_500, TransactionKind.ORDER),
                  (-300, TransactionKind.CREDIT_NOTE), (-2_500, TransactionKind.ORDER_CANCELLED)]

        for delta, kind in deltas:
            credit.apply_transaction(profile.customer_id, delta, uuid4(), kind=kind)

        after = credit.get_profile(profile.customer_id)
        assert after.credit_used == sum(d for d, _ in deltas) == 700
        assert after.available_credit == after.credit_limit - after.credit_used
        assert after.outstanding_invoices == 700
        assert after.pending_orders == 0

    def test_transactions_are_append_only(self, credit, create_profile, session):
        profile = create_profile()
        txn = _invoice(credit, profile.customer_id, 10)

        row = session.get(CreditTransaction, txn.id)
        row.delta = 99
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_unknown_transaction_kind_is_rejected(self, credit, create_profile):
        profile = create_profile()

        with pytest.raises(InvalidEnumValueError):
            credit.apply_transaction(profile.customer_id, 10, uuid4(), kind="Bogus")
        assert credit.get_profile(profile.customer_id).credit_used == 0

    def test_unknown_customer(self, credit):
        with pytest.raises(CreditProfileNotFoundError):
            credit.apply_transaction(uuid4(), 10, uuid4())


class TestCreditChecks:
    def test_order_within_available_credit_is_approved(self, credit, create_profile):
        profile = create_profile(credit_limit=1_000)

        check = credit.check_credit(profile.customer_id, 500)

        assert check.result == CreditCheckResult.APPROVED
        assert check.projected_available == 500

    def test_order_above_threshold_warns(self, credit, create_profile):
        profile = create_profile(credit_limit=1_000)

        check = credit.check_credit(profile.customer_id, 950)

        assert check.result == CreditCheckResult.WARNING
        assert check.warnings

    def test_order_above_available_is_blocked_and_held(self, credit, create_profile):
        profile = create_profile(credit_limit=1_000)
        order_id = uuid4()

        check = credit.check_credit(profile.customer_id, 1_200, order_id=order_id)

        assert check.result == CreditCheckResult.BLOCKED
        assert check.hold_id is not None
        hold = credit.active_hold(profile.customer_id)
        assert hold.id == check.hold_id
        assert hold.related_reference_id == order_id

        follow_up = credit.check_credit(profile.customer_id, 1)
        assert follow_up.result == CreditCheckResult.BLOCKED
        assert "credit hold" in follow_up.reason

    def test_customer_without_profile_is_approved_with_warning(self, credit):
        check = credit.check_credit(uuid4(), 10_000)

        assert check.result == CreditCheckResult.APPROVED
        assert check.warnings == ("Customer has no credit profile",)


class TestProfiles:
    def test_limit_change_keeps_history(self, credit, create_profile):
        profile = create_profile(credit_limit=1_000)

        updated = credit.set_credit_limit(profile.customer_id, 2_500, "Annual review")

        assert updated.credit_limit == 2_500
        assert updated.available_credit == 2_500
        history = credit.limit_history(profile.customer_id)
        assert [(c.previous_limit, c.new_limit) for c in history] == [(1_000, 2_500)]

    def test_limit_change_needs_reason(self, credit, create_profile):
        profile = create_profile()

        with pytest.raises(ValidationError):
            credit.set_credit_limit(profile.customer_id, 5, "  ")

    def test_threshold_must_be_a_percentage(self, create_profile):
        with pytest.raises(ValidationError):
            create_profile(hold_threshold_percent=0)
        with pytest.raises(ValidationError):
            create_profile(hold_threshold_percent=101)

    def test_one_profile_per_customer(self, credit):
        customer = uuid4()
        credit.create_profile(customer, 1_000)

        with pytest.raises(DuplicateCodeError):
            credit.create_profile(customer, 2_000)

    def test_overdue_exposure_raises_risk(self, credit, create_profile):
        profile = create_profile(credit_limit=10_000)

        updated = credit.update_overdue(profile.customer_id, 500, 45)

        assert updated.risk_level == RiskLevel.HIGH
        high_risk = [
            a for a in credit.list_alerts(profile.customer_id)
            if a.alert_type == AlertType.HIGH_RISK
        ]
        assert [a.severity for a in high_risk] == [AlertSeverity.HIGH]

        acknowledged = credit.acknowledge_alert(high_risk[0].id, TEST_ACTOR_ID)
        assert acknowledged.acknowledged
        pending = credit.list_alerts(profile.customer_id, unacknowledged_only=True)
        assert [a.alert_type for a in pending] == [AlertType.OVERDUE_PAYMENT]


class TestPortfolio:
    @pytest.fixture
    def portfolio(self, credit, create_profile):
        held = create_profile(credit_limit=1_000, hold_threshold_percent=80)
        _invoice(credit, held.customer_id, 850)
        overdue = create_profile(credit_limit=10_000)
        credit.update_overdue(overdue.customer_id, 500, 45)
        quiet = create_profile(credit_limit=5_000)
        _invoice(credit, quiet.customer_id, 1_000)
        return held, overdue, quiet

    def test_on_hold_lists_profiles_with_an_active_hold(self, credit, portfolio):
        held, _, _ = portfolio

        assert [p.customer_id for p in credit.list_on_hold()] == [held.customer_id]

        hold = credit.active_hold(held.customer_id)
        credit.release_hold(hold.id, TEST_ACTOR_ID, "Paid by wire")
        assert credit.list_on_hold() == []

    def test_high_risk_orders_by_overdue_amount(self, credit, portfolio):
        held, overdue, _ = portfolio

        high_risk = credit.list_high_risk()

        assert [p.customer_id for p in high_risk] == [overdue.customer_id, held.customer_id]
        assert {p.risk_level for p in high_risk} == {RiskLevel.HIGH}

    def test_summary_totals(self, credit, portfolio):
        summary = credit.get_summary()

        assert summary.total_customers == 3
        assert summary.total_credit_limit == 16_000
        assert summary.total_credit_used == 1_850
        assert summary.total_available_credit == 14_150
        assert summary.total_overdue == 500
        assert summary.customers_on_hold == 1
        assert summary.high_risk_customers == 2
        assert summary.avg_utilization_percent == Decimal("11.56")

    def test_empty_summary(self, credit):
        summary = credit.get_summary()

        assert summary.total_customers == 0
        assert summary.avg_utilization_percent == 0
