"""Pure credit decisions in erp_engines.credit."""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from erp_engines.credit import (
    AlertSeverity,
    CreditCheckResult,
    CreditExposure,
    HoldType,
    RiskLevel,
    check_order,
    classify_risk,
    decide_auto_hold,
    risk_alert_severity,
    threshold_breached,
    utilization_percent,
)


class TestUtilization:
    def test_truncates_to_two_places(self):
        assert utilization_percent(2, 3) == Decimal("66.66")

    def test_zero_limit(self):
        assert utilization_percent(0, 0) == 0
        assert utilization_percent(1, 0) == 100

    def test_threshold_is_inclusive(self):
        assert threshold_breached(800, 1_000, 80)
        assert not threshold_breached(799, 1_000, 80)
        assert not threshold_breached(0, 0, 80)


class TestRiskTiers:
    @pytest.mark.parametrize(
        "used, overdue_amount, overdue_days, expected",
        [
            (0, 0, 0, RiskLevel.LOW),
            (299, 0, 0, RiskLevel.LOW),
            (300, 0, 0, RiskLevel.MEDIUM),
            (0, 1, 0, RiskLevel.MEDIUM),
            (700, 0, 0, RiskLevel.HIGH),
            (0, 10, 31, RiskLevel.HIGH),
            (1_000, 0, 0, RiskLevel.CRITICAL),
            (0, 10, 61, RiskLevel.CRITICAL),
        ],
    )
    def test_tier_boundaries(self, used, overdue_amount, overdue_days, expected):
        exposure = CreditExposure(
            credit_limit=1_000,
            credit_used=used,
            overdue_amount=overdue_amount,
            overdue_days_avg=overdue_days,
        )
        assert classify_risk(exposure=exposure) == expected

    def test_alert_only_when_risk_worsens_into_high(self):
        assert risk_alert_severity(RiskLevel.LOW, RiskLevel.MEDIUM) is None
        assert risk_alert_severity(RiskLevel.MEDIUM, RiskLevel.HIGH) == AlertSeverity.HIGH
        assert risk_alert_severity(RiskLevel.HIGH, RiskLevel.CRITICAL) == AlertSeverity.CRITICAL
        assert risk_alert_severity(RiskLevel.CRITICAL, RiskLevel.HIGH) is None

    @given(
        limit=st.integers(min_value=0, max_value=10**9),
        used=st.integers(min_value=-(10**6), max_value=10**9),
    )
    def test_risk_never_decreases_as_usage_grows(self, limit, used):
        lower = classify_risk(exposure=CreditExposure(credit_limit=limit, credit_used=used))
        higher = classify_risk(exposure=CreditExposure(credit_limit=limit, credit_used=used + 1))
        assert higher.rank >= lower.rank


class TestAutoHold:
    def test_limit_exceeded_takes_precedence(self):
        decision = decide_auto_hold(
            CreditExposure(credit_limit=1_000, credit_used=1_100, hold_threshold_percent=50)
        )
        assert decision.hold_type == HoldType.CREDIT_LIMIT_EXCEEDED
        assert decision.amount_over_limit == 100
        assert decision.severity == AlertSeverity.CRITICAL

    def test_long_overdue_places_overdue_hold(self):
        decision = decide_auto_hold(
            CreditExposure(credit_limit=1_000, credit_used=0, overdue_amount=50, overdue_days_avg=90)
        )
        assert decision.hold_type == HoldType.OVERDUE_INVOICES

    def test_healthy_exposure_needs_no_hold(self):
        assert decide_auto_hold(CreditExposure(credit_limit=1_000, credit_used=100)) is None


class TestOrderCheck:
    def test_hold_blocks_every_order(self):
        decision = check_order(
            CreditExposure(credit_limit=1_000, credit_used=0),
            order_amount=1,
            on_hold=True,
            hold_reason="manual",
        )
        assert decision.result == CreditCheckResult.BLOCKED
        assert decision.reason == "Customer is on credit hold: manual"

    def test_large_overdue_balance_warns(self):
        decision = check_order(
            CreditExposure(credit_limit=1_000, credit_used=0, overdue_amount=300),
            order_amount=10,
        )
        assert decision.result == CreditCheckResult.WARNING
        assert decision.warnings == ("Customer has 300 in overdue invoices",)

    def test_exact_available_amount_is_not_blocked(self):
        decision = check_order(
            CreditExposure(credit_limit=1_000, credit_used=0, hold_threshold_percent=100),
            order_amount=1_000,
        )
        assert decision.result == CreditCheckResult.APPROVED
        assert decision.projected_available == 0
