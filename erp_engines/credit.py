"""
erp_engines.credit -- Pure credit exposure, risk tier and hold decisions.

Responsibility:
    Classify a customer's risk from utilization and overdue exposure,
    decide whether an automatic hold is due and of which type, and answer
    a credit check for a prospective order.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  CreditService reads the
    profile, calls in here and persists holds, alerts and transactions.

Invariants enforced:
    - Hold threshold is inclusive: ``used * 100 >= limit * percent``.
    - Integer arithmetic on minor units; no float comparisons.
    - Risk tiers are monotone in utilization and overdue days.

Failure modes:
    - None raised; callers turn decisions into typed errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum

from erp_engines.tracer import traced_engine


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class CreditProfileStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class HoldType(str, Enum):
    THRESHOLD_EXCEEDED = "ThresholdExceeded"
    CREDIT_LIMIT_EXCEEDED = "CreditLimitExceeded"
    OVERDUE_INVOICES = "OverdueInvoices"
    MANUAL_HOLD = "ManualHold"
    RISK_ASSESSMENT = "RiskAssessment"


class HoldStatus(str, Enum):
    ACTIVE = "Active"
    RELEASED = "Released"


class AlertType(str, Enum):
    APPROACHING_LIMIT = "ApproachingLimit"
    LIMIT_EXCEEDED = "LimitExceeded"
    OVERDUE_PAYMENT = "OverduePayment"
    HIGH_RISK = "HighRisk"
    HOLD_PLACED = "HoldPlaced"
    HOLD_RELEASED = "HoldReleased"


class AlertSeverity(str, Enum):
    INFO = "Info"
    WARNING = "Warning"
    HIGH = "High"
    CRITICAL = "Critical"


class TransactionKind(str, Enum):
    """What originated a change to credit_used."""

    INVOICE = "Invoice"
    PAYMENT = "Payment"
    ORDER = "Order"
    ORDER_CANCELLED = "OrderCancelled"
    CREDIT_NOTE = "CreditNote"
    WRITE_OFF = "WriteOff"
    MANUAL = "Manual"

    @property
    def moves_receivables(self) -> bool:
        return self in (
            TransactionKind.INVOICE,
            TransactionKind.CREDIT_NOTE,
            TransactionKind.PAYMENT,
            TransactionKind.WRITE_OFF,
        )

    @property
    def moves_orders(self) -> bool:
        return self in (TransactionKind.ORDER, TransactionKind.ORDER_CANCELLED)


class CreditCheckResult(str, Enum):
    APPROVED = "Approved"
    WARNING = "Warning"
    BLOCKED = "Blocked"


# Tier boundaries (utilization percent, overdue days average)
MEDIUM_UTILIZATION = 30
HIGH_UTILIZATION = 70
CRITICAL_UTILIZATION = 100
HIGH_OVERDUE_DAYS = 30
CRITICAL_OVERDUE_DAYS = 60


@dataclass(frozen=True)
class CreditExposure:
    """The figures every credit decision reads."""

    credit_limit: int
    credit_used: int
    overdue_amount: int = 0
    overdue_days_avg: int = 0
    hold_threshold_percent: int = 90

    @property
    def available_credit(self) -> int:
        return self.credit_limit - self.credit_used


@dataclass(frozen=True)
class HoldDecision:
    hold_type: HoldType
    reason: str
    amount_over_limit: int
    alert_type: AlertType
    severity: AlertSeverity


@dataclass(frozen=True)
class CreditDecision:
    result: CreditCheckResult
    projected_available: int
    warnings: tuple[str, ...] = ()
    reason: str | None = None


def utilization_percent(credit_used: int, credit_limit: int) -> Decimal:
    """Used as a percent of limit, truncated to two places."""
    if credit_limit <= 0:
        return Decimal(CRITICAL_UTILIZATION) if credit_used > 0 else Decimal(0)
    percent = Decimal(credit_used) * 100 / Decimal(credit_limit)
    return percent.quantize(Decimal("0.01"), rounding=ROUND_DOWN)


def threshold_breached(credit_used: int, credit_limit: int, threshold_percent: int) -> bool:
    """Inclusive hold threshold; nothing used never breaches."""
    return credit_used > 0 and credit_used * 100 >= credit_limit * threshold_percent


@traced_engine("credit_risk", "1.0", fingerprint_fields=("exposure",))
def classify_risk(*, exposure: CreditExposure) -> RiskLevel:
    """
    Risk tier from utilization and overdue exposure.

    Critical at 100% utilization or more than 60 overdue days; High from
    70% or more than 30 days; Medium from 30% or any overdue amount.
    """
    utilization = utilization_percent(exposure.credit_used, exposure.credit_limit)
    days = exposure.overdue_days_avg
    if utilization >= CRITICAL_UTILIZATION or days > CRITICAL_OVERDUE_DAYS:
        return RiskLevel.CRITICAL
    if utilization >= HIGH_UTILIZATION or days > HIGH_OVERDUE_DAYS:
        return RiskLevel.HIGH
    if utilization >= MEDIUM_UTILIZATION or exposure.overdue_amount > 0:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def decide_auto_hold(exposure: CreditExposure) -> HoldDecision | None:
    """The hold an auto-hold profile should carry now, or None."""
    used, limit = exposure.credit_used, exposure.credit_limit
    if used > limit and used > 0:
        over = used - limit
        return HoldDecision(
            hold_type=HoldType.CREDIT_LIMIT_EXCEEDED,
            reason=f"limit exceeded: credit used {used} is {over} over limit {limit}",
            amount_over_limit=over,
            alert_type=AlertType.LIMIT_EXCEEDED,
            severity=AlertSeverity.CRITICAL,
        )
    if threshold_breached(used, limit, exposure.hold_threshold_percent):
        return HoldDecision(
            hold_type=HoldType.THRESHOLD_EXCEEDED,
            reason=(
                f"threshold: credit used at {utilization_percent(used, limit)}% "
                f"of limit, hold threshold {exposure.hold_threshold_percent}%"
            ),
            amount_over_limit=0,
            alert_type=AlertType.APPROACHING_LIMIT,
            severity=AlertSeverity.HIGH,
        )
    if exposure.overdue_days_avg > CRITICAL_OVERDUE_DAYS and exposure.overdue_amount > 0:
        return HoldDecision(
            hold_type=HoldType.OVERDUE_INVOICES,
            reason=f"overdue: average {exposure.overdue_days_avg} days past due",
            amount_over_limit=0,
            alert_type=AlertType.OVERDUE_PAYMENT,
            severity=AlertSeverity.HIGH,
        )
    return None


def risk_alert_severity(previous: RiskLevel, current: RiskLevel) -> AlertSeverity | None:
    """Severity of the HighRisk alert raised when risk worsens into High or Critical."""
    if current.rank <= previous.rank or current.rank < RiskLevel.HIGH.rank:
        return None
    return AlertSeverity.CRITICAL if current == RiskLevel.CRITICAL else AlertSeverity.HIGH


@traced_engine("credit_check", "1.0", fingerprint_fields=("order_amount",))
def check_order(
    exposure: CreditExposure,
    *,
    order_amount: int,
    on_hold: bool = False,
    hold_reason: str | None = None,
) -> CreditDecision:
    """Approve, warn or block an order of ``order_amount`` minor units."""
    projected = exposure.available_credit - order_amount
    if on_hold:
        return CreditDecision(
            result=CreditCheckResult.BLOCKED,
            projected_available=projected,
            reason=f"Customer is on credit hold: {hold_reason}" if hold_reason else "Customer is on credit hold",
        )

    warnings: list[str] = []
    result = CreditCheckResult.APPROVED
    projected_used = exposure.credit_used + order_amount
    if projected < 0:
        result = CreditCheckResult.BLOCKED
    elif projected_used * 100 > exposure.credit_limit * exposure.hold_threshold_percent:
        result = CreditCheckResult.WARNING
        warnings.append(
            f"Order will utilize {utilization_percent(projected_used, exposure.credit_limit)}% "
            "of credit limit"
        )

    if exposure.overdue_amount > 0:
        warnings.append(f"Customer has {exposure.overdue_amount} in overdue invoices")
        if result == CreditCheckResult.APPROVED and exposure.overdue_amount * 4 > exposure.credit_limit:
            result = CreditCheckResult.WARNING

    reason = "Credit limit exceeded" if result == CreditCheckResult.BLOCKED else None
    return CreditDecision(
        result=result,
        projected_available=projected,
        warnings=tuple(warnings),
        reason=reason,
    )
