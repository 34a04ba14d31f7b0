"""Frozen DTOs returned by CreditService."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from erp_engines.credit import (
    AlertSeverity,
    AlertType,
    CreditCheckResult,
    CreditProfileStatus,
    HoldStatus,
    HoldType,
    RiskLevel,
    TransactionKind,
)


@dataclass(frozen=True)
class CreditProfileInfo:
    id: UUID
    customer_id: UUID
    currency: str
    credit_limit: int
    credit_used: int
    available_credit: int
    outstanding_invoices: int
    pending_orders: int
    overdue_amount: int
    overdue_days_avg: int
    risk_level: RiskLevel
    auto_hold_enabled: bool
    hold_threshold_percent: int
    status: CreditProfileStatus
    credit_score: int | None = None
    last_review_at: datetime | None = None


@dataclass(frozen=True)
class CreditTransactionInfo:
    id: UUID
    customer_id: UUID
    kind: TransactionKind
    delta: int
    previous_used: int
    new_used: int
    reference_id: UUID
    reference_number: str | None = None
    description: str | None = None
    created_at: datetime | None = None
    duplicate: bool = False


@dataclass(frozen=True)
class CreditHoldInfo:
    id: UUID
    customer_id: UUID
    hold_type: HoldType
    reason: str
    status: HoldStatus
    amount_over_limit: int
    placed_at: datetime
    placed_by_id: UUID | None = None
    released_at: datetime | None = None
    released_by_id: UUID | None = None
    override_reason: str | None = None
    related_reference_id: UUID | None = None


@dataclass(frozen=True)
class CreditAlertInfo:
    id: UUID
    customer_id: UUID
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    threshold_value: int
    actual_value: int
    acknowledged: bool
    created_at: datetime
    acknowledged_by_id: UUID | None = None
    acknowledged_at: datetime | None = None


@dataclass(frozen=True)
class CreditLimitChangeInfo:
    id: UUID
    customer_id: UUID
    previous_limit: int
    new_limit: int
    reason: str
    changed_at: datetime
    changed_by_id: UUID | None = None


@dataclass(frozen=True)
class CreditCheckInfo:
    customer_id: UUID
    result: CreditCheckResult
    credit_limit: int
    credit_used: int
    available_credit: int
    requested_amount: int
    projected_available: int
    warnings: tuple[str, ...] = ()
    reason: str | None = None
    hold_id: UUID | None = None


@dataclass(frozen=True)
class CreditSummaryInfo:
    """Portfolio totals across every credit profile."""

    total_customers: int
    total_credit_limit: int
    total_credit_used: int
    total_available_credit: int
    total_overdue: int
    customers_on_hold: int
    high_risk_customers: int
    avg_utilization_percent: Decimal
