"""
SQLAlchemy ORM persistence for the credit-control engine.

Responsibility
--------------
Customer credit profiles, holds, the immutable credit transaction ledger,
credit limit change history and alerts.

Architecture position
---------------------
**Services layer** -- ORM models consumed by ``CreditService``.  Customers
are referenced by UUID only.

Invariants enforced
-------------------
* One profile per customer.
* ``available_credit == credit_limit - credit_used`` (maintained by
  CreditService under a row lock on the profile).
* A transaction reference applies once per (profile, kind, reference).
* CreditTransaction and CreditLimitChange are append-only.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from erp_engines.credit import (
    AlertSeverity,
    AlertType,
    CreditExposure,
    CreditProfileStatus,
    HoldStatus,
    HoldType,
    RiskLevel,
    TransactionKind,
)
from erp_kernel.db.base import TrackedBase, UUIDString
from erp_kernel.db.immutability import protect_append_only
from erp_kernel.db.types import EnumText
from erp_services._credit_types import (
    CreditAlertInfo,
    CreditHoldInfo,
    CreditLimitChangeInfo,
    CreditProfileInfo,
    CreditTransactionInfo,
)


class CustomerCreditProfile(TrackedBase):
    __tablename__ = "credit_profiles"

    __table_args__ = (
        UniqueConstraint("customer_id", name="uq_credit_profile_customer"),
        Index("idx_credit_profile_risk", "risk_level"),
    )

    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    credit_limit: Mapped[int] = mapped_column(nullable=False, default=0)
    credit_used: Mapped[int] = mapped_column(nullable=False, default=0)
    available_credit: Mapped[int] = mapped_column(nullable=False, default=0)
    outstanding_invoices: Mapped[int] = mapped_column(nullable=False, default=0)
    pending_orders: Mapped[int] = mapped_column(nullable=False, default=0)
    overdue_amount: Mapped[int] = mapped_column(nullable=False, default=0)
    overdue_days_avg: Mapped[int] = mapped_column(nullable=False, default=0)
    credit_score: Mapped[int | None] = mapped_column(nullable=True)
    risk_level: Mapped[RiskLevel] = mapped_column(
        EnumText(RiskLevel), nullable=False, default=RiskLevel.LOW
    )
    auto_hold_enabled: Mapped[bool] = mapped_column(nullable=False, default=True)
    hold_threshold_percent: Mapped[int] = mapped_column(nullable=False, default=90)
    status: Mapped[CreditProfileStatus] = mapped_column(
        EnumText(CreditProfileStatus), nullable=False, default=CreditProfileStatus.ACTIVE
    )
    last_review_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def exposure(self) -> CreditExposure:
        return CreditExposure(
            credit_limit=self.credit_limit,
            credit_used=self.credit_used,
            overdue_amount=self.overdue_amount,
            overdue_days_avg=self.overdue_days_avg,
            hold_threshold_percent=self.hold_threshold_percent,
        )

    def to_dto(self) -> CreditProfileInfo:
        return CreditProfileInfo(
            id=self.id,
            customer_id=self.customer_id,
            currency=self.currency,
            credit_limit=self.credit_limit,
            credit_used=self.credit_used,
            available_credit=self.available_credit,
            outstanding_invoices=self.outstanding_invoices,
            pending_orders=self.pending_orders,
            overdue_amount=self.overdue_amount,
            overdue_days_avg=self.overdue_days_avg,
            risk_level=self.risk_level,
            auto_hold_enabled=self.auto_hold_enabled,
            hold_threshold_percent=self.hold_threshold_percent,
            status=self.status,
            credit_score=self.credit_score,
            last_review_at=self.last_review_at,
        )


class CreditHold(TrackedBase):
    __tablename__ = "credit_holds"

    __table_args__ = (Index("idx_credit_hold_profile_status", "profile_id", "status"),)

    profile_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("credit_profiles.id"), nullable=False
    )
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    hold_type: Mapped[HoldType] = mapped_column(EnumText(HoldType), nullable=False)
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    status: Mapped[HoldStatus] = mapped_column(
        EnumText(HoldStatus), nullable=False, default=HoldStatus.ACTIVE
    )
    amount_over_limit: Mapped[int] = mapped_column(nullable=False, default=0)
    related_reference_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    placed_at: Mapped[datetime] = mapped_column(nullable=False)
    placed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    released_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    override_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def to_dto(self) -> CreditHoldInfo:
        return CreditHoldInfo(
            id=self.id,
            customer_id=self.customer_id,
            hold_type=self.hold_type,
            reason=self.reason,
            status=self.status,
            amount_over_limit=self.amount_over_limit,
            placed_at=self.placed_at,
            placed_by_id=self.placed_by_id,
            released_at=self.released_at,
            released_by_id=self.released_by_id,
            override_reason=self.override_reason,
            related_reference_id=self.related_reference_id,
        )


class CreditTransaction(TrackedBase):
    __tablename__ = "credit_transactions"

    __table_args__ = (
        UniqueConstraint(
            "profile_id", "kind", "reference_id", name="uq_credit_transaction_reference"
        ),
        Index("idx_credit_transaction_profile", "profile_id", "created_at"),
    )

    profile_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("credit_profiles.id"), nullable=False
    )
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(EnumText(TransactionKind), nullable=False)
    delta: Mapped[int] = mapped_column(nullable=False)
    previous_used: Mapped[int] = mapped_column(nullable=False)
    new_used: Mapped[int] = mapped_column(nullable=False)
    reference_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def to_dto(self, duplicate: bool = False) -> CreditTransactionInfo:
        return CreditTransactionInfo(
            id=self.id,
            customer_id=self.customer_id,
            kind=self.kind,
            delta=self.delta,
            previous_used=self.previous_used,
            new_used=self.new_used,
            reference_id=self.reference_id,
            reference_number=self.reference_number,
            description=self.description,
            created_at=self.created_at,
            duplicate=duplicate,
        )


class CreditLimitChange(TrackedBase):
    __tablename__ = "credit_limit_changes"

    profile_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("credit_profiles.id"), nullable=False
    )
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    previous_limit: Mapped[int] = mapped_column(nullable=False)
    new_limit: Mapped[int] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> CreditLimitChangeInfo:
        return CreditLimitChangeInfo(
            id=self.id,
            customer_id=self.customer_id,
            previous_limit=self.previous_limit,
            new_limit=self.new_limit,
            reason=self.reason,
            changed_at=self.changed_at,
            changed_by_id=self.created_by_id,
        )


class CreditAlert(TrackedBase):
    __tablename__ = "credit_alerts"

    __table_args__ = (Index("idx_credit_alert_open", "customer_id", "acknowledged"),)

    profile_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("credit_profiles.id"), nullable=False
    )
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    alert_type: Mapped[AlertType] = mapped_column(EnumText(AlertType), nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(EnumText(AlertSeverity), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    threshold_value: Mapped[int] = mapped_column(nullable=False, default=0)
    actual_value: Mapped[int] = mapped_column(nullable=False, default=0)
    acknowledged: Mapped[bool] = mapped_column(nullable=False, default=False)
    acknowledged_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> CreditAlertInfo:
        return CreditAlertInfo(
            id=self.id,
            customer_id=self.customer_id,
            alert_type=self.alert_type,
            severity=self.severity,
            message=self.message,
            threshold_value=self.threshold_value,
            actual_value=self.actual_value,
            acknowledged=self.acknowledged,
            created_at=self.created_at,
            acknowledged_by_id=self.acknowledged_by_id,
            acknowledged_at=self.acknowledged_at,
        )


protect_append_only(CreditTransaction, "CreditTransaction")
protect_append_only(CreditLimitChange, "CreditLimitChange")
