"""
Module: erp_kernel.models.fiscal_period
Responsibility: ORM persistence for fiscal years and their accounting periods.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Fiscal years do not overlap (checked by PeriodService on create).
    - Period ordinals are unique within a fiscal year.
    - Lock transitions follow PERIOD_LOCK_TRANSITIONS; HardClose is final.

Audit relevance:
    locked_at / locked_by_id record who moved a period to its current lock.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_kernel.db.base import TrackedBase, UUIDString
from erp_kernel.db.types import EnumText
from erp_kernel.domain.ledger import (
    FiscalYearInfo,
    FiscalYearStatus,
    PeriodInfo,
    PeriodLock,
)


class FiscalYear(TrackedBase):
    __tablename__ = "ledger_fiscal_years"

    __table_args__ = (
        UniqueConstraint("name", name="uq_fiscal_year_name"),
        Index("idx_fiscal_year_dates", "start_date", "end_date"),
    )

    name: Mapped[str] = mapped_column(String(50), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[FiscalYearStatus] = mapped_column(
        EnumText(FiscalYearStatus),
        nullable=False,
        default=FiscalYearStatus.ACTIVE,
    )
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    periods: Mapped[list[AccountingPeriod]] = relationship(
        back_populates="fiscal_year",
        order_by="AccountingPeriod.ordinal",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<FiscalYear {self.name} {self.start_date}..{self.end_date}>"

    def overlaps(self, start: date, end: date) -> bool:
        return self.start_date <= end and start <= self.end_date

    def to_dto(self) -> FiscalYearInfo:
        return FiscalYearInfo(
            id=self.id,
            name=self.name,
            start_date=self.start_date,
            end_date=self.end_date,
            status=self.status,
        )


class AccountingPeriod(TrackedBase):
    """
    A dated slice of a fiscal year carrying the posting lock.

    Guarantees:
        - start_date <= end_date, both inclusive.
        - ``contains_date`` treats the end date as inside the period.
    """

    __tablename__ = "ledger_accounting_periods"

    __table_args__ = (
        UniqueConstraint("fiscal_year_id", "ordinal", name="uq_period_ordinal"),
        Index("idx_period_dates", "start_date", "end_date"),
    )

    fiscal_year_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_fiscal_years.id"),
        nullable=False,
    )
    ordinal: Mapped[int] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    lock: Mapped[PeriodLock] = mapped_column(
        EnumText(PeriodLock),
        nullable=False,
        default=PeriodLock.OPEN,
    )
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    locked_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    fiscal_year: Mapped[FiscalYear] = relationship(back_populates="periods")

    def __repr__(self) -> str:
        return f"<AccountingPeriod {self.name} [{self.lock.value}]>"

    def contains_date(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date

    def to_dto(self) -> PeriodInfo:
        return PeriodInfo(
            id=self.id,
            fiscal_year_id=self.fiscal_year_id,
            ordinal=self.ordinal,
            name=self.name,
            start_date=self.start_date,
            end_date=self.end_date,
            lock=self.lock,
            locked_at=self.locked_at,
        )
