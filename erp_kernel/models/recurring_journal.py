"""
Module: erp_kernel.models.recurring_journal
Responsibility: ORM persistence for recurring journal templates.
Architecture position: Kernel > Models.

Invariants enforced:
    - next_run_date only moves forward (advanced by RecurringJournalService
      through erp_engines.recurrence).
    - A template past its end_date is Completed and never runs again.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Date, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from erp_kernel.db.base import TrackedBase
from erp_kernel.db.types import EnumText
from erp_kernel.domain.ledger import (
    LineSpec,
    RecurrenceFrequency,
    RecurringJournalInfo,
    RecurringStatus,
)


class RecurringJournal(TrackedBase):
    __tablename__ = "ledger_recurring_journals"

    __table_args__ = (Index("idx_recurring_due", "status", "next_run_date"),)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    frequency: Mapped[RecurrenceFrequency] = mapped_column(
        EnumText(RecurrenceFrequency),
        nullable=False,
    )
    interval: Mapped[int] = mapped_column(nullable=False, default=1)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_run_date: Mapped[date] = mapped_column(Date, nullable=False)
    day_of_month: Mapped[int | None] = mapped_column(nullable=True)
    day_of_week: Mapped[int | None] = mapped_column(nullable=True)
    auto_post: Mapped[bool] = mapped_column(nullable=False, default=False)
    status: Mapped[RecurringStatus] = mapped_column(
        EnumText(RecurringStatus),
        nullable=False,
        default=RecurringStatus.ACTIVE,
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    # List of LineSpec.to_template() dicts
    template_lines: Mapped[list] = mapped_column(JSON, nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    run_count: Mapped[int] = mapped_column(nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<RecurringJournal {self.name} next={self.next_run_date}>"

    def line_specs(self) -> tuple[LineSpec, ...]:
        return tuple(LineSpec.from_template(item) for item in self.template_lines)

    def to_dto(self) -> RecurringJournalInfo:
        return RecurringJournalInfo(
            id=self.id,
            name=self.name,
            frequency=self.frequency,
            interval=self.interval,
            start_date=self.start_date,
            next_run_date=self.next_run_date,
            auto_post=self.auto_post,
            status=self.status,
            template_lines=self.line_specs(),
            end_date=self.end_date,
            day_of_month=self.day_of_month,
            day_of_week=self.day_of_week,
            last_run_at=self.last_run_at,
            description=self.description,
        )
