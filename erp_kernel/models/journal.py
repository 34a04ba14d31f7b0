"""
Module: erp_kernel.models.journal
Responsibility: ORM persistence for journal entries and their lines -- the
    single source of financial truth.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.
    MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced:
    - Entry number uniqueness (uq_journal_number); numbers are allocated
      from the locked ``journal_entry`` sequence at creation time.
    - Balance (debits == credits) is checked by JournalService at posting;
      ``is_balanced`` is a read-side convenience only.
    - Immutability: once an entry is Posted or Void, the header and every
      line reject UPDATE and DELETE (ORM listeners registered below).

Failure modes:
    - ImmutabilityViolationError on UPDATE/DELETE of a finalized entry or line.
    - IntegrityError on a duplicate entry number.

Audit relevance:
    Posted lines are the only input to balances and statements.  A
    correction is always a new reversal entry, never an edit.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_kernel.db.base import TrackedBase, UUIDString
from erp_kernel.db.immutability import protect_children_of_finalized, protect_finalized
from erp_kernel.db.types import EnumText, MinorUnits
from erp_kernel.domain.ledger import (
    FINAL_JOURNAL_STATUSES,
    EntrySource,
    JournalEntryInfo,
    JournalLineInfo,
    JournalStatus,
)


class JournalEntry(TrackedBase):
    """
    Journal entry header -- the atomic unit of double-entry accounting.

    Contract:
        A Draft may be edited, posted or voided.  Posting assigns the period,
        stamps posted_at/posted_by_id and freezes the entry.  A reversal is a
        separate entry pointing back via ``reversal_of_id``; the original is
        never touched.

    Non-goals:
        - The model does not enforce balance; JournalService does at post time.
    """

    __tablename__ = "ledger_journal_entries"

    __table_args__ = (
        UniqueConstraint("number", name="uq_journal_number"),
        Index("idx_journal_effective_date", "effective_date"),
        Index("idx_journal_status", "status"),
        Index("idx_journal_reversal_of", "reversal_of_id"),
    )

    # Human-facing number, e.g. JE-2024-000001
    number: Mapped[str] = mapped_column(String(30), nullable=False)

    # Accounting date (drives period assignment)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)

    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    status: Mapped[JournalStatus] = mapped_column(
        EnumText(JournalStatus),
        nullable=False,
        default=JournalStatus.DRAFT,
    )

    source: Mapped[EntrySource] = mapped_column(
        EnumText(EntrySource),
        nullable=False,
        default=EntrySource.MANUAL,
    )

    # Assigned at posting
    period_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_accounting_periods.id"),
        nullable=True,
    )

    posted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    posted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # If this is a reversal, points to the original entry
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_journal_entries.id"),
        nullable=True,
    )

    lines: Mapped[list[JournalLine]] = relationship(
        back_populates="entry",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="JournalLine.line_number",
    )

    def __repr__(self) -> str:
        return f"<JournalEntry {self.number} status={self.status.value}>"

    @property
    def is_draft(self) -> bool:
        return self.status == JournalStatus.DRAFT

    @property
    def is_posted(self) -> bool:
        return self.status == JournalStatus.POSTED

    @property
    def total_debits(self) -> int:
        return sum(line.debit for line in self.lines)

    @property
    def total_credits(self) -> int:
        return sum(line.credit for line in self.lines)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits

    def to_dto(self) -> JournalEntryInfo:
        return JournalEntryInfo(
            id=self.id,
            number=self.number,
            effective_date=self.effective_date,
            description=self.description,
            status=self.status,
            lines=tuple(line.to_dto() for line in self.lines),
            currency=self.currency,
            reference=self.reference,
            source=self.source,
            period_id=self.period_id,
            posted_at=self.posted_at,
            posted_by_id=self.posted_by_id,
            reversal_of_id=self.reversal_of_id,
        )


class JournalLine(TrackedBase):
    """
    One debit or credit line of a journal entry.

    Guarantees:
        - Exactly one of debit/credit is positive once the entry is posted.
        - account_code is denormalized at write time for reporting.
    """

    __tablename__ = "ledger_journal_lines"

    __table_args__ = (
        UniqueConstraint("entry_id", "line_number", name="uq_journal_line_number"),
        Index("idx_line_entry", "entry_id"),
        Index("idx_line_account", "account_id"),
    )

    entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_journal_entries.id"),
        nullable=False,
    )

    line_number: Mapped[int] = mapped_column(nullable=False)

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_accounts.id"),
        nullable=False,
    )

    account_code: Mapped[str] = mapped_column(String(50), nullable=False)

    debit: Mapped[MinorUnits] = mapped_column(nullable=False, default=0)

    credit: Mapped[MinorUnits] = mapped_column(nullable=False, default=0)

    memo: Mapped[str | None] = mapped_column(String(500), nullable=True)

    entry: Mapped[JournalEntry] = relationship(back_populates="lines")

    def to_dto(self) -> JournalLineInfo:
        return JournalLineInfo(
            line_number=self.line_number,
            account_id=self.account_id,
            account_code=self.account_code,
            debit=self.debit,
            credit=self.credit,
            memo=self.memo,
        )


protect_finalized(JournalEntry, "JournalEntry", FINAL_JOURNAL_STATUSES)
protect_children_of_finalized(
    JournalLine,
    "JournalLine",
    lambda line: line.entry is not None and line.entry.status in FINAL_JOURNAL_STATUSES,
)
