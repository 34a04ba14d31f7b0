"""
JournalService -- journal entry lifecycle and the double-entry gate.

Responsibility:
    Creates Draft entries, edits and voids drafts, posts them after the
    balance, line-shape, account and period-lock checks, and creates
    reversing entries.  Publishes ``ledger.entry.posted`` after a successful
    post.

Architecture position:
    Kernel > Services.  Consumed directly by callers and, through the
    ``JournalPoster`` capability, by the costing engine.

Invariants enforced:
    - Only a Draft entry may be edited, voided or posted.
    - Posted: sum(debit) == sum(credit) and every line carries exactly one
      positive side.
    - Posting locks the entry row and the covering period row so that a
      concurrent close serializes behind the post.
    - A Posted entry is never modified; reversal creates a new Draft with
      swapped sides and ``reversal_of_id`` set.  An entry is reversed at
      most once (a Void reversal does not count).

Failure modes:
    - UnbalancedEntryError, InvalidJournalLineError, EmptyEntryError
    - EntryNotDraftError, EntryNotPostedError, EntryAlreadyReversedError
    - AccountNotFoundError, AccountInactiveError
    - NoPeriodForDateError, PeriodLockedError

Audit relevance:
    journal_entry_created / journal_entry_posted / journal_entry_voided /
    journal_entry_reversed are logged with entry number and totals.
"""

from __future__ import annotations

from datetime import date
from typing import Protocol, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_kernel.domain.clock import Clock
from erp_kernel.domain.currency import validate_currency
from erp_kernel.domain.events import Topics
from erp_kernel.domain.identity import PrincipalDirectory
from erp_kernel.domain.ledger import (
    EntrySource,
    JournalEntryInfo,
    JournalStatus,
    LineSpec,
)
from erp_kernel.domain.pagination import Page, PageRequest
from erp_kernel.exceptions import (
    AccountInactiveError,
    EmptyEntryError,
    EntryAlreadyReversedError,
    EntryNotDraftError,
    EntryNotPostedError,
    InvalidJournalLineError,
    JournalEntryNotFoundError,
    UnbalancedEntryError,
    ValidationError,
)
from erp_kernel.logging_config import LogContext, get_logger
from erp_kernel.models.journal import JournalEntry, JournalLine
from erp_kernel.selectors.pagination import paginate
from erp_kernel.services.account_service import AccountService
from erp_kernel.services.base import BaseService
from erp_kernel.services.event_bus import EventBus
from erp_kernel.services.period_service import PeriodService
from erp_kernel.services.sequence_service import SequenceService

logger = get_logger("services.journal")


class JournalPoster(Protocol):
    """Capability other engines use to write balanced journal entries."""

    def create_and_post(
        self,
        effective_date: date,
        description: str,
        lines: Sequence[LineSpec],
        *,
        reference: str | None = None,
        currency: str = "USD",
        source: EntrySource = EntrySource.MANUAL,
        actor_id: UUID | None = None,
    ) -> JournalEntryInfo: ...


class JournalService(BaseService):
    """
    Service for journal entries.

    Contract:
        Every public method returns a frozen JournalEntryInfo DTO (or a Page
        of them).  Writes are flushed, never committed.

    Guarantees:
        - ``post_entry`` either posts a balanced entry into a non-locked
          period or raises without changing the entry.
        - Entry numbers are ``JE-{year}-{seq:06d}``, allocated from a
          locked per-year counter.

    Non-goals:
        - Multi-currency balancing; an entry carries a single currency.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        principals: PrincipalDirectory | None = None,
    ):
        super().__init__(session, clock)
        self._event_bus = event_bus
        self._principals = principals
        self._accounts = AccountService(session, self._clock)
        self._periods = PeriodService(session, self._clock)
        self._sequences = SequenceService(session)

    # =========================================================================
    # Drafts
    # =========================================================================

    def create_entry(
        self,
        effective_date: date,
        description: str,
        lines: Sequence[LineSpec],
        *,
        reference: str | None = None,
        currency: str = "USD",
        source: EntrySource = EntrySource.MANUAL,
        actor_id: UUID | None = None,
        reversal_of_id: UUID | None = None,
    ) -> JournalEntryInfo:
        """
        Create a Draft entry.

        Drafts may be unbalanced; the balance is checked when posting.  The
        date must fall in a period whose lock admits the caller.
        """
        currency = validate_currency(currency)
        self._periods.validate_mutation_date(effective_date, self._is_privileged(actor_id))

        year = effective_date.year
        seq = self._sequences.next_value(f"{SequenceService.JOURNAL_ENTRY}:{year}")
        entry = JournalEntry(
            number=f"JE-{year}-{seq:06d}",
            effective_date=effective_date,
            description=description or "",
            reference=reference,
            currency=currency,
            status=JournalStatus.DRAFT,
            source=source,
            reversal_of_id=reversal_of_id,
        )
        self._stamp_new(entry, actor_id)
        entry.lines = self._build_lines(lines, actor_id)
        self._session.add(entry)
        self._session.flush()

        logger.info(
            "journal_entry_created",
            extra={
                "entry_id": str(entry.id),
                "entry_number": entry.number,
                "effective_date": str(effective_date),
                "line_count": len(entry.lines),
                "source": source.value,
            },
        )
        return entry.to_dto()

    def update_draft(
        self,
        entry_id: UUID,
        *,
        description: str | None = None,
        effective_date: date | None = None,
        reference: str | None = None,
        lines: Sequence[LineSpec] | None = None,
        actor_id: UUID | None = None,
    ) -> JournalEntryInfo:
        entry = self._get_for_update(entry_id)
        self._require_draft(entry)
        privileged = self._is_privileged(actor_id)
        self._periods.validate_mutation_date(entry.effective_date, privileged)
        if effective_date is not None and effective_date != entry.effective_date:
            self._periods.validate_mutation_date(effective_date, privileged)
            entry.effective_date = effective_date
        if description is not None:
            entry.description = description
        if reference is not None:
            entry.reference = reference
        if lines is not None:
            # Old lines are deleted before the replacements are inserted so
            # the (entry_id, line_number) constraint never sees both.
            entry.lines.clear()
            self._session.flush()
            entry.lines.extend(self._build_lines(lines, actor_id))
        self._stamp_changed(entry, actor_id)
        self._session.flush()
        logger.info(
            "journal_entry_updated",
            extra={"entry_id": str(entry.id), "entry_number": entry.number},
        )
        return entry.to_dto()

    def void_entry(self, entry_id: UUID, actor_id: UUID | None = None) -> JournalEntryInfo:
        entry = self._get_for_update(entry_id)
        self._require_draft(entry)
        entry.status = JournalStatus.VOID
        self._stamp_changed(entry, actor_id)
        self._session.flush()
        logger.info(
            "journal_entry_voided",
            extra={"entry_id": str(entry.id), "entry_number": entry.number},
        )
        return entry.to_dto()

    # =========================================================================
    # Posting
    # =========================================================================

    def post_entry(self, entry_id: UUID, actor_id: UUID | None = None) -> JournalEntryInfo:
        """
        Post a Draft entry.

        Preconditions:
            - status is Draft, at least one line, every line has exactly
              one positive side, debits equal credits.
            - every referenced account is Active.
            - the covering period is Open, or SoftClose and the caller is
              privileged.

        Postconditions:
            - status is Posted, period_id/posted_at/posted_by_id set.
            - ``ledger.entry.posted`` has been published.
        """
        entry = self._get_for_update(entry_id)
        self._require_draft(entry)

        with LogContext.bind(entry_id=str(entry.id)):
            self._validate_lines(entry)
            period = self._periods.validate_mutation_date(
                entry.effective_date,
                self._is_privileged(actor_id),
                for_update=True,
            )

            entry.status = JournalStatus.POSTED
            entry.period_id = period.id
            entry.posted_at = self._clock.now()
            entry.posted_by_id = actor_id
            self._stamp_changed(entry, actor_id)
            self._session.flush()

            total = entry.total_debits
            logger.info(
                "journal_entry_posted",
                extra={
                    "entry_number": entry.number,
                    "effective_date": str(entry.effective_date),
                    "period": period.name,
                    "total_amount": total,
                },
            )

        if self._event_bus is not None:
            self._event_bus.publish(
                Topics.LEDGER_ENTRY_POSTED,
                {
                    "entry_id": str(entry.id),
                    "number": entry.number,
                    "date": entry.effective_date.isoformat(),
                    "total_amount": total,
                    "currency": entry.currency,
                },
            )
        return entry.to_dto()

    def create_and_post(
        self,
        effective_date: date,
        description: str,
        lines: Sequence[LineSpec],
        *,
        reference: str | None = None,
        currency: str = "USD",
        source: EntrySource = EntrySource.MANUAL,
        actor_id: UUID | None = None,
    ) -> JournalEntryInfo:
        draft = self.create_entry(
            effective_date,
            description,
            lines,
            reference=reference,
            currency=currency,
            source=source,
            actor_id=actor_id,
        )
        return self.post_entry(draft.id, actor_id)

    def reverse_entry(
        self,
        entry_id: UUID,
        on_date: date | None = None,
        actor_id: UUID | None = None,
        description: str | None = None,
    ) -> JournalEntryInfo:
        """
        Create a Draft that mirrors a Posted entry with sides swapped.

        The original stays Posted and untouched; posting the reversal makes
        every affected balance return to its pre-posting value.
        """
        original = self._get(entry_id)
        if original.status != JournalStatus.POSTED:
            raise EntryNotPostedError(original.id, original.status.value)

        existing = self._session.execute(
            select(JournalEntry.id).where(
                JournalEntry.reversal_of_id == original.id,
                JournalEntry.status != JournalStatus.VOID,
            )
        ).scalars().first()
        if existing is not None:
            raise EntryAlreadyReversedError(original.id, existing)

        swapped = [
            LineSpec(
                account=line.account_id,
                debit=line.credit,
                credit=line.debit,
                memo=line.memo,
            )
            for line in original.lines
        ]
        reversal = self.create_entry(
            on_date or self._clock.today(),
            description or f"Reversal of {original.number}",
            swapped,
            reference=original.number,
            currency=original.currency,
            source=EntrySource.REVERSAL,
            actor_id=actor_id,
            reversal_of_id=original.id,
        )
        logger.info(
            "journal_entry_reversed",
            extra={
                "entry_id": str(original.id),
                "entry_number": original.number,
                "reversal_id": str(reversal.id),
            },
        )
        return reversal

    # =========================================================================
    # Queries
    # =========================================================================

    def get_entry(self, entry_id: UUID) -> JournalEntryInfo:
        return self._get(entry_id).to_dto()

    def list_entries(
        self,
        status: JournalStatus | None = None,
        page: PageRequest | None = None,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> Page[JournalEntryInfo]:
        stmt = select(JournalEntry).order_by(JournalEntry.effective_date, JournalEntry.number)
        if status is not None:
            stmt = stmt.where(JournalEntry.status == status)
        if from_date is not None:
            stmt = stmt.where(JournalEntry.effective_date >= from_date)
        if to_date is not None:
            stmt = stmt.where(JournalEntry.effective_date <= to_date)
        return paginate(self._session, stmt, page, transform=lambda e: e.to_dto())

    # =========================================================================
    # Internals
    # =========================================================================

    def _is_privileged(self, actor_id: UUID | None) -> bool:
        if actor_id is None or self._principals is None:
            return False
        return self._principals.is_privileged(actor_id)

    def _get(self, entry_id: UUID) -> JournalEntry:
        entry = self._session.get(JournalEntry, entry_id)
        if entry is None:
            raise JournalEntryNotFoundError(entry_id)
        return entry

    def _get_for_update(self, entry_id: UUID) -> JournalEntry:
        entry = self._session.execute(
            select(JournalEntry)
            .where(JournalEntry.id == entry_id)
            .with_for_update()
        ).scalar_one_or_none()
        if entry is None:
            raise JournalEntryNotFoundError(entry_id)
        return entry

    @staticmethod
    def _require_draft(entry: JournalEntry) -> None:
        if entry.status != JournalStatus.DRAFT:
            raise EntryNotDraftError(entry.id, entry.status.value)

    def _build_lines(self, lines: Sequence[LineSpec], actor_id: UUID | None) -> list[JournalLine]:
        built: list[JournalLine] = []
        for number, spec in enumerate(lines, 1):
            if spec.debit < 0 or spec.credit < 0:
                raise InvalidJournalLineError(number, "amounts must not be negative")
            if isinstance(spec.account, str) and not spec.account:
                raise ValidationError(f"Journal line {number}: account is required")
            account = self._accounts.resolve(spec.account)
            line = JournalLine(
                line_number=number,
                account_id=account.id,
                account_code=account.code,
                debit=int(spec.debit),
                credit=int(spec.credit),
                memo=spec.memo,
            )
            self._stamp_new(line, actor_id)
            built.append(line)
        return built

    def _validate_lines(self, entry: JournalEntry) -> None:
        if not entry.lines:
            raise EmptyEntryError(entry.id)
        for line in entry.lines:
            if line.debit > 0 and line.credit > 0:
                raise InvalidJournalLineError(
                    line.line_number, "a line cannot carry both a debit and a credit"
                )
            if line.debit <= 0 and line.credit <= 0:
                raise InvalidJournalLineError(
                    line.line_number, "a line must carry a positive debit or credit"
                )
            account = self._accounts.resolve(line.account_id)
            if not account.is_active:
                raise AccountInactiveError(account.code, account.lifecycle.value)
        debits, credits = entry.total_debits, entry.total_credits
        if debits != credits:
            logger.warning(
                "journal_entry_unbalanced",
                extra={"entry_number": entry.number, "debits": debits, "credits": credits},
            )
            raise UnbalancedEntryError(debits, credits)
