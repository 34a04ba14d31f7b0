"""
RecurringJournalService -- recurring journal templates and the run loop.

Responsibility:
    Stores recurring templates and materializes due occurrences as journal
    entries, posting them immediately when the template is auto-post.

Architecture position:
    Kernel > Services.  Uses JournalService for entry creation and posting
    and erp_engines.recurrence for date arithmetic.

Invariants enforced:
    - One call of ``run_recurring`` materializes at most one occurrence per
      template; the occurrence's effective date is the scheduled date.
    - Each template runs inside its own savepoint: a failure on one
      template rolls back only that template's writes.
    - A template whose next run passes its end date becomes Completed.
    - An auto-post failure leaves the Draft entry in place and the template
      advanced; the error code is reported in the run result.

Failure modes:
    - Template-level errors are captured into RecurringRunResult, never
      raised.  Store failures (non-ErpError) propagate.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_engines.recurrence import first_run_date, next_run_date, validate_recurrence
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.currency import validate_currency
from erp_kernel.domain.identity import PrincipalDirectory
from erp_kernel.domain.ledger import (
    EntrySource,
    LineSpec,
    RecurrenceFrequency,
    RecurringJournalInfo,
    RecurringRunResult,
    RecurringStatus,
)
from erp_kernel.exceptions import (
    BusinessRuleError,
    ErpError,
    RecurringJournalNotFoundError,
    UnbalancedEntryError,
    ValidationError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.models.recurring_journal import RecurringJournal
from erp_kernel.services.account_service import AccountService
from erp_kernel.services.base import BaseService
from erp_kernel.services.event_bus import EventBus
from erp_kernel.services.journal_service import JournalService

logger = get_logger("services.recurring")


class RecurringJournalService(BaseService):
    """
    Service for recurring journals.

    Guarantees:
        - Templates are balanced and reference existing accounts at
          creation time.
        - ``run_recurring`` never raises for a single template's business
          failure; it reports it in the returned results.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        principals: PrincipalDirectory | None = None,
    ):
        super().__init__(session, clock)
        self._journals = JournalService(session, self._clock, event_bus, principals)
        self._accounts = AccountService(session, self._clock)

    def create_recurring_journal(
        self,
        name: str,
        frequency: RecurrenceFrequency,
        lines: Sequence[LineSpec],
        start_date: date,
        *,
        interval: int = 1,
        end_date: date | None = None,
        day_of_month: int | None = None,
        day_of_week: int | None = None,
        auto_post: bool = False,
        description: str = "",
        currency: str = "USD",
        actor_id: UUID | None = None,
    ) -> RecurringJournalInfo:
        if not name:
            raise ValidationError("Recurring journal name is required")
        if not lines:
            raise ValidationError("Recurring journal requires at least one line")
        try:
            validate_recurrence(interval, day_of_month, day_of_week)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if end_date is not None and end_date < start_date:
            raise ValidationError("end_date cannot be before start_date")
        debits = sum(line.debit for line in lines)
        credits = sum(line.credit for line in lines)
        if debits != credits:
            raise UnbalancedEntryError(debits, credits)
        template = [
            LineSpec(
                account=self._accounts.resolve(line.account).code,
                debit=line.debit,
                credit=line.credit,
                memo=line.memo,
            ).to_template()
            for line in lines
        ]

        journal = RecurringJournal(
            name=name,
            description=description,
            frequency=frequency,
            interval=interval,
            start_date=start_date,
            end_date=end_date,
            next_run_date=first_run_date(start_date, frequency, day_of_month, day_of_week),
            day_of_month=day_of_month,
            day_of_week=day_of_week,
            auto_post=auto_post,
            status=RecurringStatus.ACTIVE,
            currency=validate_currency(currency),
            template_lines=template,
        )
        self._stamp_new(journal, actor_id)
        self._session.add(journal)
        self._session.flush()
        logger.info(
            "recurring_journal_created",
            extra={
                "recurring_journal_id": str(journal.id),
                "frequency": frequency.value,
                "next_run_date": str(journal.next_run_date),
            },
        )
        return journal.to_dto()

    def pause(self, journal_id: UUID, actor_id: UUID | None = None) -> RecurringJournalInfo:
        journal = self._get(journal_id)
        if journal.status != RecurringStatus.ACTIVE:
            raise BusinessRuleError(f"Recurring journal {journal.name} is {journal.status.value}")
        journal.status = RecurringStatus.PAUSED
        self._stamp_changed(journal, actor_id)
        self._session.flush()
        return journal.to_dto()

    def resume(self, journal_id: UUID, actor_id: UUID | None = None) -> RecurringJournalInfo:
        journal = self._get(journal_id)
        if journal.status != RecurringStatus.PAUSED:
            raise BusinessRuleError(f"Recurring journal {journal.name} is {journal.status.value}")
        journal.status = RecurringStatus.ACTIVE
        self._stamp_changed(journal, actor_id)
        self._session.flush()
        return journal.to_dto()

    def get(self, journal_id: UUID) -> RecurringJournalInfo:
        return self._get(journal_id).to_dto()

    def run_recurring(
        self,
        now: datetime | None = None,
        actor_id: UUID | None = None,
    ) -> list[RecurringRunResult]:
        """
        Materialize every Active template whose next run is due.

        Postconditions:
            - Each due template produced an entry (result.entry_id set), or
              failed without any write (result.error_code set, template not
              advanced).
        """
        now = now or self._clock.now()
        today = now.date()
        due = list(
            self._session.execute(
                select(RecurringJournal)
                .where(
                    RecurringJournal.status == RecurringStatus.ACTIVE,
                    RecurringJournal.next_run_date <= today,
                )
                .order_by(RecurringJournal.next_run_date, RecurringJournal.name)
            ).scalars()
        )

        results = [self._run_one(journal, now, actor_id) for journal in due]
        logger.info(
            "recurring_run_completed",
            extra={
                "due_count": len(due),
                "created_count": sum(1 for r in results if r.entry_id is not None),
                "posted": sum(1 for r in results if r.posted),
            },
        )
        return results

    # =========================================================================
    # Internals
    # =========================================================================

    def _run_one(
        self,
        journal: RecurringJournal,
        now: datetime,
        actor_id: UUID | None,
    ) -> RecurringRunResult:
        scheduled = journal.next_run_date
        try:
            with self._session.begin_nested():
                entry = self._journals.create_entry(
                    scheduled,
                    journal.description or journal.name,
                    journal.line_specs(),
                    reference=journal.name,
                    currency=journal.currency,
                    source=EntrySource.RECURRING,
                    actor_id=actor_id,
                )
        except ErpError as exc:
            logger.warning(
                "recurring_journal_failed",
                extra={
                    "recurring_journal_id": str(journal.id),
                    "scheduled_date": str(scheduled),
                    "error_code": exc.code,
                },
            )
            return RecurringRunResult(
                recurring_journal_id=journal.id,
                entry_id=None,
                posted=False,
                next_run_date=scheduled,
                error_code=exc.code,
                error_message=str(exc),
            )

        posted = False
        error: ErpError | None = None
        if journal.auto_post:
            try:
                with self._session.begin_nested():
                    self._journals.post_entry(entry.id, actor_id)
                posted = True
            except ErpError as exc:
                error = exc
                logger.warning(
                    "recurring_auto_post_failed",
                    extra={
                        "recurring_journal_id": str(journal.id),
                        "entry_id": str(entry.id),
                        "error_code": exc.code,
                    },
                )

        anchor_day = journal.day_of_month or journal.start_date.day
        following = next_run_date(
            scheduled,
            journal.frequency,
            journal.interval,
            anchor_day if journal.frequency not in _DAY_BASED else None,
            journal.day_of_week,
        )
        journal.last_run_at = now
        journal.run_count += 1
        journal.next_run_date = following
        if journal.end_date is not None and following > journal.end_date:
            journal.status = RecurringStatus.COMPLETED
        self._stamp_changed(journal, actor_id)
        self._session.flush()

        logger.info(
            "recurring_journal_run",
            extra={
                "recurring_journal_id": str(journal.id),
                "entry_id": str(entry.id),
                "scheduled_date": str(scheduled),
                "posted": posted,
                "next_run_date": str(following),
            },
        )
        return RecurringRunResult(
            recurring_journal_id=journal.id,
            entry_id=entry.id,
            posted=posted,
            next_run_date=following if journal.status != RecurringStatus.COMPLETED else None,
            error_code=error.code if error else None,
            error_message=str(error) if error else None,
        )

    def _get(self, journal_id: UUID) -> RecurringJournal:
        journal = self._session.get(RecurringJournal, journal_id)
        if journal is None:
            raise RecurringJournalNotFoundError(journal_id)
        return journal


_DAY_BASED = frozenset(
    {
        RecurrenceFrequency.DAILY,
        RecurrenceFrequency.WEEKLY,
        RecurrenceFrequency.BIWEEKLY,
    }
)
