"""
PeriodService -- fiscal calendar and period-lock lifecycle.

Responsibility:
    Creates fiscal years (optionally generating monthly accounting periods),
    drives the period lock (Open -> SoftClose -> HardClose, SoftClose ->
    Open) and validates that a journal date may be mutated under the lock
    of the period that contains it.

Architecture position:
    Kernel > Services.  Called by JournalService on every create, update and
    post, and by the reporting selector to reject dates outside the calendar.

Invariants enforced:
    - Fiscal years do not overlap.
    - HardClose is final: no transition leaves it, and no journal entry
      dated inside it may be created, changed or posted.
    - SoftClose admits mutations only from a privileged caller.
    - A period cannot HardClose while Draft entries are dated inside it,
      unless the caller asks for those drafts to be voided.
    - Concurrent close and post serialize on the period row
      (``SELECT ... FOR UPDATE``).

Failure modes:
    - FiscalYearOverlapError, FiscalYearNotClosableError
    - NoPeriodForDateError: no period covers the date.
    - PeriodLockedError: lock forbids the mutation.
    - InvalidPeriodTransitionError: lock transition not allowed.
    - PeriodHasDraftEntriesError: hard close with drafts outstanding.

Audit relevance:
    Every lock transition is logged with the period name, the old and new
    lock and the actor.
"""

import calendar
from datetime import date, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from erp_kernel.domain.clock import Clock
from erp_kernel.domain.ledger import (
    PERIOD_LOCK_TRANSITIONS,
    FiscalYearInfo,
    FiscalYearStatus,
    JournalStatus,
    PeriodInfo,
    PeriodLock,
)
from erp_kernel.exceptions import (
    FiscalYearNotClosableError,
    FiscalYearNotFoundError,
    FiscalYearOverlapError,
    InvalidPeriodTransitionError,
    NoPeriodForDateError,
    PeriodHasDraftEntriesError,
    PeriodLockedError,
    PeriodNotFoundError,
    ValidationError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.models.fiscal_period import AccountingPeriod, FiscalYear
from erp_kernel.models.journal import JournalEntry
from erp_kernel.services.base import BaseService

logger = get_logger("services.period")


def month_slices(start: date, end: date) -> list[tuple[date, date]]:
    """Split [start, end] into calendar-month slices, both ends inclusive."""
    slices: list[tuple[date, date]] = []
    cursor = start
    while cursor <= end:
        last_day = calendar.monthrange(cursor.year, cursor.month)[1]
        slice_end = min(date(cursor.year, cursor.month, last_day), end)
        slices.append((cursor, slice_end))
        cursor = slice_end + timedelta(days=1)
    return slices


class PeriodService(BaseService):
    """
    Service for fiscal years and accounting-period locks.

    Contract:
        Accepts ids and dates, returns frozen FiscalYearInfo / PeriodInfo
        DTOs.  ``validate_mutation_date`` is the single gate every journal
        mutation passes through.

    Non-goals:
        - Does NOT compute closing entries or retained earnings roll-forward.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    # =========================================================================
    # Fiscal years
    # =========================================================================

    def create_fiscal_year(
        self,
        name: str,
        start_date: date,
        end_date: date,
        generate_periods: bool = True,
        actor_id: UUID | None = None,
    ) -> FiscalYearInfo:
        if not name:
            raise ValidationError("Fiscal year name is required")
        if start_date > end_date:
            raise ValidationError(
                f"start_date ({start_date}) cannot be after end_date ({end_date})"
            )

        overlapping = self._session.execute(
            select(FiscalYear).where(
                FiscalYear.start_date <= end_date,
                FiscalYear.end_date >= start_date,
            )
        ).scalars().first()
        if overlapping is not None:
            raise FiscalYearOverlapError(name, overlapping.name)

        fiscal_year = FiscalYear(
            name=name,
            start_date=start_date,
            end_date=end_date,
            status=FiscalYearStatus.ACTIVE,
        )
        self._stamp_new(fiscal_year, actor_id)
        self._session.add(fiscal_year)
        self._session.flush()

        if generate_periods:
            for ordinal, (p_start, p_end) in enumerate(month_slices(start_date, end_date), 1):
                self._add_period(fiscal_year, ordinal, f"{name}-P{ordinal:02d}", p_start, p_end, actor_id)
            self._session.flush()

        logger.info(
            "fiscal_year_created",
            extra={
                "fiscal_year": name,
                "start_date": str(start_date),
                "end_date": str(end_date),
                "period_count": len(fiscal_year.periods),
            },
        )
        return fiscal_year.to_dto()

    def add_period(
        self,
        fiscal_year_id: UUID,
        name: str,
        start_date: date,
        end_date: date,
        actor_id: UUID | None = None,
    ) -> PeriodInfo:
        """Append a custom period to a fiscal year created without periods."""
        fiscal_year = self._get_fiscal_year(fiscal_year_id)
        if start_date > end_date:
            raise ValidationError(
                f"start_date ({start_date}) cannot be after end_date ({end_date})"
            )
        if start_date < fiscal_year.start_date or end_date > fiscal_year.end_date:
            raise ValidationError(f"Period {name} falls outside fiscal year {fiscal_year.name}")
        for existing in fiscal_year.periods:
            if existing.start_date <= end_date and start_date <= existing.end_date:
                raise ValidationError(f"Period {name} overlaps period {existing.name}")
        ordinal = max((p.ordinal for p in fiscal_year.periods), default=0) + 1
        period = self._add_period(fiscal_year, ordinal, name, start_date, end_date, actor_id)
        self._session.flush()
        return period.to_dto()

    def close_fiscal_year(self, fiscal_year_id: UUID, actor_id: UUID | None = None) -> FiscalYearInfo:
        fiscal_year = self._get_fiscal_year(fiscal_year_id)
        open_periods = [p.name for p in fiscal_year.periods if p.lock != PeriodLock.HARD_CLOSE]
        if open_periods:
            raise FiscalYearNotClosableError(fiscal_year.name, open_periods)
        fiscal_year.status = FiscalYearStatus.CLOSED
        fiscal_year.closed_at = self._clock.now()
        self._stamp_changed(fiscal_year, actor_id)
        self._session.flush()
        logger.info("fiscal_year_closed", extra={"fiscal_year": fiscal_year.name})
        return fiscal_year.to_dto()

    def list_fiscal_years(self) -> list[FiscalYearInfo]:
        rows = self._session.execute(select(FiscalYear).order_by(FiscalYear.start_date)).scalars()
        return [fy.to_dto() for fy in rows]

    # =========================================================================
    # Period locks
    # =========================================================================

    def soft_close_period(self, period_id: UUID, actor_id: UUID | None = None) -> PeriodInfo:
        period = self._get_period_for_update(period_id)
        self._transition(period, PeriodLock.SOFT_CLOSE, actor_id)
        return period.to_dto()

    def hard_close_period(
        self,
        period_id: UUID,
        actor_id: UUID | None = None,
        void_drafts: bool = False,
    ) -> PeriodInfo:
        """
        Move a period to HardClose.

        Postconditions:
            - No Draft entry remains dated inside the period.  With
              ``void_drafts`` the drafts are voided; otherwise the close fails.
        """
        period = self._get_period_for_update(period_id)
        if PeriodLock.HARD_CLOSE not in PERIOD_LOCK_TRANSITIONS[period.lock]:
            raise InvalidPeriodTransitionError(
                period.name, period.lock.value, PeriodLock.HARD_CLOSE.value
            )

        drafts = list(
            self._session.execute(
                select(JournalEntry).where(
                    JournalEntry.status == JournalStatus.DRAFT,
                    JournalEntry.effective_date >= period.start_date,
                    JournalEntry.effective_date <= period.end_date,
                )
            ).scalars()
        )
        if drafts and not void_drafts:
            raise PeriodHasDraftEntriesError(period.name, len(drafts))
        for entry in drafts:
            entry.status = JournalStatus.VOID
            self._stamp_changed(entry, actor_id)
        if drafts:
            logger.info(
                "period_drafts_voided",
                extra={"period": period.name, "draft_count": len(drafts)},
            )

        self._transition(period, PeriodLock.HARD_CLOSE, actor_id)
        return period.to_dto()

    def reopen_period(self, period_id: UUID, actor_id: UUID | None = None) -> PeriodInfo:
        period = self._get_period_for_update(period_id)
        self._transition(period, PeriodLock.OPEN, actor_id)
        return period.to_dto()

    # =========================================================================
    # Queries and gates
    # =========================================================================

    def get_period(self, period_id: UUID) -> PeriodInfo:
        period = self._session.get(AccountingPeriod, period_id)
        if period is None:
            raise PeriodNotFoundError(period_id)
        return period.to_dto()

    def get_period_for_date(self, effective_date: date) -> PeriodInfo | None:
        period = self._period_for_date(effective_date, for_update=False)
        return period.to_dto() if period else None

    def list_periods(self, fiscal_year_id: UUID | None = None) -> list[PeriodInfo]:
        stmt = select(AccountingPeriod).order_by(AccountingPeriod.start_date)
        if fiscal_year_id is not None:
            stmt = stmt.where(AccountingPeriod.fiscal_year_id == fiscal_year_id)
        return [p.to_dto() for p in self._session.execute(stmt).scalars()]

    def validate_mutation_date(
        self,
        effective_date: date,
        privileged: bool = False,
        for_update: bool = False,
    ) -> PeriodInfo:
        """
        Gate a journal mutation dated ``effective_date``.

        The period row is locked when ``for_update`` is set so that a
        concurrent close waits for the posting transaction.

        Raises:
            NoPeriodForDateError: no period covers the date.
            PeriodLockedError: HardClose, or SoftClose without privilege.
        """
        period = self._period_for_date(effective_date, for_update=for_update)
        if period is None:
            raise NoPeriodForDateError(effective_date)
        if period.lock == PeriodLock.HARD_CLOSE or (
            period.lock == PeriodLock.SOFT_CLOSE and not privileged
        ):
            logger.warning(
                "period_lock_violation",
                extra={
                    "period": period.name,
                    "lock": period.lock.value,
                    "effective_date": str(effective_date),
                },
            )
            raise PeriodLockedError(period.name, period.lock.value, effective_date)
        return period.to_dto()

    def count_drafts(self, period_id: UUID) -> int:
        period = self._session.get(AccountingPeriod, period_id)
        if period is None:
            raise PeriodNotFoundError(period_id)
        return self._session.execute(
            select(func.count(JournalEntry.id)).where(
                JournalEntry.status == JournalStatus.DRAFT,
                JournalEntry.effective_date >= period.start_date,
                JournalEntry.effective_date <= period.end_date,
            )
        ).scalar_one()

    # =========================================================================
    # Internals
    # =========================================================================

    def _add_period(
        self,
        fiscal_year: FiscalYear,
        ordinal: int,
        name: str,
        start_date: date,
        end_date: date,
        actor_id: UUID | None,
    ) -> AccountingPeriod:
        period = AccountingPeriod(
            ordinal=ordinal,
            name=name,
            start_date=start_date,
            end_date=end_date,
            lock=PeriodLock.OPEN,
        )
        self._stamp_new(period, actor_id)
        fiscal_year.periods.append(period)
        return period

    def _get_fiscal_year(self, fiscal_year_id: UUID) -> FiscalYear:
        fiscal_year = self._session.get(FiscalYear, fiscal_year_id)
        if fiscal_year is None:
            raise FiscalYearNotFoundError(fiscal_year_id)
        return fiscal_year

    def _get_period_for_update(self, period_id: UUID) -> AccountingPeriod:
        period = self._session.execute(
            select(AccountingPeriod)
            .where(AccountingPeriod.id == period_id)
            .with_for_update()
        ).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(period_id)
        return period

    def _period_for_date(self, effective_date: date, for_update: bool) -> AccountingPeriod | None:
        stmt = select(AccountingPeriod).where(
            AccountingPeriod.start_date <= effective_date,
            AccountingPeriod.end_date >= effective_date,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().first()

    def _transition(
        self,
        period: AccountingPeriod,
        target: PeriodLock,
        actor_id: UUID | None,
    ) -> None:
        current = period.lock
        if target not in PERIOD_LOCK_TRANSITIONS[current]:
            raise InvalidPeriodTransitionError(period.name, current.value, target.value)
        period.lock = target
        period.locked_at = self._clock.now() if target != PeriodLock.OPEN else None
        period.locked_by_id = actor_id if target != PeriodLock.OPEN else None
        self._stamp_changed(period, actor_id)
        self._session.flush()
        logger.info(
            "period_lock_changed",
            extra={
                "period": period.name,
                "from_lock": current.value,
                "to_lock": target.value,
                "actor_id": str(actor_id) if actor_id else None,
            },
        )
