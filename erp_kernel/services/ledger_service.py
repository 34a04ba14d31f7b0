"""
LedgerService -- the LedgerCore entry point.

Ties together:
- AccountService: chart of accounts
- PeriodService: fiscal calendar and period locks
- JournalService: entry lifecycle and the double-entry gate
- RecurringJournalService: recurring templates and the run loop
- LedgerSelector: balances and financial statements

The composed services share one Session, Clock, EventBus and principal
directory.  Transaction boundaries stay with the caller.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from erp_kernel.domain.clock import Clock
from erp_kernel.domain.identity import PrincipalDirectory
from erp_kernel.domain.ledger import (
    AccountClassification,
    AccountInfo,
    BalanceSheet,
    EntrySource,
    JournalEntryInfo,
    LineSpec,
    ProfitAndLoss,
    RecurringRunResult,
    TrialBalance,
)
from erp_kernel.selectors.ledger_selector import LedgerSelector
from erp_kernel.services.account_service import AccountService
from erp_kernel.services.base import BaseService
from erp_kernel.services.event_bus import EventBus
from erp_kernel.services.journal_service import JournalService
from erp_kernel.services.period_service import PeriodService
from erp_kernel.services.recurring_service import RecurringJournalService


class LedgerService(BaseService):
    """
    Facade over the ledger services.

    The component services are exposed as ``accounts``, ``periods``,
    ``journals``, ``recurring`` and ``reports`` for the operations not
    forwarded here.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        principals: PrincipalDirectory | None = None,
    ):
        super().__init__(session, clock)
        self.accounts = AccountService(session, self._clock)
        self.periods = PeriodService(session, self._clock)
        self.journals = JournalService(session, self._clock, event_bus, principals)
        self.recurring = RecurringJournalService(session, self._clock, event_bus, principals)
        self.reports = LedgerSelector(session)

    def create_account(
        self,
        code: str,
        name: str,
        classification: AccountClassification,
        parent_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> AccountInfo:
        return self.accounts.create_account(code, name, classification, parent_id, actor_id)

    def create_entry(
        self,
        effective_date: date,
        description: str,
        lines: Sequence[LineSpec],
        **kwargs,
    ) -> JournalEntryInfo:
        return self.journals.create_entry(effective_date, description, lines, **kwargs)

    def post_entry(self, entry_id: UUID, actor_id: UUID | None = None) -> JournalEntryInfo:
        return self.journals.post_entry(entry_id, actor_id)

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
        return self.journals.create_and_post(
            effective_date,
            description,
            lines,
            reference=reference,
            currency=currency,
            source=source,
            actor_id=actor_id,
        )

    def reverse_entry(
        self,
        entry_id: UUID,
        on_date: date | None = None,
        actor_id: UUID | None = None,
    ) -> JournalEntryInfo:
        return self.journals.reverse_entry(entry_id, on_date=on_date, actor_id=actor_id)

    def run_recurring(
        self,
        now: datetime | None = None,
        actor_id: UUID | None = None,
    ) -> list[RecurringRunResult]:
        return self.recurring.run_recurring(now, actor_id)

    def trial_balance(self, as_of: date) -> TrialBalance:
        return self.reports.trial_balance(as_of)

    def balance_sheet(self, as_of: date) -> BalanceSheet:
        return self.reports.balance_sheet(as_of)

    def profit_and_loss(self, from_date: date, to_date: date) -> ProfitAndLoss:
        return self.reports.profit_and_loss(from_date, to_date)
