"""
Module: erp_kernel.selectors.ledger_selector
Responsibility: Read-only ledger reporting -- account balances, trial balance,
    balance sheet and profit and loss.  The ledger is a derived view over
    posted JournalLines; no balance is stored anywhere.
Architecture position: Kernel > Selectors.  May import from models/ and
    domain/.  MUST NOT import from services/ or outer layers, and never
    adds, flushes or commits.

Invariants enforced:
    - Only Posted entries contribute; Draft and Void entries are ignored.
    - Report dates must fall inside a defined accounting period.  A date
      outside the fiscal calendar raises NoPeriodForDateError rather than
      silently reporting a partial ledger.
    - Balances are signed by each account's normal side.

Failure modes:
    - NoPeriodForDateError for report dates outside the calendar.
    - ValidationError when from_date > to_date.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from erp_kernel.domain.ledger import (
    AccountBalance,
    AccountClassification,
    BalanceSheet,
    JournalStatus,
    ProfitAndLoss,
    StatementSection,
    TrialBalance,
    TrialBalanceLine,
)
from erp_kernel.exceptions import AccountNotFoundError, NoPeriodForDateError, ValidationError
from erp_kernel.models.account import Account
from erp_kernel.models.fiscal_period import AccountingPeriod
from erp_kernel.models.journal import JournalEntry, JournalLine


class LedgerSelector:
    """
    Selector for ledger reports.

    Contract:
        Accepts a Session owned by the caller and returns frozen report DTOs.
    """

    def __init__(self, session: Session):
        self.session = session

    # =========================================================================
    # Balances
    # =========================================================================

    def account_balance(self, account_id: UUID, as_of: date) -> AccountBalance:
        account = self.session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        self._require_period(as_of)
        totals = self._totals(to_date=as_of, account_id=account_id)
        debits, credits = totals.get(account_id, (0, 0))
        return AccountBalance(
            account_id=account.id,
            account_code=account.code,
            account_name=account.name,
            classification=account.classification,
            debits=debits,
            credits=credits,
        )

    def trial_balance(self, as_of: date) -> TrialBalance:
        """
        Net balance of every account with posted activity up to ``as_of``.

        Each account's net lands in the debit column when debits exceed
        credits and in the credit column otherwise, so the column totals
        agree whenever every posted entry balanced.
        """
        self._require_period(as_of)
        lines: list[TrialBalanceLine] = []
        for account, debits, credits in self._balances(to_date=as_of):
            net = debits - credits
            lines.append(
                TrialBalanceLine(
                    account_id=account.id,
                    account_code=account.code,
                    account_name=account.name,
                    classification=account.classification,
                    debit=net if net > 0 else 0,
                    credit=-net if net < 0 else 0,
                    balance=account.classification.signed_balance(debits, credits),
                )
            )
        return TrialBalance(
            as_of=as_of,
            lines=tuple(lines),
            total_debits=sum(line.debit for line in lines),
            total_credits=sum(line.credit for line in lines),
        )

    def balance_sheet(self, as_of: date) -> BalanceSheet:
        self._require_period(as_of)
        balances = self._account_balances(to_date=as_of)
        revenue = self._section(AccountClassification.REVENUE, balances)
        expenses = self._section(AccountClassification.EXPENSE, balances)
        return BalanceSheet(
            as_of=as_of,
            assets=self._section(AccountClassification.ASSET, balances),
            liabilities=self._section(AccountClassification.LIABILITY, balances),
            equity=self._section(AccountClassification.EQUITY, balances),
            current_earnings=revenue.total - expenses.total,
        )

    def profit_and_loss(self, from_date: date, to_date: date) -> ProfitAndLoss:
        if from_date > to_date:
            raise ValidationError(f"from_date ({from_date}) is after to_date ({to_date})")
        self._require_period(to_date)
        balances = self._account_balances(from_date=from_date, to_date=to_date)
        revenue = self._section(AccountClassification.REVENUE, balances)
        expenses = self._section(AccountClassification.EXPENSE, balances)
        return ProfitAndLoss(
            from_date=from_date,
            to_date=to_date,
            revenue=revenue,
            expenses=expenses,
            net_income=revenue.total - expenses.total,
        )

    def total_debits_credits(self, as_of: date | None = None) -> tuple[int, int]:
        """Grand totals over all posted lines (read-side balance check)."""
        stmt = (
            select(
                func.coalesce(func.sum(JournalLine.debit), 0),
                func.coalesce(func.sum(JournalLine.credit), 0),
            )
            .join(JournalEntry, JournalLine.entry_id == JournalEntry.id)
            .where(JournalEntry.status == JournalStatus.POSTED)
        )
        if as_of is not None:
            stmt = stmt.where(JournalEntry.effective_date <= as_of)
        debits, credits = self.session.execute(stmt).one()
        return int(debits), int(credits)

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_period(self, as_of: date) -> None:
        covered = self.session.execute(
            select(AccountingPeriod.id).where(
                AccountingPeriod.start_date <= as_of,
                AccountingPeriod.end_date >= as_of,
            )
        ).scalars().first()
        if covered is None:
            raise NoPeriodForDateError(as_of)

    def _totals(
        self,
        to_date: date,
        from_date: date | None = None,
        account_id: UUID | None = None,
    ) -> dict[UUID, tuple[int, int]]:
        stmt = (
            select(
                JournalLine.account_id,
                func.coalesce(func.sum(JournalLine.debit), 0),
                func.coalesce(func.sum(JournalLine.credit), 0),
            )
            .join(JournalEntry, JournalLine.entry_id == JournalEntry.id)
            .where(
                JournalEntry.status == JournalStatus.POSTED,
                JournalEntry.effective_date <= to_date,
            )
            .group_by(JournalLine.account_id)
        )
        if from_date is not None:
            stmt = stmt.where(JournalEntry.effective_date >= from_date)
        if account_id is not None:
            stmt = stmt.where(JournalLine.account_id == account_id)
        return {
            acct_id: (int(debits), int(credits))
            for acct_id, debits, credits in self.session.execute(stmt)
        }

    def _balances(
        self,
        to_date: date,
        from_date: date | None = None,
    ) -> list[tuple[Account, int, int]]:
        totals = self._totals(to_date=to_date, from_date=from_date)
        if not totals:
            return []
        accounts = self.session.execute(
            select(Account).where(Account.id.in_(list(totals))).order_by(Account.code)
        ).scalars()
        return [(a, *totals[a.id]) for a in accounts]

    def _account_balances(
        self,
        to_date: date,
        from_date: date | None = None,
    ) -> list[AccountBalance]:
        return [
            AccountBalance(
                account_id=account.id,
                account_code=account.code,
                account_name=account.name,
                classification=account.classification,
                debits=debits,
                credits=credits,
            )
            for account, debits, credits in self._balances(to_date, from_date)
        ]

    @staticmethod
    def _section(
        classification: AccountClassification,
        balances: list[AccountBalance],
    ) -> StatementSection:
        lines = tuple(b for b in balances if b.classification == classification)
        return StatementSection(
            classification=classification,
            lines=lines,
            total=sum(b.balance for b in lines),
        )
