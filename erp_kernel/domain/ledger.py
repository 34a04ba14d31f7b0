"""
Ledger domain vocabulary -- enums, transition tables, and frozen DTOs.

Architecture position:
    Kernel > Domain -- pure value objects, zero I/O.  Models convert to these
    DTOs via ``to_dto()``; services return only DTOs to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from uuid import UUID


class AccountClassification(str, Enum):
    ASSET = "Asset"
    LIABILITY = "Liability"
    EQUITY = "Equity"
    REVENUE = "Revenue"
    EXPENSE = "Expense"

    @property
    def is_debit_normal(self) -> bool:
        return self in (AccountClassification.ASSET, AccountClassification.EXPENSE)

    def signed_balance(self, debits: int, credits: int) -> int:
        """Balance signed by the classification's normal side."""
        return debits - credits if self.is_debit_normal else credits - debits


class AccountLifecycle(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    DELETED = "Deleted"


class JournalStatus(str, Enum):
    DRAFT = "Draft"
    POSTED = "Posted"
    VOID = "Void"


FINAL_JOURNAL_STATUSES: frozenset[JournalStatus] = frozenset(
    {JournalStatus.POSTED, JournalStatus.VOID}
)


class FiscalYearStatus(str, Enum):
    ACTIVE = "Active"
    CLOSED = "Closed"


class PeriodLock(str, Enum):
    OPEN = "Open"
    SOFT_CLOSE = "SoftClose"
    HARD_CLOSE = "HardClose"


PERIOD_LOCK_TRANSITIONS: dict[PeriodLock, frozenset[PeriodLock]] = {
    PeriodLock.OPEN: frozenset({PeriodLock.SOFT_CLOSE, PeriodLock.HARD_CLOSE}),
    PeriodLock.SOFT_CLOSE: frozenset({PeriodLock.OPEN, PeriodLock.HARD_CLOSE}),
    PeriodLock.HARD_CLOSE: frozenset(),
}


class RecurrenceFrequency(str, Enum):
    DAILY = "Daily"
    WEEKLY = "Weekly"
    BIWEEKLY = "Biweekly"
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    YEARLY = "Yearly"


class RecurringStatus(str, Enum):
    ACTIVE = "Active"
    PAUSED = "Paused"
    COMPLETED = "Completed"


class EntrySource(str, Enum):
    MANUAL = "Manual"
    REVERSAL = "Reversal"
    RECURRING = "Recurring"
    COSTING = "Costing"


# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class LineSpec:
    """
    One requested journal line.

    ``account`` is an account code or an account UUID.  Amounts are integer
    minor units; exactly one of debit/credit is expected to be positive
    (checked at posting time).
    """

    account: str | UUID
    debit: int = 0
    credit: int = 0
    memo: str | None = None

    @classmethod
    def dr(cls, account: str | UUID, amount: int, memo: str | None = None) -> LineSpec:
        return cls(account=account, debit=amount, memo=memo)

    @classmethod
    def cr(cls, account: str | UUID, amount: int, memo: str | None = None) -> LineSpec:
        return cls(account=account, credit=amount, memo=memo)

    def to_template(self) -> dict:
        return {
            "account": str(self.account),
            "debit": self.debit,
            "credit": self.credit,
            "memo": self.memo,
        }

    @classmethod
    def from_template(cls, data: dict) -> LineSpec:
        return cls(
            account=data["account"],
            debit=int(data.get("debit", 0)),
            credit=int(data.get("credit", 0)),
            memo=data.get("memo"),
        )


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class AccountInfo:
    id: UUID
    code: str
    name: str
    classification: AccountClassification
    lifecycle: AccountLifecycle
    parent_id: UUID | None = None


@dataclass(frozen=True)
class FiscalYearInfo:
    id: UUID
    name: str
    start_date: date
    end_date: date
    status: FiscalYearStatus


@dataclass(frozen=True)
class PeriodInfo:
    id: UUID
    fiscal_year_id: UUID
    ordinal: int
    name: str
    start_date: date
    end_date: date
    lock: PeriodLock
    locked_at: datetime | None = None

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


@dataclass(frozen=True)
class JournalLineInfo:
    line_number: int
    account_id: UUID
    account_code: str
    debit: int
    credit: int
    memo: str | None = None


@dataclass(frozen=True)
class JournalEntryInfo:
    id: UUID
    number: str
    effective_date: date
    description: str
    status: JournalStatus
    lines: tuple[JournalLineInfo, ...]
    currency: str = "USD"
    reference: str | None = None
    source: EntrySource = EntrySource.MANUAL
    period_id: UUID | None = None
    posted_at: datetime | None = None
    posted_by_id: UUID | None = None
    reversal_of_id: UUID | None = None

    @property
    def total_debits(self) -> int:
        return sum(line.debit for line in self.lines)

    @property
    def total_credits(self) -> int:
        return sum(line.credit for line in self.lines)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits


@dataclass(frozen=True)
class RecurringJournalInfo:
    id: UUID
    name: str
    frequency: RecurrenceFrequency
    interval: int
    start_date: date
    next_run_date: date
    auto_post: bool
    status: RecurringStatus
    template_lines: tuple[LineSpec, ...]
    end_date: date | None = None
    day_of_month: int | None = None
    day_of_week: int | None = None
    last_run_at: datetime | None = None
    description: str = ""


@dataclass(frozen=True)
class RecurringRunResult:
    """Outcome of one recurring journal in a ``run_recurring`` pass."""

    recurring_journal_id: UUID
    entry_id: UUID | None
    posted: bool
    next_run_date: date | None
    error_code: str | None = None
    error_message: str | None = None


# =============================================================================
# Reports
# =============================================================================


@dataclass(frozen=True)
class AccountBalance:
    account_id: UUID
    account_code: str
    account_name: str
    classification: AccountClassification
    debits: int
    credits: int

    @property
    def balance(self) -> int:
        return self.classification.signed_balance(self.debits, self.credits)


@dataclass(frozen=True)
class TrialBalanceLine:
    account_id: UUID
    account_code: str
    account_name: str
    classification: AccountClassification
    debit: int
    credit: int
    balance: int


@dataclass(frozen=True)
class TrialBalance:
    as_of: date
    lines: tuple[TrialBalanceLine, ...]
    total_debits: int
    total_credits: int

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits

    def line_for(self, account_code: str) -> TrialBalanceLine | None:
        for line in self.lines:
            if line.account_code == account_code:
                return line
        return None


@dataclass(frozen=True)
class StatementSection:
    classification: AccountClassification
    lines: tuple[AccountBalance, ...]
    total: int


@dataclass(frozen=True)
class BalanceSheet:
    as_of: date
    assets: StatementSection
    liabilities: StatementSection
    equity: StatementSection
    current_earnings: int

    @property
    def total_liabilities_and_equity(self) -> int:
        return self.liabilities.total + self.equity.total + self.current_earnings

    @property
    def is_balanced(self) -> bool:
        return self.assets.total == self.total_liabilities_and_equity


@dataclass(frozen=True)
class ProfitAndLoss:
    from_date: date
    to_date: date
    revenue: StatementSection
    expenses: StatementSection
    net_income: int = field(default=0)
