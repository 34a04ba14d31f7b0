"""ORM models owned by the ledger and approval engines."""

from erp_kernel.models.account import Account
from erp_kernel.models.approval import (
    ApprovalLevel,
    ApprovalRecord,
    ApprovalRequest,
    ApprovalWorkflow,
)
from erp_kernel.models.fiscal_period import AccountingPeriod, FiscalYear
from erp_kernel.models.journal import JournalEntry, JournalLine
from erp_kernel.models.recurring_journal import RecurringJournal
from erp_kernel.models.sequence import SequenceCounter


def import_all_models() -> None:
    """
    Import every model module so Base.metadata knows every table.

    The automation and services packages define their own tables on the
    same declarative base; they are imported here rather than at module
    level so the kernel does not depend on them at import time.
    """
    import erp_automation.models  # noqa: F401
    import erp_services.models  # noqa: F401


__all__ = [
    "Account",
    "AccountingPeriod",
    "ApprovalLevel",
    "ApprovalRecord",
    "ApprovalRequest",
    "ApprovalWorkflow",
    "FiscalYear",
    "JournalEntry",
    "JournalLine",
    "RecurringJournal",
    "SequenceCounter",
    "import_all_models",
]
