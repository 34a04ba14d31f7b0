"""Kernel services: ledger, approvals, sequences, events and retry."""

from erp_kernel.services.account_service import AccountService
from erp_kernel.services.approval_service import ApprovalService
from erp_kernel.services.event_bus import EventBus, RecordingEventBus
from erp_kernel.services.journal_service import JournalPoster, JournalService
from erp_kernel.services.ledger_service import LedgerService
from erp_kernel.services.period_service import PeriodService
from erp_kernel.services.recurring_service import RecurringJournalService
from erp_kernel.services.retry import RetryPolicy, run_with_retry
from erp_kernel.services.sequence_service import SequenceService

__all__ = [
    "AccountService",
    "ApprovalService",
    "EventBus",
    "JournalPoster",
    "JournalService",
    "LedgerService",
    "PeriodService",
    "RecordingEventBus",
    "RecurringJournalService",
    "RetryPolicy",
    "SequenceService",
    "run_with_retry",
]
