"""
Tests for the ledger core -- journal posting, period locks and reporting.

Covers:
- The double-entry gate (unbalanced entries never post)
- Period boundary resolution (end dates are inclusive)
- HardClose periods reject new entries; SoftClose needs privilege
- Reversal round-trip: post then reverse restores every balance
- Posted entries are immutable at the ORM level
- Trial balance totals, balance sheet and profit and loss
"""

from datetime import date

import pytest

from erp_kernel.domain.events import Topics
from erp_kernel.domain.ledger import (
    AccountClassification,
    EntrySource,
    JournalStatus,
    LineSpec,
    PeriodLock,
)
from erp_kernel.exceptions import (
    AccountHierarchyCycleError,
    AccountInactiveError,
    DuplicateCodeError,
    EntryAlreadyReversedError,
    ImmutabilityViolationError,
    NoPeriodForDateError,
    PeriodHasDraftEntriesError,
    PeriodLockedError,
    UnbalancedEntryError,
)
from erp_kernel.models.journal import JournalEntry

from conftest import TEST_ACTOR_ID


class TestDoubleEntryGate:
    """An entry posts only when debits equal credits."""

    def test_unbalanced_entry_is_rejected_then_posts_once_fixed(
        self, ledger, standard_accounts
    ):
        draft = ledger.create_entry(
            date(2024, 1, 15),
            "Cash sale",
            [LineSpec.dr("1000", 100), LineSpec.cr("4000", 90)],
            actor_id=TEST_ACTOR_ID,
        )

        with pytest.raises(UnbalancedEntryError) as exc_info:
            ledger.post_entry(draft.id, actor_id=TEST_ACTOR_ID)
        assert exc_info.value.code == "UNBALANCED_ENTRY"
        assert ledger.journals.get_entry(draft.id).status == JournalStatus.DRAFT

        ledger.journals.update_draft(
            draft.id,
            lines=[LineSpec.dr("1000", 100), LineSpec.cr("4000", 100)],
            actor_id=TEST_ACTOR_ID,
        )
        posted = ledger.post_entry(draft.id, actor_id=TEST_ACTOR_ID)

        assert posted.status == JournalStatus.POSTED
        assert posted.posted_at is not None
        tb = ledger.trial_balance(date(2024, 1, 15))
        assert tb.line_for("1000").balance == 100
        assert tb.line_for("4000").balance == 100
        assert tb.is_balanced

    def test_posting_publishes_ledger_event(self, ledger, standard_accounts, event_bus):
        ledger.create_and_post(
            date(2024, 1, 20),
            "Owner investment",
            [LineSpec.dr("1000", 5_000), LineSpec.cr("3000", 5_000)],
            actor_id=TEST_ACTOR_ID,
        )

        events = event_bus.of_topic(Topics.LEDGER_ENTRY_POSTED)
        assert len(events) == 1
        assert events[0].payload["total_amount"] == 5_000

    def test_entry_numbers_are_sequential_per_year(self, ledger, standard_accounts):
        first = ledger.create_entry(
            date(2024, 2, 1), "a", [LineSpec.dr("1000", 1), LineSpec.cr("4000", 1)]
        )
        second = ledger.create_entry(
            date(2024, 2, 2), "b", [LineSpec.dr("1000", 1), LineSpec.cr("4000", 1)]
        )

        assert first.number == "JE-2024-000001"
        assert second.number == "JE-2024-000002"

    def test_inactive_account_cannot_be_posted_to(self, ledger, standard_accounts):
        ledger.accounts.deactivate_account(standard_accounts["sales"].id)

        with pytest.raises(AccountInactiveError):
            ledger.create_and_post(
                date(2024, 1, 15),
                "Sale to inactive account",
                [LineSpec.dr("1000", 10), LineSpec.cr("4000", 10)],
            )


class TestPeriodResolution:
    def test_period_end_date_is_inclusive(self, ledger, standard_accounts):
        posted = ledger.create_and_post(
            date(2024, 1, 31),
            "Month end accrual",
            [LineSpec.dr("1000", 10), LineSpec.cr("4000", 10)],
        )

        period = ledger.periods.get_period(posted.period_id)
        assert period.name == "FY2024-P01"
        assert period.end_date == date(2024, 1, 31)

    def test_date_outside_any_fiscal_year_is_rejected(self, ledger, standard_accounts):
        with pytest.raises(NoPeriodForDateError):
            ledger.create_entry(
                date(2025, 3, 1), "Next year", [LineSpec.dr("1000", 1), LineSpec.cr("4000", 1)]
            )

    def test_hard_close_blocks_new_entries(self, ledger, standard_accounts):
        january = ledger.periods.get_period_for_date(date(2024, 1, 10))
        ledger.periods.hard_close_period(january.id, actor_id=TEST_ACTOR_ID)

        with pytest.raises(PeriodLockedError):
            ledger.create_entry(
                date(2024, 1, 10), "Late", [LineSpec.dr("1000", 5), LineSpec.cr("4000", 5)]
            )

    def test_hard_close_refuses_drafts_unless_voided(self, ledger, standard_accounts):
        draft = ledger.create_entry(
            date(2024, 3, 3), "Pending", [LineSpec.dr("1000", 5), LineSpec.cr("4000", 5)]
        )
        march = ledger.periods.get_period_for_date(date(2024, 3, 3))

        with pytest.raises(PeriodHasDraftEntriesError):
            ledger.periods.hard_close_period(march.id)

        closed = ledger.periods.hard_close_period(march.id, void_drafts=True)
        assert closed.lock == PeriodLock.HARD_CLOSE
        assert ledger.journals.get_entry(draft.id).status == JournalStatus.VOID

    def test_soft_close_requires_privileged_caller(self, ledger, standard_accounts, principals):
        admin = principals.register(display_name="Controller", privileged=True)
        april = ledger.periods.get_period_for_date(date(2024, 4, 1))
        ledger.periods.soft_close_period(april.id)

        with pytest.raises(PeriodLockedError):
            ledger.create_entry(
                date(2024, 4, 2),
                "Adjustment",
                [LineSpec.dr("1000", 5), LineSpec.cr("4000", 5)],
                actor_id=TEST_ACTOR_ID,
            )

        posted = ledger.create_and_post(
            date(2024, 4, 2),
            "Adjustment",
            [LineSpec.dr("1000", 5), LineSpec.cr("4000", 5)],
            actor_id=admin.actor_id,
        )
        assert posted.status == JournalStatus.POSTED


class TestReversal:
    def test_post_then_reverse_restores_balances(self, ledger, standard_accounts):
        as_of = date(2024, 5, 31)
        tracked = [standard_accounts["receivables"].id, standard_accounts["sales"].id]
        before = [ledger.reports.account_balance(a, as_of).balance for a in tracked]

        original = ledger.create_and_post(
            date(2024, 5, 10),
            "Credit sale",
            [LineSpec.dr("1100", 2_500), LineSpec.cr("4000", 2_500)],
        )
        reversal = ledger.reverse_entry(original.id, on_date=date(2024, 5, 20))
        assert reversal.source == EntrySource.REVERSAL
        assert reversal.reversal_of_id == original.id
        assert reversal.total_debits == original.total_credits
        ledger.post_entry(reversal.id)

        after = [ledger.reports.account_balance(a, as_of).balance for a in tracked]
        assert after == before
        assert ledger.journals.get_entry(original.id).status == JournalStatus.POSTED

    def test_second_reversal_is_rejected(self, ledger, standard_accounts):
        original = ledger.create_and_post(
            date(2024, 5, 10), "Sale", [LineSpec.dr("1000", 10), LineSpec.cr("4000", 10)]
        )
        ledger.reverse_entry(original.id, on_date=date(2024, 5, 11))

        with pytest.raises(EntryAlreadyReversedError):
            ledger.reverse_entry(original.id, on_date=date(2024, 5, 12))


class TestImmutability:
    def test_posted_entry_cannot_be_modified(self, ledger, standard_accounts, session):
        posted = ledger.create_and_post(
            date(2024, 6, 1), "Sale", [LineSpec.dr("1000", 10), LineSpec.cr("4000", 10)]
        )
        row = session.get(JournalEntry, posted.id)
        row.description = "rewritten"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestReports:
    def test_debits_equal_credits_across_many_entries(self, ledger, standard_accounts):
        ledger.create_and_post(
            date(2024, 1, 5), "Capital", [LineSpec.dr("1000", 10_000), LineSpec.cr("3000", 10_000)]
        )
        ledger.create_and_post(
            date(2024, 2, 5), "Stock", [LineSpec.dr("1300", 4_000), LineSpec.cr("2000", 4_000)]
        )
        ledger.create_and_post(
            date(2024, 2, 20),
            "Sale with cost",
            [
                LineSpec.dr("1100", 3_000),
                LineSpec.cr("4000", 3_000),
                LineSpec.dr("5000", 1_200),
                LineSpec.cr("1300", 1_200),
            ],
        )

        debits, credits = ledger.reports.total_debits_credits()
        assert debits == credits == 18_200
        assert ledger.trial_balance(date(2024, 2, 29)).is_balanced

    def test_balance_sheet_balances_with_current_earnings(self, ledger, standard_accounts):
        ledger.create_and_post(
            date(2024, 1, 5), "Capital", [LineSpec.dr("1000", 10_000), LineSpec.cr("3000", 10_000)]
        )
        ledger.create_and_post(
            date(2024, 1, 25), "Sale", [LineSpec.dr("1000", 700), LineSpec.cr("4000", 700)]
        )
        ledger.create_and_post(
            date(2024, 1, 26), "Cost", [LineSpec.dr("5000", 300), LineSpec.cr("1000", 300)]
        )

        sheet = ledger.balance_sheet(date(2024, 1, 31))
        assert sheet.assets.total == 10_400
        assert sheet.current_earnings == 400
        assert sheet.is_balanced

        pnl = ledger.profit_and_loss(date(2024, 1, 1), date(2024, 1, 31))
        assert pnl.revenue.total == 700
        assert pnl.expenses.total == 300
        assert pnl.net_income == 400

    def test_drafts_do_not_affect_balances(self, ledger, standard_accounts):
        ledger.create_entry(
            date(2024, 1, 5), "Draft only", [LineSpec.dr("1000", 50), LineSpec.cr("4000", 50)]
        )

        tb = ledger.trial_balance(date(2024, 1, 31))
        assert tb.line_for("1000") is None
        assert tb.total_debits == 0

    def test_report_date_outside_periods_is_rejected(self, ledger, standard_accounts):
        with pytest.raises(NoPeriodForDateError):
            ledger.trial_balance(date(2023, 12, 31))


class TestAccounts:
    def test_duplicate_code_is_rejected(self, create_account):
        create_account("1500", "Fixed Assets")

        with pytest.raises(DuplicateCodeError):
            create_account("1500", "Fixed Assets again")

    def test_move_account_rejects_cycles(self, ledger, create_account):
        parent = create_account("1500", "Fixed Assets")
        child = create_account("1510", "Machinery", parent_id=parent.id)

        with pytest.raises(AccountHierarchyCycleError):
            ledger.accounts.move_account(parent.id, child.id)

    def test_list_accounts_filters_by_classification(self, ledger, standard_accounts):
        expenses = ledger.accounts.list_accounts(AccountClassification.EXPENSE)

        assert [a.code for a in expenses] == ["5000", "5900"]
