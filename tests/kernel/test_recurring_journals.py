"""
Tests for recurring journals through LedgerService.run_recurring.

Covers:
- Auto-post templates materialize and post on the scheduled date
- The next run is recomputed from the anchor day (31 -> 29 in February)
- At most one occurrence per template per call
- Templates complete once the next run passes the end date
- Paused templates are skipped; non-auto-post templates leave a Draft
"""

from datetime import date, datetime, timezone

import pytest

from erp_kernel.domain.ledger import (
    EntrySource,
    JournalStatus,
    LineSpec,
    RecurrenceFrequency,
    RecurringStatus,
)
from erp_kernel.exceptions import UnbalancedEntryError

from conftest import TEST_ACTOR_ID


def _at(year, month, day):
    return datetime(year, month, day, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def monthly_rent(ledger, standard_accounts):
    """Factory: a Monthly rent template anchored on day 31."""

    def _create(**kwargs):
        kwargs.setdefault("auto_post", True)
        kwargs.setdefault("day_of_month", 31)
        return ledger.recurring.create_recurring_journal(
            "Monthly rent",
            RecurrenceFrequency.MONTHLY,
            [LineSpec.dr("5000", 1_200), LineSpec.cr("1000", 1_200)],
            date(2024, 1, 31),
            actor_id=TEST_ACTOR_ID,
            **kwargs,
        )

    return _create


class TestRunRecurring:
    def test_auto_post_template_posts_on_its_scheduled_date(self, ledger, monthly_rent, captured_logs):
        template = monthly_rent()

        results = ledger.run_recurring(_at(2024, 1, 31), actor_id=TEST_ACTOR_ID)

        assert len(results) == 1
        result = results[0]
        assert result.error_code is None
        assert result.posted
        assert result.next_run_date == date(2024, 2, 29)
        entry = ledger.journals.get_entry(result.entry_id)
        assert entry.status == JournalStatus.POSTED
        assert entry.source == EntrySource.RECURRING
        assert entry.effective_date == date(2024, 1, 31)
        assert entry.total_debits == entry.total_credits == 1_200
        assert ledger.recurring.get(template.id).next_run_date == date(2024, 2, 29)

        summary = [r for r in captured_logs() if r["message"] == "recurring_run_completed"]
        assert summary[-1]["created_count"] == 1
        assert summary[-1]["posted"] == 1

    def test_not_due_again_until_the_next_run(self, ledger, monthly_rent):
        monthly_rent()
        ledger.run_recurring(_at(2024, 1, 31))

        assert ledger.run_recurring(_at(2024, 2, 28)) == []
        assert len(ledger.run_recurring(_at(2024, 2, 29))) == 1

    def test_one_occurrence_per_call_when_behind(self, ledger, monthly_rent):
        monthly_rent()

        first = ledger.run_recurring(_at(2024, 4, 1))
        second = ledger.run_recurring(_at(2024, 4, 1))

        assert len(first) == len(second) == 1
        assert ledger.journals.get_entry(first[0].entry_id).effective_date == date(2024, 1, 31)
        assert ledger.journals.get_entry(second[0].entry_id).effective_date == date(2024, 2, 29)

    def test_completes_after_end_date(self, ledger, monthly_rent):
        template = monthly_rent(end_date=date(2024, 3, 15))

        ledger.run_recurring(_at(2024, 1, 31))
        last = ledger.run_recurring(_at(2024, 2, 29))

        assert last[0].next_run_date is None
        assert ledger.recurring.get(template.id).status == RecurringStatus.COMPLETED
        assert ledger.run_recurring(_at(2024, 12, 31)) == []

    def test_without_auto_post_leaves_a_draft(self, ledger, monthly_rent):
        monthly_rent(auto_post=False)

        results = ledger.run_recurring(_at(2024, 1, 31))

        assert not results[0].posted
        assert ledger.journals.get_entry(results[0].entry_id).status == JournalStatus.DRAFT

    def test_paused_templates_are_skipped(self, ledger, monthly_rent):
        template = monthly_rent()
        ledger.recurring.pause(template.id)

        assert ledger.run_recurring(_at(2024, 1, 31)) == []

        ledger.recurring.resume(template.id)
        assert len(ledger.run_recurring(_at(2024, 1, 31))) == 1

    def test_unbalanced_template_is_rejected(self, ledger, standard_accounts):
        with pytest.raises(UnbalancedEntryError):
            ledger.recurring.create_recurring_journal(
                "Broken",
                RecurrenceFrequency.DAILY,
                [LineSpec.dr("5000", 10), LineSpec.cr("1000", 9)],
                date(2024, 1, 1),
            )
