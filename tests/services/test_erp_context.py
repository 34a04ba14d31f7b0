"""
Tests for the composition root and the background scheduler.

Each test commits real transactions against a private SQLite file, the
way the scheduler's workers do.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

from erp_automation.domain.types import ExecutionStatus
from erp_config.schema import CreditSettings, ErpSettings
from erp_kernel.db.engine import session_scope
from erp_kernel.domain.events import Topics
from erp_kernel.domain.ledger import AccountClassification, LineSpec
from erp_services._costing_types import AdjustmentLineSpec
from erp_services.context import build_context

from conftest import TEST_ACTOR_ID


def _seed_ledger(ctx):
    with session_scope(ctx.session_factory) as session:
        ledger = ctx.ledger(session)
        ledger.periods.create_fiscal_year("FY2024", date(2024, 1, 1), date(2024, 12, 31))
        ledger.accounts.create_account("1000", "Cash", AccountClassification.ASSET)
        ledger.accounts.create_account("4000", "Sales", AccountClassification.REVENUE)


class TestSchedulerTick:
    def test_posted_entry_triggers_event_driven_workflow(self, erp_context):
        _seed_ledger(erp_context)
        with session_scope(erp_context.session_factory) as session:
            workflows = erp_context.automation(session)
            workflows.create_workflow(
                "ON-POST",
                "React to postings",
                "EventDriven",
                {"steps": [{"id": "note", "type": "log", "config": {"message": "posted {entry_number}"}}]},
                trigger_config={"topics": [Topics.LEDGER_ENTRY_POSTED]},
                actor_id=TEST_ACTOR_ID,
            )
            workflows.publish("ON-POST")

        with session_scope(erp_context.session_factory) as session:
            erp_context.ledger(session).create_and_post(
                date(2024, 1, 15),
                "Cash sale",
                [LineSpec.dr("1000", 100), LineSpec.cr("4000", 100)],
                actor_id=TEST_ACTOR_ID,
            )

        result = erp_context.scheduler().tick()

        assert result.errors == ()
        assert result.executions_created == 1
        assert result.executions_admitted == 1
        assert result.executions_advanced == 1
        with session_scope(erp_context.session_factory) as session:
            page = erp_context.automation(session).list_executions("ON-POST")
            assert page.total == 1
            assert page.items[0].status == ExecutionStatus.COMPLETED

    def test_idle_tick_does_nothing(self, erp_context):
        result = erp_context.scheduler().tick()

        assert result.errors == ()
        assert result.executions_created == 0
        assert result.executions_advanced == 0


class TestWiring:
    def test_costing_posts_through_the_context_ledger(self, erp_context):
        _seed_ledger(erp_context)
        product, warehouse = uuid4(), uuid4()
        with session_scope(erp_context.session_factory) as session:
            ledger = erp_context.ledger(session)
            ledger.accounts.create_account("1300", "Inventory", AccountClassification.ASSET)
            ledger.accounts.create_account("5900", "Revaluation", AccountClassification.EXPENSE)
            costing = erp_context.costing(session)
            costing.configure_valuation(product, warehouse, "FIFO")
            costing.receive(product, warehouse, 10, "1.00")

        with session_scope(erp_context.session_factory) as session:
            costing = erp_context.costing(session)
            draft = costing.create_adjustment(
                [AdjustmentLineSpec(product, warehouse, Decimal("1.20"))],
                reason="Price update",
                inventory_account="1300",
                revaluation_account="5900",
            )
            posted = costing.post_adjustment(draft.id)

        with session_scope(erp_context.session_factory) as session:
            entry = erp_context.ledger(session).journals.get_entry(posted.journal_entry_id)
            assert entry.total_debits == 200

    def test_credit_defaults_come_from_settings(self, isolated_engine, deterministic_clock):
        ctx = build_context(
            ErpSettings(credit=CreditSettings(default_hold_threshold_percent=75, default_auto_hold=False)),
            engine=isolated_engine,
            clock=deterministic_clock,
        )

        with session_scope(ctx.session_factory) as session:
            profile = ctx.credit(session).create_profile(uuid4(), 1_000)

        assert profile.hold_threshold_percent == 75
        assert not profile.auto_hold_enabled
