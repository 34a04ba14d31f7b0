"""
Pytest fixtures for the ERP engine test suite.

Provides:
- One in-memory SQLite engine per test session with every table created
- A per-test session joined to an outer transaction that is rolled back
- Deterministic clock, recording event bus and principal directory
- Engine services wired the way the composition root wires them
- Factory fixtures for accounts, fiscal years, workflows and credit profiles

Environment Variables:
- ERP_TEST_DATABASE_URL: run against another database (e.g. PostgreSQL).
  Defaults to in-memory SQLite.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from erp_automation.services.workflow_service import WorkflowService
from erp_automation.steps.base import StepServices, default_step_registry
from erp_config.schema import AutomationSettings, CreditSettings
from erp_kernel.db.engine import create_engine_from_url, create_tables, drop_tables
from erp_kernel.domain.clock import DeterministicClock
from erp_kernel.domain.identity import InMemoryPrincipalDirectory, SequentialIdGenerator
from erp_kernel.domain.ledger import AccountClassification
from erp_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from erp_kernel.services.approval_service import ApprovalService
from erp_kernel.services.event_bus import RecordingEventBus
from erp_kernel.services.ledger_service import LedgerService
from erp_services.costing_service import CostingService
from erp_services.credit_service import CreditService
from erp_services.rule_service import RuleService

# Test actor ID for all test operations
TEST_ACTOR_ID = UUID("00000000-0000-4000-8000-000000000001")

TEST_EPOCH = datetime(2024, 1, 15, 9, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture erp logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ledger):
            ledger.post_entry(entry_id)
            logs = captured_logs()
            assert any(r["message"] == "journal_entry_posted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("erp")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """Session-scoped engine; in-memory SQLite unless overridden."""
    url = os.environ.get("ERP_TEST_DATABASE_URL", "sqlite://")
    engine = create_engine_from_url(url)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create every table once for the test session."""
    create_tables(db_engine)
    yield
    drop_tables(db_engine)


@pytest.fixture
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    The session joins an outer transaction on a dedicated connection; any
    ``session.commit()`` inside the test releases a savepoint only.  The
    outer transaction is rolled back at teardown, undoing all data changes.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


@pytest.fixture
def isolated_engine(tmp_path):
    """A private file-backed SQLite database for tests that commit across sessions."""
    engine = create_engine_from_url(f"sqlite:///{tmp_path / 'erp.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


# =============================================================================
# Substrate fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock(TEST_EPOCH)


@pytest.fixture
def event_bus(deterministic_clock):
    """A bus that records every published event."""
    return RecordingEventBus(clock=deterministic_clock, ids=SequentialIdGenerator())


@pytest.fixture
def principals():
    directory = InMemoryPrincipalDirectory()
    directory.register(TEST_ACTOR_ID, display_name="Test Actor")
    return directory


@pytest.fixture
def test_actor_id():
    return TEST_ACTOR_ID


@pytest.fixture
def erp_context(isolated_engine, deterministic_clock, event_bus, principals):
    """A full composition root over a private database."""
    from erp_services.context import build_context

    return build_context(
        engine=isolated_engine,
        clock=deterministic_clock,
        event_bus=event_bus,
        principals=principals,
    )


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def ledger(session, deterministic_clock, event_bus, principals) -> LedgerService:
    return LedgerService(session, deterministic_clock, event_bus, principals)


@pytest.fixture
def approvals(session, deterministic_clock, event_bus, principals) -> ApprovalService:
    return ApprovalService(session, deterministic_clock, event_bus, principals)


@pytest.fixture
def rules(session, deterministic_clock, event_bus) -> RuleService:
    return RuleService(session, deterministic_clock, event_bus)


@pytest.fixture
def automation_settings():
    return AutomationSettings(lease_seconds=30, default_timeout_seconds=3600)


@pytest.fixture
def workflows(session, deterministic_clock, event_bus, automation_settings) -> WorkflowService:
    return WorkflowService(
        session,
        clock=deterministic_clock,
        event_bus=event_bus,
        registry=default_step_registry(),
        settings=automation_settings,
        services=StepServices(
            rules=lambda s: RuleService(s, deterministic_clock, event_bus),
            approvals=lambda s: ApprovalService(s, deterministic_clock, event_bus),
        ),
        worker_id="test-worker",
    )


@pytest.fixture
def costing(session, deterministic_clock, event_bus, ledger) -> CostingService:
    return CostingService(session, deterministic_clock, event_bus, poster=ledger)


@pytest.fixture
def credit(session, deterministic_clock, event_bus) -> CreditService:
    return CreditService(session, deterministic_clock, event_bus, CreditSettings())


# =============================================================================
# Factory fixtures
# =============================================================================


@pytest.fixture
def fiscal_year_2024(ledger):
    """Fiscal year 2024 with twelve Open monthly periods."""
    return ledger.periods.create_fiscal_year(
        "FY2024", date(2024, 1, 1), date(2024, 12, 31), actor_id=TEST_ACTOR_ID
    )


@pytest.fixture
def create_account(ledger):
    """Factory fixture: create an Active account and return its DTO."""

    def _create(code, name=None, classification=AccountClassification.ASSET, parent_id=None):
        return ledger.accounts.create_account(
            code,
            name or f"Account {code}",
            classification,
            parent_id=parent_id,
            actor_id=TEST_ACTOR_ID,
        )

    return _create


@pytest.fixture
def standard_accounts(create_account, fiscal_year_2024):
    """Cash, receivables, inventory, payables, equity, sales and expense accounts."""
    return {
        "cash": create_account("1000", "Cash", AccountClassification.ASSET),
        "receivables": create_account("1100", "Accounts Receivable", AccountClassification.ASSET),
        "inventory": create_account("1300", "Inventory", AccountClassification.ASSET),
        "payables": create_account("2000", "Accounts Payable", AccountClassification.LIABILITY),
        "equity": create_account("3000", "Owner Equity", AccountClassification.EQUITY),
        "sales": create_account("4000", "Sales", AccountClassification.REVENUE),
        "cogs": create_account("5000", "Cost of Goods Sold", AccountClassification.EXPENSE),
        "revaluation": create_account("5900", "Inventory Revaluation", AccountClassification.EXPENSE),
    }


@pytest.fixture
def create_workflow(workflows):
    """Factory fixture: create and publish an automation workflow."""

    def _create(code, steps, *, publish=True, **kwargs):
        kwargs.setdefault("trigger_kind", "Manual")
        trigger_kind = kwargs.pop("trigger_kind")
        info = workflows.create_workflow(
            code, f"Workflow {code}", trigger_kind, {"steps": steps}, actor_id=TEST_ACTOR_ID, **kwargs
        )
        if publish:
            info = workflows.publish(info.id, actor_id=TEST_ACTOR_ID)
        return info

    return _create


@pytest.fixture
def create_profile(credit):
    """Factory fixture: create a credit profile for a new customer."""

    def _create(credit_limit=100_000, **kwargs):
        kwargs.setdefault("actor_id", TEST_ACTOR_ID)
        return credit.create_profile(uuid4(), credit_limit, **kwargs)

    return _create
