"""
erp_services.context -- Composition root for the engines.

Responsibility:
    Builds the substrate once (engine, session factory, clock, event bus,
    principal directory) and hands out per-session engine services wired
    to it.  No engine constructs another engine's service on its own; the
    cross-engine edges (automation steps calling rules and approvals,
    costing posting through the ledger, events feeding triggers) are all
    drawn here.

Architecture position:
    Services -- top of the dependency graph.  Imports erp_kernel,
    erp_engines, erp_automation and erp_config; nothing imports it except
    callers and tests.

Failure modes:
    - StoreUnavailableError surfaces from the first session that cannot
      reach the database; construction itself does not connect unless
      ``create_schema`` is set.

Usage:
    ctx = build_context(load_settings("erp.yaml"))
    with session_scope(ctx.session_factory) as session:
        ctx.ledger(session).post_entry(entry_id, actor_id=actor)
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from erp_automation.services.scheduler import AutomationScheduler
from erp_automation.services.triggers import EventInbox, TriggerService
from erp_automation.services.workflow_service import WorkflowService
from erp_automation.steps.base import StepRegistry, StepServices, default_step_registry
from erp_config.schema import ErpSettings
from erp_kernel.db.engine import create_engine_from_url, create_session_factory, create_tables
from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.domain.identity import (
    IdGenerator,
    InMemoryPrincipalDirectory,
    PrincipalDirectory,
    UuidGenerator,
)
from erp_kernel.logging_config import configure_logging, get_logger
from erp_kernel.services.approval_service import ApprovalService
from erp_kernel.services.event_bus import EventBus
from erp_kernel.services.ledger_service import LedgerService
from erp_kernel.services.retry import RetryPolicy
from erp_services.costing_service import CostingService
from erp_services.credit_service import CreditService
from erp_services.rule_service import RuleService

logger = get_logger("services.context")


@dataclass(frozen=True)
class ErpContext:
    """
    The wired substrate plus a factory per engine service.

    Every factory takes the caller's Session so that work across engines
    shares one transaction.
    """

    settings: ErpSettings
    engine: Engine
    session_factory: sessionmaker[Session]
    clock: Clock
    ids: IdGenerator
    event_bus: EventBus
    principals: PrincipalDirectory
    step_registry: StepRegistry
    inbox: EventInbox
    retry_policy: RetryPolicy

    # ------------------------------------------------------------------
    # Engine services
    # ------------------------------------------------------------------

    def ledger(self, session: Session) -> LedgerService:
        return LedgerService(session, self.clock, self.event_bus, self.principals)

    def approvals(self, session: Session) -> ApprovalService:
        return ApprovalService(session, self.clock, self.event_bus, self.principals)

    def rules(self, session: Session) -> RuleService:
        return RuleService(session, self.clock, self.event_bus)

    def automation(self, session: Session, worker_id: str | None = None) -> WorkflowService:
        return WorkflowService(
            session,
            clock=self.clock,
            event_bus=self.event_bus,
            registry=self.step_registry,
            settings=self.settings.automation,
            services=StepServices(rules=self.rules, approvals=self.approvals),
            worker_id=worker_id,
        )

    def triggers(self, session: Session) -> TriggerService:
        return TriggerService(session, self.automation(session), self.clock)

    def costing(self, session: Session) -> CostingService:
        return CostingService(
            session,
            self.clock,
            self.event_bus,
            poster=self.ledger(session),
        )

    def credit(self, session: Session) -> CreditService:
        return CreditService(session, self.clock, self.event_bus, self.settings.credit)

    # ------------------------------------------------------------------
    # Background processing
    # ------------------------------------------------------------------

    def scheduler(self) -> AutomationScheduler:
        """A scheduler draining this context's inbox; call ``start()`` to run it."""
        return AutomationScheduler(
            self.session_factory,
            self.automation,
            clock=self.clock,
            settings=self.settings.automation,
            inbox=self.inbox,
            retry_policy=self.retry_policy,
        )


def build_context(
    settings: ErpSettings | None = None,
    *,
    engine: Engine | None = None,
    clock: Clock | None = None,
    ids: IdGenerator | None = None,
    event_bus: EventBus | None = None,
    principals: PrincipalDirectory | None = None,
    step_registry: StepRegistry | None = None,
    create_schema: bool = False,
    configure_logs: bool = False,
) -> ErpContext:
    """
    Wire the engines for ``settings``.

    Tests pass their own engine, clock and bus; production callers
    usually pass only settings.  The inbox is subscribed to every topic on
    the bus so that domain events reach automation triggers on the next
    scheduler tick.
    """
    settings = settings or ErpSettings()
    if configure_logs:
        configure_logging(level=settings.logging.level)

    clock = clock or SystemClock()
    if engine is None:
        engine = create_engine_from_url(
            settings.database.url,
            echo=settings.database.echo,
            pool_size=settings.database.pool_size,
        )
    if create_schema:
        create_tables(engine)

    ids = ids or UuidGenerator()
    bus = event_bus or EventBus(clock=clock, ids=ids, raise_errors=False)
    if principals is None:
        principals = InMemoryPrincipalDirectory(
            privileged_roles=frozenset(settings.approval.privileged_roles)
        )
    inbox = EventInbox()
    inbox.attach(bus)

    ctx = ErpContext(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        clock=clock,
        ids=ids,
        event_bus=bus,
        principals=principals,
        step_registry=step_registry or default_step_registry(),
        inbox=inbox,
        retry_policy=RetryPolicy(
            max_attempts=settings.retry.max_attempts,
            base_delay_ms=settings.retry.base_delay_ms,
            multiplier=settings.retry.multiplier,
            max_delay_ms=settings.retry.max_delay_ms,
        ),
    )
    logger.info(
        "context_built",
        extra={
            "dialect": engine.dialect.name,
            "worker_count": settings.automation.worker_count,
        },
    )
    return ctx
