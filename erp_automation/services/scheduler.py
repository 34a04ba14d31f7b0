"""
AutomationScheduler -- in-process cooperative scheduler with a worker pool.

Contract:
    ``tick()`` runs one scheduling round:

    1. Intake (one transaction): fire due scheduled jobs, route buffered
       domain events, time out overdue runs, release elapsed retries and
       admit Pending runs into free slots (priority, then FIFO).
    2. Dispatch: every Running execution without a live lease is advanced
       in its own transaction, on the worker pool when started or inline
       otherwise.  Transient store failures are retried with backoff.

    ``start()`` / ``stop()`` run ticks on a background thread.

Architecture: erp_automation/services.  Owns transaction boundaries via
    ``session_scope``; everything below it only flushes.

Invariants enforced:
    - Ticks never overlap.
    - All timestamps come from the injected Clock.
    - Graceful shutdown: ``stop()`` lets in-flight advances finish.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from erp_automation.domain.types import TickResult, WorkflowExecutionInfo
from erp_automation.services.triggers import EventInbox, TriggerService
from erp_automation.services.workflow_service import WorkflowService
from erp_config.schema import AutomationSettings
from erp_kernel.db.engine import session_scope
from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.exceptions import LeaseLostError
from erp_kernel.logging_config import LogContext, get_logger
from erp_kernel.services.retry import RetryPolicy, run_with_retry

logger = get_logger("automation.scheduler")


class AutomationScheduler:
    """
    Polling scheduler for automation workflows.

    Contract:
        - ``tick()`` performs intake, admission and dispatch once.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler (no leader election); several
          processes may still share a store because leases and slots live
          in the database.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        workflow_factory: Callable[[Session], WorkflowService],
        clock: Clock | None = None,
        settings: AutomationSettings | None = None,
        inbox: EventInbox | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._workflow_factory = workflow_factory
        self._clock = clock or SystemClock()
        self._settings = settings or AutomationSettings()
        self._inbox = inbox
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._pool: ThreadPoolExecutor | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> TickResult:
        """Run one scheduling round (public for testing)."""
        with self._tick_lock:
            errors: list[str] = []
            intake = self._intake(errors)
            if intake is None:
                return TickResult(errors=tuple(errors))
            fired, created, events, timed_out, released, admitted, runnable = intake
            advanced = self._dispatch(runnable, errors)

        result = TickResult(
            jobs_fired=fired,
            executions_created=created,
            events_processed=events,
            executions_admitted=admitted,
            executions_advanced=advanced,
            executions_timed_out=timed_out,
            retries_released=released,
            errors=tuple(errors),
        )
        if fired or created or events or admitted or advanced or timed_out or errors:
            logger.info(
                "automation_tick_completed",
                extra={
                    "jobs_fired": fired,
                    "executions_created": created,
                    "events_processed": events,
                    "executions_admitted": admitted,
                    "executions_advanced": advanced,
                    "executions_timed_out": timed_out,
                    "retries_released": released,
                    "errors": len(errors),
                },
            )
        return result

    def advance(self, execution_id: UUID) -> WorkflowExecutionInfo | None:
        """Advance one execution in its own transaction; None if another worker holds it."""

        def work() -> WorkflowExecutionInfo | None:
            try:
                with session_scope(self._session_factory) as session:
                    return self._workflow_factory(session).executor.advance(execution_id)
            except LeaseLostError:
                logger.info("execution_lease_lost", extra={"execution_id": str(execution_id)})
                return None

        with LogContext.bind(execution_id=execution_id):
            return run_with_retry(
                work, self._retry_policy, operation="advance_execution", sleep=self._sleep
            )

    def start(self) -> None:
        """Start ticking on a background thread with a pool of ``worker_count``."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        if self._settings.worker_count > 1:
            self._pool = ThreadPoolExecutor(
                max_workers=self._settings.worker_count,
                thread_name_prefix="automation-worker",
            )
        self._thread = threading.Thread(
            target=self._run_loop,
            name="automation-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "scheduler_started",
            extra={
                "tick_interval": self._settings.tick_interval_seconds,
                "worker_count": self._settings.worker_count,
            },
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop, wait for the loop, then drain the worker pool."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._stop_event.wait(timeout=self._settings.tick_interval_seconds)

    def _intake(self, errors: list[str]):
        events = self._inbox.drain() if self._inbox is not None else []

        def work():
            with session_scope(self._session_factory) as session:
                workflows = self._workflow_factory(session)
                triggers = TriggerService(session, workflows, self._clock)
                executor = workflows.executor

                fired, created = triggers.fire_due_jobs()
                created += triggers.process_events(events)
                timed_out = executor.enforce_timeouts()
                released = executor.release_due_retries()
                admitted = executor.admit_pending()
                runnable = executor.runnable_ids()
                return fired, created, len(events), timed_out, released, len(admitted), runnable

        try:
            return run_with_retry(
                work, self._retry_policy, operation="automation_intake", sleep=self._sleep
            )
        except Exception as exc:
            logger.exception("automation_intake_failed")
            errors.append(f"intake: {type(exc).__name__}: {exc}")
            return None

    def _dispatch(self, execution_ids: list[UUID], errors: list[str]) -> int:
        if not execution_ids:
            return 0
        if self._pool is None:
            outcomes = [self._advance_safely(eid) for eid in execution_ids]
        else:
            outcomes = list(self._pool.map(self._advance_safely, execution_ids))

        advanced = 0
        for execution_id, (info, error) in zip(execution_ids, outcomes):
            if error is not None:
                errors.append(f"{execution_id}: {error}")
            elif info is not None:
                advanced += 1
        return advanced

    def _advance_safely(self, execution_id: UUID) -> tuple[WorkflowExecutionInfo | None, str | None]:
        if self._stop_event.is_set():
            return None, None
        try:
            return self.advance(execution_id), None
        except Exception as exc:
            logger.exception("execution_advance_failed", extra={"execution_id": str(execution_id)})
            return None, f"{type(exc).__name__}: {exc}"
