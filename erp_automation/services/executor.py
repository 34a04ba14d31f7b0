"""
AutomationExecutor -- admission, step execution and recovery for workflow runs.

Responsibility:
    Moves WorkflowExecutions through their lifecycle: admits Pending runs
    into a concurrency slot, runs steps from the durable checkpoint,
    suspends on resume tokens, and resolves runs to Completed, Failed,
    Timeout or Cancelled (or back to Pending/Retrying under the workflow
    retry policy).

Architecture position:
    erp_automation/services.  Imports erp_automation.domain, models and
    steps, plus kernel services.  Called by WorkflowService (inline runs,
    signals, cancel) and AutomationScheduler (tick phases).

Invariants enforced:
    - At most ``max_concurrent_runs`` executions of a workflow hold a slot
      (Running, Waiting or Paused).  Slots are taken and returned only by
      conditional UPDATEs on ``running_count``; ``holds_slot`` makes the
      release idempotent.
    - Only the lease holder mutates a Running execution.  The lease is a
      conditional UPDATE (free, ours, or expired); losing it raises
      LeaseLostError before any mutation.
    - The checkpoint is rewritten after every step, inside the step's
      SAVEPOINT boundary, so a resumed run starts at the first unfinished
      step.
    - Step jumps only move forward; steps jumped over count as done, so a
      Completed run always has ``completed_steps == total_steps``.
    - Status changes follow EXECUTION_TRANSITIONS.

Failure modes:
    - Step errors are captured on the execution (``error_step``,
      ``error_message``) and never propagate, except DependencyError and
      store OperationalError, which abort the unit of work.
    - LeaseLostError when another worker holds a live lease.

Audit relevance:
    Every terminal outcome is logged and published as
    ``automation.execution.completed`` / ``automation.execution.failed``.
"""

from __future__ import annotations

from copy import deepcopy
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping
from uuid import UUID, uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from erp_automation.domain.action_graph import ActionGraph, StepDefinition, parse_action_graph
from erp_automation.domain.types import (
    EXECUTION_TRANSITIONS,
    TERMINAL_EXECUTION_STATUSES,
    ExecutionStatus,
    WorkflowExecutionInfo,
    WorkflowRetryPolicy,
    WorkflowStatus,
    progress_percent,
)
from erp_automation.models.automation import AutomationWorkflow, WorkflowExecution
from erp_automation.steps.base import StepContext, StepOutcome, StepRegistry, StepServices
from erp_config.schema import AutomationSettings
from erp_engines.rules import EvaluationContext, holds
from erp_engines.rules.functions import to_plain
from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.domain.events import Topics
from erp_kernel.exceptions import (
    AutomationWorkflowNotFoundError,
    DependencyError,
    ExecutionNotFoundError,
    InvalidExecutionTransitionError,
    LeaseLostError,
)
from erp_kernel.logging_config import LogContext, get_logger
from erp_kernel.services.event_bus import EventBus

logger = get_logger("automation.executor")

_OUTCOME_SUCCESS = "success"
_OUTCOME_FAILURE = "failure"
_OUTCOME_CANCELLED = "cancelled"


class AutomationExecutor:
    """
    Runs workflow executions against their action graph.

    Contract:
        - ``admit_pending()`` / ``admit()`` move Pending runs to Running
          when a slot is free, highest priority first, then oldest.
        - ``advance()`` runs steps of a Running execution until it
          completes, suspends, fails or hits ``max_steps_per_advance``.
        - ``resume()`` / ``signal()`` deliver a payload to a Waiting run.
        - ``request_cancel()`` cancels at once, or leaves a tombstone for a
          run that is mid-advance.
        - ``enforce_timeouts()`` and ``release_due_retries()`` are tick
          phases.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT manage threads -- that is the scheduler's job.
    """

    def __init__(
        self,
        session: Session,
        registry: StepRegistry,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        settings: AutomationSettings | None = None,
        services: StepServices | None = None,
        worker_id: str | None = None,
    ):
        self._session = session
        self._registry = registry
        self._clock = clock or SystemClock()
        self._event_bus = event_bus
        self._settings = settings or AutomationSettings()
        self._services = services or StepServices()
        self._worker_id = worker_id or f"worker-{uuid4().hex[:12]}"

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def admit_pending(self) -> list[UUID]:
        """Admit every due Pending execution that fits in its workflow's slots."""
        now = self._clock.now()
        candidates = self._session.execute(
            select(WorkflowExecution.id)
            .where(
                WorkflowExecution.status == ExecutionStatus.PENDING,
                or_(
                    WorkflowExecution.next_attempt_at.is_(None),
                    WorkflowExecution.next_attempt_at <= now,
                ),
            )
            .order_by(
                WorkflowExecution.priority.desc(),
                WorkflowExecution.created_at,
                WorkflowExecution.seq,
            )
        ).scalars().all()

        admitted: list[UUID] = []
        for execution_id in candidates:
            execution = self._load(execution_id)
            if self._admit(execution):
                admitted.append(execution_id)
        return admitted

    def admit(self, execution_id: UUID) -> bool:
        return self._admit(self._load(execution_id))

    def _admit(self, execution: WorkflowExecution) -> bool:
        if execution.status != ExecutionStatus.PENDING:
            return False
        if execution.cancel_requested:
            self._cancel(execution)
            return False
        now = self._clock.now()
        if execution.next_attempt_at is not None and execution.next_attempt_at > now:
            return False
        workflow = self._workflow(execution.workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            return False
        if not self._acquire_slot(workflow.id):
            logger.debug(
                "execution_admission_deferred",
                extra={"execution_number": execution.execution_number, "workflow_code": workflow.code},
            )
            return False

        self._transition(execution, ExecutionStatus.RUNNING)
        execution.holds_slot = True
        execution.started_at = execution.started_at or now
        execution.deadline_at = now + timedelta(seconds=workflow.timeout_seconds)
        execution.next_attempt_at = None
        self._session.flush()
        logger.info(
            "execution_admitted",
            extra={
                "execution_number": execution.execution_number,
                "workflow_code": workflow.code,
                "priority": execution.priority,
                "retry_count": execution.retry_count,
            },
        )
        return True

    # -------------------------------------------------------------------------
    # Advance / resume
    # -------------------------------------------------------------------------

    def advance(self, execution_id: UUID) -> WorkflowExecutionInfo:
        """
        Admit (if Pending) and run steps under this worker's lease.

        Raises:
            ExecutionNotFoundError: Unknown execution.
            LeaseLostError: Another worker holds a live lease.
        """
        self._acquire_lease(execution_id)
        execution = self._load(execution_id)
        with LogContext.bind(execution_id=execution.id, worker_id=self._worker_id):
            if execution.status == ExecutionStatus.PENDING:
                self._admit(execution)
            if execution.status == ExecutionStatus.RUNNING:
                self._run_steps(execution)
        self._release_lease(execution_id)
        return execution.to_dto()

    def signal(
        self, resume_token: str, payload: Mapping[str, Any] | None = None
    ) -> list[WorkflowExecutionInfo]:
        """Resume every execution waiting on ``resume_token``."""
        waiting = self._session.execute(
            select(WorkflowExecution.id)
            .where(
                WorkflowExecution.resume_token == resume_token,
                WorkflowExecution.status == ExecutionStatus.WAITING,
            )
            .order_by(WorkflowExecution.seq)
        ).scalars().all()
        logger.info(
            "execution_signal_received",
            extra={"resume_token": resume_token, "waiting": len(waiting)},
        )
        return [self.resume(execution_id, payload) for execution_id in waiting]

    def resume(
        self, execution_id: UUID, payload: Mapping[str, Any] | None = None
    ) -> WorkflowExecutionInfo:
        """Deliver ``payload`` to the suspended step and continue the run."""
        self._acquire_lease(execution_id)
        execution = self._load(execution_id)
        if execution.status != ExecutionStatus.WAITING:
            self._release_lease(execution_id)
            return execution.to_dto()

        with LogContext.bind(execution_id=execution.id, worker_id=self._worker_id):
            workflow = self._workflow(execution.workflow_id)
            graph = parse_action_graph(execution.action_graph)
            checkpoint = self._checkpoint(execution)
            step = graph.steps[checkpoint["position"]]

            self._transition(execution, ExecutionStatus.RUNNING)
            execution.resume_token = None
            execution.step_deadline_at = None

            if self._deadline_passed(execution):
                self._timeout(execution, workflow)
            elif execution.cancel_requested:
                self._cancel(execution)
            else:
                data = dict(payload or {})
                proceed = self._invoke(
                    execution, workflow, graph, step, checkpoint,
                    lambda handler, ctx: handler.resume(ctx, data),
                )
                if proceed:
                    self._run_steps(execution)

        self._release_lease(execution_id)
        return execution.to_dto()

    def _run_steps(self, execution: WorkflowExecution) -> None:
        workflow = self._workflow(execution.workflow_id)
        graph = parse_action_graph(execution.action_graph)
        checkpoint = self._checkpoint(execution)

        for _ in range(self._settings.max_steps_per_advance):
            position = checkpoint["position"]
            if position >= graph.total_steps:
                self._complete(execution, workflow)
                return
            if self._cancel_requested(execution.id):
                self._cancel(execution)
                return
            if self._deadline_passed(execution):
                self._timeout(execution, workflow)
                return
            self._renew_lease(execution.id)

            step = graph.steps[position]
            execution.current_step = step.step_id
            try:
                applies = holds(
                    step.condition,
                    EvaluationContext(entity=checkpoint["variables"], now=self._clock.now()),
                )
            except DependencyError:
                raise
            except Exception as exc:
                if not self._step_error(execution, workflow, graph, step, checkpoint, exc):
                    return
                continue
            if not applies:
                logger.info("workflow_step_skipped", extra={"step_id": step.step_id})
                self._move_to(execution, graph, checkpoint, step.index + 1)
                continue

            proceed = self._invoke(
                execution, workflow, graph, step, checkpoint,
                lambda handler, ctx: handler.run(ctx),
            )
            if not proceed:
                return

        # Step budget exhausted; the next advance continues from the checkpoint
        self._session.flush()

    def _invoke(
        self,
        execution: WorkflowExecution,
        workflow: AutomationWorkflow,
        graph: ActionGraph,
        step: StepDefinition,
        checkpoint: dict[str, Any],
        call: Callable[[Any, StepContext], StepOutcome],
    ) -> bool:
        """Run one step call in a SAVEPOINT; True when the run should continue."""
        variables = deepcopy(checkpoint["variables"])
        ctx = StepContext(
            session=self._session,
            clock=self._clock,
            execution_id=execution.id,
            execution_number=execution.execution_number,
            workflow_code=workflow.code,
            step=step,
            variables=variables,
            trigger_data=dict(execution.trigger_data or {}),
            event_bus=self._event_bus,
            services=self._services,
        )

        savepoint = self._session.begin_nested()
        try:
            handler = self._registry.get(step.step_type)
            outcome = call(handler, ctx)
            savepoint.commit()
        except (DependencyError, OperationalError, LeaseLostError):
            savepoint.rollback()
            raise
        except Exception as exc:
            savepoint.rollback()
            return self._step_error(execution, workflow, graph, step, checkpoint, exc)

        checkpoint["variables"] = to_plain(dict(variables))
        if outcome.suspended:
            now = self._clock.now()
            self._transition(execution, ExecutionStatus.WAITING)
            execution.resume_token = outcome.resume_token
            execution.step_deadline_at = (
                now + timedelta(seconds=step.timeout_seconds) if step.timeout_seconds else None
            )
            self._save_checkpoint(execution, checkpoint)
            logger.info(
                "workflow_step_suspended",
                extra={"step_id": step.step_id, "resume_token": outcome.resume_token},
            )
            return False

        checkpoint["outputs"][step.step_id] = to_plain(outcome.output)
        logger.info("workflow_step_completed", extra={"step_id": step.step_id})
        self._move_to(execution, graph, checkpoint, graph.successor(step))
        return True

    def _step_error(
        self,
        execution: WorkflowExecution,
        workflow: AutomationWorkflow,
        graph: ActionGraph,
        step: StepDefinition,
        checkpoint: dict[str, Any],
        exc: BaseException,
    ) -> bool:
        message = str(exc) or type(exc).__name__
        logger.warning(
            "workflow_step_failed",
            extra={
                "step_id": step.step_id,
                "error": type(exc).__name__,
                "error_message": message,
                "on_failure": step.on_failure,
            },
        )
        if step.on_failure is not None:
            checkpoint["variables"]["_error"] = {"step": step.step_id, "message": message}
            checkpoint["outputs"][step.step_id] = {"error": message}
            self._move_to(execution, graph, checkpoint, graph.index_of(step.on_failure))
            return True
        self._fail(execution, workflow, step.step_id, message)
        return False

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    def request_cancel(self, execution_id: UUID) -> WorkflowExecutionInfo:
        """
        Cancel an execution.

        Runs that are not mid-advance are cancelled immediately; a Running
        run gets a tombstone its worker honours before the next step.
        """
        execution = self._load(execution_id)
        if execution.status in TERMINAL_EXECUTION_STATUSES:
            raise InvalidExecutionTransitionError(
                execution.id, execution.status.value, ExecutionStatus.CANCELLED.value
            )
        if execution.status == ExecutionStatus.RUNNING:
            execution.cancel_requested = True
            self._session.flush()
            logger.info(
                "execution_cancel_requested",
                extra={"execution_number": execution.execution_number},
            )
        else:
            self._cancel(execution)
        return execution.to_dto()

    def pause(self, execution_id: UUID) -> WorkflowExecutionInfo:
        """Running -> Paused; the run keeps its slot."""
        execution = self._load(execution_id)
        self._transition(execution, ExecutionStatus.PAUSED)
        self._session.flush()
        logger.info("execution_paused", extra={"execution_number": execution.execution_number})
        return execution.to_dto()

    def unpause(self, execution_id: UUID) -> WorkflowExecutionInfo:
        """Paused -> Running; the next advance continues from the checkpoint."""
        execution = self._load(execution_id)
        self._transition(execution, ExecutionStatus.RUNNING)
        self._session.flush()
        logger.info("execution_unpaused", extra={"execution_number": execution.execution_number})
        return execution.to_dto()

    # -------------------------------------------------------------------------
    # Tick phases
    # -------------------------------------------------------------------------

    def enforce_timeouts(self) -> int:
        """Time out runs past their deadline and fail steps past theirs."""
        now = self._clock.now()
        overdue = self._session.execute(
            select(WorkflowExecution.id).where(
                WorkflowExecution.status.in_([ExecutionStatus.RUNNING, ExecutionStatus.WAITING]),
                or_(
                    WorkflowExecution.deadline_at <= now,
                    WorkflowExecution.step_deadline_at <= now,
                ),
            )
        ).scalars().all()

        handled = 0
        for execution_id in overdue:
            try:
                self._acquire_lease(execution_id)
            except LeaseLostError:
                # The lease holder checks deadlines between steps
                continue
            execution = self._load(execution_id)
            with LogContext.bind(execution_id=execution.id, worker_id=self._worker_id):
                workflow = self._workflow(execution.workflow_id)
                if self._deadline_passed(execution):
                    self._timeout(execution, workflow)
                    handled += 1
                elif (
                    execution.status == ExecutionStatus.WAITING
                    and execution.step_deadline_at is not None
                    and execution.step_deadline_at <= now
                ):
                    self._step_timeout(execution, workflow)
                    handled += 1
            self._release_lease(execution_id)
        return handled

    def release_due_retries(self) -> int:
        """Move Retrying runs whose backoff has elapsed back to Pending."""
        now = self._clock.now()
        due = self._session.execute(
            select(WorkflowExecution)
            .where(
                WorkflowExecution.status == ExecutionStatus.RETRYING,
                WorkflowExecution.next_attempt_at <= now,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        for execution in due:
            if execution.cancel_requested:
                self._cancel(execution)
                continue
            self._transition(execution, ExecutionStatus.PENDING)
            execution.next_attempt_at = None
        self._session.flush()
        return len(due)

    def runnable_ids(self) -> list[UUID]:
        """Running executions no live worker holds, in dispatch order."""
        now = self._clock.now()
        return list(
            self._session.execute(
                select(WorkflowExecution.id)
                .where(
                    WorkflowExecution.status == ExecutionStatus.RUNNING,
                    or_(
                        WorkflowExecution.lease_owner.is_(None),
                        WorkflowExecution.lease_expires_at < now,
                    ),
                )
                .order_by(WorkflowExecution.priority.desc(), WorkflowExecution.seq)
            ).scalars()
        )

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def _complete(self, execution: WorkflowExecution, workflow: AutomationWorkflow) -> None:
        now = self._clock.now()
        self._transition(execution, ExecutionStatus.COMPLETED)
        execution.completed_at = now
        execution.duration_ms = self._duration_ms(execution, now)
        execution.current_step = None
        execution.resume_token = None
        execution.step_deadline_at = None
        self._release_slot(execution)
        self._record_outcome(workflow.id, _OUTCOME_SUCCESS, execution.duration_ms)
        self._session.flush()

        logger.info(
            "execution_completed",
            extra={
                "workflow_code": workflow.code,
                "duration_ms": execution.duration_ms,
                "completed_steps": execution.completed_steps,
            },
        )
        self._publish(Topics.EXECUTION_COMPLETED, execution, workflow)

    def _fail(
        self,
        execution: WorkflowExecution,
        workflow: AutomationWorkflow,
        step_id: str | None,
        message: str,
    ) -> None:
        now = self._clock.now()
        execution.error_step = step_id
        execution.error_message = message
        execution.resume_token = None
        execution.step_deadline_at = None

        policy = WorkflowRetryPolicy.from_config(workflow.retry_policy)
        if policy is not None and policy.allows(execution.retry_count):
            execution.retry_count += 1
            self._transition(execution, ExecutionStatus.RETRYING)
            execution.next_attempt_at = now + timedelta(
                milliseconds=policy.backoff_ms(execution.retry_count)
            )
            self._release_slot(execution)
            self._session.flush()
            logger.warning(
                "execution_retry_scheduled",
                extra={
                    "workflow_code": workflow.code,
                    "retry_count": execution.retry_count,
                    "next_attempt_at": execution.next_attempt_at,
                },
            )
            return

        self._transition(execution, ExecutionStatus.FAILED)
        execution.completed_at = now
        execution.duration_ms = self._duration_ms(execution, now)
        self._release_slot(execution)
        self._record_outcome(workflow.id, _OUTCOME_FAILURE, execution.duration_ms)
        self._session.flush()
        logger.error(
            "execution_failed",
            extra={"workflow_code": workflow.code, "error_step": step_id, "error_message": message},
        )
        self._publish(Topics.EXECUTION_FAILED, execution, workflow)

    def _timeout(self, execution: WorkflowExecution, workflow: AutomationWorkflow) -> None:
        now = self._clock.now()
        message = f"execution exceeded timeout of {workflow.timeout_seconds}s"
        execution.error_step = execution.current_step
        execution.error_message = message
        execution.resume_token = None
        execution.step_deadline_at = None
        execution.deadline_at = None

        policy = WorkflowRetryPolicy.from_config(workflow.retry_policy)
        if policy is not None and policy.allows(execution.retry_count):
            execution.retry_count += 1
            self._transition(execution, ExecutionStatus.PENDING)
            execution.next_attempt_at = now + timedelta(
                milliseconds=policy.backoff_ms(execution.retry_count)
            )
            self._release_slot(execution)
            self._session.flush()
            logger.warning(
                "execution_timed_out_retrying",
                extra={"workflow_code": workflow.code, "retry_count": execution.retry_count},
            )
            return

        self._transition(execution, ExecutionStatus.TIMEOUT)
        execution.completed_at = now
        execution.duration_ms = self._duration_ms(execution, now)
        self._release_slot(execution)
        self._record_outcome(workflow.id, _OUTCOME_FAILURE, execution.duration_ms)
        self._session.flush()
        logger.error(
            "execution_timed_out",
            extra={"workflow_code": workflow.code, "timeout_seconds": workflow.timeout_seconds},
        )
        self._publish(Topics.EXECUTION_FAILED, execution, workflow)

    def _step_timeout(self, execution: WorkflowExecution, workflow: AutomationWorkflow) -> None:
        graph = parse_action_graph(execution.action_graph)
        checkpoint = self._checkpoint(execution)
        step = graph.steps[checkpoint["position"]]
        self._transition(execution, ExecutionStatus.RUNNING)
        execution.resume_token = None
        execution.step_deadline_at = None
        # Continues on the next dispatch when an on_failure step takes over
        self._step_error(
            execution, workflow, graph, step, checkpoint,
            TimeoutError(f"step {step.step_id} timed out after {step.timeout_seconds}s"),
        )
        self._session.flush()

    def _cancel(self, execution: WorkflowExecution) -> None:
        now = self._clock.now()
        self._transition(execution, ExecutionStatus.CANCELLED)
        execution.completed_at = now
        execution.duration_ms = self._duration_ms(execution, now)
        execution.resume_token = None
        execution.step_deadline_at = None
        execution.cancel_requested = True
        self._release_slot(execution)
        self._record_outcome(execution.workflow_id, _OUTCOME_CANCELLED, None)
        self._session.flush()
        logger.info("execution_cancelled", extra={"execution_number": execution.execution_number})

    def _record_outcome(self, workflow_id: UUID, outcome: str, duration_ms: int | None) -> None:
        workflow = self._session.execute(
            select(AutomationWorkflow)
            .where(AutomationWorkflow.id == workflow_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        workflow.total_runs += 1
        if outcome == _OUTCOME_SUCCESS:
            workflow.successful_runs += 1
        elif outcome == _OUTCOME_FAILURE:
            workflow.failed_runs += 1
        finished = workflow.successful_runs + workflow.failed_runs
        if duration_ms is not None and outcome != _OUTCOME_CANCELLED and finished > 0:
            previous = workflow.avg_duration_ms or 0
            workflow.avg_duration_ms = round((previous * (finished - 1) + duration_ms) / finished)

    # -------------------------------------------------------------------------
    # Slots and leases
    # -------------------------------------------------------------------------

    def _acquire_slot(self, workflow_id: UUID) -> bool:
        result = self._session.execute(
            update(AutomationWorkflow)
            .where(
                AutomationWorkflow.id == workflow_id,
                AutomationWorkflow.running_count < AutomationWorkflow.max_concurrent_runs,
            )
            .values(running_count=AutomationWorkflow.running_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _release_slot(self, execution: WorkflowExecution) -> None:
        if not execution.holds_slot:
            return
        self._session.execute(
            update(AutomationWorkflow)
            .where(
                AutomationWorkflow.id == execution.workflow_id,
                AutomationWorkflow.running_count > 0,
            )
            .values(running_count=AutomationWorkflow.running_count - 1)
            .execution_options(synchronize_session=False)
        )
        execution.holds_slot = False

    def _acquire_lease(self, execution_id: UUID) -> None:
        now = self._clock.now()
        result = self._session.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution_id,
                or_(
                    WorkflowExecution.lease_owner.is_(None),
                    WorkflowExecution.lease_owner == self._worker_id,
                    WorkflowExecution.lease_expires_at < now,
                ),
            )
            .values(
                lease_owner=self._worker_id,
                lease_expires_at=now + timedelta(seconds=self._settings.lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        if self._session.get(WorkflowExecution, execution_id) is None:
            raise ExecutionNotFoundError(execution_id)
        raise LeaseLostError(execution_id, self._worker_id)

    def _renew_lease(self, execution_id: UUID) -> None:
        now = self._clock.now()
        result = self._session.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution_id,
                WorkflowExecution.lease_owner == self._worker_id,
            )
            .values(lease_expires_at=now + timedelta(seconds=self._settings.lease_seconds))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LeaseLostError(execution_id, self._worker_id)

    def _release_lease(self, execution_id: UUID) -> None:
        self._session.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution_id,
                WorkflowExecution.lease_owner == self._worker_id,
            )
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _load(self, execution_id: UUID) -> WorkflowExecution:
        execution = self._session.execute(
            select(WorkflowExecution)
            .where(WorkflowExecution.id == execution_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def _workflow(self, workflow_id: UUID) -> AutomationWorkflow:
        workflow = self._session.get(AutomationWorkflow, workflow_id)
        if workflow is None:
            raise AutomationWorkflowNotFoundError(workflow_id)
        return workflow

    def _transition(self, execution: WorkflowExecution, target: ExecutionStatus) -> None:
        if target not in EXECUTION_TRANSITIONS[execution.status]:
            raise InvalidExecutionTransitionError(
                execution.id, execution.status.value, target.value
            )
        execution.status = target

    def _cancel_requested(self, execution_id: UUID) -> bool:
        return bool(
            self._session.execute(
                select(WorkflowExecution.cancel_requested).where(
                    WorkflowExecution.id == execution_id
                )
            ).scalar_one()
        )

    def _deadline_passed(self, execution: WorkflowExecution) -> bool:
        return execution.deadline_at is not None and self._clock.now() >= execution.deadline_at

    @staticmethod
    def _checkpoint(execution: WorkflowExecution) -> dict[str, Any]:
        raw = deepcopy(execution.checkpoint or {})
        return {
            "position": int(raw.get("position", 0)),
            "variables": dict(raw.get("variables", {})),
            "outputs": dict(raw.get("outputs", {})),
        }

    def _move_to(
        self,
        execution: WorkflowExecution,
        graph: ActionGraph,
        checkpoint: dict[str, Any],
        position: int,
    ) -> None:
        checkpoint["position"] = position
        execution.completed_steps = min(position, graph.total_steps)
        execution.progress_percent = progress_percent(execution.completed_steps, graph.total_steps)
        execution.current_step = (
            graph.steps[position].step_id if position < graph.total_steps else None
        )
        self._save_checkpoint(execution, checkpoint)

    def _save_checkpoint(self, execution: WorkflowExecution, checkpoint: dict[str, Any]) -> None:
        # A fresh structure each time so the JSON column registers the change
        execution.checkpoint = to_plain(deepcopy(checkpoint))
        self._session.flush()

    @staticmethod
    def _duration_ms(execution: WorkflowExecution, now: datetime) -> int | None:
        if execution.started_at is None:
            return None
        return max(int((now - execution.started_at).total_seconds() * 1000), 0)

    def _publish(
        self, topic: str, execution: WorkflowExecution, workflow: AutomationWorkflow
    ) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(
            topic,
            {
                "execution_id": str(execution.id),
                "execution_number": execution.execution_number,
                "workflow_id": str(workflow.id),
                "workflow_code": workflow.code,
                "status": execution.status.value,
                "correlation_id": execution.correlation_id,
            },
        )
