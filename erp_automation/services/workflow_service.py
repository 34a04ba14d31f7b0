"""
WorkflowService -- automation workflow lifecycle and execution control.

Responsibility:
    Defines automation workflows (Draft, versioned, published to Active),
    creates executions for every trigger kind, and exposes run, cancel,
    signal and query operations on executions.  Step execution itself is
    delegated to AutomationExecutor.

Architecture position:
    erp_automation/services.  Extends BaseService; flushes, never commits.

Invariants enforced:
    - Workflow status changes follow WORKFLOW_TRANSITIONS.
    - Definitions change only in Draft or Paused, and every change bumps
      ``version``.  Executions snapshot the graph they started with.
    - Executions are created only for Active workflows.
    - Execution numbers are ``EXE-{code}-{seq:06d}`` from a locked counter.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import select

from erp_automation.domain.action_graph import parse_action_graph
from erp_automation.domain.schedule import next_fire_time, parse_cron, resolve_zone
from erp_automation.domain.types import (
    WORKFLOW_TRANSITIONS,
    AutomationWorkflowInfo,
    ExecutionStatus,
    MisfirePolicy,
    TriggerKind,
    WorkflowExecutionInfo,
    WorkflowRetryPolicy,
    WorkflowStatus,
)
from erp_automation.models.automation import AutomationWorkflow, ScheduledJob, WorkflowExecution
from erp_automation.services.executor import AutomationExecutor
from erp_automation.steps.base import StepRegistry, StepServices, default_step_registry
from erp_config.schema import AutomationSettings
from erp_engines.rules import compile_condition
from erp_engines.rules.functions import to_plain
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.codec import decode_enum
from erp_kernel.domain.pagination import Page, PageRequest
from erp_kernel.exceptions import (
    AutomationWorkflowNotFoundError,
    DuplicateCodeError,
    ErpError,
    ExecutionNotFoundError,
    InvalidWorkflowTransitionError,
    ValidationError,
    WorkflowNotActiveError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.selectors.pagination import paginate
from erp_kernel.services.base import BaseService
from erp_kernel.services.event_bus import EventBus
from erp_kernel.services.sequence_service import SequenceService

logger = get_logger("services.automation")

_EDITABLE_STATUSES = frozenset({WorkflowStatus.DRAFT, WorkflowStatus.PAUSED})
_SCHEDULED_KINDS = frozenset({TriggerKind.SCHEDULED, TriggerKind.RECURRING})
_UNCHANGED: Any = object()


class WorkflowService(BaseService):
    """
    Automation workflow definitions and their executions.

    Contract:
        Workflow lifecycle: ``create_workflow`` -> ``publish`` ->
        ``pause``/``resume``/``disable``/``archive``; ``update_definition``.
        Executions: ``trigger`` creates a Pending run; ``run`` admits and
        advances it inline; ``cancel``, ``signal``, ``pause_execution`` and
        ``resume_execution`` control it.

    Non-goals:
        - Background processing -- AutomationScheduler drives ticks.
    """

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        registry: StepRegistry | None = None,
        settings: AutomationSettings | None = None,
        services: StepServices | None = None,
        worker_id: str | None = None,
    ):
        super().__init__(session, clock)
        self._event_bus = event_bus
        self._registry = registry or default_step_registry()
        self._settings = settings or AutomationSettings()
        self._sequences = SequenceService(session)
        self._executor = AutomationExecutor(
            session,
            self._registry,
            clock=self._clock,
            event_bus=event_bus,
            settings=self._settings,
            services=services,
            worker_id=worker_id,
        )

    @property
    def executor(self) -> AutomationExecutor:
        return self._executor

    @property
    def registry(self) -> StepRegistry:
        return self._registry

    @property
    def settings(self) -> AutomationSettings:
        return self._settings

    # =========================================================================
    # Workflow lifecycle
    # =========================================================================

    def create_workflow(
        self,
        code: str,
        name: str,
        trigger_kind: TriggerKind | str,
        action_graph: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        *,
        trigger_config: Mapping[str, Any] | None = None,
        description: str | None = None,
        timeout_seconds: int | None = None,
        max_concurrent_runs: int | None = None,
        priority: int | None = None,
        retry_policy: WorkflowRetryPolicy | Mapping[str, Any] | None = None,
        tags: Sequence[str] = (),
        actor_id: UUID | None = None,
    ) -> AutomationWorkflowInfo:
        """
        Define a workflow in Draft at version 1.

        Unset timeout, concurrency and priority come from AutomationSettings.

        Raises:
            ValidationError: malformed graph, trigger config or limits.
            DuplicateCodeError: ``code`` already used.
        """
        if not code or not code.strip():
            raise ValidationError("Workflow code is required")
        if not name or not name.strip():
            raise ValidationError("Workflow name is required")
        kind = decode_enum(TriggerKind, trigger_kind)
        graph = self._normalize_graph(action_graph)
        config = self._validate_trigger_config(kind, trigger_config)

        existing = self._session.execute(
            select(AutomationWorkflow.id).where(AutomationWorkflow.code == code)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateCodeError("AutomationWorkflow", code)

        workflow = AutomationWorkflow(
            code=code,
            name=name,
            description=description,
            trigger_kind=kind,
            trigger_config=config,
            action_graph=graph,
            retry_policy=self._retry_config(retry_policy),
            timeout_seconds=self._positive(
                "timeout_seconds", timeout_seconds, self._settings.default_timeout_seconds
            ),
            max_concurrent_runs=self._positive(
                "max_concurrent_runs", max_concurrent_runs, self._settings.default_max_concurrent_runs
            ),
            running_count=0,
            priority=self._settings.default_priority if priority is None else int(priority),
            status=WorkflowStatus.DRAFT,
            version=1,
            total_runs=0,
            successful_runs=0,
            failed_runs=0,
            tags=list(tags),
        )
        self._stamp_new(workflow, actor_id)
        self._session.add(workflow)
        self._session.flush()

        logger.info(
            "automation_workflow_created",
            extra={"workflow_code": code, "trigger_kind": kind.value, "steps": len(graph["steps"])},
        )
        return workflow.to_dto()

    def update_definition(
        self,
        workflow_ref: str | UUID,
        *,
        action_graph: Any = _UNCHANGED,
        trigger_config: Any = _UNCHANGED,
        retry_policy: Any = _UNCHANGED,
        timeout_seconds: int | None = None,
        max_concurrent_runs: int | None = None,
        priority: int | None = None,
        name: str | None = None,
        description: str | None = None,
        actor_id: UUID | None = None,
    ) -> AutomationWorkflowInfo:
        """Change a Draft or Paused workflow; bumps ``version``."""
        workflow = self.resolve_workflow(workflow_ref, lock=True)
        if workflow.status not in _EDITABLE_STATUSES:
            raise ValidationError(
                f"Workflow {workflow.code} is {workflow.status.value}; "
                "only Draft or Paused workflows can be edited"
            )
        if action_graph is not _UNCHANGED:
            workflow.action_graph = self._normalize_graph(action_graph)
        if trigger_config is not _UNCHANGED:
            workflow.trigger_config = self._validate_trigger_config(
                workflow.trigger_kind, trigger_config
            )
        if retry_policy is not _UNCHANGED:
            workflow.retry_policy = self._retry_config(retry_policy)
        if timeout_seconds is not None:
            workflow.timeout_seconds = self._positive("timeout_seconds", timeout_seconds, None)
        if max_concurrent_runs is not None:
            workflow.max_concurrent_runs = self._positive(
                "max_concurrent_runs", max_concurrent_runs, None
            )
        if priority is not None:
            workflow.priority = int(priority)
        if name is not None:
            workflow.name = name
        if description is not None:
            workflow.description = description

        workflow.version += 1
        self._stamp_changed(workflow, actor_id)
        self._session.flush()
        logger.info(
            "automation_workflow_updated",
            extra={"workflow_code": workflow.code, "version": workflow.version},
        )
        return workflow.to_dto()

    def publish(self, workflow_ref: str | UUID, actor_id: UUID | None = None) -> AutomationWorkflowInfo:
        """
        Draft -> Active.  Scheduled and Recurring workflows get their
        ScheduledJob from ``trigger_config`` on first publish.
        """
        workflow = self.resolve_workflow(workflow_ref, lock=True)
        # Every step type must be resolvable before runs can start
        parse_action_graph(workflow.action_graph, self._registry.list_steps())
        self._set_status(workflow, WorkflowStatus.ACTIVE, actor_id)
        workflow.published_at = self._clock.now()
        workflow.published_by_id = actor_id
        if workflow.trigger_kind in _SCHEDULED_KINDS:
            self._ensure_schedule(workflow, actor_id)
        self._session.flush()
        logger.info(
            "automation_workflow_published",
            extra={"workflow_code": workflow.code, "version": workflow.version},
        )
        return workflow.to_dto()

    def pause(self, workflow_ref: str | UUID, actor_id: UUID | None = None) -> AutomationWorkflowInfo:
        return self._change_status(workflow_ref, WorkflowStatus.PAUSED, actor_id)

    def resume(self, workflow_ref: str | UUID, actor_id: UUID | None = None) -> AutomationWorkflowInfo:
        return self._change_status(workflow_ref, WorkflowStatus.ACTIVE, actor_id)

    def disable(self, workflow_ref: str | UUID, actor_id: UUID | None = None) -> AutomationWorkflowInfo:
        return self._change_status(workflow_ref, WorkflowStatus.DISABLED, actor_id)

    def archive(self, workflow_ref: str | UUID, actor_id: UUID | None = None) -> AutomationWorkflowInfo:
        return self._change_status(workflow_ref, WorkflowStatus.ARCHIVED, actor_id)

    def mark_error(self, workflow_ref: str | UUID, actor_id: UUID | None = None) -> AutomationWorkflowInfo:
        return self._change_status(workflow_ref, WorkflowStatus.ERROR, actor_id)

    def get_workflow(self, workflow_ref: str | UUID) -> AutomationWorkflowInfo:
        return self.resolve_workflow(workflow_ref).to_dto()

    def list_workflows(
        self,
        status: WorkflowStatus | str | None = None,
        trigger_kind: TriggerKind | str | None = None,
    ) -> list[AutomationWorkflowInfo]:
        stmt = select(AutomationWorkflow).order_by(AutomationWorkflow.code)
        if status is not None:
            stmt = stmt.where(AutomationWorkflow.status == decode_enum(WorkflowStatus, status))
        if trigger_kind is not None:
            stmt = stmt.where(AutomationWorkflow.trigger_kind == decode_enum(TriggerKind, trigger_kind))
        return [w.to_dto() for w in self._session.execute(stmt).scalars()]

    # =========================================================================
    # Executions
    # =========================================================================

    def trigger(
        self,
        workflow_ref: str | UUID,
        trigger_data: Mapping[str, Any] | None = None,
        *,
        trigger_kind: TriggerKind | str = TriggerKind.MANUAL,
        priority: int | None = None,
        correlation_id: str | None = None,
        parent_execution_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> WorkflowExecutionInfo:
        """
        Create a Pending execution of an Active workflow.

        The trigger data seeds the execution variables.

        Raises:
            WorkflowNotActiveError: the workflow is not Active.
        """
        workflow = self.resolve_workflow(workflow_ref)
        execution = self.create_execution(
            workflow,
            decode_enum(TriggerKind, trigger_kind),
            trigger_data,
            priority=priority,
            correlation_id=correlation_id,
            parent_execution_id=parent_execution_id,
            actor_id=actor_id,
        )
        return execution.to_dto()

    def create_execution(
        self,
        workflow: AutomationWorkflow,
        trigger_kind: TriggerKind,
        trigger_data: Mapping[str, Any] | None,
        *,
        priority: int | None = None,
        correlation_id: str | None = None,
        parent_execution_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> WorkflowExecution:
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowNotActiveError(workflow.code, workflow.status.value)

        graph = parse_action_graph(workflow.action_graph)
        data = to_plain(dict(trigger_data or {}))
        seq = self._sequences.next_value(f"{SequenceService.WORKFLOW_EXECUTION}:{workflow.code}")
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            execution_number=f"EXE-{workflow.code}-{seq:06d}",
            seq=seq,
            trigger_kind=trigger_kind,
            trigger_data=data,
            action_graph=dict(workflow.action_graph),
            status=ExecutionStatus.PENDING,
            priority=workflow.priority if priority is None else int(priority),
            current_step=graph.steps[0].step_id,
            total_steps=graph.total_steps,
            completed_steps=0,
            progress_percent=0,
            checkpoint={"position": 0, "variables": dict(data), "outputs": {}},
            retry_count=0,
            correlation_id=correlation_id,
            parent_execution_id=parent_execution_id,
            cancel_requested=False,
            holds_slot=False,
        )
        self._stamp_new(execution, actor_id)
        self._session.add(execution)
        self._session.flush()

        logger.info(
            "execution_created",
            extra={
                "execution_number": execution.execution_number,
                "workflow_code": workflow.code,
                "trigger_kind": trigger_kind.value,
                "correlation_id": correlation_id,
            },
        )
        return execution

    def run(self, execution_id: UUID) -> WorkflowExecutionInfo:
        """Admit and advance one execution inline, in the caller's transaction."""
        return self._executor.advance(execution_id)

    def cancel(self, execution_id: UUID) -> WorkflowExecutionInfo:
        return self._executor.request_cancel(execution_id)

    def signal(
        self, resume_token: str, payload: Mapping[str, Any] | None = None
    ) -> list[WorkflowExecutionInfo]:
        return self._executor.signal(resume_token, payload)

    def pause_execution(self, execution_id: UUID) -> WorkflowExecutionInfo:
        return self._executor.pause(execution_id)

    def resume_execution(self, execution_id: UUID) -> WorkflowExecutionInfo:
        return self._executor.unpause(execution_id)

    def get_execution(self, execution_ref: str | UUID) -> WorkflowExecutionInfo:
        return self._resolve_execution(execution_ref).to_dto()

    def list_executions(
        self,
        workflow_ref: str | UUID | None = None,
        status: ExecutionStatus | str | None = None,
        page: PageRequest | None = None,
    ) -> Page:
        stmt = select(WorkflowExecution).order_by(
            WorkflowExecution.created_at.desc(), WorkflowExecution.seq.desc()
        )
        if workflow_ref is not None:
            stmt = stmt.where(WorkflowExecution.workflow_id == self.resolve_workflow(workflow_ref).id)
        if status is not None:
            stmt = stmt.where(WorkflowExecution.status == decode_enum(ExecutionStatus, status))
        return paginate(self._session, stmt, page, transform=lambda e: e.to_dto())

    # =========================================================================
    # Internal
    # =========================================================================

    def _change_status(
        self, workflow_ref: str | UUID, target: WorkflowStatus, actor_id: UUID | None
    ) -> AutomationWorkflowInfo:
        workflow = self.resolve_workflow(workflow_ref, lock=True)
        self._set_status(workflow, target, actor_id)
        self._session.flush()
        return workflow.to_dto()

    def _set_status(
        self, workflow: AutomationWorkflow, target: WorkflowStatus, actor_id: UUID | None
    ) -> None:
        if target not in WORKFLOW_TRANSITIONS[workflow.status]:
            raise InvalidWorkflowTransitionError(workflow.code, workflow.status.value, target.value)
        previous = workflow.status
        workflow.status = target
        self._stamp_changed(workflow, actor_id)
        logger.info(
            "automation_workflow_status_changed",
            extra={
                "workflow_code": workflow.code,
                "from_status": previous.value,
                "to_status": target.value,
            },
        )

    def _ensure_schedule(self, workflow: AutomationWorkflow, actor_id: UUID | None) -> None:
        existing = self._session.execute(
            select(ScheduledJob.id).where(ScheduledJob.workflow_id == workflow.id)
        ).first()
        if existing is not None:
            return
        config = workflow.trigger_config
        tz_name = config.get("timezone", "UTC")
        spec = parse_cron(config["cron"])
        job = ScheduledJob(
            name=workflow.code,
            workflow_id=workflow.id,
            cron=spec.expression,
            timezone=tz_name,
            misfire_policy=decode_enum(
                MisfirePolicy, config.get("misfire_policy", MisfirePolicy.RUN_IMMEDIATELY.value)
            ),
            parameters=dict(config.get("parameters", {})),
            is_active=True,
            next_run_at=next_fire_time(spec, self._clock.now(), tz_name),
            run_count=0,
            failure_count=0,
            consecutive_failures=0,
            max_consecutive_failures=self._settings.max_consecutive_failures,
        )
        self._stamp_new(job, actor_id)
        self._session.add(job)

    def _normalize_graph(self, raw: Any) -> dict[str, Any]:
        if isinstance(raw, (list, tuple)):
            raw = {"steps": list(raw)}
        parse_action_graph(raw, self._registry.list_steps())
        return to_plain(dict(raw))

    @staticmethod
    def _validate_trigger_config(
        kind: TriggerKind, config: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        config = dict(config or {})
        if kind in _SCHEDULED_KINDS:
            if not config.get("cron"):
                raise ValidationError(f"{kind.value} workflows need trigger_config.cron")
            parse_cron(config["cron"])
            resolve_zone(config.get("timezone", "UTC"))
            if "misfire_policy" in config:
                decode_enum(MisfirePolicy, config["misfire_policy"])
        elif kind == TriggerKind.EVENT_DRIVEN:
            topics = config.get("topics")
            if (
                not isinstance(topics, list)
                or not topics
                or not all(isinstance(t, str) and t for t in topics)
            ):
                raise ValidationError("EventDriven workflows need trigger_config.topics")
            if config.get("condition") is not None:
                try:
                    compile_condition(config["condition"])
                except ErpError as exc:
                    raise ValidationError(f"trigger_config.condition: {exc}") from exc
        return config

    @staticmethod
    def _retry_config(policy: WorkflowRetryPolicy | Mapping[str, Any] | None) -> dict | None:
        if policy is None:
            return None
        if isinstance(policy, WorkflowRetryPolicy):
            return policy.to_config()
        parsed = WorkflowRetryPolicy.from_config(policy)
        return parsed.to_config() if parsed else None

    @staticmethod
    def _positive(name: str, value: int | None, default: int | None) -> int:
        if value is None:
            value = default
        if value is None or int(value) <= 0:
            raise ValidationError(f"{name} must be a positive integer")
        return int(value)

    def resolve_workflow(self, ref: str | UUID, lock: bool = False) -> AutomationWorkflow:
        if isinstance(ref, UUID):
            stmt = select(AutomationWorkflow).where(AutomationWorkflow.id == ref)
        else:
            stmt = select(AutomationWorkflow).where(AutomationWorkflow.code == ref)
        if lock:
            stmt = stmt.with_for_update()
        # running_count is maintained by UPDATE statements
        stmt = stmt.execution_options(populate_existing=True)
        workflow = self._session.execute(stmt).scalar_one_or_none()
        if workflow is None:
            raise AutomationWorkflowNotFoundError(ref)
        return workflow

    def _resolve_execution(self, ref: str | UUID) -> WorkflowExecution:
        if isinstance(ref, UUID):
            execution = self._session.get(WorkflowExecution, ref, populate_existing=True)
        else:
            execution = self._session.execute(
                select(WorkflowExecution).where(WorkflowExecution.execution_number == ref)
            ).scalar_one_or_none()
        if execution is None:
            raise ExecutionNotFoundError(ref)
        return execution
