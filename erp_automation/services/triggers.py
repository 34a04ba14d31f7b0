"""
Trigger intake -- scheduled jobs, webhooks and domain events.

Responsibility:
    Turns the non-manual trigger kinds into WorkflowExecutions:

    - Scheduled/Recurring: ``fire_due_jobs()`` selects active jobs with
      ``next_run_at <= now`` and applies the job's misfire policy.
    - Webhook: ``receive_webhook()`` stores the request, spawns one
      execution (request id = correlation id) and records the response.
    - EventDriven: ``process_event()`` starts workflows whose
      ``trigger_config.topics`` match, and resumes executions waiting on
      approval decisions.

    ``EventInbox`` buffers EventBus deliveries between scheduler ticks.

Architecture position:
    erp_automation/services.  Uses WorkflowService to create and signal
    executions; flushes, never commits.

Invariants enforced:
    - One execution per webhook request; a repeated idempotency key on the
      same endpoint returns the stored request and starts nothing.
    - A job that fails ``max_consecutive_failures`` times in a row is
      deactivated.
    - Wildcard topic patterns never match ``automation.*`` events, so a
      workflow cannot re-trigger itself from its own completion.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Callable, Iterable, Mapping
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from erp_automation.domain.schedule import next_fire_time, parse_cron, plan_fires, resolve_zone
from erp_automation.domain.types import (
    MisfirePolicy,
    ScheduledJobInfo,
    TriggerKind,
    WebhookEndpointInfo,
    WebhookRequestInfo,
    WorkflowExecutionInfo,
    WorkflowStatus,
)
from erp_automation.models.automation import (
    AutomationWorkflow,
    ScheduledJob,
    WebhookEndpoint,
    WebhookRequest,
)
from erp_automation.services.workflow_service import WorkflowService
from erp_engines.rules import EvaluationContext, compile_condition, holds
from erp_engines.rules.functions import to_plain
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.codec import decode_enum
from erp_kernel.domain.events import DomainEvent, Topics, topic_matches
from erp_kernel.domain.pagination import Page, PageRequest
from erp_kernel.exceptions import (
    BusinessRuleError,
    DuplicateCodeError,
    ScheduledJobNotFoundError,
    ValidationError,
    WebhookEndpointNotFoundError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.selectors.pagination import paginate
from erp_kernel.services.base import BaseService
from erp_kernel.services.event_bus import EventBus

logger = get_logger("services.automation.triggers")

APPROVAL_TOPIC_PREFIX = "approval.request."
_AUTOMATION_TOPIC_PREFIX = "automation."
_JOB_CORRELATION_PREFIX = "job:"

RESPONSE_ACCEPTED = 202
RESPONSE_GONE = 410
RESPONSE_UNPROCESSABLE = 422


def approval_resume_token(request_id: Any) -> str:
    return f"approval:{request_id}"


def event_topic_matches(pattern: str, topic: str) -> bool:
    """``topic_matches`` except that ``*`` skips the automation engine's own events."""
    if pattern == "*" and topic.startswith(_AUTOMATION_TOPIC_PREFIX):
        return False
    return topic_matches(pattern, topic)


# =============================================================================
# Event inbox
# =============================================================================


class EventInbox:
    """
    Thread-safe buffer of domain events awaiting the next scheduler tick.

    ``attach(bus)`` subscribes to every topic; ``drain()`` hands the
    buffered events to the tick in arrival order.
    """

    def __init__(self, max_size: int | None = None):
        self._events: deque[DomainEvent] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def attach(self, bus: EventBus, pattern: str = "*") -> Callable[[], None]:
        return bus.subscribe(pattern, self.put)

    def put(self, event: DomainEvent) -> None:
        with self._lock:
            self._events.append(event)

    def drain(self) -> list[DomainEvent]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


# =============================================================================
# TriggerService
# =============================================================================


class TriggerService(BaseService):
    """
    Scheduled jobs, webhook endpoints and event-driven intake.

    Contract:
        - ``create_scheduled_job`` / ``pause_job`` / ``resume_job``.
        - ``fire_due_jobs()`` -> (jobs fired, executions created).
        - ``create_webhook_endpoint`` / ``receive_webhook``.
        - ``process_event(event)`` -> executions created or resumed.

    Non-goals:
        - HTTP handling -- callers pass method, headers and body.
    """

    def __init__(self, session, workflows: WorkflowService, clock: Clock | None = None):
        super().__init__(session, clock)
        self._workflows = workflows

    # =========================================================================
    # Scheduled jobs
    # =========================================================================

    def create_scheduled_job(
        self,
        workflow_ref: str | UUID,
        cron: str,
        *,
        timezone: str = "UTC",
        misfire_policy: MisfirePolicy | str = MisfirePolicy.RUN_IMMEDIATELY,
        parameters: Mapping[str, Any] | None = None,
        name: str | None = None,
        max_consecutive_failures: int | None = None,
        actor_id: UUID | None = None,
    ) -> ScheduledJobInfo:
        """
        Schedule a workflow on a cron expression evaluated in ``timezone``.

        Raises:
            InvalidCronExpressionError: bad expression or unknown zone.
        """
        workflow = self._workflows.resolve_workflow(workflow_ref)
        spec = parse_cron(cron)
        resolve_zone(timezone)
        limit = max_consecutive_failures or self._workflows.settings.max_consecutive_failures
        if limit <= 0:
            raise ValidationError("max_consecutive_failures must be positive")

        job = ScheduledJob(
            name=name or workflow.code,
            workflow_id=workflow.id,
            cron=spec.expression,
            timezone=timezone,
            misfire_policy=decode_enum(MisfirePolicy, misfire_policy),
            parameters=to_plain(dict(parameters or {})),
            is_active=True,
            next_run_at=next_fire_time(spec, self._clock.now(), timezone),
            run_count=0,
            failure_count=0,
            consecutive_failures=0,
            max_consecutive_failures=limit,
        )
        self._stamp_new(job, actor_id)
        self._session.add(job)
        self._session.flush()
        logger.info(
            "scheduled_job_created",
            extra={
                "job_id": str(job.id),
                "workflow_code": workflow.code,
                "cron": job.cron,
                "timezone": timezone,
                "next_run_at": job.next_run_at,
            },
        )
        return job.to_dto()

    def pause_job(self, job_id: UUID, actor_id: UUID | None = None) -> ScheduledJobInfo:
        job = self._get_job(job_id, lock=True)
        job.is_active = False
        self._stamp_changed(job, actor_id)
        self._session.flush()
        logger.info("scheduled_job_paused", extra={"job_id": str(job.id)})
        return job.to_dto()

    def resume_job(self, job_id: UUID, actor_id: UUID | None = None) -> ScheduledJobInfo:
        """Reactivate a job; the next slot is computed from now, missed slots are dropped."""
        job = self._get_job(job_id, lock=True)
        job.is_active = True
        job.consecutive_failures = 0
        job.next_run_at = next_fire_time(parse_cron(job.cron), self._clock.now(), job.timezone)
        self._stamp_changed(job, actor_id)
        self._session.flush()
        logger.info(
            "scheduled_job_resumed",
            extra={"job_id": str(job.id), "next_run_at": job.next_run_at},
        )
        return job.to_dto()

    def get_job(self, job_id: UUID) -> ScheduledJobInfo:
        return self._get_job(job_id).to_dto()

    def list_jobs(self, workflow_ref: str | UUID | None = None, active_only: bool = False) -> list[ScheduledJobInfo]:
        stmt = select(ScheduledJob).order_by(ScheduledJob.name, ScheduledJob.id)
        if workflow_ref is not None:
            workflow = self._workflows.resolve_workflow(workflow_ref)
            stmt = stmt.where(ScheduledJob.workflow_id == workflow.id)
        if active_only:
            stmt = stmt.where(ScheduledJob.is_active.is_(True))
        return [j.to_dto() for j in self._session.execute(stmt).scalars()]

    def run_now(self, job_id: UUID, actor_id: UUID | None = None) -> WorkflowExecutionInfo:
        """
        Fire a job once, outside its schedule.

        The run counts toward ``run_count``; ``next_run_at`` is left alone.
        Paused jobs may be run by hand.

        Raises:
            ScheduledJobNotFoundError: unknown job.
            WorkflowNotActiveError: the job's workflow is not Active.
        """
        job = self._get_job(job_id, lock=True)
        workflow = self._session.get(AutomationWorkflow, job.workflow_id)
        now = self._clock.now()
        execution = self._workflows.create_execution(
            workflow,
            TriggerKind.SCHEDULED,
            {**(job.parameters or {}), "scheduled_for": now.isoformat(), "manual": True},
            correlation_id=f"{_JOB_CORRELATION_PREFIX}{job.id}:{now.isoformat()}:manual",
            actor_id=actor_id,
        )
        job.run_count += 1
        job.last_run_at = now
        job.last_run_status = "Triggered"
        self._stamp_changed(job, actor_id)
        self._session.flush()
        logger.info(
            "scheduled_job_run_now",
            extra={
                "job_id": str(job.id),
                "execution_number": execution.execution_number,
                "next_run_at": job.next_run_at,
            },
        )
        return execution.to_dto()

    def fire_due_jobs(self) -> tuple[int, int]:
        """
        Fire every active job whose ``next_run_at`` has passed.

        Each job runs in its own SAVEPOINT; a job whose firing fails is
        counted as a failure and moved to its next slot.

        Returns:
            (jobs fired, executions created)
        """
        now = self._clock.now()
        due = self._session.execute(
            select(ScheduledJob)
            .where(ScheduledJob.is_active.is_(True), ScheduledJob.next_run_at <= now)
            .order_by(ScheduledJob.next_run_at)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()

        jobs_fired = 0
        created = 0
        for job in due:
            spec = parse_cron(job.cron)
            plan = plan_fires(spec, job.timezone, job.next_run_at, now, job.misfire_policy)
            savepoint = self._session.begin_nested()
            try:
                workflow = self._session.get(AutomationWorkflow, job.workflow_id)
                for fire_time in plan.fire_times:
                    self._workflows.create_execution(
                        workflow,
                        workflow.trigger_kind if workflow.trigger_kind == TriggerKind.RECURRING
                        else TriggerKind.SCHEDULED,
                        {**(job.parameters or {}), "scheduled_for": fire_time.isoformat()},
                        correlation_id=f"{_JOB_CORRELATION_PREFIX}{job.id}:{fire_time.isoformat()}",
                    )
                savepoint.commit()
            except BusinessRuleError as exc:
                savepoint.rollback()
                job.next_run_at = plan.next_run_at
                self._record_job_failure(job, str(exc))
                continue

            job.next_run_at = plan.next_run_at
            if plan.fire_times:
                jobs_fired += 1
                created += len(plan.fire_times)
                job.run_count += len(plan.fire_times)
                job.last_run_at = now
                job.last_run_status = "Triggered"
            else:
                job.last_run_status = "Skipped"
            logger.info(
                "scheduled_job_fired",
                extra={
                    "job_id": str(job.id),
                    "fires": len(plan.fire_times),
                    "missed": plan.missed,
                    "misfire_policy": job.misfire_policy.value,
                    "next_run_at": job.next_run_at,
                },
            )
        self._session.flush()
        return jobs_fired, created

    def _record_job_failure(self, job: ScheduledJob, reason: str) -> None:
        job.failure_count += 1
        job.consecutive_failures += 1
        job.last_run_status = "Failed"
        logger.warning(
            "scheduled_job_failed",
            extra={
                "job_id": str(job.id),
                "consecutive_failures": job.consecutive_failures,
                "reason": reason,
            },
        )
        if job.consecutive_failures >= job.max_consecutive_failures and job.is_active:
            job.is_active = False
            logger.warning(
                "scheduled_job_deactivated",
                extra={"job_id": str(job.id), "consecutive_failures": job.consecutive_failures},
            )

    def _record_job_outcome(self, correlation_id: str, succeeded: bool) -> None:
        job_ref = correlation_id[len(_JOB_CORRELATION_PREFIX):].split(":", 1)[0]
        try:
            job_id = UUID(job_ref)
        except ValueError:
            return
        job = self._session.get(ScheduledJob, job_id)
        if job is None:
            return
        if succeeded:
            job.consecutive_failures = 0
            job.last_run_status = "Completed"
        else:
            self._record_job_failure(job, "execution failed")
        self._session.flush()

    # =========================================================================
    # Webhooks
    # =========================================================================

    def create_webhook_endpoint(
        self,
        code: str,
        name: str,
        workflow_ref: str | UUID,
        actor_id: UUID | None = None,
    ) -> WebhookEndpointInfo:
        if not code or not code.strip():
            raise ValidationError("Webhook endpoint code is required")
        workflow = self._workflows.resolve_workflow(workflow_ref)
        exists = self._session.execute(
            select(WebhookEndpoint.id).where(WebhookEndpoint.code == code)
        ).scalar_one_or_none()
        if exists is not None:
            raise DuplicateCodeError("WebhookEndpoint", code)

        endpoint = WebhookEndpoint(
            code=code,
            name=name,
            workflow_id=workflow.id,
            is_active=True,
            total_requests=0,
            successful_requests=0,
            failed_requests=0,
        )
        self._stamp_new(endpoint, actor_id)
        self._session.add(endpoint)
        self._session.flush()
        logger.info(
            "webhook_endpoint_created",
            extra={"endpoint_code": code, "workflow_code": workflow.code},
        )
        return endpoint.to_dto()

    def deactivate_webhook_endpoint(self, code: str, actor_id: UUID | None = None) -> WebhookEndpointInfo:
        endpoint = self._get_endpoint(code)
        endpoint.is_active = False
        self._stamp_changed(endpoint, actor_id)
        self._session.flush()
        return endpoint.to_dto()

    def receive_webhook(
        self,
        endpoint_code: str,
        method: str,
        headers: Mapping[str, Any] | None = None,
        body: Any = None,
        source_ip: str | None = None,
        *,
        idempotency_key: str | None = None,
        request_id: str | None = None,
    ) -> WebhookRequestInfo:
        """
        Store a webhook request and start its execution.

        The idempotency key comes from the argument or the
        ``Idempotency-Key`` header.  A repeat returns the stored request
        with ``duplicate=True``.

        Response codes: 202 accepted, 410 endpoint inactive, 422 workflow
        refused the execution.
        """
        started = self._clock.monotonic_ms()
        endpoint = self._get_endpoint(endpoint_code)
        headers = {str(k): str(v) for k, v in (headers or {}).items()}
        key = idempotency_key or _header(headers, "Idempotency-Key")

        if key is not None:
            existing = self._find_request(endpoint.id, key)
            if existing is not None:
                logger.info(
                    "webhook_duplicate_ignored",
                    extra={"endpoint_code": endpoint.code, "idempotency_key": key},
                )
                return existing.to_dto(duplicate=True)

        now = self._clock.now()
        rid = request_id or _header(headers, "X-Request-Id") or str(uuid4())
        request = WebhookRequest(
            endpoint_id=endpoint.id,
            request_id=rid,
            idempotency_key=key,
            method=method.upper(),
            headers=headers,
            body=to_plain(body),
            source_ip=source_ip,
            received_at=now,
            response_status=RESPONSE_ACCEPTED,
            processing_time_ms=0,
        )
        self._stamp_new(request, None)

        savepoint = self._session.begin_nested()
        try:
            self._session.add(request)
            self._session.flush()
        except IntegrityError:
            # A concurrent delivery with the same key won the insert
            savepoint.rollback()
            existing = self._find_request(endpoint.id, key)
            if existing is None:
                raise
            return existing.to_dto(duplicate=True)

        if not endpoint.is_active:
            request.response_status = RESPONSE_GONE
            request.error_message = f"Webhook endpoint {endpoint.code} is inactive"
        else:
            workflow = self._session.get(AutomationWorkflow, endpoint.workflow_id)
            trigger_data = {
                "body": to_plain(body),
                "headers": headers,
                "method": request.method,
                "source_ip": source_ip,
                "request_id": rid,
            }
            inner = self._session.begin_nested()
            try:
                execution = self._workflows.create_execution(
                    workflow, TriggerKind.WEBHOOK, trigger_data, correlation_id=rid
                )
                inner.commit()
                request.execution_id = execution.id
            except BusinessRuleError as exc:
                inner.rollback()
                request.response_status = RESPONSE_UNPROCESSABLE
                request.error_message = str(exc)
        savepoint.commit()

        endpoint.total_requests += 1
        endpoint.last_request_at = now
        if request.response_status == RESPONSE_ACCEPTED:
            endpoint.successful_requests += 1
        else:
            endpoint.failed_requests += 1
        request.processing_time_ms = max(self._clock.monotonic_ms() - started, 0)
        self._session.flush()

        logger.info(
            "webhook_received",
            extra={
                "endpoint_code": endpoint.code,
                "request_id": rid,
                "response_status": request.response_status,
                "execution_id": str(request.execution_id) if request.execution_id else None,
            },
        )
        return request.to_dto()

    def list_webhook_requests(self, endpoint_code: str, page: PageRequest | None = None) -> Page:
        endpoint = self._get_endpoint(endpoint_code)
        stmt = (
            select(WebhookRequest)
            .where(WebhookRequest.endpoint_id == endpoint.id)
            .order_by(WebhookRequest.received_at.desc(), WebhookRequest.id)
        )
        return paginate(self._session, stmt, page, transform=lambda r: r.to_dto())

    # =========================================================================
    # Domain events
    # =========================================================================

    def process_event(self, event: DomainEvent) -> int:
        """
        Route one domain event; returns executions started or resumed.

        Approval outcomes resume executions waiting on the request.
        Execution outcomes of scheduled runs update the job's counters.
        """
        touched = 0
        if event.topic.startswith(APPROVAL_TOPIC_PREFIX) and event.get("request_id"):
            resumed = self._workflows.signal(
                approval_resume_token(event.get("request_id")), dict(event.payload)
            )
            touched += len(resumed)

        correlation = event.get("correlation_id")
        if (
            event.topic in (Topics.EXECUTION_COMPLETED, Topics.EXECUTION_FAILED)
            and isinstance(correlation, str)
            and correlation.startswith(_JOB_CORRELATION_PREFIX)
        ):
            self._record_job_outcome(correlation, event.topic == Topics.EXECUTION_COMPLETED)

        for workflow in self._event_workflows(event.topic):
            condition = workflow.trigger_config.get("condition")
            if condition is not None and not holds(
                compile_condition(condition),
                EvaluationContext(entity=dict(event.payload), now=self._clock.now()),
            ):
                continue
            trigger_data = {
                **dict(event.payload),
                "event": {
                    "topic": event.topic,
                    "event_id": str(event.event_id),
                    "occurred_at": event.occurred_at.isoformat(),
                },
            }
            savepoint = self._session.begin_nested()
            try:
                self._workflows.create_execution(
                    workflow, TriggerKind.EVENT_DRIVEN, trigger_data,
                    correlation_id=str(event.event_id),
                )
                savepoint.commit()
                touched += 1
            except BusinessRuleError:
                savepoint.rollback()
                logger.warning(
                    "event_trigger_rejected",
                    extra={"workflow_code": workflow.code, "topic": event.topic},
                    exc_info=True,
                )
        return touched

    def process_events(self, events: Iterable[DomainEvent]) -> int:
        return sum(self.process_event(e) for e in events)

    def _event_workflows(self, topic: str) -> list[AutomationWorkflow]:
        candidates = self._session.execute(
            select(AutomationWorkflow)
            .where(
                AutomationWorkflow.trigger_kind == TriggerKind.EVENT_DRIVEN,
                AutomationWorkflow.status == WorkflowStatus.ACTIVE,
            )
            .order_by(AutomationWorkflow.priority.desc(), AutomationWorkflow.code)
        ).scalars().all()
        return [
            w for w in candidates
            if any(event_topic_matches(p, topic) for p in w.trigger_config.get("topics", []))
        ]

    # =========================================================================
    # Internal
    # =========================================================================

    def _get_job(self, job_id: UUID, lock: bool = False) -> ScheduledJob:
        stmt = select(ScheduledJob).where(ScheduledJob.id == job_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        job = self._session.execute(stmt).scalar_one_or_none()
        if job is None:
            raise ScheduledJobNotFoundError(job_id)
        return job

    def _get_endpoint(self, code: str) -> WebhookEndpoint:
        endpoint = self._session.execute(
            select(WebhookEndpoint)
            .where(WebhookEndpoint.code == code)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if endpoint is None:
            raise WebhookEndpointNotFoundError(code)
        return endpoint

    def _find_request(self, endpoint_id: UUID, key: str | None) -> WebhookRequest | None:
        if key is None:
            return None
        return self._session.execute(
            select(WebhookRequest).where(
                WebhookRequest.endpoint_id == endpoint_id,
                WebhookRequest.idempotency_key == key,
            )
        ).scalar_one_or_none()


def _header(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None
