"""
ORM models for the automation engine.

Contract:
    AutomationWorkflow, WorkflowExecution, ScheduledJob, WebhookEndpoint
    and WebhookRequest persist workflow definitions, execution progress,
    cron schedules and webhook intake.  Each has ``to_dto()``.

Architecture: erp_automation/models.  Imports from erp_kernel.db and
    erp_automation.domain only.

Invariants enforced:
    - ``AutomationWorkflow.running_count`` is the per-workflow slot counter;
      it is only changed by conditional UPDATEs in the executor.
    - ``WorkflowExecution.lease_owner`` / ``lease_expires_at`` fence
      concurrent workers; only the lease holder advances an execution.
    - ``WebhookRequest.idempotency_key`` is unique per endpoint.
    - Cross-engine references (approval request ids, rule set codes)
      live inside JSON blobs; there are no foreign keys to other engines.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from erp_automation.domain.types import (
    AutomationWorkflowInfo,
    ExecutionStatus,
    MisfirePolicy,
    ScheduledJobInfo,
    TriggerKind,
    WebhookEndpointInfo,
    WebhookRequestInfo,
    WorkflowExecutionInfo,
    WorkflowRetryPolicy,
    WorkflowStatus,
)
from erp_kernel.db.base import TrackedBase, UUIDString
from erp_kernel.db.types import EnumText


class AutomationWorkflow(TrackedBase):
    __tablename__ = "automation_workflows"

    __table_args__ = (
        UniqueConstraint("code", name="uq_automation_workflow_code"),
        Index("idx_automation_workflow_trigger", "trigger_kind", "status"),
    )

    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    trigger_kind: Mapped[TriggerKind] = mapped_column(EnumText(TriggerKind), nullable=False)
    trigger_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    action_graph: Mapped[dict] = mapped_column(JSON, nullable=False)
    retry_policy: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    timeout_seconds: Mapped[int] = mapped_column(nullable=False)
    max_concurrent_runs: Mapped[int] = mapped_column(nullable=False)
    running_count: Mapped[int] = mapped_column(nullable=False, default=0)
    priority: Mapped[int] = mapped_column(nullable=False, default=5)
    status: Mapped[WorkflowStatus] = mapped_column(
        EnumText(WorkflowStatus), nullable=False, default=WorkflowStatus.DRAFT
    )
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    published_at: Mapped[datetime | None] = mapped_column(nullable=True)
    published_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    total_runs: Mapped[int] = mapped_column(nullable=False, default=0)
    successful_runs: Mapped[int] = mapped_column(nullable=False, default=0)
    failed_runs: Mapped[int] = mapped_column(nullable=False, default=0)
    avg_duration_ms: Mapped[int | None] = mapped_column(nullable=True)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def to_dto(self) -> AutomationWorkflowInfo:
        return AutomationWorkflowInfo(
            id=self.id,
            code=self.code,
            name=self.name,
            description=self.description,
            trigger_kind=self.trigger_kind,
            trigger_config=dict(self.trigger_config or {}),
            action_graph=dict(self.action_graph or {}),
            timeout_seconds=self.timeout_seconds,
            max_concurrent_runs=self.max_concurrent_runs,
            priority=self.priority,
            status=self.status,
            version=self.version,
            retry_policy=WorkflowRetryPolicy.from_config(self.retry_policy),
            running_count=self.running_count,
            total_runs=self.total_runs,
            successful_runs=self.successful_runs,
            failed_runs=self.failed_runs,
            avg_duration_ms=self.avg_duration_ms,
            published_at=self.published_at,
        )


class WorkflowExecution(TrackedBase):
    """One run of a workflow, with its durable checkpoint."""

    __tablename__ = "automation_executions"

    __table_args__ = (
        UniqueConstraint("execution_number", name="uq_automation_execution_number"),
        Index("idx_automation_execution_admission", "workflow_id", "status", "priority", "seq"),
        Index("idx_automation_execution_resume", "resume_token"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("automation_workflows.id"), nullable=False
    )
    workflow_version: Mapped[int] = mapped_column(nullable=False)
    execution_number: Mapped[str] = mapped_column(String(100), nullable=False)
    seq: Mapped[int] = mapped_column(nullable=False)
    trigger_kind: Mapped[TriggerKind] = mapped_column(EnumText(TriggerKind), nullable=False)
    trigger_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # Action graph as published when the execution was created
    action_graph: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[ExecutionStatus] = mapped_column(
        EnumText(ExecutionStatus), nullable=False, default=ExecutionStatus.PENDING
    )
    priority: Mapped[int] = mapped_column(nullable=False, default=5)
    current_step: Mapped[str | None] = mapped_column(String(100), nullable=True)
    total_steps: Mapped[int] = mapped_column(nullable=False)
    completed_steps: Mapped[int] = mapped_column(nullable=False, default=0)
    progress_percent: Mapped[int] = mapped_column(nullable=False, default=0)
    # {"position": int, "variables": {...}, "outputs": {step_id: ...}}
    checkpoint: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    resume_token: Mapped[str | None] = mapped_column(String(200), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    deadline_at: Mapped[datetime | None] = mapped_column(nullable=True)
    step_deadline_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(nullable=True)
    error_step: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(nullable=False, default=0)
    correlation_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    parent_execution_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(nullable=False, default=False)
    holds_slot: Mapped[bool] = mapped_column(nullable=False, default=False)
    lease_owner: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def variables(self) -> dict[str, Any]:
        return dict((self.checkpoint or {}).get("variables", {}))

    def to_dto(self) -> WorkflowExecutionInfo:
        return WorkflowExecutionInfo(
            id=self.id,
            workflow_id=self.workflow_id,
            execution_number=self.execution_number,
            trigger_kind=self.trigger_kind,
            status=self.status,
            total_steps=self.total_steps,
            completed_steps=self.completed_steps,
            progress_percent=self.progress_percent,
            retry_count=self.retry_count,
            priority=self.priority,
            trigger_data=dict(self.trigger_data or {}),
            variables=self.variables,
            current_step=self.current_step,
            resume_token=self.resume_token,
            correlation_id=self.correlation_id,
            started_at=self.started_at,
            completed_at=self.completed_at,
            deadline_at=self.deadline_at,
            next_attempt_at=self.next_attempt_at,
            duration_ms=self.duration_ms,
            error_step=self.error_step,
            error_message=self.error_message,
            cancel_requested=self.cancel_requested,
        )


class ScheduledJob(TrackedBase):
    __tablename__ = "automation_scheduled_jobs"

    __table_args__ = (
        Index("idx_automation_job_due", "is_active", "next_run_at"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("automation_workflows.id"), nullable=False
    )
    cron: Mapped[str] = mapped_column(String(100), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    misfire_policy: Mapped[MisfirePolicy] = mapped_column(
        EnumText(MisfirePolicy), nullable=False, default=MisfirePolicy.RUN_IMMEDIATELY
    )
    parameters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    next_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_run_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    run_count: Mapped[int] = mapped_column(nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(nullable=False, default=0)
    consecutive_failures: Mapped[int] = mapped_column(nullable=False, default=0)
    max_consecutive_failures: Mapped[int] = mapped_column(nullable=False, default=3)

    def to_dto(self) -> ScheduledJobInfo:
        return ScheduledJobInfo(
            id=self.id,
            name=self.name,
            workflow_id=self.workflow_id,
            cron=self.cron,
            timezone=self.timezone,
            misfire_policy=self.misfire_policy,
            is_active=self.is_active,
            next_run_at=self.next_run_at,
            last_run_at=self.last_run_at,
            last_run_status=self.last_run_status,
            run_count=self.run_count,
            failure_count=self.failure_count,
            consecutive_failures=self.consecutive_failures,
            max_consecutive_failures=self.max_consecutive_failures,
            parameters=dict(self.parameters or {}),
        )


class WebhookEndpoint(TrackedBase):
    __tablename__ = "automation_webhook_endpoints"

    __table_args__ = (UniqueConstraint("code", name="uq_automation_webhook_code"),)

    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("automation_workflows.id"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    total_requests: Mapped[int] = mapped_column(nullable=False, default=0)
    successful_requests: Mapped[int] = mapped_column(nullable=False, default=0)
    failed_requests: Mapped[int] = mapped_column(nullable=False, default=0)
    last_request_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> WebhookEndpointInfo:
        return WebhookEndpointInfo(
            id=self.id,
            code=self.code,
            name=self.name,
            workflow_id=self.workflow_id,
            is_active=self.is_active,
            total_requests=self.total_requests,
            successful_requests=self.successful_requests,
            failed_requests=self.failed_requests,
            last_request_at=self.last_request_at,
        )


class WebhookRequest(TrackedBase):
    __tablename__ = "automation_webhook_requests"

    __table_args__ = (
        UniqueConstraint("endpoint_id", "idempotency_key", name="uq_automation_webhook_idempotency"),
        Index("idx_automation_webhook_request_endpoint", "endpoint_id", "received_at"),
    )

    endpoint_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("automation_webhook_endpoints.id"), nullable=False
    )
    request_id: Mapped[str] = mapped_column(String(100), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    headers: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    body: Mapped[Any] = mapped_column(JSON, nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    received_at: Mapped[datetime] = mapped_column(nullable=False)
    execution_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    response_status: Mapped[int] = mapped_column(nullable=False, default=202)
    processing_time_ms: Mapped[int] = mapped_column(nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    def to_dto(self, duplicate: bool = False) -> WebhookRequestInfo:
        return WebhookRequestInfo(
            id=self.id,
            endpoint_id=self.endpoint_id,
            request_id=self.request_id,
            method=self.method,
            received_at=self.received_at,
            response_status=self.response_status,
            headers=dict(self.headers or {}),
            body=self.body,
            source_ip=self.source_ip,
            idempotency_key=self.idempotency_key,
            execution_id=self.execution_id,
            processing_time_ms=self.processing_time_ms,
            error_message=self.error_message,
            duplicate=duplicate,
        )
