"""
erp_automation.domain.types -- Enums, transition tables and frozen DTOs.

ZERO I/O.  Follows the pattern of erp_kernel.domain.approval: ``str``
enums whose values are the exact variant names, transition tables as
``dict[Status, frozenset[Status]]``, and frozen dataclasses with tuples for
immutable collections.

Invariants enforced:
    - Workflow and execution status changes follow the transition tables.
    - ``progress_percent == completed_steps * 100 // total_steps``.
    - Retry backoff is ``min(initial * multiplier^(attempt-1), max)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from erp_kernel.exceptions import ValidationError


# =============================================================================
# Status enums
# =============================================================================


class TriggerKind(str, Enum):
    SCHEDULED = "Scheduled"
    EVENT_DRIVEN = "EventDriven"
    WEBHOOK = "Webhook"
    API = "API"
    MANUAL = "Manual"
    RECURRING = "Recurring"


class WorkflowStatus(str, Enum):
    DRAFT = "Draft"
    ACTIVE = "Active"
    PAUSED = "Paused"
    DISABLED = "Disabled"
    ARCHIVED = "Archived"
    ERROR = "Error"


class ExecutionStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    PAUSED = "Paused"
    WAITING = "Waiting"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    TIMEOUT = "Timeout"
    RETRYING = "Retrying"


class MisfirePolicy(str, Enum):
    RUN_IMMEDIATELY = "RunImmediately"
    SKIP = "Skip"
    RUN_ALL = "RunAll"


WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.DRAFT: frozenset({WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED}),
    WorkflowStatus.ACTIVE: frozenset({
        WorkflowStatus.PAUSED,
        WorkflowStatus.DISABLED,
        WorkflowStatus.ERROR,
        WorkflowStatus.ARCHIVED,
    }),
    WorkflowStatus.PAUSED: frozenset({
        WorkflowStatus.ACTIVE,
        WorkflowStatus.DISABLED,
        WorkflowStatus.ARCHIVED,
    }),
    WorkflowStatus.DISABLED: frozenset({WorkflowStatus.DRAFT, WorkflowStatus.ARCHIVED}),
    WorkflowStatus.ERROR: frozenset({
        WorkflowStatus.ACTIVE,
        WorkflowStatus.DISABLED,
        WorkflowStatus.ARCHIVED,
    }),
    WorkflowStatus.ARCHIVED: frozenset(),
}

EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.WAITING,
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
        ExecutionStatus.RETRYING,
        ExecutionStatus.PENDING,
    }),
    ExecutionStatus.WAITING: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
        ExecutionStatus.PENDING,
    }),
    ExecutionStatus.PAUSED: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.RETRYING: frozenset({ExecutionStatus.PENDING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
    ExecutionStatus.TIMEOUT: frozenset(),
}

TERMINAL_EXECUTION_STATUSES = frozenset(
    s for s, targets in EXECUTION_TRANSITIONS.items() if not targets
)

# Statuses that hold one of the workflow's concurrency slots
SLOT_HOLDING_STATUSES = frozenset({
    ExecutionStatus.RUNNING,
    ExecutionStatus.WAITING,
    ExecutionStatus.PAUSED,
})


def progress_percent(completed_steps: int, total_steps: int) -> int:
    if total_steps <= 0:
        return 0
    return completed_steps * 100 // total_steps


# =============================================================================
# Retry policy
# =============================================================================


@dataclass(frozen=True)
class WorkflowRetryPolicy:
    """
    Retry policy declared by a workflow.

    ``max_retries`` counts re-attempts after the first run; zero disables
    retry.
    """

    max_retries: int = 0
    initial_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 60_000

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValidationError("max_retries must be >= 0")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValidationError("retry delays must be non-negative")
        if self.multiplier < 1:
            raise ValidationError("retry multiplier must be >= 1")

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> WorkflowRetryPolicy | None:
        if not config:
            return None
        unknown = set(config) - {"max_retries", "initial_delay_ms", "multiplier", "max_delay_ms"}
        if unknown:
            raise ValidationError(f"Unknown retry policy keys: {sorted(unknown)}")
        return cls(**dict(config))

    def allows(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def backoff_ms(self, attempt: int) -> int:
        """Delay before retry ``attempt`` (1-based)."""
        delay = self.initial_delay_ms * (self.multiplier ** (max(attempt, 1) - 1))
        return int(min(delay, self.max_delay_ms))

    def to_config(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "initial_delay_ms": self.initial_delay_ms,
            "multiplier": self.multiplier,
            "max_delay_ms": self.max_delay_ms,
        }


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class AutomationWorkflowInfo:
    id: UUID
    code: str
    name: str
    trigger_kind: TriggerKind
    trigger_config: dict[str, Any]
    action_graph: dict[str, Any]
    timeout_seconds: int
    max_concurrent_runs: int
    priority: int
    status: WorkflowStatus
    version: int
    retry_policy: WorkflowRetryPolicy | None = None
    running_count: int = 0
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    avg_duration_ms: int | None = None
    published_at: datetime | None = None
    description: str | None = None


@dataclass(frozen=True)
class WorkflowExecutionInfo:
    id: UUID
    workflow_id: UUID
    execution_number: str
    trigger_kind: TriggerKind
    status: ExecutionStatus
    total_steps: int
    completed_steps: int
    progress_percent: int
    retry_count: int = 0
    priority: int = 0
    trigger_data: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    current_step: str | None = None
    resume_token: str | None = None
    correlation_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    deadline_at: datetime | None = None
    next_attempt_at: datetime | None = None
    duration_ms: int | None = None
    error_step: str | None = None
    error_message: str | None = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


@dataclass(frozen=True)
class ScheduledJobInfo:
    id: UUID
    name: str
    workflow_id: UUID
    cron: str
    timezone: str
    misfire_policy: MisfirePolicy
    is_active: bool
    next_run_at: datetime | None
    last_run_at: datetime | None = None
    last_run_status: str | None = None
    run_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    max_consecutive_failures: int = 3
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookEndpointInfo:
    id: UUID
    code: str
    name: str
    workflow_id: UUID
    is_active: bool
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    last_request_at: datetime | None = None


@dataclass(frozen=True)
class WebhookRequestInfo:
    id: UUID
    endpoint_id: UUID
    request_id: str
    method: str
    received_at: datetime
    response_status: int
    headers: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    source_ip: str | None = None
    idempotency_key: str | None = None
    execution_id: UUID | None = None
    processing_time_ms: int = 0
    error_message: str | None = None
    duplicate: bool = False


@dataclass(frozen=True)
class TickResult:
    """What one scheduler tick did."""

    jobs_fired: int = 0
    executions_created: int = 0
    events_processed: int = 0
    executions_admitted: int = 0
    executions_advanced: int = 0
    executions_timed_out: int = 0
    retries_released: int = 0
    errors: tuple[str, ...] = ()
