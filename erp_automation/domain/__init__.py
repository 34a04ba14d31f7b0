"""
erp_automation.domain -- Pure types, cron schedules and action graphs.

ZERO I/O.
"""

from erp_automation.domain.action_graph import (
    END,
    ActionGraph,
    StepDefinition,
    parse_action_graph,
)
from erp_automation.domain.schedule import (
    CronSpec,
    FirePlan,
    next_fire_time,
    parse_cron,
    plan_fires,
)
from erp_automation.domain.types import (
    EXECUTION_TRANSITIONS,
    SLOT_HOLDING_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    WORKFLOW_TRANSITIONS,
    AutomationWorkflowInfo,
    ExecutionStatus,
    MisfirePolicy,
    ScheduledJobInfo,
    TickResult,
    TriggerKind,
    WebhookEndpointInfo,
    WebhookRequestInfo,
    WorkflowExecutionInfo,
    WorkflowRetryPolicy,
    WorkflowStatus,
    progress_percent,
)

__all__ = [
    "END",
    "EXECUTION_TRANSITIONS",
    "SLOT_HOLDING_STATUSES",
    "TERMINAL_EXECUTION_STATUSES",
    "WORKFLOW_TRANSITIONS",
    "ActionGraph",
    "AutomationWorkflowInfo",
    "CronSpec",
    "ExecutionStatus",
    "FirePlan",
    "MisfirePolicy",
    "ScheduledJobInfo",
    "StepDefinition",
    "TickResult",
    "TriggerKind",
    "WebhookEndpointInfo",
    "WebhookRequestInfo",
    "WorkflowExecutionInfo",
    "WorkflowRetryPolicy",
    "WorkflowStatus",
    "next_fire_time",
    "parse_action_graph",
    "parse_cron",
    "plan_fires",
    "progress_percent",
]
