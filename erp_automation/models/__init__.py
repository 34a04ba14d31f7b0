"""ORM models for the automation engine."""

from erp_automation.models.automation import (
    AutomationWorkflow,
    ScheduledJob,
    WebhookEndpoint,
    WebhookRequest,
    WorkflowExecution,
)

__all__ = [
    "AutomationWorkflow",
    "ScheduledJob",
    "WebhookEndpoint",
    "WebhookRequest",
    "WorkflowExecution",
]
