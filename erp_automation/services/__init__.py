"""Automation services: workflow lifecycle, execution, triggers and scheduling."""

from erp_automation.services.executor import AutomationExecutor
from erp_automation.services.scheduler import AutomationScheduler
from erp_automation.services.triggers import (
    EventInbox,
    TriggerService,
    approval_resume_token,
)
from erp_automation.services.workflow_service import WorkflowService

__all__ = [
    "AutomationExecutor",
    "AutomationScheduler",
    "EventInbox",
    "TriggerService",
    "WorkflowService",
    "approval_resume_token",
]
