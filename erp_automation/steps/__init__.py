"""Workflow step handlers and their registry."""

from erp_automation.steps.base import (
    BaseStep,
    FunctionStep,
    StepContext,
    StepOutcome,
    StepRegistry,
    StepServices,
    WorkflowStep,
    default_step_registry,
)
from erp_automation.steps.builtin import BUILTIN_STEPS, resolve_value

__all__ = [
    "BUILTIN_STEPS",
    "BaseStep",
    "FunctionStep",
    "StepContext",
    "StepOutcome",
    "StepRegistry",
    "StepServices",
    "WorkflowStep",
    "default_step_registry",
    "resolve_value",
]
