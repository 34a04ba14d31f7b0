"""
WorkflowStep protocol, supporting types, and StepRegistry.

Contract:
    ``WorkflowStep`` defines the interface every step handler implements.
    ``StepRegistry`` stores handlers keyed by ``step_type``.
    ``default_step_registry()`` returns a registry holding the built-in
    steps.

Architecture:
    erp_automation/steps.  Step handlers never commit; the executor runs
    each ``run``/``resume`` inside a SAVEPOINT and rolls it back when the
    step raises.

Invariants enforced:
    - One handler per ``step_type`` string.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, MutableMapping, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy.orm import Session

from erp_automation.domain.action_graph import StepDefinition
from erp_kernel.domain.clock import Clock
from erp_kernel.exceptions import StepNotRegisteredError, ValidationError
from erp_kernel.services.event_bus import EventBus


# =============================================================================
# Supporting DTOs
# =============================================================================


@dataclass(frozen=True)
class StepServices:
    """
    Engine factories a step may call, each taking the executor's Session.

    Wired by the composition root; None when the engine is not available.
    """

    rules: Callable[[Session], Any] | None = None
    approvals: Callable[[Session], Any] | None = None


@dataclass
class StepContext:
    """Everything a step handler sees while it runs."""

    session: Session
    clock: Clock
    execution_id: UUID
    execution_number: str
    workflow_code: str
    step: StepDefinition
    variables: MutableMapping[str, Any]
    trigger_data: Mapping[str, Any] = field(default_factory=dict)
    event_bus: EventBus | None = None
    services: StepServices = field(default_factory=StepServices)

    @property
    def config(self) -> Mapping[str, Any]:
        return self.step.config

    @property
    def now(self) -> datetime:
        return self.clock.now()

    def default_token(self) -> str:
        return f"signal:{self.execution_id}:{self.step.step_id}"


@dataclass(frozen=True)
class StepOutcome:
    """
    Result of running (or resuming) a step.

    ``resume_token`` set means the step suspended: the execution waits
    until ``signal(resume_token, payload)`` arrives.
    """

    output: Any = None
    resume_token: str | None = None

    @property
    def suspended(self) -> bool:
        return self.resume_token is not None

    @classmethod
    def complete(cls, output: Any = None) -> StepOutcome:
        return cls(output=output)

    @classmethod
    def suspend(cls, resume_token: str) -> StepOutcome:
        if not resume_token:
            raise ValidationError("A suspending step needs a resume token")
        return cls(resume_token=resume_token)


# =============================================================================
# WorkflowStep Protocol
# =============================================================================


@runtime_checkable
class WorkflowStep(Protocol):
    """
    Protocol for step handlers.

    Contract:
        - ``step_type``: unique string key registered in StepRegistry.
        - ``run()``: perform the step; return ``StepOutcome.complete`` or
          ``StepOutcome.suspend``; raise StepFailedError (or any error) to
          fail the step.
        - ``resume()``: called when a suspended step is signalled.

    Non-goals:
        - Does NOT manage transactions -- the executor owns the SAVEPOINT.
        - Does NOT retry -- the executor applies the workflow retry policy.
    """

    @property
    def step_type(self) -> str: ...

    @property
    def description(self) -> str: ...

    def run(self, ctx: StepContext) -> StepOutcome: ...

    def resume(self, ctx: StepContext, payload: Mapping[str, Any]) -> StepOutcome: ...


class BaseStep:
    """Convenience base: resuming completes with the signal payload."""

    step_type = ""
    description = ""

    def run(self, ctx: StepContext) -> StepOutcome:
        raise NotImplementedError

    def resume(self, ctx: StepContext, payload: Mapping[str, Any]) -> StepOutcome:
        return StepOutcome.complete(dict(payload))


class FunctionStep(BaseStep):
    """Adapts a plain ``fn(ctx) -> output`` into a synchronous step."""

    def __init__(self, step_type: str, fn: Callable[[StepContext], Any], description: str = ""):
        self.step_type = step_type
        self.description = description or step_type
        self._fn = fn

    def run(self, ctx: StepContext) -> StepOutcome:
        result = self._fn(ctx)
        if isinstance(result, StepOutcome):
            return result
        return StepOutcome.complete(result)


# =============================================================================
# StepRegistry
# =============================================================================


class StepRegistry:
    """
    Registry mapping step_type strings to handlers.

    Contract:
        - ``register()`` adds a handler; raises ValidationError on duplicate.
        - ``get()`` retrieves by step_type; raises StepNotRegisteredError.
        - ``list_steps()`` returns all registered step_type strings.
    """

    def __init__(self) -> None:
        self._steps: dict[str, WorkflowStep] = {}

    def register(self, step: WorkflowStep) -> WorkflowStep:
        if not step.step_type:
            raise ValidationError("Step handlers need a step_type")
        if step.step_type in self._steps:
            raise ValidationError(f"Step type '{step.step_type}' is already registered")
        self._steps[step.step_type] = step
        return step

    def register_function(
        self,
        step_type: str,
        fn: Callable[[StepContext], Any],
        description: str = "",
    ) -> WorkflowStep:
        return self.register(FunctionStep(step_type, fn, description))

    def get(self, step_type: str) -> WorkflowStep:
        try:
            return self._steps[step_type]
        except KeyError:
            raise StepNotRegisteredError(step_type) from None

    def list_steps(self) -> tuple[str, ...]:
        return tuple(sorted(self._steps))

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_type: str) -> bool:
        return step_type in self._steps


def default_step_registry() -> StepRegistry:
    """Create a fresh registry holding the built-in steps."""
    from erp_automation.steps.builtin import BUILTIN_STEPS

    registry = StepRegistry()
    for step_cls in BUILTIN_STEPS:
        registry.register(step_cls())
    return registry
