"""
Action graph -- parsing and validation of a workflow's serialized steps.

Serialized form (JSON)::

    {
      "steps": [
        {"id": "check", "type": "evaluate_rule_set", "config": {"rule_set": "PO_CHECKS"}},
        {"id": "approve", "type": "request_approval", "config": {...},
         "condition": "amount >= 10000"},
        {"id": "notify", "type": "log", "config": {"message": "done"}},
        {"id": "alert", "type": "log", "config": {"message": "failed"}}
      ]
    }

Steps run in list order.  A step may override the successor with
``"next": "<step id>"`` and name a failure handler with
``"on_failure": "<step id>"``.  Both may only point forward, so the graph
is acyclic and each step runs at most once.  Steps jumped over count as
skipped.  A ``condition`` (rule expression over the execution variables)
that does not hold skips the step.  ``"next": "$end"`` finishes the
execution.

Invariants enforced:
    - Step ids are unique and non-empty; at least one step exists.
    - ``next`` / ``on_failure`` reference a later step (or ``$end``).
    - Conditions parse.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from erp_engines.rules import compile_condition
from erp_engines.rules.nodes import Node
from erp_kernel.exceptions import ErpError, ValidationError

END = "$end"


@dataclass(frozen=True)
class StepDefinition:
    step_id: str
    step_type: str
    index: int
    config: Mapping[str, Any] = field(default_factory=dict)
    name: str | None = None
    condition: Node | None = None
    next_step: str | None = None
    on_failure: str | None = None
    timeout_seconds: int | None = None


@dataclass(frozen=True)
class ActionGraph:
    steps: tuple[StepDefinition, ...]

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def index_of(self, step_id: str) -> int:
        """Position of ``step_id``; ``$end`` is one past the last step."""
        if step_id == END:
            return len(self.steps)
        for step in self.steps:
            if step.step_id == step_id:
                return step.index
        raise ValidationError(f"Unknown step {step_id!r}")

    def successor(self, step: StepDefinition) -> int:
        if step.next_step is not None:
            return self.index_of(step.next_step)
        return step.index + 1

    def step_types(self) -> set[str]:
        return {s.step_type for s in self.steps}


def parse_action_graph(raw: Any, known_step_types: Iterable[str] | None = None) -> ActionGraph:
    """
    Validate and compile a stored action graph.

    Raises:
        ValidationError: malformed graph, or a step type not in
            ``known_step_types`` (when given).
    """
    if isinstance(raw, list):
        raw = {"steps": raw}
    if not isinstance(raw, Mapping) or not isinstance(raw.get("steps"), list):
        raise ValidationError("Action graph must be an object with a 'steps' list")
    raw_steps = raw["steps"]
    if not raw_steps:
        raise ValidationError("Action graph needs at least one step")

    ids: list[str] = []
    for position, item in enumerate(raw_steps):
        if not isinstance(item, Mapping):
            raise ValidationError(f"Step {position} must be an object")
        step_id = item.get("id") or f"step_{position + 1}"
        if not isinstance(step_id, str) or step_id == END:
            raise ValidationError(f"Invalid step id {step_id!r}")
        if step_id in ids:
            raise ValidationError(f"Duplicate step id {step_id!r}")
        ids.append(step_id)

    known = set(known_step_types) if known_step_types is not None else None
    steps: list[StepDefinition] = []
    for position, item in enumerate(raw_steps):
        step_type = item.get("type")
        if not isinstance(step_type, str) or not step_type:
            raise ValidationError(f"Step {ids[position]} has no type")
        if known is not None and step_type not in known:
            raise ValidationError(f"Step {ids[position]} has unregistered type {step_type!r}")

        config = item.get("config") or {}
        if not isinstance(config, Mapping):
            raise ValidationError(f"Step {ids[position]} config must be an object")

        for key in ("next", "on_failure"):
            target = item.get(key)
            if target is None or target == END:
                continue
            if target not in ids:
                raise ValidationError(f"Step {ids[position]} {key} references unknown step {target!r}")
            if ids.index(target) <= position:
                raise ValidationError(f"Step {ids[position]} {key} must point to a later step")

        try:
            condition = compile_condition(item.get("condition"))
        except ErpError as exc:
            raise ValidationError(f"Step {ids[position]} condition: {exc}") from exc

        timeout = item.get("timeout_seconds")
        if timeout is not None and (not isinstance(timeout, int) or timeout <= 0):
            raise ValidationError(f"Step {ids[position]} timeout_seconds must be a positive integer")

        steps.append(
            StepDefinition(
                step_id=ids[position],
                step_type=step_type,
                index=position,
                config=dict(config),
                name=item.get("name"),
                condition=condition,
                next_step=item.get("next"),
                on_failure=item.get("on_failure"),
                timeout_seconds=timeout,
            )
        )
    return ActionGraph(steps=tuple(steps))
