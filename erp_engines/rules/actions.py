"""
Rule actions -- compile and apply the action list of a rule.

Action JSON is a list of objects, each with a ``type``:

    {"type": "set", "field": "discount_pct", "value": 10}
    {"type": "set", "field": "total", "expression": "subtotal * 1.2"}
    {"type": "increment", "field": "score", "by": 5}
    {"type": "append", "field": "tags", "value": "vip"}
    {"type": "fail", "message": "Credit limit exceeded"}
    {"type": "emit", "topic": "rules.discount.applied", "payload": {"pct": 10}}

``set``/``increment``/``append`` write into the mutable working context
(dotted field paths create nested objects).  ``fail`` halts the rule with
RuleActionError.  ``emit`` records an event for the caller to publish.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, MutableMapping

from erp_engines.rules.evaluator import EvaluationContext, evaluate
from erp_engines.rules.functions import normalize, to_number, to_plain
from erp_engines.rules.nodes import Node
from erp_engines.rules.parser import parse_expression
from erp_engines.rules.types import ActionOutcome, EmittedEvent
from erp_kernel.exceptions import ErpError, RuleActionError

ACTION_TYPES = frozenset({"set", "increment", "append", "fail", "emit"})


@dataclass(frozen=True)
class CompiledAction:
    action_type: str
    field: str | None = None
    value: Any = None
    expression: Node | None = None
    message: str | None = None
    topic: str | None = None
    payload: Mapping[str, Any] | None = None

    def describe(self) -> dict[str, Any]:
        described: dict[str, Any] = {"type": self.action_type}
        if self.field:
            described["field"] = self.field
        if self.topic:
            described["topic"] = self.topic
        return described


def compile_actions(actions: Any) -> tuple[CompiledAction, ...]:
    """
    Validate and compile a stored action list.

    Raises:
        RuleActionError: unknown action type or missing parameter.
        ExpressionSyntaxError: an ``expression`` that does not parse.
    """
    if actions is None or actions == []:
        return ()
    if isinstance(actions, Mapping):
        actions = [actions]
    if not isinstance(actions, list):
        raise RuleActionError("?", "actions must be a list of objects")

    compiled: list[CompiledAction] = []
    for raw in actions:
        if not isinstance(raw, Mapping):
            raise RuleActionError("?", f"action must be an object, got {raw!r}")
        action_type = raw.get("type")
        if action_type not in ACTION_TYPES:
            raise RuleActionError(str(action_type), "unknown action type")

        if action_type in ("set", "increment", "append") and not raw.get("field"):
            raise RuleActionError(action_type, "field is required")
        if action_type == "emit" and not raw.get("topic"):
            raise RuleActionError(action_type, "topic is required")

        expression = None
        if "expression" in raw:
            expression = parse_expression(raw["expression"])
        elif action_type == "set" and "value" not in raw:
            raise RuleActionError(action_type, "value or expression is required")

        value = raw.get("by", 1) if action_type == "increment" else raw.get("value")
        compiled.append(
            CompiledAction(
                action_type=action_type,
                field=raw.get("field"),
                value=value,
                expression=expression,
                message=raw.get("message"),
                topic=raw.get("topic"),
                payload=raw.get("payload"),
            )
        )
    return tuple(compiled)


def apply_actions(
    actions: tuple[CompiledAction, ...],
    working: MutableMapping[str, Any],
    ctx: EvaluationContext,
) -> ActionOutcome:
    """
    Apply ``actions`` in order to ``working``.

    Expressions see ``working`` as it stands when the action runs, so a
    later action observes earlier ones.

    Raises:
        RuleActionError: a ``fail`` action, or an action that cannot apply
            (for example incrementing text).  Changes made before the
            failing action remain in ``working``.
    """
    executed: list[dict[str, Any]] = []
    changes: dict[str, Any] = {}
    emitted: list[EmittedEvent] = []
    action_ctx = ctx.with_entity(working)

    for action in actions:
        if action.action_type == "fail":
            raise RuleActionError("fail", action.message or "rule failed")

        try:
            value = (
                evaluate(action.expression, action_ctx)
                if action.expression is not None
                else normalize(deepcopy(action.value))
            )
        except ErpError as exc:
            raise RuleActionError(action.action_type, str(exc)) from exc

        if action.action_type == "set":
            _assign(working, action.field, value)
        elif action.action_type == "increment":
            current = _lookup(working, action.field)
            try:
                base = Decimal(0) if current is None else to_number(current, "increment")
                _assign(working, action.field, base + to_number(value, "increment"))
            except ErpError as exc:
                raise RuleActionError("increment", str(exc)) from exc
        elif action.action_type == "append":
            current = _lookup(working, action.field)
            if current is None:
                current = []
            if not isinstance(current, list):
                raise RuleActionError("append", f"{action.field} is not a list")
            _assign(working, action.field, [*current, value])
        elif action.action_type == "emit":
            payload = {k: to_plain(v) for k, v in dict(action.payload or {}).items()}
            emitted.append(EmittedEvent(topic=action.topic, payload=payload))

        if action.field:
            changes[action.field] = to_plain(_lookup(working, action.field))
        executed.append(action.describe())

    return ActionOutcome(executed=tuple(executed), changes=changes, emitted=tuple(emitted))


def _lookup(target: Mapping[str, Any], path: str) -> Any:
    current: Any = target
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _assign(target: MutableMapping[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = target
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, MutableMapping):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def merge_changes(target: MutableMapping[str, Any], changes: Mapping[str, Any]) -> None:
    """Write a change set (dotted path -> value) into ``target``."""
    for path, value in changes.items():
        _assign(target, path, deepcopy(value))
