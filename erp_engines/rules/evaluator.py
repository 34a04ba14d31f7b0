"""
erp_engines.rules.evaluator -- Tree-walking evaluation of rule expressions.

Responsibility:
    Evaluates a parsed expression against an entity (a mapping of fields),
    named variables and user-defined functions, and optionally records a
    trace of every comparison it evaluated.

Architecture position:
    Engines -- pure.  The evaluation instant comes from the context; the
    evaluator never reads the wall clock.

Semantics:
    - A missing field evaluates to null.  Member access and indexing on
      null yield null.
    - ``=`` and ``!=`` never raise; numbers compare by value (``1 = 1.0``),
      a date compares equal to its ISO text.
    - Ordering comparisons with a null operand are false.  Ordering a
      number against text raises ExpressionEvaluationError.
    - ``and`` / ``or`` short-circuit; operands are tested for truthiness
      (null, false, zero, empty text and empty lists are false).
    - ``x in y``: membership in a list, substring of text, key of an
      object; false when y is null.
    - ``x matches y``: regular-expression search of y in x's text.
    - Calls resolve user functions first, then built-ins.  User function
      parameters are bound as ``$name`` and checked against their declared
      types; recursion is cut off at MAX_CALL_DEPTH.

Failure modes:
    - ExpressionEvaluationError for type errors, unknown names, division by
      zero, bad regular expressions and exceeded call depth.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping

from erp_engines.rules.functions import (
    BUILTINS,
    is_number,
    normalize,
    to_date,
    to_number,
    to_plain,
    to_text,
)
from erp_engines.rules.nodes import (
    ARITHMETIC_OPS,
    COMPARISON_OPS,
    Binary,
    Call,
    Field,
    Index,
    ListExpr,
    Literal,
    Member,
    Node,
    Unary,
    Variable,
)
from erp_engines.rules.types import PredicateTrace
from erp_kernel.exceptions import ExpressionEvaluationError

MAX_CALL_DEPTH = 32


@dataclass(frozen=True)
class UserFunction:
    """A function declared in the rule language itself."""

    name: str
    parameters: tuple[tuple[str, str], ...]
    body: Node
    return_type: str = "any"


class EvaluationContext:
    """
    Everything an expression can see.

    ``entity`` is read through dotted field paths; ``variables`` through
    ``$name``.  When ``trace`` is true every evaluated comparison is
    appended to ``predicates``.
    """

    def __init__(
        self,
        entity: Mapping[str, Any] | None = None,
        variables: Mapping[str, Any] | None = None,
        functions: Mapping[str, UserFunction] | None = None,
        now: datetime | None = None,
        trace: bool = False,
    ):
        self.entity = entity if entity is not None else {}
        self.variables = dict(variables or {})
        self.functions = dict(functions or {})
        self.now = now or datetime(1970, 1, 1, tzinfo=timezone.utc)
        self.predicates: list[PredicateTrace] | None = [] if trace else None

    def with_entity(self, entity: Mapping[str, Any]) -> EvaluationContext:
        clone = EvaluationContext(entity, self.variables, self.functions, self.now)
        clone.predicates = self.predicates
        return clone


def evaluate(node: Node, ctx: EvaluationContext) -> Any:
    """Evaluate ``node``; numbers come back as Decimal.

    TypeError and ArithmeticError raised inside operators surface as
    ExpressionEvaluationError.
    """
    try:
        return _eval(node, ctx, {}, 0)
    except (TypeError, ArithmeticError) as exc:
        raise ExpressionEvaluationError(f"{type(exc).__name__}: {exc}") from exc


def holds(node: Node | None, ctx: EvaluationContext) -> bool:
    """Evaluate a condition.  An absent condition always holds."""
    if node is None:
        return True
    return truthy(evaluate(node, ctx))


def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if is_number(value):
        return value != 0
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) > 0
    return True


def resolve_path(source: Any, path: tuple[str, ...]) -> Any:
    current = source
    for part in path:
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif not part.startswith("_") and hasattr(current, part):
            current = getattr(current, part)
        else:
            return None
    return current


# =============================================================================
# Internals
# =============================================================================


def _eval(node: Node, ctx: EvaluationContext, scope: dict[str, Any], depth: int) -> Any:
    if isinstance(node, Literal):
        return normalize(node.value)

    if isinstance(node, Field):
        return normalize(resolve_path(ctx.entity, node.path))

    if isinstance(node, Variable):
        if node.name in scope:
            return scope[node.name]
        if node.name in ctx.variables:
            return normalize(ctx.variables[node.name])
        raise ExpressionEvaluationError(f"unknown variable ${node.name}")

    if isinstance(node, ListExpr):
        return [_eval(item, ctx, scope, depth) for item in node.items]

    if isinstance(node, Unary):
        value = _eval(node.operand, ctx, scope, depth)
        if node.op == "not":
            return not truthy(value)
        if value is None:
            return None
        return -to_number(value, "-")

    if isinstance(node, Binary):
        if node.op == "and":
            return truthy(_eval(node.left, ctx, scope, depth)) and truthy(
                _eval(node.right, ctx, scope, depth)
            )
        if node.op == "or":
            return truthy(_eval(node.left, ctx, scope, depth)) or truthy(
                _eval(node.right, ctx, scope, depth)
            )
        left = _eval(node.left, ctx, scope, depth)
        right = _eval(node.right, ctx, scope, depth)
        if node.op in COMPARISON_OPS:
            result = compare(node.op, left, right)
            if ctx.predicates is not None:
                ctx.predicates.append(PredicateTrace(node.source(), result))
            return result
        if node.op in ARITHMETIC_OPS:
            return arithmetic(node.op, left, right)
        raise ExpressionEvaluationError(f"unknown operator {node.op!r}")

    if isinstance(node, Call):
        args = [_eval(arg, ctx, scope, depth) for arg in node.args]
        return _call(node.name, args, ctx, depth)

    if isinstance(node, Member):
        target = _eval(node.target, ctx, scope, depth)
        return normalize(resolve_path(target, (node.name,)))

    if isinstance(node, Index):
        target = _eval(node.target, ctx, scope, depth)
        key = _eval(node.index, ctx, scope, depth)
        if target is None or key is None:
            return None
        if isinstance(target, (list, tuple, str)):
            position = int(to_number(key, "index"))
            if -len(target) <= position < len(target):
                return normalize(target[position])
            return None
        if isinstance(target, Mapping):
            return normalize(target.get(to_text(key)))
        raise ExpressionEvaluationError(f"cannot index {type(target).__name__}")

    raise ExpressionEvaluationError(f"unsupported node {type(node).__name__}")


def _call(name: str, args: list[Any], ctx: EvaluationContext, depth: int) -> Any:
    user = ctx.functions.get(name)
    if user is not None:
        if depth + 1 > MAX_CALL_DEPTH:
            raise ExpressionEvaluationError(
                f"maximum call depth {MAX_CALL_DEPTH} exceeded in {name}()"
            )
        if len(args) != len(user.parameters):
            raise ExpressionEvaluationError(
                f"{name}() takes {len(user.parameters)} argument(s), got {len(args)}"
            )
        scope: dict[str, Any] = {}
        for (param, type_name), value in zip(user.parameters, args):
            if not check_type(value, type_name):
                raise ExpressionEvaluationError(
                    f"{name}(): parameter {param} expects {type_name}, got {_type_name(value)}"
                )
            scope[param] = value
        result = _eval(user.body, ctx, scope, depth + 1)
        if not check_type(result, user.return_type):
            raise ExpressionEvaluationError(
                f"{name}() must return {user.return_type}, got {_type_name(result)}"
            )
        return result

    spec = BUILTINS.get(name)
    if spec is None:
        raise ExpressionEvaluationError(f"unknown function {name}()")
    if not spec.accepts(len(args)):
        raise ExpressionEvaluationError(f"{name}() called with {len(args)} argument(s)")
    if spec.uses_clock:
        return normalize(spec.impl(ctx.now))
    return normalize(spec.impl(*args))


def check_type(value: Any, type_name: str) -> bool:
    if value is None or type_name == "any":
        return True
    if type_name == "number":
        return is_number(value)
    if type_name == "string":
        return isinstance(value, str)
    if type_name == "boolean":
        return isinstance(value, bool)
    if type_name == "date":
        return isinstance(value, date)
    if type_name == "list":
        return isinstance(value, list)
    if type_name == "object":
        return isinstance(value, Mapping)
    return False


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, date):
        return "date"
    if isinstance(value, list):
        return "list"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def values_equal(left: Any, right: Any) -> bool:
    left, right = normalize(left), normalize(right)
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, date) and isinstance(right, str) or isinstance(right, date) and isinstance(left, str):
        try:
            return to_date(left) == to_date(right)
        except ExpressionEvaluationError:
            return False
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    return left == right


def _ordered_pair(op: str, left: Any, right: Any) -> tuple[Any, Any]:
    if is_number(left) and is_number(right):
        return left, right
    if isinstance(left, date) or isinstance(right, date):
        if isinstance(left, datetime) and isinstance(right, datetime):
            return _as_utc(left, right), _as_utc(right, left)
        return to_date(left, op), to_date(right, op)
    if isinstance(left, str) and isinstance(right, str):
        return left, right
    raise ExpressionEvaluationError(
        f"cannot compare {_type_name(left)} {op} {_type_name(right)}"
    )


def _as_utc(value: datetime, other: datetime) -> datetime:
    # naive values are read as UTC when compared against aware ones
    if value.tzinfo is None and other.tzinfo is not None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compare(op: str, left: Any, right: Any) -> bool:
    if op == "=":
        return values_equal(left, right)
    if op == "!=":
        return not values_equal(left, right)
    if op in ("in", "not in"):
        found = _membership(left, right)
        return found if op == "in" else not found
    if op == "matches":
        if left is None or right is None:
            return False
        try:
            return re.search(to_text(right), to_text(left)) is not None
        except re.error as exc:
            raise ExpressionEvaluationError(f"invalid pattern {right!r}: {exc}") from exc

    if left is None or right is None:
        return False
    a, b = _ordered_pair(op, left, right)
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    raise ExpressionEvaluationError(f"unknown comparison {op!r}")


def _membership(item: Any, container: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, (list, tuple)):
        return any(values_equal(item, candidate) for candidate in container)
    if isinstance(container, str):
        return item is not None and to_text(item) in container
    if isinstance(container, Mapping):
        return to_text(item) in container
    raise ExpressionEvaluationError(f"'in' needs a list, text or object, got {_type_name(container)}")


def arithmetic(op: str, left: Any, right: Any) -> Any:
    if left is None or right is None:
        return None
    if op == "+":
        if isinstance(left, str) or isinstance(right, str):
            return to_text(left) + to_text(right)
        if isinstance(left, list) and isinstance(right, list):
            return left + right
        if isinstance(left, date) and is_number(right):
            return left + timedelta(days=int(right))
    if op == "-":
        if isinstance(left, date) and isinstance(right, date):
            return Decimal((to_date(left) - to_date(right)).days)
        if isinstance(left, date) and is_number(right):
            return left - timedelta(days=int(right))

    a = to_number(left, op)
    b = to_number(right, op)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if b == 0:
        raise ExpressionEvaluationError("division by zero")
    if op == "/":
        return a / b
    return a % b


def trace_snapshot(ctx: EvaluationContext) -> list[dict[str, Any]]:
    """The recorded predicates in JSON-friendly form."""
    if not ctx.predicates:
        return []
    return [
        {"expression": p.expression, "value": to_plain(p.value)}
        for p in ctx.predicates
    ]
