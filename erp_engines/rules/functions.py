"""
Built-in function library and value coercions for the rule language.

Every built-in is pure.  ``today()`` and ``now()`` read the evaluation
instant carried by the EvaluationContext, never the wall clock.

Numbers are normalized to Decimal on entry so that ``0.1 + 0.2 = 0.3``
holds and integer fields compare equal to decimal literals.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Callable
from uuid import UUID

from erp_kernel.exceptions import ExpressionEvaluationError


# =============================================================================
# Coercions
# =============================================================================


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def normalize(value: Any) -> Any:
    """Canonical runtime form: numbers become Decimal, tuples become lists."""
    if is_number(value):
        return value if isinstance(value, Decimal) else Decimal(str(value))
    if isinstance(value, tuple):
        return [normalize(v) for v in value]
    return value


def to_number(value: Any, fn: str = "") -> Decimal:
    if is_number(value):
        return normalize(value)
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise ExpressionEvaluationError(f"{fn or 'number'}: {value!r} is not a number") from exc
    raise ExpressionEvaluationError(f"{fn or 'number'}: expected a number, got {type(value).__name__}")


def to_date(value: Any, fn: str = "") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            if "T" in value or " " in value.strip():
                return datetime.fromisoformat(value.strip()).date()
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise ExpressionEvaluationError(f"{fn or 'date'}: {value!r} is not an ISO date") from exc
    raise ExpressionEvaluationError(f"{fn or 'date'}: expected a date, got {type(value).__name__}")


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value == value.to_integral() else str(value)
    return str(value)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def to_plain(value: Any) -> Any:
    """JSON-friendly form of a runtime value (for logs and execution records)."""
    if isinstance(value, Decimal):
        if value == value.to_integral():
            return int(value)
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    return value


# =============================================================================
# Built-ins
# =============================================================================


def _len(value):
    if value is None:
        return Decimal(0)
    if isinstance(value, (str, list, tuple, dict)):
        return Decimal(len(value))
    raise ExpressionEvaluationError(f"len: unsupported {type(value).__name__}")


def _contains(container, item):
    if container is None:
        return False
    if isinstance(container, str):
        return to_text(item) in container
    if isinstance(container, (list, tuple)):
        return normalize(item) in [normalize(v) for v in container]
    if isinstance(container, dict):
        return item in container
    raise ExpressionEvaluationError(f"contains: unsupported {type(container).__name__}")


def _substring(value, start, length=None):
    text = to_text(value)
    begin = int(to_number(start, "substring"))
    if length is None:
        return text[begin:]
    return text[begin : begin + int(to_number(length, "substring"))]


def _round(value, places=0):
    exponent = Decimal(1).scaleb(-int(to_number(places, "round")))
    return to_number(value, "round").quantize(exponent, rounding=ROUND_HALF_EVEN)


def _flatten(args):
    if len(args) == 1 and isinstance(args[0], (list, tuple)):
        return list(args[0])
    return list(args)


def _min(*args):
    values = [to_number(v, "min") for v in _flatten(args) if v is not None]
    if not values:
        return None
    return min(values)


def _max(*args):
    values = [to_number(v, "max") for v in _flatten(args) if v is not None]
    if not values:
        return None
    return max(values)


def _sum(*args):
    return sum((to_number(v, "sum") for v in _flatten(args) if v is not None), Decimal(0))


def _coalesce(*args):
    for value in args:
        if value is not None:
            return value
    return None


def _between(value, low, high):
    if value is None:
        return False
    if isinstance(value, (date, datetime)) or isinstance(low, (date, datetime)):
        return to_date(low) <= to_date(value) <= to_date(high)
    number = to_number(value, "between")
    return to_number(low, "between") <= number <= to_number(high, "between")


def _days_between(start, end):
    return Decimal((to_date(end, "days_between") - to_date(start, "days_between")).days)


def _add_days(value, days):
    return to_date(value, "add_days") + timedelta(days=int(to_number(days, "add_days")))


def _iif(condition, when_true, when_false):
    return when_true if condition else when_false


@dataclass(frozen=True)
class FunctionSpec:
    """A built-in: its implementation and accepted argument counts."""

    name: str
    impl: Callable[..., Any]
    min_args: int
    max_args: int | None
    uses_clock: bool = False

    def accepts(self, count: int) -> bool:
        return count >= self.min_args and (self.max_args is None or count <= self.max_args)


BUILTINS: dict[str, FunctionSpec] = {
    spec.name: spec
    for spec in (
        FunctionSpec("len", _len, 1, 1),
        FunctionSpec("lower", lambda v: to_text(v).lower(), 1, 1),
        FunctionSpec("upper", lambda v: to_text(v).upper(), 1, 1),
        FunctionSpec("trim", lambda v: to_text(v).strip(), 1, 1),
        FunctionSpec("contains", _contains, 2, 2),
        FunctionSpec("starts_with", lambda v, p: to_text(v).startswith(to_text(p)), 2, 2),
        FunctionSpec("ends_with", lambda v, s: to_text(v).endswith(to_text(s)), 2, 2),
        FunctionSpec("concat", lambda *a: "".join(to_text(v) for v in a), 0, None),
        FunctionSpec("substring", _substring, 2, 3),
        FunctionSpec("string", to_text, 1, 1),
        FunctionSpec("number", lambda v: to_number(v, "number"), 1, 1),
        FunctionSpec("abs", lambda v: abs(to_number(v, "abs")), 1, 1),
        FunctionSpec("round", _round, 1, 2),
        FunctionSpec("floor", lambda v: Decimal(math.floor(to_number(v, "floor"))), 1, 1),
        FunctionSpec("ceil", lambda v: Decimal(math.ceil(to_number(v, "ceil"))), 1, 1),
        FunctionSpec("min", _min, 1, None),
        FunctionSpec("max", _max, 1, None),
        FunctionSpec("sum", _sum, 1, None),
        FunctionSpec("coalesce", _coalesce, 1, None),
        FunctionSpec("is_null", lambda v: v is None, 1, 1),
        FunctionSpec("is_empty", is_empty, 1, 1),
        FunctionSpec("between", _between, 3, 3),
        FunctionSpec("iif", _iif, 3, 3),
        FunctionSpec("date", lambda v: to_date(v, "date"), 1, 1),
        FunctionSpec("year", lambda v: Decimal(to_date(v, "year").year), 1, 1),
        FunctionSpec("month", lambda v: Decimal(to_date(v, "month").month), 1, 1),
        FunctionSpec("day", lambda v: Decimal(to_date(v, "day").day), 1, 1),
        FunctionSpec("days_between", _days_between, 2, 2),
        FunctionSpec("add_days", _add_days, 2, 2),
        FunctionSpec("today", lambda now: now.date(), 0, 0, uses_clock=True),
        FunctionSpec("now", lambda now: now, 0, 0, uses_clock=True),
    )
}
