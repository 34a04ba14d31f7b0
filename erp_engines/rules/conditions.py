"""
Condition compilation and static validation.

A rule condition is stored as JSON and arrives here in one of two shapes:

    "amount > 1000 and customer.tier in ['Gold', 'Platinum']"

    {"and": [
        {"field": "amount", "operator": "greaterThan", "value": 1000},
        {"field": "customer.tier", "operator": "in", "value": ["Gold", "Platinum"]}
    ]}

Both compile to the same node tree.  Structured leaves may also be
``{"expression": "..."}``.  An empty condition (None, "", {} or []) compiles
to None and always matches.

``validate_expression`` walks a tree and reports unknown functions, wrong
built-in argument counts and unknown variables as a list of messages;
an empty list means the expression is valid.
"""

from __future__ import annotations

from typing import Any, Iterable

from erp_engines.rules.functions import BUILTINS
from erp_engines.rules.nodes import Binary, Call, Field, ListExpr, Literal, Node, Unary, Variable
from erp_engines.rules.parser import parse_expression
from erp_kernel.exceptions import ExpressionSyntaxError

# Structured operator names (and their symbolic spellings) to node builders
_BINARY_OPERATORS = {
    "equals": "=",
    "=": "=",
    "==": "=",
    "notEquals": "!=",
    "!=": "!=",
    "greaterThan": ">",
    ">": ">",
    "greaterThanOrEqual": ">=",
    ">=": ">=",
    "lessThan": "<",
    "<": "<",
    "lessThanOrEqual": "<=",
    "<=": "<=",
    "in": "in",
    "notIn": "not in",
    "not in": "not in",
    "matches": "matches",
}

_FUNCTION_OPERATORS = {
    "contains": ("contains", False),
    "notContains": ("contains", True),
    "startsWith": ("starts_with", False),
    "endsWith": ("ends_with", False),
    "isNull": ("is_null", False),
    "isNotNull": ("is_null", True),
    "isEmpty": ("is_empty", False),
    "isNotEmpty": ("is_empty", True),
}

_UNARY_FUNCTIONS = frozenset({"is_null", "is_empty"})


def compile_condition(condition: Any) -> Node | None:
    """
    Compile a stored condition into a node tree.

    Raises:
        ExpressionSyntaxError: malformed text or an unknown structured shape.
    """
    if condition is None or condition == "" or condition == {} or condition == []:
        return None
    if isinstance(condition, str):
        if not condition.strip():
            return None
        return parse_expression(condition)
    if isinstance(condition, list):
        return _join("and", [compile_condition(c) for c in condition])
    if isinstance(condition, dict):
        return _compile_structured(condition)
    raise ExpressionSyntaxError(str(condition), 0, "condition must be text or an object")


def _compile_structured(node: dict) -> Node | None:
    if "expression" in node:
        return compile_condition(node["expression"])
    if "and" in node:
        return _join("and", [compile_condition(c) for c in _as_list(node["and"])])
    if "or" in node:
        return _join("or", [compile_condition(c) for c in _as_list(node["or"])])
    if "not" in node:
        inner = compile_condition(node["not"])
        return Unary("not", inner if inner is not None else Literal(True))
    if "field" in node and "operator" in node:
        return _compile_leaf(node)
    raise ExpressionSyntaxError(str(node), 0, "unrecognized condition object")


def _compile_leaf(node: dict) -> Node:
    field = Field(tuple(str(node["field"]).split(".")))
    operator = str(node["operator"])
    value = node.get("value")

    if operator in _BINARY_OPERATORS:
        return Binary(_BINARY_OPERATORS[operator], field, _value_node(value))
    if operator in _FUNCTION_OPERATORS:
        fn, negate = _FUNCTION_OPERATORS[operator]
        args = (field,) if fn in _UNARY_FUNCTIONS else (field, _value_node(value))
        call: Node = Call(fn, args)
        return Unary("not", call) if negate else call
    if operator == "between":
        bounds = _as_list(value)
        if len(bounds) != 2:
            raise ExpressionSyntaxError(str(node), 0, "between needs [low, high]")
        return Call("between", (field, _value_node(bounds[0]), _value_node(bounds[1])))
    raise ExpressionSyntaxError(str(node), 0, f"unknown operator {operator!r}")


def _value_node(value: Any) -> Node:
    if isinstance(value, dict) and "expression" in value:
        return parse_expression(value["expression"])
    if isinstance(value, dict) and "variable" in value:
        return Variable(str(value["variable"]))
    if isinstance(value, (list, tuple)):
        return ListExpr(tuple(_value_node(v) for v in value))
    return Literal(value)


def _as_list(value: Any) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _join(op: str, parts: list[Node | None]) -> Node | None:
    present = [p for p in parts if p is not None]
    if not present:
        return None
    node = present[0]
    for part in present[1:]:
        node = Binary(op, node, part)
    return node


def validate_expression(
    node: Node | None,
    user_functions: Iterable[str] = (),
    known_variables: Iterable[str] | None = None,
) -> list[str]:
    """
    Static checks over a compiled tree.

    ``known_variables`` of None skips the variable check (variables may be
    defined after the rule).
    """
    if node is None:
        return []
    errors: list[str] = []
    functions = set(user_functions)
    variables = set(known_variables) if known_variables is not None else None
    for item in node.walk():
        if isinstance(item, Call):
            if item.name in functions:
                continue
            spec = BUILTINS.get(item.name)
            if spec is None:
                errors.append(f"unknown function {item.name}()")
            elif not spec.accepts(len(item.args)):
                errors.append(f"{item.name}() called with {len(item.args)} argument(s)")
        elif isinstance(item, Variable) and variables is not None:
            if item.name not in variables:
                errors.append(f"unknown variable ${item.name}")
    return errors
