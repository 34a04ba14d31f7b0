"""
erp_engines.rules.decision_table -- Decision-table matching and hit policies.

Responsibility:
    Decides which rows of a decision table match a set of inputs and
    combines their outputs according to the table's hit policy.

Cell syntax (one cell per input column):
    - ``"*"``, ``"-"``, ``""`` or a missing cell: matches anything.
    - A cell beginning with a comparison (``">1000"``, ``"<= 5"``,
      ``"!= 'Closed'"``, ``"in ['A', 'B']"``, ``"not in [...]"``,
      ``"matches '^EU'"``): the input is the left operand.
    - ``"[a..b]"`` / ``"(a..b)"``: inclusive / exclusive numeric range.
    - A JSON list: the input must equal one of the items.
    - Anything else: the input must equal the cell.

Output cells are literals, or ``{"expression": "..."}`` evaluated with the
inputs as fields.

Hit policies:
    - First: the first matching row in row order.
    - Priority: the matching row with the highest ``priority``; ties go to
      the earlier row.
    - Unique: at most one row may match (UniqueHitPolicyViolationError).
    - Any: the first matching row in row order.
    - All / Collect: every matching row, in row order.

Invariants enforced:
    - Deterministic: identical inputs always select identical rows.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from erp_engines.rules.evaluator import EvaluationContext, evaluate, holds
from erp_engines.rules.functions import to_plain
from erp_engines.rules.nodes import Binary, Literal, Node, Variable
from erp_engines.rules.parser import parse_expression
from erp_engines.rules.types import DecisionResult, HitPolicy
from erp_engines.tracer import traced_engine
from erp_kernel.exceptions import UniqueHitPolicyViolationError

WILDCARDS = frozenset({"*", "-", ""})

_OPERATOR_PREFIX = re.compile(r"^\s*(<=|>=|!=|<>|==|=|<|>|≤|≥|≠|not\s+in\b|in\b|matches\b)", re.IGNORECASE)
_RANGE = re.compile(r"^\s*([\[\(])\s*(.+?)\s*\.\.\s*(.+?)\s*([\]\)])\s*$")

_INPUT = "input"


@dataclass(frozen=True)
class TableRow:
    row_number: int
    inputs: Mapping[str, Any] = field(default_factory=dict)
    outputs: Mapping[str, Any] = field(default_factory=dict)
    priority: int = 0
    is_active: bool = True


def compile_cell(cell: Any) -> Node | None:
    """Compile one input cell to a test over ``$input``; None matches anything."""
    if cell is None:
        return None
    if isinstance(cell, str):
        text = cell.strip()
        if text in WILDCARDS:
            return None
        if _OPERATOR_PREFIX.match(text):
            return parse_expression(f"${_INPUT} {text}")
        ranged = _RANGE.match(text)
        if ranged:
            low_op = ">=" if ranged.group(1) == "[" else ">"
            high_op = "<=" if ranged.group(4) == "]" else "<"
            low = parse_expression(ranged.group(2))
            high = parse_expression(ranged.group(3))
            return Binary(
                "and",
                Binary(low_op, Variable(_INPUT), low),
                Binary(high_op, Variable(_INPUT), high),
            )
        return Binary("=", Variable(_INPUT), Literal(cell))
    if isinstance(cell, (list, tuple)):
        return Binary("in", Variable(_INPUT), Literal(list(cell)))
    return Binary("=", Variable(_INPUT), Literal(cell))


def row_matches(row: TableRow, inputs: Mapping[str, Any], ctx: EvaluationContext) -> bool:
    for column, cell in row.inputs.items():
        test = compile_cell(cell)
        if test is None:
            continue
        cell_ctx = EvaluationContext(
            entity=inputs,
            variables={**ctx.variables, _INPUT: inputs.get(column)},
            functions=ctx.functions,
            now=ctx.now,
        )
        if not holds(test, cell_ctx):
            return False
    return True


def render_outputs(row: TableRow, inputs: Mapping[str, Any], ctx: EvaluationContext) -> dict[str, Any]:
    rendered: dict[str, Any] = {}
    for column, value in row.outputs.items():
        if isinstance(value, Mapping) and "expression" in value:
            rendered[column] = to_plain(
                evaluate(parse_expression(value["expression"]), ctx.with_entity(inputs))
            )
        else:
            rendered[column] = value
    return rendered


@traced_engine("decision_table", "1.0", fingerprint_fields=("table_code", "hit_policy", "inputs"))
def lookup(
    *,
    table_code: str,
    hit_policy: HitPolicy,
    rows: Sequence[TableRow],
    inputs: Mapping[str, Any],
    ctx: EvaluationContext | None = None,
) -> DecisionResult:
    """Select rows for ``inputs`` under ``hit_policy``."""
    ctx = ctx or EvaluationContext()
    ordered = sorted((r for r in rows if r.is_active), key=lambda r: r.row_number)
    matched = [row for row in ordered if row_matches(row, inputs, ctx)]

    if hit_policy == HitPolicy.UNIQUE and len(matched) > 1:
        raise UniqueHitPolicyViolationError(table_code, [r.row_number for r in matched])

    if hit_policy in (HitPolicy.ALL, HitPolicy.COLLECT):
        selected = matched
    elif hit_policy == HitPolicy.PRIORITY:
        selected = []
        for row in matched:
            if not selected or row.priority > selected[0].priority:
                selected = [row]
    else:
        selected = matched[:1]

    return DecisionResult(
        table_code=table_code,
        hit_policy=hit_policy,
        outputs=tuple(render_outputs(row, inputs, ctx) for row in selected),
        matched_rows=tuple(row.row_number for row in selected),
    )

