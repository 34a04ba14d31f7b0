"""
Rule expression language, actions and decision tables.

Usage:
    from erp_engines.rules import EvaluationContext, compile_condition, holds

    node = compile_condition("order.total > 1000 and customer.tier = 'Gold'")
    holds(node, EvaluationContext(entity={"order": {...}, "customer": {...}}))
"""

from erp_engines.rules.actions import CompiledAction, apply_actions, compile_actions, merge_changes
from erp_engines.rules.conditions import compile_condition, validate_expression
from erp_engines.rules.decision_table import TableRow, compile_cell, lookup
from erp_engines.rules.evaluator import (
    MAX_CALL_DEPTH,
    EvaluationContext,
    UserFunction,
    evaluate,
    holds,
    resolve_path,
    trace_snapshot,
)
from erp_engines.rules.functions import BUILTINS
from erp_engines.rules.parser import parse_expression, tokenize
from erp_engines.rules.types import (
    VALUE_TYPES,
    ActionOutcome,
    DecisionResult,
    EmittedEvent,
    ExecutionMode,
    ExecutionResult,
    HitPolicy,
    RuleStatus,
    RuleType,
    VariableSource,
)

__all__ = [
    "BUILTINS",
    "ActionOutcome",
    "CompiledAction",
    "DecisionResult",
    "EmittedEvent",
    "EvaluationContext",
    "ExecutionMode",
    "ExecutionResult",
    "HitPolicy",
    "MAX_CALL_DEPTH",
    "RuleStatus",
    "RuleType",
    "TableRow",
    "UserFunction",
    "VALUE_TYPES",
    "VariableSource",
    "apply_actions",
    "compile_actions",
    "compile_cell",
    "compile_condition",
    "evaluate",
    "holds",
    "lookup",
    "merge_changes",
    "parse_expression",
    "resolve_path",
    "tokenize",
    "trace_snapshot",
    "validate_expression",
]
