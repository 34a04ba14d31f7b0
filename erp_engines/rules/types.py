"""
Rule engine vocabulary -- enums and result value objects.

Shared by the pure evaluation modules in erp_engines.rules and by
RuleService, which persists rules, rule sets, decision tables and the
execution log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RuleType(str, Enum):
    VALIDATION = "Validation"
    DERIVATION = "Derivation"
    ELIGIBILITY = "Eligibility"
    PRICING = "Pricing"
    ROUTING = "Routing"


class RuleStatus(str, Enum):
    DRAFT = "Draft"
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    ARCHIVED = "Archived"


class ExecutionMode(str, Enum):
    SEQUENTIAL = "Sequential"
    PARALLEL = "Parallel"
    FIRST_MATCH = "FirstMatch"


class HitPolicy(str, Enum):
    FIRST = "First"
    PRIORITY = "Priority"
    UNIQUE = "Unique"
    ALL = "All"
    ANY = "Any"
    COLLECT = "Collect"


class VariableSource(str, Enum):
    STATIC = "Static"
    CONTEXT = "Context"


class ExecutionResult(str, Enum):
    """Outcome recorded on every RuleExecution."""

    MATCHED = "Matched"
    NOT_MATCHED = "NotMatched"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    ERROR = "Error"


# Value type names accepted for function parameters and variables
VALUE_TYPES = frozenset({"any", "number", "string", "boolean", "date", "list", "object"})


@dataclass(frozen=True)
class PredicateTrace:
    """One comparison evaluated while testing a condition."""

    expression: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"expression": self.expression, "value": self.value}


@dataclass(frozen=True)
class EmittedEvent:
    topic: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionOutcome:
    """What a list of actions did to the working context."""

    executed: tuple[dict[str, Any], ...] = ()
    changes: dict[str, Any] = field(default_factory=dict)
    emitted: tuple[EmittedEvent, ...] = ()


@dataclass(frozen=True)
class DecisionResult:
    """Rows selected by a decision-table lookup and their outputs."""

    table_code: str
    hit_policy: HitPolicy
    outputs: tuple[dict[str, Any], ...] = ()
    matched_rows: tuple[int, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.outputs

    @property
    def first(self) -> dict[str, Any]:
        return dict(self.outputs[0]) if self.outputs else {}

    def value(self, column: str, default: Any = None) -> Any:
        return self.first.get(column, default)
