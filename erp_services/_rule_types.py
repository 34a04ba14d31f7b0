"""
Frozen DTOs returned by RuleService.

Kept apart from the ORM models so that callers of the rule engine never
hold live Session-bound rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from erp_engines.rules.types import (
    ExecutionMode,
    ExecutionResult,
    HitPolicy,
    RuleStatus,
    RuleType,
    VariableSource,
)


@dataclass(frozen=True)
class RuleInfo:
    id: UUID
    code: str
    name: str
    entity_kind: str
    rule_type: RuleType
    priority: int
    status: RuleStatus
    version: int
    condition: Any
    actions: tuple[dict[str, Any], ...]
    else_actions: tuple[dict[str, Any], ...] | None = None
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    tags: tuple[str, ...] = ()

    def in_effect(self, at: datetime) -> bool:
        if self.effective_from is not None and at < self.effective_from:
            return False
        if self.effective_to is not None and at >= self.effective_to:
            return False
        return True


@dataclass(frozen=True)
class MemberSpec:
    """Rule set membership requested at creation time."""

    rule: str | UUID
    is_required: bool = False


@dataclass(frozen=True)
class RuleSetMemberInfo:
    rule_id: UUID
    rule_code: str
    sort_order: int
    is_required: bool


@dataclass(frozen=True)
class RuleSetInfo:
    id: UUID
    code: str
    name: str
    entity_kind: str
    execution_mode: ExecutionMode
    status: RuleStatus
    members: tuple[RuleSetMemberInfo, ...] = ()


@dataclass(frozen=True)
class DecisionRowInfo:
    row_number: int
    inputs: dict[str, Any]
    outputs: dict[str, Any]
    priority: int = 0
    is_active: bool = True
    description: str | None = None


@dataclass(frozen=True)
class DecisionTableInfo:
    id: UUID
    code: str
    name: str
    input_columns: tuple[str, ...]
    output_columns: tuple[str, ...]
    hit_policy: HitPolicy
    status: RuleStatus
    version: int
    rows: tuple[DecisionRowInfo, ...] = ()


@dataclass(frozen=True)
class RuleVariableInfo:
    id: UUID
    name: str
    data_type: str
    source: VariableSource
    default_value: Any = None
    context_path: str | None = None


@dataclass(frozen=True)
class RuleFunctionInfo:
    id: UUID
    name: str
    parameters: tuple[tuple[str, str], ...]
    body: str
    return_type: str = "any"


@dataclass(frozen=True)
class RuleExecutionInfo:
    """One audited evaluation of a rule against an entity."""

    id: UUID
    rule_id: UUID
    rule_code: str
    entity_kind: str
    entity_id: UUID | None
    triggered_at: datetime
    matched: bool
    result: ExecutionResult
    conditions_evaluated: tuple[dict[str, Any], ...] = ()
    actions_executed: tuple[dict[str, Any], ...] = ()
    changes: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    duration_ms: int = 0
    rule_set_id: UUID | None = None


@dataclass(frozen=True)
class RuleEvaluation:
    """A single rule's execution plus the context it left behind."""

    execution: RuleExecutionInfo
    context: dict[str, Any]

    @property
    def matched(self) -> bool:
        return self.execution.matched


@dataclass(frozen=True)
class RuleSetResult:
    rule_set_id: UUID
    rule_set_code: str
    execution_mode: ExecutionMode
    executions: tuple[RuleExecutionInfo, ...]
    context: dict[str, Any]
    halted: bool = False
    halted_by: str | None = None

    @property
    def matched_rule_codes(self) -> tuple[str, ...]:
        return tuple(e.rule_code for e in self.executions if e.matched)
