"""
SQLAlchemy ORM persistence for the rule engine.

Responsibility
--------------
Business rules and their version history, rule sets and memberships,
decision tables and rows, named variables and user functions, and the
append-only RuleExecution audit log.

Architecture position
---------------------
**Services layer** -- ORM models consumed by ``RuleService``.  Conditions,
actions, table cells and parameter lists are JSON columns parsed on read.

Invariants enforced
-------------------
* Rule, rule set and decision table codes are unique.
* Row numbers are unique within a decision table.
* RuleExecution and RuleVersion are append-only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_engines.rules.types import (
    ExecutionMode,
    ExecutionResult,
    HitPolicy,
    RuleStatus,
    RuleType,
    VariableSource,
)
from erp_kernel.db.base import TrackedBase, UUIDString
from erp_kernel.db.immutability import protect_append_only
from erp_kernel.db.types import EnumText
from erp_services._rule_types import (
    DecisionRowInfo,
    DecisionTableInfo,
    RuleExecutionInfo,
    RuleFunctionInfo,
    RuleInfo,
    RuleSetInfo,
    RuleSetMemberInfo,
    RuleVariableInfo,
)


class BusinessRule(TrackedBase):
    __tablename__ = "rules_business_rules"

    __table_args__ = (
        UniqueConstraint("code", name="uq_rules_rule_code"),
        Index("idx_rules_rule_entity", "entity_kind", "status"),
    )

    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    entity_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_type: Mapped[RuleType] = mapped_column(EnumText(RuleType), nullable=False)
    priority: Mapped[int] = mapped_column(nullable=False, default=0)
    effective_from: Mapped[datetime | None] = mapped_column(nullable=True)
    effective_to: Mapped[datetime | None] = mapped_column(nullable=True)
    condition: Mapped[Any] = mapped_column(JSON, nullable=True)
    actions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    else_actions: Mapped[list | None] = mapped_column(JSON, nullable=True)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[RuleStatus] = mapped_column(
        EnumText(RuleStatus), nullable=False, default=RuleStatus.ACTIVE
    )
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    def to_dto(self) -> RuleInfo:
        return RuleInfo(
            id=self.id,
            code=self.code,
            name=self.name,
            entity_kind=self.entity_kind,
            rule_type=self.rule_type,
            priority=self.priority,
            status=self.status,
            version=self.version,
            condition=self.condition,
            actions=tuple(self.actions or ()),
            else_actions=tuple(self.else_actions) if self.else_actions is not None else None,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            tags=tuple(self.tags or ()),
        )


class RuleVersion(TrackedBase):
    """Snapshot of a rule's logic at each version."""

    __tablename__ = "rules_rule_versions"

    __table_args__ = (
        UniqueConstraint("rule_id", "version", name="uq_rules_rule_version"),
    )

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("rules_business_rules.id"), nullable=False
    )
    version: Mapped[int] = mapped_column(nullable=False)
    condition: Mapped[Any] = mapped_column(JSON, nullable=True)
    actions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    else_actions: Mapped[list | None] = mapped_column(JSON, nullable=True)
    change_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)


class RuleSet(TrackedBase):
    __tablename__ = "rules_rule_sets"

    __table_args__ = (UniqueConstraint("code", name="uq_rules_rule_set_code"),)

    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    entity_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    execution_mode: Mapped[ExecutionMode] = mapped_column(EnumText(ExecutionMode), nullable=False)
    status: Mapped[RuleStatus] = mapped_column(
        EnumText(RuleStatus), nullable=False, default=RuleStatus.ACTIVE
    )

    members: Mapped[list[RuleSetMember]] = relationship(
        back_populates="rule_set",
        order_by="RuleSetMember.sort_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self) -> RuleSetInfo:
        return RuleSetInfo(
            id=self.id,
            code=self.code,
            name=self.name,
            entity_kind=self.entity_kind,
            execution_mode=self.execution_mode,
            status=self.status,
            members=tuple(m.to_dto() for m in self.members),
        )


class RuleSetMember(TrackedBase):
    __tablename__ = "rules_rule_set_members"

    __table_args__ = (
        UniqueConstraint("rule_set_id", "rule_id", name="uq_rules_member_rule"),
    )

    rule_set_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("rules_rule_sets.id"), nullable=False
    )
    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("rules_business_rules.id"), nullable=False
    )
    sort_order: Mapped[int] = mapped_column(nullable=False)
    is_required: Mapped[bool] = mapped_column(nullable=False, default=False)

    rule_set: Mapped[RuleSet] = relationship(back_populates="members")
    rule: Mapped[BusinessRule] = relationship(lazy="selectin")

    def to_dto(self) -> RuleSetMemberInfo:
        return RuleSetMemberInfo(
            rule_id=self.rule_id,
            rule_code=self.rule.code,
            sort_order=self.sort_order,
            is_required=self.is_required,
        )


class DecisionTable(TrackedBase):
    __tablename__ = "rules_decision_tables"

    __table_args__ = (UniqueConstraint("code", name="uq_rules_decision_table_code"),)

    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    entity_kind: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    input_columns: Mapped[list] = mapped_column(JSON, nullable=False)
    output_columns: Mapped[list] = mapped_column(JSON, nullable=False)
    hit_policy: Mapped[HitPolicy] = mapped_column(EnumText(HitPolicy), nullable=False)
    status: Mapped[RuleStatus] = mapped_column(
        EnumText(RuleStatus), nullable=False, default=RuleStatus.ACTIVE
    )
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    rows: Mapped[list[DecisionTableRow]] = relationship(
        back_populates="table",
        order_by="DecisionTableRow.row_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self) -> DecisionTableInfo:
        return DecisionTableInfo(
            id=self.id,
            code=self.code,
            name=self.name,
            input_columns=tuple(self.input_columns),
            output_columns=tuple(self.output_columns),
            hit_policy=self.hit_policy,
            status=self.status,
            version=self.version,
            rows=tuple(r.to_dto() for r in self.rows),
        )


class DecisionTableRow(TrackedBase):
    __tablename__ = "rules_decision_table_rows"

    __table_args__ = (
        UniqueConstraint("table_id", "row_number", name="uq_rules_decision_row_number"),
    )

    table_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("rules_decision_tables.id"), nullable=False
    )
    row_number: Mapped[int] = mapped_column(nullable=False)
    inputs: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    outputs: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)

    table: Mapped[DecisionTable] = relationship(back_populates="rows")

    def to_dto(self) -> DecisionRowInfo:
        return DecisionRowInfo(
            row_number=self.row_number,
            inputs=dict(self.inputs or {}),
            outputs=dict(self.outputs or {}),
            priority=self.priority,
            is_active=self.is_active,
            description=self.description,
        )


class RuleVariable(TrackedBase):
    __tablename__ = "rules_variables"

    __table_args__ = (UniqueConstraint("name", name="uq_rules_variable_name"),)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    data_type: Mapped[str] = mapped_column(String(20), nullable=False, default="any")
    source: Mapped[VariableSource] = mapped_column(EnumText(VariableSource), nullable=False)
    default_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    context_path: Mapped[str | None] = mapped_column(String(200), nullable=True)

    def to_dto(self) -> RuleVariableInfo:
        return RuleVariableInfo(
            id=self.id,
            name=self.name,
            data_type=self.data_type,
            source=self.source,
            default_value=self.default_value,
            context_path=self.context_path,
        )


class RuleFunction(TrackedBase):
    __tablename__ = "rules_functions"

    __table_args__ = (UniqueConstraint("name", name="uq_rules_function_name"),)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # [[param_name, type_name], ...]
    parameters: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    return_type: Mapped[str] = mapped_column(String(20), nullable=False, default="any")
    body: Mapped[str] = mapped_column(Text, nullable=False)

    def to_dto(self) -> RuleFunctionInfo:
        return RuleFunctionInfo(
            id=self.id,
            name=self.name,
            parameters=tuple((p[0], p[1]) for p in self.parameters or ()),
            body=self.body,
            return_type=self.return_type,
        )


class RuleExecution(TrackedBase):
    """
    Audit record of one rule evaluation.

    Guarantees:
        - Append-only.
        - ``conditions_evaluated`` holds every comparison evaluated, with
          its result, in evaluation order.
    """

    __tablename__ = "rules_executions"

    __table_args__ = (
        Index("idx_rules_execution_rule", "rule_id", "triggered_at"),
        Index("idx_rules_execution_entity", "entity_kind", "entity_id"),
    )

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("rules_business_rules.id"), nullable=False
    )
    rule_code: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_set_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    entity_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    triggered_at: Mapped[datetime] = mapped_column(nullable=False)
    conditions_evaluated: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    matched: Mapped[bool] = mapped_column(nullable=False)
    result: Mapped[ExecutionResult] = mapped_column(EnumText(ExecutionResult), nullable=False)
    actions_executed: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    changes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    error: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    duration_ms: Mapped[int] = mapped_column(nullable=False, default=0)

    def to_dto(self) -> RuleExecutionInfo:
        return RuleExecutionInfo(
            id=self.id,
            rule_id=self.rule_id,
            rule_code=self.rule_code,
            entity_kind=self.entity_kind,
            entity_id=self.entity_id,
            triggered_at=self.triggered_at,
            matched=self.matched,
            result=self.result,
            conditions_evaluated=tuple(self.conditions_evaluated or ()),
            actions_executed=tuple(self.actions_executed or ()),
            changes=dict(self.changes or {}),
            error=self.error,
            duration_ms=self.duration_ms,
            rule_set_id=self.rule_set_id,
        )


protect_append_only(RuleExecution, "RuleExecution")
protect_append_only(RuleVersion, "RuleVersion")
