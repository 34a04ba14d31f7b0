"""
RuleService -- stateful orchestration of the rule engine.

Responsibility:
    Stores business rules, rule sets, decision tables, variables and user
    functions; evaluates rules and rule sets against entities; looks up
    decision tables; and records every evaluation as a RuleExecution.

Architecture position:
    Services -- imperative shell around the pure rule engine in
    erp_engines.rules (parser, evaluator, actions, decision_table).  This
    service compiles stored JSON, builds the EvaluationContext from the
    injected Clock and the stored variables/functions, and persists the
    audit trail.

Invariants enforced:
    - A rule is evaluated only while Active and inside its effective
      window ``[effective_from, effective_to)``; otherwise the execution is
      recorded as Skipped.
    - Condition evaluation errors never propagate: the execution records
      ``error``, matched=false, and no actions fire.
    - An action error halts the rule and leaves the working context as it
      was before the rule ran.
    - In Sequential mode, an action error in a required member (or any
      Validation rule) halts the set.
    - Stored conditions and actions always compile; definitions that do
      not are rejected at create/update time.

Failure modes:
    - RuleNotFoundError / RuleSetNotFoundError / DecisionTableNotFoundError.
    - ExpressionSyntaxError, ValidationError: definitions that do not parse
      or reference unknown functions.
    - UniqueHitPolicyViolationError from ``lookup``.

Audit relevance:
    One RuleExecution row per evaluated rule, holding every predicate the
    condition evaluated, the actions executed and the resulting changes.
"""

from __future__ import annotations

from copy import deepcopy
from datetime import datetime
from typing import Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_engines.rules import (
    BUILTINS,
    VALUE_TYPES,
    ActionOutcome,
    DecisionResult,
    EvaluationContext,
    ExecutionMode,
    ExecutionResult,
    HitPolicy,
    RuleStatus,
    RuleType,
    TableRow,
    UserFunction,
    VariableSource,
    apply_actions,
    compile_actions,
    compile_cell,
    compile_condition,
    holds,
    lookup,
    merge_changes,
    parse_expression,
    resolve_path,
    trace_snapshot,
    validate_expression,
)
from erp_engines.rules.functions import normalize, to_plain
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.pagination import Page, PageRequest
from erp_kernel.exceptions import (
    DecisionTableNotFoundError,
    DuplicateCodeError,
    ErpError,
    RuleActionError,
    RuleNotFoundError,
    RuleSetNotFoundError,
    ValidationError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.selectors.pagination import paginate
from erp_kernel.services.base import BaseService
from erp_kernel.services.event_bus import EventBus
from erp_services._rule_types import (
    DecisionTableInfo,
    MemberSpec,
    RuleEvaluation,
    RuleExecutionInfo,
    RuleFunctionInfo,
    RuleInfo,
    RuleSetInfo,
    RuleSetResult,
    RuleVariableInfo,
)
from erp_services.models.rules import (
    BusinessRule,
    DecisionTable,
    DecisionTableRow,
    RuleExecution,
    RuleFunction,
    RuleSet,
    RuleSetMember,
    RuleVariable,
    RuleVersion,
)

logger = get_logger("services.rules")

_UNCHANGED: Any = object()


class RuleService(BaseService):
    """
    Rule definitions, evaluation and decision-table lookup.

    Contract:
        ``evaluate`` and ``evaluate_set`` never mutate the caller's entity;
        they return the working context with every action applied.

    Guarantees:
        - Exactly one RuleExecution is persisted per rule evaluated.
        - ``emit`` actions publish on the EventBus only after the rule's
          actions all succeeded.

    Non-goals:
        - Writing changes back to the entity's own table; callers apply
          the returned context.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
    ):
        super().__init__(session, clock)
        self._event_bus = event_bus

    # =========================================================================
    # Rules
    # =========================================================================

    def create_rule(
        self,
        code: str,
        name: str,
        entity_kind: str,
        rule_type: RuleType,
        condition: Any,
        actions: Sequence[Mapping[str, Any]],
        *,
        else_actions: Sequence[Mapping[str, Any]] | None = None,
        priority: int = 0,
        effective_from: datetime | None = None,
        effective_to: datetime | None = None,
        status: RuleStatus = RuleStatus.ACTIVE,
        description: str | None = None,
        tags: Sequence[str] = (),
        actor_id: UUID | None = None,
    ) -> RuleInfo:
        """
        Store a rule after checking that its condition and actions compile.

        Raises:
            ValidationError / ExpressionSyntaxError: definition does not
                compile, or the effective window is empty.
            DuplicateCodeError: code already used.
        """
        if not code or not name or not entity_kind:
            raise ValidationError("Rule code, name and entity kind are required")
        self._validate_definition(condition, actions, else_actions)
        self._validate_window(effective_from, effective_to)
        if self._find(BusinessRule, BusinessRule.code, code) is not None:
            raise DuplicateCodeError("BusinessRule", code)

        rule = BusinessRule(
            code=code,
            name=name,
            description=description,
            entity_kind=entity_kind,
            rule_type=rule_type,
            priority=priority,
            effective_from=effective_from,
            effective_to=effective_to,
            condition=condition,
            actions=list(actions or []),
            else_actions=list(else_actions) if else_actions is not None else None,
            tags=list(tags),
            status=status,
            version=1,
        )
        self._stamp_new(rule, actor_id)
        self._session.add(rule)
        self._session.flush()
        self._snapshot_version(rule, "created", actor_id)

        logger.info(
            "rule_created",
            extra={"rule_code": code, "rule_type": rule_type.value, "entity_kind": entity_kind},
        )
        return rule.to_dto()

    def update_rule(
        self,
        rule_ref: str | UUID,
        *,
        condition: Any = _UNCHANGED,
        actions: Any = _UNCHANGED,
        else_actions: Any = _UNCHANGED,
        priority: int | None = None,
        effective_from: Any = _UNCHANGED,
        effective_to: Any = _UNCHANGED,
        name: str | None = None,
        change_reason: str | None = None,
        actor_id: UUID | None = None,
    ) -> RuleInfo:
        """Change a rule's logic; the version is bumped and snapshotted."""
        rule = self._resolve_rule(rule_ref)
        new_condition = rule.condition if condition is _UNCHANGED else condition
        new_actions = rule.actions if actions is _UNCHANGED else list(actions or [])
        new_else = rule.else_actions if else_actions is _UNCHANGED else else_actions
        new_from = rule.effective_from if effective_from is _UNCHANGED else effective_from
        new_to = rule.effective_to if effective_to is _UNCHANGED else effective_to

        self._validate_definition(new_condition, new_actions, new_else)
        self._validate_window(new_from, new_to)

        rule.condition = new_condition
        rule.actions = new_actions
        rule.else_actions = list(new_else) if new_else is not None else None
        rule.effective_from = new_from
        rule.effective_to = new_to
        if priority is not None:
            rule.priority = priority
        if name is not None:
            rule.name = name
        rule.version += 1
        self._stamp_changed(rule, actor_id)
        self._session.flush()
        self._snapshot_version(rule, change_reason, actor_id)

        logger.info("rule_updated", extra={"rule_code": rule.code, "version": rule.version})
        return rule.to_dto()

    def activate_rule(self, rule_ref: str | UUID, actor_id: UUID | None = None) -> RuleInfo:
        return self._set_rule_status(rule_ref, RuleStatus.ACTIVE, actor_id)

    def deactivate_rule(self, rule_ref: str | UUID, actor_id: UUID | None = None) -> RuleInfo:
        return self._set_rule_status(rule_ref, RuleStatus.INACTIVE, actor_id)

    def get_rule(self, rule_ref: str | UUID) -> RuleInfo:
        return self._resolve_rule(rule_ref).to_dto()

    def list_rules(
        self,
        entity_kind: str | None = None,
        status: RuleStatus | None = None,
    ) -> list[RuleInfo]:
        stmt = select(BusinessRule).order_by(BusinessRule.priority.desc(), BusinessRule.code)
        if entity_kind is not None:
            stmt = stmt.where(BusinessRule.entity_kind == entity_kind)
        if status is not None:
            stmt = stmt.where(BusinessRule.status == status)
        return [r.to_dto() for r in self._session.execute(stmt).scalars()]

    def rule_versions(self, rule_ref: str | UUID) -> list[dict[str, Any]]:
        rule = self._resolve_rule(rule_ref)
        rows = self._session.execute(
            select(RuleVersion).where(RuleVersion.rule_id == rule.id).order_by(RuleVersion.version)
        ).scalars()
        return [
            {
                "version": v.version,
                "condition": v.condition,
                "actions": v.actions,
                "else_actions": v.else_actions,
                "change_reason": v.change_reason,
                "created_at": v.created_at,
            }
            for v in rows
        ]

    # =========================================================================
    # Rule sets
    # =========================================================================

    def create_rule_set(
        self,
        code: str,
        name: str,
        entity_kind: str,
        execution_mode: ExecutionMode,
        members: Sequence[MemberSpec | str | UUID] = (),
        actor_id: UUID | None = None,
    ) -> RuleSetInfo:
        """Members run in the order given (sort_order 1..n)."""
        if not code or not name:
            raise ValidationError("Rule set code and name are required")
        if self._find(RuleSet, RuleSet.code, code) is not None:
            raise DuplicateCodeError("RuleSet", code)

        rule_set = RuleSet(
            code=code,
            name=name,
            entity_kind=entity_kind,
            execution_mode=execution_mode,
            status=RuleStatus.ACTIVE,
        )
        self._stamp_new(rule_set, actor_id)
        self._session.add(rule_set)
        seen: set[UUID] = set()
        for sort_order, spec in enumerate(members, start=1):
            if not isinstance(spec, MemberSpec):
                spec = MemberSpec(rule=spec)
            rule = self._resolve_rule(spec.rule)
            if rule.id in seen:
                raise ValidationError(f"Rule {rule.code} appears twice in rule set {code}")
            seen.add(rule.id)
            member = RuleSetMember(rule_id=rule.id, sort_order=sort_order, is_required=spec.is_required)
            member.rule = rule
            self._stamp_new(member, actor_id)
            rule_set.members.append(member)
        self._session.flush()

        logger.info(
            "rule_set_created",
            extra={"rule_set_code": code, "mode": execution_mode.value, "member_count": len(seen)},
        )
        return rule_set.to_dto()

    def add_rule_to_set(
        self,
        rule_set_ref: str | UUID,
        rule_ref: str | UUID,
        *,
        is_required: bool = False,
        sort_order: int | None = None,
        actor_id: UUID | None = None,
    ) -> RuleSetInfo:
        rule_set = self._resolve_rule_set(rule_set_ref)
        rule = self._resolve_rule(rule_ref)
        if any(m.rule_id == rule.id for m in rule_set.members):
            raise ValidationError(f"Rule {rule.code} is already in rule set {rule_set.code}")
        if sort_order is None:
            sort_order = max((m.sort_order for m in rule_set.members), default=0) + 1
        member = RuleSetMember(rule_id=rule.id, sort_order=sort_order, is_required=is_required)
        member.rule = rule
        self._stamp_new(member, actor_id)
        rule_set.members.append(member)
        self._session.flush()
        return rule_set.to_dto()

    def get_rule_set(self, rule_set_ref: str | UUID) -> RuleSetInfo:
        return self._resolve_rule_set(rule_set_ref).to_dto()

    # =========================================================================
    # Variables and functions
    # =========================================================================

    def define_variable(
        self,
        name: str,
        source: VariableSource,
        *,
        data_type: str = "any",
        default_value: Any = None,
        context_path: str | None = None,
        description: str | None = None,
        actor_id: UUID | None = None,
    ) -> RuleVariableInfo:
        """
        Declare ``$name``.  Static variables always yield ``default_value``;
        Context variables read ``context_path`` from the entity and fall
        back to ``default_value`` when the path is absent.
        """
        if not name or not name.isidentifier():
            raise ValidationError(f"Invalid variable name: {name!r}")
        if data_type not in VALUE_TYPES:
            raise ValidationError(f"Unknown data type {data_type!r}")
        if source == VariableSource.CONTEXT and not context_path:
            raise ValidationError("A Context variable needs a context_path")
        if self._find(RuleVariable, RuleVariable.name, name) is not None:
            raise DuplicateCodeError("RuleVariable", name)

        variable = RuleVariable(
            name=name,
            description=description,
            data_type=data_type,
            source=source,
            default_value=to_plain(default_value),
            context_path=context_path,
        )
        self._stamp_new(variable, actor_id)
        self._session.add(variable)
        self._session.flush()
        logger.info("rule_variable_defined", extra={"variable": name, "source": source.value})
        return variable.to_dto()

    def define_function(
        self,
        name: str,
        parameters: Sequence[tuple[str, str]],
        body: str,
        *,
        return_type: str = "any",
        description: str | None = None,
        actor_id: UUID | None = None,
    ) -> RuleFunctionInfo:
        """
        Declare a user function.  Parameters are ``(name, type)`` pairs and
        are referenced in the body as ``$name``.

        Raises:
            ValidationError: bad name, shadowed built-in, unknown type, or a
                body that references undeclared parameters or functions.
            ExpressionSyntaxError: body does not parse.
        """
        name = (name or "").lower()
        if not name.isidentifier():
            raise ValidationError(f"Invalid function name: {name!r}")
        if name in BUILTINS:
            raise ValidationError(f"{name}() is a built-in function")
        if return_type not in VALUE_TYPES:
            raise ValidationError(f"Unknown return type {return_type!r}")
        params: list[list[str]] = []
        for param_name, type_name in parameters:
            if not param_name.isidentifier():
                raise ValidationError(f"Invalid parameter name: {param_name!r}")
            if type_name not in VALUE_TYPES:
                raise ValidationError(f"Unknown parameter type {type_name!r}")
            params.append([param_name, type_name])

        node = parse_expression(body)
        known_functions = set(self._user_functions()) | {name}
        errors = validate_expression(
            node,
            user_functions=known_functions,
            known_variables={p for p, _ in params} | set(self._variable_names()),
        )
        if errors:
            raise ValidationError(f"Function {name}: " + "; ".join(errors))
        if self._find(RuleFunction, RuleFunction.name, name) is not None:
            raise DuplicateCodeError("RuleFunction", name)

        function = RuleFunction(
            name=name,
            description=description,
            parameters=params,
            return_type=return_type,
            body=body,
        )
        self._stamp_new(function, actor_id)
        self._session.add(function)
        self._session.flush()
        logger.info("rule_function_defined", extra={"function": name, "arity": len(params)})
        return function.to_dto()

    # =========================================================================
    # Decision tables
    # =========================================================================

    def create_decision_table(
        self,
        code: str,
        name: str,
        input_columns: Sequence[str],
        output_columns: Sequence[str],
        hit_policy: HitPolicy,
        *,
        entity_kind: str = "",
        rows: Sequence[Mapping[str, Any]] = (),
        description: str | None = None,
        actor_id: UUID | None = None,
    ) -> DecisionTableInfo:
        """
        Create a table.  Each entry of ``rows`` is a mapping with
        ``inputs``, ``outputs`` and optional ``priority`` / ``description``.
        """
        if not code or not name:
            raise ValidationError("Decision table code and name are required")
        if not input_columns or not output_columns:
            raise ValidationError("A decision table needs input and output columns")
        if len(set(input_columns)) != len(input_columns) or len(set(output_columns)) != len(output_columns):
            raise ValidationError("Decision table column names must be unique")
        if self._find(DecisionTable, DecisionTable.code, code) is not None:
            raise DuplicateCodeError("DecisionTable", code)

        table = DecisionTable(
            code=code,
            name=name,
            description=description,
            entity_kind=entity_kind,
            input_columns=list(input_columns),
            output_columns=list(output_columns),
            hit_policy=hit_policy,
            status=RuleStatus.ACTIVE,
            version=1,
        )
        self._stamp_new(table, actor_id)
        self._session.add(table)
        for row in rows:
            self._append_row(
                table,
                inputs=row.get("inputs", {}),
                outputs=row.get("outputs", {}),
                priority=row.get("priority", 0),
                description=row.get("description"),
                actor_id=actor_id,
            )
        self._session.flush()

        logger.info(
            "decision_table_created",
            extra={"table_code": code, "hit_policy": hit_policy.value, "row_count": len(table.rows)},
        )
        return table.to_dto()

    def add_row(
        self,
        table_ref: str | UUID,
        inputs: Mapping[str, Any],
        outputs: Mapping[str, Any],
        *,
        priority: int = 0,
        description: str | None = None,
        actor_id: UUID | None = None,
    ) -> DecisionTableInfo:
        table = self._resolve_table(table_ref)
        self._append_row(table, inputs, outputs, priority, description, actor_id)
        table.version += 1
        self._stamp_changed(table, actor_id)
        self._session.flush()
        return table.to_dto()

    def get_decision_table(self, table_ref: str | UUID) -> DecisionTableInfo:
        return self._resolve_table(table_ref).to_dto()

    def lookup(self, table_ref: str | UUID, inputs: Mapping[str, Any]) -> DecisionResult:
        """
        Select outputs for ``inputs`` under the table's hit policy.

        Raises:
            UniqueHitPolicyViolationError: more than one row matched a
                Unique table.
        """
        table = self._resolve_table(table_ref)
        unknown = set(inputs) - set(table.input_columns)
        if unknown:
            raise ValidationError(f"Unknown input columns for {table.code}: {sorted(unknown)}")
        ctx = self._context({}, self._clock.now(), trace=False)
        result = lookup(
            table_code=table.code,
            hit_policy=table.hit_policy,
            rows=[
                TableRow(
                    row_number=r.row_number,
                    inputs=r.inputs or {},
                    outputs=r.outputs or {},
                    priority=r.priority,
                    is_active=r.is_active,
                )
                for r in table.rows
            ],
            inputs={k: normalize(v) for k, v in inputs.items()},
            ctx=ctx,
        )
        logger.info(
            "decision_table_lookup",
            extra={"table_code": table.code, "matched_rows": list(result.matched_rows)},
        )
        return result

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(
        self,
        rule_ref: str | UUID,
        entity: Mapping[str, Any],
        *,
        entity_id: UUID | None = None,
    ) -> RuleEvaluation:
        """Evaluate one rule against a copy of ``entity``."""
        rule = self._resolve_rule(rule_ref)
        working = deepcopy(dict(entity))
        now = self._clock.now()
        execution, _ = self._run_rule(rule, working, now, entity_id=entity_id)
        return RuleEvaluation(execution=execution, context=working)

    def evaluate_set(
        self,
        rule_set_ref: str | UUID,
        entity: Mapping[str, Any],
        *,
        entity_id: UUID | None = None,
    ) -> RuleSetResult:
        """
        Run every member of a rule set per its execution mode.

        Sequential and FirstMatch share one working context across rules.
        Parallel evaluates each rule on its own copy of the entity and then
        merges changes in ascending (priority, sort_order), so the highest
        priority writer wins a conflict.
        """
        rule_set = self._resolve_rule_set(rule_set_ref)
        now = self._clock.now()
        mode = rule_set.execution_mode
        executions: list[RuleExecutionInfo] = []
        halted_by: str | None = None

        if mode == ExecutionMode.PARALLEL:
            working = deepcopy(dict(entity))
            merges: list[tuple[int, int, dict[str, Any]]] = []
            for member in rule_set.members:
                scratch = deepcopy(dict(entity))
                execution, outcome = self._run_rule(
                    member.rule, scratch, now, entity_id=entity_id, rule_set_id=rule_set.id
                )
                executions.append(execution)
                if outcome is not None:
                    merges.append((member.rule.priority, member.sort_order, outcome.changes))
            for _, _, changes in sorted(merges, key=lambda m: (m[0], m[1])):
                merge_changes(working, changes)
        else:
            working = deepcopy(dict(entity))
            for member in rule_set.members:
                execution, _ = self._run_rule(
                    member.rule, working, now, entity_id=entity_id, rule_set_id=rule_set.id
                )
                executions.append(execution)
                if mode == ExecutionMode.SEQUENTIAL and execution.result == ExecutionResult.FAILED:
                    if member.is_required or member.rule.rule_type == RuleType.VALIDATION:
                        halted_by = member.rule.code
                        break
                if mode == ExecutionMode.FIRST_MATCH and execution.matched:
                    break

        logger.info(
            "rule_set_evaluated",
            extra={
                "rule_set_code": rule_set.code,
                "mode": mode.value,
                "rules_evaluated": len(executions),
                "halted_by": halted_by,
            },
        )
        return RuleSetResult(
            rule_set_id=rule_set.id,
            rule_set_code=rule_set.code,
            execution_mode=mode,
            executions=tuple(executions),
            context=working,
            halted=halted_by is not None,
            halted_by=halted_by,
        )

    def list_executions(
        self,
        rule_ref: str | UUID | None = None,
        page: PageRequest | None = None,
        *,
        entity_id: UUID | None = None,
    ) -> Page[RuleExecutionInfo]:
        stmt = select(RuleExecution).order_by(
            RuleExecution.triggered_at.desc(), RuleExecution.created_at.desc()
        )
        if rule_ref is not None:
            stmt = stmt.where(RuleExecution.rule_id == self._resolve_rule(rule_ref).id)
        if entity_id is not None:
            stmt = stmt.where(RuleExecution.entity_id == entity_id)
        return paginate(self._session, stmt, page, transform=lambda e: e.to_dto())

    # =========================================================================
    # Internals
    # =========================================================================

    def _run_rule(
        self,
        rule: BusinessRule,
        working: dict[str, Any],
        now: datetime,
        *,
        entity_id: UUID | None = None,
        rule_set_id: UUID | None = None,
    ) -> tuple[RuleExecutionInfo, ActionOutcome | None]:
        started_ms = self._clock.monotonic_ms()
        info = rule.to_dto()
        matched = False
        outcome: ActionOutcome | None = None
        error: str | None = None
        predicates: list[dict[str, Any]] = []

        if rule.status != RuleStatus.ACTIVE or not info.in_effect(now):
            result = ExecutionResult.SKIPPED
        else:
            ctx = self._context(working, now, trace=True)
            try:
                matched = holds(compile_condition(rule.condition), ctx)
            except ErpError as exc:
                error = str(exc)
                result = ExecutionResult.ERROR
                logger.warning(
                    "rule_condition_failed",
                    extra={"rule_code": rule.code, "error_code": exc.code},
                )
            predicates = trace_snapshot(ctx)

            if error is None:
                to_run = rule.actions if matched else rule.else_actions
                scratch = deepcopy(working)
                try:
                    outcome = apply_actions(compile_actions(to_run), scratch, ctx)
                except RuleActionError as exc:
                    error = str(exc)
                    result = ExecutionResult.FAILED
                    logger.warning(
                        "rule_action_failed",
                        extra={"rule_code": rule.code, "action_type": exc.action_type},
                    )
                else:
                    working.clear()
                    working.update(scratch)
                    result = ExecutionResult.MATCHED if matched else ExecutionResult.NOT_MATCHED

        execution = RuleExecution(
            rule_id=rule.id,
            rule_code=rule.code,
            rule_set_id=rule_set_id,
            entity_kind=rule.entity_kind,
            entity_id=entity_id,
            triggered_at=now,
            conditions_evaluated=predicates,
            matched=matched,
            result=result,
            actions_executed=list(outcome.executed) if outcome else [],
            changes=to_plain(outcome.changes) if outcome else {},
            error=error,
            duration_ms=max(0, self._clock.monotonic_ms() - started_ms),
        )
        self._stamp_new(execution)
        self._session.add(execution)
        self._session.flush()

        if outcome is not None and self._event_bus is not None:
            for emitted in outcome.emitted:
                self._event_bus.publish(
                    emitted.topic,
                    {**emitted.payload, "rule_code": rule.code, "execution_id": str(execution.id)},
                )

        logger.info(
            "rule_evaluated",
            extra={
                "rule_code": rule.code,
                "result": result.value,
                "matched": matched,
                "duration_ms": execution.duration_ms,
            },
        )
        if result not in (ExecutionResult.MATCHED, ExecutionResult.NOT_MATCHED):
            outcome = None
        return execution.to_dto(), outcome

    def _context(self, entity: Mapping[str, Any], now: datetime, trace: bool) -> EvaluationContext:
        return EvaluationContext(
            entity=entity,
            variables=self._variables_for(entity),
            functions=self._user_functions(),
            now=now,
            trace=trace,
        )

    def _variables_for(self, entity: Mapping[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for variable in self._session.execute(select(RuleVariable)).scalars():
            value = None
            if variable.source == VariableSource.CONTEXT and variable.context_path:
                value = resolve_path(entity, tuple(variable.context_path.split(".")))
            if value is None:
                value = variable.default_value
            values[variable.name] = normalize(value)
        return values

    def _variable_names(self) -> list[str]:
        return list(self._session.execute(select(RuleVariable.name)).scalars())

    def _user_functions(self) -> dict[str, UserFunction]:
        return {
            f.name: UserFunction(
                name=f.name,
                parameters=tuple((p[0], p[1]) for p in f.parameters or ()),
                body=parse_expression(f.body),
                return_type=f.return_type,
            )
            for f in self._session.execute(select(RuleFunction)).scalars()
        }

    def _validate_definition(self, condition: Any, actions: Any, else_actions: Any) -> None:
        node = compile_condition(condition)
        errors = validate_expression(node, user_functions=self._user_functions())
        try:
            compiled = compile_actions(actions) + compile_actions(else_actions)
        except RuleActionError as exc:
            raise ValidationError(str(exc)) from exc
        for action in compiled:
            if action.expression is not None:
                errors.extend(validate_expression(action.expression, self._user_functions()))
        if errors:
            raise ValidationError("; ".join(errors))

    @staticmethod
    def _validate_window(effective_from: datetime | None, effective_to: datetime | None) -> None:
        if effective_from and effective_to and effective_to <= effective_from:
            raise ValidationError("Rule effective_to must be after effective_from")

    def _append_row(
        self,
        table: DecisionTable,
        inputs: Mapping[str, Any],
        outputs: Mapping[str, Any],
        priority: int,
        description: str | None,
        actor_id: UUID | None,
    ) -> None:
        unknown_in = set(inputs) - set(table.input_columns)
        unknown_out = set(outputs) - set(table.output_columns)
        if unknown_in or unknown_out:
            raise ValidationError(
                f"Row references unknown columns: {sorted(unknown_in | unknown_out)}"
            )
        for cell in inputs.values():
            compile_cell(cell)
        for value in outputs.values():
            if isinstance(value, Mapping) and "expression" in value:
                parse_expression(value["expression"])

        row = DecisionTableRow(
            row_number=max((r.row_number for r in table.rows), default=0) + 1,
            inputs=dict(inputs),
            outputs=dict(outputs),
            priority=priority,
            description=description,
            is_active=True,
        )
        self._stamp_new(row, actor_id)
        table.rows.append(row)

    def _snapshot_version(self, rule: BusinessRule, reason: str | None, actor_id: UUID | None) -> None:
        version = RuleVersion(
            rule_id=rule.id,
            version=rule.version,
            condition=rule.condition,
            actions=rule.actions,
            else_actions=rule.else_actions,
            change_reason=reason,
        )
        self._stamp_new(version, actor_id)
        self._session.add(version)
        self._session.flush()

    def _set_rule_status(self, rule_ref: str | UUID, status: RuleStatus, actor_id: UUID | None) -> RuleInfo:
        rule = self._resolve_rule(rule_ref)
        rule.status = status
        self._stamp_changed(rule, actor_id)
        self._session.flush()
        logger.info("rule_status_changed", extra={"rule_code": rule.code, "status": status.value})
        return rule.to_dto()

    def _find(self, model, column, value):
        return self._session.execute(select(model).where(column == value)).scalar_one_or_none()

    def _resolve_rule(self, ref: str | UUID) -> BusinessRule:
        rule = self._session.get(BusinessRule, ref) if isinstance(ref, UUID) else self._find(
            BusinessRule, BusinessRule.code, ref
        )
        if rule is None:
            raise RuleNotFoundError(ref)
        return rule

    def _resolve_rule_set(self, ref: str | UUID) -> RuleSet:
        rule_set = self._session.get(RuleSet, ref) if isinstance(ref, UUID) else self._find(
            RuleSet, RuleSet.code, ref
        )
        if rule_set is None:
            raise RuleSetNotFoundError(ref)
        return rule_set

    def _resolve_table(self, ref: str | UUID) -> DecisionTable:
        table = self._session.get(DecisionTable, ref) if isinstance(ref, UUID) else self._find(
            DecisionTable, DecisionTable.code, ref
        )
        if table is None:
            raise DecisionTableNotFoundError(ref)
        return table
