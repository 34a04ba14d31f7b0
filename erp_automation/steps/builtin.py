"""
Built-in workflow steps.

Config values written as ``"$name"`` (or ``"$a.b"``) are read from the
execution variables when the step runs; every other value is literal.
"""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from erp_automation.steps.base import BaseStep, StepContext, StepOutcome
from erp_engines.rules import EvaluationContext, compile_condition, evaluate, resolve_path
from erp_kernel.exceptions import ErpError, StepFailedError
from erp_kernel.logging_config import get_logger

logger = get_logger("automation.steps")


def resolve_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """Substitute ``"$path"`` references from the execution variables."""
    if isinstance(value, str) and value.startswith("$") and len(value) > 1:
        return resolve_path(variables, tuple(value[1:].split(".")))
    if isinstance(value, list):
        return [resolve_value(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: resolve_value(v, variables) for k, v in value.items()}
    return value


class _FormatVariables(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _required(ctx: StepContext, key: str) -> Any:
    value = resolve_value(ctx.config.get(key), ctx.variables)
    if value is None:
        raise StepFailedError(ctx.step.step_id, f"config '{key}' is required")
    return value


def _as_uuid(ctx: StepContext, key: str, value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise StepFailedError(ctx.step.step_id, f"config '{key}' is not a UUID: {value!r}") from None


class LogStep(BaseStep):
    step_type = "log"
    description = "Write a message to the automation log"

    def run(self, ctx: StepContext) -> StepOutcome:
        template = str(ctx.config.get("message", ""))
        message = template.format_map(_FormatVariables(ctx.variables))
        logger.info(
            "workflow_step_log",
            extra={
                "execution_number": ctx.execution_number,
                "step_id": ctx.step.step_id,
                "log_message": message,
            },
        )
        return StepOutcome.complete({"message": message})


class SetVariableStep(BaseStep):
    """
    Assign execution variables.

    Config: ``{"values": {...}}`` for literal (or ``$``-referenced) values,
    and/or ``{"name": "x", "expression": "amount * 2"}`` for a rule
    expression evaluated over the variables.
    """

    step_type = "set_variable"
    description = "Assign one or more execution variables"

    def run(self, ctx: StepContext) -> StepOutcome:
        assigned: dict[str, Any] = {}
        values = ctx.config.get("values") or {}
        if not isinstance(values, Mapping):
            raise StepFailedError(ctx.step.step_id, "config 'values' must be an object")
        for name, value in values.items():
            assigned[name] = resolve_value(value, ctx.variables)

        expression = ctx.config.get("expression")
        if expression is not None:
            name = _required(ctx, "name")
            try:
                node = compile_condition(expression)
                result = evaluate(node, EvaluationContext(entity=ctx.variables, now=ctx.now))
            except ErpError as exc:
                raise StepFailedError(ctx.step.step_id, str(exc)) from exc
            assigned[name] = result

        ctx.variables.update(assigned)
        return StepOutcome.complete(assigned)


class WaitForSignalStep(BaseStep):
    """Suspend until ``signal(token, payload)``; the payload becomes the output."""

    step_type = "wait_for_signal"
    description = "Suspend until an external signal arrives"

    def run(self, ctx: StepContext) -> StepOutcome:
        token = ctx.config.get("token")
        if token:
            token = str(token).format_map(_FormatVariables(ctx.variables))
        return StepOutcome.suspend(token or ctx.default_token())

    def resume(self, ctx: StepContext, payload: Mapping[str, Any]) -> StepOutcome:
        name = ctx.config.get("output_variable")
        if name:
            ctx.variables[name] = dict(payload)
        return StepOutcome.complete(dict(payload))


class EvaluateRuleSetStep(BaseStep):
    """
    Run a rule set over the variables (or one variable holding the entity).

    The rule set's resulting context is written back.  A halted set fails
    the step unless ``fail_on_halt`` is false.
    """

    step_type = "evaluate_rule_set"
    description = "Evaluate a business rule set"

    def run(self, ctx: StepContext) -> StepOutcome:
        if ctx.services.rules is None:
            raise StepFailedError(ctx.step.step_id, "rule engine is not available")
        rule_set = _required(ctx, "rule_set")
        entity_variable = ctx.config.get("entity_variable")
        entity = ctx.variables.get(entity_variable, {}) if entity_variable else dict(ctx.variables)
        if not isinstance(entity, Mapping):
            raise StepFailedError(ctx.step.step_id, f"variable {entity_variable!r} is not an object")

        result = ctx.services.rules(ctx.session).evaluate_set(rule_set, entity)
        if entity_variable:
            ctx.variables[entity_variable] = result.context
        else:
            ctx.variables.update(result.context)

        output = {
            "rule_set": result.rule_set_code,
            "matched": list(result.matched_rule_codes),
            "halted": result.halted,
            "halted_by": result.halted_by,
        }
        if result.halted and ctx.config.get("fail_on_halt", True):
            raise StepFailedError(ctx.step.step_id, f"rule set halted by {result.halted_by}")
        return StepOutcome.complete(output)


class RequestApprovalStep(BaseStep):
    """
    Open an approval request and wait for its outcome.

    Completes immediately when the request is auto-approved; otherwise
    suspends on ``approval:{request_id}``, which the approval events
    signal.  Rejection or cancellation fails the step.
    """

    step_type = "request_approval"
    description = "Request approval for a document and wait for the decision"

    def run(self, ctx: StepContext) -> StepOutcome:
        if ctx.services.approvals is None:
            raise StepFailedError(ctx.step.step_id, "approval engine is not available")
        document_id = _as_uuid(ctx, "document_id", _required(ctx, "document_id"))
        requester_id = _as_uuid(ctx, "requester_id", _required(ctx, "requester_id"))
        amount = _required(ctx, "amount")
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            raise StepFailedError(ctx.step.step_id, f"amount is not an integer: {amount!r}") from None

        request = ctx.services.approvals(ctx.session).start_request(
            document_kind=_required(ctx, "document_kind"),
            document_id=document_id,
            amount=amount,
            currency=resolve_value(ctx.config.get("currency", "USD"), ctx.variables),
            requester_id=requester_id,
            document_number=resolve_value(ctx.config.get("document_number"), ctx.variables),
        )
        ctx.variables[ctx.config.get("output_variable", "approval_request_id")] = str(request.id)
        if request.status.value == "Approved":
            return StepOutcome.complete({"request_id": str(request.id), "status": "Approved"})
        return StepOutcome.suspend(f"approval:{request.id}")

    def resume(self, ctx: StepContext, payload: Mapping[str, Any]) -> StepOutcome:
        status = payload.get("status")
        if status != "Approved":
            raise StepFailedError(ctx.step.step_id, f"approval request {payload.get('request_id')} {status}")
        return StepOutcome.complete({"request_id": payload.get("request_id"), "status": status})


class FailStep(BaseStep):
    step_type = "fail"
    description = "Fail the execution with a message"

    def run(self, ctx: StepContext) -> StepOutcome:
        message = str(ctx.config.get("message", "failed by workflow"))
        raise StepFailedError(ctx.step.step_id, message.format_map(_FormatVariables(ctx.variables)))


BUILTIN_STEPS = (
    LogStep,
    SetVariableStep,
    WaitForSignalStep,
    EvaluateRuleSetStep,
    RequestApprovalStep,
    FailStep,
)

__all__ = [
    "BUILTIN_STEPS",
    "EvaluateRuleSetStep",
    "FailStep",
    "LogStep",
    "RequestApprovalStep",
    "SetVariableStep",
    "WaitForSignalStep",
    "resolve_value",
]
