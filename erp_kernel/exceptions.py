"""
Typed Exception Hierarchy for the ERP engines.

===============================================================================
ERROR KINDS
===============================================================================

Every error raised by an engine belongs to exactly one kind.  The kind is
what callers (and the HTTP handler layer) dispatch on; the ``code`` is the
stable machine identifier surfaced in error payloads.

    Kind          | Meaning                                  | HTTP
    --------------|------------------------------------------|-----
    NotFound      | Referenced entity does not exist         | 404
    Validation    | Malformed input (UUID, date, enum, ...)  | 400
    BusinessRule  | Domain invariant violated                | 422
    Conflict      | Optimistic concurrency / uniqueness race | 409
    Unauthorized  | Caller lacks the required capability     | 401
    Dependency    | Store or external system unavailable     | 503

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ErpError (base)
    |
    +-- NotFoundError
    |   +-- AccountNotFoundError, FiscalYearNotFoundError, PeriodNotFoundError
    |   +-- JournalEntryNotFoundError, RecurringJournalNotFoundError
    |   +-- ApprovalWorkflowNotFoundError, ApprovalRequestNotFoundError
    |   +-- RuleNotFoundError, RuleSetNotFoundError, DecisionTableNotFoundError
    |   +-- AutomationWorkflowNotFoundError, ExecutionNotFoundError,
    |   |   ScheduledJobNotFoundError, WebhookEndpointNotFoundError
    |   +-- ValuationNotFoundError, CostAdjustmentNotFoundError
    |   +-- CreditProfileNotFoundError, CreditHoldNotFoundError,
    |       CreditAlertNotFoundError
    |
    +-- ValidationError
    |   +-- InvalidEnumValueError, InvalidCurrencyError, InvalidPaginationError
    |   +-- ConfigurationError, ExpressionSyntaxError, InvalidCronExpressionError
    |   +-- CommentRequiredError, InvalidWorkflowDefinitionError,
    |       StepNotRegisteredError, InvalidQuantityError
    |
    +-- BusinessRuleError
    |   +-- DuplicateCodeError, AccountHierarchyCycleError, AccountInactiveError
    |   +-- UnbalancedEntryError, InvalidJournalLineError, EmptyEntryError
    |   +-- EntryNotDraftError, EntryNotPostedError, EntryAlreadyReversedError
    |   +-- PeriodLockedError, NoPeriodForDateError, FiscalYearOverlapError, ...
    |   +-- NoApplicableWorkflowError, ApprovalRequestClosedError, ...
    |   +-- ExpressionEvaluationError, RuleActionError,
    |   |   UniqueHitPolicyViolationError
    |   +-- WorkflowNotActiveError, InvalidExecutionTransitionError, StepFailedError
    |   +-- InsufficientInventoryError, AdjustmentNotDraftError
    |   +-- CreditLimitExceededError, CreditHoldActiveError, HoldNotActiveError
    |   +-- ImmutabilityViolationError
    |
    +-- ConflictError
    |   +-- ConcurrencyConflictError, LeaseLostError
    |
    +-- UnauthorizedError
    |   +-- UnauthorizedApproverError, CancellationNotPermittedError,
    |       PrivilegeRequiredError
    |
    +-- DependencyError
        +-- StoreUnavailableError, EventDeliveryError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. CATCH BY KIND OR BY TYPE (never by message):

    try:
        ledger.post_entry(entry_id, actor_id=actor)
    except UnbalancedEntryError as e:
        return {"error": e.code, "debits": e.debits, "credits": e.credits}
    except BusinessRuleError as e:
        return error_payload(e), e.kind.http_status

2. ONLY TRANSIENT ERRORS ARE RETRIED:

    run_with_retry(lambda: ..., policy)  # retries Dependency + Conflict races

===============================================================================
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Error taxonomy shared by every engine."""

    NOT_FOUND = "NotFound"
    VALIDATION = "Validation"
    BUSINESS_RULE = "BusinessRule"
    CONFLICT = "Conflict"
    UNAUTHORIZED = "Unauthorized"
    DEPENDENCY = "Dependency"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.BUSINESS_RULE: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.DEPENDENCY: 503,
}


class ErpError(Exception):
    """
    Base exception for all ERP engine errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification and a ``kind`` placing them in the error taxonomy.
    """

    code: str = "ERP_ERROR"
    kind: ErrorKind = ErrorKind.BUSINESS_RULE


def error_payload(exc: ErpError) -> dict[str, Any]:
    """Render an engine error as the handler-layer payload."""
    return {"code": exc.code, "kind": exc.kind.value, "message": str(exc)}


# =============================================================================
# Kind bases
# =============================================================================


class NotFoundError(ErpError):
    """Referenced entity does not exist."""

    code: str = "NOT_FOUND"
    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(f"{entity_type} not found: {entity_id}")


class ValidationError(ErpError):
    """Malformed input."""

    code: str = "VALIDATION_ERROR"
    kind = ErrorKind.VALIDATION


class BusinessRuleError(ErpError):
    """Domain invariant violated."""

    code: str = "BUSINESS_RULE_VIOLATION"
    kind = ErrorKind.BUSINESS_RULE


class ConflictError(ErpError):
    """Optimistic concurrency or uniqueness race."""

    code: str = "CONFLICT"
    kind = ErrorKind.CONFLICT


class UnauthorizedError(ErpError):
    """Caller lacks the capability required."""

    code: str = "UNAUTHORIZED"
    kind = ErrorKind.UNAUTHORIZED


class DependencyError(ErpError):
    """Store or external system unavailable."""

    code: str = "DEPENDENCY_UNAVAILABLE"
    kind = ErrorKind.DEPENDENCY


# =============================================================================
# Substrate
# =============================================================================


class InvalidEnumValueError(ValidationError):
    code: str = "INVALID_ENUM_VALUE"

    def __init__(self, enum_name: str, value: Any):
        self.enum_name = enum_name
        self.value = value
        super().__init__(f"Unknown {enum_name} value: {value!r}")


class InvalidCurrencyError(ValidationError):
    """Currency code is not a valid ISO 4217 code."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: Any):
        self.currency = currency
        super().__init__(f"Invalid ISO 4217 currency code: {currency!r}")


class InvalidPaginationError(ValidationError):
    code: str = "INVALID_PAGINATION"

    def __init__(self, page: Any, per_page: Any):
        self.page = page
        self.per_page = per_page
        super().__init__(f"Invalid pagination: page={page}, per_page={per_page}")


class InvalidQuantityError(ValidationError):
    code: str = "INVALID_QUANTITY"

    def __init__(self, quantity: Any, reason: str = "must be positive"):
        self.quantity = str(quantity)
        self.reason = reason
        super().__init__(f"Invalid quantity {quantity}: {reason}")


class ConfigurationError(ValidationError):
    """Configuration file or value is invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class DuplicateCodeError(BusinessRuleError):
    """An entity with the same unique code already exists."""

    code: str = "DUPLICATE_CODE"

    def __init__(self, entity_type: str, value: str):
        self.entity_type = entity_type
        self.value = value
        super().__init__(f"{entity_type} with code '{value}' already exists")


class ImmutabilityViolationError(BusinessRuleError):
    """Attempt to modify or delete an append-only / finalized record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


class ConcurrencyConflictError(ConflictError):
    """A concurrent writer won a uniqueness or version race."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: Any, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}: {reason}"
        )


class StoreUnavailableError(DependencyError):
    code: str = "STORE_UNAVAILABLE"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store unavailable during {operation}: {reason}")


class EventDeliveryError(DependencyError):
    """An EventBus subscriber failed while handling an event."""

    code: str = "EVENT_DELIVERY_FAILED"

    def __init__(self, topic: str, handler: str, reason: str):
        self.topic = topic
        self.handler = handler
        self.reason = reason
        super().__init__(
            f"Subscriber {handler} failed on '{topic}': {reason}"
        )


class PrivilegeRequiredError(UnauthorizedError):
    code: str = "PRIVILEGE_REQUIRED"

    def __init__(self, actor_id: Any, operation: str):
        self.actor_id = str(actor_id)
        self.operation = operation
        super().__init__(f"Actor {actor_id} is not privileged to {operation}")


# =============================================================================
# Ledger
# =============================================================================


class AccountNotFoundError(NotFoundError):
    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_ref: Any):
        super().__init__("Account", account_ref)


class AccountHierarchyCycleError(BusinessRuleError):
    """Assigning the parent would make the account its own ancestor."""

    code: str = "ACCOUNT_HIERARCHY_CYCLE"

    def __init__(self, account_code: str, parent_code: str):
        self.account_code = account_code
        self.parent_code = parent_code
        super().__init__(
            f"Account {account_code} cannot have parent {parent_code}: "
            "cyclic hierarchy"
        )


class AccountInactiveError(BusinessRuleError):
    code: str = "ACCOUNT_INACTIVE"

    def __init__(self, account_code: str, lifecycle: str):
        self.account_code = account_code
        self.lifecycle = lifecycle
        super().__init__(f"Account {account_code} is {lifecycle}")


class FiscalYearNotFoundError(NotFoundError):
    code: str = "FISCAL_YEAR_NOT_FOUND"

    def __init__(self, fiscal_year_id: Any):
        super().__init__("FiscalYear", fiscal_year_id)


class FiscalYearOverlapError(BusinessRuleError):
    code: str = "FISCAL_YEAR_OVERLAP"

    def __init__(self, name: str, existing_name: str):
        self.name = name
        self.existing_name = existing_name
        super().__init__(
            f"Fiscal year {name} overlaps existing fiscal year {existing_name}"
        )


class FiscalYearNotClosableError(BusinessRuleError):
    code: str = "FISCAL_YEAR_NOT_CLOSABLE"

    def __init__(self, name: str, open_periods: list[str]):
        self.name = name
        self.open_periods = open_periods
        super().__init__(
            f"Fiscal year {name} has periods not hard-closed: "
            f"{', '.join(open_periods)}"
        )


class PeriodNotFoundError(NotFoundError):
    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, period_id: Any):
        super().__init__("AccountingPeriod", period_id)


class NoPeriodForDateError(BusinessRuleError):
    """No accounting period covers the effective date."""

    code: str = "NO_PERIOD_FOR_DATE"

    def __init__(self, effective_date: Any):
        self.effective_date = str(effective_date)
        super().__init__(f"No accounting period covers {effective_date}")


class PeriodLockedError(BusinessRuleError):
    """The period lock forbids the requested mutation."""

    code: str = "PERIOD_LOCKED"

    def __init__(self, period_name: str, lock: str, effective_date: Any = None):
        self.period_name = period_name
        self.lock = lock
        self.effective_date = str(effective_date) if effective_date else None
        super().__init__(f"Period {period_name} is {lock}")


class InvalidPeriodTransitionError(BusinessRuleError):
    code: str = "INVALID_PERIOD_TRANSITION"

    def __init__(self, period_name: str, from_lock: str, to_lock: str):
        self.period_name = period_name
        self.from_lock = from_lock
        self.to_lock = to_lock
        super().__init__(
            f"Period {period_name} cannot move from {from_lock} to {to_lock}"
        )


class PeriodHasDraftEntriesError(BusinessRuleError):
    code: str = "PERIOD_HAS_DRAFT_ENTRIES"

    def __init__(self, period_name: str, draft_count: int):
        self.period_name = period_name
        self.draft_count = draft_count
        super().__init__(
            f"Period {period_name} has {draft_count} draft journal entries"
        )


class JournalEntryNotFoundError(NotFoundError):
    code: str = "JOURNAL_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: Any):
        super().__init__("JournalEntry", entry_id)


class RecurringJournalNotFoundError(NotFoundError):
    code: str = "RECURRING_JOURNAL_NOT_FOUND"

    def __init__(self, journal_id: Any):
        super().__init__("RecurringJournal", journal_id)


class UnbalancedEntryError(BusinessRuleError):
    """Journal entry debits do not equal credits."""

    code: str = "UNBALANCED_ENTRY"

    def __init__(self, debits: int, credits: int):
        self.debits = debits
        self.credits = credits
        super().__init__(
            f"Journal entry is unbalanced: debits={debits}, credits={credits}"
        )


class InvalidJournalLineError(BusinessRuleError):
    code: str = "INVALID_JOURNAL_LINE"

    def __init__(self, line_number: int, reason: str):
        self.line_number = line_number
        self.reason = reason
        super().__init__(f"Journal line {line_number}: {reason}")


class EmptyEntryError(BusinessRuleError):
    code: str = "EMPTY_ENTRY"

    def __init__(self, entry_id: Any = None):
        self.entry_id = str(entry_id) if entry_id else None
        super().__init__("Journal entry has no lines")


class EntryNotDraftError(BusinessRuleError):
    code: str = "ENTRY_NOT_DRAFT"

    def __init__(self, entry_id: Any, status: str):
        self.entry_id = str(entry_id)
        self.status = status
        super().__init__(f"Journal entry {entry_id} is {status}, not Draft")


class EntryNotPostedError(BusinessRuleError):
    code: str = "ENTRY_NOT_POSTED"

    def __init__(self, entry_id: Any, status: str):
        self.entry_id = str(entry_id)
        self.status = status
        super().__init__(
            f"Journal entry {entry_id} is {status}; only Posted entries reverse"
        )


class EntryAlreadyReversedError(BusinessRuleError):
    code: str = "ENTRY_ALREADY_REVERSED"

    def __init__(self, entry_id: Any, reversal_id: Any):
        self.entry_id = str(entry_id)
        self.reversal_id = str(reversal_id)
        super().__init__(
            f"Journal entry {entry_id} already reversed by {reversal_id}"
        )


# =============================================================================
# Approval
# =============================================================================


class ApprovalWorkflowNotFoundError(NotFoundError):
    code: str = "APPROVAL_WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_ref: Any):
        super().__init__("ApprovalWorkflow", workflow_ref)


class ApprovalRequestNotFoundError(NotFoundError):
    code: str = "APPROVAL_REQUEST_NOT_FOUND"

    def __init__(self, request_id: Any):
        super().__init__("ApprovalRequest", request_id)


class InvalidWorkflowDefinitionError(ValidationError):
    code: str = "INVALID_WORKFLOW_DEFINITION"

    def __init__(self, workflow_code: str, reason: str):
        self.workflow_code = workflow_code
        self.reason = reason
        super().__init__(f"Workflow {workflow_code}: {reason}")


class NoApplicableWorkflowError(BusinessRuleError):
    code: str = "NO_APPLICABLE_WORKFLOW"

    def __init__(self, document_kind: str, amount: int):
        self.document_kind = document_kind
        self.amount = amount
        super().__init__(
            f"No active approval workflow for {document_kind} amount {amount}"
        )


class ApprovalRequestClosedError(BusinessRuleError):
    """The request is in a terminal state."""

    code: str = "APPROVAL_REQUEST_CLOSED"

    def __init__(self, request_id: Any, status: str):
        self.request_id = str(request_id)
        self.status = status
        super().__init__(f"Approval request {request_id} is {status}")


class UnauthorizedApproverError(UnauthorizedError):
    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, request_id: Any, approver_id: Any, level: int | None):
        self.request_id = str(request_id)
        self.approver_id = str(approver_id)
        self.level = level
        super().__init__(
            f"Actor {approver_id} is not an eligible approver at level "
            f"{level} of request {request_id}"
        )


class CancellationNotPermittedError(UnauthorizedError):
    code: str = "CANCELLATION_NOT_PERMITTED"

    def __init__(self, request_id: Any, actor_id: Any):
        self.request_id = str(request_id)
        self.actor_id = str(actor_id)
        super().__init__(
            f"Actor {actor_id} may not cancel approval request {request_id}"
        )


class CommentRequiredError(ValidationError):
    code: str = "COMMENT_REQUIRED"

    def __init__(self, request_id: Any):
        self.request_id = str(request_id)
        super().__init__(f"A comment is required to decide request {request_id}")


class DelegationNotAllowedError(BusinessRuleError):
    code: str = "DELEGATION_NOT_ALLOWED"

    def __init__(self, workflow_code: str):
        self.workflow_code = workflow_code
        super().__init__(f"Workflow {workflow_code} does not allow delegation")


class DuplicateDecisionError(BusinessRuleError):
    code: str = "DUPLICATE_DECISION"

    def __init__(self, request_id: Any, approver_id: Any, level: int):
        self.request_id = str(request_id)
        self.approver_id = str(approver_id)
        self.level = level
        super().__init__(
            f"Approver {approver_id} already decided level {level} "
            f"of request {request_id}"
        )


# =============================================================================
# Rules
# =============================================================================


class RuleNotFoundError(NotFoundError):
    code: str = "RULE_NOT_FOUND"

    def __init__(self, rule_ref: Any):
        super().__init__("BusinessRule", rule_ref)


class RuleSetNotFoundError(NotFoundError):
    code: str = "RULE_SET_NOT_FOUND"

    def __init__(self, rule_set_ref: Any):
        super().__init__("RuleSet", rule_set_ref)


class DecisionTableNotFoundError(NotFoundError):
    code: str = "DECISION_TABLE_NOT_FOUND"

    def __init__(self, table_ref: Any):
        super().__init__("DecisionTable", table_ref)


class ExpressionSyntaxError(ValidationError):
    """Expression text does not conform to the rule grammar."""

    code: str = "EXPRESSION_SYNTAX"

    def __init__(self, expression: str, position: int, reason: str):
        self.expression = expression
        self.position = position
        self.reason = reason
        super().__init__(f"{reason} at position {position} in {expression!r}")


class ExpressionEvaluationError(BusinessRuleError):
    code: str = "EXPRESSION_EVALUATION"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class RuleActionError(BusinessRuleError):
    """A rule action failed, or a ``fail`` action was fired."""

    code: str = "RULE_ACTION_FAILED"

    def __init__(self, action_type: str, reason: str):
        self.action_type = action_type
        self.reason = reason
        super().__init__(f"Action {action_type} failed: {reason}")


class UniqueHitPolicyViolationError(BusinessRuleError):
    code: str = "UNIQUE_HIT_POLICY_VIOLATION"

    def __init__(self, table_code: str, row_numbers: list[int]):
        self.table_code = table_code
        self.row_numbers = row_numbers
        super().__init__(
            f"Decision table {table_code} has multiple matching rows "
            f"{row_numbers} under Unique hit policy"
        )


# =============================================================================
# Automation
# =============================================================================


class AutomationWorkflowNotFoundError(NotFoundError):
    code: str = "AUTOMATION_WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_ref: Any):
        super().__init__("AutomationWorkflow", workflow_ref)


class ExecutionNotFoundError(NotFoundError):
    code: str = "EXECUTION_NOT_FOUND"

    def __init__(self, execution_ref: Any):
        super().__init__("WorkflowExecution", execution_ref)


class ScheduledJobNotFoundError(NotFoundError):
    code: str = "SCHEDULED_JOB_NOT_FOUND"

    def __init__(self, job_id: Any):
        super().__init__("ScheduledJob", job_id)


class WebhookEndpointNotFoundError(NotFoundError):
    code: str = "WEBHOOK_ENDPOINT_NOT_FOUND"

    def __init__(self, endpoint_ref: Any):
        super().__init__("WebhookEndpoint", endpoint_ref)


class WorkflowNotActiveError(BusinessRuleError):
    code: str = "WORKFLOW_NOT_ACTIVE"

    def __init__(self, workflow_code: str, status: str):
        self.workflow_code = workflow_code
        self.status = status
        super().__init__(f"Workflow {workflow_code} is {status}, not Active")


class InvalidWorkflowTransitionError(BusinessRuleError):
    code: str = "INVALID_WORKFLOW_TRANSITION"

    def __init__(self, workflow_code: str, from_status: str, to_status: str):
        self.workflow_code = workflow_code
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Workflow {workflow_code} cannot move from {from_status} "
            f"to {to_status}"
        )


class InvalidExecutionTransitionError(BusinessRuleError):
    code: str = "INVALID_EXECUTION_TRANSITION"

    def __init__(self, execution_id: Any, from_status: str, to_status: str):
        self.execution_id = str(execution_id)
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Execution {execution_id} cannot move from {from_status} "
            f"to {to_status}"
        )


class LeaseLostError(ConflictError):
    """Another worker owns the execution lease."""

    code: str = "LEASE_LOST"

    def __init__(self, execution_id: Any, worker_id: str):
        self.execution_id = str(execution_id)
        self.worker_id = worker_id
        super().__init__(
            f"Worker {worker_id} does not hold the lease on execution "
            f"{execution_id}"
        )


class StepNotRegisteredError(ValidationError):
    code: str = "STEP_NOT_REGISTERED"

    def __init__(self, step_type: str):
        self.step_type = step_type
        super().__init__(f"No step handler registered for type: {step_type}")


class StepFailedError(BusinessRuleError):
    """Raised by step handlers to fail the current step."""

    code: str = "STEP_FAILED"

    def __init__(self, step_id: str, reason: str):
        self.step_id = step_id
        self.reason = reason
        super().__init__(f"Step {step_id} failed: {reason}")


class InvalidCronExpressionError(ValidationError):
    code: str = "INVALID_CRON_EXPRESSION"

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid schedule {expression!r}: {reason}")


# =============================================================================
# Costing
# =============================================================================


class ValuationNotFoundError(NotFoundError):
    code: str = "VALUATION_NOT_FOUND"

    def __init__(self, product_id: Any, warehouse_id: Any):
        self.product_id = str(product_id)
        self.warehouse_id = str(warehouse_id)
        super().__init__("ProductValuation", f"{product_id}@{warehouse_id}")


class CostAdjustmentNotFoundError(NotFoundError):
    code: str = "COST_ADJUSTMENT_NOT_FOUND"

    def __init__(self, adjustment_id: Any):
        super().__init__("CostAdjustment", adjustment_id)


class InsufficientInventoryError(BusinessRuleError):
    code: str = "INSUFFICIENT_INVENTORY"

    def __init__(self, product_id: Any, warehouse_id: Any, requested: Any, available: Any):
        self.product_id = str(product_id)
        self.warehouse_id = str(warehouse_id)
        self.requested = str(requested)
        self.available = str(available)
        super().__init__(
            f"Insufficient inventory for {product_id}@{warehouse_id}: "
            f"requested {requested}, available {available}"
        )


class ValuationInUseError(BusinessRuleError):
    code: str = "VALUATION_IN_USE"

    def __init__(self, product_id: Any, warehouse_id: Any, quantity: Any):
        self.product_id = str(product_id)
        self.warehouse_id = str(warehouse_id)
        self.quantity = str(quantity)
        super().__init__(
            f"Valuation {product_id}@{warehouse_id} holds {quantity} on hand; "
            "its method cannot change"
        )


class AdjustmentNotDraftError(BusinessRuleError):
    code: str = "ADJUSTMENT_NOT_DRAFT"

    def __init__(self, adjustment_id: Any, status: str):
        self.adjustment_id = str(adjustment_id)
        self.status = status
        super().__init__(f"Cost adjustment {adjustment_id} is {status}, not Draft")


# =============================================================================
# Credit
# =============================================================================


class CreditProfileNotFoundError(NotFoundError):
    code: str = "CREDIT_PROFILE_NOT_FOUND"

    def __init__(self, customer_id: Any):
        super().__init__("CustomerCreditProfile", customer_id)


class CreditHoldNotFoundError(NotFoundError):
    code: str = "CREDIT_HOLD_NOT_FOUND"

    def __init__(self, hold_id: Any):
        super().__init__("CreditHold", hold_id)


class CreditAlertNotFoundError(NotFoundError):
    code: str = "CREDIT_ALERT_NOT_FOUND"

    def __init__(self, alert_id: Any):
        super().__init__("CreditAlert", alert_id)


class HoldNotActiveError(BusinessRuleError):
    code: str = "HOLD_NOT_ACTIVE"

    def __init__(self, hold_id: Any, status: str):
        self.hold_id = str(hold_id)
        self.status = status
        super().__init__(f"Credit hold {hold_id} is {status}, not Active")


class CreditHoldActiveError(BusinessRuleError):
    code: str = "CREDIT_HOLD_ACTIVE"

    def __init__(self, customer_id: Any, hold_id: Any):
        self.customer_id = str(customer_id)
        self.hold_id = str(hold_id)
        super().__init__(f"Customer {customer_id} is on credit hold {hold_id}")


class CreditLimitExceededError(BusinessRuleError):
    code: str = "CREDIT_LIMIT_EXCEEDED"

    def __init__(self, customer_id: Any, requested: int, available: int):
        self.customer_id = str(customer_id)
        self.requested = requested
        self.available = available
        super().__init__(
            f"Customer {customer_id} credit exceeded: requested {requested}, "
            f"available {available}"
        )
