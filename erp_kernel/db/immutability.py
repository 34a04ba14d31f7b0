"""
ORM-level immutability enforcement.

SQLAlchemy fires ``before_update`` / ``before_delete`` mapper events before
SQL reaches the database.  The listeners registered here raise
ImmutabilityViolationError and abort the flush when code tries to change a
record that must never change:

    Entity              | When immutable
    --------------------|------------------------------------------
    ApprovalRecord      | Always (append-only decision trail)
    CreditTransaction   | Always (append-only exposure ledger)
    RuleExecution       | Always (append-only audit trail)
    JournalEntry        | Once status is Posted or Void
    JournalLine         | Once the parent entry is Posted or Void

Audit fields (updated_at, updated_by_id) remain writable on finalized rows.
"""

from typing import Any, Callable, Iterable

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from erp_kernel.exceptions import ImmutabilityViolationError
from erp_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})


def _blocked(entity_type: str, target: Any, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def protect_append_only(model: type, entity_type: str) -> None:
    """Forbid every UPDATE and DELETE of ``model`` rows."""

    @event.listens_for(model, "before_update")
    def _prevent_update(mapper, connection, target):
        _blocked(entity_type, target, "UPDATE", f"{entity_type} records are append-only")

    @event.listens_for(model, "before_delete")
    def _prevent_delete(mapper, connection, target):
        _blocked(entity_type, target, "DELETE", f"{entity_type} records cannot be deleted")


def protect_finalized(
    model: type,
    entity_type: str,
    final_statuses: Iterable[Any],
    status_attr: str = "status",
) -> None:
    """
    Forbid changes to ``model`` rows once their status is final.

    The transition INTO a final status is allowed (that is the finalizing
    write); any later change of a non-audit field, or a delete, is blocked.
    """
    finals = frozenset(final_statuses)

    @event.listens_for(model, "before_update")
    def _check_update(mapper, connection, target):
        history = get_history(target, status_attr)
        if history.deleted:
            was_final = history.deleted[0] in finals
        elif not history.added:
            was_final = getattr(target, status_attr) in finals
        else:
            was_final = False
        if not was_final:
            return
        for attr in inspect(target).attrs:
            if attr.key in _AUDIT_FIELDS:
                continue
            if attr.history.has_changes():
                _blocked(
                    entity_type,
                    target,
                    "UPDATE",
                    f"Cannot modify field '{attr.key}' on finalized {entity_type}",
                )

    @event.listens_for(model, "before_delete")
    def _check_delete(mapper, connection, target):
        if getattr(target, status_attr) in finals:
            _blocked(entity_type, target, "DELETE", f"Finalized {entity_type} cannot be deleted")


def protect_children_of_finalized(
    model: type,
    entity_type: str,
    parent_is_final: Callable[[Any], bool],
) -> None:
    """Forbid changes to child rows whose parent is finalized."""

    @event.listens_for(model, "before_update")
    def _check_update(mapper, connection, target):
        if parent_is_final(target):
            _blocked(entity_type, target, "UPDATE", f"Parent of {entity_type} is finalized")

    @event.listens_for(model, "before_delete")
    def _check_delete(mapper, connection, target):
        if parent_is_final(target):
            _blocked(entity_type, target, "DELETE", f"Parent of {entity_type} is finalized")
