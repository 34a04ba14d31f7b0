"""
Domain events -- topic names and the immutable event envelope.

Every engine publishes through the EventBus using the topics declared here;
the automation engine subscribes to them for EventDriven workflows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping
from uuid import UUID


class Topics:
    """Well-known EventBus topics and their payload key fields."""

    # entry_id, date, total_amount
    LEDGER_ENTRY_POSTED = "ledger.entry.posted"

    # request_id, document_kind, document_id
    APPROVAL_APPROVED = "approval.request.approved"
    APPROVAL_REJECTED = "approval.request.rejected"
    APPROVAL_CANCELLED = "approval.request.cancelled"

    # product_id, warehouse_id, quantity, unit_cost
    INVENTORY_RECEIPT = "inventory.receipt"
    INVENTORY_ISSUE = "inventory.issue"

    # customer_id, hold_id
    CREDIT_HOLD_PLACED = "credit.hold.placed"
    CREDIT_HOLD_RELEASED = "credit.hold.released"

    # execution_id, workflow_id, status
    EXECUTION_COMPLETED = "automation.execution.completed"
    EXECUTION_FAILED = "automation.execution.failed"


def topic_matches(pattern: str, topic: str) -> bool:
    """``"approval.*"`` matches every topic under ``approval.``; ``"*"`` matches all."""
    if pattern == "*" or pattern == topic:
        return True
    if pattern.endswith(".*"):
        return topic.startswith(pattern[:-1])
    return False


@dataclass(frozen=True)
class DomainEvent:
    """An immutable published event."""

    event_id: UUID
    topic: str
    occurred_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)
