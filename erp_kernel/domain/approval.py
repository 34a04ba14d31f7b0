"""
Approval domain vocabulary -- enums, transition table, level specs and DTOs.

Architecture position:
    Kernel > Domain -- pure value objects consumed by the approval engine
    (erp_engines.approval) and ApprovalService.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID


class ApprovalPolicy(str, Enum):
    ANY_APPROVER = "AnyApprover"
    ALL_APPROVERS = "AllApprovers"
    SEQUENTIAL = "Sequential"


class ApproverSelector(str, Enum):
    ROLE = "Role"
    DEPARTMENT = "Department"
    SUPERVISOR = "Supervisor"
    AMOUNT_BASED = "AmountBased"
    SPECIFIC_USER = "SpecificUser"


class ApprovalWorkflowStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class ApprovalRequestStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    ESCALATED = "Escalated"


class ApprovalAction(str, Enum):
    APPROVED = "Approved"
    REJECTED = "Rejected"
    DELEGATED = "Delegated"
    RETURNED_FOR_INFO = "ReturnedForInfo"


REQUEST_TRANSITIONS: dict[ApprovalRequestStatus, frozenset[ApprovalRequestStatus]] = {
    ApprovalRequestStatus.PENDING: frozenset(
        {
            ApprovalRequestStatus.APPROVED,
            ApprovalRequestStatus.REJECTED,
            ApprovalRequestStatus.CANCELLED,
            ApprovalRequestStatus.ESCALATED,
        }
    ),
    ApprovalRequestStatus.ESCALATED: frozenset(
        {
            ApprovalRequestStatus.PENDING,
            ApprovalRequestStatus.APPROVED,
            ApprovalRequestStatus.REJECTED,
            ApprovalRequestStatus.CANCELLED,
        }
    ),
    ApprovalRequestStatus.APPROVED: frozenset(),
    ApprovalRequestStatus.REJECTED: frozenset(),
    ApprovalRequestStatus.CANCELLED: frozenset(),
}

OPEN_REQUEST_STATUSES = frozenset(
    {ApprovalRequestStatus.PENDING, ApprovalRequestStatus.ESCALATED}
)


# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class LevelSpec:
    """
    One requested approval level.

    Which of role / department / approver_ids is read depends on selector.
    """

    selector: ApproverSelector
    name: str = ""
    role: str | None = None
    department: str | None = None
    approver_ids: tuple[UUID, ...] = ()
    min_approvers: int = 1
    skip_if_approved_above: bool = False
    due_hours: int | None = None
    escalation_target_id: UUID | None = None


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class ApprovalLevelInfo:
    ordinal: int
    selector: ApproverSelector
    name: str = ""
    role: str | None = None
    department: str | None = None
    approver_ids: tuple[UUID, ...] = ()
    min_approvers: int = 1
    skip_if_approved_above: bool = False
    due_hours: int | None = None
    escalation_target_id: UUID | None = None


@dataclass(frozen=True)
class ApprovalWorkflowInfo:
    id: UUID
    code: str
    name: str
    document_kind: str
    policy: ApprovalPolicy
    levels: tuple[ApprovalLevelInfo, ...]
    status: ApprovalWorkflowStatus = ApprovalWorkflowStatus.ACTIVE
    min_amount: int | None = None
    max_amount: int | None = None
    auto_approve_below: int | None = None
    allow_delegation: bool = True
    require_comments: bool = False

    def level(self, ordinal: int) -> ApprovalLevelInfo | None:
        for level in self.levels:
            if level.ordinal == ordinal:
                return level
        return None

    def next_level(self, ordinal: int) -> ApprovalLevelInfo | None:
        later = [lvl for lvl in self.levels if lvl.ordinal > ordinal]
        return min(later, key=lambda lvl: lvl.ordinal) if later else None

    def covers_amount(self, amount: int) -> bool:
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True


@dataclass(frozen=True)
class ApprovalRecordInfo:
    level: int
    approver_id: UUID
    action: ApprovalAction
    decided_at: datetime
    comment: str | None = None
    delegated_to_id: UUID | None = None


@dataclass(frozen=True)
class ApprovalRequestInfo:
    id: UUID
    request_number: str
    workflow_id: UUID
    document_kind: str
    document_id: UUID
    requester_id: UUID
    amount: int
    currency: str
    status: ApprovalRequestStatus
    current_level: int | None
    records: tuple[ApprovalRecordInfo, ...] = ()
    document_number: str | None = None
    due_at: datetime | None = None
    escalated_to_id: UUID | None = None
    approved_by_id: UUID | None = None
    rejected_by_id: UUID | None = None
    decided_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_REQUEST_STATUSES


@dataclass(frozen=True)
class PendingSummary:
    """Open requests an approver can act on, aggregated by document kind."""

    approver_id: UUID
    pending_count: int
    total_amount: int
    overdue_count: int
    by_document_kind: dict[str, tuple[int, int]] = field(default_factory=dict)
