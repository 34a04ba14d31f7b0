"""
Module: erp_kernel.models.approval
Responsibility: ORM persistence for approval workflows, their levels,
    approval requests and the append-only decision trail.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - ApprovalWorkflow.code is unique.
    - Level ordinals are unique within a workflow (1..n).
    - ApprovalRecord is append-only (UPDATE and DELETE raise
      ImmutabilityViolationError).
    - Cross-engine references (document_id, requester and approver ids)
      are plain UUIDs without foreign keys.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_kernel.db.base import TrackedBase, UUIDString
from erp_kernel.db.immutability import protect_append_only
from erp_kernel.db.types import EnumText, MinorUnits
from erp_kernel.domain.approval import (
    ApprovalAction,
    ApprovalLevelInfo,
    ApprovalPolicy,
    ApprovalRecordInfo,
    ApprovalRequestInfo,
    ApprovalRequestStatus,
    ApprovalWorkflowInfo,
    ApprovalWorkflowStatus,
    ApproverSelector,
)


class ApprovalWorkflow(TrackedBase):
    __tablename__ = "approval_workflows"

    __table_args__ = (
        UniqueConstraint("code", name="uq_approval_workflow_code"),
        Index("idx_approval_workflow_kind", "document_kind", "status"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    document_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    policy: Mapped[ApprovalPolicy] = mapped_column(EnumText(ApprovalPolicy), nullable=False)
    min_amount: Mapped[MinorUnits | None] = mapped_column(nullable=True)
    max_amount: Mapped[MinorUnits | None] = mapped_column(nullable=True)
    auto_approve_below: Mapped[MinorUnits | None] = mapped_column(nullable=True)
    allow_delegation: Mapped[bool] = mapped_column(nullable=False, default=True)
    require_comments: Mapped[bool] = mapped_column(nullable=False, default=False)
    status: Mapped[ApprovalWorkflowStatus] = mapped_column(
        EnumText(ApprovalWorkflowStatus),
        nullable=False,
        default=ApprovalWorkflowStatus.ACTIVE,
    )

    levels: Mapped[list[ApprovalLevel]] = relationship(
        back_populates="workflow",
        order_by="ApprovalLevel.ordinal",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self) -> ApprovalWorkflowInfo:
        return ApprovalWorkflowInfo(
            id=self.id,
            code=self.code,
            name=self.name,
            document_kind=self.document_kind,
            policy=self.policy,
            levels=tuple(level.to_dto() for level in self.levels),
            status=self.status,
            min_amount=self.min_amount,
            max_amount=self.max_amount,
            auto_approve_below=self.auto_approve_below,
            allow_delegation=self.allow_delegation,
            require_comments=self.require_comments,
        )


class ApprovalLevel(TrackedBase):
    __tablename__ = "approval_levels"

    __table_args__ = (
        UniqueConstraint("workflow_id", "ordinal", name="uq_approval_level_ordinal"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_workflows.id"),
        nullable=False,
    )
    ordinal: Mapped[int] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    selector: Mapped[ApproverSelector] = mapped_column(EnumText(ApproverSelector), nullable=False)
    role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # List of approver UUID strings, in decision order for Sequential
    approver_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    min_approvers: Mapped[int] = mapped_column(nullable=False, default=1)
    skip_if_approved_above: Mapped[bool] = mapped_column(nullable=False, default=False)
    due_hours: Mapped[int | None] = mapped_column(nullable=True)
    escalation_target_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    workflow: Mapped[ApprovalWorkflow] = relationship(back_populates="levels")

    def to_dto(self) -> ApprovalLevelInfo:
        return ApprovalLevelInfo(
            ordinal=self.ordinal,
            selector=self.selector,
            name=self.name,
            role=self.role,
            department=self.department,
            approver_ids=tuple(UUID(v) for v in self.approver_ids or ()),
            min_approvers=self.min_approvers,
            skip_if_approved_above=self.skip_if_approved_above,
            due_hours=self.due_hours,
            escalation_target_id=self.escalation_target_id,
        )


class ApprovalRequest(TrackedBase):
    __tablename__ = "approval_requests"

    __table_args__ = (
        UniqueConstraint("request_number", name="uq_approval_request_number"),
        Index("idx_approval_request_status", "status"),
        Index("idx_approval_request_document", "document_kind", "document_id"),
    )

    request_number: Mapped[str] = mapped_column(String(30), nullable=False)
    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_workflows.id"),
        nullable=False,
    )
    document_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    document_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    document_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    requester_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[MinorUnits] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[ApprovalRequestStatus] = mapped_column(
        EnumText(ApprovalRequestStatus),
        nullable=False,
        default=ApprovalRequestStatus.PENDING,
    )
    current_level: Mapped[int | None] = mapped_column(nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    escalated_to_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    rejected_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    cancelled_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)

    records: Mapped[list[ApprovalRecord]] = relationship(
        back_populates="request",
        order_by="ApprovalRecord.sequence",
        lazy="selectin",
    )

    def record_infos(self) -> tuple[ApprovalRecordInfo, ...]:
        return tuple(r.to_dto() for r in self.records)

    def to_dto(self) -> ApprovalRequestInfo:
        return ApprovalRequestInfo(
            id=self.id,
            request_number=self.request_number,
            workflow_id=self.workflow_id,
            document_kind=self.document_kind,
            document_id=self.document_id,
            requester_id=self.requester_id,
            amount=self.amount,
            currency=self.currency,
            status=self.status,
            current_level=self.current_level,
            records=self.record_infos(),
            document_number=self.document_number,
            due_at=self.due_at,
            escalated_to_id=self.escalated_to_id,
            approved_by_id=self.approved_by_id,
            rejected_by_id=self.rejected_by_id,
            decided_at=self.decided_at,
        )


class ApprovalRecord(TrackedBase):
    """
    One decision on an approval request.

    Guarantees:
        - Append-only: never updated or deleted once flushed.
        - ``sequence`` orders records within a request.
    """

    __tablename__ = "approval_records"

    __table_args__ = (
        UniqueConstraint("request_id", "sequence", name="uq_approval_record_sequence"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_requests.id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    level: Mapped[int] = mapped_column(nullable=False)
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[ApprovalAction] = mapped_column(EnumText(ApprovalAction), nullable=False)
    comment: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    delegated_to_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    decided_at: Mapped[datetime] = mapped_column(nullable=False)

    request: Mapped[ApprovalRequest] = relationship(back_populates="records")

    def to_dto(self) -> ApprovalRecordInfo:
        return ApprovalRecordInfo(
            level=self.level,
            approver_id=self.approver_id,
            action=self.action,
            decided_at=self.decided_at,
            comment=self.comment,
            delegated_to_id=self.delegated_to_id,
        )


protect_append_only(ApprovalRecord, "ApprovalRecord")
