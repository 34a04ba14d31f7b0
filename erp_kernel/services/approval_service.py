"""
ApprovalService -- routes documents through approval workflows.

Responsibility:
    Defines approval workflows, opens approval requests against the
    workflow that governs a document, records decisions, advances levels
    under the workflow policy, escalates overdue requests and cancels
    requests on behalf of their requester.

Architecture position:
    Kernel > Services.  Policy questions (which workflow, who is eligible,
    is a level complete) are answered by the pure functions in
    erp_engines.approval; this service owns persistence, row locking and
    event publication.

Invariants enforced:
    - Terminal statuses (Approved, Rejected, Cancelled) never change.
    - Every decision appends exactly one ApprovalRecord; records are never
      edited.
    - ``decide`` locks the request row, so two approvers deciding the same
      level serialize and the second sees the first's record.
    - Auto-approval applies only when amount < auto_approve_below.

Failure modes:
    - NoApplicableWorkflowError: nothing governs the document.
    - ApprovalRequestClosedError: decision or cancel on a terminal request.
    - UnauthorizedApproverError / CancellationNotPermittedError.
    - CommentRequiredError, DelegationNotAllowedError, DuplicateDecisionError.

Audit relevance:
    approval_request_started, approval_decided, approval_level_advanced,
    approval_level_skipped, approval_request_escalated and
    approval_request_cancelled are logged with the request number.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_engines import approval as policy_engine
from erp_kernel.domain.approval import (
    OPEN_REQUEST_STATUSES,
    REQUEST_TRANSITIONS,
    ApprovalAction,
    ApprovalPolicy,
    ApprovalRequestInfo,
    ApprovalRequestStatus,
    ApprovalWorkflowInfo,
    ApprovalWorkflowStatus,
    ApproverSelector,
    LevelSpec,
    PendingSummary,
)
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.currency import validate_currency
from erp_kernel.domain.events import Topics
from erp_kernel.domain.identity import SYSTEM_PRINCIPAL_ID, Principal, PrincipalDirectory
from erp_kernel.domain.pagination import Page, PageRequest
from erp_kernel.exceptions import (
    ApprovalRequestClosedError,
    ApprovalRequestNotFoundError,
    ApprovalWorkflowNotFoundError,
    CancellationNotPermittedError,
    CommentRequiredError,
    DelegationNotAllowedError,
    DuplicateCodeError,
    DuplicateDecisionError,
    InvalidWorkflowDefinitionError,
    NoApplicableWorkflowError,
    UnauthorizedApproverError,
    ValidationError,
)
from erp_kernel.logging_config import LogContext, get_logger
from erp_kernel.models.approval import (
    ApprovalLevel,
    ApprovalRecord,
    ApprovalRequest,
    ApprovalWorkflow,
)
from erp_kernel.services.base import BaseService
from erp_kernel.services.event_bus import EventBus
from erp_kernel.services.sequence_service import SequenceService

logger = get_logger("services.approval")

APPROVAL_REQUEST_SEQUENCE = "approval_request"


class ApprovalService(BaseService):
    """
    Service for approval workflows and requests.

    Contract:
        Public methods return frozen DTOs from erp_kernel.domain.approval.
        Writes are flushed inside the caller's transaction.

    Guarantees:
        - ``approval.request.approved`` / ``.rejected`` / ``.cancelled`` is
          published exactly once per request, when it reaches that status.
        - Request numbers are ``APR-{seq:06d}`` from a locked counter.

    Non-goals:
        - Notifying approvers; the automation engine subscribes to events.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        principals: PrincipalDirectory | None = None,
    ):
        super().__init__(session, clock)
        self._event_bus = event_bus
        self._principals = principals
        self._sequences = SequenceService(session)

    # =========================================================================
    # Workflows
    # =========================================================================

    def create_workflow(
        self,
        code: str,
        name: str,
        document_kind: str,
        policy: ApprovalPolicy,
        levels: Sequence[LevelSpec],
        *,
        min_amount: int | None = None,
        max_amount: int | None = None,
        auto_approve_below: int | None = None,
        allow_delegation: bool = True,
        require_comments: bool = False,
        description: str | None = None,
        actor_id: UUID | None = None,
    ) -> ApprovalWorkflowInfo:
        """
        Define a workflow; levels are numbered 1..n in the order given.

        Raises:
            InvalidWorkflowDefinitionError: missing fields, no levels, a
                level whose selector lacks its parameter, or a Sequential
                workflow with a non-SpecificUser level.
            DuplicateCodeError: code already used.
        """
        self._validate_definition(code, name, document_kind, policy, levels, min_amount, max_amount)
        existing = self._session.execute(
            select(ApprovalWorkflow.id).where(ApprovalWorkflow.code == code)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateCodeError("ApprovalWorkflow", code)

        workflow = ApprovalWorkflow(
            code=code,
            name=name,
            description=description,
            document_kind=document_kind,
            policy=policy,
            min_amount=min_amount,
            max_amount=max_amount,
            auto_approve_below=auto_approve_below,
            allow_delegation=allow_delegation,
            require_comments=require_comments,
            status=ApprovalWorkflowStatus.ACTIVE,
        )
        self._stamp_new(workflow, actor_id)
        for ordinal, spec in enumerate(levels, start=1):
            level = ApprovalLevel(
                ordinal=ordinal,
                name=spec.name or f"Level {ordinal}",
                selector=spec.selector,
                role=spec.role,
                department=spec.department,
                approver_ids=[str(a) for a in spec.approver_ids],
                min_approvers=spec.min_approvers,
                skip_if_approved_above=spec.skip_if_approved_above,
                due_hours=spec.due_hours,
                escalation_target_id=spec.escalation_target_id,
            )
            self._stamp_new(level, actor_id)
            workflow.levels.append(level)
        self._session.add(workflow)
        self._session.flush()

        logger.info(
            "approval_workflow_created",
            extra={
                "workflow_code": code,
                "document_kind": document_kind,
                "policy": policy.value,
                "level_count": len(levels),
            },
        )
        return workflow.to_dto()

    def activate_workflow(self, workflow_id: UUID, actor_id: UUID | None = None) -> ApprovalWorkflowInfo:
        return self._set_workflow_status(workflow_id, ApprovalWorkflowStatus.ACTIVE, actor_id)

    def deactivate_workflow(self, workflow_id: UUID, actor_id: UUID | None = None) -> ApprovalWorkflowInfo:
        return self._set_workflow_status(workflow_id, ApprovalWorkflowStatus.INACTIVE, actor_id)

    def get_workflow(self, ref: str | UUID) -> ApprovalWorkflowInfo:
        return self._resolve_workflow(ref).to_dto()

    # =========================================================================
    # Requests
    # =========================================================================

    def start_request(
        self,
        document_kind: str,
        document_id: UUID,
        amount: int,
        currency: str,
        requester_id: UUID,
        *,
        document_number: str | None = None,
    ) -> ApprovalRequestInfo:
        """
        Open a request under the workflow that governs the document.

        Postconditions:
            - Status Approved (auto-approved, event published) when the
              amount is strictly below the workflow threshold; otherwise
              Pending at the first level with its due date set.
        """
        if amount < 0:
            raise ValidationError(f"Approval amount cannot be negative: {amount}")
        currency = validate_currency(currency)
        candidates = [
            wf.to_dto()
            for wf in self._session.execute(
                select(ApprovalWorkflow).where(
                    ApprovalWorkflow.document_kind == document_kind,
                    ApprovalWorkflow.status == ApprovalWorkflowStatus.ACTIVE,
                )
            ).scalars()
        ]
        workflow = policy_engine.select_workflow(
            workflows=candidates,
            document_kind=document_kind,
            amount=amount,
        )
        if workflow is None:
            raise NoApplicableWorkflowError(document_kind, amount)

        now = self._clock.now()
        seq = self._sequences.next_value(APPROVAL_REQUEST_SEQUENCE)
        request = ApprovalRequest(
            request_number=f"APR-{seq:06d}",
            workflow_id=workflow.id,
            document_kind=document_kind,
            document_id=document_id,
            document_number=document_number,
            requester_id=requester_id,
            amount=amount,
            currency=currency,
        )
        self._stamp_new(request, requester_id)

        auto_approved = policy_engine.should_auto_approve(workflow, amount)
        if auto_approved:
            request.status = ApprovalRequestStatus.APPROVED
            request.current_level = None
            request.decided_at = now
        else:
            first = workflow.levels[0]
            request.status = ApprovalRequestStatus.PENDING
            request.current_level = first.ordinal
            request.due_at = self._due_at(first.due_hours, now)
        self._session.add(request)
        self._session.flush()

        logger.info(
            "approval_request_started",
            extra={
                "request_number": request.request_number,
                "workflow_code": workflow.code,
                "document_kind": document_kind,
                "amount": amount,
                "auto_approved": auto_approved,
            },
        )
        if auto_approved:
            self._publish(Topics.APPROVAL_APPROVED, request)
        return request.to_dto()

    def decide(
        self,
        request_id: UUID,
        approver_id: UUID,
        action: ApprovalAction,
        comment: str | None = None,
        delegated_to_id: UUID | None = None,
    ) -> ApprovalRequestInfo:
        """
        Record a decision at the request's current level and advance.

        Preconditions:
            - The request is Pending or Escalated.
            - ``approver_id`` is eligible at the current level.

        Postconditions:
            - Approved: the level advances when the policy's quorum is met;
              past the last level the request is Approved.
            - Rejected: the request is Rejected.
            - Delegated / ReturnedForInfo: recorded only, no advancement.
            - An Escalated request returns to Pending on any decision.
        """
        request = self._get_for_update(request_id)
        if request.status not in OPEN_REQUEST_STATUSES:
            raise ApprovalRequestClosedError(request.id, request.status.value)

        workflow = self._workflow_info(request.workflow_id)
        level = workflow.level(request.current_level)
        if workflow.require_comments and not (comment or "").strip():
            raise CommentRequiredError(request.id)

        records = request.record_infos()
        requester = self._principal(request.requester_id)
        if not policy_engine.is_eligible(
            workflow.policy,
            level,
            self._principal(approver_id),
            approver_id,
            requester,
            request.amount,
            records,
            request.escalated_to_id,
        ):
            raise UnauthorizedApproverError(request.id, approver_id, level.ordinal)

        if action == ApprovalAction.APPROVED and approver_id in policy_engine.approvals_at(
            records, level.ordinal
        ):
            raise DuplicateDecisionError(request.id, approver_id, level.ordinal)
        if action == ApprovalAction.DELEGATED:
            if not workflow.allow_delegation:
                raise DelegationNotAllowedError(workflow.code)
            if delegated_to_id is None or delegated_to_id == approver_id:
                raise ValidationError("Delegation requires a delegate other than the approver")
        elif delegated_to_id is not None:
            raise ValidationError("delegated_to_id is only valid for Delegated actions")

        now = self._clock.now()
        with LogContext.bind(actor_id=str(approver_id)):
            self._append_record(request, level.ordinal, approver_id, action, now, comment, delegated_to_id)
            if request.status == ApprovalRequestStatus.ESCALATED:
                self._transition(request, ApprovalRequestStatus.PENDING)

            logger.info(
                "approval_decided",
                extra={
                    "request_number": request.request_number,
                    "level": level.ordinal,
                    "approver_id": str(approver_id),
                    "action": action.value,
                },
            )

            if action == ApprovalAction.REJECTED:
                self._transition(request, ApprovalRequestStatus.REJECTED)
                request.rejected_by_id = approver_id
                request.rejection_reason = comment
                request.decided_at = now
                self._stamp_changed(request, approver_id)
                self._session.flush()
                self._publish(Topics.APPROVAL_REJECTED, request)
            elif action == ApprovalAction.APPROVED:
                if policy_engine.level_complete(workflow.policy, level, request.record_infos()):
                    self._advance(request, workflow, approver_id, now)
                self._stamp_changed(request, approver_id)
                self._session.flush()
            else:
                self._stamp_changed(request, approver_id)
                self._session.flush()

        return request.to_dto()

    def escalate_overdue(self, now: datetime | None = None) -> list[ApprovalRequestInfo]:
        """
        Escalate Pending requests whose due date has passed.

        Only requests whose current level names an escalation target are
        escalated; the target becomes eligible and the due date restarts
        from ``now`` using the level's ``due_hours``.
        """
        now = now or self._clock.now()
        overdue = list(
            self._session.execute(
                select(ApprovalRequest)
                .where(
                    ApprovalRequest.status == ApprovalRequestStatus.PENDING,
                    ApprovalRequest.due_at.is_not(None),
                    ApprovalRequest.due_at < now,
                )
                .order_by(ApprovalRequest.due_at, ApprovalRequest.request_number)
                .with_for_update()
            ).scalars()
        )

        escalated: list[ApprovalRequestInfo] = []
        for request in overdue:
            level = self._workflow_info(request.workflow_id).level(request.current_level)
            if level is None or level.escalation_target_id is None:
                continue
            self._transition(request, ApprovalRequestStatus.ESCALATED)
            request.escalated_to_id = level.escalation_target_id
            request.due_at = self._due_at(level.due_hours, now)
            self._stamp_changed(request, SYSTEM_PRINCIPAL_ID)
            logger.warning(
                "approval_request_escalated",
                extra={
                    "request_number": request.request_number,
                    "level": level.ordinal,
                    "escalated_to_id": str(level.escalation_target_id),
                },
            )
            escalated.append(request)

        self._session.flush()
        return [r.to_dto() for r in escalated]

    def cancel(self, request_id: UUID, actor_id: UUID, reason: str | None = None) -> ApprovalRequestInfo:
        request = self._get_for_update(request_id)
        if request.status not in OPEN_REQUEST_STATUSES:
            raise ApprovalRequestClosedError(request.id, request.status.value)
        privileged = self._principals is not None and self._principals.is_privileged(actor_id)
        if actor_id != request.requester_id and not privileged:
            raise CancellationNotPermittedError(request.id, actor_id)

        self._transition(request, ApprovalRequestStatus.CANCELLED)
        request.cancelled_by_id = actor_id
        request.decided_at = self._clock.now()
        if reason:
            request.rejection_reason = reason
        self._stamp_changed(request, actor_id)
        self._session.flush()

        logger.info(
            "approval_request_cancelled",
            extra={"request_number": request.request_number, "actor_id": str(actor_id)},
        )
        self._publish(Topics.APPROVAL_CANCELLED, request)
        return request.to_dto()

    def get_request(self, request_id: UUID) -> ApprovalRequestInfo:
        return self._get(request_id).to_dto()

    def list_pending_for_approver(
        self,
        approver_id: UUID,
        page: PageRequest | None = None,
    ) -> Page[ApprovalRequestInfo]:
        """Open requests ``approver_id`` may decide now, oldest first."""
        page = page or PageRequest()
        actionable = self._actionable_for(approver_id)
        window = actionable[page.offset : page.offset + page.per_page]
        return Page(
            items=tuple(r.to_dto() for r in window),
            total=len(actionable),
            page=page.page,
            per_page=page.per_page,
        )

    def pending_summary(self, approver_id: UUID, now: datetime | None = None) -> PendingSummary:
        now = now or self._clock.now()
        actionable = self._actionable_for(approver_id)
        by_kind: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        for request in actionable:
            bucket = by_kind[request.document_kind]
            bucket[0] += 1
            bucket[1] += request.amount
        return PendingSummary(
            approver_id=approver_id,
            pending_count=len(actionable),
            total_amount=sum(r.amount for r in actionable),
            overdue_count=sum(1 for r in actionable if r.due_at is not None and r.due_at < now),
            by_document_kind={k: (v[0], v[1]) for k, v in sorted(by_kind.items())},
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _advance(
        self,
        request: ApprovalRequest,
        workflow: ApprovalWorkflowInfo,
        approver_id: UUID,
        now: datetime,
    ) -> None:
        current = request.current_level
        requester = self._principal(request.requester_id)
        while True:
            following = workflow.next_level(current)
            if following is None:
                self._transition(request, ApprovalRequestStatus.APPROVED)
                request.current_level = None
                request.due_at = None
                request.escalated_to_id = None
                request.approved_by_id = approver_id
                request.decided_at = now
                self._session.flush()
                logger.info(
                    "approval_request_approved",
                    extra={"request_number": request.request_number},
                )
                self._publish(Topics.APPROVAL_APPROVED, request)
                return

            request.current_level = following.ordinal
            request.escalated_to_id = None
            request.due_at = self._due_at(following.due_hours, now)
            logger.info(
                "approval_level_advanced",
                extra={
                    "request_number": request.request_number,
                    "from_level": current,
                    "to_level": following.ordinal,
                },
            )

            if not following.skip_if_approved_above:
                return
            records = request.record_infos()
            approvers = {r.approver_id: self._principal(r.approver_id) for r in records}
            senior = policy_engine.approved_above(
                workflow, following, records, approvers, requester, request.amount
            )
            if senior is None:
                return
            self._append_record(
                request,
                following.ordinal,
                SYSTEM_PRINCIPAL_ID,
                ApprovalAction.APPROVED,
                now,
                f"Skipped: already approved by higher authority {senior}",
                None,
            )
            logger.info(
                "approval_level_skipped",
                extra={
                    "request_number": request.request_number,
                    "level": following.ordinal,
                    "approved_by": str(senior),
                },
            )
            current = following.ordinal

    def _append_record(
        self,
        request: ApprovalRequest,
        level: int,
        approver_id: UUID,
        action: ApprovalAction,
        now: datetime,
        comment: str | None,
        delegated_to_id: UUID | None,
    ) -> None:
        record = ApprovalRecord(
            sequence=len(request.records) + 1,
            level=level,
            approver_id=approver_id,
            action=action,
            comment=comment,
            delegated_to_id=delegated_to_id,
            decided_at=now,
        )
        self._stamp_new(record, approver_id)
        request.records.append(record)
        self._session.flush()

    def _actionable_for(self, approver_id: UUID) -> list[ApprovalRequest]:
        open_requests = self._session.execute(
            select(ApprovalRequest)
            .where(ApprovalRequest.status.in_(list(OPEN_REQUEST_STATUSES)))
            .order_by(ApprovalRequest.created_at, ApprovalRequest.request_number)
        ).scalars()
        approver = self._principal(approver_id)
        workflows: dict[UUID, ApprovalWorkflowInfo] = {}
        actionable: list[ApprovalRequest] = []
        for request in open_requests:
            if request.workflow_id not in workflows:
                workflows[request.workflow_id] = self._workflow_info(request.workflow_id)
            workflow = workflows[request.workflow_id]
            level = workflow.level(request.current_level)
            if level is None:
                continue
            if policy_engine.is_eligible(
                workflow.policy,
                level,
                approver,
                approver_id,
                self._principal(request.requester_id),
                request.amount,
                request.record_infos(),
                request.escalated_to_id,
            ):
                actionable.append(request)
        return actionable

    def _transition(self, request: ApprovalRequest, target: ApprovalRequestStatus) -> None:
        if target not in REQUEST_TRANSITIONS[request.status]:
            raise ApprovalRequestClosedError(request.id, request.status.value)
        request.status = target

    def _publish(self, topic: str, request: ApprovalRequest) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(
            topic,
            {
                "request_id": str(request.id),
                "request_number": request.request_number,
                "document_kind": request.document_kind,
                "document_id": str(request.document_id),
                "status": request.status.value,
            },
        )

    def _principal(self, actor_id: UUID | None) -> Principal | None:
        if actor_id is None or self._principals is None:
            return None
        return self._principals.get_principal(actor_id)

    @staticmethod
    def _due_at(due_hours: int | None, now: datetime) -> datetime | None:
        return now + timedelta(hours=due_hours) if due_hours else None

    def _workflow_info(self, workflow_id: UUID) -> ApprovalWorkflowInfo:
        workflow = self._session.get(ApprovalWorkflow, workflow_id)
        if workflow is None:
            raise ApprovalWorkflowNotFoundError(workflow_id)
        return workflow.to_dto()

    def _resolve_workflow(self, ref: str | UUID) -> ApprovalWorkflow:
        if isinstance(ref, UUID):
            workflow = self._session.get(ApprovalWorkflow, ref)
        else:
            workflow = self._session.execute(
                select(ApprovalWorkflow).where(ApprovalWorkflow.code == ref)
            ).scalar_one_or_none()
        if workflow is None:
            raise ApprovalWorkflowNotFoundError(ref)
        return workflow

    def _set_workflow_status(
        self,
        workflow_id: UUID,
        status: ApprovalWorkflowStatus,
        actor_id: UUID | None,
    ) -> ApprovalWorkflowInfo:
        workflow = self._resolve_workflow(workflow_id)
        workflow.status = status
        self._stamp_changed(workflow, actor_id)
        self._session.flush()
        logger.info(
            "approval_workflow_status_changed",
            extra={"workflow_code": workflow.code, "status": status.value},
        )
        return workflow.to_dto()

    def _get(self, request_id: UUID) -> ApprovalRequest:
        request = self._session.get(ApprovalRequest, request_id)
        if request is None:
            raise ApprovalRequestNotFoundError(request_id)
        return request

    def _get_for_update(self, request_id: UUID) -> ApprovalRequest:
        request = self._session.execute(
            select(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if request is None:
            raise ApprovalRequestNotFoundError(request_id)
        return request

    @staticmethod
    def _validate_definition(
        code: str,
        name: str,
        document_kind: str,
        policy: ApprovalPolicy,
        levels: Sequence[LevelSpec],
        min_amount: int | None,
        max_amount: int | None,
    ) -> None:
        if not code or not name or not document_kind:
            raise InvalidWorkflowDefinitionError(code or "?", "code, name and document kind are required")
        if not levels:
            raise InvalidWorkflowDefinitionError(code, "at least one level is required")
        if min_amount is not None and max_amount is not None and min_amount > max_amount:
            raise InvalidWorkflowDefinitionError(code, "min_amount exceeds max_amount")
        for ordinal, spec in enumerate(levels, start=1):
            if spec.min_approvers < 1:
                raise InvalidWorkflowDefinitionError(code, f"level {ordinal}: min_approvers must be >= 1")
            if spec.due_hours is not None and spec.due_hours <= 0:
                raise InvalidWorkflowDefinitionError(code, f"level {ordinal}: due_hours must be positive")
            if policy == ApprovalPolicy.SEQUENTIAL and spec.selector != ApproverSelector.SPECIFIC_USER:
                raise InvalidWorkflowDefinitionError(
                    code, f"level {ordinal}: Sequential levels must list specific users"
                )
            if spec.selector == ApproverSelector.SPECIFIC_USER and not spec.approver_ids:
                raise InvalidWorkflowDefinitionError(code, f"level {ordinal}: approver_ids required")
            if spec.selector == ApproverSelector.ROLE and not spec.role:
                raise InvalidWorkflowDefinitionError(code, f"level {ordinal}: role required")
            if spec.selector == ApproverSelector.DEPARTMENT and not spec.department:
                raise InvalidWorkflowDefinitionError(code, f"level {ordinal}: department required")
