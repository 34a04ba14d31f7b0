"""
Tests for multi-level approval workflows.

Covers:
- Sequential levels: only the listed user whose turn it is may decide
- Auto-approval threshold is strict (equal amounts still need approval)
- Duplicate approvals by the same approver at one level are rejected
- Any/All approver quorum, delegation and rejection
- Overdue escalation hands the level to the escalation target
- Approved records always visit levels in order
"""

from uuid import uuid4

import pytest

from erp_engines.approval import approved_levels_form_prefix
from erp_kernel.domain.approval import (
    ApprovalAction,
    ApprovalPolicy,
    ApprovalRequestStatus,
    ApproverSelector,
    LevelSpec,
)
from erp_kernel.domain.events import Topics
from erp_kernel.exceptions import (
    ApprovalRequestClosedError,
    CancellationNotPermittedError,
    DuplicateDecisionError,
    InvalidWorkflowDefinitionError,
    NoApplicableWorkflowError,
    UnauthorizedApproverError,
)

PURCHASE_ORDER = "PurchaseOrder"


@pytest.fixture
def approver_a():
    return uuid4()


@pytest.fixture
def approver_b():
    return uuid4()


@pytest.fixture
def requester():
    return uuid4()


@pytest.fixture
def sequential_workflow(approvals, approver_a, approver_b):
    """Two Sequential levels: A signs level 1, then B signs level 2."""
    return approvals.create_workflow(
        "PO-SEQ",
        "Purchase order sign-off",
        PURCHASE_ORDER,
        ApprovalPolicy.SEQUENTIAL,
        [
            LevelSpec(ApproverSelector.SPECIFIC_USER, name="Manager", approver_ids=(approver_a,)),
            LevelSpec(ApproverSelector.SPECIFIC_USER, name="Director", approver_ids=(approver_b,)),
        ],
        auto_approve_below=1_000,
    )


def _start(approvals, requester, amount=50_000):
    return approvals.start_request(PURCHASE_ORDER, uuid4(), amount, "USD", requester)


class TestSequentialApproval:
    def test_two_level_sign_off(
        self, approvals, sequential_workflow, approver_a, approver_b, requester, event_bus
    ):
        request = _start(approvals, requester)
        assert request.status == ApprovalRequestStatus.PENDING
        assert request.current_level == 1

        outsider = uuid4()
        with pytest.raises(UnauthorizedApproverError):
            approvals.decide(request.id, outsider, ApprovalAction.APPROVED)

        after_a = approvals.decide(request.id, approver_a, ApprovalAction.APPROVED)
        assert after_a.status == ApprovalRequestStatus.PENDING
        assert after_a.current_level == 2

        done = approvals.decide(request.id, approver_b, ApprovalAction.APPROVED)
        assert done.status == ApprovalRequestStatus.APPROVED
        assert done.current_level is None
        assert done.approved_by_id == approver_b
        assert [(r.level, r.approver_id) for r in done.records] == [
            (1, approver_a),
            (2, approver_b),
        ]
        assert len(event_bus.of_topic(Topics.APPROVAL_APPROVED)) == 1

    def test_later_level_approver_cannot_act_early(
        self, approvals, sequential_workflow, approver_b, requester
    ):
        request = _start(approvals, requester)

        with pytest.raises(UnauthorizedApproverError):
            approvals.decide(request.id, approver_b, ApprovalAction.APPROVED)

    def test_rejection_closes_the_request(
        self, approvals, sequential_workflow, approver_a, requester
    ):
        request = _start(approvals, requester)

        rejected = approvals.decide(
            request.id, approver_a, ApprovalAction.REJECTED, comment="Over budget"
        )
        assert rejected.status == ApprovalRequestStatus.REJECTED
        assert rejected.rejected_by_id == approver_a

        with pytest.raises(ApprovalRequestClosedError):
            approvals.decide(request.id, approver_a, ApprovalAction.APPROVED)

    def test_sequential_levels_require_specific_users(self, approvals):
        with pytest.raises(InvalidWorkflowDefinitionError):
            approvals.create_workflow(
                "PO-BAD",
                "Bad",
                PURCHASE_ORDER,
                ApprovalPolicy.SEQUENTIAL,
                [LevelSpec(ApproverSelector.ROLE, role="buyer")],
            )


class TestAutoApproval:
    def test_amount_below_threshold_is_auto_approved(
        self, approvals, sequential_workflow, requester, event_bus
    ):
        request = _start(approvals, requester, amount=999)

        assert request.status == ApprovalRequestStatus.APPROVED
        assert request.records == ()
        assert len(event_bus.of_topic(Topics.APPROVAL_APPROVED)) == 1

    def test_threshold_is_strict(self, approvals, sequential_workflow, requester):
        request = _start(approvals, requester, amount=1_000)

        assert request.status == ApprovalRequestStatus.PENDING
        assert request.current_level == 1

    def test_no_workflow_for_document_kind(self, approvals, requester):
        with pytest.raises(NoApplicableWorkflowError):
            approvals.start_request("Invoice", uuid4(), 10, "USD", requester)


class TestQuorumPolicies:
    def test_duplicate_approval_is_rejected(self, approvals, principals, requester):
        first, second = uuid4(), uuid4()
        approvals.create_workflow(
            "PO-ALL",
            "Two signatures",
            PURCHASE_ORDER,
            ApprovalPolicy.ALL_APPROVERS,
            [
                LevelSpec(
                    ApproverSelector.SPECIFIC_USER,
                    approver_ids=(first, second),
                    min_approvers=2,
                )
            ],
        )
        request = _start(approvals, requester)

        approvals.decide(request.id, first, ApprovalAction.APPROVED)
        with pytest.raises(DuplicateDecisionError):
            approvals.decide(request.id, first, ApprovalAction.APPROVED)

        done = approvals.decide(request.id, second, ApprovalAction.APPROVED)
        assert done.status == ApprovalRequestStatus.APPROVED

    def test_any_approver_with_role(self, approvals, principals, requester):
        buyer = principals.register(display_name="Buyer", roles=["buyer"])
        clerk = principals.register(display_name="Clerk", roles=["clerk"])
        approvals.create_workflow(
            "PO-ROLE",
            "Any buyer",
            PURCHASE_ORDER,
            ApprovalPolicy.ANY_APPROVER,
            [LevelSpec(ApproverSelector.ROLE, role="buyer")],
        )
        request = _start(approvals, requester)

        with pytest.raises(UnauthorizedApproverError):
            approvals.decide(request.id, clerk.actor_id, ApprovalAction.APPROVED)

        done = approvals.decide(request.id, buyer.actor_id, ApprovalAction.APPROVED)
        assert done.status == ApprovalRequestStatus.APPROVED

    def test_delegate_may_approve_in_place_of_listed_user(
        self, approvals, sequential_workflow, approver_a, requester
    ):
        deputy = uuid4()
        request = _start(approvals, requester)

        delegated = approvals.decide(
            request.id, approver_a, ApprovalAction.DELEGATED, delegated_to_id=deputy
        )
        assert delegated.current_level == 1

        advanced = approvals.decide(request.id, deputy, ApprovalAction.APPROVED)
        assert advanced.current_level == 2


class TestEscalationAndCancel:
    def test_overdue_request_escalates_to_target(
        self, approvals, deterministic_clock, requester
    ):
        listed, escalation_target = uuid4(), uuid4()
        approvals.create_workflow(
            "PO-ESC",
            "Escalating",
            PURCHASE_ORDER,
            ApprovalPolicy.ANY_APPROVER,
            [
                LevelSpec(
                    ApproverSelector.SPECIFIC_USER,
                    approver_ids=(listed,),
                    due_hours=24,
                    escalation_target_id=escalation_target,
                )
            ],
        )
        request = _start(approvals, requester)

        assert approvals.escalate_overdue() == []
        deterministic_clock.advance(hours=25)
        escalated = approvals.escalate_overdue()

        assert [r.id for r in escalated] == [request.id]
        assert escalated[0].status == ApprovalRequestStatus.ESCALATED
        assert escalated[0].escalated_to_id == escalation_target

        done = approvals.decide(request.id, escalation_target, ApprovalAction.APPROVED)
        assert done.status == ApprovalRequestStatus.APPROVED

    def test_only_requester_may_cancel(self, approvals, sequential_workflow, requester):
        request = _start(approvals, requester)

        with pytest.raises(CancellationNotPermittedError):
            approvals.cancel(request.id, uuid4())

        cancelled = approvals.cancel(request.id, requester, reason="Not needed")
        assert cancelled.status == ApprovalRequestStatus.CANCELLED


class TestLevelOrdering:
    def test_approved_records_form_level_prefix(
        self, approvals, sequential_workflow, approver_a, approver_b, requester
    ):
        request = _start(approvals, requester)
        workflow = approvals.get_workflow("PO-SEQ")

        partial = approvals.decide(request.id, approver_a, ApprovalAction.APPROVED)
        assert approved_levels_form_prefix(workflow, partial.records)

        done = approvals.decide(request.id, approver_b, ApprovalAction.APPROVED)
        assert approved_levels_form_prefix(workflow, done.records)

    def test_out_of_order_records_are_detected(
        self, approvals, sequential_workflow, approver_a, approver_b, requester
    ):
        workflow = approvals.get_workflow("PO-SEQ")
        request = _start(approvals, requester)
        done = approvals.decide(request.id, approver_a, ApprovalAction.APPROVED)
        done = approvals.decide(request.id, approver_b, ApprovalAction.APPROVED)

        assert not approved_levels_form_prefix(workflow, tuple(reversed(done.records)))
