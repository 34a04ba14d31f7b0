"""
erp_engines.approval -- Pure approval policy evaluation.

Responsibility:
    Selects the workflow that governs a document, decides auto-approval,
    answers whether an actor may decide at a level, and decides whether a
    level is complete under the workflow's policy.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  ApprovalService supplies
    principals, records and workflows; this module only reasons over them.

Invariants enforced:
    - Deterministic workflow selection: active workflows for the document
      kind whose inclusive amount window covers the amount, ordered by code;
      the first wins.
    - Auto-approval only when amount is strictly below the threshold.
    - Sequential levels are decided by their listed users in list order;
      the level completes when every listed user has approved.
    - AllApprovers completes at ``min_approvers`` distinct approvals;
      AnyApprover at the first approval.
    - Delegates recorded at the level, and the escalation target of an
      escalated request, are eligible in addition to the selector's set.

Failure modes:
    - None raised here; callers translate False/None into typed errors.
"""

from __future__ import annotations

from typing import Iterable, Sequence
from uuid import UUID

from erp_kernel.domain.approval import (
    ApprovalAction,
    ApprovalLevelInfo,
    ApprovalPolicy,
    ApprovalRecordInfo,
    ApprovalWorkflowInfo,
    ApprovalWorkflowStatus,
    ApproverSelector,
)
from erp_kernel.domain.identity import Principal
from erp_engines.tracer import traced_engine


@traced_engine("approval_selection", "1.0", fingerprint_fields=("document_kind", "amount"))
def select_workflow(
    workflows: Iterable[ApprovalWorkflowInfo],
    document_kind: str,
    amount: int,
) -> ApprovalWorkflowInfo | None:
    """First active workflow (by code) for the kind whose window covers ``amount``."""
    candidates = sorted(
        (
            wf
            for wf in workflows
            if wf.status == ApprovalWorkflowStatus.ACTIVE
            and wf.document_kind == document_kind
            and wf.covers_amount(amount)
        ),
        key=lambda wf: wf.code,
    )
    return candidates[0] if candidates else None


def should_auto_approve(workflow: ApprovalWorkflowInfo, amount: int) -> bool:
    return workflow.auto_approve_below is not None and amount < workflow.auto_approve_below


def approvals_at(records: Sequence[ApprovalRecordInfo], level: int) -> list[UUID]:
    """Distinct approvers with an Approved record at ``level``, in decision order."""
    seen: list[UUID] = []
    for record in records:
        if (
            record.level == level
            and record.action == ApprovalAction.APPROVED
            and record.approver_id not in seen
        ):
            seen.append(record.approver_id)
    return seen


def delegates_at(records: Sequence[ApprovalRecordInfo], level: int) -> set[UUID]:
    return {
        r.delegated_to_id
        for r in records
        if r.level == level and r.action == ApprovalAction.DELEGATED and r.delegated_to_id
    }


def next_sequential_approver(
    level: ApprovalLevelInfo,
    records: Sequence[ApprovalRecordInfo],
) -> UUID | None:
    """
    The listed user whose turn it is, or None once every user approved.

    Each Approved record at the level settles the turn that was open when
    it was made, whether the listed user, their delegate or the escalation
    target signed it.
    """
    settled = 0
    for record in records:
        if record.level == level.ordinal and record.action == ApprovalAction.APPROVED:
            settled += 1
    if settled >= len(level.approver_ids):
        return None
    return level.approver_ids[settled]


def selector_matches(
    level: ApprovalLevelInfo,
    approver: Principal | None,
    approver_id: UUID,
    requester: Principal | None,
    amount: int,
) -> bool:
    """Whether the level's selector alone admits the approver."""
    selector = level.selector
    if selector == ApproverSelector.SPECIFIC_USER:
        return approver_id in level.approver_ids
    if selector == ApproverSelector.SUPERVISOR:
        return requester is not None and requester.supervisor_id == approver_id
    if approver is None:
        return False
    if selector == ApproverSelector.ROLE:
        return level.role is not None and approver.has_role(level.role)
    if selector == ApproverSelector.DEPARTMENT:
        return level.department is not None and approver.department == level.department
    if selector == ApproverSelector.AMOUNT_BASED:
        return approver.approval_limit is not None and approver.approval_limit >= amount
    return False


def is_eligible(
    policy: ApprovalPolicy,
    level: ApprovalLevelInfo,
    approver: Principal | None,
    approver_id: UUID,
    requester: Principal | None,
    amount: int,
    records: Sequence[ApprovalRecordInfo],
    escalated_to_id: UUID | None = None,
) -> bool:
    """
    Whether ``approver_id`` may decide at ``level`` right now.

    Under Sequential only the user whose turn it is (or that user's
    delegate, or the escalation target) is eligible.
    """
    if escalated_to_id is not None and approver_id == escalated_to_id:
        return True
    if policy == ApprovalPolicy.SEQUENTIAL:
        turn = next_sequential_approver(level, records)
        if turn is None:
            return False
        if approver_id == turn:
            return True
        return approver_id in {
            r.delegated_to_id
            for r in records
            if r.level == level.ordinal
            and r.action == ApprovalAction.DELEGATED
            and r.approver_id == turn
        }
    if approver_id in delegates_at(records, level.ordinal):
        return True
    return selector_matches(level, approver, approver_id, requester, amount)


def level_complete(
    policy: ApprovalPolicy,
    level: ApprovalLevelInfo,
    records: Sequence[ApprovalRecordInfo],
) -> bool:
    approved = approvals_at(records, level.ordinal)
    if policy == ApprovalPolicy.ANY_APPROVER:
        return len(approved) >= 1
    if policy == ApprovalPolicy.ALL_APPROVERS:
        return len(approved) >= level.min_approvers
    return next_sequential_approver(level, records) is None


def approved_above(
    workflow: ApprovalWorkflowInfo,
    level: ApprovalLevelInfo,
    records: Sequence[ApprovalRecordInfo],
    approvers: dict[UUID, Principal | None],
    requester: Principal | None,
    amount: int,
) -> UUID | None:
    """
    An earlier approver whose authority reaches a level above ``level``.

    Returns that approver's id, or None.  Used for ``skip_if_approved_above``.
    """
    higher = [lvl for lvl in workflow.levels if lvl.ordinal > level.ordinal]
    for record in records:
        if record.action != ApprovalAction.APPROVED:
            continue
        principal = approvers.get(record.approver_id)
        for candidate in higher:
            if selector_matches(candidate, principal, record.approver_id, requester, amount):
                return record.approver_id
    return None


def approved_levels_form_prefix(
    workflow: ApprovalWorkflowInfo,
    records: Sequence[ApprovalRecordInfo],
) -> bool:
    """
    True when Approved records visit the workflow levels in ordinal order.

    Each level's approvals must all precede the next level's approvals.
    """
    order = [lvl.ordinal for lvl in sorted(workflow.levels, key=lambda lvl: lvl.ordinal)]
    visited = [r.level for r in records if r.action == ApprovalAction.APPROVED]
    if any(b < a for a, b in zip(visited, visited[1:])):
        return False
    distinct = sorted(set(visited))
    return distinct == order[: len(distinct)]
