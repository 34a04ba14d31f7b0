"""
Tests for automation workflows -- lifecycle, step execution and triggers.

Covers:
- Completed runs report 100% progress with every step counted
- Waiting runs time out at the workflow deadline and count as failures
- Signals resume suspended steps; cancellation of waiting and finished runs
- on_failure handlers, retry backoff and conditional skips
- Approval steps resumed by approval events
- Event, webhook and cron triggers; misfire policies and run-now
- Slot caps and priority-then-FIFO admission
"""

from uuid import UUID, uuid4

import pytest

from erp_automation.domain.types import ExecutionStatus, WorkflowStatus
from erp_automation.services.triggers import TriggerService
from erp_kernel.domain.approval import (
    ApprovalAction,
    ApprovalPolicy,
    ApproverSelector,
    LevelSpec,
)
from erp_kernel.domain.events import Topics
from erp_kernel.exceptions import (
    InvalidExecutionTransitionError,
    ScheduledJobNotFoundError,
    ValidationError,
    WorkflowNotActiveError,
)
from erp_engines.rules.types import ExecutionMode, RuleType

from conftest import TEST_ACTOR_ID


@pytest.fixture
def triggers(session, workflows, deterministic_clock):
    return TriggerService(session, workflows, deterministic_clock)


def _log(step_id, message="step {step_id}"):
    return {"id": step_id, "type": "log", "config": {"message": message}}


class TestWorkflowLifecycle:
    def test_new_workflow_is_draft_and_cannot_be_triggered(self, workflows, create_workflow):
        draft = create_workflow("DRAFTY", [_log("a")], publish=False)
        assert draft.status == WorkflowStatus.DRAFT
        assert draft.version == 1

        with pytest.raises(WorkflowNotActiveError):
            workflows.trigger("DRAFTY")

    def test_definition_changes_only_while_draft_or_paused(self, workflows, create_workflow):
        create_workflow("EDIT", [_log("a")])

        with pytest.raises(ValidationError):
            workflows.update_definition("EDIT", action_graph={"steps": [_log("b")]})

        workflows.pause("EDIT")
        updated = workflows.update_definition("EDIT", action_graph={"steps": [_log("b")]})
        assert updated.version == 2

    def test_unregistered_step_type_is_rejected(self, create_workflow):
        with pytest.raises(ValidationError):
            create_workflow("BROKEN", [{"id": "x", "type": "teleport"}])

    def test_backward_jump_is_rejected(self, create_workflow):
        with pytest.raises(ValidationError):
            create_workflow("LOOP", [_log("a"), dict(_log("b"), next="a")])


class TestExecutionRuns:
    def test_completed_run_reports_full_progress(self, workflows, create_workflow, event_bus):
        create_workflow(
            "GREET",
            [
                _log("hello", "hello {customer}"),
                {
                    "id": "total",
                    "type": "set_variable",
                    "config": {"name": "total", "expression": "amount * 2"},
                },
                {"id": "copy", "type": "set_variable", "config": {"values": {"who": "$customer"}}},
            ],
        )
        execution = workflows.trigger("GREET", {"customer": "acme", "amount": 21})
        assert execution.status == ExecutionStatus.PENDING
        assert execution.execution_number == "EXE-GREET-000001"

        done = workflows.run(execution.id)

        assert done.status == ExecutionStatus.COMPLETED
        assert done.completed_steps == done.total_steps == 3
        assert done.progress_percent == 100
        assert done.variables["who"] == "acme"
        assert float(done.variables["total"]) == 42
        assert len(event_bus.of_topic(Topics.EXECUTION_COMPLETED)) == 1
        assert workflows.get_workflow("GREET").successful_runs == 1

    def test_waiting_run_times_out_at_deadline(
        self, workflows, create_workflow, deterministic_clock
    ):
        create_workflow(
            "SLOW",
            [{"id": "wait", "type": "wait_for_signal", "config": {"token": "never"}}],
            timeout_seconds=1,
        )
        execution = workflows.trigger("SLOW")

        waiting = workflows.run(execution.id)
        assert waiting.status == ExecutionStatus.WAITING
        assert waiting.resume_token == "never"

        deterministic_clock.advance(2)
        assert workflows.executor.enforce_timeouts() == 1

        timed_out = workflows.get_execution(execution.id)
        assert timed_out.status == ExecutionStatus.TIMEOUT
        workflow = workflows.get_workflow("SLOW")
        assert workflow.failed_runs == 1
        assert workflow.total_runs == 1
        assert workflow.running_count == 0

    def test_signal_resumes_waiting_step(self, workflows, create_workflow):
        create_workflow(
            "CONFIRM",
            [
                {
                    "id": "wait",
                    "type": "wait_for_signal",
                    "config": {"token": "confirm:{order}", "output_variable": "reply"},
                },
                _log("after"),
            ],
        )
        execution = workflows.trigger("CONFIRM", {"order": "SO-1"})
        workflows.run(execution.id)

        assert workflows.signal("confirm:SO-2", {"ok": True}) == []
        resumed = workflows.signal("confirm:SO-1", {"ok": True})

        assert [r.id for r in resumed] == [execution.id]
        assert resumed[0].status == ExecutionStatus.COMPLETED
        assert resumed[0].variables["reply"] == {"ok": True}

    def test_cancel_waiting_run_and_reject_cancel_of_finished_run(
        self, workflows, create_workflow
    ):
        create_workflow("HOLD", [{"id": "wait", "type": "wait_for_signal"}])
        create_workflow("QUICK", [_log("a")])

        waiting = workflows.run(workflows.trigger("HOLD").id)
        cancelled = workflows.cancel(waiting.id)
        assert cancelled.status == ExecutionStatus.CANCELLED

        finished = workflows.run(workflows.trigger("QUICK").id)
        with pytest.raises(InvalidExecutionTransitionError):
            workflows.cancel(finished.id)

    def test_failed_step_jumps_to_failure_handler(self, workflows, create_workflow):
        create_workflow(
            "GUARDED",
            [
                {"id": "boom", "type": "fail", "config": {"message": "bad {order}"}, "on_failure": "recover"},
                _log("skipped"),
                _log("recover", "recovering"),
            ],
        )

        done = workflows.run(workflows.trigger("GUARDED", {"order": "SO-9"}).id)

        assert done.status == ExecutionStatus.COMPLETED
        assert done.variables["_error"]["step"] == "boom"
        assert "bad SO-9" in done.variables["_error"]["message"]

    def test_unhandled_failure_retries_then_fails(
        self, workflows, create_workflow, deterministic_clock, event_bus
    ):
        create_workflow(
            "FLAKY",
            [{"id": "boom", "type": "fail", "config": {"message": "upstream down"}}],
            retry_policy={"max_retries": 1, "initial_delay_ms": 1000, "multiplier": 2, "max_delay_ms": 5000},
        )
        execution = workflows.trigger("FLAKY")

        retrying = workflows.run(execution.id)
        assert retrying.status == ExecutionStatus.RETRYING
        assert retrying.retry_count == 1
        assert retrying.next_attempt_at is not None
        assert workflows.executor.release_due_retries() == 0

        deterministic_clock.advance(2)
        assert workflows.executor.release_due_retries() == 1
        assert workflows.get_execution(execution.id).status == ExecutionStatus.PENDING

        failed = workflows.run(execution.id)
        assert failed.status == ExecutionStatus.FAILED
        assert failed.error_step == "boom"
        assert "upstream down" in failed.error_message
        assert len(event_bus.of_topic(Topics.EXECUTION_FAILED)) == 1

    def test_step_condition_skips_step(self, workflows, create_workflow):
        create_workflow(
            "BIG-ONLY",
            [
                {
                    "id": "flag",
                    "type": "set_variable",
                    "config": {"values": {"flagged": True}},
                    "condition": "amount >= 10000",
                },
                _log("done"),
            ],
        )

        small = workflows.run(workflows.trigger("BIG-ONLY", {"amount": 50}).id)
        big = workflows.run(workflows.trigger("BIG-ONLY", {"amount": 20_000}).id)

        assert small.status == big.status == ExecutionStatus.COMPLETED
        assert "flagged" not in small.variables
        assert big.variables["flagged"] is True

    def test_rule_set_step_writes_back_context(self, workflows, create_workflow, rules):
        rules.create_rule(
            "ROUTE-BIG",
            "Route big orders",
            "SalesOrder",
            RuleType.ROUTING,
            "amount > 1000",
            [{"type": "set", "field": "queue", "value": "review"}],
        )
        rules.create_rule_set(
            "ORDER-ROUTING", "Order routing", "SalesOrder", ExecutionMode.SEQUENTIAL, ["ROUTE-BIG"]
        )
        create_workflow(
            "ROUTE",
            [{"id": "rules", "type": "evaluate_rule_set", "config": {"rule_set": "ORDER-ROUTING"}}],
        )

        done = workflows.run(workflows.trigger("ROUTE", {"amount": 5000}).id)

        assert done.status == ExecutionStatus.COMPLETED
        assert done.variables["queue"] == "review"


class TestApprovalSteps:
    def test_approval_event_resumes_waiting_execution(
        self, workflows, create_workflow, approvals, triggers, event_bus
    ):
        approver = uuid4()
        approvals.create_workflow(
            "PO-ONE",
            "One signature",
            "PurchaseOrder",
            ApprovalPolicy.ANY_APPROVER,
            [LevelSpec(ApproverSelector.SPECIFIC_USER, approver_ids=(approver,))],
        )
        create_workflow(
            "PO-FLOW",
            [
                {
                    "id": "approve",
                    "type": "request_approval",
                    "config": {
                        "document_kind": "PurchaseOrder",
                        "document_id": "$po_id",
                        "requester_id": "$requester",
                        "amount": "$amount",
                    },
                },
                _log("release", "PO released"),
            ],
        )
        execution = workflows.trigger(
            "PO-FLOW",
            {"po_id": str(uuid4()), "requester": str(TEST_ACTOR_ID), "amount": 25_000},
        )
        waiting = workflows.run(execution.id)
        assert waiting.status == ExecutionStatus.WAITING
        request_id = waiting.variables["approval_request_id"]
        assert waiting.resume_token == f"approval:{request_id}"

        approvals.decide(UUID(request_id), approver, ApprovalAction.APPROVED)
        event = event_bus.of_topic(Topics.APPROVAL_APPROVED)[-1]

        assert triggers.process_event(event) == 1
        assert workflows.get_execution(execution.id).status == ExecutionStatus.COMPLETED


class TestTriggers:
    def test_event_driven_workflow_starts_on_matching_topic(
        self, workflows, create_workflow, triggers, event_bus
    ):
        create_workflow(
            "ON-ORDER",
            [_log("a")],
            trigger_kind="EventDriven",
            trigger_config={"topics": ["orders.*"], "condition": "amount > 100"},
        )

        assert triggers.process_event(event_bus.publish("orders.created", {"amount": 50})) == 0
        assert triggers.process_event(event_bus.publish("orders.created", {"amount": 500})) == 1
        assert triggers.process_event(event_bus.publish("invoices.created", {"amount": 500})) == 0

        page = workflows.list_executions("ON-ORDER")
        assert page.total == 1
        assert page.items[0].trigger_data["event"]["topic"] == "orders.created"

    def test_wildcard_ignores_automation_events(
        self, workflows, create_workflow, triggers, event_bus
    ):
        create_workflow(
            "AUDIT-ALL", [_log("a")], trigger_kind="EventDriven", trigger_config={"topics": ["*"]}
        )

        assert triggers.process_event(event_bus.publish(Topics.EXECUTION_COMPLETED, {})) == 0
        assert triggers.process_event(event_bus.publish("orders.created", {})) == 1

    def test_event_driven_workflow_requires_topics(self, create_workflow):
        with pytest.raises(ValidationError):
            create_workflow("NO-TOPICS", [_log("a")], trigger_kind="EventDriven")

    def test_webhook_is_idempotent_per_key(self, workflows, create_workflow, triggers):
        create_workflow("HOOK", [_log("a")], trigger_kind="Webhook")
        triggers.create_webhook_endpoint("shop", "Shop callback", "HOOK")

        first = triggers.receive_webhook(
            "shop", "post", {"Idempotency-Key": "evt-1"}, {"order": "SO-1"}
        )
        again = triggers.receive_webhook(
            "shop", "POST", {"idempotency-key": "evt-1"}, {"order": "SO-1"}
        )

        assert first.response_status == 202
        assert first.execution_id is not None
        assert again.duplicate
        assert again.id == first.id
        assert workflows.list_executions("HOOK").total == 1

    def test_webhook_for_paused_workflow_is_unprocessable(
        self, workflows, create_workflow, triggers
    ):
        create_workflow("HOOK-PAUSED", [_log("a")], trigger_kind="Webhook")
        triggers.create_webhook_endpoint("paused", "Paused", "HOOK-PAUSED")
        workflows.pause("HOOK-PAUSED")

        response = triggers.receive_webhook("paused", "POST", {}, {"x": 1})

        assert response.response_status == 422
        assert response.execution_id is None

    def test_scheduled_job_fires_when_due(
        self, workflows, create_workflow, triggers, deterministic_clock
    ):
        create_workflow("HOURLY", [_log("a")])
        job = triggers.create_scheduled_job("HOURLY", "0 * * * *", actor_id=TEST_ACTOR_ID)
        assert job.next_run_at.hour == 10

        assert triggers.fire_due_jobs() == (0, 0)
        deterministic_clock.advance(hours=1)
        assert triggers.fire_due_jobs() == (1, 1)

        fired = triggers.get_job(job.id)
        assert fired.run_count == 1
        assert fired.next_run_at.hour == 11
        assert workflows.list_executions("HOURLY").total == 1

    @pytest.mark.parametrize(
        "policy, expected, fired_hours",
        [
            ("RunImmediately", (1, 1), ["12"]),
            ("Skip", (0, 0), []),
            ("RunAll", (1, 3), ["10", "11", "12"]),
        ],
    )
    def test_misfire_policy_after_missed_slots(
        self, workflows, create_workflow, triggers, deterministic_clock, policy, expected, fired_hours
    ):
        create_workflow("CATCH-UP", [_log("a")])
        job = triggers.create_scheduled_job("CATCH-UP", "0 * * * *", misfire_policy=policy)

        deterministic_clock.advance(hours=3)
        assert triggers.fire_due_jobs() == expected

        after = triggers.get_job(job.id)
        assert after.next_run_at.hour == 13
        assert after.run_count == len(fired_hours)
        assert after.last_run_status == ("Skipped" if not fired_hours else "Triggered")
        executions = workflows.list_executions("CATCH-UP").items
        assert sorted(e.trigger_data["scheduled_for"][11:13] for e in executions) == fired_hours

    def test_run_now_fires_without_moving_the_schedule(
        self, workflows, create_workflow, triggers
    ):
        create_workflow("NIGHTLY", [_log("a")])
        job = triggers.create_scheduled_job("NIGHTLY", "0 2 * * *", parameters={"batch": "eod"})
        triggers.pause_job(job.id)

        execution = triggers.run_now(job.id, actor_id=TEST_ACTOR_ID)

        assert execution.status == ExecutionStatus.PENDING
        assert execution.trigger_data["batch"] == "eod"
        after = triggers.get_job(job.id)
        assert after.run_count == 1
        assert after.next_run_at == job.next_run_at
        assert not after.is_active
        assert triggers.fire_due_jobs() == (0, 0)

    def test_run_now_unknown_job(self, triggers):
        with pytest.raises(ScheduledJobNotFoundError):
            triggers.run_now(uuid4())


class TestAdmission:
    def test_slot_cap_keeps_extra_runs_pending(self, workflows, create_workflow):
        create_workflow(
            "GATE",
            [{"id": "wait", "type": "wait_for_signal", "config": {"token": "go"}}, _log("after")],
            max_concurrent_runs=1,
        )
        first = workflows.trigger("GATE")
        second = workflows.trigger("GATE")

        assert workflows.run(first.id).status == ExecutionStatus.WAITING
        assert workflows.run(second.id).status == ExecutionStatus.PENDING
        assert workflows.executor.admit_pending() == []

        workflows.signal("go")
        assert workflows.executor.admit_pending() == [second.id]
        assert workflows.get_execution(second.id).status == ExecutionStatus.RUNNING

    def test_higher_priority_admitted_first_then_fifo(self, workflows, create_workflow):
        create_workflow("QUEUE", [_log("a")], max_concurrent_runs=3)
        routine = workflows.trigger("QUEUE")
        urgent = workflows.trigger("QUEUE", priority=5)
        also_urgent = workflows.trigger("QUEUE", priority=5)

        assert workflows.executor.admit_pending() == [urgent.id, also_urgent.id, routine.id]
