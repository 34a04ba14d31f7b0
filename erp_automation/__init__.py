"""
erp_automation -- Workflow automation: triggers, durable executions, scheduling.

Workflows are published action graphs of registered steps.  Executions are
created by manual triggers, cron schedules, webhooks and domain events, and
advanced by the AutomationScheduler under concurrency slots and leases.

Architecture:
    erp_automation/ sits beside erp_services/.  It depends on erp_kernel
    and erp_engines; step handlers reach the rule and approval services
    only through injected StepServices factories.

Invariants:
    - Executions checkpoint after every step and resume from the checkpoint.
    - running_count never exceeds max_concurrent_runs.
    - All timestamps come from the injected Clock.
    - Terminal execution statuses are final.
"""
