"""
Module: erp_engines
Responsibility:
    Pure calculation layer shared by the stateful services: approval
    policy, the rule expression language and decision tables, recurrence
    dates, cost-layer consumption and credit risk tiers.

Architecture position:
    Engines -- zero I/O.  May import erp_kernel.domain and
    erp_kernel.exceptions only.  MUST NOT import services or models.

Invariants enforced:
    - Purity: engines never read the wall clock; the current instant is
      passed in by the calling service.
    - Determinism: identical inputs always produce identical outputs.
    - Money in integer minor units; quantities and unit costs in Decimal.

Audit relevance:
    Selected entry points are wrapped by ``@traced_engine`` and emit an
    ENGINE_TRACE debug record with an input fingerprint and duration.
"""
