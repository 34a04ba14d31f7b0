"""
Configuration schema (``erp_config.schema``).

Frozen dataclasses describing every tunable the engines accept.  Defaults
here are the production defaults; a YAML file only needs to name the
values it overrides.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite://"
    echo: bool = False
    pool_size: int = 20


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 5
    base_delay_ms: int = 100
    multiplier: float = 2.0
    max_delay_ms: int = 10_000


@dataclass(frozen=True)
class AutomationSettings:
    worker_count: int = 4
    tick_interval_seconds: float = 1.0
    lease_seconds: int = 30
    default_timeout_seconds: int = 3600
    default_max_concurrent_runs: int = 10
    default_priority: int = 5
    max_consecutive_failures: int = 3
    max_steps_per_advance: int = 100


@dataclass(frozen=True)
class ApprovalSettings:
    privileged_roles: tuple[str, ...] = ("approval_admin",)


@dataclass(frozen=True)
class CreditSettings:
    default_hold_threshold_percent: int = 90
    default_auto_hold: bool = True


@dataclass(frozen=True)
class ErpSettings:
    """Root settings object handed to ``build_context``."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    automation: AutomationSettings = field(default_factory=AutomationSettings)
    approval: ApprovalSettings = field(default_factory=ApprovalSettings)
    credit: CreditSettings = field(default_factory=CreditSettings)
