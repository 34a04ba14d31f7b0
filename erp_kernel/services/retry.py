"""
Retry -- exponential backoff for transient store failures.

Responsibility:
    Re-runs a unit of work when the store reports a transient failure
    (serialization conflict, lock timeout, dropped connection).  Business
    rule failures are never retried: they propagate on the first attempt.

Architecture position:
    Kernel > Services -- wraps whole transactions at the caller boundary
    (the unit of work must open and commit its own session each attempt).

Failure modes:
    - The last transient error is re-raised once ``max_attempts`` is
      exhausted.  SQLAlchemy OperationalError is translated to
      StoreUnavailableError (Dependency) and IntegrityError to
      ConcurrencyConflictError (Conflict).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from erp_kernel.exceptions import (
    ConcurrencyConflictError,
    ConflictError,
    DependencyError,
    StoreUnavailableError,
)
from erp_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(base * multiplier^(attempt-1), max)``."""

    max_attempts: int = 5
    base_delay_ms: int = 100
    multiplier: float = 2.0
    max_delay_ms: int = 10_000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def compute_backoff_ms(self, attempt: int) -> int:
        """Delay before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        delay = self.base_delay_ms * (self.multiplier ** (attempt - 1))
        return int(min(delay, self.max_delay_ms))


def translate_store_error(exc: Exception, operation: str) -> Exception:
    """Map SQLAlchemy errors onto the error taxonomy."""
    if isinstance(exc, IntegrityError):
        return ConcurrencyConflictError("store", operation, str(exc.orig))
    if isinstance(exc, (OperationalError, DBAPIError)):
        return StoreUnavailableError(operation, str(getattr(exc, "orig", exc)))
    return exc


def is_transient(exc: BaseException) -> bool:
    return isinstance(
        exc, (OperationalError, DependencyError, ConflictError)
    ) and not isinstance(exc, IntegrityError)


def run_with_retry(
    work: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    operation: str = "unit_of_work",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``work`` until it succeeds or a non-transient error occurs.

    ``sleep`` is injectable so tests never wait on wall-clock time.
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return work()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    "retry_exhausted",
                    extra={"operation": operation, "attempts": attempt},
                )
                translated = translate_store_error(exc, operation)
                if translated is exc:
                    raise
                raise translated from exc
            delay_ms = policy.compute_backoff_ms(attempt)
            logger.warning(
                "transient_failure_retrying",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "delay_ms": delay_ms,
                    "error": type(exc).__name__,
                },
            )
            sleep(delay_ms / 1000)
            attempt += 1
