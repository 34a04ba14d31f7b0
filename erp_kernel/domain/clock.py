"""
Clock -- Deterministic time abstraction.

Responsibility:
    Provides an injectable clock interface so that domain, engine, and service
    code never call ``datetime.now()`` or ``date.today()`` directly.  Period
    resolution, cron next-fire, due dates, lease expiry and execution
    deadlines all read time through a Clock.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O (except SystemClock,
    which is the one sanctioned I/O boundary for time).
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        All services that need current time receive a Clock instance via
        constructor injection.

    Guarantees:
        - ``now()`` returns a timezone-aware UTC ``datetime``.
        - ``today()`` is the UTC calendar date of ``now()``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current UTC time."""
        ...

    def today(self) -> date:
        return self.now().date()

    def monotonic_ms(self) -> int:
        """Milliseconds elapsed on this clock, used for durations."""
        return int(self.now().timestamp() * 1000)


class SystemClock(Clock):
    """Production clock that returns actual system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now()`` returns the same value on repeated calls until ``advance()``
          or ``set_time()`` is called.
        - ``tick()`` advances by exactly 1 second and returns the new time.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._advance = timedelta(0)

    def now(self) -> datetime:
        return (self._fixed_time + self._advance).astimezone(timezone.utc)

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._fixed_time = time
        self._advance = timedelta(0)

    def advance(self, seconds: float = 1, **delta: float) -> datetime:
        """Advance the clock by ``seconds`` plus any timedelta keywords."""
        self._advance += timedelta(seconds=seconds, **delta)
        return self.now()

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        return self.advance(1)
