"""
erp_engines.recurrence -- Next-run dates for recurring journals.

Responsibility:
    Computes the first and subsequent run dates of a recurrence given its
    frequency, interval and optional day-of-month / day-of-week anchors.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - ``next_run_date(d, ...) > d`` for every valid input.
    - Month-based frequencies clamp the anchor day to the month's length
      (31 -> 29 in a leap February) without drifting: the anchor is
      re-applied on every step.
    - day_of_week uses Python's ``date.weekday()`` numbering (Monday = 0).

Failure modes:
    - ValueError for interval < 1 or anchors out of range.
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta

from erp_kernel.domain.ledger import RecurrenceFrequency

_MONTHS_PER_STEP = {
    RecurrenceFrequency.MONTHLY: 1,
    RecurrenceFrequency.QUARTERLY: 3,
    RecurrenceFrequency.YEARLY: 12,
}

_DAYS_PER_STEP = {
    RecurrenceFrequency.DAILY: 1,
    RecurrenceFrequency.WEEKLY: 7,
    RecurrenceFrequency.BIWEEKLY: 14,
}


def validate_recurrence(
    interval: int,
    day_of_month: int | None = None,
    day_of_week: int | None = None,
) -> None:
    if interval < 1:
        raise ValueError(f"interval must be >= 1, got {interval}")
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise ValueError(f"day_of_month must be 1..31, got {day_of_month}")
    if day_of_week is not None and not 0 <= day_of_week <= 6:
        raise ValueError(f"day_of_week must be 0..6, got {day_of_week}")


def add_months(day: date, months: int, anchor_day: int | None = None) -> date:
    """Move ``day`` by ``months`` calendar months, clamping to month end."""
    total = day.year * 12 + (day.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    wanted = anchor_day or day.day
    return date(year, month, min(wanted, calendar.monthrange(year, month)[1]))


def _align_weekday(day: date, day_of_week: int | None) -> date:
    if day_of_week is None:
        return day
    return day + timedelta(days=(day_of_week - day.weekday()) % 7)


def first_run_date(
    start_date: date,
    frequency: RecurrenceFrequency,
    day_of_month: int | None = None,
    day_of_week: int | None = None,
) -> date:
    """The first date on or after ``start_date`` that satisfies the anchors."""
    if frequency in _MONTHS_PER_STEP and day_of_month is not None:
        candidate = add_months(start_date, 0, day_of_month)
        if candidate < start_date:
            candidate = add_months(start_date, 1, day_of_month)
        return candidate
    if frequency in (RecurrenceFrequency.WEEKLY, RecurrenceFrequency.BIWEEKLY):
        return _align_weekday(start_date, day_of_week)
    return start_date


def next_run_date(
    current: date,
    frequency: RecurrenceFrequency,
    interval: int = 1,
    day_of_month: int | None = None,
    day_of_week: int | None = None,
) -> date:
    """
    The run date that follows ``current``.

    Example:
        >>> next_run_date(date(2024, 1, 31), RecurrenceFrequency.MONTHLY, 1, 31)
        datetime.date(2024, 2, 29)
    """
    validate_recurrence(interval, day_of_month, day_of_week)
    if frequency in _DAYS_PER_STEP:
        candidate = current + timedelta(days=_DAYS_PER_STEP[frequency] * interval)
        if frequency != RecurrenceFrequency.DAILY:
            candidate = _align_weekday(candidate, day_of_week)
        return candidate
    return add_months(current, _MONTHS_PER_STEP[frequency] * interval, day_of_month)
