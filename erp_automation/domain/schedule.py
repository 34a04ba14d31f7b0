"""
Pure cron evaluation with time zones and misfire planning.

Contract:
    ``parse_cron``, ``next_fire_time`` and ``plan_fires`` are PURE -- no I/O,
    no clock reads.  The scheduler passes the current instant in.

Architecture: erp_automation/domain.  ZERO I/O.

Cron format:
    ``minute hour day_of_month month day_of_week`` with ``*``, values,
    ranges (``1-5``), lists (``1,15``) and steps (``*/5``, ``1-10/2``).
    Day of week is 0-6 from Sunday; 7 is accepted as Sunday.  Month and
    weekday names (``JAN``, ``MON``) are accepted.  When both day of month
    and day of week are restricted a day matching either fires.  Aliases:
    ``@yearly``, ``@monthly``, ``@weekly``, ``@daily``, ``@hourly``.

Time zones:
    Cron fields are read in the job's IANA zone (``zoneinfo``); every
    returned instant is UTC.  A local time skipped by a DST transition
    does not fire; a repeated local time fires once (first occurrence).

Invariants enforced:
    - All timestamps from the caller (no datetime.now() calls).
    - ``next_fire_time(spec, after)`` is strictly after ``after``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from erp_automation.domain.types import MisfirePolicy
from erp_kernel.exceptions import InvalidCronExpressionError

# Hard cap on missed slots replayed by RunAll in a single tick
MAX_CATCH_UP_FIRES = 1000

_ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_MONTH_NAMES = {
    name: i
    for i, name in enumerate(
        ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"],
        start=1,
    )
}
_DAY_NAMES = {name: i for i, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])}

_SEARCH_HORIZON = timedelta(days=366 * 5)


# =============================================================================
# CronSpec
# =============================================================================


@dataclass(frozen=True)
class CronSpec:
    """Parsed cron expression; each field is a frozenset of valid values."""

    expression: str
    minutes: frozenset[int] = field(default_factory=lambda: frozenset(range(60)))
    hours: frozenset[int] = field(default_factory=lambda: frozenset(range(24)))
    days_of_month: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 32)))
    months: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 13)))
    days_of_week: frozenset[int] = field(default_factory=lambda: frozenset(range(7)))
    dom_restricted: bool = False
    dow_restricted: bool = False

    def matches_day(self, dt: datetime) -> bool:
        cron_dow = (dt.weekday() + 1) % 7
        dom_ok = dt.day in self.days_of_month
        dow_ok = cron_dow in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def matches(self, dt: datetime) -> bool:
        """Check a (local, wall-clock) datetime against the spec."""
        return (
            dt.month in self.months
            and self.matches_day(dt)
            and dt.hour in self.hours
            and dt.minute in self.minutes
        )


def _value(token: str, names: dict[str, int], expression: str) -> int:
    upper = token.upper()
    if upper in names:
        return names[upper]
    try:
        return int(token)
    except ValueError:
        raise InvalidCronExpressionError(expression, f"not a number: {token!r}") from None


def _parse_field(
    field_str: str,
    min_val: int,
    max_val: int,
    expression: str,
    names: dict[str, int] | None = None,
) -> frozenset[int]:
    names = names or {}
    values: set[int] = set()

    for part in field_str.split(","):
        part = part.strip()
        if not part:
            raise InvalidCronExpressionError(expression, "empty list element")

        step = 1
        if "/" in part:
            part, step_str = part.split("/", 1)
            step = _value(step_str, {}, expression)
            if step <= 0:
                raise InvalidCronExpressionError(expression, f"step must be positive: {step}")

        if part == "*":
            start, end = min_val, max_val
        elif "-" in part:
            s, e = part.split("-", 1)
            start, end = _value(s, names, expression), _value(e, names, expression)
            if start > end:
                raise InvalidCronExpressionError(expression, f"range start > end: {part}")
        else:
            start = _value(part, names, expression)
            end = max_val if step > 1 else start

        if start < min_val or end > max_val:
            raise InvalidCronExpressionError(
                expression, f"value outside [{min_val}, {max_val}]: {part}"
            )
        values.update(range(start, end + 1, step))

    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    """
    Parse a 5-field cron expression or an ``@alias``.

    Raises:
        InvalidCronExpressionError: malformed expression.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidCronExpressionError(str(expression), "empty expression")
    text = _ALIASES.get(expression.strip().lower(), expression.strip())
    parts = text.split()
    if len(parts) != 5:
        raise InvalidCronExpressionError(expression, f"expected 5 fields, got {len(parts)}")

    days_of_week = _parse_field(parts[4], 0, 7, expression, _DAY_NAMES)
    if 7 in days_of_week:
        days_of_week = (days_of_week - {7}) | {0}

    return CronSpec(
        expression=expression,
        minutes=_parse_field(parts[0], 0, 59, expression),
        hours=_parse_field(parts[1], 0, 23, expression),
        days_of_month=_parse_field(parts[2], 1, 31, expression),
        months=_parse_field(parts[3], 1, 12, expression, _MONTH_NAMES),
        days_of_week=frozenset(days_of_week),
        dom_restricted=parts[2] != "*",
        dow_restricted=parts[4] != "*",
    )


def resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidCronExpressionError(name, "unknown time zone") from None


# =============================================================================
# Next fire time
# =============================================================================


def next_fire_time(spec: CronSpec, after: datetime, tz_name: str = "UTC") -> datetime:
    """
    First instant strictly after ``after`` matching ``spec`` in ``tz_name``.

    Walks local wall-clock time, jumping whole months, days and hours that
    cannot match, so the search is bounded by the number of distinct
    matching hours rather than minutes.

    Raises:
        InvalidCronExpressionError: the spec never fires (e.g. ``0 0 31 2 *``).
    """
    if after.tzinfo is None:
        raise ValueError("after must be timezone-aware")
    zone = resolve_zone(tz_name)
    local = after.astimezone(zone).replace(second=0, microsecond=0, tzinfo=None)
    candidate = local + timedelta(minutes=1)
    limit = local + _SEARCH_HORIZON

    while candidate <= limit:
        if candidate.month not in spec.months:
            year = candidate.year + (1 if candidate.month == 12 else 0)
            month = 1 if candidate.month == 12 else candidate.month + 1
            candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
            continue
        if not spec.matches_day(candidate):
            candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if candidate.hour not in spec.hours:
            candidate = (candidate + timedelta(hours=1)).replace(minute=0)
            continue
        if candidate.minute not in spec.minutes:
            candidate += timedelta(minutes=1)
            continue

        instant = _to_utc(candidate, zone)
        if instant is not None and instant > after:
            return instant
        candidate += timedelta(minutes=1)

    raise InvalidCronExpressionError(spec.expression, "never fires")


def _to_utc(local: datetime, zone: ZoneInfo) -> datetime | None:
    """UTC instant of a local wall time, or None if DST skipped it."""
    aware = local.replace(tzinfo=zone, fold=0)
    instant = aware.astimezone(timezone.utc)
    if instant.astimezone(zone).replace(tzinfo=None) != local:
        return None
    return instant


# =============================================================================
# Misfire planning
# =============================================================================


@dataclass(frozen=True)
class FirePlan:
    """Slots to fire now and the job's new ``next_run_at``."""

    fire_times: tuple[datetime, ...]
    next_run_at: datetime
    missed: int = 0


def plan_fires(
    spec: CronSpec,
    tz_name: str,
    next_run_at: datetime,
    now: datetime,
    policy: MisfirePolicy,
) -> FirePlan:
    """
    Decide which due slots fire at ``now``.

    A job is due when ``next_run_at <= now``.  The slot at ``next_run_at``
    and every later slot ``<= now`` are due; more than one due slot means
    the scheduler woke up late (a misfire):

    - RunImmediately: fire once now, for the latest due slot.
    - Skip: fire nothing if more than one slot was missed; otherwise
      fire the single due slot.  ``next_run_at`` advances past ``now``.
    - RunAll: fire once per due slot, oldest first (capped at
      MAX_CATCH_UP_FIRES).
    """
    if next_run_at > now:
        return FirePlan(fire_times=(), next_run_at=next_run_at)

    due = [next_run_at]
    cursor = next_run_at
    while True:
        following = next_fire_time(spec, cursor, tz_name)
        if following > now:
            break
        due.append(following)
        cursor = following
        if len(due) >= MAX_CATCH_UP_FIRES:
            following = next_fire_time(spec, now, tz_name)
            break

    missed = len(due) - 1
    if policy == MisfirePolicy.RUN_ALL:
        fires = tuple(due)
    elif policy == MisfirePolicy.SKIP:
        fires = () if missed else (due[0],)
    else:
        fires = (due[-1],)
    return FirePlan(fire_times=fires, next_run_at=following, missed=missed)
