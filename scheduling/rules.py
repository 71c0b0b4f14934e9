"""
Rule evaluation for recurrence patterns.

Pure functions only: no database access and no clock reads. Instants are
naive datetimes in local time; the occurrence generator converts to and from
timezone-aware values.

Every frequency steps through candidate instants that sit on the pattern's
time slot (``start_time``) and never before ``start_date``:

- daily:    every ``interval`` days, counted from ``start_date``
- weekly:   every day whose weekday is in ``days_of_week``
- biweekly: as weekly, but only in even weeks counted from ``start_date``
- monthly:  the anchor day of month every ``interval`` months, clamped to
            the last day of shorter months
- custom:   days in ``days_of_week`` on an ``interval``-day lattice counted
            from ``start_date``
"""

import math
from datetime import date, datetime, time, timedelta

from dateutil.relativedelta import relativedelta

from .exceptions import InvalidRuleError
from .types import (
    BIWEEKLY,
    CUSTOM,
    DAILY,
    FREQUENCIES,
    MONTHLY,
    WEEKLY,
    RecurrencePattern,
)


def day_of_week(day: date) -> int:
    """Weekday with 0=Sunday .. 6=Saturday."""
    return day.isoweekday() % 7


def validate_pattern(pattern: RecurrencePattern) -> None:
    """
    Validate a recurrence pattern.

    An empty ``days_of_week`` is not an error: the pattern is valid and
    simply matches nothing.

    Raises:
        InvalidRuleError: If any field is missing or out of range
    """
    if pattern.frequency not in FREQUENCIES:
        raise InvalidRuleError(f"Unknown frequency: {pattern.frequency!r}")

    if not isinstance(pattern.interval, int) or pattern.interval < 1:
        raise InvalidRuleError("Interval must be a positive integer")

    if not isinstance(pattern.sessions_per_cycle, int) or pattern.sessions_per_cycle < 1:
        raise InvalidRuleError("Sessions per cycle must be a positive integer")

    if not isinstance(pattern.start_date, date):
        raise InvalidRuleError("Start date is required")

    if not isinstance(pattern.start_time, time):
        raise InvalidRuleError("Start time is required")

    bad_weekdays = sorted(d for d in pattern.days_of_week if not 0 <= d <= 6)
    if bad_weekdays:
        raise InvalidRuleError(f"Days of week must be between 0 (Sunday) and 6 (Saturday): {bad_weekdays}")

    bad_month_days = sorted(d for d in pattern.days_of_month if not 1 <= d <= 31)
    if bad_month_days:
        raise InvalidRuleError(f"Days of month must be between 1 and 31: {bad_month_days}")


def matches(pattern: RecurrencePattern, instant: datetime) -> bool:
    """Decide whether ``instant`` is an occurrence of ``pattern``."""
    if not _on_slot(pattern, instant):
        return False

    day = instant.date()
    frequency = pattern.frequency

    if frequency == DAILY:
        return _days_since_start(pattern, day) % pattern.interval == 0

    if frequency == WEEKLY:
        return day_of_week(day) in pattern.days_of_week

    if frequency == BIWEEKLY:
        week_index = _days_since_start(pattern, day) // 7
        return day_of_week(day) in pattern.days_of_week and week_index % 2 == 0

    if frequency == MONTHLY:
        months = _months_since_start(pattern, day)
        if months % pattern.interval:
            return False
        return day == _anchor_day(pattern, months)

    if frequency == CUSTOM:
        return (
            day_of_week(day) in pattern.days_of_week
            and _days_since_start(pattern, day) % pattern.interval == 0
        )

    return False


def advance(pattern: RecurrencePattern, instant: datetime) -> datetime:
    """Return the next candidate instant to test; always later than ``instant``."""
    frequency = pattern.frequency

    if frequency in (DAILY, CUSTOM):
        return instant + timedelta(days=pattern.interval)

    if frequency == MONTHLY:
        # Computed from the anchor so a clamped month never shifts later ones.
        months = _months_since_start(pattern, instant.date())
        months = months - months % pattern.interval + pattern.interval
        return _slot(pattern, _anchor_day(pattern, months))

    return instant + timedelta(days=1)


def first_candidate(pattern: RecurrencePattern, not_before: datetime) -> datetime:
    """
    First candidate instant at or after ``not_before``.

    The later of the pattern start and ``not_before`` is snapped to the
    time slot; if that slot has already elapsed the candidate rolls to the
    next day. Daily, custom and monthly candidates are then moved onto the
    pattern's lattice.
    """
    candidate = _slot(pattern, pattern.start_date)
    if candidate < not_before:
        candidate = _slot(pattern, not_before.date())
        if candidate < not_before:
            candidate += timedelta(days=1)

    if pattern.frequency in (DAILY, CUSTOM):
        offset = _days_since_start(pattern, candidate.date()) % pattern.interval
        if offset:
            candidate += timedelta(days=pattern.interval - offset)

    elif pattern.frequency == MONTHLY:
        months = _months_since_start(pattern, candidate.date())
        months += -months % pattern.interval
        aligned = _slot(pattern, _anchor_day(pattern, months))
        while aligned < candidate:
            months += pattern.interval
            aligned = _slot(pattern, _anchor_day(pattern, months))
        candidate = aligned

    return candidate


def estimate_sessions_per_month(pattern: RecurrencePattern) -> int:
    """Rough monthly session count, used for display and billing estimates."""
    frequency = pattern.frequency

    if frequency == DAILY:
        return math.ceil(30 / pattern.interval)
    if frequency == WEEKLY:
        return (len(pattern.days_of_week) or 1) * 4 * pattern.interval
    if frequency == BIWEEKLY:
        return (len(pattern.days_of_week) or 1) * 2 * pattern.interval
    if frequency == MONTHLY:
        return (len(pattern.days_of_month) or pattern.sessions_per_cycle or 1) * pattern.interval
    if frequency == CUSTOM:
        return pattern.sessions_per_cycle or 4
    return 4


def _slot(pattern: RecurrencePattern, day: date) -> datetime:
    """Combine a date with the pattern's time slot (minute precision)."""
    return datetime.combine(day, time(pattern.start_time.hour, pattern.start_time.minute))


def _on_slot(pattern: RecurrencePattern, instant: datetime) -> bool:
    if instant.date() < pattern.start_date:
        return False
    return instant.replace(tzinfo=None) == _slot(pattern, instant.date())


def _days_since_start(pattern: RecurrencePattern, day: date) -> int:
    return (day - pattern.start_date).days


def _months_since_start(pattern: RecurrencePattern, day: date) -> int:
    start = pattern.start_date
    return (day.year - start.year) * 12 + (day.month - start.month)


def _anchor_day(pattern: RecurrencePattern, months: int) -> date:
    """Anchor day ``months`` after the start, clamped to the month's last day."""
    return pattern.start_date + relativedelta(months=months)
