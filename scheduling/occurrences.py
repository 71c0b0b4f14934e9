"""
Occurrence generation for recurrence patterns.

Drives the rule evaluator across a bounded time window and returns the
ordered, duplicate-free list of timezone-aware occurrence datetimes.
"""

import calendar
import logging
from datetime import date, datetime, time
from typing import List, Optional

from dateutil.relativedelta import relativedelta
from django.utils import timezone

from . import rules
from .types import (
    DEFAULT_HORIZON_MONTHS,
    MAX_DAYS_PER_MONTH,
    MIN_ITERATION_CEILING,
    RecurrencePattern,
)

logger = logging.getLogger(__name__)


def iteration_ceiling(horizon_months: int) -> int:
    """Maximum candidate steps for a horizon; never truncates daily patterns."""
    return max(MIN_ITERATION_CEILING, horizon_months * MAX_DAYS_PER_MONTH)


def generate_occurrences(
    pattern: RecurrencePattern,
    horizon_months: int = DEFAULT_HORIZON_MONTHS,
    now: Optional[datetime] = None
) -> List[datetime]:
    """
    Generate occurrences from ``now`` up to ``now + horizon_months``.

    Args:
        pattern: RecurrencePattern to expand
        horizon_months: Length of the forward window in months
        now: Current instant (defaults to timezone.now())

    Returns:
        Strictly increasing list of aware datetimes

    Raises:
        InvalidRuleError: If the pattern is malformed
        ValueError: If horizon_months is not positive
    """
    rules.validate_pattern(pattern)
    if horizon_months < 1:
        raise ValueError("Horizon must be at least one month")

    window_start = _to_local_naive(now or timezone.now())
    window_end = window_start + relativedelta(months=horizon_months)

    candidates = _collect_matches(
        pattern,
        window_start,
        window_end,
        iteration_ceiling(horizon_months)
    )
    return [_make_aware_datetime(c) for c in candidates]


def generate_occurrences_in_range(
    pattern: RecurrencePattern,
    range_start: datetime,
    range_end: datetime
) -> List[datetime]:
    """Generate occurrences within an arbitrary inclusive datetime range."""
    rules.validate_pattern(pattern)

    window_start = _to_local_naive(range_start)
    window_end = _to_local_naive(range_end)
    if window_start > window_end:
        raise ValueError("Range start must not be after range end")

    ceiling = max(MIN_ITERATION_CEILING, (window_end - window_start).days + 1)
    candidates = _collect_matches(pattern, window_start, window_end, ceiling)
    return [_make_aware_datetime(c) for c in candidates]


def count_occurrences_in_month(pattern: RecurrencePattern, year: int, month: int) -> int:
    """Number of occurrences falling in a calendar month."""
    last_day = calendar.monthrange(year, month)[1]
    range_start = datetime.combine(date(year, month, 1), time.min)
    range_end = datetime.combine(date(year, month, last_day), time.max)
    return len(generate_occurrences_in_range(pattern, range_start, range_end))


def _collect_matches(
    pattern: RecurrencePattern,
    window_start: datetime,
    window_end: datetime,
    ceiling: int
) -> List[datetime]:
    """Step candidates through the window and keep the matching ones."""
    matched = []
    candidate = rules.first_candidate(pattern, window_start)
    steps = 0

    while candidate <= window_end:
        if steps >= ceiling:
            logger.warning(
                f"Occurrence generation stopped after {steps} steps "
                f"({pattern.frequency} pattern starting {pattern.start_date})"
            )
            break
        steps += 1

        if rules.matches(pattern, candidate):
            matched.append(candidate)

        candidate = rules.advance(pattern, candidate)

    return matched


def _to_local_naive(value: datetime) -> datetime:
    """Express an instant as a naive datetime in the current time zone."""
    if timezone.is_aware(value):
        return timezone.localtime(value).replace(tzinfo=None)
    return value


def _make_aware_datetime(value: datetime) -> datetime:
    """Attach the current time zone to a naive local datetime."""
    return timezone.make_aware(value)
