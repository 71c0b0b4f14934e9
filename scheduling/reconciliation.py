"""
Reconciliation of materialized sessions against a schedule's rule.

This module is the only write path for sessions with origin='recurring'.
For one schedule it computes the expected occurrences, compares them with
the future recurring sessions already stored, and when they differ replaces
the whole future window in a single transaction:

1. Load the schedule fresh from the database (must be active)
2. Generate the expected occurrences over the horizon
3. Delete future recurring sessions of the schedule
4. Insert one session per expected occurrence

Past sessions and manual sessions are never touched. Edits made to future
recurring sessions (a moved time, a confirmed status) are discarded when the
window is replaced.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from .exceptions import (
    PartialReconciliationError,
    ScheduleNotFoundError,
    StaleScheduleError,
    StoreReadError,
    StoreWriteError,
)
from .models import RecurringSchedule, Session
from .occurrences import generate_occurrences
from .types import (
    DEFAULT_HORIZON_MONTHS,
    ORIGIN_RECURRING,
    STATUS_SCHEDULED,
    ReconciliationResult,
)

logger = logging.getLogger(__name__)

_locks_guard = threading.Lock()
# Entries disappear once no thread holds or waits on the lock.
_schedule_locks: "weakref.WeakValueDictionary[int, threading.Lock]" = weakref.WeakValueDictionary()


@contextmanager
def schedule_lock(schedule_id: int):
    """Allow a single writer per schedule within this process."""
    with _locks_guard:
        lock = _schedule_locks.get(schedule_id)
        if lock is None:
            lock = threading.Lock()
            _schedule_locks[schedule_id] = lock
    with lock:
        yield


def get_horizon_months() -> int:
    """Configured generation horizon in months."""
    return getattr(settings, 'SCHEDULING_HORIZON_MONTHS', DEFAULT_HORIZON_MONTHS)


def reconcile_schedule(
    schedule_id: int,
    horizon_months: Optional[int] = None,
    now: Optional[datetime] = None
) -> ReconciliationResult:
    """
    Make a schedule's future recurring sessions match its rule.

    Running it twice with no state change in between returns zero counts
    the second time.

    Args:
        schedule_id: RecurringSchedule primary key
        horizon_months: Forward window (defaults to SCHEDULING_HORIZON_MONTHS)
        now: Current instant (defaults to timezone.now())

    Returns:
        ReconciliationResult with inserted/deleted counts

    Raises:
        ScheduleNotFoundError: If the schedule does not exist
        StaleScheduleError: If the schedule is inactive
        InvalidRuleError: If the schedule's rule is malformed
        StoreReadError: If loading data fails
        StoreWriteError: If deleting the stale sessions fails
        PartialReconciliationError: If inserting failed after the delete;
            the transaction is rolled back before this is raised
    """
    horizon_months = horizon_months or get_horizon_months()
    now = now or timezone.now()

    with schedule_lock(schedule_id):
        try:
            with transaction.atomic():
                result = _reconcile_locked(schedule_id, horizon_months, now)
        except PartialReconciliationError as exc:
            logger.error(f"{exc}. Previous sessions were kept; re-run reconciliation for this schedule.")
            raise

    if result.changed:
        logger.info(
            f"Reconciled schedule {schedule_id}: "
            f"{result.deleted} deleted, {result.inserted} inserted"
        )
    else:
        logger.debug(f"Schedule {schedule_id} already up to date")
    return result


def retire_schedule(schedule_id: int, now: Optional[datetime] = None) -> int:
    """
    Deactivate a schedule and remove its future recurring sessions.

    Returns:
        Number of sessions deleted
    """
    now = now or timezone.now()

    with schedule_lock(schedule_id):
        with transaction.atomic():
            schedule = _load_schedule(schedule_id)
            deleted = _delete_future_sessions(schedule_id, now)
            if schedule.is_active:
                schedule.is_active = False
                try:
                    schedule.save(update_fields=['is_active', 'updated_at'])
                except DatabaseError as exc:
                    raise StoreWriteError(f"Could not deactivate schedule {schedule_id}: {exc}") from exc

    logger.info(f"Retired schedule {schedule_id}: {deleted} future session(s) removed")
    return deleted


def _reconcile_locked(schedule_id: int, horizon_months: int, now: datetime) -> ReconciliationResult:
    schedule = _load_schedule(schedule_id)
    if not schedule.is_active:
        raise StaleScheduleError(schedule_id)

    expected = generate_occurrences(schedule.pattern, horizon_months, now)
    existing = _load_future_sessions(schedule_id, now)

    if _is_converged(schedule, expected, existing):
        return ReconciliationResult(schedule_id=schedule_id)

    deleted = _delete_future_sessions(schedule_id, now)
    inserted = _insert_sessions(schedule, expected, deleted)
    return ReconciliationResult(schedule_id=schedule_id, inserted=inserted, deleted=deleted)


def _load_schedule(schedule_id: int) -> RecurringSchedule:
    """Read the schedule row, locking it for the rest of the transaction."""
    try:
        return RecurringSchedule.objects.select_for_update().get(pk=schedule_id)
    except RecurringSchedule.DoesNotExist:
        raise ScheduleNotFoundError(schedule_id) from None
    except DatabaseError as exc:
        raise StoreReadError(f"Could not load schedule {schedule_id}: {exc}") from exc


def _load_future_sessions(schedule_id: int, now: datetime) -> List[Session]:
    try:
        return list(
            Session.objects.future_recurring_for_schedule(schedule_id, now).order_by('scheduled_at', 'id')
        )
    except DatabaseError as exc:
        raise StoreReadError(f"Could not load sessions of schedule {schedule_id}: {exc}") from exc


def _is_converged(
    schedule: RecurringSchedule,
    expected: List[datetime],
    existing: List[Session]
) -> bool:
    """True when the stored sessions are exactly the expected ones."""
    if len(existing) != len(expected):
        return False

    snapshot = (schedule.duration_minutes, schedule.session_type, schedule.session_value)
    for session, scheduled_at in zip(existing, expected):
        if session.scheduled_at != scheduled_at:
            return False
        if (session.duration_minutes, session.session_type, session.value) != snapshot:
            return False
    return True


def _delete_future_sessions(schedule_id: int, now: datetime) -> int:
    try:
        deleted, _ = Session.objects.future_recurring_for_schedule(schedule_id, now).delete()
    except DatabaseError as exc:
        raise StoreWriteError(f"Could not delete sessions of schedule {schedule_id}: {exc}") from exc
    return deleted


def _insert_sessions(schedule: RecurringSchedule, expected: List[datetime], deleted: int) -> int:
    """Bulk insert one recurring session per occurrence."""
    sessions = [
        Session(
            patient_id=schedule.patient_id,
            schedule=schedule,
            scheduled_at=scheduled_at,
            duration_minutes=schedule.duration_minutes,
            session_type=schedule.session_type,
            value=schedule.session_value,
            status=STATUS_SCHEDULED,
            paid=False,
            origin=ORIGIN_RECURRING,
        )
        for scheduled_at in expected
    ]

    if sessions:
        try:
            Session.objects.bulk_create(sessions)
        except DatabaseError as exc:
            raise PartialReconciliationError(
                schedule.id,
                expected_count=len(expected),
                deleted_count=deleted,
                reason=str(exc),
            ) from exc
    return len(sessions)
