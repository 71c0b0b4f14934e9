"""
Service layer for recurring schedule business logic.
Services are framework-agnostic and handle all business operations.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from django.db import DatabaseError, transaction
from django.utils import timezone

from . import rules
from .exceptions import NoActiveScheduleError, StoreReadError, StoreWriteError
from .models import RecurringSchedule, Session
from .occurrences import generate_occurrences
from .reconciliation import get_horizon_months, reconcile_schedule, retire_schedule
from .types import (
    ORIGIN_MANUAL,
    ReconciliationResult,
    RecurrencePattern,
    ScheduleDetailsUpdate,
)

logger = logging.getLogger(__name__)


def get_active_schedule(patient_id: int) -> RecurringSchedule:
    """
    Get the active schedule of a patient.

    Raises:
        NoActiveScheduleError: If the patient has no active schedule
        StoreReadError: If the lookup fails
    """
    try:
        schedule = RecurringSchedule.objects.active().for_patient(patient_id).first()
    except DatabaseError as exc:
        raise StoreReadError(f"Could not load schedule of patient {patient_id}: {exc}") from exc

    if schedule is None:
        raise NoActiveScheduleError(patient_id)
    return schedule


@transaction.atomic
def create_recurring_schedule(
    patient_id: int,
    pattern: RecurrencePattern,
    duration_minutes: int = 50,
    session_type: str = 'individual',
    session_value: Optional[Decimal] = None,
    materialize: bool = True,
    horizon_months: Optional[int] = None,
    now: Optional[datetime] = None
) -> Tuple[RecurringSchedule, Optional[ReconciliationResult]]:
    """
    Create a patient's recurring schedule and optionally materialize its sessions.

    Any schedule already active for the patient is retired first, which
    removes its future recurring sessions.

    Args:
        patient_id: Patient primary key
        pattern: Recurrence rule
        duration_minutes: Duration of each session
        session_type: individual, couple, group or online
        session_value: Price of each session
        materialize: Whether to generate sessions immediately
        horizon_months: Forward window for materialization
        now: Current instant (defaults to timezone.now())

    Returns:
        Tuple of (created RecurringSchedule, ReconciliationResult or None)
        The result's ``deleted`` includes sessions removed from retired
        schedules.

    Raises:
        InvalidRuleError: If the pattern is malformed
        ValueError: If duration_minutes is not positive
    """
    rules.validate_pattern(pattern)
    _validate_duration(duration_minutes)
    now = now or timezone.now()

    retired = 0
    for previous_id in RecurringSchedule.objects.active().for_patient(patient_id).values_list('id', flat=True):
        retired += retire_schedule(previous_id, now=now)

    try:
        schedule = RecurringSchedule.objects.create(
            patient_id=patient_id,
            frequency=pattern.frequency,
            interval=pattern.interval,
            days_of_week=sorted(pattern.days_of_week),
            days_of_month=sorted(pattern.days_of_month),
            sessions_per_cycle=pattern.sessions_per_cycle,
            start_date=pattern.start_date,
            start_time=pattern.start_time,
            duration_minutes=duration_minutes,
            session_type=session_type,
            session_value=session_value,
            is_active=True
        )
    except DatabaseError as exc:
        raise StoreWriteError(f"Could not create schedule for patient {patient_id}: {exc}") from exc

    logger.info(f"Created {pattern.frequency} schedule {schedule.id} for patient {patient_id}")

    result = None
    if materialize:
        result = reconcile_schedule(schedule.id, horizon_months=horizon_months, now=now)
        result.deleted += retired

    return schedule, result


def change_schedule_cadence(
    schedule: RecurringSchedule,
    pattern: RecurrencePattern,
    details: Optional[ScheduleDetailsUpdate] = None,
    horizon_months: Optional[int] = None,
    now: Optional[datetime] = None
) -> Tuple[RecurringSchedule, ReconciliationResult]:
    """
    Replace a schedule's rule.

    The current schedule is deactivated and a new one is created, so the
    history of past sessions keeps pointing at the rule that produced them.
    Session details are carried over unless ``details`` overrides them.

    Returns:
        Tuple of (new RecurringSchedule, ReconciliationResult). ``deleted``
        counts the future sessions removed from the replaced schedule.
    """
    details = details or ScheduleDetailsUpdate()

    new_schedule, result = create_recurring_schedule(
        patient_id=schedule.patient_id,
        pattern=pattern,
        duration_minutes=_pick(details.duration_minutes, schedule.duration_minutes),
        session_type=_pick(details.session_type, schedule.session_type),
        session_value=_pick(details.session_value, schedule.session_value),
        materialize=True,
        horizon_months=horizon_months,
        now=now
    )
    return new_schedule, result


@transaction.atomic
def update_schedule_details(
    schedule: RecurringSchedule,
    update_data: ScheduleDetailsUpdate
) -> RecurringSchedule:
    """
    Update duration, type or value of a schedule.

    Sessions already materialized keep their snapshot until the next
    reconciliation.

    Raises:
        ValueError: If duration_minutes is not positive
    """
    if update_data.duration_minutes is not None:
        _validate_duration(update_data.duration_minutes)

    fields_to_update = {
        'duration_minutes': update_data.duration_minutes,
        'session_type': update_data.session_type,
        'session_value': update_data.session_value,
    }
    _apply_field_updates(schedule, fields_to_update)

    schedule.save()
    return schedule


def deactivate_schedule(schedule: RecurringSchedule, now: Optional[datetime] = None) -> int:
    """
    Deactivate a schedule. Schedules are never hard-deleted.

    Returns:
        Number of future recurring sessions removed
    """
    return retire_schedule(schedule.id, now=now)


@transaction.atomic
def create_manual_session(
    patient_id: int,
    scheduled_at: datetime,
    duration_minutes: int = 50,
    session_type: str = 'individual',
    value: Optional[Decimal] = None,
    schedule: Optional[RecurringSchedule] = None,
    notes: str = ''
) -> Session:
    """
    Create a session directly, outside of any recurrence.

    Manual sessions are never modified by reconciliation, even when they
    reference a schedule.

    Raises:
        ValueError: If duration_minutes is not positive
    """
    _validate_duration(duration_minutes)

    session = Session.objects.create(
        patient_id=patient_id,
        schedule=schedule,
        scheduled_at=scheduled_at,
        duration_minutes=duration_minutes,
        session_type=session_type,
        value=value,
        status='scheduled',
        paid=False,
        origin=ORIGIN_MANUAL,
        notes=notes
    )
    return session


def preview_occurrences(
    schedule: RecurringSchedule,
    months: Optional[int] = None,
    now: Optional[datetime] = None
) -> List[datetime]:
    """Occurrences a schedule implies, without writing anything."""
    return generate_occurrences(schedule.pattern, months or get_horizon_months(), now)


def _validate_duration(duration_minutes: int) -> None:
    """Validate duration is positive."""
    if duration_minutes <= 0:
        raise ValueError("Duration must be positive")


def _apply_field_updates(obj, fields: dict) -> None:
    """Apply field updates to object if values are not None (DRY helper)."""
    for field_name, value in fields.items():
        if value is not None:
            setattr(obj, field_name, value)


def _pick(value, fallback):
    """Return value unless it is None."""
    return fallback if value is None else value
