"""
Tests for the recurring scheduling engine.

Tests cover:
- Rule evaluation (matching, stepping, validation, estimates)
- Occurrence generation over a horizon
- Reconciliation of materialized sessions
- Application services (schedule creation, cadence changes, manual sessions)
- Integrity audits (single patient, batch, cancellation, worker pool)
- API endpoints
- Management commands
"""

import threading
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import DatabaseError, connections
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from . import rules, services
from .auditor import IntegrityAuditor
from .exceptions import (
    InvalidRuleError,
    NoActiveScheduleError,
    PartialReconciliationError,
    ScheduleNotFoundError,
    StaleScheduleError,
    StoreReadError,
    StoreWriteError,
)
from .managers import SessionQuerySet
from .models import Patient, RecurringSchedule, Session
from .occurrences import (
    count_occurrences_in_month,
    generate_occurrences,
    iteration_ceiling,
)
from .reconciliation import _schedule_locks, reconcile_schedule, retire_schedule, schedule_lock
from .types import ReconciliationResult, RecurrencePattern, ScheduleDetailsUpdate


def aware(*args):
    """Aware datetime in the current time zone."""
    return timezone.make_aware(datetime(*args))


def local(value):
    """Naive local representation of an aware datetime."""
    return timezone.localtime(value).replace(tzinfo=None)


def weekly(days, start=date(2024, 1, 1), **kwargs):
    return RecurrencePattern(
        frequency=kwargs.pop('frequency', 'weekly'),
        start_date=start,
        start_time=kwargs.pop('start_time', time(9, 0)),
        days_of_week=frozenset(days),
        **kwargs
    )


NOW = aware(2024, 1, 1, 0, 0)


class RuleEvaluatorTests(SimpleTestCase):
    """Test matching and stepping of recurrence rules."""

    def test_day_of_week_uses_sunday_as_zero(self):
        """Test weekday numbering (0=Sunday)."""
        self.assertEqual(rules.day_of_week(date(2024, 1, 7)), 0)
        self.assertEqual(rules.day_of_week(date(2024, 1, 1)), 1)
        self.assertEqual(rules.day_of_week(date(2024, 1, 6)), 6)

    def test_weekly_matches_listed_days_at_slot(self):
        """Test weekly matching is by weekday and time slot."""
        pattern = weekly([1, 3])

        self.assertTrue(rules.matches(pattern, datetime(2024, 1, 1, 9, 0)))
        self.assertTrue(rules.matches(pattern, datetime(2024, 1, 3, 9, 0)))
        self.assertFalse(rules.matches(pattern, datetime(2024, 1, 2, 9, 0)))
        self.assertFalse(rules.matches(pattern, datetime(2024, 1, 1, 10, 0)))

    def test_nothing_matches_before_start_date(self):
        """Test instants before the start date never match."""
        pattern = weekly([1], start=date(2024, 1, 8))
        self.assertFalse(rules.matches(pattern, datetime(2024, 1, 1, 9, 0)))
        self.assertTrue(rules.matches(pattern, datetime(2024, 1, 8, 9, 0)))

    def test_biweekly_parity_anchored_to_start_date(self):
        """Test biweekly on-weeks are counted from the start date."""
        pattern = weekly([1], frequency='biweekly', interval=3)

        self.assertTrue(rules.matches(pattern, datetime(2024, 1, 1, 9, 0)))
        self.assertFalse(rules.matches(pattern, datetime(2024, 1, 8, 9, 0)))
        self.assertTrue(rules.matches(pattern, datetime(2024, 1, 15, 9, 0)))
        self.assertFalse(rules.matches(pattern, datetime(2024, 1, 22, 9, 0)))

    def test_monthly_clamps_to_last_day_of_short_month(self):
        """Test anchor day 31 falls on the last day of shorter months."""
        pattern = RecurrencePattern(frequency='monthly', start_date=date(2024, 1, 31), start_time=time(9, 0))

        self.assertTrue(rules.matches(pattern, datetime(2024, 2, 29, 9, 0)))
        self.assertTrue(rules.matches(pattern, datetime(2024, 3, 31, 9, 0)))
        self.assertTrue(rules.matches(pattern, datetime(2024, 4, 30, 9, 0)))
        self.assertFalse(rules.matches(pattern, datetime(2024, 3, 29, 9, 0)))
        self.assertFalse(rules.matches(pattern, datetime(2024, 3, 30, 9, 0)))

    def test_monthly_advance_does_not_drift_after_clamp(self):
        """Test stepping past a clamped month returns to the anchor day."""
        pattern = RecurrencePattern(frequency='monthly', start_date=date(2024, 1, 31), start_time=time(9, 0))

        self.assertEqual(rules.advance(pattern, datetime(2024, 2, 29, 9, 0)), datetime(2024, 3, 31, 9, 0))

    def test_monthly_interval(self):
        """Test monthly matching honours the month interval."""
        pattern = RecurrencePattern(
            frequency='monthly', interval=2, start_date=date(2024, 1, 10), start_time=time(9, 0)
        )

        self.assertFalse(rules.matches(pattern, datetime(2024, 2, 10, 9, 0)))
        self.assertTrue(rules.matches(pattern, datetime(2024, 3, 10, 9, 0)))
        self.assertEqual(rules.advance(pattern, datetime(2024, 3, 10, 9, 0)), datetime(2024, 5, 10, 9, 0))

    def test_daily_interval_lattice(self):
        """Test daily interval counts days from the start date."""
        pattern = RecurrencePattern(frequency='daily', interval=2, start_date=date(2024, 1, 1), start_time=time(9, 0))

        self.assertTrue(rules.matches(pattern, datetime(2024, 1, 3, 9, 0)))
        self.assertFalse(rules.matches(pattern, datetime(2024, 1, 2, 9, 0)))
        self.assertEqual(rules.first_candidate(pattern, datetime(2024, 1, 2, 0, 0)), datetime(2024, 1, 3, 9, 0))

    def test_custom_requires_weekday_and_interval(self):
        """Test custom patterns filter weekdays on the interval lattice."""
        pattern = weekly([1, 4], frequency='custom', interval=3)

        self.assertTrue(rules.matches(pattern, datetime(2024, 1, 1, 9, 0)))
        self.assertTrue(rules.matches(pattern, datetime(2024, 1, 4, 9, 0)))
        self.assertFalse(rules.matches(pattern, datetime(2024, 1, 8, 9, 0)))

    def test_advance_is_strictly_increasing(self):
        """Test advance always moves forward."""
        patterns = [
            RecurrencePattern(frequency='daily', start_date=date(2024, 1, 1), start_time=time(9, 0)),
            weekly([1]),
            weekly([1], frequency='biweekly'),
            weekly([1], frequency='custom', interval=4),
            RecurrencePattern(frequency='monthly', start_date=date(2024, 1, 31), start_time=time(9, 0)),
        ]
        instant = datetime(2024, 2, 29, 9, 0)

        for pattern in patterns:
            with self.subTest(frequency=pattern.frequency):
                self.assertGreater(rules.advance(pattern, instant), instant)

    def test_validate_pattern_rejects_malformed_rules(self):
        """Test malformed rules raise InvalidRuleError."""
        invalid = [
            weekly([1], frequency='yearly'),
            weekly([1], interval=0),
            weekly([1], sessions_per_cycle=0),
            weekly([7]),
            weekly([1], days_of_month=frozenset([0])),
            RecurrencePattern(frequency='weekly', start_date=None, start_time=time(9, 0)),
            RecurrencePattern(frequency='weekly', start_date=date(2024, 1, 1), start_time=None),
        ]

        for pattern in invalid:
            with self.subTest(pattern=pattern):
                with self.assertRaises(InvalidRuleError):
                    rules.validate_pattern(pattern)

    def test_empty_days_of_week_is_valid(self):
        """Test a weekly rule without days is a valid empty schedule."""
        pattern = weekly([])

        rules.validate_pattern(pattern)
        self.assertEqual(generate_occurrences(pattern, 12, now=NOW), [])

    def test_estimate_sessions_per_month(self):
        """Test the monthly session estimate per frequency."""
        self.assertEqual(rules.estimate_sessions_per_month(weekly([1, 4])), 8)
        self.assertEqual(rules.estimate_sessions_per_month(weekly([1], frequency='biweekly')), 2)
        self.assertEqual(rules.estimate_sessions_per_month(weekly([], frequency='custom', sessions_per_cycle=3)), 3)
        self.assertEqual(
            rules.estimate_sessions_per_month(
                RecurrencePattern(frequency='monthly', start_date=date(2024, 1, 1), start_time=time(9, 0))
            ),
            1
        )
        self.assertEqual(
            rules.estimate_sessions_per_month(
                RecurrencePattern(frequency='daily', start_date=date(2024, 1, 1), start_time=time(9, 0))
            ),
            30
        )


class OccurrenceGenerationTests(SimpleTestCase):
    """Test occurrence generation over a horizon."""

    def test_weekly_scenario(self):
        """Test Mon/Wed/Fri at 09:00 over one month from 2024-01-01."""
        occurrences = generate_occurrences(weekly([1, 3, 5]), 1, now=NOW)

        self.assertEqual(
            occurrences[:3],
            [aware(2024, 1, 1, 9, 0), aware(2024, 1, 3, 9, 0), aware(2024, 1, 5, 9, 0)]
        )
        self.assertEqual(len(occurrences), 14)

    def test_output_is_strictly_increasing(self):
        """Test generated occurrences are ordered and duplicate-free."""
        occurrences = generate_occurrences(weekly([0, 1, 2, 3, 4, 5, 6]), 12, now=NOW)

        self.assertEqual(occurrences, sorted(set(occurrences)))
        self.assertTrue(all(a < b for a, b in zip(occurrences, occurrences[1:])))

    def test_biweekly_never_on_following_monday(self):
        """Test biweekly Mondays alternate starting from the start date."""
        occurrences = generate_occurrences(weekly([1], frequency='biweekly'), 2, now=NOW)
        days = [local(o).date() for o in occurrences]

        self.assertEqual(days[:3], [date(2024, 1, 1), date(2024, 1, 15), date(2024, 1, 29)])
        self.assertNotIn(date(2024, 1, 8), days)

    def test_biweekly_parity_does_not_follow_window(self):
        """Test a later window keeps the same on-weeks."""
        occurrences = generate_occurrences(weekly([1], frequency='biweekly'), 1, now=aware(2024, 1, 8, 12, 0))
        days = [local(o).date() for o in occurrences]

        self.assertEqual(days[:2], [date(2024, 1, 15), date(2024, 1, 29)])

    def test_monthly_clamp_gives_one_occurrence_in_short_months(self):
        """Test anchor day 31 yields exactly one occurrence in 30-day months, on day 30."""
        pattern = RecurrencePattern(frequency='monthly', start_date=date(2024, 1, 31), start_time=time(9, 0))
        occurrences = [local(o) for o in generate_occurrences(pattern, 12, now=NOW)]

        april = [o for o in occurrences if o.month == 4]
        february = [o for o in occurrences if o.month == 2]
        self.assertEqual(april, [datetime(2024, 4, 30, 9, 0)])
        self.assertEqual(february, [datetime(2024, 2, 29, 9, 0)])
        self.assertIn(datetime(2024, 5, 31, 9, 0), occurrences)

    def test_monthly_first_occurrence_aligns_to_interval(self):
        """Test a window starting mid-cycle waits for the next on-month."""
        pattern = RecurrencePattern(
            frequency='monthly', interval=2, start_date=date(2024, 1, 31), start_time=time(9, 0)
        )
        occurrences = [local(o) for o in generate_occurrences(pattern, 4, now=aware(2024, 2, 15, 0, 0))]

        self.assertEqual(occurrences, [datetime(2024, 3, 31, 9, 0), datetime(2024, 5, 31, 9, 0)])

    def test_elapsed_slot_rolls_to_next_day(self):
        """Test today's slot is skipped once its time has passed."""
        pattern = RecurrencePattern(frequency='daily', start_date=date(2024, 1, 1), start_time=time(9, 0))

        later = generate_occurrences(pattern, 1, now=aware(2024, 1, 10, 10, 0))
        earlier = generate_occurrences(pattern, 1, now=aware(2024, 1, 10, 8, 0))

        self.assertEqual(later[0], aware(2024, 1, 11, 9, 0))
        self.assertEqual(earlier[0], aware(2024, 1, 10, 9, 0))

    def test_future_start_date_is_first_candidate(self):
        """Test nothing is generated before a future start date."""
        pattern = RecurrencePattern(frequency='daily', start_date=date(2024, 3, 1), start_time=time(9, 0))

        occurrences = generate_occurrences(pattern, 3, now=NOW)
        self.assertEqual(occurrences[0], aware(2024, 3, 1, 9, 0))

    def test_horizon_end_is_inclusive(self):
        """Test an occurrence exactly at now + horizon is kept."""
        pattern = RecurrencePattern(frequency='daily', start_date=date(2024, 1, 1), start_time=time(9, 0))

        occurrences = generate_occurrences(pattern, 1, now=aware(2024, 1, 1, 9, 0))
        self.assertEqual(occurrences[-1], aware(2024, 2, 1, 9, 0))
        self.assertEqual(len(occurrences), 32)

    def test_daily_long_horizon_is_not_truncated(self):
        """Test the iteration ceiling covers every day of a long horizon."""
        pattern = RecurrencePattern(frequency='daily', start_date=date(2024, 1, 1), start_time=time(9, 0))

        occurrences = generate_occurrences(pattern, 36, now=NOW)

        self.assertEqual(len(occurrences), 1096)
        self.assertEqual(occurrences[-1], aware(2026, 12, 31, 9, 0))

    def test_iteration_ceiling(self):
        """Test the ceiling is at least 1000 and grows with the horizon."""
        self.assertEqual(iteration_ceiling(12), 1000)
        self.assertEqual(iteration_ceiling(36), 1116)

    def test_coverage_matches_rule(self):
        """Test every slot in the window is generated iff the rule matches it."""
        pattern = weekly([2, 6], frequency='biweekly', start=date(2023, 12, 20))
        occurrences = set(generate_occurrences(pattern, 3, now=NOW))

        day = date(2024, 1, 1)
        while day < date(2024, 4, 1):
            candidate = datetime.combine(day, time(9, 0))
            with self.subTest(day=day):
                self.assertEqual(
                    rules.matches(pattern, candidate),
                    timezone.make_aware(candidate) in occurrences
                )
            day += timedelta(days=1)

    def test_count_occurrences_in_month(self):
        """Test counting occurrences in a calendar month."""
        self.assertEqual(count_occurrences_in_month(weekly([1]), 2024, 1), 5)
        self.assertEqual(count_occurrences_in_month(weekly([1], frequency='biweekly'), 2024, 1), 3)

    def test_invalid_horizon(self):
        """Test a non-positive horizon is rejected."""
        with self.assertRaises(ValueError):
            generate_occurrences(weekly([1]), 0, now=NOW)

    def test_invalid_rule(self):
        """Test generation validates the rule first."""
        with self.assertRaises(InvalidRuleError):
            generate_occurrences(weekly([1], interval=0), 1, now=NOW)


class ScheduleTestMixin:
    """Shared fixtures for database-backed tests."""

    def make_patient(self, name="Ana", **kwargs):
        return Patient.objects.create(name=name, **kwargs)

    def make_schedule(self, patient, days=(1, 3, 5), start=date(2024, 1, 1), **kwargs):
        fields = {
            'frequency': 'weekly',
            'interval': 1,
            'days_of_week': list(days),
            'start_date': start,
            'start_time': time(9, 0),
            'duration_minutes': 50,
            'session_type': 'individual',
            'session_value': Decimal('150.00'),
        }
        fields.update(kwargs)
        return RecurringSchedule.objects.create(patient=patient, **fields)

    def future_recurring(self, schedule, now=NOW):
        return Session.objects.future_recurring_for_schedule(schedule.id, now).order_by('scheduled_at')


class ReconciliationTests(ScheduleTestMixin, TestCase):
    """Test reconciliation of a single schedule."""

    def setUp(self):
        """Create a patient with a weekly schedule."""
        self.patient = self.make_patient()
        self.schedule = self.make_schedule(self.patient)

    def test_reconcile_inserts_expected_sessions(self):
        """Test the first run materializes every occurrence."""
        result = reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)

        self.assertEqual(result.inserted, 14)
        self.assertEqual(result.deleted, 0)

        sessions = list(self.future_recurring(self.schedule))
        self.assertEqual(len(sessions), 14)
        self.assertEqual(sessions[0].scheduled_at, aware(2024, 1, 1, 9, 0))
        for session in sessions:
            self.assertEqual(session.origin, 'recurring')
            self.assertEqual(session.status, 'scheduled')
            self.assertFalse(session.paid)
            self.assertEqual(session.patient_id, self.patient.id)
            self.assertEqual(session.duration_minutes, 50)
            self.assertEqual(session.session_type, 'individual')
            self.assertEqual(session.value, Decimal('150.00'))

    def test_reconcile_is_idempotent(self):
        """Test a second run with no change writes nothing."""
        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        ids_before = list(self.future_recurring(self.schedule).values_list('id', flat=True))

        second = reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)

        self.assertEqual(second.as_dict(), {'schedule_id': self.schedule.id, 'inserted': 0, 'deleted': 0})
        ids_after = list(self.future_recurring(self.schedule).values_list('id', flat=True))
        self.assertEqual(ids_before, ids_after)

    def test_pattern_change_replaces_future_sessions(self):
        """Test weekly-3x to weekly-1x deletes all 12 and inserts the new set."""
        schedule = self.make_schedule(self.make_patient("Bruno"), start=date(2024, 1, 5))
        first = reconcile_schedule(schedule.id, horizon_months=1, now=NOW)
        self.assertEqual(first.inserted, 12)

        RecurringSchedule.objects.filter(pk=schedule.pk).update(days_of_week=[1])
        result = reconcile_schedule(schedule.id, horizon_months=1, now=NOW)

        self.assertEqual(result.deleted, 12)
        self.assertEqual(result.inserted, 4)
        days = [local(s.scheduled_at).date() for s in self.future_recurring(schedule)]
        self.assertEqual(days, [date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22), date(2024, 1, 29)])

    def test_materialized_sessions_match_generator(self):
        """Test the stored future set equals the generated set."""
        reconcile_schedule(self.schedule.id, horizon_months=3, now=NOW)

        stored = list(self.future_recurring(self.schedule).values_list('scheduled_at', flat=True))
        self.assertEqual(stored, generate_occurrences(self.schedule.pattern, 3, now=NOW))

    def test_past_sessions_are_never_touched(self):
        """Test sessions before now survive reconciliation."""
        past = Session.objects.create(
            patient=self.patient,
            schedule=self.schedule,
            scheduled_at=aware(2023, 12, 25, 9, 0),
            origin='recurring',
            status='completed',
            paid=True
        )

        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        RecurringSchedule.objects.filter(pk=self.schedule.pk).update(days_of_week=[2])
        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)

        past.refresh_from_db()
        self.assertEqual(past.status, 'completed')
        self.assertFalse(Session.objects.for_schedule(self.schedule.id).filter(
            scheduled_at__lt=NOW
        ).exclude(pk=past.pk).exists())

    def test_manual_sessions_are_never_deleted(self):
        """Test manual sessions survive even when tagged with the schedule."""
        manual = services.create_manual_session(
            self.patient.id,
            aware(2024, 1, 8, 9, 0),
            schedule=self.schedule
        )

        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        RecurringSchedule.objects.filter(pk=self.schedule.pk).update(days_of_week=[2])
        result = reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)

        self.assertEqual(result.deleted, 14)
        self.assertTrue(Session.objects.filter(pk=manual.pk, origin='manual').exists())

    def test_moved_recurring_session_is_discarded_when_window_is_replaced(self):
        """Test the accepted trade-off: edits inside the future window are lost on replace."""
        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        moved = self.future_recurring(self.schedule).first()
        moved.scheduled_at = aware(2024, 1, 1, 14, 0)
        moved.status = 'confirmed'
        moved.save()

        result = reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)

        self.assertEqual(result.deleted, 14)
        self.assertEqual(result.inserted, 14)
        self.assertFalse(Session.objects.filter(pk=moved.pk).exists())
        self.assertFalse(Session.objects.filter(scheduled_at=aware(2024, 1, 1, 14, 0)).exists())

    def test_status_edit_survives_when_already_converged(self):
        """Test a confirmed session is kept when the window already matches."""
        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        confirmed = self.future_recurring(self.schedule).first()
        confirmed.status = 'confirmed'
        confirmed.save()

        result = reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)

        self.assertFalse(result.changed)
        confirmed.refresh_from_db()
        self.assertEqual(confirmed.status, 'confirmed')

    def test_detail_changes_apply_on_next_reconciliation(self):
        """Test sessions keep their snapshot until the schedule is reconciled again."""
        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        services.update_schedule_details(self.schedule, ScheduleDetailsUpdate(duration_minutes=60))

        self.assertTrue(all(s.duration_minutes == 50 for s in self.future_recurring(self.schedule)))

        result = reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)

        self.assertEqual((result.deleted, result.inserted), (14, 14))
        self.assertTrue(all(s.duration_minutes == 60 for s in self.future_recurring(self.schedule)))

    def test_no_duplicate_future_sessions(self):
        """Test repeated runs with changing rules never duplicate instants."""
        for days in ([1, 3, 5], [1], [1, 2, 3], [1, 2, 3]):
            RecurringSchedule.objects.filter(pk=self.schedule.pk).update(days_of_week=days)
            reconcile_schedule(self.schedule.id, horizon_months=2, now=NOW)

        instants = list(self.future_recurring(self.schedule).values_list('scheduled_at', flat=True))
        self.assertEqual(len(instants), len(set(instants)))

    def test_empty_days_of_week_clears_future_sessions(self):
        """Test a degenerate rule leaves no future recurring sessions."""
        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        RecurringSchedule.objects.filter(pk=self.schedule.pk).update(days_of_week=[])

        result = reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)

        self.assertEqual((result.deleted, result.inserted), (14, 0))

    def test_inactive_schedule_is_rejected(self):
        """Test reconciling an inactive schedule raises StaleScheduleError."""
        RecurringSchedule.objects.filter(pk=self.schedule.pk).update(is_active=False)

        with self.assertRaises(StaleScheduleError):
            reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        self.assertFalse(Session.objects.exists())

    def test_missing_schedule(self):
        """Test an unknown schedule id raises a store read error."""
        with self.assertRaises(ScheduleNotFoundError) as ctx:
            reconcile_schedule(999999, horizon_months=1, now=NOW)
        self.assertIsInstance(ctx.exception, StoreReadError)

    def test_invalid_rule_fails_before_any_write(self):
        """Test a malformed stored rule leaves sessions untouched."""
        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        RecurringSchedule.objects.filter(pk=self.schedule.pk).update(interval=0)

        with self.assertRaises(InvalidRuleError):
            reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        self.assertEqual(self.future_recurring(self.schedule).count(), 14)

    def test_insert_failure_raises_partial_error_and_rolls_back(self):
        """Test a failed insert after delete is surfaced and the old sessions remain."""
        schedule = self.make_schedule(self.make_patient("Carla"), start=date(2024, 1, 5))
        reconcile_schedule(schedule.id, horizon_months=1, now=NOW)
        RecurringSchedule.objects.filter(pk=schedule.pk).update(days_of_week=[1])

        with mock.patch.object(Session.objects, 'bulk_create', side_effect=DatabaseError("disk full")):
            with self.assertRaises(PartialReconciliationError) as ctx:
                reconcile_schedule(schedule.id, horizon_months=1, now=NOW)

        self.assertEqual(ctx.exception.schedule_id, schedule.id)
        self.assertEqual(ctx.exception.expected_count, 4)
        self.assertEqual(ctx.exception.deleted_count, 12)
        self.assertEqual(self.future_recurring(schedule).count(), 12)

    def test_delete_failure_raises_store_write_error(self):
        """Test a failed delete is wrapped in StoreWriteError."""
        with mock.patch.object(SessionQuerySet, 'delete', side_effect=DatabaseError("locked")):
            with self.assertRaises(StoreWriteError):
                reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        self.assertFalse(Session.objects.exists())

    def test_retire_schedule(self):
        """Test retiring removes future recurring sessions only."""
        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        manual = services.create_manual_session(self.patient.id, aware(2024, 1, 10, 15, 0), schedule=self.schedule)
        past = Session.objects.create(
            patient=self.patient,
            schedule=self.schedule,
            scheduled_at=aware(2023, 12, 27, 9, 0),
            origin='recurring'
        )

        deleted = retire_schedule(self.schedule.id, now=NOW)

        self.assertEqual(deleted, 14)
        self.schedule.refresh_from_db()
        self.assertFalse(self.schedule.is_active)
        self.assertTrue(Session.objects.filter(pk=manual.pk).exists())
        self.assertTrue(Session.objects.filter(pk=past.pk).exists())


class ScheduleServiceTests(ScheduleTestMixin, TestCase):
    """Test the schedule service layer."""

    def setUp(self):
        """Create a patient."""
        self.patient = self.make_patient()

    def test_create_schedule_materializes_sessions(self):
        """Test creating a schedule generates its sessions."""
        schedule, result = services.create_recurring_schedule(
            self.patient.id,
            weekly([1, 3, 5]),
            duration_minutes=45,
            session_value=Decimal('120.00'),
            horizon_months=1,
            now=NOW
        )

        self.assertTrue(schedule.is_active)
        self.assertEqual(result.inserted, 14)
        self.assertEqual(schedule.days_of_week, [1, 3, 5])
        self.assertTrue(all(s.duration_minutes == 45 for s in schedule.sessions.all()))

    def test_create_schedule_without_materialization(self):
        """Test creating a schedule without generating sessions."""
        schedule, result = services.create_recurring_schedule(
            self.patient.id, weekly([1]), materialize=False, now=NOW
        )

        self.assertIsNone(result)
        self.assertFalse(schedule.sessions.exists())

    def test_new_schedule_retires_previous_one(self):
        """Test a patient keeps a single active schedule."""
        first, _ = services.create_recurring_schedule(self.patient.id, weekly([1]), horizon_months=1, now=NOW)
        second, result = services.create_recurring_schedule(self.patient.id, weekly([2]), horizon_months=1, now=NOW)

        self.assertEqual(result.deleted, 5)
        self.assertEqual(result.inserted, 5)
        first.refresh_from_db()
        self.assertFalse(first.is_active)
        self.assertFalse(self.future_recurring(first).exists())
        self.assertEqual(list(RecurringSchedule.objects.active().for_patient(self.patient.id)), [second])

    def test_change_cadence_creates_new_schedule_and_keeps_history(self):
        """Test changing cadence deactivates the old row and keeps past sessions on it."""
        old, _ = services.create_recurring_schedule(
            self.patient.id, weekly([1, 3, 5]), session_value=Decimal('150.00'), horizon_months=1, now=NOW
        )
        later = aware(2024, 1, 10, 12, 0)

        new, result = services.change_schedule_cadence(old, weekly([2]), horizon_months=1, now=later)

        old.refresh_from_db()
        self.assertNotEqual(new.id, old.id)
        self.assertFalse(old.is_active)
        self.assertEqual(new.session_value, Decimal('150.00'))
        self.assertEqual(Session.objects.for_schedule(old.id).count(), 5)
        self.assertEqual(result.deleted, 9)
        self.assertEqual(result.inserted, 4)
        self.assertTrue(all(rules.day_of_week(local(s.scheduled_at).date()) == 2 for s in new.sessions.all()))

    def test_change_cadence_applies_detail_overrides(self):
        """Test details sent with a cadence change land on the new schedule and its sessions."""
        old, _ = services.create_recurring_schedule(
            self.patient.id, weekly([1, 3, 5]), session_value=Decimal('150.00'), horizon_months=1, now=NOW
        )

        new, _ = services.change_schedule_cadence(
            old,
            weekly([2]),
            details=ScheduleDetailsUpdate(duration_minutes=60, session_value=Decimal('200.00')),
            horizon_months=1,
            now=NOW
        )

        self.assertEqual(new.duration_minutes, 60)
        self.assertEqual(new.session_value, Decimal('200.00'))
        self.assertEqual(new.session_type, 'individual')
        self.assertTrue(all(s.duration_minutes == 60 for s in new.sessions.all()))
        self.assertTrue(all(s.value == Decimal('200.00') for s in new.sessions.all()))

    def test_invalid_pattern_creates_nothing(self):
        """Test an invalid rule is rejected before any write."""
        with self.assertRaises(InvalidRuleError):
            services.create_recurring_schedule(self.patient.id, weekly([1], interval=0), now=NOW)

        self.assertFalse(RecurringSchedule.objects.exists())

    def test_get_active_schedule(self):
        """Test looking up the active schedule of a patient."""
        with self.assertRaises(NoActiveScheduleError):
            services.get_active_schedule(self.patient.id)

        schedule = self.make_schedule(self.patient)
        self.assertEqual(services.get_active_schedule(self.patient.id), schedule)

    def test_deactivate_schedule(self):
        """Test deactivation keeps the row."""
        schedule, _ = services.create_recurring_schedule(self.patient.id, weekly([1]), horizon_months=1, now=NOW)

        removed = services.deactivate_schedule(schedule, now=NOW)

        self.assertEqual(removed, 5)
        self.assertTrue(RecurringSchedule.objects.filter(pk=schedule.pk, is_active=False).exists())

    def test_manual_session(self):
        """Test creating a manual session."""
        session = services.create_manual_session(self.patient.id, aware(2024, 2, 1, 10, 0), duration_minutes=90)

        self.assertEqual(session.origin, 'manual')
        self.assertIsNone(session.schedule)
        self.assertEqual(session.end_at, aware(2024, 2, 1, 11, 30))

    def test_manual_session_duration_validation(self):
        """Test non-positive durations are rejected."""
        with self.assertRaises(ValueError):
            services.create_manual_session(self.patient.id, aware(2024, 2, 1, 10, 0), duration_minutes=0)

    def test_recurring_session_requires_schedule(self):
        """Test a recurring session without schedule fails validation."""
        with self.assertRaises(ValidationError):
            Session.objects.create(patient=self.patient, scheduled_at=aware(2024, 2, 1, 10, 0), origin='recurring')

    def test_preview_writes_nothing(self):
        """Test previewing occurrences does not create sessions."""
        schedule = self.make_schedule(self.patient)

        occurrences = services.preview_occurrences(schedule, months=1, now=NOW)

        self.assertEqual(len(occurrences), 14)
        self.assertFalse(Session.objects.exists())


class IntegrityAuditorTests(ScheduleTestMixin, TestCase):
    """Test single-patient and batch audits."""

    def setUp(self):
        """Create two patients with weekly schedules."""
        self.ana = self.make_patient("Ana")
        self.bruno = self.make_patient("Bruno")
        self.ana_schedule = self.make_schedule(self.ana)
        self.bruno_schedule = self.make_schedule(self.bruno, days=(2,))
        self.auditor = IntegrityAuditor(horizon_months=1, max_workers=1)

    def test_audit_one(self):
        """Test regenerating one patient's sessions."""
        outcome = self.auditor.audit_one(self.ana.id, now=NOW)

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.schedule_id, self.ana_schedule.id)
        self.assertEqual(outcome.inserted, 14)
        self.assertFalse(Session.objects.for_schedule(self.bruno_schedule.id).exists())

    def test_audit_one_without_active_schedule(self):
        """Test a patient without schedule yields a failed outcome."""
        patient = self.make_patient("Carla")

        outcome = self.auditor.audit_one(patient.id, now=NOW)

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_type, 'NoActiveScheduleError')
        self.assertIsNone(outcome.schedule_id)

    def test_audit_all(self):
        """Test every active schedule is reconciled."""
        report = self.auditor.audit_all(now=NOW)

        self.assertEqual([o.schedule_id for o in report.outcomes], [self.ana_schedule.id, self.bruno_schedule.id])
        self.assertEqual(report.as_dict()['succeeded'], 2)
        self.assertEqual(report.as_dict()['inserted'], 14 + 5)
        self.assertFalse(report.cancelled)

    def test_failure_is_isolated(self):
        """Test one broken schedule does not abort the batch."""
        RecurringSchedule.objects.filter(pk=self.ana_schedule.pk).update(interval=0)

        report = self.auditor.audit_all(now=NOW)

        summary = report.as_dict()
        self.assertEqual(summary['succeeded'], 1)
        self.assertEqual(summary['failed'], 1)
        self.assertEqual(summary['failures'][0]['schedule_id'], self.ana_schedule.id)
        self.assertEqual(summary['failures'][0]['error_type'], 'InvalidRuleError')
        self.assertTrue(Session.objects.for_schedule(self.bruno_schedule.id).exists())

    def test_unexpected_error_is_isolated(self):
        """Test an unexpected exception is recorded, not raised."""
        def flaky(schedule_id, **kwargs):
            if schedule_id == self.ana_schedule.id:
                raise RuntimeError("connection reset")
            return ReconciliationResult(schedule_id=schedule_id, inserted=1)

        with mock.patch('scheduling.auditor.reconcile_schedule', side_effect=flaky):
            report = self.auditor.audit_all(now=NOW)

        self.assertEqual([o.success for o in report.outcomes], [False, True])
        self.assertEqual(report.outcomes[0].error, "connection reset")

    def test_archived_patients_are_skipped(self):
        """Test archived patients are not audited."""
        Patient.objects.filter(pk=self.bruno.pk).update(is_archived=True)

        report = self.auditor.audit_all(now=NOW)

        self.assertEqual([o.patient_id for o in report.outcomes], [self.ana.id])

    def test_patient_filter(self):
        """Test restricting an audit to given patients."""
        report = self.auditor.audit_all(patient_ids=[self.bruno.id], now=NOW)

        self.assertEqual([o.patient_id for o in report.outcomes], [self.bruno.id])

    def test_only_unhealthy(self):
        """Test only schedules without future sessions are reconciled."""
        reconcile_schedule(self.ana_schedule.id, horizon_months=1, now=NOW)

        report = self.auditor.audit_all(only_unhealthy=True, now=NOW)

        self.assertEqual([o.schedule_id for o in report.outcomes], [self.bruno_schedule.id])

    def test_check_integrity(self):
        """Test the integrity check lists schedules without future sessions."""
        reconcile_schedule(self.ana_schedule.id, horizon_months=1, now=NOW)

        result = self.auditor.check_integrity(now=NOW)

        self.assertEqual(result.as_dict(), {
            'total': 2,
            'affected': 1,
            'healthy': 1,
            'affected_schedule_ids': [self.bruno_schedule.id],
            'affected_patient_ids': [self.bruno.id],
        })
        self.assertEqual(Session.objects.for_schedule(self.bruno_schedule.id).count(), 0)

    def test_cancel_before_start_skips_everything(self):
        """Test a cancelled audit writes nothing."""
        cancel = threading.Event()
        cancel.set()

        report = self.auditor.audit_all(cancel_event=cancel, now=NOW)

        self.assertTrue(report.cancelled)
        self.assertEqual(report.outcomes, [])
        self.assertEqual(report.skipped_schedule_ids, [self.ana_schedule.id, self.bruno_schedule.id])
        self.assertFalse(Session.objects.exists())

    def test_cancel_between_schedules(self):
        """Test a schedule already started completes and later ones are skipped."""
        cancel = threading.Event()

        def reconcile_then_cancel(schedule_id, **kwargs):
            result = reconcile_schedule(schedule_id, **kwargs)
            cancel.set()
            return result

        with mock.patch('scheduling.auditor.reconcile_schedule', side_effect=reconcile_then_cancel):
            report = self.auditor.audit_all(cancel_event=cancel, now=NOW)

        self.assertEqual([o.schedule_id for o in report.outcomes], [self.ana_schedule.id])
        self.assertEqual(report.outcomes[0].inserted, 14)
        self.assertEqual(report.skipped_schedule_ids, [self.bruno_schedule.id])

    def test_cancel_during_last_schedule_is_reported(self):
        """Test a cancellation arriving while the final schedule runs marks the report cancelled."""
        cancel = threading.Event()

        def reconcile_then_cancel(schedule_id, **kwargs):
            result = reconcile_schedule(schedule_id, **kwargs)
            cancel.set()
            return result

        with mock.patch('scheduling.auditor.reconcile_schedule', side_effect=reconcile_then_cancel):
            report = self.auditor.audit_all(patient_ids=[self.bruno.id], cancel_event=cancel, now=NOW)

        self.assertEqual([o.schedule_id for o in report.outcomes], [self.bruno_schedule.id])
        self.assertEqual(report.skipped_schedule_ids, [])
        self.assertTrue(report.cancelled)
        self.assertTrue(report.as_dict()['cancelled'])

    def test_uncancelled_audit_is_not_marked_cancelled(self):
        """Test an unset cancel event leaves the report uncancelled."""
        report = self.auditor.audit_all(cancel_event=threading.Event(), now=NOW)

        self.assertFalse(report.cancelled)
        self.assertEqual(len(report.outcomes), 2)

    def test_worker_pool_keeps_target_order(self):
        """Test concurrent audits report outcomes in schedule order."""
        extra = [self.make_schedule(self.make_patient(f"P{i}")) for i in range(4)]
        expected_ids = [self.ana_schedule.id, self.bruno_schedule.id] + [s.id for s in extra]
        seen = []
        seen_lock = threading.Lock()

        def fake_reconcile(schedule_id, **kwargs):
            with seen_lock:
                seen.append(schedule_id)
            return ReconciliationResult(schedule_id=schedule_id, inserted=schedule_id)

        auditor = IntegrityAuditor(horizon_months=1, max_workers=3)
        with mock.patch('scheduling.auditor.reconcile_schedule', side_effect=fake_reconcile):
            report = auditor.audit_all(now=NOW)

        self.assertEqual([o.schedule_id for o in report.outcomes], expected_ids)
        self.assertEqual([o.inserted for o in report.outcomes], expected_ids)
        self.assertEqual(sorted(seen), sorted(expected_ids))


class ConcurrentReconciliationTests(ScheduleTestMixin, TransactionTestCase):
    """
    Test reconciliation from several threads against committed data.

    Each thread opens its own database connection, so these tests run
    outside the per-test transaction used by TestCase.
    """

    def setUp(self):
        """Create a patient with a weekly schedule."""
        self.patient = self.make_patient()
        self.schedule = self.make_schedule(self.patient)

    def run_in_thread(self, target, *args, **kwargs):
        """Start ``target`` in a thread; returns (thread, results, errors)."""
        results, errors = [], []

        def work():
            try:
                results.append(target(*args, **kwargs))
            except Exception as exc:
                errors.append(exc)
            finally:
                connections.close_all()

        thread = threading.Thread(target=work)
        thread.start()
        return thread, results, errors

    def test_reconcile_waits_for_schedule_lock(self):
        """Test a second writer on the same schedule blocks until the lock is released."""
        with schedule_lock(self.schedule.id):
            thread, results, errors = self.run_in_thread(
                reconcile_schedule, self.schedule.id, horizon_months=1, now=NOW
            )
            thread.join(timeout=0.5)

            self.assertTrue(thread.is_alive())
            self.assertEqual(results, [])
            self.assertFalse(Session.objects.exists())

        thread.join(timeout=30)

        self.assertFalse(thread.is_alive())
        self.assertEqual(errors, [])
        self.assertEqual(results[0].inserted, 14)
        self.assertEqual(self.future_recurring(self.schedule).count(), 14)

    def test_lock_on_other_schedule_does_not_block(self):
        """Test writers on different schedules do not wait for each other."""
        other = self.make_schedule(self.make_patient("Bruno"), days=(2,))

        with schedule_lock(self.schedule.id):
            thread, results, errors = self.run_in_thread(
                reconcile_schedule, other.id, horizon_months=1, now=NOW
            )
            thread.join(timeout=30)

            self.assertFalse(thread.is_alive())
            self.assertEqual(errors, [])
            self.assertEqual(results[0].inserted, 5)

    def test_simultaneous_reconciliations_do_not_duplicate(self):
        """Test two threads reconciling the same schedule produce one set of sessions."""
        barrier = threading.Barrier(2)

        def reconcile_together():
            barrier.wait(timeout=10)
            return reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)

        runs = [self.run_in_thread(reconcile_together) for _ in range(2)]
        for thread, _, _ in runs:
            thread.join(timeout=30)

        errors = [e for _, _, errs in runs for e in errs]
        inserted = sorted(r.inserted for _, results, _ in runs for r in results)
        self.assertEqual(errors, [])
        self.assertEqual(inserted, [0, 14])

        instants = list(self.future_recurring(self.schedule).values_list('scheduled_at', flat=True))
        self.assertEqual(len(instants), 14)
        self.assertEqual(len(instants), len(set(instants)))

    def test_worker_pool_reconciles_without_duplicates(self):
        """Test a multi-worker audit materializes every schedule exactly once."""
        schedules = [self.schedule] + [
            self.make_schedule(self.make_patient(f"P{i}"), days=(i % 7,)) for i in range(5)
        ]
        auditor = IntegrityAuditor(horizon_months=1, max_workers=3)

        first = auditor.audit_all(now=NOW)
        second = auditor.audit_all(now=NOW)

        self.assertEqual(first.as_dict()['failed'], 0)
        self.assertEqual([o.schedule_id for o in first.outcomes], [s.id for s in schedules])
        self.assertEqual(second.as_dict()['inserted'], 0)
        self.assertEqual(second.as_dict()['deleted'], 0)

        for schedule in schedules:
            with self.subTest(schedule=schedule.id):
                instants = list(self.future_recurring(schedule).values_list('scheduled_at', flat=True))
                self.assertEqual(instants, generate_occurrences(schedule.pattern, 1, now=NOW))
                self.assertEqual(len(instants), len(set(instants)))

    def test_lock_entries_are_released(self):
        """Test the lock table does not keep entries for schedules nobody is using."""
        with schedule_lock(self.schedule.id):
            self.assertIn(self.schedule.id, _schedule_locks)

        self.assertNotIn(self.schedule.id, _schedule_locks)

        reconcile_schedule(self.schedule.id, horizon_months=1, now=NOW)
        self.assertNotIn(self.schedule.id, _schedule_locks)


class ScheduleAPITests(ScheduleTestMixin, APITestCase):
    """Test the schedule API endpoints."""

    def setUp(self):
        """Set up test client and a patient."""
        self.client = APIClient()
        self.patient = self.make_patient()
        self.today = timezone.localdate()

    def create_payload(self, **overrides):
        data = {
            "patient": self.patient.id,
            "frequency": "weekly",
            "days_of_week": [1, 3],
            "start_date": self.today.isoformat(),
            "start_time": "09:00",
            "duration_minutes": 50,
            "session_type": "individual",
            "session_value": "150.00",
            "horizon_months": 1,
        }
        data.update(overrides)
        return data

    def test_create_schedule(self):
        """Test creating a schedule via API."""
        response = self.client.post('/api/schedules/', self.create_payload(), format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['schedule']['days_of_week'], [1, 3])
        self.assertEqual(response.data['schedule']['weekday_names'], ['Monday', 'Wednesday'])
        self.assertEqual(response.data['schedule']['estimated_sessions_per_month'], 8)
        self.assertGreater(response.data['sessions_created'], 0)

    def test_create_schedule_rejects_invalid_rule(self):
        """Test validation errors are returned as 400."""
        response = self.client.post('/api/schedules/', self.create_payload(interval=0), format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post('/api/schedules/', self.create_payload(days_of_week=[9]), format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_create_schedule_unknown_patient(self):
        """Test an unknown patient returns 404."""
        response = self.client.post('/api/schedules/', self.create_payload(patient=999999), format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_list_schedules(self):
        """Test listing active schedules."""
        self.make_schedule(self.patient)
        self.make_schedule(self.make_patient("Bruno"), is_active=False)

        response = self.client.get('/api/schedules/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)

    def test_update_details_in_place(self):
        """Test updating session details keeps the schedule row."""
        schedule = self.make_schedule(self.patient)

        response = self.client.patch(f'/api/schedules/{schedule.id}/', {"duration_minutes": 60}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['schedule']['id'], schedule.id)
        self.assertEqual(response.data['schedule']['duration_minutes'], 60)

    def test_update_cadence_creates_new_schedule(self):
        """Test changing the rule replaces the schedule."""
        schedule = self.make_schedule(self.patient, start=self.today)

        response = self.client.patch(f'/api/schedules/{schedule.id}/', {"days_of_week": [2]}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertNotEqual(response.data['schedule']['id'], schedule.id)
        self.assertEqual(response.data['replaced_schedule_id'], schedule.id)
        schedule.refresh_from_db()
        self.assertFalse(schedule.is_active)

    def test_update_cadence_and_details_together(self):
        """Test a PATCH changing both the rule and the session details keeps both."""
        schedule = self.make_schedule(self.patient, start=self.today)
        reconcile_schedule(schedule.id)
        future_before = Session.objects.future_recurring_for_schedule(schedule.id, timezone.now()).count()

        response = self.client.patch(
            f'/api/schedules/{schedule.id}/',
            {"days_of_week": [2], "duration_minutes": 60, "session_value": "200.00"},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['schedule']['days_of_week'], [2])
        self.assertEqual(response.data['schedule']['duration_minutes'], 60)
        self.assertEqual(response.data['schedule']['session_value'], '200.00')
        self.assertEqual(response.data['reconciliation']['deleted'], future_before)
        self.assertGreater(response.data['reconciliation']['inserted'], 0)

        new_sessions = Session.objects.for_schedule(response.data['schedule']['id'])
        self.assertTrue(new_sessions.exists())
        self.assertFalse(new_sessions.exclude(duration_minutes=60).exists())
        self.assertFalse(new_sessions.exclude(value=Decimal('200.00')).exists())

    def test_update_inactive_schedule_conflicts(self):
        """Test an inactive schedule cannot be updated."""
        schedule = self.make_schedule(self.patient, is_active=False)

        response = self.client.patch(f'/api/schedules/{schedule.id}/', {"duration_minutes": 60}, format='json')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_delete_deactivates(self):
        """Test deleting a schedule only deactivates it."""
        schedule = self.make_schedule(self.patient)

        response = self.client.delete(f'/api/schedules/{schedule.id}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(RecurringSchedule.objects.filter(pk=schedule.pk, is_active=False).exists())

    def test_preview_occurrences(self):
        """Test previewing a schedule's occurrences."""
        schedule = self.make_schedule(self.patient, start=self.today, days=(0, 1, 2, 3, 4, 5, 6))

        response = self.client.get(f'/api/schedules/{schedule.id}/occurrences/', {'months': 1})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertGreaterEqual(len(response.data['occurrences']), 28)
        self.assertFalse(Session.objects.exists())

    def test_reconcile_endpoint(self):
        """Test reconciling a schedule via API."""
        schedule = self.make_schedule(self.patient, start=self.today)

        response = self.client.post(f'/api/schedules/{schedule.id}/reconcile/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertGreater(response.data['inserted'], 0)

        response = self.client.post(f'/api/schedules/{schedule.id}/reconcile/')
        self.assertEqual(response.data['inserted'], 0)
        self.assertEqual(response.data['deleted'], 0)

    def test_reconcile_inactive_schedule_conflicts(self):
        """Test reconciling an inactive schedule returns 409."""
        schedule = self.make_schedule(self.patient, is_active=False)

        response = self.client.post(f'/api/schedules/{schedule.id}/reconcile/')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error_type'], 'StaleScheduleError')

    def test_reconcile_unknown_schedule(self):
        """Test reconciling an unknown schedule returns 404."""
        response = self.client.post('/api/schedules/999999/reconcile/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class IntegrityAPITests(ScheduleTestMixin, APITestCase):
    """Test the regenerate and integrity endpoints."""

    def setUp(self):
        """Set up test client and a scheduled patient."""
        self.client = APIClient()
        self.patient = self.make_patient()
        self.schedule = self.make_schedule(self.patient, start=timezone.localdate())

    def test_regenerate_patient_sessions(self):
        """Test the regenerate action for one patient."""
        response = self.client.post(f'/api/patients/{self.patient.id}/regenerate/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['schedule_id'], self.schedule.id)

    def test_regenerate_without_schedule(self):
        """Test regenerating for a patient without schedule returns 404."""
        patient = self.make_patient("Bruno")

        response = self.client.post(f'/api/patients/{patient.id}/regenerate/')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error_type'], 'NoActiveScheduleError')

    def test_integrity_check_then_audit(self):
        """Test checking and fixing schedules without sessions."""
        response = self.client.get('/api/integrity/check/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['affected'], 1)

        response = self.client.post('/api/integrity/audit/', {"only_unhealthy": True}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['succeeded'], 1)
        self.assertEqual(response.data['failures'], [])

        response = self.client.get('/api/integrity/check/')
        self.assertEqual(response.data['affected'], 0)

    def test_store_read_failure_returns_service_unavailable(self):
        """Test a failed schedule lookup during audit or check returns 503."""
        failure = StoreReadError("Could not load schedules to audit: disk I/O error")

        with mock.patch.object(IntegrityAuditor, '_load_targets', side_effect=failure):
            audit = self.client.post('/api/integrity/audit/', {}, format='json')
            check = self.client.get('/api/integrity/check/')

        self.assertEqual(audit.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(audit.data['error_type'], 'StoreReadError')
        self.assertEqual(check.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(check.data['error_type'], 'StoreReadError')


class ManagementCommandTests(ScheduleTestMixin, TestCase):
    """Test management commands."""

    def setUp(self):
        """Create a scheduled patient."""
        self.patient = self.make_patient()
        self.schedule = self.make_schedule(self.patient, start=timezone.localdate())

    def test_audit_schedules_command(self):
        """Test the audit_schedules management command."""
        out = StringIO()
        call_command('audit_schedules', '--months=2', stdout=out)

        self.assertIn('Successfully audited 1 schedule(s)', out.getvalue())
        self.assertTrue(Session.objects.for_schedule(self.schedule.id).exists())

    def test_audit_schedules_check_only(self):
        """Test --check reports without writing."""
        out = StringIO()
        call_command('audit_schedules', '--check', stdout=out)

        self.assertIn('1 without future sessions', out.getvalue())
        self.assertFalse(Session.objects.exists())
