"""
Models for the recurring scheduling engine.

This implementation uses the Occurrence Materialization Pattern where:
- RecurringSchedule stores the recurrence policy attached to a patient
- Session stores ALL materialized session records (both recurring and manual)
"""

from datetime import timedelta

from django.core.exceptions import ValidationError
from django.db import models

from .managers import RecurringScheduleManager, SessionManager
from .types import FREQUENCIES, ORIGIN_MANUAL, ORIGIN_RECURRING, RecurrencePattern


class Patient(models.Model):
    """A patient of the practice. Managed elsewhere in the dashboard."""

    name = models.CharField(max_length=200)
    is_archived = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name


class RecurringSchedule(models.Model):
    """
    Stores the recurrence rule for a patient's sessions.

    A patient has at most one active schedule. Changing the cadence
    deactivates the current row and creates a new one, so history is kept.
    Actual sessions are stored in the Session model.
    """

    FREQUENCY_CHOICES = [(f, f.capitalize()) for f in FREQUENCIES]

    SESSION_TYPE_CHOICES = [
        ('individual', 'Individual'),
        ('couple', 'Couple'),
        ('group', 'Group'),
        ('online', 'Online'),
    ]

    WEEKDAY_NAMES = ['Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday']

    patient = models.ForeignKey(
        Patient,
        on_delete=models.CASCADE,
        related_name='schedules'
    )

    frequency = models.CharField(max_length=20, choices=FREQUENCY_CHOICES, default='weekly')
    interval = models.PositiveIntegerField(default=1)
    days_of_week = models.JSONField(
        default=list,
        blank=True,
        help_text="Days of week for sessions (0=Sunday, 6=Saturday)"
    )
    days_of_month = models.JSONField(
        default=list,
        blank=True,
        help_text="Days of month (monthly patterns, informational)"
    )
    sessions_per_cycle = models.PositiveIntegerField(default=1)
    start_date = models.DateField(help_text="First date this schedule is active")
    start_time = models.TimeField(help_text="Time of day for the sessions")

    duration_minutes = models.PositiveIntegerField(default=50)
    session_type = models.CharField(max_length=20, choices=SESSION_TYPE_CHOICES, default='individual')
    session_value = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    is_active = models.BooleanField(
        default=True,
        help_text="Whether this schedule is currently active"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = RecurringScheduleManager()

    class Meta:
        ordering = ['id']
        indexes = [
            models.Index(fields=['patient', 'is_active'], name='sched_patient_active_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['patient'],
                condition=models.Q(is_active=True),
                name='one_active_schedule_per_patient',
            ),
        ]

    def __str__(self):
        state = '' if self.is_active else ' [inactive]'
        return f"{self.patient} - {self.frequency} at {self.start_time.strftime('%H:%M')}{state}"

    @property
    def pattern(self) -> RecurrencePattern:
        """The recurrence rule as an immutable value."""
        return RecurrencePattern(
            frequency=self.frequency,
            interval=self.interval,
            days_of_week=frozenset(self.days_of_week or ()),
            days_of_month=frozenset(self.days_of_month or ()),
            sessions_per_cycle=self.sessions_per_cycle,
            start_date=self.start_date,
            start_time=self.start_time,
        )

    @property
    def weekday_names(self):
        """Human-readable weekday names."""
        return [self.WEEKDAY_NAMES[d] for d in sorted(self.days_of_week or ()) if 0 <= d <= 6]

    def clean(self):
        """Validate schedule data."""
        super().clean()

        if self.interval is not None and self.interval < 1:
            raise ValidationError({'interval': 'Interval must be at least 1.'})

        if any(not isinstance(d, int) or not 0 <= d <= 6 for d in self.days_of_week or ()):
            raise ValidationError({
                'days_of_week': 'Days of week must be integers between 0 (Sunday) and 6 (Saturday).'
            })

        if any(not isinstance(d, int) or not 1 <= d <= 31 for d in self.days_of_month or ()):
            raise ValidationError({
                'days_of_month': 'Days of month must be integers between 1 and 31.'
            })

    def save(self, *args, **kwargs):
        """Save with validation."""
        self.full_clean()
        super().save(*args, **kwargs)


class Session(models.Model):
    """
    Stores ALL materialized sessions (both recurring and manual).

    Recurring sessions: origin='recurring', reference the schedule that produced them
    Manual sessions: origin='manual', schedule is optional
    """

    STATUS_CHOICES = [
        ('scheduled', 'Scheduled'),
        ('confirmed', 'Confirmed'),
        ('completed', 'Completed'),
        ('canceled', 'Canceled'),
    ]

    ORIGIN_CHOICES = [
        (ORIGIN_RECURRING, 'Recurring'),
        (ORIGIN_MANUAL, 'Manual'),
    ]

    patient = models.ForeignKey(
        Patient,
        on_delete=models.CASCADE,
        related_name='sessions'
    )
    schedule = models.ForeignKey(
        RecurringSchedule,
        on_delete=models.PROTECT,
        related_name='sessions',
        null=True,
        blank=True,
        help_text="Schedule that produced this session (required for recurring sessions)"
    )

    scheduled_at = models.DateTimeField()
    duration_minutes = models.PositiveIntegerField(default=50)
    session_type = models.CharField(
        max_length=20,
        choices=RecurringSchedule.SESSION_TYPE_CHOICES,
        default='individual'
    )
    value = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='scheduled')
    paid = models.BooleanField(default=False)
    origin = models.CharField(max_length=20, choices=ORIGIN_CHOICES, default=ORIGIN_MANUAL)
    notes = models.TextField(blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SessionManager()

    class Meta:
        ordering = ['scheduled_at']
        indexes = [
            models.Index(fields=['schedule', 'origin', 'scheduled_at'], name='session_sched_origin_at_idx'),
            models.Index(fields=['patient', 'scheduled_at'], name='session_patient_at_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(origin=ORIGIN_RECURRING, schedule__isnull=True),
                name='recurring_session_has_schedule',
            ),
        ]

    def __str__(self):
        status_str = f" [{self.status}]" if self.status != 'scheduled' else ""
        return f"{self.patient} - {self.scheduled_at.strftime('%Y-%m-%d %H:%M')}{status_str}"

    @property
    def end_at(self):
        """Calculate end datetime based on duration."""
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

    def clean(self):
        """Validate session data."""
        super().clean()

        if self.origin == ORIGIN_RECURRING and self.schedule_id is None:
            raise ValidationError({
                'schedule': 'Recurring sessions must reference the schedule that produced them.'
            })

    def save(self, *args, **kwargs):
        """Save with validation."""
        self.full_clean()
        super().save(*args, **kwargs)
