"""
Custom managers and querysets for scheduling models.

QuerySets define chainable query methods.
Managers use QuerySets to enable method chaining.
No business logic should be here - only query operations.
"""

from django.db import models

from .types import ORIGIN_RECURRING


class RecurringScheduleQuerySet(models.QuerySet):
    """Custom queryset for RecurringSchedule model with chainable methods."""

    def active(self):
        """Get all active schedules."""
        return self.filter(is_active=True)

    def for_patient(self, patient_id):
        """
        Get schedules owned by a patient.

        Args:
            patient_id: Patient primary key
        """
        return self.filter(patient_id=patient_id)

    def auditable(self):
        """Get active schedules of patients that are not archived."""
        return self.active().filter(patient__is_archived=False)


class RecurringScheduleManager(models.Manager):
    """Custom manager for RecurringSchedule model."""

    def get_queryset(self):
        """Return custom queryset for method chaining."""
        return RecurringScheduleQuerySet(self.model, using=self._db)

    def active(self):
        """Get all active schedules."""
        return self.get_queryset().active()

    def for_patient(self, patient_id):
        """Get schedules owned by a patient."""
        return self.get_queryset().for_patient(patient_id)

    def auditable(self):
        """Get active schedules of patients that are not archived."""
        return self.get_queryset().auditable()


class SessionQuerySet(models.QuerySet):
    """Custom queryset for Session model with chainable methods."""

    def recurring(self):
        """Get sessions generated from a schedule."""
        return self.filter(origin=ORIGIN_RECURRING)

    def future(self, now):
        """
        Get sessions at or after an instant.

        Args:
            now: aware datetime
        """
        return self.filter(scheduled_at__gte=now)

    def for_schedule(self, schedule_id):
        """
        Get sessions tagged with a schedule.

        Args:
            schedule_id: RecurringSchedule primary key
        """
        return self.filter(schedule_id=schedule_id)

    def future_recurring_for_schedule(self, schedule_id, now):
        """Get the sessions reconciliation is allowed to replace."""
        return self.for_schedule(schedule_id).recurring().future(now)


class SessionManager(models.Manager):
    """Custom manager for Session model."""

    def get_queryset(self):
        """Return custom queryset for method chaining."""
        return SessionQuerySet(self.model, using=self._db)

    def recurring(self):
        """Get sessions generated from a schedule."""
        return self.get_queryset().recurring()

    def future(self, now):
        """Get sessions at or after an instant."""
        return self.get_queryset().future(now)

    def for_schedule(self, schedule_id):
        """Get sessions tagged with a schedule."""
        return self.get_queryset().for_schedule(schedule_id)

    def future_recurring_for_schedule(self, schedule_id, now):
        """Get the sessions reconciliation is allowed to replace."""
        return self.get_queryset().future_recurring_for_schedule(schedule_id, now)
