"""
Serializers for the recurring scheduling API.
"""

from rest_framework import serializers

from . import rules
from .exceptions import InvalidRuleError
from .models import RecurringSchedule
from .types import FREQUENCIES, RecurrencePattern

PATTERN_FIELDS = (
    'frequency',
    'interval',
    'days_of_week',
    'days_of_month',
    'sessions_per_cycle',
    'start_date',
    'start_time',
)


class RecurringScheduleReadSerializer(serializers.ModelSerializer):
    """Serializer for reading/displaying RecurringSchedule (output)."""

    weekday_names = serializers.ReadOnlyField()
    estimated_sessions_per_month = serializers.SerializerMethodField()

    class Meta:
        model = RecurringSchedule
        fields = [
            'id',
            'patient',
            'frequency',
            'interval',
            'days_of_week',
            'weekday_names',
            'days_of_month',
            'sessions_per_cycle',
            'start_date',
            'start_time',
            'duration_minutes',
            'session_type',
            'session_value',
            'is_active',
            'estimated_sessions_per_month',
            'created_at',
            'updated_at',
        ]

    def get_estimated_sessions_per_month(self, obj):
        return rules.estimate_sessions_per_month(obj.pattern)


class RecurrencePatternSerializer(serializers.Serializer):
    """Validates the rule fields and builds a RecurrencePattern."""

    frequency = serializers.ChoiceField(choices=FREQUENCIES)
    interval = serializers.IntegerField(min_value=1, default=1)
    days_of_week = serializers.ListField(
        child=serializers.IntegerField(min_value=0, max_value=6),
        required=False,
        default=list
    )
    days_of_month = serializers.ListField(
        child=serializers.IntegerField(min_value=1, max_value=31),
        required=False,
        default=list
    )
    sessions_per_cycle = serializers.IntegerField(min_value=1, default=1)
    start_date = serializers.DateField()
    start_time = serializers.TimeField()

    def validate(self, data):
        """Run the rule engine's own validation."""
        try:
            rules.validate_pattern(build_pattern(data))
        except InvalidRuleError as exc:
            raise serializers.ValidationError(str(exc))
        return data


class RecurringScheduleCreateSerializer(RecurrencePatternSerializer):
    """Serializer for creating a recurring schedule with options."""

    patient = serializers.IntegerField(min_value=1)
    duration_minutes = serializers.IntegerField(min_value=1, default=50)
    session_type = serializers.ChoiceField(
        choices=[c[0] for c in RecurringSchedule.SESSION_TYPE_CHOICES],
        default='individual'
    )
    session_value = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        required=False,
        allow_null=True
    )
    materialize = serializers.BooleanField(default=True)
    horizon_months = serializers.IntegerField(min_value=1, max_value=36, required=False)


class RecurringScheduleUpdateSerializer(serializers.Serializer):
    """
    Serializer for updating a schedule.

    Any rule field changes the cadence (a new schedule is created); the
    remaining fields are updated in place.
    """

    frequency = serializers.ChoiceField(choices=FREQUENCIES, required=False)
    interval = serializers.IntegerField(min_value=1, required=False)
    days_of_week = serializers.ListField(
        child=serializers.IntegerField(min_value=0, max_value=6),
        required=False
    )
    days_of_month = serializers.ListField(
        child=serializers.IntegerField(min_value=1, max_value=31),
        required=False
    )
    sessions_per_cycle = serializers.IntegerField(min_value=1, required=False)
    start_date = serializers.DateField(required=False)
    start_time = serializers.TimeField(required=False)

    duration_minutes = serializers.IntegerField(min_value=1, required=False)
    session_type = serializers.ChoiceField(
        choices=[c[0] for c in RecurringSchedule.SESSION_TYPE_CHOICES],
        required=False
    )
    session_value = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        required=False,
        allow_null=True
    )

    @property
    def changes_cadence(self):
        return any(name in self.validated_data for name in PATTERN_FIELDS)

    def merged_pattern(self, schedule: RecurringSchedule) -> RecurrencePattern:
        """Rule of ``schedule`` with the submitted rule fields applied."""
        current = schedule.pattern
        data = {
            'frequency': current.frequency,
            'interval': current.interval,
            'days_of_week': current.days_of_week,
            'days_of_month': current.days_of_month,
            'sessions_per_cycle': current.sessions_per_cycle,
            'start_date': current.start_date,
            'start_time': current.start_time,
        }
        data.update({k: v for k, v in self.validated_data.items() if k in PATTERN_FIELDS})
        return build_pattern(data)


class AuditRequestSerializer(serializers.Serializer):
    """Options for a batch audit."""

    patient_ids = serializers.ListField(
        child=serializers.IntegerField(min_value=1),
        required=False,
        allow_null=True,
        default=None
    )
    only_unhealthy = serializers.BooleanField(default=False)


class PreviewQuerySerializer(serializers.Serializer):
    """Query parameters for the occurrence preview."""

    months = serializers.IntegerField(min_value=1, max_value=36, required=False)


def build_pattern(data) -> RecurrencePattern:
    """Build a RecurrencePattern from validated serializer data."""
    return RecurrencePattern(
        frequency=data['frequency'],
        interval=data.get('interval', 1),
        days_of_week=frozenset(data.get('days_of_week') or ()),
        days_of_month=frozenset(data.get('days_of_month') or ()),
        sessions_per_cycle=data.get('sessions_per_cycle', 1),
        start_date=data['start_date'],
        start_time=data['start_time'],
    )
