"""Views for the recurring scheduling API."""

from django.shortcuts import get_object_or_404

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from . import services
from .auditor import IntegrityAuditor
from .exceptions import (
    InvalidRuleError,
    NoActiveScheduleError,
    ScheduleNotFoundError,
    SchedulingError,
    StaleScheduleError,
)
from .models import Patient, RecurringSchedule
from .reconciliation import reconcile_schedule
from .rules import estimate_sessions_per_month
from .serializers import (
    AuditRequestSerializer,
    PreviewQuerySerializer,
    RecurringScheduleCreateSerializer,
    RecurringScheduleReadSerializer,
    RecurringScheduleUpdateSerializer,
    build_pattern,
)
from .types import ScheduleDetailsUpdate

ERROR_STATUS = [
    (InvalidRuleError, status.HTTP_400_BAD_REQUEST),
    (NoActiveScheduleError, status.HTTP_404_NOT_FOUND),
    (ScheduleNotFoundError, status.HTTP_404_NOT_FOUND),
    (StaleScheduleError, status.HTTP_409_CONFLICT),
]

OUTCOME_STATUS = {
    exc_type.__name__: code for exc_type, code in ERROR_STATUS
}


def error_response(exc: SchedulingError) -> Response:
    """Translate a scheduling error into an API response."""
    code = status.HTTP_503_SERVICE_UNAVAILABLE
    for exc_type, mapped in ERROR_STATUS:
        if isinstance(exc, exc_type):
            code = mapped
            break
    return Response({'error': str(exc), 'error_type': type(exc).__name__}, status=code)


class RecurringScheduleListCreateView(APIView):
    """
    List active schedules or create a new one.

    GET /api/schedules/ - List active schedules
    POST /api/schedules/ - Create a schedule and materialize its sessions
    """

    def get(self, request):
        """List active schedules."""
        schedules = RecurringSchedule.objects.active()
        serializer = RecurringScheduleReadSerializer(schedules, many=True)
        return Response(serializer.data)

    def post(self, request):
        """Create a recurring schedule, replacing the patient's active one."""
        serializer = RecurringScheduleCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = serializer.validated_data
        patient = get_object_or_404(Patient, pk=data['patient'])

        try:
            schedule, result = services.create_recurring_schedule(
                patient_id=patient.id,
                pattern=build_pattern(data),
                duration_minutes=data.get('duration_minutes', 50),
                session_type=data.get('session_type', 'individual'),
                session_value=data.get('session_value'),
                materialize=data.get('materialize', True),
                horizon_months=data.get('horizon_months')
            )
        except SchedulingError as exc:
            return error_response(exc)

        response_serializer = RecurringScheduleReadSerializer(schedule)
        return Response({
            'schedule': response_serializer.data,
            'sessions_created': result.inserted if result else 0
        }, status=status.HTTP_201_CREATED)


class RecurringScheduleDetailView(APIView):
    """
    Retrieve, update, or deactivate a schedule.

    GET /api/schedules/{id}/ - Retrieve schedule
    PATCH /api/schedules/{id}/ - Update details or change cadence
    DELETE /api/schedules/{id}/ - Deactivate schedule
    """

    def get(self, request, pk):
        """Retrieve a schedule."""
        schedule = get_object_or_404(RecurringSchedule, pk=pk)
        serializer = RecurringScheduleReadSerializer(schedule)
        return Response(serializer.data)

    def patch(self, request, pk):
        """Update a schedule. Rule changes create a new schedule."""
        schedule = get_object_or_404(RecurringSchedule, pk=pk)
        if not schedule.is_active:
            return error_response(StaleScheduleError(schedule.id))

        serializer = RecurringScheduleUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)

        update_data = ScheduleDetailsUpdate(
            duration_minutes=serializer.validated_data.get('duration_minutes'),
            session_type=serializer.validated_data.get('session_type'),
            session_value=serializer.validated_data.get('session_value')
        )

        try:
            if serializer.changes_cadence:
                schedule, result = services.change_schedule_cadence(
                    schedule,
                    serializer.merged_pattern(schedule),
                    details=update_data
                )
                payload = {
                    'schedule': RecurringScheduleReadSerializer(schedule).data,
                    'replaced_schedule_id': pk,
                    'reconciliation': result.as_dict(),
                }
            else:
                schedule = services.update_schedule_details(schedule, update_data)
                payload = {'schedule': RecurringScheduleReadSerializer(schedule).data}
        except SchedulingError as exc:
            return error_response(exc)

        return Response(payload)

    def delete(self, request, pk):
        """Deactivate a schedule and remove its future recurring sessions."""
        schedule = get_object_or_404(RecurringSchedule, pk=pk)

        try:
            removed = services.deactivate_schedule(schedule)
        except SchedulingError as exc:
            return error_response(exc)

        return Response({
            'message': f'Schedule {schedule.id} has been deactivated.',
            'sessions_removed': removed
        }, status=status.HTTP_200_OK)


class ScheduleOccurrencesView(APIView):
    """
    Preview the occurrences implied by a schedule.

    GET /api/schedules/{id}/occurrences/?months=N
    """

    def get(self, request, pk):
        """List computed occurrences without writing anything."""
        schedule = get_object_or_404(RecurringSchedule, pk=pk)
        query_serializer = PreviewQuerySerializer(data=request.query_params)
        query_serializer.is_valid(raise_exception=True)

        try:
            occurrences = services.preview_occurrences(
                schedule,
                months=query_serializer.validated_data.get('months')
            )
        except SchedulingError as exc:
            return error_response(exc)

        return Response({
            'schedule_id': schedule.id,
            'estimated_sessions_per_month': estimate_sessions_per_month(schedule.pattern),
            'occurrences': [o.isoformat() for o in occurrences],
        })


class ScheduleReconcileView(APIView):
    """
    Reconcile one schedule's future sessions.

    POST /api/schedules/{id}/reconcile/
    """

    def post(self, request, pk):
        """Reconcile a schedule."""
        try:
            result = reconcile_schedule(pk)
        except SchedulingError as exc:
            return error_response(exc)

        return Response(result.as_dict())


class PatientRegenerateSessionsView(APIView):
    """
    Regenerate the sessions of a patient's active schedule.

    POST /api/patients/{id}/regenerate/
    """

    def post(self, request, pk):
        """Run a single-patient audit."""
        patient = get_object_or_404(Patient, pk=pk)

        outcome = IntegrityAuditor().audit_one(patient.id)

        if outcome.success:
            return Response(outcome.as_dict())
        code = OUTCOME_STATUS.get(outcome.error_type, status.HTTP_503_SERVICE_UNAVAILABLE)
        return Response(outcome.as_dict(), status=code)


class IntegrityAuditView(APIView):
    """
    Audit and fix every active schedule.

    POST /api/integrity/audit/
    """

    def post(self, request):
        """Run a batch audit."""
        serializer = AuditRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            report = IntegrityAuditor().audit_all(
                patient_ids=serializer.validated_data.get('patient_ids'),
                only_unhealthy=serializer.validated_data.get('only_unhealthy', False)
            )
        except SchedulingError as exc:
            return error_response(exc)
        return Response(report.as_dict())


class IntegrityCheckView(APIView):
    """
    Report active schedules without future sessions.

    GET /api/integrity/check/
    """

    def get(self, request):
        """Run the integrity check without fixing anything."""
        try:
            result = IntegrityAuditor().check_integrity()
        except SchedulingError as exc:
            return error_response(exc)
        return Response(result.as_dict())
