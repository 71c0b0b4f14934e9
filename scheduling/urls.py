"""
URL routing for the scheduling API.
"""

from django.urls import path
from .views import (
    RecurringScheduleListCreateView,
    RecurringScheduleDetailView,
    ScheduleOccurrencesView,
    ScheduleReconcileView,
    PatientRegenerateSessionsView,
    IntegrityAuditView,
    IntegrityCheckView,
)

urlpatterns = [
    path('schedules/', RecurringScheduleListCreateView.as_view(), name='schedule-list-create'),
    path('schedules/<int:pk>/', RecurringScheduleDetailView.as_view(), name='schedule-detail'),
    path('schedules/<int:pk>/occurrences/', ScheduleOccurrencesView.as_view(), name='schedule-occurrences'),
    path('schedules/<int:pk>/reconcile/', ScheduleReconcileView.as_view(), name='schedule-reconcile'),
    path('patients/<int:pk>/regenerate/', PatientRegenerateSessionsView.as_view(), name='patient-regenerate'),
    path('integrity/audit/', IntegrityAuditView.as_view(), name='integrity-audit'),
    path('integrity/check/', IntegrityCheckView.as_view(), name='integrity-check'),
]
