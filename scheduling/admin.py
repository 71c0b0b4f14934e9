"""
Admin configuration for the scheduling app.
"""

from django.contrib import admin
from .models import Patient, RecurringSchedule, Session


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    """Admin interface for Patient model."""

    list_display = ['name', 'is_archived', 'created_at']
    list_filter = ['is_archived']
    search_fields = ['name']


@admin.register(RecurringSchedule)
class RecurringScheduleAdmin(admin.ModelAdmin):
    """Admin interface for RecurringSchedule model."""

    list_display = ['patient', 'frequency', 'interval', 'start_date', 'start_time', 'is_active']
    list_filter = ['is_active', 'frequency', 'session_type', 'created_at']
    search_fields = ['patient__name']
    date_hierarchy = 'start_date'

    fieldsets = (
        ('Basic Information', {
            'fields': ('patient', 'is_active')
        }),
        ('Recurrence Rules', {
            'fields': ('frequency', 'interval', 'days_of_week', 'days_of_month', 'sessions_per_cycle')
        }),
        ('Timing', {
            'fields': ('start_date', 'start_time', 'duration_minutes')
        }),
        ('Session Details', {
            'fields': ('session_type', 'session_value')
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = ['created_at', 'updated_at']


@admin.register(Session)
class SessionAdmin(admin.ModelAdmin):
    """Admin interface for Session model."""

    list_display = ['patient', 'scheduled_at', 'duration_minutes', 'status', 'paid', 'origin', 'schedule']
    list_filter = ['status', 'paid', 'origin', 'session_type']
    search_fields = ['patient__name', 'notes']
    date_hierarchy = 'scheduled_at'

    fieldsets = (
        ('Basic Information', {
            'fields': ('patient', 'schedule', 'origin')
        }),
        ('Schedule', {
            'fields': ('scheduled_at', 'duration_minutes', 'session_type')
        }),
        ('Status', {
            'fields': ('status', 'paid', 'value', 'notes')
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = ['created_at', 'updated_at']
