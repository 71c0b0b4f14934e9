"""
Data types and constants for the recurring scheduling engine.

This module contains:
- The immutable RecurrencePattern value evaluated by the rule engine
- DTOs (Data Transfer Objects) returned by reconciliation and audits
- Constants used across the application
"""

from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal
from typing import FrozenSet, List, Optional


DEFAULT_HORIZON_MONTHS = 12
MIN_ITERATION_CEILING = 1000
MAX_DAYS_PER_MONTH = 31

DAILY = 'daily'
WEEKLY = 'weekly'
BIWEEKLY = 'biweekly'
MONTHLY = 'monthly'
CUSTOM = 'custom'

FREQUENCIES = (DAILY, WEEKLY, BIWEEKLY, MONTHLY, CUSTOM)

ORIGIN_RECURRING = 'recurring'
ORIGIN_MANUAL = 'manual'

STATUS_SCHEDULED = 'scheduled'


@dataclass(frozen=True)
class RecurrencePattern:
    """
    An abstract repetition rule.

    Days of week use 0=Sunday .. 6=Saturday.
    """
    frequency: str
    start_date: date
    start_time: time
    interval: int = 1
    days_of_week: FrozenSet[int] = frozenset()
    days_of_month: FrozenSet[int] = frozenset()
    sessions_per_cycle: int = 1


@dataclass
class ReconciliationResult:
    """Counts produced by a single schedule reconciliation."""
    schedule_id: int
    inserted: int = 0
    deleted: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.deleted)

    def as_dict(self) -> dict:
        return {
            'schedule_id': self.schedule_id,
            'inserted': self.inserted,
            'deleted': self.deleted,
        }


@dataclass
class AuditOutcome:
    """Per-schedule result of an audit run."""
    patient_id: int
    schedule_id: Optional[int] = None
    success: bool = False
    inserted: int = 0
    deleted: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            'patient_id': self.patient_id,
            'schedule_id': self.schedule_id,
            'success': self.success,
            'inserted': self.inserted,
            'deleted': self.deleted,
            'error': self.error,
            'error_type': self.error_type,
        }


@dataclass
class AuditReport:
    """Summary of a batch audit, in target order."""
    outcomes: List[AuditOutcome] = field(default_factory=list)
    skipped_schedule_ids: List[int] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> List[AuditOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[AuditOutcome]:
        return [o for o in self.outcomes if not o.success]

    def as_dict(self) -> dict:
        return {
            'total': len(self.outcomes),
            'succeeded': len(self.succeeded),
            'failed': len(self.failed),
            'inserted': sum(o.inserted for o in self.outcomes),
            'deleted': sum(o.deleted for o in self.outcomes),
            'cancelled': self.cancelled,
            'skipped_schedule_ids': list(self.skipped_schedule_ids),
            'failures': [o.as_dict() for o in self.failed],
        }


@dataclass
class IntegrityCheckResult:
    """Active schedules that have no future recurring sessions."""
    total: int
    affected_schedule_ids: List[int] = field(default_factory=list)
    affected_patient_ids: List[int] = field(default_factory=list)

    @property
    def healthy(self) -> int:
        return self.total - len(self.affected_schedule_ids)

    def as_dict(self) -> dict:
        return {
            'total': self.total,
            'affected': len(self.affected_schedule_ids),
            'healthy': self.healthy,
            'affected_schedule_ids': list(self.affected_schedule_ids),
            'affected_patient_ids': list(self.affected_patient_ids),
        }


@dataclass
class ScheduleDetailsUpdate:
    """DTO for schedule updates that do not change the cadence."""
    duration_minutes: Optional[int] = None
    session_type: Optional[str] = None
    session_value: Optional[Decimal] = None
