"""
Integrity audits: reconciliation across many schedules.

The auditor is the batch driver for reconciliation. Each schedule is
reconciled independently; a failure is recorded in the report and the batch
moves on. Outcomes are always reported in target order (schedule id), even
when a worker pool is used.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from django.conf import settings
from django.db import DatabaseError, connections
from django.utils import timezone

from .exceptions import NoActiveScheduleError, StoreReadError
from .models import RecurringSchedule, Session
from .reconciliation import reconcile_schedule
from .types import AuditOutcome, AuditReport, IntegrityCheckResult

logger = logging.getLogger(__name__)

# (schedule_id, patient_id)
Target = Tuple[int, int]


class IntegrityAuditor:
    """
    Runs reconciliation for one patient or for every auditable schedule.

    Args:
        horizon_months: Forward window passed to reconciliation
        max_workers: Size of the worker pool; 1 runs sequentially
    """

    def __init__(self, horizon_months: Optional[int] = None, max_workers: Optional[int] = None):
        self.horizon_months = horizon_months
        self.max_workers = max(1, max_workers or getattr(settings, 'SCHEDULING_AUDIT_MAX_WORKERS', 1))

    def audit_one(self, patient_id: int, now: Optional[datetime] = None) -> AuditOutcome:
        """Regenerate the sessions of one patient's active schedule."""
        now = now or timezone.now()

        try:
            schedule_id = self._active_schedule_id(patient_id)
        except (NoActiveScheduleError, StoreReadError) as exc:
            logger.warning(f"Audit skipped for patient {patient_id}: {exc}")
            return AuditOutcome(patient_id=patient_id, error=str(exc), error_type=type(exc).__name__)

        return self._audit_target((schedule_id, patient_id), now)

    def audit_all(
        self,
        patient_ids: Optional[Iterable[int]] = None,
        only_unhealthy: bool = False,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None
    ) -> AuditReport:
        """
        Reconcile every active schedule of non-archived patients.

        Args:
            patient_ids: Restrict the audit to these patients
            only_unhealthy: Only reconcile schedules without future sessions
            cancel_event: When set, schedules not yet started are skipped
            now: Current instant (defaults to timezone.now())

        Returns:
            AuditReport with one outcome per reconciled schedule
        """
        now = now or timezone.now()
        targets = self._load_targets(patient_ids)

        if only_unhealthy:
            unhealthy = set(self._schedules_without_future_sessions([t[0] for t in targets], now))
            targets = [t for t in targets if t[0] in unhealthy]

        logger.info(f"Auditing {len(targets)} schedule(s) with {self.max_workers} worker(s)")

        if self.max_workers == 1:
            outcomes = self._run_sequential(targets, cancel_event, now)
        else:
            outcomes = self._run_pool(targets, cancel_event, now)

        report = AuditReport()
        for target, outcome in zip(targets, outcomes):
            if outcome is None:
                report.skipped_schedule_ids.append(target[0])
            else:
                report.outcomes.append(outcome)
        report.cancelled = bool(report.skipped_schedule_ids) or (
            cancel_event is not None and cancel_event.is_set()
        )

        summary = report.as_dict()
        logger.info(
            f"Audit finished: {summary['succeeded']} succeeded, {summary['failed']} failed, "
            f"{len(report.skipped_schedule_ids)} skipped"
        )
        return report

    def check_integrity(self, now: Optional[datetime] = None) -> IntegrityCheckResult:
        """List active schedules that have no future recurring sessions. Writes nothing."""
        now = now or timezone.now()
        targets = self._load_targets(None)
        affected = set(self._schedules_without_future_sessions([t[0] for t in targets], now))

        result = IntegrityCheckResult(total=len(targets))
        for schedule_id, patient_id in targets:
            if schedule_id in affected:
                result.affected_schedule_ids.append(schedule_id)
                result.affected_patient_ids.append(patient_id)
        return result

    def _run_sequential(self, targets: List[Target], cancel_event, now) -> List[Optional[AuditOutcome]]:
        outcomes = []
        for target in targets:
            if cancel_event is not None and cancel_event.is_set():
                outcomes.append(None)
                continue
            outcomes.append(self._audit_target(target, now))
        return outcomes

    def _run_pool(self, targets: List[Target], cancel_event, now) -> List[Optional[AuditOutcome]]:
        def work(target: Target) -> Optional[AuditOutcome]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            try:
                return self._audit_target(target, now)
            finally:
                connections.close_all()

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(executor.map(work, targets))

    def _audit_target(self, target: Target, now: datetime) -> AuditOutcome:
        """Reconcile one schedule, turning any failure into a failed outcome."""
        schedule_id, patient_id = target
        outcome = AuditOutcome(patient_id=patient_id, schedule_id=schedule_id)

        try:
            result = reconcile_schedule(schedule_id, horizon_months=self.horizon_months, now=now)
        except Exception as exc:
            logger.exception(f"Reconciliation failed for schedule {schedule_id} (patient {patient_id})")
            outcome.error = str(exc)
            outcome.error_type = type(exc).__name__
            return outcome

        outcome.success = True
        outcome.inserted = result.inserted
        outcome.deleted = result.deleted
        return outcome

    def _active_schedule_id(self, patient_id: int) -> int:
        try:
            schedule_id = (
                RecurringSchedule.objects.active()
                .for_patient(patient_id)
                .values_list('id', flat=True)
                .first()
            )
        except DatabaseError as exc:
            raise StoreReadError(f"Could not load schedule of patient {patient_id}: {exc}") from exc

        if schedule_id is None:
            raise NoActiveScheduleError(patient_id)
        return schedule_id

    def _load_targets(self, patient_ids: Optional[Iterable[int]]) -> List[Target]:
        queryset = RecurringSchedule.objects.auditable().order_by('id')
        if patient_ids is not None:
            queryset = queryset.filter(patient_id__in=list(patient_ids))
        try:
            return list(queryset.values_list('id', 'patient_id'))
        except DatabaseError as exc:
            raise StoreReadError(f"Could not load schedules to audit: {exc}") from exc

    def _schedules_without_future_sessions(self, schedule_ids: List[int], now: datetime) -> List[int]:
        try:
            covered = set(
                Session.objects.recurring()
                .future(now)
                .filter(schedule_id__in=schedule_ids)
                .values_list('schedule_id', flat=True)
                .distinct()
            )
        except DatabaseError as exc:
            raise StoreReadError(f"Could not inspect future sessions: {exc}") from exc
        return [schedule_id for schedule_id in schedule_ids if schedule_id not in covered]
