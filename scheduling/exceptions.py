"""
Error taxonomy for the recurring scheduling engine.
"""

from typing import Optional


class SchedulingError(Exception):
    """Base class for every error raised by the scheduling engine."""


class InvalidRuleError(SchedulingError):
    """The recurrence pattern is malformed. Raised before any store write."""


class StaleScheduleError(SchedulingError):
    """Reconciliation was requested for an inactive schedule."""

    def __init__(self, schedule_id: int):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule {schedule_id} is inactive and cannot be reconciled")


class NoActiveScheduleError(SchedulingError):
    """The patient has no active recurring schedule."""

    def __init__(self, patient_id: int):
        self.patient_id = patient_id
        super().__init__(f"No active schedule found for patient {patient_id}")


class StoreReadError(SchedulingError):
    """Reading schedules or sessions from the database failed."""


class ScheduleNotFoundError(StoreReadError):
    """The schedule does not exist."""

    def __init__(self, schedule_id: int):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule {schedule_id} does not exist")


class StoreWriteError(SchedulingError):
    """Writing sessions to the database failed."""


class PartialReconciliationError(StoreWriteError):
    """
    Future sessions were deleted but the replacement insert failed.

    The enclosing transaction is rolled back, so the previous sessions
    remain. The operator should re-run reconciliation for ``schedule_id``.
    """

    def __init__(self, schedule_id: int, expected_count: int, deleted_count: int,
                 reason: Optional[str] = None):
        self.schedule_id = schedule_id
        self.expected_count = expected_count
        self.deleted_count = deleted_count
        message = (
            f"Reconciliation of schedule {schedule_id} failed after deleting "
            f"{deleted_count} session(s); {expected_count} session(s) were not inserted"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
