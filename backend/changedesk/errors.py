from __future__ import annotations


class ChangeDeskError(Exception):
    status_code = 400
    error_code = "ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ChangeDeskError):
    status_code = 404
    error_code = "NOT_FOUND"


class BusinessRuleError(ChangeDeskError):
    error_code = "BUSINESS_RULE"


class InvalidStateTransitionError(BusinessRuleError):
    error_code = "INVALID_TRANSITION"


class ScheduleConflictError(BusinessRuleError):
    error_code = "SCHEDULE_CONFLICT"


class CapacityExceededError(ChangeDeskError):
    """Destination group is full. Callers may waitlist the student instead."""

    status_code = 409
    error_code = "CAPACITY_EXCEEDED"


class PeriodClosedError(ChangeDeskError):
    error_code = "PERIOD_CLOSED"


class InvalidScheduleError(ChangeDeskError):
    status_code = 422
    error_code = "INVALID_SCHEDULE"


class ConcurrencyConflictError(ChangeDeskError):
    """The conditional seat update kept losing to other writers."""

    status_code = 409
    error_code = "CONCURRENCY_CONFLICT"
