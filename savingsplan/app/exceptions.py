"""Errors raised by the planning and execution tracking engine.

Calculation code never raises for financial edge cases (zero targets, past
deadlines, over-allocation); those are returned as data. Only lifecycle
violations and I/O failures use these exceptions.
"""


class PlanningError(Exception):
    """Base class for engine errors that map to an actionable API response"""

    status_code = 400
    code = "planning_error"
    default_message = "The request could not be completed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidTransition(PlanningError):
    status_code = 409
    code = "invalid_transition"
    default_message = "This action is not allowed in the month's current state"


class GracePeriodExpired(PlanningError):
    status_code = 409
    code = "grace_period_expired"
    default_message = "The 24-hour undo window has passed"


class DuplicateActiveRecord(PlanningError):
    status_code = 409
    code = "duplicate_active_record"
    default_message = "This month is already being tracked"


class RateUnavailable(PlanningError):
    status_code = 503
    code = "rate_unavailable"
    default_message = "Exchange rate is currently unavailable"


class MissingSnapshot(PlanningError):
    status_code = 500
    code = "missing_snapshot"
    default_message = "The completed record for this month is missing"
