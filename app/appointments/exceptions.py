"""
Appointment domain exceptions.

Exception Hierarchy:
    ConflictError
    └── InvalidTransitionError - status change outside the graph or guard failed
    ValidationError
    ├── AppointmentRuleError - business rule violation (nothing to cancel, ...)
    └── InconsistentSessionData - unparseable recurring entry (logged only)
    ExternalServiceError
    └── ReconciliationTimeoutError - facade deadline exceeded
    BaseApplicationError
    └── ReconciliationFailedError - storage failure, unit rolled back
"""

from __future__ import annotations

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    ValidationError,
)


class InvalidTransitionError(ConflictError):
    """
    Raised when a requested status change is not allowed.

    error_code is INVALID_TRANSITION when the edge is not in the graph
    and TRANSITION_GUARD_FAILED when the edge exists but a guard
    (payment completed, therapist assigned, date set) does not hold.
    """

    default_error_code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        current_status: str,
        requested_status: str,
        message: str | None = None,
        error_code: str | None = None,
        failed_guards: list[str] | None = None,
    ):
        details = {
            "current_status": str(current_status),
            "requested_status": str(requested_status),
        }
        if failed_guards:
            details["failed_guards"] = failed_guards
        super().__init__(
            message
            or f"Cannot move appointment from '{current_status}' to '{requested_status}'",
            error_code=error_code,
            details=details,
        )
        self.current_status = current_status
        self.requested_status = requested_status


class AppointmentRuleError(ValidationError):
    default_error_code: str = "APPOINTMENT_RULE_VIOLATION"


class InconsistentSessionData(ValidationError):
    """A recurring session entry could not be parsed; never propagated."""

    default_error_code: str = "INCONSISTENT_SESSION_DATA"


class ReconciliationTimeoutError(ExternalServiceError):
    default_error_code: str = "RECONCILIATION_TIMEOUT"
    http_status = 504


class ReconciliationFailedError(BaseApplicationError):
    """Storage or ledger failure inside a reconciliation unit; nothing was persisted."""

    default_error_code: str = "RECONCILIATION_FAILED"
    http_status = 500
