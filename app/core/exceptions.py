"""
Base exception classes for application-wide error handling.

Every domain error raised by the service layer derives from
BaseApplicationError so the API layer can turn it into a stable,
machine-readable response without leaking stack traces.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input or business rule violations
    ├── NotFoundError - Resource not found
    ├── PermissionDeniedError - Authorization failures
    ├── ConflictError - State conflicts (invalid transitions, stale records)
    └── ExternalServiceError - Third-party or downstream failures

Usage:
    from core.exceptions import ConflictError, NotFoundError

    raise NotFoundError(
        f"Appointment {appointment_id} not found",
        error_code="APPOINTMENT_NOT_FOUND",
        details={"appointment_id": str(appointment_id)},
    )

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=409)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (current state, amounts, ids)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Example:
            {
                "error": "Cannot move appointment from 'unpaid' to 'confirmed'",
                "error_code": "INVALID_TRANSITION",
                "details": {"current_status": "unpaid", "requested_status": "confirmed"}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input or a business rule is violated.

    Use for service-layer validation; DRF serializers handle
    request-shape validation on their own.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """Raised when a requested resource is not found."""

    default_error_code: str = "NOT_FOUND"


class PermissionDeniedError(BaseApplicationError):
    """
    Raised when the acting user may not perform an operation.

    Example:
        if appointment.patient_id != user.id:
            raise PermissionDeniedError(
                "Only the patient can cancel this appointment",
                error_code="NOT_APPOINTMENT_OWNER",
            )
    """

    default_error_code: str = "PERMISSION_DENIED"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Invalid state transitions
    - Optimistic locking failures
    - Lock contention

    HTTP 409 Conflict is the appropriate status for these errors.
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external or downstream call fails.

    Log the original error for debugging but don't expose internal
    details to clients. HTTP 502/503/504 are appropriate.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
