"""
Payment-specific exceptions.

Exception Hierarchy:
    PaymentError (base for payment domain)
    └── PaymentNotVerifiedError - Completion blocked, payment not confirmed

    StripeError (ExternalServiceError) - Base for all Stripe errors
    ├── StripeInvalidRequestError - Invalid request / unknown object (permanent)
    ├── StripeRateLimitError - Rate limited (transient, retry)
    ├── StripeAPIUnavailableError - API unavailable (transient, retry)
    └── StripeTimeoutError - Request timeout (transient, retry)

    AdapterUnavailableError - Verification adapter failed or timed out
    StaleRecordError - Optimistic locking conflict (inherits ConflictError)
    LockAcquisitionError - Distributed lock timeout (inherits ConflictError)

Usage:
    from payments.exceptions import PaymentNotVerifiedError, StaleRecordError

    if verification.payment_status != "paid":
        raise PaymentNotVerifiedError(
            "Payment has not been confirmed yet",
            details={"payment_status": verification.payment_status},
        )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError, ExternalServiceError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """Base exception for payment domain errors."""

    default_error_code: str = "PAYMENT_ERROR"


class PaymentNotVerifiedError(PaymentError):
    """
    Raised when a session cannot be completed because payment is unconfirmed.

    Retryable by the caller once the external payment settles.
    """

    default_error_code: str = "PAYMENT_NOT_VERIFIED"
    http_status = 402


class AdapterUnavailableError(ExternalServiceError):
    """
    Raised when the payment verification adapter failed or timed out.

    The verification result is reported as ``pending``; nothing was
    written and the caller may retry.
    """

    default_error_code: str = "ADAPTER_UNAVAILABLE"
    http_status = 503


# =============================================================================
# Stripe-Specific Exceptions
# =============================================================================


class StripeError(ExternalServiceError):
    """
    Base exception for all Stripe-related errors.

    Attributes:
        stripe_code: Stripe's internal error code
        is_retryable: Whether the call can be retried with backoff
    """

    default_error_code: str = "STRIPE_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if stripe_code:
            details["stripe_code"] = stripe_code
        super().__init__(message, error_code=error_code, details=details)
        self.stripe_code = stripe_code


class StripeInvalidRequestError(StripeError):
    """
    Invalid request parameters sent to Stripe.

    Covers unknown object IDs, bad webhook signatures and authentication
    failures. Retrying with the same input never succeeds.
    """

    default_error_code: str = "INVALID_STRIPE_REQUEST"
    is_retryable: bool = False


class StripeRateLimitError(StripeError):
    default_error_code: str = "STRIPE_RATE_LIMITED"
    is_retryable: bool = True


class StripeAPIUnavailableError(StripeError):
    """Network failures and Stripe 5xx responses."""

    default_error_code: str = "STRIPE_UNAVAILABLE"
    is_retryable: bool = True


class StripeTimeoutError(StripeError):
    """
    Stripe API call timed out.

    The request may have reached Stripe; retrieval calls are safe to
    repeat.
    """

    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    The record changed between the caller's read and this write. Retry
    with fresh data or abort.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Another process holds the lock and it was not released within the
    timeout.
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


__all__ = [
    # Payment domain
    "PaymentError",
    "PaymentNotVerifiedError",
    "AdapterUnavailableError",
    # Stripe-specific
    "StripeError",
    "StripeInvalidRequestError",
    "StripeRateLimitError",
    "StripeAPIUnavailableError",
    "StripeTimeoutError",
    # Concurrency control
    "StaleRecordError",
    "LockAcquisitionError",
]
