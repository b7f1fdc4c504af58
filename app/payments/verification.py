"""
Payment Verification Adapter.

Resolves opaque external payment references into one normalized status:
``paid``, ``failed``, ``pending`` or ``unpaid``. The shape of a reference
is inferred from its Stripe prefix:

    cs_   checkout session
    pi_   payment intent
    ch_   charge
    in_   invoice
    sub_  subscription

Resolution order: the checkout session first; if it resolves to paid the
answer is final. Otherwise the other reference is inspected with the
rules of its own shape. Lookup and network failures never turn into
``paid``: they yield ``pending`` with ``unavailable=True`` so callers can
tell "not paid yet" from "could not ask".

Every call runs on a worker thread bounded by a hard timeout and behind
a cache-backed circuit breaker, so a hung or failing Stripe degrades to
``pending`` instead of blocking the request.

Usage:
    from payments.verification import PaymentVerificationService

    result = PaymentVerificationService.verify(
        checkout_session_id=appointment.checkout_session_id,
        reference=appointment.payment_reference,
    )
    if result.is_paid:
        ...
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from django.conf import settings

from core.circuit_breaker import CircuitBreaker
from core.services import BaseService
from payments.adapters import StripeAdapter
from payments.exceptions import StripeError, StripeInvalidRequestError

if TYPE_CHECKING:
    from typing import Any

PAID = "paid"
FAILED = "failed"
PENDING = "pending"
UNPAID = "unpaid"

ACTIVE_SUBSCRIPTION_STATES = ("active", "trialing")

REFERENCE_PREFIXES = {
    "cs_": "checkout_session",
    "pi_": "payment_intent",
    "ch_": "charge",
    "in_": "invoice",
    "sub_": "subscription",
}

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="payment-verification")


def verification_circuit() -> CircuitBreaker:
    """Circuit breaker shared by every process verifying Stripe payments."""
    return CircuitBreaker(
        "stripe-payment-verification",
        failure_threshold=settings.PAYMENT_VERIFICATION_CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.PAYMENT_VERIFICATION_CIRCUIT_RECOVERY_TIMEOUT,
    )


def reference_kind(reference: str | None) -> str | None:
    """Infer what a Stripe reference points at from its prefix."""
    if not reference:
        return None
    for prefix, kind in REFERENCE_PREFIXES.items():
        if reference.startswith(prefix):
            return kind
    return None


@dataclass(frozen=True)
class VerificationResult:
    """
    Normalized verification outcome.

    Attributes:
        payment_status: paid | failed | pending | unpaid
        subscription_status: Raw Stripe subscription status, if one was seen
        is_active: True when the payment is settled
        source: Reference kind that decided the outcome
        unavailable: True when Stripe could not be asked (error, timeout,
            open circuit); payment_status is then always pending
        error: Short description of the failure, if any
    """

    payment_status: str
    subscription_status: str | None = None
    is_active: bool = False
    source: str | None = None
    unavailable: bool = False
    error: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PAID

    @classmethod
    def paid(cls, source: str, subscription_status: str | None = None) -> VerificationResult:
        return cls(PAID, subscription_status=subscription_status, is_active=True, source=source)

    @classmethod
    def pending(cls, source: str | None = None, error: str | None = None) -> VerificationResult:
        return cls(PENDING, source=source, unavailable=error is not None, error=error)


def _as_object(value: Any, retrieve) -> dict[str, Any] | None:
    """Return an expanded Stripe object, retrieving it when only an ID was given."""
    if not value:
        return None
    if isinstance(value, str):
        return retrieve(value)
    return value


class PaymentVerificationService(BaseService):
    """
    Resolves external payment references to a normalized status.

    All public entry points are classmethods; nothing is persisted here.
    """

    @classmethod
    def verify(
        cls,
        checkout_session_id: str | None = None,
        reference: str | None = None,
        timeout: float | None = None,
    ) -> VerificationResult:
        """
        Verify a payment by checkout session and/or another reference.

        Args:
            checkout_session_id: Stripe checkout session ID (cs_xxx)
            reference: Any other Stripe reference (pi_, ch_, in_, sub_)
            timeout: Seconds to wait for Stripe (defaults to
                PAYMENT_VERIFICATION_TIMEOUT_SECONDS)

        Returns:
            VerificationResult; never raises for Stripe failures
        """
        logger = cls.get_logger()
        if not checkout_session_id and not reference:
            return VerificationResult.pending()

        if timeout is None:
            timeout = settings.PAYMENT_VERIFICATION_TIMEOUT_SECONDS

        log_context = {
            "checkout_session_id": checkout_session_id,
            "reference": reference,
            "reference_kind": reference_kind(reference),
        }

        circuit = verification_circuit()
        if not circuit.is_available():
            logger.warning("Payment verification skipped: circuit open", extra=log_context)
            return VerificationResult.pending(error="circuit_open")

        start_time = time.monotonic()
        future = _executor.submit(cls._resolve, checkout_session_id, reference)
        try:
            result = future.result(timeout=max(timeout, 0))
        except FuturesTimeoutError:
            future.cancel()
            circuit.record_failure()
            logger.warning(
                "Payment verification timed out",
                extra={**log_context, "timeout": timeout},
            )
            return VerificationResult.pending(error="timeout")
        except StripeInvalidRequestError as e:
            # Unknown reference: Stripe answered, so the circuit stays healthy
            circuit.record_success()
            logger.warning(
                "Payment verification lookup failed",
                extra={**log_context, "error_code": e.error_code},
            )
            return replace(VerificationResult.pending(error=e.error_code), unavailable=False)
        except StripeError as e:
            circuit.record_failure()
            logger.error(
                "Payment verification failed",
                extra={**log_context, "error_code": e.error_code},
            )
            return VerificationResult.pending(error=e.error_code)

        circuit.record_success()
        logger.info(
            f"Payment verification: {result.payment_status}",
            extra={
                **log_context,
                "payment_status": result.payment_status,
                "source": result.source,
                "duration_ms": (time.monotonic() - start_time) * 1000,
            },
        )
        return result

    @classmethod
    def _resolve(
        cls,
        checkout_session_id: str | None,
        reference: str | None,
    ) -> VerificationResult:
        session_result = None
        session_error = None

        if checkout_session_id and reference_kind(checkout_session_id) == "checkout_session":
            try:
                session_result = cls.from_checkout_session(
                    StripeAdapter.retrieve_checkout_session(checkout_session_id)
                )
            except StripeError as e:
                if not reference:
                    raise
                session_error = e
            else:
                if session_result.is_paid:
                    return session_result
        elif checkout_session_id and reference is None:
            # Older bookings stored the intent or subscription in this column
            reference = checkout_session_id

        if reference:
            kind = reference_kind(reference)
            resolver = {
                "payment_intent": lambda: cls.from_payment_intent(
                    StripeAdapter.retrieve_payment_intent(reference)
                ),
                "charge": lambda: cls.from_charge(StripeAdapter.retrieve_charge(reference)),
                "invoice": lambda: cls.from_invoice(StripeAdapter.retrieve_invoice(reference)),
                "subscription": lambda: cls.from_subscription(
                    StripeAdapter.retrieve_subscription(reference)
                ),
                "checkout_session": lambda: cls.from_checkout_session(
                    StripeAdapter.retrieve_checkout_session(reference)
                ),
            }.get(kind)
            if resolver is None:
                cls.get_logger().warning(
                    "Unsupported payment reference format",
                    extra={"reference": reference},
                )
                return session_result or VerificationResult.pending(error="unsupported_reference")
            if session_error is not None:
                cls.get_logger().info(
                    "Checkout session lookup failed, falling back to reference",
                    extra={"reference": reference, "error_code": session_error.error_code},
                )
            return resolver()

        return session_result or VerificationResult.pending()

    # =========================================================================
    # Per-shape rules
    # =========================================================================

    @staticmethod
    def from_payment_intent(intent: dict[str, Any], source: str = "payment_intent") -> VerificationResult:
        """
        succeeded -> paid, requires_payment_method -> failed,
        canceled -> unpaid, anything else -> pending. A settled charge
        (paid and succeeded) on the intent is proof of payment.
        """
        charges = []
        latest = intent.get("latest_charge")
        if isinstance(latest, dict):
            charges.append(latest)
        charges.extend((intent.get("charges") or {}).get("data") or [])
        if any(c.get("paid") and c.get("status") == "succeeded" for c in charges):
            return VerificationResult.paid(source)

        status = intent.get("status")
        if status == "succeeded":
            return VerificationResult.paid(source)
        if status == "requires_payment_method":
            error = (intent.get("last_payment_error") or {}).get("message")
            return VerificationResult(FAILED, source=source, error=error)
        if status == "canceled":
            return VerificationResult(UNPAID, source=source)
        return VerificationResult(PENDING, source=source)

    @staticmethod
    def from_charge(charge: dict[str, Any]) -> VerificationResult:
        """A charge is paid only when both its settlement flag and status agree."""
        if charge.get("paid") and charge.get("status") == "succeeded":
            return VerificationResult.paid("charge")
        if charge.get("status") == "failed":
            return VerificationResult(FAILED, source="charge")
        return VerificationResult(PENDING, source="charge")

    @staticmethod
    def from_invoice(invoice: dict[str, Any]) -> VerificationResult:
        status = invoice.get("status")
        if status == "paid":
            return VerificationResult.paid("invoice")
        if status in ("void", "uncollectible"):
            return VerificationResult(UNPAID, source="invoice")
        return VerificationResult(PENDING, source="invoice")

    @staticmethod
    def from_subscription(subscription: dict[str, Any]) -> VerificationResult:
        """
        active/trialing is evidence of a successful first payment.

        A lapsed subscription says nothing about whether the appointment
        was paid, so it yields pending, never unpaid.
        """
        status = subscription.get("status")
        if status in ACTIVE_SUBSCRIPTION_STATES:
            return VerificationResult.paid("subscription", subscription_status=status)
        return VerificationResult(PENDING, subscription_status=status, source="subscription")

    @classmethod
    def from_checkout_session(cls, session: dict[str, Any]) -> VerificationResult:
        """
        A session whose payment_status is paid is final: neither its
        payment intent nor what its subscription later became can take
        that back. Unpaid sessions are refined from the expanded payment
        intent.
        """
        session_paid = session.get("payment_status") == PAID
        if session_paid:
            result = VerificationResult.paid("checkout_session")
        else:
            result = VerificationResult(PENDING, source="checkout_session")
            intent = _as_object(session.get("payment_intent"), StripeAdapter.retrieve_payment_intent)
            if intent is not None:
                result = cls.from_payment_intent(intent, source="checkout_session")

        subscription = _as_object(session.get("subscription"), StripeAdapter.retrieve_subscription)
        if subscription is not None:
            result = replace(result, subscription_status=subscription.get("status"))

        return result
