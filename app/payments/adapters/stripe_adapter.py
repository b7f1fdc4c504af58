"""
Stripe API adapter.

All Stripe calls go through StripeAdapter so they share timeouts,
error translation and structured logging. The engine only reads from
Stripe: it retrieves the objects a payment reference points at
(checkout session, payment intent, charge, invoice, subscription) and
verifies webhook signatures. Moving money is the gateway's business.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: HTTP timeout per call (default: 10)
- STRIPE_MAX_RETRIES: SDK retries on network errors (default: 3)

Usage:
    from payments.adapters import StripeAdapter

    session = StripeAdapter.retrieve_checkout_session("cs_test_123")
    session["payment_status"]  # "paid"
"""

from __future__ import annotations

import logging
import time
from typing import Any

import stripe
from django.conf import settings

from payments.exceptions import (
    StripeAPIUnavailableError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)


class StripeAdapter:
    """
    Adapter for Stripe API operations.

    All methods are class-level - no instance state is maintained.
    Retrieval methods return plain dicts (``StripeObject.to_dict()``) so
    callers never depend on SDK object types.

    Raises (from every retrieval):
        StripeInvalidRequestError: Unknown object or bad credentials
        StripeRateLimitError: Rate limited
        StripeTimeoutError: HTTP timeout
        StripeAPIUnavailableError: Network or Stripe server error
    """

    @staticmethod
    def _configure_stripe() -> None:
        """Configure Stripe client with API key, timeout and network retries."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 3)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    def _retrieve(
        cls,
        resource: Any,
        object_id: str,
        operation: str,
        expand: list[str] | None = None,
    ) -> dict[str, Any]:
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {"operation": operation, "object_id": object_id}
        start_time = time.time()
        logger.debug("Starting Stripe operation", extra=log_context)

        try:
            if expand:
                obj = resource.retrieve(object_id, expand=expand)
            else:
                obj = resource.retrieve(object_id)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        data = obj.to_dict()
        logger.debug(
            "Stripe operation completed",
            extra={**log_context, "status": data.get("status"), "duration_ms": duration_ms},
        )
        return data

    @classmethod
    def retrieve_checkout_session(cls, session_id: str) -> dict[str, Any]:
        """Retrieve a Checkout Session (cs_xxx) with intent and subscription expanded."""
        return cls._retrieve(
            stripe.checkout.Session,
            session_id,
            "retrieve_checkout_session",
            expand=["payment_intent", "subscription"],
        )

    @classmethod
    def retrieve_payment_intent(cls, payment_intent_id: str) -> dict[str, Any]:
        """Retrieve a PaymentIntent (pi_xxx) with its latest charge expanded."""
        return cls._retrieve(
            stripe.PaymentIntent,
            payment_intent_id,
            "retrieve_payment_intent",
            expand=["latest_charge"],
        )

    @classmethod
    def retrieve_charge(cls, charge_id: str) -> dict[str, Any]:
        return cls._retrieve(stripe.Charge, charge_id, "retrieve_charge")

    @classmethod
    def retrieve_invoice(cls, invoice_id: str) -> dict[str, Any]:
        return cls._retrieve(stripe.Invoice, invoice_id, "retrieve_invoice")

    @classmethod
    def retrieve_subscription(cls, subscription_id: str) -> dict[str, Any]:
        return cls._retrieve(stripe.Subscription, subscription_id, "retrieve_subscription")

    @classmethod
    def verify_webhook_signature(
        cls,
        payload: bytes,
        signature: str,
    ) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook event.

        Raises:
            StripeInvalidRequestError: Invalid signature or payload
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook signature",
                stripe_code="signature_verification_failed",
                details={"error": str(e)},
            )
        except ValueError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook payload",
                stripe_code="invalid_payload",
                details={"error": str(e)},
            )
        return event.to_dict()

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe SDK exceptions to domain exceptions.

        Always raises; callers keep a bare ``raise`` after it for
        non-Stripe errors that slip through.
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise StripeInvalidRequestError(str(error), stripe_code=error.code)

        if isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
            )

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                stripe_code="rate_limit",
            )

        if isinstance(error, stripe.APIConnectionError):
            if "timed out" in str(error).lower() or "timeout" in str(error).lower():
                logger.warning("Stripe request timed out", extra=log_context)
                raise StripeTimeoutError(
                    "Stripe request timed out. Please retry.",
                    stripe_code="timeout",
                )
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe. Please retry.",
                stripe_code="api_connection_error",
            )

        if isinstance(error, stripe.StripeError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Stripe service error. Please retry.",
                stripe_code="api_error",
            )

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise StripeAPIUnavailableError(
            f"Unexpected Stripe error: {error}",
            stripe_code="unknown_error",
        )
