"""
Webhook event handlers for Stripe events.

Handlers are registered per event type and return a ServiceResult. A
failed result marks the stored WebhookEvent failed so the retry task
picks it up; an unknown event type is acknowledged and ignored.

Handled events:
    checkout.session.completed      appointment paid, or balance top-up
    payment_intent.succeeded        appointment paid
    payment_intent.payment_failed   appointment payment failed

Every handler is safe to run twice for the same event: appointment
payment is skipped once already completed, and top-ups credit the
ledger under the dedupe key ``topup:{checkout_session_id}``.

Usage:
    from payments.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("invoice.paid")
    def handle_invoice_paid(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable

from core.exceptions import NotFoundError
from core.services import ServiceResult
from payments.ledger import LedgerError, ledger
from payments.models import WebhookEvent

logger = logging.getLogger(__name__)

WEBHOOK_ACTOR = "stripe_webhook"


# =============================================================================
# Handler Registry
# =============================================================================


WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}


def register_handler(event_type: str) -> Callable:
    """Decorator registering a handler for one Stripe event type."""

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        WEBHOOK_HANDLERS[event_type] = func
        logger.debug(f"Registered webhook handler for {event_type}")
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Dispatch a webhook event to its handler.

    Events without a handler succeed, so Stripe stops resending them.
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"stripe_event_id": webhook_event.stripe_event_id},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {webhook_event.event_type} to handler",
        extra={"stripe_event_id": webhook_event.stripe_event_id},
    )
    return handler(webhook_event)


def _metadata(data_object: dict) -> dict:
    return data_object.get("metadata") or {}


def _appointment_id(data_object: dict) -> str | None:
    metadata = _metadata(data_object)
    return metadata.get("appointment_id") or metadata.get("appointmentId")


def _object_id(value) -> str | None:
    """Stripe fields can hold an ID or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _record_appointment_payment(
    webhook_event: WebhookEvent,
    appointment_id: str,
    checkout_session_id: str | None = None,
    payment_reference: str | None = None,
) -> ServiceResult:
    from appointments.services import AppointmentService

    try:
        appointment = AppointmentService.record_payment(
            appointment_id,
            checkout_session_id=checkout_session_id,
            payment_reference=payment_reference,
            actor=WEBHOOK_ACTOR,
        )
    except NotFoundError as e:
        logger.warning(
            "Webhook references unknown appointment",
            extra={
                "stripe_event_id": webhook_event.stripe_event_id,
                "appointment_id": appointment_id,
            },
        )
        return ServiceResult.from_exception(e)
    return ServiceResult.success(appointment)


# =============================================================================
# Checkout Session Handlers
# =============================================================================


@register_handler("checkout.session.completed")
def handle_checkout_session_completed(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Handle a completed Checkout Session.

    ``metadata.type == "balance_topup"`` credits the user's balance with
    the session total; ``metadata.appointment_id`` marks that appointment
    paid. Sessions carrying neither are acknowledged.
    """
    session = webhook_event.data_object
    session_id = session.get("id")
    metadata = _metadata(session)

    if metadata.get("type") == "balance_topup":
        return _handle_balance_topup(webhook_event, session)

    appointment_id = _appointment_id(session)
    if not appointment_id:
        logger.info(
            "checkout.session.completed without appointment metadata, ignoring",
            extra={"stripe_event_id": webhook_event.stripe_event_id, "session_id": session_id},
        )
        return ServiceResult.success(None)

    if session.get("payment_status") not in (None, "paid"):
        # Delayed payment methods complete the session before money settles
        logger.info(
            "Checkout session completed but not paid yet",
            extra={
                "stripe_event_id": webhook_event.stripe_event_id,
                "payment_status": session.get("payment_status"),
            },
        )
        return ServiceResult.success(None)

    return _record_appointment_payment(
        webhook_event,
        appointment_id,
        checkout_session_id=session_id,
        payment_reference=_object_id(session.get("payment_intent"))
        or _object_id(session.get("subscription")),
    )


def _handle_balance_topup(webhook_event: WebhookEvent, session: dict) -> ServiceResult:
    session_id = session.get("id")
    user_id = _metadata(session).get("user_id")
    amount_total = session.get("amount_total")

    if not session_id or not user_id or not amount_total:
        logger.error(
            "Balance top-up webhook missing session id, user or amount",
            extra={"stripe_event_id": webhook_event.stripe_event_id},
        )
        return ServiceResult.failure(
            "Balance top-up webhook is missing required fields",
            error_code="INVALID_WEBHOOK_PAYLOAD",
        )

    try:
        result = ledger.credit(
            user_id,
            Decimal(amount_total) / 100,
            reason="Balance top-up",
            dedupe_key=f"topup:{session_id}",
        )
    except LedgerError as e:
        logger.error(
            "Balance top-up credit failed",
            extra={"stripe_event_id": webhook_event.stripe_event_id, "error_code": e.error_code},
        )
        return ServiceResult.from_exception(e)

    return ServiceResult.success(result)


# =============================================================================
# Payment Intent Handlers
# =============================================================================


@register_handler("payment_intent.succeeded")
def handle_payment_intent_succeeded(webhook_event: WebhookEvent) -> ServiceResult:
    """Mark the appointment in the intent's metadata as paid."""
    intent = webhook_event.data_object
    appointment_id = _appointment_id(intent)
    if not appointment_id:
        return ServiceResult.success(None)

    return _record_appointment_payment(
        webhook_event,
        appointment_id,
        payment_reference=intent.get("id"),
    )


@register_handler("payment_intent.payment_failed")
def handle_payment_intent_failed(webhook_event: WebhookEvent) -> ServiceResult:
    """Record a failed payment on the appointment in the intent's metadata."""
    from appointments.services import AppointmentService

    intent = webhook_event.data_object
    appointment_id = _appointment_id(intent)
    if not appointment_id:
        return ServiceResult.success(None)

    reason = (intent.get("last_payment_error") or {}).get("message", "Payment failed")

    logger.info(
        "Processing payment_intent.payment_failed",
        extra={
            "stripe_event_id": webhook_event.stripe_event_id,
            "payment_intent_id": intent.get("id"),
            "appointment_id": appointment_id,
            "reason": reason,
        },
    )

    try:
        appointment = AppointmentService.mark_payment_failed(
            appointment_id, reason=reason, actor=WEBHOOK_ACTOR
        )
    except NotFoundError as e:
        return ServiceResult.from_exception(e)
    return ServiceResult.success(appointment)
