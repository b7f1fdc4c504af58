"""
Pytest fixtures for webhook tests.

Provides stored WebhookEvents in each processing status and builders for
the Stripe events the handlers understand.
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from appointments.tests.factories import AppointmentFactory
from authentication.tests.factories import UserFactory
from payments.models import WebhookEvent, WebhookEventStatus
from payments.tests.factories import WebhookEventFactory, stripe_event


# =============================================================================
# Domain Fixtures
# =============================================================================


@pytest.fixture
def patient(db):
    return UserFactory()


@pytest.fixture
def unpaid_appointment(db, patient):
    """A Stripe-paid appointment waiting for its checkout to complete."""
    return AppointmentFactory(patient=patient, unpaid=True)


# =============================================================================
# WebhookEvent Fixtures
# =============================================================================


@pytest.fixture
def make_webhook_event(db):
    """Store a webhook event of ``event_type`` wrapping ``data_object``."""

    def _make(event_type: str, data_object: dict, **kwargs) -> WebhookEvent:
        event = WebhookEventFactory(event_type=event_type, **kwargs)
        event.payload = stripe_event(event_type, data_object, event_id=event.stripe_event_id)
        event.save()
        return event

    return _make


@pytest.fixture
def pending_webhook_event(db):
    """Create a PENDING webhook event."""
    return WebhookEventFactory()


@pytest.fixture
def processed_webhook_event(db):
    """Create a PROCESSED webhook event."""
    return WebhookEventFactory(
        status=WebhookEventStatus.PROCESSED,
        processed_at=timezone.now(),
        retry_count=1,
    )


@pytest.fixture
def failed_webhook_event(db):
    """Create a FAILED webhook event with one attempt behind it."""
    return WebhookEventFactory(
        status=WebhookEventStatus.FAILED,
        error_message="Previous processing error",
        retry_count=1,
    )


@pytest.fixture
def stuck_webhook_event(db):
    """A webhook left in PROCESSING by a crashed worker an hour ago."""
    event = WebhookEventFactory(status=WebhookEventStatus.PROCESSING, retry_count=1)
    # updated_at is auto_now; bypass save() to backdate it
    WebhookEvent.objects.filter(pk=event.pk).update(updated_at=timezone.now() - timedelta(hours=1))
    event.refresh_from_db()
    return event


# =============================================================================
# Request Fixtures
# =============================================================================


@pytest.fixture
def signed_headers():
    """Headers carrying a Stripe signature; verification itself is mocked."""
    return {"HTTP_STRIPE_SIGNATURE": "t=1700000000,v1=test_signature"}
