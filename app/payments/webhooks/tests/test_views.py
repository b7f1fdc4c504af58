"""
Tests for the Stripe webhook endpoint.

Signature verification and task queueing are mocked; the view is
exercised through the Django test client.
"""

import json
from unittest.mock import patch

import pytest
from django.test import Client

from payments.exceptions import StripeInvalidRequestError
from payments.models import WebhookEvent, WebhookEventStatus
from payments.tests.factories import stripe_event

WEBHOOK_URL = "/api/v1/payments/webhooks/stripe/"
VERIFY = "payments.webhooks.views.StripeAdapter.verify_webhook_signature"
QUEUE = "payments.tasks.process_webhook_event.delay"


@pytest.fixture
def client():
    return Client()


@pytest.fixture
def event_data():
    return stripe_event(
        "checkout.session.completed",
        {"id": "cs_test_view", "payment_status": "paid", "metadata": {}},
        event_id="evt_test_view",
    )


def post_event(client, event_data, headers):
    return client.post(
        WEBHOOK_URL,
        data=json.dumps(event_data),
        content_type="application/json",
        **headers,
    )


@pytest.mark.django_db
class TestStripeWebhookView:
    def test_missing_signature(self, client, event_data):
        """Should reject requests without a Stripe-Signature header."""
        with patch(VERIFY) as mock_verify:
            response = post_event(client, event_data, {})

        assert response.status_code == 400
        assert response.content == b"Missing signature"
        mock_verify.assert_not_called()

    def test_invalid_signature(self, client, event_data, signed_headers):
        with patch(VERIFY, side_effect=StripeInvalidRequestError("Invalid webhook signature")):
            response = post_event(client, event_data, signed_headers)

        assert response.status_code == 400
        assert response.content == b"Invalid signature"
        assert not WebhookEvent.objects.exists()

    def test_event_without_type(self, client, event_data, signed_headers):
        with patch(VERIFY, return_value={"id": "evt_no_type"}):
            response = post_event(client, event_data, signed_headers)

        assert response.status_code == 400
        assert response.content == b"Invalid event"

    def test_stores_and_queues_event(self, client, event_data, signed_headers):
        """Should store the event as PENDING and hand it to the worker."""
        with patch(VERIFY, return_value=event_data), patch(QUEUE) as mock_queue:
            response = post_event(client, event_data, signed_headers)

        assert response.status_code == 200
        assert response.content == b"Accepted"
        event = WebhookEvent.objects.get(stripe_event_id="evt_test_view")
        assert event.event_type == "checkout.session.completed"
        assert event.status == WebhookEventStatus.PENDING
        assert event.payload == event_data
        mock_queue.assert_called_once_with(str(event.id))

    def test_redelivery_reuses_stored_event(self, client, event_data, signed_headers):
        with patch(VERIFY, return_value=event_data), patch(QUEUE) as mock_queue:
            post_event(client, event_data, signed_headers)
            response = post_event(client, event_data, signed_headers)

        assert response.status_code == 200
        assert WebhookEvent.objects.filter(stripe_event_id="evt_test_view").count() == 1
        assert mock_queue.call_count == 2

    def test_processed_event_is_not_queued_again(self, client, event_data, signed_headers):
        WebhookEvent.objects.create(
            stripe_event_id="evt_test_view",
            event_type="checkout.session.completed",
            payload=event_data,
            status=WebhookEventStatus.PROCESSED,
        )

        with patch(VERIFY, return_value=event_data), patch(QUEUE) as mock_queue:
            response = post_event(client, event_data, signed_headers)

        assert response.status_code == 200
        assert response.content == b"Already processed"
        mock_queue.assert_not_called()

    def test_queueing_failure_still_acknowledges(self, client, event_data, signed_headers):
        """Should answer 200 when the broker is down; the row stays PENDING."""
        with patch(VERIFY, return_value=event_data), patch(QUEUE, side_effect=ConnectionError):
            response = post_event(client, event_data, signed_headers)

        assert response.status_code == 200
        assert WebhookEvent.objects.get(stripe_event_id="evt_test_view").status == (
            WebhookEventStatus.PENDING
        )

    def test_get_not_allowed(self, client):
        response = client.get(WEBHOOK_URL)

        assert response.status_code == 405
