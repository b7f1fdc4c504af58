"""
Pytest fixtures for Stripe adapter tests.

Sections:
    - Mock Stripe Client Fixtures
    - Mock Stripe Object Fixtures
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import patch

import pytest


@dataclass
class MockStripeObject:
    """Mock Stripe API object with to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@pytest.fixture
def mock_stripe_http_client():
    """Keep _configure_stripe from building a real HTTP client."""
    with patch("payments.adapters.stripe_adapter.stripe.RequestsClient") as client:
        yield client


@pytest.fixture
def mock_stripe_payment_intent(mock_stripe_http_client):
    with patch("payments.adapters.stripe_adapter.stripe.PaymentIntent") as resource:
        yield resource


@pytest.fixture
def mock_stripe_checkout_session(mock_stripe_http_client):
    with patch("payments.adapters.stripe_adapter.stripe.checkout.Session") as resource:
        yield resource


@pytest.fixture
def stripe_object():
    """Build a MockStripeObject from keyword fields."""

    def _create(**fields) -> MockStripeObject:
        return MockStripeObject(dict(fields))

    return _create
