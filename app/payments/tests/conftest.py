"""
Pytest fixtures for payment tests.

Provides users and an appointment to lock. Ledger fixtures live in
payments/ledger/tests, webhook fixtures in payments/webhooks/tests.
"""

import pytest
from rest_framework.test import APIClient

from appointments.tests.factories import AppointmentFactory
from authentication.tests.factories import UserFactory


# =============================================================================
# Users
# =============================================================================


@pytest.fixture
def user(db):
    """Create a test user."""
    return UserFactory()


@pytest.fixture
def authenticated_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


# =============================================================================
# Versioned records
# =============================================================================


@pytest.fixture
def appointment(db, user):
    """A confirmed appointment; used wherever a versioned row is needed."""
    return AppointmentFactory(patient=user)


