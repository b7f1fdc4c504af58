"""
Pytest fixtures for appointment tests.

Usage:
    def test_cancel(confirmed_appointment):
        result = ReconciliationFacade.request_cancellation(
            confirmed_appointment.pk, RefundPolicy()
        )
"""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from rest_framework.test import APIClient

from appointments.tests.factories import AppointmentFactory, weekly_sessions
from authentication.tests.factories import AdminFactory, TherapistFactory, UserFactory
from payments.verification import VerificationResult


# =============================================================================
# Users
# =============================================================================


@pytest.fixture
def patient(db):
    return UserFactory()


@pytest.fixture
def therapist(db):
    return TherapistFactory()


@pytest.fixture
def admin_user(db):
    return AdminFactory()


# =============================================================================
# Appointments
# =============================================================================


@pytest.fixture
def confirmed_appointment(db, patient, therapist):
    """Balance-paid, three weekly sessions, the current one two hours ago."""
    appointment = AppointmentFactory(patient=patient, therapist=therapist)
    weekly_sessions(appointment)
    return appointment


@pytest.fixture
def stripe_appointment(db, patient, therapist):
    """Stripe-paid, three weekly sessions, the current one two hours ago."""
    appointment = AppointmentFactory(patient=patient, therapist=therapist, stripe=True)
    weekly_sessions(appointment)
    return appointment


@pytest.fixture
def single_session_appointment(db, patient, therapist):
    appointment = AppointmentFactory(
        patient=patient, therapist=therapist, total_sessions=1, price=Decimal("100.00")
    )
    weekly_sessions(appointment)
    return appointment


# =============================================================================
# Payment verification
# =============================================================================


@pytest.fixture
def mock_verify():
    """Patch PaymentVerificationService.verify; defaults to a paid result."""
    with patch("appointments.reconciliation.PaymentVerificationService.verify") as verify:
        verify.return_value = VerificationResult.paid("checkout_session")
        yield verify


@pytest.fixture
def mock_redis():
    """Mock the Redis connection behind DistributedLock."""
    with patch("payments.locks.get_redis_connection") as mock_get_conn:
        redis_instance = MagicMock()
        redis_instance.set.return_value = True
        redis_instance.eval.return_value = 1
        mock_get_conn.return_value = redis_instance
        yield redis_instance


# =============================================================================
# API clients
# =============================================================================


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def patient_client(api_client, patient):
    api_client.force_authenticate(user=patient)
    return api_client


@pytest.fixture
def therapist_client(therapist):
    client = APIClient()
    client.force_authenticate(user=therapist)
    return client


@pytest.fixture
def admin_client(admin_user):
    client = APIClient()
    client.force_authenticate(user=admin_user)
    return client
