"""
Tests for AppointmentService.

Tests cover:
- Booking per payment method, balance debit and initial status
- Booking idempotency and rejected drafts
- Payment bookkeeping (record, failure, manual link)
- Public status transitions under the row lock
- Therapist assignment and scheduling
- Expiry of unpaid bookings
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from appointments.exceptions import AppointmentRuleError, InvalidTransitionError
from appointments.models import Appointment, AppointmentStatusChange
from appointments.services import AppointmentService, BookingDraft
from appointments.state_machine import AppointmentStateMachine
from appointments.states import AppointmentStatus, PaymentMethod, PaymentStatus, SessionStatus
from appointments.tests.factories import AppointmentFactory, weekly_sessions
from authentication.tests.factories import UserFactory
from core.exceptions import NotFoundError
from payments.exceptions import StaleRecordError
from payments.ledger import InsufficientBalance, ledger


def fund(user, amount: str) -> None:
    ledger.credit(user.pk, Decimal(amount), reason="Top-up")


def draft_for(patient, **overrides) -> BookingDraft:
    values = {
        "patient_id": patient.pk,
        "price": Decimal("300.00"),
        "total_sessions": 3,
        "date": timezone.now() + timedelta(days=1),
        "recurring": [],
        "payment_method": PaymentMethod.BALANCE,
    }
    values.update(overrides)
    return BookingDraft(**values)


# =============================================================================
# Booking
# =============================================================================


@pytest.mark.django_db
class TestBook:
    def test_balance_booking_with_therapist_is_confirmed(self, patient, therapist):
        fund(patient, "500.00")
        first = timezone.now() + timedelta(days=1)

        result = AppointmentService.book(
            draft_for(
                patient,
                therapist_id=therapist.pk,
                date=first,
                recurring=[(first + timedelta(weeks=1)).isoformat(), (first + timedelta(weeks=2)).isoformat()],
            ),
            actor=f"user:{patient.pk}",
        )

        appointment = Appointment.objects.get(pk=result.appointment.pk)
        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.payment_status == PaymentStatus.COMPLETED
        assert appointment.sessions_paid_with_balance == Decimal("3")
        assert appointment.unit_price == Decimal("100.00")
        assert appointment.sessions.count() == 3
        assert appointment.sessions.get(is_current=True).date == first
        assert result.balance == Decimal("200.00")
        assert result.replayed is False

        change = AppointmentStatusChange.objects.get(appointment=appointment)
        assert change.from_status == ""
        assert change.to_status == AppointmentStatus.CONFIRMED

    def test_balance_booking_without_therapist_is_pending(self, patient):
        fund(patient, "300.00")

        result = AppointmentService.book(draft_for(patient), actor="user:1")

        assert Appointment.objects.get(pk=result.appointment.pk).status == AppointmentStatus.PENDING
        assert result.balance == Decimal("0.00")

    def test_insufficient_balance_creates_nothing(self, patient):
        fund(patient, "100.00")

        with pytest.raises(InsufficientBalance) as exc_info:
            AppointmentService.book(draft_for(patient), actor="user:1")

        assert exc_info.value.http_status == 402
        assert not Appointment.objects.exists()
        assert ledger.get_balance(patient.pk).amount == Decimal("100.00")

    def test_stripe_booking_is_unpaid_and_debits_nothing(self, patient):
        result = AppointmentService.book(
            draft_for(patient, payment_method=PaymentMethod.STRIPE, checkout_session_id="cs_test_1"),
            actor="user:1",
        )

        appointment = Appointment.objects.get(pk=result.appointment.pk)
        assert appointment.status == AppointmentStatus.UNPAID
        assert appointment.payment_status == PaymentStatus.PENDING
        assert appointment.checkout_session_id == "cs_test_1"
        assert appointment.sessions_paid_with_balance == Decimal("0")
        assert result.balance == Decimal("0.00")

    def test_mixed_booking_debits_balance_sessions(self, patient):
        fund(patient, "150.00")

        result = AppointmentService.book(
            draft_for(patient, payment_method=PaymentMethod.MIXED, balance_sessions=1),
            actor="user:1",
        )

        appointment = Appointment.objects.get(pk=result.appointment.pk)
        assert appointment.status == AppointmentStatus.UNPAID
        assert appointment.sessions_paid_with_balance == Decimal("1")
        assert result.balance == Decimal("50.00")

    @pytest.mark.parametrize("balance_sessions", [None, 0, 3])
    def test_mixed_booking_needs_a_real_split(self, patient, balance_sessions):
        with pytest.raises(AppointmentRuleError) as exc_info:
            AppointmentService.book(
                draft_for(patient, payment_method=PaymentMethod.MIXED, balance_sessions=balance_sessions),
                actor="user:1",
            )

        assert exc_info.value.error_code == "INVALID_BOOKING"
        assert "balance_sessions" in exc_info.value.details

    def test_unknown_therapist_is_rejected(self, patient):
        with pytest.raises(AppointmentRuleError) as exc_info:
            AppointmentService.book(draft_for(patient, therapist_id=987654), actor="user:1")

        assert "therapist_id" in exc_info.value.details

    def test_retry_with_same_key_returns_first_booking(self, patient):
        fund(patient, "600.00")
        draft = draft_for(patient, idempotency_key="booking-abc")

        first = AppointmentService.book(draft, actor="user:1")
        second = AppointmentService.book(draft, actor="user:1")

        assert second.replayed is True
        assert second.appointment.pk == first.appointment.pk
        assert Appointment.objects.count() == 1
        assert ledger.get_balance(patient.pk).amount == Decimal("300.00")

    def test_same_key_from_other_patient_is_independent(self, patient):
        other = UserFactory()
        fund(patient, "300.00")
        fund(other, "300.00")

        AppointmentService.book(draft_for(patient, idempotency_key="shared"), actor="user:1")
        result = AppointmentService.book(draft_for(other, idempotency_key="shared"), actor="user:2")

        assert result.replayed is False
        assert Appointment.objects.count() == 2

    def test_rescheduled_booking(self, patient):
        fund(patient, "300.00")

        result = AppointmentService.book(draft_for(patient, rescheduled=True), actor="user:1")

        assert Appointment.objects.get(pk=result.appointment.pk).status == AppointmentStatus.RESCHEDULED

    def test_invalid_recurring_entry_is_kept(self, patient):
        fund(patient, "300.00")

        result = AppointmentService.book(
            draft_for(patient, recurring=["not-a-date", "2030-01-08"]),
            actor="user:1",
        )

        invalid = result.appointment.sessions.get(is_valid=False)
        assert invalid.date is None
        assert invalid.raw_value == "not-a-date"

    def test_completed_recurring_sessions_count_as_completed(self, patient, therapist):
        """A series imported with finished sessions keeps its counts consistent."""
        fund(patient, "300.00")
        current = timezone.now() - timedelta(hours=2)

        result = AppointmentService.book(
            draft_for(
                patient,
                therapist_id=therapist.pk,
                date=current,
                recurring=[
                    {"date": (current - timedelta(weeks=2)).isoformat(), "status": "completed"},
                    {"date": (current - timedelta(weeks=1)).isoformat(), "status": "completed"},
                ],
            ),
            actor="user:1",
        )

        appointment = Appointment.objects.get(pk=result.appointment.pk)
        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.completed_sessions == 2
        assert appointment.remaining_sessions == 1

        AppointmentStateMachine.complete_session(appointment, 0, SessionStatus.COMPLETED, "user:1")

        appointment = Appointment.objects.get(pk=appointment.pk)
        assert appointment.completed_sessions == 3
        assert appointment.status == AppointmentStatus.COMPLETED

    def test_draft_with_every_session_completed_is_rejected(self, patient):
        fund(patient, "200.00")

        with pytest.raises(AppointmentRuleError) as exc_info:
            AppointmentService.book(
                draft_for(
                    patient,
                    price=Decimal("200.00"),
                    total_sessions=2,
                    date=None,
                    recurring=[
                        {"date": "2025-03-01T10:00:00", "status": "completed"},
                        {"date": "2025-03-08T10:00:00", "status": "completed"},
                    ],
                ),
                actor="user:1",
            )

        assert exc_info.value.error_code == "INVALID_BOOKING"
        assert exc_info.value.details["completed_sessions"] == 2
        assert not Appointment.objects.exists()
        assert ledger.get_balance(patient.pk).amount == Decimal("200.00")


# =============================================================================
# Payment bookkeeping
# =============================================================================


@pytest.mark.django_db
class TestRecordPayment:
    def test_moves_unpaid_appointment_to_pending_match(self):
        appointment = AppointmentFactory(unpaid=True)

        AppointmentService.record_payment(
            appointment.pk, checkout_session_id="cs_test_paid", actor="stripe_webhook"
        )

        appointment = Appointment.objects.get(pk=appointment.pk)
        assert appointment.status == AppointmentStatus.PENDING_MATCH
        assert appointment.payment_status == PaymentStatus.COMPLETED
        assert appointment.checkout_session_id == "cs_test_paid"
        assert appointment.paid_at is not None
        assert appointment.sessions_paid_with_stripe == Decimal("3")
        assert set(appointment.status_changes.values_list("to_status", flat=True)) == {
            AppointmentStatus.PENDING,
            AppointmentStatus.PENDING_MATCH,
        }

    def test_duplicate_delivery_is_a_noop(self):
        appointment = AppointmentFactory(unpaid=True)
        AppointmentService.record_payment(appointment.pk, checkout_session_id="cs_test_paid")

        AppointmentService.record_payment(appointment.pk, checkout_session_id="cs_test_other")

        appointment = Appointment.objects.get(pk=appointment.pk)
        assert appointment.checkout_session_id == "cs_test_paid"
        assert appointment.status_changes.count() == 2

    def test_mixed_payment_books_remaining_sessions_on_stripe(self):
        appointment = AppointmentFactory(
            unpaid=True,
            payment_method=PaymentMethod.MIXED,
            sessions_paid_with_balance=Decimal("1"),
        )

        AppointmentService.record_payment(appointment.pk, payment_reference="pi_123")

        appointment = Appointment.objects.get(pk=appointment.pk)
        assert appointment.sessions_paid_with_stripe == Decimal("2")
        assert appointment.payment_reference == "pi_123"

    def test_unknown_appointment(self):
        with pytest.raises(NotFoundError):
            AppointmentService.record_payment("7d3c1b0e-0000-4000-8000-000000000000")


@pytest.mark.django_db
class TestMarkPaymentFailed:
    def test_marks_pending_payment_failed(self):
        appointment = AppointmentFactory(unpaid=True)

        AppointmentService.mark_payment_failed(appointment.pk, reason="card_declined")

        assert Appointment.objects.get(pk=appointment.pk).payment_status == PaymentStatus.FAILED

    def test_completed_payment_is_not_downgraded(self):
        appointment = AppointmentFactory()

        AppointmentService.mark_payment_failed(appointment.pk, reason="late event")

        assert Appointment.objects.get(pk=appointment.pk).payment_status == PaymentStatus.COMPLETED


@pytest.mark.django_db
class TestLinkPayment:
    def test_links_references(self):
        appointment = AppointmentFactory(stripe=True)

        AppointmentService.link_payment(
            appointment.pk, checkout_session_id="cs_test_linked", payment_reference="in_123"
        )

        appointment = Appointment.objects.get(pk=appointment.pk)
        assert appointment.checkout_session_id == "cs_test_linked"
        assert appointment.payment_reference == "in_123"

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"checkout_session_id": "pi_123"}, "checkout_session_id"),
            ({"payment_reference": "cs_123"}, "payment_reference"),
            ({}, "reference"),
        ],
    )
    def test_rejects_malformed_references(self, kwargs, field):
        appointment = AppointmentFactory(stripe=True)

        with pytest.raises(AppointmentRuleError) as exc_info:
            AppointmentService.link_payment(appointment.pk, **kwargs)

        assert exc_info.value.error_code == "INVALID_PAYMENT_REFERENCE"
        assert field in exc_info.value.details


# =============================================================================
# Status
# =============================================================================


@pytest.mark.django_db
class TestTransitionStatus:
    def test_applies_public_transition(self):
        appointment = AppointmentFactory(status=AppointmentStatus.PENDING_MATCH)

        AppointmentService.transition_status(
            appointment.pk,
            AppointmentStatus.MATCHED_PENDING_THERAPIST_ACCEPTANCE,
            actor="user:9",
        )

        assert (
            Appointment.objects.get(pk=appointment.pk).status
            == AppointmentStatus.MATCHED_PENDING_THERAPIST_ACCEPTANCE
        )

    def test_cancel_must_use_cancellation(self):
        appointment = AppointmentFactory()

        with pytest.raises(AppointmentRuleError) as exc_info:
            AppointmentService.transition_status(appointment.pk, AppointmentStatus.CANCELLED, actor="user:9")

        assert exc_info.value.error_code == "USE_CANCELLATION"

    def test_invalid_edge(self):
        appointment = AppointmentFactory()

        with pytest.raises(InvalidTransitionError):
            AppointmentService.transition_status(appointment.pk, AppointmentStatus.UNPAID, actor="user:9")

    def test_stale_version(self):
        appointment = AppointmentFactory()

        with pytest.raises(StaleRecordError):
            AppointmentService.transition_status(
                appointment.pk,
                AppointmentStatus.NO_SHOW,
                actor="user:9",
                expected_version=appointment.version + 1,
            )

        assert Appointment.objects.get(pk=appointment.pk).status == AppointmentStatus.CONFIRMED

    def test_match_with_therapist(self, therapist):
        appointment = AppointmentFactory(status=AppointmentStatus.PENDING_MATCH, therapist=None)

        AppointmentService.transition_status(
            appointment.pk,
            AppointmentStatus.MATCHED_PENDING_THERAPIST_ACCEPTANCE,
            actor="user:9",
            therapist_id=therapist.pk,
        )

        assert Appointment.objects.get(pk=appointment.pk).therapist_id == therapist.pk

    def test_confirm_with_date(self):
        appointment = AppointmentFactory(status=AppointmentStatus.PENDING_SCHEDULING, date=None)
        when = timezone.now().replace(microsecond=0) + timedelta(days=2)

        AppointmentService.transition_status(
            appointment.pk, AppointmentStatus.CONFIRMED, actor="user:9", date=when
        )

        appointment = Appointment.objects.get(pk=appointment.pk)
        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.date == when
        assert appointment.sessions.get(is_current=True).date == when

    def test_rejected_transition_keeps_assignment_unchanged(self):
        appointment = AppointmentFactory(status=AppointmentStatus.PENDING_MATCH, date=None)

        with pytest.raises(InvalidTransitionError):
            AppointmentService.transition_status(
                appointment.pk,
                AppointmentStatus.CONFIRMED,
                actor="user:9",
                date=timezone.now() + timedelta(days=2),
            )

        appointment = Appointment.objects.get(pk=appointment.pk)
        assert appointment.date is None
        assert not appointment.sessions.exists()


# =============================================================================
# Assignment
# =============================================================================


@pytest.mark.django_db
class TestAssign:
    def test_therapist_assignment_unblocks_accept(self, therapist):
        appointment = AppointmentFactory(
            status=AppointmentStatus.MATCHED_PENDING_THERAPIST_ACCEPTANCE, therapist=None
        )

        AppointmentService.assign(appointment.pk, actor="user:9", therapist_id=therapist.pk)
        AppointmentService.transition_status(
            appointment.pk, AppointmentStatus.PENDING_SCHEDULING, actor="user:9"
        )

        appointment = Appointment.objects.get(pk=appointment.pk)
        assert appointment.therapist_id == therapist.pk
        assert appointment.status == AppointmentStatus.PENDING_SCHEDULING

    def test_scheduling_creates_the_current_session(self):
        appointment = AppointmentFactory(status=AppointmentStatus.PENDING_SCHEDULING, date=None)
        when = timezone.now().replace(microsecond=0) + timedelta(days=3)

        AppointmentService.assign(appointment.pk, actor="user:9", date=when)

        appointment = Appointment.objects.get(pk=appointment.pk)
        assert appointment.status == AppointmentStatus.PENDING_SCHEDULING
        assert appointment.date == when
        current = appointment.sessions.get()
        assert current.is_current is True
        assert current.date == when
        assert current.price == Decimal("100.00")

    def test_scheduling_moves_the_current_session(self):
        appointment = AppointmentFactory(status=AppointmentStatus.PENDING_SCHEDULING)
        first, second, third = weekly_sessions(appointment)
        when = first.date + timedelta(days=1)

        AppointmentService.assign(appointment.pk, actor="user:9", date=when)

        first.refresh_from_db()
        assert first.date == when
        assert first.is_current is True
        assert appointment.sessions.count() == 3
        assert Appointment.objects.get(pk=appointment.pk).date == when

    def test_scheduling_onto_another_session_is_rejected(self):
        appointment = AppointmentFactory(status=AppointmentStatus.PENDING_SCHEDULING)
        first, second, third = weekly_sessions(appointment)

        with pytest.raises(AppointmentRuleError) as exc_info:
            AppointmentService.assign(appointment.pk, actor="user:9", date=second.date)

        assert exc_info.value.error_code == "SESSION_DATE_TAKEN"
        first.refresh_from_db()
        assert first.date == appointment.date

    @pytest.mark.parametrize(
        "closed_status",
        [AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW],
    )
    def test_closed_appointment_cannot_be_reassigned(self, therapist, closed_status):
        appointment = AppointmentFactory(status=closed_status, therapist=None)

        with pytest.raises(AppointmentRuleError) as exc_info:
            AppointmentService.assign(appointment.pk, actor="user:9", therapist_id=therapist.pk)

        assert exc_info.value.error_code == "APPOINTMENT_CLOSED"
        assert Appointment.objects.get(pk=appointment.pk).therapist_id is None

    def test_nothing_to_assign(self):
        appointment = AppointmentFactory()

        with pytest.raises(AppointmentRuleError) as exc_info:
            AppointmentService.assign(appointment.pk, actor="user:9")

        assert exc_info.value.error_code == "INVALID_ASSIGNMENT"

    def test_unknown_therapist(self):
        appointment = AppointmentFactory(therapist=None)

        with pytest.raises(AppointmentRuleError) as exc_info:
            AppointmentService.assign(appointment.pk, actor="user:9", therapist_id=987654)

        assert exc_info.value.error_code == "INVALID_ASSIGNMENT"


@pytest.mark.django_db
class TestExpireUnpaid:
    def test_expires_old_unpaid_bookings_only(self):
        old = AppointmentFactory(unpaid=True)
        fresh = AppointmentFactory(unpaid=True)
        paid = AppointmentFactory()
        Appointment.objects.filter(pk__in=[old.pk, paid.pk]).update(
            created_at=timezone.now() - timedelta(hours=25)
        )

        expired = AppointmentService.expire_unpaid()

        assert expired == 1
        assert Appointment.objects.get(pk=old.pk).status == AppointmentStatus.CANCELLED
        assert Appointment.objects.get(pk=fresh.pk).status == AppointmentStatus.UNPAID
        assert Appointment.objects.get(pk=paid.pk).status == AppointmentStatus.CONFIRMED

    def test_custom_age(self):
        AppointmentFactory(unpaid=True)

        assert AppointmentService.expire_unpaid(older_than=timedelta(0)) == 1


@pytest.mark.django_db
def test_get_appointment_unknown():
    with pytest.raises(NotFoundError) as exc_info:
        AppointmentService.get_appointment("7d3c1b0e-0000-4000-8000-000000000000")

    assert exc_info.value.error_code == "APPOINTMENT_NOT_FOUND"
