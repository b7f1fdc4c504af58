"""
Appointment service layer.

AppointmentService owns the parts of the lifecycle that are not
reconciliation operations: booking, payment bookkeeping (fed by Stripe
webhooks or an admin link), public status transitions and expiry of
unpaid bookings. Cancellation with refunds and session completion go
through appointments.reconciliation.ReconciliationFacade.

Usage:
    from appointments.services import AppointmentService, BookingDraft

    result = AppointmentService.book(
        BookingDraft(patient_id=user.pk, price=Decimal("300.00"), total_sessions=3,
                     date=first_session, recurring=["2025-03-08", "2025-03-15"],
                     payment_method=PaymentMethod.BALANCE),
        actor=f"user:{user.pk}",
    )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db.models import Max
from django.utils import timezone

from appointments.collaborators import dispatch_on_commit
from appointments.exceptions import AppointmentRuleError
from appointments.models import (
    Appointment,
    AppointmentSession,
    AppointmentStatusChange,
    IdempotencyRecord,
)
from appointments.sessions import normalize_sessions, session_price
from appointments.state_machine import AppointmentStateMachine
from appointments.states import AppointmentStatus, PaymentMethod, PaymentStatus, SessionStatus
from core.exceptions import NotFoundError
from core.services import BaseService
from payments.ledger import ledger
from payments.locks import check_version
from payments.verification import reference_kind

if TYPE_CHECKING:
    from typing import Any

CENT = Decimal("0.01")
OPERATION_BOOK = "book"
EXTERNAL_REFERENCE_KINDS = ("payment_intent", "charge", "invoice", "subscription")
CLOSED_STATUSES = (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW)


def lock_appointment(appointment_id, expected_version: int | None = None) -> Appointment:
    """
    Lock an appointment row for the rest of the transaction.

    With ``expected_version`` the row must still be at that version.

    Raises:
        NotFoundError: Unknown appointment
        StaleRecordError: Version moved on since the caller read it
    """
    if expected_version is not None:
        return check_version(Appointment, appointment_id, expected_version)
    appointment = Appointment.objects.select_for_update().filter(pk=appointment_id).first()
    if appointment is None:
        raise NotFoundError(
            f"Appointment {appointment_id} not found",
            error_code="APPOINTMENT_NOT_FOUND",
            details={"appointment_id": str(appointment_id)},
        )
    return appointment


@dataclass
class BookingDraft:
    """
    Everything the booking flow needs to create an appointment.

    ``recurring`` holds raw session descriptors in any shape the
    session normalizer accepts. ``balance_sessions`` is only used for
    mixed payments and says how many sessions the balance covers.
    """

    patient_id: int
    price: Decimal
    total_sessions: int = 1
    date: datetime | None = None
    recurring: list[Any] = field(default_factory=list)
    payment_method: str = PaymentMethod.STRIPE
    balance_sessions: int | None = None
    unit_price: Decimal | None = None
    currency: str = "usd"
    plan: str = ""
    therapist_id: int | None = None
    checkout_session_id: str = ""
    payment_reference: str = ""
    idempotency_key: str = ""
    rescheduled: bool = False

    @property
    def effective_unit_price(self) -> Decimal:
        if self.unit_price:
            return Decimal(self.unit_price).quantize(CENT, rounding=ROUND_HALF_UP)
        return (Decimal(self.price) / self.total_sessions).quantize(CENT, rounding=ROUND_HALF_UP)

    @property
    def balance_units(self) -> Decimal:
        """Session units paid from the balance at booking time."""
        if self.payment_method == PaymentMethod.BALANCE:
            return Decimal(self.total_sessions)
        if self.payment_method == PaymentMethod.MIXED:
            return Decimal(self.balance_sessions or 0)
        return Decimal(0)

    @property
    def balance_amount(self) -> Decimal:
        """Money taken from the balance at booking time."""
        if self.payment_method == PaymentMethod.BALANCE:
            return Decimal(self.price).quantize(CENT, rounding=ROUND_HALF_UP)
        return (self.effective_unit_price * self.balance_units).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BookingResult:
    appointment: Appointment
    balance: Decimal
    replayed: bool = False


class AppointmentService(BaseService):
    """
    Service for appointment bookings and payment bookkeeping.

    Methods raise BaseApplicationError subclasses; callers in the HTTP
    layer let the exception handler render them.
    """

    # =========================================================================
    # Booking
    # =========================================================================

    @classmethod
    def book(cls, draft: BookingDraft, actor: str) -> BookingResult:
        """
        Create an appointment from a booking draft.

        The balance is debited before anything is created; when it does
        not cover the booking, InsufficientBalance propagates and no
        appointment exists afterwards. A retried draft with the same
        ``idempotency_key`` returns the first booking. Recurring entries
        that arrive already completed count towards completed_sessions;
        a draft whose sessions are all completed is rejected.

        Initial status:
            rescheduled draft                    -> rescheduled
            balance-paid, therapist and date     -> confirmed
            balance-paid otherwise               -> pending
            stripe or mixed                      -> unpaid

        Raises:
            AppointmentRuleError: INVALID_BOOKING
            InsufficientBalance: Balance does not cover the booking
        """
        logger = cls.get_logger()
        cls._validate_draft(draft)

        record_key = (
            f"booking:{draft.patient_id}:{draft.idempotency_key}" if draft.idempotency_key else None
        )
        if record_key:
            replay = cls._replay_booking(record_key, draft)
            if replay is not None:
                return replay

        appointment_id = uuid.uuid4()
        sessions = normalize_sessions(
            draft.date,
            draft.recurring,
            total_price=draft.price,
            total_sessions=draft.total_sessions,
        )
        completed_sessions = sum(
            1 for session in sessions if session.is_valid and session.status == SessionStatus.COMPLETED
        )
        if completed_sessions >= draft.total_sessions:
            raise AppointmentRuleError(
                "Booking is invalid",
                error_code="INVALID_BOOKING",
                details={
                    "recurring": "A new booking needs at least one session that is not completed",
                    "completed_sessions": completed_sessions,
                    "total_sessions": draft.total_sessions,
                },
            )
        paid_with_balance = draft.payment_method == PaymentMethod.BALANCE
        status = cls._initial_status(draft)

        with cls.atomic():
            if draft.balance_amount > 0:
                ledger.debit(
                    draft.patient_id,
                    draft.balance_amount,
                    reason=f"Booking {appointment_id}",
                    appointment_id=appointment_id,
                    dedupe_key=record_key,
                )

            appointment = Appointment.objects.create(
                id=appointment_id,
                patient_id=draft.patient_id,
                therapist_id=draft.therapist_id,
                plan=draft.plan,
                date=sessions[0].date if sessions and sessions[0].is_current else None,
                status=status,
                payment_status=PaymentStatus.COMPLETED if paid_with_balance else PaymentStatus.PENDING,
                paid_at=timezone.now() if paid_with_balance else None,
                price=draft.price,
                currency=draft.currency,
                total_sessions=draft.total_sessions,
                completed_sessions=completed_sessions,
                payment_method=draft.payment_method,
                unit_price=draft.effective_unit_price,
                sessions_paid_with_balance=draft.balance_units,
                checkout_session_id=draft.checkout_session_id,
                payment_reference=draft.payment_reference,
            )
            AppointmentSession.objects.bulk_create(
                [
                    AppointmentSession(
                        appointment=appointment,
                        position=position,
                        date=session.date,
                        raw_value=session.raw_value[:100],
                        is_valid=session.is_valid,
                        is_current=session.is_current,
                        status=session.status,
                        payment_state=session.payment_state,
                        price=session.price,
                    )
                    for position, session in enumerate(sessions)
                ]
            )
            AppointmentStatusChange.objects.create(
                appointment=appointment,
                from_status="",
                to_status=appointment.status,
                actor=actor,
                reason="Booked",
                metadata={"payment_method": draft.payment_method},
            )
            if record_key:
                IdempotencyRecord.objects.create(
                    key=record_key,
                    operation=OPERATION_BOOK,
                    appointment=appointment,
                    effect=draft.balance_amount,
                )
            dispatch_on_commit("appointment.booked", appointment)

        balance = ledger.get_balance(draft.patient_id).amount
        logger.info(
            "Appointment booked",
            extra={
                "appointment_id": str(appointment.pk),
                "patient_id": str(draft.patient_id),
                "status": appointment.status,
                "payment_method": draft.payment_method,
                "debited": str(draft.balance_amount),
                "session_count": len(sessions),
                "actor": actor,
            },
        )
        return BookingResult(appointment=appointment, balance=balance)

    @staticmethod
    def _validate_draft(draft: BookingDraft) -> None:
        problems: dict[str, str] = {}
        if draft.price is None or Decimal(draft.price) < 0:
            problems["price"] = "Price must not be negative"
        if not draft.total_sessions or draft.total_sessions < 1:
            problems["total_sessions"] = "At least one session is required"
        if draft.payment_method not in PaymentMethod.values:
            problems["payment_method"] = f"Unknown payment method '{draft.payment_method}'"
        if draft.payment_method == PaymentMethod.MIXED and not (
            draft.balance_sessions and 0 < draft.balance_sessions < (draft.total_sessions or 0)
        ):
            problems["balance_sessions"] = "Mixed payments need between 1 and total_sessions - 1 balance sessions"
        if draft.therapist_id is not None and not get_user_model().objects.filter(pk=draft.therapist_id).exists():
            problems["therapist_id"] = "Therapist not found"

        if problems:
            raise AppointmentRuleError(
                "Booking is invalid",
                error_code="INVALID_BOOKING",
                details=problems,
            )

    @staticmethod
    def _initial_status(draft: BookingDraft) -> str:
        if draft.rescheduled:
            return AppointmentStatus.RESCHEDULED
        if draft.payment_method != PaymentMethod.BALANCE:
            return AppointmentStatus.UNPAID
        if draft.therapist_id is not None and draft.date is not None:
            return AppointmentStatus.CONFIRMED
        return AppointmentStatus.PENDING

    @classmethod
    def _replay_booking(cls, record_key: str, draft: BookingDraft) -> BookingResult | None:
        record = IdempotencyRecord.objects.select_related("appointment").filter(key=record_key).first()
        if record is None:
            return None
        if record.operation != OPERATION_BOOK or record.appointment is None:
            raise AppointmentRuleError(
                "Idempotency key was already used for a different operation",
                error_code="IDEMPOTENCY_KEY_REUSED",
                details={"key": draft.idempotency_key, "operation": record.operation},
            )
        cls.get_logger().info(
            "Replaying booking",
            extra={"appointment_id": str(record.appointment_id), "key": record_key},
        )
        return BookingResult(
            appointment=record.appointment,
            balance=ledger.get_balance(draft.patient_id).amount,
            replayed=True,
        )

    # =========================================================================
    # Payment bookkeeping
    # =========================================================================

    @classmethod
    def record_payment(
        cls,
        appointment_id,
        checkout_session_id: str | None = None,
        payment_reference: str | None = None,
        actor: str = "system",
    ) -> Appointment:
        """
        Mark an appointment's external payment as completed.

        Stores the references, books the sessions not covered by the
        balance on the Stripe channel and advances
        unpaid -> pending -> pending_match. Already completed payments
        are left untouched, so duplicate webhook deliveries are no-ops.

        Raises:
            NotFoundError: Unknown appointment
        """
        logger = cls.get_logger()
        with cls.atomic():
            appointment = lock_appointment(appointment_id)
            if appointment.payment_status == PaymentStatus.COMPLETED:
                logger.info(
                    "Payment already recorded",
                    extra={"appointment_id": str(appointment.pk), "actor": actor},
                )
                return appointment

            appointment.payment_status = PaymentStatus.COMPLETED
            appointment.paid_at = timezone.now()
            if checkout_session_id:
                appointment.checkout_session_id = checkout_session_id
            if payment_reference:
                appointment.payment_reference = payment_reference
            if not appointment.is_paid_with_balance:
                appointment.sessions_paid_with_stripe = max(
                    Decimal(appointment.total_sessions) - Decimal(appointment.sessions_paid_with_balance),
                    Decimal(0),
                )
            appointment.save()

            if appointment.status == AppointmentStatus.UNPAID:
                AppointmentStateMachine.transition(
                    appointment, AppointmentStatus.PENDING, actor, reason="Payment received"
                )
            if appointment.status == AppointmentStatus.PENDING:
                AppointmentStateMachine.transition(
                    appointment, AppointmentStatus.PENDING_MATCH, actor, reason="Payment completed"
                )
            dispatch_on_commit("appointment.paid", appointment)

        logger.info(
            "Payment recorded",
            extra={
                "appointment_id": str(appointment.pk),
                "checkout_session_id": checkout_session_id,
                "payment_reference": payment_reference,
                "status": appointment.status,
                "actor": actor,
            },
        )
        return appointment

    @classmethod
    def mark_payment_failed(cls, appointment_id, reason: str = "", actor: str = "system") -> Appointment:
        """Record a failed external payment; a completed payment is never downgraded."""
        logger = cls.get_logger()
        with cls.atomic():
            appointment = lock_appointment(appointment_id)
            if appointment.payment_status == PaymentStatus.COMPLETED:
                logger.warning(
                    "Ignoring payment failure for a completed payment",
                    extra={"appointment_id": str(appointment.pk), "reason": reason},
                )
                return appointment
            appointment.payment_status = PaymentStatus.FAILED
            appointment.save()
            dispatch_on_commit("appointment.payment_failed", appointment)

        logger.warning(
            "Payment failed",
            extra={"appointment_id": str(appointment.pk), "reason": reason, "actor": actor},
        )
        return appointment

    @classmethod
    def link_payment(
        cls,
        appointment_id,
        checkout_session_id: str | None = None,
        payment_reference: str | None = None,
        actor: str = "system",
    ) -> Appointment:
        """
        Attach Stripe references to an appointment by hand.

        The references are what the payment verification adapter looks
        up when a session is completed.

        Raises:
            AppointmentRuleError: INVALID_PAYMENT_REFERENCE
        """
        problems = {}
        if checkout_session_id and reference_kind(checkout_session_id) != "checkout_session":
            problems["checkout_session_id"] = "Expected a checkout session ID (cs_...)"
        if payment_reference and reference_kind(payment_reference) not in EXTERNAL_REFERENCE_KINDS:
            problems["payment_reference"] = "Expected a pi_, ch_, in_ or sub_ reference"
        if not checkout_session_id and not payment_reference:
            problems["reference"] = "No reference given"
        if problems:
            raise AppointmentRuleError(
                "Payment reference is invalid",
                error_code="INVALID_PAYMENT_REFERENCE",
                details=problems,
            )

        with cls.atomic():
            appointment = lock_appointment(appointment_id)
            if checkout_session_id:
                appointment.checkout_session_id = checkout_session_id
            if payment_reference:
                appointment.payment_reference = payment_reference
            appointment.save()

        cls.get_logger().info(
            "Payment reference linked",
            extra={
                "appointment_id": str(appointment.pk),
                "checkout_session_id": checkout_session_id,
                "payment_reference": payment_reference,
                "actor": actor,
            },
        )
        return appointment

    # =========================================================================
    # Status
    # =========================================================================

    @classmethod
    def transition_status(
        cls,
        appointment_id,
        target: str,
        actor: str,
        reason: str = "",
        expected_version: int | None = None,
        therapist_id: int | None = None,
        date: datetime | None = None,
    ) -> Appointment:
        """
        Apply a public status transition under the row lock.

        ``therapist_id`` and ``date`` are assigned first, so a single
        request can satisfy the guards of the edge it asks for (match
        with a therapist, confirm with a date). Cancelling is refused
        here because it has to settle refunds; use
        ReconciliationFacade.request_cancellation.

        Raises:
            InvalidTransitionError: Edge not allowed or guard failed
            AppointmentRuleError: USE_CANCELLATION, INVALID_ASSIGNMENT
        """
        if target == AppointmentStatus.CANCELLED:
            raise AppointmentRuleError(
                "Cancelling settles refunds; use the cancellation endpoint",
                error_code="USE_CANCELLATION",
            )
        cls._validate_therapist(therapist_id)

        matching = target == AppointmentStatus.MATCHED_PENDING_THERAPIST_ACCEPTANCE
        with cls.atomic():
            appointment = lock_appointment(appointment_id, expected_version)
            cls._apply_assignment(
                appointment,
                therapist_id=None if matching else therapist_id,
                date=date,
            )
            AppointmentStateMachine.transition(
                appointment,
                target,
                actor,
                reason,
                therapist_id=therapist_id if matching else None,
            )
            dispatch_on_commit("appointment.status_changed", appointment)
        return appointment

    # =========================================================================
    # Assignment
    # =========================================================================

    @classmethod
    def assign(
        cls,
        appointment_id,
        actor: str,
        therapist_id: int | None = None,
        date: datetime | None = None,
        expected_version: int | None = None,
    ) -> Appointment:
        """
        Assign a therapist and/or schedule the current session.

        The status is left alone; the assignment is what lets ``accept``
        (needs a therapist) and ``confirm`` (needs a date) pass later.

        Raises:
            AppointmentRuleError: INVALID_ASSIGNMENT, APPOINTMENT_CLOSED,
                SESSION_ALREADY_COMPLETED, SESSION_DATE_TAKEN
        """
        if therapist_id is None and date is None:
            raise AppointmentRuleError(
                "Nothing to assign",
                error_code="INVALID_ASSIGNMENT",
                details={"fields": ["therapist_id", "date"]},
            )
        cls._validate_therapist(therapist_id)

        with cls.atomic():
            appointment = lock_appointment(appointment_id, expected_version)
            cls._apply_assignment(appointment, therapist_id=therapist_id, date=date)
            dispatch_on_commit("appointment.assigned", appointment)

        cls.get_logger().info(
            "Appointment assigned",
            extra={
                "appointment_id": str(appointment.pk),
                "therapist_id": therapist_id,
                "date": date.isoformat() if date else None,
                "actor": actor,
            },
        )
        return appointment

    @staticmethod
    def _validate_therapist(therapist_id: int | None) -> None:
        if therapist_id is None:
            return
        if not get_user_model().objects.filter(pk=therapist_id).exists():
            raise AppointmentRuleError(
                "Therapist not found",
                error_code="INVALID_ASSIGNMENT",
                details={"therapist_id": therapist_id},
            )

    @classmethod
    def _apply_assignment(
        cls,
        appointment: Appointment,
        therapist_id: int | None = None,
        date: datetime | None = None,
    ) -> None:
        """Set therapist and current session date on a locked appointment."""
        if therapist_id is None and date is None:
            return
        if appointment.status in CLOSED_STATUSES:
            raise AppointmentRuleError(
                f"A {appointment.status} appointment cannot be reassigned",
                error_code="APPOINTMENT_CLOSED",
                details={"status": appointment.status},
            )
        if therapist_id is not None:
            appointment.therapist_id = therapist_id
        if date is not None:
            cls._schedule_current_session(appointment, date)
        appointment.save()

    @staticmethod
    def _schedule_current_session(appointment: Appointment, date: datetime) -> None:
        """Move the current session to ``date``, creating it if the booking had none."""
        if timezone.is_naive(date):
            date = timezone.make_aware(date, timezone.get_default_timezone())
        current = appointment.sessions.filter(is_current=True).first()
        if current is not None and current.status == SessionStatus.COMPLETED:
            raise AppointmentRuleError(
                "The current session is already completed",
                error_code="SESSION_ALREADY_COMPLETED",
                details={"session_id": str(current.pk)},
            )

        clashes = appointment.sessions.filter(is_valid=True, date=date)
        if current is not None:
            clashes = clashes.exclude(pk=current.pk)
        if clashes.exists():
            raise AppointmentRuleError(
                "Another session is already scheduled at that time",
                error_code="SESSION_DATE_TAKEN",
                details={"date": date.isoformat()},
            )

        if current is None:
            last_position = appointment.sessions.aggregate(last=Max("position"))["last"]
            AppointmentSession.objects.create(
                appointment=appointment,
                position=0 if last_position is None else last_position + 1,
                date=date,
                raw_value=date.isoformat(),
                is_current=True,
                price=session_price(appointment.price, appointment.total_sessions),
            )
        else:
            current.date = date
            current.raw_value = date.isoformat()
            current.is_valid = True
            current.save(update_fields=["date", "raw_value", "is_valid", "updated_at"])
        appointment.date = date

    @classmethod
    def expire_unpaid(cls, older_than: timedelta | None = None) -> int:
        """
        Cancel unpaid appointments booked more than ``older_than`` ago.

        Defaults to UNPAID_APPOINTMENT_EXPIRY_HOURS. Returns how many
        appointments were expired.
        """
        if older_than is None:
            older_than = timedelta(hours=settings.UNPAID_APPOINTMENT_EXPIRY_HOURS)
        cutoff = timezone.now() - older_than

        candidate_ids = list(
            Appointment.objects.filter(
                status=AppointmentStatus.UNPAID,
                created_at__lt=cutoff,
            ).values_list("id", flat=True)
        )

        expired = 0
        for appointment_id in candidate_ids:
            with cls.atomic():
                appointment = lock_appointment(appointment_id)
                # Paid or moved on since the candidate query
                if appointment.status != AppointmentStatus.UNPAID:
                    continue
                AppointmentStateMachine.apply_internal(
                    appointment,
                    "expire",
                    actor="system:expire_unpaid",
                    reason="Expired unpaid",
                    metadata={"cutoff": cutoff.isoformat()},
                )
                dispatch_on_commit("appointment.expired", appointment)
                expired += 1

        if expired:
            cls.get_logger().info(
                f"Expired {expired} unpaid appointments",
                extra={"expired_count": expired, "cutoff": cutoff.isoformat()},
            )
        return expired

    @staticmethod
    def get_appointment(appointment_id) -> Appointment:
        appointment = Appointment.objects.select_related("patient", "therapist").filter(pk=appointment_id).first()
        if appointment is None:
            raise NotFoundError(
                f"Appointment {appointment_id} not found",
                error_code="APPOINTMENT_NOT_FOUND",
                details={"appointment_id": str(appointment_id)},
            )
        return appointment


__all__ = [
    "AppointmentService",
    "BookingDraft",
    "BookingResult",
    "lock_appointment",
]
