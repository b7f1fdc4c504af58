"""
Appointment models.

Models:
    Appointment: A booked therapy plan (one or more sessions) with its
        status machine and per-channel payment accounting
    AppointmentSession: One normalized session of an appointment
    AppointmentStatusChange: Append-only status history
    IdempotencyRecord: First result of an operation run under a caller key

Usage:
    from appointments.models import Appointment
    from appointments.state_machine import AppointmentStateMachine

    appointment = Appointment.objects.select_for_update().get(pk=appointment_id)
    AppointmentStateMachine.transition(
        appointment, AppointmentStatus.CONFIRMED, actor="user:42"
    )
"""

from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django_fsm import FSMField, transition

from appointments.states import (
    AppointmentStatus,
    PaymentMethod,
    PaymentStatus,
    SessionPaymentState,
    SessionStatus,
)
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel


# =============================================================================
# Transition guards
# =============================================================================


def payment_completed(appointment: Appointment) -> bool:
    return appointment.payment_status == PaymentStatus.COMPLETED


def has_therapist(appointment: Appointment) -> bool:
    return appointment.therapist_id is not None


def has_date(appointment: Appointment) -> bool:
    return appointment.date is not None


class Appointment(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A therapy appointment covering ``total_sessions`` sessions.

    ``status`` is protected: it only changes through the transition
    methods below, which AppointmentStateMachine calls after checking
    the edge and recording history.

    Payment accounting is kept per channel in session units so a refund
    can never return more than was paid on that channel.
    """

    patient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="appointments",
        help_text="Patient who booked the appointment",
    )
    therapist = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="therapist_appointments",
        help_text="Assigned therapist (null until matched)",
    )
    plan = models.CharField(
        max_length=200,
        blank=True,
        help_text="Plan label shown to the patient",
    )
    date = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Instant of the current session",
    )

    status = FSMField(
        default=AppointmentStatus.UNPAID,
        choices=AppointmentStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current lifecycle status (managed by FSM)",
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True,
    )

    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Total contracted amount",
    )
    currency = models.CharField(max_length=3, default="usd")
    total_sessions = models.PositiveIntegerField(default=1)
    completed_sessions = models.PositiveIntegerField(default=0)

    # ==========================================================================
    # Payment breakdown
    # ==========================================================================

    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.STRIPE,
    )
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Price of one session unit",
    )
    sessions_paid_with_balance = models.DecimalField(
        max_digits=8, decimal_places=2, default=Decimal("0.00")
    )
    sessions_paid_with_stripe = models.DecimalField(
        max_digits=8, decimal_places=2, default=Decimal("0.00")
    )
    refunded_units_from_balance = models.DecimalField(
        max_digits=8, decimal_places=2, default=Decimal("0.00")
    )
    refunded_units_from_stripe = models.DecimalField(
        max_digits=8, decimal_places=2, default=Decimal("0.00")
    )
    checkout_session_id = models.CharField(
        max_length=255,
        blank=True,
        db_index=True,
        help_text="Stripe Checkout Session ID (cs_xxx)",
    )
    payment_reference = models.CharField(
        max_length=255,
        blank=True,
        help_text="Other Stripe reference (pi_, ch_, in_, sub_)",
    )
    paid_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Lifecycle timestamps
    # ==========================================================================

    cancellation_reason = models.TextField(blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["patient", "status"], name="appointment_patient_status_idx"),
            models.Index(fields=["therapist", "status"], name="appointment_therapist_idx"),
            models.Index(fields=["status", "payment_status", "date"], name="appt_status_payment_date_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(completed_sessions__lte=F("total_sessions")),
                name="appointment_completed_within_total",
            ),
            models.CheckConstraint(
                condition=Q(price__gte=0),
                name="appointment_price_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(refunded_units_from_balance__lte=F("sessions_paid_with_balance")),
                name="appointment_balance_refund_within_paid",
            ),
            models.CheckConstraint(
                condition=Q(refunded_units_from_stripe__lte=F("sessions_paid_with_stripe")),
                name="appointment_stripe_refund_within_paid",
            ),
        ]

    def __str__(self) -> str:
        return f"Appointment({self.id}, {self.status}, {self.completed_sessions}/{self.total_sessions})"

    @property
    def remaining_sessions(self) -> int:
        return self.total_sessions - self.completed_sessions

    @property
    def is_paid_with_balance(self) -> bool:
        return self.payment_method == PaymentMethod.BALANCE

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=status, source=AppointmentStatus.UNPAID, target=AppointmentStatus.PENDING)
    def mark_pending(self):
        """Checkout started or payment received."""

    @transition(field=status, source=AppointmentStatus.PENDING, target=AppointmentStatus.UNPAID)
    def revert_to_unpaid(self):
        """Checkout abandoned."""

    @transition(
        field=status,
        source=AppointmentStatus.PENDING,
        target=AppointmentStatus.PENDING_MATCH,
        conditions=[payment_completed],
    )
    def request_match(self):
        """Paid; looking for a therapist."""

    @transition(
        field=status,
        source=AppointmentStatus.PENDING_MATCH,
        target=AppointmentStatus.MATCHED_PENDING_THERAPIST_ACCEPTANCE,
    )
    def match(self, therapist_id: int | None = None):
        """Therapist proposed, waiting for acceptance."""
        if therapist_id is not None:
            self.therapist_id = therapist_id

    @transition(
        field=status,
        source=AppointmentStatus.MATCHED_PENDING_THERAPIST_ACCEPTANCE,
        target=AppointmentStatus.PENDING_SCHEDULING,
        conditions=[has_therapist],
    )
    def accept(self):
        """Therapist accepted; a date is being agreed."""

    @transition(
        field=status,
        source=[AppointmentStatus.PENDING_SCHEDULING, AppointmentStatus.RESCHEDULED],
        target=AppointmentStatus.CONFIRMED,
        conditions=[has_date],
    )
    def confirm(self):
        pass

    @transition(
        field=status,
        source=[
            AppointmentStatus.MATCHED_PENDING_THERAPIST_ACCEPTANCE,
            AppointmentStatus.PENDING_SCHEDULING,
            AppointmentStatus.CONFIRMED,
        ],
        target=AppointmentStatus.CANCELLED,
    )
    def cancel(self, reason: str = ""):
        self.cancelled_at = timezone.now()
        self.cancellation_reason = reason

    @transition(field=status, source=AppointmentStatus.CONFIRMED, target=AppointmentStatus.NO_SHOW)
    def mark_no_show(self):
        pass

    @transition(field=status, source=AppointmentStatus.CONFIRMED, target=AppointmentStatus.COMPLETED)
    def complete(self):
        """
        Internal: only reached when the last session is completed.

        Note:
            AppointmentStateMachine.complete_session is the only caller.
        """
        self.completed_at = timezone.now()

    @transition(field=status, source=AppointmentStatus.COMPLETED, target=AppointmentStatus.CONFIRMED)
    def reopen(self):
        """Internal: a completion of the last session was reversed."""
        self.completed_at = None

    @transition(field=status, source=AppointmentStatus.UNPAID, target=AppointmentStatus.CANCELLED)
    def expire(self):
        """Internal: unpaid for too long."""
        self.cancelled_at = timezone.now()
        self.cancellation_reason = "Expired unpaid"


class AppointmentSession(UUIDPrimaryKeyMixin, BaseModel):
    """
    One session of an appointment, as produced by the session normalizer.

    Exactly one session per appointment is ``is_current``; it is tracked
    by that flag rather than by position because completing it promotes
    the next chronological session. Entries whose date could not be
    parsed are kept with ``is_valid=False`` and no date.
    """

    appointment = models.ForeignKey(
        Appointment,
        on_delete=models.CASCADE,
        related_name="sessions",
    )
    position = models.PositiveIntegerField(
        help_text="Order assigned at normalization",
    )
    date = models.DateTimeField(null=True, blank=True)
    raw_value = models.CharField(
        max_length=100,
        blank=True,
        help_text="Descriptor as received, kept for invalid entries",
    )
    is_valid = models.BooleanField(default=True)
    is_current = models.BooleanField(default=False)
    status = models.CharField(
        max_length=20,
        choices=SessionStatus.choices,
        default=SessionStatus.IN_PROGRESS,
    )
    payment_state = models.CharField(
        max_length=20,
        choices=SessionPaymentState.choices,
        default=SessionPaymentState.NOT_PAID,
    )
    price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-is_current", "position"]
        constraints = [
            models.UniqueConstraint(
                fields=["appointment", "date"],
                condition=Q(is_valid=True),
                name="appointment_session_unique_date",
            ),
            models.UniqueConstraint(
                fields=["appointment"],
                condition=Q(is_current=True),
                name="appointment_single_current_session",
            ),
        ]

    def __str__(self) -> str:
        marker = "*" if self.is_current else ""
        return f"AppointmentSession({self.date or self.raw_value}{marker}, {self.status})"


class AppointmentStatusChange(UUIDPrimaryKeyMixin, models.Model):
    """Append-only record of one status transition."""

    appointment = models.ForeignKey(
        Appointment,
        on_delete=models.CASCADE,
        related_name="status_changes",
    )
    from_status = models.CharField(max_length=50, blank=True)
    to_status = models.CharField(max_length=50)
    actor = models.CharField(
        max_length=100,
        help_text="Who caused the change (user:<id>, system, stripe_webhook)",
    )
    reason = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["created_at"]

    def __str__(self) -> str:
        return f"{self.from_status or '-'} -> {self.to_status} by {self.actor}"


class IdempotencyRecord(UUIDPrimaryKeyMixin, models.Model):
    """
    First outcome of an operation executed under a caller-supplied key.

    Written in the same transaction as the mutation it describes, so a
    committed record always means the mutation committed too.
    """

    key = models.CharField(max_length=255, unique=True)
    operation = models.CharField(max_length=50)
    appointment = models.ForeignKey(
        Appointment,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="idempotency_records",
    )
    effect = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Amount moved by the operation, if any",
    )
    response = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"IdempotencyRecord({self.key}, {self.operation})"
