"""
State enums for appointment models.

These are Django TextChoices for database storage and admin integration.

Appointment status graph (django-fsm, see Appointment):

    unpaid -> pending
    pending -> pending_match | unpaid
    pending_match -> matched_pending_therapist_acceptance
    matched_pending_therapist_acceptance -> pending_scheduling | cancelled
    pending_scheduling -> confirmed | cancelled
    confirmed -> completed | cancelled | no_show
    rescheduled -> confirmed

Internal-only edges (never requested through the status API):
    confirmed -> completed   last session completed
    completed -> confirmed   completion reversed
    unpaid -> cancelled      unpaid booking expired
"""

from django.db import models


class AppointmentStatus(models.TextChoices):
    """
    Lifecycle status of an appointment.

    Terminal states: CANCELLED, COMPLETED, NO_SHOW
    """

    UNPAID = "unpaid", "Unpaid"
    PENDING = "pending", "Pending"
    PENDING_MATCH = "pending_match", "Pending Match"
    MATCHED_PENDING_THERAPIST_ACCEPTANCE = (
        "matched_pending_therapist_acceptance",
        "Matched, Pending Therapist Acceptance",
    )
    PENDING_SCHEDULING = "pending_scheduling", "Pending Scheduling"
    CONFIRMED = "confirmed", "Confirmed"
    CANCELLED = "cancelled", "Cancelled"
    COMPLETED = "completed", "Completed"
    NO_SHOW = "no_show", "No Show"
    RESCHEDULED = "rescheduled", "Rescheduled"


TERMINAL_STATUSES = frozenset(
    {
        AppointmentStatus.CANCELLED,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.NO_SHOW,
    }
)


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class PaymentMethod(models.TextChoices):
    """
    How an appointment was paid.

    MIXED means part of the sessions were paid from the balance and the
    rest through Stripe; both channels are tracked separately.
    """

    BALANCE = "balance", "Balance"
    STRIPE = "stripe", "Stripe"
    MIXED = "mixed", "Mixed"


class SessionStatus(models.TextChoices):
    IN_PROGRESS = "in_progress", "In Progress"
    COMPLETED = "completed", "Completed"


class SessionPaymentState(models.TextChoices):
    NOT_PAID = "not_paid", "Not Paid"
    PAID = "paid", "Paid"
    UNPAID = "unpaid", "Unpaid"
