import uuid
from decimal import Decimal

import django.core.serializers.json
import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models

APPOINTMENT_STATUS_CHOICES = [
    ("unpaid", "Unpaid"),
    ("pending", "Pending"),
    ("pending_match", "Pending Match"),
    ("matched_pending_therapist_acceptance", "Matched, Pending Therapist Acceptance"),
    ("pending_scheduling", "Pending Scheduling"),
    ("confirmed", "Confirmed"),
    ("cancelled", "Cancelled"),
    ("completed", "Completed"),
    ("no_show", "No Show"),
    ("rescheduled", "Rescheduled"),
]


def uuid_pk():
    return models.UUIDField(
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
        primary_key=True,
        serialize=False,
    )


def timestamps():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
                help_text="Timestamp when this record was created",
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
                help_text="Timestamp when this record was last modified",
            ),
        ),
    ]


def units():
    return models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=8)


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Appointment",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                ("plan", models.CharField(blank=True, help_text="Plan label shown to the patient", max_length=200)),
                (
                    "date",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="Instant of the current session",
                        null=True,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=APPOINTMENT_STATUS_CHOICES,
                        db_index=True,
                        default="unpaid",
                        help_text="Current lifecycle status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "payment_status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed")],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("price", models.DecimalField(decimal_places=2, help_text="Total contracted amount", max_digits=10)),
                ("currency", models.CharField(default="usd", max_length=3)),
                ("total_sessions", models.PositiveIntegerField(default=1)),
                ("completed_sessions", models.PositiveIntegerField(default=0)),
                (
                    "payment_method",
                    models.CharField(
                        choices=[("balance", "Balance"), ("stripe", "Stripe"), ("mixed", "Mixed")],
                        default="stripe",
                        max_length=20,
                    ),
                ),
                (
                    "unit_price",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        help_text="Price of one session unit",
                        max_digits=10,
                    ),
                ),
                ("sessions_paid_with_balance", units()),
                ("sessions_paid_with_stripe", units()),
                ("refunded_units_from_balance", units()),
                ("refunded_units_from_stripe", units()),
                (
                    "checkout_session_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Stripe Checkout Session ID (cs_xxx)",
                        max_length=255,
                    ),
                ),
                (
                    "payment_reference",
                    models.CharField(
                        blank=True,
                        help_text="Other Stripe reference (pi_, ch_, in_, sub_)",
                        max_length=255,
                    ),
                ),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "patient",
                    models.ForeignKey(
                        help_text="Patient who booked the appointment",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="appointments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "therapist",
                    models.ForeignKey(
                        blank=True,
                        help_text="Assigned therapist (null until matched)",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="therapist_appointments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["patient", "status"], name="appointment_patient_status_idx"),
                    models.Index(fields=["therapist", "status"], name="appointment_therapist_idx"),
                    models.Index(fields=["status", "payment_status", "date"], name="appt_status_payment_date_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("completed_sessions__lte", models.F("total_sessions"))),
                        name="appointment_completed_within_total",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("price__gte", 0)),
                        name="appointment_price_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("refunded_units_from_balance__lte", models.F("sessions_paid_with_balance"))),
                        name="appointment_balance_refund_within_paid",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("refunded_units_from_stripe__lte", models.F("sessions_paid_with_stripe"))),
                        name="appointment_stripe_refund_within_paid",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AppointmentSession",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                ("position", models.PositiveIntegerField(help_text="Order assigned at normalization")),
                ("date", models.DateTimeField(blank=True, null=True)),
                (
                    "raw_value",
                    models.CharField(
                        blank=True,
                        help_text="Descriptor as received, kept for invalid entries",
                        max_length=100,
                    ),
                ),
                ("is_valid", models.BooleanField(default=True)),
                ("is_current", models.BooleanField(default=False)),
                (
                    "status",
                    models.CharField(
                        choices=[("in_progress", "In Progress"), ("completed", "Completed")],
                        default="in_progress",
                        max_length=20,
                    ),
                ),
                (
                    "payment_state",
                    models.CharField(
                        choices=[("not_paid", "Not Paid"), ("paid", "Paid"), ("unpaid", "Unpaid")],
                        default="not_paid",
                        max_length=20,
                    ),
                ),
                ("price", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "appointment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="sessions",
                        to="appointments.appointment",
                    ),
                ),
            ],
            options={
                "ordering": ["-is_current", "position"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_valid", True)),
                        fields=("appointment", "date"),
                        name="appointment_session_unique_date",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("is_current", True)),
                        fields=("appointment",),
                        name="appointment_single_current_session",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AppointmentStatusChange",
            fields=[
                ("id", uuid_pk()),
                ("from_status", models.CharField(blank=True, max_length=50)),
                ("to_status", models.CharField(max_length=50)),
                (
                    "actor",
                    models.CharField(
                        help_text="Who caused the change (user:<id>, system, stripe_webhook)",
                        max_length=100,
                    ),
                ),
                ("reason", models.TextField(blank=True)),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        encoder=django.core.serializers.json.DjangoJSONEncoder,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                (
                    "appointment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="status_changes",
                        to="appointments.appointment",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at"],
            },
        ),
        migrations.CreateModel(
            name="IdempotencyRecord",
            fields=[
                ("id", uuid_pk()),
                ("key", models.CharField(max_length=255, unique=True)),
                ("operation", models.CharField(max_length=50)),
                (
                    "effect",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Amount moved by the operation, if any",
                        max_digits=12,
                        null=True,
                    ),
                ),
                (
                    "response",
                    models.JSONField(
                        default=dict,
                        encoder=django.core.serializers.json.DjangoJSONEncoder,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "appointment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="idempotency_records",
                        to="appointments.appointment",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
