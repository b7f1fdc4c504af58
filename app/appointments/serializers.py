"""
DRF serializers for the appointments app.

Output:
    AppointmentSerializer: full appointment snapshot (sessions, payment
        breakdown, allowed transitions). ``appointment_snapshot`` is the
        plain-dict form handed to collaborators and stored for replay.

Input:
    BookingSerializer, StatusTransitionSerializer, AssignmentSerializer,
    SessionCompletionSerializer, CancellationSerializer,
    LinkPaymentSerializer

Related files:
    - views.py: AppointmentViewSet
    - services.py / reconciliation.py: operations the inputs feed
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import TYPE_CHECKING

from django.core.serializers.json import DjangoJSONEncoder
from rest_framework import serializers

from appointments.models import Appointment, AppointmentSession, AppointmentStatusChange
from appointments.state_machine import AppointmentStateMachine, ordered_sessions
from appointments.states import AppointmentStatus, PaymentMethod, SessionStatus

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Output Serializers
# =============================================================================


class AppointmentSessionSerializer(serializers.ModelSerializer):
    class Meta:
        model = AppointmentSession
        fields = [
            "id",
            "date",
            "raw_value",
            "is_valid",
            "is_current",
            "status",
            "payment_state",
            "price",
            "completed_at",
        ]
        read_only_fields = fields


class AppointmentStatusChangeSerializer(serializers.ModelSerializer):
    class Meta:
        model = AppointmentStatusChange
        fields = ["from_status", "to_status", "actor", "reason", "created_at"]
        read_only_fields = fields


class PaymentBreakdownSerializer(serializers.Serializer):
    """Per-channel accounting of an appointment, in session units."""

    method = serializers.CharField(source="payment_method")
    unit_price = serializers.DecimalField(max_digits=10, decimal_places=2)
    sessions_paid_with_balance = serializers.DecimalField(max_digits=8, decimal_places=2)
    sessions_paid_with_stripe = serializers.DecimalField(max_digits=8, decimal_places=2)
    refunded_units_from_balance = serializers.DecimalField(max_digits=8, decimal_places=2)
    refunded_units_from_stripe = serializers.DecimalField(max_digits=8, decimal_places=2)
    checkout_session_id = serializers.CharField()
    payment_reference = serializers.CharField()
    paid_at = serializers.DateTimeField(allow_null=True)


class AppointmentSerializer(serializers.ModelSerializer):
    """
    Appointment snapshot returned by every appointment endpoint.

    ``sessions`` lists the current session first, then the rest in
    normalized order; ``allowed_transitions`` lists the public statuses
    the appointment may move to right now.
    """

    patient_id = serializers.IntegerField(read_only=True)
    therapist_id = serializers.IntegerField(read_only=True, allow_null=True)
    payment = PaymentBreakdownSerializer(source="*", read_only=True)
    sessions = serializers.SerializerMethodField(help_text="Current session first")
    remaining_sessions = serializers.IntegerField(read_only=True)
    allowed_transitions = serializers.SerializerMethodField(
        help_text="Public statuses reachable from the current one"
    )

    class Meta:
        model = Appointment
        fields = [
            "id",
            "patient_id",
            "therapist_id",
            "plan",
            "date",
            "status",
            "payment_status",
            "price",
            "currency",
            "total_sessions",
            "completed_sessions",
            "remaining_sessions",
            "payment",
            "sessions",
            "allowed_transitions",
            "cancellation_reason",
            "cancelled_at",
            "completed_at",
            "version",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_sessions(self, obj: Appointment) -> list[dict]:
        return AppointmentSessionSerializer(ordered_sessions(obj), many=True).data

    def get_allowed_transitions(self, obj: Appointment) -> list[str]:
        return AppointmentStateMachine.allowed_transitions(obj)


class AppointmentDetailSerializer(AppointmentSerializer):
    """Snapshot plus status history, for the retrieve endpoint."""

    status_changes = AppointmentStatusChangeSerializer(many=True, read_only=True)

    class Meta(AppointmentSerializer.Meta):
        fields = AppointmentSerializer.Meta.fields + ["status_changes"]
        read_only_fields = fields


def appointment_snapshot(appointment: Appointment) -> dict[str, Any]:
    """
    JSON-safe snapshot of an appointment.

    Decimals, datetimes and UUIDs are rendered as strings, so the result
    can be stored in an IdempotencyRecord and replayed unchanged.
    """
    data = AppointmentSerializer(appointment).data
    return json.loads(json.dumps(data, cls=DjangoJSONEncoder))


class BookingResponseSerializer(AppointmentSerializer):
    """Booking response: the snapshot plus the patient's balance after the debit."""

    balance = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    replayed = serializers.BooleanField(read_only=True)

    class Meta(AppointmentSerializer.Meta):
        fields = AppointmentSerializer.Meta.fields + ["balance", "replayed"]
        read_only_fields = fields


class BalanceVerificationSerializer(serializers.Serializer):
    expected = serializers.DecimalField(max_digits=12, decimal_places=2)
    actual = serializers.DecimalField(max_digits=12, decimal_places=2)
    match = serializers.BooleanField()


class CancellationResponseSerializer(serializers.Serializer):
    message = serializers.CharField()
    appointment_id = serializers.UUIDField()
    status = serializers.CharField()
    refund_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    new_balance = serializers.DecimalField(max_digits=12, decimal_places=2)
    verification = BalanceVerificationSerializer()
    replayed = serializers.BooleanField()


# =============================================================================
# Input Serializers
# =============================================================================


class BookingSerializer(serializers.Serializer):
    """
    Serializer for the booking flow.

    ``recurring`` accepts the loose descriptor shapes the session
    normalizer understands: date strings, timestamps, or objects with
    ``date``, ``status`` and ``payment``. Unparseable entries are kept
    as invalid sessions rather than rejected here.
    """

    price = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        min_value=Decimal("0.00"),
        help_text="Total contracted amount",
    )
    total_sessions = serializers.IntegerField(min_value=1, default=1)
    date = serializers.DateTimeField(
        required=False,
        allow_null=True,
        default=None,
        help_text="Instant of the first (current) session",
    )
    recurring = serializers.ListField(
        child=serializers.JSONField(),
        required=False,
        default=list,
        help_text="Remaining sessions of the plan",
    )
    payment_method = serializers.ChoiceField(
        choices=PaymentMethod.choices,
        default=PaymentMethod.STRIPE,
    )
    balance_sessions = serializers.IntegerField(
        min_value=0,
        required=False,
        allow_null=True,
        default=None,
        help_text="Sessions paid from the balance (mixed payments only)",
    )
    unit_price = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        min_value=Decimal("0.00"),
        required=False,
        allow_null=True,
        default=None,
    )
    currency = serializers.CharField(max_length=3, default="usd")
    plan = serializers.CharField(max_length=200, required=False, allow_blank=True, default="")
    therapist_id = serializers.IntegerField(required=False, allow_null=True, default=None)
    checkout_session_id = serializers.CharField(
        max_length=255, required=False, allow_blank=True, default=""
    )
    idempotency_key = serializers.CharField(
        max_length=200,
        required=False,
        allow_blank=True,
        default="",
        help_text="Retrying with the same key returns the first booking",
    )
    rescheduled = serializers.BooleanField(default=False)

    def validate(self, attrs: dict) -> dict:
        method = attrs["payment_method"]
        if method == PaymentMethod.MIXED:
            balance_sessions = attrs.get("balance_sessions")
            if not balance_sessions or balance_sessions >= attrs["total_sessions"]:
                raise serializers.ValidationError(
                    {"balance_sessions": "Mixed payments need between 1 and total_sessions - 1 balance sessions"}
                )
        elif attrs.get("balance_sessions"):
            raise serializers.ValidationError(
                {"balance_sessions": "Only mixed payments split sessions between channels"}
            )
        return attrs


class StatusTransitionSerializer(serializers.Serializer):
    """
    Serializer for a public status transition.

    ``therapist_id`` and ``date`` are assigned before the transition, so
    matching can name the therapist and confirming can set the date.
    """

    status = serializers.ChoiceField(choices=AppointmentStatus.choices)
    reason = serializers.CharField(required=False, allow_blank=True, default="")
    expected_version = serializers.IntegerField(required=False, allow_null=True, default=None)
    therapist_id = serializers.IntegerField(required=False, allow_null=True, default=None)
    date = serializers.DateTimeField(
        required=False,
        allow_null=True,
        default=None,
        help_text="New instant of the current session",
    )


class AssignmentSerializer(serializers.Serializer):
    therapist_id = serializers.IntegerField(required=False, allow_null=True, default=None)
    date = serializers.DateTimeField(
        required=False,
        allow_null=True,
        default=None,
        help_text="New instant of the current session",
    )
    expected_version = serializers.IntegerField(required=False, allow_null=True, default=None)

    def validate(self, attrs: dict) -> dict:
        if attrs["therapist_id"] is None and attrs["date"] is None:
            raise serializers.ValidationError("Provide therapist_id or date")
        return attrs


class SessionCompletionSerializer(serializers.Serializer):
    """
    Serializer for completing a session or reversing a completion.

    ``session_index`` 0 is the current session.
    """

    session_index = serializers.IntegerField(min_value=0)
    target_status = serializers.ChoiceField(
        choices=SessionStatus.choices,
        default=SessionStatus.COMPLETED,
    )
    idempotency_key = serializers.CharField(max_length=200, required=False, allow_blank=True, default="")
    expected_version = serializers.IntegerField(required=False, allow_null=True, default=None)


class CancellationSerializer(serializers.Serializer):
    charge_flag = serializers.BooleanField(
        default=False,
        help_text="Keep half of the price as a cancellation charge",
    )
    explicit_units = serializers.DecimalField(
        max_digits=8,
        decimal_places=2,
        min_value=Decimal("0.00"),
        required=False,
        allow_null=True,
        default=None,
        help_text="Refund exactly this many session units",
    )
    dedupe_key = serializers.CharField(max_length=200, required=False, allow_blank=True, default="")
    reason = serializers.CharField(required=False, allow_blank=True, default="")
    expected_version = serializers.IntegerField(required=False, allow_null=True, default=None)


class LinkPaymentSerializer(serializers.Serializer):
    checkout_session_id = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    payment_reference = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")

    def validate(self, attrs: dict) -> dict:
        if not attrs["checkout_session_id"] and not attrs["payment_reference"]:
            raise serializers.ValidationError("Provide checkout_session_id or payment_reference")
        return attrs
