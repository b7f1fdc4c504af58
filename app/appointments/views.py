"""
ViewSet for the appointments API.

URL Structure:
    /api/v1/appointments/                     POST  book
    /api/v1/appointments/{id}/                GET   snapshot with history
    /api/v1/appointments/{id}/status/         POST  public status transition
    /api/v1/appointments/{id}/sessions/       POST  complete / reopen a session
    /api/v1/appointments/{id}/cancel/         POST  cancel with refund
    /api/v1/appointments/{id}/link-payment/   POST  attach Stripe references (admin)
    /api/v1/appointments/{id}/assign/         POST  assign therapist / schedule (admin)

Domain errors are raised by the service layer and rendered by
core.exception_handler.api_exception_handler.
"""

from __future__ import annotations

from django.db.models import Q
from drf_spectacular.utils import OpenApiResponse, extend_schema, extend_schema_view
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from appointments.models import Appointment
from appointments.permissions import CanManageAppointments, IsAppointmentParticipant, IsPlatformAdmin
from appointments.reconciliation import ReconciliationFacade
from appointments.refunds import RefundPolicy
from appointments.serializers import (
    AppointmentDetailSerializer,
    AppointmentSerializer,
    AssignmentSerializer,
    BookingResponseSerializer,
    BookingSerializer,
    CancellationResponseSerializer,
    CancellationSerializer,
    LinkPaymentSerializer,
    SessionCompletionSerializer,
    StatusTransitionSerializer,
)
from appointments.services import AppointmentService, BookingDraft


def actor_for(request) -> str:
    return f"user:{request.user.pk}"


@extend_schema_view(
    create=extend_schema(
        operation_id="book_appointment",
        summary="Book appointment",
        request=BookingSerializer,
        responses={201: BookingResponseSerializer},
        tags=["Appointments"],
    ),
    retrieve=extend_schema(
        operation_id="get_appointment",
        summary="Get appointment",
        tags=["Appointments"],
    ),
)
class AppointmentViewSet(mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """
    ViewSet for appointment operations.

    create:
        Book an appointment for the current user. Balance payments are
        debited before the appointment is created.

    retrieve:
        Appointment snapshot, including sessions and status history.

    change_status:
        Move the appointment along the status graph (therapists/admins).

    sessions:
        Complete a session or reverse a completion (therapists/admins).

    cancel:
        Cancel and refund to the patient's balance. Retrying with the
        same dedupe key returns the first result.

    link_payment:
        Attach Stripe references used for payment verification (admins).

    assign:
        Assign a therapist and/or schedule the current session (admins).
    """

    serializer_class = AppointmentDetailSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        user = self.request.user
        if not user.is_authenticated:
            return Appointment.objects.none()

        queryset = Appointment.objects.select_related("patient", "therapist").prefetch_related(
            "sessions", "status_changes"
        )
        if user.can_manage_appointments:
            return queryset
        return queryset.filter(Q(patient=user) | Q(therapist=user))

    def get_serializer_class(self):
        if self.action == "create":
            return BookingSerializer
        if self.action == "change_status":
            return StatusTransitionSerializer
        if self.action == "sessions":
            return SessionCompletionSerializer
        if self.action == "cancel":
            return CancellationSerializer
        if self.action == "assign":
            return AssignmentSerializer
        if self.action == "link_payment":
            return LinkPaymentSerializer
        return AppointmentDetailSerializer

    def get_permissions(self):
        if self.action in ("change_status", "sessions"):
            return [IsAuthenticated(), CanManageAppointments()]
        if self.action in ("assign", "link_payment"):
            return [IsAuthenticated(), IsPlatformAdmin()]
        if self.action in ("retrieve", "cancel"):
            return [IsAuthenticated(), IsAppointmentParticipant()]
        return [IsAuthenticated()]

    def create(self, request):
        """Book an appointment for the current user."""
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = AppointmentService.book(
            BookingDraft(
                patient_id=request.user.pk,
                price=data["price"],
                total_sessions=data["total_sessions"],
                date=data["date"],
                recurring=data["recurring"],
                payment_method=data["payment_method"],
                balance_sessions=data["balance_sessions"],
                unit_price=data["unit_price"],
                currency=data["currency"],
                plan=data["plan"],
                therapist_id=data["therapist_id"],
                checkout_session_id=data["checkout_session_id"],
                idempotency_key=data["idempotency_key"],
                rescheduled=data["rescheduled"],
            ),
            actor=actor_for(request),
        )

        body = dict(AppointmentSerializer(result.appointment).data)
        body["balance"] = str(result.balance)
        body["replayed"] = result.replayed
        return Response(
            body,
            status=status.HTTP_200_OK if result.replayed else status.HTTP_201_CREATED,
        )

    @extend_schema(
        operation_id="transition_appointment_status",
        summary="Change appointment status",
        request=StatusTransitionSerializer,
        responses={
            200: AppointmentSerializer,
            409: OpenApiResponse(description="Transition not allowed or stale version"),
        },
        tags=["Appointments"],
    )
    @action(detail=True, methods=["post"], url_path="status")
    def change_status(self, request, pk=None):
        """Apply a public status transition."""
        appointment = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        appointment = AppointmentService.transition_status(
            appointment.pk,
            serializer.validated_data["status"],
            actor=actor_for(request),
            reason=serializer.validated_data["reason"],
            expected_version=serializer.validated_data["expected_version"],
            therapist_id=serializer.validated_data["therapist_id"],
            date=serializer.validated_data["date"],
        )
        return Response(AppointmentSerializer(appointment).data)

    @extend_schema(
        operation_id="assign_appointment",
        summary="Assign therapist or schedule",
        request=AssignmentSerializer,
        responses={
            200: AppointmentSerializer,
            400: OpenApiResponse(description="Unknown therapist, closed appointment or date taken"),
        },
        tags=["Appointments"],
    )
    @action(detail=True, methods=["post"])
    def assign(self, request, pk=None):
        """Assign a therapist and/or move the current session."""
        appointment = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        appointment = AppointmentService.assign(
            appointment.pk,
            actor=actor_for(request),
            therapist_id=data["therapist_id"],
            date=data["date"],
            expected_version=data["expected_version"],
        )
        return Response(AppointmentSerializer(appointment).data)

    @extend_schema(
        operation_id="update_appointment_session",
        summary="Complete or reopen a session",
        request=SessionCompletionSerializer,
        responses={
            200: AppointmentSerializer,
            402: OpenApiResponse(description="Payment not verified"),
            503: OpenApiResponse(description="Payment verification unavailable"),
        },
        tags=["Appointments"],
    )
    @action(detail=True, methods=["post"])
    def sessions(self, request, pk=None):
        """Complete a session, or reverse a completion."""
        appointment = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = ReconciliationFacade.complete_session(
            appointment.pk,
            session_index=data["session_index"],
            target_status=data["target_status"],
            idempotency_key=data["idempotency_key"] or None,
            actor=actor_for(request),
            expected_version=data["expected_version"],
        )
        return Response(result.response)

    @extend_schema(
        operation_id="cancel_appointment",
        summary="Cancel appointment",
        request=CancellationSerializer,
        responses={200: CancellationResponseSerializer},
        tags=["Appointments"],
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        """Cancel the appointment and refund to the patient's balance."""
        appointment = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = ReconciliationFacade.request_cancellation(
            appointment.pk,
            RefundPolicy(charge_flag=data["charge_flag"], explicit_units=data["explicit_units"]),
            dedupe_key=data["dedupe_key"] or None,
            actor=actor_for(request),
            reason=data["reason"],
            expected_version=data["expected_version"],
        )
        return Response({**result.response, "replayed": result.replayed})

    @extend_schema(
        operation_id="link_appointment_payment",
        summary="Link payment references",
        request=LinkPaymentSerializer,
        responses={200: AppointmentSerializer},
        tags=["Appointments"],
    )
    @action(detail=True, methods=["post"], url_path="link-payment")
    def link_payment(self, request, pk=None):
        """Attach Stripe references to the appointment."""
        appointment = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        appointment = AppointmentService.link_payment(
            appointment.pk,
            checkout_session_id=serializer.validated_data["checkout_session_id"] or None,
            payment_reference=serializer.validated_data["payment_reference"] or None,
            actor=actor_for(request),
        )
        return Response(AppointmentSerializer(appointment).data)
