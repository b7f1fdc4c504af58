"""
Permission classes for the appointments API.

- IsAppointmentParticipant: the patient, the assigned therapist, or
  someone who manages appointments
- CanManageAppointments: therapists, admins and staff (status changes,
  session completion)
- IsPlatformAdmin: admins and staff (manual payment links)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView

    from appointments.models import Appointment


class IsAppointmentParticipant(permissions.BasePermission):
    message = "You are not a participant in this appointment."

    def has_object_permission(self, request: Request, view: APIView, obj: Appointment) -> bool:
        user = request.user
        if not user.is_authenticated:
            return False
        if user.can_manage_appointments:
            return True
        return obj.patient_id == user.pk or obj.therapist_id == user.pk


class CanManageAppointments(permissions.BasePermission):
    message = "Only therapists and administrators can manage appointments."

    def has_permission(self, request: Request, view: APIView) -> bool:
        return bool(request.user and request.user.is_authenticated and request.user.can_manage_appointments)


class IsPlatformAdmin(permissions.BasePermission):
    message = "Only administrators can perform this action."

    def has_permission(self, request: Request, view: APIView) -> bool:
        return bool(request.user and request.user.is_authenticated and request.user.is_platform_admin)
