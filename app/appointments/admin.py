"""
Django admin configuration for appointments.

Appointments are read-mostly here: status is protected by the state
machine and money moves only through the reconciliation facade, so the
admin exposes data and history but no lifecycle edits.
"""

from django.contrib import admin

from appointments.models import (
    Appointment,
    AppointmentSession,
    AppointmentStatusChange,
    IdempotencyRecord,
)


class AppointmentSessionInline(admin.TabularInline):
    model = AppointmentSession
    extra = 0
    can_delete = False
    fields = ["position", "date", "raw_value", "is_valid", "is_current", "status", "payment_state", "price"]
    readonly_fields = fields
    ordering = ["-is_current", "position"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


class AppointmentStatusChangeInline(admin.TabularInline):
    model = AppointmentStatusChange
    extra = 0
    can_delete = False
    fields = ["created_at", "from_status", "to_status", "actor", "reason"]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "patient",
        "therapist",
        "status",
        "payment_status",
        "payment_method",
        "price",
        "completed_sessions",
        "total_sessions",
        "date",
    ]
    list_filter = ["status", "payment_status", "payment_method"]
    search_fields = ["id", "patient__email", "therapist__email", "checkout_session_id", "payment_reference"]
    readonly_fields = [
        "id",
        "status",
        "payment_status",
        "price",
        "total_sessions",
        "completed_sessions",
        "payment_method",
        "unit_price",
        "sessions_paid_with_balance",
        "sessions_paid_with_stripe",
        "refunded_units_from_balance",
        "refunded_units_from_stripe",
        "paid_at",
        "cancelled_at",
        "completed_at",
        "version",
        "created_at",
        "updated_at",
    ]
    raw_id_fields = ["patient", "therapist"]
    inlines = [AppointmentSessionInline, AppointmentStatusChangeInline]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(IdempotencyRecord)
class IdempotencyRecordAdmin(admin.ModelAdmin):
    list_display = ["key", "operation", "appointment", "effect", "created_at"]
    list_filter = ["operation"]
    search_fields = ["key", "appointment__id"]
    readonly_fields = ["id", "key", "operation", "appointment", "effect", "response", "created_at"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False
