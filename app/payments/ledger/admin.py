"""
Django admin configuration for ledger models.

Balances are read-only here: staff adjust money through LedgerService so
the projection and history stay in step. History entries are immutable.
"""

from django.contrib import admin

from .models import Balance, BalanceEntry


class BalanceEntryInline(admin.TabularInline):
    model = BalanceEntry
    extra = 0
    can_delete = False
    fields = ["created_at", "action", "amount", "balance_after", "reason", "dedupe_key"]
    readonly_fields = fields
    ordering = ["-created_at"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Balance)
class BalanceAdmin(admin.ModelAdmin):
    """
    Admin configuration for Balance.

    Shows the projection next to the total implied by the history so a
    mismatch is visible at a glance.
    """

    list_display = ["user", "amount", "currency", "history_display", "updated_at"]
    search_fields = ["user__email", "id"]
    readonly_fields = ["id", "user", "amount", "currency", "history_display", "created_at", "updated_at"]
    inlines = [BalanceEntryInline]
    ordering = ["-updated_at"]

    def history_display(self, obj: Balance) -> str:
        """History total; performs an aggregate query per row."""
        return str(obj.history_total())

    history_display.short_description = "From history"

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(BalanceEntry)
class BalanceEntryAdmin(admin.ModelAdmin):
    """
    Admin configuration for BalanceEntry.

    Entries are immutable - corrections are new entries made through
    LedgerService, never edits.
    """

    list_display = [
        "created_at",
        "balance",
        "action",
        "amount",
        "balance_after",
        "reason",
        "appointment_id",
    ]
    list_filter = ["action", "created_at"]
    search_fields = ["dedupe_key", "appointment_id", "reason", "balance__user__email"]
    readonly_fields = [
        "id",
        "balance",
        "action",
        "amount",
        "reason",
        "appointment_id",
        "dedupe_key",
        "balance_after",
        "created_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def has_delete_permission(self, request, obj=None) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_add_permission(self, request) -> bool:
        return False
