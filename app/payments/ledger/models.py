"""
Ledger models for the prepaid patient balance (wallet).

This module defines the two halves of the ledger:
- Balance: the current-amount projection, one row per user
- BalanceEntry: the append-only history of credits and debits

Balance.amount is the source of truth for spending decisions and is only
ever changed through atomic conditional UPDATEs in LedgerService. The
history exists for audit and reconciliation: at any committed point
``amount == sum(credits) - sum(debits)`` over a balance's entries.

Usage:
    from payments.ledger.models import Balance, BalanceEntry, EntryAction

    balance = Balance.objects.get(user=user)
    history = balance.entries.order_by("created_at")
"""

from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Case, DecimalField, Q, Sum, Value, When
from django.db.models.functions import Coalesce

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class EntryAction(models.TextChoices):
    """
    Direction of a ledger movement.

    Values:
        CREDIT: Money added to the balance (refund, top-up)
        DEBIT: Money taken from the balance (booking paid with balance)
    """

    CREDIT = "credit", "Credit"
    DEBIT = "debit", "Debit"


class Balance(UUIDPrimaryKeyMixin, BaseModel):
    """
    Current prepaid balance of one user.

    Created lazily with amount 0 the first time the ledger touches a user.

    Fields:
        id: UUID primary key (from UUIDPrimaryKeyMixin)
        user: Owner of the balance (one balance per user)
        amount: Current projection in currency units, never negative
        currency: ISO 4217 currency code

    Constraints:
        - amount >= 0 (enforced by the database as well as the service)
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="balance",
        help_text="User who owns this balance",
    )
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Current balance projection",
    )
    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code",
    )

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gte=0),
                name="ledger_balance_amount_non_negative",
            )
        ]

    def __str__(self) -> str:
        return f"Balance({self.user_id}): {self.amount} {self.currency.upper()}"

    def history_total(self) -> Decimal:
        """
        Compute the balance implied by the history log.

        Returns:
            sum(credits) - sum(debits) over this balance's entries

        Note:
            This performs an aggregate query. It is used for consistency
            checks, never to decide whether a debit may proceed.
        """
        decimal_field = DecimalField(max_digits=14, decimal_places=2)
        result = self.entries.aggregate(
            credits=Coalesce(
                Sum(
                    Case(
                        When(action=EntryAction.CREDIT, then="amount"),
                        default=Value(Decimal("0")),
                        output_field=decimal_field,
                    )
                ),
                Value(Decimal("0")),
                output_field=decimal_field,
            ),
            debits=Coalesce(
                Sum(
                    Case(
                        When(action=EntryAction.DEBIT, then="amount"),
                        default=Value(Decimal("0")),
                        output_field=decimal_field,
                    )
                ),
                Value(Decimal("0")),
                output_field=decimal_field,
            ),
        )
        return Decimal(result["credits"]) - Decimal(result["debits"])


class BalanceEntry(UUIDPrimaryKeyMixin, models.Model):
    """
    One immutable movement on a balance.

    Entries are never updated or deleted; corrections are new entries.

    Fields:
        id: UUID primary key (from UUIDPrimaryKeyMixin)
        balance: Balance this movement applies to
        action: credit or debit
        amount: Amount moved (always positive)
        reason: Human-readable reason ("Cancellation refund", ...)
        appointment_id: Related appointment, if any
        dedupe_key: Idempotency key; a key is applied at most once, ever
        balance_after: Balance projection right after this movement
        created_at: When the movement was recorded

    Constraints:
        - amount must be positive
        - dedupe_key unique when set
    """

    balance = models.ForeignKey(
        Balance,
        on_delete=models.PROTECT,
        related_name="entries",
        help_text="Balance this entry belongs to",
    )
    action = models.CharField(
        max_length=10,
        choices=EntryAction.choices,
        help_text="Direction of the movement",
    )
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Amount moved (always positive)",
    )
    reason = models.CharField(
        max_length=255,
        help_text="Why the balance moved",
    )
    appointment_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="UUID of the related appointment",
    )
    dedupe_key = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Idempotency key; the same key never moves money twice",
    )
    balance_after = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Balance projection right after this entry",
    )
    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this entry was recorded",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name_plural = "Balance entries"
        indexes = [
            models.Index(fields=["balance", "created_at"], name="ledger_entry_balance_time_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="ledger_balance_entry_amount_positive",
            )
        ]

    def __str__(self) -> str:
        return f"{self.get_action_display()}: {self.amount} ({self.reason})"

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.action == EntryAction.CREDIT else -self.amount
