"""
Ledger service layer for the prepaid balance.

All balance writes go through LedgerService. Every mutation is a single
conditional UPDATE on Balance.amount (``amount = amount + x`` or
``amount = amount - x WHERE amount >= x``) followed by one appended
BalanceEntry, inside one transaction. The in-memory value of a balance
is never written back, so concurrent requests cannot lose updates.

Idempotency: a dedupe_key is stored on the BalanceEntry it produced and
is unique at the database level. Re-applying a key returns the original
entry without touching the balance (``LedgerResult.replayed``). A key only
replays the same action for the same user and appointment; any other
reuse raises DedupeKeyConflict.

Usage:
    from payments.ledger import ledger

    result = ledger.credit(
        user.pk,
        Decimal("150.00"),
        reason="Cancellation refund",
        dedupe_key=f"refund:{appointment.id}:half",
        appointment_id=appointment.id,
    )
    result.balance   # Decimal("150.00")
    result.replayed  # False the first time, True afterwards
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.db.models import DecimalField, F, Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from .exceptions import DedupeKeyConflict, InsufficientBalance, InvalidAmount
from .models import Balance, BalanceEntry, EntryAction
from .types import ConsistencyReport, LedgerResult, Money, to_amount

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Service class for balance operations.

    All methods are static - no instance state is maintained.
    """

    @staticmethod
    def get_or_create_balance(user_id) -> Balance:
        """
        Get a user's balance, creating it with amount 0 on first use.

        Two concurrent first-uses race on the unique user column; the
        loser re-reads the winner's row.
        """
        balance = Balance.objects.filter(user_id=user_id).first()
        if balance is not None:
            return balance
        try:
            with transaction.atomic():
                return Balance.objects.create(user_id=user_id)
        except IntegrityError:
            return Balance.objects.get(user_id=user_id)

    @staticmethod
    def _validated_amount(amount) -> Decimal:
        try:
            value = to_amount(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmount(
                f"Invalid amount: {amount!r}",
                details={"amount": str(amount)},
            )
        if value <= 0:
            raise InvalidAmount(
                "Amount must be positive",
                details={"amount": str(value)},
            )
        return value

    @staticmethod
    def _replay(entry: BalanceEntry, action: str, user_id, appointment_id) -> LedgerResult:
        """
        Return the entry a dedupe key already produced.

        Raises:
            DedupeKeyConflict: The key belongs to a different action,
                user or appointment
        """
        requested = {
            "action": action,
            "user_id": str(user_id),
            "appointment_id": str(appointment_id) if appointment_id else None,
        }
        recorded = {
            "action": entry.action,
            "user_id": str(entry.balance.user_id),
            "appointment_id": str(entry.appointment_id) if entry.appointment_id else None,
        }
        if requested != recorded:
            logger.error(
                "Dedupe key reused by a different ledger operation",
                extra={"dedupe_key": entry.dedupe_key, "requested": requested, "recorded": recorded},
            )
            raise DedupeKeyConflict(
                f"Dedupe key '{entry.dedupe_key}' was already used by a different operation",
                details={"dedupe_key": entry.dedupe_key, "requested": requested, "recorded": recorded},
            )
        logger.info(
            "Ledger operation replayed",
            extra={
                "dedupe_key": entry.dedupe_key,
                "action": entry.action,
                "amount": str(entry.amount),
                "user_id": str(entry.balance.user_id),
            },
        )
        return LedgerResult(entry=entry, balance=entry.balance_after, replayed=True)

    @staticmethod
    def _find_applied(dedupe_key: str | None) -> BalanceEntry | None:
        if not dedupe_key:
            return None
        return (
            BalanceEntry.objects.select_related("balance")
            .filter(dedupe_key=dedupe_key)
            .first()
        )

    @staticmethod
    def _current_amount(balance_id: uuid.UUID) -> Decimal:
        return Balance.objects.values_list("amount", flat=True).get(pk=balance_id)

    @staticmethod
    def credit(
        user_id,
        amount,
        reason: str,
        dedupe_key: str | None = None,
        appointment_id: uuid.UUID | None = None,
    ) -> LedgerResult:
        """
        Add money to a user's balance.

        Idempotent on dedupe_key: a key that was already applied returns
        the original entry and the balance recorded right after it.

        Args:
            user_id: Owner of the balance
            amount: Positive amount, rounded to cents
            reason: Human-readable reason stored in the history
            dedupe_key: Optional idempotency key
            appointment_id: Optional related appointment

        Returns:
            LedgerResult with the entry and the balance after the credit

        Raises:
            InvalidAmount: If amount is not positive
            DedupeKeyConflict: If dedupe_key belongs to another operation
        """
        value = LedgerService._validated_amount(amount)

        existing = LedgerService._find_applied(dedupe_key)
        if existing is not None:
            return LedgerService._replay(existing, EntryAction.CREDIT, user_id, appointment_id)

        balance = LedgerService.get_or_create_balance(user_id)
        try:
            with transaction.atomic():
                Balance.objects.filter(pk=balance.pk).update(
                    amount=F("amount") + value,
                    updated_at=timezone.now(),
                )
                balance_after = LedgerService._current_amount(balance.pk)
                entry = BalanceEntry.objects.create(
                    balance=balance,
                    action=EntryAction.CREDIT,
                    amount=value,
                    reason=reason,
                    appointment_id=appointment_id,
                    dedupe_key=dedupe_key or None,
                    balance_after=balance_after,
                )
        except IntegrityError:
            # Another request applied the same key between lookup and insert
            existing = LedgerService._find_applied(dedupe_key)
            if existing is None:
                raise
            return LedgerService._replay(existing, EntryAction.CREDIT, user_id, appointment_id)

        logger.info(
            f"Ledger credit: {value}",
            extra={
                "user_id": str(user_id),
                "amount": str(value),
                "balance_after": str(balance_after),
                "dedupe_key": dedupe_key,
                "appointment_id": str(appointment_id) if appointment_id else None,
                "reason": reason,
            },
        )
        return LedgerResult(entry=entry, balance=balance_after)

    @staticmethod
    def debit(
        user_id,
        amount,
        reason: str,
        appointment_id: uuid.UUID | None = None,
        dedupe_key: str | None = None,
    ) -> LedgerResult:
        """
        Take money from a user's balance.

        The UPDATE only matches while ``amount >= value``, so two
        concurrent debits can never both succeed against funds that
        only cover one of them.

        Raises:
            InvalidAmount: If amount is not positive
            DedupeKeyConflict: If dedupe_key belongs to another operation
            InsufficientBalance: If the balance does not cover the amount
        """
        value = LedgerService._validated_amount(amount)

        existing = LedgerService._find_applied(dedupe_key)
        if existing is not None:
            return LedgerService._replay(existing, EntryAction.DEBIT, user_id, appointment_id)

        balance = LedgerService.get_or_create_balance(user_id)
        try:
            with transaction.atomic():
                updated = Balance.objects.filter(
                    pk=balance.pk, amount__gte=value
                ).update(
                    amount=F("amount") - value,
                    updated_at=timezone.now(),
                )
                if not updated:
                    available = LedgerService._current_amount(balance.pk)
                    logger.warning(
                        "Ledger debit rejected: insufficient balance",
                        extra={
                            "user_id": str(user_id),
                            "required": str(value),
                            "available": str(available),
                        },
                    )
                    raise InsufficientBalance(
                        user_id=user_id, required=value, available=available
                    )
                balance_after = LedgerService._current_amount(balance.pk)
                entry = BalanceEntry.objects.create(
                    balance=balance,
                    action=EntryAction.DEBIT,
                    amount=value,
                    reason=reason,
                    appointment_id=appointment_id,
                    dedupe_key=dedupe_key or None,
                    balance_after=balance_after,
                )
        except IntegrityError:
            existing = LedgerService._find_applied(dedupe_key)
            if existing is None:
                raise
            return LedgerService._replay(existing, EntryAction.DEBIT, user_id, appointment_id)

        logger.info(
            f"Ledger debit: {value}",
            extra={
                "user_id": str(user_id),
                "amount": str(value),
                "balance_after": str(balance_after),
                "dedupe_key": dedupe_key,
                "appointment_id": str(appointment_id) if appointment_id else None,
                "reason": reason,
            },
        )
        return LedgerResult(entry=entry, balance=balance_after)

    @staticmethod
    def get_balance(user_id) -> Money:
        """
        Get the current balance for a user.

        Users the ledger has never touched have a zero balance; no row
        is created for a read.
        """
        balance = Balance.objects.filter(user_id=user_id).first()
        if balance is None:
            return Money(Decimal("0"))
        return Money(balance.amount, balance.currency)

    @staticmethod
    def get_history(user_id, limit: int = 50, offset: int = 0) -> list[BalanceEntry]:
        """Get a user's entries, newest first."""
        return list(
            BalanceEntry.objects.filter(balance__user_id=user_id).order_by(
                "-created_at"
            )[offset : offset + limit]
        )

    @staticmethod
    def get_entry(dedupe_key: str) -> BalanceEntry | None:
        """Get the entry a dedupe key produced, if it was applied."""
        return LedgerService._find_applied(dedupe_key)

    @staticmethod
    def verify_consistency(user_id) -> ConsistencyReport:
        """
        Compare a user's balance projection with its history.

        Returns:
            ConsistencyReport; a user without a balance row reports 0 == 0
        """
        balance = Balance.objects.filter(user_id=user_id).first()
        if balance is None:
            zero = Decimal("0.00")
            return ConsistencyReport(user_id=user_id, projected=zero, from_history=zero)
        return ConsistencyReport(
            user_id=user_id,
            projected=to_amount(balance.amount),
            from_history=to_amount(balance.history_total()),
        )

    @staticmethod
    def iter_consistency_reports() -> Iterable[ConsistencyReport]:
        """Yield a report for every balance, one aggregate query overall."""
        decimal_field = DecimalField(max_digits=14, decimal_places=2)
        zero = Value(Decimal("0"), output_field=decimal_field)
        rows = (
            Balance.objects.annotate(
                credits=Coalesce(
                    Sum("entries__amount", filter=Q(entries__action=EntryAction.CREDIT)),
                    zero,
                    output_field=decimal_field,
                ),
                debits=Coalesce(
                    Sum("entries__amount", filter=Q(entries__action=EntryAction.DEBIT)),
                    zero,
                    output_field=decimal_field,
                ),
            )
            .values_list("user_id", "amount", "credits", "debits")
            .order_by("created_at")
        )
        for user_id, amount, credits, debits in rows.iterator():
            yield ConsistencyReport(
                user_id=user_id,
                projected=to_amount(amount),
                from_history=to_amount(Decimal(credits) - Decimal(debits)),
            )

    @staticmethod
    def find_inconsistent_balances(limit: int | None = None) -> list[ConsistencyReport]:
        """
        Find balances whose projection disagrees with their history.

        Args:
            limit: Stop after this many mismatches (None for all)
        """
        mismatches: list[ConsistencyReport] = []
        for report in LedgerService.iter_consistency_reports():
            if report.is_consistent:
                continue
            mismatches.append(report)
            if limit is not None and len(mismatches) >= limit:
                break
        return mismatches


# Singleton instance for convenience
# Usage: from payments.ledger.services import ledger
ledger = LedgerService()
