"""
Ledger - the prepaid patient balance.

A user's balance is a current-amount projection (Balance) plus an
append-only history (BalanceEntry). Money only moves through
LedgerService.credit() and LedgerService.debit(), each an atomic
conditional UPDATE plus one history entry.

Public API:
    Models:
        Balance - Current projection, one per user
        BalanceEntry - Append-only history
        EntryAction - credit / debit

    Service:
        ledger - Singleton instance of LedgerService
        LedgerService - Class with all ledger operations

    Types:
        Money, LedgerResult, ConsistencyReport, to_amount

    Exceptions:
        LedgerError - Base exception for ledger operations
        InsufficientBalance - A debit would go negative
        InvalidAmount - Non-positive amount
        DedupeKeyConflict - Key already used by a different operation

Usage:
    from payments.ledger import ledger, InsufficientBalance

    ledger.credit(user.pk, "50.00", reason="Top-up", dedupe_key="topup:cs_1")
    ledger.credit(user.pk, "50.00", reason="Top-up", dedupe_key="topup:cs_1")
    ledger.get_balance(user.pk)  # Money(amount=Decimal("50.00"), ...)

    try:
        ledger.debit(user.pk, "80.00", reason="Booking")
    except InsufficientBalance as e:
        print(f"Need {e.required}, have {e.available}")
"""

from .exceptions import DedupeKeyConflict, InsufficientBalance, InvalidAmount, LedgerError
from .models import Balance, BalanceEntry, EntryAction
from .services import LedgerService, ledger
from .types import ConsistencyReport, LedgerResult, Money, to_amount

__all__ = [
    # Models
    "Balance",
    "BalanceEntry",
    "EntryAction",
    # Service
    "ledger",
    "LedgerService",
    # Types
    "ConsistencyReport",
    "LedgerResult",
    "Money",
    "to_amount",
    # Exceptions
    "LedgerError",
    "InsufficientBalance",
    "InvalidAmount",
    "DedupeKeyConflict",
]
