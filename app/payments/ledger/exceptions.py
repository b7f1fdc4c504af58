"""
Ledger-specific exceptions.

Exception Hierarchy:
    LedgerError (base)
    ├── InsufficientBalance - A debit would drive the balance negative
    ├── InvalidAmount - Non-positive or malformed amount
    └── DedupeKeyConflict - Key already used by a different operation

Usage:
    from payments.ledger.exceptions import InsufficientBalance

    try:
        ledger.debit(user, Decimal("90.00"), reason="Booking")
    except InsufficientBalance as e:
        print(f"Need {e.required}, have {e.available}")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError

if TYPE_CHECKING:
    from decimal import Decimal
    from typing import Any


class LedgerError(BaseApplicationError):
    """Base exception for all ledger operations."""

    default_error_code: str = "LEDGER_ERROR"


class InsufficientBalance(LedgerError):
    """
    Raised when a debit would drive a balance below zero.

    Nothing is written when this is raised; callers treat it as a hard
    stop before creating anything that depends on the debit.

    Attributes:
        user_id: Owner of the balance
        required: The amount that was requested
        available: The balance at the time of the attempt
    """

    default_error_code: str = "INSUFFICIENT_BALANCE"
    http_status = 402

    def __init__(
        self,
        user_id,
        required: Decimal,
        available: Decimal,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.user_id = user_id
        self.required = required
        self.available = available

        full_details = {
            "user_id": str(user_id),
            "required": str(required),
            "available": str(available),
        }
        if details:
            full_details.update(details)

        super().__init__(
            message=(
                f"Insufficient balance: required {required}, available {available}"
            ),
            error_code=error_code,
            details=full_details,
        )


class InvalidAmount(LedgerError):
    """Raised for zero, negative or non-numeric amounts."""

    default_error_code: str = "INVALID_AMOUNT"


class DedupeKeyConflict(LedgerError):
    """
    Raised when a dedupe key was already applied to a different operation.

    A key only replays the entry it produced: same action, same owner
    and same appointment. Anything else is a caller bug, never a replay.
    """

    default_error_code: str = "DEDUPE_KEY_CONFLICT"
    http_status = 409
