"""
Data types for ledger operations.

Types:
    Money: A currency amount quantized to two decimal places
    LedgerResult: Outcome of a credit or debit (entry, balance, replayed)
    ConsistencyReport: Projection vs. history comparison for one balance

Usage:
    from payments.ledger.types import Money, to_amount

    amount = to_amount("49.999")  # Decimal("50.00")
    print(Money(amount))          # "$50.00 USD"
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import BalanceEntry

CENT = Decimal("0.01")


def to_amount(value) -> Decimal:
    """
    Convert a number to a currency Decimal rounded half-up to cents.

    Floats go through str() so 0.1 becomes Decimal("0.10"), not the
    binary approximation.
    """
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Represents a monetary amount.

    Attributes:
        amount: Decimal amount in currency units, two decimal places
        currency: ISO 4217 currency code (default: 'usd')
    """

    amount: Decimal
    currency: str = "usd"

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_amount(self.amount))

    def __str__(self) -> str:
        return f"${self.amount} {self.currency.upper()}"

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot add Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )
        return Money(self.amount + other.amount, self.currency)


@dataclass(frozen=True)
class LedgerResult:
    """
    Outcome of a ledger mutation.

    Attributes:
        entry: The history entry recording the movement
        balance: Balance projection after the movement
        replayed: True if the dedupe key was already applied and
            nothing moved this time
    """

    entry: BalanceEntry
    balance: Decimal
    replayed: bool = False

    @property
    def effect(self) -> Decimal:
        return self.entry.amount


@dataclass(frozen=True)
class ConsistencyReport:
    """
    Comparison of a balance projection against its history.

    Attributes:
        user_id: Owner of the balance
        projected: Balance.amount as stored
        from_history: sum(credits) - sum(debits) over the history
    """

    user_id: uuid.UUID | int
    projected: Decimal
    from_history: Decimal

    @property
    def is_consistent(self) -> bool:
        return self.projected == self.from_history and self.projected >= 0

    @property
    def difference(self) -> Decimal:
        return self.projected - self.from_history
