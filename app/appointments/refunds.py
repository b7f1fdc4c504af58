"""
Refund calculator.

Pure functions: nothing here touches the database. ``calculate_refund``
decides how much money a cancellation returns; ``allocate_refund``
converts that amount into session units per payment channel so the
appointment can record what was refunded from where.

Policy precedence (first match wins):
    explicit_units > 0   refund that many session units
    charge_flag          refund half of the price
    otherwise            refund the full price

All refunds are credited to the wallet ledger, whatever the original
payment method; money leaving through Stripe is handled elsewhere.

Usage:
    from appointments.refunds import RefundPolicy, allocate_refund, calculate_refund

    amount = calculate_refund(appointment, RefundPolicy(charge_flag=True))
    allocation = allocate_refund(appointment, amount)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from appointments.models import Appointment

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HALF = Decimal("0.5")


def _money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RefundPolicy:
    """
    Cancellation policy chosen by the caller.

    Attributes:
        charge_flag: Keep 50% as a cancellation charge
        explicit_units: Refund exactly this many session units
    """

    charge_flag: bool = False
    explicit_units: Decimal | int | None = None

    @property
    def units(self) -> Decimal:
        return Decimal(self.explicit_units or 0)

    @property
    def label(self) -> str:
        """Short name used in default dedupe keys."""
        if self.units > 0:
            return f"units-{self.units.normalize():f}"
        if self.charge_flag:
            return "half"
        return "full"


@dataclass(frozen=True)
class RefundAllocation:
    """Session units a refund takes back from each payment channel."""

    from_balance: Decimal = ZERO
    from_stripe: Decimal = ZERO

    @property
    def total_units(self) -> Decimal:
        return self.from_balance + self.from_stripe


def effective_unit_price(appointment: Appointment) -> Decimal:
    """Per-session price: unit_price, else price / total_sessions."""
    if appointment.unit_price and appointment.unit_price > 0:
        return _money(appointment.unit_price)
    if appointment.total_sessions:
        return _money(Decimal(appointment.price) / appointment.total_sessions)
    return _money(appointment.price)


def recoverable_units(appointment: Appointment) -> tuple[Decimal, Decimal]:
    """Units still refundable on (balance, stripe)."""
    balance = max(
        Decimal(appointment.sessions_paid_with_balance) - Decimal(appointment.refunded_units_from_balance),
        ZERO,
    )
    stripe = max(
        Decimal(appointment.sessions_paid_with_stripe) - Decimal(appointment.refunded_units_from_stripe),
        ZERO,
    )
    return balance, stripe


def has_channel_accounting(appointment: Appointment) -> bool:
    paid_units = Decimal(appointment.sessions_paid_with_balance) + Decimal(
        appointment.sessions_paid_with_stripe
    )
    return bool(appointment.unit_price) and appointment.unit_price > 0 and paid_units > 0


def recoverable_amount(appointment: Appointment) -> Decimal:
    """
    Most money a refund may still return.

    Appointments without a payment breakdown (legacy bookings) are
    capped by their price.
    """
    if not has_channel_accounting(appointment):
        return _money(appointment.price)
    balance, stripe = recoverable_units(appointment)
    return _money((balance + stripe) * Decimal(appointment.unit_price))


def calculate_refund(appointment: Appointment, policy: RefundPolicy) -> Decimal:
    """
    Refund amount for cancelling ``appointment`` under ``policy``.

    Charge flag and default multiply the appointment price (falling back
    to the unit price when the price is zero); explicit units multiply
    the per-session price. The result is rounded to cents and clamped
    to what is still recoverable.
    """
    if policy.units > 0:
        raw = effective_unit_price(appointment) * policy.units
    else:
        base = Decimal(appointment.price) if appointment.price and appointment.price > 0 else Decimal(
            appointment.unit_price or 0
        )
        raw = base * (HALF if policy.charge_flag else Decimal(1))

    amount = _money(raw)
    return max(min(amount, recoverable_amount(appointment)), ZERO)


def allocate_refund(appointment: Appointment, amount: Decimal) -> RefundAllocation:
    """
    Split a refund into session units, balance channel first.

    Appointments without channel accounting get an empty allocation.
    """
    if amount <= 0 or not has_channel_accounting(appointment):
        return RefundAllocation()

    units = (Decimal(amount) / Decimal(appointment.unit_price)).quantize(CENT, rounding=ROUND_HALF_UP)
    available_balance, available_stripe = recoverable_units(appointment)
    from_balance = min(units, available_balance)
    from_stripe = min(units - from_balance, available_stripe)
    return RefundAllocation(from_balance=from_balance, from_stripe=from_stripe)
