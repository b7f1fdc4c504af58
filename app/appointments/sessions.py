"""
Session normalizer.

Bookings arrive with a main session instant plus a loosely typed list of
recurring session descriptors: bare date strings ("2025-03-01"), full
timestamps ("2025-03-02T09:00:00") or structured records carrying their
own status and payment state. ``parse_descriptor`` resolves each raw
entry once into a tagged variant (BareDate or StructuredSession);
nothing downstream inspects raw shapes again.

Rules applied by ``normalize_sessions``:
    - an entry that carries a time keeps it verbatim
    - a date-only entry takes the main session's time of day
    - an unparseable entry is kept, flagged invalid, and never aborts
      its siblings
    - duplicates (same parsed instant) keep the first occurrence
    - recurring entries are sorted by date; the current session is
      always first and is tracked by identity, not by position

Normalizing the output of ``normalize_sessions`` again returns the same
sequence (see ``NormalizedSession.as_descriptor``).

Usage:
    from appointments.sessions import normalize_sessions

    sessions = normalize_sessions(
        main_date=datetime(2025, 3, 1, 14, 30, tzinfo=UTC),
        descriptors=["2025-03-08", {"date": "2025-03-15", "status": "completed"}],
        total_price=Decimal("300.00"),
        total_sessions=3,
    )
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Union

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from appointments.exceptions import InconsistentSessionData
from appointments.states import SessionPaymentState, SessionStatus

if TYPE_CHECKING:
    from collections.abc import Iterable
    from typing import Any

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# fromisoformat() accepts bare dates as midnight, so the time part is
# detected explicitly before choosing a parser
_HAS_TIME = re.compile(r"\d[T ]\d{1,2}:\d{2}")


# =============================================================================
# Descriptor variants
# =============================================================================


@dataclass(frozen=True)
class BareDate:
    """A recurring entry given only as a date or timestamp string."""

    value: str


@dataclass(frozen=True)
class StructuredSession:
    """A recurring entry given as a record with its own state."""

    value: str | datetime | date
    status: str = SessionStatus.IN_PROGRESS
    payment_state: str = SessionPaymentState.NOT_PAID


SessionDescriptor = Union[BareDate, StructuredSession]


_STATUS_ALIASES = {
    "completed": SessionStatus.COMPLETED,
    "in_progress": SessionStatus.IN_PROGRESS,
    "confirmed": SessionStatus.IN_PROGRESS,
}
_PAYMENT_ALIASES = {
    "paid": SessionPaymentState.PAID,
    "unpaid": SessionPaymentState.UNPAID,
    "not_paid": SessionPaymentState.NOT_PAID,
}


def parse_descriptor(raw: Any) -> SessionDescriptor:
    """
    Resolve one raw recurring entry into its tagged variant.

    Accepts strings, date/datetime objects, records with ``date`` plus
    optional ``status`` and ``payment``/``payment_state``, or variants
    that were already resolved.
    """
    if isinstance(raw, (BareDate, StructuredSession)):
        return raw
    if isinstance(raw, dict):
        return StructuredSession(
            value=raw.get("date") or "",
            status=_STATUS_ALIASES.get(str(raw.get("status", "")).lower(), SessionStatus.IN_PROGRESS),
            payment_state=_PAYMENT_ALIASES.get(
                str(raw.get("payment_state", raw.get("payment", ""))).lower(),
                SessionPaymentState.NOT_PAID,
            ),
        )
    if isinstance(raw, (datetime, date)):
        return StructuredSession(value=raw)
    return BareDate(value="" if raw is None else str(raw))


# =============================================================================
# Normalized output
# =============================================================================


@dataclass(frozen=True)
class NormalizedSession:
    """
    One canonical session record.

    Attributes:
        date: Absolute instant, or None when the entry was invalid
        raw_value: The entry as received (string form)
        status: in_progress | completed
        payment_state: not_paid | paid | unpaid
        price: Per-session price (total price / total sessions)
        is_valid: False when the date could not be parsed
        is_current: True for the appointment's current session
        error: Why the entry is invalid
    """

    date: datetime | None
    raw_value: str = field(compare=False)
    status: str
    payment_state: str
    price: Decimal
    is_valid: bool = True
    is_current: bool = False
    error: str | None = None

    def as_descriptor(self) -> StructuredSession:
        value = self.date.isoformat() if self.date is not None else self.raw_value
        return StructuredSession(value=value, status=self.status, payment_state=self.payment_state)


def session_price(total_price, total_sessions: int) -> Decimal:
    if not total_sessions:
        return Decimal(total_price).quantize(CENT, rounding=ROUND_HALF_UP)
    return (Decimal(total_price) / total_sessions).quantize(CENT, rounding=ROUND_HALF_UP)


def _aware(value: datetime) -> datetime:
    if timezone.is_naive(value):
        return timezone.make_aware(value, timezone.get_default_timezone())
    return value


def resolve_instant(value: str | datetime | date, main_date: datetime | None) -> datetime:
    """
    Turn a descriptor value into an absolute instant.

    Raises:
        InconsistentSessionData: If the value is not a date
    """
    if isinstance(value, datetime):
        return _aware(value)

    if isinstance(value, date):
        day = value
    else:
        text = value.strip()
        try:
            if _HAS_TIME.search(text):
                parsed = parse_datetime(text)
                if parsed is not None:
                    return _aware(parsed)
                day = None
            else:
                day = parse_date(text)
        except ValueError:
            day = None
        if day is None:
            raise InconsistentSessionData(
                f"Unparseable session date: {value!r}",
                details={"value": str(value)},
            )

    if main_date is None:
        return _aware(datetime.combine(day, time.min))
    main_date = _aware(main_date)
    return datetime.combine(day, main_date.timetz().replace(microsecond=0))


def normalize_sessions(
    main_date: datetime | None,
    descriptors: Iterable[Any],
    total_price,
    total_sessions: int,
    current_status: str = SessionStatus.IN_PROGRESS,
    current_payment_state: str = SessionPaymentState.NOT_PAID,
) -> list[NormalizedSession]:
    """
    Build the canonical session sequence for an appointment.

    Returns:
        The current session first (when main_date is set), then valid
        recurring sessions in date order, then invalid entries in the
        order they were received.
    """
    price = session_price(total_price, total_sessions)
    seen: set[datetime] = set()
    current: list[NormalizedSession] = []
    recurring: list[NormalizedSession] = []
    invalid: list[NormalizedSession] = []

    if main_date is not None:
        main_date = _aware(main_date)
        seen.add(main_date)
        current.append(
            NormalizedSession(
                date=main_date,
                raw_value=main_date.isoformat(),
                status=current_status,
                payment_state=current_payment_state,
                price=price,
                is_current=True,
            )
        )

    for position, raw in enumerate(descriptors):
        descriptor = parse_descriptor(raw)
        if isinstance(descriptor, StructuredSession):
            status, payment_state = descriptor.status, descriptor.payment_state
        else:
            status, payment_state = SessionStatus.IN_PROGRESS, SessionPaymentState.NOT_PAID
        raw_value = (
            descriptor.value.isoformat()
            if isinstance(descriptor.value, (datetime, date))
            else descriptor.value
        )

        try:
            instant = resolve_instant(descriptor.value, main_date)
        except InconsistentSessionData as e:
            logger.warning(
                "Recurring session entry could not be parsed",
                extra={
                    "position": position,
                    "raw_value": raw_value,
                    "error_code": e.error_code,
                },
            )
            invalid.append(
                NormalizedSession(
                    date=None,
                    raw_value=raw_value,
                    status=status,
                    payment_state=payment_state,
                    price=price,
                    is_valid=False,
                    error=e.message,
                )
            )
            continue

        if instant in seen:
            logger.debug("Dropping duplicate recurring session", extra={"date": instant.isoformat()})
            continue
        seen.add(instant)
        recurring.append(
            NormalizedSession(
                date=instant,
                raw_value=raw_value,
                status=status,
                payment_state=payment_state,
                price=price,
            )
        )

    recurring.sort(key=lambda s: s.date)
    return current + recurring + invalid


def renormalize(sessions: list[NormalizedSession], total_price, total_sessions: int) -> list[NormalizedSession]:
    """Feed normalized output back through the normalizer."""
    head = next((s for s in sessions if s.is_current), None)
    rest = [s.as_descriptor() for s in sessions if s is not head]
    if head is None:
        return normalize_sessions(None, rest, total_price, total_sessions)
    return normalize_sessions(
        head.date,
        rest,
        total_price,
        total_sessions,
        current_status=head.status,
        current_payment_state=head.payment_state,
    )
