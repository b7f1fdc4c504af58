"""
Factory Boy factories for appointment test data.

Usage:
    from appointments.tests.factories import AppointmentFactory, create_sessions

    appointment = AppointmentFactory()                      # confirmed, balance-paid
    appointment = AppointmentFactory(stripe=True)           # confirmed, Stripe-paid
    create_sessions(appointment, [appointment.date, appointment.date + timedelta(days=7)])

Note:
    Factories write rows directly and bypass the state machine, so they
    can start an appointment in any status.
"""

from datetime import timedelta
from decimal import Decimal

import factory
from django.utils import timezone

from appointments.models import Appointment, AppointmentSession
from appointments.states import AppointmentStatus, PaymentMethod, PaymentStatus
from authentication.tests.factories import TherapistFactory, UserFactory


class AppointmentFactory(factory.django.DjangoModelFactory):
    """
    Factory for Appointment.

    Defaults to a confirmed three-session plan paid in full from the
    balance, with the current session two hours ago.
    """

    class Meta:
        model = Appointment
        skip_postgeneration_save = True

    class Params:
        stripe = factory.Trait(
            payment_method=PaymentMethod.STRIPE,
            checkout_session_id=factory.Sequence(lambda n: f"cs_test_{n}"),
        )
        unpaid = factory.Trait(
            status=AppointmentStatus.UNPAID,
            payment_method=PaymentMethod.STRIPE,
            payment_status=PaymentStatus.PENDING,
            paid_at=None,
        )

    patient = factory.SubFactory(UserFactory)
    therapist = factory.SubFactory(TherapistFactory)
    plan = "Weekly therapy"
    date = factory.LazyFunction(lambda: timezone.now() - timedelta(hours=2))
    status = AppointmentStatus.CONFIRMED
    payment_status = PaymentStatus.COMPLETED
    paid_at = factory.LazyFunction(timezone.now)
    price = Decimal("300.00")
    currency = "usd"
    total_sessions = 3
    payment_method = PaymentMethod.BALANCE
    unit_price = Decimal("100.00")
    sessions_paid_with_balance = factory.LazyAttribute(
        lambda o: Decimal(o.total_sessions)
        if o.payment_method == PaymentMethod.BALANCE and o.payment_status == PaymentStatus.COMPLETED
        else Decimal("0.00")
    )
    sessions_paid_with_stripe = factory.LazyAttribute(
        lambda o: Decimal(o.total_sessions)
        if o.payment_method == PaymentMethod.STRIPE and o.payment_status == PaymentStatus.COMPLETED
        else Decimal("0.00")
    )


def create_sessions(appointment, dates, **overrides):
    """
    Create sessions for ``dates``; the first one is the current session.

    Returns the sessions in position order.
    """
    price = (appointment.price / appointment.total_sessions).quantize(Decimal("0.01"))
    sessions = []
    for position, date in enumerate(dates):
        sessions.append(
            AppointmentSession.objects.create(
                appointment=appointment,
                position=position,
                date=date,
                raw_value=date.isoformat() if date else "garbage",
                is_valid=date is not None,
                is_current=position == 0,
                price=price,
                **overrides,
            )
        )
    return sessions


def weekly_sessions(appointment, count=None):
    """Current session at appointment.date, then one per week."""
    count = count or appointment.total_sessions
    return create_sessions(
        appointment,
        [appointment.date + timedelta(weeks=week) for week in range(count)],
    )
