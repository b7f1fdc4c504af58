"""
Factory Boy factories for ledger test data.

Usage:
    from payments.ledger.tests.factories import BalanceFactory, BalanceEntryFactory

    balance = BalanceFactory(amount=Decimal("100.00"))
    entry = BalanceEntryFactory(balance=balance, amount=Decimal("100.00"))

Note:
    Factories write rows directly and bypass LedgerService, so they can
    build deliberately inconsistent states for reconciliation tests.
"""

from decimal import Decimal

import factory

from authentication.tests.factories import UserFactory
from payments.ledger.models import Balance, BalanceEntry, EntryAction


class BalanceFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Balance
        skip_postgeneration_save = True

    user = factory.SubFactory(UserFactory)
    amount = Decimal("0.00")
    currency = "usd"


class BalanceEntryFactory(factory.django.DjangoModelFactory):
    """
    Factory for BalanceEntry.

    balance_after defaults to the balance's stored amount.
    """

    class Meta:
        model = BalanceEntry

    balance = factory.SubFactory(BalanceFactory)
    action = EntryAction.CREDIT
    amount = Decimal("10.00")
    reason = "Test entry"
    dedupe_key = factory.Sequence(lambda n: f"test-entry-{n}")
    balance_after = factory.LazyAttribute(lambda o: o.balance.amount)
