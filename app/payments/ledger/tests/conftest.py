"""
Pytest fixtures for ledger tests.
"""

from decimal import Decimal

import pytest

from authentication.tests.factories import UserFactory
from payments.ledger.services import LedgerService


@pytest.fixture
def user(db):
    """A patient with no balance row yet."""
    return UserFactory()


@pytest.fixture
def funded_user(db):
    """A patient whose balance was topped up to 100.00 through the service."""
    user = UserFactory()
    LedgerService.credit(user.pk, Decimal("100.00"), reason="Initial top-up")
    return user
