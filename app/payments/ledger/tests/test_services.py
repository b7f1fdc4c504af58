"""
Tests for LedgerService.

Covers atomic credit/debit, dedupe-key replay, the non-negative
guarantee and the projection-vs-history consistency checks.
"""

import uuid
from decimal import Decimal

import pytest

from payments.ledger.exceptions import DedupeKeyConflict, InsufficientBalance, InvalidAmount
from payments.ledger.models import Balance, BalanceEntry, EntryAction
from payments.ledger.services import LedgerService
from payments.ledger.tests.factories import BalanceEntryFactory, BalanceFactory


class TestGetOrCreateBalance:
    """Tests for LedgerService.get_or_create_balance()."""

    def test_creates_zero_balance_on_first_use(self, user):
        """Should lazily create a balance with amount 0."""
        balance = LedgerService.get_or_create_balance(user.pk)

        assert balance.amount == Decimal("0.00")
        assert balance.user_id == user.pk

    def test_returns_existing_balance(self, user):
        """Should not create a second balance for the same user."""
        first = LedgerService.get_or_create_balance(user.pk)
        second = LedgerService.get_or_create_balance(user.pk)

        assert first.pk == second.pk
        assert Balance.objects.filter(user=user).count() == 1


class TestCredit:
    """Tests for LedgerService.credit()."""

    def test_credit_increases_balance(self, user):
        """Should add the amount and record one credit entry."""
        result = LedgerService.credit(user.pk, Decimal("50.00"), reason="Top-up")

        assert result.balance == Decimal("50.00")
        assert result.replayed is False
        assert result.entry.action == EntryAction.CREDIT
        assert result.entry.balance_after == Decimal("50.00")
        assert LedgerService.get_balance(user.pk).amount == Decimal("50.00")

    def test_credit_rounds_to_cents(self, user):
        """Should round half-up to two decimal places."""
        result = LedgerService.credit(user.pk, "10.005", reason="Top-up")

        assert result.entry.amount == Decimal("10.01")

    def test_same_dedupe_key_credits_once(self, user):
        """Should apply a dedupe key at most once (50 + replay = 50)."""
        first = LedgerService.credit(user.pk, Decimal("50"), reason="Refund", dedupe_key="k1")
        second = LedgerService.credit(user.pk, Decimal("50"), reason="Refund", dedupe_key="k1")

        assert LedgerService.get_balance(user.pk).amount == Decimal("50.00")
        assert second.replayed is True
        assert second.entry.pk == first.entry.pk
        assert second.effect == first.effect
        assert BalanceEntry.objects.filter(dedupe_key="k1").count() == 1

    def test_replay_returns_balance_recorded_at_first_application(self, user):
        """Should report the balance right after the original credit."""
        LedgerService.credit(user.pk, Decimal("20"), reason="Refund", dedupe_key="k2")
        LedgerService.credit(user.pk, Decimal("5"), reason="Other")

        replay = LedgerService.credit(user.pk, Decimal("20"), reason="Refund", dedupe_key="k2")

        assert replay.balance == Decimal("20.00")

    def test_credit_without_dedupe_key_is_not_deduplicated(self, user):
        """Should apply every credit that carries no key."""
        LedgerService.credit(user.pk, Decimal("5"), reason="A")
        LedgerService.credit(user.pk, Decimal("5"), reason="A")

        assert LedgerService.get_balance(user.pk).amount == Decimal("10.00")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), "abc"])
    def test_rejects_invalid_amounts(self, user, amount):
        """Should refuse zero, negative and non-numeric amounts."""
        with pytest.raises(InvalidAmount):
            LedgerService.credit(user.pk, amount, reason="Bad")

        assert not BalanceEntry.objects.exists()


class TestDebit:
    """Tests for LedgerService.debit()."""

    def test_debit_decreases_balance(self, funded_user):
        """Should subtract the amount and record a debit entry."""
        result = LedgerService.debit(funded_user.pk, Decimal("30.00"), reason="Booking")

        assert result.balance == Decimal("70.00")
        assert result.entry.action == EntryAction.DEBIT

    def test_debit_to_exactly_zero_is_allowed(self, funded_user):
        """Should allow spending the full balance."""
        result = LedgerService.debit(funded_user.pk, Decimal("100.00"), reason="Booking")

        assert result.balance == Decimal("0.00")

    def test_insufficient_balance_rejected_without_side_effects(self, funded_user):
        """Should raise and leave balance and history untouched."""
        entries_before = BalanceEntry.objects.count()

        with pytest.raises(InsufficientBalance) as exc_info:
            LedgerService.debit(funded_user.pk, Decimal("100.01"), reason="Booking")

        assert exc_info.value.required == Decimal("100.01")
        assert exc_info.value.available == Decimal("100.00")
        assert exc_info.value.error_code == "INSUFFICIENT_BALANCE"
        assert LedgerService.get_balance(funded_user.pk).amount == Decimal("100.00")
        assert BalanceEntry.objects.count() == entries_before

    def test_debit_on_untouched_user_is_insufficient(self, user):
        """Should treat a missing balance as zero."""
        with pytest.raises(InsufficientBalance):
            LedgerService.debit(user.pk, Decimal("1.00"), reason="Booking")

    def test_debit_dedupe_key_applies_once(self, funded_user):
        """Should not charge a booking twice for the same key."""
        LedgerService.debit(funded_user.pk, Decimal("40"), reason="Booking", dedupe_key="book-1")
        replay = LedgerService.debit(
            funded_user.pk, Decimal("40"), reason="Booking", dedupe_key="book-1"
        )

        assert replay.replayed is True
        assert LedgerService.get_balance(funded_user.pk).amount == Decimal("60.00")


class TestDedupeKeyConflicts:
    """Tests for keys reused by a different ledger operation."""

    def test_credit_key_reused_by_debit(self, funded_user):
        """Should refuse a debit whose key already produced a credit."""
        LedgerService.credit(funded_user.pk, Decimal("10"), reason="Top-up", dedupe_key="shared")

        with pytest.raises(DedupeKeyConflict) as exc_info:
            LedgerService.debit(funded_user.pk, Decimal("10"), reason="Booking", dedupe_key="shared")

        assert exc_info.value.error_code == "DEDUPE_KEY_CONFLICT"
        assert exc_info.value.details["recorded"]["action"] == EntryAction.CREDIT
        assert LedgerService.get_balance(funded_user.pk).amount == Decimal("110.00")
        assert BalanceEntry.objects.filter(dedupe_key="shared").count() == 1

    def test_key_reused_by_another_user(self, user, funded_user):
        """Should not hand one user's entry back to another user."""
        LedgerService.credit(funded_user.pk, Decimal("10"), reason="Refund", dedupe_key="shared")

        with pytest.raises(DedupeKeyConflict):
            LedgerService.credit(user.pk, Decimal("10"), reason="Refund", dedupe_key="shared")

        assert LedgerService.get_balance(user.pk).amount == Decimal("0.00")
        assert LedgerService.get_balance(funded_user.pk).amount == Decimal("110.00")

    def test_key_reused_for_another_appointment(self, user):
        """Should refuse a credit for a different appointment under the same key."""
        LedgerService.credit(
            user.pk, Decimal("25"), reason="Refund", dedupe_key="shared", appointment_id=uuid.uuid4()
        )

        with pytest.raises(DedupeKeyConflict):
            LedgerService.credit(
                user.pk, Decimal("25"), reason="Refund", dedupe_key="shared", appointment_id=uuid.uuid4()
            )

        assert LedgerService.get_balance(user.pk).amount == Decimal("25.00")

    def test_matching_replay_is_not_a_conflict(self, user):
        """Should replay when action, user and appointment all match."""
        appointment_id = uuid.uuid4()
        first = LedgerService.credit(
            user.pk, Decimal("25"), reason="Refund", dedupe_key="same", appointment_id=appointment_id
        )

        replay = LedgerService.credit(
            user.pk, Decimal("25"), reason="Refund", dedupe_key="same", appointment_id=appointment_id
        )

        assert replay.replayed is True
        assert replay.entry.pk == first.entry.pk


class TestQueries:
    """Tests for get_balance() and get_history()."""

    def test_get_balance_for_unknown_user_is_zero(self, user):
        """Should report zero without creating a row."""
        assert LedgerService.get_balance(user.pk).amount == Decimal("0.00")
        assert not Balance.objects.filter(user=user).exists()

    def test_history_is_newest_first(self, user):
        """Should list entries newest first."""
        LedgerService.credit(user.pk, Decimal("10"), reason="first")
        LedgerService.credit(user.pk, Decimal("20"), reason="second")

        history = LedgerService.get_history(user.pk)

        assert [e.reason for e in history] == ["second", "first"]

    def test_get_entry_by_dedupe_key(self, user):
        """Should find the entry a key produced."""
        LedgerService.credit(user.pk, Decimal("10"), reason="Refund", dedupe_key="lookup")

        assert LedgerService.get_entry("lookup").amount == Decimal("10.00")
        assert LedgerService.get_entry("missing") is None


class TestConsistency:
    """Tests for projection vs. history checks."""

    def test_service_operations_keep_projection_consistent(self, user):
        """Should hold amount == credits - debits after any sequence."""
        LedgerService.credit(user.pk, Decimal("80"), reason="Top-up")
        LedgerService.debit(user.pk, Decimal("25.50"), reason="Booking")
        LedgerService.credit(user.pk, Decimal("10"), reason="Refund", dedupe_key="r1")
        LedgerService.credit(user.pk, Decimal("10"), reason="Refund", dedupe_key="r1")
        with pytest.raises(InsufficientBalance):
            LedgerService.debit(user.pk, Decimal("1000"), reason="Too much")

        report = LedgerService.verify_consistency(user.pk)

        assert report.is_consistent
        assert report.projected == Decimal("64.50")
        assert report.from_history == Decimal("64.50")

    def test_detects_tampered_projection(self, db):
        """Should report a balance whose amount was changed outside the service."""
        balance = BalanceFactory(amount=Decimal("30.00"))
        BalanceEntryFactory(balance=balance, amount=Decimal("20.00"))

        mismatches = LedgerService.find_inconsistent_balances()

        assert len(mismatches) == 1
        assert mismatches[0].user_id == balance.user_id
        assert mismatches[0].difference == Decimal("10.00")

    def test_consistent_balances_are_not_reported(self, funded_user):
        """Should return no mismatches for service-managed balances."""
        assert LedgerService.find_inconsistent_balances() == []

    def test_limit_stops_early(self, db):
        """Should return at most `limit` mismatches."""
        for _ in range(3):
            BalanceFactory(amount=Decimal("5.00"))

        assert len(LedgerService.find_inconsistent_balances(limit=1)) == 1

    def test_user_without_balance_is_consistent(self, user):
        """Should report 0 == 0 for users the ledger never touched."""
        assert LedgerService.verify_consistency(user.pk).is_consistent
