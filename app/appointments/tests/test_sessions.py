"""
Tests for the session normalizer.

Tests cover:
- Descriptor parsing (strings, records, date objects)
- Time-of-day inheritance for date-only entries
- Invalid entries kept without aborting their siblings
- Duplicate removal and chronological ordering
- Re-normalizing normalized output
"""

from datetime import UTC, date, datetime
from decimal import Decimal

from appointments.sessions import (
    BareDate,
    StructuredSession,
    normalize_sessions,
    parse_descriptor,
    renormalize,
    session_price,
)
from appointments.states import SessionPaymentState, SessionStatus

MAIN = datetime(2025, 3, 1, 14, 30, tzinfo=UTC)


class TestParseDescriptor:
    def test_string_becomes_bare_date(self):
        assert parse_descriptor("2025-03-08") == BareDate("2025-03-08")

    def test_none_becomes_empty_bare_date(self):
        assert parse_descriptor(None) == BareDate("")

    def test_record_becomes_structured_session(self):
        descriptor = parse_descriptor({"date": "2025-03-08", "status": "completed", "payment": "paid"})

        assert descriptor == StructuredSession(
            value="2025-03-08",
            status=SessionStatus.COMPLETED,
            payment_state=SessionPaymentState.PAID,
        )

    def test_record_with_unknown_status_defaults_to_in_progress(self):
        descriptor = parse_descriptor({"date": "2025-03-08", "status": "whatever"})

        assert descriptor.status == SessionStatus.IN_PROGRESS
        assert descriptor.payment_state == SessionPaymentState.NOT_PAID

    def test_date_object_becomes_structured_session(self):
        assert parse_descriptor(date(2025, 3, 8)) == StructuredSession(value=date(2025, 3, 8))

    def test_resolved_variant_is_returned_unchanged(self):
        descriptor = BareDate("2025-03-08")
        assert parse_descriptor(descriptor) is descriptor


class TestNormalizeSessions:
    def test_current_session_comes_first(self):
        sessions = normalize_sessions(MAIN, ["2025-03-08"], Decimal("200.00"), 2)

        assert sessions[0].is_current is True
        assert sessions[0].date == MAIN
        assert sessions[1].is_current is False

    def test_date_only_entry_takes_main_time_of_day(self):
        sessions = normalize_sessions(MAIN, ["2025-03-08"], Decimal("200.00"), 2)

        assert sessions[1].date == datetime(2025, 3, 8, 14, 30, tzinfo=UTC)

    def test_timestamp_entry_keeps_its_time(self):
        sessions = normalize_sessions(MAIN, ["2025-03-02T09:00:00"], Decimal("200.00"), 2)

        assert sessions[1].date == datetime(2025, 3, 2, 9, 0, tzinfo=UTC)

    def test_date_only_entry_without_main_date_is_midnight(self):
        sessions = normalize_sessions(None, ["2025-03-08"], Decimal("100.00"), 1)

        assert len(sessions) == 1
        assert sessions[0].date == datetime(2025, 3, 8, 0, 0, tzinfo=UTC)
        assert sessions[0].is_current is False

    def test_invalid_entry_is_kept_and_does_not_abort_siblings(self):
        sessions = normalize_sessions(
            MAIN, ["not-a-date", "2025-03-08"], Decimal("300.00"), 3
        )

        assert len(sessions) == 3
        valid = [s for s in sessions if s.is_valid]
        invalid = [s for s in sessions if not s.is_valid]
        assert [s.date for s in valid] == [MAIN, datetime(2025, 3, 8, 14, 30, tzinfo=UTC)]
        assert len(invalid) == 1
        assert invalid[0].date is None
        assert invalid[0].raw_value == "not-a-date"
        assert "Unparseable" in invalid[0].error

    def test_invalid_entries_come_last(self):
        sessions = normalize_sessions(MAIN, ["garbage", "2025-03-08"], Decimal("300.00"), 3)

        assert sessions[-1].is_valid is False

    def test_duplicates_keep_first_occurrence(self):
        sessions = normalize_sessions(
            MAIN,
            [
                {"date": "2025-03-08", "status": "completed"},
                "2025-03-08T14:30:00",
            ],
            Decimal("200.00"),
            2,
        )

        assert len(sessions) == 2
        assert sessions[1].status == SessionStatus.COMPLETED

    def test_entry_equal_to_main_date_is_dropped(self):
        sessions = normalize_sessions(MAIN, ["2025-03-01"], Decimal("100.00"), 1)

        assert len(sessions) == 1
        assert sessions[0].is_current is True

    def test_recurring_entries_sorted_by_date(self):
        sessions = normalize_sessions(
            MAIN, ["2025-03-22", "2025-03-08", "2025-03-15"], Decimal("400.00"), 4
        )

        days = [s.date.day for s in sessions[1:]]
        assert days == [8, 15, 22]

    def test_structured_entry_keeps_status_and_payment(self):
        sessions = normalize_sessions(
            MAIN,
            [{"date": "2025-03-08", "status": "completed", "payment_state": "paid"}],
            Decimal("200.00"),
            2,
        )

        assert sessions[1].status == SessionStatus.COMPLETED
        assert sessions[1].payment_state == SessionPaymentState.PAID

    def test_price_is_split_per_session(self):
        sessions = normalize_sessions(MAIN, ["2025-03-08", "2025-03-15"], Decimal("100.00"), 3)

        assert all(s.price == Decimal("33.33") for s in sessions)

    def test_normalizing_twice_is_stable(self):
        first = normalize_sessions(
            MAIN,
            ["2025-03-15", "junk", {"date": "2025-03-08", "status": "completed"}, "2025-03-15"],
            Decimal("300.00"),
            3,
        )

        second = renormalize(first, Decimal("300.00"), 3)

        assert second == first


class TestSessionPrice:
    def test_rounds_half_up_to_cents(self):
        assert session_price(Decimal("100.00"), 3) == Decimal("33.33")
        assert session_price(Decimal("0.05"), 2) == Decimal("0.03")

    def test_zero_sessions_returns_total(self):
        assert session_price(Decimal("80.00"), 0) == Decimal("80.00")
