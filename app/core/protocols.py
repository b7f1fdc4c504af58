"""
Protocol definitions for collaborators fed by the appointment engine.

Calendar sync and patient/therapist notifications live outside this
service. The engine only hands them an appointment snapshot after a
mutation has committed; implementations are configured by dotted path
in settings and only need to match these protocols (duck typing).

Available Protocols:
    CalendarSync: Mirrors appointment changes into an external calendar
    AppointmentNotifier: Tells people about appointment changes

Usage:
    from core.protocols import CalendarSync

    class GoogleCalendarSync:
        def sync(self, event: str, snapshot: dict) -> None:
            ...

    sync: CalendarSync = GoogleCalendarSync()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from typing import Any


@runtime_checkable
class CalendarSync(Protocol):
    """Receives an appointment snapshot after each committed change."""

    def sync(self, event: str, snapshot: dict[str, Any]) -> None:
        """
        Mirror the appointment into the calendar.

        Args:
            event: What happened (appointment.booked, appointment.cancelled, ...)
            snapshot: Serialized appointment after the change
        """
        ...


@runtime_checkable
class AppointmentNotifier(Protocol):
    """Sends notifications about committed appointment changes."""

    def notify(self, event: str, snapshot: dict[str, Any]) -> None:
        ...
