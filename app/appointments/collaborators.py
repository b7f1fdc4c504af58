"""
Dispatch of committed appointment changes to external collaborators.

Calendar sync and notifications are fire-and-forget: they run after the
surrounding transaction commits, receive a snapshot taken inside it, and
a failing collaborator is logged without affecting the committed change.

Backends are configured with APPOINTMENT_CALENDAR_SYNC_BACKEND and
APPOINTMENT_NOTIFIER_BACKEND (dotted paths); the defaults below only log.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

if TYPE_CHECKING:
    from typing import Any

    from appointments.models import Appointment
    from core.protocols import AppointmentNotifier, CalendarSync

logger = logging.getLogger(__name__)


class LoggingCalendarSync:
    def sync(self, event: str, snapshot: dict[str, Any]) -> None:
        logger.info(
            f"Calendar sync: {event}",
            extra={"appointment_id": snapshot.get("id"), "status": snapshot.get("status")},
        )


class LoggingNotifier:
    def notify(self, event: str, snapshot: dict[str, Any]) -> None:
        logger.info(
            f"Appointment notification: {event}",
            extra={"appointment_id": snapshot.get("id"), "status": snapshot.get("status")},
        )


def get_calendar_sync() -> CalendarSync:
    return import_string(settings.APPOINTMENT_CALENDAR_SYNC_BACKEND)()


def get_notifier() -> AppointmentNotifier:
    return import_string(settings.APPOINTMENT_NOTIFIER_BACKEND)()


def deliver(event: str, snapshot: dict[str, Any]) -> None:
    """Hand a snapshot to every collaborator; failures are logged only."""
    for name, call in (
        ("calendar_sync", lambda: get_calendar_sync().sync(event, snapshot)),
        ("notifier", lambda: get_notifier().notify(event, snapshot)),
    ):
        try:
            call()
        except Exception:
            logger.exception(
                f"Collaborator {name} failed for {event}",
                extra={"appointment_id": snapshot.get("id"), "collaborator": name},
            )


def dispatch_on_commit(event: str, appointment: Appointment) -> None:
    """Snapshot the appointment now and deliver it once the transaction commits."""
    from appointments.serializers import appointment_snapshot

    snapshot = appointment_snapshot(appointment)
    transaction.on_commit(partial(deliver, event, snapshot))
