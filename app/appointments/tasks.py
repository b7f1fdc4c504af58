"""
Celery tasks for appointments.

Periodic tasks (registered in CELERY_BEAT_SCHEDULE):
- auto_complete_elapsed_sessions: completes current sessions that ended
  long ago, through the reconciliation facade
- expire_unpaid_appointments: cancels unpaid bookings past their expiry
- verify_ledger_consistency: compares every balance with its history

Usage:
    from appointments.tasks import auto_complete_elapsed_sessions

    auto_complete_elapsed_sessions.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from appointments.models import Appointment, AppointmentSession
from appointments.reconciliation import ReconciliationFacade
from appointments.services import AppointmentService
from appointments.states import AppointmentStatus, PaymentStatus, SessionStatus
from core.exceptions import BaseApplicationError
from payments.exceptions import LockAcquisitionError
from payments.ledger import ledger
from payments.locks import DistributedLock

logger = logging.getLogger(__name__)

AUTO_COMPLETE_ACTOR = "system:auto_complete"
AUTO_COMPLETE_LOCK_TTL = 300
AUTO_COMPLETE_BATCH_SIZE = 200


@shared_task
def auto_complete_elapsed_sessions() -> dict:
    """
    Complete the current session of confirmed, paid appointments whose
    session started more than AUTO_COMPLETE_AFTER_MINUTES ago.

    Each completion runs through ReconciliationFacade.complete_session
    with the key ``auto-complete:{appointment_id}:{session_id}``, so a
    session is never completed twice by overlapping runs. A Redis lock
    skips the run entirely while another one is in progress.

    Returns:
        Dict with completed/failed counts, or status "skipped"
    """
    try:
        with DistributedLock("appointments:auto-complete", ttl=AUTO_COMPLETE_LOCK_TTL, blocking=False):
            return _auto_complete()
    except LockAcquisitionError:
        logger.info("Auto-complete already running, skipping")
        return {"status": "skipped"}


def _auto_complete() -> dict:
    cutoff = timezone.now() - timedelta(minutes=settings.AUTO_COMPLETE_AFTER_MINUTES)
    appointment_ids = list(
        Appointment.objects.filter(
            status=AppointmentStatus.CONFIRMED,
            payment_status=PaymentStatus.COMPLETED,
            date__lte=cutoff,
        )
        .order_by("date")
        .values_list("id", flat=True)[:AUTO_COMPLETE_BATCH_SIZE]
    )

    completed = 0
    failed = 0
    for appointment_id in appointment_ids:
        session = AppointmentSession.objects.filter(
            appointment_id=appointment_id,
            is_current=True,
            status=SessionStatus.IN_PROGRESS,
        ).first()
        if session is None:
            continue

        try:
            result = ReconciliationFacade.complete_session(
                appointment_id,
                session_index=0,
                target_status=SessionStatus.COMPLETED,
                idempotency_key=f"auto-complete:{appointment_id}:{session.pk}",
                actor=AUTO_COMPLETE_ACTOR,
            )
        except BaseApplicationError as e:
            failed += 1
            logger.warning(
                "Auto-complete failed for appointment",
                extra={
                    "appointment_id": str(appointment_id),
                    "session_id": str(session.pk),
                    "error_code": e.error_code,
                },
            )
            continue
        if not result.replayed:
            completed += 1

    logger.info(
        f"Auto-complete run finished: {completed} completed, {failed} failed",
        extra={"completed_count": completed, "failed_count": failed, "cutoff": cutoff.isoformat()},
    )
    return {"status": "done", "completed_count": completed, "failed_count": failed}


@shared_task
def expire_unpaid_appointments() -> dict:
    """Cancel unpaid appointments older than UNPAID_APPOINTMENT_EXPIRY_HOURS."""
    expired = AppointmentService.expire_unpaid()
    return {"expired_count": expired}


@shared_task
def verify_ledger_consistency() -> dict:
    """
    Compare every balance projection with the sum of its history.

    Mismatches are logged as errors; nothing is corrected automatically.
    """
    checked = 0
    mismatches = 0
    for report in ledger.iter_consistency_reports():
        checked += 1
        if report.is_consistent:
            continue
        mismatches += 1
        logger.error(
            "Ledger balance does not match its history",
            extra={
                "user_id": str(report.user_id),
                "projected": str(report.projected),
                "from_history": str(report.from_history),
                "difference": str(report.difference),
            },
        )

    logger.info(
        f"Ledger consistency check: {mismatches} mismatches in {checked} balances",
        extra={"checked_count": checked, "mismatch_count": mismatches},
    )
    return {"checked_count": checked, "mismatch_count": mismatches}
