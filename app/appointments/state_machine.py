"""
Appointment state machine.

The single place where an appointment's ``status`` and its sessions'
completion state change. Every entry point validates the requested edge
before touching anything, so a rejected request leaves the appointment
exactly as it was.

The edges themselves are django-fsm transitions on Appointment; this
module maps requested target statuses onto them, reports failed guards,
records AppointmentStatusChange rows and applies the session side
effects of cancellation and completion.

Callers are expected to hold the appointment row lock
(``select_for_update``) inside a transaction; see
appointments.reconciliation for the facade that does this.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Callable

from django.conf import settings
from django.utils import timezone
from django_fsm import can_proceed

from appointments.exceptions import AppointmentRuleError, InvalidTransitionError
from appointments.models import (
    Appointment,
    AppointmentSession,
    AppointmentStatusChange,
    has_date,
    has_therapist,
    payment_completed,
)
from appointments.refunds import RefundAllocation, RefundPolicy, allocate_refund, calculate_refund
from appointments.states import AppointmentStatus, SessionPaymentState, SessionStatus
from core.exceptions import NotFoundError

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


# Target status -> FSM method name. Completion, reopening and expiry are
# internal edges and deliberately absent.
PUBLIC_TRANSITIONS: dict[str, str] = {
    AppointmentStatus.PENDING: "mark_pending",
    AppointmentStatus.UNPAID: "revert_to_unpaid",
    AppointmentStatus.PENDING_MATCH: "request_match",
    AppointmentStatus.MATCHED_PENDING_THERAPIST_ACCEPTANCE: "match",
    AppointmentStatus.PENDING_SCHEDULING: "accept",
    AppointmentStatus.CONFIRMED: "confirm",
    AppointmentStatus.CANCELLED: "cancel",
    AppointmentStatus.NO_SHOW: "mark_no_show",
}

TRANSITION_GUARDS: dict[str, list[Callable[[Appointment], bool]]] = {
    AppointmentStatus.PENDING_MATCH: [payment_completed],
    AppointmentStatus.PENDING_SCHEDULING: [has_therapist],
    AppointmentStatus.CONFIRMED: [has_date],
}

COMPLETABLE_TARGETS = (SessionStatus.COMPLETED, SessionStatus.IN_PROGRESS)
REVERSIBLE_STATUSES = (AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED)


@dataclass(frozen=True)
class CancellationOutcome:
    new_status: str
    refund_amount: Decimal
    allocation: RefundAllocation


def _record_change(
    appointment: Appointment,
    from_status: str,
    actor: str,
    reason: str = "",
    metadata: dict[str, Any] | None = None,
) -> AppointmentStatusChange:
    change = AppointmentStatusChange.objects.create(
        appointment=appointment,
        from_status=from_status,
        to_status=appointment.status,
        actor=actor,
        reason=reason,
        metadata=metadata or {},
    )
    logger.info(
        f"Appointment status: {from_status} -> {appointment.status}",
        extra={
            "appointment_id": str(appointment.pk),
            "from_status": from_status,
            "to_status": appointment.status,
            "actor": actor,
        },
    )
    return change


def ordered_sessions(appointment: Appointment) -> list[AppointmentSession]:
    """Sessions in snapshot order: current first, then by position."""
    return list(appointment.sessions.order_by("-is_current", "position"))


class AppointmentStateMachine:
    """
    Stateless façade over the Appointment FSM.

    All methods mutate and save the given appointment; none of them
    open a transaction.
    """

    @staticmethod
    def allowed_transitions(appointment: Appointment) -> list[str]:
        """Public target statuses reachable right now (edge and guards)."""
        return [
            target
            for target, method in PUBLIC_TRANSITIONS.items()
            if can_proceed(getattr(appointment, method))
        ]

    @staticmethod
    def check_transition(appointment: Appointment, target: str) -> str:
        """
        Validate a requested public transition without applying it.

        Returns:
            Name of the FSM method implementing the edge

        Raises:
            InvalidTransitionError: Edge not in the graph, or a guard failed
        """
        current = appointment.status
        method_name = PUBLIC_TRANSITIONS.get(target)
        if method_name is None:
            logger.warning(
                "Rejected transition to internal or unknown status",
                extra={"appointment_id": str(appointment.pk), "from_status": current, "to_status": target},
            )
            raise InvalidTransitionError(current, target)

        method = getattr(appointment, method_name)
        if not can_proceed(method, check_conditions=False):
            logger.warning(
                "Rejected transition outside the status graph",
                extra={"appointment_id": str(appointment.pk), "from_status": current, "to_status": target},
            )
            raise InvalidTransitionError(current, target)

        failed = [guard.__name__ for guard in TRANSITION_GUARDS.get(target, []) if not guard(appointment)]
        if failed:
            logger.warning(
                "Transition guard failed",
                extra={
                    "appointment_id": str(appointment.pk),
                    "from_status": current,
                    "to_status": target,
                    "failed_guards": failed,
                },
            )
            raise InvalidTransitionError(
                current,
                target,
                message=f"Cannot move appointment to '{target}': {', '.join(failed)} not satisfied",
                error_code="TRANSITION_GUARD_FAILED",
                failed_guards=failed,
            )
        return method_name

    @classmethod
    def transition(
        cls,
        appointment: Appointment,
        target: str,
        actor: str,
        reason: str = "",
        therapist_id: int | None = None,
    ) -> Appointment:
        """
        Apply a public status transition.

        Cancellation through this method moves no money; refunds go
        through request_cancellation. ``therapist_id`` is only used by
        the match edge, which assigns the proposed therapist.
        """
        method_name = cls.check_transition(appointment, target)
        from_status = appointment.status
        metadata = {}
        if method_name == "cancel":
            appointment.cancel(reason=reason)
        elif method_name == "match":
            appointment.match(therapist_id=therapist_id)
            metadata["therapist_id"] = appointment.therapist_id
        else:
            getattr(appointment, method_name)()
        appointment.save()
        _record_change(appointment, from_status, actor, reason, metadata)
        return appointment

    @staticmethod
    def apply_internal(
        appointment: Appointment,
        method_name: str,
        actor: str,
        reason: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> Appointment:
        """Run an internal-only edge (complete, reopen, expire)."""
        method = getattr(appointment, method_name)
        if not can_proceed(method):
            raise InvalidTransitionError(appointment.status, method_name)
        from_status = appointment.status
        method()
        appointment.save()
        _record_change(appointment, from_status, actor, reason, metadata)
        return appointment

    # =========================================================================
    # Cancellation
    # =========================================================================

    @classmethod
    def request_cancellation(
        cls,
        appointment: Appointment,
        policy: RefundPolicy,
        actor: str,
        reason: str = "",
    ) -> CancellationOutcome:
        """
        Cancel the appointment and work out its refund.

        The refund is computed and its units recorded on the payment
        channels here; crediting the ledger is the caller's job and must
        happen in the same transaction.

        Raises:
            InvalidTransitionError: Already cancelled/completed, or the
                status has no cancel edge
            AppointmentRuleError: No session left to cancel
        """
        if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED):
            raise InvalidTransitionError(
                appointment.status,
                AppointmentStatus.CANCELLED,
                message=f"Appointment is already {appointment.status}",
            )
        cls.check_transition(appointment, AppointmentStatus.CANCELLED)

        if appointment.remaining_sessions <= 0:
            raise AppointmentRuleError(
                "No uncompleted session left to cancel",
                error_code="NOTHING_TO_CANCEL",
                details={
                    "total_sessions": appointment.total_sessions,
                    "completed_sessions": appointment.completed_sessions,
                },
            )

        refund_amount = calculate_refund(appointment, policy)
        allocation = allocate_refund(appointment, refund_amount)

        from_status = appointment.status
        appointment.refunded_units_from_balance += allocation.from_balance
        appointment.refunded_units_from_stripe += allocation.from_stripe
        appointment.cancel(reason=reason)
        appointment.save()
        _record_change(
            appointment,
            from_status,
            actor,
            reason,
            metadata={
                "policy": policy.label,
                "refund_amount": str(refund_amount),
                "refunded_units_from_balance": str(allocation.from_balance),
                "refunded_units_from_stripe": str(allocation.from_stripe),
            },
        )
        return CancellationOutcome(
            new_status=appointment.status,
            refund_amount=refund_amount,
            allocation=allocation,
        )

    # =========================================================================
    # Session completion
    # =========================================================================

    @classmethod
    def complete_session(
        cls,
        appointment: Appointment,
        session_index: int,
        target_status: str,
        actor: str,
        verify_payment: Callable[[Appointment], None] | None = None,
    ) -> Appointment:
        """
        Complete a session, or reverse a completion.

        Completing requires the appointment to be confirmed, the session
        to be at least SESSION_COMPLETION_GRACE_MINUTES old and the
        payment to be verified (``verify_payment`` raises if it is not).
        Completing the current session promotes the next chronological
        one, unless this was the last session, in which case the
        appointment becomes completed in the same save.

        Reversal requires a confirmed or completed appointment and a
        completed session, and reopens a completed appointment.

        Raises:
            AppointmentRuleError: Bad target, session not elapsed, ...
            NotFoundError: No session at session_index
            InvalidTransitionError: Appointment not confirmed
        """
        if target_status not in COMPLETABLE_TARGETS:
            raise AppointmentRuleError(
                f"Unsupported session status '{target_status}'",
                error_code="INVALID_SESSION_STATUS",
                details={"allowed": list(COMPLETABLE_TARGETS)},
            )

        sessions = ordered_sessions(appointment)
        if session_index < 0 or session_index >= len(sessions):
            raise NotFoundError(
                f"Appointment has no session at index {session_index}",
                error_code="SESSION_NOT_FOUND",
                details={"session_index": session_index, "session_count": len(sessions)},
            )
        session = sessions[session_index]

        if target_status == SessionStatus.COMPLETED:
            cls._complete(appointment, session, sessions, actor, verify_payment)
        else:
            cls._reverse(appointment, session, actor)
        return appointment

    @classmethod
    def _complete(
        cls,
        appointment: Appointment,
        session: AppointmentSession,
        sessions: list[AppointmentSession],
        actor: str,
        verify_payment: Callable[[Appointment], None] | None,
    ) -> None:
        if appointment.status != AppointmentStatus.CONFIRMED:
            raise InvalidTransitionError(
                appointment.status,
                AppointmentStatus.COMPLETED,
                message=f"Sessions of a {appointment.status} appointment cannot be completed",
            )
        if session.status == SessionStatus.COMPLETED:
            raise AppointmentRuleError(
                "Session is already completed",
                error_code="SESSION_ALREADY_COMPLETED",
                details={"session_id": str(session.pk)},
            )
        if not session.is_valid or session.date is None:
            raise AppointmentRuleError(
                "Session has no valid date",
                error_code="SESSION_DATE_INVALID",
                details={"session_id": str(session.pk), "raw_value": session.raw_value},
            )
        if appointment.completed_sessions >= appointment.total_sessions:
            raise AppointmentRuleError(
                "All sessions are already completed",
                error_code="ALL_SESSIONS_COMPLETED",
            )

        now = timezone.now()
        grace = timedelta(minutes=settings.SESSION_COMPLETION_GRACE_MINUTES)
        if session.date > now - grace:
            logger.info(
                "Session completion rejected: session has not elapsed",
                extra={
                    "appointment_id": str(appointment.pk),
                    "session_id": str(session.pk),
                    "session_date": session.date.isoformat(),
                },
            )
            raise AppointmentRuleError(
                f"A session can only be completed {settings.SESSION_COMPLETION_GRACE_MINUTES} "
                "minutes after it started",
                error_code="SESSION_NOT_ELAPSED",
                details={
                    "session_date": session.date.isoformat(),
                    "completable_at": (session.date + grace).isoformat(),
                },
            )

        if verify_payment is not None:
            verify_payment(appointment)

        session.status = SessionStatus.COMPLETED
        session.payment_state = SessionPaymentState.PAID
        session.completed_at = now
        appointment.completed_sessions += 1

        if appointment.completed_sessions == appointment.total_sessions:
            session.save(update_fields=["status", "payment_state", "completed_at", "updated_at"])
            cls.apply_internal(
                appointment,
                "complete",
                actor,
                reason="All sessions completed",
                metadata={"session_id": str(session.pk)},
            )
            return

        if session.is_current:
            cls._promote_next(appointment, session, sessions)
        else:
            session.save(update_fields=["status", "payment_state", "completed_at", "updated_at"])
        appointment.save()

        logger.info(
            "Session completed",
            extra={
                "appointment_id": str(appointment.pk),
                "session_id": str(session.pk),
                "completed_sessions": appointment.completed_sessions,
                "total_sessions": appointment.total_sessions,
                "actor": actor,
            },
        )

    @staticmethod
    def _promote_next(
        appointment: Appointment,
        finished: AppointmentSession,
        sessions: list[AppointmentSession],
    ) -> None:
        """Move the current slot to the earliest session still in progress."""
        candidates = [
            s
            for s in sessions
            if s.pk != finished.pk and s.is_valid and s.date is not None and s.status == SessionStatus.IN_PROGRESS
        ]
        finished.is_current = False
        finished.save(update_fields=["status", "payment_state", "completed_at", "is_current", "updated_at"])
        if not candidates:
            return

        upcoming = min(candidates, key=lambda s: s.date)
        upcoming.is_current = True
        upcoming.save(update_fields=["is_current", "updated_at"])
        appointment.date = upcoming.date
        logger.info(
            "Promoted next session to current",
            extra={
                "appointment_id": str(appointment.pk),
                "session_id": str(upcoming.pk),
                "session_date": upcoming.date.isoformat(),
            },
        )

    @classmethod
    def _reverse(cls, appointment: Appointment, session: AppointmentSession, actor: str) -> None:
        if appointment.status not in REVERSIBLE_STATUSES:
            raise InvalidTransitionError(
                appointment.status,
                AppointmentStatus.CONFIRMED,
                message=f"Sessions of a {appointment.status} appointment cannot be reopened",
            )
        if session.status != SessionStatus.COMPLETED:
            raise AppointmentRuleError(
                "Only a completed session can be reopened",
                error_code="SESSION_NOT_COMPLETED",
                details={"session_id": str(session.pk), "status": session.status},
            )
        if appointment.completed_sessions <= 0:
            logger.error(
                "Completed session without a completed count",
                extra={"appointment_id": str(appointment.pk), "session_id": str(session.pk)},
            )
            raise AppointmentRuleError(
                "Appointment has no completed sessions to reverse",
                error_code="SESSION_COUNT_MISMATCH",
                details={
                    "session_id": str(session.pk),
                    "completed_sessions": appointment.completed_sessions,
                },
            )

        session.status = SessionStatus.IN_PROGRESS
        session.completed_at = None
        session.save(update_fields=["status", "completed_at", "updated_at"])
        appointment.completed_sessions -= 1

        if appointment.status == AppointmentStatus.COMPLETED:
            cls.apply_internal(
                appointment,
                "reopen",
                actor,
                reason="Session completion reversed",
                metadata={"session_id": str(session.pk)},
            )
        else:
            appointment.save()

        logger.info(
            "Session completion reversed",
            extra={
                "appointment_id": str(appointment.pk),
                "session_id": str(session.pk),
                "completed_sessions": appointment.completed_sessions,
                "actor": actor,
            },
        )
