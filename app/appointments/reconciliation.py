"""
Reconciliation facade.

The only entry point collaborators use to cancel appointments and to
complete (or reopen) sessions. Each operation runs as one unit:

    1. A caller key already recorded returns the recorded result
       (``replayed=True``) without touching anything.
    2. The appointment row is locked (and, with ``expected_version``,
       checked against the version the caller saw).
    3. The state machine validates and applies the change; the ledger
       credit and the IdempotencyRecord are written in the same
       transaction, so all of it commits or none of it does. Refund
       credits use their own ledger keys (``refund_ledger_key``).
    4. A deadline (RECONCILIATION_TIMEOUT_SECONDS) bounds the whole
       unit; the payment verification call inside it gets whatever
       budget is left. A blown deadline rolls the unit back.

Storage errors roll back and surface as ReconciliationFailedError.

Usage:
    from appointments.reconciliation import ReconciliationFacade
    from appointments.refunds import RefundPolicy

    result = ReconciliationFacade.request_cancellation(
        appointment_id, RefundPolicy(charge_flag=True), actor="user:42"
    )
    result.response["refund_amount"]
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction

from appointments.collaborators import dispatch_on_commit
from appointments.exceptions import (
    AppointmentRuleError,
    ReconciliationFailedError,
    ReconciliationTimeoutError,
)
from appointments.models import Appointment, IdempotencyRecord
from appointments.refunds import RefundPolicy
from appointments.services import lock_appointment
from appointments.state_machine import AppointmentStateMachine
from appointments.states import SessionStatus
from core.services import BaseService
from payments.exceptions import AdapterUnavailableError, PaymentNotVerifiedError
from payments.ledger import ledger
from payments.verification import PaymentVerificationService

if TYPE_CHECKING:
    from typing import Any

OPERATION_CANCEL = "cancel"
OPERATION_COMPLETE_SESSION = "complete_session"


def default_dedupe_key(appointment_id, policy: RefundPolicy) -> str:
    """Key used when the caller supplies none: one refund per policy per series."""
    return f"{appointment_id}:{policy.label}:series"


def refund_ledger_key(appointment_id, dedupe_key: str) -> str:
    """Ledger dedupe key of a cancellation refund, kept apart from top-ups and bookings."""
    return f"refund:{appointment_id}:{dedupe_key}"


class Deadline:
    """Monotonic deadline checked between the steps of a unit."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(self._expires_at - time.monotonic(), 0.0)

    def check(self, stage: str) -> None:
        if self.remaining() <= 0:
            raise ReconciliationTimeoutError(
                f"Operation exceeded {self.seconds}s at stage '{stage}'",
                details={"stage": stage, "timeout_seconds": self.seconds},
            )


@dataclass(frozen=True)
class ReconciliationResult:
    """
    Outcome of a facade operation.

    Attributes:
        operation: cancel | complete_session
        appointment_id: Appointment the operation ran on
        response: Payload returned to the caller (also what is replayed)
        replayed: True if the key was already applied and nothing ran
    """

    operation: str
    appointment_id: str
    response: dict[str, Any] = field(default_factory=dict)
    replayed: bool = False


class ReconciliationFacade(BaseService):
    """Idempotent, atomic, time-bounded appointment operations."""

    # =========================================================================
    # Cancellation
    # =========================================================================

    @classmethod
    def request_cancellation(
        cls,
        appointment_id,
        policy: RefundPolicy,
        dedupe_key: str | None = None,
        actor: str = "system",
        reason: str = "",
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> ReconciliationResult:
        """
        Cancel an appointment and credit its refund to the patient's balance.

        Args:
            appointment_id: Appointment to cancel
            policy: Refund policy (charge flag / explicit units)
            dedupe_key: Idempotency key; defaults to
                ``{appointment_id}:{policy}:series``. The ledger credit is
                stored under ``refund_ledger_key(appointment_id, key)``
            actor: Who requested the cancellation
            reason: Stored with the cancellation
            expected_version: Reject with StaleRecordError if the
                appointment changed since the caller read it
            timeout: Overrides RECONCILIATION_TIMEOUT_SECONDS

        Returns:
            ReconciliationResult whose response carries message,
            refund_amount, new_balance and a verification block

        Raises:
            ReconciliationFailedError: Storage failure, or the refund credit
                was already in the ledger (REFUND_NOT_CREDITED)
        """
        key = dedupe_key or default_dedupe_key(appointment_id, policy)
        replay = cls._replay(key, OPERATION_CANCEL, appointment_id)
        if replay is not None:
            return replay

        deadline = Deadline(timeout if timeout is not None else settings.RECONCILIATION_TIMEOUT_SECONDS)
        log_context = {
            "appointment_id": str(appointment_id),
            "dedupe_key": key,
            "policy": policy.label,
            "actor": actor,
        }
        cls.get_logger().info("Cancellation started", extra=log_context)

        def unit() -> ReconciliationResult:
            appointment = lock_appointment(appointment_id, expected_version)
            replay = cls._replay(key, OPERATION_CANCEL, appointment_id)
            if replay is not None:
                return replay

            balance_before = ledger.get_balance(appointment.patient_id).amount
            outcome = AppointmentStateMachine.request_cancellation(
                appointment, policy, actor=actor, reason=reason
            )
            deadline.check("cancellation")

            if outcome.refund_amount > 0:
                credit = ledger.credit(
                    appointment.patient_id,
                    outcome.refund_amount,
                    reason=f"Refund for cancelled appointment {appointment.pk}",
                    dedupe_key=refund_ledger_key(appointment.pk, key),
                    appointment_id=appointment.pk,
                )
                # No IdempotencyRecord exists for key, so the credit must be new
                if credit.replayed:
                    cls.get_logger().error(
                        "Refund credit already applied without a recorded cancellation",
                        extra={**log_context, "entry_id": str(credit.entry.pk)},
                    )
                    raise ReconciliationFailedError(
                        "The refund could not be credited",
                        error_code="REFUND_NOT_CREDITED",
                        details={"operation": OPERATION_CANCEL, "dedupe_key": key},
                    )
            new_balance = ledger.get_balance(appointment.patient_id).amount
            expected = balance_before + outcome.refund_amount

            response = {
                "message": "Appointment cancelled",
                "appointment_id": str(appointment.pk),
                "status": outcome.new_status,
                "refund_amount": str(outcome.refund_amount),
                "new_balance": str(new_balance),
                "verification": {
                    "expected": str(expected),
                    "actual": str(new_balance),
                    "match": expected == new_balance,
                },
            }
            IdempotencyRecord.objects.create(
                key=key,
                operation=OPERATION_CANCEL,
                appointment=appointment,
                effect=outcome.refund_amount,
                response=response,
            )
            deadline.check("commit")
            dispatch_on_commit("appointment.cancelled", appointment)
            return ReconciliationResult(OPERATION_CANCEL, str(appointment.pk), response)

        result = cls._run_unit(unit, key, OPERATION_CANCEL, appointment_id, log_context)
        cls.get_logger().info(
            "Cancellation finished",
            extra={
                **log_context,
                "replayed": result.replayed,
                "refund_amount": result.response.get("refund_amount"),
            },
        )
        return result

    # =========================================================================
    # Session completion
    # =========================================================================

    @classmethod
    def complete_session(
        cls,
        appointment_id,
        session_index: int,
        target_status: str,
        idempotency_key: str | None = None,
        actor: str = "system",
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> ReconciliationResult:
        """
        Complete a session (or reverse a completion) under the row lock.

        Completion of an externally paid appointment needs a ``paid``
        answer from the payment verification adapter; balance-paid
        appointments are always verified.

        Returns:
            ReconciliationResult whose response is the appointment snapshot

        Raises:
            PaymentNotVerifiedError: The adapter did not confirm payment
            AdapterUnavailableError: The adapter could not be asked
        """
        if idempotency_key:
            replay = cls._replay(idempotency_key, OPERATION_COMPLETE_SESSION, appointment_id)
            if replay is not None:
                return replay

        deadline = Deadline(timeout if timeout is not None else settings.RECONCILIATION_TIMEOUT_SECONDS)
        log_context = {
            "appointment_id": str(appointment_id),
            "session_index": session_index,
            "target_status": target_status,
            "idempotency_key": idempotency_key,
            "actor": actor,
        }
        cls.get_logger().info("Session update started", extra=log_context)

        def unit() -> ReconciliationResult:
            from appointments.serializers import appointment_snapshot

            appointment = lock_appointment(appointment_id, expected_version)
            if idempotency_key:
                replay = cls._replay(idempotency_key, OPERATION_COMPLETE_SESSION, appointment_id)
                if replay is not None:
                    return replay

            AppointmentStateMachine.complete_session(
                appointment,
                session_index,
                target_status,
                actor=actor,
                verify_payment=lambda a: cls._verify_payment(a, deadline),
            )
            deadline.check("session_update")

            response = appointment_snapshot(appointment)
            if idempotency_key:
                IdempotencyRecord.objects.create(
                    key=idempotency_key,
                    operation=OPERATION_COMPLETE_SESSION,
                    appointment=appointment,
                    response=response,
                )
            event = (
                "appointment.session_completed"
                if target_status == SessionStatus.COMPLETED
                else "appointment.session_reopened"
            )
            dispatch_on_commit(event, appointment)
            return ReconciliationResult(OPERATION_COMPLETE_SESSION, str(appointment.pk), response)

        result = cls._run_unit(
            unit, idempotency_key, OPERATION_COMPLETE_SESSION, appointment_id, log_context
        )
        cls.get_logger().info(
            "Session update finished",
            extra={**log_context, "replayed": result.replayed},
        )
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    @classmethod
    def _replay(cls, key: str | None, operation: str, appointment_id) -> ReconciliationResult | None:
        if not key:
            return None
        record = IdempotencyRecord.objects.filter(key=key).first()
        if record is None:
            return None
        if record.operation != operation or str(record.appointment_id) != str(appointment_id):
            raise AppointmentRuleError(
                "Idempotency key was already used for a different operation",
                error_code="IDEMPOTENCY_KEY_REUSED",
                details={"key": key, "operation": record.operation},
            )
        cls.get_logger().info(
            "Replaying recorded result",
            extra={"appointment_id": str(appointment_id), "key": key, "operation": operation},
        )
        return ReconciliationResult(operation, str(appointment_id), record.response, replayed=True)

    @classmethod
    def _run_unit(
        cls,
        unit,
        key: str | None,
        operation: str,
        appointment_id,
        log_context: dict[str, Any],
    ) -> ReconciliationResult:
        try:
            with transaction.atomic():
                return unit()
        except ReconciliationTimeoutError:
            cls.get_logger().error("Operation timed out, rolled back", extra=log_context)
            raise
        except IntegrityError:
            # A concurrent request committed the same key first
            replay = cls._replay(key, operation, appointment_id)
            if replay is not None:
                return replay
            cls.get_logger().exception("Integrity error, rolled back", extra=log_context)
            raise ReconciliationFailedError(
                "The operation could not be saved",
                details={"operation": operation},
            )
        except DatabaseError:
            cls.get_logger().exception("Storage error, rolled back", extra=log_context)
            raise ReconciliationFailedError(
                "The operation could not be saved",
                details={"operation": operation},
            )

    @classmethod
    def _verify_payment(cls, appointment: Appointment, deadline: Deadline) -> None:
        """Raise unless the appointment's payment is verified."""
        if appointment.is_paid_with_balance:
            return

        deadline.check("payment_verification")
        result = PaymentVerificationService.verify(
            checkout_session_id=appointment.checkout_session_id or None,
            reference=appointment.payment_reference or None,
            timeout=min(deadline.remaining(), settings.PAYMENT_VERIFICATION_TIMEOUT_SECONDS),
        )
        if result.unavailable:
            raise AdapterUnavailableError(
                "Payment could not be verified right now, try again later",
                details={"payment_status": result.payment_status, "reason": result.error},
            )
        if not result.is_paid:
            raise PaymentNotVerifiedError(
                "Payment for this appointment has not been confirmed",
                details={
                    "payment_status": result.payment_status,
                    "subscription_status": result.subscription_status,
                },
            )


__all__ = [
    "Deadline",
    "ReconciliationFacade",
    "ReconciliationResult",
    "default_dedupe_key",
    "refund_ledger_key",
]
