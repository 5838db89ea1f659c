"""Registration service — orchestrates a single RSVP end to end.

Responsible for:
- Validating input before any slot is taken
- Reserving through the capacity gate
- Calling the M-Pesa gateway for paid events, outside any lock
- Persisting the PaymentSession, or compensating if the gateway fails
- Cancelling registrations
- Mirroring every ledger change into the user projection

A reservation is never left without either a live PaymentSession or a
rollback. If the process dies between the two, the reconciliation sweep
force-fails the orphan after the hard deadline.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import update

from eventsys.errors import (
    EventNotFoundError,
    GatewayError,
    PaymentInitiationError,
    RegistrationNotFoundError,
)
from eventsys.extensions import db, mpesa
from eventsys.models.event import Attendance, Event
from eventsys.models.payment_session import PaymentSession
from eventsys.models.status import AttendanceStatus
from eventsys.services import capacity_gate, projection_service, reconciliation_service
from eventsys.services.audit_service import log_audit
from eventsys.services.mpesa_client import normalize_phone, round_amount

logger = logging.getLogger(__name__)

PAYMENT_PENDING_MESSAGE = "Payment initiated. Please complete the payment on your phone."
FREE_RSVP_MESSAGE = "Successfully RSVP'd to event"


@dataclass(frozen=True)
class RegistrationResult:
    attendance_id: str
    status: AttendanceStatus
    message: str
    payment_reference: str | None = None


def _payment_reference(event_id, user_id):
    """AccountReference shown on the payer's M-Pesa statement."""
    return f"Event-{event_id[:8]}-{user_id[:8]}"


def register(event_id, user_id, phone=None):
    """RSVP user_id to event_id.

    Returns RegistrationResult.
    Raises ValidationError, EventNotFoundError, DuplicateRegistrationError,
    CapacityExceededError, PaymentInitiationError, and
    RegistrationNotFoundError if the registration was cancelled while the
    push was in flight.
    """
    event = db.session.get(Event, event_id)
    if event is None:
        raise EventNotFoundError(event_id)

    # Validate before reserving so bad input never holds a slot
    msisdn = amount = None
    if event.is_paid:
        msisdn = normalize_phone(phone)
        amount = round_amount(event.price)

    attendance = capacity_gate.try_reserve(event_id, user_id)
    attendance_id = attendance.id

    if attendance.status == AttendanceStatus.PAID:
        log_audit(event_id, "rsvp.created", {"status": "paid"}, actor_user_id=user_id)
        db.session.commit()
        projection_service.sync_projection(event_id, user_id, reason="rsvp.created")
        return RegistrationResult(
            attendance_id=attendance_id,
            status=AttendanceStatus.PAID,
            message=FREE_RSVP_MESSAGE,
        )

    projection_service.sync_projection(event_id, user_id, reason="rsvp.reserved")

    # Slot is durably reserved and the lock released: now talk to the gateway
    try:
        push = mpesa.initiate_payment(
            msisdn, amount, _payment_reference(event_id, user_id)
        )
    except GatewayError as e:
        logger.warning(
            f"Payment initiation failed for event={event_id} user={user_id}: {e!r}"
        )
        _compensate(event_id, user_id, attendance_id, e)
        raise PaymentInitiationError(e) from e
    except Exception as e:
        logger.error(
            f"Unexpected error initiating payment for event={event_id} user={user_id}",
            exc_info=True,
        )
        _compensate(event_id, user_id, attendance_id, e)
        raise

    if not _record_payment_session(event_id, user_id, attendance_id, push, msisdn, amount):
        raise RegistrationNotFoundError(event_id, user_id)
    projection_service.sync_projection(event_id, user_id, reason="payment.initiated")

    return RegistrationResult(
        attendance_id=attendance_id,
        status=AttendanceStatus.PENDING,
        message=PAYMENT_PENDING_MESSAGE,
        payment_reference=push.checkout_request_id,
    )


def _record_payment_session(event_id, user_id, attendance_id, push, msisdn, amount):
    """Persist the gateway's correlation ids on the session and the ledger.

    Returns False if the registration was cancelled or force-failed while
    the push was in flight. The session is still stored so the callback or
    the sweep can close it.
    """
    with capacity_gate.event_lock(event_id):
        try:
            db.session.add(PaymentSession(
                checkout_request_id=push.checkout_request_id,
                merchant_request_id=push.merchant_request_id,
                event_id=event_id,
                user_id=user_id,
                amount=amount,
                phone=msisdn,
                status=AttendanceStatus.PENDING,
            ))
            result = db.session.execute(
                update(Attendance)
                .where(Attendance.id == attendance_id)
                .where(Attendance.status == AttendanceStatus.PENDING)
                .values(payment_reference=push.checkout_request_id)
                .execution_options(synchronize_session=False)
            )
            attached = result.rowcount == 1
            if attached:
                log_audit(event_id, "rsvp.created", {"status": "pending"}, actor_user_id=user_id)
            else:
                logger.warning(
                    f"Attendance {attendance_id} no longer pending when "
                    f"{push.checkout_request_id} came back"
                )
            log_audit(event_id, "payment.initiated", {
                "checkout_request_id": push.checkout_request_id,
                "merchant_request_id": push.merchant_request_id,
                "amount": amount,
            }, actor_user_id=user_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    if attached:
        logger.info(
            f"STK push {push.checkout_request_id} pending for event={event_id} user={user_id}"
        )
    return attached


def _compensate(event_id, user_id, attendance_id, cause):
    """Give back a slot whose payment never started."""
    with capacity_gate.event_lock(event_id):
        try:
            released = capacity_gate.release(
                attendance_id, expected_status=AttendanceStatus.PENDING
            )
            log_audit(event_id, "rsvp.compensated", {
                "attendance_id": attendance_id,
                "error": type(cause).__name__,
                "detail": str(cause),
                "released": released is not None,
            }, actor_user_id=user_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.error(
                f"Compensation failed for attendance {attendance_id}; "
                f"the reconciliation sweep will release it",
                exc_info=True,
            )
            raise

    projection_service.sync_projection(event_id, user_id, reason="rsvp.compensated")


def cancel(event_id, user_id):
    """Remove user_id's registration for event_id, whatever its status.

    Idempotent: returns False if there was nothing to remove.
    Raises EventNotFoundError for an unknown event.
    """
    if db.session.get(Event, event_id) is None:
        raise EventNotFoundError(event_id)

    removed = None
    with capacity_gate.event_lock(event_id):
        try:
            # Retry if the reconciler moves the row between our read and delete
            for _ in range(3):
                attendance = Attendance.query.filter_by(
                    event_id=event_id, user_id=user_id
                ).first()
                if attendance is None:
                    break
                removed = capacity_gate.release(attendance.id, attendance.status)
                if removed is not None:
                    break
                db.session.expire_all()

            if removed is not None:
                log_audit(event_id, "rsvp.cancelled", {
                    "previous_status": removed.value,
                }, actor_user_id=user_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    projection_service.sync_projection(event_id, user_id, reason="rsvp.cancelled")

    if removed is not None:
        logger.info(f"Cancelled RSVP event={event_id} user={user_id} (was {removed.value})")
    return removed is not None


def get_registration(event_id, user_id):
    """Return (attendance, payment_session) for the pair.

    Raises EventNotFoundError, RegistrationNotFoundError.
    """
    if db.session.get(Event, event_id) is None:
        raise EventNotFoundError(event_id)

    attendance = Attendance.query.filter_by(
        event_id=event_id, user_id=user_id
    ).first()
    if attendance is None:
        raise RegistrationNotFoundError(event_id, user_id)

    session = None
    if attendance.payment_reference:
        session = PaymentSession.query.filter_by(
            checkout_request_id=attendance.payment_reference
        ).first()
    return attendance, session


def get_registration_status(event_id, user_id):
    """Return the caller's attendance, checking with the gateway if it's stale.

    A Pending registration whose session is older than the poll window is
    queried once on demand, the same way the sweep would. Gateway trouble
    is swallowed; the status simply stays Pending.
    """
    attendance, session = get_registration(event_id, user_id)
    if (
        attendance.status == AttendanceStatus.PENDING
        and session is not None
        and reconciliation_service.is_due_for_poll(session)
    ):
        reconciliation_service.poll_session(session.checkout_request_id)
        attendance, session = get_registration(event_id, user_id)

    logger.debug(
        f"RSVP status event={event_id} user={user_id}: {attendance.status.value}"
    )
    return attendance, session
