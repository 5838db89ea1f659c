"""Reconciliation service — settles pending payments into the ledger.

Two triggers feed the same transition:
- handle_callback(): the provider's STK callback, delivered zero, one or
  many times, in any order, possibly after the payment is already settled.
- sweep_pending_sessions(): periodic pass that queries sessions the
  callback hasn't settled within PAYMENT_POLL_AFTER_SECONDS, and
  force-fails anything still open after PAYMENT_HARD_DEADLINE_SECONDS.

The transition itself is a compare-and-swap:

    UPDATE attendances SET status = :new
    WHERE payment_reference = :checkout_id AND status = 'pending'

so a replayed callback, a callback racing the sweep, or a late result for
a payment that already timed out all collapse into a no-op. A FAILED
transition gives the slot back in the same transaction.
"""

import enum
import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import update

from eventsys.errors import GatewayError
from eventsys.extensions import db, mpesa
from eventsys.models.event import Attendance
from eventsys.models.mpesa_callback import MpesaCallback
from eventsys.models.payment_session import PaymentSession
from eventsys.models.status import AttendanceStatus, status_for_result_code
from eventsys.services import capacity_gate, notification_service, projection_service
from eventsys.services.audit_service import log_audit

logger = logging.getLogger(__name__)

TIMEOUT_RESULT_CODE = "TIMEOUT"
TIMEOUT_RESULT_DESC = "Payment confirmation timed out"
ORPHAN_RESULT_DESC = "Reservation never reached the payment gateway"


class ReconciliationOutcome(enum.Enum):
    PAID = "paid"
    FAILED = "failed"
    NOOP = "noop"  # already terminal; not an error
    UNKNOWN_SESSION = "unknown_session"
    STILL_PENDING = "still_pending"
    INVALID = "invalid"
    ERROR = "error"


def _utcnow():
    return datetime.now(timezone.utc)


def _aware(dt):
    # SQLite returns naive datetimes; Postgres returns aware ones.
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ──────────────────────────────────────────────
# Transition
# ──────────────────────────────────────────────

def _settle(event_id, new_status, *, checkout_request_id=None, attendance_id=None,
            result_code=None, result_desc=None, source):
    """Apply PENDING -> new_status to the ledger and close the session.

    Exactly one of checkout_request_id / attendance_id selects the row.
    Commits. Returns (transitioned, session_closed).
    """
    if not AttendanceStatus.PENDING.can_transition_to(new_status):
        raise ValueError(f"Cannot settle a payment into {new_status!r}")

    now = _utcnow()
    values = {"status": new_status, "updated_at": now}
    if new_status == AttendanceStatus.PAID:
        values["payment_date"] = now

    stmt = update(Attendance).where(Attendance.status == AttendanceStatus.PENDING)
    if checkout_request_id is not None:
        stmt = stmt.where(Attendance.payment_reference == checkout_request_id)
    else:
        stmt = stmt.where(Attendance.id == attendance_id)

    try:
        result = db.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        transitioned = result.rowcount == 1

        if transitioned and new_status == AttendanceStatus.FAILED:
            capacity_gate.free_slot(event_id)

        session_closed = False
        if checkout_request_id is not None:
            result = db.session.execute(
                update(PaymentSession)
                .where(PaymentSession.checkout_request_id == checkout_request_id)
                .where(PaymentSession.status == AttendanceStatus.PENDING)
                .values(
                    status=new_status,
                    result_code=result_code,
                    result_desc=(result_desc or "")[:255],
                    resolved_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session_closed = result.rowcount == 1

        if transitioned:
            log_audit(event_id, f"payment.{new_status.value}", {
                "checkout_request_id": checkout_request_id,
                "attendance_id": attendance_id,
                "result_code": result_code,
                "result_desc": result_desc,
                "source": source,
            })
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return transitioned, session_closed


def _after_transition(event_id, user_id, new_status):
    projection_service.sync_projection(event_id, user_id, reason=f"payment.{new_status.value}")
    notification_service.notify_payment_result(event_id, user_id, new_status)


def apply_result(checkout_request_id, result_code, result_desc=None, source="callback"):
    """Settle one payment from a provider result code.

    Safe to call any number of times for the same checkout_request_id.
    Returns a ReconciliationOutcome.
    """
    new_status = status_for_result_code(result_code)
    if new_status == AttendanceStatus.PENDING:
        return ReconciliationOutcome.STILL_PENDING

    session = PaymentSession.query.filter_by(
        checkout_request_id=checkout_request_id
    ).first()
    if session is None:
        # Possible if the callback beats the coordinator's commit; the sweep
        # picks the session up once it exists.
        logger.warning(f"{source}: no payment session for {checkout_request_id}")
        return ReconciliationOutcome.UNKNOWN_SESSION

    event_id, user_id = session.event_id, session.user_id
    transitioned, session_closed = _settle(
        event_id,
        new_status,
        checkout_request_id=checkout_request_id,
        result_code=str(result_code),
        result_desc=result_desc,
        source=source,
    )

    if not transitioned:
        if session_closed:
            logger.warning(
                f"{source}: {checkout_request_id} settled {new_status.value} "
                f"but the registration was already gone"
            )
        else:
            logger.debug(f"{source}: {checkout_request_id} already settled, ignoring")
        return ReconciliationOutcome.NOOP

    logger.info(
        f"{source}: {checkout_request_id} -> {new_status.value} "
        f"(event={event_id} user={user_id}, code={result_code})"
    )
    _after_transition(event_id, user_id, new_status)
    return ReconciliationOutcome(new_status.value)


def force_fail(checkout_request_id, reason=TIMEOUT_RESULT_DESC, source="sweep"):
    """Settle a session as FAILED without a provider result."""
    session = PaymentSession.query.filter_by(
        checkout_request_id=checkout_request_id
    ).first()
    if session is None:
        return ReconciliationOutcome.UNKNOWN_SESSION

    event_id, user_id = session.event_id, session.user_id
    transitioned, _ = _settle(
        event_id,
        AttendanceStatus.FAILED,
        checkout_request_id=checkout_request_id,
        result_code=TIMEOUT_RESULT_CODE,
        result_desc=reason,
        source=source,
    )
    if not transitioned:
        logger.debug(f"{source}: {checkout_request_id} already settled, nothing to force")
        return ReconciliationOutcome.NOOP

    logger.warning(f"{source}: force-failed {checkout_request_id} ({reason})")
    _after_transition(event_id, user_id, AttendanceStatus.FAILED)
    return ReconciliationOutcome.FAILED


# ──────────────────────────────────────────────
# Callback path
# ──────────────────────────────────────────────

def parse_callback(payload):
    """Extract (checkout_request_id, result_code, result_desc) from a callback.

    Accepts the provider's envelope {"Body": {"stkCallback": {...}}} as
    well as the flat {CheckoutRequestID, ResultCode, ResultDesc} form.
    Raises ValueError if the payload has no CheckoutRequestID/ResultCode.
    """
    if not isinstance(payload, dict):
        raise ValueError("Callback body is not a JSON object")

    body = payload.get("Body")
    if isinstance(body, dict) and isinstance(body.get("stkCallback"), dict):
        payload = body["stkCallback"]

    checkout_request_id = payload.get("CheckoutRequestID")
    result_code = payload.get("ResultCode")
    if not checkout_request_id or result_code is None or result_code == "":
        raise ValueError("Callback missing CheckoutRequestID or ResultCode")

    return str(checkout_request_id), str(result_code), payload.get("ResultDesc", "")


def _record_callback(payload, checkout_request_id=None, result_code=None, result_desc=None):
    try:
        receipt = MpesaCallback(
            checkout_request_id=checkout_request_id,
            result_code=result_code,
            result_desc=(result_desc or "")[:255] or None,
            payload=payload if isinstance(payload, dict) else {"raw": str(payload)},
        )
        db.session.add(receipt)
        db.session.commit()
        return receipt.id
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to record M-Pesa callback {checkout_request_id}: {e}")
        return None


def _mark_callback(receipt_id, outcome):
    if receipt_id is None:
        return
    try:
        receipt = db.session.get(MpesaCallback, receipt_id)
        if receipt is not None:
            receipt.outcome = outcome.value
            db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to update M-Pesa callback receipt {receipt_id}: {e}")


def handle_callback(payload):
    """Process one provider callback delivery. Never raises.

    Whatever goes wrong here is logged; the poll sweep will query the
    session later, so the provider is always acknowledged.
    """
    try:
        checkout_request_id, result_code, result_desc = parse_callback(payload)
    except ValueError as e:
        logger.warning(f"Ignoring malformed M-Pesa callback: {e}")
        receipt_id = _record_callback(payload)
        _mark_callback(receipt_id, ReconciliationOutcome.INVALID)
        return ReconciliationOutcome.INVALID

    receipt_id = _record_callback(payload, checkout_request_id, result_code, result_desc)

    try:
        outcome = apply_result(
            checkout_request_id, result_code, result_desc, source="callback"
        )
    except Exception as e:
        db.session.rollback()
        logger.error(
            f"Error applying M-Pesa callback for {checkout_request_id}: {e}",
            exc_info=True,
        )
        outcome = ReconciliationOutcome.ERROR

    _mark_callback(receipt_id, outcome)
    return outcome


# ──────────────────────────────────────────────
# Poll path
# ──────────────────────────────────────────────

def is_due_for_poll(session, now=None):
    """True once a pending session has waited longer than the poll window."""
    if session.status != AttendanceStatus.PENDING:
        return False
    now = now or _utcnow()
    window = timedelta(seconds=current_app.config["PAYMENT_POLL_AFTER_SECONDS"])
    return _aware(session.created_at) <= now - window


def poll_session(checkout_request_id, now=None):
    """Query the provider for one session and apply whatever it says.

    Gateway failures are logged and reported as ERROR; they never raise.
    """
    now = now or _utcnow()
    db.session.execute(
        update(PaymentSession)
        .where(PaymentSession.checkout_request_id == checkout_request_id)
        .values(
            poll_attempts=PaymentSession.poll_attempts + 1,
            last_polled_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    try:
        result = mpesa.query_status(checkout_request_id)
    except GatewayError as e:
        logger.warning(f"Status query for {checkout_request_id} failed: {e!r}")
        return ReconciliationOutcome.ERROR

    if result.is_pending:
        logger.debug(f"{checkout_request_id} still awaiting payer: {result.result_desc}")
        return ReconciliationOutcome.STILL_PENDING

    return apply_result(
        checkout_request_id, result.result_code, result.result_desc, source="poll"
    )


def _force_fail_after_error(checkout_request_id):
    """Past the deadline a broken poll must not keep the slot held."""
    try:
        return force_fail(checkout_request_id) == ReconciliationOutcome.FAILED
    except Exception as e:
        db.session.rollback()
        logger.error(f"Force-fail of {checkout_request_id} failed: {e}", exc_info=True)
        return False


def sweep_pending_sessions(now=None):
    """One reconciliation pass over unresolved payments.

    1. Sessions pending longer than the poll window are queried.
    2. Sessions still unresolved past the hard deadline are force-failed,
       even if the query itself failed.
    3. Pending attendances that never got a session (the process died
       between reserve and the gateway answer) are force-failed past the
       hard deadline.

    Returns a summary dict of counts.
    """
    now = now or _utcnow()
    config = current_app.config
    poll_cutoff = now - timedelta(seconds=config["PAYMENT_POLL_AFTER_SECONDS"])
    deadline_cutoff = now - timedelta(seconds=config["PAYMENT_HARD_DEADLINE_SECONDS"])

    summary = {
        "checked": 0,
        "paid": 0,
        "failed": 0,
        "still_pending": 0,
        "forced": 0,
        "orphans": 0,
        "errors": 0,
    }

    due = [
        (s.checkout_request_id, _aware(s.created_at) <= deadline_cutoff)
        for s in (
            PaymentSession.query
            .filter(PaymentSession.status == AttendanceStatus.PENDING)
            .filter(PaymentSession.created_at <= poll_cutoff)
            .order_by(PaymentSession.created_at.asc())
            .all()
        )
    ]

    for checkout_request_id, past_deadline in due:
        summary["checked"] += 1
        try:
            outcome = poll_session(checkout_request_id, now=now)
            if outcome in (ReconciliationOutcome.STILL_PENDING, ReconciliationOutcome.ERROR):
                if past_deadline:
                    if force_fail(checkout_request_id) == ReconciliationOutcome.FAILED:
                        summary["forced"] += 1
                    continue
                if outcome == ReconciliationOutcome.ERROR:
                    summary["errors"] += 1
                else:
                    summary["still_pending"] += 1
            elif outcome == ReconciliationOutcome.PAID:
                summary["paid"] += 1
            elif outcome == ReconciliationOutcome.FAILED:
                summary["failed"] += 1
        except Exception as e:
            db.session.rollback()
            logger.error(f"Sweep failed on {checkout_request_id}: {e}", exc_info=True)
            if past_deadline and _force_fail_after_error(checkout_request_id):
                summary["forced"] += 1
            else:
                summary["errors"] += 1

    orphans = [
        (a.id, a.event_id, a.user_id)
        for a in (
            Attendance.query
            .filter(Attendance.status == AttendanceStatus.PENDING)
            .filter(Attendance.payment_reference.is_(None))
            .filter(Attendance.created_at <= deadline_cutoff)
            .all()
        )
    ]
    for attendance_id, event_id, user_id in orphans:
        try:
            transitioned, _ = _settle(
                event_id,
                AttendanceStatus.FAILED,
                attendance_id=attendance_id,
                result_code=TIMEOUT_RESULT_CODE,
                result_desc=ORPHAN_RESULT_DESC,
                source="sweep",
            )
            if transitioned:
                summary["orphans"] += 1
                logger.warning(f"sweep: released orphan reservation {attendance_id}")
                _after_transition(event_id, user_id, AttendanceStatus.FAILED)
        except Exception as e:
            db.session.rollback()
            summary["errors"] += 1
            logger.error(f"Sweep failed on orphan {attendance_id}: {e}", exc_info=True)

    if any(summary.values()):
        logger.info(f"Payment sweep: {summary}")
    return summary
