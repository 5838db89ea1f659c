"""Projection service — keeps user_attendances convergent with the ledger.

The attendances table (event side) is authoritative. user_attendances
(user side) is a cache of the same facts keyed by user. There is no
cross-record transaction between the two; instead:

1. Every ledger change is followed by sync_projection(), which re-derives
   the one projection row for that (event, user) pair.
2. If that second write fails, the pair is queued in projection_repairs
   and process_repair_queue() retries it.
3. repair_all() compares both tables wholesale and fixes any divergence
   the queue didn't catch (e.g. the process died between the two writes).

Nothing here raises to the caller: the ledger write has already
committed, so a projection failure is a repair job, not a request error.
"""

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from eventsys.extensions import db
from eventsys.models.event import Attendance
from eventsys.models.projection_repair import ProjectionRepair
from eventsys.models.user_attendance import UserAttendance

logger = logging.getLogger(__name__)


def _apply(attendance, row, event_id, user_id):
    """Make `row` mirror `attendance`. Returns "inserted"/"updated"/"deleted"/None."""
    if attendance is None:
        if row is None:
            return None
        db.session.delete(row)
        return "deleted"

    if row is None:
        db.session.add(UserAttendance(
            user_id=user_id,
            event_id=event_id,
            status=attendance.status,
            payment_reference=attendance.payment_reference,
            payment_date=attendance.payment_date,
        ))
        return "inserted"

    if (
        row.status == attendance.status
        and row.payment_reference == attendance.payment_reference
        and row.payment_date == attendance.payment_date
    ):
        return None

    row.status = attendance.status
    row.payment_reference = attendance.payment_reference
    row.payment_date = attendance.payment_date
    return "updated"


def _write_projection(event_id, user_id):
    attendance = Attendance.query.filter_by(
        event_id=event_id, user_id=user_id
    ).first()
    row = UserAttendance.query.filter_by(
        event_id=event_id, user_id=user_id
    ).first()
    change = _apply(attendance, row, event_id, user_id)
    db.session.commit()
    return change


def sync_projection(event_id, user_id, reason="sync"):
    """Re-derive the projection row for one (event, user) pair.

    Returns True if the projection is now in step with the ledger, False if
    the write failed and the pair was queued for repair.
    """
    try:
        change = _write_projection(event_id, user_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(
            f"Projection write failed for event={event_id} user={user_id}: {e}",
            exc_info=True,
        )
        enqueue_repair(event_id, user_id, reason=reason, error=str(e))
        return False

    if change:
        logger.debug(f"Projection {change} for event={event_id} user={user_id}")
    return True


def enqueue_repair(event_id, user_id, reason=None, error=None):
    """Record a pair whose projection needs re-deriving.

    Upserts on (event_id, user_id). If even this write fails the divergence
    is left for repair_all() and only logged.
    """
    try:
        entry = ProjectionRepair.query.filter_by(
            event_id=event_id, user_id=user_id
        ).first()
        if entry is None:
            entry = ProjectionRepair(event_id=event_id, user_id=user_id, attempts=0)
            db.session.add(entry)
        entry.reason = reason
        entry.last_error = error
        db.session.commit()
        return entry
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(
            f"Could not queue projection repair for event={event_id} user={user_id}: {e}"
        )
        return None


def process_repair_queue(max_attempts=None):
    """Retry queued projection writes.

    Entries that have failed max_attempts times (PROJECTION_REPAIR_MAX_ATTEMPTS
    by default) stay in the table for repair_all() and manual inspection.
    Returns (repaired, failed).
    """
    if max_attempts is None:
        max_attempts = current_app.config.get("PROJECTION_REPAIR_MAX_ATTEMPTS")

    query = ProjectionRepair.query.order_by(ProjectionRepair.created_at.asc())
    if max_attempts:
        query = query.filter(ProjectionRepair.attempts < max_attempts)

    pending = [(e.id, e.event_id, e.user_id) for e in query.all()]
    repaired = failed = 0

    for entry_id, event_id, user_id in pending:
        try:
            _write_projection(event_id, user_id)
            entry = db.session.get(ProjectionRepair, entry_id)
            if entry is not None:
                db.session.delete(entry)
                db.session.commit()
            repaired += 1
        except SQLAlchemyError as e:
            db.session.rollback()
            failed += 1
            logger.warning(
                f"Projection repair still failing for event={event_id} user={user_id}: {e}"
            )
            entry = db.session.get(ProjectionRepair, entry_id)
            if entry is not None:
                entry.attempts = (entry.attempts or 0) + 1
                entry.last_error = str(e)
                db.session.commit()

    if pending:
        logger.info(f"Projection repair queue: {repaired} repaired, {failed} failed")
    return repaired, failed


def repair_all():
    """Full detect-and-repair pass over both tables.

    Returns a dict of counts: inserted, updated, deleted.
    """
    counts = {"inserted": 0, "updated": 0, "deleted": 0}

    ledger = {
        (a.event_id, a.user_id): a for a in Attendance.query.all()
    }
    projection = {
        (r.event_id, r.user_id): r for r in UserAttendance.query.all()
    }

    for key in set(ledger) | set(projection):
        event_id, user_id = key
        change = _apply(ledger.get(key), projection.get(key), event_id, user_id)
        if change:
            counts[change] += 1
            logger.warning(f"Projection drift {change} for event={event_id} user={user_id}")

    # Both tables now agree, so queued pairs are settled too
    ProjectionRepair.query.delete()
    db.session.commit()

    return counts


def get_user_attendances(user_id):
    """Return the user's projected attendances, most recent first."""
    return (
        UserAttendance.query
        .filter_by(user_id=user_id)
        .order_by(UserAttendance.synced_at.desc())
        .all()
    )
