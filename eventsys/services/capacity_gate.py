"""Capacity gate — decides and records whether a registration gets a slot.

The check and the write are one operation. Two layers enforce it:

- In-process: a striped lock per event id serializes reserve/release
  for the same event within one worker. Different events hash to
  (usually) different stripes and proceed in parallel.
- In the database: reserved_count is bumped with
  UPDATE ... WHERE reserved_count < capacity in the same transaction as
  the attendance insert, so two workers can't both take the last slot.
  First committer wins; the loser sees rowcount 0.

Functions here commit their own transaction.
"""

import logging
import threading
import zlib
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from eventsys.errors import (
    CapacityExceededError,
    DuplicateRegistrationError,
    EventNotFoundError,
)
from eventsys.extensions import db
from eventsys.models.event import Attendance, Event
from eventsys.models.status import AttendanceStatus

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64
_event_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]


@contextmanager
def event_lock(event_id):
    """Hold the in-process lock for one event's capacity bookkeeping."""
    lock = _event_locks[zlib.crc32(str(event_id).encode()) % LOCK_STRIPES]
    with lock:
        yield


def _claim_slot(event_id):
    """Atomically take one slot. Returns False when the event is full."""
    result = db.session.execute(
        update(Event)
        .where(Event.id == event_id)
        .where(Event.reserved_count < Event.capacity)
        .values(reserved_count=Event.reserved_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def free_slot(event_id):
    """Give one slot back. Does NOT commit."""
    db.session.execute(
        update(Event)
        .where(Event.id == event_id)
        .where(Event.reserved_count > 0)
        .values(reserved_count=Event.reserved_count - 1)
        .execution_options(synchronize_session=False)
    )


def try_reserve(event_id, user_id):
    """Reserve a slot for user_id and append their attendance to the ledger.

    Free events record the attendance as PAID immediately; paid events
    record it as PENDING until the payment is reconciled.

    Returns the committed Attendance.
    Raises EventNotFoundError, DuplicateRegistrationError,
    CapacityExceededError.
    """
    with event_lock(event_id):
        try:
            event = db.session.get(Event, event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            is_paid = event.is_paid

            existing = Attendance.query.filter_by(
                event_id=event_id, user_id=user_id
            ).first()
            if existing is not None:
                if existing.status != AttendanceStatus.FAILED:
                    raise DuplicateRegistrationError(event_id, user_id)
                # A failed payment doesn't block a second attempt
                db.session.execute(
                    delete(Attendance)
                    .where(Attendance.id == existing.id)
                    .where(Attendance.status == AttendanceStatus.FAILED)
                    .execution_options(synchronize_session=False)
                )
                db.session.expunge(existing)

            if not _claim_slot(event_id):
                raise CapacityExceededError(event_id)

            now = datetime.now(timezone.utc)
            attendance = Attendance(
                event_id=event_id,
                user_id=user_id,
                status=AttendanceStatus.PENDING if is_paid else AttendanceStatus.PAID,
                payment_date=None if is_paid else now,
            )
            db.session.add(attendance)
            db.session.commit()
        except IntegrityError:
            # Same user racing themselves from another worker
            db.session.rollback()
            raise DuplicateRegistrationError(event_id, user_id)
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        f"Reserved slot on event {event_id} for user {user_id} "
        f"({attendance.status.value})"
    )
    return attendance


def release(attendance_id, expected_status=None):
    """Delete an attendance if it is still in expected_status.

    Compare-and-delete: if the row has moved on (e.g. the reconciler just
    marked it FAILED) nothing happens. The event's reserved_count is
    decremented only when the deleted row was holding a slot.

    Caller must hold event_lock(event_id). Does NOT commit.
    Returns the status the deleted row had, or None if nothing was deleted.
    """
    attendance = db.session.get(Attendance, attendance_id)
    if attendance is None:
        return None
    status = attendance.status
    if expected_status is not None and status != expected_status:
        return None

    result = db.session.execute(
        delete(Attendance)
        .where(Attendance.id == attendance_id)
        .where(Attendance.status == status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    if status.holds_slot:
        free_slot(attendance.event_id)
    db.session.expunge(attendance)
    return status
