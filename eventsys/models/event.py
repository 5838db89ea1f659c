"""Event and attendance ledger models.

- Event: a capacity-bounded event. reserved_count is the live number of
  Pending + Paid attendances and is only ever changed by conditional
  UPDATEs in the same transaction as the ledger row they account for.
- Attendance: one row per (event, user). This table is the single
  authority for who attends what; user_attendances is derived from it.
"""

import uuid
from datetime import datetime, timezone

from eventsys.extensions import db
from eventsys.models.status import AttendanceStatus, status_column


def _utcnow():
    return datetime.now(timezone.utc)


class Event(db.Model):
    __tablename__ = "events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(255), nullable=True)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    capacity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)  # KES, 0 = free
    reserved_count = db.Column(db.Integer, nullable=False, default=0)
    creator_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        db.CheckConstraint("capacity >= 0", name="ck_events_capacity_non_negative"),
        db.CheckConstraint("price >= 0", name="ck_events_price_non_negative"),
        db.CheckConstraint("reserved_count >= 0", name="ck_events_reserved_non_negative"),
        db.CheckConstraint("reserved_count <= capacity", name="ck_events_reserved_lte_capacity"),
    )

    # --- Relationships ---
    attendances = db.relationship(
        "Attendance",
        back_populates="event",
        order_by="Attendance.created_at",
        lazy="dynamic",
    )

    @property
    def is_paid(self):
        return self.price is not None and self.price > 0

    @property
    def remaining_spots(self):
        return max(0, self.capacity - (self.reserved_count or 0))

    @property
    def is_full(self):
        return self.remaining_spots == 0

    def __repr__(self):
        return f"<Event {self.title} ({self.reserved_count}/{self.capacity})>"


class Attendance(db.Model):
    __tablename__ = "attendances"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(
        db.String(36), db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    status = db.Column(status_column(db), nullable=False)
    payment_reference = db.Column(
        db.String(100), unique=True, nullable=True
    )  # CheckoutRequestID; paid events only
    payment_date = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        db.UniqueConstraint("event_id", "user_id", name="uq_attendances_event_user"),
        db.Index("ix_attendances_status_created", "status", "created_at"),
    )

    # --- Relationships ---
    event = db.relationship("Event", back_populates="attendances")
    user = db.relationship("User")

    @property
    def holds_slot(self):
        return AttendanceStatus(self.status).holds_slot

    def __repr__(self):
        return f"<Attendance event={self.event_id} user={self.user_id} ({self.status.value})>"
