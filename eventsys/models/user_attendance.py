"""User-side attendance projection.

A denormalized copy of the attendances ledger keyed by user, for the
"events I'm attending" read path. Never written to directly by request
handlers; projection_service re-derives rows from the ledger and repairs
any divergence.
"""

import uuid
from datetime import datetime, timezone

from eventsys.extensions import db
from eventsys.models.status import status_column


class UserAttendance(db.Model):
    __tablename__ = "user_attendances"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(db.String(36), nullable=False, index=True)
    event_id = db.Column(db.String(36), nullable=False)
    status = db.Column(status_column(db), nullable=False)
    payment_reference = db.Column(db.String(100), nullable=True)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=True)
    synced_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("user_id", "event_id", name="uq_user_attendances_user_event"),
    )

    def __repr__(self):
        return f"<UserAttendance user={self.user_id} event={self.event_id} ({self.status.value})>"
