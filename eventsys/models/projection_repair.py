"""Projection repair queue.

When the ledger write succeeds but the mirrored user_attendances write
fails, the (event, user) pair lands here. The repair sweep re-derives the
projection row from the ledger and deletes the entry.
"""

import uuid
from datetime import datetime, timezone

from eventsys.extensions import db


class ProjectionRepair(db.Model):
    __tablename__ = "projection_repairs"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(db.String(36), nullable=False)
    user_id = db.Column(db.String(36), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("event_id", "user_id", name="uq_projection_repairs_pair"),
    )

    def __repr__(self):
        return f"<ProjectionRepair event={self.event_id} user={self.user_id} attempts={self.attempts}>"
