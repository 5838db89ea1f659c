"""Audit event model.

Logs every registration and payment state change (rsvp.created,
rsvp.cancelled, rsvp.compensated, payment.initiated, payment.paid,
payment.failed) for support and debugging.
"""

import uuid

from eventsys.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(
        db.String(36), nullable=True, index=True
    )  # no FK: audit rows outlive deleted events
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )  # None for system-initiated actions (callbacks, sweeps)
    action = db.Column(db.String(255), nullable=False)  # e.g. "payment.paid"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    actor = db.relationship("User", back_populates="audit_events")

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
