"""Payment session model.

One row per STK push the gateway accepted. Created by the registration
service right after initiation, closed exactly once by the reconciliation
service (callback or poll sweep).
"""

import uuid
from datetime import datetime, timezone

from eventsys.extensions import db
from eventsys.models.status import AttendanceStatus, status_column


class PaymentSession(db.Model):
    __tablename__ = "payment_sessions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    checkout_request_id = db.Column(
        db.String(100), unique=True, nullable=False
    )  # e.g. "ws_CO_191220191020363925"
    merchant_request_id = db.Column(db.String(100), nullable=True)
    event_id = db.Column(db.String(36), nullable=False, index=True)
    user_id = db.Column(db.String(36), nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # whole KES, rounded up
    phone = db.Column(db.String(20), nullable=False)  # 254XXXXXXXXX
    status = db.Column(
        status_column(db), nullable=False, default=AttendanceStatus.PENDING
    )
    result_code = db.Column(db.String(20), nullable=True)
    result_desc = db.Column(db.String(255), nullable=True)
    poll_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_polled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.Index("ix_payment_sessions_status_created", "status", "created_at"),
    )

    @property
    def is_resolved(self):
        return self.status != AttendanceStatus.PENDING

    def __repr__(self):
        return f"<PaymentSession {self.checkout_request_id} ({self.status.value})>"
