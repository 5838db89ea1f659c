"""M-Pesa callback receipt log.

Every STK callback the provider delivers is recorded here, duplicates
included, with the outcome the reconciliation service reached for it.
Idempotency comes from the compare-and-swap on the attendance, not from
this table; it exists so a payment dispute can be traced end to end.
"""

import uuid

from eventsys.extensions import db


class MpesaCallback(db.Model):
    __tablename__ = "mpesa_callbacks"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    checkout_request_id = db.Column(
        db.String(100), nullable=True, index=True
    )  # may be missing on malformed deliveries
    result_code = db.Column(db.String(20), nullable=True)
    result_desc = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.JSON, default=dict)
    outcome = db.Column(
        db.String(50), nullable=True
    )  # paid | failed | noop | unknown_session | invalid | error
    received_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<MpesaCallback {self.checkout_request_id} ({self.result_code})>"
