"""Events blueprint — /events/<event_id>/rsvp

RSVP API for logged-in users. All responses are JSON.

Route Map:
  POST   /events/<event_id>/rsvp  — register (starts an STK push for paid events)
  DELETE /events/<event_id>/rsvp  — cancel, whatever the payment state
  GET    /events/<event_id>/rsvp  — caller's registration + payment status
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from eventsys.decorators import json_api
from eventsys.extensions import limiter
from eventsys.services import registration_service

logger = logging.getLogger(__name__)

events_bp = Blueprint("events", __name__, url_prefix="/events")


def _request_data():
    """Accept JSON or a plain form POST."""
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _isoformat(value):
    return value.isoformat() if value else None


# ──────────────────────────────────────────────
# POST /events/<event_id>/rsvp
# ──────────────────────────────────────────────

@events_bp.route("/<event_id>/rsvp", methods=["POST"])
@limiter.limit("10 per minute", methods=["POST"])
@json_api
def rsvp(event_id):
    """RSVP the current user.

    Body: { phone } — required for paid events, falls back to the
    phone on the user's profile.
    """
    data = _request_data()
    phone = (data.get("phone") or "").strip() or current_user.phone

    result = registration_service.register(event_id, current_user.id, phone)

    body = {
        "success": True,
        "message": result.message,
        "status": result.status.value,
    }
    if result.payment_reference:
        body["paymentReference"] = result.payment_reference
    return jsonify(body), 200


# ──────────────────────────────────────────────
# DELETE /events/<event_id>/rsvp
# ──────────────────────────────────────────────

@events_bp.route("/<event_id>/rsvp", methods=["DELETE"])
@json_api
def cancel_rsvp(event_id):
    """Cancel the current user's RSVP. Idempotent."""
    removed = registration_service.cancel(event_id, current_user.id)
    message = "RSVP cancelled" if removed else "You were not registered for this event"
    return jsonify(success=True, message=message), 200


# ──────────────────────────────────────────────
# GET /events/<event_id>/rsvp
# ──────────────────────────────────────────────

@events_bp.route("/<event_id>/rsvp", methods=["GET"])
@json_api
def rsvp_status(event_id):
    """Current user's registration, re-checked with M-Pesa when overdue."""
    attendance, session = registration_service.get_registration_status(
        event_id, current_user.id
    )
    return jsonify(
        success=True,
        status=attendance.status.value,
        paymentReference=attendance.payment_reference,
        paymentDate=_isoformat(attendance.payment_date),
        resultDesc=session.result_desc if session else None,
    ), 200
