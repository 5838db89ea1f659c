"""Users blueprint — /users/me/*

Read side of the user projection: the events a user is attending,
served from user_attendances without touching the event ledger.
"""

from flask import Blueprint, jsonify
from flask_login import current_user

from eventsys.decorators import json_api
from eventsys.services import projection_service

users_bp = Blueprint("users", __name__, url_prefix="/users")


@users_bp.route("/me/attendances", methods=["GET"])
@json_api
def my_attendances():
    """Events the current user is registered for, newest first."""
    rows = projection_service.get_user_attendances(current_user.id)
    return jsonify(
        success=True,
        attendances=[
            {
                "eventId": row.event_id,
                "status": row.status.value,
                "paymentReference": row.payment_reference,
                "paymentDate": row.payment_date.isoformat() if row.payment_date else None,
            }
            for row in rows
        ],
    ), 200
