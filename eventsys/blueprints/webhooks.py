"""Webhooks blueprint — /events/mpesa/callback

Receives M-Pesa STK push results. CSRF-exempt.

Safaricom retries callbacks that don't get a 200, so this endpoint
acknowledges every request. Anything that couldn't be applied is picked
up by the reconciliation sweep.
"""

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from eventsys.services import reconciliation_service

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/events/mpesa")

ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _token_ok():
    """Check the shared token embedded in our CallBackURL, if one is set."""
    expected = current_app.config.get("MPESA_CALLBACK_TOKEN")
    if not expected:
        return True
    supplied = request.args.get("token", "")
    return hmac.compare_digest(supplied.encode(), expected.encode())


@webhooks_bp.route("/callback", methods=["POST"])
def mpesa_callback():
    """Receive and process an STK push callback.

    1. Check the callback token (when configured)
    2. Parse the JSON body
    3. Pass to handle_callback (idempotent via compare-and-swap)
    4. Return 200 to acknowledge receipt, always

    CSRF is exempted for this blueprint in create_app().
    """
    if not _token_ok():
        logger.warning(
            f"M-Pesa callback with bad token from {request.remote_addr}; ignored"
        )
        return jsonify(ACK), 200

    payload = request.get_json(silent=True)
    if payload is None:
        logger.warning("M-Pesa callback without a JSON body; ignored")
        return jsonify(ACK), 200

    outcome = reconciliation_service.handle_callback(payload)
    logger.info(f"M-Pesa callback processed: {outcome.value}")
    return jsonify(ACK), 200
