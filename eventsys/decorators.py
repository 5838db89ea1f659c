"""
Custom route decorators for the JSON API.

- json_api: ensures user is logged in AND turns RsvpError subclasses into
  the {success, reason, message} error body with the error's status code.
"""

import logging
from functools import wraps

from flask import jsonify
from flask_login import login_required

from eventsys.errors import RsvpError

logger = logging.getLogger(__name__)


def error_response(error):
    """JSON body for an RsvpError."""
    body = {"success": False, "reason": error.reason, "message": error.message}
    return jsonify(body), error.status_code


def json_api(f):
    """Require login + map domain errors to JSON responses."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except RsvpError as e:
            logger.info(f"{f.__name__} rejected: {e.reason} ({e.message})")
            return error_response(e)

    return decorated
