"""Auth blueprint — /auth/*

Session login/logout for API clients (Flask-Login). Accepts JSON or a
plain form POST; always answers in JSON.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from eventsys.extensions import limiter
from eventsys.models.user import User

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute", methods=["POST"])
def login():
    """Standard email + password login."""
    if request.is_json:
        data = request.get_json(silent=True) or {}
    else:
        data = request.form.to_dict()

    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    remember = bool(data.get("remember"))

    if not email or not password:
        return jsonify(
            success=False,
            reason="ValidationError",
            message="Email and password are required.",
        ), 400

    user = User.query.filter_by(email=email).first()

    if user is None or not check_password_hash(user.password_hash, password):
        logger.info(f"Failed login for {email}")
        return jsonify(
            success=False,
            reason="InvalidCredentials",
            message="Invalid email or password.",
        ), 401

    if not user.is_active:
        return jsonify(
            success=False,
            reason="AccountDisabled",
            message="Your account has been deactivated.",
        ), 403

    login_user(user, remember=remember)
    return jsonify(success=True, user={"id": user.id, "email": user.email}), 200


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    """End the session."""
    user_id = current_user.id
    logout_user()
    logger.info(f"User {user_id} logged out")
    return jsonify(success=True), 200
