import os
import logging
import time

import click
from flask import Flask, jsonify
from werkzeug.security import generate_password_hash

from eventsys.config import config_by_name
from eventsys.extensions import db, migrate, login_manager, csrf, limiter, mpesa


def create_app(config_name=None, overrides=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])
    if overrides:
        app.config.update(overrides)

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)
    mpesa.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from eventsys import models  # noqa: F401

    # --- Register blueprints ---
    from eventsys.blueprints.auth import auth_bp
    from eventsys.blueprints.events import events_bp
    from eventsys.blueprints.users import users_bp
    from eventsys.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(events_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(webhooks_bp)

    # M-Pesa callbacks are server-to-server calls from Safaricom, no CSRF token
    csrf.exempt(webhooks_bp)

    # --- Root route ---
    @app.route("/")
    def index():
        return jsonify(service="eventsys", status="ok")

    # --- Error handlers ---
    def _error(status, reason, message):
        return jsonify(success=False, reason=reason, message=message), status

    @app.errorhandler(400)
    def bad_request(e):
        return _error(400, "BadRequest", getattr(e, "description", "Bad request"))

    @app.errorhandler(404)
    def not_found(e):
        return _error(404, "NotFound", "Not found")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error(405, "MethodNotAllowed", "Method not allowed")

    @app.errorhandler(429)
    def too_many_requests(e):
        return _error(429, "RateLimited", "Too many requests. Try again shortly.")

    @app.errorhandler(500)
    def server_error(e):
        db.session.rollback()
        return _error(500, "InternalError", "Something went wrong")

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API: nothing to load, nothing to frame
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def _run_reconciliation():
    """One sweep + one pass over the projection repair queue."""
    from eventsys.services.projection_service import process_repair_queue
    from eventsys.services.reconciliation_service import sweep_pending_sessions

    summary = sweep_pending_sessions()
    repaired, failed = process_repair_queue()
    return summary, repaired, failed


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-demo")
    @click.option("--email", default="demo@eventsys.local", help="Demo user email")
    @click.option("--password", default="demo12345", help="Demo user password")
    @click.option("--phone", default="0712345678", help="Demo user M-Pesa number")
    def seed_demo(email, password, phone):
        """Create a demo user, one free event and one paid event.

        Usage:
            flask seed-demo
            flask seed-demo --email me@example.com --phone 0722000000
        """
        from datetime import datetime, timedelta, timezone
        from decimal import Decimal

        from eventsys.models.event import Event
        from eventsys.models.user import User

        # --- 1. Demo user ---
        user = User.query.filter_by(email=email).first()
        if user:
            click.echo(f"Demo user already exists: {email}")
        else:
            user = User(
                email=email,
                password_hash=generate_password_hash(password),
                full_name="Demo Attendee",
                phone=phone,
            )
            db.session.add(user)
            db.session.flush()
            click.echo(f"Created demo user: {email}")

        starts_at = datetime.now(timezone.utc) + timedelta(days=14)

        # --- 2. Events ---
        free_event = Event(
            title="Community Meetup",
            description="Free evening meetup.",
            location="Nairobi Garage, Westlands",
            starts_at=starts_at,
            capacity=50,
            price=Decimal("0"),
            creator_user_id=user.id,
        )
        paid_event = Event(
            title="Developer Workshop",
            description="Hands-on workshop. Pay with M-Pesa to hold your seat.",
            location="iHub, Nairobi",
            starts_at=starts_at + timedelta(days=1),
            capacity=20,
            price=Decimal("500.00"),
            creator_user_id=user.id,
        )
        db.session.add_all([free_event, paid_event])
        db.session.commit()

        base_url = app.config["APP_BASE_URL"]

        click.echo("")
        click.echo("=" * 60)
        click.echo("Seed data created successfully!")
        click.echo("=" * 60)
        click.echo(f"  User:       {email} / {password}")
        click.echo(f"  Free event: {free_event.title} (id: {free_event.id})")
        click.echo(f"  Paid event: {paid_event.title} (id: {paid_event.id}, KES {paid_event.price})")
        click.echo(f"  RSVP:       POST {base_url}/events/{paid_event.id}/rsvp")
        click.echo("=" * 60)

    @app.cli.command("reconcile-payments")
    def reconcile_payments():
        """Run one payment reconciliation sweep and retry queued projection repairs.

        Meant for cron:
            */1 * * * * flask reconcile-payments
        """
        summary, repaired, failed = _run_reconciliation()
        click.echo(
            "Payments: "
            + ", ".join(f"{key}={value}" for key, value in summary.items())
        )
        click.echo(f"Projection repairs: repaired={repaired}, still_failing={failed}")

    @app.cli.command("repair-projections")
    @click.option("--full", is_flag=True, help="Compare every attendance, not just the repair queue.")
    def repair_projections(full):
        """Bring user_attendances back in line with the event ledger.

        Usage:
            flask repair-projections
            flask repair-projections --full
        """
        from eventsys.services.projection_service import process_repair_queue, repair_all

        if full:
            counts = repair_all()
            click.echo(
                f"Full repair: inserted={counts['inserted']}, "
                f"updated={counts['updated']}, deleted={counts['deleted']}"
            )
        else:
            repaired, failed = process_repair_queue()
            click.echo(f"Repair queue: repaired={repaired}, still_failing={failed}")

    @app.cli.command("run-sweeper")
    @click.option("--interval", type=int, default=None, help="Seconds between sweeps.")
    @click.option("--once", is_flag=True, help="Run a single pass and exit.")
    def run_sweeper(interval, once):
        """Long-running reconciliation loop (alternative to cron).

        Usage:
            flask run-sweeper
            flask run-sweeper --interval 30
        """
        logger = logging.getLogger("eventsys.sweeper")
        interval = interval or app.config["SWEEP_INTERVAL_SECONDS"]
        click.echo(f"Sweeper started (every {interval}s)")

        while True:
            try:
                summary, repaired, failed = _run_reconciliation()
                logger.info(
                    f"Sweep done: {summary}; projections repaired={repaired} failed={failed}"
                )
            except Exception as e:
                db.session.rollback()
                logger.error(f"Sweep pass failed: {e}", exc_info=True)
                if once:
                    raise
            finally:
                db.session.remove()

            if once:
                break
            time.sleep(interval)
