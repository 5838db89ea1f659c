"""Shared test fixtures for the EventSys test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: two users, a free event and a small paid event
- login: helper that logs a test client in through /auth/login
- stk_push: patches the M-Pesa client so STK pushes succeed offline
"""

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from werkzeug.security import generate_password_hash

from eventsys import create_app
from eventsys.extensions import db as _db, mpesa
from eventsys.models.event import Event
from eventsys.models.user import User
from eventsys.services.mpesa_client import StkPushResult

PASSWORD = "password123"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


def make_user(email, phone="0712345678", full_name="Test User"):
    user = User(
        email=email,
        password_hash=generate_password_hash(PASSWORD),
        full_name=full_name,
        phone=phone,
    )
    _db.session.add(user)
    _db.session.flush()
    return user


@pytest.fixture
def seed_data(app, db_session):
    """Seed the database with users and events.

    Returns a dict of plain IDs so tests can use them after commits.
    """
    alice = make_user("alice@example.com", "0712345678", "Alice Wanjiru")
    bob = make_user("bob@example.com", "0722000111", "Bob Otieno")
    carol = make_user("carol@example.com", "0733000222", "Carol Achieng")

    starts_at = datetime.now(timezone.utc) + timedelta(days=7)
    free_event = Event(
        title="Community Meetup",
        location="Westlands",
        starts_at=starts_at,
        capacity=10,
        price=Decimal("0"),
        creator_user_id=alice.id,
    )
    paid_event = Event(
        title="Developer Workshop",
        location="iHub",
        starts_at=starts_at,
        capacity=2,
        price=Decimal("500.00"),
        creator_user_id=alice.id,
    )
    _db.session.add_all([free_event, paid_event])
    _db.session.commit()

    return {
        "alice_id": alice.id,
        "bob_id": bob.id,
        "carol_id": carol.id,
        "free_event_id": free_event.id,
        "paid_event_id": paid_event.id,
    }


@pytest.fixture
def login(client):
    """Log the test client in as the given email."""

    def _login(email):
        resp = client.post(
            "/auth/login",
            json={"email": email, "password": PASSWORD},
        )
        assert resp.status_code == 200
        return resp

    return _login


@pytest.fixture
def stk_push():
    """Make every STK push succeed with a fresh CheckoutRequestID."""
    counter = itertools.count(1)

    def _push(phone, amount, reference, description="Event Payment"):
        n = next(counter)
        return StkPushResult(
            checkout_request_id=f"ws_CO_TEST_{n:04d}",
            merchant_request_id=f"29115-TEST-{n}",
            customer_message="Success. Request accepted for processing",
        )

    with patch.object(mpesa, "initiate_payment", side_effect=_push) as mock_push:
        yield mock_push
