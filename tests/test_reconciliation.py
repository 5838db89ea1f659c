"""Tests for payment reconciliation — callback endpoint, CAS transitions, sweep.

Covers:
- Callback always acknowledged with 200 (malformed, unknown, bad token)
- Envelope and flat callback bodies
- Pending -> Paid / Failed, slot freed on Failed
- Replayed callbacks are no-ops (exactly one transition)
- Late callback after a timeout does not resurrect the registration
- Sweep: poll window, hard deadline, query errors, orphan reservations
- Notifier failures never affect reconciliation state
- End-to-end capacity scenario (A paid, B timed out, C full, D gets B's slot)
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from flask import render_template

from eventsys.errors import CapacityExceededError, GatewayNetworkError
from eventsys.extensions import db, mpesa
from eventsys.models.audit import AuditEvent
from eventsys.models.event import Attendance, Event
from eventsys.models.mpesa_callback import MpesaCallback
from eventsys.models.payment_session import PaymentSession
from eventsys.models.status import AttendanceStatus
from eventsys.models.user import User
from eventsys.models.user_attendance import UserAttendance
from eventsys.services import reconciliation_service, registration_service
from eventsys.services.mpesa_client import StkQueryResult
from eventsys.services.reconciliation_service import ReconciliationOutcome

ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _envelope(checkout_request_id, result_code, result_desc="ok"):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 500},
                {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def _attendance(event_id, user_id):
    db.session.expire_all()
    return Attendance.query.filter_by(event_id=event_id, user_id=user_id).first()


def _reserved(event_id):
    db.session.expire_all()
    return db.session.get(Event, event_id).reserved_count


@pytest.fixture(autouse=True)
def quiet_email():
    with patch("eventsys.services.notification_service.send_email") as mock_send:
        yield mock_send


@pytest.fixture
def pending(seed_data, stk_push):
    """Alice holds a Pending registration for the paid event."""
    result = registration_service.register(
        seed_data["paid_event_id"], seed_data["alice_id"], "0712345678"
    )
    return result.payment_reference


class TestCallbackEndpoint:

    def test_paid_callback(self, client, seed_data, pending):
        resp = client.post("/events/mpesa/callback", json=_envelope(pending, 0))

        assert resp.status_code == 200
        assert resp.get_json() == ACK
        attendance = _attendance(seed_data["paid_event_id"], seed_data["alice_id"])
        assert attendance.status == AttendanceStatus.PAID
        assert attendance.payment_date is not None

        session = PaymentSession.query.filter_by(checkout_request_id=pending).one()
        assert session.status == AttendanceStatus.PAID
        assert session.result_code == "0"
        assert session.resolved_at is not None

        projected = UserAttendance.query.filter_by(user_id=seed_data["alice_id"]).one()
        assert projected.status == AttendanceStatus.PAID

    def test_flat_body_accepted(self, client, seed_data, pending):
        client.post("/events/mpesa/callback", json={
            "CheckoutRequestID": pending,
            "ResultCode": "1032",
            "ResultDesc": "Request cancelled by user",
        })

        attendance = _attendance(seed_data["paid_event_id"], seed_data["alice_id"])
        assert attendance.status == AttendanceStatus.FAILED

    def test_failed_callback_frees_slot(self, client, seed_data, pending):
        assert _reserved(seed_data["paid_event_id"]) == 1

        client.post("/events/mpesa/callback", json=_envelope(pending, 1, "Insufficient funds"))

        assert _reserved(seed_data["paid_event_id"]) == 0
        session = PaymentSession.query.one()
        assert session.status == AttendanceStatus.FAILED
        assert session.result_desc == "Insufficient funds"

    def test_malformed_callback_still_acknowledged(self, client, seed_data):
        resp = client.post("/events/mpesa/callback", json={"hello": "world"})
        assert resp.status_code == 200
        assert resp.get_json() == ACK
        assert MpesaCallback.query.one().outcome == "invalid"

    def test_non_json_still_acknowledged(self, client, seed_data):
        resp = client.post("/events/mpesa/callback", data="garbage", content_type="text/plain")
        assert resp.status_code == 200

    def test_unknown_session_acknowledged(self, client, seed_data):
        resp = client.post("/events/mpesa/callback", json=_envelope("ws_CO_UNKNOWN", 0))
        assert resp.status_code == 200
        assert MpesaCallback.query.one().outcome == "unknown_session"

    def test_internal_error_still_acknowledged(self, client, seed_data, pending):
        with patch(
            "eventsys.services.reconciliation_service.apply_result",
            side_effect=RuntimeError("db down"),
        ):
            resp = client.post("/events/mpesa/callback", json=_envelope(pending, 0))

        assert resp.status_code == 200
        assert _attendance(
            seed_data["paid_event_id"], seed_data["alice_id"]
        ).status == AttendanceStatus.PENDING

    def test_bad_token_ignored(self, app, client, seed_data, pending):
        app.config["MPESA_CALLBACK_TOKEN"] = "s3cret"
        try:
            bad = client.post("/events/mpesa/callback?token=nope", json=_envelope(pending, 0))
            assert bad.status_code == 200
            assert _attendance(
                seed_data["paid_event_id"], seed_data["alice_id"]
            ).status == AttendanceStatus.PENDING

            good = client.post("/events/mpesa/callback?token=s3cret", json=_envelope(pending, 0))
            assert good.status_code == 200
            assert _attendance(
                seed_data["paid_event_id"], seed_data["alice_id"]
            ).status == AttendanceStatus.PAID
        finally:
            app.config["MPESA_CALLBACK_TOKEN"] = None

    def test_no_csrf_needed(self, app, client, seed_data, pending):
        app.config["WTF_CSRF_ENABLED"] = True
        try:
            resp = client.post("/events/mpesa/callback", json=_envelope(pending, 0))
        finally:
            app.config["WTF_CSRF_ENABLED"] = False
        assert resp.status_code == 200


class TestIdempotency:

    def test_replayed_callback_transitions_once(self, seed_data, pending):
        first = reconciliation_service.handle_callback(_envelope(pending, 0))
        second = reconciliation_service.handle_callback(_envelope(pending, 0))

        assert first == ReconciliationOutcome.PAID
        assert second == ReconciliationOutcome.NOOP
        assert AuditEvent.query.filter_by(action="payment.paid").count() == 1
        assert MpesaCallback.query.count() == 2

    def test_replayed_failure_frees_slot_once(self, seed_data, stk_push):
        event_id = seed_data["paid_event_id"]
        a = registration_service.register(event_id, seed_data["alice_id"], "0712345678")
        registration_service.register(event_id, seed_data["bob_id"], "0722000111")
        assert _reserved(event_id) == 2

        for _ in range(3):
            reconciliation_service.apply_result(a.payment_reference, "1032", "Cancelled")

        assert _reserved(event_id) == 1

    def test_conflicting_late_result_ignored(self, seed_data, pending):
        reconciliation_service.apply_result(pending, "0", "Paid")
        outcome = reconciliation_service.apply_result(pending, "1", "Insufficient funds")

        assert outcome == ReconciliationOutcome.NOOP
        attendance = _attendance(seed_data["paid_event_id"], seed_data["alice_id"])
        assert attendance.status == AttendanceStatus.PAID
        assert _reserved(seed_data["paid_event_id"]) == 1

    def test_pending_result_code_is_still_pending(self, seed_data, pending):
        assert (
            reconciliation_service.apply_result(pending, None)
            == ReconciliationOutcome.STILL_PENDING
        )

    def test_result_after_cancel_closes_session(self, seed_data, pending):
        registration_service.cancel(seed_data["paid_event_id"], seed_data["alice_id"])

        outcome = reconciliation_service.apply_result(pending, "0", "Paid")

        assert outcome == ReconciliationOutcome.NOOP
        assert PaymentSession.query.one().status == AttendanceStatus.PAID
        assert _attendance(seed_data["paid_event_id"], seed_data["alice_id"]) is None
        assert _reserved(seed_data["paid_event_id"]) == 0


class TestNotifications:

    def test_paid_sends_confirmation(self, seed_data, pending, quiet_email):
        reconciliation_service.apply_result(pending, "0", "Paid")

        quiet_email.assert_called_once()
        kwargs = quiet_email.call_args.kwargs
        assert kwargs["to"] == "alice@example.com"
        assert kwargs["template"] == "emails/payment_confirmed.html"

    def test_failed_sends_notice(self, seed_data, pending, quiet_email):
        reconciliation_service.apply_result(pending, "1037", "DS timeout")
        assert quiet_email.call_args.kwargs["template"] == "emails/payment_failed.html"

    def test_noop_sends_nothing(self, seed_data, pending, quiet_email):
        reconciliation_service.apply_result(pending, "0", "Paid")
        reconciliation_service.apply_result(pending, "0", "Paid")
        assert quiet_email.call_count == 1

    def test_notifier_failure_does_not_affect_state(self, seed_data, pending, quiet_email):
        quiet_email.side_effect = RuntimeError("smtp down")

        outcome = reconciliation_service.apply_result(pending, "0", "Paid")

        assert outcome == ReconciliationOutcome.PAID
        attendance = _attendance(seed_data["paid_event_id"], seed_data["alice_id"])
        assert attendance.status == AttendanceStatus.PAID

    def test_templates_render(self, seed_data):
        confirmed = render_template(
            "emails/payment_confirmed.html",
            name="Alice",
            amount=500,
            event_title="Developer Workshop",
            event_location="iHub",
            event_starts_at=datetime(2026, 11, 2, 18, 0, tzinfo=timezone.utc),
            event_url="http://localhost:5000/events/abc",
        )
        assert "Developer Workshop" in confirmed
        assert "KES 500" in confirmed

        failed = render_template(
            "emails/payment_failed.html",
            name="Bob",
            event_title="Developer Workshop",
            event_url="http://localhost:5000/events/abc",
            spots_left=1,
        )
        assert "There is still 1 spot left" in " ".join(failed.split())


class TestSweep:

    def _later(self, minutes):
        return datetime.now(timezone.utc) + timedelta(minutes=minutes)

    def test_fresh_sessions_not_polled(self, seed_data, pending):
        with patch.object(mpesa, "query_status") as mock_query:
            summary = reconciliation_service.sweep_pending_sessions()

        mock_query.assert_not_called()
        assert summary["checked"] == 0

    def test_polls_after_window(self, seed_data, pending):
        result = StkQueryResult(pending, "0", "The service request is processed successfully.")
        with patch.object(mpesa, "query_status", return_value=result):
            summary = reconciliation_service.sweep_pending_sessions(now=self._later(6))

        assert summary["checked"] == 1
        assert summary["paid"] == 1
        assert _attendance(
            seed_data["paid_event_id"], seed_data["alice_id"]
        ).status == AttendanceStatus.PAID
        session = PaymentSession.query.one()
        assert session.poll_attempts == 1
        assert session.last_polled_at is not None

    def test_still_processing_before_deadline_stays_pending(self, seed_data, pending):
        result = StkQueryResult(pending, None, "The transaction is being processed")
        with patch.object(mpesa, "query_status", return_value=result):
            summary = reconciliation_service.sweep_pending_sessions(now=self._later(6))

        assert summary["still_pending"] == 1
        assert _attendance(
            seed_data["paid_event_id"], seed_data["alice_id"]
        ).status == AttendanceStatus.PENDING

    def test_hard_deadline_force_fails(self, seed_data, pending):
        result = StkQueryResult(pending, None, "The transaction is being processed")
        with patch.object(mpesa, "query_status", return_value=result):
            summary = reconciliation_service.sweep_pending_sessions(now=self._later(16))

        assert summary["forced"] == 1
        attendance = _attendance(seed_data["paid_event_id"], seed_data["alice_id"])
        assert attendance.status == AttendanceStatus.FAILED
        assert _reserved(seed_data["paid_event_id"]) == 0
        session = PaymentSession.query.one()
        assert session.status == AttendanceStatus.FAILED
        assert session.result_desc == "Payment confirmation timed out"

    def test_query_errors_past_deadline_still_force_fail(self, seed_data, pending):
        with patch.object(mpesa, "query_status", side_effect=GatewayNetworkError("down")):
            summary = reconciliation_service.sweep_pending_sessions(now=self._later(16))

        assert summary["forced"] == 1
        assert _reserved(seed_data["paid_event_id"]) == 0

    def test_unexpected_query_failure_past_deadline_still_force_fails(self, seed_data, pending):
        with patch.object(mpesa, "query_status", side_effect=RuntimeError("boom")):
            summary = reconciliation_service.sweep_pending_sessions(now=self._later(16))

        assert summary["forced"] == 1
        assert summary["errors"] == 0
        attendance = _attendance(seed_data["paid_event_id"], seed_data["alice_id"])
        assert attendance.status == AttendanceStatus.FAILED
        assert _reserved(seed_data["paid_event_id"]) == 0
        assert PaymentSession.query.one().status == AttendanceStatus.FAILED

    def test_unexpected_query_failure_before_deadline_counted(self, seed_data, pending):
        with patch.object(mpesa, "query_status", side_effect=RuntimeError("boom")):
            summary = reconciliation_service.sweep_pending_sessions(now=self._later(6))

        assert summary["errors"] == 1
        assert summary["forced"] == 0
        assert _reserved(seed_data["paid_event_id"]) == 1

    def test_query_errors_before_deadline_counted(self, seed_data, pending):
        with patch.object(mpesa, "query_status", side_effect=GatewayNetworkError("down")):
            summary = reconciliation_service.sweep_pending_sessions(now=self._later(6))

        assert summary["errors"] == 1
        assert _reserved(seed_data["paid_event_id"]) == 1

    def test_late_success_after_timeout_is_noop(self, seed_data, pending):
        with patch.object(mpesa, "query_status", side_effect=GatewayNetworkError("down")):
            reconciliation_service.sweep_pending_sessions(now=self._later(16))

        outcome = reconciliation_service.handle_callback(_envelope(pending, 0))

        assert outcome == ReconciliationOutcome.NOOP
        assert _attendance(
            seed_data["paid_event_id"], seed_data["alice_id"]
        ).status == AttendanceStatus.FAILED

    def test_orphan_reservation_released(self, seed_data):
        # Reserve without ever reaching the gateway, as if the process died
        from eventsys.services import capacity_gate

        event_id = seed_data["paid_event_id"]
        attendance = capacity_gate.try_reserve(event_id, seed_data["alice_id"])
        attendance.created_at = datetime.now(timezone.utc) - timedelta(minutes=20)
        db.session.commit()

        summary = reconciliation_service.sweep_pending_sessions()

        assert summary["orphans"] == 1
        assert _attendance(event_id, seed_data["alice_id"]).status == AttendanceStatus.FAILED
        assert _reserved(event_id) == 0


class TestCapacityScenario:
    """capacity=2, price=500: A and B reserve, C is turned away, A pays,
    B times out, D takes the slot B gave back."""

    def test_end_to_end(self, seed_data, stk_push):
        event_id = seed_data["paid_event_id"]
        dave = User(email="dave@example.com", password_hash="x", phone="0744000333")
        db.session.add(dave)
        db.session.commit()
        dave_id = dave.id

        a = registration_service.register(event_id, seed_data["alice_id"], "0712345678")
        b = registration_service.register(event_id, seed_data["bob_id"], "0722000111")
        with pytest.raises(CapacityExceededError):
            registration_service.register(event_id, seed_data["carol_id"], "0733000222")

        # A confirms on the phone
        assert (
            reconciliation_service.handle_callback(_envelope(a.payment_reference, 0))
            == ReconciliationOutcome.PAID
        )

        # B never answers; the sweep gives up after the hard deadline
        later = datetime.now(timezone.utc) + timedelta(minutes=16)
        still = StkQueryResult(b.payment_reference, None, "The transaction is being processed")
        with patch.object(mpesa, "query_status", return_value=still):
            summary = reconciliation_service.sweep_pending_sessions(now=later)
        assert summary["forced"] == 1

        assert _attendance(event_id, seed_data["alice_id"]).status == AttendanceStatus.PAID
        assert _attendance(event_id, seed_data["bob_id"]).status == AttendanceStatus.FAILED
        assert _reserved(event_id) == 1

        # D gets the freed slot
        d = registration_service.register(event_id, dave_id, "0744000333")
        assert d.status == AttendanceStatus.PENDING
        assert _reserved(event_id) == 2

        statuses = {
            row.user_id: row.status
            for row in Attendance.query.filter_by(event_id=event_id).all()
        }
        assert statuses == {
            seed_data["alice_id"]: AttendanceStatus.PAID,
            seed_data["bob_id"]: AttendanceStatus.FAILED,
            dave_id: AttendanceStatus.PENDING,
        }
