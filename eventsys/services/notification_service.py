"""Notification service — tells attendees how their payment ended.

Invoked by the reconciliation service after every PAID / FAILED
transition. Fire-and-forget: a failure here is logged and never touches
reconciliation state.
"""

import logging

from flask import current_app

from eventsys.extensions import db
from eventsys.models.event import Event
from eventsys.models.status import AttendanceStatus
from eventsys.models.user import User
from eventsys.services.email_service import send_email

logger = logging.getLogger(__name__)

TEMPLATES = {
    AttendanceStatus.PAID: (
        "Payment received — you're going to {title}",
        "emails/payment_confirmed.html",
    ),
    AttendanceStatus.FAILED: (
        "Payment not completed — {title}",
        "emails/payment_failed.html",
    ),
}


def notify_payment_result(event_id, user_id, status):
    """Email the attendee about a settled payment. Never raises."""
    try:
        if status not in TEMPLATES:
            return

        user = db.session.get(User, user_id)
        event = db.session.get(Event, event_id)
        if not user or not user.email or not event:
            return

        subject, template = TEMPLATES[status]
        app_base_url = current_app.config["APP_BASE_URL"]
        send_email(
            to=user.email,
            subject=subject.format(title=event.title),
            template=template,
            context={
                "name": user.full_name or "",
                "event_title": event.title,
                "event_location": event.location or "",
                "event_starts_at": event.starts_at,
                "amount": event.price,
                "event_url": f"{app_base_url}/events/{event.id}",
                "spots_left": event.remaining_spots,
            },
        )
        logger.info(f"Payment {status.value} email queued for {user.email} (event {event_id})")
    except Exception as e:
        # Never let email failure affect reconciliation
        logger.error(f"Failed to send payment {status} notice for event {event_id}: {e}")
