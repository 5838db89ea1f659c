"""Audit helpers shared by the registration and reconciliation services."""

from eventsys.extensions import db
from eventsys.models.audit import AuditEvent


def log_audit(event_id, action, metadata=None, actor_user_id=None):
    """Add an audit row to the current transaction.

    Flushes but does NOT commit — the caller owns the commit boundary so the
    audit row lands atomically with the state change it describes.
    """
    event = AuditEvent(
        event_id=event_id,
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event
