"""Audit helpers for request lifecycle events.

Flushes only — the caller owns the commit, so the audit row lands in the
same transaction as the change it describes.
"""

from leadmarket.extensions import db
from leadmarket.models.audit import AuditEvent


def log_request_audit(service_request_id, action, actor_user_id=None, metadata=None):
    """Log a lifecycle audit event.

    Actor is None for system-initiated changes (webhooks, scheduler).
    """
    event = AuditEvent(
        service_request_id=service_request_id,
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event
