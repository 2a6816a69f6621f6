"""Notification sink.

notify() is fire-and-forget: it writes a Notification row in its own
commit and never raises. Callers invoke it *after* their own transaction
has committed so a notification failure can never roll back domain state.
"""

import logging

from leadmarket.extensions import db
from leadmarket.models.notification import Notification

logger = logging.getLogger(__name__)


def notify(title, message, recipient_id=None, meta=None):
    """Post a notification to a user (or to admins when recipient_id is None).

    Returns the Notification, or None if it could not be stored.
    """
    if not title or not message:
        logger.warning("Notification skipped — missing title or message")
        return None

    try:
        notification = Notification(
            recipient_user_id=recipient_id,
            title=title,
            message=message,
            meta=meta or {},
        )
        db.session.add(notification)
        db.session.commit()
        return notification
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to store notification '{title}' for {recipient_id}: {e}")
        return None


def list_notifications(user_id, unread_only=False):
    query = Notification.query.filter_by(recipient_user_id=user_id)
    if unread_only:
        query = query.filter_by(is_read=False)
    return query.order_by(Notification.created_at.desc()).all()


def mark_read(user_id, notification_id):
    """Mark one of the user's notifications read. Returns the updated row count."""
    updated = (
        Notification.query
        .filter_by(id=notification_id, recipient_user_id=user_id)
        .update({"is_read": True}, synchronize_session=False)
    )
    db.session.commit()
    return updated
