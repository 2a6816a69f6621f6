"""Notification model.

Rows written by notification_service.notify(). A NULL recipient means the
notification is addressed to the admin team.
"""

import uuid

from leadmarket.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    recipient_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    meta = db.Column(db.JSON, default=dict)
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "meta": self.meta or {},
            "isRead": self.is_read,
        }

    def __repr__(self):
        return f"<Notification {self.title[:30]}>"
