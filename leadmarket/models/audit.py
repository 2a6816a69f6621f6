"""Audit event model.

Logs request lifecycle transitions (created, hold opened/expired/released,
assigned, declined, completed, reviewed, admin overrides) for support and debugging.
"""

import uuid

from leadmarket.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    service_request_id = db.Column(
        db.String(36), db.ForeignKey("service_requests.id"), nullable=True
    )
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )  # None for system actions (webhooks, scheduler)
    action = db.Column(db.String(255), nullable=False)  # e.g. "lead.assigned"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def to_dict(self):
        return {
            "action": self.action,
            "actorUserId": self.actor_user_id,
            "metadata": self.metadata_ or {},
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
