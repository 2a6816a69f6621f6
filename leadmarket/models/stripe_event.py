"""Processed Stripe webhook events.

A row is written in the same transaction as the reconciliation it records,
so a redelivered event id is acknowledged without touching purchases,
requests or provider counters a second time. Events that failed (rolled
back) leave no row and are retried by Stripe.
"""

import uuid

from leadmarket.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    OUTCOME_HANDLED = "handled"
    OUTCOME_IGNORED = "ignored"  # event type with no handler

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(db.String(255), unique=True, nullable=False)
    event_type = db.Column(db.String(255), nullable=False)
    # cs_... or pi_... the event was about, for tracing a purchase's history
    object_id = db.Column(db.String(255), nullable=True, index=True)
    outcome = db.Column(db.String(20), nullable=False, default=OUTCOME_HANDLED)
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} {self.event_type} {self.outcome}>"
