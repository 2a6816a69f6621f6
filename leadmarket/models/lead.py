"""Lead purchase model.

One row per purchase attempt. Created PENDING when a Stripe Checkout
Session is opened; only the webhook handler moves it to COMPLETED or
FAILED (or REFUNDED, for a payment that cannot be used). Opening a new
session fails any older PENDING row for the same (provider, request), and
the partial unique index below allows one COMPLETED row per pair.
"""

import uuid

from leadmarket.extensions import db
from leadmarket.utils import as_utc


class LeadPurchase(db.Model):
    __tablename__ = "lead_purchases"

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    STATUSES = [PENDING, COMPLETED, FAILED, REFUNDED]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    provider_id = db.Column(
        db.String(36), db.ForeignKey("providers.id"), nullable=False
    )
    service_request_id = db.Column(
        db.String(36), db.ForeignKey("service_requests.id"), nullable=False
    )
    amount = db.Column(db.Integer, nullable=False)  # minor currency units
    currency = db.Column(db.String(3), default="USD", nullable=False)
    stripe_checkout_session_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "cs_test_..."
    stripe_payment_intent_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # set once known; NULLs don't collide
    stripe_charge_id = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), default=PENDING, nullable=False)
    purchased_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_reason = db.Column(db.String(500), nullable=True)
    refund_amount = db.Column(db.Integer, nullable=True)
    failure_reason = db.Column(db.String(500), nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # named metadata_ to avoid the declarative attribute clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.Index("ix_lead_purchases_provider_request", "provider_id", "service_request_id"),
        db.Index("ix_lead_purchases_status_created", "status", "created_at"),
        db.Index(
            "uq_lead_purchases_completed_pair",
            "provider_id",
            "service_request_id",
            unique=True,
            sqlite_where=db.text("status = 'COMPLETED'"),
            postgresql_where=db.text("status = 'COMPLETED'"),
        ),
    )

    # --- Relationships ---
    provider = db.relationship("Provider")
    service_request = db.relationship("ServiceRequest")

    def to_dict(self):
        return {
            "id": self.id,
            "providerId": self.provider_id,
            "serviceRequestId": self.service_request_id,
            "amount": self.amount,
            "currency": self.currency,
            "sessionId": self.stripe_checkout_session_id,
            "status": self.status,
            "purchasedAt": as_utc(self.purchased_at).isoformat() if self.purchased_at else None,
            "failureReason": self.failure_reason,
            "refundReason": self.refund_reason,
        }

    def __repr__(self):
        return f"<LeadPurchase {self.stripe_checkout_session_id} ({self.status})>"
