"""Service request models.

- ServiceRequest: the aggregate root. Status transitions are enforced in
  request_service; every state-changing write is a conditional UPDATE
  guarded by `version` (see hold_service / request_service).
- RequestCandidate: one provider's relationship to a request
  ("potential providers"), ordered by `position`.
- RequestPurchase: append-only log of completed lead purchases.

Invariants:
- at most one candidate is ACCEPTED, and assigned_provider_id is either
  empty or that candidate's provider;
- payment_hold_by / payment_hold_until are set together or both empty.
"""

import uuid

from leadmarket.extensions import db
from leadmarket.utils import as_utc


class ServiceRequest(db.Model):
    __tablename__ = "service_requests"

    PENDING = "PENDING"
    MATCHED = "MATCHED"
    PROCESSING = "PROCESSING"
    ON_PROCESS = "ON_PROCESS"
    IN_PROGRESS = "IN_PROGRESS"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    STATUSES = [
        PENDING,
        MATCHED,
        PROCESSING,
        ON_PROCESS,
        IN_PROGRESS,
        ONGOING,
        COMPLETED,
        APPROVED,
        CANCELLED,
        EXPIRED,
    ]

    # Statuses in which providers may still accept or decline
    OPEN_STATUSES = (PENDING, MATCHED)
    # Statuses from which a paid or free lead can still be assigned
    ASSIGNABLE_STATUSES = (PENDING, MATCHED, PROCESSING, ON_PROCESS)
    TERMINAL_STATUSES = (EXPIRED, APPROVED, CANCELLED)

    # -- Core transitions (admin overrides listed separately) --
    VALID_TRANSITIONS = {
        PENDING: [IN_PROGRESS, EXPIRED, CANCELLED, PROCESSING],
        MATCHED: [IN_PROGRESS, EXPIRED, CANCELLED, PROCESSING],
        PROCESSING: [IN_PROGRESS, CANCELLED, PENDING],
        ON_PROCESS: [IN_PROGRESS, CANCELLED],
        IN_PROGRESS: [COMPLETED, CANCELLED],
        COMPLETED: [APPROVED],
    }
    ADMIN_OVERRIDE_STATUSES = (CANCELLED, PROCESSING, PENDING)

    PRIORITIES = ["Low", "Normal", "Urgent"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    request_id = db.Column(
        db.String(20), unique=True, nullable=False
    )  # human-readable, e.g. "TZ0042"
    customer_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    customer_phone = db.Column(db.String(50), nullable=True)
    category_id = db.Column(
        db.String(36), db.ForeignKey("categories.id"), nullable=False
    )
    subcategory_name = db.Column(
        db.String(255), nullable=False
    )  # snapshot, not re-resolved
    priority = db.Column(db.String(20), default="Normal", nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.String(10), nullable=False)  # "HH:MM"
    end_time = db.Column(db.String(10), nullable=False)
    address = db.Column(db.String(500), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    description = db.Column(db.Text, nullable=True)
    attachments = db.Column(db.JSON, default=list)
    status = db.Column(db.String(20), default=PENDING, nullable=False)
    max_providers = db.Column(db.Integer, nullable=False, default=3)

    assigned_provider_id = db.Column(
        db.String(36), db.ForeignKey("providers.id"), nullable=True
    )
    payment_hold_by = db.Column(
        db.String(36), db.ForeignKey("providers.id"), nullable=True
    )
    payment_hold_until = db.Column(db.DateTime(timezone=True), nullable=True)

    is_reviewed = db.Column(db.Boolean, default=False, nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completion_proof = db.Column(db.JSON, nullable=True)
    auto_approval_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Bumped by every conditional write; the compare-and-swap token.
    version = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.Index("ix_service_requests_status_created", "status", "created_at"),
    )

    # --- Relationships ---
    customer = db.relationship("User", back_populates="service_requests")
    category = db.relationship("Category")
    assigned_provider = db.relationship(
        "Provider", foreign_keys=[assigned_provider_id]
    )
    candidates = db.relationship(
        "RequestCandidate",
        back_populates="service_request",
        order_by="RequestCandidate.position",
        cascade="all, delete-orphan",
    )
    purchases = db.relationship(
        "RequestPurchase",
        back_populates="service_request",
        order_by="RequestPurchase.purchased_at",
    )

    @classmethod
    def by_request_id(cls, request_id):
        """Look up by human id ('TZ0042'), falling back to the primary key."""
        found = cls.query.filter_by(request_id=request_id).first()
        if found is None:
            found = db.session.get(cls, request_id)
        return found

    def candidate_for(self, provider_id):
        for candidate in self.candidates:
            if candidate.provider_id == provider_id:
                return candidate
        return None

    def to_dict(self, include_candidates=False):
        data = {
            "id": self.id,
            "requestId": self.request_id,
            "customerId": self.customer_id,
            "categoryId": self.category_id,
            "subcategory": self.subcategory_name,
            "priority": self.priority,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "description": self.description,
            "attachments": self.attachments or [],
            "status": self.status,
            "maxProviders": self.max_providers,
            "assignedProvider": self.assigned_provider_id,
            "paymentHoldBy": self.payment_hold_by,
            "paymentHoldUntil": (
                as_utc(self.payment_hold_until).isoformat()
                if self.payment_hold_until else None
            ),
            "isReviewed": self.is_reviewed,
            "createdAt": as_utc(self.created_at).isoformat() if self.created_at else None,
        }
        if include_candidates:
            data["potentialProviders"] = [c.to_dict() for c in self.candidates]
            data["purchasedBy"] = [p.to_dict() for p in self.purchases]
        return data

    def __repr__(self):
        return f"<ServiceRequest {self.request_id} ({self.status})>"


class RequestCandidate(db.Model):
    __tablename__ = "request_candidates"

    PENDING = "PENDING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    PAID = "PAID"  # purchased, but another provider holds the assignment

    STATUSES = [PENDING, AWAITING_PAYMENT, ACCEPTED, DECLINED, PAID]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    service_request_id = db.Column(
        db.String(36), db.ForeignKey("service_requests.id"), nullable=False
    )
    provider_id = db.Column(
        db.String(36), db.ForeignKey("providers.id"), nullable=False
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), default=PENDING, nullable=False)
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    declined_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_window_start = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint(
            "service_request_id", "provider_id", name="uq_request_candidate"
        ),
    )

    # --- Relationships ---
    service_request = db.relationship("ServiceRequest", back_populates="candidates")
    provider = db.relationship("Provider")

    def to_dict(self):
        def _iso(value):
            return as_utc(value).isoformat() if value else None

        return {
            "providerId": self.provider_id,
            "status": self.status,
            "acceptedAt": _iso(self.accepted_at),
            "declinedAt": _iso(self.declined_at),
            "paidAt": _iso(self.paid_at),
            "paymentWindowStart": _iso(self.payment_window_start),
        }

    def __repr__(self):
        return f"<RequestCandidate provider={self.provider_id} ({self.status})>"


class RequestPurchase(db.Model):
    """Append-only: rows are never updated or removed."""

    __tablename__ = "request_purchases"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    service_request_id = db.Column(
        db.String(36), db.ForeignKey("service_requests.id"), nullable=False
    )
    provider_id = db.Column(
        db.String(36), db.ForeignKey("providers.id"), nullable=False
    )
    lead_purchase_id = db.Column(
        db.String(36), db.ForeignKey("lead_purchases.id"), unique=True, nullable=False
    )
    purchased_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # --- Relationships ---
    service_request = db.relationship("ServiceRequest", back_populates="purchases")

    def to_dict(self):
        return {
            "provider": self.provider_id,
            "purchaseId": self.lead_purchase_id,
            "purchasedAt": as_utc(self.purchased_at).isoformat(),
        }

    def __repr__(self):
        return f"<RequestPurchase provider={self.provider_id}>"
