"""Review model.

A customer's rating of the provider who completed their request. One per
request; posting it approves the request ahead of the auto-approval sweep.
"""

import uuid

from leadmarket.extensions import db


class Review(db.Model):
    __tablename__ = "reviews"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    service_request_id = db.Column(
        db.String(36), db.ForeignKey("service_requests.id"), unique=True, nullable=False
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    provider_id = db.Column(
        db.String(36), db.ForeignKey("providers.id"), nullable=False
    )
    rating = db.Column(db.Integer, nullable=False)  # 1-5
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def to_dict(self):
        return {
            "id": self.id,
            "serviceRequestId": self.service_request_id,
            "providerId": self.provider_id,
            "rating": self.rating,
            "comment": self.comment,
        }

    def __repr__(self):
        return f"<Review {self.rating}* request={self.service_request_id}>"
