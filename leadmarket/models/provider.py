"""Provider model.

Category-tagged service business with a location, a coverage radius and
weekly working hours. Profile edits are staged in `pending_updates` and
only applied once an admin approves them.
"""

import uuid

from leadmarket.extensions import db


provider_categories = db.Table(
    "provider_categories",
    db.Column(
        "provider_id", db.String(36), db.ForeignKey("providers.id"), primary_key=True
    ),
    db.Column(
        "category_id", db.String(36), db.ForeignKey("categories.id"), primary_key=True
    ),
)


class Provider(db.Model):
    __tablename__ = "providers"

    WEEKDAYS = [
        "Monday",
        "Tuesday",
        "Wednesday",
        "Thursday",
        "Friday",
        "Saturday",
        "Sunday",
    ]

    # Fields a provider may stage for admin approval
    UPDATABLE_FIELDS = [
        "company_name",
        "website",
        "service_location",
        "covered_radius",
        "contact_person",
        "latitude",
        "longitude",
        "working_hours",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), unique=True, nullable=False
    )
    company_name = db.Column(db.String(255), nullable=False)
    website = db.Column(db.String(500), nullable=True)
    category_id = db.Column(
        db.String(36), db.ForeignKey("categories.id"), nullable=False
    )  # primary category chosen at registration
    subcategory_name = db.Column(db.String(255), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    covered_radius = db.Column(db.Float, nullable=False)  # km, 1-100
    working_hours = db.Column(
        db.JSON, default=list
    )  # [{day, startTime, endTime, isAvailable}]
    service_location = db.Column(db.String(255), nullable=False)
    contact_person = db.Column(db.JSON, default=dict)  # {name, email, phone}
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_verified = db.Column(db.Boolean, default=False, nullable=False)
    pending_updates = db.Column(db.JSON, nullable=True)
    rating = db.Column(db.Float, default=0)
    total_reviews = db.Column(db.Integer, default=0)
    total_leads_purchased = db.Column(db.Integer, default=0, nullable=False)
    total_spent_on_leads = db.Column(
        db.Integer, default=0, nullable=False
    )  # minor currency units
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="provider")
    category = db.relationship("Category", foreign_keys=[category_id])
    categories = db.relationship(
        "Category", secondary=provider_categories, lazy="selectin"
    )  # every category the provider services, primary included

    @property
    def category_ids(self):
        ids = {c.id for c in self.categories}
        ids.add(self.category_id)
        return ids

    def to_dict(self):
        return {
            "id": self.id,
            "companyName": self.company_name,
            "website": self.website,
            "categoryId": self.category_id,
            "categoryIds": sorted(self.category_ids),
            "subcategory": self.subcategory_name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "coveredRadius": self.covered_radius,
            "workingHours": self.working_hours or [],
            "serviceLocation": self.service_location,
            "contactPerson": self.contact_person or {},
            "isActive": self.is_active,
            "isVerified": self.is_verified,
            "pendingUpdates": self.pending_updates,
            "rating": self.rating,
            "totalReviews": self.total_reviews,
            "totalLeadsPurchased": self.total_leads_purchased,
            "totalSpentOnLeads": self.total_spent_on_leads,
        }

    def __repr__(self):
        return f"<Provider {self.company_name}>"
