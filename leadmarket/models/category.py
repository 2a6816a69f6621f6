"""Category models.

- Category: a service category with the lead price (major currency units).
- Subcategory: independently activatable child of a category. Requests
  snapshot the subcategory *name* at creation, so renames do not rewrite
  history.
"""

import uuid

from leadmarket.extensions import db


class Category(db.Model):
    __tablename__ = "categories"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), unique=True, nullable=False)
    icon = db.Column(db.String(500), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    price = db.Column(
        db.Numeric(10, 2), nullable=True
    )  # NULL = unset, falls back to LEAD_DEFAULT_PRICE; 0 = free lead
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    subcategories = db.relationship(
        "Subcategory",
        back_populates="category",
        cascade="all, delete-orphan",
        order_by="Subcategory.created_at",
    )

    def find_subcategory(self, subcategory_id, active_only=True):
        for sub in self.subcategories:
            if sub.id == subcategory_id and (sub.is_active or not active_only):
                return sub
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "icon": self.icon,
            "isActive": self.is_active,
            "price": str(self.price) if self.price is not None else None,
            "subcategories": [s.to_dict() for s in self.subcategories],
        }

    def __repr__(self):
        return f"<Category {self.name}>"


class Subcategory(db.Model):
    __tablename__ = "subcategories"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    category_id = db.Column(
        db.String(36), db.ForeignKey("categories.id"), nullable=False
    )
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    category = db.relationship("Category", back_populates="subcategories")

    def to_dict(self):
        return {"id": self.id, "name": self.name, "isActive": self.is_active}

    def __repr__(self):
        return f"<Subcategory {self.name}>"
