"""User model.

Authentication identity shared by every actor. The role is a closed set;
`profile` resolves the role-specific record once, at load time, instead of
picking a model per call.
Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from leadmarket.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    ROLE_USER = "user"
    ROLE_PROVIDER = "provider"
    ROLE_ADMIN = "admin"
    ROLE_SUPER_ADMIN = "super_admin"

    ROLES = [ROLE_USER, ROLE_PROVIDER, ROLE_ADMIN, ROLE_SUPER_ADMIN]
    ADMIN_ROLES = (ROLE_ADMIN, ROLE_SUPER_ADMIN)

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    full_name = db.Column(db.String(255))
    phone = db.Column(db.String(50), nullable=True)
    role = db.Column(
        db.String(20), default=ROLE_USER, nullable=False
    )  # user | provider | admin | super_admin
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    provider = db.relationship(
        "Provider", back_populates="user", uselist=False
    )
    service_requests = db.relationship(
        "ServiceRequest", back_populates="customer", lazy="dynamic"
    )

    @property
    def is_admin(self):
        return self.role in self.ADMIN_ROLES

    @property
    def profile(self):
        """Role-specific profile: the Provider row for providers, else the user."""
        if self.role == self.ROLE_PROVIDER:
            return self.provider
        return self

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"
