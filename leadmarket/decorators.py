"""
Custom route decorators for access control.

- role_required: ensures user is logged in AND has one of the given roles.
- admin_required: shorthand for the admin and super_admin roles.
"""

from functools import wraps

from flask import abort
from flask_login import current_user, login_required

from leadmarket.models.user import User


def role_required(*roles):
    """Require login + one of `roles` (401 when anonymous, 403 otherwise)."""

    def decorator(f):
        @wraps(f)
        @login_required
        def decorated(*args, **kwargs):
            if current_user.role not in roles:
                abort(403)
            return f(*args, **kwargs)

        return decorated

    return decorator


def admin_required(f):
    """Require login + an admin role."""
    return role_required(*User.ADMIN_ROLES)(f)
