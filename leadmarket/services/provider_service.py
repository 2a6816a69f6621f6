"""Provider directory — registration, staged profile edits, verification.

Profile edits never apply directly: they are staged in
`Provider.pending_updates` and only copied onto the provider when an
admin approves them. Verification and approved edits re-run matching,
since either can make the provider eligible for new requests.

Also holds the admin-side category management the pricing and matching
code reads (create category, add subcategory, set lead price).
"""

import logging
from decimal import Decimal, InvalidOperation

from leadmarket.extensions import db
from leadmarket.errors import ConflictError, NotFoundError, ValidationError
from leadmarket.models.category import Category, Subcategory
from leadmarket.models.provider import Provider
from leadmarket.models.user import User
from leadmarket.services.matching_service import match_provider_to_requests
from leadmarket.services.notification_service import notify
from leadmarket.utils import sanitize

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = [
    "companyName",
    "categoryId",
    "subcategoryId",
    "serviceLocation",
    "contactPerson",
    "coveredRadius",
    "latitude",
    "longitude",
]

# API name -> column name, for staged profile updates
UPDATE_FIELD_MAP = {
    "companyName": "company_name",
    "website": "website",
    "serviceLocation": "service_location",
    "coveredRadius": "covered_radius",
    "contactPerson": "contact_person",
    "latitude": "latitude",
    "longitude": "longitude",
    "workingHours": "working_hours",
}


# ──────────────────────────────────────────────
# Field validation
# ──────────────────────────────────────────────

def _float_in_range(value, name, low, high):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number.")
    if not low <= number <= high:
        raise ValidationError(f"{name} must be between {low} and {high}.")
    return number


def _clean_working_hours(entries):
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ValidationError("workingHours must be a list.")
    cleaned = []
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("day") not in Provider.WEEKDAYS:
            raise ValidationError(
                f"workingHours entries need a day, one of: {', '.join(Provider.WEEKDAYS)}"
            )
        cleaned.append({
            "day": entry["day"],
            "startTime": entry.get("startTime"),
            "endTime": entry.get("endTime"),
            "isAvailable": bool(entry.get("isAvailable", True)),
        })
    return cleaned


def _clean_contact(contact):
    if not isinstance(contact, dict):
        raise ValidationError("contactPerson must be an object.")
    return {key: sanitize(contact.get(key)) for key in ("name", "email", "phone")}


def _clean_update_value(key, value):
    if key == "companyName":
        value = sanitize(value)
        if not value:
            raise ValidationError("companyName cannot be empty.")
        return value
    if key in ("website", "serviceLocation"):
        return sanitize(value)
    if key == "coveredRadius":
        return _float_in_range(value, "coveredRadius", 1, 100)
    if key == "latitude":
        return _float_in_range(value, "latitude", -90, 90)
    if key == "longitude":
        return _float_in_range(value, "longitude", -180, 180)
    if key == "contactPerson":
        return _clean_contact(value)
    if key == "workingHours":
        return _clean_working_hours(value)
    return value


def _resolve_category(category_id, subcategory_id):
    category = db.session.get(Category, category_id)
    if category is None or not category.is_active:
        raise ValidationError("Invalid or inactive category.", code="INVALID_CATEGORY")
    subcategory = category.find_subcategory(subcategory_id)
    if subcategory is None:
        raise ValidationError("Invalid or inactive subcategory.", code="INVALID_SUBCATEGORY")
    return category, subcategory


# ──────────────────────────────────────────────
# Provider self-service
# ──────────────────────────────────────────────

def get_provider_by_user(user_id):
    provider = Provider.query.filter_by(user_id=user_id).first()
    if provider is None:
        raise NotFoundError("Provider not found.")
    return provider


def register_provider(user, data):
    """Create the provider profile for `user`. Starts unverified."""
    missing = [f for f in REQUIRED_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    if Provider.query.filter_by(user_id=user.id).first() is not None:
        raise ConflictError("Provider already registered.", code="PROVIDER_EXISTS")

    category, subcategory = _resolve_category(data["categoryId"], data["subcategoryId"])

    extra_categories = []
    for extra_id in data.get("categoryIds") or []:
        extra = db.session.get(Category, extra_id)
        if extra is None or not extra.is_active:
            raise ValidationError("Invalid or inactive category.", code="INVALID_CATEGORY")
        if extra.id != category.id:
            extra_categories.append(extra)

    provider = Provider(
        user_id=user.id,
        company_name=_clean_update_value("companyName", data["companyName"]),
        website=sanitize(data.get("website")),
        category_id=category.id,
        subcategory_name=subcategory.name,
        latitude=_clean_update_value("latitude", data["latitude"]),
        longitude=_clean_update_value("longitude", data["longitude"]),
        covered_radius=_clean_update_value("coveredRadius", data["coveredRadius"]),
        working_hours=_clean_working_hours(data.get("workingHours")),
        service_location=sanitize(data["serviceLocation"]),
        contact_person=_clean_contact(data["contactPerson"]),
        is_active=True,
        is_verified=False,
    )
    provider.categories = [category] + extra_categories
    user.role = User.ROLE_PROVIDER
    db.session.add(provider)
    db.session.commit()
    logger.info(f"Provider {provider.id} registered for user {user.id}")

    notify(
        "New provider registration",
        f"{provider.company_name} registered and awaits verification.",
        None,
        {"type": "PROVIDER_REGISTERED", "providerId": provider.id},
    )
    return provider


def stage_profile_update(user_id, data):
    """Stage profile edits for admin approval. Replaces any earlier staging."""
    provider = get_provider_by_user(user_id)

    staged = {}
    for key in UPDATE_FIELD_MAP:
        if data.get(key) not in (None, ""):
            staged[key] = _clean_update_value(key, data[key])

    if ("latitude" in staged) != ("longitude" in staged):
        raise ValidationError("latitude and longitude must be updated together.")
    if not staged:
        raise ValidationError("No updatable fields provided.")

    provider.pending_updates = staged
    db.session.commit()

    notify(
        "Provider profile update",
        f"{provider.company_name} submitted profile changes for approval.",
        None,
        {"type": "PROVIDER_UPDATE_PENDING", "providerId": provider.id},
    )
    return provider


def set_provider_active(user_id, is_active):
    if not isinstance(is_active, bool):
        raise ValidationError("isActive must be true or false.")
    provider = get_provider_by_user(user_id)
    provider.is_active = is_active
    db.session.commit()
    logger.info(f"Provider {provider.id} set active={is_active}")
    return provider


# ──────────────────────────────────────────────
# Admin actions
# ──────────────────────────────────────────────

def _get_provider(provider_id):
    provider = db.session.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError("Provider not found.")
    return provider


def verify_provider(provider_id, is_verified=True):
    """Set verification. Newly verified providers are matched to open requests."""
    provider = _get_provider(provider_id)
    provider.is_verified = bool(is_verified)
    db.session.commit()
    logger.info(f"Provider {provider.id} verified={provider.is_verified}")

    matched = []
    if provider.is_verified:
        notify(
            "Account verified",
            "Your provider account has been verified.",
            provider.user_id,
            {"type": "PROVIDER_VERIFIED"},
        )
        matched = match_provider_to_requests(provider)
    return provider, matched


def approve_pending_updates(provider_id):
    """Apply staged edits, then re-match with the new location and radius."""
    provider = _get_provider(provider_id)
    if not provider.pending_updates:
        raise ConflictError("No pending updates to approve.", code="NO_PENDING_UPDATES")

    for key, value in provider.pending_updates.items():
        column = UPDATE_FIELD_MAP.get(key)
        if column is not None:
            setattr(provider, column, value)
    provider.pending_updates = None
    db.session.commit()

    notify(
        "Profile update approved",
        "Your profile changes have been approved.",
        provider.user_id,
        {"type": "PROVIDER_UPDATE_APPROVED"},
    )
    matched = match_provider_to_requests(provider)
    return provider, matched


def reject_pending_updates(provider_id, reason=None):
    provider = _get_provider(provider_id)
    if not provider.pending_updates:
        raise ConflictError("No pending updates to reject.", code="NO_PENDING_UPDATES")

    provider.pending_updates = None
    db.session.commit()

    message = "Your profile changes were rejected."
    reason = sanitize(reason)
    if reason:
        message = f"{message} Reason: {reason}"
    notify(
        "Profile update rejected",
        message,
        provider.user_id,
        {"type": "PROVIDER_UPDATE_REJECTED"},
    )
    return provider


# ──────────────────────────────────────────────
# Categories
# ──────────────────────────────────────────────

def _parse_price(value):
    """None unsets the price (default applies); 0 makes leads free."""
    if value is None or value == "":
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("price must be a number.")
    if price < 0:
        raise ValidationError("price cannot be negative.")
    return price.quantize(Decimal("0.01"))


def create_category(name, icon=None, price=None, subcategories=None):
    name = sanitize(name)
    if not name:
        raise ValidationError("Category name is required.")
    if Category.query.filter_by(name=name).first() is not None:
        raise ConflictError("A category with this name already exists.", code="CATEGORY_EXISTS")

    category = Category(name=name, icon=sanitize(icon), price=_parse_price(price))
    for sub_name in subcategories or []:
        sub_name = sanitize(sub_name)
        if sub_name:
            category.subcategories.append(Subcategory(name=sub_name))
    db.session.add(category)
    db.session.commit()
    return category


def add_subcategory(category_id, name):
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category not found.")
    name = sanitize(name)
    if not name:
        raise ValidationError("Subcategory name is required.")
    if any(sub.name == name for sub in category.subcategories):
        raise ConflictError("Subcategory already exists.", code="SUBCATEGORY_EXISTS")

    subcategory = Subcategory(name=name)
    category.subcategories.append(subcategory)
    db.session.commit()
    return subcategory


def set_category_price(category_id, price):
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category not found.")
    category.price = _parse_price(price)
    db.session.commit()
    logger.info(f"Category {category.name} lead price set to {category.price}")
    return category


def list_active_categories():
    return Category.query.filter_by(is_active=True).order_by(Category.name).all()
