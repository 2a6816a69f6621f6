"""Lead pricing.

A lead's price is a pure function of its category at call time. It is
not snapshotted onto the request, so an admin price edit between the
preview and the purchase changes what the provider pays.
"""

from decimal import Decimal, ROUND_HALF_UP

from flask import current_app

from leadmarket.extensions import db
from leadmarket.errors import NotFoundError, ValidationError
from leadmarket.models.category import Category
from leadmarket.models.service_request import ServiceRequest


def to_minor_units(price):
    """Convert a major-unit price to integer minor units.

    ROUND_HALF_UP on Decimal rounds half away from zero.
    """
    return int((Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_lead_price(service_request):
    """Price a lead from its request's category.

    Returns {"amount": int minor units, "currency": str, "breakdown": {...}}.
    Raises ValidationError if the request carries no category.
    """
    category_id = getattr(service_request, "category_id", None)
    if not category_id:
        raise ValidationError("Service category is required for pricing.")

    category = db.session.get(Category, category_id)
    base_price = category.price if category is not None else None
    if base_price is None:
        base_price = Decimal(str(current_app.config["LEAD_DEFAULT_PRICE"]))

    amount = to_minor_units(base_price)
    return {
        "amount": amount,
        "currency": current_app.config["LEAD_CURRENCY"],
        "breakdown": {
            "basePrice": str(Decimal(str(base_price)).quantize(Decimal("0.01"))),
            "finalPriceMinorUnits": amount,
        },
    }


def is_free_lead(pricing):
    return pricing["amount"] == 0


def get_lead_price_by_request_id(request_id):
    service_request = ServiceRequest.query.filter_by(request_id=request_id).first()
    if service_request is None:
        raise NotFoundError("Service request not found.")
    return calculate_lead_price(service_request)
