"""Checkout session gateway — opens Stripe Checkout Sessions for lead purchases.

Creating a session never touches ServiceRequest state: only the webhook
handler does that, once Stripe confirms the payment. What this module
persists is a PENDING LeadPurchase keyed by the Checkout Session id.
"""

import logging

import stripe
from flask import current_app
from sqlalchemy import func, update

from leadmarket.extensions import db
from leadmarket.errors import (
    ConflictError,
    ForbiddenError,
    GoneError,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)
from leadmarket.models.lead import LeadPurchase
from leadmarket.models.provider import Provider
from leadmarket.models.service_request import RequestCandidate, ServiceRequest
from leadmarket.services.matching_service import is_eligible
from leadmarket.services.pricing_service import calculate_lead_price
from leadmarket.utils import conditional_update

logger = logging.getLogger(__name__)

LEAD_PURCHASE = "LEAD_PURCHASE"


def _success_url():
    return current_app.config["STRIPE_SUCCESS_URL"]


def _cancel_url():
    return current_app.config["STRIPE_CANCEL_URL"]


def _completed_purchase_count(service_request_id):
    return (
        db.session.query(func.count(LeadPurchase.id))
        .filter(
            LeadPurchase.service_request_id == service_request_id,
            LeadPurchase.status == LeadPurchase.COMPLETED,
        )
        .scalar()
    )


def _reuse_pending_session(pending):
    """Return the open Stripe session behind a PENDING purchase, if any.

    An expired session marks the row FAILED so a fresh one can be opened.
    A session whose state cannot be read may still be paid, so no second
    session is opened next to it.
    """
    try:
        session = stripe.checkout.Session.retrieve(pending.stripe_checkout_session_id)
    except stripe.error.StripeError as e:
        logger.error(
            f"Could not retrieve checkout session {pending.stripe_checkout_session_id}: {e}"
        )
        raise PaymentGatewayError("Could not load your payment session. Please try again.")

    session_status = session.status
    if session_status == "open":
        return session
    if session_status == "complete":
        raise ConflictError(
            "Payment for this lead is already being confirmed.", code="ALREADY_PURCHASED"
        )

    pending.status = LeadPurchase.FAILED
    pending.failure_reason = "Checkout session expired"
    db.session.flush()
    return None


def create_lead_checkout_session(provider_user_id, request_id, payload=None):
    """Open a Stripe Checkout Session for one lead.

    Returns {"url", "sessionId", "purchaseId", "amount", "currency"}.
    Raises NotFoundError, ValidationError (expired/cancelled request),
    ForbiddenError (inactive provider, not a candidate), ConflictError
    (declined, already purchased), GoneError (sold out) or
    PaymentGatewayError (Stripe failure). Commits the PENDING purchase.
    """
    provider = Provider.query.filter_by(user_id=provider_user_id).first()
    if provider is None:
        raise NotFoundError("Provider not found.")
    if not provider.is_active:
        raise ForbiddenError("Provider account is inactive.", code="PROVIDER_INACTIVE")

    service_request = ServiceRequest.by_request_id(request_id)
    if service_request is None:
        raise NotFoundError("Service request not found.")

    if service_request.status in (ServiceRequest.EXPIRED, ServiceRequest.CANCELLED):
        raise ValidationError(
            f"Service request is {service_request.status.lower()}.",
            code="REQUEST_UNAVAILABLE",
        )

    # Same gates as accepting: a decline stands, and an unmatched provider
    # must be eligible by category and radius.
    candidate = service_request.candidate_for(provider.id)
    if candidate is None and not is_eligible(provider, service_request):
        raise ForbiddenError(
            "You are not a potential provider for this request.", code="NOT_A_CANDIDATE"
        )
    if candidate is not None and candidate.status == RequestCandidate.DECLINED:
        raise ConflictError("You have already declined this request.", code="ALREADY_DECLINED")

    already = LeadPurchase.query.filter_by(
        provider_id=provider.id,
        service_request_id=service_request.id,
        status=LeadPurchase.COMPLETED,
    ).first()
    if already is not None:
        raise ConflictError("You have already purchased this lead.", code="ALREADY_PURCHASED")

    if _completed_purchase_count(service_request.id) >= service_request.max_providers:
        raise GoneError("Maximum providers reached for this lead.", code="SOLD_OUT")

    pricing = calculate_lead_price(service_request)

    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]

    pending = LeadPurchase.query.filter_by(
        provider_id=provider.id,
        service_request_id=service_request.id,
        status=LeadPurchase.PENDING,
    ).first()
    if pending is not None:
        session = _reuse_pending_session(pending)
        if session is not None:
            return {
                "url": session.url,
                "sessionId": pending.stripe_checkout_session_id,
                "purchaseId": pending.id,
                "amount": pending.amount,
                "currency": pending.currency,
            }

    metadata = {
        "requestId": service_request.request_id,
        "serviceRequestId": service_request.id,
        "providerId": provider.id,
        "type": LEAD_PURCHASE,
    }
    product_name = f"Lead {service_request.request_id}"
    if service_request.category is not None:
        product_name = f"{service_request.category.name} lead {service_request.request_id}"

    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": pricing["currency"].lower(),
                    "unit_amount": pricing["amount"],
                    "product_data": {
                        "name": product_name,
                        "description": service_request.subcategory_name,
                    },
                },
                "quantity": 1,
            }],
            success_url=_success_url(),
            cancel_url=_cancel_url(),
            client_reference_id=provider.id,
            metadata=metadata,
            # Copied so payment_intent.* events carry the same identifiers
            payment_intent_data={"metadata": metadata},
        )
    except stripe.error.StripeError as e:
        db.session.rollback()
        logger.error(
            f"Stripe checkout creation failed for request {service_request.request_id}: {e}"
        )
        raise PaymentGatewayError("Could not create payment session. Please try again.")

    # One live session per provider and request
    conditional_update(
        update(LeadPurchase)
        .where(
            LeadPurchase.provider_id == provider.id,
            LeadPurchase.service_request_id == service_request.id,
            LeadPurchase.status == LeadPurchase.PENDING,
        )
        .values(
            status=LeadPurchase.FAILED,
            failure_reason=f"Superseded by checkout session {session.id}",
        )
    )

    purchase = LeadPurchase(
        provider_id=provider.id,
        service_request_id=service_request.id,
        amount=pricing["amount"],
        currency=pricing["currency"],
        stripe_checkout_session_id=session.id,
        status=LeadPurchase.PENDING,
        metadata_={**(payload or {}), **metadata, "breakdown": pricing["breakdown"]},
    )
    db.session.add(purchase)
    db.session.commit()

    logger.info(
        f"Checkout session {session.id} opened for provider {provider.id} "
        f"on request {service_request.request_id} ({pricing['amount']} {pricing['currency']})"
    )
    return {
        "url": session.url,
        "sessionId": session.id,
        "purchaseId": purchase.id,
        "amount": pricing["amount"],
        "currency": pricing["currency"],
    }


def get_purchase_status(provider_user_id, session_id):
    """The provider's own purchase for a Checkout Session, for success-page polling."""
    provider = Provider.query.filter_by(user_id=provider_user_id).first()
    if provider is None:
        raise NotFoundError("Provider not found.")

    purchase = LeadPurchase.query.filter_by(
        stripe_checkout_session_id=session_id,
        provider_id=provider.id,
    ).first()
    if purchase is None:
        raise NotFoundError("Purchase not found.")
    return purchase


def list_provider_purchases(provider_user_id):
    provider = Provider.query.filter_by(user_id=provider_user_id).first()
    if provider is None:
        raise NotFoundError("Provider not found.")
    return (
        LeadPurchase.query
        .filter_by(provider_id=provider.id)
        .order_by(LeadPurchase.created_at.desc())
        .all()
    )
