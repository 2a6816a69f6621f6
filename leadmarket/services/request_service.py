"""Service request lifecycle.

State machine (ServiceRequest.VALID_TRANSITIONS):
    PENDING/MATCHED -> IN_PROGRESS   (free lead, already purchased, or paid via webhook)
    PENDING/MATCHED -> EXPIRED       (scheduler, >24h unassigned)
    IN_PROGRESS     -> COMPLETED     (assigned provider marks complete)
    COMPLETED       -> APPROVED      (customer review, or scheduler after 72h)
    *               -> CANCELLED / PROCESSING / PENDING (admin override)

Accepting a paid lead does not change the aggregate status: it opens a
payment hold and moves the provider's candidate to AWAITING_PAYMENT; the
webhook handler does the assignment once Stripe confirms the charge.

Every state change is a conditional UPDATE; losing a race surfaces as
ConflictError, never as a silent overwrite. Lifecycle operations commit
themselves, notifications go out after the commit.
"""

import logging
import re
from datetime import date

from flask import current_app
from sqlalchemy import func, update

from leadmarket.extensions import db
from leadmarket.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from leadmarket.models.category import Category
from leadmarket.models.lead import LeadPurchase
from leadmarket.models.provider import Provider
from leadmarket.models.review import Review
from leadmarket.models.service_request import RequestCandidate, ServiceRequest
from leadmarket.services.audit_service import log_request_audit
from leadmarket.services.checkout_service import create_lead_checkout_session
from leadmarket.services.hold_service import (
    expire_hold_if_stale,
    hold_is_free_for,
    is_hold_active,
    open_hold,
    release_hold,
)
from leadmarket.services.matching_service import is_eligible, match_request_to_providers
from leadmarket.services.notification_service import notify
from leadmarket.services.pricing_service import calculate_lead_price, is_free_lead
from leadmarket.utils import conditional_update, sanitize, utcnow

logger = logging.getLogger(__name__)

TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

REQUIRED_FIELDS = [
    "categoryId",
    "subcategoryId",
    "startDate",
    "endDate",
    "startTime",
    "endTime",
    "address",
    "latitude",
    "longitude",
]


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def get_service_request(request_id):
    service_request = ServiceRequest.by_request_id(request_id)
    if service_request is None:
        raise NotFoundError("Service request not found.")
    return service_request


def get_active_provider(provider_user_id):
    provider = Provider.query.filter_by(user_id=provider_user_id).first()
    if provider is None:
        raise NotFoundError("Provider not found.")
    if not provider.is_active:
        raise ForbiddenError("Provider account is inactive.", code="PROVIDER_INACTIVE")
    return provider


def list_customer_requests(customer, status=None):
    query = ServiceRequest.query.filter_by(customer_id=customer.id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(ServiceRequest.created_at.desc()).all()


# ──────────────────────────────────────────────
# Creation
# ──────────────────────────────────────────────

def _parse_coordinate(value, name, limit):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number.")
    if not -limit <= number <= limit:
        raise ValidationError(f"{name} must be between -{limit} and {limit}.")
    return number


def _parse_date(value, name):
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{name} must be a date in YYYY-MM-DD format.")


def _next_request_id():
    # Count-based: two concurrent creations can compute the same id; the
    # unique constraint on request_id rejects the loser.
    return f"TZ{ServiceRequest.query.count() + 1:04d}"


def create_service_request(customer, data):
    """Validate and store a new request, then offer it to nearby providers.

    `data` uses the API's camelCase field names. Returns the ServiceRequest.
    """
    missing = [f for f in REQUIRED_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    category = db.session.get(Category, data["categoryId"])
    if category is None or not category.is_active:
        raise ValidationError("Invalid or inactive category.", code="INVALID_CATEGORY")
    subcategory = category.find_subcategory(data["subcategoryId"])
    if subcategory is None:
        raise ValidationError(
            "Invalid or inactive subcategory.", code="INVALID_SUBCATEGORY"
        )

    latitude = _parse_coordinate(data["latitude"], "latitude", 90)
    longitude = _parse_coordinate(data["longitude"], "longitude", 180)

    start_date = _parse_date(data["startDate"], "startDate")
    end_date = _parse_date(data["endDate"], "endDate")
    if end_date < start_date:
        raise ValidationError("endDate must not be before startDate.")

    for field in ("startTime", "endTime"):
        if not TIME_RE.match(str(data[field])):
            raise ValidationError(f"{field} must be in HH:MM format.")

    priority = data.get("priority") or "Normal"
    if priority not in ServiceRequest.PRIORITIES:
        raise ValidationError(
            f"priority must be one of: {', '.join(ServiceRequest.PRIORITIES)}"
        )

    attachments = data.get("attachments") or []
    if not isinstance(attachments, list):
        raise ValidationError("attachments must be a list.")

    address = sanitize(data["address"])
    if not address:
        raise ValidationError("address is required.")

    service_request = ServiceRequest(
        request_id=_next_request_id(),
        customer_id=customer.id,
        customer_phone=sanitize(data.get("phone")) or customer.phone,
        category_id=category.id,
        subcategory_name=subcategory.name,
        priority=priority,
        start_date=start_date,
        end_date=end_date,
        start_time=data["startTime"],
        end_time=data["endTime"],
        address=address,
        latitude=latitude,
        longitude=longitude,
        description=sanitize(data.get("description")),
        attachments=[sanitize(a) for a in attachments],
        status=ServiceRequest.PENDING,
        max_providers=current_app.config["LEAD_DEFAULT_MAX_PROVIDERS"],
    )
    db.session.add(service_request)
    db.session.flush()
    log_request_audit(service_request.id, "request.created", actor_user_id=customer.id)
    db.session.commit()
    logger.info(f"Service request {service_request.request_id} created by {customer.id}")

    notify(
        "New service request",
        f"Service request {service_request.request_id} was created.",
        None,
        {"type": "REQUEST_CREATED", "requestId": service_request.request_id},
    )

    if current_app.config["MATCH_ON_REQUEST_CREATE"]:
        match_request_to_providers(service_request)

    return service_request


# ──────────────────────────────────────────────
# Assignment
# ──────────────────────────────────────────────

def _next_position(service_request_id):
    return (
        db.session.query(func.count(RequestCandidate.id))
        .filter(RequestCandidate.service_request_id == service_request_id)
        .scalar()
    )


def assign_provider(service_request, provider_id, now=None, expected_version=None,
                    respect_hold=True, paid=False):
    """Make `provider_id` the request's single assignee.

    Wins only if nobody is assigned yet and the request is still in an
    assignable status; `expected_version` and `respect_hold` tighten the
    precondition for the accept path. The webhook path passes neither: a
    confirmed payment outranks a hold.

    Clears the hold, moves the candidate to ACCEPTED (inserting it if the
    provider was never matched) and returns any other AWAITING_PAYMENT
    candidate to PENDING. Flushes only. Returns True if assigned.
    """
    now = now or utcnow()
    request_pk = service_request.id

    conditions = [
        ServiceRequest.id == request_pk,
        ServiceRequest.assigned_provider_id.is_(None),
        ServiceRequest.status.in_(ServiceRequest.ASSIGNABLE_STATUSES),
    ]
    if expected_version is not None:
        conditions.append(ServiceRequest.version == expected_version)
    if respect_hold:
        conditions.append(hold_is_free_for(provider_id, now))

    assigned = conditional_update(
        update(ServiceRequest)
        .where(*conditions)
        .values(
            assigned_provider_id=provider_id,
            status=ServiceRequest.IN_PROGRESS,
            payment_hold_by=None,
            payment_hold_until=None,
            version=ServiceRequest.version + 1,
        )
    )
    if not assigned:
        return False

    candidate_values = {
        "status": RequestCandidate.ACCEPTED,
        "accepted_at": now,
        "payment_window_start": None,
    }
    if paid:
        candidate_values["paid_at"] = now
    updated = conditional_update(
        update(RequestCandidate)
        .where(
            RequestCandidate.service_request_id == request_pk,
            RequestCandidate.provider_id == provider_id,
        )
        .values(**candidate_values)
    )
    if not updated:
        db.session.add(RequestCandidate(
            service_request_id=request_pk,
            provider_id=provider_id,
            position=_next_position(request_pk),
            status=RequestCandidate.ACCEPTED,
            accepted_at=now,
            paid_at=now if paid else None,
        ))
        db.session.flush()

    conditional_update(
        update(RequestCandidate)
        .where(
            RequestCandidate.service_request_id == request_pk,
            RequestCandidate.provider_id != provider_id,
            RequestCandidate.status == RequestCandidate.AWAITING_PAYMENT,
        )
        .values(status=RequestCandidate.PENDING, payment_window_start=None)
    )
    log_request_audit(request_pk, "request.assigned", metadata={
        "provider_id": provider_id,
        "paid": paid,
    })
    logger.info(f"Request {request_pk} assigned to provider {provider_id}")
    return True


def _join_as_candidate(service_request, provider):
    """Eligible providers that were never matched join on their first accept."""
    if not is_eligible(provider, service_request):
        raise ForbiddenError(
            "You are not a potential provider for this request.", code="NOT_A_CANDIDATE"
        )
    candidate = RequestCandidate(
        service_request_id=service_request.id,
        provider_id=provider.id,
        position=_next_position(service_request.id),
        status=RequestCandidate.PENDING,
    )
    db.session.add(candidate)
    db.session.commit()
    return candidate


def _notify_customer_assigned(service_request, provider):
    notify(
        "Provider assigned",
        f"{provider.company_name} will handle service request {service_request.request_id}.",
        service_request.customer_id,
        {"type": "REQUEST_ASSIGNED", "requestId": service_request.request_id},
    )


# ──────────────────────────────────────────────
# Provider actions
# ──────────────────────────────────────────────

def accept_request(provider_user_id, request_id):
    """Provider accepts a lead.

    Free or already-purchased leads are assigned immediately. Paid leads
    get a payment hold and a Stripe Checkout Session; the webhook assigns
    once payment clears.

    Returns {"assigned": bool, "request": {...}} plus, for paid leads,
    checkoutUrl / sessionId / paymentHoldUntil.
    """
    now = utcnow()
    provider = get_active_provider(provider_user_id)
    service_request = get_service_request(request_id)

    if expire_hold_if_stale(service_request, now):
        db.session.commit()

    if service_request.status not in ServiceRequest.OPEN_STATUSES:
        raise ConflictError(
            "This service request is no longer open.", code="REQUEST_NOT_OPEN"
        )

    candidate = service_request.candidate_for(provider.id)
    if candidate is None:
        candidate = _join_as_candidate(service_request, provider)
    if candidate.status == RequestCandidate.DECLINED:
        raise ConflictError("You have already declined this request.", code="ALREADY_DECLINED")

    if service_request.assigned_provider_id is not None:
        raise ConflictError(
            "This request has already been assigned to another provider.",
            code="ALREADY_ASSIGNED",
        )
    if is_hold_active(service_request, now) and service_request.payment_hold_by != provider.id:
        raise ConflictError(
            "This request is in payment process by another provider.",
            code="HOLD_CONFLICT",
        )

    pricing = calculate_lead_price(service_request)
    already_purchased = LeadPurchase.query.filter_by(
        provider_id=provider.id,
        service_request_id=service_request.id,
        status=LeadPurchase.COMPLETED,
    ).first() is not None

    if is_free_lead(pricing) or already_purchased:
        assigned = assign_provider(
            service_request,
            provider.id,
            now,
            expected_version=service_request.version,
            paid=already_purchased,
        )
        if not assigned:
            db.session.rollback()
            raise ConflictError(
                "This request was just taken by another provider.",
                code="ALREADY_ASSIGNED",
            )
        db.session.commit()
        _notify_customer_assigned(service_request, provider)
        return {"assigned": True, "request": service_request.to_dict()}

    hold_until = open_hold(service_request, provider.id, now)
    db.session.commit()
    logger.info(
        f"Provider {provider.id} holds request {service_request.request_id} "
        f"until {hold_until.isoformat()}"
    )

    try:
        checkout = create_lead_checkout_session(provider_user_id, service_request.request_id)
    except ServiceError:
        db.session.rollback()
        release_hold(service_request, provider.id)
        db.session.commit()
        raise

    return {
        "assigned": False,
        "request": service_request.to_dict(),
        "checkoutUrl": checkout["url"],
        "sessionId": checkout["sessionId"],
        "amount": checkout["amount"],
        "currency": checkout["currency"],
        "paymentHoldUntil": hold_until.isoformat(),
    }


def decline_request(provider_user_id, request_id):
    """Provider declines a lead. Declining twice is a no-op."""
    now = utcnow()
    provider = get_active_provider(provider_user_id)
    service_request = get_service_request(request_id)

    if expire_hold_if_stale(service_request, now):
        db.session.commit()

    candidate = service_request.candidate_for(provider.id)
    if candidate is None:
        raise ForbiddenError(
            "You are not a potential provider for this request.", code="NOT_A_CANDIDATE"
        )
    if service_request.assigned_provider_id == provider.id:
        raise ConflictError(
            "The assigned provider cannot decline this request.", code="ALREADY_ASSIGNED"
        )
    if candidate.status == RequestCandidate.DECLINED:
        return service_request

    release_hold(service_request, provider.id)
    conditional_update(
        update(RequestCandidate)
        .where(
            RequestCandidate.service_request_id == service_request.id,
            RequestCandidate.provider_id == provider.id,
            RequestCandidate.status != RequestCandidate.DECLINED,
        )
        .values(
            status=RequestCandidate.DECLINED,
            declined_at=now,
            payment_window_start=None,
        )
    )
    log_request_audit(
        service_request.id, "request.declined", actor_user_id=provider_user_id,
        metadata={"provider_id": provider.id},
    )
    db.session.commit()
    return service_request


def mark_request_complete(provider_user_id, request_id, proof=None):
    """IN_PROGRESS -> COMPLETED, for the assigned provider only."""
    provider = get_active_provider(provider_user_id)
    service_request = get_service_request(request_id)

    if service_request.assigned_provider_id != provider.id:
        raise ForbiddenError(
            "Only the assigned provider can complete this request.", code="NOT_ASSIGNED"
        )

    proof = proof or {}
    completion_proof = {
        "notes": sanitize(proof.get("notes")),
        "attachments": [sanitize(a) for a in proof.get("attachments") or []],
    }
    completed = conditional_update(
        update(ServiceRequest)
        .where(
            ServiceRequest.id == service_request.id,
            ServiceRequest.assigned_provider_id == provider.id,
            ServiceRequest.status == ServiceRequest.IN_PROGRESS,
        )
        .values(
            status=ServiceRequest.COMPLETED,
            completed_at=utcnow(),
            completion_proof=completion_proof,
            version=ServiceRequest.version + 1,
        )
    )
    if not completed:
        raise ConflictError(
            "Only in-progress requests can be marked complete.", code="INVALID_TRANSITION"
        )
    log_request_audit(service_request.id, "request.completed", actor_user_id=provider_user_id)
    db.session.commit()

    notify(
        "Service completed",
        f"Service request {service_request.request_id} was marked complete. "
        "Please review the provider.",
        service_request.customer_id,
        {"type": "REQUEST_COMPLETED", "requestId": service_request.request_id},
    )
    return service_request


# ──────────────────────────────────────────────
# Customer & admin actions
# ──────────────────────────────────────────────

def submit_review(customer, request_id, rating, comment=None):
    """Review a completed request. Approves it and updates the provider rating."""
    service_request = get_service_request(request_id)
    if service_request.customer_id != customer.id:
        raise ForbiddenError("You can only review your own requests.")

    try:
        rating = int(rating)
    except (TypeError, ValueError):
        raise ValidationError("rating must be an integer between 1 and 5.")
    if not 1 <= rating <= 5:
        raise ValidationError("rating must be an integer between 1 and 5.")

    provider_id = service_request.assigned_provider_id
    reviewed = conditional_update(
        update(ServiceRequest)
        .where(
            ServiceRequest.id == service_request.id,
            ServiceRequest.status == ServiceRequest.COMPLETED,
            ServiceRequest.is_reviewed.is_(False),
        )
        .values(
            is_reviewed=True,
            status=ServiceRequest.APPROVED,
            version=ServiceRequest.version + 1,
        )
    )
    if not reviewed:
        raise ConflictError(
            "Only completed, unreviewed requests can be reviewed.", code="INVALID_TRANSITION"
        )

    review = Review(
        service_request_id=service_request.id,
        customer_id=customer.id,
        provider_id=provider_id,
        rating=rating,
        comment=sanitize(comment),
    )
    db.session.add(review)

    total = func.coalesce(Provider.total_reviews, 0)
    conditional_update(
        update(Provider)
        .where(Provider.id == provider_id)
        .values(
            rating=(func.coalesce(Provider.rating, 0) * total + rating * 1.0) / (total + 1),
            total_reviews=total + 1,
        )
    )
    log_request_audit(
        service_request.id, "request.reviewed", actor_user_id=customer.id,
        metadata={"rating": rating},
    )
    db.session.commit()

    provider = db.session.get(Provider, provider_id)
    if provider is not None:
        notify(
            "New review",
            f"You've received a new {rating}-star review.",
            provider.user_id,
            {"type": "NEW_REVIEW", "requestId": service_request.request_id},
        )
    return review


def admin_update_status(request_id, new_status, actor_user_id=None):
    """Admin override to CANCELLED, PROCESSING, or back to PENDING."""
    if new_status not in ServiceRequest.ADMIN_OVERRIDE_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(ServiceRequest.ADMIN_OVERRIDE_STATUSES)}"
        )

    service_request = get_service_request(request_id)
    current = service_request.status
    if current in ServiceRequest.TERMINAL_STATUSES:
        raise ConflictError(
            f"Request is {current} and can no longer change.", code="INVALID_TRANSITION"
        )
    if new_status not in ServiceRequest.VALID_TRANSITIONS.get(current, []):
        raise ConflictError(
            f"Cannot move request from {current} to {new_status}.", code="INVALID_TRANSITION"
        )

    values = {"status": new_status, "version": ServiceRequest.version + 1}
    if new_status == ServiceRequest.CANCELLED:
        values.update(payment_hold_by=None, payment_hold_until=None)

    changed = conditional_update(
        update(ServiceRequest)
        .where(
            ServiceRequest.id == service_request.id,
            ServiceRequest.status == current,
            ServiceRequest.version == service_request.version,
        )
        .values(**values)
    )
    if not changed:
        raise ConflictError("Request changed concurrently, please retry.", code="CONFLICT")

    log_request_audit(
        service_request.id, "request.status_override", actor_user_id=actor_user_id,
        metadata={"old": current, "new": new_status},
    )
    db.session.commit()
    notify(
        "Service request updated",
        f"Service request {service_request.request_id} is now {new_status}.",
        service_request.customer_id,
        {"type": "REQUEST_STATUS_CHANGED", "requestId": service_request.request_id},
    )
    return service_request
