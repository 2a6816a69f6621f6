"""Stripe service — webhook verification and reconciliation.

Responsible for:
- Verifying webhook signatures
- Dispatching events to handlers
- Idempotency, in two layers:
    1. stripe_events table (event id already seen -> acknowledge, skip)
    2. conditional PENDING/FAILED -> COMPLETED update on the purchase
       (a second event for the same payment matches zero rows)
- Applying a confirmed payment to the request in ONE transaction:
  purchase, purchase log, assignment, provider counters
- Refunding a payment the provider cannot use (lead already owned
  through another purchase, or declined); at most one COMPLETED purchase
  exists per provider and request

Notifications are collected by the handlers and sent only after the
commit, so a notification failure can never roll back a payment.
"""

import logging

import stripe
from flask import current_app
from sqlalchemy import update

from leadmarket.extensions import db
from leadmarket.models.lead import LeadPurchase
from leadmarket.models.provider import Provider
from leadmarket.models.service_request import (
    RequestCandidate,
    RequestPurchase,
    ServiceRequest,
)
from leadmarket.models.stripe_event import StripeEvent
from leadmarket.services.audit_service import log_request_audit
from leadmarket.services.checkout_service import LEAD_PURCHASE
from leadmarket.services.hold_service import expire_hold_if_stale, release_hold
from leadmarket.services.notification_service import notify
from leadmarket.services.request_service import assign_provider
from leadmarket.utils import conditional_update, utcnow

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises stripe.error.SignatureVerificationError on invalid signature.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Idempotency: checks stripe_events table before processing.
    If the event was already processed, returns immediately.

    Returns (success: bool, message: str). On failure nothing is committed
    and the event is not recorded, so Stripe's redelivery retries it.
    """
    event_id = event["id"]
    event_type = event["type"]

    # --- Idempotency check ---
    existing = StripeEvent.query.filter_by(
        stripe_event_id=event_id
    ).first()
    if existing:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, "already_processed"

    # --- Route to handler ---
    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "checkout.session.expired": _handle_checkout_expired,
        "payment_intent.succeeded": _handle_payment_intent_succeeded,
        "payment_intent.payment_failed": _handle_payment_intent_failed,
    }

    outbox = []
    handler = handlers.get(event_type)
    try:
        if handler:
            outbox = handler(event) or []
        else:
            logger.info(f"Ignoring unhandled webhook event type {event_type} ({event_id})")

        # --- Record event for idempotency ---
        data_object = (event.get("data") or {}).get("object") or {}
        db.session.add(StripeEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            object_id=data_object.get("id"),
            outcome=(
                StripeEvent.OUTCOME_HANDLED if handler
                else StripeEvent.OUTCOME_IGNORED
            ),
        ))
        db.session.commit()
    except Exception as e:
        logger.error(f"Error handling {event_type}: {e}", exc_info=True)
        db.session.rollback()
        return False, str(e)

    for title, message, recipient_id, meta in outbox:
        notify(title, message, recipient_id, meta)

    return True, "processed"


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def _find_purchase_for_intent(intent):
    """Purchase behind a PaymentIntent.

    By stored intent id first; otherwise by the lead metadata copied onto
    the intent at checkout, matching the pair's PENDING purchase.
    """
    purchase = LeadPurchase.query.filter_by(
        stripe_payment_intent_id=intent["id"]
    ).first()
    if purchase is not None:
        return purchase

    metadata = intent.get("metadata") or {}
    if metadata.get("type") != LEAD_PURCHASE:
        return None
    return (
        LeadPurchase.query
        .filter_by(
            provider_id=metadata.get("providerId"),
            service_request_id=metadata.get("serviceRequestId"),
            status=LeadPurchase.PENDING,
        )
        .order_by(LeadPurchase.created_at.desc())
        .first()
    )


def _latest_charge_id(intent):
    charge = intent.get("latest_charge")
    if isinstance(charge, dict):
        return charge.get("id")
    return charge


# ──────────────────────────────────────────────
# Reconciliation
# ──────────────────────────────────────────────

def _mark_candidate_paid(service_request_id, provider_id, now):
    updated = conditional_update(
        update(RequestCandidate)
        .where(
            RequestCandidate.service_request_id == service_request_id,
            RequestCandidate.provider_id == provider_id,
        )
        .values(
            status=RequestCandidate.PAID,
            paid_at=now,
            payment_window_start=None,
        )
    )
    if not updated:
        position = RequestCandidate.query.filter_by(
            service_request_id=service_request_id
        ).count()
        db.session.add(RequestCandidate(
            service_request_id=service_request_id,
            provider_id=provider_id,
            position=position,
            status=RequestCandidate.PAID,
            paid_at=now,
        ))
        db.session.flush()


def _unusable_payment_reason(purchase):
    """Why a confirmed payment must be refunded instead of applied, or None.

    The provider already owns the lead through another completed purchase
    (an older session paid after a retry opened a new one), or declined
    the request while the session was still open.
    """
    duplicate = LeadPurchase.query.filter(
        LeadPurchase.provider_id == purchase.provider_id,
        LeadPurchase.service_request_id == purchase.service_request_id,
        LeadPurchase.status == LeadPurchase.COMPLETED,
        LeadPurchase.id != purchase.id,
    ).first()
    if duplicate is not None:
        return "duplicate", f"Duplicate of lead purchase {duplicate.id}"

    candidate = RequestCandidate.query.filter_by(
        service_request_id=purchase.service_request_id,
        provider_id=purchase.provider_id,
    ).first()
    if candidate is not None and candidate.status == RequestCandidate.DECLINED:
        return "requested_by_customer", "Lead declined before payment was confirmed"
    return None


def _refund_lead_purchase(purchase, stripe_reason, reason, payment_intent_id=None,
                          charge_id=None):
    """Refund a confirmed payment that buys nothing. Flushes only.

    No purchase log, assignment or provider counters. A Stripe failure
    propagates so the event is rolled back and redelivered; the idempotency
    key makes the retried refund a no-op at Stripe.
    """
    now = utcnow()
    purchase_pk = purchase.id
    intent_id = payment_intent_id or purchase.stripe_payment_intent_id

    values = {"stripe_payment_intent_id": intent_id} if intent_id else {}
    if charge_id:
        values["stripe_charge_id"] = charge_id
    if intent_id:
        values.update(
            status=LeadPurchase.REFUNDED,
            refunded_at=now,
            refund_reason=reason,
            refund_amount=purchase.amount,
        )
    else:
        values.update(
            status=LeadPurchase.FAILED,
            failure_reason=f"{reason}; no payment intent, refund manually",
        )

    claimed = conditional_update(
        update(LeadPurchase)
        .where(
            LeadPurchase.id == purchase_pk,
            LeadPurchase.status.in_([LeadPurchase.PENDING, LeadPurchase.FAILED]),
        )
        .values(**values)
    )
    if not claimed:
        return []

    if not intent_id:
        logger.error(f"Lead purchase {purchase_pk} needs a manual refund: {reason}")
        return []

    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    stripe.Refund.create(
        payment_intent=intent_id,
        reason=stripe_reason,
        idempotency_key=f"lead-purchase-refund-{purchase_pk}",
    )
    log_request_audit(purchase.service_request_id, "lead.refunded", metadata={
        "provider_id": purchase.provider_id,
        "purchase_id": purchase_pk,
        "amount": purchase.amount,
        "reason": reason,
    })
    logger.warning(f"Lead purchase {purchase_pk} refunded: {reason}")

    provider = db.session.get(Provider, purchase.provider_id)
    service_request = db.session.get(ServiceRequest, purchase.service_request_id)
    return [(
        "Payment refunded",
        f"Your payment for service request {service_request.request_id} was refunded: {reason}.",
        provider.user_id,
        {"type": "LEAD_REFUNDED", "requestId": service_request.request_id},
    )]


def confirm_lead_purchase(purchase, payment_intent_id=None, charge_id=None):
    """Apply a confirmed payment. Flushes only; the caller commits.

    The purchase flips to COMPLETED only from PENDING/FAILED, so a second
    confirmation for the same payment changes nothing. A payment for a
    lead the provider already owns, or has declined, is refunded instead.
    The paying provider becomes the assignee only if nobody is assigned
    yet; otherwise their candidate is marked PAID and the existing
    assignment stands.

    Returns the notifications to send after commit.
    """
    if purchase.status not in (LeadPurchase.PENDING, LeadPurchase.FAILED):
        logger.info(f"Lead purchase {purchase.id} already {purchase.status}, skipping")
        return []

    unusable = _unusable_payment_reason(purchase)
    if unusable is not None:
        stripe_reason, reason = unusable
        return _refund_lead_purchase(
            purchase, stripe_reason, reason,
            payment_intent_id=payment_intent_id, charge_id=charge_id,
        )

    now = utcnow()
    values = {"status": LeadPurchase.COMPLETED, "purchased_at": now, "failure_reason": None}
    if payment_intent_id:
        values["stripe_payment_intent_id"] = payment_intent_id
    if charge_id:
        values["stripe_charge_id"] = charge_id

    purchase_pk = purchase.id
    completed = conditional_update(
        update(LeadPurchase)
        .where(
            LeadPurchase.id == purchase_pk,
            LeadPurchase.status.in_([LeadPurchase.PENDING, LeadPurchase.FAILED]),
        )
        .values(**values)
    )
    if not completed:
        logger.info(f"Lead purchase {purchase_pk} already {purchase.status}, skipping")
        return []

    purchase = db.session.get(LeadPurchase, purchase_pk)
    service_request = db.session.get(ServiceRequest, purchase.service_request_id)
    provider = db.session.get(Provider, purchase.provider_id)

    db.session.add(RequestPurchase(
        service_request_id=service_request.id,
        provider_id=provider.id,
        lead_purchase_id=purchase.id,
        purchased_at=now,
    ))
    db.session.flush()

    expire_hold_if_stale(service_request, now)

    assigned = False
    if service_request.assigned_provider_id is None:
        assigned = assign_provider(
            service_request, provider.id, now, respect_hold=False, paid=True
        )
    if not assigned and service_request.assigned_provider_id != provider.id:
        # Someone else holds the assignment (or the request closed); keep it.
        release_hold(service_request, provider.id)
        _mark_candidate_paid(service_request.id, provider.id, now)
        logger.warning(
            f"Payment for request {service_request.request_id} by provider {provider.id} "
            f"confirmed without assignment (status={service_request.status}, "
            f"assigned={service_request.assigned_provider_id})"
        )

    conditional_update(
        update(Provider)
        .where(Provider.id == provider.id)
        .values(
            total_leads_purchased=Provider.total_leads_purchased + 1,
            total_spent_on_leads=Provider.total_spent_on_leads + purchase.amount,
        )
    )
    log_request_audit(service_request.id, "lead.purchased", metadata={
        "provider_id": provider.id,
        "purchase_id": purchase.id,
        "amount": purchase.amount,
        "assigned": assigned,
    })
    logger.info(
        f"Lead purchase {purchase.id} completed: provider {provider.id}, "
        f"request {service_request.request_id}, assigned={assigned}"
    )

    outbox = [(
        "Lead purchased",
        f"Your payment for service request {service_request.request_id} was successful.",
        provider.user_id,
        {"type": "LEAD_PURCHASED", "requestId": service_request.request_id},
    )]
    if assigned:
        outbox.append((
            "Provider assigned",
            f"{provider.company_name} will handle service request {service_request.request_id}.",
            service_request.customer_id,
            {"type": "REQUEST_ASSIGNED", "requestId": service_request.request_id},
        ))
    return outbox


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _handle_checkout_completed(event):
    """checkout.session.completed — a lead Checkout Session finished."""
    session = event["data"]["object"]
    metadata = session.get("metadata") or {}
    if metadata.get("type") != LEAD_PURCHASE:
        logger.info(f"Checkout session {session['id']} is not a lead purchase, ignoring")
        return []

    if session.get("payment_status") not in ("paid", "no_payment_required"):
        # Delayed payment methods confirm later via payment_intent.succeeded
        logger.info(
            f"Checkout session {session['id']} completed unpaid "
            f"({session.get('payment_status')}), waiting for payment"
        )
        return []

    purchase = LeadPurchase.query.filter_by(
        stripe_checkout_session_id=session["id"]
    ).first()
    if purchase is None:
        logger.warning(f"No lead purchase for checkout session {session['id']}")
        return []

    return confirm_lead_purchase(purchase, payment_intent_id=session.get("payment_intent"))


def _handle_checkout_expired(event):
    """checkout.session.expired — the provider abandoned the Stripe page."""
    session = event["data"]["object"]
    conditional_update(
        update(LeadPurchase)
        .where(
            LeadPurchase.stripe_checkout_session_id == session["id"],
            LeadPurchase.status == LeadPurchase.PENDING,
        )
        .values(status=LeadPurchase.FAILED, failure_reason="Checkout session expired")
    )
    return []


def _handle_payment_intent_succeeded(event):
    intent = event["data"]["object"]
    purchase = _find_purchase_for_intent(intent)
    if purchase is None:
        logger.info(f"No lead purchase for payment intent {intent['id']}, ignoring")
        return []
    return confirm_lead_purchase(
        purchase,
        payment_intent_id=intent["id"],
        charge_id=_latest_charge_id(intent),
    )


def _handle_payment_intent_failed(event):
    """payment_intent.payment_failed — record the reason, nothing else."""
    intent = event["data"]["object"]
    purchase = _find_purchase_for_intent(intent)
    if purchase is None:
        logger.info(f"No lead purchase for failed payment intent {intent['id']}, ignoring")
        return []

    error = intent.get("last_payment_error") or {}
    reason = error.get("message") or "Payment failed"
    failed = conditional_update(
        update(LeadPurchase)
        .where(
            LeadPurchase.id == purchase.id,
            LeadPurchase.status == LeadPurchase.PENDING,
        )
        .values(
            status=LeadPurchase.FAILED,
            failure_reason=reason[:500],
            stripe_payment_intent_id=intent["id"],
        )
    )
    if failed:
        logger.warning(f"Lead purchase {purchase.id} failed: {reason}")
    return []
