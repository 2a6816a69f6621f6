"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, request, jsonify

from leadmarket.services.stripe_service import verify_webhook_signature, handle_webhook_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and reconcile Stripe payment events.

    1. Read the raw body (never JSON-decoded before verification)
    2. Verify the signature with STRIPE_WEBHOOK_SECRET; reject with 400
    3. Reconcile in one transaction (idempotent via stripe_events)
    4. 200 acknowledges; 500 asks Stripe to redeliver
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify(ok=False, error="Missing signature"), 400

    try:
        event = verify_webhook_signature(payload, sig_header)
    except Exception as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify(ok=False, error="Invalid signature"), 400

    logger.info(f"Webhook {event['id']} received ({event['type']})")
    success, message = handle_webhook_event(event)

    if success:
        return jsonify(ok=True, status=message), 200
    logger.error(f"Webhook processing failed: {message}")
    return jsonify(ok=False, error=message), 500
