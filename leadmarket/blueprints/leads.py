"""Leads blueprint — /api/leads/*

Lead price preview and purchase. Purchasing only opens a Stripe Checkout
Session; the request itself changes when the webhook confirms payment.

Route Map:
  GET  /api/leads/<request_id>/price         — Price preview
  POST /api/leads/<request_id>/purchase      — Open a checkout session
  GET  /api/leads/purchases                  — Own purchase history
  GET  /api/leads/purchases/<session_id>     — Purchase status (success-page polling)
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from leadmarket.decorators import role_required
from leadmarket.extensions import limiter
from leadmarket.models.user import User
from leadmarket.services import checkout_service, pricing_service

logger = logging.getLogger(__name__)

leads_bp = Blueprint("leads", __name__, url_prefix="/api/leads")


@leads_bp.route("/<request_id>/price", methods=["GET"])
@login_required
def price(request_id):
    pricing = pricing_service.get_lead_price_by_request_id(request_id)
    return jsonify(ok=True, data=pricing)


@leads_bp.route("/<request_id>/purchase", methods=["POST"])
@role_required(User.ROLE_PROVIDER)
@limiter.limit("10 per minute")
def purchase(request_id):
    payload = request.get_json(silent=True) or {}
    metadata = payload.get("metadata")
    if not isinstance(metadata, dict):
        metadata = None
    checkout = checkout_service.create_lead_checkout_session(
        current_user.id, request_id, payload=metadata
    )
    return jsonify(ok=True, data=checkout), 201


@leads_bp.route("/purchases", methods=["GET"])
@role_required(User.ROLE_PROVIDER)
def purchases():
    items = checkout_service.list_provider_purchases(current_user.id)
    return jsonify(ok=True, data=[p.to_dict() for p in items])


@leads_bp.route("/purchases/<session_id>", methods=["GET"])
@role_required(User.ROLE_PROVIDER)
def purchase_status(session_id):
    purchase = checkout_service.get_purchase_status(current_user.id, session_id)
    return jsonify(ok=True, data=purchase.to_dict())
