"""Admin blueprint — /api/admin/*

Provider verification, staged profile approvals, request status
overrides and category/price management.
All routes protected by @admin_required decorator.

Route Map:
  GET   /api/admin/providers                               — Providers (filter: ?pending=1, ?verified=0)
  PATCH /api/admin/providers/<id>/verify                   — Verify / unverify (re-matches)
  POST  /api/admin/providers/<id>/pending-updates/approve  — Apply staged edits (re-matches)
  POST  /api/admin/providers/<id>/pending-updates/reject   — Discard staged edits
  PATCH /api/admin/requests/<request_id>/status            — Override to CANCELLED/PROCESSING/PENDING
  GET   /api/admin/requests/<request_id>/audit             — Lifecycle audit trail
  GET   /api/admin/categories                              — All categories
  POST  /api/admin/categories                              — Create category
  POST  /api/admin/categories/<id>/subcategories           — Add subcategory
  PATCH /api/admin/categories/<id>/price                   — Set lead price
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from leadmarket.decorators import admin_required
from leadmarket.models.audit import AuditEvent
from leadmarket.models.category import Category
from leadmarket.models.provider import Provider
from leadmarket.services import provider_service, request_service

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


# ══════════════════════════════════════════════
#  PROVIDERS
# ══════════════════════════════════════════════

@admin_bp.route("/providers", methods=["GET"])
@admin_required
def providers_list():
    query = Provider.query
    if request.args.get("pending"):
        query = query.filter(Provider.pending_updates.isnot(None))
    verified = request.args.get("verified")
    if verified in ("0", "1"):
        query = query.filter(Provider.is_verified.is_(verified == "1"))
    providers = query.order_by(Provider.created_at.desc()).all()
    return jsonify(ok=True, data=[p.to_dict() for p in providers])


@admin_bp.route("/providers/<provider_id>/verify", methods=["PATCH"])
@admin_required
def provider_verify(provider_id):
    data = request.get_json(silent=True) or {}
    provider, matched = provider_service.verify_provider(
        provider_id, data.get("isVerified", True)
    )
    logger.info(f"Admin {current_user.id} set provider {provider_id} verified={provider.is_verified}")
    return jsonify(
        ok=True,
        data=provider.to_dict(),
        matchedRequests=[sr.request_id for sr in matched],
    )


@admin_bp.route("/providers/<provider_id>/pending-updates/approve", methods=["POST"])
@admin_required
def provider_approve_updates(provider_id):
    provider, matched = provider_service.approve_pending_updates(provider_id)
    return jsonify(
        ok=True,
        data=provider.to_dict(),
        matchedRequests=[sr.request_id for sr in matched],
    )


@admin_bp.route("/providers/<provider_id>/pending-updates/reject", methods=["POST"])
@admin_required
def provider_reject_updates(provider_id):
    data = request.get_json(silent=True) or {}
    provider = provider_service.reject_pending_updates(provider_id, data.get("reason"))
    return jsonify(ok=True, data=provider.to_dict())


# ══════════════════════════════════════════════
#  SERVICE REQUESTS
# ══════════════════════════════════════════════

@admin_bp.route("/requests/<request_id>/status", methods=["PATCH"])
@admin_required
def request_status(request_id):
    data = request.get_json(silent=True) or {}
    service_request = request_service.admin_update_status(
        request_id, data.get("status"), actor_user_id=current_user.id
    )
    return jsonify(ok=True, data=service_request.to_dict(include_candidates=True))


@admin_bp.route("/requests/<request_id>/audit", methods=["GET"])
@admin_required
def request_audit(request_id):
    service_request = request_service.get_service_request(request_id)
    events = (
        AuditEvent.query
        .filter_by(service_request_id=service_request.id)
        .order_by(AuditEvent.created_at.asc())
        .all()
    )
    return jsonify(ok=True, data=[e.to_dict() for e in events])


# ══════════════════════════════════════════════
#  CATEGORIES
# ══════════════════════════════════════════════

@admin_bp.route("/categories", methods=["GET"])
@admin_required
def categories_list():
    categories = Category.query.order_by(Category.name).all()
    return jsonify(ok=True, data=[c.to_dict() for c in categories])


@admin_bp.route("/categories", methods=["POST"])
@admin_required
def category_create():
    data = request.get_json(silent=True) or {}
    category = provider_service.create_category(
        data.get("name"),
        icon=data.get("icon"),
        price=data.get("price"),
        subcategories=data.get("subcategories"),
    )
    return jsonify(ok=True, data=category.to_dict()), 201


@admin_bp.route("/categories/<category_id>/subcategories", methods=["POST"])
@admin_required
def subcategory_create(category_id):
    data = request.get_json(silent=True) or {}
    subcategory = provider_service.add_subcategory(category_id, data.get("name"))
    return jsonify(ok=True, data=subcategory.to_dict()), 201


@admin_bp.route("/categories/<category_id>/price", methods=["PATCH"])
@admin_required
def category_price(category_id):
    data = request.get_json(silent=True) or {}
    category = provider_service.set_category_price(category_id, data.get("price"))
    return jsonify(ok=True, data=category.to_dict())
