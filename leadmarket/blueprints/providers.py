"""Providers blueprint — /api/providers/*

Provider self-service plus the accept/decline actions on leads.

Route Map:
  POST  /api/providers/register                       — Create provider profile
  GET   /api/providers/me                             — Own profile
  PATCH /api/providers/me                             — Stage profile edits for approval
  PATCH /api/providers/me/status                      — Toggle active
  GET   /api/providers/potential-requests             — Open leads for this provider
  POST  /api/providers/requests/<request_id>/accept   — Accept (free: assign; paid: hold + checkout)
  POST  /api/providers/requests/<request_id>/decline  — Decline
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from leadmarket.decorators import role_required
from leadmarket.extensions import limiter
from leadmarket.models.user import User
from leadmarket.services import matching_service, provider_service, request_service

logger = logging.getLogger(__name__)

providers_bp = Blueprint("providers", __name__, url_prefix="/api/providers")


@providers_bp.route("/register", methods=["POST"])
@login_required
def register():
    data = request.get_json(silent=True) or {}
    provider = provider_service.register_provider(current_user, data)
    return jsonify(ok=True, data=provider.to_dict()), 201


@providers_bp.route("/me", methods=["GET"])
@role_required(User.ROLE_PROVIDER)
def profile():
    provider = provider_service.get_provider_by_user(current_user.id)
    return jsonify(ok=True, data=provider.to_dict())


@providers_bp.route("/me", methods=["PATCH"])
@role_required(User.ROLE_PROVIDER)
def update_profile():
    data = request.get_json(silent=True) or {}
    provider = provider_service.stage_profile_update(current_user.id, data)
    return jsonify(
        ok=True,
        message="Update request submitted for admin approval.",
        data=provider.to_dict(),
    )


@providers_bp.route("/me/status", methods=["PATCH"])
@role_required(User.ROLE_PROVIDER)
def toggle_status():
    data = request.get_json(silent=True) or {}
    provider = provider_service.set_provider_active(current_user.id, data.get("isActive"))
    return jsonify(ok=True, data=provider.to_dict())


@providers_bp.route("/potential-requests", methods=["GET"])
@role_required(User.ROLE_PROVIDER)
def potential_requests():
    items = matching_service.get_potential_requests(current_user.id)
    return jsonify(ok=True, data=items)


@providers_bp.route("/requests/<request_id>/accept", methods=["POST"])
@role_required(User.ROLE_PROVIDER)
@limiter.limit("10 per minute")
def accept(request_id):
    """Free or already-purchased leads are assigned at once; paid leads
    return a Stripe Checkout URL while a 5-minute hold is open."""
    result = request_service.accept_request(current_user.id, request_id)
    return jsonify(ok=True, data=result)


@providers_bp.route("/requests/<request_id>/decline", methods=["POST"])
@role_required(User.ROLE_PROVIDER)
def decline(request_id):
    service_request = request_service.decline_request(current_user.id, request_id)
    return jsonify(ok=True, data=service_request.to_dict())
