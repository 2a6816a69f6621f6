"""Service requests blueprint — /api/requests/*

Customer-facing request lifecycle. Domain errors raised by the services
are turned into JSON by the ServiceError handler in create_app().

Route Map:
  POST  /api/requests                      — Create a request (customer)
  GET   /api/requests                      — Own requests (customer)
  GET   /api/requests/categories           — Active categories to pick from
  GET   /api/requests/<request_id>         — Request detail (owner, candidate, admin)
  POST  /api/requests/<request_id>/review  — Review a completed request (customer)
  PATCH /api/requests/<request_id>/complete — Mark complete (assigned provider)
"""

import logging

from flask import Blueprint, abort, jsonify, request
from flask_login import current_user, login_required

from leadmarket.decorators import role_required
from leadmarket.models.user import User
from leadmarket.services import provider_service, request_service

logger = logging.getLogger(__name__)

requests_bp = Blueprint("service_requests", __name__, url_prefix="/api/requests")


@requests_bp.route("", methods=["POST"])
@role_required(User.ROLE_USER)
def create_request():
    data = request.get_json(silent=True) or {}
    service_request = request_service.create_service_request(current_user, data)
    return jsonify(ok=True, data=service_request.to_dict()), 201


@requests_bp.route("", methods=["GET"])
@role_required(User.ROLE_USER)
def list_requests():
    status = request.args.get("status")
    items = request_service.list_customer_requests(current_user, status=status)
    return jsonify(ok=True, data=[sr.to_dict() for sr in items])


@requests_bp.route("/categories", methods=["GET"])
@login_required
def list_categories():
    categories = provider_service.list_active_categories()
    return jsonify(ok=True, data=[c.to_dict() for c in categories])


@requests_bp.route("/<request_id>", methods=["GET"])
@login_required
def request_detail(request_id):
    """Visible to the customer who owns it, its candidates, and admins."""
    service_request = request_service.get_service_request(request_id)

    allowed = current_user.is_admin or service_request.customer_id == current_user.id
    if not allowed and current_user.role == User.ROLE_PROVIDER and current_user.provider:
        allowed = service_request.candidate_for(current_user.provider.id) is not None
    if not allowed:
        abort(403)

    return jsonify(ok=True, data=service_request.to_dict(include_candidates=True))


@requests_bp.route("/<request_id>/review", methods=["POST"])
@role_required(User.ROLE_USER)
def review_request(request_id):
    data = request.get_json(silent=True) or {}
    review = request_service.submit_review(
        current_user, request_id, data.get("rating"), data.get("comment")
    )
    return jsonify(ok=True, data=review.to_dict()), 201


@requests_bp.route("/<request_id>/complete", methods=["PATCH"])
@role_required(User.ROLE_PROVIDER)
def complete_request(request_id):
    data = request.get_json(silent=True) or {}
    service_request = request_service.mark_request_complete(
        current_user.id, request_id, proof=data
    )
    return jsonify(ok=True, data=service_request.to_dict())
