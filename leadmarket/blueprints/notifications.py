"""Notifications blueprint — /api/notifications/*

Route Map:
  GET   /api/notifications                — Own notifications (?unread=1)
  PATCH /api/notifications/<id>/read      — Mark one read
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from leadmarket.errors import NotFoundError
from leadmarket.services import notification_service

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.route("", methods=["GET"])
@login_required
def notifications_list():
    unread_only = request.args.get("unread") in ("1", "true")
    items = notification_service.list_notifications(current_user.id, unread_only=unread_only)
    return jsonify(ok=True, data=[n.to_dict() for n in items])


@notifications_bp.route("/<notification_id>/read", methods=["PATCH"])
@login_required
def notification_read(notification_id):
    if not notification_service.mark_read(current_user.id, notification_id):
        raise NotFoundError("Notification not found.")
    return jsonify(ok=True)
