"""
Campus Request Routing
Notification blueprint.

Endpoints:
    GET  /api/v1/notifications              caller's notifications (``?unread=true``)
    GET  /api/v1/notifications/unread-count
    POST /api/v1/notifications/<id>/read
    POST /api/v1/notifications/read-all
"""

from flask import Blueprint, jsonify, request

from campusflow.blueprints import limit_offset
from campusflow.middleware.identity import current_user
from campusflow.services.notification import NotificationService

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    user = current_user()
    limit, offset = limit_offset()
    items, total = NotificationService.list_for_user(
        user.id, unread_only=request.args.get("unread") == "true", limit=limit, offset=offset,
    )
    return jsonify({
        "notifications": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(user.id),
    })


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(current_user().id)})


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    notif = NotificationService.mark_read(notification_id, current_user().id)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    count = NotificationService.mark_all_read(current_user().id)
    return jsonify({"marked_read": count})
