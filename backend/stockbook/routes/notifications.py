# Overview: Flask API routes for the per-user notification inbox.

from flask import Blueprint, request, jsonify

from ..errors import StockbookError
from ..services import notification_service


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


def _require_user_id():
    user_id = request.headers.get("X-User-Id", type=int)
    if user_id is None:
        return None, (jsonify({"error": "X-User-Id header is required"}), 400)
    return user_id, None


@notifications_bp.get("")
def list_notifications_route():
    user_id, error = _require_user_id()
    if error:
        return error
    limit = request.args.get("limit", default=50, type=int)
    limit = max(1, min(limit, 200))
    items = notification_service.list_notifications(
        user_id,
        unread_only=request.args.get("unread", "false").lower() == "true",
        type=request.args.get("type"),
        limit=limit,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "unread_count": notification_service.unread_count(user_id),
        "limit": limit,
    }), 200


@notifications_bp.get("/unread-count")
def unread_count_route():
    user_id, error = _require_user_id()
    if error:
        return error
    return jsonify({"unread_count": notification_service.unread_count(user_id)}), 200


@notifications_bp.get("/stats")
def notification_stats_route():
    user_id, error = _require_user_id()
    if error:
        return error
    return jsonify(notification_service.get_notification_stats(user_id)), 200


@notifications_bp.post("/<int:notification_id>/read")
def mark_read_route(notification_id: int):
    user_id, error = _require_user_id()
    if error:
        return error
    try:
        notification = notification_service.mark_read(notification_id, user_id=user_id)
    except StockbookError as e:
        return jsonify(e.to_dict()), e.http_status
    return jsonify({"notification": notification.to_dict()}), 200


@notifications_bp.post("/read-all")
def mark_all_read_route():
    user_id, error = _require_user_id()
    if error:
        return error
    updated = notification_service.mark_all_read(user_id)
    return jsonify({"updated": updated}), 200
