"""
Notification Blueprint — the caller's in-app inbox.

Routes:
  GET    /notifications                 – list (?unread_only=true, limit, offset)
  GET    /notifications/unread-count    – unread badge count
  POST   /notifications/<id>/read       – mark one read
  POST   /notifications/mark-all-read   – mark everything read
"""

from flask import Blueprint, jsonify, request

from app.services.notification import NotificationService
from app.utils.errors import register_error_handlers
from app.utils.helpers import get_actor, paginate_params

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    actor = get_actor()
    limit, offset = paginate_params(default_limit=50, max_limit=200)
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    items, total = NotificationService.list_for_recipient(
        actor.id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(actor.id),
    })


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    actor = get_actor()
    return jsonify({"unread_count": NotificationService.unread_count(actor.id)})


@notification_bp.route("/notifications/<int:nid>/read", methods=["POST"])
def mark_read(nid):
    actor = get_actor(request.get_json(silent=True))
    notif = NotificationService.mark_read(nid, actor.id)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_read():
    actor = get_actor(request.get_json(silent=True))
    count = NotificationService.mark_all_read(actor.id)
    return jsonify({"marked_read": count})
