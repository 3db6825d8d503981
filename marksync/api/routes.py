from __future__ import annotations

from flask import Response, current_app, g, jsonify, request

from marksync.api import api_bp
from marksync.extensions import get_feed_hub
from marksync.models import User
from marksync.services.accounts import (
    AccountError,
    authenticate,
    create_account,
    has_users,
    issue_api_token,
)
from marksync.services.bookmarks import (
    create_bookmark,
    delete_bookmark,
    list_bookmarks,
    update_bookmark,
)
from marksync.services.common import clean_text, collect_hashtags
from marksync.services.feed import (
    create_feed_ticket,
    iter_feed_stream,
    topic_for_owner,
    verify_feed_ticket,
)
from marksync.services.search import search_bookmarks
from marksync.services.security import api_auth_required


def _to_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _bookmark_id_from(payload: dict, bookmark_id: int | None):
    if bookmark_id is not None:
        return bookmark_id
    return payload.get("id")


@api_bp.route("/health")
def health():
    return jsonify({"status": "ok", "service": "Marksync"})


@api_bp.route("/auth/bootstrap-admin", methods=["POST"])
def bootstrap_admin_api():
    if has_users():
        return jsonify({"error": "bootstrap already completed"}), 409

    payload = request.get_json(silent=True) or {}
    try:
        admin = create_account(
            payload.get("username"), payload.get("password"), is_admin=True
        )
    except AccountError as exc:
        return jsonify({"error": exc.message}), exc.status_code
    return jsonify({"status": "created", "user_id": admin.id}), 201


@api_bp.route("/auth/token", methods=["POST"])
def create_token_with_credentials():
    payload = request.get_json(silent=True) or {}
    user = authenticate(payload.get("username"), payload.get("password"))
    if not user:
        return jsonify({"error": "invalid credentials"}), 401

    token, row = issue_api_token(user, payload.get("token_name"))
    return jsonify({"token": token, "token_name": row.name, "user_id": user.id})


@api_bp.route("/auth/me", methods=["GET"])
@api_auth_required()
def auth_me():
    user = g.api_user
    return jsonify({"id": user.id, "username": user.username})


@api_bp.route("/admin/users", methods=["POST"])
@api_auth_required(admin=True)
def admin_create_user():
    payload = request.get_json(silent=True) or {}
    try:
        user = create_account(
            payload.get("username"),
            payload.get("password"),
            is_admin=_to_bool(payload.get("is_admin"), default=False),
        )
    except AccountError as exc:
        return jsonify({"error": exc.message}), exc.status_code
    return jsonify({"status": "created", "user_id": user.id}), 201


@api_bp.route("/admin/users", methods=["GET"])
@api_auth_required(admin=True)
def admin_list_users():
    users = User.query.order_by(User.created_at.desc()).all()
    return jsonify({"items": [user.as_dict() for user in users]})


@api_bp.route("/bookmarks", methods=["GET"])
@api_auth_required()
def bookmarks_list_api():
    user = g.api_user
    return jsonify([item.as_dict() for item in list_bookmarks(user.id)])


@api_bp.route("/bookmarks", methods=["POST"])
@api_auth_required()
def bookmarks_create_api():
    user = g.api_user
    payload = request.get_json(silent=True) or {}
    bookmark = create_bookmark(
        user.id,
        payload.get("url"),
        payload.get("title"),
        payload.get("description"),
    )
    if not bookmark:
        return jsonify({"error": "URL and title are required"}), 400
    return jsonify(bookmark.as_dict()), 201


@api_bp.route("/bookmarks", methods=["PATCH"])
@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["PATCH"])
@api_auth_required()
def bookmarks_update_api(bookmark_id: int | None = None):
    user = g.api_user
    payload = request.get_json(silent=True) or {}
    target_id = _bookmark_id_from(payload, bookmark_id)
    url = clean_text(payload.get("url"))
    title = clean_text(payload.get("title"))
    if not target_id or not url or not title:
        return jsonify({"error": "ID, URL, and title are required"}), 400

    bookmark = update_bookmark(
        user.id, target_id, url, title, payload.get("description")
    )
    if not bookmark:
        current_app.logger.info(
            "Rejected update of bookmark %s by user %s", target_id, user.id
        )
        return (
            jsonify(
                {
                    "error": "Bookmark not found or you don't have permission "
                    "to edit it"
                }
            ),
            404,
        )
    return jsonify(bookmark.as_dict())


@api_bp.route("/bookmarks", methods=["DELETE"])
@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["DELETE"])
@api_auth_required()
def bookmarks_delete_api(bookmark_id: int | None = None):
    user = g.api_user
    payload = request.get_json(silent=True) or {}
    target_id = _bookmark_id_from(payload, bookmark_id)
    if not target_id:
        return jsonify({"error": "Bookmark ID is required"}), 400

    if not delete_bookmark(user.id, target_id):
        return (
            jsonify(
                {
                    "error": "Bookmark not found or you don't have permission "
                    "to delete it"
                }
            ),
            404,
        )
    return jsonify({"success": True})


@api_bp.route("/hashtags", methods=["GET"])
@api_auth_required()
def hashtags_list():
    user = g.api_user
    bookmarks = list_bookmarks(user.id)
    return jsonify({"items": collect_hashtags(item.description for item in bookmarks)})


@api_bp.route("/search", methods=["GET"])
@api_auth_required()
def search_api():
    user = g.api_user
    q = (request.args.get("q") or "").strip()
    limit = request.args.get("limit", default=50, type=int)
    limit = max(1, min(limit, 500))
    if not q:
        return jsonify({"q": q, "items": []})

    ranked = search_bookmarks(list_bookmarks(user.id), q, limit=limit)
    return jsonify(
        {
            "q": q,
            "items": [
                {
                    "bookmark": row["bookmark"].as_dict(),
                    "score": row["score"],
                    "reasons": row["reasons"],
                }
                for row in ranked
            ],
        }
    )


@api_bp.route("/feed/subscribe", methods=["POST"])
@api_auth_required()
def feed_subscribe():
    user = g.api_user
    payload = request.get_json(silent=True) or {}
    expected = topic_for_owner(user.id)
    topic = (payload.get("topic") or "").strip() or expected
    if topic != expected:
        return jsonify({"error": "topic not permitted"}), 403

    ticket = create_feed_ticket(current_app.config["SECRET_KEY"], user.id, topic)
    return jsonify({"topic": topic, "ticket": ticket})


@api_bp.route("/feed/stream", methods=["GET"])
def feed_stream():
    ticket = verify_feed_ticket(
        current_app.config["SECRET_KEY"],
        request.args.get("ticket") or "",
        max_age=current_app.config["FEED_TICKET_TTL_SECONDS"],
    )
    if not ticket:
        return jsonify({"error": "invalid or expired ticket"}), 403

    current_app.logger.info(
        "Opening change feed stream on %s for user %s",
        ticket["topic"],
        ticket["user_id"],
    )
    stream = iter_feed_stream(
        get_feed_hub(),
        ticket["topic"],
        ticket["user_id"],
        keepalive_seconds=current_app.config["FEED_KEEPALIVE_SECONDS"],
    )
    return Response(
        stream,
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@api_bp.route("/feed/broadcast", methods=["POST"])
@api_auth_required()
def feed_broadcast():
    user = g.api_user
    payload = request.get_json(silent=True) or {}
    topic = (payload.get("topic") or "").strip()
    event = (payload.get("event") or "").strip()
    if not topic or not event:
        return jsonify({"error": "topic and event are required"}), 400
    if topic != topic_for_owner(user.id):
        return jsonify({"error": "topic not permitted"}), 403

    body = payload.get("payload")
    if not isinstance(body, dict):
        body = {}
    delivered = get_feed_hub().broadcast(
        topic, event, body, sender_id=payload.get("sender")
    )
    current_app.logger.info(
        "Broadcast %s on %s reached %s subscriber(s)", event, topic, delivered
    )
    return jsonify({"status": "ok", "delivered": delivered})
