from functools import wraps

from flask import current_app, g, jsonify, request
from flask_login import current_user

from marksync.extensions import db
from marksync.models import ApiToken, hash_token, utcnow

BEARER_PREFIX = "Bearer "


def bearer_token_from_request() -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith(BEARER_PREFIX):
        return None
    return header[len(BEARER_PREFIX):].strip() or None


def lookup_api_token(token: str) -> ApiToken | None:
    """Return the live token row for ``token`` and stamp its last use."""
    row = ApiToken.query.filter_by(token_hash=hash_token(token)).first()
    if row is None or row.revoked_at is not None or not row.user.is_active:
        return None
    row.last_used_at = utcnow()
    db.session.commit()
    return row


def resolve_api_user():
    """Session users win; API clients fall back to a bearer token."""
    if current_user.is_authenticated:
        g.api_token = None
        return current_user
    token = bearer_token_from_request()
    row = lookup_api_token(token) if token else None
    g.api_token = row
    return row.user if row else None


def api_auth_required(admin=False):
    def decorator(func):
        @wraps(func)
        def wrapped(*args, **kwargs):
            user = resolve_api_user()
            if user is None:
                current_app.logger.debug(
                    "Rejected unauthenticated %s %s", request.method, request.path
                )
                return jsonify({"error": "Not authenticated"}), 401
            if admin and not user.is_admin:
                return jsonify({"error": "admin access required"}), 403
            g.api_user = user
            return func(*args, **kwargs)

        return wrapped

    return decorator
