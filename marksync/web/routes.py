from __future__ import annotations

from flask import (
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask_login import current_user, login_required

from marksync.extensions import db
from marksync.models import ApiToken, utcnow
from marksync.services.accounts import has_users, issue_api_token
from marksync.services.bookmarks import (
    create_bookmark,
    delete_bookmark,
    get_owned_bookmark,
    list_bookmarks,
    update_bookmark,
)
from marksync.services.common import (
    clean_text,
    collect_hashtags,
    extract_hashtags,
    matches_query,
    safe_redirect_target,
    split_hashtag_segments,
    truncate_description,
)
from marksync.web import web_bp

THEMES = ("light", "dark")
LIVE_QUERY_PARAM = "live"


def _next_or_dashboard() -> str:
    return safe_redirect_target(request.form.get("next"), url_for("web.dashboard"))


def _current_theme() -> str:
    theme = session.get("theme")
    return theme if theme in THEMES else "light"


def _is_live_window() -> bool:
    return request.args.get(LIVE_QUERY_PARAM) == "true"


def _filter_bookmarks(items, q: str, tag: str | None):
    filtered = [
        item
        for item in items
        if matches_query(item.title, item.url, item.description, q)
    ]
    if tag:
        filtered = [
            item for item in filtered if tag in extract_hashtags(item.description)
        ]
    return filtered


@web_bp.app_template_filter("hashtag_segments")
def hashtag_segments_filter(text):
    return split_hashtag_segments(text)


@web_bp.app_template_filter("preview")
def preview_filter(text):
    return truncate_description(text)[0]


@web_bp.before_app_request
def first_run_gate():
    endpoint = request.endpoint or ""
    allowed = {"static", "auth.bootstrap_admin", "auth.login"}
    if endpoint.startswith("api."):
        return None
    if endpoint not in allowed and not has_users():
        return redirect(url_for("auth.bootstrap_admin"))
    return None


@web_bp.route("/")
@login_required
def dashboard():
    q = (request.args.get("q") or "").strip()
    tag = (request.args.get("tag") or "").strip() or None
    items = list_bookmarks(current_user.id)
    filtered = _filter_bookmarks(items, q, tag)

    return render_template(
        "dashboard.html",
        items=filtered,
        total=len(items),
        hashtags=collect_hashtags(item.description for item in items),
        q=q,
        active_tag=tag,
        theme=_current_theme(),
        is_live_window=_is_live_window(),
    )


@web_bp.route("/bookmarks/live")
@login_required
def bookmarks_live():
    q = (request.args.get("q") or "").strip()
    tag = (request.args.get("tag") or "").strip() or None
    items = _filter_bookmarks(list_bookmarks(current_user.id), q, tag)
    return jsonify(
        {
            "q": q,
            "tag": tag,
            "items": [
                dict(item.as_dict(), hashtags=extract_hashtags(item.description))
                for item in items
            ],
        }
    )


@web_bp.route("/bookmarks/new", methods=["POST"])
@login_required
def bookmarks_new():
    bookmark = create_bookmark(
        current_user.id,
        request.form.get("url"),
        request.form.get("title"),
        request.form.get("description"),
    )
    if not bookmark:
        flash("URL and title are required.", "error")
    else:
        flash("Bookmark added successfully!", "success")
    return redirect(_next_or_dashboard())


@web_bp.route("/bookmarks/<int:bookmark_id>/edit", methods=["GET", "POST"])
@login_required
def bookmarks_edit(bookmark_id: int):
    item = get_owned_bookmark(current_user.id, bookmark_id)
    if not item:
        flash("Bookmark not found or you don't have permission to edit it.", "error")
        return redirect(url_for("web.dashboard"))

    next_url = safe_redirect_target(
        request.form.get("next") or request.args.get("next"),
        url_for("web.dashboard"),
    )
    if request.method == "POST":
        url = clean_text(request.form.get("url"))
        title = clean_text(request.form.get("title"))
        if not url or not title:
            flash("Title and URL cannot be empty.", "error")
            return render_template(
                "bookmark_form.html",
                item=item,
                next_url=next_url,
                theme=_current_theme(),
            )
        update_bookmark(
            current_user.id, item.id, url, title, request.form.get("description")
        )
        flash("Bookmark updated successfully!", "success")
        return redirect(next_url)

    return render_template(
        "bookmark_form.html", item=item, next_url=next_url, theme=_current_theme()
    )


@web_bp.route("/bookmarks/<int:bookmark_id>/delete", methods=["POST"])
@login_required
def bookmarks_delete(bookmark_id: int):
    if delete_bookmark(current_user.id, bookmark_id):
        flash("Bookmark deleted successfully!", "success")
    else:
        flash("Bookmark not found or you don't have permission to delete it.", "error")
    return redirect(_next_or_dashboard())


@web_bp.route("/preferences/theme", methods=["POST"])
@login_required
def toggle_theme():
    session["theme"] = "dark" if _current_theme() == "light" else "light"
    return redirect(_next_or_dashboard())


@web_bp.route("/tokens", methods=["GET", "POST"])
@login_required
def tokens():
    new_token = None
    if request.method == "POST":
        new_token, _ = issue_api_token(current_user, request.form.get("name"))
        flash("Token created. Copy it now, it will not be shown again.", "success")

    rows = (
        ApiToken.query.filter_by(user_id=current_user.id)
        .order_by(ApiToken.created_at.desc())
        .all()
    )
    return render_template(
        "tokens.html", tokens=rows, new_token=new_token, theme=_current_theme()
    )


@web_bp.route("/tokens/<int:token_id>/revoke", methods=["POST"])
@login_required
def revoke_token(token_id: int):
    row = ApiToken.query.filter_by(id=token_id, user_id=current_user.id).first_or_404()
    if row.revoked_at is None:
        row.revoked_at = utcnow()
        db.session.commit()
        flash("Token revoked.", "success")
    return redirect(url_for("web.tokens"))
