from __future__ import annotations

from flask import current_app

from marksync.extensions import db, get_feed_hub
from marksync.models import Bookmark
from marksync.services.common import clean_description, clean_text
from marksync.services.feed import ROW_DELETE, ROW_INSERT, ROW_UPDATE


def owned_bookmarks_query(user_id: int):
    return Bookmark.query.filter_by(user_id=user_id).order_by(
        Bookmark.created_at.desc(), Bookmark.id.desc()
    )


def list_bookmarks(user_id: int) -> list[Bookmark]:
    return owned_bookmarks_query(user_id).all()


def get_owned_bookmark(user_id: int, bookmark_id) -> Bookmark | None:
    try:
        key = int(bookmark_id)
    except (TypeError, ValueError):
        return None
    return Bookmark.query.filter_by(id=key, user_id=user_id).first()


def publish_bookmark_change(user_id: int, action: str, record: dict) -> None:
    delivered = get_feed_hub().publish_row(user_id, action, record)
    current_app.logger.debug(
        "Published %s for bookmark %s (user %s) to %s subscriber(s)",
        action,
        record.get("id"),
        user_id,
        delivered,
    )


def create_bookmark(user_id: int, url, title, description=None) -> Bookmark | None:
    url = clean_text(url)
    title = clean_text(title)
    if not url or not title:
        return None

    bookmark = Bookmark(
        user_id=user_id,
        url=url,
        title=title,
        description=clean_description(description),
    )
    db.session.add(bookmark)
    db.session.commit()
    publish_bookmark_change(user_id, ROW_INSERT, bookmark.as_dict())
    return bookmark


def update_bookmark(
    user_id: int, bookmark_id, url, title, description=None
) -> Bookmark | None:
    bookmark = get_owned_bookmark(user_id, bookmark_id)
    if not bookmark:
        return None

    bookmark.url = clean_text(url)
    bookmark.title = clean_text(title)
    bookmark.description = clean_description(description)
    db.session.commit()
    publish_bookmark_change(user_id, ROW_UPDATE, bookmark.as_dict())
    return bookmark


def delete_bookmark(user_id: int, bookmark_id) -> bool:
    bookmark = get_owned_bookmark(user_id, bookmark_id)
    if not bookmark:
        return False

    record = bookmark.as_dict()
    db.session.delete(bookmark)
    db.session.commit()
    publish_bookmark_change(user_id, ROW_DELETE, record)
    return True
