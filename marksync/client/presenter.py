from __future__ import annotations

import logging
from dataclasses import dataclass

from marksync.client.engine import SyncEngine
from marksync.client.errors import AuthenticationError, MarksyncError
from marksync.client.gateway import BookmarkGateway
from marksync.client.models import BookmarkRecord
from marksync.services.common import (
    clean_text,
    collect_hashtags,
    matches_query,
    truncate_description,
)

logger = logging.getLogger(__name__)

MSG_ADDED = "Bookmark added successfully!"
MSG_UPDATED = "Bookmark updated successfully!"
MSG_DELETED = "Bookmark deleted successfully!"
MSG_FETCH_FAILED = "Failed to fetch bookmarks"
MSG_EDIT_EMPTY = "Title and URL cannot be empty"
MSG_NO_MATCHES = "No bookmarks match your search criteria."
MSG_EMPTY = "No bookmarks yet. Add one above!"


@dataclass(frozen=True)
class Notice:
    level: str
    message: str


class Dashboard:
    """Screen-independent half of the bookmark dashboard.

    Reads go through the engine's collection; writes go through the gateway
    and are followed by a full refresh, so the collection is only ever
    changed by the engine.
    """

    def __init__(self, engine: SyncEngine, gateway: BookmarkGateway):
        self.engine = engine
        self.gateway = gateway
        self.search_query = ""
        self.selected_hashtag: str | None = None
        self.notices: list[Notice] = []
        self.needs_sign_in = False
        engine.add_error_listener(self._on_engine_error)

    @property
    def bookmarks(self) -> tuple[BookmarkRecord, ...]:
        return self.engine.collection.items

    def filtered(self) -> list[BookmarkRecord]:
        items = [
            item
            for item in self.bookmarks
            if matches_query(item.title, item.url, item.description, self.search_query)
        ]
        if self.selected_hashtag:
            items = [item for item in items if self.selected_hashtag in item.hashtags]
        return items

    def all_hashtags(self) -> list[str]:
        return collect_hashtags(item.description for item in self.bookmarks)

    def select_hashtag(self, tag: str | None) -> None:
        self.selected_hashtag = tag or None

    def preview(self, record: BookmarkRecord) -> tuple[str, bool]:
        return truncate_description(record.description)

    @property
    def empty_message(self) -> str | None:
        if self.filtered():
            return None
        if self.search_query or self.selected_hashtag:
            return MSG_NO_MATCHES
        return MSG_EMPTY

    def _notify(self, level: str, message: str) -> None:
        self.notices.append(Notice(level, message))

    def _fail(self, exc: MarksyncError) -> None:
        if isinstance(exc, AuthenticationError):
            self.needs_sign_in = True
        self._notify("error", exc.message)

    def _on_engine_error(self, exc: MarksyncError) -> None:
        if isinstance(exc, AuthenticationError):
            self.needs_sign_in = True
        self._notify("error", MSG_FETCH_FAILED)

    async def refresh(self) -> bool:
        try:
            await self.engine.refresh_now()
        except AuthenticationError:
            self.needs_sign_in = True
            self._notify("error", MSG_FETCH_FAILED)
            return False
        except MarksyncError as exc:
            logger.warning("Refresh failed: %s", exc)
            self._notify("error", MSG_FETCH_FAILED)
            return False
        return True

    async def add(
        self, url: str, title: str, description: str | None = None
    ) -> BookmarkRecord | None:
        try:
            record = await self.gateway.create_bookmark(url, title, description)
        except MarksyncError as exc:
            self._fail(exc)
            return None
        self._notify("success", MSG_ADDED)
        await self.engine.broadcast("bookmark-added", {"id": record.id})
        await self.refresh()
        return record

    async def edit(
        self, bookmark_id, url: str, title: str, description: str | None = None
    ) -> BookmarkRecord | None:
        if not clean_text(url) or not clean_text(title):
            self._notify("error", MSG_EDIT_EMPTY)
            return None
        try:
            record = await self.gateway.update_bookmark(
                bookmark_id, url, title, description
            )
        except MarksyncError as exc:
            self._fail(exc)
            return None
        self._notify("success", MSG_UPDATED)
        await self.engine.broadcast("bookmark-updated", {"id": record.id})
        await self.refresh()
        return record

    async def delete(self, bookmark_id) -> bool:
        try:
            await self.gateway.delete_bookmark(bookmark_id)
        except MarksyncError as exc:
            self._fail(exc)
            return False
        self._notify("success", MSG_DELETED)
        await self.engine.broadcast("bookmark-deleted", {"id": bookmark_id})
        await self.refresh()
        return True
