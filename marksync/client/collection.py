from __future__ import annotations

from collections.abc import Iterable, Iterator

from marksync.client.models import BookmarkRecord


def _unique(items: Iterable[BookmarkRecord]) -> tuple[BookmarkRecord, ...]:
    seen: set = set()
    unique: list[BookmarkRecord] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return tuple(unique)


class ClientCollection:
    """Local, id-unique cache of the owner's bookmarks.

    Readers get an immutable tuple snapshot. Every mutation swaps the whole
    tuple in one assignment, so nobody can observe a half-applied change.
    Order is newest first as delivered by the server; incremental inserts are
    prepended without re-sorting.
    """

    def __init__(self, items: Iterable[BookmarkRecord] = ()):
        self._items: tuple[BookmarkRecord, ...] = _unique(items)

    @property
    def items(self) -> tuple[BookmarkRecord, ...]:
        return self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[BookmarkRecord]:
        return iter(self._items)

    def __contains__(self, bookmark_id) -> bool:
        return any(item.id == bookmark_id for item in self._items)

    def ids(self) -> list:
        return [item.id for item in self._items]

    def get(self, bookmark_id) -> BookmarkRecord | None:
        for item in self._items:
            if item.id == bookmark_id:
                return item
        return None

    def replace(self, items: Iterable[BookmarkRecord]) -> None:
        self._items = _unique(items)

    def merge_insert(self, record: BookmarkRecord) -> bool:
        if record.id in self:
            return False
        self._items = (record,) + self._items
        return True

    def merge_update(self, record: BookmarkRecord) -> bool:
        if record.id not in self:
            return False
        self._items = tuple(
            record if item.id == record.id else item for item in self._items
        )
        return True

    def merge_delete(self, bookmark_id) -> bool:
        if bookmark_id not in self:
            return False
        self._items = tuple(item for item in self._items if item.id != bookmark_id)
        return True
