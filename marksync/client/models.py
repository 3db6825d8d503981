from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from dateutil import parser as dt_parser

from marksync.services.common import extract_hashtags


class SyncMode(str, Enum):
    NORMAL = "normal"
    TIME = "time"
    WEBHOOK = "webhook"

    @classmethod
    def parse(cls, raw, default: SyncMode | None = None) -> SyncMode:
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return default or cls.NORMAL


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"


class EngineState(str, Enum):
    INACTIVE = "inactive"
    FOCUS_ACTIVE = "focus-active"
    POLLING_ACTIVE = "polling-active"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"


def _parse_server_time(value) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif not value:
        return None
    else:
        try:
            parsed = dt_parser.isoparse(str(value))
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class BookmarkRecord:
    id: int | str
    url: str
    title: str
    description: str | None = None
    created_at: datetime | None = None
    user_id: int | str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> BookmarkRecord:
        if not isinstance(payload, dict) or payload.get("id") is None:
            raise ValueError("bookmark payload is missing an id")
        return cls(
            id=payload["id"],
            url=payload.get("url") or "",
            title=payload.get("title") or "",
            description=payload.get("description") or None,
            created_at=_parse_server_time(payload.get("created_at")),
            user_id=payload.get("user_id"),
        )

    @property
    def hashtags(self) -> list[str]:
        return extract_hashtags(self.description)
