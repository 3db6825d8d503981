from __future__ import annotations

import re
from collections.abc import Iterable

HASHTAG_PATTERN = re.compile(r"#\w+", re.ASCII)
_HASHTAG_SPLIT = re.compile(r"(#\w+)", re.ASCII)

DESCRIPTION_PREVIEW_CHARS = 150


def extract_hashtags(text: str | None) -> list[str]:
    if not text:
        return []
    return list(dict.fromkeys(HASHTAG_PATTERN.findall(text)))


def collect_hashtags(descriptions: Iterable[str | None]) -> list[str]:
    tags: set[str] = set()
    for description in descriptions:
        tags.update(extract_hashtags(description))
    return sorted(tags)


def split_hashtag_segments(text: str | None) -> list[tuple[str, bool]]:
    """Split text into ``(segment, is_hashtag)`` pairs, dropping empty pieces."""
    if not text:
        return []
    return [
        (part, bool(HASHTAG_PATTERN.fullmatch(part)))
        for part in _HASHTAG_SPLIT.split(text)
        if part
    ]


def truncate_description(
    text: str | None, limit: int = DESCRIPTION_PREVIEW_CHARS
) -> tuple[str, bool]:
    value = text or ""
    if len(value) <= limit:
        return value, False
    return value[:limit] + "...", True


def matches_query(
    title: str | None, url: str | None, description: str | None, query: str
) -> bool:
    q = (query or "").strip().lower()
    if not q:
        return True
    return (
        q in (title or "").lower()
        or q in (url or "").lower()
        or q in (description or "").lower()
    )


def clean_text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def clean_description(value) -> str | None:
    text = clean_text(value)
    if not text:
        return None
    return text


def safe_redirect_target(raw_next: str | None, fallback: str) -> str:
    candidate = (raw_next or "").strip()
    if candidate.startswith("/") and not candidate.startswith("//"):
        return candidate
    return fallback
