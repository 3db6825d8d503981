from __future__ import annotations

import logging

import httpx

from marksync.client.errors import (
    AuthenticationError,
    AuthorizationError,
    TransportError,
    ValidationError,
)
from marksync.client.models import BookmarkRecord
from marksync.services.common import clean_description, clean_text

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

DEFAULT_HEADERS = {
    "User-Agent": "MarksyncClient/1.0",
    "Accept": "application/json",
}


def _normalize_error(exc: Exception) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP {response.status_code}"


def build_http_client(
    server_url: str, token: str | None = None, timeout: float = 10.0
) -> httpx.AsyncClient:
    headers = dict(DEFAULT_HEADERS)
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(
        base_url=server_url.rstrip("/"), headers=headers, timeout=timeout
    )


class BookmarkGateway:
    """Async client for the bookmark CRUD endpoints.

    Every failure is raised as a ``MarksyncError`` subclass; callers never see
    raw ``httpx`` exceptions.
    """

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    @classmethod
    def connect(
        cls, server_url: str, token: str | None = None, timeout: float = 10.0
    ) -> BookmarkGateway:
        return cls(build_http_client(server_url, token=token, timeout=timeout))

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, json: dict | None = None):
        try:
            response = await self.client.request(
                method, f"{API_PREFIX}{path}", json=json
            )
        except httpx.HTTPError as exc:
            raise TransportError(_normalize_error(exc)) from exc

        status = response.status_code
        if status == 401:
            raise AuthenticationError(_error_message(response), status)
        if status in {403, 404}:
            raise AuthorizationError(_error_message(response), status)
        if status == 400:
            raise ValidationError(_error_message(response), status)
        if status >= 400:
            raise TransportError(_error_message(response), status)

        try:
            return response.json()
        except ValueError as exc:
            raise TransportError("invalid JSON in response", status) from exc

    def _record(self, payload) -> BookmarkRecord:
        try:
            return BookmarkRecord.from_payload(payload)
        except ValueError as exc:
            raise TransportError(_normalize_error(exc)) from exc

    async def whoami(self) -> dict:
        return await self._request("GET", "/auth/me")

    async def list_bookmarks(self) -> list[BookmarkRecord]:
        payload = await self._request("GET", "/bookmarks")
        if not isinstance(payload, list):
            raise TransportError("expected a list of bookmarks")
        return [self._record(item) for item in payload]

    async def create_bookmark(
        self, url: str, title: str, description: str | None = None
    ) -> BookmarkRecord:
        url = clean_text(url)
        title = clean_text(title)
        if not url or not title:
            raise ValidationError("URL and title are required")
        payload = await self._request(
            "POST",
            "/bookmarks",
            json={
                "url": url,
                "title": title,
                "description": clean_description(description),
            },
        )
        return self._record(payload)

    async def update_bookmark(
        self, bookmark_id, url: str, title: str, description: str | None = None
    ) -> BookmarkRecord:
        url = clean_text(url)
        title = clean_text(title)
        if bookmark_id in (None, "") or not url or not title:
            raise ValidationError("ID, URL, and title are required")
        payload = await self._request(
            "PATCH",
            f"/bookmarks/{bookmark_id}",
            json={
                "url": url,
                "title": title,
                "description": clean_description(description),
            },
        )
        return self._record(payload)

    async def delete_bookmark(self, bookmark_id) -> None:
        if bookmark_id in (None, ""):
            raise ValidationError("Bookmark ID is required")
        await self._request("DELETE", f"/bookmarks/{bookmark_id}")
        logger.debug("Deleted bookmark %s", bookmark_id)
