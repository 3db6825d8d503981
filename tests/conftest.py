import asyncio
import json

import httpx
import pytest

from marksync import create_app
from marksync.client.feed import ChangeFeed, FeedChannel, SubscribeOutcome
from marksync.client.gateway import BookmarkGateway
from marksync.config import TestConfig
from marksync.extensions import db


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


class FakeBookmarkServer:
    """In-memory stand-in for the bookmark JSON API, served via MockTransport."""

    def __init__(self, owner_id=7):
        self.owner_id = owner_id
        self.rows = []
        self.next_id = 1
        self.requests = []
        self.fail_with = None
        self.gate = None

    def add(self, url, title, description=None):
        row = {
            "id": self.next_id,
            "url": url,
            "title": title,
            "description": description,
            "created_at": f"2024-01-01T00:00:{self.next_id:02d}",
            "user_id": self.owner_id,
        }
        self.next_id += 1
        self.rows.insert(0, row)
        return row

    def _find(self, bookmark_id):
        for row in self.rows:
            if row["id"] == bookmark_id:
                return row
        return None

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            status, message = self.fail_with
            return httpx.Response(status, json={"error": message})

        path = request.url.path
        body = json.loads(request.content) if request.content else {}
        if path == "/api/v1/auth/me":
            return httpx.Response(200, json={"id": self.owner_id, "username": "u1"})
        if path == "/api/v1/bookmarks" and request.method == "GET":
            return httpx.Response(200, json=list(self.rows))
        if path == "/api/v1/bookmarks" and request.method == "POST":
            row = self.add(body["url"], body["title"], body.get("description"))
            return httpx.Response(201, json=row)
        if path.startswith("/api/v1/bookmarks/"):
            row = self._find(int(path.rsplit("/", 1)[1]))
            if row is None:
                return httpx.Response(
                    404,
                    json={
                        "error": "Bookmark not found or you don't have permission "
                        "to edit it"
                    },
                )
            if request.method == "PATCH":
                row.update(
                    url=body["url"],
                    title=body["title"],
                    description=body.get("description"),
                )
                return httpx.Response(200, json=row)
            if request.method == "DELETE":
                self.rows.remove(row)
                return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def fake_server():
    return FakeBookmarkServer()


@pytest.fixture
def gateway(fake_server):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(fake_server.handle),
        base_url="http://marksync.test",
    )
    return BookmarkGateway(client)


class FakeChannel(FeedChannel):
    def __init__(self, topic, owner_id, outcome):
        super().__init__(topic, owner_id)
        self.outcome = outcome
        self.sent = []
        self.close_calls = 0

    async def subscribe(self, timeout):
        await asyncio.sleep(0)
        if self.removed:
            return SubscribeOutcome.CLOSED
        return self.outcome

    async def send(self, event, payload):
        self.sent.append((event, payload))

    def close(self):
        self.removed = True
        self.close_calls += 1


class FakeChangeFeed(ChangeFeed):
    def __init__(self, outcome=SubscribeOutcome.ACKNOWLEDGED):
        super().__init__()
        self.outcome = outcome
        self.created = []

    def _create_channel(self, topic, owner_id):
        channel = FakeChannel(topic, owner_id, self.outcome)
        self.created.append(channel)
        return channel


@pytest.fixture
def fake_feed():
    return FakeChangeFeed()


async def eventually(predicate, timeout=2.0, step=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(step)
    return True


@pytest.fixture
def wait_until():
    return eventually
