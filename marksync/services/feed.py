from __future__ import annotations

import json
import queue
import secrets
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field

from itsdangerous import BadData, URLSafeTimedSerializer


ROW_INSERT = "INSERT"
ROW_UPDATE = "UPDATE"
ROW_DELETE = "DELETE"
ROW_ACTIONS = {ROW_INSERT, ROW_UPDATE, ROW_DELETE}

EVENT_SUBSCRIBED = "subscribed"
EVENT_BROADCAST = "broadcast"

KEEPALIVE_FRAME = ": keepalive\n\n"


def topic_for_owner(owner_id) -> str:
    return f"bookmarks-{owner_id}"


@dataclass
class FeedMessage:
    event: str
    data: dict = field(default_factory=dict)


class FeedSubscriber:
    def __init__(self, topic: str, owner_id: int, queue_size: int):
        self.id = secrets.token_hex(8)
        self.topic = topic
        self.owner_id = owner_id
        self.queue: queue.Queue[FeedMessage | None] = queue.Queue(maxsize=queue_size)
        self.dropped = 0

    def deliver(self, message: FeedMessage | None) -> bool:
        try:
            self.queue.put_nowait(message)
        except queue.Full:
            self.dropped += 1
            return False
        return True


class FeedHub:
    """In-process fan-out of row events and broadcasts to open subscribers.

    Subscribers are keyed by topic. Row events are filtered by owner, so a
    subscriber only ever sees changes to rows its owner can read. Broadcasts
    go to every subscriber on the topic except the sender.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[str, dict[str, FeedSubscriber]] = {}

    def open(self, topic: str, owner_id: int) -> FeedSubscriber:
        subscriber = FeedSubscriber(topic, owner_id, self.queue_size)
        with self._lock:
            self._subscribers.setdefault(topic, {})[subscriber.id] = subscriber
        return subscriber

    def close(self, subscriber: FeedSubscriber) -> None:
        with self._lock:
            by_id = self._subscribers.get(subscriber.topic)
            if not by_id or by_id.pop(subscriber.id, None) is None:
                return
            if not by_id:
                del self._subscribers[subscriber.topic]
        subscriber.deliver(None)

    def subscriber_count(self, topic: str | None = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._subscribers.get(topic, {}))
            return sum(len(by_id) for by_id in self._subscribers.values())

    def _snapshot(self) -> list[FeedSubscriber]:
        with self._lock:
            return [
                subscriber
                for by_id in self._subscribers.values()
                for subscriber in by_id.values()
            ]

    def publish_row(self, owner_id: int, action: str, record: dict) -> int:
        if action not in ROW_ACTIONS:
            raise ValueError(f"unsupported row action: {action}")
        message = FeedMessage(action, {"record": record})
        delivered = 0
        for subscriber in self._snapshot():
            if subscriber.owner_id != owner_id:
                continue
            if subscriber.deliver(message):
                delivered += 1
        return delivered

    def broadcast(
        self,
        topic: str,
        event: str,
        payload: dict,
        sender_id: str | None = None,
    ) -> int:
        message = FeedMessage(EVENT_BROADCAST, {"event": event, "payload": payload})
        with self._lock:
            targets = list(self._subscribers.get(topic, {}).values())
        delivered = 0
        for subscriber in targets:
            if subscriber.id == sender_id:
                continue
            if subscriber.deliver(message):
                delivered += 1
        return delivered


def _serializer(secret_key: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key=secret_key, salt="feed-subscription")


def create_feed_ticket(secret_key: str, user_id: int, topic: str) -> str:
    return _serializer(secret_key).dumps({"user_id": user_id, "topic": topic})


def verify_feed_ticket(secret_key: str, ticket: str, max_age: int) -> dict | None:
    if not ticket:
        return None
    try:
        payload = _serializer(secret_key).loads(ticket, max_age=max_age)
    except BadData:
        return None
    if not isinstance(payload, dict):
        return None
    if payload.get("topic") != topic_for_owner(payload.get("user_id")):
        return None
    return payload


def format_sse(message: FeedMessage) -> str:
    return f"event: {message.event}\ndata: {json.dumps(message.data)}\n\n"


def iter_feed_stream(
    hub: FeedHub, topic: str, owner_id: int, keepalive_seconds: float
) -> Iterator[str]:
    subscriber = hub.open(topic, owner_id)
    try:
        yield format_sse(
            FeedMessage(
                EVENT_SUBSCRIBED, {"topic": topic, "subscriber_id": subscriber.id}
            )
        )
        while True:
            try:
                message = subscriber.queue.get(timeout=keepalive_seconds)
            except queue.Empty:
                yield KEEPALIVE_FRAME
                continue
            if message is None:
                break
            yield format_sse(message)
    finally:
        hub.close(subscriber)
