from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from enum import Enum

import httpx

from marksync.client.errors import TransportError
from marksync.services.feed import (
    EVENT_BROADCAST,
    EVENT_SUBSCRIBED,
    ROW_DELETE,
    ROW_INSERT,
    ROW_UPDATE,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

CHANNEL_CLOSED = "closed"
CHANNEL_EVENTS = {ROW_INSERT, ROW_UPDATE, ROW_DELETE, EVENT_BROADCAST, CHANNEL_CLOSED}

FeedCallback = Callable[[dict], None]


class SubscribeOutcome(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


class FeedChannel(ABC):
    """One subscription to a change-feed topic, filtered to a single owner."""

    def __init__(self, topic: str, owner_id):
        self.topic = topic
        self.owner_id = owner_id
        self.removed = False
        self._handlers: dict[str, list[FeedCallback]] = defaultdict(list)

    def on(self, kind: str, callback: FeedCallback) -> FeedChannel:
        if kind not in CHANNEL_EVENTS:
            raise ValueError(f"unknown channel event: {kind}")
        self._handlers[kind].append(callback)
        return self

    def dispatch(self, kind: str, data: dict) -> None:
        for callback in list(self._handlers.get(kind, ())):
            try:
                callback(data)
            except Exception:
                logger.exception("%s handler on %s failed", kind, self.topic)

    @abstractmethod
    async def subscribe(self, timeout: float) -> SubscribeOutcome:
        """Run the handshake and report how it ended."""

    @abstractmethod
    async def send(self, event: str, payload: dict) -> None:
        """Broadcast a small message to the other subscribers of the topic."""

    @abstractmethod
    def close(self) -> None:
        """Stop delivery. Safe to call more than once."""


class ChangeFeed(ABC):
    def __init__(self):
        self._channels: list[FeedChannel] = []

    @abstractmethod
    def _create_channel(self, topic: str, owner_id) -> FeedChannel: ...

    def channel(self, topic: str, owner_id) -> FeedChannel:
        channel = self._create_channel(topic, owner_id)
        self._channels.append(channel)
        return channel

    def remove_channel(self, channel: FeedChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)
        channel.close()

    def get_channels(self, topic: str | None = None) -> list[FeedChannel]:
        return [
            channel
            for channel in self._channels
            if topic is None or channel.topic == topic
        ]


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, dict]]:
    event = "message"
    data_lines: list[str] = []
    async for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if not line:
            if data_lines:
                yield event, json.loads("\n".join(data_lines))
            event = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)


class HttpFeedChannel(FeedChannel):
    def __init__(self, client: httpx.AsyncClient, topic: str, owner_id):
        super().__init__(topic, owner_id)
        self._client = client
        self._reader: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None
        self.subscriber_id: str | None = None

    def _settle(self, outcome: SubscribeOutcome) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(outcome)

    async def subscribe(self, timeout: float) -> SubscribeOutcome:
        if self._reader is not None:
            raise RuntimeError(f"channel {self.topic} is already subscribed")
        if self.removed:
            return SubscribeOutcome.CLOSED

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._reader = loop.create_task(self._read_stream())
        try:
            return await asyncio.wait_for(self._ready, timeout)
        except asyncio.TimeoutError:
            logger.warning("Handshake on %s timed out after %ss", self.topic, timeout)
            self.close()
            return SubscribeOutcome.TIMED_OUT

    async def _read_stream(self) -> None:
        acknowledged = False
        try:
            response = await self._client.post(
                f"{API_PREFIX}/feed/subscribe", json={"topic": self.topic}
            )
            if response.status_code != 200:
                logger.warning(
                    "Subscription to %s rejected with HTTP %s",
                    self.topic,
                    response.status_code,
                )
                self._settle(SubscribeOutcome.ERROR)
                return
            ticket = response.json()["ticket"]

            async with self._client.stream(
                "GET",
                f"{API_PREFIX}/feed/stream",
                params={"ticket": ticket},
                timeout=httpx.Timeout(10.0, read=None),
            ) as stream:
                if stream.status_code != 200:
                    logger.warning(
                        "Feed stream for %s refused with HTTP %s",
                        self.topic,
                        stream.status_code,
                    )
                    self._settle(SubscribeOutcome.ERROR)
                    return
                async for event, data in iter_sse_events(stream.aiter_lines()):
                    if event == EVENT_SUBSCRIBED:
                        if isinstance(data, dict):
                            self.subscriber_id = data.get("subscriber_id")
                        acknowledged = True
                        self._settle(SubscribeOutcome.ACKNOWLEDGED)
                    elif event == EVENT_BROADCAST:
                        self.dispatch(EVENT_BROADCAST, data)
                    elif event in (ROW_INSERT, ROW_UPDATE, ROW_DELETE):
                        record = data.get("record") if isinstance(data, dict) else None
                        self.dispatch(event, record or {})
        except asyncio.CancelledError:
            self._settle(SubscribeOutcome.CLOSED)
            raise
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.warning("Feed stream for %s failed: %s", self.topic, exc)
            self._settle(SubscribeOutcome.ERROR)
        except Exception:
            logger.exception("Feed stream for %s stopped unexpectedly", self.topic)
            self._settle(SubscribeOutcome.ERROR)
        else:
            self._settle(SubscribeOutcome.CLOSED)

        if acknowledged and not self.removed:
            self.dispatch(CHANNEL_CLOSED, {"topic": self.topic})

    async def send(self, event: str, payload: dict) -> None:
        try:
            response = await self._client.post(
                f"{API_PREFIX}/feed/broadcast",
                json={
                    "topic": self.topic,
                    "event": event,
                    "payload": payload,
                    "sender": self.subscriber_id,
                },
            )
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        if response.status_code != 200:
            raise TransportError(
                f"broadcast on {self.topic} failed", response.status_code
            )

    def close(self) -> None:
        self.removed = True
        self._settle(SubscribeOutcome.CLOSED)
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()


class HttpChangeFeed(ChangeFeed):
    """Change feed backed by the server's Server-Sent-Events stream."""

    def __init__(self, client: httpx.AsyncClient):
        super().__init__()
        self._client = client

    def _create_channel(self, topic: str, owner_id) -> HttpFeedChannel:
        return HttpFeedChannel(self._client, topic, owner_id)
