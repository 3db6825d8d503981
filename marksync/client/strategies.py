from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError

from marksync.client.feed import CHANNEL_CLOSED, FeedChannel, SubscribeOutcome
from marksync.client.models import (
    BookmarkRecord,
    ConnectionStatus,
    EngineState,
    SyncMode,
)
from marksync.services.feed import (
    EVENT_BROADCAST,
    ROW_DELETE,
    ROW_INSERT,
    ROW_UPDATE,
    topic_for_owner,
)

if TYPE_CHECKING:
    from marksync.client.engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncStrategy(ABC):
    """One way of keeping the engine's collection current.

    A strategy is bound to the engine generation that created it. Every
    callback checks ``is_current`` before touching engine state, so a
    strategy that has been switched away from can never mutate anything.
    """

    mode: SyncMode

    def __init__(self, engine: SyncEngine, generation: int):
        self.engine = engine
        self.generation = generation

    @property
    def is_current(self) -> bool:
        return self.engine.generation == self.generation

    @abstractmethod
    def activate(self) -> None: ...

    @abstractmethod
    def deactivate(self) -> None: ...

    async def refresh_trigger(self) -> None:
        if not self.is_current:
            return
        await self.engine.refresh_for(self.generation)

    def on_visibility(self, visible: bool) -> None:
        pass

    def on_focus(self) -> None:
        pass


class FocusStrategy(SyncStrategy):
    mode = SyncMode.NORMAL

    def activate(self) -> None:
        self.engine.set_state(EngineState.FOCUS_ACTIVE)
        self.engine.set_status(ConnectionStatus.DISCONNECTED)

    def deactivate(self) -> None:
        pass

    def on_visibility(self, visible: bool) -> None:
        if visible and self.is_current:
            self.engine.spawn(self.refresh_trigger())

    def on_focus(self) -> None:
        if self.is_current:
            self.engine.spawn(self.refresh_trigger())


class PollingStrategy(SyncStrategy):
    mode = SyncMode.TIME

    def __init__(self, engine: SyncEngine, generation: int, interval: float):
        super().__init__(engine, generation)
        self.interval = interval
        self.job_id = f"bookmark-poll-{generation}"
        self._job = None

    def activate(self) -> None:
        scheduler = self.engine.ensure_scheduler()
        self._job = scheduler.add_job(
            self.refresh_trigger,
            "interval",
            seconds=self.interval,
            id=self.job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.engine.set_state(EngineState.POLLING_ACTIVE)
        self.engine.set_status(ConnectionStatus.CONNECTED)

    def deactivate(self) -> None:
        job, self._job = self._job, None
        if job is None:
            return
        try:
            job.remove()
        except JobLookupError:
            logger.debug("Poll job %s was already gone", self.job_id)


class PushSubscriptionStrategy(SyncStrategy):
    mode = SyncMode.WEBHOOK

    def __init__(self, engine: SyncEngine, generation: int, topic: str):
        super().__init__(engine, generation)
        self.topic = topic
        self.channel: FeedChannel | None = None
        self.handshake: asyncio.Task | None = None
        self._holds_guard = False

    def activate(self) -> None:
        engine = self.engine
        if self.topic in engine.subscribing_topics:
            logger.debug("Handshake for %s already in flight", self.topic)
            return

        stale = engine.channels.pop(self.topic, None)
        if stale is not None:
            logger.info("Tearing down stale subscription on %s", self.topic)
            engine.feed.remove_channel(stale)

        channel = engine.feed.channel(self.topic, engine.owner_id)
        channel.on(ROW_INSERT, self._on_insert)
        channel.on(ROW_UPDATE, self._on_update)
        channel.on(ROW_DELETE, self._on_delete)
        channel.on(EVENT_BROADCAST, self._on_broadcast)
        channel.on(CHANNEL_CLOSED, self._on_closed)
        self.channel = channel
        engine.channels[self.topic] = channel

        engine.subscribing_topics.add(self.topic)
        self._holds_guard = True
        engine.set_state(EngineState.SUBSCRIBING)
        engine.set_status(ConnectionStatus.CONNECTING)
        self.handshake = engine.spawn(self._handshake(channel))

    def _release_guard(self) -> None:
        if self._holds_guard:
            self.engine.subscribing_topics.discard(self.topic)
            self._holds_guard = False

    async def _handshake(self, channel: FeedChannel) -> SubscribeOutcome:
        try:
            outcome = await channel.subscribe(self.engine.handshake_timeout)
        finally:
            if self.is_current:
                self._release_guard()

        if not self.is_current:
            logger.debug("Ignoring %s handshake from a stale activation", outcome.value)
            return outcome

        logger.info("Subscription handshake on %s: %s", self.topic, outcome.value)
        if outcome is SubscribeOutcome.ACKNOWLEDGED:
            if self.channel is not channel:
                logger.info("Subscription on %s ended during the handshake", self.topic)
                return outcome
            self.engine.set_state(EngineState.SUBSCRIBED)
            self.engine.set_status(ConnectionStatus.CONNECTED)
        else:
            self._drop_channel()
            self.engine.set_state(EngineState.INACTIVE)
            self.engine.set_status(ConnectionStatus.DISCONNECTED)
        return outcome

    def deactivate(self) -> None:
        self._release_guard()
        self._drop_channel()

    def _drop_channel(self) -> None:
        channel, self.channel = self.channel, None
        if channel is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._teardown(channel)
            return
        loop.call_soon(self._teardown, channel)

    def _teardown(self, channel: FeedChannel) -> None:
        if self.engine.channels.get(self.topic) is channel:
            del self.engine.channels[self.topic]
        self.engine.feed.remove_channel(channel)
        logger.debug("Removed subscription on %s", self.topic)

    def _record(self, data: dict) -> BookmarkRecord | None:
        try:
            return BookmarkRecord.from_payload(data)
        except ValueError as exc:
            logger.warning("Dropping malformed row event on %s: %s", self.topic, exc)
            return None

    def _on_insert(self, data: dict) -> None:
        if not self.is_current:
            return
        record = self._record(data)
        if record and self.engine.collection.merge_insert(record):
            self.engine.notify_changed()

    def _on_update(self, data: dict) -> None:
        if not self.is_current:
            return
        record = self._record(data)
        if record and self.engine.collection.merge_update(record):
            self.engine.notify_changed()

    def _on_delete(self, data: dict) -> None:
        if not self.is_current:
            return
        if self.engine.collection.merge_delete(data.get("id")):
            self.engine.notify_changed()

    def _on_broadcast(self, data: dict) -> None:
        logger.info(
            "Broadcast on %s: %s %s",
            self.topic,
            data.get("event"),
            data.get("payload"),
        )

    def _on_closed(self, data: dict) -> None:
        if not self.is_current:
            return
        logger.warning("Subscription on %s closed by the feed", self.topic)
        self._drop_channel()
        self.engine.set_state(EngineState.INACTIVE)
        self.engine.set_status(ConnectionStatus.DISCONNECTED)


def build_strategy(mode: SyncMode, engine: SyncEngine, generation: int) -> SyncStrategy:
    if mode is SyncMode.TIME:
        return PollingStrategy(engine, generation, interval=engine.poll_interval)
    if mode is SyncMode.WEBHOOK:
        if engine.feed is None or engine.owner_id is None:
            raise ValueError("push subscription needs a change feed and an owner id")
        return PushSubscriptionStrategy(
            engine, generation, topic=topic_for_owner(engine.owner_id)
        )
    return FocusStrategy(engine, generation)
