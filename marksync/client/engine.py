from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from marksync.client.collection import ClientCollection
from marksync.client.errors import MarksyncError
from marksync.client.feed import ChangeFeed, FeedChannel, SubscribeOutcome
from marksync.client.gateway import BookmarkGateway
from marksync.client.models import (
    BookmarkRecord,
    ConnectionStatus,
    EngineState,
    SyncMode,
)
from marksync.client.strategies import (
    PushSubscriptionStrategy,
    SyncStrategy,
    build_strategy,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_HANDSHAKE_TIMEOUT = 10.0

StatusListener = Callable[[ConnectionStatus], None]
ChangeListener = Callable[[tuple[BookmarkRecord, ...]], None]
ErrorListener = Callable[[MarksyncError], None]


class SyncEngine:
    """Keeps a client-side bookmark collection in step with the server.

    Exactly one strategy runs at a time. ``generation`` increases on every
    activation and deactivation; asynchronous work captures the generation it
    started under and drops its result if the engine has moved on.

    Refresh results are applied in the order responses arrive. Two
    overlapping ``refresh_now`` calls are not sequenced against each other.
    """

    def __init__(
        self,
        gateway: BookmarkGateway,
        feed: ChangeFeed | None = None,
        owner_id=None,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        scheduler: AsyncIOScheduler | None = None,
        initial: Iterable[BookmarkRecord] = (),
    ):
        self.gateway = gateway
        self.feed = feed
        self.owner_id = owner_id
        self.poll_interval = poll_interval
        self.handshake_timeout = handshake_timeout
        self.collection = ClientCollection(initial)

        self.generation = 0
        self.state = EngineState.INACTIVE
        self.status = ConnectionStatus.DISCONNECTED
        self.channels: dict[str, FeedChannel] = {}
        self.subscribing_topics: set[str] = set()

        self._strategy: SyncStrategy | None = None
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._tasks: set[asyncio.Task] = set()
        self._status_listeners: list[StatusListener] = []
        self._change_listeners: list[ChangeListener] = []
        self._error_listeners: list[ErrorListener] = []

    @property
    def mode(self) -> SyncMode | None:
        return self._strategy.mode if self._strategy else None

    @property
    def strategy(self) -> SyncStrategy | None:
        return self._strategy

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._change_listeners.append(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def set_status(self, status: ConnectionStatus) -> None:
        if status is self.status:
            return
        self.status = status
        for listener in list(self._status_listeners):
            listener(status)

    def set_state(self, state: EngineState) -> None:
        if state is not self.state:
            logger.debug("Engine state %s -> %s", self.state.value, state.value)
        self.state = state

    def notify_changed(self) -> None:
        snapshot = self.collection.items
        for listener in list(self._change_listeners):
            listener(snapshot)

    def report_error(self, error: MarksyncError) -> None:
        for listener in list(self._error_listeners):
            listener(error)

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def ensure_scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        if not self._scheduler.running:
            self._scheduler.start()
        return self._scheduler

    def activate(self, mode) -> None:
        mode = SyncMode(mode)
        current = self._strategy
        if (
            current is not None
            and current.mode is mode
            and self.state is not EngineState.INACTIVE
        ):
            logger.debug("Strategy %s already active", mode.value)
            return

        self.deactivate()
        self.generation += 1
        strategy = build_strategy(mode, self, self.generation)
        self._strategy = strategy
        logger.info("Activating %s sync (generation %s)", mode.value, self.generation)
        strategy.activate()

    def deactivate(self) -> None:
        strategy, self._strategy = self._strategy, None
        self.generation += 1
        if strategy is not None:
            logger.info("Deactivating %s sync", strategy.mode.value)
            strategy.deactivate()
        self.set_state(EngineState.INACTIVE)
        self.set_status(ConnectionStatus.DISCONNECTED)

    async def refresh_now(self) -> bool:
        """Replace the collection with a fresh server listing.

        Returns ``False`` when the result arrived after a strategy switch and
        was discarded. Gateway errors propagate and leave the collection as
        it was.
        """
        generation = self.generation
        records = await self.gateway.list_bookmarks()
        if generation != self.generation:
            logger.debug("Discarding refresh issued under generation %s", generation)
            return False
        self.collection.replace(records)
        self.notify_changed()
        return True

    async def refresh_for(self, generation: int) -> None:
        if generation != self.generation:
            return
        try:
            await self.refresh_now()
        except MarksyncError as exc:
            logger.warning("Background refresh failed: %s", exc)
            self.report_error(exc)

    def notify_visibility(self, visible: bool) -> None:
        if self._strategy is not None:
            self._strategy.on_visibility(visible)

    def notify_focus(self) -> None:
        if self._strategy is not None:
            self._strategy.on_focus()

    async def wait_for_handshake(self) -> SubscribeOutcome | None:
        strategy = self._strategy
        if not isinstance(strategy, PushSubscriptionStrategy):
            return None
        if strategy.handshake is None:
            return None
        return await strategy.handshake

    async def broadcast(self, event: str, payload: dict) -> bool:
        strategy = self._strategy
        if (
            not isinstance(strategy, PushSubscriptionStrategy)
            or self.state is not EngineState.SUBSCRIBED
            or strategy.channel is None
        ):
            return False
        try:
            await strategy.channel.send(event, payload)
        except MarksyncError as exc:
            logger.warning("Broadcast %s failed: %s", event, exc)
            return False
        return True

    async def aclose(self) -> None:
        self.deactivate()
        # let deferred subscription teardown run before cancelling work
        await asyncio.sleep(0)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._owns_scheduler and self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
