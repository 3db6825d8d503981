from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from urllib.parse import parse_qs, urlsplit, urlunsplit

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

LIVE_SLOT_KEY = "bookmark_live_active"
LIVE_WINDOW_NAME = "bookmarkLiveWindow"
LIVE_QUERY_PARAM = "live"
MIRROR_WIDTH = 500
MIRROR_HEIGHT = 700
DEFAULT_POLL_INTERVAL = 0.5

POPUP_BLOCKED_NOTICE = "Please allow popups for this site to use Live mode"

LABEL_CLOSE_MIRROR = "Close Live"
LABEL_EXIT_LIVE = "Exit Live"
LABEL_GO_LIVE = "Go Live"

StorageListener = Callable[[str, "str | None"], None]


class MirrorState(str, Enum):
    IDLE = "idle"
    MIRRORED = "mirrored"


@dataclass(frozen=True)
class WindowGeometry:
    left: int = 0
    top: int = 0
    width: int = 1280
    height: int = 800


@dataclass(frozen=True)
class PollSample:
    """What one fallback poll observed.

    ``mirror_open`` is ``None`` when the sampling context cannot tell, for
    example because it is the mirror itself.
    """

    slot_active: bool
    mirror_open: bool | None = None


def next_live_flag(
    last: bool,
    notification: bool | None = None,
    sample: PollSample | None = None,
) -> bool:
    """Fold the latest observations into the next value of the live flag.

    A poll sample is a direct read and wins over a change notification; a
    mirror known to be gone forces the flag off whatever the slot says.
    """
    if sample is not None:
        if sample.mirror_open is False:
            return False
        return sample.slot_active
    if notification is not None:
        return notification
    return last


def mirror_url(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, f"{LIVE_QUERY_PARAM}=true", "")
    )


class SharedStorage:
    """Key/value slot shared by every browsing context of one origin.

    Writes notify the other registered contexts, never the writer, and only
    when the stored value actually changed. Notifications are delivered on
    the next event loop tick.
    """

    def __init__(self):
        self._values: dict[str, str] = {}
        self._listeners: dict[str, StorageListener] = {}

    def subscribe(self, context_id: str, listener: StorageListener) -> None:
        self._listeners[context_id] = listener

    def unsubscribe(self, context_id: str) -> None:
        self._listeners.pop(context_id, None)

    def get_item(self, key: str) -> str | None:
        return self._values.get(key)

    def set_item(self, key: str, value: str, writer: str | None = None) -> None:
        previous = self._values.get(key)
        self._values[key] = value
        if previous != value:
            self._notify(key, value, writer)

    def remove_item(self, key: str, writer: str | None = None) -> None:
        if key in self._values:
            del self._values[key]
            self._notify(key, None, writer)

    def _notify(self, key: str, value: str | None, writer: str | None) -> None:
        targets = [
            listener
            for context_id, listener in self._listeners.items()
            if context_id != writer
        ]
        if not targets:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for listener in targets:
            if loop is None:
                listener(key, value)
            else:
                loop.call_soon(listener, key, value)


_context_ids = itertools.count(1)


class BrowsingContext:
    """A window or tab: a URL, an optional name and a lifetime."""

    def __init__(
        self,
        storage: SharedStorage,
        url: str,
        name: str | None = None,
        geometry: WindowGeometry | None = None,
    ):
        self.id = f"ctx-{next(_context_ids)}"
        self.storage = storage
        self.url = url
        self.name = name
        self.geometry = geometry or WindowGeometry()
        self.closed = False
        self.ignores_close_requests = False
        self._unload_hooks: list[Callable[[], None]] = []

    def __repr__(self) -> str:
        return f"<BrowsingContext {self.id} {self.url!r}>"

    @property
    def is_mirror(self) -> bool:
        query = parse_qs(urlsplit(self.url).query)
        return query.get(LIVE_QUERY_PARAM, [""])[0] == "true"

    def add_unload_hook(self, hook: Callable[[], None]) -> None:
        self._unload_hooks.append(hook)

    def close(self, run_unload_hooks: bool = True) -> None:
        """Close the context.

        ``run_unload_hooks=False`` models a close where the unload handlers
        never got to run, such as a crash or a killed process.
        """
        if self.closed:
            return
        self.closed = True
        if run_unload_hooks:
            for hook in list(self._unload_hooks):
                hook()
        self._unload_hooks.clear()
        self.storage.unsubscribe(self.id)

    def request_close(self) -> None:
        if self.ignores_close_requests:
            logger.debug("%r ignored a close request", self)
            return
        self.close()


class WindowHost(ABC):
    storage: SharedStorage

    @abstractmethod
    def open_window(
        self,
        opener: BrowsingContext,
        url: str,
        name: str,
        geometry: WindowGeometry,
    ) -> BrowsingContext | None:
        """Open or reuse a named context; ``None`` when the popup was blocked."""

    @abstractmethod
    def find_window(self, name: str) -> BrowsingContext | None: ...


class InProcessWindowHost(WindowHost):
    def __init__(
        self, storage: SharedStorage | None = None, block_popups: bool = False
    ):
        self.storage = storage or SharedStorage()
        self.block_popups = block_popups
        self.opened: list[BrowsingContext] = []

    def create_context(
        self,
        url: str,
        name: str | None = None,
        geometry: WindowGeometry | None = None,
    ) -> BrowsingContext:
        context = BrowsingContext(self.storage, url, name=name, geometry=geometry)
        self.opened.append(context)
        return context

    def open_window(self, opener, url, name, geometry):
        if self.block_popups:
            logger.info("Popup %s blocked", name)
            return None
        existing = self.find_window(name)
        if existing is not None:
            existing.url = url
            return existing
        return self.create_context(url, name=name, geometry=geometry)

    def find_window(self, name: str) -> BrowsingContext | None:
        for context in reversed(self.opened):
            if context.name == name and not context.closed:
                return context
        return None


class LiveWindowMirror:
    """Tracks whether a mirror window exists, from one context's viewpoint.

    Each context runs its own instance. They agree through the shared
    ``bookmark_live_active`` slot, its change notifications, and a short
    fallback poll that also notices a mirror closed without running its
    unload handlers.
    """

    def __init__(
        self,
        context: BrowsingContext,
        host: WindowHost,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.context = context
        self.host = host
        self.poll_interval = poll_interval
        self.state = MirrorState.IDLE
        self.notices: list[str] = []
        self._listeners: list[Callable[[MirrorState], None]] = []
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._job = None

    @property
    def storage(self) -> SharedStorage:
        return self.context.storage

    @property
    def active(self) -> bool:
        return self.state is MirrorState.MIRRORED

    @property
    def close_label(self) -> str:
        if self.context.is_mirror:
            return LABEL_CLOSE_MIRROR
        if self.active:
            return LABEL_EXIT_LIVE
        return LABEL_GO_LIVE

    def add_listener(self, listener: Callable[[MirrorState], None]) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        self.storage.subscribe(self.context.id, self._on_storage_change)
        if self.context.is_mirror:
            self.storage.set_item(LIVE_SLOT_KEY, "true", writer=self.context.id)
            self.context.add_unload_hook(self._on_unload)
        self.poll_once()

        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        if not self._scheduler.running:
            self._scheduler.start()
        self._job = self._scheduler.add_job(
            self._poll_job,
            "interval",
            seconds=self.poll_interval,
            id=f"live-mirror-poll-{self.context.id}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    def stop(self) -> None:
        self.storage.unsubscribe(self.context.id)
        job, self._job = self._job, None
        if job is not None:
            try:
                job.remove()
            except JobLookupError:
                logger.debug("Mirror poll job was already gone")
        if self._owns_scheduler and self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None

    def sample(self) -> PollSample:
        slot_active = self.storage.get_item(LIVE_SLOT_KEY) == "true"
        if self.context.is_mirror or not slot_active:
            return PollSample(slot_active=slot_active)
        window = self.host.find_window(LIVE_WINDOW_NAME)
        return PollSample(slot_active=True, mirror_open=window is not None)

    def poll_once(self) -> bool:
        sample = self.sample()
        if sample.slot_active and sample.mirror_open is False:
            logger.info("Live window disappeared, clearing the live flag")
            self.storage.remove_item(LIVE_SLOT_KEY, writer=self.context.id)
        self._apply(next_live_flag(self.active, sample=sample))
        return self.active

    async def _poll_job(self) -> None:
        if self.context.closed:
            return
        self.poll_once()

    def _on_storage_change(self, key: str, value: str | None) -> None:
        if key != LIVE_SLOT_KEY or self.context.closed:
            return
        self._apply(next_live_flag(self.active, notification=value == "true"))

    def _on_unload(self) -> None:
        self.storage.remove_item(LIVE_SLOT_KEY, writer=self.context.id)
        self._apply(False)

    def _apply(self, flag: bool) -> None:
        state = MirrorState.MIRRORED if flag else MirrorState.IDLE
        if state is self.state:
            return
        logger.debug("%r live state %s -> %s", self.context, self.state, state)
        self.state = state
        for listener in list(self._listeners):
            listener(state)

    def open_mirror(self) -> bool:
        if self.poll_once():
            return False

        opener = self.context.geometry
        geometry = WindowGeometry(
            left=opener.left + opener.width,
            top=opener.top,
            width=MIRROR_WIDTH,
            height=MIRROR_HEIGHT,
        )
        window = self.host.open_window(
            self.context, mirror_url(self.context.url), LIVE_WINDOW_NAME, geometry
        )
        if window is None:
            logger.warning("Live window could not be opened")
            self.notices.append(POPUP_BLOCKED_NOTICE)
            return False

        self.storage.set_item(LIVE_SLOT_KEY, "true", writer=self.context.id)
        self._apply(True)
        return True

    def close_mirror(self) -> None:
        if self.context.is_mirror:
            self.context.close()
            self._apply(False)
            return

        self.storage.remove_item(LIVE_SLOT_KEY, writer=self.context.id)
        self._apply(False)
        window = self.host.find_window(LIVE_WINDOW_NAME)
        if window is None:
            logger.debug("No live window to close")
            return
        window.request_close()
