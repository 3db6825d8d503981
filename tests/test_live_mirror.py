import asyncio

import pytest

from marksync.client.mirror import (
    LIVE_SLOT_KEY,
    LIVE_WINDOW_NAME,
    POPUP_BLOCKED_NOTICE,
    InProcessWindowHost,
    LiveWindowMirror,
    MirrorState,
    PollSample,
    SharedStorage,
    WindowGeometry,
    mirror_url,
    next_live_flag,
)

APP_URL = "http://marksync.test/?q=python"


def _opener(host, poll_interval=60):
    context = host.create_context(
        APP_URL, geometry=WindowGeometry(left=100, top=50, width=1200, height=900)
    )
    mirror = LiveWindowMirror(context, host, poll_interval=poll_interval)
    mirror.start()
    return mirror


def _mirror_side(host):
    window = host.find_window(LIVE_WINDOW_NAME)
    mirror = LiveWindowMirror(window, host, poll_interval=60)
    mirror.start()
    return mirror


def test_next_live_flag():
    assert next_live_flag(False) is False
    assert next_live_flag(True) is True
    assert next_live_flag(False, notification=True) is True
    assert next_live_flag(True, notification=False) is False
    assert next_live_flag(True, sample=PollSample(slot_active=False)) is False
    assert next_live_flag(False, sample=PollSample(slot_active=True)) is True
    assert (
        next_live_flag(
            True, notification=True, sample=PollSample(True, mirror_open=False)
        )
        is False
    )
    assert next_live_flag(False, sample=PollSample(True, mirror_open=True)) is True


def test_mirror_url_replaces_query():
    assert mirror_url(APP_URL) == "http://marksync.test/?live=true"


def test_storage_notifies_other_contexts_only_on_change():
    storage = SharedStorage()
    seen = {"a": [], "b": []}
    storage.subscribe("a", lambda key, value: seen["a"].append((key, value)))
    storage.subscribe("b", lambda key, value: seen["b"].append((key, value)))

    storage.set_item("k", "true", writer="a")
    storage.set_item("k", "true", writer="a")
    storage.remove_item("k", writer="b")
    storage.remove_item("k", writer="b")

    assert seen["a"] == [("k", None)]
    assert seen["b"] == [("k", "true")]


@pytest.mark.asyncio
async def test_open_mirror_sets_flag_and_positions_window():
    host = InProcessWindowHost()
    opener = _opener(host)
    assert opener.close_label == "Go Live"

    assert opener.open_mirror() is True

    window = host.find_window(LIVE_WINDOW_NAME)
    assert window.url == "http://marksync.test/?live=true"
    assert window.is_mirror
    assert window.geometry == WindowGeometry(left=1300, top=50, width=500, height=700)
    assert host.storage.get_item(LIVE_SLOT_KEY) == "true"
    assert opener.state is MirrorState.MIRRORED
    assert opener.close_label == "Exit Live"
    opener.stop()


@pytest.mark.asyncio
async def test_second_open_is_a_no_op():
    host = InProcessWindowHost()
    opener = _opener(host)

    assert opener.open_mirror() is True
    assert opener.open_mirror() is False

    assert [c for c in host.opened if c.is_mirror] == [
        host.find_window(LIVE_WINDOW_NAME)
    ]
    assert opener.active
    opener.stop()


@pytest.mark.asyncio
async def test_blocked_popup_leaves_flag_false_and_records_notice():
    host = InProcessWindowHost(block_popups=True)
    opener = _opener(host)

    assert opener.open_mirror() is False

    assert opener.state is MirrorState.IDLE
    assert host.storage.get_item(LIVE_SLOT_KEY) is None
    assert opener.notices == [POPUP_BLOCKED_NOTICE]
    opener.stop()


@pytest.mark.asyncio
async def test_mirror_registers_itself_on_start():
    host = InProcessWindowHost()
    window = host.create_context("http://marksync.test/?live=true")
    mirror = LiveWindowMirror(window, host, poll_interval=60)

    mirror.start()

    assert host.storage.get_item(LIVE_SLOT_KEY) == "true"
    assert mirror.active
    assert mirror.close_label == "Close Live"
    mirror.stop()


@pytest.mark.asyncio
async def test_native_close_without_unload_is_caught_by_poll():
    host = InProcessWindowHost()
    opener = _opener(host)
    opener.open_mirror()

    host.find_window(LIVE_WINDOW_NAME).close(run_unload_hooks=False)
    assert opener.active
    assert host.storage.get_item(LIVE_SLOT_KEY) == "true"

    assert opener.poll_once() is False
    assert opener.state is MirrorState.IDLE
    assert host.storage.get_item(LIVE_SLOT_KEY) is None
    opener.stop()


@pytest.mark.asyncio
async def test_leftover_flag_from_a_crashed_mirror_does_not_block_reopening():
    host = InProcessWindowHost()
    host.storage.set_item(LIVE_SLOT_KEY, "true", writer="crashed-tab")

    opener = _opener(host)

    assert opener.state is MirrorState.IDLE
    assert opener.close_label == "Go Live"
    assert host.storage.get_item(LIVE_SLOT_KEY) is None

    host.storage.set_item(LIVE_SLOT_KEY, "true", writer="crashed-tab")
    assert opener.open_mirror() is True
    assert host.find_window(LIVE_WINDOW_NAME) is not None
    assert opener.active
    opener.stop()


@pytest.mark.asyncio
async def test_scheduled_poll_detects_closed_mirror(wait_until):
    host = InProcessWindowHost()
    opener = _opener(host, poll_interval=0.05)
    opener.open_mirror()

    host.find_window(LIVE_WINDOW_NAME).close(run_unload_hooks=False)

    assert await wait_until(lambda: not opener.active)
    opener.stop()


@pytest.mark.asyncio
async def test_mirror_closing_itself_notifies_opener():
    host = InProcessWindowHost()
    opener = _opener(host)
    opener.open_mirror()
    mirror = _mirror_side(host)
    states = []
    opener.add_listener(states.append)

    mirror.close_mirror()

    assert mirror.context.closed
    assert host.storage.get_item(LIVE_SLOT_KEY) is None
    assert opener.active
    await asyncio.sleep(0)
    assert states == [MirrorState.IDLE]
    assert opener.close_label == "Go Live"
    mirror.stop()
    opener.stop()


@pytest.mark.asyncio
async def test_opener_closes_mirror_best_effort():
    host = InProcessWindowHost()
    opener = _opener(host)
    opener.open_mirror()
    mirror = _mirror_side(host)

    opener.close_mirror()

    assert not opener.active
    assert host.storage.get_item(LIVE_SLOT_KEY) is None
    assert mirror.context.closed
    assert host.find_window(LIVE_WINDOW_NAME) is None

    assert opener.open_mirror() is True
    mirror.stop()
    opener.stop()


@pytest.mark.asyncio
async def test_close_request_ignored_by_mirror_still_clears_flag():
    host = InProcessWindowHost()
    opener = _opener(host)
    opener.open_mirror()
    host.find_window(LIVE_WINDOW_NAME).ignores_close_requests = True

    opener.close_mirror()

    assert not opener.active
    assert host.storage.get_item(LIVE_SLOT_KEY) is None
    assert not host.find_window(LIVE_WINDOW_NAME).closed
    opener.stop()


@pytest.mark.asyncio
async def test_other_tabs_follow_the_flag():
    host = InProcessWindowHost()
    first = _opener(host)
    second = _opener(host)

    first.open_mirror()
    assert not second.active
    await asyncio.sleep(0)
    assert second.active
    assert second.close_label == "Exit Live"

    assert second.open_mirror() is False

    first.close_mirror()
    await asyncio.sleep(0)
    assert not second.active
    first.stop()
    second.stop()
