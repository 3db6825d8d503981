from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from marksync.client.engine import SyncEngine
from marksync.client.errors import MarksyncError
from marksync.client.feed import HttpChangeFeed
from marksync.client.gateway import BookmarkGateway
from marksync.client.models import BookmarkRecord, ConnectionStatus, SyncMode
from marksync.client.preferences import ClientPreferences
from marksync.config import ClientConfig
from marksync.services.common import truncate_description

logger = logging.getLogger("marksync.watch")


def render(items: tuple[BookmarkRecord, ...]) -> None:
    print(f"--- {len(items)} bookmark(s) ---", flush=True)
    for item in items:
        print(f"[{item.id}] {item.title} <{item.url}>")
        preview, _ = truncate_description(item.description)
        if preview:
            print(f"    {preview}")
    sys.stdout.flush()


def print_status(status: ConnectionStatus) -> None:
    print(f"status: {status.value}", flush=True)


async def watch(config: ClientConfig, mode: SyncMode | None) -> int:
    gateway = BookmarkGateway.connect(
        config.server_url, token=config.token, timeout=config.request_timeout
    )
    preferences = ClientPreferences(config.storage_path, config.server_url)
    if mode is None:
        mode = preferences.sync_mode
    else:
        preferences.sync_mode = mode

    try:
        me = await gateway.whoami()
    except MarksyncError as exc:
        logger.error("Could not sign in to %s: %s", config.server_url, exc)
        await gateway.aclose()
        return 1

    engine = SyncEngine(
        gateway,
        HttpChangeFeed(gateway.client),
        owner_id=me["id"],
        poll_interval=config.poll_interval,
        handshake_timeout=config.handshake_timeout,
    )
    engine.add_status_listener(print_status)
    engine.add_change_listener(render)
    engine.add_error_listener(lambda exc: logger.error("Refresh failed: %s", exc))

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def on_input() -> None:
        line = sys.stdin.readline()
        if not line:
            stop.set()
            return
        command = line.strip().lower()
        if command in {"q", "quit"}:
            stop.set()
        elif command in {m.value for m in SyncMode}:
            preferences.sync_mode = command
            engine.activate(command)
        else:
            engine.notify_focus()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    loop.add_reader(sys.stdin.fileno(), on_input)

    try:
        try:
            await engine.refresh_now()
        except MarksyncError as exc:
            logger.error("Failed to fetch bookmarks: %s", exc)
        engine.activate(mode)
        print(
            f"watching {config.server_url} as {me['username']} ({mode.value}); "
            "Enter refreshes, a mode name switches, q quits",
            flush=True,
        )
        await stop.wait()
    finally:
        loop.remove_reader(sys.stdin.fileno())
        await engine.aclose()
        await gateway.aclose()
    return 0


def main(argv=None) -> None:
    p = argparse.ArgumentParser(prog="marksync-watch")
    p.add_argument("--server", help="server URL, defaults to MARKSYNC_SERVER_URL")
    p.add_argument("--token", help="API token, defaults to MARKSYNC_TOKEN")
    p.add_argument("--mode", choices=[m.value for m in SyncMode])
    p.add_argument("-v", "--verbose", action="store_true")
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    config = ClientConfig()
    if args.server:
        config.server_url = args.server
    if args.token:
        config.token = args.token
    if not config.token:
        p.error("an API token is required (--token or MARKSYNC_TOKEN)")

    mode = SyncMode(args.mode) if args.mode else None
    sys.exit(asyncio.run(watch(config, mode)))


if __name__ == "__main__":
    main()
